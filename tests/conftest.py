import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from payment_service.config import Settings
from payment_service.database import create_session_factory, init_db
from payment_service.errors import InternalError
from payment_service.gateway import PaymentGateway
from payment_service.repository import PaymentRepository
from payment_service.service import PaymentService


class RowLockingRepository(PaymentRepository):
    """SQLite ignores FOR UPDATE, so the row lock is emulated with one asyncio.Lock per payment id."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self._row_locks = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def lock(self, payment_id):
        async with self._row_locks[payment_id]:
            async with super().lock(payment_id) as locked:
                yield locked


class StubGateway(PaymentGateway):
    def __init__(self, approve=True, delay=0.0, error=None):
        self.approve = approve
        self.delay = delay
        self.error = error
        self.calls = 0

    async def charge(self, payment):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.approve


class FakePublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish(self, payment_id: str) -> None:
        if self.fail:
            raise InternalError("Failed to publish message", "broker unreachable")
        self.published.append(payment_id)


def make_message(body, message_id="msg-1"):
    """Incoming aio_pika message double with awaitable ack/reject/nack."""
    message = AsyncMock()
    message.body = body if isinstance(body, bytes) else body.encode("utf-8")
    message.message_id = message_id
    return message


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        retry_attempts=3,
        retry_delay_type="fixed",
        retry_delay=0,
        retry_max_delay=0,
        processing_timeout=1,
        gateway_simulated_delay=0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return RowLockingRepository(session_factory)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def service(repository, gateway, publisher, settings):
    return PaymentService(repository, gateway, publisher=publisher, processing_timeout=settings.processing_timeout)
