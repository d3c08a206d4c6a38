import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payment_service.config import Settings, get_settings, setup_logging
from payment_service.database import create_engine, create_session_factory, init_db
from payment_service.errors import InvalidArgumentError, NotFoundError, PaymentError
from payment_service.gateway import create_gateway
from payment_service.messaging import MessageChannel
from payment_service.repository import PaymentRepository
from payment_service.schemas import PaymentCreate, PaymentRead, validation_messages
from payment_service.service import PaymentService

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        logger.info("Starting %s", settings.app_name)
        engine = create_engine(settings)
        if settings.database_create_all:
            await init_db(engine)

        channel = MessageChannel(settings)
        try:
            await channel.connect()
        except Exception as e:
            # Payments are still accepted; publish() reconnects on the next request.
            logger.error("Error setting up RabbitMQ: %s", e)

        gateway = create_gateway(settings)
        app.state.payment_service = PaymentService(
            PaymentRepository(create_session_factory(engine)),
            gateway,
            publisher=channel,
            processing_timeout=settings.processing_timeout,
        )
        yield
        await channel.close()
        await gateway.close()
        await engine.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc.cause)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = InvalidArgumentError(
            "validation failed",
            "payment request validation failed",
            params={"errors": validation_messages(exc.errors())},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"code": 500, "kind": "INTERNAL", "message": "internal server error"},
        )

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    @app.post("/v1/payments", response_model=PaymentRead, status_code=201, tags=["Payments"])
    async def create_payment(payload: PaymentCreate, service: PaymentService = Depends(get_payment_service)):
        payment = await service.create_payment(payload)
        return PaymentRead.model_validate(payment)

    @app.get("/v1/payments/{payment_id}", response_model=PaymentRead, tags=["Payments"])
    async def get_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
        payment = await service.get_payment_by_id(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", params={"payment_id": payment_id})
        return PaymentRead.model_validate(payment)

    return app


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
