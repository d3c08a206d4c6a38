"""
Error taxonomy for the payment service.

Every error carries a machine-readable kind. The HTTP layer maps the kind to a
status code and the consumer maps it to ack / retry / dead-letter.
"""
import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    INTERNAL = "INTERNAL"
    TIMEOUT = "TIMEOUT"


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_PROCESSED: 409,
    ErrorKind.INTERNAL: 500,
    ErrorKind.TIMEOUT: 504,
}

RETRYABLE_KINDS = frozenset({ErrorKind.INTERNAL, ErrorKind.TIMEOUT})


class PaymentError(Exception):
    kind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        description: str = "",
        params: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.description = description
        self.params = params or {}
        self.cause = cause

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "code": self.http_status,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.description:
            body["description"] = self.description
        if self.params:
            body["params"] = self.params
        return body

    def __str__(self) -> str:
        text = f"{self.kind.value}: {self.message}"
        if self.description:
            text = f"{text} ({self.description})"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text


class InvalidArgumentError(PaymentError):
    kind = ErrorKind.VALIDATION


class ConflictError(PaymentError):
    kind = ErrorKind.CONFLICT


class NotFoundError(PaymentError):
    kind = ErrorKind.NOT_FOUND


class AlreadyProcessedError(PaymentError):
    """Raised when a payment has already left PENDING. Treated as success by the consumer."""

    kind = ErrorKind.ALREADY_PROCESSED


class InternalError(PaymentError):
    kind = ErrorKind.INTERNAL


class ProcessingTimeoutError(PaymentError):
    kind = ErrorKind.TIMEOUT


def is_retryable(exc: BaseException) -> bool:
    """Retry predicate for the consumer: decided by error kind, never by message text."""
    if isinstance(exc, PaymentError):
        return exc.retryable
    # Anything unexpected is treated like an internal failure.
    return isinstance(exc, Exception)
