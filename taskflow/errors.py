"""
Error taxonomy for task execution.

Every error carries a stable code and an explicit ``retryable`` flag. Handlers
opt out of redelivery by raising a non-retryable error; the worker never infers
intent from anything else.
"""

from dataclasses import dataclass
from typing import ClassVar


class ErrCode:
    # Handler outcomes
    VALIDATION = "validation"
    TRANSIENT = "transient"
    HANDLER_CRASH = "handler_crash"
    TIMEOUT = "timeout"

    # Idempotency
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"

    # Infrastructure
    BROKER_UNAVAILABLE = "broker_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"

    # Setup / inspection
    CONFIGURATION = "configuration"
    INVALID_QUEUE = "invalid_queue"
    NOT_FOUND = "not_found"


@dataclass(eq=False)
class TaskflowError(Exception):
    """
    Base error.
    - code: stable error code
    - message: human readable message (no secrets or payload contents)
    - details: extra context for logs
    """

    code: str
    message: str
    details: dict | None = None

    retryable: ClassVar[bool] = True

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(TaskflowError):
    """Malformed payload or unusable task. Terminal, never redelivered."""

    retryable = False

    def __init__(self, message: str = "invalid task payload", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class TransientError(TaskflowError):
    """Downstream dependency failure. Redelivered up to max_retry."""

    def __init__(
        self,
        message: str = "transient failure",
        details: dict | None = None,
        code: str = ErrCode.TRANSIENT,
    ) -> None:
        super().__init__(code, message, details)


class HandlerCrashError(TransientError):
    """An unexpected exception escaped a handler and was caught by the recovery middleware."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, details, code=ErrCode.HANDLER_CRASH)


class TaskTimeoutError(TransientError):
    """The handler exceeded the execution deadline set by the worker."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, details, code=ErrCode.TIMEOUT)


class IdempotencyConflictError(TaskflowError):
    """Another execution holds the in-progress lock for this key (fail-closed)."""

    retryable = False

    def __init__(self, key: str) -> None:
        super().__init__(
            ErrCode.IDEMPOTENCY_CONFLICT,
            "idempotency key is already in progress",
            {"idempotency_key": key},
        )


class InfrastructureError(TaskflowError):
    """Broker or store unreachable. Propagated to the caller of the affected operation."""


class BrokerUnavailableError(InfrastructureError):
    def __init__(self, message: str = "broker unavailable", details: dict | None = None) -> None:
        super().__init__(ErrCode.BROKER_UNAVAILABLE, message, details)


class IdempotencyStoreError(InfrastructureError):
    def __init__(self, message: str = "idempotency store unavailable", details: dict | None = None) -> None:
        super().__init__(ErrCode.STORE_UNAVAILABLE, message, details)


class ConfigurationError(TaskflowError):
    """Invalid registration or setup, surfaced at startup."""

    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFIGURATION, message, details)


class InvalidQueueError(TaskflowError):
    retryable = False

    def __init__(self, queue: str) -> None:
        super().__init__(ErrCode.INVALID_QUEUE, f"unknown queue: {queue}", {"queue": queue})


class TaskNotFoundError(TaskflowError):
    retryable = False

    def __init__(self, delivery_id: str) -> None:
        super().__init__(ErrCode.NOT_FOUND, "task not found", {"delivery_id": delivery_id})


def is_retryable(exc: BaseException) -> bool:
    """Errors are retried unless they explicitly opt out."""
    return bool(getattr(exc, "retryable", True))
