"""Engine error types."""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Error classification codes."""

    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    VALIDATION_FAILED = "validation_failed"
    CRITICAL_DEPENDENCY = "critical_dependency"
    RETRY_EXHAUSTED = "retry_exhausted"
    NOT_FOUND = "not_found"
    UNKNOWN_JOB = "unknown_job"


class EngineError(Exception):
    """Base engine exception with error code and retryable flag.

    Attributes:
        message: Human-readable error description.
        code: Structured error code for programmatic handling.
        retryable: Whether the failed operation may be replayed later.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UPSTREAM,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable


class UpstreamError(EngineError):
    """Transient failure talking to the market data source."""

    def __init__(self, message: str, status_code: int | None = None, code: ErrorCode = ErrorCode.UPSTREAM) -> None:
        super().__init__(message, code=code, retryable=True)
        self.status_code = status_code


class DataValidationError(EngineError):
    """A record failed ingestion checks. Never retried automatically."""

    def __init__(self, message: str, errors: list[str] | None = None, symbol: str | None = None) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION_FAILED, retryable=False)
        self.errors = list(errors or [])
        self.symbol = symbol


class CriticalDependencyError(EngineError):
    """Store or market source unreachable at startup."""

    def __init__(self, message: str, failed: list[str] | None = None) -> None:
        super().__init__(message, code=ErrorCode.CRITICAL_DEPENDENCY, retryable=False)
        self.failed = list(failed or [])


class RetryExhaustedError(EngineError):
    """Retry budget spent; ``last_error`` holds the final failure."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            code=ErrorCode.RETRY_EXHAUSTED,
            retryable=True,
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class OfferingNotFoundError(EngineError):
    def __init__(self, ref: object) -> None:
        super().__init__(f"offering not found: {ref}", code=ErrorCode.NOT_FOUND, retryable=False)
        self.ref = ref


class UnknownJobError(EngineError):
    def __init__(self, job: str) -> None:
        super().__init__(f"unknown sync job: {job}", code=ErrorCode.UNKNOWN_JOB, retryable=False)
        self.job = job
