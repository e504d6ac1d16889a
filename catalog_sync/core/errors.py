"""
Catalog Sync - Error Taxonomy

Every pipeline error carries a stable error_code that can be aggregated in
logs and referenced in runbooks.

Error Code Format: CSE-{CATEGORY}-{NUMBER}

Categories:
- CONFIG (001-099): configuration errors
- ROW (100-199): row-scoped problems; logged, counted, never fatal
- LOOKUP (200-299): remote record resolution
- REMOTE (300-399): remote catalog API failures
- STORE (400-499): checkpoint / counter / document store failures
- QUEUE (500-599): job queue and payload errors
- INTERNAL (900-999): unexpected errors
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

if TYPE_CHECKING:
    from catalog_sync.remote.dispatcher import RetryDecision

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    ROW = "ROW"
    LOOKUP = "LOOKUP"
    REMOTE = "REMOTE"
    STORE = "STORE"
    QUEUE = "QUEUE"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_CONFIG_MISSING = ErrorCode(
    code="CSE-CONFIG-001",
    category=ErrorCategory.CONFIG,
    message="Required setting is missing",
)

ERR_ROW_MALFORMED = ErrorCode(
    code="CSE-ROW-100",
    category=ErrorCategory.ROW,
    message="CSV row could not be parsed",
)
ERR_ROW_MISSING_IDENTIFIER = ErrorCode(
    code="CSE-ROW-101",
    category=ErrorCategory.ROW,
    message="Row has no usable part number",
)
ERR_ROW_OUT_OF_RANGE = ErrorCode(
    code="CSE-ROW-102",
    category=ErrorCategory.ROW,
    message="Row index is beyond the file's row count",
)
ERR_ROW_IDENTITY_MISMATCH = ErrorCode(
    code="CSE-ROW-103",
    category=ErrorCategory.ROW,
    message="Remote record identity does not match the row",
)

ERR_LOOKUP_MISS = ErrorCode(
    code="CSE-LOOKUP-200",
    category=ErrorCategory.LOOKUP,
    message="No remote record matches the row",
)

ERR_REMOTE_TRANSIENT = ErrorCode(
    code="CSE-REMOTE-300",
    category=ErrorCategory.REMOTE,
    message="Remote API transient failure",
    retryable=True,
)
ERR_REMOTE_PERMANENT = ErrorCode(
    code="CSE-REMOTE-301",
    category=ErrorCategory.REMOTE,
    message="Remote API rejected the request",
)
ERR_REMOTE_EXHAUSTED = ErrorCode(
    code="CSE-REMOTE-302",
    category=ErrorCategory.REMOTE,
    message="Remote API retries exhausted",
)

ERR_STORE_UNAVAILABLE = ErrorCode(
    code="CSE-STORE-400",
    category=ErrorCategory.STORE,
    message="State store unavailable",
    retryable=True,
)

ERR_QUEUE_INVALID_PAYLOAD = ErrorCode(
    code="CSE-QUEUE-500",
    category=ErrorCategory.QUEUE,
    message="Job payload failed validation",
)
ERR_QUEUE_TIMEOUT = ErrorCode(
    code="CSE-QUEUE-501",
    category=ErrorCategory.QUEUE,
    message="Job exceeded its processing ceiling",
    retryable=True,
)

ERR_INTERNAL_UNKNOWN = ErrorCode(
    code="CSE-INTERNAL-999",
    category=ErrorCategory.INTERNAL,
    message="Unexpected internal error",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CatalogSyncError(Exception):
    """Base exception for all pipeline errors."""

    error_code: ErrorCode = ERR_INTERNAL_UNKNOWN

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for structured logging."""
        return {
            "error_code": str(self.error_code),
            "error_category": self.error_code.category.value,
            "error_message": self.message,
            "retryable": self.error_code.retryable,
            **self.context,
        }


class ConfigurationError(CatalogSyncError, ValueError):
    """A required setting is missing or unusable."""

    error_code = ERR_CONFIG_MISSING

    def __init__(self, setting: str, detail: str = "is not configured"):
        super().__init__(f"{setting} {detail}", setting=setting)
        self.setting = setting


class MalformedRowError(CatalogSyncError):
    """A CSV record could not be turned into a row."""

    error_code = ERR_ROW_MALFORMED

    def __init__(self, row_index: int, reason: str):
        super().__init__(f"Row {row_index + 1} is malformed: {reason}", row_index=row_index)
        self.row_index = row_index
        self.reason = reason


class CatalogAPIError(CatalogSyncError):
    """Non-success response from the remote catalog API."""

    error_code = ERR_REMOTE_PERMANENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: str | None = None,
        **context: Any,
    ):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code
        self.retry_after = retry_after


class DispatchFailedError(CatalogSyncError):
    """A dispatched remote call failed permanently or ran out of retries."""

    def __init__(self, task_id: str, decision: "RetryDecision", cause: BaseException, attempts: int):
        super().__init__(
            f"Remote call {task_id} failed after {attempts} attempt(s): {decision.reason}",
            task_id=task_id,
            attempts=attempts,
        )
        self.task_id = task_id
        self.decision = decision
        self.cause = cause
        self.attempts = attempts

    @property
    def error_code(self) -> ErrorCode:  # type: ignore[override]
        if self.decision.action.value == "fail_exhausted":
            return ERR_REMOTE_EXHAUSTED
        return ERR_REMOTE_PERMANENT

    @property
    def status_code(self) -> int | None:
        return getattr(self.cause, "status_code", None)


class StoreUnavailableError(CatalogSyncError):
    """A checkpoint, counter or queue store could not be reached."""

    error_code = ERR_STORE_UNAVAILABLE

    def __init__(self, store: str, cause: BaseException | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"{store} unavailable{detail}", store=store)
        self.store = store
        self.cause = cause


class JobTimeoutError(CatalogSyncError):
    error_code = ERR_QUEUE_TIMEOUT


class InvalidJobPayloadError(CatalogSyncError):
    """Raised when a queued job does not conform to BatchJobPayload."""

    error_code = ERR_QUEUE_INVALID_PAYLOAD

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message, job_id=job_id)
        self.job_id = job_id
        self.validation_errors: list[dict[str, Any]] = []

    @classmethod
    def from_validation_error(
        cls,
        error: ValidationError,
        job_id: str | None = None,
    ) -> "InvalidJobPayloadError":
        """Create from a Pydantic ValidationError."""
        instance = cls(str(error), job_id)
        instance.validation_errors = error.errors()
        return instance


def log_error(exc: BaseException, level: int = logging.ERROR, **context: Any) -> None:
    """Log an exception with its structured classification."""
    if isinstance(exc, CatalogSyncError):
        payload = {**exc.to_log_dict(), **context}
        code = payload["error_code"]
    else:
        code = str(ERR_INTERNAL_UNKNOWN)
        payload = {"error_code": code, "exception_type": type(exc).__name__, **context}
    logger.log(level, "[%s] %s", code, exc, extra={"error_code": code, "context": payload})
