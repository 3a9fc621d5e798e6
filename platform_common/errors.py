"""Error taxonomy shared by the lifecycle and ingestion handlers."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Optional, Type

from botocore.exceptions import ClientError

RETRYABLE_ERROR_CODES: FrozenSet[str] = frozenset(
    {
        "InternalError",
        "InternalServerError",
        "InternalFailure",
        "LimitExceededException",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    }
)

PERMANENT_ERROR_CODES: FrozenSet[str] = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "BadDocumentException",
        "DocumentTooLargeException",
        "InvalidParameterException",
        "InvalidS3ObjectException",
        "NoSuchBucket",
        "NoSuchKey",
        "UnsupportedDocumentException",
    }
)


class ExternalServiceError(RuntimeError):
    """Raised when a store or service call fails."""

    retryable = True

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "retryable": self.retryable}


class TransientExternalError(ExternalServiceError):
    """A dependency was temporarily unavailable; the operation may be retried."""

    retryable = True


class PermanentExtractionError(ExternalServiceError):
    """The document cannot be processed no matter how often it is retried."""

    retryable = False


class LifecycleInputError(ValueError):
    """A lifecycle event is missing required properties."""


class DeadlineExceeded(TimeoutError):
    """The handler ran out of its wall-clock budget."""

    def __init__(self, stage: str, budget_seconds: float) -> None:
        super().__init__(f"Deadline of {budget_seconds:.1f}s exceeded during {stage}")
        self.stage = stage
        self.budget_seconds = budget_seconds


def client_error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def classify_client_error(
    exc: ClientError,
    *,
    operation: str,
    permanent_error: Type[ExternalServiceError] = PermanentExtractionError,
) -> ExternalServiceError:
    """Map a botocore ``ClientError`` to the retryable/permanent taxonomy.

    Unknown codes are treated as retryable unless the HTTP status marks a
    client-side (4xx) failure that is not a throttle. Non-retryable failures
    are raised as ``permanent_error`` so stores can use their own error type.
    """

    code = client_error_code(exc)
    message = exc.response.get("Error", {}).get("Message") or str(exc)
    description = f"{operation} failed with {code}: {message}"
    if code in PERMANENT_ERROR_CODES:
        return permanent_error(description, code=code)
    if code in RETRYABLE_ERROR_CODES:
        return TransientExternalError(description, code=code)

    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return permanent_error(description, code=code)
    return TransientExternalError(description, code=code)


__all__ = [
    "DeadlineExceeded",
    "ExternalServiceError",
    "LifecycleInputError",
    "PERMANENT_ERROR_CODES",
    "PermanentExtractionError",
    "RETRYABLE_ERROR_CODES",
    "TransientExternalError",
    "classify_client_error",
    "client_error_code",
]
