"""Helpers shared by the site synchronizer and the ingestion pipeline."""

from .deadline import Deadline
from .errors import (
    DeadlineExceeded,
    ExternalServiceError,
    LifecycleInputError,
    PermanentExtractionError,
    TransientExternalError,
    classify_client_error,
)
from .observability import StructuredEventLogger, configure_logging

__all__ = [
    "Deadline",
    "DeadlineExceeded",
    "ExternalServiceError",
    "LifecycleInputError",
    "PermanentExtractionError",
    "StructuredEventLogger",
    "TransientExternalError",
    "classify_client_error",
    "configure_logging",
]
