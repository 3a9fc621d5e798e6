"""Idempotent ingestion pipeline driven by object upload triggers."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from platform_common.deadline import Deadline
from platform_common.errors import DeadlineExceeded, ExternalServiceError

from .document_record_storage import DocumentRecordStore
from .extraction import DEFAULT_FEATURE_TYPES, DocumentReference, ExtractionService
from .records import DocumentRecord, DocumentStatus, ErrorDescriptor, document_id_from_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for the ingestion pipeline."""

    bucket: Optional[str] = None
    table_name: Optional[str] = None
    region: Optional[str] = None
    max_attempts: int = 3
    timeout_seconds: float = 300.0
    feature_types: Tuple[str, ...] = DEFAULT_FEATURE_TYPES
    poll_interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "IngestionConfig":
        environ = os.environ if environ is None else environ
        feature_types = tuple(
            value.strip().upper()
            for value in environ.get("TEXTRACT_FEATURE_TYPES", ",".join(DEFAULT_FEATURE_TYPES)).split(",")
            if value.strip()
        )
        return cls(
            bucket=environ.get("S3_BUCKET_NAME") or None,
            table_name=environ.get("DDB_TABLE_NAME") or None,
            region=environ.get("AWS_REGION") or None,
            max_attempts=int(environ.get("MAX_EXTRACTION_ATTEMPTS", "3")),
            timeout_seconds=float(environ.get("INGESTION_TIMEOUT_SECONDS", "300")),
            feature_types=feature_types or DEFAULT_FEATURE_TYPES,
            poll_interval_seconds=float(environ.get("TEXTRACT_POLL_INTERVAL_SECONDS", "2")),
        )


@dataclass
class IngestionOutcome:
    """Result of handling one upload trigger."""

    document_id: Optional[str]
    object_key: str
    status: Optional[DocumentStatus]
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[ErrorDescriptor] = None

    @property
    def retry_scheduled(self) -> bool:
        """True when a failed attempt returned the document to Pending."""

        return not self.skipped and self.status is DocumentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "document_id": self.document_id,
            "object_key": self.object_key,
            "status": self.status.value if self.status else None,
            "skipped": self.skipped,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


class IngestionPipeline:
    """Claims, extracts and persists one document per upload trigger."""

    def __init__(
        self,
        *,
        store: DocumentRecordStore,
        extractor: ExtractionService,
        config: Optional[IngestionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._config = config or IngestionConfig()
        self._clock = clock

    def on_upload(
        self,
        object_key: str,
        *,
        bucket: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> IngestionOutcome:
        document_id = document_id_from_key(object_key)
        bucket = bucket or self._config.bucket
        if not bucket:
            raise ValueError(f"No bucket given for {object_key!r} and none configured")
        deadline = deadline or Deadline(self._config.timeout_seconds, clock=self._clock)

        existing = self._store.get(document_id)
        if existing is not None and existing.status is not DocumentStatus.PENDING:
            logger.info(
                "Ignoring trigger for %s; record is %s", document_id, existing.status.value,
                extra={"document_id": document_id, "object_key": object_key},
            )
            return IngestionOutcome(
                document_id=document_id,
                object_key=object_key,
                status=existing.status,
                skipped=True,
                reason=f"already {existing.status.value.lower()}",
            )

        if existing is None:
            self._store.create_pending(document_id, object_key=object_key, bucket=bucket)

        deadline.check("claim")
        claimed = self._store.claim(document_id)
        if claimed is None:
            logger.info("Duplicate trigger for %s lost the claim", document_id, extra={"document_id": document_id})
            return IngestionOutcome(
                document_id=document_id,
                object_key=object_key,
                status=None,
                skipped=True,
                reason="claimed by another trigger",
            )

        return self._extract(claimed, DocumentReference(bucket=bucket, key=object_key), deadline)

    def retry_failed(self, document_id: str) -> Optional[DocumentRecord]:
        """Return a Failed document to Pending with a fresh attempt budget."""

        record = self._store.reset_failed(document_id)
        if record is None:
            logger.info("Document %s is not in Failed state; nothing to retry", document_id)
        else:
            logger.info("Document %s reset to Pending for reprocessing", document_id)
        return record

    def get_status(self, document_id: str) -> Optional[DocumentRecord]:
        return self._store.get(document_id)

    def _extract(self, record: DocumentRecord, reference: DocumentReference, deadline: Deadline) -> IngestionOutcome:
        attempt = record.attempts + 1
        try:
            payload = self._extractor.extract(reference, deadline=deadline)
        except DeadlineExceeded:
            logger.error(
                "Deadline reached while extracting %s; record left in Processing", record.document_id,
                extra={"document_id": record.document_id, "attempt": attempt},
            )
            raise
        except ExternalServiceError as exc:
            if deadline.expired():
                logger.error("Extraction of %s overran the deadline; record left in Processing", record.document_id)
                raise DeadlineExceeded("extraction", deadline.budget_seconds) from exc
            return self._record_failure(record, reference, attempt, exc)

        try:
            completed = self._store.complete(record.document_id, payload=payload, attempts=attempt)
        except ExternalServiceError as exc:
            logger.error(
                "Persisting the extraction result for %s failed: %s", record.document_id, exc,
                extra={"document_id": record.document_id, "attempt": attempt},
            )
            error = ErrorDescriptor(code="PayloadPersistFailed", message=str(exc), retryable=exc.retryable)
            return self._record_failure(record, reference, attempt, exc, error=error)

        logger.info(
            "Extraction complete for %s", record.document_id,
            extra={"document_id": record.document_id, "attempt": attempt},
        )
        return IngestionOutcome(
            document_id=record.document_id,
            object_key=reference.key,
            status=completed.status,
        )

    def _record_failure(
        self,
        record: DocumentRecord,
        reference: DocumentReference,
        attempt: int,
        exc: ExternalServiceError,
        *,
        error: Optional[ErrorDescriptor] = None,
    ) -> IngestionOutcome:
        error = error or ErrorDescriptor.from_exception(exc)
        if not exc.retryable or attempt >= self._config.max_attempts:
            updated = self._store.mark_failed(record.document_id, attempts=attempt, error=error)
            logger.error(
                "Extraction of %s failed permanently after %d attempt(s): %s", record.document_id, attempt, exc,
                extra={"document_id": record.document_id, "error_code": error.code},
            )
        else:
            updated = self._store.release_for_retry(record.document_id, attempts=attempt, error=error)
            logger.warning(
                "Extraction of %s failed (attempt %d of %d); returned to Pending: %s",
                record.document_id, attempt, self._config.max_attempts, exc,
                extra={"document_id": record.document_id, "error_code": error.code},
            )
        return IngestionOutcome(
            document_id=record.document_id,
            object_key=reference.key,
            status=updated.status,
            error=error,
        )


__all__ = ["IngestionConfig", "IngestionOutcome", "IngestionPipeline"]
