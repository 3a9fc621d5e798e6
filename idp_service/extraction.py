"""Extraction service boundary and the Textract-backed implementation."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from platform_common.deadline import Deadline
from platform_common.errors import (
    PermanentExtractionError,
    TransientExternalError,
    classify_client_error,
)

from .textract_adapter import AdapterError, TextractResultAdapter

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_TYPES = ("TABLES", "FORMS")
# Multi-page formats are only accepted by the asynchronous API.
ASYNC_SUFFIXES = (".pdf", ".tif", ".tiff")


@dataclass(frozen=True)
class DocumentReference:
    """Location of a source document in the content store."""

    bucket: str
    key: str
    version_id: Optional[str] = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def to_s3_object(self) -> Dict[str, str]:
        s3_object = {"Bucket": self.bucket, "Name": self.key}
        if self.version_id:
            s3_object["Version"] = self.version_id
        return s3_object


class ExtractionService(Protocol):
    """Converts a stored document into a structured payload.

    Implementations raise :class:`~platform_common.errors.ExternalServiceError`
    subclasses, carrying the retryable/permanent distinction.
    """

    def extract(self, document: DocumentReference, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        ...


class TextractExtractionService:
    """Runs Textract document analysis and adapts the result."""

    def __init__(
        self,
        client: Any,
        *,
        feature_types: Sequence[str] = DEFAULT_FEATURE_TYPES,
        adapter: Optional[TextractResultAdapter] = None,
        poll_interval_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._feature_types = list(feature_types)
        self._adapter = adapter or TextractResultAdapter()
        self._poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep

    def extract(self, document: DocumentReference, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        try:
            if document.key.lower().endswith(ASYNC_SUFFIXES):
                response = self._analyze_async(document, deadline)
            else:
                logger.debug("Submitting %s to AnalyzeDocument", document.uri)
                response = self._client.analyze_document(
                    Document={"S3Object": document.to_s3_object()},
                    FeatureTypes=self._feature_types,
                )
        except ClientError as exc:
            raise classify_client_error(exc, operation="Textract analysis") from exc
        except BotoCoreError as exc:
            raise TransientExternalError(f"Textract call failed for {document.uri}: {exc}") from exc

        try:
            return self._adapter.transform(response)
        except AdapterError as exc:
            raise TransientExternalError(
                f"Malformed Textract response for {document.uri}: {exc}", code="MalformedResponse"
            ) from exc

    def _analyze_async(self, document: DocumentReference, deadline: Optional[Deadline]) -> Dict[str, Any]:
        start = self._client.start_document_analysis(
            DocumentLocation={"S3Object": document.to_s3_object()},
            FeatureTypes=self._feature_types,
            ClientRequestToken=_client_request_token(document),
        )
        job_id = start["JobId"]
        logger.info("Started Textract job %s for %s", job_id, document.uri)

        while True:
            if deadline is not None:
                deadline.check(f"Textract job {job_id}")
            response = self._client.get_document_analysis(JobId=job_id, MaxResults=1000)
            status = response.get("JobStatus")
            if status == "IN_PROGRESS":
                wait_for = self._poll_interval_seconds
                if deadline is not None:
                    wait_for = min(wait_for, deadline.remaining())
                self._sleep(wait_for)
                continue
            if status == "FAILED":
                raise PermanentExtractionError(
                    f"Textract job {job_id} failed: {response.get('StatusMessage', 'no status message')}",
                    code="TextractJobFailed",
                )
            if status not in {"SUCCEEDED", "PARTIAL_SUCCESS"}:
                raise TransientExternalError(f"Textract job {job_id} returned unexpected status {status!r}")
            break

        if status == "PARTIAL_SUCCESS":
            logger.warning("Textract job %s partially succeeded", job_id, extra={"warnings": response.get("Warnings")})

        blocks: List[Dict[str, Any]] = list(response.get("Blocks", []))
        next_token = response.get("NextToken")
        while next_token:
            if deadline is not None:
                deadline.check(f"Textract job {job_id} results")
            page = self._client.get_document_analysis(JobId=job_id, MaxResults=1000, NextToken=next_token)
            blocks.extend(page.get("Blocks", []))
            next_token = page.get("NextToken")

        return {
            "JobStatus": status,
            "DocumentMetadata": response.get("DocumentMetadata", {}),
            "Blocks": blocks,
        }


def _client_request_token(document: DocumentReference) -> str:
    # Textract returns the original JobId for a repeated token.
    seed = f"{document.bucket}/{document.key}@{document.version_id or ''}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:64]


__all__ = [
    "ASYNC_SUFFIXES",
    "DEFAULT_FEATURE_TYPES",
    "DocumentReference",
    "ExtractionService",
    "TextractExtractionService",
]
