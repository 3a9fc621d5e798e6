"""Document records tracked by the ingestion pipeline."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

ISO8601_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class InvalidObjectKey(ValueError):
    """The object key does not name a document."""


class DocumentStatus(str, Enum):
    """States of the per-document extraction state machine."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETE = "Complete"
    FAILED = "Failed"


class ErrorDescriptor(BaseModel):
    """Last extraction error recorded on a document."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    retryable: bool

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorDescriptor":
        return cls(
            code=getattr(exc, "code", None) or type(exc).__name__,
            message=str(exc),
            retryable=bool(getattr(exc, "retryable", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class DocumentRecord(BaseModel):
    """One row per uploaded document, keyed by ``document_id``."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    status: DocumentStatus
    object_key: Optional[str] = None
    bucket: Optional[str] = None
    extracted_payload: Optional[Dict[str, Any]] = None
    attempts: int = 0
    last_error: Optional[ErrorDescriptor] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        """Serialise into a DynamoDB item. The payload is stored as JSON text."""

        item: Dict[str, Any] = {
            "documentId": self.document_id,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.object_key is not None:
            item["objectKey"] = self.object_key
        if self.bucket is not None:
            item["bucket"] = self.bucket
        if self.extracted_payload is not None:
            item["extractedPayload"] = json.dumps(self.extracted_payload)
        if self.last_error is not None:
            item["lastError"] = self.last_error.to_dict()
        if self.created_at is not None:
            item["createdAt"] = self.created_at
        if self.updated_at is not None:
            item["updatedAt"] = self.updated_at
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "DocumentRecord":
        payload = item.get("extractedPayload")
        if isinstance(payload, str):
            payload = json.loads(payload)
        error = item.get("lastError")
        return cls(
            document_id=item["documentId"],
            status=DocumentStatus(item["status"]),
            object_key=item.get("objectKey"),
            bucket=item.get("bucket"),
            extracted_payload=payload,
            attempts=int(item.get("attempts", 0)),
            last_error=ErrorDescriptor(
                code=error["code"], message=error["message"], retryable=bool(error["retryable"])
            )
            if error
            else None,
            created_at=item.get("createdAt"),
            updated_at=item.get("updatedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "document_id": self.document_id,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.extracted_payload is not None:
            payload["extracted_payload"] = self.extracted_payload
        if self.last_error is not None:
            payload["last_error"] = self.last_error.to_dict()
        return payload


def document_id_from_key(object_key: str) -> str:
    """Derive the document identity from a storage key.

    ``docs/invoice-42.pdf`` becomes ``invoice-42``: the final path segment
    without its last extension.
    """

    key = (object_key or "").strip()
    if not key or key.endswith("/"):
        raise InvalidObjectKey(f"Object key {object_key!r} does not name a document")
    name = PurePosixPath(key).name
    stem, dot, _extension = name.rpartition(".")
    document_id = stem if dot and stem else name
    if not document_id:
        raise InvalidObjectKey(f"Object key {object_key!r} does not name a document")
    return document_id


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime(ISO8601_FORMAT)


__all__ = [
    "DocumentRecord",
    "DocumentStatus",
    "ErrorDescriptor",
    "ISO8601_FORMAT",
    "InvalidObjectKey",
    "document_id_from_key",
    "utc_timestamp",
]
