"""Persistence for document records with conditional status transitions."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from platform_common.errors import (
    ExternalServiceError,
    TransientExternalError,
    classify_client_error,
    client_error_code,
)

from .records import DocumentRecord, DocumentStatus, ErrorDescriptor, utc_timestamp

logger = logging.getLogger(__name__)


class ResultStoreError(ExternalServiceError):
    """The result store rejected a request."""

    retryable = False


class DocumentRecordStore(Protocol):
    """Keyed store for document records.

    ``create_pending``, ``claim`` and ``reset_failed`` are atomic conditional
    writes. The remaining writes are unconditional and last-writer-wins.
    """

    def get(self, document_id: str) -> Optional[DocumentRecord]:
        ...

    def create_pending(self, document_id: str, *, object_key: str, bucket: Optional[str]) -> bool:
        ...

    def claim(self, document_id: str) -> Optional[DocumentRecord]:
        ...

    def complete(self, document_id: str, *, payload: Dict[str, Any], attempts: int) -> DocumentRecord:
        ...

    def release_for_retry(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        ...

    def mark_failed(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        ...

    def reset_failed(self, document_id: str) -> Optional[DocumentRecord]:
        ...


class InMemoryDocumentRecordStore:
    """A lock-protected in-memory store for testing."""

    def __init__(self, *, clock: Callable[[], str] = utc_timestamp) -> None:
        self._records: Dict[str, DocumentRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.writes: List[Tuple[str, str]] = []

    def get(self, document_id: str) -> Optional[DocumentRecord]:
        with self._lock:
            return self._records.get(document_id)

    def create_pending(self, document_id: str, *, object_key: str, bucket: Optional[str]) -> bool:
        with self._lock:
            if document_id in self._records:
                return False
            now = self._clock()
            self._records[document_id] = DocumentRecord(
                document_id=document_id,
                status=DocumentStatus.PENDING,
                object_key=object_key,
                bucket=bucket,
                created_at=now,
                updated_at=now,
            )
            self.writes.append(("create_pending", document_id))
            return True

    def claim(self, document_id: str) -> Optional[DocumentRecord]:
        return self._transition(document_id, "claim", DocumentStatus.PENDING, status=DocumentStatus.PROCESSING)

    def complete(self, document_id: str, *, payload: Dict[str, Any], attempts: int) -> DocumentRecord:
        return self._put(
            document_id,
            "complete",
            status=DocumentStatus.COMPLETE,
            extracted_payload=payload,
            attempts=attempts,
            last_error=None,
        )

    def release_for_retry(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        return self._put(
            document_id, "release_for_retry", status=DocumentStatus.PENDING, attempts=attempts, last_error=error
        )

    def mark_failed(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        return self._put(
            document_id, "mark_failed", status=DocumentStatus.FAILED, attempts=attempts, last_error=error
        )

    def reset_failed(self, document_id: str) -> Optional[DocumentRecord]:
        return self._transition(
            document_id,
            "reset_failed",
            DocumentStatus.FAILED,
            status=DocumentStatus.PENDING,
            attempts=0,
            last_error=None,
        )

    def _transition(
        self, document_id: str, operation: str, expected: DocumentStatus, **updates: Any
    ) -> Optional[DocumentRecord]:
        with self._lock:
            record = self._records.get(document_id)
            if record is None or record.status is not expected:
                return None
            updated = record.model_copy(update={**updates, "updated_at": self._clock()})
            self._records[document_id] = updated
            self.writes.append((operation, document_id))
            return updated

    def _put(self, document_id: str, operation: str, **updates: Any) -> DocumentRecord:
        with self._lock:
            record = self._records.get(document_id) or DocumentRecord(
                document_id=document_id, status=updates["status"]
            )
            updated = record.model_copy(update={**updates, "updated_at": self._clock()})
            self._records[document_id] = updated
            self.writes.append((operation, document_id))
            return updated


class DynamoDBDocumentRecordStore:
    """Stores document records in a DynamoDB table keyed by ``documentId``."""

    def __init__(self, table: Any, *, clock: Callable[[], str] = utc_timestamp) -> None:
        self._table = table
        self._clock = clock

    @classmethod
    def from_table_name(cls, table_name: str, *, region: Optional[str] = None, config: Any = None) -> "DynamoDBDocumentRecordStore":
        dynamodb = boto3.resource("dynamodb", region_name=region, config=config)
        return cls(dynamodb.Table(table_name))

    def get(self, document_id: str) -> Optional[DocumentRecord]:
        response = self._call("GetItem", self._table.get_item, Key={"documentId": document_id}, ConsistentRead=True)
        item = response.get("Item") if response else None
        return DocumentRecord.from_item(item) if item else None

    def create_pending(self, document_id: str, *, object_key: str, bucket: Optional[str]) -> bool:
        now = self._clock()
        record = DocumentRecord(
            document_id=document_id,
            status=DocumentStatus.PENDING,
            object_key=object_key,
            bucket=bucket,
            created_at=now,
            updated_at=now,
        )
        try:
            self._call(
                "PutItem",
                self._table.put_item,
                Item=record.to_item(),
                ConditionExpression="attribute_not_exists(documentId)",
                conditional=True,
            )
        except _ConditionFailed:
            logger.debug("Record %s already exists", document_id)
            return False
        return True

    def claim(self, document_id: str) -> Optional[DocumentRecord]:
        return self._conditional_update(
            document_id,
            expected=DocumentStatus.PENDING,
            update_expression="SET #status = :next, updatedAt = :now",
            values={":next": DocumentStatus.PROCESSING.value},
        )

    def complete(self, document_id: str, *, payload: Dict[str, Any], attempts: int) -> DocumentRecord:
        return self._update(
            document_id,
            "SET #status = :status, extractedPayload = :payload, attempts = :attempts, updatedAt = :now "
            "REMOVE lastError",
            {
                ":status": DocumentStatus.COMPLETE.value,
                ":payload": json.dumps(payload),
                ":attempts": attempts,
            },
        )

    def release_for_retry(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        return self._update(
            document_id,
            "SET #status = :status, attempts = :attempts, lastError = :error, updatedAt = :now",
            {":status": DocumentStatus.PENDING.value, ":attempts": attempts, ":error": error.to_dict()},
        )

    def mark_failed(self, document_id: str, *, attempts: int, error: ErrorDescriptor) -> DocumentRecord:
        return self._update(
            document_id,
            "SET #status = :status, attempts = :attempts, lastError = :error, updatedAt = :now",
            {":status": DocumentStatus.FAILED.value, ":attempts": attempts, ":error": error.to_dict()},
        )

    def reset_failed(self, document_id: str) -> Optional[DocumentRecord]:
        return self._conditional_update(
            document_id,
            expected=DocumentStatus.FAILED,
            update_expression="SET #status = :next, attempts = :zero, updatedAt = :now REMOVE lastError",
            values={":next": DocumentStatus.PENDING.value, ":zero": 0},
        )

    # ------------------------------------------------------------------
    # DynamoDB helpers
    # ------------------------------------------------------------------

    def _conditional_update(
        self,
        document_id: str,
        *,
        expected: DocumentStatus,
        update_expression: str,
        values: Dict[str, Any],
    ) -> Optional[DocumentRecord]:
        try:
            response = self._call(
                "UpdateItem",
                self._table.update_item,
                Key={"documentId": document_id},
                UpdateExpression=update_expression,
                ConditionExpression="#status = :expected",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={**values, ":expected": expected.value, ":now": self._clock()},
                ReturnValues="ALL_NEW",
                conditional=True,
            )
        except _ConditionFailed:
            return None
        return DocumentRecord.from_item(response["Attributes"])

    def _update(self, document_id: str, update_expression: str, values: Dict[str, Any]) -> DocumentRecord:
        response = self._call(
            "UpdateItem",
            self._table.update_item,
            Key={"documentId": document_id},
            UpdateExpression=update_expression,
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={**values, ":now": self._clock()},
            ReturnValues="ALL_NEW",
        )
        return DocumentRecord.from_item(response["Attributes"])

    @staticmethod
    def _call(operation: str, method: Callable[..., Any], *, conditional: bool = False, **kwargs: Any) -> Any:
        try:
            return method(**kwargs)
        except ClientError as exc:
            if conditional and client_error_code(exc) == "ConditionalCheckFailedException":
                raise _ConditionFailed() from exc
            raise classify_client_error(
                exc, operation=f"DynamoDB {operation}", permanent_error=ResultStoreError
            ) from exc
        except BotoCoreError as exc:
            raise TransientExternalError(f"DynamoDB {operation} failed: {exc}") from exc


class _ConditionFailed(Exception):
    """Internal signal for a failed conditional write."""


__all__ = [
    "DocumentRecordStore",
    "DynamoDBDocumentRecordStore",
    "InMemoryDocumentRecordStore",
    "ResultStoreError",
]
