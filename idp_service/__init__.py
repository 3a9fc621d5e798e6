"""Idempotent document ingestion: claim, extract and persist uploaded documents."""

from .document_record_storage import (
    DocumentRecordStore,
    DynamoDBDocumentRecordStore,
    InMemoryDocumentRecordStore,
)
from .extraction import DocumentReference, ExtractionService, TextractExtractionService
from .ingestion_pipeline import IngestionConfig, IngestionOutcome, IngestionPipeline
from .records import DocumentRecord, DocumentStatus, ErrorDescriptor, document_id_from_key

__all__ = [
    "DocumentRecord",
    "DocumentRecordStore",
    "DocumentReference",
    "DocumentStatus",
    "DynamoDBDocumentRecordStore",
    "ErrorDescriptor",
    "ExtractionService",
    "InMemoryDocumentRecordStore",
    "IngestionConfig",
    "IngestionOutcome",
    "IngestionPipeline",
    "TextractExtractionService",
    "document_id_from_key",
]
