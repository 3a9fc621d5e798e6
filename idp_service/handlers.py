"""Lambda handler that runs the ingestion pipeline for uploaded documents."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional
from urllib.parse import unquote_plus

import boto3

from platform_common.deadline import Deadline
from platform_common.observability import StructuredEventLogger, configure_logging

from .document_record_storage import DynamoDBDocumentRecordStore
from .extraction import TextractExtractionService
from .ingestion_pipeline import IngestionConfig, IngestionOutcome, IngestionPipeline
from .records import InvalidObjectKey

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)


class UnsupportedTriggerEvent(ValueError):
    """The invocation payload is not an upload notification."""


class RetryableIngestionError(RuntimeError):
    """Raised so the trigger platform redelivers documents returned to Pending."""

    def __init__(self, outcomes: List[IngestionOutcome]) -> None:
        ids = ", ".join(outcome.document_id for outcome in outcomes)
        super().__init__(f"Extraction will be retried for: {ids}")
        self.outcomes = outcomes


@dataclass(frozen=True)
class UploadTrigger:
    """A single object-created notification."""

    bucket: Optional[str]
    object_key: str


def iter_upload_triggers(event: Mapping[str, Any], *, default_bucket: Optional[str] = None) -> Iterator[UploadTrigger]:
    """Yield upload triggers from S3, SQS-wrapped S3, EventBridge or direct payloads."""

    if "objectKey" in event:
        yield UploadTrigger(bucket=event.get("bucket") or default_bucket, object_key=str(event["objectKey"]))
        return

    if event.get("source") == "aws.s3" and isinstance(event.get("detail"), Mapping):
        detail = event["detail"]
        yield UploadTrigger(
            bucket=(detail.get("bucket") or {}).get("name") or default_bucket,
            object_key=detail["object"]["key"],
        )
        return

    records = event.get("Records")
    if not isinstance(records, list):
        raise UnsupportedTriggerEvent("Event contains neither objectKey nor Records")

    for record in records:
        if record.get("eventSource") == "aws:sqs":
            body = json.loads(record.get("body") or "{}")
            if body.get("Event") == "s3:TestEvent":
                LOGGER.info("Ignoring S3 test notification")
                continue
            yield from iter_upload_triggers(body, default_bucket=default_bucket)
            continue

        s3_payload = record.get("s3")
        if not s3_payload:
            LOGGER.warning("Skipping record without S3 payload: %s", record.get("eventSource"))
            continue
        event_name = record.get("eventName", "ObjectCreated")
        if not event_name.startswith("ObjectCreated"):
            LOGGER.info("Ignoring %s notification", event_name)
            continue
        yield UploadTrigger(
            bucket=s3_payload.get("bucket", {}).get("name") or default_bucket,
            # S3 notifications URL-encode object keys.
            object_key=unquote_plus(s3_payload["object"]["key"]),
        )


def build_pipeline(config: IngestionConfig, deadline: Optional[Deadline] = None) -> IngestionPipeline:
    if not config.table_name:
        raise RuntimeError("DDB_TABLE_NAME is required to persist extraction results")

    deadline = deadline or Deadline(config.timeout_seconds)
    boto_config = deadline.client_config(connect_timeout=5.0, read_timeout=60.0)
    textract = boto3.client("textract", region_name=config.region, config=boto_config)
    store = DynamoDBDocumentRecordStore.from_table_name(config.table_name, region=config.region, config=boto_config)
    extractor = TextractExtractionService(
        textract,
        feature_types=config.feature_types,
        poll_interval_seconds=config.poll_interval_seconds,
    )
    return IngestionPipeline(store=store, extractor=extractor, config=config)


def process_event(
    event: Mapping[str, Any],
    *,
    pipeline: IngestionPipeline,
    config: IngestionConfig,
    deadline: Deadline,
) -> Dict[str, Any]:
    triggers = list(iter_upload_triggers(event, default_bucket=config.bucket))
    outcomes: List[IngestionOutcome] = []

    with StructuredEventLogger(
        job_name="document-ingestion",
        context={"trigger_count": len(triggers)},
        logger=LOGGER,
    ) as events:
        for trigger in triggers:
            try:
                outcome = pipeline.on_upload(trigger.object_key, bucket=trigger.bucket, deadline=deadline)
            except InvalidObjectKey as exc:
                # Folder markers and similar keys must not block the rest of the batch.
                LOGGER.warning("Skipping upload notification: %s", exc)
                outcome = IngestionOutcome(
                    document_id=None,
                    object_key=trigger.object_key,
                    status=None,
                    skipped=True,
                    reason="not a document",
                )
            events.log_event("document_processed", **outcome.to_dict())
            outcomes.append(outcome)

    pending = [outcome for outcome in outcomes if outcome.retry_scheduled]
    if pending:
        raise RetryableIngestionError(pending)

    return {
        "processed": len(outcomes),
        "outcomes": [outcome.to_dict() for outcome in outcomes],
    }


def lambda_handler(event: Dict[str, Any], context: Optional[Any]) -> Dict[str, Any]:
    """Entry point for upload notifications."""

    configure_logging()
    config = IngestionConfig.from_env()
    deadline = Deadline.for_lambda(config.timeout_seconds, context, safety_margin_seconds=5.0)
    return process_event(event, pipeline=build_pipeline(config, deadline), config=config, deadline=deadline)


__all__ = [
    "RetryableIngestionError",
    "UnsupportedTriggerEvent",
    "UploadTrigger",
    "build_pipeline",
    "iter_upload_triggers",
    "lambda_handler",
    "process_event",
]
