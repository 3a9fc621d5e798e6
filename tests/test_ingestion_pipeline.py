import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

# Allow tests to import the project packages without installation.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from idp_service.document_record_storage import InMemoryDocumentRecordStore, ResultStoreError  # noqa: E402
from idp_service.extraction import DocumentReference  # noqa: E402
from idp_service.ingestion_pipeline import IngestionConfig, IngestionPipeline  # noqa: E402
from idp_service.records import DocumentStatus, InvalidObjectKey, document_id_from_key  # noqa: E402
from platform_common.deadline import Deadline  # noqa: E402
from platform_common.errors import (  # noqa: E402
    DeadlineExceeded,
    PermanentExtractionError,
    TransientExternalError,
)


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _RecordingExtractor:
    """Replays responses in order; the last one repeats."""

    def __init__(self, responses, *, on_call=None):
        self._responses = list(responses)
        self._lock = threading.Lock()
        self._on_call = on_call
        self.calls = []

    def extract(self, document, *, deadline=None):
        with self._lock:
            self.calls.append(document)
            response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if self._on_call is not None:
            self._on_call()
        if isinstance(response, BaseException):
            raise response
        return response


def _pipeline(responses, *, max_attempts=3, on_call=None):
    store = InMemoryDocumentRecordStore(clock=lambda: "2024-01-01T00:00:00.000000Z")
    extractor = _RecordingExtractor(responses, on_call=on_call)
    pipeline = IngestionPipeline(
        store=store,
        extractor=extractor,
        config=IngestionConfig(bucket="source-bucket", max_attempts=max_attempts),
    )
    return pipeline, store, extractor


def test_upload_is_extracted_and_recorded():
    pipeline, store, extractor = _pipeline([{"totalAmount": 120.50}])

    outcome = pipeline.on_upload("docs/invoice-42.pdf")

    assert outcome.document_id == "invoice-42"
    assert outcome.status is DocumentStatus.COMPLETE
    assert not outcome.skipped
    record = store.get("invoice-42")
    assert record.status is DocumentStatus.COMPLETE
    assert record.extracted_payload == {"totalAmount": 120.50}
    assert record.attempts == 1
    assert record.object_key == "docs/invoice-42.pdf"
    assert extractor.calls == [DocumentReference(bucket="source-bucket", key="docs/invoice-42.pdf")]
    assert store.writes == [
        ("create_pending", "invoice-42"),
        ("claim", "invoice-42"),
        ("complete", "invoice-42"),
    ]


def test_redelivery_after_complete_is_a_no_op():
    pipeline, store, extractor = _pipeline([{"totalAmount": 120.50}])
    pipeline.on_upload("docs/invoice-42.pdf")
    writes_before = list(store.writes)

    outcome = pipeline.on_upload("docs/invoice-42.pdf")

    assert outcome.skipped
    assert outcome.status is DocumentStatus.COMPLETE
    assert store.writes == writes_before
    assert len(extractor.calls) == 1


def test_concurrent_duplicate_triggers_claim_exactly_once():
    pipeline, store, extractor = _pipeline([{"pages": 1}])
    workers = 8
    barrier = threading.Barrier(workers)

    def _trigger():
        barrier.wait()
        return pipeline.on_upload("docs/invoice-42.pdf")

    with ThreadPoolExecutor(max_workers=workers) as executor:
        outcomes = list(executor.map(lambda _: _trigger(), range(workers)))

    claims = [write for write in store.writes if write[0] == "claim"]
    assert len(claims) == 1
    assert len(extractor.calls) == 1
    assert sum(1 for outcome in outcomes if not outcome.skipped) == 1
    assert store.get("invoice-42").status is DocumentStatus.COMPLETE


def test_claim_is_a_compare_and_swap():
    store = InMemoryDocumentRecordStore()
    assert store.create_pending("doc", object_key="doc.pdf", bucket="b") is True
    assert store.create_pending("doc", object_key="doc.pdf", bucket="b") is False

    first = store.claim("doc")
    second = store.claim("doc")

    assert first.status is DocumentStatus.PROCESSING
    assert second is None


def test_processing_record_is_not_reclaimed():
    pipeline, store, extractor = _pipeline([{"ok": True}])
    store.create_pending("invoice-42", object_key="docs/invoice-42.pdf", bucket="source-bucket")
    store.claim("invoice-42")

    outcome = pipeline.on_upload("docs/invoice-42.pdf")

    assert outcome.skipped
    assert outcome.status is DocumentStatus.PROCESSING
    assert extractor.calls == []


def test_retryable_failures_are_bounded():
    pipeline, store, extractor = _pipeline([TransientExternalError("throttled", code="ThrottlingException")])

    statuses = [pipeline.on_upload("docs/invoice-42.pdf").status for _ in range(5)]

    assert statuses == [
        DocumentStatus.PENDING,
        DocumentStatus.PENDING,
        DocumentStatus.FAILED,
        DocumentStatus.FAILED,
        DocumentStatus.FAILED,
    ]
    assert len(extractor.calls) == 3
    record = store.get("invoice-42")
    assert record.status is DocumentStatus.FAILED
    assert record.attempts == 3
    assert record.last_error.code == "ThrottlingException"
    assert record.extracted_payload is None


def test_retry_records_last_error_and_then_recovers():
    pipeline, store, _ = _pipeline([TransientExternalError("busy"), {"totalAmount": 1}])

    first = pipeline.on_upload("docs/invoice-42.pdf")
    assert first.retry_scheduled
    assert store.get("invoice-42").last_error.message == "busy"

    second = pipeline.on_upload("docs/invoice-42.pdf")

    record = store.get("invoice-42")
    assert second.status is DocumentStatus.COMPLETE
    assert record.attempts == 2
    assert record.last_error is None


def test_permanent_error_fails_immediately():
    pipeline, store, extractor = _pipeline(
        [PermanentExtractionError("unsupported", code="UnsupportedDocumentException")]
    )

    outcome = pipeline.on_upload("docs/invoice-42.pdf")

    assert outcome.status is DocumentStatus.FAILED
    assert not outcome.retry_scheduled
    assert outcome.error.retryable is False
    assert store.get("invoice-42").attempts == 1
    assert len(extractor.calls) == 1


def test_deadline_mid_extraction_leaves_record_processing():
    pipeline, store, _ = _pipeline([DeadlineExceeded("Textract job job-1", 300.0)])

    with pytest.raises(DeadlineExceeded):
        pipeline.on_upload("docs/invoice-42.pdf")

    record = store.get("invoice-42")
    assert record.status is DocumentStatus.PROCESSING
    assert record.attempts == 0


def test_service_error_after_deadline_is_a_timeout():
    clock = _Clock()

    def _slow():
        clock.now += 11.0

    pipeline, store, _ = _pipeline([TransientExternalError("read timeout")], on_call=_slow)

    with pytest.raises(DeadlineExceeded):
        pipeline.on_upload("docs/invoice-42.pdf", deadline=Deadline(10, clock=clock))

    assert store.get("invoice-42").status is DocumentStatus.PROCESSING
    assert store.get("invoice-42").attempts == 0


def test_retry_failed_resets_attempts():
    pipeline, store, _ = _pipeline([PermanentExtractionError("bad scan"), {"totalAmount": 3}])
    pipeline.on_upload("docs/invoice-42.pdf")

    reset = pipeline.retry_failed("invoice-42")

    assert reset.status is DocumentStatus.PENDING
    assert reset.attempts == 0
    assert reset.last_error is None
    assert pipeline.on_upload("docs/invoice-42.pdf").status is DocumentStatus.COMPLETE
    assert pipeline.retry_failed("invoice-42") is None
    assert pipeline.get_status("invoice-42").extracted_payload == {"totalAmount": 3}


def test_bucket_is_required():
    pipeline = IngestionPipeline(store=InMemoryDocumentRecordStore(), extractor=_RecordingExtractor([{}]))

    with pytest.raises(ValueError, match="bucket"):
        pipeline.on_upload("docs/invoice-42.pdf")


@pytest.mark.parametrize(
    "object_key, document_id",
    [
        ("docs/invoice-42.pdf", "invoice-42"),
        ("invoice-42.pdf", "invoice-42"),
        ("archive/2024/report.tar.gz", "report.tar"),
        ("scans/README", "README"),
        ("uploads/.hidden", ".hidden"),
    ],
)
def test_document_id_from_key(object_key, document_id):
    assert document_id_from_key(object_key) == document_id


@pytest.mark.parametrize("object_key", ["", "docs/", "   "])
def test_document_id_rejects_non_documents(object_key):
    with pytest.raises(InvalidObjectKey):
        document_id_from_key(object_key)


def test_config_from_env():
    config = IngestionConfig.from_env(
        {
            "S3_BUCKET_NAME": "source-bucket",
            "DDB_TABLE_NAME": "textract-table",
            "MAX_EXTRACTION_ATTEMPTS": "5",
            "TEXTRACT_FEATURE_TYPES": "tables, signatures",
        }
    )

    assert config.bucket == "source-bucket"
    assert config.table_name == "textract-table"
    assert config.max_attempts == 5
    assert config.feature_types == ("TABLES", "SIGNATURES")
    assert config.timeout_seconds == 300.0

    with pytest.raises(ValueError):
        IngestionConfig(max_attempts=0)


class _FailingCompleteStore(InMemoryDocumentRecordStore):
    """Rejects ``complete`` with the queued errors, then behaves normally."""

    def __init__(self, errors):
        super().__init__(clock=lambda: "2024-01-01T00:00:00.000000Z")
        self._errors = list(errors)

    def complete(self, document_id, *, payload, attempts):
        if self._errors:
            raise self._errors.pop(0)
        return super().complete(document_id, payload=payload, attempts=attempts)


def _pipeline_with_store(store, responses, *, max_attempts=3):
    extractor = _RecordingExtractor(responses)
    pipeline = IngestionPipeline(
        store=store,
        extractor=extractor,
        config=IngestionConfig(bucket="source-bucket", max_attempts=max_attempts),
    )
    return pipeline, extractor


def test_rejected_payload_fails_the_document():
    store = _FailingCompleteStore(
        [ResultStoreError("Item size has exceeded the maximum allowed size", code="ValidationException")] * 5
    )
    pipeline, extractor = _pipeline_with_store(store, [{"pages": 400}])

    outcome = pipeline.on_upload("docs/huge.pdf")

    assert outcome.status is DocumentStatus.FAILED
    record = store.get("huge")
    assert record.status is DocumentStatus.FAILED
    assert record.attempts == 1
    assert record.last_error.code == "PayloadPersistFailed"
    assert record.last_error.retryable is False
    assert pipeline.on_upload("docs/huge.pdf").skipped
    assert len(extractor.calls) == 1


def test_transient_persist_failure_counts_the_attempt():
    store = _FailingCompleteStore([TransientExternalError("throttled", code="ThrottlingException")])
    pipeline, extractor = _pipeline_with_store(store, [{"pages": 1}])

    first = pipeline.on_upload("docs/invoice-42.pdf")

    assert first.status is DocumentStatus.PENDING
    assert first.retry_scheduled
    assert store.get("invoice-42").attempts == 1
    assert store.get("invoice-42").last_error.code == "PayloadPersistFailed"

    second = pipeline.on_upload("docs/invoice-42.pdf")

    assert second.status is DocumentStatus.COMPLETE
    assert store.get("invoice-42").attempts == 2
    assert len(extractor.calls) == 2


def test_persist_failures_are_bounded():
    store = _FailingCompleteStore([TransientExternalError("throttled", code="ThrottlingException")] * 10)
    pipeline, extractor = _pipeline_with_store(store, [{"pages": 1}], max_attempts=3)

    for _ in range(5):
        pipeline.on_upload("docs/invoice-42.pdf")

    record = store.get("invoice-42")
    assert record.status is DocumentStatus.FAILED
    assert record.attempts == 3
    assert len(extractor.calls) == 3
