import json
import logging
import sys
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

# Allow tests to import the project packages without installation.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from platform_common.deadline import Deadline  # noqa: E402
from platform_common.errors import (  # noqa: E402
    DeadlineExceeded,
    ExternalServiceError,
    PermanentExtractionError,
    TransientExternalError,
    classify_client_error,
)
from platform_common.observability import StructuredEventLogger  # noqa: E402


class _LambdaContext:
    def get_remaining_time_in_millis(self):
        return 5000


def _client_error(code, status):
    return ClientError(
        {"Error": {"Code": code, "Message": "msg"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


def test_deadline_tracks_remaining_budget():
    now = [100.0]
    deadline = Deadline(30, clock=lambda: now[0])

    assert deadline.remaining() == 30.0
    deadline.check("start")

    now[0] += 31
    assert deadline.expired()
    assert deadline.remaining() == 0.0
    with pytest.raises(DeadlineExceeded, match="asset write"):
        deadline.check("asset write")


def test_deadline_is_capped_by_lambda_remaining_time():
    deadline = Deadline.for_lambda(30, _LambdaContext(), safety_margin_seconds=1.0, clock=lambda: 0.0)

    assert deadline.budget_seconds == 4.0
    assert Deadline.for_lambda(30, None, clock=lambda: 0.0).budget_seconds == 30.0


def test_deadline_requires_positive_budget():
    with pytest.raises(ValueError):
        Deadline(0)


def test_classify_client_error():
    assert isinstance(classify_client_error(_client_error("ThrottlingException", 400), operation="op"), TransientExternalError)
    assert isinstance(classify_client_error(_client_error("Mystery", 503), operation="op"), TransientExternalError)
    assert isinstance(classify_client_error(_client_error("Mystery", 429), operation="op"), TransientExternalError)
    permanent = classify_client_error(_client_error("Mystery", 400), operation="op")
    assert isinstance(permanent, PermanentExtractionError)
    assert permanent.to_dict() == {"code": "Mystery", "message": "op failed with Mystery: msg", "retryable": False}


def test_classify_uses_caller_permanent_type():
    class _StoreError(ExternalServiceError):
        retryable = False

    error = classify_client_error(_client_error("AccessDenied", 403), operation="op", permanent_error=_StoreError)

    assert isinstance(error, _StoreError)


def test_structured_event_logger_records_lifecycle(caplog):
    logger = logging.getLogger("tests.structured")

    with caplog.at_level(logging.INFO, logger="tests.structured"):
        with pytest.raises(RuntimeError):
            with StructuredEventLogger(job_name="unit", context={"stage": "test"}, logger=logger) as events:
                events.log_event("progress", count=2)
                raise RuntimeError("boom")

    payloads = [json.loads(record.getMessage()) for record in caplog.records]
    assert [payload["event_name"] for payload in payloads] == ["started", "progress", "completed"]
    assert payloads[1]["count"] == 2
    assert payloads[2]["status"] == "failed"
    assert payloads[2]["error_message"] == "boom"
    assert all(payload["stage"] == "test" for payload in payloads)


@pytest.mark.parametrize("remaining", [300.0, 29.0, 4.0, 0.5])
def test_client_config_fits_remaining_budget(remaining):
    now = [0.0]
    deadline = Deadline(remaining, clock=lambda: now[0])

    config = deadline.client_config(connect_timeout=10.0, read_timeout=60.0)

    attempts = config.retries["total_max_attempts"]
    backoff = sum(2 ** retry for retry in range(1, attempts))
    assert config.retries["mode"] == "standard"
    assert 1 <= attempts <= 3
    assert config.connect_timeout <= 10.0
    assert config.read_timeout <= 60.0
    worst_case = attempts * (config.connect_timeout + config.read_timeout) + backoff
    assert worst_case <= max(remaining, 1.0) + 1e-9


def test_client_config_shrinks_as_budget_is_spent():
    now = [0.0]
    deadline = Deadline(30, clock=lambda: now[0])
    fresh = deadline.client_config(connect_timeout=10.0, read_timeout=10.0)

    now[0] = 25.0
    late = deadline.client_config(connect_timeout=10.0, read_timeout=10.0)

    assert late.retries["total_max_attempts"] < fresh.retries["total_max_attempts"]
    assert late.read_timeout < fresh.read_timeout
