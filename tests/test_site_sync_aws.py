import sys
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError, WaiterError

# Allow tests to import the project packages without installation.
sys.path.append(str(Path(__file__).resolve().parents[1]))

from platform_common.errors import TransientExternalError  # noqa: E402
from site_sync.aws import CloudFrontInvalidator, S3AssetStore  # noqa: E402
from site_sync.synchronizer import Asset, AssetNotFoundError, AssetStoreError, CdnInvalidationError  # noqa: E402


def _client_error(code, status, operation):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class _FakeBody:
    def __init__(self, data):
        self._data = data
        self.closed = False

    def read(self):
        return self._data

    def close(self):
        self.closed = True


class _FakeS3Client:
    def __init__(self, objects=None, *, put_error=None, get_error=None):
        self.objects = dict(objects or {})
        self.put_calls = []
        self.bodies = []
        self._put_error = put_error
        self._get_error = get_error

    def get_object(self, Bucket, Key):
        if self._get_error is not None:
            raise self._get_error
        if Key not in self.objects:
            raise _client_error("NoSuchKey", 404, "GetObject")
        data, content_type, metadata = self.objects[Key]
        body = _FakeBody(data)
        self.bodies.append(body)
        return {"Body": body, "ContentType": content_type, "Metadata": metadata}

    def put_object(self, **kwargs):
        if self._put_error is not None:
            raise self._put_error
        self.put_calls.append(kwargs)


class _FakeWaiter:
    def __init__(self, error=None):
        self.calls = []
        self._error = error

    def wait(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error


class _FakeCloudFrontClient:
    def __init__(self, *, error=None, waiter=None):
        self.calls = []
        self._error = error
        self.waiter = waiter or _FakeWaiter()

    def create_invalidation(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return {"Location": "https://cloudfront/I2", "Invalidation": {"Id": "I2", "Status": "InProgress"}}

    def get_waiter(self, name):
        assert name == "invalidation_completed"
        return self.waiter


def test_s3_asset_store_reads_body_and_metadata():
    client = _FakeS3Client({"config.js": (b"data", "application/javascript", {"embedded-endpoint": "https://a"})})
    store = S3AssetStore(client, "website-bucket")

    asset = store.read("config.js")

    assert asset == Asset(b"data", "application/javascript", {"embedded-endpoint": "https://a"})
    assert client.bodies[0].closed


def test_s3_asset_store_maps_missing_object():
    store = S3AssetStore(_FakeS3Client(), "website-bucket")

    with pytest.raises(AssetNotFoundError, match="s3://website-bucket/config.js"):
        store.read("config.js")


def test_s3_asset_store_classifies_read_errors():
    throttled = S3AssetStore(_FakeS3Client(get_error=_client_error("SlowDown", 503, "GetObject")), "b")
    denied = S3AssetStore(_FakeS3Client(get_error=_client_error("AccessDenied", 403, "GetObject")), "b")

    with pytest.raises(TransientExternalError):
        throttled.read("config.js")
    with pytest.raises(AssetStoreError) as excinfo:
        denied.read("config.js")
    assert excinfo.value.retryable is False


def test_s3_asset_store_writes_full_object():
    client = _FakeS3Client()
    store = S3AssetStore(client, "website-bucket")

    store.write("config.js", Asset(b"new", "application/javascript", {"embedded-endpoint": "https://a"}))

    assert client.put_calls == [
        {
            "Bucket": "website-bucket",
            "Key": "config.js",
            "Body": b"new",
            "Metadata": {"embedded-endpoint": "https://a"},
            "ContentType": "application/javascript",
        }
    ]


def test_s3_asset_store_write_rejected():
    store = S3AssetStore(_FakeS3Client(put_error=_client_error("AccessDenied", 403, "PutObject")), "b")

    with pytest.raises(AssetStoreError, match="PutObject"):
        store.write("config.js", Asset(b"x"))


def test_cloudfront_invalidator_submits_batch():
    client = _FakeCloudFrontClient()

    invalidation_id = CloudFrontInvalidator(client).invalidate("E123", ["/config.js"], caller_reference="req-1")

    assert invalidation_id == "I2"
    assert client.calls == [
        {
            "DistributionId": "E123",
            "InvalidationBatch": {
                "Paths": {"Quantity": 1, "Items": ["/config.js"]},
                "CallerReference": "req-1",
            },
        }
    ]


def test_cloudfront_invalidator_wraps_errors():
    client = _FakeCloudFrontClient(error=_client_error("NoSuchDistribution", 404, "CreateInvalidation"))

    with pytest.raises(CdnInvalidationError) as excinfo:
        CloudFrontInvalidator(client).invalidate("E404", ["/config.js"], caller_reference="req-1")
    assert excinfo.value.code == "NoSuchDistribution"


def test_cloudfront_wait_is_bounded_by_timeout():
    client = _FakeCloudFrontClient()

    CloudFrontInvalidator(client, poll_interval_seconds=5).wait("E123", "I2", timeout_seconds=22)

    assert client.waiter.calls == [
        {"DistributionId": "E123", "Id": "I2", "WaiterConfig": {"Delay": 5, "MaxAttempts": 4}}
    ]


def test_cloudfront_wait_timeout_is_reported():
    waiter = _FakeWaiter(WaiterError(name="InvalidationCompleted", reason="Max attempts exceeded", last_response={}))
    client = _FakeCloudFrontClient(waiter=waiter)

    with pytest.raises(CdnInvalidationError, match="did not complete"):
        CloudFrontInvalidator(client).wait("E123", "I2", timeout_seconds=10)


def test_s3_asset_store_wraps_streaming_read_errors():
    class _BrokenBody(_FakeBody):
        def read(self):
            raise ReadTimeoutError(endpoint_url="https://s3.amazonaws.com/b/config.js")

    client = _FakeS3Client()
    body = _BrokenBody(b"")
    client.get_object = lambda Bucket, Key: {"Body": body, "ContentType": "application/javascript"}

    with pytest.raises(AssetStoreError, match="config.js"):
        S3AssetStore(client, "b").read("config.js")
    assert body.closed
