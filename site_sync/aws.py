"""boto3-backed asset store and CDN invalidator."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from platform_common.errors import classify_client_error, client_error_code

from .synchronizer import Asset, AssetNotFoundError, AssetStoreError, CdnInvalidationError

LOGGER = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


def create_client(service: str, *, region: Optional[str] = None, config: Optional[Config] = None):
    return boto3.client(service, region_name=region, config=config)


class S3AssetStore:
    """Reads and writes whole objects in the website bucket."""

    def __init__(self, client: Any, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    def read(self, key: str) -> Asset:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body = response["Body"]
            try:
                payload = body.read()
            finally:
                body.close()
        except ClientError as exc:
            if client_error_code(exc) in _MISSING_OBJECT_CODES:
                raise AssetNotFoundError(
                    f"Asset s3://{self._bucket}/{key} does not exist", code="NoSuchKey"
                ) from exc
            raise classify_client_error(exc, operation="S3 GetObject", permanent_error=AssetStoreError) from exc
        except BotoCoreError as exc:
            # Streaming failures surface from body.read().
            raise AssetStoreError(f"S3 GetObject failed for {key}: {exc}") from exc

        return Asset(
            body=payload,
            content_type=response.get("ContentType"),
            metadata=dict(response.get("Metadata") or {}),
        )

    def write(self, key: str, asset: Asset) -> None:
        request: Dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": asset.body,
            "Metadata": dict(asset.metadata),
        }
        if asset.content_type:
            request["ContentType"] = asset.content_type
        try:
            self._client.put_object(**request)
        except ClientError as exc:
            raise classify_client_error(exc, operation="S3 PutObject", permanent_error=AssetStoreError) from exc
        except BotoCoreError as exc:
            raise AssetStoreError(f"S3 PutObject failed for {key}: {exc}") from exc
        LOGGER.debug("Wrote %d bytes to s3://%s/%s", len(asset.body), self._bucket, key)


class CloudFrontInvalidator:
    """Issues CloudFront invalidations and optionally waits for them."""

    def __init__(self, client: Any, *, poll_interval_seconds: int = 5) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds

    def invalidate(self, distribution_id: str, paths: Sequence[str], *, caller_reference: str) -> str:
        try:
            response = self._client.create_invalidation(
                DistributionId=distribution_id,
                InvalidationBatch={
                    "Paths": {"Quantity": len(paths), "Items": list(paths)},
                    "CallerReference": caller_reference,
                },
            )
        except ClientError as exc:
            code = client_error_code(exc)
            raise CdnInvalidationError(
                f"CloudFront CreateInvalidation failed for {distribution_id} with {code}", code=code
            ) from exc
        except BotoCoreError as exc:
            raise CdnInvalidationError(f"CloudFront CreateInvalidation failed for {distribution_id}: {exc}") from exc
        return response["Invalidation"]["Id"]

    def wait(self, distribution_id: str, invalidation_id: str, *, timeout_seconds: float) -> None:
        max_attempts = max(1, math.floor(timeout_seconds / self._poll_interval_seconds))
        waiter = self._client.get_waiter("invalidation_completed")
        try:
            waiter.wait(
                DistributionId=distribution_id,
                Id=invalidation_id,
                WaiterConfig={"Delay": self._poll_interval_seconds, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            raise CdnInvalidationError(
                f"Invalidation {invalidation_id} on {distribution_id} did not complete within {timeout_seconds:.0f}s",
                code="InvalidationNotCompleted",
            ) from exc


__all__ = ["CloudFrontInvalidator", "S3AssetStore", "create_client"]
