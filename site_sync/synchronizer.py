"""Lifecycle handler that embeds the API endpoint into deployed static content."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Sequence
from urllib.parse import quote

from platform_common.deadline import Deadline
from platform_common.errors import DeadlineExceeded, ExternalServiceError, LifecycleInputError

from .contracts import DeploymentEvent, LifecycleResponse, RequestType, mint_physical_resource_id

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "__API_ENDPOINT__"
EMBEDDED_ENDPOINT_METADATA_KEY = "embedded-endpoint"


class AssetStoreError(ExternalServiceError):
    """Reading or writing a static asset failed."""

    retryable = False


class AssetNotFoundError(AssetStoreError):
    """The static asset does not exist in the website bucket."""


class AssetRenderError(AssetStoreError):
    """The asset holds no placeholder or previously embedded endpoint."""


class CdnInvalidationError(ExternalServiceError):
    """The CDN rejected or failed an invalidation request."""


@dataclass
class Asset:
    """Full contents of a deployed static asset."""

    body: bytes
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class AssetStore(Protocol):
    """Whole-object access to the website bucket."""

    def read(self, key: str) -> Asset:
        ...

    def write(self, key: str, asset: Asset) -> None:
        ...


class CdnInvalidator(Protocol):
    """Path-scoped cache invalidation on the CDN front."""

    def invalidate(self, distribution_id: str, paths: Sequence[str], *, caller_reference: str) -> str:
        ...

    def wait(self, distribution_id: str, invalidation_id: str, *, timeout_seconds: float) -> None:
        ...


@dataclass(frozen=True)
class SynchronizerConfig:
    """Configuration for the static content synchronizer."""

    placeholder: str = DEFAULT_PLACEHOLDER
    timeout_seconds: float = 30.0
    wait_for_invalidation: bool = False


def render_asset(
    body: bytes,
    *,
    endpoint_url: str,
    placeholder: str = DEFAULT_PLACEHOLDER,
    previous_endpoint: Optional[str] = None,
) -> bytes:
    """Return ``body`` with the endpoint substituted.

    A fresh deployment carries ``placeholder``. Once rewritten, the previously
    embedded endpoint is replaced instead, so reapplying the same endpoint is a
    byte-for-byte no-op.
    """

    endpoint = endpoint_url.encode("utf-8")
    token = placeholder.encode("utf-8")
    if token in body:
        return body.replace(token, endpoint)
    if previous_endpoint:
        previous = previous_endpoint.encode("utf-8")
        if previous in body:
            return body.replace(previous, endpoint)
    if endpoint in body:
        return body
    raise AssetRenderError(
        f"Asset contains neither the placeholder {placeholder!r} nor a previously embedded endpoint",
        code="PlaceholderNotFound",
    )


def invalidation_path(asset_key: str) -> str:
    return "/" + quote(asset_key.lstrip("/"), safe="/*")


class StaticContentSynchronizer:
    """Applies Create/Update/Delete lifecycle events to the deployed site."""

    def __init__(
        self,
        *,
        assets: AssetStore,
        invalidator: CdnInvalidator,
        config: Optional[SynchronizerConfig] = None,
        id_factory: Callable[[], str] = mint_physical_resource_id,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._assets = assets
        self._invalidator = invalidator
        self._config = config or SynchronizerConfig()
        self._id_factory = id_factory
        self._clock = clock

    def handle(self, event: DeploymentEvent, *, deadline: Optional[Deadline] = None) -> LifecycleResponse:
        if event.request_type is RequestType.DELETE:
            # Teardown of the bucket removes the asset; nothing may block it.
            physical_id = event.physical_resource_id or self._id_factory()
            logger.info("Delete requested for %s; nothing to undo", physical_id)
            return LifecycleResponse.success(physical_id)

        deadline = deadline or Deadline(self._config.timeout_seconds, clock=self._clock)
        if event.request_type is RequestType.CREATE or not event.physical_resource_id:
            physical_id = self._id_factory()
        else:
            physical_id = event.physical_resource_id

        try:
            event.require_properties()
            data = self._synchronize(event, physical_id, deadline)
        except LifecycleInputError as exc:
            logger.error("Rejected %s request: %s", event.request_type.value, exc)
            return LifecycleResponse.failed(physical_id, str(exc))
        except DeadlineExceeded as exc:
            logger.error("Static content sync timed out: %s", exc)
            return LifecycleResponse.failed(physical_id, str(exc))
        except ExternalServiceError as exc:
            logger.error("Static content sync failed: %s", exc)
            return LifecycleResponse.failed(physical_id, str(exc))

        logger.info(
            "Synchronized static content",
            extra={"physical_resource_id": physical_id, "asset_key": event.target_asset_key},
        )
        return LifecycleResponse.success(physical_id, data)

    def _synchronize(self, event: DeploymentEvent, physical_id: str, deadline: Deadline) -> Dict[str, str]:
        key = event.target_asset_key
        endpoint_url = event.endpoint_url

        deadline.check("asset read")
        asset = self._assets.read(key)
        rendered = render_asset(
            asset.body,
            endpoint_url=endpoint_url,
            placeholder=self._config.placeholder,
            previous_endpoint=asset.metadata.get(EMBEDDED_ENDPOINT_METADATA_KEY),
        )
        metadata = {**asset.metadata, EMBEDDED_ENDPOINT_METADATA_KEY: endpoint_url}

        deadline.check("asset write")
        if rendered == asset.body and metadata == asset.metadata:
            logger.info("Asset %s already embeds %s; skipping write", key, endpoint_url)
        else:
            self._assets.write(key, Asset(body=rendered, content_type=asset.content_type, metadata=metadata))

        deadline.check("cdn invalidation")
        path = invalidation_path(key)
        caller_reference = event.request_id or f"{physical_id}-{int(time.time() * 1000)}"
        invalidation_id = self._invalidator.invalidate(event.cdn_id, [path], caller_reference=caller_reference)
        logger.info("Requested invalidation %s for %s on %s", invalidation_id, path, event.cdn_id)

        if self._config.wait_for_invalidation:
            deadline.check("invalidation wait")
            self._invalidator.wait(event.cdn_id, invalidation_id, timeout_seconds=deadline.remaining())

        return {
            "EndpointUrl": endpoint_url,
            "AssetKey": key,
            "InvalidationId": invalidation_id,
        }


__all__ = [
    "Asset",
    "AssetNotFoundError",
    "AssetRenderError",
    "AssetStore",
    "AssetStoreError",
    "CdnInvalidationError",
    "CdnInvalidator",
    "DEFAULT_PLACEHOLDER",
    "EMBEDDED_ENDPOINT_METADATA_KEY",
    "StaticContentSynchronizer",
    "SynchronizerConfig",
    "invalidation_path",
    "render_asset",
]
