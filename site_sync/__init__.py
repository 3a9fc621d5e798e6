"""Custom-resource handler that wires the runtime API endpoint into the static site."""

from .contracts import DeploymentEvent, LifecycleResponse, LifecycleStatus, RequestType
from .handlers import LifecycleFailed, on_event
from .synchronizer import (
    Asset,
    AssetStore,
    CdnInvalidator,
    StaticContentSynchronizer,
    SynchronizerConfig,
    render_asset,
)

__all__ = [
    "Asset",
    "AssetStore",
    "CdnInvalidator",
    "DeploymentEvent",
    "LifecycleFailed",
    "LifecycleResponse",
    "LifecycleStatus",
    "RequestType",
    "StaticContentSynchronizer",
    "SynchronizerConfig",
    "on_event",
    "render_asset",
]
