"""Typed contracts for the custom-resource lifecycle protocol."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from platform_common.errors import LifecycleInputError

ENDPOINT_URL = "endpointUrl"
TARGET_ASSET_KEY = "targetAssetKey"
CDN_ID = "cdnId"
REQUIRED_PROPERTIES = (ENDPOINT_URL, TARGET_ASSET_KEY, CDN_ID)

# Properties injected by the orchestrator that are not part of the resource.
_RESERVED_PROPERTIES = {"ServiceToken"}


class RequestType(str, Enum):
    """Lifecycle operations issued by the orchestrator."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class LifecycleStatus(str, Enum):
    """Terminal outcome reported for a lifecycle event."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def mint_physical_resource_id(prefix: str = "static-content-sync") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class DeploymentEvent(BaseModel):
    """One lifecycle invocation of the static content synchronizer."""

    request_type: RequestType
    resource_properties: Dict[str, str] = Field(default_factory=dict)
    physical_resource_id: Optional[str] = None
    request_id: Optional[str] = None
    response_url: Optional[str] = None
    stack_id: Optional[str] = None
    logical_resource_id: Optional[str] = None

    @classmethod
    def from_lambda_event(
        cls,
        event: Mapping[str, Any],
        *,
        defaults: Optional[Mapping[str, str]] = None,
    ) -> "DeploymentEvent":
        """Parse a CloudFormation custom-resource envelope.

        ``defaults`` fill properties the template did not set explicitly.
        """

        properties: Dict[str, str] = {
            key: value for key, value in (defaults or {}).items() if value
        }
        for key, value in (event.get("ResourceProperties") or {}).items():
            if key in _RESERVED_PROPERTIES or value is None:
                continue
            properties[key] = str(value)

        try:
            request_type = RequestType(event["RequestType"])
        except KeyError as exc:
            raise LifecycleInputError("Lifecycle event is missing RequestType") from exc
        except ValueError as exc:
            raise LifecycleInputError(f"Unsupported RequestType {event['RequestType']!r}") from exc

        return cls(
            request_type=request_type,
            resource_properties=properties,
            physical_resource_id=event.get("PhysicalResourceId"),
            request_id=event.get("RequestId"),
            response_url=event.get("ResponseURL"),
            stack_id=event.get("StackId"),
            logical_resource_id=event.get("LogicalResourceId"),
        )

    @property
    def endpoint_url(self) -> str:
        return self.resource_properties[ENDPOINT_URL]

    @property
    def target_asset_key(self) -> str:
        return self.resource_properties[TARGET_ASSET_KEY]

    @property
    def cdn_id(self) -> str:
        return self.resource_properties[CDN_ID]

    def require_properties(self) -> None:
        """Fail fast when the event cannot be applied."""

        missing = [name for name in REQUIRED_PROPERTIES if not self.resource_properties.get(name, "").strip()]
        if missing:
            raise LifecycleInputError(
                f"{self.request_type.value} request is missing required properties: {', '.join(missing)}"
            )
        if self.request_type is RequestType.UPDATE and not self.physical_resource_id:
            raise LifecycleInputError("Update request is missing PhysicalResourceId")


class LifecycleResponse(BaseModel):
    """Terminal outcome of one lifecycle event."""

    status: LifecycleStatus
    physical_resource_id: str
    reason: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def success(cls, physical_resource_id: str, data: Optional[Dict[str, str]] = None) -> "LifecycleResponse":
        return cls(status=LifecycleStatus.SUCCESS, physical_resource_id=physical_resource_id, data=data or {})

    @classmethod
    def failed(cls, physical_resource_id: str, reason: str) -> "LifecycleResponse":
        return cls(status=LifecycleStatus.FAILED, physical_resource_id=physical_resource_id, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.status is LifecycleStatus.SUCCESS

    def to_provider_result(self) -> Dict[str, Any]:
        """Return value expected by the CDK custom-resource provider framework."""

        return {"PhysicalResourceId": self.physical_resource_id, "Data": dict(self.data)}

    def to_cloudformation(self, event: DeploymentEvent) -> Dict[str, Any]:
        """Response document uploaded to the pre-signed ``ResponseURL``."""

        payload: Dict[str, Any] = {
            "Status": self.status.value,
            "PhysicalResourceId": self.physical_resource_id,
            "StackId": event.stack_id,
            "RequestId": event.request_id,
            "LogicalResourceId": event.logical_resource_id,
            "NoEcho": False,
            "Data": dict(self.data),
        }
        if self.reason:
            # CloudFormation rejects response documents over 4 KiB.
            payload["Reason"] = self.reason[:1024]
        return payload


__all__ = [
    "CDN_ID",
    "DeploymentEvent",
    "ENDPOINT_URL",
    "LifecycleResponse",
    "LifecycleStatus",
    "REQUIRED_PROPERTIES",
    "RequestType",
    "TARGET_ASSET_KEY",
    "mint_physical_resource_id",
]
