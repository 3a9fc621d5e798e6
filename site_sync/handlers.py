"""Lambda entry point for the static content synchronizer custom resource."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from platform_common.deadline import Deadline
from platform_common.errors import LifecycleInputError
from platform_common.observability import StructuredEventLogger, configure_logging

from .aws import CloudFrontInvalidator, S3AssetStore, create_client
from .contracts import (
    CDN_ID,
    ENDPOINT_URL,
    TARGET_ASSET_KEY,
    DeploymentEvent,
    LifecycleResponse,
    RequestType,
    mint_physical_resource_id,
)
from .responses import send_cloudformation_response
from .synchronizer import DEFAULT_PLACEHOLDER, StaticContentSynchronizer, SynchronizerConfig

LOGGER = logging.getLogger(__name__)
LOGGER.setLevel(logging.INFO)

# Environment variables that stand in for resource properties the template omits.
ENVIRONMENT_PROPERTY_DEFAULTS = {
    "API_ENDPOINT": ENDPOINT_URL,
    "DISTRIBUTION_ID": CDN_ID,
    "TARGET_ASSET_KEY": TARGET_ASSET_KEY,
}


class LifecycleFailed(RuntimeError):
    """Raised to the provider framework so it reports the event as FAILED."""


@dataclass(frozen=True)
class HandlerSettings:
    """Runtime configuration resolved from the Lambda environment."""

    website_bucket: Optional[str] = None
    region: Optional[str] = None
    property_defaults: Dict[str, str] = field(default_factory=dict)
    synchronizer: SynchronizerConfig = field(default_factory=SynchronizerConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HandlerSettings":
        environ = os.environ if environ is None else environ
        defaults = {
            prop: environ[name]
            for name, prop in ENVIRONMENT_PROPERTY_DEFAULTS.items()
            if environ.get(name)
        }
        return cls(
            website_bucket=environ.get("WEBSITE_BUCKET") or None,
            region=environ.get("AWS_REGION") or None,
            property_defaults=defaults,
            synchronizer=SynchronizerConfig(
                placeholder=environ.get("ENDPOINT_PLACEHOLDER", DEFAULT_PLACEHOLDER),
                timeout_seconds=float(environ.get("SYNC_TIMEOUT_SECONDS", "30")),
                wait_for_invalidation=environ.get("WAIT_FOR_INVALIDATION", "false").lower() in {"1", "true", "yes"},
            ),
        )


def build_synchronizer(settings: HandlerSettings, deadline: Deadline) -> StaticContentSynchronizer:
    if not settings.website_bucket:
        raise LifecycleInputError("WEBSITE_BUCKET is not configured")
    # No single call, retries included, may outlive the invocation budget.
    config = deadline.client_config(connect_timeout=10.0, read_timeout=10.0)
    return StaticContentSynchronizer(
        assets=S3AssetStore(create_client("s3", region=settings.region, config=config), settings.website_bucket),
        invalidator=CloudFrontInvalidator(create_client("cloudfront", region=settings.region, config=config)),
        config=settings.synchronizer,
    )


def handle_event(
    event: DeploymentEvent,
    *,
    settings: HandlerSettings,
    deadline: Deadline,
    synchronizer: Optional[StaticContentSynchronizer] = None,
) -> LifecycleResponse:
    if event.request_type is not RequestType.DELETE and synchronizer is None:
        try:
            synchronizer = build_synchronizer(settings, deadline)
        except LifecycleInputError as exc:
            physical_id = event.physical_resource_id or mint_physical_resource_id()
            return LifecycleResponse.failed(physical_id, str(exc))
    if synchronizer is None:
        # Delete never touches AWS, so it must not depend on configuration either.
        physical_id = event.physical_resource_id or mint_physical_resource_id()
        return LifecycleResponse.success(physical_id)
    return synchronizer.handle(event, deadline=deadline)


def on_event(event: Dict[str, Any], context: Optional[Any]) -> Dict[str, Any]:
    """Handle one custom-resource lifecycle event.

    Under the CDK provider framework the result is returned (or
    :class:`LifecycleFailed` raised). When the event carries a ``ResponseURL``
    the response document is uploaded there directly.
    """

    configure_logging()
    settings = HandlerSettings.from_env()
    response_url = event.get("ResponseURL")

    with StructuredEventLogger(
        job_name="static-content-sync",
        context={"request_type": event.get("RequestType"), "request_id": event.get("RequestId")},
        logger=LOGGER,
    ):
        try:
            lifecycle_event = DeploymentEvent.from_lambda_event(event, defaults=settings.property_defaults)
            deadline = Deadline.for_lambda(settings.synchronizer.timeout_seconds, context)
            response = handle_event(lifecycle_event, settings=settings, deadline=deadline)
        except Exception as exc:
            if not response_url:
                raise
            # A missing response leaves the stack waiting for an hour.
            LOGGER.exception("Unhandled error while processing lifecycle event")
            lifecycle_event = DeploymentEvent.model_construct(
                request_type=event.get("RequestType"),
                resource_properties={},
                physical_resource_id=event.get("PhysicalResourceId"),
                request_id=event.get("RequestId"),
                response_url=response_url,
                stack_id=event.get("StackId"),
                logical_resource_id=event.get("LogicalResourceId"),
            )
            response = LifecycleResponse.failed(
                event.get("PhysicalResourceId") or mint_physical_resource_id(),
                f"{type(exc).__name__}: {exc}",
            )

    if response_url:
        payload = response.to_cloudformation(lifecycle_event)
        send_cloudformation_response(response_url, payload)
        return payload

    if not response.succeeded:
        raise LifecycleFailed(response.reason or "Static content synchronization failed")
    return response.to_provider_result()


__all__ = [
    "HandlerSettings",
    "LifecycleFailed",
    "build_synchronizer",
    "handle_event",
    "on_event",
]
