"""Delivery of lifecycle responses to a CloudFormation pre-signed URL."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict
from urllib.request import Request, urlopen

LOGGER = logging.getLogger(__name__)


def send_cloudformation_response(response_url: str, payload: Dict[str, Any], *, timeout: float = 10.0) -> None:
    """PUT the response document; CloudFormation waits for it before moving on."""

    data = json.dumps(payload).encode("utf-8")
    # The pre-signed URL is signed without a content type.
    request = Request(
        response_url,
        data=data,
        method="PUT",
        headers={"Content-Type": "", "Content-Length": str(len(data))},
    )
    LOGGER.info(
        "Sending %s response for %s", payload.get("Status"), payload.get("LogicalResourceId")
    )
    with urlopen(request, timeout=timeout) as response:  # nosec B310
        response.read()


__all__ = ["send_cloudformation_response"]
