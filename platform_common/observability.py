"""Structured logging helpers for the Lambda handlers."""

from __future__ import annotations

import json
import logging
import os
import time
import traceback
import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Apply ``LOG_LEVEL`` to the root logger.

    The Lambda runtime installs its own handler on the root logger, so only the
    level is adjusted when a handler is already present.
    """

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=_DEFAULT_FORMAT)
    root.setLevel(getattr(logging, level_name, logging.INFO))


class StructuredEventLogger(AbstractContextManager["StructuredEventLogger"]):
    """Context manager that records structured lifecycle events for one invocation."""

    def __init__(
        self,
        *,
        job_name: str,
        context: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._job_name = job_name
        self._context = context or {}
        self._logger = logger or LOGGER
        self._run_id = str(uuid.uuid4())
        self._start_ts = time.time()

    @property
    def run_id(self) -> str:
        return self._run_id

    def __enter__(self) -> "StructuredEventLogger":
        self._start_ts = time.time()
        self.log_event("started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        duration_ms = int((time.time() - self._start_ts) * 1000)
        if exc_type is not None:
            self.log_event(
                "completed",
                level=logging.ERROR,
                status="failed",
                duration_ms=duration_ms,
                error_type=getattr(exc_type, "__name__", str(exc_type)),
                error_message=str(exc_val),
                stacktrace="".join(traceback.format_exception(exc_type, exc_val, exc_tb)),
            )
        else:
            self.log_event("completed", status="succeeded", duration_ms=duration_ms)
        return False

    def log_event(self, name: str, *, level: int = logging.INFO, **fields: Any) -> Dict[str, Any]:
        """Emit a single JSON event line and return the payload."""

        payload: Dict[str, Any] = {
            "event_name": name,
            "job_name": self._job_name,
            "run_id": self._run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        }
        payload.update(self._context)
        payload.update(fields)
        self._logger.log(level, json.dumps(payload, default=str))
        return payload


__all__ = ["StructuredEventLogger", "configure_logging"]
