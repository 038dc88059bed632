"""
Observability Layer — Structured Logging for workflow runs.

Responsibility:
- Log run events in a structured JSON format
- Filter entries by the run's own log level (never touches global logging)
- Forward every emitted entry to the hook bus as ``coordinator.log``
- Time operations (node dispatch, compensation)
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator

from shared.workflow_contracts import LOG_LEVELS

if TYPE_CHECKING:
    from observability.hooks import HookBus

logger = logging.getLogger("observability")

_LEVEL_RANK = {name: index for index, name in enumerate(LOG_LEVELS)}
_LOGGING_METHODS = {
    "error": "error",
    "warn": "warning",
    "info": "info",
    "debug": "debug",
    "trace": "debug",
}


class Observability:
    """Structured logger bound to a single workflow run."""

    def __init__(
        self,
        run_id: str | None = None,
        level: str = "info",
        hooks: HookBus | None = None,
        workflow: str | None = None,
    ):
        self.run_id = run_id or str(uuid.uuid4())
        self.trace_id = str(uuid.uuid4())
        self.level = level if level in _LEVEL_RANK else "info"
        self.hooks = hooks
        self.workflow = workflow

    def enabled(self, level: str) -> bool:
        return _LEVEL_RANK.get(level, _LEVEL_RANK["info"]) <= _LEVEL_RANK[self.level]

    def log_event(self, event_type: str, payload: dict[str, Any] | None = None, level: str = "info") -> dict[str, Any] | None:
        """Log a structured event. Returns the entry, or None when filtered out."""
        if not self.enabled(level):
            return None

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": self.run_id,
            "trace_id": self.trace_id,
            "workflow": self.workflow,
            "event": event_type,
            "level": level,
            **(payload or {}),
        }
        log_method = getattr(logger, _LOGGING_METHODS.get(level, "info"))
        log_method(json.dumps(entry, default=str))

        if self.hooks is not None:
            self.hooks.emit("coordinator.log", workflow=self.workflow, run_id=self.run_id, payload=entry)
        return entry

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None, level: str = "debug") -> Iterator[dict[str, Any]]:
        """Time the wrapped block; the yielded dict receives ``duration_ms``."""
        start_time = time.perf_counter()
        timing: dict[str, Any] = {"duration_ms": 0.0}
        meta = metadata or {}
        success = True
        error = None
        try:
            yield timing
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            timing["duration_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": timing["duration_ms"],
                    "success": success,
                    "error": error,
                    **meta,
                },
                level=level,
            )
