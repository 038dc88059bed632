"""
Hook Bus — one-way lifecycle notifications.

Responsibility:
- Let the embedding application subscribe to workflow/step events
- Deliver events without the run ever waiting on subscribers

Prohibitions:
- A failing subscriber never affects the run
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, get_args

from shared.workflow_contracts import EventType, WorkflowEvent

logger = logging.getLogger(__name__)

HookCallback = Callable[[WorkflowEvent], Any]

EVENT_TYPES: tuple[str, ...] = get_args(EventType)


class HookBus:
    """Per-coordinator publish/subscribe bus for WorkflowEvent envelopes."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[HookCallback]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event_type: str, callback: HookCallback) -> None:
        """Subscribe ``callback`` to ``event_type``."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown hook event: {event_type}")
        self._subscribers[event_type].append(callback)

    def off(self, event_type: str, callback: HookCallback) -> bool:
        subscribers = self._subscribers.get(event_type, [])
        if callback in subscribers:
            subscribers.remove(callback)
            return True
        return False

    def emit(
        self,
        event_type: str,
        *,
        workflow: str | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            event_id=f"evt-{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            workflow=workflow,
            run_id=run_id,
            node_id=node_id,
            payload=payload or {},
        )
        for callback in list(self._subscribers.get(event_type, ())):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, event_type)
            except Exception as exc:
                logger.warning("Hook subscriber for %s failed: %s", event_type, exc)
        return event

    async def drain(self) -> None:
        """Wait for scheduled async subscribers (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Awaitable[Any], event_type: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping async hook subscriber for %s: no running event loop", event_type)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._guard(awaitable, event_type))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guard(self, awaitable: Awaitable[Any], event_type: str) -> None:
        try:
            await awaitable
        except Exception as exc:
            logger.warning("Async hook subscriber for %s failed: %s", event_type, exc)
