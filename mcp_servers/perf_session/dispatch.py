"""Single inbound event queue, drained by one router that addresses sessions by target.

The link sink only enqueues. Routing is synchronous: an event either mutates exactly
one session's aggregator, requests a forced cleanup, or is dropped (no session yet,
or the session is already gone).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from .net_aggregator import NETWORK_EVENTS, TRACE_EVENTS
from .session_store import SessionStore

logger = logging.getLogger("perf.session.dispatch")

EV_DETACHED = "Inspector.detached"
EV_CRASHED = "Inspector.targetCrashed"
EV_DESTROYED = "Target.targetDestroyed"
EV_NAVIGATED = "Page.frameNavigated"

ForcedCleanup = Callable[[str, str], None]


@dataclass(frozen=True, slots=True)
class LinkEvent:
    target_id: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    # Session handle live at submit time; None routes by target alone.
    handle: int | None = None


class EventDispatcher:
    def __init__(
        self,
        store: SessionStore,
        *,
        on_forced_cleanup: ForcedCleanup | None = None,
        max_queue: int = 20_000,
    ) -> None:
        self.store = store
        self.on_forced_cleanup = on_forced_cleanup
        self._queue: asyncio.Queue[LinkEvent] = asyncio.Queue(maxsize=max(1, int(max_queue)))
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def submit(self, target_id: str, method: str, params: dict[str, Any] | None = None) -> None:
        """Event sink for the Inspector Link. Never blocks."""
        target_id = str(target_id)
        try:
            self._queue.put_nowait(
                LinkEvent(
                    target_id,
                    str(method),
                    params if isinstance(params, dict) else {},
                    handle=self.store.handle_of(target_id),
                )
            )
        except asyncio.QueueFull:
            self.dropped += 1

    def pending(self) -> int:
        return self._queue.qsize()

    def process(self, event: LinkEvent) -> bool:
        """Route one event. Returns True if it reached a live session."""
        session = self.store.get(event.target_id)
        if session is None:
            return False
        if event.handle is not None and event.handle != session.handle:
            # Late event from an earlier session on the same target.
            return False

        method = event.method
        if method in NETWORK_EVENTS or method in TRACE_EVENTS:
            session.network.ingest(method, event.params)
            return True

        reason = self._cleanup_reason(method, event.params, cold_load=session.options.cold_load)
        if reason is None:
            return False
        logger.info("forced_cleanup_requested target=%s reason=%s", event.target_id, reason)
        if self.on_forced_cleanup is not None:
            self.on_forced_cleanup(event.target_id, reason)
        return True

    @staticmethod
    def _cleanup_reason(method: str, params: dict[str, Any], *, cold_load: bool) -> str | None:
        if method == EV_DETACHED:
            r = params.get("reason")
            return f"detached:{r}" if isinstance(r, str) and r else "detached"
        if method == EV_CRASHED:
            return "target_crashed"
        if method == EV_DESTROYED:
            return "target_destroyed"
        if method == EV_NAVIGATED:
            frame = params.get("frame")
            if not isinstance(frame, dict) or frame.get("parentId"):
                return None
            # A navigation is expected while an intentional cold reload is in flight.
            if cold_load:
                return None
            return "navigated_away"
        return None

    def drain(self) -> int:
        """Process everything already queued without awaiting."""
        n = 0
        while True:
            try:
                ev = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                self.process(ev)
            except Exception:
                logger.exception("event_routing_failed method=%s", ev.method)
            n += 1
        return n

    async def run(self) -> None:
        while True:
            ev = await self._queue.get()
            try:
                self.process(ev)
            except Exception:
                logger.exception("event_routing_failed method=%s", ev.method)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


__all__ = ["EventDispatcher", "ForcedCleanup", "LinkEvent"]
