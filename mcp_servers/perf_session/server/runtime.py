"""Engine runtime: one asyncio loop in a daemon thread, called from the sync stdio loop.

The engine, its dispatcher and every link socket live on that loop. Tool handlers
submit coroutines with ``asyncio.run_coroutine_threadsafe`` and block on the result.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, TypeVar

from ..config import PerfConfig
from ..engine import SessionEngine
from ..history import JsonHistoryStore
from ..inspector_link import CdpInspectorLink
from ..insights import Thresholds

logger = logging.getLogger("perf.session.runtime")

T = TypeVar("T")

EngineFactory = Callable[[PerfConfig], SessionEngine]


def default_engine_factory(config: PerfConfig) -> SessionEngine:
    link = CdpInspectorLink(config)
    return SessionEngine(
        link,
        config=config,
        history=JsonHistoryStore(config.history_path, limit=config.history_limit),
        thresholds=Thresholds.from_env(),
    )


class EngineRuntime:
    def __init__(self, config: PerfConfig | None = None, *, engine_factory: EngineFactory | None = None) -> None:
        self.config = config or PerfConfig.from_env()
        self._factory = engine_factory or default_engine_factory
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._engine: SessionEngine | None = None

    @property
    def call_timeout(self) -> float:
        # stop = a handful of commands + the trace grace wait.
        return self.config.command_timeout * 8 + self.config.trace_grace_s + 5.0

    @property
    def engine(self) -> SessionEngine:
        self.start()
        assert self._engine is not None
        return self._engine

    def start(self, *, wait_timeout: float = 5.0) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            loop = asyncio.new_event_loop()
            t = threading.Thread(target=self._run_thread, args=(loop,), name="perf-session-engine", daemon=True)
            self._loop = loop
            self._thread = t
            t.start()

        async def _build() -> SessionEngine:
            return self._factory(self.config)

        self._engine = asyncio.run_coroutine_threadsafe(_build(), loop).result(timeout=wait_timeout)
        logger.info("engine_runtime_started cdp=%s", self.config.cdp_http_base)

    @staticmethod
    def _run_thread(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def call(self, fn: Callable[[SessionEngine], Awaitable[T]], *, timeout: float | None = None) -> T:
        """Run ``fn(engine)`` on the engine loop and wait for its result."""
        engine = self.engine
        loop = self._loop
        assert loop is not None

        async def _invoke() -> T:
            return await fn(engine)

        fut = asyncio.run_coroutine_threadsafe(_invoke(), loop)
        return fut.result(timeout=timeout if timeout is not None else self.call_timeout)

    def call_sync(self, fn: Callable[[SessionEngine], T], *, timeout: float | None = None) -> T:
        """Run a synchronous engine accessor on the loop thread."""

        async def _wrap(engine: SessionEngine) -> T:
            return fn(engine)

        return self.call(_wrap, timeout=timeout)

    def stop(self, *, timeout: float = 5.0) -> None:
        loop = self._loop
        engine = self._engine
        if loop is None:
            return
        if engine is not None:
            with suppress(Exception):
                asyncio.run_coroutine_threadsafe(engine.close(), loop).result(timeout=timeout)
            link_close = getattr(engine.link, "close", None)
            if callable(link_close):
                with suppress(Exception):
                    asyncio.run_coroutine_threadsafe(link_close(), loop).result(timeout=timeout)
        loop.call_soon_threadsafe(loop.stop)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._loop = None
        self._thread = None
        self._engine = None


__all__ = ["EngineFactory", "EngineRuntime", "default_engine_factory"]
