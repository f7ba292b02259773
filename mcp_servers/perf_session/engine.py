"""Session Engine: start / status / stop lifecycle for one measurement per target.

Mandatory steps (target lookup, attach, Network.enable) raise. Everything after a
successful channel enable is best-effort: failures become session diagnostics and
the measurement continues with less data.

Teardown (detach + session removal) runs exactly once per session, either from
``stop()`` or from a forced cleanup triggered by target lifecycle events.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import PerfConfig
from .dispatch import EventDispatcher
from .domains import is_protected_url
from .errors import AlreadyActive, ChannelEnableFailed, CommandError, NoActiveSession, PerfSessionError, ProtectedTarget
from .history import HistoryStore, history_key
from .inspector_link import InspectorLink
from .insights import DEFAULT_THRESHOLDS, Thresholds, derive_insights
from .page_probe import PageMetrics, PageProbe
from .report import RunReport, assemble_report, build_meta
from .session_store import Session, SessionOptions, SessionStore

logger = logging.getLogger("perf.session.engine")

TRACE_CATEGORIES = "devtools.timeline,loading,blink.user_timing,v8.execute"
TRACE_OPTIONS = "sampling-frequency=1000"
TRACE_POLL_S = 0.05


class Phase(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class StepResult:
    ok: bool = True
    reason: str = ""

    @classmethod
    def degraded(cls, reason: str) -> StepResult:
        return cls(ok=False, reason=reason)


OK = StepResult()


class SessionEngine:
    def __init__(
        self,
        link: InspectorLink,
        probe: PageProbe | None = None,
        *,
        store: SessionStore | None = None,
        config: PerfConfig | None = None,
        history: HistoryStore | None = None,
        thresholds: Thresholds | None = None,
    ) -> None:
        self.link = link
        self.probe = probe if probe is not None else PageProbe(link)
        self.store = store or SessionStore()
        self.config = config or PerfConfig()
        self.history = history
        self.thresholds = thresholds or DEFAULT_THRESHOLDS
        self.dispatcher = EventDispatcher(self.store, on_forced_cleanup=self._schedule_forced_cleanup)
        self.link.set_event_sink(self.dispatcher.submit)

        self._phases: dict[str, Phase] = {}
        self._ended: dict[str, str] = {}
        self._cleanup_tasks: set[asyncio.Task] = set()

    def phase(self, target_id: str) -> Phase:
        return self._phases.get(target_id, Phase.IDLE)

    # ──────────────────────────────────────────────────────────────────────
    # Best-effort plumbing
    # ──────────────────────────────────────────────────────────────────────

    async def _step(self, session: Session, step: str, aw: Awaitable[Any]) -> StepResult:
        try:
            await aw
        except PerfSessionError as exc:
            return self._degrade(session, step, exc.reason)
        except Exception as exc:  # noqa: BLE001
            logger.exception("step_failed target=%s step=%s", session.target_id, step)
            return self._degrade(session, step, str(exc) or type(exc).__name__)
        return OK

    def _degrade(self, session: Session, step: str, reason: str) -> StepResult:
        session.degrade(step, reason)
        logger.warning("step_degraded target=%s step=%s reason=%s", session.target_id, step, reason)
        return StepResult.degraded(reason)

    async def _command(self, target_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.link.send_command(target_id, method, params or {})

    async def _safe_detach(self, target_id: str) -> None:
        try:
            await self.link.detach(target_id)
        except Exception:  # noqa: BLE001
            logger.exception("detach_failed target=%s", target_id)

    async def _teardown(self, target_id: str) -> bool:
        """Detach and drop the session. Returns False when another path already did it."""
        if not self.store.remove(target_id):
            return False
        self.probe.forget(target_id)
        await self._safe_detach(target_id)
        return True

    # ──────────────────────────────────────────────────────────────────────
    # start
    # ──────────────────────────────────────────────────────────────────────

    async def start(self, target_id: str, options: SessionOptions | dict[str, Any] | None = None) -> dict[str, Any]:
        opts = options if isinstance(options, SessionOptions) else SessionOptions.from_args(options)
        target_id = str(target_id)

        phase = self.phase(target_id)
        if phase is not Phase.IDLE or target_id in self.store:
            raise AlreadyActive(
                reason=f"Measurement already {phase.value} for target {target_id}",
                suggestion="Stop the running measurement first",
                details={"targetId": target_id, "phase": phase.value},
            )

        self._phases[target_id] = Phase.ATTACHING
        self._ended.pop(target_id, None)
        self.dispatcher.start()
        try:
            session = await self._attach(target_id, opts)
        except BaseException:
            self._phases.pop(target_id, None)
            raise

        try:
            await self._prepare(session)
        except BaseException:
            await self._teardown(target_id)
            self._phases.pop(target_id, None)
            raise

        if target_id not in self.store:
            # Forced cleanup won the race while the best-effort steps were in flight.
            self._phases.pop(target_id, None)
            raise NoActiveSession(
                reason=f"Session for target {target_id} ended during start ({self._ended.get(target_id, 'detached')})",
                details={"targetId": target_id},
            )

        self._phases[target_id] = Phase.ACTIVE
        logger.info(
            "session_started target=%s cold_load=%s trace=%s degraded=%d",
            target_id,
            opts.cold_load,
            session.trace_active,
            len(session.diagnostics),
        )
        return {
            "ok": True,
            "targetId": target_id,
            "traceEnabled": session.trace_active,
            "coldLoad": opts.cold_load,
            "diagnostics": list(session.diagnostics),
        }

    async def _attach(self, target_id: str, opts: SessionOptions) -> Session:
        info = await self.link.target_info(target_id)
        url = info.get("url") if isinstance(info, dict) and isinstance(info.get("url"), str) else ""
        if is_protected_url(url):
            raise ProtectedTarget(
                reason=f"Target {target_id} is a protected browser page",
                suggestion="Measure a regular http(s) page",
                details={"targetId": target_id, "url": url},
            )

        await self.link.attach(target_id)
        # Registered before Network.enable so the first requests are not lost.
        session = self.store.create(target_id, opts, page_url=url)
        try:
            await self._command(
                target_id,
                "Network.enable",
                {"maxPostDataSize": 0, "maxResourceBufferSize": 0, "maxTotalBufferSize": 0},
            )
        except CommandError as exc:
            self.store.remove(target_id)
            await self._safe_detach(target_id)
            raise ChannelEnableFailed(
                reason=f"Failed to enable Network: {exc.reason}",
                details={"targetId": target_id},
            ) from exc
        return session

    async def _prepare(self, session: Session) -> None:
        target_id = session.target_id
        opts = session.options
        if opts.trace_enabled:
            res = await self._step(
                session,
                "trace_start",
                self._command(
                    target_id,
                    "Tracing.start",
                    {"categories": TRACE_CATEGORIES, "options": TRACE_OPTIONS, "transferMode": "ReportEvents"},
                ),
            )
            if not res.ok:
                session.network.trace_enabled = False

        # Navigation events drive forced cleanup; the cold reload needs the domain too.
        await self._step(session, "page_enable", self._command(target_id, "Page.enable"))

        if opts.cold_load:
            await self._cold_reload(session)

        await self._step(session, "probe_start", self._start_probe(target_id))

    async def _cold_reload(self, session: Session) -> None:
        target_id = session.target_id
        await self._step(session, "clear_cache", self._command(target_id, "Network.clearBrowserCache"))
        primary = await self._step(
            session, "cold_reload", self._command(target_id, "Page.reload", {"ignoreCache": True})
        )
        if not primary.ok:
            await self._step(session, "reload_fallback", self._command(target_id, "Page.reload"))

    async def _start_probe(self, target_id: str) -> None:
        await self.probe.ensure(target_id)
        await self.probe.start(target_id)

    # ──────────────────────────────────────────────────────────────────────
    # status
    # ──────────────────────────────────────────────────────────────────────

    def status(self, target_id: str) -> dict[str, Any]:
        target_id = str(target_id)
        session = self.store.get(target_id)
        phase = self.phase(target_id)
        if session is None:
            out: dict[str, Any] = {"active": False, "targetId": target_id, "phase": phase.value}
            if target_id in self._ended:
                out["endedReason"] = self._ended[target_id]
            return out
        net = session.network
        return {
            "active": phase is Phase.ACTIVE,
            "targetId": target_id,
            "phase": phase.value,
            "startedAt": session.started_at,
            "elapsedMs": int((time.time() - session.started_at) * 1000),
            "coldLoad": session.options.cold_load,
            "traceEnabled": session.trace_active,
            "requestsTotal": net.requests_total,
            "transferredBytes": net.transferred_bytes,
            "failures": len(net.failures),
            "diagnostics": list(session.diagnostics),
        }

    def active_targets(self) -> list[str]:
        return [t for t in self.store.active_targets() if self.phase(t) is Phase.ACTIVE]

    # ──────────────────────────────────────────────────────────────────────
    # stop
    # ──────────────────────────────────────────────────────────────────────

    async def stop(self, target_id: str) -> RunReport:
        target_id = str(target_id)
        session = self.store.get(target_id)
        if session is None or self.phase(target_id) is not Phase.ACTIVE:
            details: dict[str, Any] = {"targetId": target_id}
            if target_id in self._ended:
                details["endedReason"] = self._ended[target_id]
            raise NoActiveSession(
                reason=f"No active measurement for target {target_id}",
                suggestion="Start a measurement first",
                details=details,
            )

        self._phases[target_id] = Phase.STOPPING
        page: PageMetrics | None = None
        try:
            page = await self._collect_page(session)
            if session.trace_active:
                await self._finish_trace(session)
            self.dispatcher.drain()
            network = session.network.snapshot()
        finally:
            await self._teardown(target_id)
            self._phases.pop(target_id, None)
            self._ended[target_id] = "stopped"

        meta = build_meta(
            url=(page.url if page is not None and page.url else session.page_url),
            cold_load=session.options.cold_load,
            trace_enabled=session.options.trace_enabled,
            user_agent=page.user_agent if page is not None else None,
            target_id=target_id,
        )
        report = assemble_report(meta=meta, page=page, network=network, diagnostics=session.diagnostics)
        report = report.with_insights(derive_insights(report, self.thresholds))
        logger.info(
            "session_stopped target=%s requests=%d bytes=%d insights=%d",
            target_id,
            report.network.requests_total,
            report.network.transferred_bytes,
            len(report.insights),
        )
        self._record_history(report)
        return report

    async def _collect_page(self, session: Session) -> PageMetrics | None:
        target_id = session.target_id
        page: PageMetrics | None = None
        try:
            page = await self.probe.snapshot(target_id)
        except PerfSessionError as exc:
            self._degrade(session, "probe_snapshot", exc.reason)
        except Exception as exc:  # noqa: BLE001
            logger.exception("step_failed target=%s step=probe_snapshot", target_id)
            self._degrade(session, "probe_snapshot", str(exc) or type(exc).__name__)
        else:
            if page is None:
                session.degrade("probe_snapshot", "probe absent")
        await self._step(session, "probe_stop", self.probe.stop(target_id))
        return page

    async def _finish_trace(self, session: Session) -> StepResult:
        agg = session.network
        if agg.trace_fragments:
            return OK
        res = await self._step(session, "trace_end", self._command(session.target_id, "Tracing.end"))
        if not res.ok:
            return res

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, float(self.config.trace_grace_s))
        while True:
            self.dispatcher.drain()
            if agg.trace_complete:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(TRACE_POLL_S, remaining))
        return OK

    def _record_history(self, report: RunReport) -> None:
        if self.history is None or not report.meta.origin:
            return
        try:
            self.history.append(history_key(report.meta.origin), report)
        except Exception:  # noqa: BLE001
            logger.exception("history_append_failed origin=%s", report.meta.origin)

    # ──────────────────────────────────────────────────────────────────────
    # Forced cleanup
    # ──────────────────────────────────────────────────────────────────────

    def _schedule_forced_cleanup(self, target_id: str, reason: str) -> None:
        if self.phase(target_id) is Phase.STOPPING:
            # stop() owns the teardown.
            return
        task = asyncio.get_running_loop().create_task(self.force_cleanup(target_id, reason))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def force_cleanup(self, target_id: str, reason: str) -> bool:
        """Drop a session whose target went away. Never raises."""
        try:
            if self.phase(target_id) is Phase.STOPPING:
                return False
            removed = await self._teardown(target_id)
            if removed:
                self._ended[target_id] = reason
                # An in-flight start() notices the missing session and reports it.
                if self.phase(target_id) is not Phase.ATTACHING:
                    self._phases.pop(target_id, None)
                logger.info("session_force_cleaned target=%s reason=%s", target_id, reason)
            return removed
        except Exception:  # noqa: BLE001
            logger.exception("forced_cleanup_failed target=%s", target_id)
            return False

    async def wait_cleanups(self) -> None:
        tasks = list(self._cleanup_tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.wait_cleanups()
        for target_id in list(self.store.active_targets()):
            await self._teardown(target_id)
            self._phases.pop(target_id, None)
        await self.dispatcher.stop()


__all__ = ["Phase", "SessionEngine", "StepResult", "TRACE_CATEGORIES", "TRACE_OPTIONS"]
