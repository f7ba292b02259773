from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mcp_servers.perf_session.config import PerfConfig
from mcp_servers.perf_session.engine import TRACE_CATEGORIES, Phase, SessionEngine
from mcp_servers.perf_session.errors import (
    AlreadyActive,
    AttachError,
    ChannelEnableFailed,
    NoActiveSession,
    ProtectedTarget,
)
from mcp_servers.perf_session.history import MemoryHistoryStore, history_key
from mcp_servers.perf_session.session_store import SessionOptions


def _engine(link, probe, **kw: Any) -> SessionEngine:  # noqa: ANN001
    cfg = kw.pop("config", None) or PerfConfig(trace_grace_s=0.05)
    return SessionEngine(link, probe, config=cfg, **kw)


def _load_page(link, target_id: str = "t1") -> None:  # noqa: ANN001
    link.emit(
        target_id,
        "Network.requestWillBeSent",
        {"requestId": "doc", "request": {"url": "https://example.com/page"}, "type": "Document", "timestamp": 1.0},
    )
    link.emit(target_id, "Network.loadingFinished", {"requestId": "doc", "timestamp": 1.2, "encodedDataLength": 4000})
    link.emit(
        target_id,
        "Network.requestWillBeSent",
        {"requestId": "ads", "request": {"url": "https://ads.other.net/x.js"}, "type": "Script", "timestamp": 1.1},
    )
    link.emit(target_id, "Network.loadingFailed", {"requestId": "ads", "errorText": "net::ERR_BLOCKED_BY_CLIENT"})


def test_start_stop_produces_report_and_releases_target(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        history = MemoryHistoryStore()
        engine = _engine(fake_link, fake_probe, history=history)

        res = await engine.start("t1", {"coldLoad": False, "traceEnabled": False})
        assert res == {"ok": True, "targetId": "t1", "traceEnabled": False, "coldLoad": False, "diagnostics": []}
        assert engine.status("t1")["active"] is True
        assert fake_link.methods("t1")[0] == "Network.enable"
        assert ("ensure", "t1") in fake_probe.calls and ("start", "t1") in fake_probe.calls

        _load_page(fake_link)
        report = await engine.stop("t1")

        assert report.network.requests_total == 2
        assert report.network.transferred_bytes == 4000
        assert [f.error_text for f in report.network.failures] == ["net::ERR_BLOCKED_BY_CLIENT"]
        assert report.timings.lcp == 1800.0
        assert report.meta.origin == "https://example.com"
        assert report.meta.user_agent == "FakeChrome/1.0"
        assert [i.kind for i in report.insights] == ["failures"]

        assert fake_link.detach_calls == ["t1"]
        assert not fake_link.is_attached("t1")
        assert engine.status("t1") == {"active": False, "targetId": "t1", "phase": "idle", "endedReason": "stopped"}
        assert fake_probe.forgotten == ["t1"]
        assert len(history.read(history_key("https://example.com"))) == 1

        with pytest.raises(NoActiveSession):
            await engine.stop("t1")
        await engine.close()

    asyncio.run(_main())


def test_second_start_is_rejected_without_touching_the_link(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        await engine.start("t1")
        with pytest.raises(AlreadyActive):
            await engine.start("t1", SessionOptions(cold_load=True))
        assert fake_link.attach_calls == 1
        await engine.stop("t1")
        await engine.close()

    asyncio.run(_main())


def test_concurrent_starts_yield_one_session(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        results = await asyncio.gather(engine.start("t1"), engine.start("t1"), return_exceptions=True)
        assert sum(1 for r in results if isinstance(r, dict)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyActive)) == 1
        assert len(engine.store) == 1
        await engine.close()

    asyncio.run(_main())


def test_stop_without_session(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        with pytest.raises(NoActiveSession):
            await engine.stop("t1")
        assert fake_link.detach_calls == []

    asyncio.run(_main())


def test_attach_failure_leaves_nothing_behind(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        with pytest.raises(AttachError):
            await engine.start("missing")
        assert engine.phase("missing") is Phase.IDLE
        assert "missing" not in engine.store
        await engine.close()

    asyncio.run(_main())


def test_protected_target_is_refused_before_attach(make_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        link = make_link({"t1": "chrome://settings/"})
        engine = _engine(link, fake_probe)
        with pytest.raises(ProtectedTarget):
            await engine.start("t1")
        assert link.attach_calls == 0
        await engine.close()

    asyncio.run(_main())


def test_channel_enable_failure_detaches_and_allows_retry(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        fake_link.fail["Network.enable"] = "Not allowed"
        with pytest.raises(ChannelEnableFailed):
            await engine.start("t1")
        assert fake_link.detach_calls == ["t1"]
        assert "t1" not in engine.store
        assert engine.phase("t1") is Phase.IDLE

        del fake_link.fail["Network.enable"]
        res = await engine.start("t1")
        assert res["ok"] is True
        await engine.close()

    asyncio.run(_main())


def test_trace_start_failure_degrades_to_untraced_session(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        fake_link.fail["Tracing.start"] = "Tracing is already started"
        res = await engine.start("t1", SessionOptions(trace_enabled=True))
        assert res["traceEnabled"] is False
        assert [d["step"] for d in res["diagnostics"]] == ["trace_start"]

        report = await engine.stop("t1")
        assert "Tracing.end" not in fake_link.methods()
        assert report.trace.captured is False
        assert report.meta.trace_enabled is True
        assert [d["step"] for d in report.diagnostics] == ["trace_start"]
        await engine.close()

    asyncio.run(_main())


def test_trace_collected_after_end(fake_link, fake_probe) -> None:  # noqa: ANN001
    def _on_end(target_id: str, params: dict[str, Any]) -> None:
        fake_link.emit(target_id, "Tracing.dataCollected", {"value": [{"name": "Layout", "ph": "X"}]})
        fake_link.emit(target_id, "Tracing.tracingComplete", {})

    async def _main() -> None:
        engine = _engine(fake_link, fake_probe, config=PerfConfig(trace_grace_s=5.0))
        fake_link.on_command["Tracing.end"] = _on_end
        await engine.start("t1", SessionOptions(trace_enabled=True))

        _, method, params = next(c for c in fake_link.commands if c[1] == "Tracing.start")
        assert params == {
            "categories": TRACE_CATEGORIES,
            "options": "sampling-frequency=1000",
            "transferMode": "ReportEvents",
        }

        loop = asyncio.get_running_loop()
        t0 = loop.time()
        report = await engine.stop("t1")
        # Completion ends the grace wait early.
        assert loop.time() - t0 < 2.0
        assert report.trace.captured is True
        assert report.trace.size_bytes > 0
        assert len(report.trace.fragments) == 1
        await engine.close()

    asyncio.run(_main())


def test_trace_grace_wait_is_bounded(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe, config=PerfConfig(trace_grace_s=0.1))
        await engine.start("t1", SessionOptions(trace_enabled=True))
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        report = await engine.stop("t1")
        elapsed = loop.time() - t0
        assert 0.09 <= elapsed < 2.0
        assert report.trace.captured is False
        assert fake_link.detach_calls == ["t1"]
        await engine.close()

    asyncio.run(_main())


def test_cold_load_sequence(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        await engine.start("t1", SessionOptions(cold_load=True))
        assert fake_link.methods("t1") == [
            "Network.enable",
            "Page.enable",
            "Network.clearBrowserCache",
            "Page.reload",
        ]
        assert fake_link.commands[-1][2] == {"ignoreCache": True}

        # The reload's own navigation must not end the session.
        fake_link.emit("t1", "Page.frameNavigated", {"frame": {"id": "main"}})
        engine.dispatcher.drain()
        await engine.wait_cleanups()
        assert engine.status("t1")["active"] is True
        await engine.close()

    asyncio.run(_main())


def test_cold_reload_falls_back_and_both_failures_only_degrade(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        fake_link.fail["Page.reload!"] = "boom"
        res = await engine.start("t1", SessionOptions(cold_load=True))
        reloads = [p for _, m, p in fake_link.commands if m == "Page.reload"]
        assert reloads == [{"ignoreCache": True}, {}]
        assert [d["step"] for d in res["diagnostics"]] == ["cold_reload"]
        await engine.stop("t1")

        fake_link.fail["Page.reload"] = "boom"
        res = await engine.start("t1", SessionOptions(cold_load=True))
        assert res["ok"] is True
        assert [d["step"] for d in res["diagnostics"]] == ["cold_reload", "reload_fallback"]
        await engine.close()

    asyncio.run(_main())


def test_probe_failures_yield_null_timings(fake_link, make_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        probe = make_probe(None)
        probe.fail = {"ensure", "snapshot", "stop"}
        engine = _engine(fake_link, probe)
        res = await engine.start("t1")
        assert res["ok"] is True
        assert [d["step"] for d in res["diagnostics"]] == ["probe_start"]

        _load_page(fake_link)
        report = await engine.stop("t1")
        assert report.timings.lcp is None and report.timings.ttfb is None
        assert report.network.requests_total == 2
        assert [d["step"] for d in report.diagnostics] == ["probe_start", "probe_snapshot", "probe_stop"]
        # Page url falls back to the target's url.
        assert report.meta.url == "https://example.com/page"
        assert fake_link.detach_calls == ["t1"]
        await engine.close()

    asyncio.run(_main())


def test_absent_probe_snapshot_is_not_an_error(fake_link, make_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, make_probe(None))
        await engine.start("t1")
        report = await engine.stop("t1")
        assert report.timings.to_dict() == dict.fromkeys(report.timings.to_dict())
        assert [d["reason"] for d in report.diagnostics] == ["probe absent"]
        await engine.close()

    asyncio.run(_main())



def test_unexpected_errors_during_start_only_degrade(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        fake_link.errors = {"Tracing.start": RuntimeError("tracing backend gone"), "Page.reload": KeyError("frameId")}
        fake_probe.errors = {"ensure": RuntimeError("probe ensure exploded")}
        engine = _engine(fake_link, fake_probe)

        res = await engine.start("t1", SessionOptions(cold_load=True, trace_enabled=True))
        assert res["ok"] is True
        assert res["traceEnabled"] is False
        assert [d["step"] for d in res["diagnostics"]] == ["trace_start", "cold_reload", "reload_fallback", "probe_start"]
        assert res["diagnostics"][0]["reason"] == "tracing backend gone"
        assert res["diagnostics"][-1]["reason"] == "probe ensure exploded"
        assert "t1" in engine.store
        assert engine.status("t1")["active"] is True
        assert fake_link.detach_calls == []
        await engine.close()

    asyncio.run(_main())


def test_unexpected_errors_during_stop_still_yield_report(fake_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        await engine.start("t1", SessionOptions(trace_enabled=True))
        fake_probe.errors = {"snapshot": RuntimeError("probe transport exploded"), "stop": KeyError("probe")}
        fake_link.errors = {"Tracing.end": asyncio.TimeoutError()}
        _load_page(fake_link)

        report = await engine.stop("t1")
        assert [d["step"] for d in report.diagnostics] == ["probe_snapshot", "probe_stop", "trace_end"]
        assert report.diagnostics[0]["reason"] == "probe transport exploded"
        assert report.diagnostics[2]["reason"] == "TimeoutError"
        assert report.timings.lcp is None
        assert report.network.requests_total == 2
        assert report.trace.captured is False
        assert fake_link.detach_calls == ["t1"]
        assert engine.status("t1")["endedReason"] == "stopped"
        await engine.close()

    asyncio.run(_main())


@pytest.mark.parametrize(
    ("method", "params", "reason"),
    [
        ("Target.targetDestroyed", {}, "target_destroyed"),
        ("Inspector.targetCrashed", {}, "target_crashed"),
        ("Inspector.detached", {"reason": "canceled_by_user"}, "detached:canceled_by_user"),
        ("Page.frameNavigated", {"frame": {"id": "main"}}, "navigated_away"),
    ],
)
def test_forced_cleanup(fake_link, fake_probe, method: str, params: dict, reason: str) -> None:  # noqa: ANN001
    async def _main() -> None:
        engine = _engine(fake_link, fake_probe)
        await engine.start("t1")
        fake_link.emit("t1", method, params)
        engine.dispatcher.drain()
        await engine.wait_cleanups()

        assert "t1" not in engine.store
        assert fake_link.detach_calls == ["t1"]
        assert engine.status("t1") == {"active": False, "targetId": "t1", "phase": "idle", "endedReason": reason}
        with pytest.raises(NoActiveSession) as exc:
            await engine.stop("t1")
        assert exc.value.details["endedReason"] == reason

        # Late events for the gone session are dropped.
        fake_link.emit("t1", "Network.requestWillBeSent", {"requestId": "x", "request": {"url": "https://a.test/"}})
        assert engine.dispatcher.drain() == 1
        await engine.close()

    asyncio.run(_main())


def test_sessions_on_different_targets_are_independent(make_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        link = make_link({"a": "https://a.test/", "b": "https://b.test/"})
        engine = _engine(link, fake_probe)
        await engine.start("a")
        await engine.start("b")
        _load_page(link, "a")
        link.emit("b", "Target.targetDestroyed", {})
        engine.dispatcher.drain()
        await engine.wait_cleanups()

        assert engine.active_targets() == ["a"]
        report = await engine.stop("a")
        assert report.network.requests_total == 2
        assert link.detach_calls == ["b", "a"]
        await engine.close()

    asyncio.run(_main())


def test_history_failure_does_not_break_stop(fake_link, fake_probe) -> None:  # noqa: ANN001
    class _BrokenHistory:
        def append(self, origin_key: str, report: Any) -> None:
            raise OSError("disk full")

        def read(self, origin_key: str) -> list:
            return []

    async def _main() -> None:
        engine = _engine(fake_link, fake_probe, history=_BrokenHistory())
        await engine.start("t1")
        report = await engine.stop("t1")
        assert report.meta.origin == "https://example.com"
        await engine.close()

    asyncio.run(_main())


def test_close_releases_every_session(make_link, fake_probe) -> None:  # noqa: ANN001
    async def _main() -> None:
        link = make_link({"a": "https://a.test/", "b": "https://b.test/"})
        engine = _engine(link, fake_probe)
        await engine.start("a")
        await engine.start("b")
        await engine.close()
        assert len(engine.store) == 0
        assert sorted(link.detach_calls) == ["a", "b"]

    asyncio.run(_main())
