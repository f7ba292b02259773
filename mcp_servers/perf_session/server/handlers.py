"""
Measurement tool handlers: start / status / stop / history / targets.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..domains import is_protected_url, origin_of
from ..errors import PerfSessionError
from ..history import history_key
from ..insights import RATED_METRICS, compare_reports, rate
from ..report import RunReport, export_filename, export_json, trace_document
from ..session_store import SessionOptions
from .types import ToolResult

if TYPE_CHECKING:
    from ..engine import SessionEngine
    from .runtime import EngineRuntime


def _target_id(args: dict[str, Any]) -> str:
    raw = args.get("targetId") or args.get("target_id")
    if not isinstance(raw, str) or not raw.strip():
        raise PerfSessionError(reason="targetId is required", suggestion="List targets via perf_targets")
    return raw.strip()


def summarize(report: RunReport, engine: SessionEngine) -> dict[str, Any]:
    timings = report.timings.to_dict()
    net = report.network
    return {
        "url": report.meta.url,
        "timestamp": report.meta.timestamp,
        "timings": {
            k: {"value": v, "rating": rate(k, v, engine.thresholds)} if k in RATED_METRICS else {"value": v}
            for k, v in timings.items()
        },
        "longTasks": report.long_tasks.to_dict(),
        "requestsTotal": net.requests_total,
        "transferredBytes": net.transferred_bytes,
        "cacheHitRate": net.cache_hit_rate,
        "failures": len(net.failures),
        "insights": [i.to_dict() for i in report.insights],
        "trace": report.trace.to_dict(),
        "diagnostics": [dict(d) for d in report.diagnostics],
    }


def previous_run(engine: SessionEngine, report: RunReport) -> RunReport | None:
    if engine.history is None or not report.meta.origin:
        return None
    for entry in engine.history.read(history_key(report.meta.origin)):
        if entry.meta.timestamp != report.meta.timestamp:
            return entry
    return None


def write_exports(report: RunReport, export_dir: str) -> dict[str, str]:
    out_dir = Path(export_dir).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)
    name = export_filename(report)
    report_path = out_dir / name
    report_path.write_text(export_json(report), encoding="utf-8")
    written = {"report": str(report_path)}
    trace = trace_document(report)
    if trace is not None:
        trace_path = out_dir / name.replace("perf-report-", "perf-trace-", 1)
        trace_path.write_text(trace, encoding="utf-8")
        written["trace"] = str(trace_path)
    return written


def handle_perf_start(runtime: EngineRuntime, args: dict[str, Any]) -> ToolResult:
    target_id = _target_id(args)
    options = SessionOptions.from_args(args)
    result = runtime.call(lambda engine: engine.start(target_id, options))
    return ToolResult.json(result)


def handle_perf_status(runtime: EngineRuntime, args: dict[str, Any]) -> ToolResult:
    target_id = _target_id(args)
    return ToolResult.json(runtime.call_sync(lambda engine: engine.status(target_id)))


def handle_perf_stop(runtime: EngineRuntime, args: dict[str, Any]) -> ToolResult:
    target_id = _target_id(args)
    report = runtime.call(lambda engine: engine.stop(target_id))
    engine = runtime.engine

    payload: dict[str, Any] = {
        "ok": True,
        "targetId": target_id,
        "summary": summarize(report, engine),
        "comparison": compare_reports(report, previous_run(engine, report), engine.thresholds),
    }
    export_dir = args.get("exportDir")
    if isinstance(export_dir, str) and export_dir.strip():
        payload["exported"] = write_exports(report, export_dir.strip())
    if args.get("full", True) is not False:
        payload["report"] = report.to_dict()
    return ToolResult.json(payload)


def handle_perf_history(runtime: EngineRuntime, args: dict[str, Any]) -> ToolResult:
    origin = args.get("origin") if isinstance(args.get("origin"), str) else ""
    if not origin:
        origin = origin_of(args.get("url"))
    else:
        origin = origin_of(origin) or origin.rstrip("/")
    if not origin:
        return ToolResult.error("origin or url is required", tool="perf_history")

    engine = runtime.engine
    try:
        limit = max(1, min(int(args.get("limit") or 10), 100))
    except (TypeError, ValueError):
        limit = 10
    entries = engine.history.read(history_key(origin)) if engine.history is not None else []
    return ToolResult.json(
        {
            "origin": origin,
            "total": len(entries),
            "entries": [summarize(r, engine) for r in entries[:limit]],
        }
    )


def handle_perf_targets(runtime: EngineRuntime, args: dict[str, Any]) -> ToolResult:
    engine = runtime.engine
    list_targets = getattr(engine.link, "list_targets", None)
    if not callable(list_targets):
        return ToolResult.error("Target listing is not supported by this link", tool="perf_targets")

    targets = runtime.call(lambda e: e.link.list_targets())
    active = set(runtime.call_sync(lambda e: e.active_targets()))
    rows = []
    for t in targets:
        tid = str(t.get("id") or "")
        url = t.get("url") if isinstance(t.get("url"), str) else ""
        rows.append(
            {
                "id": tid,
                "title": t.get("title") or "",
                "url": url,
                "protected": is_protected_url(url),
                "measuring": tid in active,
            }
        )
    return ToolResult.json({"targets": rows, "total": len(rows)})


PERF_HANDLERS: dict[str, Any] = {
    "perf_start": handle_perf_start,
    "perf_status": handle_perf_status,
    "perf_stop": handle_perf_stop,
    "perf_history": handle_perf_history,
    "perf_targets": handle_perf_targets,
}
