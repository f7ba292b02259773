"""RunReport model, the pure two-phase merge that builds it, and its JSON document form.

The JSON document is the export file format. It is backward-readable: readers ignore
unknown keys and fill missing optional ones, and existing key names never change
meaning.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .domains import domain_of, is_third_party, origin_of
from .net_aggregator import NetworkSnapshot
from .page_probe import PageMetrics

if TYPE_CHECKING:
    from .insights import Insight

REPORT_SCHEMA_VERSION = 1
MAX_SLOWEST = 10
MAX_CLS_SOURCES = 5
MAX_INTERACTIONS = 10

TRACE_EXPORT_NOTE = "Trace chunks omitted from JSON export; export the trace separately."


def _num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _int(v: Any, default: int = 0) -> int:
    n = _num(v)
    return int(n) if n is not None else default


def _s(v: Any, default: str = "") -> str:
    return v if isinstance(v, str) else default


def _dicts(v: Any) -> list[dict[str, Any]]:
    return [x for x in v if isinstance(x, dict)] if isinstance(v, list) else []


@dataclass(frozen=True, slots=True)
class ReportMeta:
    url: str = ""
    origin: str = ""
    timestamp: str = ""
    cold_load: bool = False
    trace_enabled: bool = False
    user_agent: str | None = None
    target_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "origin": self.origin,
            "timestamp": self.timestamp,
            "coldLoad": self.cold_load,
            "traceEnabled": self.trace_enabled,
            **({"userAgent": self.user_agent} if self.user_agent else {}),
            **({"targetId": self.target_id} if self.target_id else {}),
        }

    @classmethod
    def from_dict(cls, d: Any) -> ReportMeta:
        d = d if isinstance(d, dict) else {}
        return cls(
            url=_s(d.get("url")),
            origin=_s(d.get("origin")),
            timestamp=_s(d.get("timestamp")),
            cold_load=d.get("coldLoad") is True,
            trace_enabled=d.get("traceEnabled") is True,
            user_agent=d.get("userAgent") if isinstance(d.get("userAgent"), str) else None,
            target_id=d.get("targetId") if isinstance(d.get("targetId"), str) else None,
        )


@dataclass(frozen=True, slots=True)
class Timings:
    """Each value is None when it was not observed."""

    ttfb: float | None = None
    fcp: float | None = None
    lcp: float | None = None
    inp: float | None = None
    cls: float | None = None
    dom_content_loaded: float | None = None
    load: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ttfb": self.ttfb,
            "fcp": self.fcp,
            "lcp": self.lcp,
            "inp": self.inp,
            "cls": self.cls,
            "domContentLoaded": self.dom_content_loaded,
            "load": self.load,
        }

    @classmethod
    def from_dict(cls, d: Any) -> Timings:
        d = d if isinstance(d, dict) else {}
        dcl = d.get("domContentLoaded") if "domContentLoaded" in d else d.get("dcl")
        return cls(
            ttfb=_num(d.get("ttfb")),
            fcp=_num(d.get("fcp")),
            lcp=_num(d.get("lcp")),
            inp=_num(d.get("inp")),
            cls=_num(d.get("cls")),
            dom_content_loaded=_num(dcl),
            load=_num(d.get("load")),
        )


@dataclass(frozen=True, slots=True)
class LongTasks:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "totalMs": self.total_ms, "maxMs": self.max_ms}

    @classmethod
    def from_dict(cls, d: Any) -> LongTasks:
        d = d if isinstance(d, dict) else {}
        return cls(
            count=_int(d.get("count")),
            total_ms=_num(d.get("totalMs")) or 0.0,
            max_ms=_num(d.get("maxMs")) or 0.0,
        )


@dataclass(frozen=True, slots=True)
class DomainEntry:
    domain: str
    requests: int = 0
    bytes: int = 0
    third_party: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"domain": self.domain, "requests": self.requests, "bytes": self.bytes, "thirdParty": self.third_party}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DomainEntry:
        return cls(
            domain=_s(d.get("domain"), "unknown"),
            requests=_int(d.get("requests")),
            bytes=_int(d.get("bytes")),
            third_party=d.get("thirdParty") is True,
        )


@dataclass(frozen=True, slots=True)
class TypeEntry:
    type: str
    requests: int = 0
    bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "requests": self.requests, "bytes": self.bytes}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TypeEntry:
        return cls(type=_s(d.get("type"), "other"), requests=_int(d.get("requests")), bytes=_int(d.get("bytes")))


@dataclass(frozen=True, slots=True)
class RequestEntry:
    url: str
    domain: str | None
    type: str
    duration_ms: float
    transfer_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "domain": self.domain,
            "type": self.type,
            "durationMs": self.duration_ms,
            "transferBytes": self.transfer_bytes,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RequestEntry:
        return cls(
            url=_s(d.get("url")),
            domain=d.get("domain") if isinstance(d.get("domain"), str) else None,
            type=_s(d.get("type"), "other"),
            duration_ms=_num(d.get("durationMs")) or 0.0,
            transfer_bytes=_int(d.get("transferBytes")),
        )


@dataclass(frozen=True, slots=True)
class FailureEntry:
    url: str
    error_text: str
    type: str

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "errorText": self.error_text, "type": self.type}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FailureEntry:
        return cls(url=_s(d.get("url")), error_text=_s(d.get("errorText"), "unknown"), type=_s(d.get("type"), "other"))


@dataclass(frozen=True, slots=True)
class NetworkSummary:
    requests_total: int = 0
    transferred_bytes: int = 0
    cache_hit_rate: float | None = None
    failures: tuple[FailureEntry, ...] = ()
    by_domain: tuple[DomainEntry, ...] = ()
    by_type: tuple[TypeEntry, ...] = ()
    slowest: tuple[RequestEntry, ...] = ()

    @property
    def third_party_share(self) -> float | None:
        total = sum(d.bytes for d in self.by_domain)
        if total <= 0:
            return None
        return sum(d.bytes for d in self.by_domain if d.third_party) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestsTotal": self.requests_total,
            "transferredBytes": self.transferred_bytes,
            "cacheHitRate": self.cache_hit_rate,
            "failures": [f.to_dict() for f in self.failures],
            "byDomain": [d.to_dict() for d in self.by_domain],
            "byType": [t.to_dict() for t in self.by_type],
            "slowest": [r.to_dict() for r in self.slowest],
        }

    @classmethod
    def from_dict(cls, d: Any) -> NetworkSummary:
        d = d if isinstance(d, dict) else {}
        return cls(
            requests_total=_int(d.get("requestsTotal")),
            transferred_bytes=_int(d.get("transferredBytes")),
            cache_hit_rate=_num(d.get("cacheHitRate")),
            failures=tuple(FailureEntry.from_dict(x) for x in _dicts(d.get("failures"))),
            by_domain=tuple(DomainEntry.from_dict(x) for x in _dicts(d.get("byDomain"))),
            by_type=tuple(TypeEntry.from_dict(x) for x in _dicts(d.get("byType"))),
            slowest=tuple(RequestEntry.from_dict(x) for x in _dicts(d.get("slowest"))),
        )


@dataclass(frozen=True, slots=True)
class TraceInfo:
    captured: bool = False
    size_bytes: int = 0
    fragments: tuple[str, ...] = field(default=(), repr=False)

    def to_dict(self, *, include_fragments: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {"captured": self.captured}
        if not self.captured:
            return out
        out["sizeBytes"] = self.size_bytes
        out["fragmentCount"] = len(self.fragments)
        if include_fragments:
            out["chunks"] = list(self.fragments)
        elif self.fragments:
            out["note"] = TRACE_EXPORT_NOTE
        return out

    @classmethod
    def from_dict(cls, d: Any) -> TraceInfo:
        d = d if isinstance(d, dict) else {}
        chunks = d.get("chunks")
        fragments = tuple(c for c in chunks if isinstance(c, str)) if isinstance(chunks, list) else ()
        return cls(captured=d.get("captured") is True, size_bytes=_int(d.get("sizeBytes")), fragments=fragments)


@dataclass(frozen=True, slots=True)
class RunReport:
    meta: ReportMeta
    timings: Timings = field(default_factory=Timings)
    long_tasks: LongTasks = field(default_factory=LongTasks)
    network: NetworkSummary = field(default_factory=NetworkSummary)
    resources: dict[str, Any] = field(default_factory=dict)
    lcp_element: dict[str, Any] | None = None
    cls_sources: tuple[dict[str, Any], ...] = ()
    interaction_durations: tuple[float, ...] = ()
    insights: tuple[Insight, ...] = ()
    trace: TraceInfo = field(default_factory=TraceInfo)
    diagnostics: tuple[dict[str, str], ...] = ()

    def with_insights(self, insights: Iterable[Insight]) -> RunReport:
        return replace(self, insights=tuple(insights))

    def to_dict(self, *, include_trace: bool = False) -> dict[str, Any]:
        return {
            "schemaVersion": REPORT_SCHEMA_VERSION,
            "meta": self.meta.to_dict(),
            "timings": self.timings.to_dict(),
            "longTasks": self.long_tasks.to_dict(),
            "network": self.network.to_dict(),
            "resources": dict(self.resources),
            "lcpElement": dict(self.lcp_element) if self.lcp_element else None,
            "clsSources": [dict(s) for s in self.cls_sources],
            "interactionDurations": list(self.interaction_durations),
            "insights": [i.to_dict() for i in self.insights],
            "trace": self.trace.to_dict(include_fragments=include_trace),
            "diagnostics": [dict(d) for d in self.diagnostics],
        }

    @classmethod
    def from_dict(cls, d: Any) -> RunReport:
        from .insights import Insight

        d = d if isinstance(d, dict) else {}
        lcp_el = d.get("lcpElement")
        durations = d.get("interactionDurations")
        raw_insights = d.get("insights") if isinstance(d.get("insights"), list) else []
        return cls(
            meta=ReportMeta.from_dict(d.get("meta")),
            timings=Timings.from_dict(d.get("timings")),
            long_tasks=LongTasks.from_dict(d.get("longTasks")),
            network=NetworkSummary.from_dict(d.get("network")),
            resources=dict(d["resources"]) if isinstance(d.get("resources"), dict) else {},
            lcp_element=dict(lcp_el) if isinstance(lcp_el, dict) else None,
            cls_sources=tuple(_dicts(d.get("clsSources"))),
            interaction_durations=tuple(
                v for v in (_num(x) for x in (durations if isinstance(durations, list) else [])) if v is not None
            ),
            insights=tuple(i for i in (Insight.from_value(x) for x in raw_insights) if i is not None),
            trace=TraceInfo.from_dict(d.get("trace")),
            diagnostics=tuple(
                {"step": _s(x.get("step")), "reason": _s(x.get("reason"))} for x in _dicts(d.get("diagnostics"))
            ),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Assembly (pure)
# ──────────────────────────────────────────────────────────────────────────────


def build_meta(
    *,
    url: str,
    cold_load: bool,
    trace_enabled: bool,
    user_agent: str | None = None,
    target_id: str | None = None,
    now: datetime | None = None,
) -> ReportMeta:
    ts = (now or datetime.now(timezone.utc)).isoformat()
    return ReportMeta(
        url=url or "",
        origin=origin_of(url),
        timestamp=ts,
        cold_load=bool(cold_load),
        trace_enabled=bool(trace_enabled),
        user_agent=user_agent,
        target_id=target_id,
    )


def _by_domain(net: NetworkSnapshot, page_host: str | None) -> tuple[DomainEntry, ...]:
    rows = [
        DomainEntry(
            domain=d.domain,
            requests=d.request_count,
            bytes=d.byte_count,
            third_party=is_third_party(d.domain, page_host),
        )
        for d in net.domains
    ]
    rows.sort(key=lambda r: r.bytes, reverse=True)
    return tuple(rows)


def _by_type(net: NetworkSnapshot) -> tuple[TypeEntry, ...]:
    acc: dict[str, list[int]] = {}
    for r in net.finished:
        slot = acc.setdefault(r.type, [0, 0])
        slot[0] += 1
        slot[1] += r.transfer_bytes
    rows = [TypeEntry(type=k, requests=v[0], bytes=v[1]) for k, v in acc.items()]
    rows.sort(key=lambda r: r.bytes, reverse=True)
    return tuple(rows)


def _slowest(rows: Iterable[RequestEntry]) -> tuple[RequestEntry, ...]:
    return tuple(sorted(rows, key=lambda r: r.duration_ms, reverse=True)[:MAX_SLOWEST])


def _probe_type_rows(page: PageMetrics) -> tuple[TypeEntry, ...]:
    rows = [TypeEntry.from_dict(x) for x in _dicts(page.resources.get("byType"))]
    rows.sort(key=lambda r: r.bytes, reverse=True)
    return tuple(rows)


def _probe_slowest(page: PageMetrics) -> tuple[RequestEntry, ...]:
    return _slowest(RequestEntry.from_dict(x) for x in _dicts(page.resources.get("slowest")))


def assemble_report(
    *,
    meta: ReportMeta,
    page: PageMetrics | None,
    network: NetworkSnapshot | None,
    diagnostics: Iterable[dict[str, str]] = (),
) -> RunReport:
    """Merge the probe snapshot and the network snapshot into one immutable report.

    Both inputs may be absent; the result is still schema-complete, with None where
    nothing was observed. Third-party flags use the page's own host; when that host is
    unknown no domain is marked third-party.
    """
    net = network or NetworkSnapshot()
    page_host = domain_of(meta.url) or (domain_of(page.url) if page is not None else None)

    if net.finished:
        by_type = _by_type(net)
        slowest = _slowest(
            RequestEntry(
                url=r.url, domain=r.domain, type=r.type, duration_ms=r.duration_ms, transfer_bytes=r.transfer_bytes
            )
            for r in net.finished
        )
    elif page is not None:
        by_type = _probe_type_rows(page)
        slowest = _probe_slowest(page)
    else:
        by_type, slowest = (), ()

    network_summary = NetworkSummary(
        requests_total=net.requests_total,
        transferred_bytes=net.transferred_bytes,
        cache_hit_rate=net.cache_hit_rate,
        failures=tuple(FailureEntry(url=f.url, error_text=f.error_text, type=f.type) for f in net.failures),
        by_domain=_by_domain(net, page_host),
        by_type=by_type,
        slowest=slowest,
    )

    trace = TraceInfo(
        captured=len(net.trace_fragments) > 0,
        size_bytes=net.trace_size if net.trace_fragments else 0,
        fragments=net.trace_fragments,
    )

    if page is None:
        return RunReport(meta=meta, network=network_summary, trace=trace, diagnostics=tuple(diagnostics))

    cls_sources = sorted(page.cls_sources, key=lambda s: _num(s.get("value")) or 0.0, reverse=True)
    return RunReport(
        meta=meta,
        timings=Timings(
            ttfb=page.ttfb,
            fcp=page.fcp,
            lcp=page.lcp,
            inp=page.inp,
            cls=page.cls,
            dom_content_loaded=page.dom_content_loaded,
            load=page.load,
        ),
        long_tasks=LongTasks(count=page.long_task_count, total_ms=page.long_task_total, max_ms=page.long_task_max),
        network=network_summary,
        resources=dict(page.resources),
        lcp_element=page.lcp_element,
        cls_sources=tuple(cls_sources[:MAX_CLS_SOURCES]),
        interaction_durations=tuple(sorted(page.interaction_durations, reverse=True)[:MAX_INTERACTIONS]),
        trace=trace,
        diagnostics=tuple(diagnostics),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Export
# ──────────────────────────────────────────────────────────────────────────────


def export_json(report: RunReport) -> str:
    return json.dumps(report.to_dict(include_trace=False), ensure_ascii=False, indent=2)


def export_filename(report: RunReport) -> str:
    raw = report.meta.timestamp or datetime.now(timezone.utc).isoformat()
    stamp = raw.replace(":", "-").replace(".", "-")[:19]
    return f"perf-report-{stamp}.json"


def trace_document(report: RunReport) -> str | None:
    """Chrome trace file (``{"traceEvents": [...]}``) from the captured fragments."""
    if not report.trace.captured:
        return None
    parts: list[str] = []
    for frag in report.trace.fragments:
        inner = frag.strip()
        if inner.startswith("[") and inner.endswith("]"):
            inner = inner[1:-1].strip()
        if inner:
            parts.append(inner)
    return '{"traceEvents":[' + ",".join(parts) + "]}"


__all__ = [
    "DomainEntry",
    "FailureEntry",
    "LongTasks",
    "NetworkSummary",
    "ReportMeta",
    "RequestEntry",
    "RunReport",
    "Timings",
    "TraceInfo",
    "TypeEntry",
    "assemble_report",
    "build_meta",
    "export_filename",
    "export_json",
    "trace_document",
]
