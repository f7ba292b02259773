"""Insight Engine: fixed, ordered rule table over a RunReport.

Rules are evaluated independently (several may fire). When none fires a single
synthetic "good" finding is emitted so the list is never empty.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any

from .report import RunReport

SEVERITY_GOOD = "good"
SEVERITY_NEEDS_IMPROVEMENT = "needs-improvement"
SEVERITY_POOR = "poor"

SEVERITIES = (SEVERITY_GOOD, SEVERITY_NEEDS_IMPROVEMENT, SEVERITY_POOR)

RATED_METRICS = ("lcp", "fcp", "inp", "cls", "ttfb")


@dataclass(frozen=True, slots=True)
class Thresholds:
    lcp_good: float = 2500.0
    lcp_poor: float = 4000.0
    fcp_good: float = 1800.0
    fcp_poor: float = 3000.0
    inp_good: float = 200.0
    inp_poor: float = 500.0
    cls_good: float = 0.1
    cls_poor: float = 0.25
    ttfb_good: float = 800.0
    ttfb_poor: float = 1800.0
    long_task_total_ms: float = 200.0
    heavy_page_bytes: float = 2 * 1024 * 1024
    max_requests: float = 150.0
    third_party_share: float = 0.30
    cache_min_requests: float = 5.0
    cache_hit_rate: float = 0.30

    @classmethod
    def from_env(cls) -> Thresholds:
        """PERF_THRESHOLD_<FIELD> overrides, e.g. PERF_THRESHOLD_LCP_POOR=3500."""
        overrides: dict[str, float] = {}
        for f in fields(cls):
            raw = os.environ.get(f"PERF_THRESHOLD_{f.name.upper()}")
            if raw is None or not raw.strip():
                continue
            try:
                value = float(raw)
            except ValueError:
                continue
            if value >= 0:
                overrides[f.name] = value
        return cls(**overrides)

    def bounds(self, metric: str) -> tuple[float, float] | None:
        if metric not in RATED_METRICS:
            return None
        return getattr(self, f"{metric}_good"), getattr(self, f"{metric}_poor")


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True, slots=True)
class Insight:
    severity: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"severity": self.severity, "kind": self.kind, "message": self.message}

    @classmethod
    def from_value(cls, v: Any) -> Insight | None:
        # Plain strings are accepted for documents written before findings were tagged.
        if isinstance(v, str) and v:
            return cls(severity=SEVERITY_NEEDS_IMPROVEMENT, kind="legacy", message=v)
        if not isinstance(v, dict):
            return None
        message = v.get("message")
        if not isinstance(message, str) or not message:
            return None
        severity = v.get("severity") if v.get("severity") in SEVERITIES else SEVERITY_NEEDS_IMPROVEMENT
        kind = v.get("kind") if isinstance(v.get("kind"), str) and v.get("kind") else "unknown"
        return cls(severity=severity, kind=kind, message=message)


def rate(metric: str, value: float | None, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> str | None:
    """good / needs-improvement / poor, or None for unknown metrics and missing values."""
    b = thresholds.bounds(metric)
    if b is None or value is None or isinstance(value, bool):
        return None
    good, poor = b
    if value <= good:
        return SEVERITY_GOOD
    if value <= poor:
        return SEVERITY_NEEDS_IMPROVEMENT
    return SEVERITY_POOR


def format_bytes(n: float | None) -> str:
    if n is None:
        return "-"
    if n < 1024:
        return f"{int(n)} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.2f} MB"


def _lcp_element_suffix(report: RunReport) -> str:
    el = report.lcp_element
    if not el:
        return ""
    tag = el.get("tag") or "element"
    url = el.get("url")
    return f" ({tag} - {url})" if url else f" ({tag})"


def derive_insights(report: RunReport, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> list[Insight]:
    t = thresholds
    timings = report.timings
    net = report.network
    out: list[Insight] = []

    lcp = timings.lcp
    if lcp is not None:
        if lcp > t.lcp_poor:
            out.append(
                Insight(
                    SEVERITY_POOR,
                    "lcp",
                    f"LCP is very slow at {round(lcp)}ms{_lcp_element_suffix(report)}. Target <= {round(t.lcp_good)}ms.",
                )
            )
        elif lcp > t.lcp_good:
            out.append(
                Insight(
                    SEVERITY_NEEDS_IMPROVEMENT,
                    "lcp",
                    f"LCP needs improvement: {round(lcp)}ms{_lcp_element_suffix(report)}. "
                    f"Target <= {round(t.lcp_good)}ms.",
                )
            )

    if timings.inp is not None and timings.inp > t.inp_good:
        out.append(
            Insight(
                SEVERITY_POOR,
                "inp",
                f"INP is {round(timings.inp)}ms, user interactions may feel sluggish. Target <= {round(t.inp_good)}ms.",
            )
        )

    lt = report.long_tasks
    if lt.total_ms > t.long_task_total_ms:
        out.append(
            Insight(
                SEVERITY_POOR,
                "long_tasks",
                f"Main thread blocked for {round(lt.total_ms)}ms across {lt.count} long task(s) "
                f"(max {round(lt.max_ms)}ms). This hurts responsiveness.",
            )
        )

    cls = timings.cls
    if cls is not None and cls > t.cls_good:
        severity = SEVERITY_POOR if cls > t.cls_poor else SEVERITY_NEEDS_IMPROVEMENT
        out.append(
            Insight(
                severity,
                "cls",
                f"Layout instability detected: CLS = {cls:.3f} ({severity}). Target <= {t.cls_good:g}.",
            )
        )

    if timings.ttfb is not None and timings.ttfb > t.ttfb_good:
        out.append(
            Insight(
                SEVERITY_NEEDS_IMPROVEMENT,
                "ttfb",
                f"Server response is slow: TTFB = {round(timings.ttfb)}ms. "
                f"Consider server-side improvements. Target <= {round(t.ttfb_good)}ms.",
            )
        )

    if net.transferred_bytes > t.heavy_page_bytes:
        out.append(
            Insight(
                SEVERITY_POOR,
                "page_weight",
                f"Heavy page: {format_bytes(net.transferred_bytes)} transferred. Consider reducing JS/image size.",
            )
        )

    if net.requests_total > t.max_requests:
        out.append(
            Insight(
                SEVERITY_POOR,
                "request_count",
                f"High request count: {net.requests_total} requests. Reducing requests improves load time.",
            )
        )

    share = net.third_party_share
    if share is not None and share > t.third_party_share:
        third_bytes = sum(d.bytes for d in net.by_domain if d.third_party)
        out.append(
            Insight(
                SEVERITY_NEEDS_IMPROVEMENT,
                "third_party",
                f"Third-party resources account for {round(share * 100)}% of transferred bytes "
                f"({format_bytes(third_bytes)}). Review third-party scripts.",
            )
        )

    hit_rate = net.cache_hit_rate
    if hit_rate is not None and net.requests_total > t.cache_min_requests and hit_rate < t.cache_hit_rate:
        out.append(
            Insight(
                SEVERITY_NEEDS_IMPROVEMENT,
                "cache",
                f"Cache hit rate is low ({round(hit_rate * 100)}%). Improve caching headers on static assets.",
            )
        )

    if net.failures:
        out.append(
            Insight(
                SEVERITY_POOR,
                "failures",
                f"{len(net.failures)} failed network request(s) detected. Check the Network tab for details.",
            )
        )

    if not out:
        out.append(Insight(SEVERITY_GOOD, "summary", "No major performance issues detected."))
    return out


def compare_reports(
    current: RunReport, previous: RunReport | None, thresholds: Thresholds = DEFAULT_THRESHOLDS
) -> dict[str, Any]:
    """Per-metric rating plus delta against the previous run of the same origin."""
    cur = current.timings.to_dict()
    prev = previous.timings.to_dict() if previous is not None else {}
    metrics: dict[str, Any] = {}
    for m in RATED_METRICS:
        value = cur.get(m)
        before = prev.get(m)
        delta = value - before if value is not None and before is not None else None
        metrics[m] = {
            "value": value,
            "rating": rate(m, value, thresholds),
            "previous": before,
            "delta": delta,
        }
    return {
        "previousTimestamp": previous.meta.timestamp if previous is not None else None,
        "metrics": metrics,
    }


__all__ = [
    "DEFAULT_THRESHOLDS",
    "Insight",
    "RATED_METRICS",
    "SEVERITIES",
    "Thresholds",
    "compare_reports",
    "derive_insights",
    "format_bytes",
    "rate",
]
