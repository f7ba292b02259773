"""Per-session network/trace aggregation from raw CDP events.

Handlers never block and never raise on malformed input: unknown request ids and
unexpected payload shapes are dropped. Terminal events (finished/failed) are applied
at most once per request id, so totals cannot be double counted.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

from .domains import domain_of, resource_category

EV_REQUEST = "Network.requestWillBeSent"
EV_RESPONSE = "Network.responseReceived"
EV_SERVED_FROM_CACHE = "Network.requestServedFromCache"
EV_FINISHED = "Network.loadingFinished"
EV_FAILED = "Network.loadingFailed"
EV_TRACE_DATA = "Tracing.dataCollected"
EV_TRACE_COMPLETE = "Tracing.tracingComplete"

NETWORK_EVENTS = frozenset({EV_REQUEST, EV_RESPONSE, EV_SERVED_FROM_CACHE, EV_FINISHED, EV_FAILED})
TRACE_EVENTS = frozenset({EV_TRACE_DATA, EV_TRACE_COMPLETE})

_CACHE_FLAGS = ("fromDiskCache", "fromPrefetchCache", "fromServiceWorker")


def _now_ms() -> float:
    return time.time() * 1000.0


def _num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _str_or_none(v: Any) -> str | None:
    return v if isinstance(v, str) and v else None


@dataclass(slots=True)
class PendingRequest:
    """In-flight record for one request id; mutated until a terminal event lands."""

    request_id: str
    url: str
    domain: str | None
    initiator_type: str
    resource_type_hint: str | None
    start_ts: float | None  # CDP monotonic seconds
    start_wall_ms: float

    from_cache: bool = False
    mime_type: str | None = None
    status: int | None = None
    end_ts: float | None = None
    transferred_bytes: int | None = None
    duration_ms: float | None = None
    terminal: bool = False
    failed: bool = False

    @property
    def category(self) -> str:
        return resource_category(
            self.url,
            initiator_type=self.initiator_type,
            resource_type_hint=self.resource_type_hint,
            mime_type=self.mime_type,
        )


@dataclass(slots=True)
class DomainRollup:
    domain: str
    request_count: int = 0
    byte_count: int = 0


@dataclass(frozen=True, slots=True)
class FailureRecord:
    url: str
    error_text: str
    type: str


@dataclass(frozen=True, slots=True)
class FinishedRequest:
    url: str
    domain: str | None
    type: str
    duration_ms: float
    transfer_bytes: int
    status: int | None = None
    from_cache: bool = False


@dataclass(frozen=True, slots=True)
class NetworkSnapshot:
    """Immutable view of one session's network state at stop time."""

    requests_total: int = 0
    transferred_bytes: int = 0
    cache_hits: int = 0
    failures: tuple[FailureRecord, ...] = ()
    domains: tuple[DomainRollup, ...] = ()
    finished: tuple[FinishedRequest, ...] = ()
    pending: int = 0
    trace_fragments: tuple[str, ...] = ()
    trace_size: int = 0
    trace_complete: bool = False

    @property
    def cache_hit_rate(self) -> float | None:
        if self.requests_total <= 0:
            return None
        return max(0.0, min(1.0, self.cache_hits / self.requests_total))


@dataclass(slots=True)
class NetworkAggregator:
    """Running totals, per-domain rollups, failures and the trace buffer for one session."""

    trace_enabled: bool = False

    requests_total: int = 0
    transferred_bytes: int = 0
    cache_hits: int = 0
    failures: list[FailureRecord] = field(default_factory=list)
    domains: dict[str, DomainRollup] = field(default_factory=dict)
    requests: dict[str, PendingRequest] = field(default_factory=dict)
    finished_order: list[str] = field(default_factory=list)
    trace_fragments: list[str] = field(default_factory=list)
    trace_size: int = 0
    trace_complete: bool = False

    def ingest(self, method: str, params: dict[str, Any] | None) -> bool:
        """Apply one event. Returns True when the event changed state."""
        if not isinstance(params, dict):
            params = {}
        if method == EV_REQUEST:
            return self._on_request(params)
        if method == EV_RESPONSE:
            return self._on_response(params)
        if method == EV_SERVED_FROM_CACHE:
            return self._on_served_from_cache(params)
        if method == EV_FINISHED:
            return self._on_finished(params)
        if method == EV_FAILED:
            return self._on_failed(params)
        if method == EV_TRACE_DATA:
            return self._on_trace_data(params)
        if method == EV_TRACE_COMPLETE:
            self.trace_complete = True
            return True
        return False

    # ──────────────────────────────────────────────────────────────────────
    # Network
    # ──────────────────────────────────────────────────────────────────────

    def _live(self, params: dict[str, Any]) -> PendingRequest | None:
        rid = params.get("requestId")
        if not isinstance(rid, str) or not rid:
            return None
        req = self.requests.get(rid)
        if req is None or req.terminal:
            return None
        return req

    def _on_request(self, params: dict[str, Any]) -> bool:
        rid = params.get("requestId")
        request = params.get("request")
        if not isinstance(rid, str) or not rid or not isinstance(request, dict):
            return False
        url = request.get("url") if isinstance(request.get("url"), str) else ""
        initiator = params.get("initiator")
        itype = initiator.get("type") if isinstance(initiator, dict) else None

        # A repeated id is a redirect restart: the new record replaces the old one.
        self.requests[rid] = PendingRequest(
            request_id=rid,
            url=url,
            domain=domain_of(url),
            initiator_type=itype if isinstance(itype, str) and itype else "other",
            resource_type_hint=_str_or_none(params.get("type")),
            start_ts=_num(params.get("timestamp")),
            start_wall_ms=_now_ms(),
        )
        self.requests_total += 1
        return True

    def _mark_cached(self, req: PendingRequest) -> None:
        if not req.from_cache:
            req.from_cache = True
            self.cache_hits += 1

    def _on_response(self, params: dict[str, Any]) -> bool:
        req = self._live(params)
        if req is None:
            return False
        resp = params.get("response")
        if not isinstance(resp, dict):
            resp = {}
        if any(resp.get(flag) is True for flag in _CACHE_FLAGS):
            self._mark_cached(req)
        mime = resp.get("mimeType")
        if isinstance(mime, str):
            req.mime_type = mime
        status = _num(resp.get("status"))
        if status is not None:
            req.status = int(status)
        hint = _str_or_none(params.get("type"))
        if hint:
            req.resource_type_hint = hint
        return True

    def _on_served_from_cache(self, params: dict[str, Any]) -> bool:
        req = self._live(params)
        if req is None:
            return False
        self._mark_cached(req)
        return True

    def _duration_ms(self, req: PendingRequest, end_ts: float | None) -> float:
        if req.start_ts is not None and end_ts is not None:
            return max(0.0, (end_ts - req.start_ts) * 1000.0)
        return max(0.0, _now_ms() - req.start_wall_ms)

    def _on_finished(self, params: dict[str, Any]) -> bool:
        req = self._live(params)
        if req is None:
            return False
        end_ts = _num(params.get("timestamp"))
        size = _num(params.get("encodedDataLength"))
        nbytes = max(0, int(size)) if size is not None else 0

        req.end_ts = end_ts
        req.duration_ms = self._duration_ms(req, end_ts)
        req.transferred_bytes = nbytes
        req.terminal = True

        self.transferred_bytes += nbytes
        key = req.domain or "unknown"
        rollup = self.domains.get(key)
        if rollup is None:
            rollup = DomainRollup(domain=key)
            self.domains[key] = rollup
        rollup.request_count += 1
        rollup.byte_count += nbytes
        self.finished_order.append(req.request_id)
        return True

    def _on_failed(self, params: dict[str, Any]) -> bool:
        req = self._live(params)
        if req is None:
            return False
        end_ts = _num(params.get("timestamp"))
        req.end_ts = end_ts
        req.duration_ms = self._duration_ms(req, end_ts)
        req.terminal = True
        req.failed = True

        err = params.get("errorText")
        rtype = _str_or_none(params.get("type")) or req.resource_type_hint or req.initiator_type or "other"
        self.failures.append(
            FailureRecord(url=req.url, error_text=err if isinstance(err, str) and err else "unknown", type=rtype)
        )
        return True

    # ──────────────────────────────────────────────────────────────────────
    # Tracing
    # ──────────────────────────────────────────────────────────────────────

    def _on_trace_data(self, params: dict[str, Any]) -> bool:
        if not self.trace_enabled:
            return False
        value = params.get("value")
        if not value:
            return False
        try:
            fragment = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            return False
        self.trace_fragments.append(fragment)
        self.trace_size += len(fragment.encode("utf-8"))
        return True

    def snapshot(self) -> NetworkSnapshot:
        finished: list[FinishedRequest] = []
        seen: set[str] = set()
        for rid in self.finished_order:
            req = self.requests.get(rid)
            if rid in seen or req is None or req.failed or req.duration_ms is None:
                continue
            seen.add(rid)
            finished.append(
                FinishedRequest(
                    url=req.url,
                    domain=req.domain,
                    type=req.category,
                    duration_ms=req.duration_ms,
                    transfer_bytes=req.transferred_bytes or 0,
                    status=req.status,
                    from_cache=req.from_cache,
                )
            )
        return NetworkSnapshot(
            requests_total=self.requests_total,
            transferred_bytes=self.transferred_bytes,
            cache_hits=self.cache_hits,
            failures=tuple(self.failures),
            domains=tuple(
                DomainRollup(domain=d.domain, request_count=d.request_count, byte_count=d.byte_count)
                for d in self.domains.values()
            ),
            finished=tuple(finished),
            pending=sum(1 for r in self.requests.values() if not r.terminal),
            trace_fragments=tuple(self.trace_fragments),
            trace_size=self.trace_size,
            trace_complete=self.trace_complete,
        )


__all__ = [
    "DomainRollup",
    "EV_FAILED",
    "EV_FINISHED",
    "EV_REQUEST",
    "EV_RESPONSE",
    "EV_SERVED_FROM_CACHE",
    "EV_TRACE_COMPLETE",
    "EV_TRACE_DATA",
    "FailureRecord",
    "FinishedRequest",
    "NETWORK_EVENTS",
    "NetworkAggregator",
    "NetworkSnapshot",
    "PendingRequest",
    "TRACE_EVENTS",
]
