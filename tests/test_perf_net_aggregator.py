from __future__ import annotations

import json

from mcp_servers.perf_session.net_aggregator import (
    EV_FAILED,
    EV_FINISHED,
    EV_REQUEST,
    EV_RESPONSE,
    EV_SERVED_FROM_CACHE,
    EV_TRACE_COMPLETE,
    EV_TRACE_DATA,
    NetworkAggregator,
)


def _request(agg: NetworkAggregator, rid: str, url: str, *, ts: float = 1.0, type_: str | None = None) -> None:
    params = {"requestId": rid, "request": {"url": url}, "timestamp": ts, "initiator": {"type": "parser"}}
    if type_:
        params["type"] = type_
    agg.ingest(EV_REQUEST, params)


def test_finished_request_updates_totals_and_domain() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "https://example.com/app.js", ts=10.0, type_="Script")
    agg.ingest(EV_RESPONSE, {"requestId": "r1", "response": {"status": 200, "mimeType": "application/javascript"}})
    agg.ingest(EV_FINISHED, {"requestId": "r1", "timestamp": 10.25, "encodedDataLength": 1200})

    snap = agg.snapshot()
    assert snap.requests_total == 1
    assert snap.transferred_bytes == 1200
    assert snap.cache_hit_rate == 0.0
    assert [(d.domain, d.request_count, d.byte_count) for d in snap.domains] == [("example.com", 1, 1200)]
    (fin,) = snap.finished
    assert fin.type == "script"
    assert fin.status == 200
    assert abs(fin.duration_ms - 250.0) < 1e-6
    assert snap.pending == 0


def test_terminal_event_applied_once() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "https://example.com/a.png")
    agg.ingest(EV_FINISHED, {"requestId": "r1", "timestamp": 2.0, "encodedDataLength": 500})
    # Duplicate terminal events and late mutations are ignored.
    assert agg.ingest(EV_FINISHED, {"requestId": "r1", "timestamp": 3.0, "encodedDataLength": 500}) is False
    assert agg.ingest(EV_FAILED, {"requestId": "r1", "errorText": "net::ERR_ABORTED"}) is False
    assert agg.ingest(EV_RESPONSE, {"requestId": "r1", "response": {"fromDiskCache": True}}) is False

    snap = agg.snapshot()
    assert snap.transferred_bytes == 500
    assert snap.cache_hits == 0
    assert snap.failures == ()
    assert len(snap.finished) == 1


def test_unknown_request_ids_are_dropped() -> None:
    agg = NetworkAggregator()
    assert agg.ingest(EV_RESPONSE, {"requestId": "nope", "response": {}}) is False
    assert agg.ingest(EV_FINISHED, {"requestId": "nope", "encodedDataLength": 10}) is False
    assert agg.ingest(EV_FAILED, {"requestId": "nope"}) is False
    assert agg.ingest(EV_REQUEST, {"requestId": "x"}) is False
    assert agg.ingest("Network.somethingElse", {}) is False
    snap = agg.snapshot()
    assert snap.requests_total == 0
    assert snap.cache_hit_rate is None


def test_cache_hits_counted_once_per_request() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "https://example.com/a.css")
    _request(agg, "r2", "https://example.com/b.css")
    agg.ingest(EV_SERVED_FROM_CACHE, {"requestId": "r1"})
    agg.ingest(EV_RESPONSE, {"requestId": "r1", "response": {"fromDiskCache": True}})
    agg.ingest(EV_RESPONSE, {"requestId": "r2", "response": {"fromServiceWorker": False}})
    snap = agg.snapshot()
    assert snap.cache_hits == 1
    assert snap.cache_hit_rate == 0.5


def test_failure_recorded_and_excluded_from_finished() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "https://api.example.com/v1", type_="Fetch")
    agg.ingest(EV_FAILED, {"requestId": "r1", "errorText": "net::ERR_FAILED", "type": "Fetch"})
    _request(agg, "r2", "https://example.com/never-finishes")

    snap = agg.snapshot()
    assert snap.requests_total == 2
    assert [(f.url, f.error_text, f.type) for f in snap.failures] == [
        ("https://api.example.com/v1", "net::ERR_FAILED", "Fetch")
    ]
    assert snap.finished == ()
    assert snap.domains == ()
    assert snap.pending == 1


def test_finish_without_domain_rolls_into_unknown() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "data:image/png;base64,AAAA")
    agg.ingest(EV_FINISHED, {"requestId": "r1", "encodedDataLength": 3})
    snap = agg.snapshot()
    assert [d.domain for d in snap.domains] == ["unknown"]


def test_trace_fragments_only_when_enabled() -> None:
    off = NetworkAggregator(trace_enabled=False)
    assert off.ingest(EV_TRACE_DATA, {"value": [{"name": "x"}]}) is False
    assert off.snapshot().trace_fragments == ()

    on = NetworkAggregator(trace_enabled=True)
    on.ingest(EV_TRACE_DATA, {"value": [{"name": "é"}]})
    on.ingest(EV_TRACE_DATA, {"value": []})
    on.ingest(EV_TRACE_COMPLETE, {})
    snap = on.snapshot()
    assert len(snap.trace_fragments) == 1
    assert json.loads(snap.trace_fragments[0]) == [{"name": "é"}]
    assert snap.trace_size == len(snap.trace_fragments[0].encode("utf-8"))
    assert snap.trace_complete is True


def test_repeated_request_id_restarts_the_record() -> None:
    agg = NetworkAggregator()
    _request(agg, "r1", "http://old.example.com/start", ts=1.0)
    _request(agg, "r1", "https://new.example.com/landing", ts=1.5, type_="Document")
    agg.ingest(EV_FINISHED, {"requestId": "r1", "timestamp": 2.0, "encodedDataLength": 900})

    snap = agg.snapshot()
    assert snap.requests_total == 2
    (fin,) = snap.finished
    assert fin.url == "https://new.example.com/landing"
    assert fin.domain == "new.example.com"
    assert fin.type == "document"
    assert abs(fin.duration_ms - 500.0) < 1e-6
    assert [(d.domain, d.request_count, d.byte_count) for d in snap.domains] == [("new.example.com", 1, 900)]


def test_request_without_terminal_event_is_counted_but_not_rolled_up() -> None:
    agg = NetworkAggregator()
    _request(agg, "done", "https://example.com/a.css", type_="Stylesheet")
    agg.ingest(EV_FINISHED, {"requestId": "done", "timestamp": 1.1, "encodedDataLength": 300})
    _request(agg, "hung", "https://slow.example.net/b.js", type_="Script")
    agg.ingest(EV_RESPONSE, {"requestId": "hung", "response": {"status": 200}})

    snap = agg.snapshot()
    assert snap.requests_total == 2
    assert snap.pending == 1
    assert snap.transferred_bytes == 300
    assert [f.url for f in snap.finished] == ["https://example.com/a.css"]
    assert [d.domain for d in snap.domains] == ["example.com"]
