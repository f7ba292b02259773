from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from mcp_servers.perf_session.errors import AttachError, CommandError
from mcp_servers.perf_session.page_probe import PageMetrics


class FakeLink:
    """In-memory Inspector Link: records commands, emits events on demand."""

    def __init__(self, targets: dict[str, str] | None = None) -> None:
        self.targets = dict(targets or {"t1": "https://example.com/page"})
        self.attached: set[str] = set()
        self.commands: list[tuple[str, str, dict[str, Any]]] = []
        self.fail: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.on_command: dict[str, Callable[[str, dict[str, Any]], None]] = {}
        self.attach_calls = 0
        self.detach_calls: list[str] = []
        self._sink: Callable[[str, str, dict[str, Any]], None] | None = None

    def set_event_sink(self, sink) -> None:  # noqa: ANN001
        self._sink = sink

    def emit(self, target_id: str, method: str, params: dict[str, Any] | None = None) -> None:
        assert self._sink is not None
        self._sink(target_id, method, params or {})

    def is_attached(self, target_id: str) -> bool:
        return target_id in self.attached

    async def target_info(self, target_id: str) -> dict[str, Any] | None:
        url = self.targets.get(target_id)
        return {"id": target_id, "type": "page", "url": url} if url is not None else None

    async def list_targets(self) -> list[dict[str, Any]]:
        return [{"id": tid, "type": "page", "url": url, "title": tid} for tid, url in self.targets.items()]

    async def attach(self, target_id: str) -> None:
        self.attach_calls += 1
        if target_id not in self.targets:
            raise AttachError(reason=f"Target {target_id} not found or not debuggable")
        if target_id in self.attached:
            raise AttachError(reason=f"Target {target_id} is already attached")
        self.attached.add(target_id)

    async def detach(self, target_id: str) -> None:
        self.detach_calls.append(target_id)
        self.attached.discard(target_id)

    async def send_command(self, target_id: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        params = dict(params or {})
        self.commands.append((target_id, method, params))
        if target_id not in self.attached:
            raise CommandError(reason=f"{method}: target {target_id} is not attached")
        if method in self.errors:
            raise self.errors[method]
        key = f"{method}{'!' if params.get('ignoreCache') else ''}"
        if key in self.fail:
            raise CommandError(reason=f"{method}: {self.fail[key]}")
        if method in self.fail:
            raise CommandError(reason=f"{method}: {self.fail[method]}")
        hook = self.on_command.get(method)
        if hook is not None:
            hook(target_id, params)
        return {}

    def methods(self, target_id: str | None = None) -> list[str]:
        return [m for t, m, _ in self.commands if target_id is None or t == target_id]


class FakeProbe:
    def __init__(self, raw: dict[str, Any] | None = None) -> None:
        self.raw = raw
        self.fail: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.forgotten: list[str] = []

    def _maybe_fail(self, op: str, target_id: str) -> None:
        self.calls.append((op, target_id))
        if op in self.errors:
            raise self.errors[op]
        if op in self.fail:
            raise CommandError(reason=f"probe {op} failed")

    async def ensure(self, target_id: str) -> bool:
        self._maybe_fail("ensure", target_id)
        return True

    async def start(self, target_id: str) -> None:
        self._maybe_fail("start", target_id)

    async def stop(self, target_id: str) -> None:
        self._maybe_fail("stop", target_id)

    async def snapshot(self, target_id: str) -> PageMetrics | None:
        self._maybe_fail("snapshot", target_id)
        return PageMetrics.from_raw(self.raw)

    def forget(self, target_id: str) -> None:
        self.forgotten.append(target_id)


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe(
        {
            "url": "https://example.com/page",
            "userAgent": "FakeChrome/1.0",
            "lcp": 1800,
            "cls": 0.02,
            "fcp": 700,
            "ttfb": 120,
            "dcl": 900,
            "load": 1400,
        }
    )


@pytest.fixture
def make_link() -> Callable[..., FakeLink]:
    return FakeLink


@pytest.fixture
def make_probe() -> Callable[..., FakeProbe]:
    return FakeProbe
