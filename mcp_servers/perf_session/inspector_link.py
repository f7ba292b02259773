"""Inspector Link: attach/detach/command/event adapter over the Chrome DevTools Protocol.

One WebSocket per attached target. Command responses are correlated by message id;
every CDP event is forwarded to a single sink as ``(target_id, method, params)``.
The sink must not block (the dispatcher only enqueues).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any, Protocol
from urllib.error import URLError
from urllib.request import urlopen

from .config import PerfConfig
from .errors import AttachError, CommandError

logger = logging.getLogger("perf.session.link")

EventSink = Callable[[str, str, dict[str, Any]], None]

# Synthetic event emitted when the socket closes without a detach() call.
EV_LINK_CLOSED = "Inspector.detached"


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The Inspector Link requires the 'websockets' Python package (pip install websockets)."
        ) from exc


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, TimeoutError, OSError, ValueError) as exc:
        raise AttachError(reason=f"DevTools endpoint unreachable: {exc}", details={"url": url}) from exc


class InspectorLink(Protocol):
    def set_event_sink(self, sink: EventSink | None) -> None: ...

    def is_attached(self, target_id: str) -> bool: ...

    async def target_info(self, target_id: str) -> dict[str, Any] | None: ...

    async def attach(self, target_id: str) -> None: ...

    async def detach(self, target_id: str) -> None: ...

    async def send_command(
        self, target_id: str, method: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...


class _TargetConnection:
    """Low-level CDP WebSocket connection for one target."""

    def __init__(
        self,
        target_id: str,
        ws: Any,
        *,
        timeout: float,
        on_event: Callable[[str, dict[str, Any]], None],
        on_lost: Callable[[str], None],
    ) -> None:
        self.target_id = target_id
        self.ws = ws
        self.timeout = timeout
        self._on_event = on_event
        self._on_lost = on_lost
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._closing = False
        self._reader: asyncio.Task | None = None

    def start(self) -> None:
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue
                msg_id = data.get("id")
                if isinstance(msg_id, int):
                    fut = self._pending.pop(msg_id, None)
                    if fut is not None and not fut.done():
                        fut.set_result(data)
                    continue
                method = data.get("method")
                if isinstance(method, str):
                    params = data.get("params")
                    with suppress(Exception):
                        # Event consumers must never break the reader.
                        self._on_event(method, params if isinstance(params, dict) else {})
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("cdp_reader_stopped target=%s err=%s", self.target_id, exc)
        finally:
            self._fail_pending("connection closed")
            if not self._closing:
                with suppress(Exception):
                    self._on_lost(self.target_id)

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(CommandError(reason=reason, details={"targetId": self.target_id}))

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await self.ws.send(json.dumps(msg))
            data = await asyncio.wait_for(fut, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise CommandError(reason=f"{method} timed out", details={"targetId": self.target_id}) from exc
        except CommandError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandError(reason=f"{method} failed: {exc}", details={"targetId": self.target_id}) from exc
        finally:
            self._pending.pop(msg_id, None)

        if "error" in data:
            err = data.get("error")
            text = err.get("message") if isinstance(err, dict) else err
            raise CommandError(reason=f"{method}: {text}", details={"targetId": self.target_id, "method": method})
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    async def close(self) -> None:
        self._closing = True
        with suppress(Exception):
            await self.ws.close()
        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending("detached")


class CdpInspectorLink:
    """Inspector Link backed by a Chrome remote-debugging endpoint."""

    def __init__(self, config: PerfConfig | None = None) -> None:
        self.config = config or PerfConfig.from_env()
        self._conns: dict[str, _TargetConnection] = {}
        self._sink: EventSink | None = None

    def set_event_sink(self, sink: EventSink | None) -> None:
        self._sink = sink

    def is_attached(self, target_id: str) -> bool:
        return target_id in self._conns

    def _emit(self, target_id: str, method: str, params: dict[str, Any]) -> None:
        sink = self._sink
        if sink is not None:
            sink(target_id, method, params)

    async def list_targets(self) -> list[dict[str, Any]]:
        url = f"{self.config.cdp_http_base}/json/list"
        data = await asyncio.to_thread(_http_get_json, url, 2.0)
        if not isinstance(data, list):
            return []
        return [t for t in data if isinstance(t, dict) and t.get("type") == "page"]

    async def target_info(self, target_id: str) -> dict[str, Any] | None:
        try:
            targets = await self.list_targets()
        except AttachError:
            return None
        for t in targets:
            if str(t.get("id")) == target_id:
                return t
        return None

    async def attach(self, target_id: str) -> None:
        if target_id in self._conns:
            raise AttachError(
                reason=f"Target {target_id} is already attached",
                suggestion="Close DevTools or the other debugger client for this tab",
                details={"targetId": target_id},
            )
        info = await self.target_info(target_id)
        ws_url = info.get("webSocketDebuggerUrl") if isinstance(info, dict) else None
        if not isinstance(ws_url, str) or not ws_url:
            raise AttachError(
                reason=f"Target {target_id} not found or not debuggable",
                suggestion="List targets via perf_targets and ensure no other debugger is attached",
                details={"targetId": target_id},
            )

        websockets = _import_websockets()
        try:
            ws = await asyncio.wait_for(
                websockets.connect(ws_url, max_size=None, ping_interval=None),
                timeout=self.config.command_timeout,
            )
        except Exception as exc:  # noqa: BLE001
            raise AttachError(reason=f"Failed to attach debugger: {exc}", details={"targetId": target_id}) from exc

        conn = _TargetConnection(
            target_id,
            ws,
            timeout=self.config.command_timeout,
            on_event=lambda method, params, tid=target_id: self._emit(tid, method, params),
            on_lost=self._on_lost,
        )
        self._conns[target_id] = conn
        conn.start()
        logger.info("link_attached target=%s", target_id)

    def _on_lost(self, target_id: str) -> None:
        if self._conns.pop(target_id, None) is None:
            return
        logger.info("link_lost target=%s", target_id)
        self._emit(target_id, EV_LINK_CLOSED, {"reason": "connection_closed"})

    async def detach(self, target_id: str) -> None:
        conn = self._conns.pop(target_id, None)
        if conn is None:
            return
        with suppress(Exception):
            await conn.close()
        logger.info("link_detached target=%s", target_id)

    async def send_command(
        self, target_id: str, method: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        conn = self._conns.get(target_id)
        if conn is None:
            raise CommandError(reason=f"{method}: target {target_id} is not attached", details={"targetId": target_id})
        return await conn.send(method, params)

    async def close(self) -> None:
        for target_id in list(self._conns):
            await self.detach(target_id)


__all__ = ["CdpInspectorLink", "EV_LINK_CLOSED", "EventSink", "InspectorLink"]
