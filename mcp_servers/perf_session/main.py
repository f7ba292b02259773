"""
Stdio JSON-RPC server for page performance measurement sessions.

stdout carries protocol frames only; logs go to stderr.
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import os
import sys
from typing import Any, TextIO

from .config import PerfConfig
from .errors import PerfSessionError
from .server.contract import initialize_result, select_protocol, tools_list
from .server.registry import ToolRegistry, create_default_registry
from .server.runtime import EngineRuntime
from .server.types import ToolResult

logger = logging.getLogger("perf.session")

__all__ = ["McpServer", "main"]


def _write_message(payload: dict[str, Any], out: TextIO | None = None) -> None:
    stream = out or sys.stdout
    stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
    stream.flush()


def _read_message(inp: TextIO | None = None) -> dict[str, Any] | None:
    """Read one JSON-RPC message. Returns None at EOF, {} for blank or malformed lines."""
    line = (inp or sys.stdin).readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line)
    except ValueError:
        logger.warning("invalid_json_frame len=%d", len(line))
        return {}
    if os.environ.get("PERF_TRACE_RPC"):
        logger.info("recv %s", msg)
    return msg if isinstance(msg, dict) else {}


class McpServer:
    def __init__(
        self,
        runtime: EngineRuntime | None = None,
        registry: ToolRegistry | None = None,
        *,
        out: TextIO | None = None,
    ) -> None:
        self.runtime = runtime or EngineRuntime(PerfConfig.from_env())
        self.registry = registry or create_default_registry()
        self._out = out

    def _send(self, payload: dict[str, Any]) -> None:
        _write_message(payload, self._out)

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        self._send({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(select_protocol(requested))})

    def handle_list_tools(self, request_id: Any) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        logger.info("tool=%s args=%s", name, arguments)
        try:
            if not name:
                return ToolResult.error("Missing tool name")
            if not self.registry.has(name):
                return ToolResult.error(f"Unknown tool: {name}", tool=name)
            return self.registry.dispatch(name, self.runtime, arguments)
        except PerfSessionError as e:
            logger.info("tool_error tool=%s code=%s reason=%s", name, e.code, e.reason)
            return ToolResult.error(e.reason, tool=name, code=e.code, suggestion=e.suggestion, details=e.details)
        except concurrent.futures.TimeoutError:
            logger.warning("tool_timeout tool=%s", name)
            return ToolResult.error(
                "Timed out waiting for the engine",
                tool=name,
                code="timeout",
                suggestion="Check that Chrome is responsive; raise PERF_COMMAND_TIMEOUT if the page is slow",
            )
        except Exception as exc:
            logger.exception("tool_call_failed")
            return ToolResult.error(str(exc), tool=name)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        result = self.call_tool(name, arguments)
        self._send(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    def dispatch(self, message: dict[str, Any]) -> None:
        if not message:
            return
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method == "notifications/initialized":
            return
        elif method in ("tools/list", "list_tools"):
            self.handle_list_tools(request_id)
        elif method in ("tools/call", "call_tool"):
            name = params.get("name")
            arguments = params.get("arguments") or params.get("args") or {}
            self.handle_call_tool(request_id, name or "", arguments if isinstance(arguments, dict) else {})
        elif method == "ping":
            self._send({"jsonrpc": "2.0", "id": request_id, "result": {"pong": True}})
        elif request_id is not None:
            self._send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )

    def close(self) -> None:
        self.runtime.stop()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    server = McpServer()
    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.dispatch(message)
    finally:
        server.close()


if __name__ == "__main__":
    main()
