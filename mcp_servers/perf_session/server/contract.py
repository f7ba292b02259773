"""Protocol and tool contract: protocol versions, server identity, capabilities, tool list."""

from __future__ import annotations

from typing import Any

from .definitions import PERF_TOOL_DEFINITIONS

SERVER_INFO: dict[str, str] = {"name": "perf-session", "version": "0.1.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

CAPABILITIES: dict[str, Any] = {
    "logging": {},
    "tools": {"listChanged": False},
}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": "Measure one page target at a time: perf_targets -> perf_start -> perf_stop.",
    }


def tools_list() -> list[dict[str, Any]]:
    return PERF_TOOL_DEFINITIONS
