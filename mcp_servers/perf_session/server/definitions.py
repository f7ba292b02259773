"""Tool schema definitions."""

from __future__ import annotations

from typing import Any

_TARGET_ID = {"type": "string", "description": "Page target id (see perf_targets)"}

PERF_START_TOOL: dict[str, Any] = {
    "name": "perf_start",
    "description": """Start a performance measurement on one page target.
USAGE:
- Warm measurement: perf_start(targetId="ABC123")
- Cold load (clear cache + reload ignoring cache): perf_start(targetId="ABC123", coldLoad=true)
- Capture a Chrome trace as well: perf_start(targetId="ABC123", traceEnabled=true)

RESPONSE EXAMPLE:
{"ok": true, "targetId": "ABC123", "traceEnabled": true, "coldLoad": false, "diagnostics": []}""",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "targetId": _TARGET_ID,
            "coldLoad": {"type": "boolean", "default": False, "description": "Bypass caches with a forced reload"},
            "traceEnabled": {"type": "boolean", "default": False, "description": "Record a Chrome trace"},
        },
        "required": ["targetId"],
        "additionalProperties": False,
    },
}

PERF_STATUS_TOOL: dict[str, Any] = {
    "name": "perf_status",
    "description": "Report whether a measurement is active on a target, with running network totals.",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {"targetId": _TARGET_ID},
        "required": ["targetId"],
        "additionalProperties": False,
    },
}

PERF_STOP_TOOL: dict[str, Any] = {
    "name": "perf_stop",
    "description": """Stop the measurement and return the run report.
USAGE:
- perf_stop(targetId="ABC123")
- Also write the report (and trace, if captured) to a directory: perf_stop(targetId="ABC123", exportDir="./reports")
- Compact response without the full report: perf_stop(targetId="ABC123", full=false)""",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "targetId": _TARGET_ID,
            "exportDir": {"type": "string", "description": "Directory to write perf-report-*.json into"},
            "full": {"type": "boolean", "default": True, "description": "Include the full report document"},
        },
        "required": ["targetId"],
        "additionalProperties": False,
    },
}

PERF_HISTORY_TOOL: dict[str, Any] = {
    "name": "perf_history",
    "description": "List the most recent runs (newest first) for an origin. Pass either origin or a page url.",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "origin": {"type": "string", "description": "e.g. https://example.com"},
            "url": {"type": "string", "description": "Any page url; its origin is used"},
            "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 10},
        },
        "additionalProperties": False,
    },
}

PERF_TARGETS_TOOL: dict[str, Any] = {
    "name": "perf_targets",
    "description": "List debuggable page targets with their measurement state.",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    },
}

PERF_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    PERF_START_TOOL,
    PERF_STATUS_TOOL,
    PERF_STOP_TOOL,
    PERF_HISTORY_TOOL,
    PERF_TARGETS_TOOL,
]
