"""
Tool registry with dispatch table for the stdio server.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .types import ToolResult

if TYPE_CHECKING:
    from .runtime import EngineRuntime

logger = logging.getLogger("perf.session.registry")

HandlerFunc = Callable[["EngineRuntime", dict[str, Any]], ToolResult]


class ToolRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, HandlerFunc] = {}

    def register_many(self, handlers: dict[str, HandlerFunc]) -> None:
        self._handlers.update(handlers)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, name: str, runtime: EngineRuntime, arguments: dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("unknown_tool name=%s", name)
            raise KeyError(f"Unknown tool: {name}")
        return handler(runtime, arguments)


def create_default_registry() -> ToolRegistry:
    from .handlers import PERF_HANDLERS

    registry = ToolRegistry()
    registry.register_many(PERF_HANDLERS)
    return registry


__all__ = ["HandlerFunc", "ToolRegistry", "create_default_registry"]
