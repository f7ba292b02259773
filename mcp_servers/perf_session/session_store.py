"""Ownership table: target id -> the one live measurement session.

All access is synchronous (no awaits), so on a single event loop two sessions for
the same target can never coexist even under interleaved start/stop coroutines.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from .errors import AlreadyActive
from .net_aggregator import NetworkAggregator


@dataclass(frozen=True, slots=True)
class SessionOptions:
    cold_load: bool = False
    trace_enabled: bool = False

    @classmethod
    def from_args(cls, args: dict[str, Any] | None) -> SessionOptions:
        args = args if isinstance(args, dict) else {}
        return cls(
            cold_load=args.get("coldLoad") is True or args.get("cold_load") is True,
            trace_enabled=args.get("traceEnabled") is True or args.get("trace_enabled") is True,
        )


@dataclass(slots=True)
class Session:
    target_id: str
    options: SessionOptions
    handle: int
    started_at: float = field(default_factory=time.time)
    network: NetworkAggregator = field(default_factory=NetworkAggregator)
    page_url: str = ""
    diagnostics: list[dict[str, str]] = field(default_factory=list)

    @property
    def trace_active(self) -> bool:
        """Effective tracing flag; may be switched off when Tracing.start fails."""
        return self.network.trace_enabled

    def degrade(self, step: str, reason: str) -> None:
        self.diagnostics.append({"step": step, "reason": reason})


class SessionStore:
    """Arena-style registry: target -> handle -> Session."""

    def __init__(self) -> None:
        self._handles: dict[str, int] = {}
        self._slots: dict[int, Session] = {}
        self._next_handle = 1

    def create(self, target_id: str, options: SessionOptions | None = None, *, page_url: str = "") -> Session:
        if target_id in self._handles:
            raise AlreadyActive(
                reason=f"Measurement already active for target {target_id}",
                suggestion="Stop the running measurement first",
                details={"targetId": target_id},
            )
        opts = options or SessionOptions()
        handle = self._next_handle
        self._next_handle += 1
        session = Session(
            target_id=target_id,
            options=opts,
            handle=handle,
            network=NetworkAggregator(trace_enabled=opts.trace_enabled),
            page_url=page_url,
        )
        self._handles[target_id] = handle
        self._slots[handle] = session
        return session

    def handle_of(self, target_id: str) -> int | None:
        return self._handles.get(target_id)

    def get(self, target_id: str) -> Session | None:
        handle = self._handles.get(target_id)
        if handle is None:
            return None
        return self._slots.get(handle)

    def remove(self, target_id: str) -> bool:
        handle = self._handles.pop(target_id, None)
        if handle is None:
            return False
        self._slots.pop(handle, None)
        return True

    def active_targets(self) -> list[str]:
        return list(self._handles.keys())

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


__all__ = ["Session", "SessionOptions", "SessionStore"]
