"""Error taxonomy for measurement sessions.

Only the mandatory path (attach, channel enable) and the session-existence checks
raise. Everything downstream of a successful channel enable degrades instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass
class PerfSessionError(Exception):
    """Structured, caller-visible failure of a session operation."""

    reason: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    code: ClassVar[str] = "session_error"

    def __str__(self) -> str:
        if self.suggestion:
            return f"[{self.code}] {self.reason}. Suggestion: {self.suggestion}"
        return f"[{self.code}] {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "reason": self.reason,
            **({"suggestion": self.suggestion} if self.suggestion else {}),
            "details": self.details,
        }


class AlreadyActive(PerfSessionError):
    code = "already_active"


class NoActiveSession(PerfSessionError):
    code = "no_active_session"


class AttachError(PerfSessionError):
    code = "attach_failed"


class ChannelEnableFailed(PerfSessionError):
    code = "channel_enable_failed"


class ProtectedTarget(PerfSessionError):
    code = "protected_target"


class CommandError(PerfSessionError):
    """A single Inspector Link command failed (error reply, timeout, closed socket)."""

    code = "command_failed"


__all__ = [
    "AlreadyActive",
    "AttachError",
    "ChannelEnableFailed",
    "CommandError",
    "NoActiveSession",
    "PerfSessionError",
    "ProtectedTarget",
]
