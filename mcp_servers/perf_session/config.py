from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _repo_root() -> Path:
    # mcp_servers/perf_session/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def _env_float(name: str, default: float, *, min_v: float, max_v: float) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(min_v, min(value, max_v))


def _env_int(name: str, default: int, *, min_v: int, max_v: int) -> int:
    try:
        value = int(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(min_v, min(value, max_v))


@dataclass
class PerfConfig:
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    command_timeout: float = 5.0
    trace_grace_s: float = 0.5
    history_path: str = ""
    history_limit: int = 10

    @property
    def cdp_http_base(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"

    @classmethod
    def default_history_path(cls) -> str:
        return str(_repo_root() / "data" / "history" / "perf_history.json")

    @classmethod
    def from_env(cls) -> PerfConfig:
        host = (os.environ.get("PERF_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        port = _env_int("PERF_CDP_PORT", 9222, min_v=1, max_v=65535)
        timeout = _env_float("PERF_COMMAND_TIMEOUT", 5.0, min_v=0.5, max_v=60.0)
        grace_ms = _env_int("PERF_TRACE_GRACE_MS", 500, min_v=0, max_v=30_000)
        raw_history = os.environ.get("PERF_HISTORY_PATH")
        history_path = expand_path(raw_history.strip()) if raw_history and raw_history.strip() else ""
        limit = _env_int("PERF_HISTORY_LIMIT", 10, min_v=1, max_v=100)
        return cls(
            cdp_host=host,
            cdp_port=port,
            command_timeout=timeout,
            trace_grace_s=grace_ms / 1000.0,
            history_path=history_path or cls.default_history_path(),
            history_limit=limit,
        )
