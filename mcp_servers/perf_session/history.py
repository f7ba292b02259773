"""Per-origin run history (newest first, capped at write time).

Design
- Key format: ``history:<origin>``.
- Entries are RunReport documents with the trace reduced to ``captured``/``sizeBytes``.
- JsonHistoryStore keeps all keys in one JSON file; atomic writes (temp file then
  replace, previous file kept as ``.bak``); corrupt files are ignored (fail-soft).
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

from .report import RunReport

logger = logging.getLogger("perf.session.history")

DEFAULT_HISTORY_LIMIT = 10


def history_key(origin: str) -> str:
    return f"history:{origin}"


def history_entry(report: RunReport) -> dict[str, Any]:
    doc = report.to_dict(include_trace=False)
    doc["trace"] = {"captured": report.trace.captured, "sizeBytes": report.trace.size_bytes}
    return doc


class HistoryStore(Protocol):
    def append(self, origin_key: str, report: RunReport) -> None: ...

    def read(self, origin_key: str) -> list[RunReport]: ...


class MemoryHistoryStore:
    def __init__(self, *, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.limit = max(1, int(limit))
        self._items: dict[str, list[dict[str, Any]]] = {}

    def append(self, origin_key: str, report: RunReport) -> None:
        entries = self._items.setdefault(origin_key, [])
        entries.insert(0, history_entry(report))
        del entries[self.limit :]

    def read(self, origin_key: str) -> list[RunReport]:
        return [RunReport.from_dict(e) for e in self._items.get(origin_key, [])]

    def keys(self) -> list[str]:
        return list(self._items)


class JsonHistoryStore:
    def __init__(self, path: str | Path, *, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.path = Path(path)
        self.limit = max(1, int(limit))
        self._lock = threading.Lock()

    def _load(self) -> dict[str, list[dict[str, Any]]]:
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            logger.warning("history_load_failed path=%s err=%s", p, exc)
            return {}
        if not isinstance(obj, dict):
            return {}
        items = obj.get("items")
        if not isinstance(items, dict):
            return {}
        out: dict[str, list[dict[str, Any]]] = {}
        for k, v in items.items():
            if not (isinstance(k, str) and k.startswith("history:")) or not isinstance(v, list):
                continue
            out[k] = [e for e in v if isinstance(e, dict)][: self.limit]
        return out

    def _save(self, items: dict[str, list[dict[str, Any]]]) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)

        payload = {"version": 1, "updatedAt": int(time.time() * 1000), "items": items}
        text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        bak = p.with_suffix(p.suffix + ".bak")

        if p.exists() and p.is_file():
            with suppress(OSError):
                shutil.copyfile(p, bak)

        tmp.write_text(text, encoding="utf-8")
        with suppress(OSError):
            os.chmod(tmp, 0o600)
        tmp.replace(p)

    def append(self, origin_key: str, report: RunReport) -> None:
        with self._lock:
            items = self._load()
            entries = items.get(origin_key, [])
            entries.insert(0, history_entry(report))
            items[origin_key] = entries[: self.limit]
            self._save(items)

    def read(self, origin_key: str) -> list[RunReport]:
        with self._lock:
            entries = self._load().get(origin_key, [])
        return [RunReport.from_dict(e) for e in entries]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._load())


__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "HistoryStore",
    "JsonHistoryStore",
    "MemoryHistoryStore",
    "history_entry",
    "history_key",
]
