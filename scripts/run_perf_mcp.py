#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[perf] cdp={os.environ.get('PERF_CDP_HOST', '127.0.0.1')}:{os.environ.get('PERF_CDP_PORT', '9222')} | "
    f"timeout={os.environ.get('PERF_COMMAND_TIMEOUT', '5')}s | "
    f"history={os.environ.get('PERF_HISTORY_PATH', 'data/history/perf_history.json')}",
    file=sys.stderr,
)

from mcp_servers.perf_session.main import main  # noqa: E402

if __name__ == "__main__":
    main()
