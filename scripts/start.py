#!/usr/bin/env python3
"""
Production entrypoint: release phase, then gunicorn.

The assistant chat can hold a response open as a server-sent event stream, so
gunicorn runs threaded workers with a longer timeout than a plain form app.

Environment:
  PORT              listen port (default 8080)
  WEB_CONCURRENCY   worker processes (default 2)
  GUNICORN_THREADS  threads per worker (default 4)
  GUNICORN_TIMEOUT  worker timeout in seconds (default 120)
  SKIP_RELEASE=1    start without running migrations/seed

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, low: int = 1, high: int = 65535) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = low - 1
    if value < low or value > high:
        print(f"ERROR: Invalid {name} value '{raw}'. Must be integer {low}-{high}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv(port: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(_int_env("WEB_CONCURRENCY", 2, high=64)),
        "--worker-class", "gthread",
        "--threads", str(_int_env("GUNICORN_THREADS", 4, high=64)),
        "--timeout", str(_int_env("GUNICORN_TIMEOUT", 120, high=3600)),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _int_env("PORT", 8080)

    if (os.environ.get("SKIP_RELEASE") or "").strip() in ("1", "true", "yes"):
        print("=== Release phase skipped (SKIP_RELEASE) ===", flush=True)
    else:
        print("=== Running release phase ===", flush=True)
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ===", flush=True)
    # exec so gunicorn is PID 1 and receives signals directly
    argv = gunicorn_argv(port)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
