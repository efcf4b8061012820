#!/usr/bin/env python3
"""
Container entrypoint for the AgencyOS portal.

Runs the release step (migrations + admin seed) unless SKIP_RELEASE is set, then
replaces itself with gunicorn serving app.wsgi:app so gunicorn receives the
container's signals directly.

Environment:
  PORT               listen port (default 8080)
  WEB_CONCURRENCY    gunicorn worker count (default 2)
  GUNICORN_TIMEOUT   worker timeout in seconds (default 60)
  SKIP_RELEASE       any non-empty value skips migrations and seeding

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


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = low - 1
    if not low <= value <= high:
        raise SystemExit(f"ERROR: {name}={raw!r} must be an integer between {low} and {high}.")
    return value


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _int_env("PORT", 8080, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=64)
    timeout = _int_env("GUNICORN_TIMEOUT", 60, low=1, high=3600)

    if (os.environ.get("SKIP_RELEASE") or "").strip():
        print("SKIP_RELEASE set; not running migrations.", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            raise SystemExit(f"Release failed: {e}") from e

    print(f"Serving AgencyOS on :{port} with {workers} workers (health: /healthz)", flush=True)
    argv = gunicorn_argv(port, workers, timeout)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
