#!/usr/bin/env python3
"""
Container entrypoint: release phase, then exec gunicorn serving app.wsgi:app.

Environment:
    PORT              listen port (default 8080)
    WEB_CONCURRENCY   gunicorn workers (default 2)
    GUNICORN_TIMEOUT  worker timeout in seconds (default 60)
    SKIP_RELEASE=1    start without migrating/seeding (e.g. extra replicas)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = lo - 1
    if not lo <= value <= hi:
        print(f"ERROR: {name}={raw!r} must be an integer in {lo}..{hi}.", flush=True)
        sys.exit(1)
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
    port = _int_env("PORT", 8080, 1, 65535)
    workers = _int_env("WEB_CONCURRENCY", 2, 1, 64)
    timeout = _int_env("GUNICORN_TIMEOUT", 60, 5, 600)

    if (os.environ.get("SKIP_RELEASE") or "").strip() in ("1", "true", "yes"):
        print("SKIP_RELEASE set; not migrating or seeding.", flush=True)
    else:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    if workers > 1 and (os.environ.get("RATELIMIT_ENABLED") or "1").strip() not in ("0", "false", "no"):
        print(f"NOTE: rate limits are per worker; {workers} workers multiply the effective limits.", flush=True)

    print(f"=== gunicorn app.wsgi:app on :{port} ({workers} workers, timeout {timeout}s) ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives container signals
    os.execvp("gunicorn", gunicorn_argv(port, workers, timeout))


if __name__ == "__main__":
    main()
