#!/usr/bin/env python3
"""
Production entrypoint: release phase, then gunicorn.

Environment:
  PORT              bind port (default 8080)
  WEB_CONCURRENCY   gunicorn workers (default 2)
  SKIP_RELEASE=1    start without migrating/seeding (e.g. extra web replicas)

Each gunicorn worker builds its own notification dispatcher pool after fork,
so NOTIFY_WORKERS applies per worker.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> str:
    port = (os.environ.get("PORT") or "").strip() or "8080"
    if not port.isdigit() or not (1 <= int(port) <= 65535):
        raise SystemExit(f"ERROR: Invalid PORT value '{port}'. Must be integer 1-65535.")
    return port


def gunicorn_argv(port: str) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", (os.environ.get("WEB_CONCURRENCY") or "2").strip(),
        "--timeout", "60",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _port()

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        print("=== Running release phase ===", flush=True)
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    argv = gunicorn_argv(port)
    print(f"=== exec {' '.join(argv)} ===", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
