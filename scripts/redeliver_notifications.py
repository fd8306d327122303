#!/usr/bin/env python3
"""Redeliver notifications that never reached their channel.

Runs delivery inline (no worker pool) so the script exits once every row has
been attempted.

Usage:
    python scripts/redeliver_notifications.py                 # pending rows only
    python scripts/redeliver_notifications.py --include-failed
"""

import sys
from pathlib import Path
import argparse
import os

# Ensure repo root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Redeliver undelivered notifications.")
    parser.add_argument("--include-failed", action="store_true", help="Also retry rows that exhausted their attempts")
    args = parser.parse_args()

    os.environ["NOTIFY_ASYNC"] = "0"
    from app.examflow import create_app

    app = create_app()
    dispatcher = app.extensions["notification_dispatcher"]
    count = dispatcher.redeliver_pending(include_failed=args.include_failed)
    print(f"OK: attempted delivery of {count} notifications.")


if __name__ == "__main__":
    main()
