"""
Release phase: migrate the schema, verify it, seed the role directory.

Refuses to run without DATABASE_URL, and refuses sqlite when ENV=production.

Usage:
  python scripts/release.py
  python scripts/release.py --skip-seed
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

REQUIRED_TABLES = (
    "users",
    "departments",
    "audit_events",
    "documents",
    "document_versions",
    "feedback",
    "notifications",
)


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against sqlite in production. Point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def verify_schema(db_url: str) -> None:
    from sqlalchemy import inspect

    from app.examflow.db import build_engine

    engine = build_engine(db_url)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    missing = [t for t in REQUIRED_TABLES if t not in present]
    if missing:
        raise RuntimeError(f"Schema incomplete after migration; missing tables: {', '.join(missing)}")


def run_release(*, seed: bool = True) -> None:
    db_url = _database_url()
    print("=== examflow release start ===", flush=True)

    print("Running Alembic migrations...", flush=True)
    migrate(db_url)
    verify_schema(db_url)
    print(f"Schema OK ({len(REQUIRED_TABLES)} workflow tables).", flush=True)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
    else:
        print("Seed skipped.", flush=True)
    print("=== examflow release done ===", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate, verify and seed the examflow database.")
    parser.add_argument("--skip-seed", action="store_true", help="Do not touch departments/approvers")
    args = parser.parse_args()
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
