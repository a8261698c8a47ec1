"""
Release phase: migrate, then seed.

- Fails fast without DATABASE_URL and refuses SQLite when ENV=production.
- Upgrades the schema to the alembic head and prints the revision reached.
- Seeds roles, SLA policies, default categories and the admin account. Seeding
  is idempotent and never resets an existing admin password.

Usage:
  python scripts/release.py
  python scripts/release.py --migrate-only
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against SQLite in production. Point DATABASE_URL at Postgres.")
    return db_url


def _alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def run_release(*, seed: bool = True) -> None:
    from alembic import command
    from alembic.script import ScriptDirectory

    db_url = _database_url()
    cfg = _alembic_config(db_url)

    print("=== Complaint desk release start ===", flush=True)
    command.upgrade(cfg, "head")
    print(f"Schema at revision {ScriptDirectory.from_config(cfg).get_current_head()}.", flush=True)

    if seed:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
    print("=== Complaint desk release done ===", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run migrations and seed data.")
    parser.add_argument("--migrate-only", action="store_true", help="skip seeding")
    args = parser.parse_args(argv)
    run_release(seed=not args.migrate_only)


if __name__ == "__main__":
    main()
