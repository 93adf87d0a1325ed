"""
Release step for sopdesk: upgrade the schema, then seed access control.

Migrations bring the database to head (users/RBAC, audit events,
notifications, documents and their versions, working copies and reviews).
The seed then ensures the `docs.create` and `working_copies.discard_any`
permissions, the admin role and the admin user exist. Both are safe to repeat.

Usage:
  DATABASE_URL=... python scripts/release.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("sopdesk.release")


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set for a release.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Production releases need a Postgres DATABASE_URL, got sqlite.")
    return db_url


def migrate(db_url: str, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, revision)


def run_release() -> None:
    db_url = _database_url()

    logger.info("Upgrading schema to head")
    migrate(db_url)

    from scripts import init_db

    logger.info("Seeding permissions, admin role and admin user")
    init_db.seed_only(database_url=db_url)
    logger.info("Release complete")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_release()


if __name__ == "__main__":
    main()
