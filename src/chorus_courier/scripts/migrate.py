# src/chorus_courier/scripts/migrate.py
"""Apply or roll back the federation queue schema.

Usage:
    python -m chorus_courier.scripts.migrate              # upgrade to head
    python -m chorus_courier.scripts.migrate --sql        # print the DDL only
    python -m chorus_courier.scripts.migrate downgrade base
"""
from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Sequence

from alembic import command
from alembic.config import Config

from chorus_courier.core.settings import settings

MIGRATIONS_DIR = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "..", "..", "migrations")
)


def alembic_config(database_url: str | None = None) -> Config:
    cfg = Config(os.path.join(MIGRATIONS_DIR, "alembic.ini"))
    # Alembic runs synchronously; use the sync driver variant of the configured URL
    cfg.set_main_option("sqlalchemy.url", database_url or settings.database_url_sync)
    cfg.set_main_option("script_location", MIGRATIONS_DIR)
    return cfg


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate the federation queue tables")
    parser.add_argument("action", nargs="?", choices=("upgrade", "downgrade"), default="upgrade")
    parser.add_argument("revision", nargs="?", default=None, help="Target revision")
    parser.add_argument("--sql", action="store_true", help="Print SQL instead of executing it")
    args = parser.parse_args(argv)

    cfg = alembic_config()
    if args.action == "upgrade":
        command.upgrade(cfg, args.revision or "head", sql=args.sql)
    else:
        if args.revision is None:
            parser.error("downgrade needs a target revision, e.g. 'base'")
        command.downgrade(cfg, args.revision, sql=args.sql)
    return 0


if __name__ == "__main__":
    sys.exit(main())
