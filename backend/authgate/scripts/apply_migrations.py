"""Apply Alembic migrations to the Authgate database."""
from __future__ import annotations

import argparse
import os
from pathlib import Path

from alembic import command
from alembic.config import Config


SERVICE_DIR = Path(__file__).resolve().parents[1]
ALEMBIC_INI = SERVICE_DIR / "alembic.ini"


def build_config(database_url: str | None = None) -> Config:
    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(SERVICE_DIR / "alembic"))
    if database_url:
        cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_migrations(database_url: str | None, revision: str = "head") -> None:
    command.upgrade(build_config(database_url), revision)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply Alembic migrations")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        default=None,
        help="Database URL to migrate (falls back to STORAGE__DATABASE_URL, then the configured default)",
    )
    parser.add_argument(
        "--revision",
        default="head",
        help="Target revision (default: head)",
    )
    args = parser.parse_args(argv)

    run_migrations(args.database_url or os.environ.get("STORAGE__DATABASE_URL"), args.revision)


if __name__ == "__main__":
    main()
