"""Migration runner for the relational backend using SQL files in db/migrations/.

Usage:
    python run_migrations.py [--database-url URL] [--dir DIR] [--validate-only | --status]
"""
import argparse
import logging
import pathlib
import sys

# Ensure `backend/` is on sys.path so `simvex` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from simvex.config import settings  # noqa: E402
from simvex.database import create_db_engine  # noqa: E402
from simvex.errors import MigrationError  # noqa: E402
from simvex.migrations import (  # noqa: E402
    list_migration_files,
    migration_status,
    run_migrations,
    validate_migrations,
)


def mask_database_url(url: str) -> str:
    """Hide the password part of a database URL for printing."""
    head, sep, tail = url.partition("://")
    if not sep or "@" not in tail:
        return url
    credentials, _, host = tail.rpartition("@")
    user = credentials.split(":", 1)[0]
    return f"{head}://{user}:***@{host}"


def run(database_url: str, migration_dir: str, validate_only: bool = False, status: bool = False) -> int:
    """Validate, apply or report migrations; return a process exit code."""
    if validate_only:
        files = list_migration_files(migration_dir)
        validate_migrations(files)
        print(f"Migrations valid: {len(files)}")
        for m in files:
            print(f"- {m.version}")
        return 0

    if not database_url:
        print("DATABASE_URL or POSTGRES_URL is required", file=sys.stderr)
        return 1

    engine = create_db_engine(database_url)
    try:
        print("Using database:", mask_database_url(database_url))
        if status:
            summary = migration_status(engine)
            print(f"- applied_migrations: {summary.applied_count}")
            print(f"- latest_migration: {summary.latest_version or '(none)'}")
            return 0
        for version in run_migrations(engine, migration_dir):
            print("Applied:", version)
        print("Migrations applied.")
        return 0
    finally:
        engine.dispose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    parser.add_argument("--dir", default=settings.MIGRATIONS_DIR)
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--validate-only", action="store_true")
    mode.add_argument("--status", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.LOG_LEVEL)
    try:
        return run(args.database_url, args.dir, validate_only=args.validate_only, status=args.status)
    except MigrationError as exc:
        print(f"Migration error: {exc}", file=sys.stderr)
        if exc.__cause__ is not None:
            print(f"  caused by: {exc.__cause__}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
