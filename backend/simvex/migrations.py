"""Versioned SQL migrations for the relational backend.

Migration scripts live in one directory and are named
`<number>_<description>.sql` (e.g. `0001_init.sql`). Before anything
runs, the whole set is validated: numbers must be unique and
consecutive, and no file may be empty. Each pending script then runs in
its own transaction together with its `schema_migrations` ledger row, so
a script either applies completely and is recorded, or leaves nothing
behind. The first failure stops the run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sqlalchemy import func, inspect
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from .errors import MigrationError
from .models import SchemaMigration

logger = logging.getLogger("simvex.migrations")

MIGRATION_NAME = re.compile(r"^(\d+)_.*\.sql$", re.IGNORECASE)


@dataclass(frozen=True)
class MigrationFile:
    version: str  # file name; the ledger key
    number: int
    path: Path

    def read_sql(self) -> str:
        return self.path.read_text(encoding="utf-8")


def list_migration_files(migration_dir: Path | str) -> List[MigrationFile]:
    """Return migration files in `migration_dir` ordered by number."""
    directory = Path(migration_dir)
    if not directory.is_dir():
        return []
    files = []
    for entry in directory.iterdir():
        matched = MIGRATION_NAME.match(entry.name)
        if entry.is_file() and matched:
            files.append(MigrationFile(version=entry.name, number=int(matched.group(1)), path=entry))
    return sorted(files, key=lambda m: (m.number, m.version))


def validate_migrations(files: List[MigrationFile]) -> None:
    """Reject an unusable migration set before anything is executed."""
    if not files:
        raise MigrationError("no migration files found")

    seen = set()
    expected = files[0].number
    for migration in files:
        if migration.number in seen:
            raise MigrationError(f"duplicate migration version: {migration.version}", migration.version)
        seen.add(migration.number)
        if migration.number != expected:
            raise MigrationError(
                f"migration out of order: expected {expected}, got {migration.number} ({migration.version})",
                migration.version,
            )
        expected += 1
        if not migration.read_sql().strip():
            raise MigrationError(f"empty migration file: {migration.version}", migration.version)


def split_sql_statements(sql: str) -> List[str]:
    """Split a script on top-level semicolons.

    Semicolons inside quotes, `--`/`/* */` comments and PostgreSQL
    dollar-quoted bodies are kept. Statements that are only whitespace
    or comments are dropped.
    """
    statements = []
    buf: List[str] = []
    has_code = False
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            end = n if end == -1 else end
            buf.append(sql[i:end])
            i = end
            continue
        if ch == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            buf.append(sql[i:end])
            i = end
            continue
        if ch in ("'", '"'):
            end = i + 1
            while end < n:
                if sql[end] == ch:
                    if end + 1 < n and sql[end + 1] == ch:  # escaped quote
                        end += 2
                        continue
                    break
                end += 1
            buf.append(sql[i:end + 1])
            has_code = True
            i = end + 1
            continue
        if ch == "$":
            tag = re.match(r"\$[A-Za-z_0-9]*\$", sql[i:])
            if tag:
                close = sql.find(tag.group(0), i + len(tag.group(0)))
                end = n if close == -1 else close + len(tag.group(0))
                buf.append(sql[i:end])
                has_code = True
                i = end
                continue
        if ch == ";":
            if has_code:
                statements.append("".join(buf).strip())
            buf = []
            has_code = False
            i += 1
            continue
        if not ch.isspace():
            has_code = True
        buf.append(ch)
        i += 1
    if has_code:
        statements.append("".join(buf).strip())
    return statements


def ensure_ledger(engine: Engine) -> None:
    SchemaMigration.__table__.create(engine, checkfirst=True)


def applied_versions(engine: Engine) -> set:
    with Session(engine) as session:
        return set(session.exec(select(SchemaMigration.version)).all())


def run_migrations(engine: Engine, migration_dir: Path | str) -> List[str]:
    """Apply pending migrations in order; return the versions applied now.

    An empty or missing directory is a no-op. Raises `MigrationError`
    for an invalid set (nothing executed) or a failing script (its
    transaction rolled back, later scripts not attempted).
    """
    files = list_migration_files(migration_dir)
    if not files:
        logger.info("no migrations found in %s", migration_dir)
        return []
    validate_migrations(files)

    ensure_ledger(engine)
    already = applied_versions(engine)
    applied_now = []
    for migration in files:
        if migration.version in already:
            continue
        logger.info("applying migration %s", migration.version)
        try:
            with engine.begin() as conn:
                for statement in split_sql_statements(migration.read_sql()):
                    conn.exec_driver_sql(statement)
                conn.execute(SchemaMigration.__table__.insert().values(
                    version=migration.version,
                    applied_at=datetime.now(timezone.utc),
                ))
        except Exception as exc:
            logger.error("migration failed: %s", migration.version)
            raise MigrationError(f"migration failed: {migration.version}", migration.version) from exc
        applied_now.append(migration.version)
    logger.info("migrations applied: %d", len(applied_now))
    return applied_now


@dataclass(frozen=True)
class MigrationStatus:
    applied_count: int
    latest_version: Optional[str]


def migration_status(engine: Engine) -> MigrationStatus:
    """Summarise the ledger. Raises `MigrationError` if it does not exist."""
    if not inspect(engine).has_table(SchemaMigration.__tablename__):
        raise MigrationError("schema_migrations table is missing; run migrations first")
    with Session(engine) as session:
        count = session.exec(select(func.count()).select_from(SchemaMigration)).one()
        latest = session.exec(
            select(SchemaMigration.version).order_by(col(SchemaMigration.version).desc()).limit(1)
        ).first()
    return MigrationStatus(applied_count=count, latest_version=latest)
