"""Migration runner for the change-feed state tables."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from importlib.resources import files
from typing import Dict, List, Optional, Tuple

from chef_change_feed.config import load_settings
from chef_change_feed.db import Connection, connect, connect_from_settings

logger = logging.getLogger(__name__)

MIGRATION_PACKAGE = "chef_change_feed.migrations.sql"
LEDGER_TABLE = "public.schema_migrations"


class MigrationError(Exception):
    """Base exception raised for migration related failures."""


class MigrationChecksumMismatch(MigrationError):
    """An applied migration no longer matches the packaged script."""


class MigrationNotFound(MigrationError):
    """A migration script (or its down counterpart) is missing."""


@dataclass(frozen=True)
class Migration:
    version: str
    name: str
    up_sql: str
    down_sql: str
    checksum: str

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"


@dataclass(frozen=True)
class MigrationStatus:
    migration: Migration
    applied: bool


def _checksum(script: str) -> str:
    return hashlib.sha256(script.encode("utf-8")).hexdigest()


def load_migrations(package: str = MIGRATION_PACKAGE) -> List[Migration]:
    """Load ``NNN_name.up.sql``/``NNN_name.down.sql`` pairs sorted by version."""

    base = files(package)
    migrations: List[Migration] = []
    for entry in base.iterdir():
        if not entry.name.endswith(".up.sql"):
            continue
        stem = entry.name[: -len(".up.sql")]
        down_entry = base / f"{stem}.down.sql"
        if not down_entry.is_file():
            raise MigrationNotFound(f"Missing down script for migration '{stem}'")
        version, _, title = stem.partition("_")
        if not version.isdigit():
            raise MigrationError(
                f"Migration '{stem}' does not start with a numeric version prefix"
            )
        up_sql = entry.read_text(encoding="utf-8")
        migrations.append(
            Migration(
                version=version,
                name=title,
                up_sql=up_sql,
                down_sql=down_entry.read_text(encoding="utf-8"),
                checksum=_checksum(up_sql),
            )
        )
    migrations.sort(key=lambda m: int(m.version))
    return migrations


def _open(conn: Optional[Connection], conninfo: Optional[str]) -> Tuple[Connection, bool]:
    """Return ``(connection, owned)``; settings are used when no conninfo is given."""

    if conn is not None:
        return conn, False
    if conninfo:
        connection = connect(conninfo)
    else:
        connection = connect_from_settings(load_settings())
    return connection, True


def _ledger_exists(conn: Connection) -> bool:
    with conn.transaction():
        row = conn.execute("SELECT to_regclass(%s)", (LEDGER_TABLE,)).fetchone()
    return bool(row and row[0])


def _fetch_applied(conn: Connection) -> Dict[str, str]:
    """Map applied versions to their recorded checksum."""

    if not _ledger_exists(conn):
        return {}
    with conn.transaction():
        rows = conn.execute(
            f"SELECT version, checksum FROM {LEDGER_TABLE} ORDER BY version"
        ).fetchall()
    return {version: checksum for version, checksum in rows}


def _verify(migration: Migration, recorded: str) -> None:
    if recorded != migration.checksum:
        raise MigrationChecksumMismatch(
            f"Checksum mismatch for migration {migration.label}"
        )


def migration_status(
    *, conn: Optional[Connection] = None, conninfo: Optional[str] = None
) -> List[MigrationStatus]:
    """Report every packaged migration and whether the ledger records it."""

    migrations = load_migrations()
    connection, owned = _open(conn, conninfo)
    try:
        applied = _fetch_applied(connection)
    finally:
        if owned:
            connection.close()
    return [
        MigrationStatus(migration=m, applied=m.version in applied) for m in migrations
    ]


def apply_migrations(
    *,
    conn: Optional[Connection] = None,
    conninfo: Optional[str] = None,
    target_version: Optional[str] = None,
    dry_run: bool = False,
) -> List[Migration]:
    """Apply pending migrations up to ``target_version`` (inclusive).

    Returns the migrations executed, or those that would run under ``dry_run``.
    """

    migrations = load_migrations()
    connection, owned = _open(conn, conninfo)
    executed: List[Migration] = []
    try:
        applied = _fetch_applied(connection)
        for migration in migrations:
            if target_version and int(migration.version) > int(target_version):
                break
            recorded = applied.get(migration.version)
            if recorded is not None:
                _verify(migration, recorded)
                continue
            executed.append(migration)
            if dry_run:
                continue
            with connection.transaction():
                connection.execute(migration.up_sql)
                connection.execute(
                    f"INSERT INTO {LEDGER_TABLE} (version, checksum) VALUES (%s, %s)",
                    (migration.version, migration.checksum),
                )
            logger.info("applied migration %s", migration.label)
    finally:
        if owned:
            connection.close()
    return executed


def rollback_last(
    *,
    conn: Optional[Connection] = None,
    conninfo: Optional[str] = None,
    dry_run: bool = False,
) -> Optional[Migration]:
    """Run the down script of the most recently applied migration."""

    migrations = {m.version: m for m in load_migrations()}
    connection, owned = _open(conn, conninfo)
    try:
        if not _ledger_exists(connection):
            return None
        row = connection.execute(
            f"SELECT version, checksum FROM {LEDGER_TABLE} "
            "ORDER BY (version)::int DESC LIMIT 1"
        ).fetchone()
        if not row:
            return None
        version, recorded = row
        migration = migrations.get(version)
        if migration is None:
            raise MigrationNotFound(f"No migration files found for version {version}")
        _verify(migration, recorded)
        if dry_run:
            return migration
        # Delete the ledger row first: the 000 down script drops the ledger itself.
        # Both statements commit together or not at all.
        with connection.transaction():
            connection.execute(
                f"DELETE FROM {LEDGER_TABLE} WHERE version = %s", (version,)
            )
            connection.execute(migration.down_sql)
        logger.info("rolled back migration %s", migration.label)
        return migration
    finally:
        if owned:
            connection.close()


__all__ = [
    "LEDGER_TABLE",
    "Migration",
    "MigrationChecksumMismatch",
    "MigrationError",
    "MigrationNotFound",
    "MigrationStatus",
    "apply_migrations",
    "load_migrations",
    "migration_status",
    "rollback_last",
]
