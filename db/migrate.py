from __future__ import annotations

import hashlib
import importlib.util
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


_FILE_RE = re.compile(r"^(?P<version>\d{4})_(?P<name>\w+)\.(?P<kind>sql|py)$")


@dataclass(frozen=True)
class MigrationFile:
    version: str
    name: str
    kind: str
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()

    @property
    def label(self) -> str:
        return self.path.name


def discover_migrations(migrations_dir: str | Path) -> list[MigrationFile]:
    base = Path(migrations_dir)
    if not base.is_dir():
        raise RuntimeError(f"Migrations directory not found: {migrations_dir}")
    found = []
    for path in sorted(base.iterdir()):
        m = _FILE_RE.match(path.name)
        if path.is_file() and m:
            found.append(MigrationFile(m["version"], m["name"], m["kind"], path))
    return found


def _recorded(conn: sqlite3.Connection) -> dict[str, tuple[str, str]]:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()
    rows = conn.execute("SELECT version, name, checksum FROM schema_migrations").fetchall()
    return {str(v): (str(n), str(c)) for v, n, c in rows}


def _load_upgrade(migration: MigrationFile):
    module_spec = importlib.util.spec_from_file_location(
        f"driftbottle_migration_{migration.version}", str(migration.path)
    )
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Could not load migration module: {migration.path}")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if not callable(upgrade):
        raise RuntimeError(f"Python migration {migration.label} has no upgrade(conn)")
    return upgrade


def _run(conn: sqlite3.Connection, migration: MigrationFile) -> None:
    if migration.kind == "sql":
        conn.executescript(migration.path.read_text(encoding="utf-8"))
    else:
        _load_upgrade(migration)(conn)


def apply_sqlite_migrations(conn: sqlite3.Connection, migrations_dir: str) -> list[str]:
    """Apply pending migrations in version order; returns the versions applied.

    An already recorded version whose file name or content changed is an error.
    """
    migrations = discover_migrations(migrations_dir)
    recorded = _recorded(conn)

    applied: list[str] = []
    for migration in migrations:
        checksum = migration.checksum
        if migration.version in recorded:
            if recorded[migration.version] != (migration.name, checksum):
                raise RuntimeError(
                    f"Migration {migration.version} was applied as {recorded[migration.version][0]} "
                    f"and no longer matches {migration.label}"
                )
            continue

        print(f"[DB] applying migration {migration.label}")
        _run(conn, migration)
        conn.execute(
            "INSERT INTO schema_migrations (version, name, checksum, applied_at_utc) VALUES (?, ?, ?, ?)",
            (migration.version, migration.name, checksum, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        applied.append(migration.version)
    return applied
