"""Migration runner — brings a SQLite store's schema up to date.

Migrations are modules in `agentworld/migrations/` named
`m_NNN_description.py`, NNN being a zero-padded version number. Each
defines `async def upgrade(db: aiosqlite.Connection)`.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

import aiosqlite

_logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"


async def get_schema_version(db_path: str) -> int:
    """Current schema version; 0 for a fresh database."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
        )
        await db.commit()

        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        return row[0] if row[0] is not None else 0


def discover_migrations() -> list[tuple[int, str]]:
    """(version, module name) pairs in version order."""
    found: list[tuple[int, str]] = []
    for mf in sorted(MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py")):
        parts = mf.stem.split("_")
        if len(parts) < 2:
            continue
        try:
            version = int(parts[1])
        except ValueError:
            continue
        found.append((version, mf.stem))
    return sorted(found)


async def apply_migrations(db_path: str) -> list[int]:
    """Apply all pending migrations. Returns the versions applied."""
    current = await get_schema_version(db_path)
    applied: list[int] = []

    for version, stem in discover_migrations():
        if version <= current:
            continue

        module = importlib.import_module(f"agentworld.migrations.{stem}")
        async with aiosqlite.connect(db_path) as db:
            await module.upgrade(db)
            # A concurrent starter may have applied it first.
            await db.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (version,),
            )
            await db.commit()

        _logger.info("Applied schema migration %d (%s)", version, stem)
        applied.append(version)

    return applied
