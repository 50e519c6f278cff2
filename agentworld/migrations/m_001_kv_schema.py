"""Migration 001: key/value, hash, set, sorted-set and list tables."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expires_at REAL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS hashes (
            key TEXT NOT NULL,
            field TEXT NOT NULL,
            value TEXT NOT NULL,
            PRIMARY KEY (key, field)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS sets (
            key TEXT NOT NULL,
            member TEXT NOT NULL,
            PRIMARY KEY (key, member)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS zsets (
            key TEXT NOT NULL,
            member TEXT NOT NULL,
            score REAL NOT NULL,
            PRIMARY KEY (key, member)
        )
    """)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_zsets_score ON zsets(key, score, member)"
    )
    await db.execute("""
        CREATE TABLE IF NOT EXISTS lists (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT NOT NULL,
            value TEXT NOT NULL
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_lists_key ON lists(key, seq)")
