"""SQLite schema definition for the version store."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

# ── Migrations ──────────────────────────────────────────────────────
# Each entry maps (from_version -> to_version) with a list of SQL statements.
# Migrations run sequentially in initialize() when db version < SCHEMA_VERSION.

MIGRATIONS: dict[tuple[int, int], list[str]] = {
    (1, 2): [
        "ALTER TABLE task_versions ADD COLUMN superseded_at TEXT",
        "CREATE INDEX IF NOT EXISTS idx_outcomes_occurrence "
        "ON outcomes(task_uuid, task_occurrence_index)",
    ],
}


async def run_migrations(conn: aiosqlite.Connection, current_version: int) -> int:
    """Apply all pending migrations from current_version to SCHEMA_VERSION.

    Returns the final schema version after all migrations.
    """
    version = current_version

    while version < SCHEMA_VERSION:
        next_version = version + 1
        for sql in MIGRATIONS.get((version, next_version), []):
            try:
                await conn.execute(sql)
            except sqlite3.OperationalError as e:
                # Column/index may already exist (partial migration or manual fix)
                if "duplicate column" in str(e).lower() or "already exists" in str(e).lower():
                    logger.debug("Migration already applied: %s", e)
                else:
                    raise
        version = next_version

    await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    logger.info("Migrated version store schema %d -> %d", current_version, version)
    return version


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Store identity and other single values
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Knowledge vector, one row per clock id
CREATE TABLE IF NOT EXISTS knowledge_vector (
    clock_id TEXT PRIMARY KEY,
    clock INTEGER NOT NULL DEFAULT 0
);

-- Immutable task versions; superseded ones stay but are hidden
CREATE TABLE IF NOT EXISTS task_versions (
    uuid TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    instructions TEXT,
    schedule TEXT NOT NULL DEFAULT '{}',  -- JSON
    previous_version_uuid TEXT,
    created_date TEXT NOT NULL,
    updated_date TEXT NOT NULL,
    deleted_date TEXT,
    origin_clock_id TEXT NOT NULL DEFAULT '',
    origin_clock INTEGER NOT NULL DEFAULT 0,
    superseded INTEGER NOT NULL DEFAULT 0,
    superseded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_task_versions_id ON task_versions(id, superseded);
CREATE INDEX IF NOT EXISTS idx_task_versions_origin ON task_versions(origin_clock_id, origin_clock);

-- Outcomes and outcome tombstones
CREATE TABLE IF NOT EXISTS outcomes (
    uuid TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    task_uuid TEXT NOT NULL,
    task_occurrence_index INTEGER NOT NULL,
    outcome_values TEXT NOT NULL DEFAULT '[]',  -- JSON
    previous_version_uuid TEXT,
    created_date TEXT NOT NULL,
    updated_date TEXT NOT NULL,
    deleted_date TEXT,
    origin_clock_id TEXT NOT NULL DEFAULT '',
    origin_clock INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_outcomes_task ON outcomes(task_uuid);
CREATE INDEX IF NOT EXISTS idx_outcomes_occurrence ON outcomes(task_uuid, task_occurrence_index);
CREATE INDEX IF NOT EXISTS idx_outcomes_origin ON outcomes(origin_clock_id, origin_clock);

-- A version is dirty for a remote until a row exists here
CREATE TABLE IF NOT EXISTS acknowledgements (
    version_uuid TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    acknowledged_at TEXT NOT NULL,
    PRIMARY KEY (version_uuid, remote_id)
);
CREATE INDEX IF NOT EXISTS idx_acknowledgements_remote ON acknowledgements(remote_id);
"""
