"""Forward-only migration runner for the context cache schema."""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

# Timestamps are ISO-8601 UTC strings written by the application clock so
# ages can be compared lexicographically.
_V1_SQL = """
CREATE TABLE IF NOT EXISTS context_cache (
    project         TEXT NOT NULL,
    document_type   TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'none',
    bundle          TEXT,
    failure_reason  TEXT,
    build_id        TEXT,
    built_at        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (project, document_type)
);

CREATE TABLE IF NOT EXISTS overflow_events (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    project             TEXT NOT NULL,
    document_type       TEXT NOT NULL,
    model_category      TEXT NOT NULL,
    current_tokens      INTEGER NOT NULL,
    max_context_tokens  INTEGER NOT NULL,
    overflow_amount     INTEGER NOT NULL,
    document_count      INTEGER NOT NULL,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_overflow_events_project
    ON overflow_events (project, created_at);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
