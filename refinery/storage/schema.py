#!/usr/bin/env python3
# CUI // SP-CTI
"""Initialize the Decision Plane database and hand out connections.

Four tables:
    records      JSON payloads keyed by (collection, record_id)
    artifacts    content-addressed text artifacts (changelogs, reports)
    audit_trail  append-only, hash-chained audit entries
    vectors      bag-of-words embeddings for decision similarity

Usage:
    python -m refinery.storage.schema --db-path data/refinery.db
    python -m refinery.storage.schema --reset
"""

import argparse
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Union

from refinery.config import get_db_path

logger = logging.getLogger("refinery.storage")

SCHEMA_SQL = """
-- ============================================================
-- RECORDS (typed JSON payloads)
-- ============================================================
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    record_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, record_id)
);
CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);

-- ============================================================
-- ARTIFACTS
-- ============================================================
CREATE TABLE IF NOT EXISTS artifacts (
    artifact_id TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    content_type TEXT NOT NULL,
    category TEXT NOT NULL CHECK(category IN (
        'raw_response', 'ci_log', 'package', 'sbom', 'provenance', 'diff', 'report'
    )),
    tags TEXT,
    size_bytes INTEGER NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- ============================================================
-- AUDIT TRAIL (append-only, no UPDATE or DELETE)
-- ============================================================
CREATE TABLE IF NOT EXISTS audit_trail (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    action TEXT NOT NULL,
    actor TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    details TEXT,
    timestamp TEXT NOT NULL,
    correlation_id TEXT,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_trail(action);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_trail(target_type, target_id);

-- ============================================================
-- VECTORS
-- ============================================================
CREATE TABLE IF NOT EXISTS vectors (
    vector_id TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    content_text TEXT NOT NULL,
    embedding TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vectors_namespace ON vectors(namespace);
"""

_initialized = set()


def get_db_connection(
    db_path: Optional[Union[str, Path]] = None,
    row_factory: bool = True,
) -> sqlite3.Connection:
    """Get a SQLite connection to the Decision Plane database.

    The schema is created on first use of each path. Caller is responsible
    for closing the connection.
    """
    path = get_db_path(db_path)
    if str(path) not in _initialized or not path.exists():
        init_db(path)
        _initialized.add(str(path))
    conn = sqlite3.connect(str(path), timeout=10)
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Optional[Union[str, Path]] = None) -> List[str]:
    """Create all tables (idempotent). Returns the table names present."""
    path = get_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        c = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        tables = [row[0] for row in c.fetchall()]
    finally:
        conn.close()
    logger.debug("Database initialized at %s (%d tables)", path, len(tables))
    return tables


def main():
    parser = argparse.ArgumentParser(description="Initialize the Refinery database")
    parser.add_argument("--db-path", type=Path, default=None, help="Database file path")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    path = get_db_path(args.db_path)
    if args.reset and path.exists():
        path.unlink()
        print(f"Removed existing database: {path}")

    tables = init_db(path)
    print(f"Refinery database initialized at {path}")
    print(f"Tables ({len(tables)}): {', '.join(tables)}")


if __name__ == "__main__":
    main()
