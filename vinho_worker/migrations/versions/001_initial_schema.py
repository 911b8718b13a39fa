"""Initial schema - catalog, scan queue and tastings.

Revision ID: 001
Revises: None
Create Date: 2026-03-02

Creates core tables: regions, producers, wines, vintages, grape_varietals,
varietal_fts (FTS5), wine_varietals, scans, scan_jobs, tastings,
wines_enrichment_queue.

Note: embedding tables are created in migration 002.
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Complete schema SQL inlined for immutability.
# Natural keys are declared COLLATE NOCASE so the UNIQUE constraints
# themselves enforce ASCII case-insensitive uniqueness (see 003 for the
# Unicode-folded keys).
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS regions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL COLLATE NOCASE,
    country TEXT NOT NULL COLLATE NOCASE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(name, country)
);

CREATE TABLE IF NOT EXISTS producers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    website TEXT,
    address TEXT,
    city TEXT,
    postal_code TEXT,
    latitude REAL,
    longitude REAL,
    region_id INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (region_id) REFERENCES regions(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS wines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    producer_id INTEGER NOT NULL,
    name TEXT NOT NULL COLLATE NOCASE,
    is_nv BOOLEAN NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (producer_id) REFERENCES producers(id) ON DELETE CASCADE,
    UNIQUE(producer_id, name)
);

CREATE TABLE IF NOT EXISTS vintages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wine_id INTEGER NOT NULL,
    year INTEGER,
    abv REAL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE,
    UNIQUE(wine_id, year)
);

-- SQLite treats NULLs as distinct in UNIQUE, so the NV slot needs its own index
CREATE UNIQUE INDEX IF NOT EXISTS ux_vintages_wine_nv
    ON vintages(wine_id) WHERE year IS NULL;

CREATE TABLE IF NOT EXISTS grape_varietals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- FTS5 virtual table for fuzzy varietal lookups
CREATE VIRTUAL TABLE IF NOT EXISTS varietal_fts USING fts5(
    name,
    content='grape_varietals',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS grape_varietals_ai AFTER INSERT ON grape_varietals BEGIN
    INSERT INTO varietal_fts(rowid, name) VALUES (new.id, new.name);
END;

CREATE TRIGGER IF NOT EXISTS grape_varietals_ad AFTER DELETE ON grape_varietals BEGIN
    INSERT INTO varietal_fts(varietal_fts, rowid, name) VALUES ('delete', old.id, old.name);
END;

CREATE TRIGGER IF NOT EXISTS grape_varietals_au AFTER UPDATE ON grape_varietals BEGIN
    INSERT INTO varietal_fts(varietal_fts, rowid, name) VALUES ('delete', old.id, old.name);
    INSERT INTO varietal_fts(rowid, name) VALUES (new.id, new.name);
END;

CREATE TABLE IF NOT EXISTS wine_varietals (
    vintage_id INTEGER NOT NULL,
    varietal_id INTEGER NOT NULL,
    percent REAL NOT NULL,
    FOREIGN KEY (vintage_id) REFERENCES vintages(id) ON DELETE CASCADE,
    FOREIGN KEY (varietal_id) REFERENCES grape_varietals(id) ON DELETE CASCADE,
    PRIMARY KEY (vintage_id, varietal_id)
);

-- Originating scans (written by the upload flow)
CREATE TABLE IF NOT EXISTS scans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    image_path TEXT NOT NULL,
    ocr_text TEXT,
    matched_vintage_id INTEGER,
    confidence REAL,
    match_method TEXT,
    vector_similarity REAL,
    contributed_to_embeddings BOOLEAN NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (matched_vintage_id) REFERENCES vintages(id) ON DELETE SET NULL
);

-- Label-resolution job queue
CREATE TABLE IF NOT EXISTS scan_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    image_url TEXT NOT NULL,
    ocr_text TEXT,
    scan_id INTEGER,
    idempotency_key TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'working', 'completed', 'failed')),
    processed_data TEXT,
    error_message TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    processed_at TIMESTAMP,
    FOREIGN KEY (scan_id) REFERENCES scans(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS tastings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    vintage_id INTEGER NOT NULL,
    verdict INTEGER,
    notes TEXT,
    tasted_at DATE NOT NULL,
    image_url TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (vintage_id) REFERENCES vintages(id) ON DELETE CASCADE
);

-- Background enrichment requests, one per vintage
CREATE TABLE IF NOT EXISTS wines_enrichment_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wine_id INTEGER NOT NULL,
    vintage_id INTEGER NOT NULL UNIQUE,
    user_id TEXT,
    producer_name TEXT NOT NULL,
    wine_name TEXT NOT NULL,
    year INTEGER,
    region TEXT,
    country TEXT,
    existing_varietals TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE,
    FOREIGN KEY (vintage_id) REFERENCES vintages(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_scan_jobs_status_created ON scan_jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_scan_jobs_idempotency ON scan_jobs(idempotency_key, status);
CREATE INDEX IF NOT EXISTS idx_wines_producer ON wines(producer_id);
CREATE INDEX IF NOT EXISTS idx_vintages_wine ON vintages(wine_id);
CREATE INDEX IF NOT EXISTS idx_tastings_user ON tastings(user_id);
"""


def upgrade() -> None:
    # Use raw DBAPI connection for multi-statement SQL with triggers
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection
    raw_conn.executescript(SCHEMA_SQL)


def downgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    for trigger in ("grape_varietals_ai", "grape_varietals_ad", "grape_varietals_au"):
        raw_conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")

    # Drop tables in reverse dependency order
    tables = [
        "wines_enrichment_queue",
        "tastings",
        "scan_jobs",
        "scans",
        "wine_varietals",
        "varietal_fts",
        "grape_varietals",
        "vintages",
        "wines",
        "producers",
        "regions",
    ]
    for table in tables:
        raw_conn.execute(f"DROP TABLE IF EXISTS {table}")
