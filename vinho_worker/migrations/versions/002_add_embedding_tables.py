"""Add embedding queue and match indexes.

Revision ID: 002
Revises: 001
Create Date: 2026-03-09

Creates embedding_jobs_queue, label_embeddings (visual matcher index) and
wine_identities + identity_fts (text matcher index).
"""
from typing import Sequence, Union

from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection
    raw_conn.executescript("""
        CREATE TABLE IF NOT EXISTS embedding_jobs_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_type TEXT NOT NULL CHECK (job_type IN ('wine_identity', 'label_visual')),
            wine_id INTEGER NOT NULL,
            vintage_id INTEGER,
            scan_id INTEGER,
            input_text TEXT,
            input_image_url TEXT,
            idempotency_key TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            processed_at TIMESTAMP,
            FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_embedding_jobs_status
        ON embedding_jobs_queue(job_type, status, created_at);

        -- Label image embeddings (JSON float arrays)
        CREATE TABLE IF NOT EXISTS label_embeddings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            wine_id INTEGER NOT NULL,
            vintage_id INTEGER,
            source_image_url TEXT NOT NULL,
            source_scan_id INTEGER,
            embedding TEXT NOT NULL,
            embedding_model TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE,
            UNIQUE(wine_id, source_image_url)
        );

        -- Identity text per wine: "Producer | Wine | Region, Country | Varietals"
        CREATE TABLE IF NOT EXISTS wine_identities (
            wine_id INTEGER PRIMARY KEY,
            identity_text TEXT NOT NULL,
            completeness REAL NOT NULL DEFAULT 0,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE
        );

        CREATE VIRTUAL TABLE IF NOT EXISTS identity_fts USING fts5(
            identity_text,
            content='wine_identities',
            content_rowid='wine_id'
        );

        CREATE TRIGGER IF NOT EXISTS wine_identities_ai AFTER INSERT ON wine_identities BEGIN
            INSERT INTO identity_fts(rowid, identity_text) VALUES (new.wine_id, new.identity_text);
        END;

        CREATE TRIGGER IF NOT EXISTS wine_identities_ad AFTER DELETE ON wine_identities BEGIN
            INSERT INTO identity_fts(identity_fts, rowid, identity_text)
            VALUES ('delete', old.wine_id, old.identity_text);
        END;

        CREATE TRIGGER IF NOT EXISTS wine_identities_au AFTER UPDATE ON wine_identities BEGIN
            INSERT INTO identity_fts(identity_fts, rowid, identity_text)
            VALUES ('delete', old.wine_id, old.identity_text);
            INSERT INTO identity_fts(rowid, identity_text) VALUES (new.wine_id, new.identity_text);
        END;
    """)


def downgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    for trigger in ("wine_identities_ai", "wine_identities_ad", "wine_identities_au"):
        raw_conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")
    raw_conn.execute("DROP TABLE IF EXISTS identity_fts")
    raw_conn.execute("DROP TABLE IF EXISTS wine_identities")
    raw_conn.execute("DROP TABLE IF EXISTS label_embeddings")
    raw_conn.execute("DROP INDEX IF EXISTS idx_embedding_jobs_status")
    raw_conn.execute("DROP TABLE IF EXISTS embedding_jobs_queue")
