"""Unicode natural keys, enrichment queue bookkeeping, binary label vectors.

Revision ID: 003
Revises: 002
Create Date: 2026-03-23

- regions, producers, wines and grape_varietals gain casefolded key
  columns with UNIQUE indexes. COLLATE NOCASE only folds ASCII, so
  "Château" and "CHÂTEAU" were distinct names under 001.
- wines_enrichment_queue gains error_message, enrichment_data,
  processed_at and updated_at for the enrichment worker.
- embedding_jobs_queue gains updated_at so claims can expire.
- label_embeddings.embedding is rebuilt as a float32 BLOB.
"""
import json
import unicodedata
from typing import Sequence, Union

import numpy as np
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _name_key(value: str) -> str:
    # Frozen copy of catalog_repository.name_key at the time of this revision
    return " ".join(unicodedata.normalize("NFKC", value).casefold().split())


ADD_COLUMNS_SQL = """
ALTER TABLE regions ADD COLUMN name_key TEXT;
ALTER TABLE regions ADD COLUMN country_key TEXT;
ALTER TABLE producers ADD COLUMN name_key TEXT;
ALTER TABLE wines ADD COLUMN name_key TEXT;
ALTER TABLE grape_varietals ADD COLUMN name_key TEXT;

ALTER TABLE wines_enrichment_queue ADD COLUMN error_message TEXT;
ALTER TABLE wines_enrichment_queue ADD COLUMN enrichment_data TEXT;
ALTER TABLE wines_enrichment_queue ADD COLUMN processed_at TIMESTAMP;
ALTER TABLE wines_enrichment_queue ADD COLUMN updated_at TIMESTAMP;

ALTER TABLE embedding_jobs_queue ADD COLUMN updated_at TIMESTAMP;
"""

KEY_INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_regions_key ON regions(name_key, country_key);
CREATE UNIQUE INDEX IF NOT EXISTS ux_producers_key ON producers(name_key);
CREATE UNIQUE INDEX IF NOT EXISTS ux_wines_key ON wines(producer_id, name_key);
CREATE UNIQUE INDEX IF NOT EXISTS ux_grape_varietals_key ON grape_varietals(name_key);
CREATE INDEX IF NOT EXISTS idx_enrichment_queue_status ON wines_enrichment_queue(status, created_at);
"""

LABEL_EMBEDDINGS_SQL = """
CREATE TABLE label_embeddings_new (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    wine_id INTEGER NOT NULL,
    vintage_id INTEGER,
    source_image_url TEXT NOT NULL,
    source_scan_id INTEGER,
    embedding {embedding_type} NOT NULL,
    embedding_model TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (wine_id) REFERENCES wines(id) ON DELETE CASCADE,
    UNIQUE(wine_id, source_image_url)
);
"""


def _backfill_keys(raw_conn) -> None:
    rows = raw_conn.execute("SELECT id, name, country FROM regions").fetchall()
    raw_conn.executemany(
        "UPDATE regions SET name_key = ?, country_key = ? WHERE id = ?",
        [(_name_key(name), _name_key(country), row_id) for row_id, name, country in rows],
    )
    for table in ("producers", "wines", "grape_varietals"):
        rows = raw_conn.execute(f"SELECT id, name FROM {table}").fetchall()
        raw_conn.executemany(
            f"UPDATE {table} SET name_key = ? WHERE id = ?",
            [(_name_key(name), row_id) for row_id, name in rows],
        )


def _rebuild_label_embeddings(raw_conn, embedding_type: str, convert) -> None:
    raw_conn.executescript(LABEL_EMBEDDINGS_SQL.format(embedding_type=embedding_type))
    rows = raw_conn.execute("""
        SELECT id, wine_id, vintage_id, source_image_url, source_scan_id,
               embedding, embedding_model, created_at
        FROM label_embeddings
    """).fetchall()
    raw_conn.executemany("""
        INSERT INTO label_embeddings_new
        (id, wine_id, vintage_id, source_image_url, source_scan_id,
         embedding, embedding_model, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, [(*row[:5], convert(row[5]), *row[6:]) for row in rows])
    raw_conn.executescript("""
        DROP TABLE label_embeddings;
        ALTER TABLE label_embeddings_new RENAME TO label_embeddings;
    """)


def _encode(text: str) -> bytes:
    return np.asarray(json.loads(text), dtype=np.float32).tobytes()


def _decode(blob: bytes) -> str:
    return json.dumps(np.frombuffer(blob, dtype=np.float32).tolist())


def upgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    raw_conn.executescript(ADD_COLUMNS_SQL)
    _backfill_keys(raw_conn)
    raw_conn.executescript(KEY_INDEXES_SQL)
    _rebuild_label_embeddings(raw_conn, "BLOB", _encode)


def downgrade() -> None:
    conn = op.get_bind()
    raw_conn = conn.connection.dbapi_connection

    _rebuild_label_embeddings(raw_conn, "TEXT", _decode)

    for index in (
        "ux_regions_key",
        "ux_producers_key",
        "ux_wines_key",
        "ux_grape_varietals_key",
        "idx_enrichment_queue_status",
    ):
        raw_conn.execute(f"DROP INDEX IF EXISTS {index}")

    columns = [
        ("regions", "name_key"),
        ("regions", "country_key"),
        ("producers", "name_key"),
        ("wines", "name_key"),
        ("grape_varietals", "name_key"),
        ("wines_enrichment_queue", "error_message"),
        ("wines_enrichment_queue", "enrichment_data"),
        ("wines_enrichment_queue", "processed_at"),
        ("wines_enrichment_queue", "updated_at"),
        ("embedding_jobs_queue", "updated_at"),
    ]
    for table, column in columns:
        raw_conn.execute(f"ALTER TABLE {table} DROP COLUMN {column}")
