"""
SQLite-backed job queues.

JobQueue holds scan_jobs (label resolution), EmbeddingJobQueue holds
embedding_jobs_queue (identity text / label image embeddings) and
EnrichmentJobQueue holds wines_enrichment_queue (knowledge-model gap filling).

Claiming runs inside BEGIN IMMEDIATE, so the single UPDATE ... RETURNING
statement holds the database write lock: two workers (threads or
processes) can never flip the same pending row to 'working'.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import Config
from ..db import BaseRepository
from ..errors import JobClaimError
from ..models.enums import EmbeddingJobType, JobStatus
from ..models.jobs import ScanJob

logger = logging.getLogger(__name__)

SCAN_JOB_COLUMNS = (
    "id, user_id, image_url, ocr_text, scan_id, idempotency_key, retry_count, "
    "status, processed_data, error_message, created_at"
)


def _lease_cutoff() -> str:
    """SQLite datetime() modifier for the oldest still-valid lease."""
    return f"-{Config.JOB_LEASE_SECONDS} seconds"


class JobQueue(BaseRepository):
    """Claim, complete and retry scan jobs."""

    def enqueue(
        self,
        user_id: str,
        image_url: str,
        ocr_text: Optional[str] = None,
        scan_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Insert a pending job. Production jobs come from the upload flow."""
        with self._transaction() as cursor:
            cursor.execute("""
                INSERT INTO scan_jobs (user_id, image_url, ocr_text, scan_id, idempotency_key)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, image_url, ocr_text, scan_id, idempotency_key))
            return cursor.lastrowid

    def claim(self, limit: int) -> list[ScanJob]:
        """
        Atomically lease up to `limit` jobs, oldest first.

        Claimable means 'pending', or 'working' with a lease older than
        JOB_LEASE_SECONDS (a worker died or its failure bookkeeping broke).

        Raises:
            JobClaimError: the claim statement failed (locked DB, missing table, ...)
        """
        try:
            with self._immediate_transaction() as cursor:
                cursor.execute(f"""
                    UPDATE scan_jobs
                    SET status = 'working', updated_at = CURRENT_TIMESTAMP
                    WHERE id IN (
                        SELECT id FROM scan_jobs
                        WHERE status = 'pending'
                           OR (status = 'working' AND updated_at < datetime('now', ?))
                        ORDER BY created_at, id
                        LIMIT ?
                    )
                    RETURNING {SCAN_JOB_COLUMNS}
                """, (_lease_cutoff(), limit))
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to claim scan jobs: {e}")
            raise JobClaimError(str(e)) from e

        jobs = [ScanJob.from_row(row) for row in rows]
        jobs.sort(key=lambda job: (job.created_at or "", job.id))
        return jobs

    def get(self, job_id: int) -> Optional[ScanJob]:
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT {SCAN_JOB_COLUMNS} FROM scan_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return ScanJob.from_row(row) if row else None

    def set_idempotency_key(self, job_id: int, key: str) -> None:
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE scan_jobs
                SET idempotency_key = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (key, job_id))

    def find_completed_duplicate(self, job_id: int, key: str) -> Optional[dict]:
        """processed_data of another completed job with the same key, if any."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT processed_data FROM scan_jobs
            WHERE idempotency_key = ?
              AND status = 'completed'
              AND id != ?
              AND processed_data IS NOT NULL
            ORDER BY processed_at
            LIMIT 1
        """, (key, job_id)).fetchone()
        if not row:
            return None
        return json.loads(row["processed_data"])

    def mark_completed(self, job_id: int, processed_data: dict[str, Any]) -> None:
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE scan_jobs
                SET status = 'completed',
                    processed_data = ?,
                    error_message = NULL,
                    processed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (json.dumps(processed_data), job_id))

    def handle_failure(self, job: ScanJob, error_message: str) -> JobStatus:
        """
        Route a failed attempt through the retry policy.

        retry_count is incremented; the job goes back to 'pending' while
        retry_count <= MAX_RETRIES and becomes 'failed' after that.
        """
        new_retry_count = job.retry_count + 1
        status = JobStatus.FAILED if new_retry_count > Config.MAX_RETRIES else JobStatus.PENDING

        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE scan_jobs
                SET status = ?,
                    retry_count = ?,
                    error_message = ?,
                    processed_at = CASE WHEN ? = 'failed' THEN CURRENT_TIMESTAMP ELSE NULL END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (status.value, new_retry_count, error_message[:1000], status.value, job.id))

        job.retry_count = new_retry_count
        job.status = status
        job.error_message = error_message
        return status


@dataclass
class EmbeddingJob:
    """One claimed row of embedding_jobs_queue."""
    id: int
    job_type: EmbeddingJobType
    wine_id: int
    vintage_id: Optional[int] = None
    scan_id: Optional[int] = None
    input_text: Optional[str] = None
    input_image_url: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmbeddingJob":
        return cls(
            id=row["id"],
            job_type=EmbeddingJobType(row["job_type"]),
            wine_id=row["wine_id"],
            vintage_id=row["vintage_id"],
            scan_id=row["scan_id"],
            input_text=row["input_text"],
            input_image_url=row["input_image_url"],
            retry_count=row["retry_count"] or 0,
        )


class EmbeddingJobQueue(BaseRepository):
    """Insert-if-absent queue of embedding work."""

    def enqueue(
        self,
        job_type: EmbeddingJobType,
        wine_id: int,
        idempotency_key: str,
        vintage_id: Optional[int] = None,
        scan_id: Optional[int] = None,
        input_text: Optional[str] = None,
        input_image_url: Optional[str] = None,
    ) -> bool:
        """Returns True if a new job was queued, False if the key already existed."""
        with self._transaction() as cursor:
            cursor.execute("""
                INSERT OR IGNORE INTO embedding_jobs_queue
                (job_type, wine_id, vintage_id, scan_id, input_text, input_image_url, idempotency_key)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (job_type.value, wine_id, vintage_id, scan_id, input_text, input_image_url, idempotency_key))
            return cursor.rowcount > 0

    def claim(self, job_type: EmbeddingJobType, limit: int) -> list[EmbeddingJob]:
        try:
            with self._immediate_transaction() as cursor:
                cursor.execute("""
                    UPDATE embedding_jobs_queue
                    SET status = 'working', updated_at = CURRENT_TIMESTAMP
                    WHERE id IN (
                        SELECT id FROM embedding_jobs_queue
                        WHERE job_type = ?
                          AND (status = 'pending'
                               OR (status = 'working' AND updated_at < datetime('now', ?)))
                        ORDER BY created_at, id
                        LIMIT ?
                    )
                    RETURNING id, job_type, wine_id, vintage_id, scan_id,
                              input_text, input_image_url, retry_count
                """, (job_type.value, _lease_cutoff(), limit))
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to claim {job_type.value} embedding jobs: {e}")
            raise JobClaimError(str(e)) from e

        return sorted((EmbeddingJob.from_row(row) for row in rows), key=lambda job: job.id)

    def mark_completed(self, job_id: int) -> None:
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE embedding_jobs_queue
                SET status = 'completed', error_message = NULL, processed_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (job_id,))

    def handle_failure(self, job: EmbeddingJob, error_message: str) -> JobStatus:
        """Embedding jobs give up once retry_count reaches EMBEDDING_MAX_RETRIES."""
        new_retry_count = job.retry_count + 1
        status = (
            JobStatus.FAILED
            if new_retry_count >= Config.EMBEDDING_MAX_RETRIES
            else JobStatus.PENDING
        )
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE embedding_jobs_queue
                SET status = ?, retry_count = ?, error_message = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (status.value, new_retry_count, error_message[:1000], job.id))
        job.retry_count = new_retry_count
        return status

    def get_status(self, job_id: int) -> Optional[tuple[str, int]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT status, retry_count FROM embedding_jobs_queue WHERE id = ?", (job_id,)
        ).fetchone()
        return (row["status"], row["retry_count"]) if row else None



@dataclass
class EnrichmentJob:
    """One claimed row of wines_enrichment_queue."""
    id: int
    wine_id: int
    vintage_id: int
    producer_name: str
    wine_name: str
    user_id: Optional[str] = None
    year: Optional[int] = None
    region: Optional[str] = None
    country: Optional[str] = None
    existing_varietals: list[str] = field(default_factory=list)
    retry_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EnrichmentJob":
        return cls(
            id=row["id"],
            wine_id=row["wine_id"],
            vintage_id=row["vintage_id"],
            producer_name=row["producer_name"],
            wine_name=row["wine_name"],
            user_id=row["user_id"],
            year=row["year"],
            region=row["region"],
            country=row["country"],
            existing_varietals=json.loads(row["existing_varietals"] or "[]"),
            retry_count=row["retry_count"] or 0,
        )


class EnrichmentJobQueue(BaseRepository):
    """
    Background enrichment requests (one per vintage).

    Rows are inserted by TastingRecorder.queue_enrichment; this class
    claims, completes and retries them.
    """

    def claim(self, limit: int) -> list[EnrichmentJob]:
        """
        Raises:
            JobClaimError: the claim statement failed
        """
        try:
            with self._immediate_transaction() as cursor:
                cursor.execute("""
                    UPDATE wines_enrichment_queue
                    SET status = 'working', updated_at = CURRENT_TIMESTAMP
                    WHERE id IN (
                        SELECT id FROM wines_enrichment_queue
                        WHERE status = 'pending'
                           OR (status = 'working' AND updated_at < datetime('now', ?))
                        ORDER BY created_at, id
                        LIMIT ?
                    )
                    RETURNING id, wine_id, vintage_id, user_id, producer_name, wine_name,
                              year, region, country, existing_varietals, retry_count
                """, (_lease_cutoff(), limit))
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to claim enrichment jobs: {e}")
            raise JobClaimError(str(e)) from e

        return sorted((EnrichmentJob.from_row(row) for row in rows), key=lambda job: job.id)

    def mark_completed(self, job_id: int, enrichment_data: dict[str, Any]) -> None:
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE wines_enrichment_queue
                SET status = 'completed',
                    enrichment_data = ?,
                    error_message = NULL,
                    processed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (json.dumps(enrichment_data), job_id))

    def handle_failure(self, job: EnrichmentJob, error_message: str) -> JobStatus:
        """Enrichment jobs give up once retry_count reaches ENRICHMENT_MAX_RETRIES."""
        new_retry_count = job.retry_count + 1
        status = (
            JobStatus.FAILED
            if new_retry_count >= Config.ENRICHMENT_MAX_RETRIES
            else JobStatus.PENDING
        )
        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE wines_enrichment_queue
                SET status = ?, retry_count = ?, error_message = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (status.value, new_retry_count, error_message[:1000], job.id))
        job.retry_count = new_retry_count
        return status

    def get_status(self, job_id: int) -> Optional[tuple[str, int]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT status, retry_count FROM wines_enrichment_queue WHERE id = ?", (job_id,)
        ).fetchone()
        return (row["status"], row["retry_count"]) if row else None
