"""
Writes that follow a resolved job: the user's tasting, the scan's match
record, the background enrichment request and embedding work.

The wine itself is already durable when these run, so every method here
logs and swallows its own failures rather than failing the job.
"""

import hashlib
import json
import logging
import sqlite3
from datetime import date
from typing import Optional

from ..db import BaseRepository
from ..models.enums import EmbeddingJobType
from ..models.jobs import ScanJob, ScanMatchRecord
from .job_queue import EmbeddingJobQueue
from .text_matcher import build_identity_text
from .visual_matcher import LabelEmbeddingIndex

logger = logging.getLogger(__name__)


def compose_tasting_notes(
    scanned_on: date,
    varietals: Optional[list[str]] = None,
    region: Optional[str] = None,
    country: Optional[str] = None,
) -> str:
    """e.g. "Wine scanned on 2024-05-01. Varietals: Merlot, Cabernet Franc. From Pomerol, France." """
    parts = [f"Wine scanned on {scanned_on.isoformat()}."]
    if varietals:
        parts.append(f"Varietals: {', '.join(varietals)}.")
    if region:
        parts.append(f"From {region}, {country}." if country else f"From {region}.")
    return " ".join(parts)


class TastingRecorder(BaseRepository):
    """Tasting rows and downstream queue writes for resolved jobs."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        embedding_queue: Optional[EmbeddingJobQueue] = None,
        label_index: Optional[LabelEmbeddingIndex] = None,
    ):
        super().__init__(db_path)
        self.embedding_queue = embedding_queue or EmbeddingJobQueue(self.db_path)
        self.label_index = label_index or LabelEmbeddingIndex(self.db_path)

    def scan_date(self, scan_id: Optional[int]) -> Optional[date]:
        """Creation date of the originating scan, if it exists."""
        if scan_id is None:
            return None
        conn = self._get_connection()
        row = conn.execute("SELECT created_at FROM scans WHERE id = ?", (scan_id,)).fetchone()
        if not row or not row["created_at"]:
            return None
        try:
            return date.fromisoformat(str(row["created_at"])[:10])
        except ValueError:
            return None

    def create_tasting(
        self,
        job: ScanJob,
        vintage_id: int,
        varietals: Optional[list[str]] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[int]:
        """
        Record a tasting for the job's user. Verdict is left for the user.

        Returns the tasting id, or None if the insert failed.
        """
        try:
            tasted_on = self.scan_date(job.scan_id) or date.today()
            notes = compose_tasting_notes(tasted_on, varietals, region, country)
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO tastings (user_id, vintage_id, verdict, notes, tasted_at, image_url)
                    VALUES (?, ?, NULL, ?, ?, ?)
                """, (job.user_id, vintage_id, notes, tasted_on.isoformat(), job.image_url))
                tasting_id = cursor.lastrowid
        except Exception as e:
            logger.warning(f"Failed to create tasting for user {job.user_id} (job {job.id}): {e}")
            return None

        logger.info(f"Created tasting {tasting_id} for vintage {vintage_id}")
        return tasting_id

    def record_scan_match(self, scan_id: Optional[int], record: ScanMatchRecord) -> bool:
        """Write how the scan was resolved back onto the scans row."""
        if scan_id is None:
            return False
        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    UPDATE scans
                    SET matched_vintage_id = ?, confidence = ?, match_method = ?, vector_similarity = ?
                    WHERE id = ?
                """, (record.vintage_id, record.confidence, record.method.value, record.similarity, scan_id))
                return cursor.rowcount > 0
        except Exception as e:
            logger.warning(f"Failed to record match for scan {scan_id}: {e}")
            return False

    def queue_enrichment(
        self,
        wine_id: int,
        vintage_id: int,
        user_id: Optional[str],
        producer_name: str,
        wine_name: str,
        year: Optional[int] = None,
        region: Optional[str] = None,
        country: Optional[str] = None,
        existing_varietals: Optional[list[str]] = None,
    ) -> bool:
        """Insert-if-absent (one request per vintage). Returns True if queued."""
        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO wines_enrichment_queue
                    (wine_id, vintage_id, user_id, producer_name, wine_name, year, region, country, existing_varietals)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (wine_id, vintage_id, user_id, producer_name, wine_name, year, region, country,
                      json.dumps(existing_varietals or [])))
            return True
        except sqlite3.IntegrityError:
            logger.debug(f"Enrichment already queued for vintage {vintage_id}")
            return False
        except Exception as e:
            logger.warning(f"Failed to queue enrichment for vintage {vintage_id}: {e}")
            return False

    def queue_embeddings(
        self,
        wine_id: int,
        vintage_id: Optional[int],
        producer_name: str,
        wine_name: str,
        region: Optional[str] = None,
        country: Optional[str] = None,
        varietals: Optional[list[str]] = None,
        image_url: Optional[str] = None,
        scan_id: Optional[int] = None,
        include_visual: bool = True,
    ) -> int:
        """
        Queue identity-text and (optionally) label-image embedding jobs.

        include_visual is False when the label embedding was already
        computed during matching and is stored directly instead.
        Returns the number of newly queued jobs.
        """
        queued = 0
        try:
            identity_text = build_identity_text(producer_name, wine_name, region, country, varietals)
            if self.embedding_queue.enqueue(
                EmbeddingJobType.WINE_IDENTITY,
                wine_id=wine_id,
                idempotency_key=f"wine_identity:{wine_id}:{vintage_id}",
                vintage_id=vintage_id,
                scan_id=scan_id,
                input_text=identity_text,
            ):
                queued += 1

            if include_visual and image_url:
                url_hash = hashlib.sha256(image_url.encode("utf-8")).hexdigest()[:16]
                if self.embedding_queue.enqueue(
                    EmbeddingJobType.LABEL_VISUAL,
                    wine_id=wine_id,
                    idempotency_key=f"label_visual:{wine_id}:{url_hash}",
                    vintage_id=vintage_id,
                    scan_id=scan_id,
                    input_image_url=image_url,
                ):
                    queued += 1
        except Exception as e:
            logger.warning(f"Failed to queue embeddings for wine {wine_id}: {e}")
        return queued

    def store_visual_embedding(
        self,
        wine_id: int,
        vintage_id: Optional[int],
        image_url: str,
        embedding: list[float],
        embedding_model: str,
        scan_id: Optional[int] = None,
    ) -> bool:
        """Store an embedding computed during matching. Duplicates are ignored."""
        try:
            stored = self.label_index.add(
                wine_id=wine_id,
                source_image_url=image_url,
                embedding=embedding,
                embedding_model=embedding_model,
                vintage_id=vintage_id,
                source_scan_id=scan_id,
            )
            if stored and scan_id is not None:
                with self._transaction() as cursor:
                    cursor.execute(
                        "UPDATE scans SET contributed_to_embeddings = 1 WHERE id = ?", (scan_id,)
                    )
            return stored
        except Exception as e:
            logger.warning(f"Failed to store label embedding for wine {wine_id}: {e}")
            return False

    def get_tastings(self, user_id: str) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM tastings WHERE user_id = ? ORDER BY id", (user_id,)
        ).fetchall()
        return [dict(row) for row in rows]
