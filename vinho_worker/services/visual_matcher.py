"""
Visual label matching.

A scanned label image is embedded with Jina CLIP and compared against
the embeddings of labels we have already resolved (label_embeddings).
A nearest neighbour at or above VISUAL_MATCH_THRESHOLD identifies the
wine without any extraction call.

Embedding is a paid network call, so the computed vector rides along on
the MatchResult; the pipeline stores it once the wine is known instead
of embedding the same image again later.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Optional

import numpy as np
import requests

from ..config import Config
from ..db import BaseRepository
from ..models.jobs import MatchResult
from .security import is_valid_image_url

logger = logging.getLogger(__name__)


class JinaClipEmbedder:
    """Image embeddings from the Jina CLIP HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or Config.jina_api_key()
        self.api_url = api_url or Config.jina_api_url()
        self.model = model or Config.jina_model()
        self.timeout = timeout or Config.embedding_timeout()
        self.session = session or requests.Session()

    def embed_image(self, image_url: str) -> list[float]:
        """
        Embed one image by URL.

        Raises:
            RuntimeError: JINA_API_KEY is not configured
            requests.RequestException: network / HTTP failure
            ValueError: response did not contain an embedding
        """
        if not self.api_key:
            raise RuntimeError("JINA_API_KEY not configured")

        response = self.session.post(
            self.api_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={"model": self.model, "input": [{"image": image_url}]},
            timeout=self.timeout,
        )
        response.raise_for_status()

        data = response.json().get("data") or []
        embedding = data[0].get("embedding") if data else None
        if not embedding:
            raise ValueError("Jina response contained no embedding")
        return [float(x) for x in embedding]


def encode_embedding(embedding: list[float]) -> bytes:
    """float32 bytes as stored in label_embeddings.embedding."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def decode_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.size == 0 or vec_a.shape != vec_b.shape:
        return 0.0

    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of `matrix` to `query`; zero rows score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


@dataclass
class LabelNeighbor:
    """Closest stored label embedding."""
    wine_id: int
    vintage_id: Optional[int]
    producer_name: str
    wine_name: str
    similarity: float


class LabelEmbeddingIndex(BaseRepository):
    """Stored label embeddings (float32 blobs) with brute-force cosine search."""

    def add(
        self,
        wine_id: int,
        source_image_url: str,
        embedding: list[float],
        embedding_model: str,
        vintage_id: Optional[int] = None,
        source_scan_id: Optional[int] = None,
    ) -> bool:
        """Returns False when this (wine, image) pair is already stored."""
        with self._transaction() as cursor:
            cursor.execute("""
                INSERT OR IGNORE INTO label_embeddings
                (wine_id, vintage_id, source_image_url, source_scan_id, embedding, embedding_model)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (wine_id, vintage_id, source_image_url, source_scan_id,
                  encode_embedding(embedding), embedding_model))
            return cursor.rowcount > 0

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM label_embeddings").fetchone()[0]

    def nearest(self, embedding: list[float], limit: Optional[int] = None) -> Optional[LabelNeighbor]:
        """
        Most similar stored label, or None when nothing comparable is stored.

        Candidates are scored with one matrix-vector product; vectors of a
        different dimension (another embedding model) are skipped.
        """
        limit = limit or Config.MAX_VISUAL_CANDIDATES
        query = np.asarray(embedding, dtype=np.float64)
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT le.wine_id, le.vintage_id, le.embedding, w.name AS wine_name, p.name AS producer_name
            FROM label_embeddings le
            JOIN wines w ON w.id = le.wine_id
            JOIN producers p ON p.id = w.producer_id
            WHERE length(le.embedding) = ?
            ORDER BY le.created_at DESC
            LIMIT ?
        """, (query.size * np.dtype(np.float32).itemsize, limit)).fetchall()
        if not rows or query.size == 0:
            return None

        matrix = np.vstack([decode_embedding(row["embedding"]) for row in rows]).astype(np.float64)
        scores = cosine_scores(matrix, query)
        best = int(np.argmax(scores))
        row = rows[best]
        return LabelNeighbor(
            wine_id=row["wine_id"],
            vintage_id=row["vintage_id"],
            producer_name=row["producer_name"],
            wine_name=row["wine_name"],
            similarity=float(scores[best]),
        )


class VisualMatcher:
    """Match a label image against previously seen labels."""

    def __init__(
        self,
        embedder: Optional[JinaClipEmbedder] = None,
        index: Optional[LabelEmbeddingIndex] = None,
        threshold: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.embedder = embedder or JinaClipEmbedder()
        self.index = index or LabelEmbeddingIndex()
        self.threshold = threshold if threshold is not None else Config.VISUAL_MATCH_THRESHOLD
        self._executor = executor or ThreadPoolExecutor(max_workers=4)

    @property
    def embedding_model(self) -> str:
        return self.embedder.model

    async def match(self, image_url: str) -> MatchResult:
        """
        Embed the image and look up its nearest stored label.

        Never raises: an unusable URL or embedder failure is a miss.
        """
        if not is_valid_image_url(image_url):
            return MatchResult.miss()

        loop = asyncio.get_running_loop()
        try:
            embedding = await loop.run_in_executor(
                self._executor, partial(self.embedder.embed_image, image_url)
            )
        except Exception as e:
            logger.warning(f"VisualMatcher: embedding failed for {image_url[:100]}: {e}")
            return MatchResult.miss()

        neighbor = await loop.run_in_executor(
            self._executor, partial(self.index.nearest, embedding)
        )
        if neighbor is None or neighbor.similarity < self.threshold:
            if neighbor is not None:
                logger.debug(
                    f"VisualMatcher: best similarity {neighbor.similarity:.3f} "
                    f"below threshold {self.threshold}"
                )
            return MatchResult.miss(embedding=embedding)

        logger.info(
            f"VisualMatcher: matched {neighbor.producer_name} - {neighbor.wine_name} "
            f"(similarity={neighbor.similarity:.3f})"
        )
        return MatchResult(
            matched=True,
            wine_id=neighbor.wine_id,
            vintage_id=neighbor.vintage_id,
            producer_name=neighbor.producer_name,
            wine_name=neighbor.wine_name,
            similarity=neighbor.similarity,
            embedding=embedding,
        )
