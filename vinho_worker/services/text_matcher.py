"""
Text identity matching.

Every catalogued wine has an identity line in wine_identities
("Producer | Wine | Region, Country | Varietals"), indexed with FTS5.
Matching is two-step:
1. FTS5 OR query over the query's words to get a candidate set
2. Weighted rapidfuzz score of the query against "producer wine_name"

Used twice per job: with the raw OCR text before extraction (cheap), and
with the extracted "producer wine_name" after extraction.
"""

import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Optional

import jellyfish
from rapidfuzz import fuzz

from ..config import Config
from ..db import BaseRepository
from ..models.jobs import MatchResult

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\w+", re.UNICODE)


@dataclass
class IdentityCandidate:
    wine_id: int
    producer_name: str
    wine_name: str
    identity_text: str


class IdentityIndex(BaseRepository):
    """wine_identities table plus its identity_fts index."""

    def upsert(self, wine_id: int, identity_text: str, completeness: float) -> None:
        with self._transaction() as cursor:
            cursor.execute("""
                INSERT INTO wine_identities (wine_id, identity_text, completeness)
                VALUES (?, ?, ?)
                ON CONFLICT(wine_id) DO UPDATE SET
                    identity_text = excluded.identity_text,
                    completeness = excluded.completeness,
                    updated_at = CURRENT_TIMESTAMP
            """, (wine_id, identity_text, completeness))

    def get(self, wine_id: int) -> Optional[tuple[str, float]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT identity_text, completeness FROM wine_identities WHERE wine_id = ?",
            (wine_id,),
        ).fetchone()
        return (row["identity_text"], row["completeness"]) if row else None

    def search(self, query: str, limit: Optional[int] = None) -> list[IdentityCandidate]:
        """
        OR-based FTS5 search: "chateau margaux 2015" -> "chateau"* OR "margaux"* OR "2015"*

        Words shorter than 3 characters are dropped (OCR noise).
        """
        limit = limit or Config.MAX_TEXT_CANDIDATES
        words = [w for w in _WORD_PATTERN.findall(query.lower()) if len(w) >= 3]
        if not words:
            return []

        safe_words = [w.replace('"', '""') for w in dict.fromkeys(words)]
        fts_query = " OR ".join(f'"{w}"*' for w in safe_words)

        conn = self._get_connection()
        rows = conn.execute("""
            SELECT wi.wine_id, wi.identity_text, w.name AS wine_name, p.name AS producer_name
            FROM identity_fts
            JOIN wine_identities wi ON wi.wine_id = identity_fts.rowid
            JOIN wines w ON w.id = wi.wine_id
            JOIN producers p ON p.id = w.producer_id
            WHERE identity_fts MATCH ?
            ORDER BY rank
            LIMIT ?
        """, (fts_query, limit)).fetchall()

        return [
            IdentityCandidate(
                wine_id=row["wine_id"],
                producer_name=row["producer_name"],
                wine_name=row["wine_name"],
                identity_text=row["identity_text"],
            )
            for row in rows
        ]


def compute_text_score(query: str, candidate: str) -> float:
    """
    Weighted fuzzy score in [0, 1].

    token_set_ratio tolerates the extra label words OCR picks up
    ("estate bottled", "product of France"); partial_ratio and ratio
    keep short exact names honest. Matching metaphone keys add a bonus.
    """
    query = query.lower().strip()
    candidate = candidate.lower().strip()
    if not query or not candidate:
        return 0.0

    token_set = fuzz.token_set_ratio(query, candidate) / 100.0
    partial = fuzz.partial_ratio(query, candidate) / 100.0
    ratio = fuzz.ratio(query, candidate) / 100.0

    weighted = (
        Config.WEIGHT_TOKEN_SET * token_set +
        Config.WEIGHT_PARTIAL * partial +
        Config.WEIGHT_RATIO * ratio
    )

    query_metaphone = jellyfish.metaphone(query[:20])
    candidate_metaphone = jellyfish.metaphone(candidate[:20])
    if query_metaphone and candidate_metaphone:
        if query_metaphone == candidate_metaphone:
            weighted += Config.PHONETIC_BONUS
        elif query_metaphone[:3] == candidate_metaphone[:3]:
            weighted += Config.PHONETIC_BONUS / 2

    return min(1.0, weighted)


class TextMatcher:
    """Match free text (OCR or extracted identity) against wine identities."""

    def __init__(
        self,
        index: Optional[IdentityIndex] = None,
        threshold: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.index = index or IdentityIndex()
        self.threshold = threshold if threshold is not None else Config.TEXT_MATCH_THRESHOLD
        self._executor = executor or ThreadPoolExecutor(max_workers=4)

    def match_sync(self, query: Optional[str]) -> MatchResult:
        if not query or not query.strip():
            return MatchResult.miss()

        candidates = self.index.search(query)
        if not candidates:
            return MatchResult.miss()

        best: Optional[IdentityCandidate] = None
        best_score = 0.0
        for candidate in candidates:
            score = compute_text_score(query, f"{candidate.producer_name} {candidate.wine_name}")
            if score > best_score:
                best_score = score
                best = candidate

        if best is None or best_score < self.threshold:
            logger.debug(f"TextMatcher: best score {best_score:.3f} for '{query[:60]}'")
            return MatchResult.miss()

        logger.info(
            f"TextMatcher: matched '{query[:60]}' -> {best.producer_name} - {best.wine_name} "
            f"(score={best_score:.3f})"
        )
        return MatchResult(
            matched=True,
            wine_id=best.wine_id,
            producer_name=best.producer_name,
            wine_name=best.wine_name,
            similarity=best_score,
        )

    async def match(self, query: Optional[str]) -> MatchResult:
        """Async wrapper; the SQLite search runs on the executor."""
        if not query or not query.strip():
            return MatchResult.miss()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(self.match_sync, query))


def build_identity_text(
    producer: str,
    wine_name: str,
    region: Optional[str] = None,
    country: Optional[str] = None,
    varietals: Optional[list[str]] = None,
) -> str:
    """Identity line "Producer | Wine | Region, Country | Varietals"; missing parts stay empty."""
    location = ", ".join(part for part in (region, country) if part)
    return " | ".join([
        producer or "",
        wine_name or "",
        location,
        ", ".join(varietals or []),
    ])


def identity_completeness(identity_text: str) -> float:
    """0.25 per non-empty identity part; the unknown-producer sentinel does not count."""
    parts = identity_text.split(" | ")
    score = 0.0
    for index, part in enumerate(parts[:4]):
        part = part.strip()
        if not part:
            continue
        if index == 0 and part == Config.UNKNOWN_PRODUCER:
            continue
        score += 0.25
    return min(score, 1.0)
