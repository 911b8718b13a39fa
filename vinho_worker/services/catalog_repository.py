"""
Catalog repository: regions, producers, wines, vintages and varietals.

Every entity follows the same find-or-create protocol:
1. Lookup by natural key (casefolded name, see name_key)
2. Insert when missing
3. On sqlite3.IntegrityError (a concurrent job inserted first), re-query
   and return that row's id

The UNIQUE constraints in the schema are what actually prevent
duplicates; the lookup in step 1 only saves a failed insert.
"""

import logging
import re
import sqlite3
import unicodedata
from dataclasses import dataclass, field
from typing import Callable, Optional

from rapidfuzz import fuzz

from ..config import Config
from ..db import BaseRepository
from ..models.extraction import ExtractedWineData, is_likely_nv

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"\w+", re.UNICODE)


def name_key(value: str) -> str:
    """
    Case-insensitive key for a catalog name.

    NFKC + casefold, whitespace collapsed: "CHÂTEAU  Margaux" and
    "Château Margaux" share a key. SQLite NOCASE only folds ASCII.
    """
    return " ".join(unicodedata.normalize("NFKC", value).casefold().split())


@dataclass
class WineSummary:
    """Denormalized view of a wine, used to build identity text."""
    wine_id: int
    producer: str
    wine_name: str
    region: Optional[str] = None
    country: Optional[str] = None
    varietals: list[str] = field(default_factory=list)


@dataclass
class UpsertResult:
    """Ids produced by upserting one extraction."""
    producer_id: int
    wine_id: int
    vintage_id: int
    region_id: Optional[int] = None
    varietal_ids: list[int] = field(default_factory=list)


class CatalogRepository(BaseRepository):
    """Race-tolerant find-or-create operations over the wine catalog."""

    def _find_or_insert(
        self,
        entity: str,
        find: Callable[[], Optional[int]],
        insert: Callable[[], int],
    ) -> int:
        existing = find()
        if existing is not None:
            return existing

        try:
            return insert()
        except sqlite3.IntegrityError:
            retry = find()
            if retry is None:
                # Not a uniqueness race (e.g. foreign key); let the job fail
                raise
            logger.debug(f"{entity} created concurrently, reusing id {retry}")
            return retry

    # === Regions ===

    def find_region(self, name: str, country: str) -> Optional[int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id FROM regions WHERE name_key = ? AND country_key = ? LIMIT 1",
            (name_key(name), name_key(country)),
        ).fetchone()
        return row["id"] if row else None

    def upsert_region(self, name: str, country: str) -> int:
        """Find or create a region by case-insensitive (name, country)."""
        def insert() -> int:
            with self._transaction() as cursor:
                cursor.execute(
                    "INSERT INTO regions (name, country, name_key, country_key) VALUES (?, ?, ?, ?)",
                    (name.strip(), country.strip(), name_key(name), name_key(country)),
                )
                return cursor.lastrowid

        return self._find_or_insert("region", lambda: self.find_region(name, country), insert)

    # === Producers ===

    def find_producer(self, name: str) -> Optional[int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id FROM producers WHERE name_key = ? LIMIT 1",
            (name_key(name),),
        ).fetchone()
        return row["id"] if row else None

    def get_producer(self, producer_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM producers WHERE id = ?", (producer_id,)).fetchone()
        return dict(row) if row else None

    def upsert_producer(
        self,
        name: str,
        region_id: Optional[int] = None,
        website: Optional[str] = None,
        address: Optional[str] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> int:
        """
        Find or create a producer by case-insensitive name.

        An existing producer gets its empty location fields filled from
        the supplied values. Populated fields are never overwritten.
        """
        details = {
            "region_id": region_id,
            "website": website,
            "address": address,
            "city": city,
            "postal_code": postal_code,
            "latitude": latitude,
            "longitude": longitude,
        }

        def insert() -> int:
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO producers
                    (name, name_key, region_id, website, address, city, postal_code, latitude, longitude)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (name.strip(), name_key(name), *details.values()))
                return cursor.lastrowid

        producer_id = self._find_or_insert("producer", lambda: self.find_producer(name), insert)
        # No-op for a row we just inserted; fills gaps on an existing one
        self.fill_producer_details(producer_id, details)
        return producer_id

    def fill_producer_details(self, producer_id: int, details: dict) -> None:
        """Set the given columns where they are still NULL; None values are skipped."""
        updates = []
        params = []
        for column, value in details.items():
            if value is None:
                continue
            updates.append(f"{column} = COALESCE({column}, ?)")
            params.append(value)

        if not updates:
            return

        updates.append("updated_at = CURRENT_TIMESTAMP")
        params.append(producer_id)

        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE producers
                SET {', '.join(updates)}
                WHERE id = ?
            """, tuple(params))

    # === Wines ===

    def find_wine(self, producer_id: int, name: str) -> Optional[int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id FROM wines WHERE producer_id = ? AND name_key = ? LIMIT 1",
            (producer_id, name_key(name)),
        ).fetchone()
        return row["id"] if row else None

    def get_wine(self, wine_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM wines WHERE id = ?", (wine_id,)).fetchone()
        return dict(row) if row else None

    def upsert_wine(self, producer_id: int, name: str, year: Optional[int]) -> int:
        """Find or create a wine under a producer. is_nv is decided at creation only."""
        def insert() -> int:
            with self._transaction() as cursor:
                cursor.execute(
                    "INSERT INTO wines (producer_id, name, name_key, is_nv) VALUES (?, ?, ?, ?)",
                    (producer_id, name.strip(), name_key(name), is_likely_nv(name, year)),
                )
                return cursor.lastrowid

        return self._find_or_insert("wine", lambda: self.find_wine(producer_id, name), insert)

    # === Vintages ===

    def find_vintage(self, wine_id: int, year: Optional[int]) -> Optional[int]:
        # "year IS ?" matches both a concrete year and the NULL (NV) slot
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id FROM vintages WHERE wine_id = ? AND year IS ? LIMIT 1",
            (wine_id, year),
        ).fetchone()
        return row["id"] if row else None

    def get_or_create_vintage(
        self,
        wine_id: int,
        year: Optional[int],
        abv: Optional[float] = None,
    ) -> int:
        """Find or create the (wine, year) vintage; a missing ABV is filled in."""
        def insert() -> int:
            with self._transaction() as cursor:
                cursor.execute(
                    "INSERT INTO vintages (wine_id, year, abv) VALUES (?, ?, ?)",
                    (wine_id, year, abv),
                )
                return cursor.lastrowid

        vintage_id = self._find_or_insert("vintage", lambda: self.find_vintage(wine_id, year), insert)

        if abv is not None:
            self.fill_vintage_abv(vintage_id, abv)
        return vintage_id

    def fill_vintage_abv(self, vintage_id: int, abv: float) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE vintages SET abv = ? WHERE id = ? AND abv IS NULL",
                (abv, vintage_id),
            )

    def get_vintage(self, vintage_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM vintages WHERE id = ?", (vintage_id,)).fetchone()
        return dict(row) if row else None

    # === Varietals ===

    def find_varietal(self, name: str) -> Optional[int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id FROM grape_varietals WHERE name_key = ? LIMIT 1",
            (name_key(name),),
        ).fetchone()
        return row["id"] if row else None

    def find_varietal_fuzzy(self, name: str) -> Optional[int]:
        """
        Fuzzy varietal lookup: FTS5 OR query for candidates, then
        rapidfuzz scoring. Handles "Cabernet-Sauvignon", "Syrah/Shiraz"
        style spellings.
        """
        words = [w for w in _WORD_PATTERN.findall(name.lower()) if len(w) >= 3]
        if not words:
            return None

        safe_words = [w.replace('"', '""') for w in words]
        fts_query = " OR ".join(f'"{w}"*' for w in safe_words)

        conn = self._get_connection()
        rows = conn.execute("""
            SELECT g.id, g.name
            FROM grape_varietals g
            JOIN varietal_fts ON g.id = varietal_fts.rowid
            WHERE varietal_fts MATCH ?
            ORDER BY rank
            LIMIT 20
        """, (fts_query, )).fetchall()

        query = name.strip().lower()
        best_id = None
        best_score = 0.0
        for row in rows:
            candidate = row["name"].lower()
            score = max(fuzz.ratio(query, candidate), fuzz.token_sort_ratio(query, candidate)) / 100.0
            if score > best_score:
                best_score = score
                best_id = row["id"]

        if best_id is not None and best_score >= Config.VARIETAL_FUZZY_THRESHOLD:
            return best_id
        return None

    def find_or_create_varietal(self, name: str) -> int:
        """Exact match, then fuzzy match, then create."""
        varietal_id = self.find_varietal(name)
        if varietal_id is not None:
            return varietal_id

        varietal_id = self.find_varietal_fuzzy(name)
        if varietal_id is not None:
            return varietal_id

        def insert() -> int:
            with self._transaction() as cursor:
                cursor.execute(
                    "INSERT INTO grape_varietals (name, name_key) VALUES (?, ?)",
                    (name.strip(), name_key(name)),
                )
                return cursor.lastrowid

        return self._find_or_insert("varietal", lambda: self.find_varietal(name), insert)

    def assign_varietals(self, vintage_id: int, names: list[str]) -> list[int]:
        """
        Replace a vintage's varietal associations.

        Existing rows are deleted and the new set inserted in one
        transaction, each with an equal share of 100 (rounded to 2dp).
        Names resolving to the same varietal collapse to one association.
        An empty list leaves the vintage untouched.
        """
        varietal_ids: list[int] = []
        for name in names:
            if not name or not name.strip():
                continue
            varietal_id = self.find_or_create_varietal(name)
            if varietal_id not in varietal_ids:
                varietal_ids.append(varietal_id)

        if not varietal_ids:
            return []

        percent = round(100 / len(varietal_ids), 2)
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM wine_varietals WHERE vintage_id = ?", (vintage_id,))
            cursor.executemany(
                "INSERT INTO wine_varietals (vintage_id, varietal_id, percent) VALUES (?, ?, ?)",
                [(vintage_id, varietal_id, percent) for varietal_id in varietal_ids],
            )
        return varietal_ids

    def get_vintage_varietals(self, vintage_id: int) -> list[tuple[str, float]]:
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT g.name, wv.percent
            FROM wine_varietals wv
            JOIN grape_varietals g ON g.id = wv.varietal_id
            WHERE wv.vintage_id = ?
            ORDER BY g.name
        """, (vintage_id,)).fetchall()
        return [(row["name"], row["percent"]) for row in rows]

    # === Composite ===

    def upsert_extracted_wine(self, data: ExtractedWineData) -> UpsertResult:
        """Resolve region, producer, wine, vintage and varietals for one extraction."""
        region_id = None
        if data.region and data.country:
            region_id = self.upsert_region(data.region, data.country)

        producer_id = self.upsert_producer(
            data.producer,
            region_id=region_id,
            website=data.producer_website,
            address=data.producer_address,
            city=data.producer_city,
            postal_code=data.producer_postal_code,
            latitude=data.latitude,
            longitude=data.longitude,
        )
        wine_id = self.upsert_wine(producer_id, data.wine_name, data.year)
        vintage_id = self.get_or_create_vintage(wine_id, data.year, data.abv_percent)

        varietal_ids = []
        if data.varietals:
            varietal_ids = self.assign_varietals(vintage_id, data.varietals)

        return UpsertResult(
            producer_id=producer_id,
            wine_id=wine_id,
            vintage_id=vintage_id,
            region_id=region_id,
            varietal_ids=varietal_ids,
        )

    def wine_summary(self, wine_id: int) -> Optional[WineSummary]:
        """Producer, wine, region and varietal names for a wine."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT w.id, w.name AS wine_name, p.name AS producer, r.name AS region, r.country
            FROM wines w
            JOIN producers p ON p.id = w.producer_id
            LEFT JOIN regions r ON r.id = p.region_id
            WHERE w.id = ?
        """, (wine_id,)).fetchone()
        if not row:
            return None

        varietal_rows = conn.execute("""
            SELECT DISTINCT g.name
            FROM vintages v
            JOIN wine_varietals wv ON wv.vintage_id = v.id
            JOIN grape_varietals g ON g.id = wv.varietal_id
            WHERE v.wine_id = ?
            ORDER BY g.name
        """, (wine_id,)).fetchall()

        return WineSummary(
            wine_id=row["id"],
            producer=row["producer"],
            wine_name=row["wine_name"],
            region=row["region"],
            country=row["country"],
            varietals=[r["name"] for r in varietal_rows],
        )
