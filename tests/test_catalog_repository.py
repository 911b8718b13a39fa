"""
Tests for CatalogRepository find-or-create semantics.

Uses a real migrated SQLite database per test (db_path fixture).
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from vinho_worker.models.extraction import ExtractedWineData
from vinho_worker.services.catalog_repository import CatalogRepository, name_key


@pytest.fixture
def repo(db_path):
    repository = CatalogRepository(db_path)
    yield repository
    repository.close()


def _count(repo, table: str) -> int:
    return repo._get_connection().execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestNameKey:
    def test_casefolds_non_ascii(self):
        assert name_key("CHÂTEAU MARGAUX") == name_key("Château Margaux")
        assert name_key("ROSÉ CŒUR") == "rosé cœur"

    def test_collapses_whitespace(self):
        assert name_key("  Domaine   X ") == "domaine x"

    def test_normalizes_composed_characters(self):
        assert name_key("Cha\u0302teau") == name_key("Ch\u00e2teau")


class TestProducers:
    def test_case_insensitive_lookup(self, repo):
        first = repo.upsert_producer("Domaine X")
        second = repo.upsert_producer("domaine x")

        assert first == second
        assert _count(repo, "producers") == 1

    def test_concurrent_insert_reuses_existing_row(self, repo):
        """Lookup misses, insert hits the UNIQUE constraint, re-query wins."""
        existing = repo.upsert_producer("Domaine X")
        real_find = repo.find_producer
        calls = []

        def find_missing_once(name):
            calls.append(name)
            if len(calls) == 1:
                return None
            return real_find(name)

        with patch.object(repo, "find_producer", side_effect=find_missing_once):
            producer_id = repo.upsert_producer("domaine x")

        assert producer_id == existing
        assert len(calls) == 2
        assert _count(repo, "producers") == 1

    def test_location_is_fill_only(self, repo):
        producer_id = repo.upsert_producer("Domaine X", website="https://domainex.fr")
        repo.upsert_producer(
            "Domaine X",
            website="https://other.example",
            address="1 Rue du Vin",
            latitude=44.8,
        )

        producer = repo.get_producer(producer_id)
        assert producer["website"] == "https://domainex.fr"
        assert producer["address"] == "1 Rue du Vin"
        assert producer["latitude"] == 44.8

    def test_accented_names_fold_case(self, repo):
        first = repo.upsert_producer("Château Margaux")
        second = repo.upsert_producer("CHÂTEAU MARGAUX")

        assert first == second
        assert _count(repo, "producers") == 1
        assert repo.get_producer(first)["name"] == "Château Margaux"

    def test_unique_key_rejects_accented_case_variant(self, repo):
        repo.upsert_producer("Château Margaux")

        with pytest.raises(sqlite3.IntegrityError):
            with repo._transaction() as cursor:
                cursor.execute(
                    "INSERT INTO producers (name, name_key) VALUES (?, ?)",
                    ("CHÂTEAU MARGAUX", name_key("CHÂTEAU MARGAUX")),
                )

    def test_parallel_upserts_on_separate_connections(self, db_path):
        repos = [CatalogRepository(db_path), CatalogRepository(db_path)]
        barrier = threading.Barrier(2, timeout=10)

        def upsert(repository, name):
            barrier.wait()
            producer_id = repository.upsert_producer(name)
            repository.close()
            return producer_id

        with ThreadPoolExecutor(max_workers=2) as pool:
            ids = list(pool.map(upsert, repos, ["Domaine X", "domaine x"]))

        assert ids[0] == ids[1]
        check = CatalogRepository(db_path)
        assert _count(check, "producers") == 1
        check.close()


class TestWinesAndVintages:
    def test_nv_flag_from_name(self, repo):
        producer_id = repo.upsert_producer("Krug")
        nv_id = repo.upsert_wine(producer_id, "Grande Cuvée NV", None)
        plain_id = repo.upsert_wine(producer_id, "Clos du Mesnil", None)

        assert repo.get_wine(nv_id)["is_nv"] == 1
        assert repo.get_wine(plain_id)["is_nv"] == 0

    def test_year_means_not_nv(self, repo):
        producer_id = repo.upsert_producer("Krug")
        wine_id = repo.upsert_wine(producer_id, "Brut NV", 2012)
        assert repo.get_wine(wine_id)["is_nv"] == 0

    def test_wine_names_case_insensitive_per_producer(self, repo):
        a = repo.upsert_producer("Producer A")
        b = repo.upsert_producer("Producer B")

        assert repo.upsert_wine(a, "Reserve", 2019) == repo.upsert_wine(a, "RESERVE", 2019)
        assert repo.upsert_wine(a, "Reserve", 2019) != repo.upsert_wine(b, "Reserve", 2019)

    def test_single_nv_vintage_slot(self, repo):
        wine_id = repo.upsert_wine(repo.upsert_producer("Krug"), "Grande Cuvée", None)

        first = repo.get_or_create_vintage(wine_id, None)
        second = repo.get_or_create_vintage(wine_id, None)
        dated = repo.get_or_create_vintage(wine_id, 2008)

        assert first == second
        assert dated != first
        assert _count(repo, "vintages") == 2

    def test_nv_vintage_insert_race(self, repo):
        wine_id = repo.upsert_wine(repo.upsert_producer("Krug"), "Grande Cuvée", None)
        existing = repo.get_or_create_vintage(wine_id, None)
        real_find = repo.find_vintage
        calls = []

        def find_missing_once(w, y):
            calls.append((w, y))
            return None if len(calls) == 1 else real_find(w, y)

        with patch.object(repo, "find_vintage", side_effect=find_missing_once):
            assert repo.get_or_create_vintage(wine_id, None) == existing

    def test_abv_filled_only_when_missing(self, repo):
        wine_id = repo.upsert_wine(repo.upsert_producer("Ridge"), "Monte Bello", 2016)

        vintage_id = repo.get_or_create_vintage(wine_id, 2016)
        assert repo.get_vintage(vintage_id)["abv"] is None

        repo.get_or_create_vintage(wine_id, 2016, 13.5)
        assert repo.get_vintage(vintage_id)["abv"] == 13.5

        repo.get_or_create_vintage(wine_id, 2016, 14.1)
        assert repo.get_vintage(vintage_id)["abv"] == 13.5

    def test_accented_wine_names_fold_case(self, repo):
        producer_id = repo.upsert_producer("Domaine de la Côte")

        first = repo.upsert_wine(producer_id, "Rosé Cœur de Grain", None)
        second = repo.upsert_wine(producer_id, "ROSÉ CŒUR DE GRAIN", None)

        assert first == second
        assert _count(repo, "wines") == 1

    def test_accented_regions_fold_case(self, repo):
        first = repo.upsert_region("Côte-Rôtie", "France")
        second = repo.upsert_region("CÔTE-RÔTIE", "FRANCE")

        assert first == second
        assert _count(repo, "regions") == 1


class TestVarietals:
    def _vintage(self, repo) -> int:
        wine_id = repo.upsert_wine(repo.upsert_producer("Château Y"), "Grand Vin", 2015)
        return repo.get_or_create_vintage(wine_id, 2015)

    def test_equal_split(self, repo):
        vintage_id = self._vintage(repo)

        repo.assign_varietals(vintage_id, ["Merlot", "Cabernet Franc", "Cabernet Sauvignon"])

        rows = repo.get_vintage_varietals(vintage_id)
        assert len(rows) == 3
        assert all(percent == 33.33 for _, percent in rows)

    def test_second_assignment_replaces_first(self, repo):
        vintage_id = self._vintage(repo)
        repo.assign_varietals(vintage_id, ["Merlot", "Cabernet Franc", "Cabernet Sauvignon"])

        repo.assign_varietals(vintage_id, ["Syrah"])

        assert repo.get_vintage_varietals(vintage_id) == [("Syrah", 100.0)]

    def test_empty_list_keeps_existing(self, repo):
        vintage_id = self._vintage(repo)
        repo.assign_varietals(vintage_id, ["Merlot"])

        assert repo.assign_varietals(vintage_id, []) == []
        assert repo.get_vintage_varietals(vintage_id) == [("Merlot", 100.0)]

    def test_duplicate_names_collapse(self, repo):
        vintage_id = self._vintage(repo)

        ids = repo.assign_varietals(vintage_id, ["Merlot", "MERLOT"])

        assert len(ids) == 1
        assert repo.get_vintage_varietals(vintage_id) == [("Merlot", 100.0)]

    def test_fuzzy_match_reuses_varietal(self, repo):
        original = repo.find_or_create_varietal("Cabernet Sauvignon")

        assert repo.find_or_create_varietal("Cabernet-Sauvignon") == original
        assert repo.find_or_create_varietal("Sauvignon Cabernet") == original
        assert _count(repo, "grape_varietals") == 1

    def test_accented_varietal_reused(self, repo):
        original = repo.find_or_create_varietal("Mourvèdre")

        assert repo.find_or_create_varietal("MOURVÈDRE") == original
        assert _count(repo, "grape_varietals") == 1

    def test_dissimilar_name_creates_new(self, repo):
        cabernet = repo.find_or_create_varietal("Cabernet Sauvignon")
        blanc = repo.find_or_create_varietal("Sauvignon Blanc")

        assert cabernet != blanc
        assert _count(repo, "grape_varietals") == 2


class TestUpsertExtractedWine:
    def test_full_upsert(self, repo):
        data = ExtractedWineData.model_validate({
            "producer": "Tenuta delle Terre Nere",
            "wine_name": "Etna Rosso",
            "year": 2019,
            "region": "Etna DOC",
            "country": "Italy",
            "varietals": ["Nerello Mascalese", "Nerello Cappuccio"],
            "abv_percent": 13.5,
            "confidence": 0.9,
        })

        result = repo.upsert_extracted_wine(data)

        assert result.region_id is not None
        assert len(result.varietal_ids) == 2
        assert repo.get_vintage(result.vintage_id)["abv"] == 13.5

        summary = repo.wine_summary(result.wine_id)
        assert summary.producer == "Tenuta delle Terre Nere"
        assert summary.region == "Etna DOC"
        assert summary.country == "Italy"
        assert summary.varietals == ["Nerello Cappuccio", "Nerello Mascalese"]

    def test_repeat_upsert_is_idempotent(self, repo):
        data = ExtractedWineData.model_validate({
            "producer": "Ridge",
            "wine_name": "Geyserville",
            "year": 2020,
            "confidence": 0.9,
        })

        first = repo.upsert_extracted_wine(data)
        second = repo.upsert_extracted_wine(data)

        assert first.wine_id == second.wine_id
        assert first.vintage_id == second.vintage_id
        assert first.region_id is None

    def test_summary_missing_wine(self, repo):
        assert repo.wine_summary(999) is None
