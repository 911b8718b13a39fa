"""Tests for identity text building, FTS candidate search and text matching."""

import pytest

from vinho_worker.services.catalog_repository import CatalogRepository
from vinho_worker.services.text_matcher import (
    IdentityIndex,
    TextMatcher,
    build_identity_text,
    compute_text_score,
    identity_completeness,
)


@pytest.fixture
def catalog(db_path):
    repo = CatalogRepository(db_path)
    yield repo
    repo.close()


@pytest.fixture
def index(db_path):
    idx = IdentityIndex(db_path)
    yield idx
    idx.close()


def _add_wine(catalog, index, producer, wine_name, region=None, country=None, varietals=None):
    wine_id = catalog.upsert_wine(catalog.upsert_producer(producer), wine_name, 2019)
    text = build_identity_text(producer, wine_name, region, country, varietals)
    index.upsert(wine_id, text, identity_completeness(text))
    return wine_id


class TestIdentityText:
    def test_full_identity(self):
        text = build_identity_text(
            "Tenuta delle Terre Nere", "Etna Rosso", "Etna DOC", "Italy", ["Nerello Mascalese"]
        )
        assert text == "Tenuta delle Terre Nere | Etna Rosso | Etna DOC, Italy | Nerello Mascalese"
        assert identity_completeness(text) == 1.0

    def test_missing_parts(self):
        text = build_identity_text("Ridge", "Monte Bello")
        assert text == "Ridge | Monte Bello |  | "
        assert identity_completeness(text) == 0.5

    def test_unknown_producer_does_not_count(self):
        text = build_identity_text("Unknown Producer", "Rosso", None, "Italy")
        assert identity_completeness(text) == 0.5


class TestComputeTextScore:
    def test_identical(self):
        assert compute_text_score("Ridge Monte Bello", "ridge monte bello") == 1.0

    def test_ocr_noise_still_scores_high(self):
        score = compute_text_score(
            "TENUTA DELLE TERRE NERE ETNA ROSSO 2019 DOC product of italy",
            "Tenuta delle Terre Nere Etna Rosso",
        )
        assert score >= 0.85

    def test_different_wine_scores_low(self):
        assert compute_text_score("Benanti Etna Bianco", "Tenuta delle Terre Nere Etna Rosso") < 0.85

    def test_empty(self):
        assert compute_text_score("", "anything") == 0.0


class TestIdentityIndex:
    def test_upsert_replaces_text(self, catalog, index):
        wine_id = _add_wine(catalog, index, "Ridge", "Monte Bello")

        index.upsert(wine_id, "Ridge | Monte Bello | Santa Cruz Mountains, USA | ", 0.75)

        assert index.get(wine_id) == ("Ridge | Monte Bello | Santa Cruz Mountains, USA | ", 0.75)
        assert [c.wine_id for c in index.search("santa cruz")] == [wine_id]

    def test_search_drops_short_words(self, catalog, index):
        _add_wine(catalog, index, "Ridge", "Monte Bello")
        assert index.search("a of to") == []

    def test_search_prefix_match(self, catalog, index):
        wine_id = _add_wine(catalog, index, "Ridge", "Geyserville")
        candidates = index.search("geyser")
        assert [c.wine_id for c in candidates] == [wine_id]
        assert candidates[0].producer_name == "Ridge"


class TestTextMatcher:
    def test_match_from_ocr_text(self, catalog, index):
        wine_id = _add_wine(
            catalog, index, "Tenuta delle Terre Nere", "Etna Rosso", "Etna DOC", "Italy"
        )
        _add_wine(catalog, index, "Benanti", "Etna Bianco")
        matcher = TextMatcher(index=index)

        result = matcher.match_sync("TENUTA DELLE TERRE NERE ETNA ROSSO 2019 DOC product of italy")

        assert result.matched
        assert result.wine_id == wine_id
        assert result.producer_name == "Tenuta delle Terre Nere"
        assert result.similarity >= 0.85

    def test_below_threshold_is_miss(self, catalog, index):
        _add_wine(catalog, index, "Tenuta delle Terre Nere", "Etna Rosso")
        matcher = TextMatcher(index=index)

        assert not matcher.match_sync("Benanti Etna Bianco").matched

    def test_empty_index_is_miss(self, index):
        assert not TextMatcher(index=index).match_sync("Ridge Monte Bello").matched

    @pytest.mark.asyncio
    async def test_async_match(self, catalog, index):
        wine_id = _add_wine(catalog, index, "Ridge", "Monte Bello")
        matcher = TextMatcher(index=index)

        result = await matcher.match("Ridge Monte Bello")

        assert result.matched
        assert result.wine_id == wine_id

    @pytest.mark.asyncio
    async def test_blank_query_is_miss(self, index):
        result = await TextMatcher(index=index).match("   ")
        assert not result.matched
