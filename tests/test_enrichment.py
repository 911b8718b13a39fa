"""Tests for knowledge-model enrichment (additive merge, best-effort)."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_llm_response
from vinho_worker.errors import ExtractionParseError
from vinho_worker.models.extraction import EnrichmentSuggestion, ExtractedWineData
from vinho_worker.services.enrichment import EnrichmentEngine, merge_enrichment


def _data(**overrides) -> ExtractedWineData:
    payload = {
        "producer": "Domaine Tempier",
        "wine_name": "Bandol Rouge",
        "confidence": 0.8,
    }
    payload.update(overrides)
    return ExtractedWineData.model_validate(payload)


class TestMergeEnrichment:
    def test_fills_empty_fields(self):
        data = _data()
        suggestion = EnrichmentSuggestion(
            year=2019, region="Bandol", country="France", varietals=["Mourvèdre", "Grenache"]
        )

        merged = merge_enrichment(data, suggestion)

        assert merged.year == 2019
        assert merged.region == "Bandol"
        assert merged.country == "France"
        assert merged.varietals == ["Mourvèdre", "Grenache"]

    def test_never_overwrites_populated_fields(self):
        data = _data(year=2018, region="Provence", varietals=["Mourvèdre"])
        suggestion = EnrichmentSuggestion(year=2019, region="Bandol", varietals=["Cinsault"])

        merged = merge_enrichment(data, suggestion)

        assert merged.year == 2018
        assert merged.region == "Provence"
        assert merged.varietals == ["Mourvèdre"]

    def test_names_and_confidence_untouched(self):
        data = _data()
        merged = merge_enrichment(data, EnrichmentSuggestion(country="France"))

        assert merged.producer == "Domaine Tempier"
        assert merged.wine_name == "Bandol Rouge"
        assert merged.confidence == 0.8

    def test_empty_suggestion_returns_same_object(self):
        data = _data()
        assert merge_enrichment(data, EnrichmentSuggestion()) is data


class TestEnrichmentSuggestion:
    def test_year_string_parsed(self):
        suggestion = EnrichmentSuggestion.model_validate({"year": "typically 2016 or 2017"})
        assert suggestion.year == 2016

    def test_unknown_fields_ignored(self):
        suggestion = EnrichmentSuggestion.model_validate({"country": "France", "tasting_notes": "x"})
        assert suggestion.country == "France"


class TestEnrichmentEngine:
    @pytest.mark.asyncio
    async def test_complete_data_skips_model(self):
        completion = AsyncMock()
        engine = EnrichmentEngine(completion=completion)
        data = _data(
            year=2019,
            varietals=["Mourvèdre"],
            region="Bandol",
            country="France",
            producer_website="https://domainetempier.com",
            producer_address="1082 Chemin des Fanges, Le Plan du Castellet",
        )

        result = await engine.enrich(data)

        assert result is data
        completion.assert_not_called()

    @pytest.mark.asyncio
    async def test_enrich_fills_gaps(self):
        completion = AsyncMock(return_value=make_llm_response({
            "year": "2019",
            "region": "Bandol",
            "country": "France",
            "varietals": ["Mourvèdre", "Grenache", "Cinsault"],
            "producer_website": "https://domainetempier.com",
            "latitude": 43.17,
            "longitude": 5.78,
        }))
        engine = EnrichmentEngine(model="gpt-4o-mini", completion=completion)

        result = await engine.enrich(_data(region="Provence"))

        assert result.year == 2019
        assert result.region == "Provence"
        assert result.country == "France"
        assert result.varietals == ["Mourvèdre", "Grenache", "Cinsault"]
        assert result.latitude == 43.17
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "Domaine Tempier" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_model_error_returns_original(self):
        completion = AsyncMock(side_effect=RuntimeError("rate limited"))
        engine = EnrichmentEngine(completion=completion)
        data = _data()

        result = await engine.enrich(data)

        assert result is data

    @pytest.mark.asyncio
    async def test_malformed_reply_returns_original(self):
        completion = AsyncMock(return_value=make_llm_response("I am not sure about this wine."))
        engine = EnrichmentEngine(completion=completion)
        data = _data()

        result = await engine.enrich(data)

        assert result is data

    @pytest.mark.asyncio
    async def test_suggest_raises_on_malformed_reply(self):
        completion = AsyncMock(return_value=make_llm_response("I am not sure about this wine."))
        engine = EnrichmentEngine(completion=completion)

        with pytest.raises(ExtractionParseError):
            await engine.suggest(_data())

    @pytest.mark.asyncio
    async def test_suggest_returns_raw_suggestion(self):
        completion = AsyncMock(return_value=make_llm_response({"region": "Bandol", "year": 2019}))
        engine = EnrichmentEngine(completion=completion)

        suggestion = await engine.suggest(_data(region="Provence"))

        assert suggestion.region == "Bandol"
        assert suggestion.year == 2019
