"""Tests for label extraction: parsing, year normalization, escalation."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import LABEL_URL, make_llm_response
from vinho_worker.errors import ExtractionParseError, ImageUrlRejectedError, LLMUnavailableError
from vinho_worker.models.extraction import ExtractedWineData, is_likely_nv, normalize_year
from vinho_worker.services.extraction import ExtractionEngine, parse_extraction


def _extraction(**overrides) -> dict:
    payload = {
        "producer": "Tenuta delle Terre Nere",
        "wine_name": "Etna Rosso",
        "year": 2019,
        "country": "Italy",
        "region": "Etna DOC",
        "varietals": ["Nerello Mascalese"],
        "abv_percent": 13.5,
        "confidence": 0.9,
    }
    payload.update(overrides)
    return payload


class TestNormalizeYear:
    def test_string_with_two_years_takes_first(self):
        assert normalize_year("2018 or 2019") == 2018

    def test_numeric_out_of_range_is_none(self):
        assert normalize_year(1850) is None
        assert normalize_year(2031) is None

    def test_valid_year_retained(self):
        assert normalize_year(2023) == 2023

    def test_string_without_year_is_none(self):
        assert normalize_year("NV") is None
        assert normalize_year("unknown") is None

    def test_plain_year_string(self):
        assert normalize_year("Vintage 2015") == 2015

    def test_float_year(self):
        assert normalize_year(2015.0) == 2015
        assert normalize_year(2015.5) is None

    def test_none_and_bool(self):
        assert normalize_year(None) is None
        assert normalize_year(True) is None


class TestIsLikelyNV:
    def test_nv_in_name_without_year(self):
        assert is_likely_nv("Dom Pérignon NV", None) is True

    def test_plain_name_without_year(self):
        assert is_likely_nv("Chateau X", None) is False

    def test_year_present_overrides_name(self):
        assert is_likely_nv("Brut NV", 2015) is False

    @pytest.mark.parametrize("name", [
        "Grande Cuvée Non-Vintage",
        "Multi Vintage Blend",
        "Solera Reserve",
        "Perpetual Cuvée",
        "brut nv",
    ])
    def test_other_patterns(self, name):
        assert is_likely_nv(name, None) is True

    def test_nv_must_be_a_word(self):
        """The letters NV inside another word are not an NV marker."""
        assert is_likely_nv("Canvas Red", None) is False


class TestExtractedWineData:
    def test_missing_names_use_sentinels_and_cap_confidence(self):
        data = ExtractedWineData.model_validate({"confidence": 0.9})
        assert data.producer == "Unknown Producer"
        assert data.wine_name == "Unknown Wine"
        assert data.confidence <= 0.2

    def test_blank_producer_is_sentinel(self):
        data = ExtractedWineData.model_validate(_extraction(producer="  "))
        assert data.producer == "Unknown Producer"
        assert data.confidence <= 0.2

    def test_year_string_normalized(self):
        data = ExtractedWineData.model_validate(_extraction(year="2018 or 2019"))
        assert data.year == 2018

    def test_varietals_string_is_split(self):
        data = ExtractedWineData.model_validate(_extraction(varietals="Merlot, Cabernet Franc"))
        assert data.varietals == ["Merlot", "Cabernet Franc"]

    def test_varietals_deduplicated(self):
        data = ExtractedWineData.model_validate(_extraction(varietals=["Merlot", "merlot", None]))
        assert data.varietals == ["Merlot"]

    def test_abv_string(self):
        data = ExtractedWineData.model_validate(_extraction(abv_percent="13,5% vol"))
        assert data.abv_percent == 13.5

    def test_confidence_clamped(self):
        data = ExtractedWineData.model_validate(_extraction(confidence=1.4))
        assert data.confidence == 1.0

    def test_is_complete(self):
        incomplete = ExtractedWineData.model_validate(_extraction())
        assert not incomplete.is_complete

        complete = ExtractedWineData.model_validate(_extraction(
            producer_website="https://terrenere.com",
            producer_address="Contrada Calderara",
        ))
        assert complete.is_complete


class TestParseExtraction:
    def test_valid_json(self):
        data = parse_extraction('{"producer": "A", "wine_name": "B", "confidence": 0.7}')
        assert data.producer == "A"
        assert data.confidence == 0.7

    def test_markdown_fences_stripped(self):
        data = parse_extraction('```json\n{"producer": "A", "wine_name": "B", "confidence": 0.7}\n```')
        assert data.wine_name == "B"

    @pytest.mark.parametrize("content", [None, "", "   ", "not json", "[1, 2]", '"text"'])
    def test_malformed_raises(self, content):
        with pytest.raises(ExtractionParseError):
            parse_extraction(content)

    def test_missing_confidence_raises(self):
        with pytest.raises(ExtractionParseError):
            parse_extraction('{"producer": "A", "wine_name": "B"}')

    def test_non_numeric_confidence_raises(self):
        with pytest.raises(ExtractionParseError):
            parse_extraction('{"producer": "A", "wine_name": "B", "confidence": "high"}')

    def test_varietals_wrong_type_raises(self):
        with pytest.raises(ExtractionParseError):
            parse_extraction('{"producer": "A", "wine_name": "B", "confidence": 0.7, "varietals": 5}')


class TestExtractionEngine:
    @pytest.mark.asyncio
    async def test_extract_calls_litellm_in_json_mode(self):
        mock_litellm = MagicMock()
        mock_litellm.acompletion = AsyncMock(return_value=make_llm_response(_extraction()))

        engine = ExtractionEngine(model="gpt-4o-mini", strong_model="gpt-4o")
        with patch("vinho_worker.services.extraction._get_litellm", return_value=mock_litellm):
            data = await engine.extract(LABEL_URL, "TERRE NERE ETNA ROSSO")

        assert data.producer == "Tenuta delle Terre Nere"
        assert data.year == 2019
        kwargs = mock_litellm.acompletion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        user_content = kwargs["messages"][1]["content"]
        assert user_content[1]["image_url"]["url"] == LABEL_URL
        assert "TERRE NERE ETNA ROSSO" in user_content[0]["text"]

    @pytest.mark.asyncio
    async def test_low_confidence_escalates_exactly_once(self):
        """Confidence 0.45 -> one extra call on the strong model."""
        completion = AsyncMock(side_effect=[
            make_llm_response(_extraction(confidence=0.45)),
            make_llm_response(_extraction(confidence=0.5)),
        ])
        engine = ExtractionEngine(model="gpt-4o-mini", strong_model="gpt-4o", completion=completion)

        data = await engine.extract_with_escalation(LABEL_URL, None)

        assert completion.await_count == 2
        models = [call.kwargs["model"] for call in completion.await_args_list]
        assert models == ["gpt-4o-mini", "gpt-4o"]
        # Strong model result is used even if still low
        assert data.confidence == 0.5

    @pytest.mark.asyncio
    async def test_high_confidence_does_not_escalate(self):
        completion = AsyncMock(return_value=make_llm_response(_extraction(confidence=0.8)))
        engine = ExtractionEngine(completion=completion)

        data = await engine.extract_with_escalation(LABEL_URL, None)

        assert completion.await_count == 1
        assert data.confidence == 0.8

    @pytest.mark.asyncio
    async def test_rejected_url_never_calls_model(self):
        completion = AsyncMock()
        engine = ExtractionEngine(completion=completion)

        with pytest.raises(ImageUrlRejectedError):
            await engine.extract("http://169.254.169.254/latest", None)
        completion.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_content_raises_parse_error(self):
        completion = AsyncMock(return_value=make_llm_response(""))
        engine = ExtractionEngine(completion=completion)

        with pytest.raises(ExtractionParseError):
            await engine.extract(LABEL_URL, None)

    @pytest.mark.asyncio
    async def test_litellm_missing_raises(self):
        engine = ExtractionEngine()
        with patch("vinho_worker.services.extraction._get_litellm", return_value=None):
            with pytest.raises(LLMUnavailableError):
                await engine.extract(LABEL_URL, None)

    @pytest.mark.asyncio
    async def test_network_error_propagates(self):
        completion = AsyncMock(side_effect=TimeoutError("timed out"))
        engine = ExtractionEngine(completion=completion)

        with pytest.raises(TimeoutError):
            await engine.extract_with_escalation(LABEL_URL, None)
