"""
Knowledge-model enrichment of extracted wine data.

Fills fields the label did not show (vintage, varietals, region, producer
location) from what the model knows about the producer and wine. Merging
is strictly additive: a field that already has a value is never changed.
Enrichment is best-effort; any failure returns the input untouched.
"""

import logging
from typing import Any, Optional

from ..config import Config
from ..errors import LLMUnavailableError
from ..models.extraction import EnrichmentSuggestion, ExtractedWineData
from .extraction import CompletionFn, _get_litellm, parse_json_object

logger = logging.getLogger(__name__)

ENRICHMENT_SYSTEM_PROMPT = "You are a wine expert. Return only valid JSON matching the schema."

ENRICHMENT_PROMPT = """You are a wine expert with extensive knowledge of global wine regions and producers.

Given this wine information:
- Producer: {producer}
- Wine: {wine_name}
- Year: {year}
- Region: {region}
- Country: {country}
- Current varietals: {varietals}
- Website: {website}
- Address: {address}

Based on your knowledge of this producer and wine, provide any KNOWN missing information:
1. If the year is missing but this is a vintage wine (not NV), the most common vintage
2. The grape varieties this wine is TYPICALLY made from
3. The specific region/appellation if not provided
4. The country if not provided
5. The producer's website
6. The producer's WINERY address in {location_hint} (where the wine is produced, not a sales office)
7. GPS coordinates (latitude/longitude) of the winery; the town centre if the exact site is unknown

Only provide information you are CONFIDENT about. Use null for anything you do not know.

Return JSON with these fields: year, country, region, varietals (array), abv_percent,
producer_website, producer_address, producer_city, producer_postal_code, latitude, longitude."""

# Fields copied from a suggestion when the extraction left them empty
MERGE_FIELDS = (
    "year",
    "varietals",
    "region",
    "country",
    "abv_percent",
    "producer_website",
    "producer_address",
    "producer_city",
    "producer_postal_code",
    "latitude",
    "longitude",
)


def merge_enrichment(data: ExtractedWineData, suggestion: EnrichmentSuggestion) -> ExtractedWineData:
    """Fill empty fields of `data` from `suggestion`; populated fields win."""
    updates: dict[str, Any] = {}
    for name in MERGE_FIELDS:
        current = getattr(data, name)
        suggested = getattr(suggestion, name)
        if not current and suggested:
            updates[name] = suggested

    if not updates:
        return data
    return data.model_copy(update=updates)


class EnrichmentEngine:
    """Additive gap-filling with a knowledge model."""

    def __init__(
        self,
        model: Optional[str] = None,
        completion: Optional[CompletionFn] = None,
        max_tokens: int = 500,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
    ):
        self.model = model or Config.enrichment_model()
        self._completion = completion
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout or Config.llm_timeout()

    def _get_completion(self) -> CompletionFn:
        if self._completion is not None:
            return self._completion
        litellm = _get_litellm()
        if not litellm:
            raise LLMUnavailableError("litellm is not installed")
        return litellm.acompletion

    def _build_prompt(self, data: ExtractedWineData) -> str:
        return ENRICHMENT_PROMPT.format(
            producer=data.producer,
            wine_name=data.wine_name,
            year=data.year or "unknown",
            region=data.region or "unknown",
            country=data.country or "unknown",
            varietals=", ".join(data.varietals) if data.varietals else "none identified",
            website=data.producer_website or "unknown",
            address=data.producer_address or "unknown",
            location_hint=data.region or data.country or "their production region",
        )

    async def suggest(self, data: ExtractedWineData) -> EnrichmentSuggestion:
        """
        Ask the knowledge model for what it knows about this wine.

        Raises:
            LLMUnavailableError: litellm is not installed
            ExtractionParseError: the reply was not a JSON object
            Exception: whatever the completion call raised
        """
        completion = self._get_completion()
        response = await completion(
            model=self.model,
            messages=[
                {"role": "system", "content": ENRICHMENT_SYSTEM_PROMPT},
                {"role": "user", "content": self._build_prompt(data)},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            timeout=self.timeout,
        )
        return EnrichmentSuggestion.model_validate(
            parse_json_object(response.choices[0].message.content)
        )

    async def enrich(self, data: ExtractedWineData) -> ExtractedWineData:
        """Return `data` with empty fields filled where the model is confident."""
        if data.is_complete:
            return data

        logger.info(f"Enriching incomplete data for {data.producer} - {data.wine_name}")
        try:
            suggestion = await self.suggest(data)
        except Exception as e:
            logger.warning(f"Enrichment failed, using original data: {e}")
            return data

        enriched = merge_enrichment(data, suggestion)
        logger.info(
            f"Enrichment complete. Varietals: {', '.join(enriched.varietals) or 'none'}, "
            f"Year: {enriched.year}"
        )
        return enriched

