"""
Typed wine identity extracted from a label.

The vision and knowledge models answer with loosely-typed JSON; these
models are the single place where that JSON is coerced into a strict
shape. Year handling lives here so extraction and enrichment apply the
same rules.
"""

import re
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

from ..config import Config

# First plausible vintage inside free text ("2018 or 2019" -> 2018)
YEAR_PATTERN = re.compile(r"\b(19\d{2}|20[0-2]\d)\b")
NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")

NV_PATTERNS = [
    re.compile(r"\bNV\b", re.IGNORECASE),
    re.compile(r"non[- ]?vintage", re.IGNORECASE),
    re.compile(r"multi[- ]?vintage", re.IGNORECASE),
    re.compile(r"solera", re.IGNORECASE),
    re.compile(r"perpetual", re.IGNORECASE),
]


def normalize_year(value: Any) -> Optional[int]:
    """
    Coerce a model-supplied vintage into a plausible year or None.

    Strings yield their first 4-digit token in 1900-2029; numbers must
    fall within [MIN_VINTAGE_YEAR, MAX_VINTAGE_YEAR].
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = YEAR_PATTERN.search(value)
        return int(match.group(1)) if match else None
    if isinstance(value, (int, float)):
        if value != int(value):
            return None
        year = int(value)
        if year < Config.MIN_VINTAGE_YEAR or year > Config.MAX_VINTAGE_YEAR:
            return None
        return year
    return None


def is_likely_nv(wine_name: str, year: Optional[int]) -> bool:
    """True only when no year was read AND the name itself says NV."""
    if year is not None:
        return False
    return any(pattern.search(wine_name or "") for pattern in NV_PATTERNS)


def _coerce_optional_float(value: Any) -> Optional[float]:
    """Lenient float parsing for fields like '13.5% vol'."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = NUMBER_PATTERN.search(value.replace(",", "."))
        return float(match.group(0)) if match else None
    return None


def _coerce_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_varietals(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = re.split(r"[,/;]", value)
    if not isinstance(value, list):
        raise ValueError("varietals must be a list of strings")
    names: list[str] = []
    for item in value:
        if item is None:
            continue
        name = str(item).strip()
        if name and name.lower() not in (n.lower() for n in names):
            names.append(name)
    return names


Year = Annotated[Optional[int], BeforeValidator(normalize_year)]
OptionalText = Annotated[Optional[str], BeforeValidator(_coerce_optional_str)]
OptionalNumber = Annotated[Optional[float], BeforeValidator(_coerce_optional_float)]
Varietals = Annotated[list[str], BeforeValidator(_coerce_varietals)]


class ExtractedWineData(BaseModel):
    """Structured wine identity read from a label image."""
    producer: str = Field(Config.UNKNOWN_PRODUCER, description="Winery/producer name")
    wine_name: str = Field(Config.UNKNOWN_WINE, description="Wine name or cuvée")
    year: Year = Field(None, description="Vintage year, None if not visible")
    country: OptionalText = None
    region: OptionalText = None
    varietals: Varietals = Field(default_factory=list)
    abv_percent: OptionalNumber = None
    confidence: float = Field(..., ge=0, le=1, description="Model confidence in the read")
    producer_website: OptionalText = None
    producer_address: OptionalText = None
    producer_city: OptionalText = None
    producer_postal_code: OptionalText = None
    latitude: OptionalNumber = None
    longitude: OptionalNumber = None

    model_config = {"extra": "ignore"}

    @field_validator("producer", "wine_name", mode="before")
    @classmethod
    def blank_names_to_sentinel(cls, v: Any, info) -> str:
        text = _coerce_optional_str(v)
        if text is None:
            return Config.UNKNOWN_PRODUCER if info.field_name == "producer" else Config.UNKNOWN_WINE
        return text

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("confidence must be a number")
        return max(0.0, min(1.0, float(v)))

    @model_validator(mode="after")
    def cap_confidence_for_unknowns(self) -> "ExtractedWineData":
        """Sentinel names mean the read is not trustworthy."""
        if self.producer == Config.UNKNOWN_PRODUCER or self.wine_name == Config.UNKNOWN_WINE:
            self.confidence = min(self.confidence, Config.LOW_TRUST_CONFIDENCE)
        return self

    @property
    def identity_query(self) -> str:
        """Producer + wine name, as fed to the second text-match pass."""
        return f"{self.producer} {self.wine_name}".strip()

    @property
    def is_complete(self) -> bool:
        """True when enrichment has nothing left to fill."""
        return bool(
            self.year
            and self.varietals
            and self.region
            and self.country
            and self.producer_website
            and (self.latitude or self.producer_address)
        )


class EnrichmentSuggestion(BaseModel):
    """Knowledge-model answer; every field optional, same coercions."""
    year: Year = None
    country: OptionalText = None
    region: OptionalText = None
    varietals: Varietals = Field(default_factory=list)
    abv_percent: OptionalNumber = None
    producer_website: OptionalText = None
    producer_address: OptionalText = None
    producer_city: OptionalText = None
    producer_postal_code: OptionalText = None
    latitude: OptionalNumber = None
    longitude: OptionalNumber = None

    model_config = {"extra": "ignore"}
