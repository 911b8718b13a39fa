"""
Label extraction with a vision-capable LLM.

Sends the label image (by URL) plus any OCR text to the extraction model
via LiteLLM in JSON mode and parses the reply into ExtractedWineData.
Low-confidence reads are retried once on the stronger model.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..config import Config
from ..errors import ExtractionParseError, LLMUnavailableError
from ..models.extraction import ExtractedWineData
from .security import require_valid_image_url

# Lazy import for litellm to avoid slow network requests during module load
_litellm = None
_litellm_checked = False

logger = logging.getLogger(__name__)

CompletionFn = Callable[..., Awaitable[Any]]


def _get_litellm():
    """Lazy-load litellm to avoid startup delays from network requests."""
    global _litellm, _litellm_checked
    if not _litellm_checked:
        _litellm_checked = True
        try:
            import litellm
            litellm.set_verbose = False
            _litellm = litellm
        except ModuleNotFoundError:
            _litellm = None
    return _litellm


EXTRACTION_SYSTEM_PROMPT = (
    "You are a master sommelier with expertise in reading wine labels. "
    "Extract ONLY information that is VISIBLE on the label. Output JSON that "
    "matches the schema. Use null for missing data, never invent or assume information."
)

EXTRACTION_PROMPT = """Carefully examine this wine label and extract the following information.
{ocr_section}
EXTRACTION PRIORITIES:
1. Producer/Winery name - usually the largest or most prominent text
2. Wine name/Cuvée - the specific wine designation or proprietary name
3. Vintage year - a 4-digit number, often near the wine name
4. Grape varieties - may be listed with percentages or as a single varietal
5. Region/Appellation - e.g. "Napa Valley", "Bordeaux", "Etna"
6. Alcohol content - shown as "% ALC/VOL" or "% ABV"
7. Country - explicit or inferred from the region
8. Producer address - street, city, postal code (often on the back label)
9. Producer website - e.g. www.example.com

NOTES:
- If no year is visible, return null (do NOT assume NV)
- Natural wines often have minimal text; extract what you can see
- Some wines use proprietary names instead of varietals

Return a JSON object with these fields:
- producer: string (required)
- wine_name: string (required)
- year: integer or null
- country: string or null
- region: string or null
- varietals: array of strings (empty if not visible)
- abv_percent: number or null
- confidence: number from 0 to 1 based on label clarity (required)
- producer_website: string or null
- producer_address: string or null
- producer_city: string or null
- producer_postal_code: string or null
- latitude: null
- longitude: null"""


def _strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper if the model added one."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        # Remove first line (```json or ```)
        lines = lines[1:]
        # Remove last line if it's closing ```
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    return text


def parse_json_object(response_text: Optional[str]) -> dict:
    """
    Parse a model reply that must be a single JSON object.

    Raises:
        ExtractionParseError: empty reply, invalid JSON, or not an object
    """
    if not response_text or not response_text.strip():
        raise ExtractionParseError("Empty response from model")

    text = _strip_code_fences(response_text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug(f"Unparseable model response: {response_text[:500]}")
        raise ExtractionParseError(f"Model returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ExtractionParseError(f"Model returned {type(data).__name__}, expected a JSON object")
    return data


def parse_extraction(response_text: Optional[str]) -> ExtractedWineData:
    """Convert the extraction model's raw reply into ExtractedWineData."""
    data = parse_json_object(response_text)
    try:
        return ExtractedWineData.model_validate(data)
    except ValidationError as e:
        raise ExtractionParseError(f"Extraction did not match schema: {e}") from e


class ExtractionEngine:
    """
    Vision-model label extraction.

    Args:
        model: Default (cheap) model. Defaults to Config.extraction_model()
        strong_model: Escalation model. Defaults to Config.extraction_strong_model()
        completion: Async completion callable with litellm.acompletion's
                    signature. Defaults to litellm.acompletion.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        strong_model: Optional[str] = None,
        completion: Optional[CompletionFn] = None,
        max_tokens: int = 500,
        temperature: float = 0.2,
        timeout: Optional[float] = None,
    ):
        self.model = model or Config.extraction_model()
        self.strong_model = strong_model or Config.extraction_strong_model()
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

    async def extract(
        self,
        image_url: str,
        ocr_text: Optional[str] = None,
        use_strong_model: bool = False,
    ) -> ExtractedWineData:
        """
        Extract wine identity from a label image.

        Raises:
            ImageUrlRejectedError: image URL failed the SSRF check
            ExtractionParseError: reply was empty or malformed
            LLMUnavailableError: litellm is not installed
        """
        require_valid_image_url(image_url)
        completion = self._get_completion()
        model = self.strong_model if use_strong_model else self.model

        ocr_section = f'\nOCR Text detected: "{ocr_text}"\n' if ocr_text else ""
        response = await completion(
            model=model,
            messages=[
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": EXTRACTION_PROMPT.format(ocr_section=ocr_section)},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            timeout=self.timeout,
        )

        result = parse_extraction(response.choices[0].message.content)
        logger.info(
            f"Extraction ({model}): {result.producer} - {result.wine_name} "
            f"year={result.year} confidence={result.confidence:.2f}"
        )
        return result

    async def extract_with_escalation(
        self,
        image_url: str,
        ocr_text: Optional[str] = None,
    ) -> ExtractedWineData:
        """Extract with the default model; below ESCALATION_CONFIDENCE retry once on the strong model."""
        result = await self.extract(image_url, ocr_text)
        if result.confidence >= Config.ESCALATION_CONFIDENCE:
            return result

        logger.info(f"Low confidence ({result.confidence:.2f}), escalating to {self.strong_model}")
        return await self.extract(image_url, ocr_text, use_strong_model=True)

