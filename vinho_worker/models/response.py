"""
Pydantic models for the worker's HTTP API.

API Contract:
POST /process-wine-queue  {"limit": 5}
  -> {"processed": 4, "failed": 1, "total": 5,
      "visual_matches": 1, "vector_matches": 2, "openai_matches": 1}
POST /generate-embeddings {"job_type": "wine_identity", "limit": 10}
  -> {"processed": 10, "failed": 0, "total": 10}
POST /process-enrichment-queue {"limit": 5, "action": "process"}
  -> {"processed": 5, "failed": 0, "total": 5}
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from ..config import Config
from .enums import EmbeddingJobType


def clamp_batch_limit(
    value: Any,
    default: int = Config.DEFAULT_BATCH_LIMIT,
    cap: int = Config.MAX_BATCH_LIMIT,
) -> int:
    """Invalid or out-of-range limits fall back to the default / cap."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    limit = int(value)
    if limit < 1:
        return default
    return min(limit, cap)


class BatchRequest(BaseModel):
    """Body of POST /process-wine-queue."""
    limit: int = Field(Config.DEFAULT_BATCH_LIMIT, description="Jobs to claim (1-20)")

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:
        return clamp_batch_limit(v, Config.DEFAULT_BATCH_LIMIT)


class BatchResponse(BaseModel):
    """Result of one queue-processing invocation."""
    processed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    visual_matches: int = Field(0, ge=0)
    vector_matches: int = Field(0, ge=0)
    openai_matches: int = Field(0, ge=0)


class EmbeddingBatchRequest(BaseModel):
    """Body of POST /generate-embeddings."""
    job_type: EmbeddingJobType = EmbeddingJobType.WINE_IDENTITY
    limit: int = Field(10, description="Jobs to claim (1-20)")

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:
        return clamp_batch_limit(v, 10)


class EmbeddingBatchResponse(BaseModel):
    processed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class EnrichmentBatchRequest(BaseModel):
    """Body of POST /process-enrichment-queue. "process" is the only action."""
    action: str = "process"
    limit: int = Field(Config.DEFAULT_BATCH_LIMIT, description="Jobs to claim (1-10)")

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:
        return clamp_batch_limit(v, Config.DEFAULT_BATCH_LIMIT, Config.MAX_ENRICHMENT_BATCH_LIMIT)


class EnrichmentBatchResponse(BaseModel):
    processed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
