from .enums import (
    EmbeddingJobType,
    JobState,
    JobStatus,
    MatchMethod,
)
from .extraction import (
    EnrichmentSuggestion,
    ExtractedWineData,
    is_likely_nv,
    normalize_year,
)
from .jobs import (
    BatchStats,
    JobRun,
    MatchResult,
    ScanJob,
    ScanMatchRecord,
)
from .response import (
    BatchRequest,
    BatchResponse,
    EmbeddingBatchRequest,
    EmbeddingBatchResponse,
    EnrichmentBatchRequest,
    EnrichmentBatchResponse,
    ErrorResponse,
)

__all__ = [
    "EmbeddingJobType",
    "JobState",
    "JobStatus",
    "MatchMethod",
    "EnrichmentSuggestion",
    "ExtractedWineData",
    "is_likely_nv",
    "normalize_year",
    "BatchStats",
    "JobRun",
    "MatchResult",
    "ScanJob",
    "ScanMatchRecord",
    "BatchRequest",
    "BatchResponse",
    "EmbeddingBatchRequest",
    "EmbeddingBatchResponse",
    "EnrichmentBatchRequest",
    "EnrichmentBatchResponse",
    "ErrorResponse",
]
