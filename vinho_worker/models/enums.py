"""
Enums for type-safe string constants in the label-resolution worker.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a scan job row."""
    PENDING = "pending"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchMethod(str, Enum):
    """How a job's wine was resolved."""
    VISUAL_EMBEDDING = "visual_embedding"
    VECTOR_IDENTITY = "vector_identity"
    OPENAI_VISION = "openai_vision"
    DUPLICATE = "duplicate"  # Copied from a completed job with the same key


class JobState(str, Enum):
    """In-process state of a job moving through the pipeline."""
    PENDING = "pending"
    MATCHING = "matching"
    EXTRACTING = "extracting"
    ENRICHING = "enriching"
    UPSERTING = "upserting"
    TASTING_CREATED = "tasting_created"
    COMPLETED = "completed"
    FAILED = "failed"


class EmbeddingJobType(str, Enum):
    """Kinds of background embedding work."""
    WINE_IDENTITY = "wine_identity"
    LABEL_VISUAL = "label_visual"
