from .catalog_repository import CatalogRepository
from .embedding_worker import EmbeddingWorker, get_embedding_worker
from .enrichment import EnrichmentEngine
from .enrichment_worker import EnrichmentQueueWorker, get_enrichment_worker
from .extraction import ExtractionEngine
from .idempotency import compute_idempotency_key
from .job_queue import EmbeddingJobQueue, EnrichmentJobQueue, JobQueue
from .label_pipeline import LabelPipeline, get_label_pipeline
from .security import is_valid_image_url
from .tasting import TastingRecorder
from .text_matcher import TextMatcher
from .visual_matcher import VisualMatcher

__all__ = [
    "CatalogRepository",
    "EmbeddingWorker",
    "get_embedding_worker",
    "EnrichmentEngine",
    "EnrichmentQueueWorker",
    "get_enrichment_worker",
    "ExtractionEngine",
    "compute_idempotency_key",
    "EmbeddingJobQueue",
    "EnrichmentJobQueue",
    "JobQueue",
    "LabelPipeline",
    "get_label_pipeline",
    "is_valid_image_url",
    "TastingRecorder",
    "TextMatcher",
    "VisualMatcher",
]
