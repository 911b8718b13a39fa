"""
Background embedding jobs.

Drains embedding_jobs_queue so the matchers improve over time:
- wine_identity: rebuild the wine's identity line from the catalog and
  upsert it into wine_identities (Text Matcher index)
- label_visual: embed the label image and store it in label_embeddings
  (Visual Matcher index)
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

from ..models.enums import EmbeddingJobType
from ..models.response import clamp_batch_limit
from .catalog_repository import CatalogRepository
from .job_queue import EmbeddingJob, EmbeddingJobQueue
from .security import require_valid_image_url
from .text_matcher import IdentityIndex, build_identity_text, identity_completeness
from .visual_matcher import JinaClipEmbedder, LabelEmbeddingIndex

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingBatchStats:
    processed: int = 0
    failed: int = 0
    total: int = 0


class EmbeddingWorker:
    """Processes claimed embedding jobs, one batch per invocation."""

    def __init__(
        self,
        queue: Optional[EmbeddingJobQueue] = None,
        catalog: Optional[CatalogRepository] = None,
        identity_index: Optional[IdentityIndex] = None,
        label_index: Optional[LabelEmbeddingIndex] = None,
        embedder: Optional[JinaClipEmbedder] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.queue = queue or EmbeddingJobQueue()
        db_path = self.queue.db_path
        self.catalog = catalog or CatalogRepository(db_path)
        self.identity_index = identity_index or IdentityIndex(db_path)
        self.label_index = label_index or LabelEmbeddingIndex(db_path)
        self.embedder = embedder or JinaClipEmbedder()
        self._executor = executor or ThreadPoolExecutor(max_workers=4)

    async def _run_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args, **kwargs))

    def _process_identity(self, job: EmbeddingJob) -> None:
        summary = self.catalog.wine_summary(job.wine_id)
        if summary is not None:
            identity_text = build_identity_text(
                summary.producer,
                summary.wine_name,
                summary.region,
                summary.country,
                summary.varietals,
            )
        elif job.input_text:
            identity_text = job.input_text
        else:
            raise ValueError(f"No catalog entry or input text for wine {job.wine_id}")

        completeness = identity_completeness(identity_text)
        self.identity_index.upsert(job.wine_id, identity_text, completeness)
        logger.info(f"Identity indexed for wine {job.wine_id} (completeness: {completeness})")

    def _process_label(self, job: EmbeddingJob) -> None:
        image_url = require_valid_image_url(job.input_image_url)
        embedding = self.embedder.embed_image(image_url)
        self.label_index.add(
            wine_id=job.wine_id,
            source_image_url=image_url,
            embedding=embedding,
            embedding_model=self.embedder.model,
            vintage_id=job.vintage_id,
            source_scan_id=job.scan_id,
        )
        logger.info(f"Label embedding stored for wine {job.wine_id}")

    def process_job_sync(self, job: EmbeddingJob) -> bool:
        """Returns True on success; failures are routed through the retry policy."""
        try:
            if job.job_type == EmbeddingJobType.WINE_IDENTITY:
                self._process_identity(job)
            else:
                self._process_label(job)
        except Exception as e:
            message = str(e) or type(e).__name__
            status = self.queue.handle_failure(job, message)
            logger.error(f"Embedding job {job.id} failed ({status.value}): {message}")
            return False

        self.queue.mark_completed(job.id)
        return True

    async def process_batch(
        self,
        job_type: EmbeddingJobType,
        limit: Optional[int] = None,
    ) -> EmbeddingBatchStats:
        """
        Claim and process up to `limit` jobs of one type.

        Raises:
            JobClaimError: the claim itself failed
        """
        limit = clamp_batch_limit(limit, 10)
        jobs = await self._run_sync(self.queue.claim, job_type, limit)

        stats = EmbeddingBatchStats(total=len(jobs))
        if not jobs:
            return stats

        results = await asyncio.gather(
            *(self._run_sync(self.process_job_sync, job) for job in jobs),
            return_exceptions=True,
        )
        for job, result in zip(jobs, results):
            if result is True:
                stats.processed += 1
            else:
                if isinstance(result, BaseException):
                    logger.error(f"Embedding job {job.id} could not be recorded: {result}")
                stats.failed += 1

        logger.info(
            f"Embedding batch ({job_type.value}): {stats.processed} processed, {stats.failed} failed"
        )
        return stats


_embedding_worker: Optional[EmbeddingWorker] = None


def get_embedding_worker() -> EmbeddingWorker:
    global _embedding_worker
    if _embedding_worker is None:
        _embedding_worker = EmbeddingWorker()
    return _embedding_worker
