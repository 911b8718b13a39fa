"""
Background enrichment jobs.

Drains wines_enrichment_queue: each job asks the knowledge model about a
wine the pipeline already created and fills whatever the catalog is still
missing (region, producer location, ABV, varietals). Like the inline
enrichment step, nothing already populated is overwritten.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

from ..config import Config
from ..models.extraction import ExtractedWineData
from ..models.response import clamp_batch_limit
from .catalog_repository import CatalogRepository
from .enrichment import EnrichmentEngine, merge_enrichment
from .job_queue import EnrichmentJob, EnrichmentJobQueue

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentBatchStats:
    processed: int = 0
    failed: int = 0
    total: int = 0


def job_to_wine_data(job: EnrichmentJob) -> ExtractedWineData:
    """What the catalog knew about the wine when the job was queued."""
    return ExtractedWineData.model_validate({
        "producer": job.producer_name,
        "wine_name": job.wine_name,
        "year": job.year,
        "region": job.region,
        "country": job.country,
        "varietals": job.existing_varietals,
        "confidence": 1.0,
    })


class EnrichmentQueueWorker:
    """Processes claimed enrichment jobs, one batch per invocation."""

    def __init__(
        self,
        queue: Optional[EnrichmentJobQueue] = None,
        catalog: Optional[CatalogRepository] = None,
        engine: Optional[EnrichmentEngine] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.queue = queue or EnrichmentJobQueue()
        self.catalog = catalog or CatalogRepository(self.queue.db_path)
        self.engine = engine or EnrichmentEngine()
        self._executor = executor or ThreadPoolExecutor(max_workers=4)

    async def _run_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args, **kwargs))

    def _apply(self, job: EnrichmentJob, producer_id: int, data: ExtractedWineData) -> None:
        region_id = None
        if data.region and data.country:
            region_id = self.catalog.upsert_region(data.region, data.country)

        self.catalog.fill_producer_details(producer_id, {
            "region_id": region_id,
            "website": data.producer_website,
            "address": data.producer_address,
            "city": data.producer_city,
            "postal_code": data.producer_postal_code,
            "latitude": data.latitude,
            "longitude": data.longitude,
        })

        if data.abv_percent is not None:
            self.catalog.fill_vintage_abv(job.vintage_id, data.abv_percent)

        # Varietals read off the label beat the model's guess
        if data.varietals and not job.existing_varietals:
            self.catalog.assign_varietals(job.vintage_id, data.varietals)
            logger.info(f"Stored {len(data.varietals)} varietals for vintage {job.vintage_id}")

    async def process_job(self, job: EnrichmentJob) -> bool:
        """Returns True on success; failures are routed through the retry policy."""
        logger.info(f"Processing enrichment job {job.id} for {job.producer_name} - {job.wine_name}")
        try:
            wine = await self._run_sync(self.catalog.get_wine, job.wine_id)
            if wine is None:
                raise ValueError(f"Wine not found: {job.wine_id}")

            data = job_to_wine_data(job)
            suggestion = await self.engine.suggest(data)
            enriched = merge_enrichment(data, suggestion)
            await self._run_sync(self._apply, job, wine["producer_id"], enriched)
        except Exception as e:
            message = str(e) or type(e).__name__
            status = await self._run_sync(self.queue.handle_failure, job, message)
            logger.error(f"Enrichment job {job.id} failed ({status.value}): {message}")
            return False

        await self._run_sync(
            self.queue.mark_completed, job.id, suggestion.model_dump(mode="json")
        )
        logger.info(f"Enriched wine {job.wine_id} ({job.wine_name})")
        return True

    async def process_batch(self, limit: Optional[int] = None) -> EnrichmentBatchStats:
        """
        Claim and process up to `limit` enrichment jobs (default 5, max 10).

        Raises:
            JobClaimError: the claim itself failed
        """
        limit = clamp_batch_limit(
            limit, Config.DEFAULT_BATCH_LIMIT, Config.MAX_ENRICHMENT_BATCH_LIMIT
        )
        jobs = await self._run_sync(self.queue.claim, limit)

        stats = EnrichmentBatchStats(total=len(jobs))
        if not jobs:
            return stats

        logger.info(f"Claimed {len(jobs)} enrichment jobs")
        results = await asyncio.gather(
            *(self.process_job(job) for job in jobs),
            return_exceptions=True,
        )
        for job, result in zip(jobs, results):
            if result is True:
                stats.processed += 1
            else:
                if isinstance(result, BaseException):
                    logger.error(f"Enrichment job {job.id} could not be recorded: {result}")
                stats.failed += 1

        logger.info(f"Processed {stats.processed} enrichment jobs, {stats.failed} failed")
        return stats


_enrichment_worker: Optional[EnrichmentQueueWorker] = None


def get_enrichment_worker() -> EnrichmentQueueWorker:
    global _enrichment_worker
    if _enrichment_worker is None:
        _enrichment_worker = EnrichmentQueueWorker()
    return _enrichment_worker
