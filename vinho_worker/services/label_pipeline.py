"""
Label-resolution pipeline.

Claims a batch of scan jobs and resolves each one through tiered matching:
1. Duplicate check (same idempotency key already completed)
2. Visual match against stored label embeddings
3. Text match of the OCR text against wine identities
4. Vision-model extraction (with one escalation to the strong model)
5. Text match again with the extracted producer + wine name
6. Knowledge-model enrichment of missing fields
7. Catalog upsert
then records the tasting and queues downstream work.

Each job walks an explicit JobState sequence recorded on its JobRun.
Jobs in a batch run concurrently, except that jobs with the same
idempotency key run in sequence. One job's failure never touches another.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Optional

from ..config import Config
from ..feature_flags import FeatureFlags, get_feature_flags
from ..models.enums import JobState, MatchMethod
from ..models.extraction import ExtractedWineData
from ..models.jobs import BatchStats, JobRun, MatchResult, ScanJob, ScanMatchRecord
from ..models.response import clamp_batch_limit
from .catalog_repository import CatalogRepository
from .enrichment import EnrichmentEngine
from .extraction import ExtractionEngine
from .idempotency import compute_idempotency_key
from .job_queue import JobQueue
from .tasting import TastingRecorder
from .text_matcher import IdentityIndex, TextMatcher
from .visual_matcher import LabelEmbeddingIndex, VisualMatcher

logger = logging.getLogger(__name__)


class LabelPipeline:
    """
    Job orchestrator.

    All collaborators are injectable; defaults are built against
    Config.database_path() and the configured model/API settings.
    """

    def __init__(
        self,
        job_queue: Optional[JobQueue] = None,
        catalog: Optional[CatalogRepository] = None,
        visual_matcher: Optional[VisualMatcher] = None,
        text_matcher: Optional[TextMatcher] = None,
        extraction_engine: Optional[ExtractionEngine] = None,
        enrichment_engine: Optional[EnrichmentEngine] = None,
        tasting_recorder: Optional[TastingRecorder] = None,
        flags: Optional[FeatureFlags] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._executor = executor or ThreadPoolExecutor(max_workers=8)
        self.job_queue = job_queue or JobQueue()
        db_path = self.job_queue.db_path
        self.catalog = catalog or CatalogRepository(db_path)
        self.visual_matcher = visual_matcher or VisualMatcher(
            index=LabelEmbeddingIndex(db_path), executor=self._executor
        )
        self.text_matcher = text_matcher or TextMatcher(
            index=IdentityIndex(db_path), executor=self._executor
        )
        self.extraction_engine = extraction_engine or ExtractionEngine()
        self.enrichment_engine = enrichment_engine or EnrichmentEngine()
        self.tasting_recorder = tasting_recorder or TastingRecorder(db_path)
        self.flags = flags or get_feature_flags()

    async def _run_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SQLite call on the executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args, **kwargs))

    async def process_batch(self, limit: Optional[int] = None) -> BatchStats:
        """
        Claim up to `limit` pending jobs and process them concurrently.

        Jobs sharing an idempotency key run one after another: the first
        resolves the label and the rest hit the duplicate short-circuit.

        Raises:
            JobClaimError: the claim itself failed; nothing was processed
        """
        limit = clamp_batch_limit(limit, Config.DEFAULT_BATCH_LIMIT)
        jobs = await self._run_sync(self.job_queue.claim, limit)

        stats = BatchStats(total=len(jobs))
        if not jobs:
            return stats

        groups: dict[str, list[ScanJob]] = {}
        for job in jobs:
            key = job.idempotency_key or compute_idempotency_key(job.image_url, job.ocr_text)
            groups.setdefault(key, []).append(job)

        logger.info(f"Processing {len(jobs)} jobs ({len(groups)} distinct labels)")
        group_results = await asyncio.gather(
            *(self._process_group(group) for group in groups.values())
        )
        results = {job.id: result for group in group_results for job, result in group}

        for job in jobs:
            result = results[job.id]
            if isinstance(result, BaseException):
                # process_job already routes failures; this means the
                # failure bookkeeping itself broke (e.g. DB unavailable)
                logger.error(f"Job {job.id} could not be recorded: {result}", exc_info=result)
                stats.failed += 1
            else:
                stats.record(result)

        logger.info(
            f"Processed {stats.processed} jobs, {stats.failed} failed "
            f"(methods: {stats.match_method_counts})"
        )
        return stats

    async def _process_group(self, group: list[ScanJob]) -> list[tuple[ScanJob, Any]]:
        """Run same-key jobs in claim order. Each result is a JobRun or the exception raised."""
        results: list[tuple[ScanJob, Any]] = []
        for job in group:
            try:
                results.append((job, await self.process_job(job)))
            except Exception as e:
                results.append((job, e))
        return results

    async def process_job(self, job: ScanJob) -> JobRun:
        """Run one job to a terminal state. Failures go through the retry policy."""
        run = JobRun(job=job)
        try:
            await self._resolve(run)
        except Exception as e:
            run.advance(JobState.FAILED)
            run.error = str(e) or type(e).__name__
            logger.error(f"Error processing job {job.id}: {run.error}", exc_info=True)
            status = await self._run_sync(self.job_queue.handle_failure, job, run.error)
            logger.info(f"Job {job.id} -> {status.value} (retry_count={job.retry_count})")
        return run

    async def _resolve(self, run: JobRun) -> None:
        job = run.job

        if not job.idempotency_key:
            job.idempotency_key = compute_idempotency_key(job.image_url, job.ocr_text)
            await self._run_sync(self.job_queue.set_idempotency_key, job.id, job.idempotency_key)

        run.advance(JobState.MATCHING)

        duplicate = await self._run_sync(
            self.job_queue.find_completed_duplicate, job.id, job.idempotency_key
        )
        if duplicate is not None:
            logger.info(f"Job {job.id} duplicates a completed job, reusing its result")
            await self._run_sync(self.job_queue.mark_completed, job.id, duplicate)
            run.match_method = MatchMethod.DUPLICATE
            run.advance(JobState.COMPLETED)
            return

        visual = MatchResult.miss()
        if self.flags.feature_visual_match:
            visual = await self.visual_matcher.match(job.image_url)
            if visual.matched:
                await self._complete_match(run, visual, MatchMethod.VISUAL_EMBEDDING)
                return

        if self.flags.feature_text_match and job.ocr_text and job.ocr_text.strip():
            text_match = await self.text_matcher.match(job.ocr_text)
            if text_match.matched:
                await self._complete_match(
                    run, text_match, MatchMethod.VECTOR_IDENTITY, embedding=visual.embedding
                )
                return

        run.advance(JobState.EXTRACTING)
        data = await self.extraction_engine.extract_with_escalation(job.image_url, job.ocr_text)

        if self.flags.feature_text_match and self._is_identified(data):
            text_match = await self.text_matcher.match(data.identity_query)
            if text_match.matched:
                await self._complete_match(
                    run,
                    text_match,
                    MatchMethod.VECTOR_IDENTITY,
                    year=data.year,
                    abv=data.abv_percent,
                    embedding=visual.embedding,
                )
                return

        run.advance(JobState.ENRICHING)
        if self.flags.feature_enrichment:
            data = await self.enrichment_engine.enrich(data)

        run.advance(JobState.UPSERTING)
        upsert = await self._run_sync(self.catalog.upsert_extracted_wine, data)

        await self._run_sync(
            self.tasting_recorder.record_scan_match,
            job.scan_id,
            ScanMatchRecord(
                vintage_id=upsert.vintage_id,
                method=MatchMethod.OPENAI_VISION,
                confidence=data.confidence,
            ),
        )
        await self._run_sync(
            self.tasting_recorder.create_tasting,
            job,
            upsert.vintage_id,
            data.varietals,
            data.region,
            data.country,
        )
        run.advance(JobState.TASTING_CREATED)

        await self._run_sync(
            self.tasting_recorder.queue_enrichment,
            wine_id=upsert.wine_id,
            vintage_id=upsert.vintage_id,
            user_id=job.user_id,
            producer_name=data.producer,
            wine_name=data.wine_name,
            year=data.year,
            region=data.region,
            country=data.country,
            existing_varietals=data.varietals,
        )
        await self._store_or_queue_embeddings(job, upsert.wine_id, upsert.vintage_id, data, visual.embedding)

        processed_data = data.model_dump(mode="json")
        processed_data.update({
            "wine_id": upsert.wine_id,
            "vintage_id": upsert.vintage_id,
            "match_method": MatchMethod.OPENAI_VISION.value,
        })
        await self._run_sync(self.job_queue.mark_completed, job.id, processed_data)
        run.match_method = MatchMethod.OPENAI_VISION
        run.advance(JobState.COMPLETED)
        logger.info(f"Successfully processed job {job.id}")

    @staticmethod
    def _is_identified(data: ExtractedWineData) -> bool:
        return data.producer != Config.UNKNOWN_PRODUCER and data.wine_name != Config.UNKNOWN_WINE

    async def _complete_match(
        self,
        run: JobRun,
        match: MatchResult,
        method: MatchMethod,
        year: Optional[int] = None,
        abv: Optional[float] = None,
        embedding: Optional[list[float]] = None,
    ) -> None:
        """Finish a job whose wine was found by similarity (no extraction/upsert)."""
        job = run.job
        vintage_id = await self._run_sync(self.catalog.get_or_create_vintage, match.wine_id, year, abv)
        summary = await self._run_sync(self.catalog.wine_summary, match.wine_id)

        await self._run_sync(
            self.tasting_recorder.record_scan_match,
            job.scan_id,
            ScanMatchRecord(
                vintage_id=vintage_id,
                method=method,
                confidence=match.similarity or 0.0,
                similarity=match.similarity,
            ),
        )
        await self._run_sync(
            self.tasting_recorder.create_tasting,
            job,
            vintage_id,
            summary.varietals if summary else None,
            summary.region if summary else None,
            summary.country if summary else None,
        )
        run.advance(JobState.TASTING_CREATED)

        # A visual match means this image is already in the index
        if embedding and method != MatchMethod.VISUAL_EMBEDDING:
            await self._run_sync(
                self.tasting_recorder.store_visual_embedding,
                match.wine_id,
                vintage_id,
                job.image_url,
                embedding,
                self.visual_matcher.embedding_model,
                job.scan_id,
            )

        processed_data = {
            "wine_id": match.wine_id,
            "vintage_id": vintage_id,
            "producer": match.producer_name,
            "wine_name": match.wine_name,
            "year": year,
            "match_method": method.value,
            "similarity": match.similarity,
        }
        await self._run_sync(self.job_queue.mark_completed, job.id, processed_data)
        run.match_method = method
        run.advance(JobState.COMPLETED)
        logger.info(
            f"Job {job.id} matched via {method.value}: {match.producer_name} - {match.wine_name}"
        )

    async def _store_or_queue_embeddings(
        self,
        job: ScanJob,
        wine_id: int,
        vintage_id: int,
        data: ExtractedWineData,
        embedding: Optional[list[float]],
    ) -> None:
        if embedding:
            await self._run_sync(
                self.tasting_recorder.store_visual_embedding,
                wine_id,
                vintage_id,
                job.image_url,
                embedding,
                self.visual_matcher.embedding_model,
                job.scan_id,
            )

        if not self.flags.feature_embedding_queue:
            return

        await self._run_sync(
            self.tasting_recorder.queue_embeddings,
            wine_id=wine_id,
            vintage_id=vintage_id,
            producer_name=data.producer,
            wine_name=data.wine_name,
            region=data.region,
            country=data.country,
            varietals=data.varietals,
            image_url=job.image_url,
            scan_id=job.scan_id,
            include_visual=not embedding,
        )


_label_pipeline: Optional[LabelPipeline] = None


def get_label_pipeline() -> LabelPipeline:
    global _label_pipeline
    if _label_pipeline is None:
        _label_pipeline = LabelPipeline()
    return _label_pipeline
