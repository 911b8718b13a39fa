"""
Queue-processing endpoints.

POST /process-wine-queue  - resolve a batch of pending scan jobs
POST /generate-embeddings - drain a batch of embedding jobs
POST /process-enrichment-queue - drain a batch of enrichment jobs

All are invoked by a scheduler or internal caller. A missing or invalid
body falls back to the default limit; only a failed claim is an error.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..errors import JobClaimError
from ..models.enums import MatchMethod
from ..models.response import (
    BatchRequest,
    BatchResponse,
    EmbeddingBatchRequest,
    EmbeddingBatchResponse,
    EnrichmentBatchRequest,
    EnrichmentBatchResponse,
    ErrorResponse,
)
from ..services.embedding_worker import EmbeddingWorker, get_embedding_worker
from ..services.enrichment_worker import EnrichmentQueueWorker, get_enrichment_worker
from ..services.label_pipeline import LabelPipeline, get_label_pipeline

logger = logging.getLogger(__name__)
router = APIRouter()


async def _read_body(request: Request) -> dict[str, Any]:
    """JSON object body, or {} when the body is empty or not an object."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@router.post(
    "/process-wine-queue",
    response_model=BatchResponse,
    responses={500: {"model": ErrorResponse}},
)
async def process_wine_queue(
    request: Request,
    pipeline: LabelPipeline = Depends(get_label_pipeline),
):
    """Claim and resolve up to `limit` pending scan jobs (default 5, max 20)."""
    body = await _read_body(request)
    batch_request = BatchRequest.model_validate({k: v for k, v in body.items() if k == "limit"})

    try:
        stats = await pipeline.process_batch(batch_request.limit)
    except JobClaimError as e:
        logger.error(f"Error claiming jobs: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    counts = stats.match_method_counts
    return BatchResponse(
        processed=stats.processed,
        failed=stats.failed,
        total=stats.total,
        visual_matches=counts.get(MatchMethod.VISUAL_EMBEDDING.value, 0),
        vector_matches=counts.get(MatchMethod.VECTOR_IDENTITY.value, 0),
        openai_matches=counts.get(MatchMethod.OPENAI_VISION.value, 0),
    )


@router.post(
    "/generate-embeddings",
    response_model=EmbeddingBatchResponse,
    responses={500: {"model": ErrorResponse}},
)
async def generate_embeddings(
    request: Request,
    worker: EmbeddingWorker = Depends(get_embedding_worker),
):
    """Process up to `limit` embedding jobs of `job_type`."""
    body = await _read_body(request)
    try:
        batch_request = EmbeddingBatchRequest.model_validate(body)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": "Invalid request", "detail": str(e)})

    try:
        stats = await worker.process_batch(batch_request.job_type, batch_request.limit)
    except JobClaimError as e:
        logger.error(f"Error claiming embedding jobs: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    return EmbeddingBatchResponse(processed=stats.processed, failed=stats.failed, total=stats.total)


@router.post(
    "/process-enrichment-queue",
    response_model=EnrichmentBatchResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def process_enrichment_queue(
    request: Request,
    worker: EnrichmentQueueWorker = Depends(get_enrichment_worker),
):
    """Fill catalog gaps for up to `limit` queued vintages (default 5, max 10)."""
    body = await _read_body(request)
    try:
        batch_request = EnrichmentBatchRequest.model_validate(body)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": "Invalid request", "detail": str(e)})

    if batch_request.action != "process":
        return JSONResponse(status_code=400, content={"error": "Invalid action"})

    try:
        stats = await worker.process_batch(batch_request.limit)
    except JobClaimError as e:
        logger.error(f"Error claiming enrichment jobs: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    return EnrichmentBatchResponse(processed=stats.processed, failed=stats.failed, total=stats.total)
