"""Tests for the background embedding worker."""

import pytest

from conftest import LABEL_URL, FakeEmbedder
from vinho_worker.models.enums import EmbeddingJobType
from vinho_worker.services.catalog_repository import CatalogRepository
from vinho_worker.services.embedding_worker import EmbeddingWorker
from vinho_worker.services.job_queue import EmbeddingJobQueue
from vinho_worker.services.text_matcher import IdentityIndex
from vinho_worker.services.visual_matcher import LabelEmbeddingIndex


@pytest.fixture
def catalog(db_path):
    repo = CatalogRepository(db_path)
    yield repo
    repo.close()


@pytest.fixture
def queue(db_path):
    q = EmbeddingJobQueue(db_path)
    yield q
    q.close()


def _worker(queue, embedder=None) -> EmbeddingWorker:
    return EmbeddingWorker(queue=queue, embedder=embedder or FakeEmbedder(default=[0.5, 0.5]))


def _etna_rosso(catalog) -> int:
    region_id = catalog.upsert_region("Etna DOC", "Italy")
    producer_id = catalog.upsert_producer("Tenuta delle Terre Nere", region_id=region_id)
    wine_id = catalog.upsert_wine(producer_id, "Etna Rosso", 2019)
    vintage_id = catalog.get_or_create_vintage(wine_id, 2019)
    catalog.assign_varietals(vintage_id, ["Nerello Mascalese"])
    return wine_id


class TestIdentityJobs:
    @pytest.mark.asyncio
    async def test_identity_built_from_catalog(self, db_path, catalog, queue):
        wine_id = _etna_rosso(catalog)
        queue.enqueue(EmbeddingJobType.WINE_IDENTITY, wine_id, f"wine_identity:{wine_id}:1")

        stats = await _worker(queue).process_batch(EmbeddingJobType.WINE_IDENTITY)

        assert (stats.processed, stats.failed, stats.total) == (1, 0, 1)
        identity = IdentityIndex(db_path).get(wine_id)
        assert identity == (
            "Tenuta delle Terre Nere | Etna Rosso | Etna DOC, Italy | Nerello Mascalese",
            1.0,
        )

    @pytest.mark.asyncio
    async def test_reindex_overwrites(self, db_path, catalog, queue):
        wine_id = _etna_rosso(catalog)
        IdentityIndex(db_path).upsert(wine_id, "Tenuta delle Terre Nere | Etna Rosso |  | ", 0.5)
        queue.enqueue(EmbeddingJobType.WINE_IDENTITY, wine_id, "identity-key")

        await _worker(queue).process_batch(EmbeddingJobType.WINE_IDENTITY)

        assert IdentityIndex(db_path).get(wine_id)[1] == 1.0


class TestLabelJobs:
    @pytest.mark.asyncio
    async def test_label_embedding_stored(self, db_path, catalog, queue):
        wine_id = _etna_rosso(catalog)
        queue.enqueue(
            EmbeddingJobType.LABEL_VISUAL, wine_id, "label-key", input_image_url=LABEL_URL
        )
        embedder = FakeEmbedder(default=[0.1, 0.9])

        stats = await _worker(queue, embedder).process_batch(EmbeddingJobType.LABEL_VISUAL, 10)

        assert stats.processed == 1
        assert embedder.calls == [LABEL_URL]
        neighbor = LabelEmbeddingIndex(db_path).nearest([0.1, 0.9])
        assert neighbor.wine_id == wine_id
        assert neighbor.similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_embedder_failure_goes_through_retry(self, catalog, queue):
        wine_id = _etna_rosso(catalog)
        queue.enqueue(
            EmbeddingJobType.LABEL_VISUAL, wine_id, "label-key", input_image_url=LABEL_URL
        )
        worker = _worker(queue, FakeEmbedder(error=RuntimeError("jina down")))

        stats = await worker.process_batch(EmbeddingJobType.LABEL_VISUAL)

        assert (stats.processed, stats.failed) == (0, 1)
        job_id = queue._get_connection().execute("SELECT id FROM embedding_jobs_queue").fetchone()[0]
        assert queue.get_status(job_id) == ("pending", 1)

    @pytest.mark.asyncio
    async def test_untrusted_image_url_fails(self, catalog, queue):
        wine_id = _etna_rosso(catalog)
        queue.enqueue(
            EmbeddingJobType.LABEL_VISUAL,
            wine_id,
            "label-key",
            input_image_url="https://evil.example.com/x.jpg",
        )
        embedder = FakeEmbedder(default=[1.0])

        stats = await _worker(queue, embedder).process_batch(EmbeddingJobType.LABEL_VISUAL)

        assert stats.failed == 1
        assert embedder.calls == []


class TestBatch:
    @pytest.mark.asyncio
    async def test_empty_batch(self, queue):
        stats = await _worker(queue).process_batch(EmbeddingJobType.WINE_IDENTITY)
        assert stats.total == 0

    @pytest.mark.asyncio
    async def test_limit_respected(self, catalog, queue):
        wine_id = _etna_rosso(catalog)
        for i in range(4):
            queue.enqueue(EmbeddingJobType.WINE_IDENTITY, wine_id, f"identity-{i}")

        stats = await _worker(queue).process_batch(EmbeddingJobType.WINE_IDENTITY, 3)

        assert stats.total == 3
