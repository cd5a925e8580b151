"""Tests for the per-item extraction pipeline."""

from unittest.mock import AsyncMock

import pytest

from core.data_normalizer import DataNormalizer
from core.duplicate_detector import DuplicateDetector
from core.extraction import ExtractionOutcome, ExtractionPipeline, ExtractionStage
from core.operation_tracker import OperationTracker
from core.types import NormalizedBrand
from database.memory_store import InMemoryCatalogStore
from parsers.catalog_parser import CatalogParser

from catalog_pages import BASE_URL, FakeFetcher, detail_page

SARMA_URL = f"{BASE_URL}/tobaccos/sarma"
CHERRY_URL = f"{BASE_URL}/tobaccos/sarma/cherry"


@pytest.fixture
def storage():
    storage = AsyncMock()
    storage.upsert_brand.return_value = {"id": 7, "slug": "sarma", "name": "Sarma"}
    storage.create_product.return_value = {"id": 70, "brand_id": 7, "slug": "cherry"}
    storage.get_brand_by_slug.return_value = None
    return storage


def make_pipeline(storage, pages):
    detector = DuplicateDetector()
    tracker = OperationTracker(storage)
    pipeline = ExtractionPipeline(
        fetcher=FakeFetcher(pages),
        parser=CatalogParser(BASE_URL),
        normalizer=DataNormalizer(BASE_URL),
        storage=storage,
        detector=detector,
        tracker=tracker,
        base_url=BASE_URL,
    )
    return pipeline, detector, tracker


@pytest.mark.asyncio
async def test_brand_is_persisted_once_then_reported_duplicate(storage):
    pipeline, detector, tracker = make_pipeline(storage, {SARMA_URL: detail_page("Sarma")})

    first = await pipeline.extract_brand("sarma")
    second = await pipeline.extract_brand("sarma")

    assert first.outcome == ExtractionOutcome.PERSISTED
    assert first.storage_id == 7
    assert first.record.slug == "sarma"
    assert first.record.name == "Sarma"
    assert second.outcome == ExtractionOutcome.DUPLICATE
    assert second.settled and not second.persisted
    storage.upsert_brand.assert_awaited_once()
    assert tracker.brands_processed == 1
    assert tracker.duplicates_skipped == 1
    assert detector.has_brand("sarma")


@pytest.mark.asyncio
async def test_product_uses_cached_brand_id(storage):
    pages = {SARMA_URL: detail_page("Sarma"), CHERRY_URL: detail_page("Cherry")}
    pipeline, _, tracker = make_pipeline(storage, pages)

    await pipeline.extract_brand("sarma")
    result = await pipeline.extract_product("cherry", "sarma")

    assert result.persisted
    assert result.identifier == "sarma/cherry"
    storage.get_brand_by_slug.assert_not_awaited()
    record, brand_id = storage.create_product.await_args.args
    assert brand_id == 7
    assert record.brand_slug == "sarma"
    assert tracker.products_processed == 1


@pytest.mark.asyncio
async def test_product_brand_id_is_looked_up_in_storage(storage):
    storage.get_brand_by_slug.return_value = {"id": 11, "slug": "sarma", "name": "Sarma"}
    pipeline, _, _ = make_pipeline(storage, {CHERRY_URL: detail_page("Cherry")})

    result = await pipeline.extract_product("cherry", "sarma")

    assert result.persisted
    storage.get_brand_by_slug.assert_awaited_once_with("sarma")
    assert storage.create_product.await_args.args[1] == 11


@pytest.mark.asyncio
async def test_unknown_brand_fails_and_releases_reservation(storage):
    pipeline, detector, tracker = make_pipeline(storage, {CHERRY_URL: detail_page("Cherry")})

    result = await pipeline.extract_product("cherry", "sarma")

    assert result.outcome == ExtractionOutcome.FAILED
    assert result.stage == ExtractionStage.PERSIST
    assert "Brand not found" in result.error
    assert tracker.errors_encountered == 1
    assert not detector.has_product("sarma", "cherry")
    storage.create_product.assert_not_awaited()


@pytest.mark.asyncio
async def test_storage_failure_allows_a_later_retry(storage):
    storage.upsert_brand.side_effect = [RuntimeError("connection reset"), {"id": 7}]
    pipeline, detector, _ = make_pipeline(storage, {SARMA_URL: detail_page("Sarma")})

    failed = await pipeline.extract_brand("sarma")
    assert failed.outcome == ExtractionOutcome.FAILED
    assert not detector.has_brand("sarma")

    retried = await pipeline.extract_brand("sarma")
    assert retried.persisted


@pytest.mark.asyncio
async def test_fetch_failure_is_counted_and_skipped(storage):
    pipeline, detector, tracker = make_pipeline(storage, {})

    result = await pipeline.extract_brand("sarma")

    assert result.outcome == ExtractionOutcome.FETCH_FAILED
    assert result.stage == ExtractionStage.FETCH
    assert "404" in result.error
    assert tracker.errors_encountered == 1
    assert detector.brand_count() == 0
    storage.upsert_brand.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_record_is_not_persisted(storage):
    pipeline, detector, tracker = make_pipeline(storage, {SARMA_URL: detail_page("   ")})

    result = await pipeline.extract_brand("sarma")

    assert result.outcome == ExtractionOutcome.INVALID
    assert "name is required and cannot be empty" in result.error
    assert tracker.errors_encountered == 1
    assert detector.brand_count() == 0
    storage.upsert_brand.assert_not_awaited()


@pytest.mark.asyncio
async def test_parse_failure_becomes_failed_result(storage):
    pipeline, _, tracker = make_pipeline(storage, {SARMA_URL: "<html></html>"})

    result = await pipeline.extract_brand("sarma")

    assert result.outcome == ExtractionOutcome.FAILED
    assert result.stage == ExtractionStage.PARSE
    assert tracker.errors_encountered == 1


@pytest.mark.asyncio
async def test_metadata_progress_is_synced_after_persist(storage):
    storage.create_metadata.return_value = {"id": 3}
    pipeline, _, tracker = make_pipeline(storage, {SARMA_URL: detail_page("Sarma")})
    await tracker.initialize_operation("full_refresh")

    await pipeline.extract_brand("sarma")

    storage.update_metadata.assert_awaited_once_with(
        3, {"brands_processed": 1, "products_processed": 0}
    )


@pytest.mark.asyncio
async def test_product_is_not_attached_to_a_brand_with_a_similar_name():
    store = InMemoryCatalogStore()
    await store.upsert_brand(
        NormalizedBrand(
            slug="sarma-360",
            name="Sarma 360",
            source_url=f"{BASE_URL}/tobaccos/sarma-360",
            scraped_at="2024-01-01T00:00:00Z",
        )
    )
    pipeline, detector, _ = make_pipeline(store, {CHERRY_URL: detail_page("Cherry")})

    result = await pipeline.extract_product("cherry", "sarma")

    assert result.outcome == ExtractionOutcome.FAILED
    assert "Brand not found" in result.error
    assert store.products == {}
    assert not detector.has_product("sarma", "cherry")


@pytest.mark.asyncio
async def test_caller_can_take_over_error_counting(storage):
    pipeline, _, tracker = make_pipeline(storage, {})

    result = await pipeline.extract_brand("sarma", record_errors=False)

    assert result.outcome == ExtractionOutcome.FETCH_FAILED
    assert tracker.errors_encountered == 0
    storage.increment_error_count.assert_not_awaited()
