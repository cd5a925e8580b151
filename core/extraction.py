"""
Per-item extraction: fetch, parse, normalize, validate, deduplicate, persist.

Every step is a failure boundary. Fetch and validation failures are
recoverable skips, duplicates are an explicit outcome, and anything raised
along the way is caught here and logged with its stage. Each failed call
counts one operation error unless the caller counts failures itself, as
queued jobs do once per exhausted job. No exception leaves
``extract_brand`` or ``extract_product``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.data_normalizer import DataNormalizer, log_invalid_data
from core.duplicate_detector import DuplicateDetector, normalize_key
from core.operation_tracker import OperationTracker
from core.types import (
    CatalogParserProtocol,
    CatalogStorage,
    Fetcher,
    NormalizedBrand,
    NormalizedProduct,
    StorageID,
)
from utils.error_handling import ErrorContext, PersistenceError
from utils.logger import get_logger

logger = get_logger(__name__)


class ExtractionStage(str, Enum):
    BUILD_URL = "build_url"
    FETCH = "fetch"
    PARSE = "parse"
    NORMALIZE = "normalize"
    VALIDATE = "validate"
    DEDUPLICATE = "deduplicate"
    PERSIST = "persist"


class ExtractionOutcome(str, Enum):
    PERSISTED = "persisted"
    DUPLICATE = "duplicate"
    FETCH_FAILED = "fetch_failed"
    INVALID = "invalid"
    FAILED = "failed"


NormalizedRecord = Union[NormalizedBrand, NormalizedProduct]


@dataclass
class ExtractionResult:
    outcome: ExtractionOutcome
    identifier: str
    record: Optional[NormalizedRecord] = None
    storage_id: Optional[StorageID] = None
    stage: Optional[ExtractionStage] = None
    error: Optional[str] = None

    @property
    def persisted(self) -> bool:
        return self.outcome == ExtractionOutcome.PERSISTED

    @property
    def settled(self) -> bool:
        """True for outcomes a retry cannot change."""
        return self.outcome in (ExtractionOutcome.PERSISTED, ExtractionOutcome.DUPLICATE)


class ExtractionPipeline:
    """Extracts and stores one brand or product per call."""

    def __init__(
        self,
        fetcher: Fetcher,
        parser: CatalogParserProtocol,
        normalizer: DataNormalizer,
        storage: CatalogStorage,
        detector: DuplicateDetector,
        tracker: OperationTracker,
        base_url: str,
    ):
        self.fetcher = fetcher
        self.parser = parser
        self.normalizer = normalizer
        self.storage = storage
        self.detector = detector
        self.tracker = tracker
        self.base_url = base_url.rstrip("/")
        self._brand_ids: Dict[str, StorageID] = {}

    def brand_url(self, brand_slug: str) -> str:
        return f"{self.base_url}/tobaccos/{brand_slug}"

    def product_url(self, product_slug: str, brand_slug: str) -> str:
        return f"{self.base_url}/tobaccos/{brand_slug}/{product_slug}"

    def reset(self) -> None:
        self._brand_ids.clear()

    # ------------------------------------------------------------------
    # Brands
    # ------------------------------------------------------------------

    async def extract_brand(
        self, brand_slug: str, record_errors: bool = True
    ) -> ExtractionResult:
        async def persist(record: NormalizedBrand) -> StorageID:
            row = await self.storage.upsert_brand(record)
            brand_id = row["id"]
            self._brand_ids[normalize_key(record.slug)] = brand_id
            self._brand_ids.setdefault(normalize_key(brand_slug), brand_id)
            return brand_id

        def on_persisted() -> None:
            self.tracker.brands_processed += 1

        return await self._run(
            identifier=brand_slug,
            url_factory=lambda: self.brand_url(brand_slug),
            parse=lambda html: self.parser.parse_brand_detail(html, brand_slug),
            reserve=lambda record: self.detector.add_brand(record.slug),
            release=lambda record: self.detector.remove_brand(record.slug),
            persist=persist,
            on_persisted=on_persisted,
            record_errors=record_errors,
        )

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def resolve_brand_id(self, brand_slug: str) -> StorageID:
        key = normalize_key(brand_slug)
        if key in self._brand_ids:
            return self._brand_ids[key]

        row = await self.storage.get_brand_by_slug(brand_slug)
        if not row:
            raise PersistenceError(
                f"Brand not found in storage: {brand_slug}", {"brand_slug": brand_slug}
            )
        self._brand_ids[key] = row["id"]
        return self._brand_ids[key]

    async def extract_product(
        self, product_slug: str, brand_slug: str, record_errors: bool = True
    ) -> ExtractionResult:
        async def persist(record: NormalizedProduct) -> StorageID:
            brand_id = await self.resolve_brand_id(record.brand_slug)
            row = await self.storage.create_product(record, brand_id)
            return row["id"]

        def on_persisted() -> None:
            self.tracker.products_processed += 1

        return await self._run(
            identifier=f"{brand_slug}/{product_slug}",
            url_factory=lambda: self.product_url(product_slug, brand_slug),
            parse=lambda html: self.parser.parse_product_detail(
                html, product_slug, brand_slug
            ),
            reserve=lambda record: self.detector.add_product(record.brand_slug, record.slug),
            release=lambda record: self.detector.remove_product(
                record.brand_slug, record.slug
            ),
            persist=persist,
            on_persisted=on_persisted,
            record_errors=record_errors,
        )

    # ------------------------------------------------------------------
    # Shared flow
    # ------------------------------------------------------------------

    async def _run(
        self,
        identifier: str,
        url_factory: Callable[[], str],
        parse: Callable[[str], Any],
        reserve: Callable[[Any], bool],
        release: Callable[[Any], bool],
        persist: Callable[[Any], Awaitable[StorageID]],
        on_persisted: Callable[[], None],
        record_errors: bool = True,
    ) -> ExtractionResult:
        stage = ExtractionStage.BUILD_URL
        url: Optional[str] = None
        try:
            url = url_factory()

            stage = ExtractionStage.FETCH
            fetch_result = await self.fetcher.fetch(url)
            if not fetch_result.ok:
                error = fetch_result.error or "empty response"
                await self._report_failure(
                    record_errors,
                    stage.value,
                    f"Failed to fetch {identifier}: {error}",
                    {"identifier": identifier, "url": url},
                )
                return ExtractionResult(
                    ExtractionOutcome.FETCH_FAILED, identifier, stage=stage, error=error
                )

            stage = ExtractionStage.PARSE
            raw = parse(fetch_result.content)

            stage = ExtractionStage.NORMALIZE
            record = self.normalizer.normalize(raw)

            stage = ExtractionStage.VALIDATE
            validation = self.normalizer.validate(record)
            if not validation.is_valid:
                log_invalid_data(record, validation.errors)
                await self._report_failure(
                    record_errors,
                    stage.value,
                    f"Validation failed for {identifier}",
                    {"identifier": identifier, "errors": validation.errors},
                )
                return ExtractionResult(
                    ExtractionOutcome.INVALID,
                    identifier,
                    record=record,
                    stage=stage,
                    error="; ".join(validation.errors),
                )

            stage = ExtractionStage.DEDUPLICATE
            if reserve(record):
                self.tracker.duplicates_skipped += 1
                logger.info(
                    f"Skipping duplicate {identifier}",
                    extra={"event_type": "extraction", "event_data": {"identifier": identifier}},
                )
                return ExtractionResult(
                    ExtractionOutcome.DUPLICATE, identifier, record=record, stage=stage
                )

            stage = ExtractionStage.PERSIST
            try:
                storage_id = await persist(record)
            except Exception:
                release(record)
                raise

            on_persisted()
            await self.tracker.sync_metadata_progress()
            logger.info(
                f"Persisted {identifier} (id={storage_id})",
                extra={
                    "event_type": "extraction",
                    "event_data": {"identifier": identifier, "storage_id": storage_id},
                },
            )
            return ExtractionResult(
                ExtractionOutcome.PERSISTED,
                identifier,
                record=record,
                storage_id=storage_id,
                stage=stage,
            )
        except Exception as e:  # noqa: BLE001 - pipeline boundary, failures become results
            context = ErrorContext(
                stage=stage.value, identifier=identifier, url=url, message=str(e)
            )
            await self._report_failure(
                record_errors,
                stage.value,
                f"Extraction of {identifier} failed: {e}",
                context.to_dict(),
            )
            return ExtractionResult(
                ExtractionOutcome.FAILED, identifier, stage=stage, error=str(e)
            )

    async def _report_failure(
        self, record_errors: bool, stage: str, message: str, details: Dict[str, Any]
    ) -> None:
        # Queued jobs count one error per exhausted job, not per attempt
        if record_errors:
            await self.tracker.record_error(stage, message, details)
        else:
            logger.warning(
                f"[{stage}] {message}",
                extra={"event_type": "extraction", "event_data": {"stage": stage, **details}},
            )
