"""
Scraping orchestration engine.

``ScraperOrchestrator`` owns one run's state: the duplicate detector, the
operation tracker, the brand and product job queues and the extraction
pipeline. Instances are built explicitly (see ``create_orchestrator``) and
``reset()`` returns one to a pristine state for another independent run.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.cancellation import CancellationToken, is_cancelled
from core.data_normalizer import DataNormalizer
from core.discovery import DiscoveryEngine, DiscoveryResult, DiscoveryState, PageParser
from core.duplicate_detector import DuplicateDetector, create_duplicate_detector
from core.exponential_backoff import RetryPolicy
from core.extraction import ExtractionPipeline, ExtractionResult
from core.job_queue import Job, JobQueue
from core.operation_tracker import (
    Checkpoint,
    CheckpointSink,
    OperationPhase,
    OperationTracker,
    OperationType,
    Progress,
)
from core.types import (
    CatalogParserProtocol,
    CatalogStorage,
    Fetcher,
    NormalizedBrand,
    NormalizedProduct,
    StorageID,
)
from utils.config_loader import ScraperSettings, get_settings
from utils.error_handling import DiscoveryError, ExtractionError, ParsingError
from utils.logger import get_logger

logger = get_logger(__name__)

BRANDS_TARGET = "brands"


@dataclass(frozen=True)
class ProductTask:
    product_slug: str
    brand_slug: str


def products_target(brand_slug: str) -> str:
    return f"products:{brand_slug}"


class ScraperOrchestrator:
    """Coordinates discovery, queued extraction and operation tracking."""

    def __init__(
        self,
        fetcher: Fetcher,
        parser: CatalogParserProtocol,
        storage: CatalogStorage,
        settings: Optional[ScraperSettings] = None,
        normalizer: Optional[DataNormalizer] = None,
        detector: Optional[DuplicateDetector] = None,
        checkpoint_sink: Optional[CheckpointSink] = None,
    ):
        self.settings = settings or ScraperSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.fetcher = fetcher
        self.parser = parser
        self.storage = storage
        self.normalizer = normalizer or DataNormalizer(self.base_url)
        self.detector = detector or create_duplicate_detector()
        self.tracker = OperationTracker(storage, checkpoint_sink)
        self.pipeline = ExtractionPipeline(
            fetcher=fetcher,
            parser=parser,
            normalizer=self.normalizer,
            storage=storage,
            detector=self.detector,
            tracker=self.tracker,
            base_url=self.base_url,
        )
        self.discovery = DiscoveryEngine(
            fetcher,
            parser.is_discovery_complete,
            checkpoint_interval=self.settings.checkpoint_interval,
            checkpoint_callback=self._on_discovery_checkpoint,
        )

        retry_policy = RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            multiplier=self.settings.retry_multiplier,
            max_delay=self.settings.retry_max_delay,
            jitter=self.settings.retry_jitter,
        )
        self.brand_queue: JobQueue[str] = JobQueue(
            "brand",
            self._brand_job,
            key_fn=lambda slug: slug,
            max_concurrent=self.settings.max_concurrent_brands,
            retry_policy=retry_policy,
            show_progress=self.settings.show_progress,
            on_failed=self._on_job_failed,
        )
        self.product_queue: JobQueue[ProductTask] = JobQueue(
            "product",
            self._product_job,
            key_fn=lambda task: f"{task.brand_slug}-{task.product_slug}",
            max_concurrent=self.settings.max_concurrent_products,
            retry_policy=retry_policy,
            show_progress=self.settings.show_progress,
            on_failed=self._on_job_failed,
        )
        self.discovery_results: Dict[str, DiscoveryResult] = {}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _on_discovery_checkpoint(self, result: DiscoveryResult) -> None:
        self.tracker.save_checkpoint()

    def _start_cursor(self, target: str, resume: bool):
        if not resume:
            return None
        cursor = self.tracker.cursors.get(target)
        if cursor is not None:
            logger.info(f"Resuming {target} discovery at offset {cursor.offset}")
        return cursor

    def _record_discovered(self, target: str, slugs: Sequence[str]) -> None:
        added = self.tracker.record_discovered(target, slugs)
        if target == BRANDS_TARGET:
            self.tracker.brands_discovered += added
        else:
            self.tracker.products_discovered += added

    async def _discover(
        self,
        target: str,
        start_url: str,
        parse_page: PageParser,
        on_page: Callable[[], None],
        cancel_token: Optional[CancellationToken],
        resume: bool,
    ) -> List[str]:
        if resume and self.tracker.is_discovery_complete(target):
            known = list(self.tracker.discovered.get(target, []))
            logger.info(f"Discovery of {target} already finished, reusing {len(known)} slugs")
            return known

        known = list(self.tracker.discovered.get(target, [])) if resume else []
        self.tracker.discovered[target] = list(known)
        self.tracker.completed_targets.discard(target)

        async def on_iteration(result: DiscoveryResult) -> None:
            on_page()
            self.tracker.record_cursor(target, result.cursor)
            self._record_discovered(target, result.slugs)

        result = await self.discovery.discover(
            target,
            start_url,
            parse_page,
            cancel_token=cancel_token,
            start_cursor=self._start_cursor(target, resume),
            on_iteration=on_iteration,
            known_slugs=known,
        )
        self.discovery_results[target] = result
        self._record_discovered(target, result.slugs)
        if result.state == DiscoveryState.COMPLETE and not result.cancelled:
            self.tracker.mark_discovery_complete(target)
        return result.slugs

    async def discover_brands(
        self, cancel_token: Optional[CancellationToken] = None, resume: bool = False
    ) -> List[str]:
        """Walk the brand catalog and return the discovered brand slugs.

        With ``resume`` the walk continues from the restored checkpoint: a
        finished catalog is not fetched again and slugs found before the
        checkpoint are kept and counted once.
        """
        self.tracker.set_phase(OperationPhase.DISCOVERING)

        def on_page() -> None:
            self.tracker.brand_discovery_iteration += 1

        return await self._discover(
            BRANDS_TARGET,
            f"{self.base_url}/tobaccos/brands",
            self.parser.parse_brand_list,
            on_page,
            cancel_token,
            resume,
        )

    async def discover_products(
        self,
        brand_slug: str,
        cancel_token: Optional[CancellationToken] = None,
        resume: bool = False,
    ) -> List[str]:
        """Walk one brand's product listing and return the product slugs."""
        self.tracker.set_phase(OperationPhase.DISCOVERING)

        def on_page() -> None:
            iterations = self.tracker.product_discovery_iterations
            iterations[brand_slug] = iterations.get(brand_slug, 0) + 1

        return await self._discover(
            products_target(brand_slug),
            self.pipeline.brand_url(brand_slug),
            lambda html: self.parser.parse_product_list(html, brand_slug),
            on_page,
            cancel_token,
            resume,
        )

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_brand(self, brand_slug: str) -> ExtractionResult:
        return await self.pipeline.extract_brand(brand_slug)

    async def extract_product(self, product_slug: str, brand_slug: str) -> ExtractionResult:
        return await self.pipeline.extract_product(product_slug, brand_slug)

    async def extract_brand_data(self, brand_slug: str) -> Optional[NormalizedBrand]:
        """Extract and persist one brand. Returns the record only when it was stored."""
        result = await self.pipeline.extract_brand(brand_slug)
        return result.record if result.persisted else None

    async def extract_product_data(
        self, product_slug: str, brand_slug: str
    ) -> Optional[NormalizedProduct]:
        result = await self.pipeline.extract_product(product_slug, brand_slug)
        return result.record if result.persisted else None

    def _settle(self, result: ExtractionResult, target: str, slug: str) -> ExtractionResult:
        if not result.settled:
            stage = result.stage.value if result.stage else "unknown"
            raise ExtractionError(
                f"{result.identifier} {result.outcome.value} at {stage}: {result.error}",
                {"identifier": result.identifier, "stage": stage},
            )
        self.tracker.mark_processed(target, slug)
        return result

    async def _brand_job(self, brand_slug: str) -> ExtractionResult:
        result = await self.pipeline.extract_brand(brand_slug, record_errors=False)
        return self._settle(result, BRANDS_TARGET, brand_slug)

    async def _product_job(self, task: ProductTask) -> ExtractionResult:
        result = await self.pipeline.extract_product(
            task.product_slug, task.brand_slug, record_errors=False
        )
        return self._settle(result, products_target(task.brand_slug), task.product_slug)

    async def _on_job_failed(self, job: Job) -> None:
        await self.tracker.record_error(
            "job",
            f"Job {job.id} failed after {job.retry_count} attempts: {job.error}",
            {"job_id": job.id},
        )

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def queue_brand(self, brand_slug: str) -> str:
        return self.brand_queue.queue(brand_slug)

    def queue_product(self, product_slug: str, brand_slug: str) -> str:
        return self.product_queue.queue(ProductTask(product_slug, brand_slug))

    async def process_brand_queue(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> int:
        self.tracker.set_phase(OperationPhase.EXTRACTING)
        completed = await self.brand_queue.process_queue(cancel_token)
        self.tracker.save_checkpoint()
        return completed

    async def process_product_queue(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> int:
        self.tracker.set_phase(OperationPhase.EXTRACTING)
        completed = await self.product_queue.process_queue(cancel_token)
        self.tracker.save_checkpoint()
        return completed

    # ------------------------------------------------------------------
    # Operation lifecycle and progress
    # ------------------------------------------------------------------

    async def initialize_operation(
        self, operation_type: OperationType | str = OperationType.FULL_REFRESH
    ) -> Optional[StorageID]:
        return await self.tracker.initialize_operation(operation_type)

    async def complete_operation(self) -> None:
        await self.tracker.complete_operation()

    async def fail_operation(self, reason: str) -> None:
        await self.tracker.fail_operation(reason)

    def get_progress(self) -> Progress:
        return self.tracker.get_progress()

    def log_progress(self) -> Dict[str, Any]:
        return self.tracker.log_progress(self.detector)

    def save_checkpoint(self) -> Checkpoint:
        return self.tracker.save_checkpoint()

    def restore_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.tracker.restore_checkpoint(checkpoint)

    def get_statistics(self) -> Dict[str, Any]:
        progress = self.get_progress()
        return {
            **self.tracker.statistics(),
            "percentage": progress.percentage,
            "phase": self.tracker.phase.value,
            "brand_discovery_iteration": self.tracker.brand_discovery_iteration,
            "tracked_brands": self.detector.brand_count(),
            "tracked_products": self.detector.product_count(),
            "brand_jobs": self.brand_queue.stats(),
            "product_jobs": self.product_queue.stats(),
        }

    def reset(self) -> None:
        """Clear queues, counters and the duplicate detector."""
        self.brand_queue.clear()
        self.product_queue.clear()
        self.tracker.reset()
        self.detector.clear()
        self.pipeline.reset()
        self.discovery_results.clear()
        logger.info("Orchestrator state reset")

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run_operation(
        self,
        operation_type: OperationType | str = OperationType.FULL_REFRESH,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        brand_slugs: Optional[Sequence[str]] = None,
        resume: bool = False,
    ) -> Dict[str, Any]:
        """Run discovery and extraction end to end and return the run statistics.

        ``brand_slugs`` skips brand discovery and restricts the run to the
        given brands. ``resume`` continues from a restored checkpoint: finished
        listings are not walked again, unfinished ones restart at their saved
        cursor, and only discovered items that were not processed yet are
        queued. When ``timeout`` expires the token is cancelled, the operation
        is failed and ``asyncio.TimeoutError`` propagates.
        """
        token = cancel_token or CancellationToken()
        if timeout is None:
            return await self._run(operation_type, token, brand_slugs, resume)

        try:
            return await asyncio.wait_for(
                self._run(operation_type, token, brand_slugs, resume), timeout
            )
        except asyncio.TimeoutError:
            reason = f"operation timed out after {timeout}s"
            token.cancel(reason)
            self.tracker.save_checkpoint()
            await self.tracker.fail_operation(reason)
            raise

    def _pending(self, target: str, slugs: Sequence[str], resume: bool) -> List[str]:
        if not resume:
            return list(slugs)
        pending = [slug for slug in slugs if not self.tracker.is_processed(target, slug)]
        if len(pending) < len(slugs):
            logger.info(
                f"Skipping {len(slugs) - len(pending)} already processed items of {target}"
            )
        return pending

    async def _run(
        self,
        operation_type: OperationType | str,
        token: CancellationToken,
        brand_slugs: Optional[Sequence[str]],
        resume: bool = False,
    ) -> Dict[str, Any]:
        operation_id = await self.initialize_operation(operation_type)
        try:
            if brand_slugs:
                brands = list(dict.fromkeys(brand_slugs))
                self._record_discovered(BRANDS_TARGET, brands)
            else:
                brands = await self.discover_brands(token, resume=resume)

            for brand_slug in self._pending(BRANDS_TARGET, brands, resume):
                self.queue_brand(brand_slug)
            await self.process_brand_queue(token)

            for brand_slug in brands:
                if is_cancelled(token):
                    break
                if self.tracker.is_processed(BRANDS_TARGET, brand_slug):
                    await self._scrape_brand_products(brand_slug, token, resume)

            self.log_progress()
            if is_cancelled(token):
                self.tracker.save_checkpoint()
                await self.fail_operation(f"operation cancelled: {token.reason}")
            else:
                await self.complete_operation()
        except Exception as e:
            logger.error(f"Scraping operation {operation_id} failed: {e}", exc_info=True)
            self.tracker.save_checkpoint()
            await self.fail_operation(str(e))
            raise

        return {
            **self.get_statistics(),
            "operation_id": operation_id,
            "cancelled": is_cancelled(token),
        }

    async def _scrape_brand_products(
        self, brand_slug: str, token: CancellationToken, resume: bool = False
    ) -> None:
        try:
            product_slugs = await self.discover_products(brand_slug, token, resume=resume)
        except (DiscoveryError, ParsingError) as e:
            await self.tracker.record_error(
                "discovery",
                f"Product discovery failed for brand {brand_slug}: {e}",
                {"brand_slug": brand_slug},
            )
            return

        target = products_target(brand_slug)
        for product_slug in self._pending(target, product_slugs, resume):
            self.queue_product(product_slug, brand_slug)
        await self.process_product_queue(token)


def create_orchestrator(
    settings: Optional[ScraperSettings] = None,
    storage: Optional[CatalogStorage] = None,
    fetcher: Optional[Fetcher] = None,
    parser: Optional[CatalogParserProtocol] = None,
    checkpoint_sink: Optional[CheckpointSink] = None,
) -> ScraperOrchestrator:
    """Build an orchestrator with default collaborators for anything not supplied."""
    from database.memory_store import InMemoryCatalogStore
    from network.http_client import CatalogHttpClient
    from parsers.catalog_parser import CatalogParser

    settings = settings or get_settings()
    return ScraperOrchestrator(
        fetcher=fetcher or CatalogHttpClient.from_settings(settings),
        parser=parser or CatalogParser(settings.base_url),
        storage=storage if storage is not None else InMemoryCatalogStore(),
        settings=settings,
        checkpoint_sink=checkpoint_sink,
    )
