"""
Lifecycle, counters and checkpoints of one scraping operation.

The tracker owns the run counters and the metadata id of the current
operation. Metadata writes go through the storage collaborator; progress and
error-count updates are best effort and never escalate.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from core.duplicate_detector import DuplicateDetector
from core.types import CatalogStorage, PaginationCursor, StorageID
from utils.logger import get_logger

logger = get_logger(__name__)


class OperationType(str, Enum):
    FULL_REFRESH = "full_refresh"
    INCREMENTAL_UPDATE = "incremental_update"


class OperationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationPhase(str, Enum):
    """Macro phases of a run: INITIALIZED → (DISCOVERING → EXTRACTING)* → COMPLETED | FAILED."""

    IDLE = "idle"
    INITIALIZED = "initialized"
    DISCOVERING = "discovering"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({OperationPhase.COMPLETED, OperationPhase.FAILED})


@dataclass
class OperationMetadata:
    """Persisted record of one run."""

    id: Optional[StorageID]
    operation_type: OperationType
    status: OperationStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    brands_processed: int = 0
    products_processed: int = 0
    error_count: int = 0
    error_details: Optional[str] = None

    def to_storage(self) -> Dict[str, Any]:
        return {
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "brands_processed": self.brands_processed,
            "products_processed": self.products_processed,
            "error_count": self.error_count,
        }


@dataclass
class Progress:
    """Read-only progress snapshot."""

    iteration: int
    total_discovered: int
    total_processed: int
    total_failed: int
    percentage: int


@dataclass
class Checkpoint:
    """Serializable snapshot sufficient to resume a run.

    ``discovered`` holds the slugs found per listing target, ``processed`` the
    slugs whose extraction settled, and ``completed_targets`` the listings
    that were walked to the end. A resumed run re-queues discovered but
    unprocessed slugs and only walks listings that did not finish.
    """

    operation_id: Optional[StorageID]
    operation_type: str
    brand_discovery_iteration: int
    product_discovery_iterations: Dict[str, int]
    brands_discovered: int
    brands_processed: int
    products_discovered: int
    products_processed: int
    errors_encountered: int
    duplicates_skipped: int
    cursors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    discovered: Dict[str, List[str]] = field(default_factory=dict)
    processed: Dict[str, List[str]] = field(default_factory=dict)
    completed_targets: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            operation_id=data.get("operation_id"),
            operation_type=data.get("operation_type", OperationType.FULL_REFRESH.value),
            brand_discovery_iteration=int(data.get("brand_discovery_iteration", 0)),
            product_discovery_iterations={
                str(key): int(value)
                for key, value in data.get("product_discovery_iterations", {}).items()
            },
            brands_discovered=int(data.get("brands_discovered", 0)),
            brands_processed=int(data.get("brands_processed", 0)),
            products_discovered=int(data.get("products_discovered", 0)),
            products_processed=int(data.get("products_processed", 0)),
            errors_encountered=int(data.get("errors_encountered", 0)),
            duplicates_skipped=int(data.get("duplicates_skipped", 0)),
            cursors=dict(data.get("cursors", {})),
            discovered={
                str(target): [str(slug) for slug in slugs]
                for target, slugs in data.get("discovered", {}).items()
            },
            processed={
                str(target): [str(slug) for slug in slugs]
                for target, slugs in data.get("processed", {}).items()
            },
            completed_targets=[str(target) for target in data.get("completed_targets", [])],
            timestamp=data.get("timestamp") or datetime.now(UTC).isoformat(),
        )


CheckpointSink = Callable[[Checkpoint], None]


class OperationTracker:
    """Counters, metadata lifecycle and checkpoints for a single run."""

    def __init__(
        self,
        storage: Optional[CatalogStorage] = None,
        checkpoint_sink: Optional[CheckpointSink] = None,
    ):
        self.storage = storage
        self.checkpoint_sink = checkpoint_sink
        self.metadata: Optional[OperationMetadata] = None
        self.last_checkpoint: Optional[Checkpoint] = None
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.phase = OperationPhase.IDLE
        self.brand_discovery_iteration = 0
        self.product_discovery_iterations: Dict[str, int] = {}
        self.cursors: Dict[str, PaginationCursor] = {}
        self.discovered: Dict[str, List[str]] = {}
        self.processed: Dict[str, Set[str]] = {}
        self.completed_targets: Set[str] = set()
        self.brands_discovered = 0
        self.brands_processed = 0
        self.products_discovered = 0
        self.products_processed = 0
        self.errors_encountered = 0
        self.duplicates_skipped = 0

    @property
    def metadata_id(self) -> Optional[StorageID]:
        return self.metadata.id if self.metadata else None

    @property
    def operation_type(self) -> OperationType:
        return self.metadata.operation_type if self.metadata else OperationType.FULL_REFRESH

    def set_phase(self, phase: OperationPhase) -> None:
        if self.phase in TERMINAL_PHASES:
            return
        if phase != self.phase:
            logger.debug(f"Operation phase {self.phase.value} -> {phase.value}")
        self.phase = phase

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_operation(
        self, operation_type: OperationType | str = OperationType.FULL_REFRESH
    ) -> Optional[StorageID]:
        """Create the metadata record for a new run and return its id."""
        operation_type = OperationType(operation_type)
        metadata = OperationMetadata(
            id=None,
            operation_type=operation_type,
            status=OperationStatus.IN_PROGRESS,
            started_at=datetime.now(UTC),
        )
        if self.storage is not None:
            row = await self.storage.create_metadata(metadata.to_storage())
            metadata.id = row["id"]

        self.metadata = metadata
        self.phase = OperationPhase.INITIALIZED
        logger.info(
            f"Initialized scraping operation {metadata.id} with type: {operation_type.value}",
            extra={"event_type": "operation", "event_data": {"operation_id": metadata.id}},
        )
        return metadata.id

    def _can_finish(self, action: str) -> bool:
        if self.metadata is None:
            logger.warning(f"No operation initialized to {action}")
            return False
        if self.metadata.status is not OperationStatus.IN_PROGRESS:
            logger.warning(
                f"Operation {self.metadata.id} already {self.metadata.status.value}, "
                f"ignoring request to {action}"
            )
            return False
        return True

    async def complete_operation(self) -> None:
        if not self._can_finish("complete"):
            return

        if self.storage is not None and self.metadata.id is not None:
            await self.storage.complete_operation(
                self.metadata.id, self.brands_processed, self.products_processed
            )

        self.metadata.status = OperationStatus.COMPLETED
        self.metadata.completed_at = datetime.now(UTC)
        self.metadata.brands_processed = self.brands_processed
        self.metadata.products_processed = self.products_processed
        self.phase = OperationPhase.COMPLETED
        logger.info(
            f"Scraping operation {self.metadata.id} completed successfully",
            extra={"event_type": "operation", "event_data": self.statistics()},
        )

    async def fail_operation(self, reason: str) -> None:
        if not self._can_finish("fail"):
            return

        if self.storage is not None and self.metadata.id is not None:
            await self.storage.fail_operation(self.metadata.id, reason)

        self.metadata.status = OperationStatus.FAILED
        self.metadata.completed_at = datetime.now(UTC)
        self.metadata.error_details = reason
        self.phase = OperationPhase.FAILED
        logger.error(
            f"Scraping operation {self.metadata.id} marked as failed: {reason}",
            extra={"event_type": "operation", "event_data": {"reason": reason}},
        )

    # ------------------------------------------------------------------
    # Best-effort metadata updates
    # ------------------------------------------------------------------

    async def sync_metadata_progress(self) -> bool:
        """Push processed counters to the metadata record.

        Returns False when there is nothing to update or the update failed;
        failures are logged and never raised.
        """
        if self.storage is None or self.metadata_id is None:
            return False
        try:
            await self.storage.update_metadata(
                self.metadata_id,
                {
                    "brands_processed": self.brands_processed,
                    "products_processed": self.products_processed,
                },
            )
        except Exception as e:  # noqa: BLE001 - progress updates are best effort
            logger.warning(f"Failed to update metadata progress: {e}")
            return False
        return True

    async def record_error(
        self, stage: str, message: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Count an operation-level error and mirror it to the metadata record."""
        self.errors_encountered += 1
        if self.metadata is not None:
            self.metadata.error_count = self.errors_encountered

        logger.error(
            f"[{stage}] {message}",
            extra={"event_type": "extraction", "event_data": {"stage": stage, **(details or {})}},
        )

        if self.storage is None or self.metadata_id is None:
            return
        try:
            await self.storage.increment_error_count(self.metadata_id)
        except Exception as e:  # noqa: BLE001 - error counting is best effort
            logger.warning(f"Failed to increment error count in metadata: {e}")

    # ------------------------------------------------------------------
    # Progress and checkpoints
    # ------------------------------------------------------------------

    def get_progress(self) -> Progress:
        total_discovered = self.brands_discovered + self.products_discovered
        total_processed = self.brands_processed + self.products_processed
        percentage = (
            round(total_processed / total_discovered * 100) if total_discovered > 0 else 0
        )
        return Progress(
            iteration=self.brand_discovery_iteration,
            total_discovered=total_discovered,
            total_processed=total_processed,
            total_failed=self.errors_encountered,
            percentage=percentage,
        )

    def log_progress(self, detector: Optional[DuplicateDetector] = None) -> Dict[str, Any]:
        progress = self.get_progress()
        snapshot = {
            "iteration": progress.iteration,
            "brands_discovered": self.brands_discovered,
            "brands_processed": self.brands_processed,
            "products_discovered": self.products_discovered,
            "products_processed": self.products_processed,
            "duplicates_skipped": self.duplicates_skipped,
            "errors_encountered": self.errors_encountered,
            "percentage": progress.percentage,
        }
        if detector is not None:
            snapshot["tracked_brands"] = detector.brand_count()
            snapshot["tracked_products"] = detector.product_count()

        logger.info(
            "Scraping progress: "
            + ", ".join(f"{key}={value}" for key, value in snapshot.items()),
            extra={"event_type": "progress", "event_data": snapshot},
        )
        return snapshot

    def record_cursor(self, target: str, cursor: Optional[PaginationCursor]) -> None:
        if cursor is not None:
            self.cursors[target] = cursor

    def record_discovered(self, target: str, slugs: Sequence[str]) -> int:
        """Remember the slugs found for ``target`` and return how many are new."""
        known = self.discovered.get(target, [])
        self.discovered[target] = list(slugs)
        return max(0, len(slugs) - len(known))

    def mark_discovery_complete(self, target: str) -> None:
        self.completed_targets.add(target)

    def is_discovery_complete(self, target: str) -> bool:
        return target in self.completed_targets

    def mark_processed(self, target: str, slug: str) -> None:
        self.processed.setdefault(target, set()).add(slug)

    def is_processed(self, target: str, slug: str) -> bool:
        return slug in self.processed.get(target, ())

    def save_checkpoint(self) -> Checkpoint:
        checkpoint = Checkpoint(
            operation_id=self.metadata_id,
            operation_type=self.operation_type.value,
            brand_discovery_iteration=self.brand_discovery_iteration,
            product_discovery_iterations=dict(self.product_discovery_iterations),
            brands_discovered=self.brands_discovered,
            brands_processed=self.brands_processed,
            products_discovered=self.products_discovered,
            products_processed=self.products_processed,
            errors_encountered=self.errors_encountered,
            duplicates_skipped=self.duplicates_skipped,
            cursors={target: cursor.to_dict() for target, cursor in self.cursors.items()},
            discovered={target: list(slugs) for target, slugs in self.discovered.items()},
            processed={target: sorted(slugs) for target, slugs in self.processed.items()},
            completed_targets=sorted(self.completed_targets),
        )
        self.last_checkpoint = checkpoint
        logger.debug(
            "Checkpoint saved",
            extra={"event_type": "checkpoint", "event_data": checkpoint.to_dict()},
        )
        if self.checkpoint_sink is not None:
            try:
                self.checkpoint_sink(checkpoint)
            except Exception as e:  # noqa: BLE001 - a lost checkpoint must not stop the run
                logger.warning(f"Failed to persist checkpoint: {e}")
        return checkpoint

    def restore_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Seed counters, cursors and per-target slug state from a previous snapshot."""
        self.brand_discovery_iteration = checkpoint.brand_discovery_iteration
        self.product_discovery_iterations = dict(checkpoint.product_discovery_iterations)
        self.brands_discovered = checkpoint.brands_discovered
        self.brands_processed = checkpoint.brands_processed
        self.products_discovered = checkpoint.products_discovered
        self.products_processed = checkpoint.products_processed
        self.errors_encountered = checkpoint.errors_encountered
        self.duplicates_skipped = checkpoint.duplicates_skipped
        self.cursors = {
            target: PaginationCursor.from_dict(data)
            for target, data in checkpoint.cursors.items()
        }
        self.discovered = {target: list(slugs) for target, slugs in checkpoint.discovered.items()}
        self.processed = {target: set(slugs) for target, slugs in checkpoint.processed.items()}
        self.completed_targets = set(checkpoint.completed_targets)
        logger.info(
            f"Restored checkpoint from {checkpoint.timestamp} "
            f"({len(self.cursors)} cursors, {len(self.completed_targets)} finished listings)"
        )

    def statistics(self) -> Dict[str, Any]:
        return {
            "brands_discovered": self.brands_discovered,
            "brands_processed": self.brands_processed,
            "products_discovered": self.products_discovered,
            "products_processed": self.products_processed,
            "errors_encountered": self.errors_encountered,
            "duplicates_skipped": self.duplicates_skipped,
        }

    def reset(self) -> None:
        self.metadata = None
        self.last_checkpoint = None
        self._reset_counters()
