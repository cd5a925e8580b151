"""
In-memory job queue executed in bounded concurrent waves.

Queued jobs are split into consecutive batches of ``max_concurrent``; every
job of a batch starts together and the next batch only starts once the whole
batch has settled. A job that fails is retried in place, up to the retry
policy's attempt budget, before the queue moves on. ``on_failed`` is
awaited once for every job that exhausts its attempts.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from core.cancellation import CancellationToken, is_cancelled
from core.exponential_backoff import RetryPolicy
from utils.logger import create_progress_bar, get_logger

logger = get_logger(__name__)

P = TypeVar("P")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job(Generic[P]):
    id: str
    payload: P
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    error: Optional[str] = None
    result: Any = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None


def split_into_batches(items: List[Any], batch_size: int) -> List[List[Any]]:
    return [items[i : i + batch_size] for i in range(0, len(items), batch_size)]


class JobQueue(Generic[P]):
    """Ordered job collection for one category (brands or products)."""

    def __init__(
        self,
        category: str,
        action: Callable[[P], Awaitable[Any]],
        key_fn: Callable[[P], str] = str,
        max_concurrent: int = 1,
        retry_policy: Optional[RetryPolicy] = None,
        show_progress: bool = False,
        on_failed: Optional[Callable[[Job[P]], Awaitable[None]]] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.category = category
        self.action = action
        self.key_fn = key_fn
        self.max_concurrent = max_concurrent
        self.retry_policy = retry_policy or RetryPolicy()
        self.show_progress = show_progress
        self.on_failed = on_failed
        self._jobs: Dict[str, Job[P]] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def jobs(self) -> List[Job[P]]:
        return list(self._jobs.values())

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == JobStatus.QUEUED)

    def get_job(self, job_id: str) -> Optional[Job[P]]:
        return self._jobs.get(job_id)

    def _generate_id(self, payload: P) -> str:
        base = f"{self.category}-{self.key_fn(payload)}-{time.time_ns()}"
        job_id = base
        suffix = 1
        while job_id in self._jobs:
            job_id = f"{base}-{suffix}"
            suffix += 1
        return job_id

    def queue(self, payload: P) -> str:
        job = Job(id=self._generate_id(payload), payload=payload)
        self._jobs[job.id] = job
        logger.info(
            f"Queued {self.category} job: {job.id}",
            extra={"event_type": "job", "event_data": {"job_id": job.id}},
        )
        return job.id

    async def process_queue(self, cancel_token: Optional[CancellationToken] = None) -> int:
        """Run every queued job and return how many of them completed."""
        pending = [job for job in self._jobs.values() if job.status == JobStatus.QUEUED]
        if not pending:
            return 0

        batches = split_into_batches(pending, self.max_concurrent)
        logger.info(
            f"Processing {len(pending)} {self.category} jobs in {len(batches)} batches "
            f"(max concurrent: {self.max_concurrent})"
        )

        completed = 0
        waves = create_progress_bar(
            batches,
            desc=f"{self.category} jobs",
            unit="batch",
            disable=not self.show_progress,
        )
        try:
            for batch in waves:
                if is_cancelled(cancel_token):
                    logger.warning(
                        f"{self.category} queue cancelled with {self.pending_count} jobs left"
                    )
                    break
                outcomes = await asyncio.gather(
                    *(self._run_job(job, cancel_token) for job in batch)
                )
                completed += sum(1 for ok in outcomes if ok)
        finally:
            waves.close()

        logger.info(
            f"Processed {self.category} queue: {completed}/{len(pending)} completed",
            extra={"event_type": "job", "event_data": self.stats()},
        )
        return completed

    async def _run_job(self, job: Job[P], cancel_token: Optional[CancellationToken]) -> bool:
        while True:
            job.status = JobStatus.PROCESSING
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                result = await self.action(job.payload)
                error = None if result is not None else "no result"
            except Exception as e:  # noqa: BLE001 - a failing job never aborts the batch
                result = None
                error = str(e) or type(e).__name__
            finally:
                self.in_flight -= 1

            if result is not None:
                job.status = JobStatus.COMPLETED
                job.result = result
                job.error = None
                job.completed_at = datetime.now(UTC)
                return True

            job.retry_count += 1
            job.error = error
            if job.retry_count < self.retry_policy.max_retries:
                job.status = JobStatus.QUEUED
                if is_cancelled(cancel_token):
                    return False
                delay = self.retry_policy.delay_for(job.retry_count)
                logger.warning(
                    f"Retrying {self.category} job {job.id} "
                    f"(attempt {job.retry_count + 1}/{self.retry_policy.max_retries}): {error}"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                continue

            job.status = JobStatus.FAILED
            job.completed_at = datetime.now(UTC)
            logger.error(
                f"{self.category} job {job.id} failed after {job.retry_count} attempts: {error}",
                extra={"event_type": "job", "event_data": {"job_id": job.id, "error": error}},
            )
            if self.on_failed is not None:
                await self.on_failed(job)
            return False

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    def clear(self) -> None:
        self._jobs.clear()
        self.in_flight = 0
        self.peak_in_flight = 0
