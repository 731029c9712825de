"""Throttled batch runner for bulk watched-state mutations."""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Literal, Sequence, TypeVar

from ..config import Settings
from ..errors import SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JobState = Literal["running", "done", "failed", "cancelled"]
ProgressCallback = Callable[[int, int], "Awaitable[None] | None"]

DEFAULT_BATCH_SIZE = 4
DEFAULT_BATCH_DELAY_SECONDS = 0.5


def progress_percentage(current: int, total: int) -> int:
    """Return ``round(current / total * 100)``, or 0 for empty jobs."""

    if total <= 0:
        return 0
    return math.floor(current * 100 / total + 0.5)


@dataclass
class SyncJob:
    """Progress tracker for one bulk operation; never persisted."""

    total: int
    kind: str = "sync"
    id: str = field(default_factory=lambda: secrets.token_hex(8))
    current: int = 0
    succeeded: int = 0
    failed: int = 0
    state: JobState = "running"
    cancel_requested: bool = False

    def cancel(self) -> None:
        """Ask the engine to stop scheduling batches; in-flight calls finish."""

        self.cancel_requested = True

    @property
    def percentage(self) -> int:
        return progress_percentage(self.current, self.total)

    @property
    def finished(self) -> bool:
        return self.state != "running"

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "kind": self.kind,
            "state": self.state,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


@dataclass(slots=True)
class SyncReport:
    """Outcome of a bulk run; already-applied mutations are never rolled back."""

    total: int
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def raise_for_failures(self) -> None:
        if not self.ok:
            raise SyncError(self.succeeded, self.failed, self.total)


class SyncEngine(Generic[T]):
    """Run work items in fixed-size concurrent batches separated by a flat delay.

    The delay is pacing, not backoff: it is the same after every batch
    regardless of how the batch went, and failed items are not retried.
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if batch_delay < 0:
            raise ValueError("batch_delay must not be negative")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncEngine[Any]":
        return cls(settings.sync_batch_size, settings.sync_batch_delay_seconds)

    def estimate_seconds(self, item_count: int) -> float:
        batches = math.ceil(max(item_count, 0) / self.batch_size)
        return batches * self.batch_delay

    def format_estimate(self, item_count: int) -> str:
        """Human readable duration shown before the user confirms an import."""

        total_seconds = self.estimate_seconds(item_count)
        if total_seconds < 60:
            return f"{math.ceil(total_seconds)} seconds"
        return f"{math.ceil(total_seconds / 60)} minutes"

    async def run(
        self,
        items: Sequence[T],
        apply: Callable[[T], Awaitable[Any]],
        on_progress: ProgressCallback | None = None,
        *,
        job: SyncJob | None = None,
    ) -> SyncReport:
        total = len(items)
        if job is None:
            job = SyncJob(total=total)
        else:
            job.total = total
        report = SyncReport(total=total)

        if total == 0:
            job.state = "done"
            await self._emit(on_progress, 0, 0)
            return report

        processed = 0
        for start in range(0, total, self.batch_size):
            if job.cancel_requested:
                break
            if start > 0 and self.batch_delay:
                await self._sleep(self.batch_delay)
                if job.cancel_requested:
                    break

            batch = items[start : start + self.batch_size]
            results = await asyncio.gather(
                *(apply(item) for item in batch), return_exceptions=True
            )
            for item, result in zip(batch, results):
                if isinstance(result, BaseException):
                    report.failed += 1
                    report.errors.append(f"{item!r}: {result}")
                    logger.warning(
                        "Sync item %r failed (%s): %s",
                        item,
                        result.__class__.__name__,
                        result,
                    )
                else:
                    report.succeeded += 1

            processed += len(batch)
            job.current = processed
            job.succeeded = report.succeeded
            job.failed = report.failed
            await self._emit(on_progress, processed, total)

        report.cancelled = processed < total
        if report.cancelled:
            job.state = "cancelled"
            logger.info(
                "Sync job %s cancelled after %s of %s items", job.id, processed, total
            )
        else:
            job.state = "done" if report.ok else "failed"
            logger.info(
                "Sync job %s finished: %s succeeded, %s failed",
                job.id,
                report.succeeded,
                report.failed,
            )
        return report

    @staticmethod
    async def _emit(on_progress: ProgressCallback | None, current: int, total: int) -> None:
        if on_progress is None:
            return
        outcome = on_progress(current, total)
        if inspect.isawaitable(outcome):
            await outcome
