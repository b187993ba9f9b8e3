"""
Parallel batch processor.

Bounded worker pool for async units of work such as annotation generation
calls. Tasks are sorted by priority once, then pulled by ``concurrency``
workers from a shared queue. Each attempt is raced against a timeout,
failed attempts are retried with exponential backoff, and a short delay
after every task keeps the pool under provider rate limits.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from aves.exceptions import BatchTaskTimeoutError
from config import Settings, get_settings

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchTask(Generic[T]):
    """Unit of work with an opaque payload."""

    id: str
    data: T
    priority: int = 0


@dataclass
class BatchResult(Generic[R]):
    """Outcome of one task: a result, or the error of its final attempt."""

    task_id: str
    result: R | None = None
    error: BaseException | None = None
    duration_ms: float = 0.0
    retries: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class BatchMetrics:
    """Point-in-time view of a batch run."""

    total_tasks: int
    completed: int
    failed: int
    in_progress: int
    average_duration_ms: float
    total_duration_ms: float
    throughput: float  # completed tasks per second
    success_rate: float  # percent of total tasks
    retry_rate: float  # retries per finished task


@dataclass
class ProcessorConfig:
    """Worker pool settings. Durations are in seconds."""

    concurrency: int = 4
    retry_attempts: int = 3
    retry_delay: float = 1.0
    task_timeout: float = 60.0
    rate_limit_delay: float = 0.2
    progress_callback: Callable[[BatchMetrics], None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> ProcessorConfig:
        settings = settings or get_settings()
        return cls(**{**settings.get_batch_config(), **overrides})


def _consume_exception(future: asyncio.Future) -> None:
    # A timed-out attempt keeps running; retrieve its outcome so it is not reported as unhandled
    if not future.cancelled():
        future.exception()


class ParallelBatchProcessor(Generic[T, R]):
    """Run async work over a fixed task list with bounded concurrency."""

    def __init__(self, config: ProcessorConfig | None = None):
        self.config = config or ProcessorConfig()
        if self.config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.config.retry_attempts < 0:
            raise ValueError("retry_attempts must not be negative")

        self._queue: deque[BatchTask[T]] = deque()
        self._processing: set[str] = set()
        self._results: list[BatchResult[R]] = []
        self._start_time = 0.0

    async def process_batch(
        self,
        tasks: list[BatchTask[T]],
        processor: Callable[[T], Awaitable[R]],
    ) -> list[BatchResult[R]]:
        """
        Process every task and return results in completion order.

        Args:
            tasks: Tasks to run; higher priority runs first
            processor: Coroutine function applied to each task's data

        Returns:
            One BatchResult per task
        """
        self._queue = deque(sorted(tasks, key=lambda t: t.priority, reverse=True))
        self._processing.clear()
        self._results = []
        self._start_time = time.monotonic()

        logger.info(
            "Starting batch of {} tasks (concurrency={}, retries={})",
            len(tasks),
            self.config.concurrency,
            self.config.retry_attempts,
        )

        workers = [self._worker(i, processor) for i in range(self.config.concurrency)]
        await asyncio.gather(*workers)

        metrics = self.get_metrics()
        logger.info(
            f"Batch completed: {metrics.completed} ok, {metrics.failed} failed "
            f"in {metrics.total_duration_ms / 1000:.2f}s ({metrics.throughput:.2f} tasks/s)"
        )
        return list(self._results)

    async def _worker(self, worker_id: int, processor: Callable[[T], Awaitable[R]]) -> None:
        while self._queue:
            task = self._queue.popleft()
            self._processing.add(task.id)
            try:
                result = await self._process_with_retry(task, processor)
            finally:
                self._processing.discard(task.id)

            if result.error is not None:
                logger.error(f"Worker {worker_id} gave up on task {task.id}: {result.error}")
            self._results.append(result)
            self._notify_progress()

            if self._queue and self.config.rate_limit_delay > 0:
                await asyncio.sleep(self.config.rate_limit_delay)

    async def _process_with_retry(
        self,
        task: BatchTask[T],
        processor: Callable[[T], Awaitable[R]],
    ) -> BatchResult[R]:
        last_error: BaseException | None = None

        for attempt in range(self.config.retry_attempts + 1):
            started = time.monotonic()
            try:
                result = await self._run_with_timeout(task, processor)
                return BatchResult(
                    task_id=task.id,
                    result=result,
                    duration_ms=(time.monotonic() - started) * 1000,
                    retries=attempt,
                )
            except Exception as e:
                last_error = e
                if attempt < self.config.retry_attempts:
                    delay = self.config.retry_delay * (2**attempt)
                    logger.warning(
                        "Task {} failed ({}), retrying in {:.2f}s (attempt {}/{})",
                        task.id,
                        e,
                        delay,
                        attempt + 1,
                        self.config.retry_attempts,
                    )
                    await asyncio.sleep(delay)

        return BatchResult(
            task_id=task.id,
            error=last_error,
            retries=self.config.retry_attempts,
        )

    async def _run_with_timeout(
        self,
        task: BatchTask[T],
        processor: Callable[[T], Awaitable[R]],
    ) -> R:
        future = asyncio.ensure_future(processor(task.data))
        try:
            return await asyncio.wait_for(asyncio.shield(future), self.config.task_timeout)
        except asyncio.TimeoutError as e:
            future.add_done_callback(_consume_exception)
            raise BatchTaskTimeoutError(task.id, self.config.task_timeout) from e

    def get_metrics(self) -> BatchMetrics:
        """Metrics derived from results so far plus pending and in-flight tasks."""
        completed = sum(1 for r in self._results if r.error is None)
        failed = len(self._results) - completed
        total = len(self._queue) + len(self._processing) + len(self._results)

        durations = [r.duration_ms for r in self._results if r.error is None]
        average = sum(durations) / len(durations) if durations else 0.0
        elapsed_ms = (time.monotonic() - self._start_time) * 1000 if self._start_time else 0.0
        throughput = completed / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0
        total_retries = sum(r.retries for r in self._results)

        return BatchMetrics(
            total_tasks=total,
            completed=completed,
            failed=failed,
            in_progress=len(self._processing),
            average_duration_ms=average,
            total_duration_ms=elapsed_ms,
            throughput=throughput,
            success_rate=(completed / total) * 100 if total else 0.0,
            retry_rate=total_retries / len(self._results) if self._results else 0.0,
        )

    def _notify_progress(self) -> None:
        if self.config.progress_callback is None:
            return
        try:
            self.config.progress_callback(self.get_metrics())
        except Exception:
            logger.exception("Progress callback failed")
