"""Bounded-concurrency task pool with settle-all semantics."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from mirror_crawler import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TaskOutcome(Generic[T]):
    """Result of one pooled task."""
    item: T
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PoolStats:
    """Statistics for one pool run."""
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    in_flight: int = 0
    max_in_flight: int = 0


class TaskPool:
    """
    Runs an async function over many items with at most `concurrency` in flight.

    Every task settles: an exception in one task is captured in its outcome
    and never cancels or blocks the others.
    """

    def __init__(self, concurrency: int, name: str = "pool"):
        self.concurrency = max(1, concurrency)
        self.name = name
        self.stats = PoolStats()

    async def run(
        self,
        items: Iterable[T],
        fn: Callable[[T], Awaitable[Any]],
        describe: Callable[[T], str] = str,
    ) -> list[TaskOutcome[T]]:
        """
        Run `fn` over `items` and return outcomes in input order.

        `stats` describes this call only; a reused pool starts from zero.

        Args:
            items: Work items
            fn: Coroutine function applied to each item
            describe: Label for an item in failure logs
        """
        items = list(items)
        semaphore = asyncio.Semaphore(self.concurrency)
        gauge = metrics.pool_in_flight.labels(pool=self.name)
        self.stats = PoolStats(total_tasks=len(items))

        async def _run_one(item: T) -> Any:
            async with semaphore:
                self.stats.in_flight += 1
                self.stats.max_in_flight = max(self.stats.max_in_flight, self.stats.in_flight)
                gauge.inc()
                try:
                    return await fn(item)
                finally:
                    self.stats.in_flight -= 1
                    gauge.dec()

        results = await asyncio.gather(*(_run_one(item) for item in items), return_exceptions=True)

        outcomes = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                self.stats.failed_tasks += 1
                logger.error(
                    f"[{self.name}] task {describe(item)} failed: {type(result).__name__}: {result}",
                    exc_info=(type(result), result, result.__traceback__),
                )
                outcomes.append(TaskOutcome(item=item, error=result))
            else:
                self.stats.completed_tasks += 1
                outcomes.append(TaskOutcome(item=item, result=result))

        logger.info(
            f"[{self.name}] pool finished: {self.stats.completed_tasks} ok, "
            f"{self.stats.failed_tasks} failed, peak concurrency {self.stats.max_in_flight}"
        )
        return outcomes
