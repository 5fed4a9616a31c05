"""
Bounded concurrency for transfer units.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, TypeVar, Union

from cvtt.core.batch import BatchConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


class ConcurrencyLimiter:
    """
    Runs deferred operations with at most max_in_flight executing at once.

    Waiting operations are started in submission order as slots free up.
    A started operation always runs to completion.
    """

    def __init__(self, max_in_flight: int = BatchConfig.DEFAULT_CONCURRENCY):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._active = 0

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def active(self) -> int:
        """Number of operations currently executing"""
        return self._active

    async def run(self, operation: Operation) -> T:
        """Run one operation once a slot is free"""
        async with self._semaphore:
            self._active += 1
            try:
                return await operation()
            finally:
                self._active -= 1

    async def run_all(self, operations: Iterable[Operation]) -> List[Union[T, BaseException]]:
        """
        Run every operation and wait for all of them to settle

        Args:
            operations: Zero-argument callables returning awaitables; none is
                called before it gets a slot

        Returns:
            Results in submission order; a failed operation contributes its
            exception instead of a result
        """
        tasks = [
            asyncio.create_task(self.run(op), name=f"transfer-unit:{i}")
            for i, op in enumerate(operations)
        ]
        logger.debug(
            "Scheduled %d operation(s) with concurrency=%d", len(tasks), self._max_in_flight
        )
        return list(await asyncio.gather(*tasks, return_exceptions=True))
