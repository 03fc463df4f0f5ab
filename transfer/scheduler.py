"""Concurrency-limited runner for independent chunk transfers."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from common.exceptions import AggregateTransferError
from common.logging_config import get_logger
from common.types import ScheduleOutcome

logger = get_logger(__name__)


WorkUnit = Callable[[], Awaitable[Any]]
UnitCallback = Callable[[int, Any, Optional[BaseException]], Any]


class BoundedScheduler:
    """
    Runs work units with at most ``limit`` in flight.

    Every unit runs to completion even when siblings fail; the run only
    reports once all units reached a terminal state. Failure is aggregated
    into a single AggregateTransferError.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        self.limit = limit
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(
        self,
        units: Sequence[WorkUnit],
        on_result: Optional[UnitCallback] = None,
    ) -> ScheduleOutcome:
        """
        Execute all units and aggregate their outcome.

        Args:
            units: Zero-argument coroutine factories, attributed by position
            on_result: Called as ``(index, result, error)`` for every unit,
                failed ones included; its own errors are logged and dropped

        Returns:
            ScheduleOutcome; completed + failed == total

        Raises:
            AggregateTransferError: If any unit failed
        """
        total = len(units)
        if total == 0:
            return ScheduleOutcome(total=0, completed=0, failed=0)

        loop = asyncio.get_running_loop()
        finished = loop.create_future()
        errors: List[BaseException] = []
        counters = {"next": 0, "completed": 0, "failed": 0, "settled": 0}
        tasks = set()

        def start_next() -> None:
            while self.in_flight < self.limit and counters["next"] < total:
                index = counters["next"]
                counters["next"] += 1
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                task = loop.create_task(execute(index))
                tasks.add(task)
                task.add_done_callback(tasks.discard)

        async def execute(index: int) -> None:
            result = None
            error: Optional[BaseException] = None
            try:
                result = await units[index]()
            except Exception as e:
                error = e
                errors.append(e)
                logger.warning(f"Task {index} failed: {e}")

            self.in_flight -= 1
            if error is None:
                counters["completed"] += 1
            else:
                counters["failed"] += 1

            start_next()

            if on_result is not None:
                await _invoke_callback(on_result, index, result, error)

            counters["settled"] += 1
            if counters["settled"] == total and not finished.done():
                finished.set_result(None)

        start_next()
        await finished

        outcome = ScheduleOutcome(
            total=total,
            completed=counters["completed"],
            failed=counters["failed"],
        )
        if outcome.failed:
            raise AggregateTransferError(outcome.failed, total, errors)
        return outcome


async def _invoke_callback(
    callback: UnitCallback,
    index: int,
    result: Any,
    error: Optional[BaseException],
) -> None:
    try:
        value = callback(index, result, error)
        if inspect.isawaitable(value):
            await value
    except Exception as e:
        logger.error(f"Progress callback failed for task {index}: {e}", exc_info=True)


async def run_with_limit(
    units: Sequence[WorkUnit],
    limit: int,
    on_result: Optional[UnitCallback] = None,
) -> ScheduleOutcome:
    """Convenience wrapper around BoundedScheduler.run."""
    return await BoundedScheduler(limit).run(units, on_result)
