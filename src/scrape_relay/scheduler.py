"""
Retry scheduler: the single periodic driver that drains the durable queue.

Each tick claims due entries, redelivers them through the Dispatcher with a
bounded number running at once, and records every outcome on the queue.
Time comes from an injected Clock, so tests drive ticks without real waits.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Set

from loguru import logger

from .dispatcher import Dispatcher, DispatchOutcome
from .errors import QueuePersistenceError
from .metrics import DISPATCH_TOTAL
from .models import EntryState, QueueEntry
from .queue import DurableRetryQueue
from .status import OutcomeLog
from .types import Clock, SystemClock


@dataclass
class TickReport:
    claimed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    pruned: int = 0


class RetryScheduler:
    """
    Usage:

        scheduler = RetryScheduler(queue, dispatcher, interval=300)
        scheduler.start()
        ...
        await scheduler.stop(drain_timeout=10)

    The first tick runs as soon as the scheduler starts, so entries recovered
    after a restart are retried promptly.
    """

    def __init__(
        self,
        queue: DurableRetryQueue,
        dispatcher: Dispatcher,
        *,
        interval: float = 300.0,
        concurrency: int = 4,
        clock: Optional[Clock] = None,
        outcomes: Optional[OutcomeLog] = None,
        dead_letter_retention: Optional[timedelta] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._dispatcher = dispatcher
        self._interval = interval
        self._concurrency = concurrency
        self._clock = clock or SystemClock()
        self._outcomes = outcomes
        self._retention = dead_letter_retention

        self._sem = asyncio.Semaphore(concurrency)
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._tick_lock = asyncio.Lock()
        # claimed entries whose outcome could not be written back
        self._unreleased: Set[str] = set()
        self.ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.alive:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="retry-scheduler")
        logger.info(f"Retry scheduler started: interval={self._interval:g}s concurrency={self._concurrency}")

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop claiming; wait up to ``drain_timeout`` for running attempts, then cancel them."""
        self._stopping.set()
        if self._inflight:
            logger.info(f"Draining {len(self._inflight)} in-flight redeliveries (timeout={drain_timeout:g}s)")
            _, pending = await asyncio.wait(set(self._inflight), timeout=drain_timeout)
            for t in pending:
                t.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} redeliveries still running after drain timeout")
                await asyncio.gather(*pending, return_exceptions=True)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retry scheduler stopped")

    async def run_once(self) -> TickReport:
        """One scheduler tick. Safe to call directly (tests, ``retry-now``)."""
        report = TickReport()
        async with self._tick_lock:
            if self._stopping.is_set():
                return report
            for entry_id in list(self._unreleased):
                await self._queue.release(entry_id)
                self._unreleased.discard(entry_id)
            claimed = await self._queue.claim_due(self._clock.now())
            report.claimed = len(claimed)
            tasks = [self._spawn(entry) for entry in claimed]
            for entry in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(entry, BaseException):
                    if not isinstance(entry, asyncio.CancelledError):
                        logger.error(f"Redelivery failed unexpectedly: {type(entry).__name__}: {entry}")
                    continue
                if entry is None:
                    continue
                if entry.state is EntryState.SUCCEEDED:
                    report.succeeded += 1
                elif entry.state is EntryState.PENDING:
                    report.rescheduled += 1
                elif entry.state is EntryState.DEAD_LETTERED:
                    report.dead_lettered += 1

            if self._retention is not None:
                report.pruned = await self._queue.prune_dead_letters(self._retention)
            await self._queue.refresh_gauges()

        self.ticks += 1
        if report.claimed:
            logger.info(
                f"Retry tick: claimed={report.claimed} succeeded={report.succeeded} "
                f"rescheduled={report.rescheduled} dead_lettered={report.dead_lettered}"
            )
        return report

    def _spawn(self, entry: QueueEntry) -> asyncio.Task:
        task = asyncio.create_task(self._redeliver(entry), name=f"redeliver-{entry.entry_id[:8]}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _redeliver(self, entry: QueueEntry) -> Optional[QueueEntry]:
        async with self._sem:
            result = await self._dispatcher.dispatch(entry.batch)
        DISPATCH_TOTAL.labels("retry", result.outcome.value).inc()
        if self._outcomes is not None:
            self._outcomes.record(result, source="retry", at=self._clock.now())
        try:
            updated = await self._queue.complete(entry.entry_id, result)
        except QueuePersistenceError as exc:
            logger.error(f"Could not record {result.outcome.value} for entry {entry.entry_id}: {exc}")
            try:
                await self._queue.release(entry.entry_id)
            except QueuePersistenceError:
                self._unreleased.add(entry.entry_id)
            return None
        if result.outcome is not DispatchOutcome.SUCCESS and updated is not None:
            logger.debug(f"Entry {entry.entry_id} now {updated.state.value} (attempt {updated.attempt_count})")
        return updated

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except QueuePersistenceError as exc:
                logger.error(f"Retry tick skipped, queue store unavailable: {exc}")
            except Exception as exc:
                logger.exception(f"Retry tick failed: {type(exc).__name__}: {exc}")
            await self._wait_interval()

    async def _wait_interval(self) -> None:
        sleeper = asyncio.create_task(self._clock.sleep(self._interval))
        stopper = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, stopper):
                t.cancel()
