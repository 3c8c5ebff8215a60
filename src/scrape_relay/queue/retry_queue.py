"""
Durable retry queue.

Undelivered batches wait here until the retry scheduler redelivers them.
Every mutation goes through ``enqueue``, ``claim_due`` or ``complete``; each
is a compare-and-set update in the store, serialized in-process by a lock,
so an entry never has more than one in-flight attempt.

Lifecycle::

    enqueue ──> PENDING ──claim_due──> IN_FLIGHT ──complete(success)──> SUCCEEDED (deleted)
                   ^                      │
                   └──complete(transient)─┤
                                          └──complete(permanent | budget spent)──> DEAD_LETTERED
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger

from ..dispatcher import DispatchOutcome, DispatchResult
from ..metrics import DEAD_LETTERED_TOTAL, QUEUE_DEPTH
from ..models import Batch, EntryState, QueueEntry
from ..types import Clock, SystemClock
from .archive import DeadLetterArchive
from .policy import RetryPolicy
from .store import SqlQueueStore


class DurableRetryQueue:
    """Persistent queue of batches awaiting redelivery."""

    def __init__(
        self,
        store: SqlQueueStore,
        policy: Optional[RetryPolicy] = None,
        *,
        clock: Optional[Clock] = None,
        archive: Optional[DeadLetterArchive] = None,
        claim_limit: int = 100,
    ):
        if claim_limit < 1:
            raise ValueError("claim_limit must be >= 1")
        self._store = store
        self._policy = policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._archive = archive
        self._claim_limit = claim_limit
        self._lock = asyncio.Lock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def store(self) -> SqlQueueStore:
        return self._store

    # ---------- lifecycle ----------

    async def open(self) -> int:
        """Create the schema and recover entries left in flight by a crash.

        Returns the number of recovered entries.
        """
        async with self._lock:
            await asyncio.to_thread(self._store.create_schema)
        recovered = await self.recover()
        await self.refresh_gauges()
        return recovered

    async def recover(self) -> int:
        async with self._lock:
            n = await asyncio.to_thread(self._store.release_in_flight, self._clock.now())
        if n:
            logger.warning(f"Recovered {n} in-flight entries as pending (interrupted attempts)")
        return n

    async def release_in_flight(self) -> int:
        """Hand claimed entries back as pending, due now. Used on shutdown."""
        async with self._lock:
            n = await asyncio.to_thread(self._store.release_in_flight, self._clock.now())
        if n:
            logger.info(f"Released {n} in-flight entries back to pending")
        return n

    async def release(self, entry_id: str) -> Optional[QueueEntry]:
        """Hand one claimed entry back as pending, due now, without counting an attempt.

        Used when the outcome of a redelivery could not be recorded.
        """
        now = self._clock.now()
        async with self._lock:
            entry = await asyncio.to_thread(
                self._store.transition,
                entry_id,
                expected=EntryState.IN_FLIGHT,
                state=EntryState.PENDING,
                now=now,
                next_attempt_at=now,
            )
        if entry is not None:
            QUEUE_DEPTH.labels(EntryState.IN_FLIGHT.value).dec()
            QUEUE_DEPTH.labels(EntryState.PENDING.value).inc()
            logger.warning(f"Released entry {entry_id} back to pending")
        return entry

    async def close(self) -> None:
        await asyncio.to_thread(self._store.close)

    # ---------- mutations ----------

    async def enqueue(self, batch: Batch, error: str, *, permanent: bool = False) -> QueueEntry:
        """Record a batch whose first delivery attempt failed.

        A transient failure is queued as pending with ``attempt_count=1``; a
        permanent one (or a transient one when the policy allows a single
        attempt) goes straight to dead-letter. A batch id that is already
        queued returns the existing entry.
        """
        now = self._clock.now()
        dead = permanent or self._policy.exhausted(1)
        entry = QueueEntry(
            entry_id=uuid.uuid4().hex,
            batch=batch,
            attempt_count=1,
            next_attempt_at=now if dead else now + self._policy.next_delay(1),
            last_error=error,
            state=EntryState.DEAD_LETTERED if dead else EntryState.PENDING,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            stored = await asyncio.to_thread(self._store.insert, entry)

        if stored.entry_id != entry.entry_id:
            return stored
        if dead:
            DEAD_LETTERED_TOTAL.labels("permanent" if permanent else "exhausted").inc()
            logger.warning(f"Batch {batch.batch_id} dead-lettered on first attempt: {error}")
        else:
            logger.info(
                f"Queued batch {batch.batch_id} as {stored.entry_id}; next attempt at "
                f"{stored.next_attempt_at.isoformat()}"
            )
        QUEUE_DEPTH.labels(stored.state.value).inc()
        return stored

    async def claim_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[QueueEntry]:
        """Claim pending entries whose ``next_attempt_at`` has passed."""
        now = now or self._clock.now()
        async with self._lock:
            claimed = await asyncio.to_thread(self._store.claim_due, now, limit or self._claim_limit)
        if claimed:
            QUEUE_DEPTH.labels(EntryState.PENDING.value).dec(len(claimed))
            QUEUE_DEPTH.labels(EntryState.IN_FLIGHT.value).inc(len(claimed))
            logger.debug(f"Claimed {len(claimed)} due entries")
        return claimed

    async def complete(self, entry_id: str, result: DispatchResult) -> Optional[QueueEntry]:
        """Apply the outcome of a redelivery attempt to a claimed entry.

        Returns the entry in its new state, or None if it was not in flight
        (already completed, or never claimed).
        """
        now = self._clock.now()
        async with self._lock:
            current = await asyncio.to_thread(self._store.get, entry_id)
            if current is None or current.state is not EntryState.IN_FLIGHT:
                state = current.state.value if current is not None else "missing"
                logger.warning(f"complete() on entry {entry_id} that is not in flight ({state})")
                return None

            attempts = current.attempt_count + 1
            if result.outcome is DispatchOutcome.SUCCESS:
                updated = await asyncio.to_thread(
                    self._store.remove_delivered, entry_id, now=now, attempt_count=attempts
                )
            elif result.outcome is DispatchOutcome.TRANSIENT_FAILURE:
                if self._policy.exhausted(attempts):
                    updated = await asyncio.to_thread(
                        self._store.transition,
                        entry_id,
                        expected=EntryState.IN_FLIGHT,
                        state=EntryState.DEAD_LETTERED,
                        now=now,
                        attempt_count=attempts,
                        last_error=result.error or "transient failure",
                    )
                else:
                    updated = await asyncio.to_thread(
                        self._store.transition,
                        entry_id,
                        expected=EntryState.IN_FLIGHT,
                        state=EntryState.PENDING,
                        now=now,
                        attempt_count=attempts,
                        next_attempt_at=now + self._policy.next_delay(attempts),
                        last_error=result.error or "transient failure",
                    )
            else:
                updated = await asyncio.to_thread(
                    self._store.transition,
                    entry_id,
                    expected=EntryState.IN_FLIGHT,
                    state=EntryState.DEAD_LETTERED,
                    now=now,
                    attempt_count=attempts,
                    last_error=result.error or "permanent failure",
                )

        if updated is None:
            logger.warning(f"Entry {entry_id} changed state concurrently; outcome {result.outcome.value} dropped")
            return None

        QUEUE_DEPTH.labels(EntryState.IN_FLIGHT.value).dec()
        if updated.state is EntryState.SUCCEEDED:
            logger.info(f"Entry {entry_id} delivered on attempt {updated.attempt_count}; removed")
        elif updated.state is EntryState.PENDING:
            QUEUE_DEPTH.labels(EntryState.PENDING.value).inc()
            logger.info(
                f"Entry {entry_id} attempt {updated.attempt_count} failed; retry at "
                f"{updated.next_attempt_at.isoformat()}"
            )
        else:
            QUEUE_DEPTH.labels(EntryState.DEAD_LETTERED.value).inc()
            reason = "permanent" if result.outcome is DispatchOutcome.PERMANENT_FAILURE else "exhausted"
            DEAD_LETTERED_TOTAL.labels(reason).inc()
            logger.error(
                f"Entry {entry_id} dead-lettered ({reason}) after {updated.attempt_count} attempts: "
                f"{updated.last_error}"
            )
        return updated

    async def prune_dead_letters(self, retention: timedelta) -> int:
        """Archive then delete dead letters not updated within ``retention``."""
        cutoff = self._clock.now() - retention
        async with self._lock:
            expired = await asyncio.to_thread(
                self._store.list_entries,
                [EntryState.DEAD_LETTERED],
                limit=self._claim_limit,
                updated_before=cutoff,
            )
            if not expired:
                return 0
            if self._archive is not None:
                await self._archive.append(expired)
            n = await asyncio.to_thread(self._store.delete, [e.entry_id for e in expired])
        QUEUE_DEPTH.labels(EntryState.DEAD_LETTERED.value).dec(n)
        logger.info(f"Pruned {n} dead letters older than {cutoff.isoformat()}")
        return n

    # ---------- reads ----------

    async def counts(self) -> Dict[EntryState, int]:
        return await asyncio.to_thread(self._store.count_by_state)

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        return await asyncio.to_thread(self._store.get, entry_id)

    async def get_by_batch_id(self, batch_id: str) -> Optional[QueueEntry]:
        return await asyncio.to_thread(self._store.get_by_batch_id, batch_id)

    async def list_dead_letters(self, limit: int = 100) -> List[QueueEntry]:
        return await asyncio.to_thread(self._store.list_entries, [EntryState.DEAD_LETTERED], limit=limit)

    async def list_entries(self, *states: EntryState, limit: int = 100) -> List[QueueEntry]:
        return await asyncio.to_thread(self._store.list_entries, states or None, limit=limit)

    async def refresh_gauges(self) -> Dict[EntryState, int]:
        counts = await self.counts()
        for state, n in counts.items():
            QUEUE_DEPTH.labels(state.value).set(n)
        return counts
