"""
Status reporter: read-only view over the retry queue and recent dispatch outcomes.

Counts come from a single store query and are a snapshot, not a
linearizable read; they may lag a concurrently running scheduler tick.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Literal, Optional

from .dispatcher import DispatchOutcome, DispatchResult
from .models import EntryState
from .queue import DurableRetryQueue
from .types import Clock, SystemClock

OutcomeSource = Literal["immediate", "retry"]


@dataclass(frozen=True)
class OutcomeRecord:
    at: datetime
    source: OutcomeSource
    batch_id: str
    outcome: DispatchOutcome
    error: Optional[str] = None


class OutcomeLog:
    """Bounded in-memory ring of recent dispatch results."""

    def __init__(self, maxlen: int = 1000):
        self._records: Deque[OutcomeRecord] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._records)

    def record(self, result: DispatchResult, *, source: OutcomeSource, at: datetime) -> OutcomeRecord:
        rec = OutcomeRecord(
            at=at, source=source, batch_id=result.batch_id, outcome=result.outcome, error=result.error
        )
        self._records.append(rec)
        return rec

    def recent(self, since: datetime, source: Optional[OutcomeSource] = None) -> List[OutcomeRecord]:
        return [
            r for r in list(self._records) if r.at >= since and (source is None or r.source == source)
        ]


@dataclass
class QueueStatus:
    pending: int
    in_flight: int
    dead_lettered: int
    succeeded_recently: int
    last_errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "inFlight": self.in_flight,
            "deadLettered": self.dead_lettered,
            "succeededRecently": self.succeeded_recently,
            "lastErrors": self.last_errors,
        }


class StatusReporter:
    def __init__(
        self,
        queue: DurableRetryQueue,
        outcomes: OutcomeLog,
        *,
        recent_window: float = 3_600.0,
        clock: Optional[Clock] = None,
    ):
        self._queue = queue
        self._outcomes = outcomes
        self._window = timedelta(seconds=recent_window)
        self._clock = clock or SystemClock()

    async def snapshot(self, error_limit: int = 20) -> QueueStatus:
        counts = await self._queue.counts()
        visible = await self._queue.list_entries(limit=error_limit)
        since = self._clock.now() - self._window
        succeeded = sum(1 for r in self._outcomes.recent(since, source="retry") if r.outcome is DispatchOutcome.SUCCESS)
        return QueueStatus(
            pending=counts.get(EntryState.PENDING, 0),
            in_flight=counts.get(EntryState.IN_FLIGHT, 0),
            dead_lettered=counts.get(EntryState.DEAD_LETTERED, 0),
            succeeded_recently=succeeded,
            last_errors=[
                {
                    "entryId": e.entry_id,
                    "batchId": e.batch_id,
                    "state": e.state.value,
                    "attemptCount": e.attempt_count,
                    "lastError": e.last_error,
                    "nextAttemptAt": e.next_attempt_at.isoformat(),
                }
                for e in visible
            ],
        )

    async def dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Dead-lettered entries, most recently updated first."""
        return [
            {
                "entryId": e.entry_id,
                "batchId": e.batch_id,
                "clientPrincipal": e.batch.client_principal,
                "items": len(e.batch.items),
                "attemptCount": e.attempt_count,
                "lastError": e.last_error,
                "createdAt": e.created_at.isoformat(),
                "updatedAt": e.updated_at.isoformat(),
            }
            for e in await self._queue.list_dead_letters(limit)
        ]
