"""
Dispatcher: one delivery attempt of one batch against the Backend Ledger.

Every call makes exactly one outbound ``store_batch`` call, bounded by a
timeout, and classifies the result as SUCCESS, TRANSIENT_FAILURE or
PERMANENT_FAILURE. It never retries; retry is the scheduler's job.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from time import monotonic
from typing import Callable, Optional

from loguru import logger

from ledger_client import LedgerErr, LedgerOk

from .errors import PermanentBackendError, default_retry_classifier, map_ledger_error
from .metrics import DISPATCH_LATENCY_SECONDS
from .models import Batch
from .types import BackendLedger


class DispatchOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DispatchResult:
    """Classified outcome of one delivery attempt."""

    batch_id: str
    outcome: DispatchOutcome
    count: int = 0
    error: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is DispatchOutcome.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.outcome is DispatchOutcome.TRANSIENT_FAILURE


class Dispatcher:
    """Stateless delivery attempt + outcome classification."""

    def __init__(
        self,
        ledger: BackendLedger,
        *,
        timeout: float = 30.0,
        classify_retryable: Callable[[BaseException], bool] = default_retry_classifier,
    ):
        self._ledger = ledger
        self._timeout = timeout
        self._classify_retryable = classify_retryable

    @property
    def ledger(self) -> BackendLedger:
        return self._ledger

    async def dispatch(self, batch: Batch) -> DispatchResult:
        t0 = monotonic()
        try:
            result = await asyncio.wait_for(self._ledger.store_batch(batch), timeout=self._timeout)
        except asyncio.TimeoutError:
            return self._done(
                batch, t0, DispatchOutcome.TRANSIENT_FAILURE, error=f"timeout after {self._timeout:g}s"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - every failure is classified, none escapes
            outcome = (
                DispatchOutcome.TRANSIENT_FAILURE
                if self._classify_retryable(exc)
                else DispatchOutcome.PERMANENT_FAILURE
            )
            return self._done(batch, t0, outcome, error=f"{type(exc).__name__}: {exc}")

        if isinstance(result, LedgerOk):
            return self._done(batch, t0, DispatchOutcome.SUCCESS, count=result.count)

        if isinstance(result, LedgerErr):
            error = map_ledger_error(result.kind, result.message)
            if error is None:
                # stored by an earlier attempt under the same batch id
                return self._done(batch, t0, DispatchOutcome.SUCCESS, count=0)
            outcome = (
                DispatchOutcome.PERMANENT_FAILURE
                if isinstance(error, PermanentBackendError)
                else DispatchOutcome.TRANSIENT_FAILURE
            )
            return self._done(batch, t0, outcome, error=str(error))

        return self._done(
            batch, t0, DispatchOutcome.TRANSIENT_FAILURE, error=f"unexpected ledger result {result!r}"
        )

    def _done(
        self,
        batch: Batch,
        t0: float,
        outcome: DispatchOutcome,
        *,
        count: int = 0,
        error: Optional[str] = None,
    ) -> DispatchResult:
        elapsed = monotonic() - t0
        DISPATCH_LATENCY_SECONDS.observe(elapsed)
        if outcome is DispatchOutcome.SUCCESS:
            logger.debug(f"Batch {batch.batch_id} stored ({count} items, {elapsed * 1000:.1f}ms)")
        else:
            logger.warning(f"Batch {batch.batch_id} {outcome.value}: {error}")
        return DispatchResult(
            batch_id=batch.batch_id,
            outcome=outcome,
            count=count,
            error=error,
            latency_ms=elapsed * 1000.0,
        )
