"""
SubmissionRelay: wires ingress, batching, dispatch and durable retry together.

Usage:

    relay = SubmissionRelay.from_settings(get_settings())
    async with relay:
        receipt = await relay.submit(credential, {"principalId": ..., "url": ..., ...})

Every valid submission ends up either stored in the ledger or persisted in
the retry queue before the caller gets an answer. If the queue itself cannot
be written the submission fails with QueuePersistenceError instead of being
dropped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from loguru import logger

from ledger_client import HttpIdentityProvider, HttpLedgerClient, LedgerClientError

from .auth import Authenticator, StaticIdentityProvider
from .batcher import BatchConfig, BatchDelivery, SubmissionBatcher
from .dispatcher import DispatchOutcome, Dispatcher
from .errors import QueuePersistenceError, RelayUnavailableError
from .metrics import DISPATCH_TOTAL, SUBMISSIONS_TOTAL
from .models import Batch, EntryState, SubmissionReceipt
from .queue import DeadLetterArchive, DurableRetryQueue, SqlQueueStore
from .scheduler import RetryScheduler
from .settings import RelaySettings
from .status import OutcomeLog, StatusReporter
from .types import BackendLedger, Clock, SystemClock


@dataclass(frozen=True)
class RelayHealth:
    status: str  # "ok" | "degraded"
    timestamp: datetime
    accepting: bool
    scheduler_alive: bool
    queue_available: bool

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "accepting": self.accepting,
            "schedulerAlive": self.scheduler_alive,
            "queueAvailable": self.queue_available,
        }


class SubmissionRelay:
    def __init__(
        self,
        *,
        authenticator: Authenticator,
        dispatcher: Dispatcher,
        queue: DurableRetryQueue,
        batch_config: Optional[BatchConfig] = None,
        retry_interval: float = 300.0,
        scheduler_concurrency: int = 4,
        dead_letter_retention: Optional[timedelta] = None,
        recent_window: float = 3_600.0,
        drain_timeout: float = 10.0,
        clock: Optional[Clock] = None,
        relay_principal: Optional[str] = None,
        closeables: Optional[List[Callable[[], Awaitable[None]]]] = None,
    ):
        self._clock = clock or SystemClock()
        self._auth = authenticator
        self._dispatcher = dispatcher
        self._queue = queue
        self._outcomes = OutcomeLog()
        self._batcher = SubmissionBatcher(self._deliver, batch_config, self._clock)
        self._scheduler = RetryScheduler(
            queue,
            dispatcher,
            interval=retry_interval,
            concurrency=scheduler_concurrency,
            clock=self._clock,
            outcomes=self._outcomes,
            dead_letter_retention=dead_letter_retention,
        )
        self._status = StatusReporter(queue, self._outcomes, recent_window=recent_window, clock=self._clock)
        self._drain_timeout = drain_timeout
        self._relay_principal = relay_principal
        self._closeables = list(closeables or [])
        self._accepting = False
        self._started = False
        # submissions between the accepting check and batcher.add
        self._admitting = 0
        self._admitted = asyncio.Event()
        self._admitted.set()

    # --------------- wiring

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        *,
        ledger: Optional[BackendLedger] = None,
        clock: Optional[Clock] = None,
    ) -> "SubmissionRelay":
        """Build a relay with its HTTP collaborators and SQL queue from settings."""
        clock = clock or SystemClock()
        closeables: List[Callable[[], Awaitable[None]]] = []

        if ledger is None:
            http_ledger = HttpLedgerClient(
                settings.ledger_url,
                settings.ledger_credential,
                timeout=settings.dispatch_timeout_seconds,
            )
            closeables.append(http_ledger.aclose)
            ledger = http_ledger

        if settings.identity_url:
            identity = HttpIdentityProvider(settings.identity_url)
            closeables.append(identity.aclose)
        else:
            if not settings.static_clients:
                logger.warning("No identity_url and no static_clients configured; every submission will be rejected")
            identity = StaticIdentityProvider(
                settings.static_clients, default_bandwidth_limit=settings.default_bandwidth_limit
            )

        authenticator = Authenticator(
            identity,
            cache_ttl=settings.client_cache_ttl_seconds,
            max_content_bytes=settings.max_content_bytes,
            rate_window_seconds=settings.rate_window_seconds,
            default_bandwidth_limit=settings.default_bandwidth_limit,
            clock=clock,
        )
        archive = DeadLetterArchive(settings.dead_letter_archive) if settings.dead_letter_archive else None
        queue = DurableRetryQueue(
            SqlQueueStore(settings.queue_url),
            settings.retry_policy(),
            clock=clock,
            archive=archive,
            claim_limit=settings.claim_batch_limit,
        )
        retention = (
            timedelta(seconds=settings.dead_letter_retention_seconds)
            if settings.dead_letter_retention_seconds
            else None
        )
        return cls(
            authenticator=authenticator,
            dispatcher=Dispatcher(ledger, timeout=settings.dispatch_timeout_seconds),
            queue=queue,
            batch_config=settings.batch_config(),
            retry_interval=settings.retry_interval_seconds,
            scheduler_concurrency=settings.scheduler_concurrency,
            dead_letter_retention=retention,
            recent_window=settings.recent_window_seconds,
            drain_timeout=settings.drain_timeout_seconds,
            clock=clock,
            relay_principal=settings.relay_principal,
            closeables=closeables,
        )

    # --------------- properties

    @property
    def queue(self) -> DurableRetryQueue:
        return self._queue

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def status(self) -> StatusReporter:
        return self._status

    @property
    def batcher(self) -> SubmissionBatcher:
        return self._batcher

    @property
    def outcomes(self) -> OutcomeLog:
        return self._outcomes

    @property
    def accepting(self) -> bool:
        return self._accepting

    # --------------- lifecycle

    async def __aenter__(self) -> "SubmissionRelay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        recovered = await self._queue.open()
        await self._check_ledger_authorization()
        self._batcher.start()
        self._scheduler.start()
        self._started = True
        self._accepting = True
        logger.info(f"Submission relay started ({recovered} interrupted entries recovered)")

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """Stop accepting, flush open batches, drain the scheduler, hand in-flight entries back."""
        if not self._started:
            return
        timeout = self._drain_timeout if drain_timeout is None else drain_timeout
        self._accepting = False
        logger.info("Submission relay stopping")
        try:
            if self._admitting:
                try:
                    await asyncio.wait_for(self._admitted.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{self._admitting} submissions still authenticating; they will be refused")
            await self._batcher.stop()
            await self._scheduler.stop(drain_timeout=timeout)
            try:
                await self._queue.release_in_flight()
            except QueuePersistenceError as exc:
                # recovered by open() on the next start
                logger.error(f"Could not release in-flight entries on shutdown: {exc}")
        finally:
            await self._queue.close()
            await self.close_clients()
            self._started = False
        logger.info("Submission relay stopped")

    async def close_clients(self) -> None:
        """Close the HTTP clients built by ``from_settings``."""
        while self._closeables:
            await self._closeables.pop()()

    async def _check_ledger_authorization(self) -> None:
        if not self._relay_principal:
            return
        try:
            ok = await self._dispatcher.ledger.is_authorized_caller(self._relay_principal)
        except LedgerClientError as exc:
            logger.warning(f"Could not verify relay authorization with the ledger: {exc}")
            return
        if ok:
            logger.info(f"Relay principal {self._relay_principal} is authorized by the ledger")
        else:
            logger.warning(
                f"Relay principal {self._relay_principal} is NOT authorized by the ledger; "
                "deliveries will be dead-lettered until it is"
            )

    # --------------- submission path

    async def submit(self, credential: Optional[str], payload: Any) -> SubmissionReceipt:
        if not self._accepting:
            SUBMISSIONS_TOTAL.labels("refused").inc()
            raise RelayUnavailableError("relay is not accepting submissions")
        self._admitting += 1
        self._admitted.clear()
        try:
            item = await self._auth.authenticate(credential, payload)
            future = await self._batcher.add(item)
        except Exception as exc:
            SUBMISSIONS_TOTAL.labels(getattr(exc, "code", "error")).inc()
            raise
        finally:
            self._admitting -= 1
            if self._admitting == 0:
                self._admitted.set()
        try:
            receipt = await future
        except QueuePersistenceError:
            SUBMISSIONS_TOTAL.labels("queue_unavailable").inc()
            raise
        SUBMISSIONS_TOTAL.labels(receipt.status).inc()
        return receipt

    async def _deliver(self, batch: Batch) -> BatchDelivery:
        result = await self._dispatcher.dispatch(batch)
        DISPATCH_TOTAL.labels("immediate", result.outcome.value).inc()
        self._outcomes.record(result, source="immediate", at=self._clock.now())

        if result.outcome is DispatchOutcome.SUCCESS:
            return BatchDelivery(batch.batch_id, "delivered", stored_count=result.count)

        permanent = result.outcome is DispatchOutcome.PERMANENT_FAILURE
        entry = await self._queue.enqueue(batch, result.error or result.outcome.value, permanent=permanent)
        status = "dead_lettered" if entry.state is EntryState.DEAD_LETTERED else "queued"
        return BatchDelivery(batch.batch_id, status, entry_id=entry.entry_id)

    # --------------- health

    async def health(self) -> RelayHealth:
        queue_ok = True
        try:
            await self._queue.counts()
        except QueuePersistenceError:
            queue_ok = False
        alive = self._scheduler.alive
        ok = queue_ok and alive and self._accepting
        return RelayHealth(
            status="ok" if ok else "degraded",
            timestamp=self._clock.now(),
            accepting=self._accepting,
            scheduler_alive=alive,
            queue_available=queue_ok,
        )
