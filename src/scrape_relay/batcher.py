from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from time import monotonic
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from loguru import logger

from .errors import RelayUnavailableError
from .models import Batch, SubmissionItem, SubmissionReceipt
from .types import Clock, SystemClock


@dataclass(frozen=True)
class BatchConfig:
    """Size/bytes/time flush thresholds."""

    max_items: int = 20  # flush after N items for one principal
    max_bytes: int = 1_048_576  # or once ~1MB of content is buffered
    flush_interval: float = 0.25  # or after this many seconds
    window_seconds: float = 60.0  # batch id window

    def __post_init__(self):
        if self.max_items < 1:
            raise ValueError("max_items must be >= 1")
        if self.max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")


@dataclass(frozen=True)
class BatchDelivery:
    """Outcome of handing one batch to the relay's delivery path."""

    batch_id: str
    status: str  # "delivered" | "queued" | "dead_lettered"
    stored_count: int = 0
    entry_id: Optional[str] = None


EmitFn = Callable[[Batch], Awaitable[BatchDelivery]]


def batch_id_for(principal: str, window_index: int, item_ids: Sequence[str]) -> str:
    """Deterministic idempotency key for a batch.

    Same principal, same window, same items -> same id, so a batch re-formed
    after a restart is recognised as the same logical unit.
    """
    h = hashlib.sha256(f"{principal}:{window_index}:".encode("utf-8"))
    h.update(",".join(item_ids).encode("utf-8"))
    return h.hexdigest()[:40]


@dataclass
class _Buffer:
    opened_at: float
    items: List[SubmissionItem] = field(default_factory=list)
    futures: Dict[str, "asyncio.Future[SubmissionReceipt]"] = field(default_factory=dict)
    nbytes: int = 0


class SubmissionBatcher:
    """
    Groups validated items by principal into bounded batches.

    Usage:

        async with SubmissionBatcher(deliver, BatchConfig(max_items=20)) as batcher:
            fut = await batcher.add(item)
            receipt = await fut   # resolved once the item's batch was delivered or queued

    A buffer is emitted when it reaches ``max_items``, when the next item would
    push it past ``max_bytes``, or ``flush_interval`` seconds after it opened.
    Emission is serialized per principal, so one client's batches reach the
    delivery path in the order they were formed.
    """

    def __init__(self, emit: EmitFn, config: Optional[BatchConfig] = None, clock: Optional[Clock] = None):
        self._emit_fn = emit
        self._cfg = config or BatchConfig()
        self._clock = clock or SystemClock()

        self._buffers: Dict[str, _Buffer] = {}
        self._principal_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._closed = False

    # --------------- context management

    async def __aenter__(self) -> "SubmissionBatcher":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def start(self) -> None:
        self._closed = False
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._flush_loop(), name="batcher-flush")

    async def stop(self) -> None:
        """Refuse new items, stop the flush loop and emit everything still buffered."""
        self._closed = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.flush()

    # --------------- public API

    @property
    def config(self) -> BatchConfig:
        return self._cfg

    @property
    def buffered_items(self) -> int:
        return sum(len(b.items) for b in self._buffers.values())

    async def add(self, item: SubmissionItem) -> "asyncio.Future[SubmissionReceipt]":
        """Buffer an item; returns a future for the item's delivery receipt."""
        principal = item.client_principal
        sealed: List[Tuple[Batch, Dict[str, asyncio.Future]]] = []

        async with self._lock:
            if self._closed:
                raise RelayUnavailableError("batcher is stopped")
            buf = self._buffers.get(principal)
            if buf is not None and item.id in buf.futures:
                # identical resubmission while its batch is still open
                return buf.futures[item.id]

            if buf is not None and buf.nbytes + item.size_bytes > self._cfg.max_bytes:
                sealed.append(self._seal(principal))
                buf = None

            if buf is None:
                buf = self._buffers[principal] = _Buffer(opened_at=monotonic())

            fut: asyncio.Future[SubmissionReceipt] = asyncio.get_running_loop().create_future()
            buf.items.append(item)
            buf.futures[item.id] = fut
            buf.nbytes += item.size_bytes

            if len(buf.items) >= self._cfg.max_items or buf.nbytes >= self._cfg.max_bytes:
                sealed.append(self._seal(principal))

        for batch, futures in sealed:
            self._spawn(batch, futures)
        return fut

    async def flush(self, principal: Optional[str] = None) -> int:
        """Emit open buffers (all, or one principal's) and wait for every pending emission.

        Returns the number of items emitted by this call.
        """
        async with self._lock:
            keys = [principal] if principal is not None else list(self._buffers)
            sealed = [self._seal(p) for p in keys if p in self._buffers]

        for batch, futures in sealed:
            self._spawn(batch, futures)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return sum(len(b.items) for b, _ in sealed)

    # --------------- internals

    def _seal(self, principal: str) -> Tuple[Batch, Dict[str, asyncio.Future]]:
        buf = self._buffers.pop(principal)
        first = buf.items[0]
        window = int(first.captured_at.timestamp() // self._cfg.window_seconds)
        batch = Batch(
            batch_id=batch_id_for(principal, window, [i.id for i in buf.items]),
            client_principal=principal,
            items=tuple(buf.items),
            created_at=self._clock.now(),
        )
        logger.debug(f"Sealed batch {batch.batch_id} for {principal}: {len(buf.items)} items, {buf.nbytes} bytes")
        return batch, buf.futures

    def _spawn(self, batch: Batch, futures: Dict[str, asyncio.Future]) -> None:
        task = asyncio.create_task(self._emit(batch, futures), name=f"emit-{batch.batch_id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, batch: Batch, futures: Dict[str, asyncio.Future]) -> None:
        async with self._principal_locks[batch.client_principal]:
            try:
                delivery = await self._emit_fn(batch)
            except Exception as exc:
                logger.error(f"Batch {batch.batch_id} could not be delivered or queued: {type(exc).__name__}: {exc}")
                for fut in futures.values():
                    if not fut.done():
                        fut.set_exception(exc)
                return

        for item_id, fut in futures.items():
            if not fut.done():
                fut.set_result(
                    SubmissionReceipt(
                        submission_id=item_id,
                        batch_id=delivery.batch_id,
                        status=delivery.status,
                        stored_count=delivery.stored_count,
                        entry_id=delivery.entry_id,
                    )
                )

    async def _flush_loop(self) -> None:
        tick = max(0.01, self._cfg.flush_interval / 2)
        while True:
            await asyncio.sleep(tick)
            now = monotonic()
            async with self._lock:
                due = [
                    p for p, b in self._buffers.items() if now - b.opened_at >= self._cfg.flush_interval
                ]
                sealed = [self._seal(p) for p in due]
            for batch, futures in sealed:
                self._spawn(batch, futures)
