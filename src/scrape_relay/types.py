from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional, Protocol

from ledger_client import AuthorizedClient, LedgerResult

from .models import Batch


class BackendLedger(Protocol):
    """Anything that can store a batch in the authoritative ledger."""

    async def store_batch(self, batch: Batch) -> LedgerResult: ...

    async def is_authorized_caller(self, principal: str) -> bool: ...


class IdentityProvider(Protocol):
    """Resolves a bearer credential to a client record, or None when unknown."""

    async def resolve(self, credential: str) -> Optional[AuthorizedClient]: ...


class Clock(Protocol):
    """Time source injected into the queue, scheduler and batcher."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock UTC time and real asyncio sleeps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
