"""
Pytest configuration and fixtures for scrape-relay.

Provides a controllable clock, an in-process Backend Ledger fake, static
client credentials and SQLite-backed queues under ``tmp_path``.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from ledger_client import AuthorizedClient, LedgerErr, LedgerErrorKind, LedgerOk
from scrape_relay.auth import Authenticator, StaticIdentityProvider
from scrape_relay.batcher import BatchConfig
from scrape_relay.dispatcher import Dispatcher
from scrape_relay.models import Batch, SubmissionItem, item_id_for
from scrape_relay.queue import DurableRetryQueue, RetryPolicy, SqlQueueStore
from scrape_relay.relay import SubmissionRelay

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
GOOD_TOKEN = "good-token"
PRINCIPAL = "aaaaa-aa"


class FakeClock:
    """Manually advanced clock. ``sleep`` returns once the clock has been advanced far enough."""

    def __init__(self, start: datetime = T0):
        self._now = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        target = self._now + timedelta(seconds=seconds)
        while self._now < target:
            await asyncio.sleep(0.001)


class FakeLedger:
    """Backend Ledger double.

    Scripted responses are consumed in order: a LedgerResult is returned, an
    exception is raised, and the string ``"hang"`` never answers (for
    timeouts). Once the script is empty every call succeeds. A batch id that
    was already stored answers AlreadyExists, like the real ledger.
    """

    def __init__(self, *script, authorized: bool = True):
        self.script = list(script)
        self.calls: List[str] = []
        self.stored = {}
        self.authorized = authorized

    async def store_batch(self, batch):
        self.calls.append(batch.batch_id)
        if self.script:
            step = self.script.pop(0)
            if step == "hang":
                await asyncio.sleep(3600)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, (LedgerErr, LedgerOk)):
                return step
        if batch.batch_id in self.stored:
            return LedgerErr(LedgerErrorKind.ALREADY_EXISTS, batch.batch_id)
        self.stored[batch.batch_id] = batch
        return LedgerOk(count=len(batch.items))

    async def is_authorized_caller(self, principal: str) -> bool:
        return self.authorized

    def stored_count(self, batch_id: str) -> int:
        return 1 if batch_id in self.stored else 0


def make_item(n: int = 0, principal: str = PRINCIPAL, content: Optional[str] = None, at: datetime = T0) -> SubmissionItem:
    url = f"https://example.com/page/{n}"
    content = content if content is not None else f"scraped content {n}"
    return SubmissionItem(
        id=item_id_for(principal, url, "t1", content),
        client_principal=principal,
        url=url,
        content=content,
        topic_id="t1",
        captured_at=at,
    )


def make_batch(batch_id: str = "batch-1", n_items: int = 2, principal: str = PRINCIPAL) -> Batch:
    return Batch(
        batch_id=batch_id,
        client_principal=principal,
        items=tuple(make_item(i, principal) for i in range(n_items)),
        created_at=T0,
    )


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def batch_factory():
    return make_batch


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def identity():
    return StaticIdentityProvider(
        {
            GOOD_TOKEN: PRINCIPAL,
            "other-token": "bbbbb-bb",
            "inactive-token": AuthorizedClient(principal="zzzzz-zz", is_active=False),
        }
    )


@pytest.fixture
def queue_url(tmp_path):
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture
def make_queue(queue_url, clock):
    """Factory for queues over the per-test SQLite file."""

    def _make(max_attempts: int = 10, retry_interval: float = 300.0, **kwargs) -> DurableRetryQueue:
        policy = RetryPolicy(max_attempts=max_attempts, retry_interval=retry_interval)
        return DurableRetryQueue(SqlQueueStore(queue_url), policy, clock=clock, **kwargs)

    return _make


@pytest.fixture
def make_relay(identity, queue_url, clock):
    """Factory for fully wired relays sharing the per-test queue file."""

    def _make(ledger, *, max_attempts: int = 10, dispatch_timeout: float = 1.0, **kwargs) -> SubmissionRelay:
        auth = Authenticator(identity, clock=clock)
        queue = DurableRetryQueue(
            SqlQueueStore(queue_url),
            RetryPolicy(max_attempts=max_attempts, retry_interval=300.0),
            clock=clock,
        )
        return SubmissionRelay(
            authenticator=auth,
            dispatcher=Dispatcher(ledger, timeout=dispatch_timeout),
            queue=queue,
            batch_config=BatchConfig(max_items=20, flush_interval=0.02),
            retry_interval=300.0,
            clock=clock,
            drain_timeout=1.0,
            **kwargs,
        )

    return _make
