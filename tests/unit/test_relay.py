"""
Unit tests for SubmissionRelay wiring and lifecycle.
"""

import asyncio
from datetime import timedelta

import pytest

from ledger_client import LedgerErr, LedgerErrorKind
from scrape_relay.auth import Authenticator
from scrape_relay.errors import AuthorizationError, RelayUnavailableError, ValidationError
from scrape_relay.models import EntryState
from scrape_relay.relay import SubmissionRelay
from scrape_relay.settings import RelaySettings

from conftest import GOOD_TOKEN, PRINCIPAL, FakeLedger


def _payload(content="<html>ok</html>"):
    return {"principalId": PRINCIPAL, "url": "https://example.com", "content": content, "topicId": "t1"}


@pytest.mark.asyncio
async def test_submit_delivered(make_relay):
    """Test an accepted submission is reported delivered with nothing queued."""
    ledger = FakeLedger()
    relay = make_relay(ledger)
    async with relay:
        receipt = await relay.submit(GOOD_TOKEN, _payload())
        assert receipt.delivered
        assert receipt.stored_count == 1
        assert receipt.entry_id is None
        counts = await relay.queue.counts()
        assert counts[EntryState.PENDING] == counts[EntryState.DEAD_LETTERED] == 0
    assert ledger.stored_count(receipt.batch_id) == 1


@pytest.mark.asyncio
async def test_submit_refused_when_not_started(make_relay):
    """Test submissions are refused before start and after stop."""
    relay = make_relay(FakeLedger())
    with pytest.raises(RelayUnavailableError):
        await relay.submit(GOOD_TOKEN, _payload())

    await relay.start()
    assert relay.accepting
    await relay.stop()
    assert not relay.accepting
    with pytest.raises(RelayUnavailableError):
        await relay.submit(GOOD_TOKEN, _payload())


@pytest.mark.asyncio
async def test_rejections_never_reach_ledger(make_relay):
    """Test auth and validation failures raise before batching."""
    ledger = FakeLedger()
    async with make_relay(ledger) as relay:
        with pytest.raises(AuthorizationError):
            await relay.submit("nope", _payload())
        with pytest.raises(ValidationError):
            await relay.submit(GOOD_TOKEN, _payload(content=""))
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_transient_failure_queued_permanent_dead_lettered(make_relay):
    """Test the immediate outcome decides between queueing and dead-lettering."""
    ledger = FakeLedger(
        LedgerErr(LedgerErrorKind.SYSTEM_ERROR, "canister busy"),
        LedgerErr(LedgerErrorKind.INVALID_INPUT, "bad topic"),
    )
    async with make_relay(ledger) as relay:
        queued = await relay.submit(GOOD_TOKEN, _payload("first"))
        dead = await relay.submit(GOOD_TOKEN, _payload("second"))

        assert queued.status == "queued"
        assert dead.status == "dead_lettered"
        assert (await relay.queue.get(queued.entry_id)).state is EntryState.PENDING
        assert (await relay.queue.get(dead.entry_id)).state is EntryState.DEAD_LETTERED
        assert len(relay.outcomes) == 2


@pytest.mark.asyncio
async def test_stop_hands_in_flight_entries_back(make_relay, make_queue, batch_factory, clock):
    """Test an entry claimed at shutdown is pending again afterwards."""
    relay = make_relay(FakeLedger())
    await relay.start()
    entry = await relay.queue.enqueue(batch_factory("b1"), "timeout")
    claimed = await relay.queue.claim_due(now=clock.now() + timedelta(seconds=300))
    assert [e.entry_id for e in claimed] == [entry.entry_id]

    await relay.stop()
    after = await make_queue().get(entry.entry_id)
    assert after.state is EntryState.PENDING
    assert after.attempt_count == 1


class SlowIdentity:
    """Identity provider that takes a while to answer."""

    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    async def resolve(self, credential):
        await asyncio.sleep(self.delay)
        return await self.inner.resolve(credential)


@pytest.mark.asyncio
async def test_stop_waits_for_submission_being_authenticated(make_relay, identity, clock):
    """Test a submission admitted before stop is still delivered by the shutdown flush."""
    ledger = FakeLedger()
    relay = make_relay(ledger)
    relay._auth = Authenticator(SlowIdentity(identity, 0.2), clock=clock)
    await relay.start()

    task = asyncio.create_task(relay.submit(GOOD_TOKEN, _payload()))
    await asyncio.sleep(0.05)
    await relay.stop()

    receipt = await asyncio.wait_for(task, timeout=1)
    assert receipt.delivered
    assert len(ledger.calls) == 1
    assert relay.batcher.buffered_items == 0


@pytest.mark.asyncio
async def test_submission_outlasting_drain_is_refused(make_relay, identity, clock):
    """Test a submission still authenticating after the drain timeout fails instead of hanging."""
    ledger = FakeLedger()
    relay = make_relay(ledger)
    relay._auth = Authenticator(SlowIdentity(identity, 0.3), clock=clock)
    await relay.start()

    task = asyncio.create_task(relay.submit(GOOD_TOKEN, _payload()))
    await asyncio.sleep(0.05)
    await relay.stop(drain_timeout=0.01)

    with pytest.raises(RelayUnavailableError):
        await asyncio.wait_for(task, timeout=2)
    assert relay.batcher.buffered_items == 0
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_status_follows_existing_queue_entry(make_relay, batch_factory):
    """Test a re-formed batch reports the state of the entry already queued for it."""
    ledger = FakeLedger(
        LedgerErr(LedgerErrorKind.INVALID_INPUT, "bad topic"),
        LedgerErr(LedgerErrorKind.SYSTEM_ERROR, "canister busy"),
    )
    async with make_relay(ledger) as relay:
        pending = await relay.queue.enqueue(batch_factory("b1"), "timeout")
        dead = await relay.queue.enqueue(batch_factory("b2"), "NotAuthorized", permanent=True)

        first = await relay._deliver(batch_factory("b1"))
        second = await relay._deliver(batch_factory("b2"))

    assert (first.status, first.entry_id) == ("queued", pending.entry_id)
    assert (second.status, second.entry_id) == ("dead_lettered", dead.entry_id)


@pytest.mark.asyncio
async def test_unauthorized_relay_principal_still_starts(make_relay):
    """Test a failed ledger authorization check only warns."""
    relay = make_relay(FakeLedger(authorized=False), relay_principal="relay-principal")
    async with relay:
        assert (await relay.health()).status == "ok"


@pytest.mark.asyncio
async def test_from_settings_wires_static_clients(tmp_path, clock):
    """Test a relay built from settings accepts configured static credentials."""
    settings = RelaySettings(
        _env_file=None,
        queue_url=f"sqlite:///{tmp_path / 'q.db'}",
        dead_letter_archive=str(tmp_path / "dead.ndjson"),
        static_clients={GOOD_TOKEN: PRINCIPAL},
        max_attempts=3,
        batch_flush_interval_seconds=0.01,
    )
    ledger = FakeLedger()
    relay = SubmissionRelay.from_settings(settings, ledger=ledger, clock=clock)
    assert relay.queue.policy.max_attempts == 3
    assert relay.scheduler.interval == 300

    async with relay:
        receipt = await relay.submit(GOOD_TOKEN, _payload())
    assert receipt.delivered
    assert ledger.calls == [receipt.batch_id]
