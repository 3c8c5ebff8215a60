"""
Unit tests for the status reporter.
"""

import pytest

from scrape_relay.dispatcher import DispatchOutcome, DispatchResult
from scrape_relay.status import OutcomeLog, StatusReporter


def _ok(batch_id):
    return DispatchResult(batch_id=batch_id, outcome=DispatchOutcome.SUCCESS, count=1)


def test_outcome_log_is_bounded(clock):
    """Test the ring drops the oldest outcomes."""
    log = OutcomeLog(maxlen=3)
    for i in range(5):
        log.record(_ok(f"b{i}"), source="retry", at=clock.now())
    assert len(log) == 3
    assert [r.batch_id for r in log.recent(clock.now())] == ["b2", "b3", "b4"]


@pytest.mark.asyncio
async def test_snapshot_counts_states(make_queue, batch_factory, clock):
    """Test queue depth by state plus the last error of each visible entry."""
    q = make_queue(retry_interval=1)
    await q.open()
    for i in range(3):
        await q.enqueue(batch_factory(f"p{i}"), f"timeout {i}")
    await q.enqueue(batch_factory("dead"), "NotAuthorized", permanent=True)
    clock.advance(1)
    await q.claim_due(limit=1)

    reporter = StatusReporter(q, OutcomeLog(), clock=clock)
    snap = (await reporter.snapshot()).to_dict()

    assert snap["pending"] == 2
    assert snap["inFlight"] == 1
    assert snap["deadLettered"] == 1
    assert snap["succeededRecently"] == 0
    errors = {e["batchId"]: e["lastError"] for e in snap["lastErrors"]}
    assert errors["dead"] == "NotAuthorized"
    assert errors["p0"] == "timeout 0"
    await q.close()


@pytest.mark.asyncio
async def test_succeeded_recently_counts_retry_successes_in_window(make_queue, clock):
    """Test only retry successes inside the recent window are counted."""
    q = make_queue()
    await q.open()
    log = OutcomeLog()
    log.record(_ok("old"), source="retry", at=clock.now())
    clock.advance(7200)
    log.record(_ok("new"), source="retry", at=clock.now())
    log.record(_ok("immediate"), source="immediate", at=clock.now())
    log.record(
        DispatchResult(batch_id="failed", outcome=DispatchOutcome.TRANSIENT_FAILURE, error="busy"),
        source="retry",
        at=clock.now(),
    )

    reporter = StatusReporter(q, log, recent_window=3600, clock=clock)
    assert (await reporter.snapshot()).succeeded_recently == 1
    await q.close()


@pytest.mark.asyncio
async def test_dead_letters_listing(make_queue, batch_factory):
    """Test dead letters are listed with attempts and last error."""
    q = make_queue()
    await q.open()
    await q.enqueue(batch_factory("d1", n_items=3), "InvalidInput: bad", permanent=True)
    await q.enqueue(batch_factory("p1"), "timeout")

    rows = await StatusReporter(q, OutcomeLog()).dead_letters(10)
    assert len(rows) == 1
    assert rows[0]["batchId"] == "d1"
    assert rows[0]["items"] == 3
    assert rows[0]["attemptCount"] == 1
    assert rows[0]["lastError"] == "InvalidInput: bad"
    await q.close()
