"""
Unit tests for relay metrics (light sanity checks).
"""

import pytest
from prometheus_client import REGISTRY

from ledger_client import LedgerErr, LedgerErrorKind
from scrape_relay.dispatcher import Dispatcher
from scrape_relay.metrics import metrics_registry

from conftest import FakeLedger, make_batch


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_registry_exposes_collectors():
    """Test the registry holder points at the registered collectors."""
    assert metrics_registry.queue_depth._name == "relay_queue_depth"
    assert metrics_registry.submissions_total._name == "relay_submissions"
    assert metrics_registry.dispatch_latency_seconds._name == "relay_dispatch_latency_seconds"


@pytest.mark.asyncio
async def test_queue_depth_gauge_tracks_states(make_queue, batch_factory):
    """Test refresh_gauges mirrors the queue counts by state."""
    q = make_queue()
    await q.open()
    await q.enqueue(batch_factory("b1"), "timeout")
    await q.enqueue(batch_factory("b2"), "timeout")
    await q.enqueue(batch_factory("b3"), "InvalidInput", permanent=True)

    await q.refresh_gauges()
    assert _sample("relay_queue_depth", state="pending") == 2
    assert _sample("relay_queue_depth", state="dead_lettered") == 1
    assert _sample("relay_queue_depth", state="in_flight") == 0
    await q.close()


@pytest.mark.asyncio
async def test_dead_letter_counter_labels_reason(make_queue, batch_factory):
    """Test permanent dead-lettering is counted under its reason."""
    before = _sample("relay_dead_lettered_total", reason="permanent")
    q = make_queue()
    await q.open()
    await q.enqueue(batch_factory("b1"), "NotAuthorized", permanent=True)
    assert _sample("relay_dead_lettered_total", reason="permanent") == before + 1
    await q.close()


@pytest.mark.asyncio
async def test_dispatch_latency_observed():
    """Test every dispatch lands in the latency histogram, failures included."""
    before = _sample("relay_dispatch_latency_seconds_count")
    d = Dispatcher(FakeLedger(LedgerErr(LedgerErrorKind.SYSTEM_ERROR, "busy")))

    await d.dispatch(make_batch("m1"))
    await d.dispatch(make_batch("m2"))
    assert _sample("relay_dispatch_latency_seconds_count") == before + 2
