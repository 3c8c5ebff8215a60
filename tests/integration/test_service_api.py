"""
Integration tests for the relay HTTP service.

Each test runs the FastAPI app with a fully wired relay over a SQLite queue
file, an in-process ledger fake and a manually advanced clock.
"""

import asyncio
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from ledger_client import AuthorizedClient, LedgerErr, LedgerErrorKind
from scrape_relay.auth import Authenticator, StaticIdentityProvider
from scrape_relay.service import create_app

from conftest import GOOD_TOKEN, PRINCIPAL, FakeLedger

pytestmark = pytest.mark.integration

AUTH = {"Authorization": f"Bearer {GOOD_TOKEN}"}
BODY = {"principalId": PRINCIPAL, "url": "https://example.com", "content": "...", "topicId": "t1"}


def _poll(fn, timeout=3.0):
    deadline = time.monotonic() + timeout
    while True:
        value = fn()
        if value or time.monotonic() > deadline:
            return value
        time.sleep(0.01)


def _status(client):
    resp = client.get("/api/queue-status")
    assert resp.status_code == 200
    return resp.json()


def test_immediate_success_creates_no_queue_entry(make_relay):
    """Test a valid submission the ledger accepts returns 200 and queues nothing."""
    ledger = FakeLedger()
    with TestClient(create_app(make_relay(ledger))) as client:
        resp = client.post("/api/submit", json=BODY, headers=AUTH)

        assert resp.status_code == 200
        ok = resp.json()["ok"]
        assert ok["dataSubmitted"] is True
        assert ok["status"] == "delivered"
        assert ok["url"] == "https://example.com"
        assert ok["topicId"] == "t1"
        assert ok["batchId"] in ledger.stored
        assert "entryId" not in ok

        status = _status(client)
        assert status["pending"] == status["inFlight"] == status["deadLettered"] == 0
    assert len(ledger.calls) == 1


def test_timeout_queues_then_retries_after_interval(make_relay, clock):
    """Test a timed-out first attempt is queued, retried five minutes later and removed."""
    ledger = FakeLedger("hang")
    with TestClient(create_app(make_relay(ledger, dispatch_timeout=0.1))) as client:
        resp = client.post("/api/submit", json=BODY, headers=AUTH)

        assert resp.status_code == 200
        ok = resp.json()["ok"]
        assert ok["status"] == "queued"
        assert ok["queued"] is True
        assert ok["dataSubmitted"] is False

        status = _status(client)
        assert status["pending"] == 1
        [entry] = status["lastErrors"]
        assert entry["entryId"] == ok["entryId"]
        assert entry["attemptCount"] == 1
        assert "timeout" in entry["lastError"]
        assert entry["nextAttemptAt"] == (clock.now() + timedelta(minutes=5)).isoformat()

        clock.advance(300)
        assert _poll(lambda: _status(client)["pending"] == 0)
        assert _poll(lambda: _status(client)["succeededRecently"] == 1)
        assert ok["batchId"] in ledger.stored
    assert ledger.calls == [ok["batchId"], ok["batchId"]]


def test_not_authorized_dead_letters_without_retry(make_relay, clock):
    """Test a NotAuthorized answer dead-letters the batch without retries."""
    ledger = FakeLedger(LedgerErr(LedgerErrorKind.NOT_AUTHORIZED))
    with TestClient(create_app(make_relay(ledger))) as client:
        resp = client.post("/api/submit", json=BODY, headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["ok"]["status"] == "dead_lettered"

        clock.advance(3600)
        time.sleep(0.1)
        status = _status(client)
        assert status["deadLettered"] == 1
        assert status["pending"] == 0

        [dead] = client.get("/api/dead-letters").json()["deadLetters"]
        assert dead["attemptCount"] == 1
        assert "NotAuthorized" in dead["lastError"]
    assert len(ledger.calls) == 1


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic abc"}])
def test_invalid_credential_rejected(make_relay, headers):
    """Test a bad or missing credential gets 401 with no queue interaction."""
    ledger = FakeLedger()
    with TestClient(create_app(make_relay(ledger))) as client:
        resp = client.post("/api/submit", json=BODY, headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"] == "not_authorized"

        status = _status(client)
        assert status["pending"] == status["deadLettered"] == 0
    assert ledger.calls == []


def test_pending_entries_survive_restart(make_relay, make_queue, batch_factory):
    """Test three pending entries are all still pending after a restart."""

    async def seed():
        q = make_queue()
        await q.open()
        for i in range(3):
            await q.enqueue(batch_factory(f"b{i}"), "timeout")
        await q.close()

    asyncio.run(seed())

    ledger = FakeLedger()
    with TestClient(create_app(make_relay(ledger))) as client:
        status = _status(client)
        assert status["pending"] == 3
        assert status["inFlight"] == 0
        assert len({e["batchId"] for e in status["lastErrors"]}) == 3
    assert ledger.calls == []


def test_malformed_payload_rejected(make_relay):
    """Test missing fields and broken JSON both answer 400."""
    ledger = FakeLedger()
    with TestClient(create_app(make_relay(ledger))) as client:
        resp = client.post("/api/submit", json={"principalId": PRINCIPAL, "url": ""}, headers=AUTH)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

        resp = client.post("/api/submit", content=b"{not json", headers={**AUTH, "Content-Type": "application/json"})
        assert resp.status_code == 400
    assert ledger.calls == []


def test_rate_limited_submission_gets_429(make_relay, clock):
    """Test a client over its bandwidth limit gets 429 with Retry-After."""
    ledger = FakeLedger()
    relay = make_relay(ledger)
    relay._auth = Authenticator(
        StaticIdentityProvider({"slow": AuthorizedClient(principal=PRINCIPAL, bandwidth_limit=5)}),
        clock=clock,
    )
    with TestClient(create_app(relay)) as client:
        headers = {"Authorization": "Bearer slow"}
        assert client.post("/api/submit", json={**BODY, "content": "abc"}, headers=headers).status_code == 200
        resp = client.post("/api/submit", json={**BODY, "content": "defg"}, headers=headers)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1


def test_queue_unavailable_refuses_instead_of_dropping(make_relay):
    """Test a broken queue store answers 503 rather than acknowledging the data."""
    ledger = FakeLedger("hang")
    relay = make_relay(ledger, dispatch_timeout=0.1)
    with TestClient(create_app(relay)) as client:
        with relay.queue.store.engine.begin() as conn:
            conn.execute(text("DROP TABLE queue_entries"))

        resp = client.post("/api/submit", json=BODY, headers=AUTH)
        assert resp.status_code == 503
        assert resp.json()["error"] == "queue_unavailable"

        health = client.get("/health").json()
        assert health["status"] == "degraded"
        assert health["queueAvailable"] is False


def test_health_and_metrics(make_relay):
    """Test health reports a live scheduler and metrics are exposed."""
    with TestClient(create_app(make_relay(FakeLedger()))) as client:
        health = client.get("/health").json()
        assert health["status"] == "ok"
        assert health["accepting"] is True
        assert health["schedulerAlive"] is True
        assert "timestamp" in health

        client.post("/api/submit", json=BODY, headers=AUTH)
        metrics = client.get("/metrics/")
        assert metrics.status_code == 200
        assert "relay_submissions_total" in metrics.text
