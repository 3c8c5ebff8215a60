"""
Demo for the submission relay.

Shows:
- Batching of client submissions per principal
- Immediate delivery vs. queueing on a flaky ledger
- Retry scheduler draining the durable queue
- Prometheus metrics (exposed on :8000/metrics)
"""

import asyncio
import tempfile
from pathlib import Path

from loguru import logger
from prometheus_client import start_http_server

from ledger_client import LedgerErr, LedgerErrorKind, LedgerOk
from scrape_relay import RelaySettings, SubmissionRelay


class FlakyLedger:
    """Refuses every third batch as congested, rejects topic 'bad' outright."""

    def __init__(self, fail_every: int = 3):
        self._n = 0
        self.fail_every = max(2, fail_every)

    async def store_batch(self, batch):
        self._n += 1
        await asyncio.sleep(0.01)  # simulate I/O
        if any(item.topic_id == "bad" for item in batch.items):
            return LedgerErr(LedgerErrorKind.INVALID_INPUT, "unknown topic")
        if self._n % self.fail_every == 0:
            return LedgerErr(LedgerErrorKind.SYSTEM_ERROR, "canister congested")
        return LedgerOk(count=len(batch.items))

    async def is_authorized_caller(self, principal: str) -> bool:
        return True


async def main():
    start_http_server(8000)
    logger.info("📊 Prometheus metrics available at http://localhost:8000/metrics")

    workdir = Path(tempfile.mkdtemp(prefix="relay-demo-"))
    settings = RelaySettings(
        _env_file=None,
        queue_url=f"sqlite:///{workdir / 'queue.db'}",
        dead_letter_archive=str(workdir / "dead-letters.ndjson"),
        static_clients={"demo-token": "aaaaa-aa"},
        retry_interval_seconds=2.0,
        batch_max_items=5,
        batch_flush_interval_seconds=0.05,
    )
    relay = SubmissionRelay.from_settings(settings, ledger=FlakyLedger())

    async with relay:
        logger.info("🚀 Submitting 20 scrapes")
        receipts = await asyncio.gather(
            *[
                relay.submit(
                    "demo-token",
                    {
                        "principalId": "aaaaa-aa",
                        "url": f"https://example.com/page/{i}",
                        "content": f"<html>page {i}</html>",
                        "topicId": "bad" if i == 7 else "t1",
                    },
                )
                for i in range(20)
            ]
        )
        by_status = {}
        for r in receipts:
            by_status[r.status] = by_status.get(r.status, 0) + 1
        logger.info(f"Immediate outcomes: {by_status}")

        logger.info("⏳ Waiting for the retry scheduler...")
        await asyncio.sleep(2.5)
        await relay.scheduler.run_once()

        snap = await relay.status.snapshot()
        logger.info(
            f"Queue: pending={snap.pending} inFlight={snap.in_flight} "
            f"deadLettered={snap.dead_lettered} succeededRecently={snap.succeeded_recently}"
        )

    logger.info(f"✅ Relay demo complete (queue files in {workdir})")


if __name__ == "__main__":
    asyncio.run(main())
