import asyncio
import json
import sys
from datetime import timedelta

import typer
import uvicorn
from loguru import logger

from scrape_relay.errors import RelayError
from scrape_relay.relay import SubmissionRelay
from scrape_relay.service import create_app
from scrape_relay.settings import get_settings

app = typer.Typer(help="Scrape relay CLI (serve, queue inspection, maintenance)")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _relay() -> SubmissionRelay:
    settings = get_settings()
    _configure_logging(settings.log_level)
    return SubmissionRelay.from_settings(settings)


async def _with_queue(relay: SubmissionRelay, fn):
    await relay.queue.open()
    try:
        return await fn()
    finally:
        await relay.queue.close()
        await relay.close_clients()


@app.command()
def serve(host: str = typer.Option(None, help="Bind address"), port: int = typer.Option(None, help="Port")):
    """Run the relay HTTP service."""
    settings = get_settings()
    _configure_logging(settings.log_level)
    bind_host = host or settings.host
    bind_port = port or settings.port
    logger.info(f"Starting relay on {bind_host}:{bind_port} (queue={settings.queue_url}, ledger={settings.ledger_url})")
    uvicorn.run(create_app(settings=settings), host=bind_host, port=bind_port, log_level=settings.log_level.lower())


@app.command()
def status():
    """Print the queue snapshot as JSON."""
    relay = _relay()
    try:
        snapshot = asyncio.run(_with_queue(relay, relay.status.snapshot))
    except RelayError as e:
        logger.error(f"Failed to read queue status: {e}")
        sys.exit(1)
    typer.echo(json.dumps(snapshot.to_dict(), indent=2))


@app.command("dead-letters")
def dead_letters(limit: int = typer.Option(50, help="Max entries to list")):
    """List dead-lettered entries with their last error."""
    relay = _relay()
    try:
        rows = asyncio.run(_with_queue(relay, lambda: relay.status.dead_letters(limit)))
    except RelayError as e:
        logger.error(f"Failed to list dead letters: {e}")
        sys.exit(1)
    typer.echo(json.dumps(rows, indent=2))


@app.command()
def prune(older_than_hours: float = typer.Option(168.0, help="Archive dead letters older than this")):
    """Archive and delete old dead letters."""
    relay = _relay()
    retention = timedelta(hours=older_than_hours)
    try:
        n = asyncio.run(_with_queue(relay, lambda: relay.queue.prune_dead_letters(retention)))
    except RelayError as e:
        logger.error(f"Failed to prune dead letters: {e}")
        sys.exit(1)
    logger.success(f"Pruned {n} dead letters")


@app.command("retry-now")
def retry_now():
    """Run one retry tick against the configured ledger, ignoring the schedule."""
    relay = _relay()

    try:
        report = asyncio.run(_with_queue(relay, relay.scheduler.run_once))
    except RelayError as e:
        logger.error(f"Retry tick failed: {e}")
        sys.exit(1)
    logger.success(
        f"claimed={report.claimed} succeeded={report.succeeded} "
        f"rescheduled={report.rescheduled} dead_lettered={report.dead_lettered}"
    )


if __name__ == "__main__":
    app()
