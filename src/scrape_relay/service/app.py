"""
HTTP surface of the relay (FastAPI).

    POST /api/submit         bearer-authenticated submission
    GET  /api/queue-status   queue depth by state, recent retry successes
    GET  /api/dead-letters   dead-lettered entries with their last error
    GET  /health             liveness + degraded flag
    GET  /metrics            Prometheus exposition
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app

from .. import __version__
from ..errors import RateLimitError, RelayError, ValidationError
from ..relay import SubmissionRelay
from ..settings import RelaySettings, get_settings


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_app(relay: Optional[SubmissionRelay] = None, settings: Optional[RelaySettings] = None) -> FastAPI:
    """Build the app; the relay is started and stopped with the app's lifespan."""
    if relay is None:
        relay = SubmissionRelay.from_settings(settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        try:
            yield
        finally:
            await relay.stop()

    app = FastAPI(title="Scrape Relay", version=__version__, lifespan=lifespan)
    app.state.relay = relay
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(RelayError)
    async def _relay_error(request: Request, exc: RelayError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc}")
        headers = {}
        if isinstance(exc, RateLimitError) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": str(exc)},
            headers=headers,
        )

    @app.post("/api/submit")
    async def submit(request: Request):
        credential = _bearer(request)
        raw = await request.body()
        try:
            payload = json.loads(raw) if raw else None
        except ValueError as exc:
            raise ValidationError(f"request body is not valid JSON: {exc}") from exc

        receipt = await relay.submit(credential, payload)
        body = {
            "dataSubmitted": receipt.delivered,
            "status": receipt.status,
            "submissionId": receipt.submission_id,
            "batchId": receipt.batch_id,
            "url": payload.get("url"),
            "topicId": payload.get("topicId"),
            "timestamp": int(time.time() * 1000),
        }
        if receipt.status == "queued":
            body["queued"] = True
        if receipt.entry_id:
            body["entryId"] = receipt.entry_id
        return {"ok": body}

    @app.get("/api/queue-status")
    async def queue_status():
        snapshot = await relay.status.snapshot()
        return snapshot.to_dict()

    @app.get("/api/dead-letters")
    async def dead_letters(limit: int = Query(100, ge=1, le=1000)):
        return {"deadLetters": await relay.status.dead_letters(limit)}

    @app.get("/health")
    async def health():
        return (await relay.health()).to_dict()

    return app
