from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from .errors import LedgerUnavailableError
from .models import LedgerErr, LedgerErrorKind, LedgerOk, LedgerResult, parse_result

# HTTP status -> ledger error kind for responses that carry no variant body
STATUS_KINDS: dict[int, LedgerErrorKind] = {
    400: LedgerErrorKind.INVALID_INPUT,
    401: LedgerErrorKind.NOT_AUTHORIZED,
    403: LedgerErrorKind.NOT_AUTHORIZED,
    404: LedgerErrorKind.NOT_FOUND,
    409: LedgerErrorKind.ALREADY_EXISTS,
    422: LedgerErrorKind.INVALID_INPUT,
    429: LedgerErrorKind.SYSTEM_ERROR,
}


def batch_payload(batch: Any) -> dict:
    """Wire shape of a batch as the ledger's scraped-data records expect it."""
    return {
        "batchId": batch.batch_id,
        "clientPrincipal": batch.client_principal,
        "items": [
            {
                "id": item.id,
                "url": item.url,
                "topic": item.topic_id,
                "content": item.content,
                "source": "extension",
                "status": "new",
                "clientId": item.client_principal,
                "timestamp": int(item.captured_at.timestamp()),
            }
            for item in batch.items
        ],
    }


class HttpLedgerClient:
    """Async client for the Backend Ledger.

    One outbound request per call, no internal retries: retry belongs to the
    relay's queue. Transport failures raise ``LedgerUnavailableError``;
    everything the ledger actually answered comes back as a ``LedgerResult``.

    Example:
        async with HttpLedgerClient("http://ledger:8000", credential="secret") as ledger:
            result = await ledger.store_batch(batch)
    """

    def __init__(
        self,
        base_url: str,
        credential: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        self._base_url = base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HttpLedgerClient is closed")
        return self._client

    # ---------- store ----------

    async def store_batch(self, batch: Any) -> LedgerResult:
        try:
            resp = await self._http().post("/batches", json=batch_payload(batch))
        except httpx.TimeoutException as exc:
            raise LedgerUnavailableError(f"ledger timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise LedgerUnavailableError(f"ledger unreachable: {type(exc).__name__}: {exc}") from exc

        result = self._decode(resp)
        logger.debug(f"Ledger store_batch batch={batch.batch_id} status={resp.status_code} -> {result}")
        return result

    # ---------- authorization ----------

    async def is_authorized_caller(self, principal: str) -> bool:
        try:
            resp = await self._http().get(f"/callers/{principal}")
        except httpx.HTTPError as exc:
            raise LedgerUnavailableError(f"ledger unreachable: {exc}") from exc

        if resp.status_code in (401, 403, 404):
            return False
        if resp.status_code >= 400:
            raise LedgerUnavailableError(f"ledger answered {resp.status_code}")
        body = resp.json()
        if isinstance(body, dict):
            return bool(body.get("authorized", body.get("ok", False)))
        return bool(body)

    # ---------- internals ----------

    @staticmethod
    def _decode(resp: httpx.Response) -> LedgerResult:
        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and ("ok" in body or "err" in body):
            return parse_result(body)

        if resp.is_success:
            return LedgerOk(count=int(body.get("count", 0)) if isinstance(body, dict) else 0)

        kind = STATUS_KINDS.get(resp.status_code, LedgerErrorKind.SYSTEM_ERROR)
        return LedgerErr(kind, f"HTTP {resp.status_code}: {resp.text[:200]}")
