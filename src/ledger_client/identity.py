from __future__ import annotations

from typing import Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from .errors import IdentityLookupError
from .models import AuthorizedClient


class HttpIdentityProvider:
    """Resolves a caller's bearer credential through the Identity Provider.

    ``GET {base_url}/clients/self`` with the caller's credential; the provider
    answers with the client record or a 401/403/404 when the credential is
    unknown.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client: Optional[httpx.AsyncClient] = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def resolve(self, credential: str) -> Optional[AuthorizedClient]:
        if self._client is None:
            raise RuntimeError("HttpIdentityProvider is closed")
        try:
            resp = await self._client.get(
                "/clients/self", headers={"Authorization": f"Bearer {credential}"}
            )
        except httpx.HTTPError as exc:
            raise IdentityLookupError(f"identity provider unreachable: {exc}") from exc

        if resp.status_code in (401, 403, 404):
            return None
        if resp.status_code >= 400:
            raise IdentityLookupError(f"identity provider answered {resp.status_code}")

        try:
            return AuthorizedClient.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            logger.warning(f"Identity provider returned malformed client record: {exc}")
            raise IdentityLookupError("malformed client record") from exc
