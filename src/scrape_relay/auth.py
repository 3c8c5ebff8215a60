"""
Authenticator/Validator: the relay's ingress gate.

Turns a raw ``(credential, payload)`` pair into an immutable SubmissionItem or
fails fast with a caller-facing error:

- AuthorizationError: credential unknown/inactive, or payload principal mismatch
- ValidationError: malformed payload
- RateLimitError: principal exceeded its bandwidth quota

Client records are cached for ``cache_ttl`` seconds; the Identity Provider
stays the source of truth. When the provider is unreachable a stale cached
record is accepted rather than rejecting a known client.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Union

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ledger_client import AuthorizedClient
from ledger_client.errors import IdentityLookupError

from .errors import (
    AuthorizationError,
    IdentityUnavailableError,
    RateLimitError,
    ValidationError,
)
from .models import SubmissionItem, SubmissionRequest, item_id_for
from .types import Clock, IdentityProvider, SystemClock


def credential_digest(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class StaticIdentityProvider:
    """Identity provider backed by a fixed credential -> principal table.

    For deployments without an Identity Provider service, and for tests.
    """

    def __init__(
        self,
        clients: Mapping[str, Union[str, AuthorizedClient]],
        *,
        default_bandwidth_limit: int = 0,
    ):
        self._clients: Dict[str, AuthorizedClient] = {}
        for credential, client in clients.items():
            if isinstance(client, str):
                client = AuthorizedClient(
                    principal=client, bandwidth_limit=default_bandwidth_limit, is_active=True
                )
            self._clients[credential] = client

    async def resolve(self, credential: str) -> Optional[AuthorizedClient]:
        return self._clients.get(credential)


@dataclass
class _CachedClient:
    client: AuthorizedClient
    expires_at: datetime


class AuthorizedClientCache:
    """Read-through TTL cache of Identity Provider answers, keyed by credential digest."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Optional[Clock] = None):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: Dict[str, _CachedClient] = {}

    def get(self, credential: str, *, allow_stale: bool = False) -> Optional[AuthorizedClient]:
        cached = self._entries.get(credential_digest(credential))
        if cached is None:
            return None
        if not allow_stale and cached.expires_at <= self._clock.now():
            return None
        return cached.client

    def put(self, credential: str, client: AuthorizedClient) -> None:
        self._entries[credential_digest(credential)] = _CachedClient(
            client=client, expires_at=self._clock.now() + self._ttl
        )

    def invalidate(self, credential: str) -> None:
        self._entries.pop(credential_digest(credential), None)

    def __len__(self) -> int:
        return len(self._entries)


class Authenticator:
    """Credential check, payload validation and per-principal bandwidth limiting."""

    def __init__(
        self,
        identity: IdentityProvider,
        *,
        cache_ttl: float = 300.0,
        max_content_bytes: int = 1_048_576,
        rate_window_seconds: float = 60.0,
        default_bandwidth_limit: int = 0,
        clock: Optional[Clock] = None,
        limiter_storage: Optional[Storage] = None,
    ):
        self._identity = identity
        self._clock = clock or SystemClock()
        self._cache = AuthorizedClientCache(cache_ttl, self._clock)
        self._max_content_bytes = max_content_bytes
        self._rate_window = max(1, int(round(rate_window_seconds)))
        self._default_bandwidth = default_bandwidth_limit
        self._limiter = FixedWindowRateLimiter(limiter_storage or MemoryStorage())

    @property
    def cache(self) -> AuthorizedClientCache:
        return self._cache

    async def authenticate(self, credential: Optional[str], payload: Any) -> SubmissionItem:
        client = await self._authorize(credential)
        request = self._validate(payload)

        if request.principal_id != client.principal:
            logger.warning(
                f"Principal mismatch: credential belongs to {client.principal}, "
                f"payload claims {request.principal_id}"
            )
            raise AuthorizationError("credential does not belong to the submitted principal")

        cost = len(request.content.encode("utf-8"))
        self._check_bandwidth(client, cost)

        return SubmissionItem(
            id=item_id_for(client.principal, request.url, request.topic_id, request.content),
            client_principal=client.principal,
            url=request.url,
            content=request.content,
            topic_id=request.topic_id,
            captured_at=self._clock.now(),
        )

    # --------------- internals

    async def _authorize(self, credential: Optional[str]) -> AuthorizedClient:
        if not credential:
            raise AuthorizationError("missing bearer credential")

        client = self._cache.get(credential)
        if client is None:
            try:
                client = await self._identity.resolve(credential)
            except IdentityLookupError as exc:
                client = self._cache.get(credential, allow_stale=True)
                if client is None:
                    logger.warning(f"Identity provider unavailable, no cached record: {exc}")
                    raise IdentityUnavailableError("identity provider unavailable") from exc
                logger.warning(f"Identity provider unavailable, using stale record for {client.principal}")
                return self._require_active(credential, client)

            if client is None:
                raise AuthorizationError("unknown credential")
            self._cache.put(credential, client)

        return self._require_active(credential, client)

    def _require_active(self, credential: str, client: AuthorizedClient) -> AuthorizedClient:
        if not client.is_active:
            self._cache.invalidate(credential)
            raise AuthorizationError(f"client {client.principal} is inactive")
        return client

    def _validate(self, payload: Any) -> SubmissionRequest:
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        try:
            request = SubmissionRequest.model_validate(payload)
        except PydanticValidationError as exc:
            fields = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ValidationError(f"Principal ID, URL, content, and topic ID are required ({fields})") from exc

        size = len(request.content.encode("utf-8"))
        if size > self._max_content_bytes:
            raise ValidationError(
                f"content is {size} bytes, limit is {self._max_content_bytes}"
            )
        return request

    def _check_bandwidth(self, client: AuthorizedClient, cost: int) -> None:
        limit = client.bandwidth_limit if client.bandwidth_limit > 0 else self._default_bandwidth
        if limit <= 0:
            return
        item = RateLimitItemPerSecond(limit, self._rate_window)
        if self._limiter.hit(item, client.principal, cost=cost):
            return
        stats = self._limiter.get_window_stats(item, client.principal)
        retry_after = max(1, int(stats.reset_time - time.time()))
        logger.info(f"Bandwidth limit hit for {client.principal}: {cost} bytes over {limit}/{self._rate_window}s")
        raise RateLimitError(
            f"bandwidth limit of {limit} bytes per {self._rate_window}s exceeded",
            retry_after=retry_after,
        )
