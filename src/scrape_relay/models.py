"""
Pydantic data models for the submission relay.

SubmissionItem and Batch are immutable once built; QueueEntry is the durable
retry record for one undelivered batch.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ledger_client import AuthorizedClient

__all__ = [
    "AuthorizedClient",
    "Batch",
    "EntryState",
    "QueueEntry",
    "SubmissionItem",
    "SubmissionReceipt",
    "SubmissionRequest",
    "item_id_for",
]


class EntryState(str, Enum):
    """Lifecycle of a queue entry. Transitions only move forward."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self in (EntryState.SUCCEEDED, EntryState.DEAD_LETTERED)


class SubmissionRequest(BaseModel):
    """JSON body of ``POST /api/submit``."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    principal_id: str = Field(..., min_length=1, alias="principalId")
    url: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    topic_id: str = Field(..., min_length=1, alias="topicId")

    @field_validator("url")
    @classmethod
    def _http_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("url must be an absolute http(s) URL")
        return v


def item_id_for(principal: str, url: str, topic_id: str, content: str) -> str:
    """Deterministic item id: identical resubmissions map to the same id."""
    h = hashlib.sha256()
    for part in (principal, url, topic_id, content):
        h.update(part.encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()[:32]


class SubmissionItem(BaseModel):
    """One validated unit of scraped data."""

    model_config = ConfigDict(frozen=True)

    id: str
    client_principal: str
    url: str
    content: str
    topic_id: str
    captured_at: datetime

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


class Batch(BaseModel):
    """Bounded group of items from one client, keyed by an idempotency id."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    client_principal: str
    items: Tuple[SubmissionItem, ...]
    created_at: datetime

    @model_validator(mode="after")
    def _single_principal(self):
        if not self.items:
            raise ValueError("batch must contain at least one item")
        for item in self.items:
            if item.client_principal != self.client_principal:
                raise ValueError(
                    f"item {item.id} belongs to {item.client_principal}, "
                    f"batch belongs to {self.client_principal}"
                )
        return self

    @property
    def size_bytes(self) -> int:
        return sum(i.size_bytes for i in self.items)


class QueueEntry(BaseModel):
    """Durable retry record for one undelivered batch."""

    entry_id: str
    batch: Batch
    attempt_count: int = 1
    next_attempt_at: datetime
    last_error: Optional[str] = None
    state: EntryState = EntryState.PENDING
    created_at: datetime
    updated_at: datetime

    @property
    def batch_id(self) -> str:
        return self.batch.batch_id


class SubmissionReceipt(BaseModel):
    """What the relay tells the caller about one submitted item."""

    submission_id: str
    batch_id: str
    status: str  # "delivered" | "queued" | "dead_lettered"
    stored_count: int = 0
    entry_id: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == "delivered"
