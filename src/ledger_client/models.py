"""
Data models for the Backend Ledger contract.

The ledger answers every call with a variant: ``{"ok": ...}`` or
``{"err": {"<Kind>": <detail>}}``. ``parse_result`` turns that wire shape into
a tagged ``LedgerOk`` / ``LedgerErr`` value.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LedgerErrorKind(str, Enum):
    """Error kinds returned by the Backend Ledger."""

    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    NOT_AUTHORIZED = "NotAuthorized"
    INVALID_INPUT = "InvalidInput"
    SYSTEM_ERROR = "SystemError"


@dataclass(frozen=True)
class LedgerOk:
    """Batch accepted; ``count`` items were stored."""

    count: int = 0


@dataclass(frozen=True)
class LedgerErr:
    """Batch rejected by the ledger."""

    kind: LedgerErrorKind
    message: Optional[str] = None

    def describe(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


LedgerResult = Union[LedgerOk, LedgerErr]


def parse_result(payload: Any) -> LedgerResult:
    """Decode a ``{"ok": ...}`` / ``{"err": ...}`` variant.

    Unknown shapes decode as ``SystemError`` so the caller treats them as
    retryable rather than silently accepted.
    """
    if not isinstance(payload, dict):
        return LedgerErr(LedgerErrorKind.SYSTEM_ERROR, f"unexpected response: {payload!r}")

    if "ok" in payload:
        body = payload["ok"]
        if isinstance(body, dict):
            return LedgerOk(count=int(body.get("count", 0)))
        if isinstance(body, int) and not isinstance(body, bool):
            return LedgerOk(count=body)
        return LedgerOk()

    err = payload.get("err")
    if isinstance(err, dict) and err:
        name, detail = next(iter(err.items()))
        try:
            kind = LedgerErrorKind(name)
        except ValueError:
            return LedgerErr(LedgerErrorKind.SYSTEM_ERROR, f"unknown error kind {name!r}")
        return LedgerErr(kind, str(detail) if detail is not None else None)
    if isinstance(err, str):
        try:
            return LedgerErr(LedgerErrorKind(err))
        except ValueError:
            return LedgerErr(LedgerErrorKind.SYSTEM_ERROR, err)

    return LedgerErr(LedgerErrorKind.SYSTEM_ERROR, f"unexpected response: {payload!r}")


class AuthorizedClient(BaseModel):
    """Identity Provider record for a submitting client (read-through cached by the relay)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    principal: str
    bandwidth_limit: int = Field(0, alias="bandwidthLimit")
    is_active: bool = Field(True, alias="isActive")
    last_active: Optional[datetime] = Field(None, alias="lastActive")

    @field_validator("last_active", mode="before")
    @classmethod
    def _from_epoch(cls, v):
        # ledger timestamps are nanoseconds since epoch
        if isinstance(v, (int, float)) and not isinstance(v, bool) and v > 1e14:
            return datetime.fromtimestamp(v / 1e9, tz=timezone.utc)
        return v
