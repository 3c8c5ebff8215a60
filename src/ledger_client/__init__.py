"""
Backend Ledger Client Library

Async HTTP clients for the two external collaborators of the relay: the
Backend Ledger (authoritative store for scraped-data batches) and the
Identity Provider (issues and validates client credentials).

Usage:
    from ledger_client import HttpLedgerClient, LedgerOk

    async with HttpLedgerClient("https://ledger.internal", credential="...") as ledger:
        result = await ledger.store_batch(batch)
        if isinstance(result, LedgerOk):
            ...
"""

from .client import HttpLedgerClient
from .errors import IdentityLookupError, LedgerClientError, LedgerUnavailableError
from .identity import HttpIdentityProvider
from .models import (
    AuthorizedClient,
    LedgerErr,
    LedgerErrorKind,
    LedgerOk,
    LedgerResult,
    parse_result,
)

__version__ = "0.3.0"
__all__ = [
    "HttpLedgerClient",
    "HttpIdentityProvider",
    "IdentityLookupError",
    "LedgerClientError",
    "LedgerUnavailableError",
    "AuthorizedClient",
    "LedgerErr",
    "LedgerErrorKind",
    "LedgerOk",
    "LedgerResult",
    "parse_result",
]
