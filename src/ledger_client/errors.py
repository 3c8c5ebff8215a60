"""
Custom exceptions for the Backend Ledger client.

Transport-level failures are raised; application-level rejections come back
as ``LedgerErr`` values instead.
"""


class LedgerClientError(Exception):
    """Base error for ledger/identity client failures."""

    pass


class LedgerUnavailableError(LedgerClientError):
    """Ledger could not be reached in time (timeout, connect/reset, protocol error)."""

    pass


class IdentityLookupError(LedgerClientError):
    """Identity Provider answered with something other than a client record or a denial."""

    pass
