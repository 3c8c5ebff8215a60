"""
Relay error taxonomy.

Caller-facing errors carry the HTTP status they map to. Backend-facing errors
are resolved through the retry queue and never reach the original caller.
"""

from __future__ import annotations

from typing import Optional

from ledger_client import LedgerErrorKind, LedgerUnavailableError


class RelayError(Exception):
    """Base error for the relay."""

    status_code: int = 500
    code: str = "relay_error"


class ValidationError(RelayError):
    """Malformed submission payload. Not retried."""

    status_code = 400
    code = "validation_error"


class AuthorizationError(RelayError):
    """Credential unknown, inactive, or not matching the submitted principal. Not retried."""

    status_code = 401
    code = "not_authorized"


class RateLimitError(RelayError):
    """Caller exceeded its bandwidth quota. Caller should back off and resubmit."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class IdentityUnavailableError(RelayError):
    """Identity Provider unreachable and no cached client record to fall back on."""

    status_code = 503
    code = "identity_unavailable"


class BackendError(RelayError):
    """Backend Ledger refused or failed a delivery."""

    status_code = 502
    code = "backend_error"


class TransientBackendError(BackendError):
    """Timeout, congestion or temporary refusal. Retried by the scheduler."""

    code = "backend_transient"


class PermanentBackendError(BackendError):
    """Content or shape rejected by the ledger. Dead-lettered, never retried."""

    code = "backend_permanent"


class QueuePersistenceError(RelayError):
    """Durable queue store unavailable; the relay refuses work instead of dropping it."""

    status_code = 503
    code = "queue_unavailable"


class RelayUnavailableError(RelayError):
    """Relay not started or shutting down."""

    status_code = 503
    code = "relay_unavailable"


_PERMANENT_KINDS = {
    LedgerErrorKind.NOT_AUTHORIZED,
    LedgerErrorKind.INVALID_INPUT,
    LedgerErrorKind.NOT_FOUND,
}

_TRANSIENT_HINTS = ("timeout", "timed out", "temporar", "busy", "retry", "unavailable", "congest")


def map_ledger_error(kind: LedgerErrorKind, message: Optional[str] = None) -> Optional[BackendError]:
    """Map a ledger error kind onto the relay's backend error classes.

    ``AlreadyExists`` maps to None: the batch id is already stored, so the
    delivery counts as done.
    """
    if kind is LedgerErrorKind.ALREADY_EXISTS:
        return None
    text = f"{kind.value}: {message}" if message else kind.value
    if kind in _PERMANENT_KINDS:
        return PermanentBackendError(text)
    return TransientBackendError(text)


def default_retry_classifier(exc: BaseException) -> bool:
    """Return True when an exception raised by a ledger call is worth retrying."""
    if isinstance(exc, PermanentBackendError):
        return False
    if isinstance(
        exc, (TimeoutError, ConnectionError, TransientBackendError, LedgerUnavailableError)
    ):
        return True
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)
