"""
scrape_relay: resilient submission relay.

Accepts authenticated scrape submissions, batches them per client, delivers
them to the Backend Ledger, and keeps failed batches in a durable retry queue
until they are stored or dead-lettered.
"""

__version__ = "0.3.0"

from .auth import Authenticator, AuthorizedClientCache, StaticIdentityProvider
from .batcher import BatchConfig, BatchDelivery, SubmissionBatcher
from .dispatcher import DispatchOutcome, DispatchResult, Dispatcher
from .errors import (
    AuthorizationError,
    BackendError,
    IdentityUnavailableError,
    PermanentBackendError,
    QueuePersistenceError,
    RateLimitError,
    RelayError,
    RelayUnavailableError,
    TransientBackendError,
    ValidationError,
    default_retry_classifier,
    map_ledger_error,
)
from .models import Batch, EntryState, QueueEntry, SubmissionItem, SubmissionReceipt, SubmissionRequest
from .queue import DeadLetterArchive, DurableRetryQueue, RetryPolicy, SqlQueueStore
from .relay import RelayHealth, SubmissionRelay
from .scheduler import RetryScheduler, TickReport
from .settings import RelaySettings, get_settings
from .status import OutcomeLog, QueueStatus, StatusReporter
from .types import BackendLedger, Clock, IdentityProvider, SystemClock

__all__ = [
    # models
    "Batch",
    "EntryState",
    "QueueEntry",
    "SubmissionItem",
    "SubmissionReceipt",
    "SubmissionRequest",
    # errors
    "AuthorizationError",
    "BackendError",
    "IdentityUnavailableError",
    "PermanentBackendError",
    "QueuePersistenceError",
    "RateLimitError",
    "RelayError",
    "RelayUnavailableError",
    "TransientBackendError",
    "ValidationError",
    "default_retry_classifier",
    "map_ledger_error",
    # components
    "Authenticator",
    "AuthorizedClientCache",
    "StaticIdentityProvider",
    "BatchConfig",
    "BatchDelivery",
    "SubmissionBatcher",
    "Dispatcher",
    "DispatchOutcome",
    "DispatchResult",
    "DeadLetterArchive",
    "DurableRetryQueue",
    "RetryPolicy",
    "SqlQueueStore",
    "RetryScheduler",
    "TickReport",
    "OutcomeLog",
    "QueueStatus",
    "StatusReporter",
    "RelayHealth",
    "SubmissionRelay",
    # runtime
    "RelaySettings",
    "get_settings",
    "BackendLedger",
    "Clock",
    "IdentityProvider",
    "SystemClock",
]
