"""
Durable retry queue: SQL-backed entries, retry policy and dead-letter archive.
"""

from .archive import ArchivedEntry, DeadLetterArchive
from .policy import RetryPolicy, RetryStrategy
from .retry_queue import DurableRetryQueue
from .store import SqlQueueStore

__all__ = [
    "ArchivedEntry",
    "DeadLetterArchive",
    "DurableRetryQueue",
    "RetryPolicy",
    "RetryStrategy",
    "SqlQueueStore",
]
