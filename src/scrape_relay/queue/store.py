"""
SQL persistence backend for the durable retry queue.

SQLAlchemy Core over any database URL (SQLite by default). One row per queue
entry; the batch itself is stored as JSON. Timestamps are naive UTC.

State changes are compare-and-set updates guarded by the expected current
state, so a claim or completion can only succeed once per entry even when
several writers race.
"""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, RowMapping, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..errors import QueuePersistenceError
from ..metrics import QUEUE_PERSISTENCE_ERRORS_TOTAL
from ..models import Batch, EntryState, QueueEntry

metadata = MetaData()

queue_entries = Table(
    "queue_entries",
    metadata,
    Column("entry_id", String(64), primary_key=True),
    Column("batch_id", String(64), nullable=False, unique=True),
    Column("client_principal", String(128), nullable=False, index=True),
    Column("batch", Text, nullable=False),
    Column("attempt_count", Integer, nullable=False, default=1),
    Column("next_attempt_at", DateTime(), nullable=False),
    Column("last_error", Text),
    Column("state", String(20), nullable=False),
    Column("created_at", DateTime(), nullable=False),
    Column("updated_at", DateTime(), nullable=False),
    Index("ix_queue_entries_due", "state", "next_attempt_at"),
)


def to_db(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_db(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _row_to_entry(row: RowMapping) -> QueueEntry:
    return QueueEntry(
        entry_id=row["entry_id"],
        batch=Batch.model_validate_json(row["batch"]),
        attempt_count=row["attempt_count"],
        next_attempt_at=from_db(row["next_attempt_at"]),
        last_error=row["last_error"],
        state=EntryState(row["state"]),
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


def _guard(operation: str):
    """Wrap SQLAlchemy failures in QueuePersistenceError."""

    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as exc:
                QUEUE_PERSISTENCE_ERRORS_TOTAL.labels(operation).inc()
                logger.error(f"Queue store {operation} failed: {type(exc).__name__}: {exc}")
                raise QueuePersistenceError(f"queue store {operation} failed: {exc}") from exc

        return wrapper

    return deco


class SqlQueueStore:
    """Queue entries table plus the atomic state transitions over it."""

    def __init__(self, url: str = "sqlite:///./data-queue/relay-queue.db", *, engine: Optional[Engine] = None):
        if engine is None:
            sa_url = make_url(url)
            kwargs: Dict[str, object] = {"future": True, "pool_pre_ping": True}
            if sa_url.get_backend_name() == "sqlite":
                # queue calls run in worker threads
                kwargs["connect_args"] = {"check_same_thread": False}
                if sa_url.database in (None, "", ":memory:"):
                    # one shared connection, otherwise every checkout sees an empty database
                    kwargs["poolclass"] = StaticPool
                else:
                    Path(sa_url.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url, **kwargs)
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @_guard("open")
    def create_schema(self) -> None:
        metadata.create_all(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    # ---------- writes ----------

    @_guard("insert")
    def insert(self, entry: QueueEntry) -> QueueEntry:
        """Insert a new entry; if its batch id is already queued, return the existing entry."""
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(queue_entries).values(
                        entry_id=entry.entry_id,
                        batch_id=entry.batch.batch_id,
                        client_principal=entry.batch.client_principal,
                        batch=entry.batch.model_dump_json(),
                        attempt_count=entry.attempt_count,
                        next_attempt_at=to_db(entry.next_attempt_at),
                        last_error=entry.last_error,
                        state=entry.state.value,
                        created_at=to_db(entry.created_at),
                        updated_at=to_db(entry.updated_at),
                    )
                )
            return entry
        except IntegrityError:
            existing = self.get_by_batch_id(entry.batch.batch_id)
            if existing is None:
                raise
            logger.info(f"Batch {entry.batch.batch_id} already queued as {existing.entry_id}")
            return existing

    @_guard("claim")
    def claim_due(self, now: datetime, limit: int) -> List[QueueEntry]:
        """Move due pending entries to in-flight and return the ones this call won."""
        claimed: List[QueueEntry] = []
        with self._engine.begin() as conn:
            candidates = conn.execute(
                select(queue_entries.c.entry_id)
                .where(queue_entries.c.state == EntryState.PENDING.value)
                .where(queue_entries.c.next_attempt_at <= to_db(now))
                .order_by(queue_entries.c.next_attempt_at)
                .limit(limit)
            ).scalars().all()

            for entry_id in candidates:
                res = conn.execute(
                    update(queue_entries)
                    .where(queue_entries.c.entry_id == entry_id)
                    .where(queue_entries.c.state == EntryState.PENDING.value)
                    .values(state=EntryState.IN_FLIGHT.value, updated_at=to_db(now))
                )
                if res.rowcount == 1:
                    row = self._fetch(conn, entry_id)
                    if row is not None:
                        claimed.append(_row_to_entry(row))
        return claimed

    @_guard("transition")
    def transition(
        self,
        entry_id: str,
        *,
        expected: EntryState,
        state: EntryState,
        now: datetime,
        attempt_count: Optional[int] = None,
        next_attempt_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> Optional[QueueEntry]:
        """Compare-and-set state change. Returns None if the entry was not in ``expected``."""
        values: Dict[str, object] = {"state": state.value, "updated_at": to_db(now)}
        if attempt_count is not None:
            values["attempt_count"] = attempt_count
        if next_attempt_at is not None:
            values["next_attempt_at"] = to_db(next_attempt_at)
        if last_error is not None:
            values["last_error"] = last_error

        with self._engine.begin() as conn:
            res = conn.execute(
                update(queue_entries)
                .where(queue_entries.c.entry_id == entry_id)
                .where(queue_entries.c.state == expected.value)
                .values(**values)
            )
            if res.rowcount != 1:
                return None
            row = self._fetch(conn, entry_id)
            return _row_to_entry(row) if row is not None else None

    @_guard("remove")
    def remove_delivered(self, entry_id: str, *, now: datetime, attempt_count: int) -> Optional[QueueEntry]:
        """Delete a delivered in-flight entry and return its final SUCCEEDED view, in one transaction."""
        with self._engine.begin() as conn:
            row = self._fetch(conn, entry_id)
            if row is None or row["state"] != EntryState.IN_FLIGHT.value:
                return None
            res = conn.execute(
                delete(queue_entries)
                .where(queue_entries.c.entry_id == entry_id)
                .where(queue_entries.c.state == EntryState.IN_FLIGHT.value)
            )
            if res.rowcount != 1:
                return None
        return _row_to_entry(row).model_copy(
            update={"state": EntryState.SUCCEEDED, "attempt_count": attempt_count, "updated_at": now}
        )

    @_guard("delete")
    def delete(self, entry_ids: Sequence[str]) -> int:
        if not entry_ids:
            return 0
        with self._engine.begin() as conn:
            res = conn.execute(delete(queue_entries).where(queue_entries.c.entry_id.in_(list(entry_ids))))
            return res.rowcount

    @_guard("release")
    def release_in_flight(self, now: datetime) -> int:
        """In-flight -> pending, due immediately. Used on startup and shutdown."""
        with self._engine.begin() as conn:
            res = conn.execute(
                update(queue_entries)
                .where(queue_entries.c.state == EntryState.IN_FLIGHT.value)
                .values(
                    state=EntryState.PENDING.value,
                    next_attempt_at=to_db(now),
                    updated_at=to_db(now),
                )
            )
            return res.rowcount

    # ---------- reads ----------

    @_guard("read")
    def get(self, entry_id: str) -> Optional[QueueEntry]:
        with self._engine.connect() as conn:
            row = self._fetch(conn, entry_id)
            return _row_to_entry(row) if row is not None else None

    @_guard("read")
    def get_by_batch_id(self, batch_id: str) -> Optional[QueueEntry]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(queue_entries).where(queue_entries.c.batch_id == batch_id)
            ).mappings().first()
            return _row_to_entry(row) if row is not None else None

    @_guard("read")
    def count_by_state(self) -> Dict[EntryState, int]:
        counts = {s: 0 for s in EntryState}
        with self._engine.connect() as conn:
            for state, n in conn.execute(
                select(queue_entries.c.state, func.count()).group_by(queue_entries.c.state)
            ):
                counts[EntryState(state)] = n
        return counts

    @_guard("read")
    def list_entries(
        self,
        states: Optional[Iterable[EntryState]] = None,
        *,
        limit: int = 100,
        updated_before: Optional[datetime] = None,
    ) -> List[QueueEntry]:
        stmt = select(queue_entries).order_by(queue_entries.c.updated_at.desc()).limit(limit)
        if states is not None:
            stmt = stmt.where(queue_entries.c.state.in_([s.value for s in states]))
        if updated_before is not None:
            stmt = stmt.where(queue_entries.c.updated_at < to_db(updated_before))
        with self._engine.connect() as conn:
            return [_row_to_entry(r) for r in conn.execute(stmt).mappings().all()]

    @staticmethod
    def _fetch(conn: Connection, entry_id: str) -> Optional[RowMapping]:
        return conn.execute(
            select(queue_entries).where(queue_entries.c.entry_id == entry_id)
        ).mappings().first()
