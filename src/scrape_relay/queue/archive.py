"""
File-based dead-letter archive (NDJSON).

Dead-lettered queue entries that outlive the retention window are appended
here before being deleted from the queue table, so operators can still
inspect or replay them.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from loguru import logger

from ..models import QueueEntry


@dataclass(frozen=True)
class ArchivedEntry:
    ts: float
    entry_id: str
    batch_id: str
    client_principal: str
    attempt_count: int
    last_error: str
    items: List[Dict[str, Any]]


class DeadLetterArchive:
    """Append-only NDJSON archive of pruned dead letters."""

    def __init__(self, path: Union[str, Path], *, mkdirs: bool = True):
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, entries: Sequence[QueueEntry]) -> int:
        if not entries:
            return 0
        now = time.time()
        lines = [
            json.dumps(
                {
                    "ts": now,
                    "entry_id": e.entry_id,
                    "batch_id": e.batch_id,
                    "client_principal": e.batch.client_principal,
                    "attempt_count": e.attempt_count,
                    "last_error": e.last_error or "",
                    "items": [i.model_dump(mode="json") for i in e.batch.items],
                },
                ensure_ascii=False,
            )
            for e in entries
        ]
        async with self._lock:
            await asyncio.to_thread(self._write, lines)
        logger.info(f"Archived {len(entries)} dead letters to {self.path}")
        return len(entries)

    def _write(self, lines: List[str]) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")

    async def replay(self, max_records: int = 1000) -> List[ArchivedEntry]:
        if not self.path.exists():
            return []
        async with self._lock:
            return await asyncio.to_thread(self._read, max_records)

    def _read(self, max_records: int) -> List[ArchivedEntry]:
        out: List[ArchivedEntry] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if len(out) >= max_records:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(ArchivedEntry(**json.loads(line)))
                except (ValueError, TypeError) as exc:
                    logger.warning(f"Skipping unreadable archive line: {exc}")
        return out
