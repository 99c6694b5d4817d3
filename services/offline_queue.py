from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.log import get_logger
from core.settings import OFFLINE_SYNC
from datetime_utils import epoch_millis, from_epoch_millis, parse_rfc3339, to_rfc3339_utc, utc_now
from storage.kv_store import KeyValueStore


VALID_KINDS = {"diary", "analysis"}

logger = get_logger("queue")


@dataclass(frozen=True)
class QueuedOperation:
    id: str
    kind: str
    data: Any
    enqueued_at: datetime
    retry_count: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "data": self.data,
            "enqueuedAt": to_rfc3339_utc(self.enqueued_at),
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_record(cls, record: Any) -> "QueuedOperation":
        if not isinstance(record, dict):
            raise ValueError("record is not an object")
        op_id = record.get("id")
        # documents written by the web client use "type"/"timestamp"
        kind = record.get("kind", record.get("type"))
        if not isinstance(op_id, str) or not op_id:
            raise ValueError("missing id")
        if kind not in VALID_KINDS:
            raise ValueError(f"unsupported kind: {kind!r}")

        raw_ts = record.get("enqueuedAt", record.get("timestamp"))
        if isinstance(raw_ts, (int, float)) and not isinstance(raw_ts, bool):
            enqueued_at = from_epoch_millis(raw_ts)
        else:
            enqueued_at = parse_rfc3339(raw_ts if isinstance(raw_ts, str) else None) or utc_now()

        retry_count = record.get("retryCount", 0)
        if not isinstance(retry_count, int) or isinstance(retry_count, bool) or retry_count < 0:
            raise ValueError(f"invalid retryCount: {retry_count!r}")

        return cls(
            id=op_id,
            kind=kind,
            data=record.get("data"),
            enqueued_at=enqueued_at,
            retry_count=retry_count,
        )


def _new_id(taken: set) -> str:
    while True:
        candidate = f"queue_{epoch_millis(utc_now())}_{uuid.uuid4().hex[:9]}"
        if candidate not in taken:
            return candidate


class PersistentQueue:
    """Ordered, durable list of pending remote writes.

    The whole list is stored as one JSON document under ``storage_key`` and
    rewritten after every mutation, before the mutating call returns.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        storage_key: str = OFFLINE_SYNC.queue_storage_key,
        max_retries: int = OFFLINE_SYNC.max_retries,
        on_dead_letter: Optional[Callable[[QueuedOperation], None]] = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.store = store
        self.storage_key = storage_key
        self.max_retries = max_retries
        self.on_dead_letter = on_dead_letter
        self._entries: List[QueuedOperation] = []
        self.load()

    # ------------------------------------------------------------------
    # Storage
    def load(self) -> None:
        self._entries = []
        try:
            raw = self.store.get(self.storage_key)
        except SQLAlchemyError as exc:
            logger.error("Failed to read offline queue: %s", exc)
            return
        if not raw:
            return
        try:
            records = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.error("Offline queue document is corrupt, starting empty: %s", exc)
            return
        if not isinstance(records, list):
            logger.error("Offline queue document is not a list, starting empty")
            return

        seen = set()
        for record in records:
            try:
                entry = QueuedOperation.from_record(record)
            except ValueError as exc:
                logger.warning("Skipping malformed queue record: %s", exc)
                continue
            if entry.id in seen:
                logger.warning("Skipping duplicate queue record %s", entry.id)
                continue
            seen.add(entry.id)
            self._entries.append(entry)
        logger.info("Loaded %d queued entries from storage", len(self._entries))

    def _persist(self) -> None:
        try:
            document = json.dumps([entry.to_record() for entry in self._entries], ensure_ascii=False)
            self.store.set(self.storage_key, document)
        except (TypeError, ValueError, OSError, SQLAlchemyError) as exc:
            logger.error("Failed to save offline queue: %s", exc)

    # ------------------------------------------------------------------
    # Mutations
    def enqueue(self, kind: str, data: Any) -> str:
        if kind not in VALID_KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        # the whole queue is one JSON document, so each payload must be JSON
        try:
            stored = json.loads(json.dumps(data, ensure_ascii=False))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Payload for {kind} is not JSON serialisable: {exc}") from exc
        entry = QueuedOperation(
            id=_new_id({e.id for e in self._entries}),
            kind=kind,
            data=stored,
            enqueued_at=utc_now(),
        )
        self._entries.append(entry)
        self._persist()
        logger.info("Added %s entry to offline queue: %s", kind, entry.id)
        return entry.id

    def remove(self, op_id: str) -> bool:
        index = self._index_of(op_id)
        if index is None:
            return False
        del self._entries[index]
        self._persist()
        return True

    def increment_retry(self, op_id: str) -> bool:
        """Count one failed replay; returns True when the entry was dead-lettered."""
        index = self._index_of(op_id)
        if index is None:
            return False
        entry = self._entries[index]
        attempts = entry.retry_count + 1
        if attempts >= self.max_retries:
            del self._entries[index]
            self._persist()
            logger.warning(
                "Dead-lettered %s entry %s after %d failed attempts",
                entry.kind,
                entry.id,
                attempts,
            )
            self._emit_dead_letter(replace(entry, retry_count=attempts))
            return True
        self._entries[index] = replace(entry, retry_count=attempts)
        self._persist()
        return False

    def clear(self) -> None:
        self._entries = []
        self._persist()
        logger.info("Offline queue cleared")

    # ------------------------------------------------------------------
    # Introspection
    def snapshot(self) -> Tuple[QueuedOperation, ...]:
        return tuple(replace(entry, data=copy.deepcopy(entry.data)) for entry in self._entries)

    def get(self, op_id: str) -> Optional[QueuedOperation]:
        index = self._index_of(op_id)
        if index is None:
            return None
        entry = self._entries[index]
        return replace(entry, data=copy.deepcopy(entry.data))

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    def _index_of(self, op_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.id == op_id:
                return index
        return None

    def _emit_dead_letter(self, entry: QueuedOperation) -> None:
        if self.on_dead_letter is None:
            return
        try:
            self.on_dead_letter(entry)
        except Exception:
            logger.exception("Dead-letter hook failed for %s", entry.id)


__all__ = ["PersistentQueue", "QueuedOperation", "VALID_KINDS"]
