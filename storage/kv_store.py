"""Key/value document store on top of SQLite."""
from __future__ import annotations

from typing import Callable, Optional

from sqlmodel import Session

from datetime_utils import utc_now
from models.kv_entry import KeyValueEntry
from storage.db import get_session


class KeyValueStore:
    """Explicit ``get``/``set``/``delete`` access to string documents.

    Every call runs in its own session and commits before returning, so a
    successful ``set`` is on disk by the time the caller continues.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            return row.value if row else None

    def set(self, key: str, value: str) -> None:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            if row is None:
                row = KeyValueEntry(key=key, value=value, updated_at=utc_now())
            else:
                row.value = value
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            if row:
                session.delete(row)
                session.commit()


__all__ = ["KeyValueStore"]
