"""Host record storage as seen by the backfill.

The host database owns storage and indexing; vecfield only needs to scan an
application's table, write a record and set fields on a record that has not
changed since it was read. RecordStore is that narrow interface.
InMemoryRecordStore is a dict-backed implementation used by tests and
examples.
"""

import threading
from collections.abc import Iterable
from typing import Any, Protocol


class RecordStore(Protocol):
    """Protocol for host record storage.

    Records are plain dicts carrying an `id` key.
    """

    def scan(self, app_id: str, table: str) -> Iterable[dict[str, Any]]:
        """Iterate over every record of a table."""
        ...  # pragma: no cover

    def put(self, app_id: str, table: str, record: dict[str, Any]) -> None:
        """Insert or replace a record (keyed by its `id`)."""
        ...  # pragma: no cover

    def update_if(
        self,
        app_id: str,
        table: str,
        record_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        """Atomically apply `changes` if every `expected` field still holds.

        A field expected to be None also matches an absent field.

        Returns:
            False (and nothing is written) if the record is gone or any
            expected field differs.
        """
        ...  # pragma: no cover


class InMemoryRecordStore:
    """Dict-backed RecordStore.

    Example:
        store = InMemoryRecordStore()
        store.put("docs", "documents", {"id": "doc-1", "content": "hello"})
        list(store.scan("docs", "documents"))
    """

    def __init__(self) -> None:
        self._tables: dict[tuple[str, str], dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self.put_count = 0

    def scan(self, app_id: str, table: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._tables.get((app_id, table), {})
            return [dict(record) for record in rows.values()]

    def put(self, app_id: str, table: str, record: dict[str, Any]) -> None:
        if "id" not in record:
            raise ValueError("Record must have an 'id'")
        with self._lock:
            self._tables.setdefault((app_id, table), {})[str(record["id"])] = dict(record)
            self.put_count += 1

    def update_if(
        self,
        app_id: str,
        table: str,
        record_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        with self._lock:
            record = self._tables.get((app_id, table), {}).get(record_id)
            if record is None:
                return False
            for field, value in expected.items():
                if record.get(field) != value:
                    return False
            record.update(changes)
            self.put_count += 1
            return True

    def get(self, app_id: str, table: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._tables.get((app_id, table), {}).get(record_id)
            return dict(record) if record is not None else None
