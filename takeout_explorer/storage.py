import json
import logging
import os
import sqlite3
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .errors import PersistenceError
from .models import NormalizedRecord, StoredEntry

logger = logging.getLogger(__name__)


class PayloadStore(Protocol):
    def put(self, entry: StoredEntry) -> None:
        ...

    def latest(self, page_id: str) -> Optional[StoredEntry]:
        ...

    def delete_page(self, page_id: str) -> int:
        ...

    def clear(self) -> None:
        ...

    def page_ids(self) -> List[str]:
        ...

    def metrics(self) -> Dict[str, int]:
        ...


class InMemoryPayloadStore:
    """Bulk store kept in process memory, mostly for tests."""

    def __init__(self):
        self.rows: Dict[str, StoredEntry] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = 0

    def put(self, entry: StoredEntry) -> None:
        self._counter += 1
        self.rows[entry.storage_key] = entry
        self._sequence[entry.storage_key] = self._counter

    def latest(self, page_id: str) -> Optional[StoredEntry]:
        candidates = [row for row in self.rows.values() if row.page_id == page_id]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda row: (row.updated_at, self._sequence[row.storage_key]),
        )

    def delete_page(self, page_id: str) -> int:
        keys = [key for key, row in self.rows.items() if row.page_id == page_id]
        for key in keys:
            self.rows.pop(key, None)
            self._sequence.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self.rows.clear()
        self._sequence.clear()

    def page_ids(self) -> List[str]:
        return sorted({row.page_id for row in self.rows.values()})

    def metrics(self) -> Dict[str, int]:
        return {"backend": "memory", "rows": len(self.rows)}


class SQLitePayloadStore:
    """SQLite-backed bulk store holding full records, payload included."""

    def __init__(self, db_path: str):
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._init_table()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open payload store {db_path}: {exc}") from exc

    def _init_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stored_entries (
                storage_key TEXT PRIMARY KEY,
                page_id TEXT NOT NULL,
                record TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_stored_entries_page ON stored_entries (page_id)"
        )
        self.conn.commit()

    def put(self, entry: StoredEntry) -> None:
        try:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO stored_entries
                    (storage_key, page_id, record, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.storage_key,
                    entry.page_id,
                    entry.record.model_dump_json(),
                    entry.created_at.isoformat(),
                    entry.updated_at.isoformat(),
                ),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise PersistenceError(f"Failed to write {entry.storage_key}: {exc}") from exc

    def latest(self, page_id: str) -> Optional[StoredEntry]:
        try:
            row = self.conn.execute(
                """
                SELECT storage_key, page_id, record, created_at, updated_at
                FROM stored_entries
                WHERE page_id = ?
                ORDER BY updated_at DESC, rowid DESC
                LIMIT 1
                """,
                (page_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read page {page_id}: {exc}") from exc
        if row is None:
            return None
        try:
            record = NormalizedRecord.model_validate_json(row["record"])
        except ValidationError as exc:
            raise PersistenceError(f"Corrupt row {row['storage_key']}: {exc}") from exc
        return StoredEntry(
            storage_key=row["storage_key"],
            page_id=row["page_id"],
            record=record,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def delete_page(self, page_id: str) -> int:
        try:
            cursor = self.conn.execute(
                "DELETE FROM stored_entries WHERE page_id = ?", (page_id,)
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise PersistenceError(f"Failed to clear page {page_id}: {exc}") from exc
        return cursor.rowcount

    def clear(self) -> None:
        try:
            self.conn.execute("DELETE FROM stored_entries")
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise PersistenceError(f"Failed to clear payload store: {exc}") from exc

    def page_ids(self) -> List[str]:
        try:
            rows = self.conn.execute(
                "SELECT DISTINCT page_id FROM stored_entries ORDER BY page_id"
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to list stored pages: {exc}") from exc
        return [row["page_id"] for row in rows]

    def metrics(self) -> Dict[str, int]:
        row = self.conn.execute("SELECT COUNT(*) as c FROM stored_entries").fetchone()
        return {"backend": "sqlite", "rows": row["c"]}

    def close(self) -> None:
        self.conn.close()


def create_payload_store(backend: str, path: str) -> PayloadStore:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLitePayloadStore(path)
    return InMemoryPayloadStore()


class MetadataStore:
    """Small JSON mirror of every current record, payload excluded.

    Loaded synchronously at start-up so counts, names and sizes are known
    before any bulk row is read. ``path=None`` keeps the mirror in memory.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._entries: Dict[str, dict] = self._read_file()

    def _read_file(self) -> Dict[str, dict]:
        if self.path is None or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable metadata store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self) -> None:
        if self.path is None:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(self._entries, handle)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write metadata store {self.path}: {exc}") from exc

    def load(self) -> Dict[str, NormalizedRecord]:
        records: Dict[str, NormalizedRecord] = {}
        for page_id, entry in self._entries.items():
            try:
                record = NormalizedRecord.model_validate(entry["record"])
                records[page_id] = record.without_payload(entry["storage_key"])
            except (KeyError, TypeError, ValidationError) as exc:
                logger.warning("Skipping corrupt metadata for page %s: %s", page_id, exc)
        return records

    def save(self, page_id: str, record: NormalizedRecord, storage_key: str) -> None:
        previous = self._entries.get(page_id)
        self._entries[page_id] = {
            "storage_key": storage_key,
            "record": record.model_dump(mode="json", exclude={"payload"}),
        }
        try:
            self._write_file()
        except PersistenceError:
            if previous is None:
                self._entries.pop(page_id, None)
            else:
                self._entries[page_id] = previous
            raise

    def entry(self, page_id: str) -> Optional[dict]:
        return self._entries.get(page_id)

    def restore(self, page_id: str, entry: dict) -> None:
        self._entries[page_id] = entry
        self._write_file()

    def remove(self, page_id: str) -> None:
        previous = self._entries.pop(page_id, None)
        if previous is None:
            return
        try:
            self._write_file()
        except PersistenceError:
            self._entries[page_id] = previous
            raise

    def clear(self) -> None:
        self._entries = {}
        self._write_file()
