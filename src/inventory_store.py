"""
Key-value persistence for the inventory.

The service stores three JSON-compatible values:
    "records"     list of InventoryRecord.to_dict()
    "containers"  list of Container.to_dict()
    "history"     list of ChangeSummary.to_dict(), append-only

Backends only need get/set. Any backend failure is raised as
StoreUnavailableError so callers can tell the operator the write did not
take effect.

DB location (SQLite backend): [Storage] DatabasePath, default
~/.stock_tracker/inventory.db
"""

import json
import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, Optional

from exceptions import StoreUnavailableError
from logger import get_logger

logger = get_logger(__name__)

RECORDS_KEY = 'records'
CONTAINERS_KEY = 'containers'
HISTORY_KEY = 'history'

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


class KeyValueStore:
    """Minimal store contract: get(key) -> value | None, set(key, value)."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """
    In-process store, mainly for tests.

    Values go through a JSON round trip on set, so callers cannot mutate
    stored state by holding on to the objects they passed in, and values
    that would not survive the SQLite backend fail here too.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(f"Value for '{key}' is not serializable: {e}", key) from e
        with self._lock:
            self._data[key] = raw

    def keys(self):
        with self._lock:
            return list(self._data)


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed store; one row per key, JSON text values."""

    def __init__(self, db_path: Path):
        self._path = Path(db_path)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailableError(f"Cannot open inventory database {self._path}: {e}") from e
        logger.debug(f"Inventory database: {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path), timeout=5)

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.executescript(_SCHEMA)

    def get(self, key: str) -> Optional[Any]:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to read '{key}': {e}", key) from e

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError as e:
            raise StoreUnavailableError(f"Stored value for '{key}' is corrupt: {e}", key) from e

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(f"Value for '{key}' is not serializable: {e}", key) from e

        sql = """
            INSERT INTO kv_store (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
        """
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(sql, (key, raw))
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to write '{key}': {e}", key) from e
