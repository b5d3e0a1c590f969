# =============================================================================
# portfolio_core/offline/local_database.py
# Local SQLite Document Store for Offline Operations
# =============================================================================
"""
LocalDatabase - SQLite-backed key/value store namespaced by collection.

Features:
- Automatic schema creation
- JSON documents keyed by (collection, id)
- Equality-filter lookups mirroring the remote select
- DataFrame export (pandas)
- Durable tables for the offline sync queue and dead letters
- App settings (session profile, preferences)
"""

from __future__ import annotations
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union
import logging

import pandas as pd

from portfolio_core.data.utils import clean_record, clean_value, matches

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


class LocalDatabase:
    """
    Local SQLite database for offline data storage.

    Stores the latest known copy of every remote record so reads keep
    working when the remote service is unreachable.
    """

    # Default database location
    DEFAULT_DB_PATH = Path("local_data") / "portfolio.db"

    SCHEMA = {
        "records": """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                record_id TEXT NOT NULL,
                data_json TEXT NOT NULL,
                sync_status TEXT DEFAULT 'synced',
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (collection, record_id)
            )
        """,
        "collection_meta": """
            CREATE TABLE IF NOT EXISTS collection_meta (
                collection TEXT PRIMARY KEY,
                last_confirmed_at TEXT
            )
        """,
        "sync_queue": """
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id TEXT NOT NULL UNIQUE,
                collection TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload_json TEXT,
                enqueued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                last_error TEXT
            )
        """,
        "dead_letters": """
            CREATE TABLE IF NOT EXISTS dead_letters (
                op_id TEXT PRIMARY KEY,
                collection TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload_json TEXT,
                enqueued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                failed_at TEXT NOT NULL,
                error_json TEXT
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
    }

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        """
        Initialize local database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        if db_path == IN_MEMORY:
            self.db_path: Union[Path, str] = IN_MEMORY
        else:
            self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._connection: Optional[sqlite3.Connection] = None
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get (or open) the database connection."""
        if self._connection is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local database initialized at: {self.db_path}")

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            self._get_connection().execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.error(f"Local database ping failed: {e}")
            return False

    # =========================================================================
    # DOCUMENT OPERATIONS
    # =========================================================================

    def get(self, collection: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Get one record by id."""
        row = self._get_connection().execute(
            "SELECT data_json FROM records WHERE collection = ? AND record_id = ?",
            [collection, str(record_id)],
        ).fetchone()
        return json.loads(row["data_json"]) if row else None

    def put(
        self,
        collection: str,
        record: Dict[str, Any],
        sync_status: str = "synced",
    ) -> Dict[str, Any]:
        """
        Insert or replace a record; ``record["id"]`` is the key.

        Returns:
            The cleaned record as stored
        """
        if record.get("id") is None:
            raise ValueError(f"Record for '{collection}' has no id")

        clean = clean_record(record)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO records (collection, record_id, data_json, sync_status, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [collection, str(clean["id"]), json.dumps(clean), sync_status, datetime.now().isoformat()],
            )
        return clean

    def put_many(
        self,
        collection: str,
        records: List[Dict[str, Any]],
        sync_status: str = "synced",
    ) -> int:
        """Upsert several records in one transaction. Records without id are skipped."""
        rows = []
        now = datetime.now().isoformat()
        for record in records:
            if record.get("id") is None:
                continue
            clean = clean_record(record)
            rows.append([collection, str(clean["id"]), json.dumps(clean), sync_status, now])

        if rows:
            with self.transaction() as conn:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO records (collection, record_id, data_json, sync_status, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def delete(self, collection: str, record_id: Any) -> bool:
        """Delete a record. Returns True if it existed."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND record_id = ?",
                [collection, str(record_id)],
            )
            return cursor.rowcount > 0

    def find(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """All records of a collection matching the equality filters."""
        rows = self._get_connection().execute(
            "SELECT data_json FROM records WHERE collection = ? ORDER BY updated_at ASC",
            [collection],
        ).fetchall()
        records = [json.loads(row["data_json"]) for row in rows]
        return [record for record in records if matches(record, filters)]

    def sync_status(self, collection: str, record_id: Any) -> Optional[str]:
        row = self._get_connection().execute(
            "SELECT sync_status FROM records WHERE collection = ? AND record_id = ?",
            [collection, str(record_id)],
        ).fetchone()
        return row["sync_status"] if row else None

    def set_sync_status(self, collection: str, record_id: Any, sync_status: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE records SET sync_status = ? WHERE collection = ? AND record_id = ?",
                [sync_status, collection, str(record_id)],
            )

    def clear_collection(self, collection: str) -> int:
        """Remove every record of a collection."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE collection = ?", [collection])
            conn.execute("DELETE FROM collection_meta WHERE collection = ?", [collection])
            return cursor.rowcount

    def collections(self) -> List[str]:
        rows = self._get_connection().execute(
            "SELECT DISTINCT collection FROM records ORDER BY collection"
        ).fetchall()
        return [row["collection"] for row in rows]

    def count(self, collection: Optional[str] = None) -> int:
        if collection is None:
            row = self._get_connection().execute("SELECT COUNT(*) AS n FROM records").fetchone()
        else:
            row = self._get_connection().execute(
                "SELECT COUNT(*) AS n FROM records WHERE collection = ?", [collection]
            ).fetchone()
        return row["n"]

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> pd.DataFrame:
        """
        Load a collection into a pandas DataFrame.

        Args:
            collection: Collection name
            filters: Optional equality filters

        Returns:
            DataFrame with one row per record (empty if none)
        """
        records = self.find(collection, filters)
        if not records:
            return pd.DataFrame()
        return pd.DataFrame.from_records(records)

    # =========================================================================
    # FRESHNESS
    # =========================================================================

    def mark_confirmed(self, collection: str, when: Optional[datetime] = None) -> None:
        """Record that the remote service just confirmed this collection."""
        when = when or datetime.now()
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO collection_meta (collection, last_confirmed_at) VALUES (?, ?)",
                [collection, when.isoformat()],
            )

    def last_confirmed(self, collection: str) -> Optional[datetime]:
        row = self._get_connection().execute(
            "SELECT last_confirmed_at FROM collection_meta WHERE collection = ?",
            [collection],
        ).fetchone()
        if row is None or row["last_confirmed_at"] is None:
            return None
        return datetime.fromisoformat(row["last_confirmed_at"])

    # =========================================================================
    # SYNC QUEUE / DEAD LETTER TABLES
    # =========================================================================

    def enqueue(
        self,
        op_id: str,
        collection: str,
        operation: str,
        payload: Dict[str, Any],
        enqueued_at: datetime,
        attempts: int = 0,
    ) -> None:
        """Append an operation to the sync queue (FIFO by insertion)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_queue (op_id, collection, operation, payload_json, enqueued_at, attempts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [op_id, collection, operation, json.dumps(clean_record(payload)),
                 enqueued_at.isoformat(), attempts],
            )

    def queue_entries(self, collection: Optional[str] = None) -> List[Dict[str, Any]]:
        """Queued operations in enqueue order."""
        sql = "SELECT * FROM sync_queue"
        params: List[Any] = []
        if collection is not None:
            sql += " WHERE collection = ?"
            params.append(collection)
        sql += " ORDER BY seq ASC"

        rows = self._get_connection().execute(sql, params).fetchall()
        return [
            {
                "op_id": row["op_id"],
                "collection": row["collection"],
                "operation": row["operation"],
                "payload": json.loads(row["payload_json"]) if row["payload_json"] else {},
                "enqueued_at": datetime.fromisoformat(row["enqueued_at"]),
                "attempts": row["attempts"],
                "last_error": row["last_error"],
            }
            for row in rows
        ]

    def queue_count(self) -> int:
        row = self._get_connection().execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return row["n"]

    def record_attempt(self, op_id: str, attempts: int, error: Optional[str]) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sync_queue SET attempts = ?, last_error = ? WHERE op_id = ?",
                [attempts, error, op_id],
            )

    def dequeue(self, op_id: str) -> bool:
        """Remove an operation from the queue."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE op_id = ?", [op_id])
            return cursor.rowcount > 0

    def move_to_dead_letters(self, op_id: str, error: Dict[str, Any]) -> bool:
        """Move a queued operation to the dead-letter table in one transaction."""
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", [op_id]).fetchone()
            if row is None:
                return False
            conn.execute(
                """
                INSERT OR REPLACE INTO dead_letters
                    (op_id, collection, operation, payload_json, enqueued_at, attempts, failed_at, error_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [row["op_id"], row["collection"], row["operation"], row["payload_json"],
                 row["enqueued_at"], row["attempts"], datetime.now().isoformat(),
                 json.dumps(clean_record(error))],
            )
            conn.execute("DELETE FROM sync_queue WHERE op_id = ?", [op_id])
        return True

    def dead_letter_entries(self) -> List[Dict[str, Any]]:
        rows = self._get_connection().execute(
            "SELECT * FROM dead_letters ORDER BY failed_at ASC"
        ).fetchall()
        return [
            {
                "op_id": row["op_id"],
                "collection": row["collection"],
                "operation": row["operation"],
                "payload": json.loads(row["payload_json"]) if row["payload_json"] else {},
                "enqueued_at": datetime.fromisoformat(row["enqueued_at"]),
                "attempts": row["attempts"],
                "failed_at": datetime.fromisoformat(row["failed_at"]),
                "error": json.loads(row["error_json"]) if row["error_json"] else {},
            }
            for row in rows
        ]

    def remove_dead_letter(self, op_id: str) -> bool:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM dead_letters WHERE op_id = ?", [op_id]).rowcount > 0

    def clear_dead_letters(self) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM dead_letters").rowcount

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an app setting."""
        row = self._get_connection().execute(
            "SELECT value FROM app_settings WHERE key = ?", [key]
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return row["value"]

    def set_setting(self, key: str, value: Any) -> None:
        """Set an app setting."""
        value_str = json.dumps(clean_value(value))
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO app_settings (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                [key, value_str, datetime.now().isoformat()],
            )

    def delete_setting(self, key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM app_settings WHERE key = ?", [key])

    def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self._initialized = False
