"""SQLite-backed document store.

Collections of JSON documents keyed by id, with atomic multi-document
commits, read-modify-write transactions and a run history table. The
store is constructed explicitly and passed to every component that reads
or writes documents.
"""

import sqlite3
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
from contextlib import contextmanager

from .models import to_instant, utc_now

logger = logging.getLogger(__name__)

# Hard per-commit limit imposed by the backend.
MAX_WRITES_PER_COMMIT = 500


class DocumentStoreError(Exception):
    """Raised when the document store rejects an operation."""
    pass


class _Clear:
    """Sentinel: remove the field from the stored document."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CLEAR"


CLEAR = _Clear()


def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_instant(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {
            k: _serialize_value(v)
            for k, v in value.items()
            if v is not None and v is not CLEAR
        }
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value if v is not None]
    return value


def serialize_fields(data: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Convert document fields for storage.

    ``None`` means "omit this field"; ``CLEAR`` means "remove this field
    from the stored document". Datetimes become ISO 8601 UTC strings.

    Returns:
        Tuple of (fields to write, field names to remove)
    """
    fields: Dict[str, Any] = {}
    cleared: List[str] = []
    for key, value in data.items():
        if value is CLEAR:
            cleared.append(key)
        elif value is not None:
            fields[key] = _serialize_value(value)
    return fields, cleared


def new_id() -> str:
    """Generate a new document id."""
    return uuid.uuid4().hex[:20]


@dataclass
class WriteOp:
    """One staged write against the store.

    kind is one of ``set`` (full replace), ``merge`` (create or merge
    fields), ``update`` (merge fields into an existing document) or
    ``delete``. ``tag`` labels the operation for commit accounting.
    """
    kind: str
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None

    KINDS = ("set", "merge", "update", "delete")

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise ValueError(f"Unknown write kind: {self.kind}")

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Mapping[str, Any], tag: Optional[str] = None) -> "WriteOp":
        return cls("set", collection, doc_id, dict(data), tag)

    @classmethod
    def merge(cls, collection: str, doc_id: str, data: Mapping[str, Any], tag: Optional[str] = None) -> "WriteOp":
        return cls("merge", collection, doc_id, dict(data), tag)

    @classmethod
    def update(cls, collection: str, doc_id: str, data: Mapping[str, Any], tag: Optional[str] = None) -> "WriteOp":
        return cls("update", collection, doc_id, dict(data), tag)

    @classmethod
    def delete(cls, collection: str, doc_id: str, tag: Optional[str] = None) -> "WriteOp":
        return cls("delete", collection, doc_id, {}, tag)


class Transaction:
    """Read-modify-write unit bound to one open connection."""

    def __init__(self, store: "DocumentStore", conn: sqlite3.Connection):
        self._store = store
        self._conn = conn

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._store._read(self._conn, collection, doc_id)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._store._apply(self._conn, WriteOp.set(collection, doc_id, data))

    def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._store._apply(self._conn, WriteOp.update(collection, doc_id, data))

    def merge(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._store._apply(self._conn, WriteOp.merge(collection, doc_id, data))


class DocumentStore:
    """SQLite document store for caches, inventory, invoices and sync state."""

    SCHEMA = """
    -- One row per document
    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        doc_id TEXT NOT NULL,
        data TEXT NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (collection, doc_id)
    );

    -- Index for listing a collection
    CREATE INDEX IF NOT EXISTS idx_documents_collection
    ON documents(collection);

    -- Track sync run history for auditing
    CREATE TABLE IF NOT EXISTS sync_runs (
        run_id TEXT PRIMARY KEY,
        feed TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        status TEXT NOT NULL,
        entities_processed INTEGER DEFAULT 0,
        errors TEXT
    );

    -- Index for efficient history queries
    CREATE INDEX IF NOT EXISTS idx_runs_started_at
    ON sync_runs(started_at DESC);
    """

    def __init__(self, db_path: Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_directory()
        self._init_schema()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self) -> None:
        """Initialize database schema if not exists."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            logger.info(f"Document store initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0  # Wait up to 30 seconds for locks to clear
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _exclusive(self, timeout: float = 30.0):
        """Connection holding the write lock from the first read."""
        conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # =========================================================================
    # LOW-LEVEL READ / WRITE
    # =========================================================================

    def _read(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id)
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def _write(self, conn: sqlite3.Connection, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO documents (collection, doc_id, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(collection, doc_id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (collection, doc_id, json.dumps(data), utc_now().isoformat())
        )

    def _apply(self, conn: sqlite3.Connection, op: WriteOp) -> None:
        if op.kind == "delete":
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (op.collection, op.doc_id)
            )
            return

        fields, cleared = serialize_fields(op.data)
        if op.kind == "set":
            self._write(conn, op.collection, op.doc_id, fields)
            return

        existing = self._read(conn, op.collection, op.doc_id)
        if existing is None:
            if op.kind == "update":
                raise DocumentStoreError(
                    f"Cannot update missing document {op.collection}/{op.doc_id}"
                )
            existing = {}
        existing.update(fields)
        for key in cleared:
            existing.pop(key, None)
        self._write(conn, op.collection, op.doc_id, existing)

    # =========================================================================
    # DOCUMENT READS
    # =========================================================================

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a single document, or None if not found."""
        with self._get_connection() as conn:
            return self._read(conn, collection, doc_id)

    def list_ids(self, collection: str) -> List[str]:
        """List all document ids in a collection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT doc_id FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,)
            )
            return [row["doc_id"] for row in cursor.fetchall()]

    def documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Get every document in a collection, keyed by id."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT doc_id, data FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,)
            )
            return {row["doc_id"]: json.loads(row["data"]) for row in cursor.fetchall()}

    def find(self, collection: str, field_name: str, value: Any, limit: Optional[int] = None) -> List[Tuple[str, Dict[str, Any]]]:
        """Find documents whose top-level field equals value."""
        sql = (
            "SELECT doc_id, data FROM documents "
            "WHERE collection = ? AND json_extract(data, ?) = ? ORDER BY doc_id"
        )
        params: List[Any] = [collection, f"$.{field_name}", value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._get_connection() as conn:
            cursor = conn.execute(sql, params)
            return [(row["doc_id"], json.loads(row["data"])) for row in cursor.fetchall()]

    def find_one(self, collection: str, field_name: str, value: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Find the first document whose field equals value."""
        matches = self.find(collection, field_name, value, limit=1)
        return matches[0] if matches else None

    def count(self, collection: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM documents WHERE collection = ?",
                (collection,)
            ).fetchone()
            return row["count"]

    # =========================================================================
    # DOCUMENT WRITES
    # =========================================================================

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create or fully replace a document."""
        self.commit([WriteOp.set(collection, doc_id, data)])

    def merge(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Create a document or merge fields into it."""
        self.commit([WriteOp.merge(collection, doc_id, data)])

    def delete(self, collection: str, doc_id: str) -> None:
        self.commit([WriteOp.delete(collection, doc_id)])

    def commit(self, ops: List[WriteOp]) -> None:
        """Apply a group of writes atomically.

        Args:
            ops: Operations to apply, in order

        Raises:
            DocumentStoreError: If the group exceeds the per-commit limit or
                the backend rejects it; nothing in the group is applied
        """
        if len(ops) > MAX_WRITES_PER_COMMIT:
            raise DocumentStoreError(
                f"Commit of {len(ops)} writes exceeds limit of {MAX_WRITES_PER_COMMIT}"
            )
        if not ops:
            return
        try:
            with self._get_connection() as conn:
                for op in ops:
                    self._apply(conn, op)
        except sqlite3.Error as e:
            raise DocumentStoreError(f"Commit failed: {e}") from e
        logger.debug(f"Committed {len(ops)} writes")

    @contextmanager
    def transaction(self, timeout: float = 30.0) -> Iterator[Transaction]:
        """Open a read-modify-write transaction.

        Reads inside the block see the locked state; writes are committed
        on exit and rolled back if the block raises.

        Raises:
            DocumentStoreError: If the lock cannot be taken or the commit fails
        """
        try:
            with self._exclusive(timeout=timeout) as conn:
                yield Transaction(self, conn)
        except sqlite3.Error as e:
            raise DocumentStoreError(f"Transaction failed: {e}") from e

    # =========================================================================
    # SYNC RUN HISTORY
    # =========================================================================

    def start_sync_run(self, run_id: str, feed: str) -> None:
        """Record the start of a sync run.

        Args:
            run_id: Unique ID for this sync run
            feed: Feed being synced
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_runs (run_id, feed, started_at, status, entities_processed, errors)
                VALUES (?, ?, ?, 'running', 0, '[]')
                """,
                (run_id, feed, utc_now().isoformat())
            )
            logger.info(f"Started sync run: {run_id} ({feed})")

    def complete_sync_run(
        self,
        run_id: str,
        status: str,
        entities_processed: int,
        errors: List[str]
    ) -> None:
        """Record completion of a sync run.

        Args:
            run_id: Sync run ID
            status: Final status (success, failed)
            entities_processed: Number of entities processed
            errors: List of error messages
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET completed_at = ?,
                    status = ?,
                    entities_processed = ?,
                    errors = ?
                WHERE run_id = ?
                """,
                (utc_now().isoformat(), status, entities_processed, json.dumps(errors), run_id)
            )
            logger.info(f"Completed sync run: {run_id} with status {status}")

    def get_sync_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent sync runs, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT ?",
                (limit,)
            )
            return [
                {
                    "run_id": row["run_id"],
                    "feed": row["feed"],
                    "started_at": to_instant(row["started_at"]),
                    "completed_at": to_instant(row["completed_at"]),
                    "status": row["status"],
                    "entities_processed": row["entities_processed"],
                    "errors": json.loads(row["errors"]) if row["errors"] else [],
                }
                for row in cursor.fetchall()
            ]

    def get_stats(self) -> dict:
        """Get store statistics.

        Returns:
            Dictionary with document counts and last successful run per feed
        """
        with self._get_connection() as conn:
            stats = {}

            cursor = conn.execute(
                "SELECT collection, COUNT(*) AS count FROM documents GROUP BY collection"
            )
            stats["documents"] = {row["collection"]: row["count"] for row in cursor.fetchall()}

            cursor = conn.execute(
                """
                SELECT feed, MAX(completed_at) AS completed_at FROM sync_runs
                WHERE status = 'success'
                GROUP BY feed
                """
            )
            stats["last_successful_sync"] = {
                row["feed"]: row["completed_at"] for row in cursor.fetchall()
            }

            return stats
