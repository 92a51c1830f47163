"""
Agency CRM Record Store

Key-value CRUD over named collections, persisted in SQLite. Every record is
a JSON document keyed by its id; collection names may be nested paths such
as "conversations/1_3/messages" to hold subcollections.

Usage:
    with RecordStore("data/crm.db") as store:
        policies = store.collection("policies")
        policy = policies.create({"client_id": 1, "policy_number": "P-100"})
        policies.update(policy["id"], {"status": "Cancelled"})
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

import pandas as pd

from crm_errors import Conflict, NotFound

logger = logging.getLogger("RecordStore")

RecordId = Union[int, str]

# =============================================================================
# 1. SCHEMA & COLLECTIONS
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS records(
    collection TEXT NOT NULL,
    record_key TEXT NOT NULL,
    body TEXT NOT NULL,
    PRIMARY KEY(collection, record_key)
);

CREATE TABLE IF NOT EXISTS sequences(
    collection TEXT PRIMARY KEY,
    last_id INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);
"""

COLLECTIONS = (
    "users",
    "agents",
    "clients",
    "policies",
    "interactions",
    "tasks",
    "licenses",
    "notifications",
    "calendar_notes",
    "testimonials",
    "calendar_events",
    "chargebacks",
    "ai_call_logs",
    "days_off",
    "conversations",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalars coming from pandas imports
        return value.item()
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def _dumps(record: Dict[str, Any]) -> str:
    return json.dumps(record, default=_json_default)


def _key(record_id: RecordId) -> str:
    return json.dumps(record_id, default=_json_default)


# =============================================================================
# 2. THE STORE
# =============================================================================


class RecordStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    # -----------------------------------------------------------------
    # LIFECYCLE
    # -----------------------------------------------------------------
    def open(self) -> "RecordStore":
        if self._conn is not None:
            return self
        if self.db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
        # autocommit mode; transactions are issued explicitly below
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        logger.info(f"Record store opened at {self.db_path}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"Record store closed at {self.db_path}")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "RecordStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Record store is not open")
        return self._conn

    # -----------------------------------------------------------------
    # TRANSACTIONS
    # -----------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        """
        Group writes so they commit or roll back together.

        Re-entrant: nested blocks become savepoints inside the outermost
        transaction.
        """
        with self._lock:
            conn = self.conn
            depth = self._depth
            if depth == 0:
                conn.execute("BEGIN IMMEDIATE")
            else:
                conn.execute(f"SAVEPOINT sp_{depth}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    conn.execute("ROLLBACK")
                else:
                    conn.execute(f"ROLLBACK TO sp_{depth}")
                    conn.execute(f"RELEASE sp_{depth}")
                raise
            self._depth -= 1
            if depth == 0:
                conn.execute("COMMIT")
            else:
                conn.execute(f"RELEASE sp_{depth}")

    # -----------------------------------------------------------------
    # ID SEQUENCES
    # -----------------------------------------------------------------
    def _last_id(self, collection: str) -> int:
        row = self.conn.execute(
            "SELECT last_id FROM sequences WHERE collection = ?", (collection,)
        ).fetchone()
        return row["last_id"] if row else 0

    def _advance_sequence(self, collection: str, record_id: int) -> None:
        self.conn.execute(
            """
            INSERT INTO sequences(collection, last_id) VALUES(?, ?)
            ON CONFLICT(collection) DO UPDATE SET last_id = MAX(last_id, excluded.last_id)
            """,
            (collection, record_id),
        )

    def _next_id(self, collection: str) -> int:
        next_id = self._last_id(collection) + 1
        self._advance_sequence(collection, next_id)
        return next_id

    # -----------------------------------------------------------------
    # CRUD
    # -----------------------------------------------------------------
    def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        """All records of a collection in insertion order, optionally filtered by equality."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT body FROM records WHERE collection = ? ORDER BY rowid", (collection,)
            ).fetchall()
        records = [json.loads(row["body"]) for row in rows]
        if criteria:
            records = [r for r in records if all(r.get(k) == v for k, v in criteria.items())]
        return records

    def find_by_id(self, collection: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT body FROM records WHERE collection = ? AND record_key = ?",
                (collection, _key(record_id)),
            ).fetchone()
        return json.loads(row["body"]) if row else None

    def get(self, collection: str, record_id: RecordId) -> Dict[str, Any]:
        record = self.find_by_id(collection, record_id)
        if record is None:
            raise NotFound(f"{collection} record {record_id} not found")
        return record

    def create(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(data)
        with self.transaction():
            record_id = record.get("id")
            if hasattr(record_id, "item"):
                record_id = record["id"] = record_id.item()
            if record_id is None:
                record["id"] = self._next_id(collection)
            else:
                if isinstance(record_id, int) and not isinstance(record_id, bool):
                    self._advance_sequence(collection, record_id)
                if self.find_by_id(collection, record_id) is not None:
                    raise Conflict(f"{collection} record {record_id} already exists")
            body = _dumps(record)
            self.conn.execute(
                "INSERT INTO records(collection, record_key, body) VALUES(?, ?, ?)",
                (collection, _key(record["id"]), body),
            )
        return json.loads(body)

    def update(self, collection: str, record_id: RecordId, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge patch into the stored record."""
        with self.transaction():
            existing = self.get(collection, record_id)
            merged = {**existing, **patch, "id": existing["id"]}
            body = _dumps(merged)
            self.conn.execute(
                "UPDATE records SET body = ? WHERE collection = ? AND record_key = ?",
                (body, collection, _key(record_id)),
            )
        return json.loads(body)

    def delete(self, collection: str, record_id: RecordId) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "DELETE FROM records WHERE collection = ? AND record_key = ?",
                (collection, _key(record_id)),
            )
            if cur.rowcount == 0:
                raise NotFound(f"{collection} record {record_id} not found")
        return True

    # -----------------------------------------------------------------
    # ATOMIC FIELD OPERATIONS
    # -----------------------------------------------------------------
    def _write_path(
        self, collection: str, record_id: RecordId, field_path: str, fn
    ) -> Any:
        with self.transaction():
            record = self.get(collection, record_id)
            *parents, leaf = field_path.split(".")
            node = record
            for part in parents:
                node = node.setdefault(part, {})
            node[leaf] = fn(node.get(leaf))
            self.conn.execute(
                "UPDATE records SET body = ? WHERE collection = ? AND record_key = ?",
                (_dumps(record), collection, _key(record_id)),
            )
            return node[leaf]

    def increment(
        self, collection: str, record_id: RecordId, field_path: str, amount: float = 1
    ) -> Any:
        """Atomically add amount to a (dotted) numeric field; returns the new value."""
        return self._write_path(collection, record_id, field_path, lambda v: (v or 0) + amount)

    def set_path(self, collection: str, record_id: RecordId, field_path: str, value: Any) -> Any:
        """Atomically set a (dotted) field without rewriting its siblings."""
        return self._write_path(collection, record_id, field_path, lambda _: value)

    # -----------------------------------------------------------------
    # BULK LOADING
    # -----------------------------------------------------------------
    def seed(self, dataset: Dict[str, List[Dict[str, Any]]]) -> int:
        """Insert every record of a {collection: [records]} mapping in one transaction."""
        count = 0
        with self.transaction():
            for collection, records in dataset.items():
                for record in records:
                    self.create(collection, record)
                    count += 1
        logger.info(f"Seeded {count} records into {len(dataset)} collections")
        return count

    def load_csv(self, collection: str, filepath: str) -> int:
        """
        Bulk import a CSV export into a collection.
        Column names become record keys; empty cells become None.
        """
        df = pd.read_csv(filepath)
        df = df.astype(object).where(pd.notna(df), None)
        loaded = 0
        skipped = 0
        for idx, row in enumerate(df.to_dict(orient="records")):
            try:
                self.create(collection, row)
                loaded += 1
            except (Conflict, TypeError, ValueError) as e:
                skipped += 1
                logger.warning(f"Row {idx} of {filepath} skipped: {e}")
        logger.info(f"Loaded {loaded} records into {collection} from {filepath}, skipped {skipped}")
        return loaded

    def collection(self, name: str) -> "Collection":
        return Collection(self, name)


# =============================================================================
# 3. COLLECTION VIEW
# =============================================================================


class Collection:
    """CRUD bound to one collection name."""

    def __init__(self, store: RecordStore, name: str):
        self.store = store
        self.name = name

    def find(self, **criteria: Any) -> List[Dict[str, Any]]:
        return self.store.find(self.name, **criteria)

    def find_by_id(self, record_id: RecordId) -> Optional[Dict[str, Any]]:
        return self.store.find_by_id(self.name, record_id)

    def get(self, record_id: RecordId) -> Dict[str, Any]:
        return self.store.get(self.name, record_id)

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.create(self.name, data)

    def update(self, record_id: RecordId, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.update(self.name, record_id, patch)

    def delete(self, record_id: RecordId) -> bool:
        return self.store.delete(self.name, record_id)
