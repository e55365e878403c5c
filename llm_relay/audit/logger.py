"""
Audit Logger

Row-insert store for AuditRecords with hash chain verification.

Storage backends:
- sqlite (default): Local SQLite database
- jsonl: Append-only JSON lines file
- memory: In-memory (for testing)
- mongodb: MongoDB collection (optional, needs pymongo)

`record()` is blocking and is called off the event loop by the SinkDispatcher,
so chain updates and writes are serialized with a thread lock.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Any

from ..errors import SinkFailure
from .records import AuditRecord, ChainVerification

logger = logging.getLogger("llm-relay.audit")

STORAGE_BACKENDS = ("sqlite", "jsonl", "memory", "mongodb")

_COLUMNS = (
    "id", "timestamp", "event_type", "route", "client_key", "method", "request_url",
    "target_url", "request_headers", "request_body", "response_status", "response_headers",
    "response_body", "error", "duration_ms", "country", "trace_id", "prev_hash", "entry_hash",
)
_JSON_COLUMNS = ("request_headers", "response_headers")


class AuditLogger:
    """
    Hash-chained audit store.

    Usage:
        audit = AuditLogger(storage="sqlite", path="./relay-audit.db")
        audit.record(AuditRecord(...))
        audit.verify_chain()
    """

    def __init__(
        self,
        storage: str = "sqlite",
        path: str = "./relay-audit.db",
        mongodb_uri: str = None,
    ):
        if storage not in STORAGE_BACKENDS:
            raise ValueError(f"Unknown audit storage: {storage}")

        self.storage = storage
        self.path = path
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._entry_count = 0

        # Initialize storage
        if storage == "sqlite":
            self._init_sqlite()
        elif storage == "jsonl":
            self._init_jsonl()
        elif storage == "memory":
            self._entries: List[AuditRecord] = []
        elif storage == "mongodb":
            self._init_mongodb(mongodb_uri)

    def _init_sqlite(self):
        """Initialize SQLite storage."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_records (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                route TEXT NOT NULL,
                client_key TEXT NOT NULL,
                method TEXT NOT NULL,
                request_url TEXT NOT NULL,
                target_url TEXT,
                request_headers TEXT,
                request_body TEXT,
                response_status INTEGER,
                response_headers TEXT,
                response_body TEXT,
                error TEXT,
                duration_ms INTEGER,
                country TEXT,
                trace_id TEXT,
                prev_hash TEXT,
                entry_hash TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_timestamp ON audit_records(timestamp)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_client ON audit_records(client_key)
        """)
        self._conn.commit()

        # Get last hash
        cursor = self._conn.execute(
            "SELECT entry_hash FROM audit_records ORDER BY rowid DESC LIMIT 1"
        )
        row = cursor.fetchone()
        if row:
            self._last_hash = row[0]

        # Get entry count
        cursor = self._conn.execute("SELECT COUNT(*) FROM audit_records")
        self._entry_count = cursor.fetchone()[0]

    def _init_jsonl(self):
        """Initialize JSON lines storage."""
        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            return

        with open(path) as f:
            for line in f:
                if not line.strip():
                    continue
                self._entry_count += 1
                self._last_hash = json.loads(line).get("entry_hash")

    def _init_mongodb(self, uri: str):
        """Initialize MongoDB storage."""
        from pymongo import MongoClient
        client = MongoClient(uri)
        self._db = client.llm_relay
        self._collection = self._db.audit_records

        # Create indexes
        self._collection.create_index("timestamp")
        self._collection.create_index("client_key")

        # Get last hash
        last = self._collection.find_one(sort=[("_id", -1)])
        if last:
            self._last_hash = last.get("entry_hash")

        self._entry_count = self._collection.count_documents({})

    def record(self, record: AuditRecord) -> AuditRecord:
        """
        Append a record to the audit chain.

        Returns the record with id and hashes assigned. Raises SinkFailure
        if the backend rejects the write; the chain is left unchanged.
        """
        with self._lock:
            count = self._entry_count + 1
            record.id = f"aud_{count}_{record.timestamp.strftime('%Y%m%d%H%M%S%f')}"
            record.prev_hash = self._last_hash
            record.entry_hash = record.compute_hash()

            try:
                self._store_record(record)
            except Exception as e:
                raise SinkFailure(SinkFailure.AUDIT, f"{self.storage} write failed: {e}") from e

            self._entry_count = count
            self._last_hash = record.entry_hash

        return record

    def _store_record(self, record: AuditRecord):
        """Store record in backend."""
        if self.storage == "sqlite":
            row = record.to_dict()
            for column in _JSON_COLUMNS:
                row[column] = json.dumps(row[column])
            self._conn.execute(
                f"INSERT INTO audit_records ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                tuple(row[column] for column in _COLUMNS),
            )
            self._conn.commit()
        elif self.storage == "jsonl":
            with open(self.path, "a") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
        elif self.storage == "memory":
            self._entries.append(record)
        elif self.storage == "mongodb":
            self._collection.insert_one(record.to_dict())

    def query(
        self,
        route: str = None,
        client_key: str = None,
        event_type: str = None,
        since: datetime = None,
        until: datetime = None,
        limit: Optional[int] = 100,
    ) -> List[AuditRecord]:
        """Query audit records, newest first. `limit=None` returns everything."""
        if self.storage == "sqlite":
            return self._query_sqlite(route, client_key, event_type, since, until, limit)

        if self.storage == "mongodb":
            return self._query_mongodb(route, client_key, event_type, since, until, limit)

        entries = self._all_entries()
        if route:
            entries = [e for e in entries if e.route == route]
        if client_key:
            entries = [e for e in entries if e.client_key == client_key]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        if until:
            entries = [e for e in entries if e.timestamp <= until]

        entries = list(reversed(entries))
        return entries if limit is None else entries[:limit]

    def _all_entries(self) -> List[AuditRecord]:
        """Oldest-first records for the memory and jsonl backends."""
        if self.storage == "memory":
            with self._lock:
                return list(self._entries)

        path = Path(self.path)
        if not path.exists():
            return []
        with self._lock, open(path) as f:
            return [AuditRecord.from_dict(json.loads(line)) for line in f if line.strip()]

    def _query_sqlite(self, route, client_key, event_type, since, until, limit) -> List[AuditRecord]:
        """Query SQLite backend."""
        query = f"SELECT {', '.join(_COLUMNS)} FROM audit_records WHERE 1=1"
        params: List[Any] = []

        if route:
            query += " AND route = ?"
            params.append(route)
        if client_key:
            query += " AND client_key = ?"
            params.append(client_key)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())
        if until:
            query += " AND timestamp <= ?"
            params.append(until.isoformat())

        query += " ORDER BY rowid DESC LIMIT ?"
        params.append(-1 if limit is None else limit)

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()

        entries = []
        for row in rows:
            data = dict(zip(_COLUMNS, row))
            for column in _JSON_COLUMNS:
                data[column] = json.loads(data[column]) if data[column] else {}
            entries.append(AuditRecord.from_dict(data))
        return entries

    def _query_mongodb(self, route, client_key, event_type, since, until, limit) -> List[AuditRecord]:
        """Query MongoDB backend."""
        query: Dict[str, Any] = {}
        if route:
            query["route"] = route
        if client_key:
            query["client_key"] = client_key
        if event_type:
            query["event_type"] = event_type
        if since or until:
            query["timestamp"] = {}
            if since:
                query["timestamp"]["$gte"] = since.isoformat()
            if until:
                query["timestamp"]["$lte"] = until.isoformat()

        cursor = self._collection.find(query).sort("_id", -1)
        if limit is not None:
            cursor = cursor.limit(limit)
        return [AuditRecord.from_dict(doc) for doc in cursor]

    def verify_chain(self) -> ChainVerification:
        """
        Walk the stored trail oldest first, checking every link and hash.

        Stops at the first broken record; `entries_checked` counts it.
        """
        prev_hash = None
        checked = 0
        for entry in reversed(self.query(limit=None)):
            checked += 1
            if entry.prev_hash != prev_hash:
                problem = "prev_hash mismatch"
            elif entry.entry_hash != entry.compute_hash():
                problem = "entry_hash mismatch"
            else:
                prev_hash = entry.entry_hash
                continue

            logger.warning(f"Audit chain broken at {entry.id}: {problem}")
            return ChainVerification(
                valid=False,
                entries_checked=checked,
                first_invalid=entry.id,
                error=f"{problem} at {entry.id}",
            )

        return ChainVerification(valid=True, entries_checked=checked)

    def export(self, format: str = "json") -> str:
        """Serialize the whole trail, newest first."""
        rows = [e.to_dict() for e in self.query(limit=None)]

        if format == "json":
            return json.dumps(rows, indent=2)
        if format == "jsonl":
            return "\n".join(json.dumps(row) for row in rows)
        raise ValueError(f"Unknown export format: {format}")

    def close(self):
        if self.storage == "sqlite":
            with self._lock:
                self._conn.close()

    @property
    def stats(self) -> Dict[str, Any]:
        """Get logger statistics."""
        return {
            "storage": self.storage,
            "entry_count": self._entry_count,
            "last_hash": self._last_hash,
        }
