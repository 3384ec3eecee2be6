"""Thread-local SQLite handles shared by the store, the queue and the event tail.

A handle is constructed once per database file and injected into each
component. Every thread that touches the handle gets its own connection,
because sqlite3 connections must not be shared between threads.
"""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from sqlite_utils import Database


def now_iso(moment: Optional[datetime] = None) -> str:
    """Fixed-width ISO timestamp so lexical order matches time order."""
    return (moment or datetime.now()).isoformat(timespec="microseconds")


class SQLiteHandle:
    """Connection factory for one SQLite database file.

    Features:
    - One connection per thread (created lazily)
    - WAL mode for concurrent readers alongside a writer
    - Busy timeout so BEGIN IMMEDIATE waits instead of failing fast
    - Schema scripts applied once per handle
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 30.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s

        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._applied_schemas: Set[str] = set()

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_s,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()
            db = Database(conn)
            self._local.db = db
            with self._lock:
                self._connections.append(conn)
        return db

    def ensure_schema(self, schema_sql: str) -> None:
        """Run a CREATE ... IF NOT EXISTS script once for this handle."""
        with self._lock:
            if schema_sql in self._applied_schemas:
                return
        self.db.executescript(schema_sql)
        # Only a script that ran to completion counts as applied
        with self._lock:
            self._applied_schemas.add(schema_sql)

    def close(self) -> None:
        """Close every connection opened through this handle."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
