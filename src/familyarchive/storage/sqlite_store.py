"""
SQLite-based data store.

Suitable for local use, development and tests. Datetimes are stored as
ISO-8601 UTC text, booleans as integers and JSON fields as text.
"""

import logging
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Union

from ..core.models import EntitySpec, FieldKind
from .sql_store import SqlDataStore


logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class SqliteDataStore(SqlDataStore):
    """
    SQLite-based implementation of the data store.

    Each thread gets its own connection and the database runs in WAL mode,
    so readers see the last committed state while another thread's
    transaction is open. A ":memory:" store is kept in a private temporary
    file, removed on close, because an in-memory database cannot be shared
    between connections.
    """

    db_errors = (sqlite3.Error,)

    def __init__(
        self,
        db_path: Union[str, Path] = MEMORY,
        auto_init: bool = True,
        timeout: float = 30.0,
    ):
        """
        Initialize the SQLite data store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
            auto_init: Whether to create tables automatically
            timeout: Seconds a writer waits for another connection's write lock
        """
        super().__init__()
        self.in_memory = str(db_path) == MEMORY
        self.timeout = timeout
        self._tempdir = None
        if self.in_memory:
            self._tempdir = tempfile.TemporaryDirectory(prefix="familyarchive-")
            self.db_path = Path(self._tempdir.name) / "store.db"
        else:
            self.db_path = Path(db_path)

        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._connect()

        if auto_init:
            self._init_schema()

    @property
    def store_id(self) -> str:
        if self.in_memory:
            return f"sqlite:memory:{id(self)}"
        return f"sqlite:{self.db_path.resolve()}"

    def _connect(self) -> None:
        """Establish database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        conn.execute("PRAGMA journal_mode=WAL")
        logger.debug(f"Connected to SQLite data store: {self.db_path}")

    def _get_conn(self):
        """Get (or create) the calling thread's connection."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            # close() may run on another thread
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.timeout, check_same_thread=False
            )
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _begin_read(self, conn) -> None:
        conn.execute("BEGIN")

    def _table(self, spec: EntitySpec) -> str:
        return self._quote(spec.table)

    def _column_type(self, kind: FieldKind, primary_key: bool = False) -> str:
        if primary_key:
            return "TEXT PRIMARY KEY"
        if kind == FieldKind.BOOLEAN:
            return "INTEGER"
        return "TEXT"

    def _create_table(self, cursor, spec: EntitySpec) -> None:
        columns = ",\n                ".join(
            f"{self._quote(name)} {self._column_type(kind, primary_key=(name == 'id'))}"
            for name, kind in self._columns(spec)
        )
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._table(spec)} (
                {columns}
            )
        """)
        if spec.since_field:
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS ix_{spec.table}_{spec.since_field}
                ON {self._table(spec)} ({self._quote(spec.since_field)})
            """)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._thread_local = threading.local()
        if self._tempdir is not None:
            self._tempdir.cleanup()
            self._tempdir = None
        logger.debug("Closed SQLite data store")
