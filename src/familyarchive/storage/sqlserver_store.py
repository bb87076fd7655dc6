"""
SQL Server-based data store.

This is the production backend. Tables live in a dedicated schema;
datetimes are stored as UTC DATETIME2, booleans as BIT and JSON fields as
NVARCHAR(MAX) text.
"""

import hashlib
import logging
import re
import threading
from typing import Any, Optional

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.models import EntitySpec, FieldKind, parse_datetime
from .sql_store import SqlDataStore


logger = logging.getLogger(__name__)


class SqlServerDataStore(SqlDataStore):
    """
    SQL Server-based implementation of the data store.

    Each thread gets its own pyodbc connection, so transaction() spans
    exactly one connection and belongs to the thread that opened it.
    Readers on other threads skip an open transaction's row locks only
    when the database has READ_COMMITTED_SNAPSHOT enabled.
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "FamilyArchive",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "family",
        auto_init: bool = True,
        trust_server_certificate: bool = True,
    ):
        """
        Initialize the SQL Server data store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'family')
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates (for local Docker)
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerDataStore. "
                "Install with: pip install pyodbc"
            )

        if not self._is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        super().__init__()
        self.db_errors = (pyodbc.Error,)
        self.schema = schema

        if connection_string:
            self.connection_string = connection_string
            self._location = hashlib.sha256(connection_string.encode("utf-8")).hexdigest()[:16]
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )
            self._location = f"{host},{port}/{database}"

        self._thread_local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        self._connect()

        if auto_init:
            self._init_schema()

    @property
    def store_id(self) -> str:
        return f"sqlserver:{self._location}/{self.schema}"

    def _is_valid_identifier(self, name: str) -> bool:
        """
        Validate that a name is a safe SQL identifier.

        Must start with a letter or underscore, contain only letters, digits
        and underscores, fit in 128 characters and not be a reserved word.
        """
        if not name or len(name) > 128:
            return False

        if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
            return False

        reserved_words = {
            'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
            'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
            'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
        }
        return name.lower() not in reserved_words

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._get_conn()
            logger.debug(f"Connected to SQL Server data store (schema: {self.schema})")
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise

    def _get_conn(self):
        """Get (or create) a thread-local connection for safe concurrent use."""
        conn = getattr(self._thread_local, "conn", None)
        if conn is None:
            conn = pyodbc.connect(self.connection_string)
            self._thread_local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _table(self, spec: EntitySpec) -> str:
        return f"[{self.schema}].[{spec.table}]"

    def _column_type(self, kind: FieldKind, primary_key: bool = False) -> str:
        if primary_key:
            return "NVARCHAR(64) NOT NULL PRIMARY KEY"
        if kind == FieldKind.BOOLEAN:
            return "BIT"
        if kind == FieldKind.DATETIME:
            return "DATETIME2"
        return "NVARCHAR(MAX)"

    def _encode(self, kind: FieldKind, value: Any) -> Any:
        if value is not None and kind == FieldKind.DATETIME:
            # DATETIME2 carries no offset; store naive UTC
            return parse_datetime(value).replace(tzinfo=None)
        if value is not None and kind == FieldKind.BOOLEAN:
            return bool(value)
        return super()._encode(kind, value)

    def _create_table(self, cursor, spec: EntitySpec) -> None:
        # Schema name is validated in __init__; CREATE SCHEMA cannot take parameters
        cursor.execute(f"""
            IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
            BEGIN
                EXEC('CREATE SCHEMA [{self.schema}]')
            END
        """, (self.schema,))

        columns = ",\n                        ".join(
            f"{self._quote(name)} {self._column_type(kind, primary_key=(name == 'id'))}"
            for name, kind in self._columns(spec)
        )
        cursor.execute(f"""
            IF NOT EXISTS (SELECT * FROM sys.tables t
                           JOIN sys.schemas s ON t.schema_id = s.schema_id
                           WHERE t.name = ? AND s.name = ?)
            BEGIN
                CREATE TABLE {self._table(spec)} (
                        {columns}
                )
            END
        """, (spec.table, self.schema))

        if spec.since_field:
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.indexes
                               WHERE name = 'ix_{spec.table}_{spec.since_field}'
                               AND object_id = OBJECT_ID('{self._table(spec)}'))
                BEGIN
                    CREATE INDEX ix_{spec.table}_{spec.since_field}
                    ON {self._table(spec)} ({self._quote(spec.since_field)})
                END
            """)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except pyodbc.Error as e:
                    logger.warning(f"Error closing SQL Server connection: {e}")
            self._connections = []
        self._thread_local = threading.local()
        logger.debug("Closed SQL Server data store")
