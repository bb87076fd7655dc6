"""
Shared implementation of relational data stores.

Tables and columns are generated from the entity field tables, so a field
that is not listed for a collection is neither created, read nor written
(apart from store-only columns such as credentials, which are created but
never read). Backends supply the connection, identifier quoting, column
types and value conversion.
"""

import json
import logging
import threading
from abc import abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..core.data_store import DataStore
from ..core.exceptions import DataStoreError
from ..core.models import (
    ENTITY_SPECS, Collection, EntitySpec, FieldKind, format_datetime, get_spec,
)


logger = logging.getLogger(__name__)

# Parameters per IN (...) lookup
LOOKUP_BATCH_SIZE = 500


class SqlDataStore(DataStore):
    """
    Base class for DB-API backed data stores using qmark parameters.

    Backends hand every thread its own connection. Writes outside
    transaction() are committed immediately; writes inside it are committed
    or rolled back together when the outermost block exits. Transactions
    and read views belong to the calling thread, so readers on other
    threads never wait on the store for an open transaction.
    """

    # Driver exception types translated into DataStoreError
    db_errors: Tuple[type, ...] = ()

    def __init__(self):
        super().__init__()
        self._tx_state = threading.local()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _get_conn(self):
        """Return the DB-API connection to use from the calling thread."""
        pass

    def _begin_read(self, conn) -> None:
        """Start a read-only transaction for read_view(). Optional."""
        pass

    @abstractmethod
    def _table(self, spec: EntitySpec) -> str:
        """Quoted, qualified table name."""
        pass

    @abstractmethod
    def _column_type(self, kind: FieldKind, primary_key: bool = False) -> str:
        pass

    @abstractmethod
    def _create_table(self, cursor, spec: EntitySpec) -> None:
        pass

    def _quote(self, name: str) -> str:
        return f"[{name}]"

    def _encode(self, kind: FieldKind, value: Any) -> Any:
        """Python value to column value."""
        if value is None:
            return None
        if kind == FieldKind.BOOLEAN:
            return 1 if value else 0
        if kind == FieldKind.JSON:
            return json.dumps(value, ensure_ascii=False, sort_keys=True)
        if kind == FieldKind.DATETIME:
            return format_datetime(value)
        return value

    def _decode(self, kind: FieldKind, value: Any) -> Any:
        """Column value to Python value."""
        if value is None:
            return None
        if kind == FieldKind.BOOLEAN:
            return bool(value)
        if kind == FieldKind.JSON:
            return json.loads(value) if isinstance(value, str) else value
        if kind == FieldKind.DATETIME:
            return format_datetime(value)
        return str(value)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create every collection table."""
        conn = self._get_conn()
        cursor = conn.cursor()
        try:
            for spec in ENTITY_SPECS.values():
                self._create_table(cursor, spec)
            conn.commit()
        except self.db_errors as e:
            conn.rollback()
            raise DataStoreError(f"Failed to initialize schema: {e}") from e
        logger.debug(f"Initialized data store schema ({self.store_id})")

    def _columns(self, spec: EntitySpec) -> List[Tuple[str, FieldKind]]:
        return [(f.name, f.kind) for f in spec.fields + spec.store_only]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @property
    def _tx_depth(self) -> int:
        return getattr(self._tx_state, "depth", 0)

    @_tx_depth.setter
    def _tx_depth(self, value: int) -> None:
        self._tx_state.depth = value

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> Any:
        """Run a statement, committing unless a transaction is open."""
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, tuple(params))
            if self._tx_depth == 0:
                conn.commit()
            return cursor
        except self.db_errors as e:
            if self._tx_depth == 0:
                conn.rollback()
            raise DataStoreError(f"Database error: {e}") from e

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[tuple]:
        conn = self._get_conn()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, tuple(params))
            return [tuple(row) for row in cursor.fetchall()]
        except self.db_errors as e:
            raise DataStoreError(f"Database error: {e}") from e

    def _row_to_record(self, spec: EntitySpec, row: tuple) -> Dict[str, Any]:
        return {
            f.name: self._decode(f.kind, value)
            for f, value in zip(spec.fields, row)
        }

    def _select(self, spec: EntitySpec) -> str:
        columns = ", ".join(self._quote(name) for name in spec.field_names)
        return f"SELECT {columns} FROM {self._table(spec)}"

    def _order_by(self, spec: EntitySpec) -> str:
        return " ORDER BY " + ", ".join(self._quote(c) for c in spec.order_by)

    # ------------------------------------------------------------------
    # DataStore
    # ------------------------------------------------------------------

    def fetch_all(
        self,
        collection: Collection,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        spec = get_spec(collection)
        sql = self._select(spec)
        params: List[Any] = []
        if since is not None and spec.since_field:
            field_spec = spec.get_field(spec.since_field)
            sql += f" WHERE {self._quote(spec.since_field)} >= ?"
            params.append(self._encode(field_spec.kind, since))
        sql += self._order_by(spec)
        return [self._row_to_record(spec, row) for row in self._query(sql, params)]

    def get_many(self, collection: Collection, ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        spec = get_spec(collection)
        ids = sorted({str(i) for i in ids})
        found: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(ids), LOOKUP_BATCH_SIZE):
            batch = ids[start:start + LOOKUP_BATCH_SIZE]
            placeholders = ", ".join("?" for _ in batch)
            sql = f"{self._select(spec)} WHERE {self._quote('id')} IN ({placeholders})"
            for row in self._query(sql, batch):
                record = self._row_to_record(spec, row)
                found[record["id"]] = record
        return found

    def find_by(self, collection: Collection, field_name: str, values: Iterable[Any]) -> List[Dict[str, Any]]:
        spec = get_spec(collection)
        kind = spec.get_field(field_name).kind
        values = sorted(set(values), key=str)
        found = []
        for start in range(0, len(values), LOOKUP_BATCH_SIZE):
            batch = values[start:start + LOOKUP_BATCH_SIZE]
            placeholders = ", ".join("?" for _ in batch)
            sql = f"{self._select(spec)} WHERE {self._quote(field_name)} IN ({placeholders})"
            rows = self._query(sql, [self._encode(kind, v) for v in batch])
            found.extend(self._row_to_record(spec, row) for row in rows)
        return found

    def insert(self, collection: Collection, record: Dict[str, Any]) -> None:
        spec = get_spec(collection)
        columns = [(name, kind) for name, kind in self._columns(spec) if name in record]
        names = ", ".join(self._quote(name) for name, _ in columns)
        placeholders = ", ".join("?" for _ in columns)
        self._execute(
            f"INSERT INTO {self._table(spec)} ({names}) VALUES ({placeholders})",
            [self._encode(kind, record[name]) for name, kind in columns],
        )

    def update(self, collection: Collection, record_id: str, fields: Dict[str, Any]) -> None:
        spec = get_spec(collection)
        columns = [
            (name, kind) for name, kind in self._columns(spec)
            if name in fields and name != "id"
        ]
        if not columns:
            return
        assignments = ", ".join(f"{self._quote(name)} = ?" for name, _ in columns)
        params = [self._encode(kind, fields[name]) for name, kind in columns]
        params.append(record_id)
        cursor = self._execute(
            f"UPDATE {self._table(spec)} SET {assignments} WHERE {self._quote('id')} = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise DataStoreError(f"No {spec.collection.value} record with id {record_id}")

    def count(self, collection: Collection) -> int:
        spec = get_spec(collection)
        rows = self._query(f"SELECT COUNT(*) FROM {self._table(spec)}")
        return int(rows[0][0])

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._tx_depth += 1
        try:
            yield
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._get_conn().rollback()
                logger.debug("Rolled back transaction")
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            try:
                self._get_conn().commit()
            except self.db_errors as e:
                raise DataStoreError(f"Commit failed: {e}") from e

    @contextmanager
    def read_view(self) -> Iterator[None]:
        # Inside a transaction the thread already reads its own connection's state
        if self._tx_depth or getattr(self._tx_state, "reading", False):
            yield
            return

        conn = self._get_conn()
        try:
            self._begin_read(conn)
        except self.db_errors as e:
            raise DataStoreError(f"Failed to open read view: {e}") from e
        self._tx_state.reading = True
        try:
            yield
        finally:
            self._tx_state.reading = False
            conn.rollback()
