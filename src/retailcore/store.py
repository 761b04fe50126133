"""Ledger store for RetailCore.

The store is the engine's only persistence dependency. It exposes a small
contract built around atomic units:

1. ``begin_atomic`` opens a unit and returns an :class:`AtomicHandle`.
2. ``execute`` applies :class:`Insert` and :class:`Update` statements inside
   the unit; ``query``/``query_one`` read through it (or outside any unit, in
   which case only committed state is visible).
3. ``commit`` makes every statement of the unit durable, ``rollback`` discards
   all of them.

Two implementations satisfy the contract: :class:`SqliteStore`, backed by an
embedded SQLite file, and :class:`MemoryStore`, which keeps the same tables in
process memory. Row values crossing this boundary are plain ``int``/``str``/
``None`` primitives; conversion to typed records happens in
:mod:`retailcore.data_manager`.
"""

from __future__ import annotations

import copy
import itertools
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from . import log
from .constants import TableName


class StorageFailure(Exception):
    """Raised when the store cannot execute a statement or commit a unit."""


# Column order mirrors the DDL below. The first column is always ``id``.
TABLE_COLUMNS: Mapping[str, Sequence[str]] = {
    TableName.PRODUCTS.value: (
        "id",
        "name",
        "sku",
        "selling_price",
        "quantity",
        "wac_cost",
        "last_unit_cost",
        "min_stock_level",
        "is_active",
        "created_at",
        "updated_at",
    ),
    TableName.CUSTOMERS.value: (
        "id",
        "name",
        "phone",
        "credit_limit",
        "credit_balance",
        "is_active",
        "created_at",
        "updated_at",
    ),
    TableName.SALES.value: (
        "id",
        "invoice_number",
        "customer_id",
        "user_id",
        "subtotal",
        "discount",
        "total",
        "payment_method",
        "payment_received",
        "change_given",
        "status",
        "notes",
        "created_at",
    ),
    TableName.SALE_LINES.value: (
        "id",
        "sale_id",
        "product_id",
        "quantity",
        "unit_price",
        "cost_at_sale",
        "line_discount",
        "line_total",
        "created_at",
    ),
    TableName.LEDGER_ENTRIES.value: (
        "id",
        "customer_id",
        "entry_type",
        "amount",
        "running_balance",
        "reference_type",
        "reference_id",
        "description",
        "user_id",
        "created_at",
    ),
    TableName.STOCK_MOVEMENTS.value: (
        "id",
        "product_id",
        "movement_type",
        "quantity",
        "unit_cost",
        "previous_stock",
        "new_stock",
        "previous_wac",
        "new_wac",
        "reference_type",
        "reference_id",
        "notes",
        "user_id",
        "created_at",
    ),
}

UNIQUE_COLUMNS: Mapping[str, Sequence[str]] = {
    TableName.PRODUCTS.value: ("sku",),
    TableName.SALES.value: ("invoice_number",),
}

# (table, column) -> referenced table
FOREIGN_KEYS: Mapping[Tuple[str, str], str] = {
    (TableName.SALES.value, "customer_id"): TableName.CUSTOMERS.value,
    (TableName.SALE_LINES.value, "sale_id"): TableName.SALES.value,
    (TableName.SALE_LINES.value, "product_id"): TableName.PRODUCTS.value,
    (TableName.LEDGER_ENTRIES.value, "customer_id"): TableName.CUSTOMERS.value,
    (TableName.STOCK_MOVEMENTS.value, "product_id"): TableName.PRODUCTS.value,
}

# (table, column) -> smallest allowed integer, mirroring the CHECK clauses.
COLUMN_MINIMUMS: Mapping[Tuple[str, str], int] = {
    (TableName.PRODUCTS.value, "quantity"): 0,
    (TableName.SALE_LINES.value, "quantity"): 1,
}

# Monetary columns are TEXT so Decimal strings survive without float affinity.
SCHEMA_STATEMENTS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS schema_info (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        sku TEXT UNIQUE,
        selling_price TEXT NOT NULL DEFAULT '0.00',
        quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        wac_cost TEXT NOT NULL DEFAULT '0.00',
        last_unit_cost TEXT NOT NULL DEFAULT '0.00',
        min_stock_level INTEGER NOT NULL DEFAULT 5,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        phone TEXT,
        credit_limit TEXT NOT NULL DEFAULT '0.00',
        credit_balance TEXT NOT NULL DEFAULT '0.00',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_number TEXT UNIQUE NOT NULL,
        customer_id INTEGER REFERENCES customers(id),
        user_id INTEGER NOT NULL,
        subtotal TEXT NOT NULL,
        discount TEXT NOT NULL,
        total TEXT NOT NULL,
        payment_method TEXT NOT NULL CHECK (payment_method IN ('cash', 'credit', 'card')),
        payment_received TEXT NOT NULL,
        change_given TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('completed', 'refunded', 'cancelled')),
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sale_lines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sale_id INTEGER NOT NULL REFERENCES sales(id),
        product_id INTEGER NOT NULL REFERENCES products(id),
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        unit_price TEXT NOT NULL,
        cost_at_sale TEXT NOT NULL,
        line_discount TEXT NOT NULL,
        line_total TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        entry_type TEXT NOT NULL CHECK (entry_type IN ('debit', 'credit')),
        amount TEXT NOT NULL,
        running_balance TEXT NOT NULL,
        reference_type TEXT,
        reference_id INTEGER,
        description TEXT,
        user_id INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_movements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id INTEGER NOT NULL REFERENCES products(id),
        movement_type TEXT NOT NULL
            CHECK (movement_type IN ('stock_in', 'sale', 'adjustment', 'return', 'damage')),
        quantity INTEGER NOT NULL,
        unit_cost TEXT,
        previous_stock INTEGER NOT NULL,
        new_stock INTEGER NOT NULL,
        previous_wac TEXT,
        new_wac TEXT,
        reference_type TEXT,
        reference_id INTEGER,
        notes TEXT,
        user_id INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sales_created_at ON sales(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_sale_lines_sale ON sale_lines(sale_id)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_customer ON ledger_entries(customer_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_movements_product ON stock_movements(product_id)",
)

Primitive = Union[int, str, None]
Row = Dict[str, Primitive]


@dataclass(frozen=True)
class Increment:
    """Computed update value: ``column = column + delta`` on integer columns."""

    delta: int


@dataclass(frozen=True)
class Range:
    """Half-open range condition ``start <= column < end``; either bound may be omitted."""

    start: Primitive = None
    end: Primitive = None


@dataclass(frozen=True)
class Above:
    """Strict lower bound condition ``column > value``."""

    value: Primitive


Condition = Union[Primitive, Range, Above]


@dataclass(frozen=True)
class Insert:
    """Append one row to ``table``; executing it returns the new row id."""

    table: str
    values: Mapping[str, Primitive]


@dataclass(frozen=True)
class Update:
    """Update the row ``row_id`` of ``table`` with literal or :class:`Increment` values."""

    table: str
    row_id: int
    values: Mapping[str, Union[Primitive, Increment]]


@dataclass(frozen=True)
class Select:
    """Read rows filtered by ``where`` and sorted by ``(column, descending)`` pairs.

    ``order_by`` columns should be integer or timestamp columns; monetary
    columns are stored as text and must be sorted by the caller after mapping.
    """

    table: str
    where: Mapping[str, Condition] = field(default_factory=dict)
    order_by: Sequence[Tuple[str, bool]] = ()
    limit: Optional[int] = None


Statement = Union[Insert, Update]


@dataclass
class AtomicHandle:
    """Token identifying one open atomic unit of a store."""

    unit_id: int
    connection: Optional[sqlite3.Connection] = field(default=None, repr=False)
    tables: Optional[Dict[str, Dict[int, Row]]] = field(default=None, repr=False)
    sequences: Optional[Dict[str, int]] = field(default=None, repr=False)
    owner: Optional[int] = None
    closed: bool = False


def _check_columns(table: str, columns: Sequence[str]) -> None:
    """Reject unknown identifiers before they reach any statement text."""

    known = TABLE_COLUMNS.get(table)
    if known is None:
        raise StorageFailure(f"Unknown table: {table}")
    for column in columns:
        if column not in known:
            raise StorageFailure(f"Unknown column '{column}' for table '{table}'")


class Store(ABC):
    """Contract shared by every store implementation."""

    @abstractmethod
    def ensure_schema(self, schema_version: str) -> None:
        """Create all tables if needed and record ``schema_version`` once."""

    @abstractmethod
    def schema_version(self) -> Optional[str]:
        """Return the schema version recorded in the store, if any."""

    @abstractmethod
    def begin_atomic(self) -> AtomicHandle:
        """Open an atomic unit."""

    @abstractmethod
    def execute(self, handle: AtomicHandle, statement: Statement) -> Optional[int]:
        """Apply ``statement`` inside the unit; inserts return the new id."""

    @abstractmethod
    def commit(self, handle: AtomicHandle) -> None:
        """Durably apply every statement of the unit."""

    @abstractmethod
    def rollback(self, handle: AtomicHandle) -> None:
        """Discard every statement of the unit."""

    @abstractmethod
    def query(self, select: Select, handle: Optional[AtomicHandle] = None) -> List[Row]:
        """Return rows matching ``select``."""

    def query_one(self, select: Select, handle: Optional[AtomicHandle] = None) -> Optional[Row]:
        """Return the first row matching ``select`` or ``None``."""

        limited = Select(select.table, select.where, select.order_by, limit=1)
        rows = self.query(limited, handle)
        return rows[0] if rows else None

    def close(self) -> None:
        """Release resources held by the store."""

    @contextmanager
    def atomic(self) -> Iterator[AtomicHandle]:
        """Run the enclosed block as one unit: commit on success, roll back on any error."""

        handle = self.begin_atomic()
        try:
            yield handle
        except BaseException:
            try:
                self.rollback(handle)
            except StorageFailure:
                log.exception("Rollback of unit %d failed", handle.unit_id)
            raise
        self.commit(handle)

    def begin_read(self) -> AtomicHandle:
        """Open a unit that only reads; it is always rolled back."""

        return self.begin_atomic()

    @contextmanager
    def consistent_read(self) -> Iterator[AtomicHandle]:
        """Run several queries against one consistent committed state.

        Queries given the yielded handle all observe the same state, so a
        concurrent unit is seen either entirely or not at all.
        """

        handle = self.begin_read()
        try:
            yield handle
        finally:
            self.rollback(handle)


class SqliteStore(Store):
    """Store backed by an embedded SQLite database file.

    Each atomic unit runs on its own connection opened with
    ``BEGIN IMMEDIATE``, so SQLite's write lock serializes units and reads
    outside a unit only ever observe committed data.
    """

    def __init__(self, path: Union[Path, str], *, timeout: float = 5.0) -> None:
        self.path = Path(path).expanduser().resolve()
        self.timeout = timeout
        self._unit_ids = itertools.count(1)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA synchronous = FULL")
        except sqlite3.Error as exc:
            raise StorageFailure(f"Unable to open database '{self.path}': {exc}") from exc
        return conn

    def ensure_schema(self, schema_version: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for ddl in SCHEMA_STATEMENTS:
                conn.execute(ddl)
            conn.execute(
                "INSERT OR IGNORE INTO schema_info (key, value) VALUES (?, ?)",
                ("schema_version", schema_version),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageFailure(f"Schema creation failed: {exc}") from exc
        finally:
            conn.close()
        log.info("Schema ensured for database '%s'", self.path)

    def schema_version(self) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM schema_info WHERE key = ?", ("schema_version",)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Unable to read schema version: {exc}") from exc
        finally:
            conn.close()
        return None if row is None else str(row["value"])

    def begin_atomic(self) -> AtomicHandle:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise StorageFailure(f"Unable to begin atomic unit: {exc}") from exc
        handle = AtomicHandle(unit_id=next(self._unit_ids), connection=conn)
        log.debug("Began atomic unit %d on '%s'", handle.unit_id, self.path)
        return handle

    def begin_read(self) -> AtomicHandle:
        conn = self._connect()
        try:
            # Deferred: the shared lock taken by the first SELECT is held until rollback.
            conn.execute("BEGIN")
        except sqlite3.Error as exc:
            conn.close()
            raise StorageFailure(f"Unable to begin read unit: {exc}") from exc
        handle = AtomicHandle(unit_id=next(self._unit_ids), connection=conn)
        log.debug("Began read unit %d on '%s'", handle.unit_id, self.path)
        return handle

    def _open_connection(self, handle: AtomicHandle) -> sqlite3.Connection:
        if handle.closed or handle.connection is None:
            raise StorageFailure(f"Atomic unit {handle.unit_id} is not open")
        return handle.connection

    def execute(self, handle: AtomicHandle, statement: Statement) -> Optional[int]:
        conn = self._open_connection(handle)
        if isinstance(statement, Insert):
            columns = list(statement.values)
            _check_columns(statement.table, columns)
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {statement.table} ({', '.join(columns)}) VALUES ({placeholders})"
            params: List[Primitive] = [statement.values[column] for column in columns]
        elif isinstance(statement, Update):
            _check_columns(statement.table, list(statement.values))
            assignments = []
            params = []
            for column, value in statement.values.items():
                if isinstance(value, Increment):
                    assignments.append(f"{column} = {column} + ?")
                    params.append(value.delta)
                else:
                    assignments.append(f"{column} = ?")
                    params.append(value)
            sql = f"UPDATE {statement.table} SET {', '.join(assignments)} WHERE id = ?"
            params.append(statement.row_id)
        else:
            raise StorageFailure(f"Unsupported statement: {statement!r}")

        try:
            cursor = conn.execute(sql, params)
        except sqlite3.Error as exc:
            log.error("Statement failed in unit %d: %s", handle.unit_id, exc)
            raise StorageFailure(f"Statement failed on '{statement.table}': {exc}") from exc

        if isinstance(statement, Update):
            if cursor.rowcount != 1:
                raise StorageFailure(f"No row {statement.row_id} in '{statement.table}'")
            return None
        return int(cursor.lastrowid)

    def commit(self, handle: AtomicHandle) -> None:
        conn = self._open_connection(handle)
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageFailure(f"Commit of unit {handle.unit_id} failed: {exc}") from exc
        finally:
            handle.closed = True
            conn.close()
        log.debug("Committed atomic unit %d", handle.unit_id)

    def rollback(self, handle: AtomicHandle) -> None:
        if handle.closed:
            return
        conn = self._open_connection(handle)
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            raise StorageFailure(f"Rollback of unit {handle.unit_id} failed: {exc}") from exc
        finally:
            handle.closed = True
            conn.close()
        log.debug("Rolled back atomic unit %d", handle.unit_id)

    def query(self, select: Select, handle: Optional[AtomicHandle] = None) -> List[Row]:
        _check_columns(select.table, [*select.where, *(column for column, _ in select.order_by)])
        clauses = []
        params: List[Primitive] = []
        for column, condition in select.where.items():
            if isinstance(condition, Range):
                if condition.start is not None:
                    clauses.append(f"{column} >= ?")
                    params.append(condition.start)
                if condition.end is not None:
                    clauses.append(f"{column} < ?")
                    params.append(condition.end)
            elif isinstance(condition, Above):
                clauses.append(f"{column} > ?")
                params.append(condition.value)
            elif condition is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(condition)

        sql = f"SELECT * FROM {select.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if select.order_by:
            sql += " ORDER BY " + ", ".join(
                f"{column} {'DESC' if descending else 'ASC'}" for column, descending in select.order_by
            )
        if select.limit is not None:
            sql += " LIMIT ?"
            params.append(int(select.limit))

        conn = self._open_connection(handle) if handle is not None else self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Query on '{select.table}' failed: {exc}") from exc
        finally:
            if handle is None:
                conn.close()
        return [dict(row) for row in rows]


class MemoryStore(Store):
    """Store keeping every table in process memory.

    Committed tables are only replaced on commit: an open unit works on a deep
    copy, so rollback simply drops the copy and readers outside the unit keep
    seeing the committed state. Units are serialized by an internal lock.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[int, Row]] = {name: {} for name in TABLE_COLUMNS}
        self._sequences: Dict[str, int] = {name: 0 for name in TABLE_COLUMNS}
        self._schema_version: Optional[str] = None
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._unit_ids = itertools.count(1)

    def ensure_schema(self, schema_version: str) -> None:
        if self._schema_version is None:
            self._schema_version = schema_version

    def schema_version(self) -> Optional[str]:
        return self._schema_version

    def begin_atomic(self) -> AtomicHandle:
        if self._owner == threading.get_ident():
            raise StorageFailure("Nested atomic units are not supported")
        self._lock.acquire()
        self._owner = threading.get_ident()
        handle = AtomicHandle(
            unit_id=next(self._unit_ids),
            tables=copy.deepcopy(self._tables),
            sequences=dict(self._sequences),
            owner=self._owner,
        )
        log.debug("Began in-memory atomic unit %d", handle.unit_id)
        return handle

    def _working_tables(self, handle: AtomicHandle) -> Dict[str, Dict[int, Row]]:
        if handle.closed or handle.tables is None:
            raise StorageFailure(f"Atomic unit {handle.unit_id} is not open")
        return handle.tables

    def execute(self, handle: AtomicHandle, statement: Statement) -> Optional[int]:
        tables = self._working_tables(handle)
        if isinstance(statement, Insert):
            _check_columns(statement.table, list(statement.values))
            table = tables[statement.table]
            self._check_unique(statement.table, table, statement.values, exclude_id=None)
            self._check_minimums(statement.table, statement.values)
            self._check_references(tables, statement.table, statement.values)
            assert handle.sequences is not None
            handle.sequences[statement.table] += 1
            row_id = handle.sequences[statement.table]
            row: Row = {column: None for column in TABLE_COLUMNS[statement.table]}
            row.update(statement.values)
            row["id"] = row_id
            table[row_id] = row
            return row_id

        if isinstance(statement, Update):
            _check_columns(statement.table, list(statement.values))
            table = tables[statement.table]
            current = table.get(statement.row_id)
            if current is None:
                raise StorageFailure(f"No row {statement.row_id} in '{statement.table}'")
            updated = dict(current)
            for column, value in statement.values.items():
                if isinstance(value, Increment):
                    base = current[column]
                    if not isinstance(base, int):
                        raise StorageFailure(f"Cannot increment non-integer column '{column}'")
                    updated[column] = base + value.delta
                else:
                    updated[column] = value
            self._check_unique(statement.table, table, updated, exclude_id=statement.row_id)
            self._check_minimums(statement.table, updated)
            self._check_references(tables, statement.table, statement.values)
            table[statement.row_id] = updated
            return None

        raise StorageFailure(f"Unsupported statement: {statement!r}")

    @staticmethod
    def _check_unique(
        table_name: str,
        table: Mapping[int, Row],
        values: Mapping[str, Any],
        *,
        exclude_id: Optional[int],
    ) -> None:
        for column in UNIQUE_COLUMNS.get(table_name, ()):
            value = values.get(column)
            if value is None:
                continue
            for row_id, row in table.items():
                if row_id != exclude_id and row[column] == value:
                    raise StorageFailure(f"UNIQUE constraint failed: {table_name}.{column}")

    @staticmethod
    def _check_minimums(table_name: str, values: Mapping[str, Any]) -> None:
        for column, value in values.items():
            minimum = COLUMN_MINIMUMS.get((table_name, column))
            if minimum is not None and isinstance(value, int) and value < minimum:
                raise StorageFailure(f"CHECK constraint failed: {table_name}.{column} >= {minimum}")

    @staticmethod
    def _check_references(
        tables: Mapping[str, Mapping[int, Row]],
        table_name: str,
        values: Mapping[str, Any],
    ) -> None:
        for column, value in values.items():
            target = FOREIGN_KEYS.get((table_name, column))
            if target is None or value is None:
                continue
            if value not in tables[target]:
                raise StorageFailure(f"FOREIGN KEY constraint failed: {table_name}.{column}")

    def _release(self, handle: AtomicHandle) -> None:
        handle.closed = True
        handle.tables = None
        handle.sequences = None
        self._owner = None
        self._lock.release()

    def commit(self, handle: AtomicHandle) -> None:
        tables = self._working_tables(handle)
        assert handle.sequences is not None
        self._tables = tables
        self._sequences = handle.sequences
        self._release(handle)
        log.debug("Committed in-memory atomic unit %d", handle.unit_id)

    def rollback(self, handle: AtomicHandle) -> None:
        if handle.closed:
            return
        self._release(handle)
        log.debug("Rolled back in-memory atomic unit %d", handle.unit_id)

    def query(self, select: Select, handle: Optional[AtomicHandle] = None) -> List[Row]:
        _check_columns(select.table, [*select.where, *(column for column, _ in select.order_by)])
        tables = self._working_tables(handle) if handle is not None else self._tables
        rows = [dict(row) for row in tables[select.table].values() if _matches(row, select.where)]
        rows.sort(key=lambda row: row["id"])
        for column, descending in reversed(select.order_by):
            # NULLs sort first ascending, as in SQLite.
            rows.sort(
                key=lambda row: (row[column] is not None, row[column] if row[column] is not None else 0),
                reverse=descending,
            )
        if select.limit is not None:
            rows = rows[: select.limit]
        return rows


def _matches(row: Mapping[str, Primitive], where: Mapping[str, Condition]) -> bool:
    for column, condition in where.items():
        value = row[column]
        if isinstance(condition, Range):
            if value is None:
                return False
            if condition.start is not None and value < condition.start:
                return False
            if condition.end is not None and value >= condition.end:
                return False
        elif isinstance(condition, Above):
            if value is None or value <= condition.value:
                return False
        elif value != condition:
            return False
    return True


__all__ = [
    "StorageFailure",
    "TABLE_COLUMNS",
    "Increment",
    "Range",
    "Above",
    "Insert",
    "Update",
    "Select",
    "AtomicHandle",
    "Store",
    "SqliteStore",
    "MemoryStore",
]
