"""Persistence Port - narrow CRUD interface over the primary store.

The pipeline only ever talks to storage through ``PersistencePort``. The
contract is "read what was last successfully written": every mutating call
runs in its own transaction and either commits fully or raises
``PersistenceError`` with nothing written. ``atomic()`` groups several calls
into one transaction, for check-then-write sequences such as guarded
deletes.

``SQLiteStore`` is the shipped implementation. It holds one connection that
is shared between request threads and side-effect workers, serialised by a
lock.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

from ..errors import PersistenceError


# SQL schema for the entity tables
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS citizen_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    full_name TEXT NOT NULL,
    contact_info TEXT NOT NULL DEFAULT '',
    request_type TEXT NOT NULL DEFAULT 'general',
    subject TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'new',
    priority TEXT NOT NULL DEFAULT 'medium',
    assigned_to INTEGER,
    ai_processed INTEGER NOT NULL DEFAULT 0,
    ai_classification TEXT,
    response_text TEXT,
    blockchain_hash TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL DEFAULT 'general',
    description TEXT NOT NULL DEFAULT '',
    model_id INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    system_prompt TEXT NOT NULL DEFAULT '',
    config TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- No foreign keys: inbound references are checked by the repositories
CREATE TABLE IF NOT EXISTS agent_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id INTEGER NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    action_type TEXT NOT NULL,
    result TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_type TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    transaction_hash TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    confirmed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_requests_status ON citizen_requests(status);
CREATE INDEX IF NOT EXISTS idx_results_agent ON agent_results(agent_id);
CREATE INDEX IF NOT EXISTS idx_results_entity ON agent_results(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_ledger_entity ON ledger_records(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_ledger_status ON ledger_records(status);
"""

# Column layout per table; JSON and boolean columns are converted on the way
# in and out so repositories only ever see Python values.
TABLES: dict[str, dict[str, frozenset[str]]] = {
    "citizen_requests": {
        "columns": frozenset({
            "id", "full_name", "contact_info", "request_type", "subject",
            "description", "status", "priority", "assigned_to", "ai_processed",
            "ai_classification", "response_text", "blockchain_hash",
            "created_at", "updated_at",
        }),
        "json": frozenset(),
        "bool": frozenset({"ai_processed"}),
    },
    "agents": {
        "columns": frozenset({
            "id", "name", "type", "description", "model_id", "is_active",
            "system_prompt", "config", "created_at", "updated_at",
        }),
        "json": frozenset({"config"}),
        "bool": frozenset({"is_active"}),
    },
    "agent_results": {
        "columns": frozenset({
            "id", "agent_id", "entity_type", "entity_id", "action_type",
            "result", "created_at", "updated_at",
        }),
        "json": frozenset(),
        "bool": frozenset(),
    },
    "ledger_records": {
        "columns": frozenset({
            "id", "record_type", "title", "entity_type", "entity_id",
            "transaction_hash", "status", "metadata", "created_at",
            "updated_at", "confirmed_at",
        }),
        "json": frozenset({"metadata"}),
        "bool": frozenset(),
    },
}


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with microseconds."""
    return datetime.now(timezone.utc).isoformat()


@runtime_checkable
class PersistencePort(Protocol):
    """Narrow CRUD interface consumed by the repositories."""

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]: ...

    def get(self, table: str, row_id: int) -> dict[str, Any] | None: ...

    def select(
        self,
        table: str,
        where: dict[str, Any] | None = None,
        *,
        order_by: str = "id",
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def update(
        self, table: str, row_id: int, values: dict[str, Any], *, touch: bool = True
    ) -> dict[str, Any] | None: ...

    def delete(self, table: str, row_id: int) -> bool: ...

    def count(self, table: str, where: dict[str, Any] | None = None) -> int: ...

    def atomic(self) -> AbstractContextManager[None]: ...


class SQLiteStore:
    """SQLite implementation of the persistence port.

    Example:
        with SQLiteStore("data/civic.db") as store:
            row = store.insert("agents", {"name": "Classifier"})
            same = store.get("agents", row["id"])
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize store with database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
                Defaults to data/civic.db
        """
        if db_path is None:
            db_path = Path.cwd() / "data" / "civic.db"

        if str(db_path) != ":memory:":
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        # Nesting depth of the transaction owned by the thread holding the lock
        self._depth = 0
        self._ensure_connection()
        self._ensure_schema()

    def _ensure_connection(self) -> None:
        """Ensure database connection is established."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
            # WAL for concurrent readers alongside the single writer
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")

    def _ensure_schema(self) -> None:
        """Ensure database schema exists."""
        with self._lock:
            conn = self._get_conn()
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection, ensuring it's established."""
        self._ensure_connection()
        assert self._conn is not None
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically, translating driver errors.

        Inside ``atomic()`` the block joins the enclosing transaction; only
        the outermost block commits or rolls back.
        """
        with self._lock:
            conn = self._get_conn()
            if self._depth:
                # Errors are translated here too; the outermost block rolls back
                self._depth += 1
                try:
                    yield conn
                except sqlite3.IntegrityError as e:
                    raise PersistenceError(f"Constraint violated: {e}", constraint=True) from e
                except sqlite3.Error as e:
                    raise PersistenceError(f"Store operation failed: {e}") from e
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise PersistenceError(f"Constraint violated: {e}", constraint=True) from e
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Store operation failed: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group several port calls into one transaction.

        Other threads are held off until the block ends, so a check made
        inside the block still holds when the write after it runs. Any
        exception rolls the whole block back.

        Example:
            with store.atomic():
                if store.count("agent_results", {"agent_id": 3}) == 0:
                    store.delete("agents", 3)
        """
        with self._transaction():
            yield

    # -----------------------------------------------------------------------
    # Row conversion
    # -----------------------------------------------------------------------

    def _columns_of(self, table: str) -> dict[str, frozenset[str]]:
        try:
            return TABLES[table]
        except KeyError:
            raise PersistenceError(f"Unknown table '{table}'") from None

    def _check_columns(self, table: str, names: Any) -> None:
        unknown = set(names) - self._columns_of(table)["columns"]
        if unknown:
            raise PersistenceError(
                f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}"
            )

    def _encode(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        columns = self._columns_of(table)
        encoded = {}
        for key, value in values.items():
            if key in columns["json"] and value is not None:
                value = json.dumps(value, separators=(",", ":"), default=str)
            elif key in columns["bool"] and value is not None:
                value = 1 if value else 0
            encoded[key] = value
        return encoded

    def _decode(self, table: str, row: sqlite3.Row) -> dict[str, Any]:
        columns = self._columns_of(table)
        data = dict(row)
        for key in columns["json"]:
            if data.get(key) is not None:
                data[key] = json.loads(data[key])
        for key in columns["bool"]:
            if data.get(key) is not None:
                data[key] = bool(data[key])
        return data

    def _where_clause(
        self, table: str, where: dict[str, Any] | None
    ) -> tuple[str, list[Any]]:
        if not where:
            return "", []
        self._check_columns(table, where.keys())
        encoded = self._encode(table, where)
        parts = []
        params: list[Any] = []
        for key, value in encoded.items():
            if value is None:
                parts.append(f"{key} IS NULL")
            else:
                parts.append(f"{key} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(parts), params

    # -----------------------------------------------------------------------
    # CRUD
    # -----------------------------------------------------------------------

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored, including the generated id.

        Raises:
            PersistenceError: On constraint violation or store failure
        """
        now = utc_now()
        values = {"created_at": now, "updated_at": now, **values}
        values.pop("id", None)
        self._check_columns(table, values.keys())
        encoded = self._encode(table, values)

        columns = ", ".join(encoded)
        placeholders = ", ".join("?" * len(encoded))
        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                list(encoded.values()),
            )
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
        return self._decode(table, row)

    def get(self, table: str, row_id: int) -> dict[str, Any] | None:
        """Retrieve a row by id, or None."""
        self._columns_of(table)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
        return self._decode(table, row) if row is not None else None

    def select(
        self,
        table: str,
        where: dict[str, Any] | None = None,
        *,
        order_by: str = "id",
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List rows matching simple equality filters.

        Args:
            table: Table name
            where: Column -> value equality filters (None matches NULL)
            order_by: Column to order by
            descending: Reverse order
            limit: Maximum rows to return
        """
        self._check_columns(table, [order_by])
        clause, params = self._where_clause(table, where)
        sql = f"SELECT * FROM {table}{clause} ORDER BY {order_by}"
        sql += " DESC" if descending else " ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._decode(table, row) for row in rows]

    def update(
        self, table: str, row_id: int, values: dict[str, Any], *, touch: bool = True
    ) -> dict[str, Any] | None:
        """Update fields of a row and return the new state, or None if absent.

        ``touch=False`` leaves ``updated_at`` alone, for bookkeeping columns
        that are not a change of the entity itself.
        """
        values = {k: v for k, v in values.items() if k not in ("id", "created_at")}
        if touch:
            values.setdefault("updated_at", utc_now())
        if not values:
            return self.get(table, row_id)
        self._check_columns(table, values.keys())
        encoded = self._encode(table, values)

        assignments = ", ".join(f"{key} = ?" for key in encoded)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [*encoded.values(), row_id],
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
        return self._decode(table, row)

    def delete(self, table: str, row_id: int) -> bool:
        """Delete a row. Returns True if a row was removed."""
        self._columns_of(table)
        with self._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
        return cursor.rowcount > 0

    def count(self, table: str, where: dict[str, Any] | None = None) -> int:
        """Count rows matching the filters."""
        clause, params = self._where_clause(table, where)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS count FROM {table}{clause}", params
            ).fetchone()
        return row["count"] if row else 0

    def ping(self) -> None:
        """Verify the connection answers a trivial query."""
        with self._transaction() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SQLiteStore:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        self.close()


__all__ = ["PersistencePort", "SQLiteStore", "SCHEMA_SQL", "TABLES", "utc_now"]
