"""DuckDB-backed relational store shared by the conversation core.

The message store, the user directory and the notification store all live in
one DuckDB database so that a single transaction can span conversations,
messages and the rows they reference. The service implements the singleton
pattern to ensure only one database connection exists per process.

Thread Safety:
    A DuckDB connection is NOT safe for concurrent use. Every statement runs
    while holding ``_lock`` (re-entrant, so helpers may nest). Callers that
    mutate more than one row use ``transaction()``, which holds the lock from
    BEGIN to COMMIT/ROLLBACK, so no read-modify-write sequence is ever split
    across two independent calls.

Usage:
    db = Database.get_instance(db_path=":memory:")
    with db.transaction() as conn:
        conn.execute("UPDATE messages SET ... WHERE ...", [...])
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

from .errors import TransientStoreError

logger = logging.getLogger(__name__)


class Database:
    """Singleton owner of the DuckDB connection.

    Attributes:
        _instance: Singleton instance of the database.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["Database"] = None
    _db_path: str = "carechat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database.

        Args:
            db_path: Path to DuckDB file, or ``":memory:"``. Defaults to
                "carechat.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        logger.info("[Database] Using %s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "Database":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).

        Returns:
            The singleton Database instance.
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the instance (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def execute_script(self, *statements: str) -> None:
        """Run DDL statements (idempotent ``CREATE ... IF NOT EXISTS``)."""
        with self._lock:
            conn = self._get_connection()
            for statement in statements:
                conn.execute(statement)

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block inside BEGIN/COMMIT, rolling back on any exception.

        DuckDB conflict and I/O failures are surfaced as ``TransientStoreError``;
        everything else (including ``ChatError`` raised by the block) is
        re-raised unchanged after the rollback.
        """
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                yield conn
                conn.commit()
            except (duckdb.TransactionException, duckdb.IOException) as exc:
                self._rollback(conn)
                logger.warning("[Database] Transaction aborted: %s", exc)
                raise TransientStoreError() from exc
            except BaseException:
                self._rollback(conn)
                raise

    def _rollback(self, conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.rollback()
        except duckdb.TransactionException as exc:
            # Commit already failed and DuckDB closed the transaction itself.
            logger.debug("[Database] Rollback skipped: %s", exc)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
