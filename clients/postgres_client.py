"""
PostgreSQL client with connection pooling for the identity store.

Uses psycopg2 with ThreadedConnectionPool. Calls are synchronous; async
callers offload them with asyncio.to_thread so the pool's thread safety is
what keeps concurrent requests apart. Multi-statement changes that must land
together go through transaction().
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

Params = Tuple | Dict | None


class RollbackTransaction(Exception):
    """Raise inside transaction() to roll back without an error."""


def _convert(value: Any) -> Any:
    """UUIDs go over the wire as text; containers are converted element-wise."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, list):
        return [_convert(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_convert(v) for v in value)
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    return value


class PostgresClient:
    """
    Pooled PostgreSQL access returning rows as dicts.

    Usage:
        db = PostgresClient(database_url)
        user = db.execute_single("SELECT * FROM users WHERE id = %s", (user_id,))

        with db.transaction() as cur:
            cur.execute("UPDATE user_invites SET ... WHERE id = %s", (invite_id,))
            if cur.rowcount != 1:
                raise RollbackTransaction()
    """

    # One pool per database URL, shared by every client in the process
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()
    _jsonb_registered = False

    def __init__(self, database_url: str, min_connections: int = 2, max_connections: int = 20):
        self._database_url = database_url
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._pool()

    def _pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        with self._pools_lock:
            pool = self._connection_pools.get(self._database_url)
            if pool is None:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._min_connections,
                    maxconn=self._max_connections,
                    dsn=self._database_url,
                    connect_timeout=30,
                )
                if not PostgresClient._jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    PostgresClient._jsonb_registered = True
                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")
            return pool

    @contextmanager
    def _cursor(self) -> Iterator[Tuple[Any, Any]]:
        """Borrow a pooled connection and a dict cursor on it."""
        pool = self._pool()
        conn = pool.getconn()
        if conn is None:
            raise RuntimeError("Could not get connection from pool")
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield conn, cur
        finally:
            pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator["_ConvertingCursor"]:
        """
        Run several statements atomically.

        Commits when the block exits normally. Any exception rolls back and
        propagates, except RollbackTransaction which rolls back quietly.
        """
        with self._cursor() as (conn, cur):
            try:
                yield _ConvertingCursor(cur)
                conn.commit()
            except RollbackTransaction:
                conn.rollback()
            except BaseException:
                conn.rollback()
                raise

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self._cursor() as (conn, cur):
            cur.execute(query, _convert(params))
            rows = [dict(row) for row in cur.fetchall()] if cur.description else []
            conn.commit()
            return rows

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        """First column of the first row, or None."""
        row = self.execute_single(query, params)
        return next(iter(row.values())) if row else None

    def execute_rowcount(self, query: str, params: Params = None) -> int:
        """Execute a data-changing statement, return affected row count."""
        with self._cursor() as (conn, cur):
            cur.execute(query, _convert(params))
            conn.commit()
            return cur.rowcount

    def close(self) -> None:
        with self._pools_lock:
            pool = self._connection_pools.pop(self._database_url, None)
            if pool is not None:
                pool.closeall()


class _ConvertingCursor:
    """Transaction cursor applying the client's UUID parameter conversion."""

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, query: str, params: Params = None) -> None:
        self._cursor.execute(query, _convert(params))

    def fetchone(self) -> Dict[str, Any] | None:
        row = self._cursor.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount
