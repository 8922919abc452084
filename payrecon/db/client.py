from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from payrecon.config import Settings

logger = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe psycopg2 pool handing out one transaction per ``transaction()`` block.

    Constructed once by the composition root and injected into the ledger store.
    """

    def __init__(self, settings: Settings):
        if not settings.db_enabled:
            raise ValueError("Database not configured")
        self.schema = settings.db_schema
        self._pool = ThreadedConnectionPool(1, settings.db_pool_max, dsn=settings.db_dsn)

    def close(self) -> None:
        self._pool.closeall()

    def _checkout(self) -> psycopg2.extensions.connection:
        # Retry once on connections the server already closed
        for attempt in range(2):
            conn = self._pool.getconn()
            try:
                if self.schema:
                    with conn.cursor() as cur:
                        cur.execute(sql.SQL("SET search_path TO {}").format(sql.Identifier(self.schema)))
                return conn
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                self._pool.putconn(conn, close=True)
                if attempt == 1:
                    raise
        raise psycopg2.OperationalError("no usable connection")

    @contextmanager
    def transaction(self) -> Iterator[psycopg2.extensions.connection]:
        """Yield a connection; commit on success, roll back on any exception."""
        conn = self._checkout()
        try:
            yield conn
            conn.commit()
        except Exception:
            try:
                conn.rollback()
            except psycopg2.Error as exc:
                logger.warning("rollback failed", extra={"error": str(exc)})
            raise
        finally:
            self._pool.putconn(conn)
