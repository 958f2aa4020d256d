from typing import Any, Callable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from pgqconsumer.utils.logging import configure_logging


def _open(dsn: str):
    conn = psycopg2.connect(dsn, cursor_factory=RealDictCursor)
    conn.autocommit = False
    return conn


class PostgresConnection:
    """Single Postgres connection owned by one consumer, opened lazily.

    The connection is never shared across threads. Transactions are left to
    the caller: psycopg2 opens one implicitly on the first statement and the
    caller ends it with commit() or rollback().
    """

    def __init__(self, dsn: str, name: str = "source", connect: Optional[Callable[[str], Any]] = None):
        self.dsn = dsn
        self.name = name
        self._connect = connect or _open
        self._conn = None
        self.log = configure_logging("postgres")

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def get(self):
        if not self.is_open:
            self.log.info("Opening connection", extra={"connection": self.name})
            self._conn = self._connect(self.dsn)
        return self._conn

    def owns(self, conn) -> bool:
        """conn is the connection currently open, not one replaced since."""
        return conn is not None and conn is self._conn and self.is_open

    def commit(self) -> None:
        self.get().commit()

    def rollback(self) -> None:
        if not self.is_open:
            return
        self.log.info("ROLLBACK", extra={"connection": self.name})
        try:
            self._conn.rollback()
        except psycopg2.Error as exc:
            self.log.error("Rollback failed", extra={"connection": self.name, "error": str(exc).strip()})

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self.log.info("Closing connection", extra={"connection": self.name})
            self._conn.close()
        self._conn = None


def fetch_one(conn, query: str, params: Optional[tuple] = None):
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchone()


def fetch_all(conn, query: str, params: Optional[tuple] = None) -> List:
    with conn.cursor() as cur:
        cur.execute(query, params or ())
        return cur.fetchall()


def execute(conn, query, params: Optional[tuple] = None) -> None:
    with conn.cursor() as cur:
        cur.execute(query, params or ())
