"""Shared fixtures: an in-memory stand-in for a psycopg2 connection.

FakeConnection records every statement, COMMIT and ROLLBACK, and answers
queries from scripted replies matched on a SQL fragment. A reply is a list
of row dicts, an exception instance to raise, or a callable(query, params)
returning either. Unmatched queries return no rows.
"""
from typing import Any, List, Optional

import pytest

from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.config.settings import Settings
from pgqconsumer.domain.models.events import ConsumerIdentity


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self._rows: List[dict] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        text = query if isinstance(query, str) else repr(query)
        self.conn.executed.append((text, params))
        self.conn.record(text)
        reply = self.conn.reply_for(text, params)
        if isinstance(reply, Exception):
            raise reply
        self._rows = [dict(row) for row in reply]

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, name: str = "source", journal: Optional[list] = None):
        self.name = name
        self.closed = 0
        self.executed: List[tuple] = []
        self.log: List[str] = []
        self.journal = journal if journal is not None else []
        self._replies: List[tuple] = []

    def reply(self, fragment: str, result: Any) -> "FakeConnection":
        """Newest reply wins when several fragments match."""
        self._replies.insert(0, (fragment, result))
        return self

    def reply_for(self, query: str, params):
        for fragment, result in self._replies:
            if fragment in query:
                return result(query, params) if callable(result) else result
        return []

    def record(self, entry: str) -> None:
        self.log.append(entry)
        self.journal.append((self.name, entry))

    def cursor(self, *args, **kwargs):
        return FakeCursor(self)

    def commit(self):
        self.record("COMMIT")

    def rollback(self):
        self.record("ROLLBACK")

    def close(self):
        self.closed = 1

    def queries(self, fragment: str) -> List[tuple]:
        return [(query, params) for query, params in self.executed if fragment in query]

    @property
    def commits(self) -> int:
        return self.log.count("COMMIT")

    @property
    def rollbacks(self) -> int:
        return self.log.count("ROLLBACK")


def pgq_defaults(conn: FakeConnection) -> FakeConnection:
    """Replies a healthy pgq schema gives to the mutating calls."""
    conn.reply("pgq.finish_batch", [{"finished": 1}])
    conn.reply("pgq_coop.finish_batch", [{"finished": 1}])
    conn.reply("pgq.event_failed", [{"tagged": 1}])
    conn.reply("pgq.event_retry", [{"tagged": 1}])
    conn.reply("pgq.register_consumer", [{"registered": 1}])
    conn.reply("pgq.unregister_consumer", [{"unregistered": 1}])
    conn.reply("pgq.create_queue", [{"created": 1}])
    conn.reply("pgq.drop_queue", [{"dropped": 1}])
    return conn


def event_row(ev_id: int, data: str = "", ev_type: str = "I:id", table: str = "items", **extra) -> dict:
    row = {
        "ev_id": ev_id,
        "ev_time": None,
        "ev_txid": 1000 + ev_id,
        "ev_retry": None,
        "ev_type": ev_type,
        "ev_data": data,
        "ev_extra1": table,
        "ev_extra2": None,
    }
    row.update(extra)
    return row


def holder(conn: FakeConnection) -> PostgresConnection:
    return PostgresConnection("dbname=test", conn.name, connect=lambda dsn: conn)


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def source(journal) -> FakeConnection:
    return pgq_defaults(FakeConnection("source", journal))


@pytest.fixture
def destination(journal) -> FakeConnection:
    return FakeConnection("destination", journal)


@pytest.fixture
def identity() -> ConsumerIdentity:
    return ConsumerIdentity("testq", "replica")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        src_dsn="dbname=src",
        queue_name="testq",
        consumer_name="replica",
        poll_interval_seconds=0,
        pid_dir=str(tmp_path),
    )
