"""Consumers that apply events to another database.

Source and destination cannot share a transaction, so the destination
keeps the id of the last batch it committed, written in the same
destination transaction as the batch's own work. A redelivered batch whose
id is not above that record is finished at the queue without touching the
destination again.
"""
import re
from enum import Enum
from typing import Optional

import psycopg2

from pgqconsumer.adapters.postgres import db as pg
from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.consumers.hooks import BatchDecision, BatchHook
from pgqconsumer.domain.models.events import ConsumerIdentity
from pgqconsumer.utils.logging import configure_logging


DEFAULT_LAST_BATCH_TABLE = "pgq_last_batch"
DEFAULT_TRIGGER_NAME = "ins_to_queue"


class TriggerState(Enum):
    MISSING = "missing"
    INSTALLED = "installed"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


def _split_name(name: str):
    if "." in name:
        schema, table = name.split(".", 1)
        return schema, table
    return None, name


def _literal(value: str) -> str:
    return value.replace("'", "''")


def _normalize(definition: str) -> str:
    # Servers since PostgreSQL 11 print EXECUTE FUNCTION for EXECUTE PROCEDURE.
    definition = re.sub(r"\bEXECUTE\s+FUNCTION\b", "EXECUTE PROCEDURE", definition)
    return " ".join(definition.split())


class RemoteBatchHook(BatchHook):
    """Destination transaction plus last-processed-batch bookkeeping.

    When source_table is set, install() also creates the pgq.logutriga
    trigger producing the events and check() verifies it.
    """

    def __init__(
        self,
        identity: ConsumerIdentity,
        destination: PostgresConnection,
        source_table: Optional[str] = None,
        last_batch_table: str = DEFAULT_LAST_BATCH_TABLE,
        trigger_name: str = DEFAULT_TRIGGER_NAME,
    ):
        self.identity = identity
        self.destination = destination
        self.source_table = source_table
        self.last_batch_table = last_batch_table
        self.trigger_name = trigger_name
        self.last_batch_id: Optional[int] = None
        self._batch_conn = None
        self.log = configure_logging("remote")

    @property
    def consumer_id(self) -> str:
        return self.identity.qualified_name

    # -- batch bookkeeping -------------------------------------------------

    def fetch_last_batch_id(self, conn) -> Optional[int]:
        row = pg.fetch_one(
            conn,
            f"SELECT batch_id FROM {self.last_batch_table} WHERE qname = %s AND consumer_id = %s;",
            (self.identity.queue_name, self.consumer_id),
        )
        if row is None:
            return None
        return int(row["batch_id"])

    def open_batch(self, batch_id: int) -> BatchDecision:
        try:
            conn = self.destination.get()
            self._batch_conn = conn
            self.last_batch_id = self.fetch_last_batch_id(conn)
        except psycopg2.Error as exc:
            self.log.warning(
                "Could not read last processed batch id from destination",
                extra={"batch_id": batch_id, "error": str(exc).strip()},
            )
            self.last_batch_id = None
            self._batch_conn = None
            return BatchDecision.FAIL

        self.log.debug("Last processed batch", extra={"last_batch_id": self.last_batch_id, "batch_id": batch_id})
        if self.last_batch_id is None:
            self.log.warning("No last processed batch id", extra={"consumer": self.consumer_id})
            return BatchDecision.PROCEED
        if batch_id <= self.last_batch_id:
            # batch ids come from a bigserial, no wraparound
            return BatchDecision.SKIP
        return BatchDecision.PROCEED

    def close_batch(self, batch_id: int) -> bool:
        if self.last_batch_id is None:
            sql = f"INSERT INTO {self.last_batch_table} (qname, consumer_id, batch_id) VALUES (%s, %s, %s);"
            params = (self.identity.queue_name, self.consumer_id, batch_id)
        else:
            sql = f"UPDATE {self.last_batch_table} SET batch_id = %s WHERE qname = %s AND consumer_id = %s;"
            params = (batch_id, self.identity.queue_name, self.consumer_id)

        self.log.debug(sql, extra={"params": params})
        try:
            pg.execute(self._batch_connection(), sql, params)
        except psycopg2.Error as exc:
            self.log.error(
                "Could not store last batch id on destination",
                extra={"batch_id": batch_id, "error": str(exc).strip()},
            )
            return False
        # Read it back from the destination on every batch.
        self.last_batch_id = None
        return True

    def _batch_connection(self):
        # Event work and the last batch record must share one transaction.
        if not self.destination.owns(self._batch_conn):
            raise psycopg2.InterfaceError("destination connection was lost during the batch")
        return self._batch_conn

    def commit(self) -> None:
        conn = self._batch_connection()
        self._batch_conn = None
        conn.commit()

    def rollback(self) -> None:
        self.last_batch_id = None
        self._batch_conn = None
        self.destination.rollback()

    def disconnect(self) -> None:
        self.destination.close()

    # -- installation ------------------------------------------------------

    def check(self, source_conn) -> bool:
        if not self.check_last_batch_table():
            return False
        if self.source_table is None:
            return True
        state = self.trigger_state(source_conn)
        if state is not TriggerState.INSTALLED:
            self.log.critical("Trigger is not installed", extra={"trigger": self.trigger_name, "table": self.source_table, "state": state.value})
            return False
        return True

    def install(self, source_conn) -> bool:
        """Create the event trigger on source_table.

        The last batch table may be shared by several consumers and is left
        to the operator; uninstall never drops the trigger.
        """
        if self.source_table is None:
            return True

        state = self.trigger_state(source_conn)
        if state is TriggerState.INSTALLED:
            self.log.info("Trigger already installed", extra={"trigger": self.trigger_name, "table": self.source_table})
            return True
        if state is not TriggerState.MISSING:
            return False

        sql = self.trigger_sql()
        self.log.info(sql)
        try:
            pg.execute(source_conn, sql)
        except psycopg2.Error as exc:
            self.log.critical(
                "Could not install pgq.logutriga trigger",
                extra={"table": self.source_table, "error": str(exc).strip()},
            )
            return False
        return True

    def check_last_batch_table(self) -> bool:
        schema, table = _split_name(self.last_batch_table)
        if schema is None:
            sql = "SELECT tablename FROM pg_catalog.pg_tables WHERE tablename = %s;"
            params: tuple = (table,)
        else:
            sql = "SELECT tablename FROM pg_catalog.pg_tables WHERE schemaname = %s AND tablename = %s;"
            params = (schema, table)

        try:
            conn = self.destination.get()
            rows = pg.fetch_all(conn, sql, params)
            conn.rollback()
        except psycopg2.Error as exc:
            self.log.critical("Could not check last batch table", extra={"table": self.last_batch_table, "error": str(exc).strip()})
            return False

        if not rows:
            self.log.critical("Last batch table does not exist on destination", extra={"table": self.last_batch_table})
            self.log.critical(
                f"Please issue CREATE TABLE {self.last_batch_table} "
                "(qname text, consumer_id text, batch_id bigint, PRIMARY KEY (qname, consumer_id));"
            )
            return False
        return True

    def trigger_sql(self) -> str:
        return (
            f"CREATE TRIGGER {self.trigger_name} BEFORE INSERT ON {self.source_table} "
            f"FOR EACH ROW EXECUTE PROCEDURE pgq.logutriga('{_literal(self.identity.queue_name)}', 'SKIP')"
        )

    def trigger_state(self, source_conn) -> TriggerState:
        schema, table = _split_name(self.source_table)
        sql = (
            "SELECT t.tgname, pg_catalog.pg_get_triggerdef(t.oid) AS triggerdef "
            "FROM pg_catalog.pg_trigger t JOIN pg_catalog.pg_class c ON t.tgrelid = c.oid "
        )
        if schema is None:
            sql += "WHERE c.relname = %s AND t.tgname = %s;"
            params: tuple = (table, self.trigger_name)
        else:
            sql += (
                "WHERE c.relnamespace = (SELECT oid FROM pg_catalog.pg_namespace WHERE nspname = %s) "
                "AND c.relname = %s AND t.tgname = %s;"
            )
            params = (schema, table, self.trigger_name)

        try:
            rows = pg.fetch_all(source_conn, sql, params)
        except psycopg2.Error as exc:
            self.log.critical("Could not look up trigger", extra={"table": self.source_table, "error": str(exc).strip()})
            return TriggerState.UNKNOWN

        if len(rows) != 1:
            return TriggerState.MISSING

        definition = rows[0]["triggerdef"]
        expected = self.trigger_sql()
        if _normalize(definition) != _normalize(expected):
            self.log.critical(
                "Trigger exists on table but is not ours",
                extra={"trigger": self.trigger_name, "table": self.source_table},
            )
            self.log.critical(f"trigger def is        '{definition}'")
            self.log.critical(f"trigger def should be '{expected}'")
            return TriggerState.CONFLICT
        return TriggerState.INSTALLED
