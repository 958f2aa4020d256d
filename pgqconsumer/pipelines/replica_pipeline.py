from typing import List, Optional, Tuple

import psycopg2
from psycopg2 import sql

from pgqconsumer.adapters.postgres import db as pg
from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.config.settings import Settings
from pgqconsumer.domain.models.events import Event, EventOutcome
from pgqconsumer.utils.logging import configure_logging


def _table(name: str) -> sql.Identifier:
    return sql.Identifier(*name.split(".", 1))


def parse_event_type(event_type: Optional[str]) -> Tuple[str, List[str]]:
    """Split a pgq.logutriga event type such as ``U:id,version``."""
    op, _, keys = (event_type or "").partition(":")
    return op.upper(), [key for key in keys.split(",") if key]


class ReplicaPipeline:
    """Apply pgq.logutriga row changes to a table on the destination database."""

    def __init__(self, settings: Settings, destination: PostgresConnection):
        self.settings = settings
        self.destination = destination
        self.log = configure_logging("replica_pipeline")

    def build_statement(self, event: Event, table: str) -> Optional[Tuple[sql.Composed, tuple]]:
        op, pkeys = parse_event_type(event.type)
        row = event.payload
        target = _table(table)

        if op == "I":
            columns = list(row)
            query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
                target,
                sql.SQL(", ").join(map(sql.Identifier, columns)),
                sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            )
            return query, tuple(row[column] for column in columns)

        if op not in ("U", "D") or not pkeys:
            return None

        # Primary key values as they were before the change, when available.
        before = event.previous_payload or row
        where = sql.SQL(" AND ").join(sql.SQL("{} = %s").format(sql.Identifier(key)) for key in pkeys)
        where_params = tuple(before.get(key, row.get(key)) for key in pkeys)

        if op == "D":
            return sql.SQL("DELETE FROM {} WHERE {}").format(target, where), where_params

        columns = list(row)
        assignments = sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(column)) for column in columns)
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(target, assignments, where)
        return query, tuple(row[column] for column in columns) + where_params

    def handle_event(self, event: Event) -> EventOutcome:
        table = self.settings.destination_table or event.table_hint
        if not table:
            return event.failed("event carries no table and no destination table is configured")

        statement = self.build_statement(event, table)
        if statement is None:
            self.log.warning("Unsupported event type", extra={"event_id": event.id, "type": event.type})
            return event.failed(f"unsupported event type {event.type!r}")

        query, params = statement
        try:
            pg.execute(self.destination.get(), query, params)
        except psycopg2.Error as exc:
            error = str(exc).strip()
            self.log.warning("Could not apply event", extra={"event_id": event.id, "table": table, "error": error})
            if self.settings.event_scoped:
                # The savepoint rolls this event back, the batch goes on.
                return event.failed(error)
            return EventOutcome.ABORT_BATCH

        self.log.info("Applied event", extra={"event_id": event.id, "table": table, "type": event.type})
        return EventOutcome.OK
