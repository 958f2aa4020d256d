from typing import Optional

import psycopg2

from pgqconsumer.adapters.postgres import db as pg
from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.consumers.hooks import EventScopeHook
from pgqconsumer.domain.models.events import Event, EventOutcome
from pgqconsumer.utils.logging import configure_logging


class SavepointEventHook(EventScopeHook):
    """Give each event its own savepoint on the destination connection.

    OK releases the savepoint, FAILED and RETRY roll back to it, so one bad
    event does not cost the batch the work of the others. If a savepoint
    cannot be placed or resolved the batch is aborted.
    """

    def __init__(self, destination: PostgresConnection):
        self.destination = destination
        self.log = configure_logging("event_scope")

    @staticmethod
    def savepoint(event: Event) -> str:
        return f"pgq_event_{int(event.id)}"

    def _run(self, sql: str, event: Event) -> Optional[EventOutcome]:
        self.log.debug(sql)
        try:
            pg.execute(self.destination.get(), sql)
        except psycopg2.Error as exc:
            self.log.warning(sql + " failed", extra={"event_id": event.id, "error": str(exc).strip()})
            return EventOutcome.ABORT_BATCH
        return None

    def preprocess_event(self, event: Event) -> Optional[EventOutcome]:
        return self._run(f"SAVEPOINT {self.savepoint(event)};", event)

    def postprocess_event(self, event: Event) -> Optional[EventOutcome]:
        if event.outcome is EventOutcome.OK:
            return self._run(f"RELEASE SAVEPOINT {self.savepoint(event)};", event)
        if event.outcome in (EventOutcome.FAILED, EventOutcome.RETRY):
            return self._run(f"ROLLBACK TO SAVEPOINT {self.savepoint(event)};", event)
        return None
