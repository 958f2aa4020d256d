from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import psycopg2

from pgqconsumer.adapters.pgq import client as pgq
from pgqconsumer.adapters.pgq.client import CallFailure, failed
from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.consumers.allocators import StandardAllocator
from pgqconsumer.consumers.hooks import BatchDecision, BatchHook, EventScopeHook
from pgqconsumer.domain.models.events import (
    DEFAULT_RETRY_DELAY,
    Batch,
    ConsumerIdentity,
    Event,
    EventOutcome,
    InvalidOutcomeError,
)
from pgqconsumer.utils.logging import configure_logging


ProcessEvent = Callable[[Event], EventOutcome]


class BatchResult(Enum):
    PROCESSED = "processed"
    EMPTY = "empty"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    FAILED = "failed"


class Consumer:
    """Pull batches from a pgq queue and hand their events to process_event.

    One batch is in flight at a time. Everything a batch does on the source
    connection (outcome reports, finish_batch, whatever process_event writes
    there) is committed once, after the last event; an aborted batch is
    rolled back and the queue hands it out again.

    Remote and event-scoped behaviour comes from the batch_hook and
    event_hook strategies, cooperative allocation from the allocator.
    """

    def __init__(
        self,
        identity: ConsumerIdentity,
        source: PostgresConnection,
        process_event: ProcessEvent,
        *,
        allocator: Optional[StandardAllocator] = None,
        batch_hook: Optional[BatchHook] = None,
        event_hook: Optional[EventScopeHook] = None,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        exit_on_error: bool = False,
    ):
        self.identity = identity
        self.source = source
        self.process_event = process_event
        self.allocator = allocator or StandardAllocator(identity)
        self.batch_hook = batch_hook or BatchHook()
        self.event_hook = event_hook or EventScopeHook()
        self.retry_delay = retry_delay
        self.exit_on_error = exit_on_error
        self.log = configure_logging("consumer")

    # -- connections -------------------------------------------------------

    def _connection(self):
        try:
            return self.source.get()
        except psycopg2.Error as exc:
            error = str(exc).strip()
            self.log.error("Could not open source connection", extra={"error": error})
            return CallFailure("connect", error)

    def rollback(self) -> None:
        self.batch_hook.rollback()
        self.source.rollback()

    def disconnect(self) -> None:
        self.rollback()
        self.batch_hook.disconnect()
        self.source.close()

    def _run_in_transaction(self, call: str, steps: Callable[[Any], Any], commit: bool = True) -> Any:
        """Run steps on the source connection, commit when it returns True."""
        conn = self._connection()
        if failed(conn):
            return conn
        result = steps(conn)
        if result is True and commit:
            try:
                conn.commit()
            except psycopg2.Error as exc:
                self.log.error("COMMIT failed", extra={"call": call, "error": str(exc).strip()})
                self.source.rollback()
                return CallFailure(call, str(exc).strip())
        else:
            self.source.rollback()
        return result

    # -- installation ------------------------------------------------------

    def install(self) -> bool:
        """Create the queue and register the consumer when they are missing."""

        def steps(conn):
            exists = pgq.queue_exists(conn, self.identity.queue_name)
            if failed(exists):
                return exists
            if not exists:
                created = pgq.create_queue(conn, self.identity.queue_name)
                if created is not True:
                    return created
            registered = self.allocator.is_registered(conn)
            if failed(registered):
                return registered
            if not registered:
                registered = self.allocator.register(conn)
                if registered is not True:
                    return registered
            return self.batch_hook.install(conn)

        return self._run_in_transaction("install", steps) is True

    def uninstall(self) -> bool:
        def steps(conn):
            unregistered = self.allocator.unregister(conn)
            if unregistered is not True:
                return unregistered
            return pgq.drop_queue(conn, self.identity.queue_name)

        return self._run_in_transaction("uninstall", steps) is True

    def check(self) -> bool:
        """The queue exists, we are registered and the hooks are in place."""

        def steps(conn):
            exists = pgq.queue_exists(conn, self.identity.queue_name)
            if exists is not True:
                self.log.critical("Queue does not exist", extra={"queue": self.identity.queue_name})
                return False
            registered = self.allocator.is_registered(conn)
            if registered is not True:
                self.log.critical("Consumer is not registered", extra={"consumer": self.identity.qualified_name})
                return False
            return self.batch_hook.check(conn)

        return self._run_in_transaction("check", steps, commit=False) is True

    def create_queue(self) -> bool:
        return self._run_in_transaction(
            "create_queue", lambda conn: pgq.create_queue(conn, self.identity.queue_name)
        ) is True

    def drop_queue(self) -> bool:
        return self._run_in_transaction(
            "drop_queue", lambda conn: pgq.drop_queue(conn, self.identity.queue_name)
        ) is True

    def register(self) -> bool:
        return self._run_in_transaction("register", self.allocator.register) is True

    def unregister(self) -> bool:
        return self._run_in_transaction("unregister", self.allocator.unregister) is True

    def consumer_info(self) -> Union[Optional[Dict[str, Any]], CallFailure]:
        return self._run_in_transaction("consumer_info", self.allocator.consumer_info, commit=False)

    def queue_consumers(self) -> Union[List[Dict[str, Any]], CallFailure]:
        """Every consumer registered on our queue."""
        return self._run_in_transaction(
            "get_consumers", lambda conn: pgq.get_consumers(conn, self.identity.queue_name), commit=False
        )

    # -- failed events -----------------------------------------------------

    def failed_events(self) -> Union[List[Event], CallFailure]:
        return self._run_in_transaction(
            "failed_event_list",
            lambda conn: pgq.failed_event_list(conn, self.identity.queue_name, self.identity.qualified_name),
            commit=False,
        )

    def delete_failed(self, event_ids: Iterable[Union[int, str]]) -> bool:
        """Delete failed events by id, or all of them with "all"."""
        return self._for_failed(event_ids, pgq.failed_event_delete, pgq.failed_event_delete_all)

    def retry_failed(self, event_ids: Iterable[Union[int, str]]) -> bool:
        """Put failed events back in the queue by id, or all of them with "all"."""
        return self._for_failed(event_ids, pgq.failed_event_retry, pgq.failed_event_retry_all)

    def _for_failed(self, event_ids, one, every) -> bool:
        queue, consumer = self.identity.queue_name, self.identity.qualified_name
        event_ids = list(event_ids)

        def steps(conn):
            if event_ids == ["all"]:
                return every(conn, queue, consumer)
            for event_id in event_ids:
                result = one(conn, queue, consumer, int(event_id))
                if result is not True:
                    return result
            return True

        return self._run_in_transaction(one.__name__, steps) is True

    def maint_retry_events(self) -> Union[int, CallFailure]:
        conn = self._connection()
        if failed(conn):
            return conn
        count = pgq.maint_retry_events(conn)
        if failed(count):
            self.source.rollback()
            return count
        try:
            conn.commit()
        except psycopg2.Error as exc:
            self.log.error("COMMIT failed", extra={"call": "maint_retry_events", "error": str(exc).strip()})
            self.source.rollback()
            return CallFailure("maint_retry_events", str(exc).strip())
        return count

    # -- batch processing --------------------------------------------------

    def next_batch(self) -> Union[Optional[int], CallFailure]:
        """Allocate the next batch in a transaction of its own."""
        conn = self._connection()
        if failed(conn):
            return conn
        batch_id = self.allocator.next_batch(conn)
        if failed(batch_id):
            self.source.rollback()
            return batch_id
        try:
            conn.commit()
        except psycopg2.Error as exc:
            self.log.error("Could not commit batch allocation", extra={"error": str(exc).strip()})
            self.source.rollback()
            return CallFailure("next_batch", str(exc).strip())
        self.log.debug("Got batch", extra={"batch_id": batch_id})
        return batch_id

    def process(self, should_stop: Optional[Callable[[], bool]] = None) -> bool:
        """Process batches until the queue has none ready.

        Returns True when the queue is idle and the caller should sleep,
        False when the source connection is gone. A failed allocation on a
        live connection is retried at once.
        """
        while should_stop is None or not should_stop():
            batch_id = self.next_batch()
            if batch_id is None:
                self.log.debug("next_batch is null, sleep")
                return True
            if failed(batch_id):
                if not self.source.is_open:
                    return False
                self.log.info("Failed to get batch", extra={"error": batch_id.error})
                continue
            self.process_batch(batch_id)
        return True

    def process_batch(self, batch_id: int) -> BatchResult:
        try:
            result = self._process_batch(batch_id)
        except BaseException:
            self.rollback()
            raise
        self.log.info("Batch done", extra={"batch_id": batch_id, "result": result.value})
        return result

    def _process_batch(self, batch_id: int) -> BatchResult:
        conn = self.source.get()

        decision = self.batch_hook.open_batch(batch_id)
        if decision is BatchDecision.FAIL:
            self.rollback()
            return BatchResult.FAILED
        if decision is BatchDecision.SKIP:
            return self._skip_batch(conn, batch_id)

        events = pgq.get_batch_events(conn, batch_id, self.retry_delay)
        if failed(events):
            self.rollback()
            return BatchResult.FAILED

        batch = Batch(batch_id, events)
        if not batch.events:
            self.log.debug("Batch has no events", extra={"batch_id": batch_id})
            return self._close_batch(conn, batch_id, BatchResult.EMPTY)

        self.log.debug("Processing batch", extra={"batch_id": batch_id, "events": len(batch)})
        if self._process_events(conn, batch):
            self.log.warning("Batch aborted, ROLLBACK", extra={"batch_id": batch_id})
            self.rollback()
            return BatchResult.ABORTED
        return self._close_batch(conn, batch_id, BatchResult.PROCESSED)

    def _process_events(self, conn, batch: Batch) -> bool:
        """Feed the events in order; True when the batch must be aborted."""
        for event in batch.events:
            if self.event_hook.preprocess_event(event) is EventOutcome.ABORT_BATCH:
                self.log.info("preprocess_event aborts batch", extra={"event_id": event.id})
                return True

            outcome = self._run_event(event)
            self.log.debug(
                "Processed event",
                extra={"batch_id": batch.batch_id, "event_id": event.id, "outcome": outcome.name},
            )
            if outcome is EventOutcome.ABORT_BATCH:
                return True
            if not self._report(conn, batch.batch_id, event, outcome):
                return True

            if self.event_hook.postprocess_event(event) is EventOutcome.ABORT_BATCH:
                self.log.info("postprocess_event aborts batch", extra={"event_id": event.id})
                return True
        return False

    def _run_event(self, event: Event) -> EventOutcome:
        try:
            outcome = self.process_event(event)
        except Exception:
            if self.exit_on_error:
                raise
            self.log.exception("process_event raised, aborting batch", extra={"event_id": event.id})
            return EventOutcome.ABORT_BATCH
        return event.tag(outcome)

    def _report(self, conn, batch_id: int, event: Event, outcome: EventOutcome) -> bool:
        if outcome is EventOutcome.OK:
            return True
        if outcome is EventOutcome.FAILED:
            result = pgq.event_failed(conn, batch_id, event.id, event.failure_reason)
        elif outcome is EventOutcome.RETRY:
            result = pgq.event_retry(conn, batch_id, event.id, int(event.retry_delay.total_seconds()))
        else:
            raise InvalidOutcomeError(f"event {event.id}: cannot report {outcome!r}")

        if failed(result):
            self.log.error("Could not report event outcome", extra={"batch_id": batch_id, "event_id": event.id})
            return False
        return True

    def _close_batch(self, conn, batch_id: int, result: BatchResult) -> BatchResult:
        if not self.batch_hook.close_batch(batch_id):
            self.rollback()
            return BatchResult.FAILED

        if self.allocator.finish_batch(conn, batch_id) is not True:
            self.log.warning("Could not mark batch as finished", extra={"batch_id": batch_id})
            self.rollback()
            return BatchResult.FAILED

        # Destination first: if the source COMMIT then fails, the batch comes
        # back and the destination's last batch record makes it a skip.
        try:
            self.batch_hook.commit()
        except psycopg2.Error as exc:
            self.log.error("Destination COMMIT failed", extra={"batch_id": batch_id, "error": str(exc).strip()})
            self.rollback()
            return BatchResult.FAILED
        try:
            conn.commit()
        except psycopg2.Error as exc:
            self.log.error("Source COMMIT failed", extra={"batch_id": batch_id, "error": str(exc).strip()})
            self.rollback()
            return BatchResult.FAILED
        return result

    def _skip_batch(self, conn, batch_id: int) -> BatchResult:
        self.log.info("Skipping batch, already processed", extra={"batch_id": batch_id})
        if self.allocator.finish_batch(conn, batch_id) is not True:
            self.rollback()
            return BatchResult.FAILED
        try:
            conn.commit()
        except psycopg2.Error as exc:
            self.log.error("Source COMMIT failed", extra={"batch_id": batch_id, "error": str(exc).strip()})
            self.rollback()
            return BatchResult.FAILED
        self.batch_hook.rollback()
        return BatchResult.SKIPPED
