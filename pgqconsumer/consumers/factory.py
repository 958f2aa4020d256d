from typing import Optional

from pgqconsumer.adapters.postgres.db import PostgresConnection
from pgqconsumer.config.settings import Settings
from pgqconsumer.consumers.allocators import CooperativeAllocator, StandardAllocator
from pgqconsumer.consumers.engine import Consumer, ProcessEvent
from pgqconsumer.consumers.event_scope import SavepointEventHook
from pgqconsumer.consumers.hooks import BatchHook, EventScopeHook
from pgqconsumer.consumers.remote import RemoteBatchHook
from pgqconsumer.domain.models.events import ConsumerIdentity


def identity_from(settings: Settings) -> ConsumerIdentity:
    return ConsumerIdentity(settings.queue_name, settings.consumer_name, settings.subconsumer_name)


def build_consumer(
    settings: Settings,
    process_event: ProcessEvent,
    destination: Optional[PostgresConnection] = None,
    source: Optional[PostgresConnection] = None,
) -> Consumer:
    """Pick the strategies a deployment needs.

    - a destination connection makes it a remote consumer;
    - event_scoped adds a savepoint per event on that destination;
    - a subconsumer name allocates batches through pgq_coop.
    """
    identity = identity_from(settings)
    source = source or PostgresConnection(settings.src_dsn, "source")

    if settings.subconsumer_name:
        allocator: StandardAllocator = CooperativeAllocator(identity, settings.next_batch_timeout)
    else:
        allocator = StandardAllocator(identity)

    if destination is None and settings.dst_dsn:
        destination = PostgresConnection(settings.dst_dsn, "destination")

    batch_hook = BatchHook()
    event_hook = EventScopeHook()
    if destination is not None:
        batch_hook = RemoteBatchHook(
            identity,
            destination,
            source_table=settings.source_table,
            last_batch_table=settings.last_batch_table,
            trigger_name=settings.trigger_name,
        )
        if settings.event_scoped:
            event_hook = SavepointEventHook(destination)
    elif settings.event_scoped:
        raise ValueError("event scoped consumers need a destination database (PGQ_DST_DSN)")

    return Consumer(
        identity,
        source,
        process_event,
        allocator=allocator,
        batch_hook=batch_hook,
        event_hook=event_hook,
        retry_delay=settings.retry_delay,
        exit_on_error=settings.exit_on_error,
    )
