from datetime import timedelta
from typing import Any, Dict, Optional, Union

from pgqconsumer.adapters.pgq import client as pgq
from pgqconsumer.adapters.pgq import coop
from pgqconsumer.adapters.pgq.client import CallFailure
from pgqconsumer.domain.models.events import ConsumerIdentity


class StandardAllocator:
    """Registers a consumer and allocates its batches with the pgq calls."""

    def __init__(self, identity: ConsumerIdentity):
        self.identity = identity

    def register(self, conn) -> Union[bool, CallFailure]:
        return pgq.register_consumer(conn, self.identity.queue_name, self.identity.consumer_name)

    def unregister(self, conn) -> Union[bool, CallFailure]:
        return pgq.unregister_consumer(conn, self.identity.queue_name, self.identity.consumer_name)

    def consumer_info(self, conn) -> Union[Optional[Dict[str, Any]], CallFailure]:
        return pgq.get_consumer_info(conn, self.identity.queue_name, self.identity.qualified_name)

    def is_registered(self, conn) -> Union[bool, CallFailure]:
        return pgq.is_registered(conn, self.identity.queue_name, self.identity.qualified_name)

    def next_batch(self, conn) -> Union[Optional[int], CallFailure]:
        return pgq.next_batch(conn, self.identity.queue_name, self.identity.consumer_name)

    def finish_batch(self, conn, batch_id: int) -> Union[bool, CallFailure]:
        return pgq.finish_batch(conn, batch_id)


class CooperativeAllocator(StandardAllocator):
    """Sub-consumer of a cooperative consumer (pgq_coop)."""

    def __init__(self, identity: ConsumerIdentity, timeout: Optional[timedelta] = None):
        if not identity.subconsumer_name:
            raise ValueError("a cooperative consumer needs a subconsumer name")
        super().__init__(identity)
        self.timeout = timeout

    def register(self, conn) -> Union[bool, CallFailure]:
        return coop.register_subconsumer(
            conn, self.identity.queue_name, self.identity.consumer_name, self.identity.subconsumer_name
        )

    def unregister(self, conn) -> Union[bool, CallFailure]:
        return coop.unregister_subconsumer(
            conn, self.identity.queue_name, self.identity.consumer_name, self.identity.subconsumer_name
        )

    def next_batch(self, conn) -> Union[Optional[int], CallFailure]:
        return coop.next_batch(
            conn,
            self.identity.queue_name,
            self.identity.consumer_name,
            self.identity.subconsumer_name,
            self.timeout,
        )

    def finish_batch(self, conn, batch_id: int) -> Union[bool, CallFailure]:
        return coop.finish_batch(conn, batch_id)
