from datetime import timedelta

import pytest

from conftest import holder
from pgqconsumer.consumers.allocators import CooperativeAllocator
from pgqconsumer.consumers.engine import BatchResult, Consumer
from pgqconsumer.domain.models.events import ConsumerIdentity


@pytest.fixture
def sub_identity():
    return ConsumerIdentity("testq", "replica", "w1")


class TestCooperativeAllocator:
    """Sub-consumers allocate and finish batches through pgq_coop."""

    def test_requires_subconsumer(self, identity):
        with pytest.raises(ValueError):
            CooperativeAllocator(identity)

    def test_next_batch_without_timeout(self, source, sub_identity):
        source.reply("pgq_coop.next_batch", [{"batch_id": 21}])
        allocator = CooperativeAllocator(sub_identity)

        assert allocator.next_batch(source) == 21
        assert source.queries("pgq_coop.next_batch")[0][1] == ("testq", "replica", "w1")

    def test_next_batch_with_timeout(self, source, sub_identity):
        allocator = CooperativeAllocator(sub_identity, timeout=timedelta(minutes=5))

        assert allocator.next_batch(source) is None
        assert source.queries("pgq_coop.next_batch")[0][1] == ("testq", "replica", "w1", timedelta(minutes=5))

    def test_register_and_unregister(self, source, sub_identity):
        source.reply("pgq_coop.register_subconsumer", [{"registered": 1}])
        source.reply("pgq_coop.unregister_subconsumer", [{"unregistered": 1}])
        allocator = CooperativeAllocator(sub_identity)

        assert allocator.register(source) is True
        assert allocator.unregister(source) is True
        assert source.queries("pgq_coop.unregister_subconsumer")[0][1] == ("testq", "replica", "w1", 0)

    def test_registration_is_checked_under_qualified_name(self, source, sub_identity):
        source.reply("pgq.get_consumer_info", [{"queue_name": "testq", "consumer_name": "replica.w1"}])
        allocator = CooperativeAllocator(sub_identity)

        assert allocator.is_registered(source) is True
        assert source.queries("pgq.get_consumer_info")[0][1] == ("testq", "replica.w1")

    def test_batch_is_finished_through_coop(self, source, sub_identity):
        consumer = Consumer(
            sub_identity,
            holder(source),
            lambda event: None,
            allocator=CooperativeAllocator(sub_identity),
        )

        assert consumer.process_batch(21) is BatchResult.EMPTY
        assert [params for _, params in source.queries("pgq_coop.finish_batch")] == [(21,)]
        assert source.queries("pgq.finish_batch") == []
