from unittest.mock import MagicMock

import pytest

from pgqconsumer.adapters.pgq.client import CallFailure
from pgqconsumer.consumers.engine import BatchResult
from pgqconsumer.consumers.interactive import DrainResult, InteractiveConsumer


def consumer_with(batches, results=None):
    consumer = MagicMock()
    consumer.next_batch.side_effect = list(batches)
    consumer.process_batch.side_effect = results or (lambda batch_id: BatchResult.PROCESSED)
    return consumer


class TestInteractiveConsumer:
    """Drain what is ready, then disconnect."""

    def test_drains_until_idle(self):
        consumer = consumer_with([3, 4, None])
        interactive = InteractiveConsumer(consumer)

        assert interactive.process() is DrainResult.IDLE
        assert interactive.batches == [(3, BatchResult.PROCESSED), (4, BatchResult.PROCESSED)]
        consumer.disconnect.assert_called_once_with()

    def test_stops_at_aborted_batch(self):
        consumer = consumer_with([3, 4, None], [BatchResult.ABORTED])
        interactive = InteractiveConsumer(consumer)

        assert interactive.process() is DrainResult.ABORTED
        assert interactive.batches == [(3, BatchResult.ABORTED)]
        assert consumer.next_batch.call_count == 1

    def test_allocation_failure(self):
        consumer = consumer_with([CallFailure("next_batch", "gone")])

        assert InteractiveConsumer(consumer).process() is DrainResult.FAILED
        consumer.process_batch.assert_not_called()

    def test_disconnects_when_processing_raises(self):
        consumer = consumer_with([3], RuntimeError("boom"))
        interactive = InteractiveConsumer(consumer)

        with pytest.raises(RuntimeError):
            interactive.process()
        consumer.disconnect.assert_called_once_with()
