from enum import Enum
from typing import List, Tuple

from pgqconsumer.adapters.pgq.client import failed
from pgqconsumer.consumers.engine import BatchResult, Consumer
from pgqconsumer.utils.logging import configure_logging


class DrainResult(Enum):
    IDLE = "idle"
    ABORTED = "aborted"
    FAILED = "failed"


class InteractiveConsumer:
    """Consume every batch available right now, then hand control back.

    For callers that trigger consumption on request (an HTTP endpoint, a
    cron job) instead of running a standing consumer. Stops at the first
    batch that does not go through.
    """

    def __init__(self, consumer: Consumer):
        self.consumer = consumer
        self.batches: List[Tuple[int, BatchResult]] = []
        self.log = configure_logging("interactive")

    def process(self) -> DrainResult:
        self.batches = []
        try:
            return self._drain()
        finally:
            self.consumer.disconnect()

    def _drain(self) -> DrainResult:
        while True:
            batch_id = self.consumer.next_batch()
            if batch_id is None:
                self.log.info("next_batch is null", extra={"batches": len(self.batches)})
                return DrainResult.IDLE
            if failed(batch_id):
                return DrainResult.FAILED

            self.log.info("Processing batch", extra={"batch_id": batch_id})
            result = self.consumer.process_batch(batch_id)
            self.batches.append((batch_id, result))
            if result is BatchResult.ABORTED:
                return DrainResult.ABORTED
            if result is BatchResult.FAILED:
                return DrainResult.FAILED
