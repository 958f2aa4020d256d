"""Strategies the consumer engine calls around batches and events.

The defaults do nothing, so a plain consumer goes through the same calls as
a remote or event-scoped one.
"""
from enum import Enum
from typing import Optional

from pgqconsumer.domain.models.events import Event, EventOutcome


class BatchDecision(Enum):
    PROCEED = "proceed"
    # Already applied downstream: finish at the queue, do no event work.
    SKIP = "skip"
    FAIL = "fail"


class BatchHook:
    """Bookkeeping around one batch, next to the source transaction."""

    def open_batch(self, batch_id: int) -> BatchDecision:
        return BatchDecision.PROCEED

    def close_batch(self, batch_id: int) -> bool:
        """Last chance to write inside the batch transaction(s) before commit."""
        return True

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    def check(self, source_conn) -> bool:
        return True

    def install(self, source_conn) -> bool:
        return True

    def disconnect(self) -> None:
        pass


class EventScopeHook:
    """Called before and after process_event; ABORT_BATCH stops the batch."""

    def preprocess_event(self, event: Event) -> Optional[EventOutcome]:
        return None

    def postprocess_event(self, event: Event) -> Optional[EventOutcome]:
        return None
