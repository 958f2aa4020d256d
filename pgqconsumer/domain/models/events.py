from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pgqconsumer.domain.models.payload import Payload, decode_payload


DEFAULT_RETRY_DELAY = timedelta(hours=5)


class EventOutcome(Enum):
    """What process_event decided for one event."""

    OK = "ok"
    FAILED = "failed"
    RETRY = "retry"
    # Not an event state: the batch transaction can no longer be trusted.
    ABORT_BATCH = "abort_batch"


class InvalidOutcomeError(ValueError):
    """An event outcome that cannot be safely reported to the queue."""


@dataclass(frozen=True)
class ConsumerIdentity:
    queue_name: str
    consumer_name: str
    subconsumer_name: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        """Name the queue knows this consumer by (pgq_coop uses consumer.sub)."""
        if self.subconsumer_name:
            return f"{self.consumer_name}.{self.subconsumer_name}"
        return self.consumer_name


@dataclass
class Event:
    id: int
    timestamp: Optional[datetime] = None
    transaction_id: Optional[int] = None
    retry_count: Optional[int] = None
    type: Optional[str] = None
    payload: Payload = field(default_factory=dict)
    previous_payload: Payload = field(default_factory=dict)
    table_hint: Optional[str] = None
    failure_reason: Optional[str] = None
    failed_time: Optional[datetime] = None
    retry_delay: timedelta = DEFAULT_RETRY_DELAY
    outcome: Optional[EventOutcome] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], retry_delay: timedelta = DEFAULT_RETRY_DELAY) -> "Event":
        """Build an event from a pgq.get_batch_events / failed_event_list row."""
        return cls(
            id=int(row["ev_id"]),
            timestamp=row.get("ev_time"),
            transaction_id=row.get("ev_txid"),
            retry_count=row.get("ev_retry"),
            type=row.get("ev_type"),
            payload=decode_payload(row.get("ev_data")),
            previous_payload=decode_payload(row.get("ev_extra2")),
            table_hint=row.get("ev_extra1"),
            failure_reason=row.get("ev_failed_reason"),
            failed_time=row.get("ev_failed_time"),
            retry_delay=retry_delay,
        )

    def failed(self, reason: str) -> EventOutcome:
        self.failure_reason = reason
        return EventOutcome.FAILED

    def retry(self, delay: Optional[timedelta] = None) -> EventOutcome:
        if delay is not None:
            self.retry_delay = delay
        return EventOutcome.RETRY

    def tag(self, outcome: Any) -> EventOutcome:
        """Record the outcome returned for this event and return it.

        Only OK, FAILED and RETRY are kept on the event; ABORT_BATCH is
        passed through untouched.
        """
        if not isinstance(outcome, EventOutcome):
            raise InvalidOutcomeError(f"event {self.id}: unknown outcome {outcome!r}")
        if self.outcome is not None:
            raise InvalidOutcomeError(f"event {self.id}: already tagged {self.outcome.name}")
        if outcome is EventOutcome.FAILED and not self.failure_reason:
            raise InvalidOutcomeError(f"event {self.id}: FAILED without a failure reason")

        if outcome is not EventOutcome.ABORT_BATCH:
            self.outcome = outcome
        return outcome

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "time": self.timestamp,
            "txid": self.transaction_id,
            "retry": self.retry_count,
            "type": self.type,
            "data": self.payload,
            "old_data": self.previous_payload,
            "table": self.table_hint,
        }

    def __str__(self) -> str:
        fields = "".join(f"\n\t[{name}] => {value}" for name, value in self.payload.items())
        return (
            f"Event id : {self.id:10d}\n"
            f"Time : {self.timestamp}\n"
            f"Failed time : {self.failed_time}\n"
            f"Type: {self.type}\n"
            f"Failed reason : {self.failure_reason}\n"
            f"Data :{fields}\n"
        )


@dataclass
class Batch:
    batch_id: int
    events: List[Event] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)
