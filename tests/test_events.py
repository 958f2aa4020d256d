from datetime import timedelta

import pytest

from pgqconsumer.domain.models.events import (
    DEFAULT_RETRY_DELAY,
    ConsumerIdentity,
    Event,
    EventOutcome,
    InvalidOutcomeError,
)
from pgqconsumer.domain.models.payload import decode_payload, encode_payload


class TestPayload:
    def test_decode(self):
        assert decode_payload("id=1&name=foo%20bar&flag") == {"id": "1", "name": "foo bar", "flag": None}

    def test_decode_plus_and_empty_value(self):
        assert decode_payload("name=a+b&empty=") == {"name": "a b", "empty": ""}

    def test_decode_nothing(self):
        assert decode_payload("") == {}
        assert decode_payload(None) == {}

    def test_decode_skips_empty_pairs(self):
        assert decode_payload("a=1&&b=2&") == {"a": "1", "b": "2"}

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "1", "name": "O'Brien & sons"},
            {"note": None, "pct": "50%"},
            {"eq": "a=b"},
        ],
    )
    def test_encode_decode(self, payload):
        assert decode_payload(encode_payload(payload)) == payload

    def test_empty_key_is_rejected(self):
        with pytest.raises(ValueError):
            encode_payload({"": None})


class TestEvent:
    def test_from_row(self):
        event = Event.from_row(
            {
                "ev_id": "12",
                "ev_time": None,
                "ev_txid": 900,
                "ev_retry": 2,
                "ev_type": "U:id",
                "ev_data": "id=1&name=new",
                "ev_extra1": "public.items",
                "ev_extra2": "id=1&name=old",
            }
        )

        assert event.id == 12
        assert event.type == "U:id"
        assert event.payload == {"id": "1", "name": "new"}
        assert event.previous_payload == {"id": "1", "name": "old"}
        assert event.table_hint == "public.items"
        assert event.retry_count == 2
        assert event.retry_delay == DEFAULT_RETRY_DELAY
        assert event.outcome is None

    def test_tag_is_write_once(self):
        event = Event(1)

        assert event.tag(EventOutcome.OK) is EventOutcome.OK
        with pytest.raises(InvalidOutcomeError):
            event.tag(EventOutcome.OK)

    def test_abort_is_not_stored(self):
        event = Event(1)

        assert event.tag(EventOutcome.ABORT_BATCH) is EventOutcome.ABORT_BATCH
        assert event.outcome is None

    def test_unknown_outcome(self):
        with pytest.raises(InvalidOutcomeError):
            Event(1).tag("OK")

    def test_failed_needs_reason(self):
        with pytest.raises(InvalidOutcomeError):
            Event(1).tag(EventOutcome.FAILED)

        event = Event(2)
        assert event.tag(event.failed("duplicate key")) is EventOutcome.FAILED
        assert event.failure_reason == "duplicate key"

    def test_retry_delay_override(self):
        event = Event(1)

        event.tag(event.retry(timedelta(seconds=30)))

        assert event.outcome is EventOutcome.RETRY
        assert event.retry_delay == timedelta(seconds=30)

    def test_str_lists_payload(self):
        event = Event(7, type="I:id", payload={"id": "7"}, failure_reason="bad")

        text = str(event)

        assert text.splitlines()[0].split(":")[1].strip() == "7"
        assert "[id] => 7" in text
        assert "Failed reason : bad" in text


class TestConsumerIdentity:
    def test_qualified_name(self):
        assert ConsumerIdentity("q", "c").qualified_name == "c"
        assert ConsumerIdentity("q", "c", "s").qualified_name == "c.s"
