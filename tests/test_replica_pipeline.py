import psycopg2
import pytest
from psycopg2 import sql

from conftest import FakeConnection, holder
from pgqconsumer.domain.models.events import Event, EventOutcome
from pgqconsumer.pipelines.replica_pipeline import ReplicaPipeline, parse_event_type


@pytest.fixture
def destination():
    return FakeConnection("destination")


@pytest.fixture
def pipeline(settings, destination):
    return ReplicaPipeline(settings, holder(destination))


def event(ev_type, payload, previous=None, table="public.items"):
    return Event(1, type=ev_type, payload=payload, previous_payload=previous or {}, table_hint=table)


class TestParseEventType:
    def test_with_keys(self):
        assert parse_event_type("U:id,version") == ("U", ["id", "version"])

    def test_without_keys(self):
        assert parse_event_type("I") == ("I", [])
        assert parse_event_type(None) == ("", [])


class TestBuildStatement:
    def test_insert(self, pipeline):
        query, params = pipeline.build_statement(event("I:id", {"id": "1", "name": "a"}), "public.items")

        assert isinstance(query, sql.Composed)
        assert "Identifier('public', 'items')" in repr(query)
        assert params == ("1", "a")

    def test_update_uses_previous_keys(self, pipeline):
        query, params = pipeline.build_statement(
            event("U:id", {"id": "2", "name": "b"}, previous={"id": "1", "name": "a"}), "items"
        )

        assert "SQL('UPDATE ')" in repr(query)
        assert params == ("2", "b", "1")

    def test_delete(self, pipeline):
        query, params = pipeline.build_statement(event("D:id", {"id": "3"}), "items")

        assert "SQL('DELETE FROM ')" in repr(query)
        assert params == ("3",)

    def test_update_without_keys_is_unsupported(self, pipeline):
        assert pipeline.build_statement(event("U", {"id": "2"}), "items") is None

    def test_truncate_is_unsupported(self, pipeline):
        assert pipeline.build_statement(event("R", {}), "items") is None


class TestHandleEvent:
    def test_applies_to_destination(self, pipeline, destination):
        ev = event("I:id", {"id": "1"})

        assert pipeline.handle_event(ev) is EventOutcome.OK
        assert destination.executed[0][1] == ("1",)
        assert destination.commits == 0

    def test_configured_table_wins(self, settings, destination):
        pipeline = ReplicaPipeline(settings.model_copy(update={"destination_table": "mirror"}), holder(destination))

        pipeline.handle_event(event("I:id", {"id": "1"}))

        assert "Identifier('mirror')" in destination.executed[0][0]

    def test_no_table(self, pipeline):
        ev = event("I:id", {"id": "1"}, table=None)

        assert pipeline.handle_event(ev) is EventOutcome.FAILED
        assert ev.failure_reason

    def test_unsupported_type_fails_event(self, pipeline):
        ev = event("X", {"id": "1"})

        assert pipeline.handle_event(ev) is EventOutcome.FAILED
        assert "unsupported" in ev.failure_reason

    def test_error_aborts_batch(self, pipeline, destination):
        destination.reply("INSERT INTO", psycopg2.IntegrityError("duplicate key"))

        assert pipeline.handle_event(event("I:id", {"id": "1"})) is EventOutcome.ABORT_BATCH

    def test_error_fails_event_when_event_scoped(self, settings, destination):
        destination.reply("INSERT INTO", psycopg2.IntegrityError("duplicate key"))
        pipeline = ReplicaPipeline(settings.model_copy(update={"event_scoped": True}), holder(destination))
        ev = event("I:id", {"id": "1"})

        assert pipeline.handle_event(ev) is EventOutcome.FAILED
        assert ev.failure_reason == "duplicate key"
