from datetime import timedelta

import pytest
from pydantic import ValidationError

from pgqconsumer.config.settings import Settings


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PGQ_SRC_DSN", "dbname=src")
    monkeypatch.setenv("PGQ_QUEUE_NAME", "orders")
    monkeypatch.setenv("PGQ_CONSUMER_NAME", "replica")
    return monkeypatch


class TestSettings:
    def test_reads_environment(self, env):
        env.setenv("PGQ_EVENT_SCOPED", "true")
        env.setenv("PGQ_RETRY_DELAY_SECONDS", "60")

        settings = Settings()

        assert settings.queue_name == "orders"
        assert settings.event_scoped is True
        assert settings.retry_delay == timedelta(seconds=60)

    def test_defaults(self, env):
        settings = Settings()

        assert settings.dst_dsn is None
        assert settings.poll_interval_seconds == 15
        assert settings.retry_delay == timedelta(hours=5)
        assert settings.next_batch_timeout is None
        assert settings.last_batch_table == "pgq_last_batch"
        assert settings.log_level == "INFO"

    def test_env_file(self, env, tmp_path):
        env.delenv("PGQ_CONSUMER_NAME")
        (tmp_path / ".env").write_text("PGQ_CONSUMER_NAME=from_file\nPGQ_NEXT_BATCH_TIMEOUT_SECONDS=30\n")

        settings = Settings()

        assert settings.consumer_name == "from_file"
        assert settings.next_batch_timeout == timedelta(seconds=30)

    def test_missing_required(self, env):
        env.delenv("PGQ_QUEUE_NAME")

        with pytest.raises(ValidationError):
            Settings()

    def test_rejects_unsafe_table_name(self, env):
        env.setenv("PGQ_SOURCE_TABLE", "items; DROP TABLE items")

        with pytest.raises(ValidationError):
            Settings()

    def test_schema_qualified_table(self, env):
        env.setenv("PGQ_LAST_BATCH_TABLE", "ops.pgq_last_batch")

        assert Settings().last_batch_table == "ops.pgq_last_batch"

    def test_log_level(self, env):
        env.setenv("PGQ_LOG_LEVEL", "debug")
        assert Settings().log_level == "DEBUG"

        env.setenv("PGQ_LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError):
            Settings()
