import re
from datetime import timedelta
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SQL_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Runtime configuration for a queue consumer."""

    src_dsn: str = Field(..., validation_alias="PGQ_SRC_DSN")
    dst_dsn: Optional[str] = Field(None, validation_alias="PGQ_DST_DSN")
    queue_name: str = Field(..., validation_alias="PGQ_QUEUE_NAME")
    consumer_name: str = Field(..., validation_alias="PGQ_CONSUMER_NAME")
    subconsumer_name: Optional[str] = Field(None, validation_alias="PGQ_SUBCONSUMER_NAME")

    source_table: Optional[str] = Field(None, validation_alias="PGQ_SOURCE_TABLE")
    destination_table: Optional[str] = Field(None, validation_alias="PGQ_DESTINATION_TABLE")
    event_scoped: bool = Field(False, validation_alias="PGQ_EVENT_SCOPED")

    poll_interval_seconds: float = Field(15, validation_alias="PGQ_POLL_INTERVAL_SECONDS")
    next_batch_timeout_seconds: Optional[float] = Field(None, validation_alias="PGQ_NEXT_BATCH_TIMEOUT_SECONDS")
    retry_delay_seconds: int = Field(18000, validation_alias="PGQ_RETRY_DELAY_SECONDS")
    exit_on_error: bool = Field(False, validation_alias="PGQ_EXIT_ON_ERROR")

    log_level: str = Field("INFO", validation_alias="PGQ_LOG_LEVEL")
    log_file: Optional[str] = Field(None, validation_alias="PGQ_LOG_FILE")
    pid_dir: str = Field("/tmp", validation_alias="PGQ_PID_DIR")

    last_batch_table: str = Field("pgq_last_batch", validation_alias="PGQ_LAST_BATCH_TABLE")
    trigger_name: str = Field("ins_to_queue", validation_alias="PGQ_TRIGGER_NAME")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("source_table", "destination_table", "last_batch_table", "trigger_name")
    @classmethod
    def _sql_name(cls, value: Optional[str]) -> Optional[str]:
        # Interpolated into SQL text.
        if value is not None and not SQL_NAME.match(value):
            raise ValueError(f"not a plain SQL name: {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(seconds=self.retry_delay_seconds)

    @property
    def next_batch_timeout(self) -> Optional[timedelta]:
        if self.next_batch_timeout_seconds is None:
            return None
        return timedelta(seconds=self.next_batch_timeout_seconds)
