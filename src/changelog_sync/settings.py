from __future__ import annotations

import re
from typing import Literal

from psycopg.conninfo import make_conninfo
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class DatabaseConfig(BaseModel):
    """Connection parameters for the relational source."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1)
    port: int = Field(default=5432, gt=0, lt=65536)
    user: str = Field(min_length=1)
    password: str = Field(repr=False)
    database: str = Field(min_length=1)
    connect_timeout_s: int = Field(default=5, gt=0)

    @property
    def conninfo(self) -> str:
        # make_conninfo applies libpq quoting to every value.
        return make_conninfo(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            dbname=self.database,
            connect_timeout=self.connect_timeout_s,
        )


class DocumentStoreConfig(BaseModel):
    """Connection parameters for the DynamoDB target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    region: str = Field(min_length=1)
    table: str = Field(min_length=3, max_length=255)
    endpoint_url: str | None = None
    key_attribute: str = Field(default="doc_key", min_length=1)
    max_pool_connections: int = Field(default=10, gt=0)
    connect_timeout_s: float = Field(default=5.0, gt=0)
    read_timeout_s: float = Field(default=10.0, gt=0)


class SyncConfig(BaseModel):
    """Cadence, buffering and retry knobs for the synchronizer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = Field(default=100, gt=0)
    sync_interval_s: float = Field(default=1.0, gt=0)
    queue_capacity: int = Field(default=4, gt=0)
    enqueue_timeout_s: float = Field(default=5.0, gt=0)
    retry_base_delay_ms: int = Field(default=100, gt=0)
    retry_max_delay_ms: int = Field(default=30_000, gt=0)
    shutdown_grace_s: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _validate_retry_bounds(self) -> SyncConfig:
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        return self

    @property
    def queue_record_capacity(self) -> int:
        return self.queue_capacity * self.batch_size


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False)

    pghost: str = Field(alias="PGHOST")
    pgport: int = Field(default=5432, alias="PGPORT")
    pguser: str = Field(alias="PGUSER")
    pgpassword: str = Field(alias="PGPASSWORD")
    pgdatabase: str = Field(alias="PGDATABASE")
    connect_timeout_s: int = Field(default=5, alias="CONNECT_TIMEOUT_S")
    change_log_table: str = Field(default="change_log", alias="CHANGE_LOG_TABLE")
    source_pool_min_size: int = Field(default=1, alias="SOURCE_POOL_MIN_SIZE")
    source_pool_max_size: int = Field(default=4, alias="SOURCE_POOL_MAX_SIZE")

    aws_region: str = Field(alias="AWS_REGION")
    dynamodb_table: str = Field(alias="DYNAMODB_TABLE")
    dynamodb_endpoint_url: str | None = Field(default=None, alias="DYNAMODB_ENDPOINT_URL")
    dynamodb_key_attribute: str = Field(default="doc_key", alias="DYNAMODB_KEY_ATTRIBUTE")
    dynamodb_max_pool_connections: int = Field(default=10, alias="DYNAMODB_MAX_POOL_CONNECTIONS")
    dynamodb_connect_timeout_s: float = Field(default=5.0, alias="DYNAMODB_CONNECT_TIMEOUT_S")
    dynamodb_read_timeout_s: float = Field(default=10.0, alias="DYNAMODB_READ_TIMEOUT_S")

    checkpoint_backend: Literal["dynamodb", "file"] = Field(
        default="dynamodb",
        alias="CHECKPOINT_BACKEND",
    )
    checkpoint_table: str = Field(default="changelog_sync_checkpoints", alias="CHECKPOINT_TABLE")
    checkpoint_path: str | None = Field(default=None, alias="CHECKPOINT_PATH")
    sync_name: str = Field(default="default", alias="SYNC_NAME")

    batch_size: int = Field(default=100, alias="BATCH_SIZE")
    sync_interval_s: float = Field(default=1.0, alias="SYNC_INTERVAL_S")
    queue_capacity_batches: int = Field(default=4, alias="QUEUE_CAPACITY_BATCHES")
    enqueue_timeout_s: float = Field(default=5.0, alias="ENQUEUE_TIMEOUT_S")
    retry_base_delay_ms: int = Field(default=100, alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(default=30_000, alias="RETRY_MAX_DELAY_MS")
    shutdown_grace_s: float = Field(default=30.0, alias="SHUTDOWN_GRACE_S")

    @field_validator("change_log_table")
    @classmethod
    def _validate_change_log_table(cls, value: str) -> str:
        if not _TABLE_PATTERN.fullmatch(value):
            raise ValueError(
                "CHANGE_LOG_TABLE must be an identifier, optionally schema-qualified"
            )
        return value

    @field_validator("batch_size", "queue_capacity_batches", "source_pool_max_size")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("sync_interval_s", "enqueue_timeout_s", "shutdown_grace_s")
    @classmethod
    def _validate_positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_checkpoint_backend(self) -> Settings:
        if self.checkpoint_backend == "file" and not self.checkpoint_path:
            raise ValueError("CHECKPOINT_PATH is required when CHECKPOINT_BACKEND is file")
        if self.source_pool_min_size < 0 or self.source_pool_min_size > self.source_pool_max_size:
            raise ValueError("SOURCE_POOL_MIN_SIZE must be between 0 and SOURCE_POOL_MAX_SIZE")
        return self

    @property
    def source_database(self) -> DatabaseConfig:
        return DatabaseConfig(
            host=self.pghost,
            port=self.pgport,
            user=self.pguser,
            password=self.pgpassword,
            database=self.pgdatabase,
            connect_timeout_s=self.connect_timeout_s,
        )

    @property
    def document_store(self) -> DocumentStoreConfig:
        return DocumentStoreConfig(
            region=self.aws_region,
            table=self.dynamodb_table,
            endpoint_url=self.dynamodb_endpoint_url,
            key_attribute=self.dynamodb_key_attribute,
            max_pool_connections=self.dynamodb_max_pool_connections,
            connect_timeout_s=self.dynamodb_connect_timeout_s,
            read_timeout_s=self.dynamodb_read_timeout_s,
        )

    @property
    def checkpoint_store(self) -> DocumentStoreConfig:
        return self.document_store.model_copy(
            update={"table": self.checkpoint_table, "key_attribute": "sync_name"}
        )

    @property
    def sync(self) -> SyncConfig:
        return SyncConfig(
            batch_size=self.batch_size,
            sync_interval_s=self.sync_interval_s,
            queue_capacity=self.queue_capacity_batches,
            enqueue_timeout_s=self.enqueue_timeout_s,
            retry_base_delay_ms=self.retry_base_delay_ms,
            retry_max_delay_ms=self.retry_max_delay_ms,
            shutdown_grace_s=self.shutdown_grace_s,
        )
