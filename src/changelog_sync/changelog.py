from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

import psycopg
from psycopg import sql
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from changelog_sync.errors import FatalConfigurationError, PoisonRecordError, RetryableError
from changelog_sync.models import Checkpoint, ChangeRecord, Operation, PoisonedRecord, SyncBatch
from changelog_sync.settings import DatabaseConfig

LOGGER = logging.getLogger(__name__)

_COLUMNS = ("id", "table_name", "record_id", "operation", "new_data", "change_timestamp")

_POLL_SQL = """
SELECT id, table_name, record_id, operation, new_data::text, change_timestamp
FROM {table}
WHERE id > %s
ORDER BY id
LIMIT %s
"""


def table_identifier(name: str) -> sql.Identifier:
    return sql.Identifier(*name.split("."))


def build_poll_query(table: str) -> sql.Composed:
    return sql.SQL(_POLL_SQL).format(table=table_identifier(table))


def build_probe_query(table: str) -> sql.Composed:
    return sql.SQL("SELECT {columns} FROM {table} LIMIT 0").format(
        columns=sql.SQL(", ").join(sql.Identifier(c) for c in _COLUMNS),
        table=table_identifier(table),
    )


def decode_change_row(row: Sequence[Any]) -> ChangeRecord:
    """Turn one change-log row into a ChangeRecord.

    Raises ValueError describing why the row cannot be replicated.
    """

    sequence_id, table_name, record_id, operation, raw_payload, change_timestamp = row

    try:
        op = Operation(str(operation).strip().upper())
    except ValueError:
        raise ValueError(f"unknown operation {operation!r}") from None

    if record_id is None or str(record_id) == "":
        raise ValueError("missing record_id")
    if not table_name:
        raise ValueError("missing table_name")
    if not isinstance(change_timestamp, datetime):
        raise ValueError(f"invalid change_timestamp {change_timestamp!r}")

    payload = _decode_payload(raw_payload)
    if payload is not None and not isinstance(payload, dict):
        raise ValueError(f"payload must be a JSON object, got {type(payload).__name__}")
    if payload is None and op is not Operation.DELETE:
        raise ValueError(f"{op.value} change has no payload")

    return ChangeRecord(
        table_name=str(table_name),
        record_id=str(record_id),
        operation=op,
        payload=payload,
        change_timestamp=change_timestamp,
        sequence_id=int(sequence_id),
    )


def _decode_payload(raw_payload: Any) -> Any:
    if raw_payload is None:
        return None
    if isinstance(raw_payload, (bytes, bytearray, memoryview)):
        try:
            raw_payload = bytes(raw_payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"payload is not valid UTF-8: {exc}") from None
    if not isinstance(raw_payload, str):
        return raw_payload

    try:
        # DynamoDB numbers must not be floats.
        return json.loads(raw_payload, parse_float=Decimal)
    except json.JSONDecodeError as exc:
        raise ValueError(f"undecodable payload: {exc.msg} at position {exc.pos}") from None


def create_source_pool(
    config: DatabaseConfig,
    *,
    min_size: int,
    max_size: int,
) -> AsyncConnectionPool:
    return AsyncConnectionPool(
        conninfo=config.conninfo,
        min_size=min_size,
        max_size=max_size,
        kwargs={"autocommit": True},
        timeout=float(config.connect_timeout_s),
        name="changelog_source",
        open=False,
    )


class ChangeLogReader:
    """Reads change-log rows newer than a checkpoint, ordered by sequence id."""

    def __init__(
        self,
        *,
        config: DatabaseConfig,
        batch_size: int,
        table: str = "change_log",
        min_pool_size: int = 1,
        max_pool_size: int = 4,
        pool: Any | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self._config = config
        self._batch_size = batch_size
        self._table = table
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._pool = pool
        self._logger = logger or LOGGER
        self._poll_query = build_poll_query(table)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def open(self) -> None:
        if self._pool is None:
            self._pool = create_source_pool(
                self._config,
                min_size=self._min_pool_size,
                max_size=self._max_pool_size,
            )

        try:
            await self._pool.open(wait=True, timeout=float(self._config.connect_timeout_s))
            async with self._pool.connection() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(build_probe_query(self._table))
        except (psycopg.Error, PoolTimeout) as exc:
            await self._pool.close()
            raise FatalConfigurationError(
                f"Change log table {self._table!r} is not readable on "
                f"{self._config.host}:{self._config.port}/{self._config.database}: {exc}"
            ) from exc

        self._logger.info(
            "change_log_reader_ready",
            extra={"change_log_table": self._table, "pool_max_size": self._max_pool_size},
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()

    async def poll(self, since: Checkpoint) -> SyncBatch:
        if self._pool is None:
            raise RuntimeError("ChangeLogReader.open() must be called before poll()")

        try:
            async with self._pool.connection() as connection:
                async with connection.cursor() as cursor:
                    await cursor.execute(
                        self._poll_query,
                        (since.last_sequence_id, self._batch_size),
                    )
                    rows = await cursor.fetchall()
        except (PoolTimeout, psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise RetryableError(f"Change log poll failed: {exc}") from exc
        except psycopg.ProgrammingError as exc:
            raise FatalConfigurationError(f"Change log query rejected: {exc}") from exc

        return self._build_batch(rows, since=since)

    def _build_batch(self, rows: Sequence[Sequence[Any]], *, since: Checkpoint) -> SyncBatch:
        records: list[ChangeRecord] = []
        poisoned: list[PoisonedRecord] = []
        through = since

        for row in rows:
            try:
                record = decode_change_row(row)
            except ValueError as exc:
                sequence_id = int(row[0])
                poisoned.append(PoisonedRecord(sequence_id=sequence_id, reason=str(exc)))
                timestamp = row[5] if isinstance(row[5], datetime) else through.last_timestamp
                through = Checkpoint(last_sequence_id=sequence_id, last_timestamp=timestamp)
                continue

            records.append(record)
            through = record.checkpoint

        batch = SyncBatch(records=tuple(records), poisoned=tuple(poisoned), through=through)
        if poisoned:
            raise PoisonRecordError(poisoned, batch=batch)
        return batch
