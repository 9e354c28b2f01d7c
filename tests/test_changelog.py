from __future__ import annotations

import asyncio
from decimal import Decimal

import psycopg
import pytest
from _stubs import CHANGE_TIME, ChangeLogTable
from psycopg_pool import PoolTimeout

from changelog_sync.changelog import ChangeLogReader, decode_change_row
from changelog_sync.errors import FatalConfigurationError, PoisonRecordError, RetryableError
from changelog_sync.models import Checkpoint, Operation
from changelog_sync.settings import DatabaseConfig

_SOURCE = DatabaseConfig(host="localhost", user="sync", password="secret", database="app")


def _reader(table: ChangeLogTable, *, batch_size: int = 10) -> ChangeLogReader:
    return ChangeLogReader(config=_SOURCE, batch_size=batch_size, pool=table.pool)


def test_decode_change_row_parses_payload_with_decimals() -> None:
    record = decode_change_row(
        (5, "orders", 42, "update", '{"total": 12.50, "items": [1, 2]}', CHANGE_TIME)
    )

    assert record.sequence_id == 5
    assert record.record_id == "42"
    assert record.operation is Operation.UPDATE
    assert record.payload == {"total": Decimal("12.50"), "items": [1, 2]}


def test_decode_change_row_keeps_delete_pre_image_id() -> None:
    record = decode_change_row((9, "users", "7", "DELETE", '{"id": 7, "name": "A"}', CHANGE_TIME))

    assert record.operation is Operation.DELETE
    assert record.document_key == "users:7"


@pytest.mark.parametrize(
    "row",
    [
        (1, "users", "7", "INSERT", "{not json", CHANGE_TIME),
        (1, "users", "7", "INSERT", "[1, 2]", CHANGE_TIME),
        (1, "users", "7", "UPSERT", "{}", CHANGE_TIME),
        (1, "users", None, "INSERT", "{}", CHANGE_TIME),
        (1, "users", "7", "UPDATE", None, CHANGE_TIME),
    ],
)
def test_decode_change_row_rejects_malformed_rows(row: tuple[object, ...]) -> None:
    with pytest.raises(ValueError):
        decode_change_row(row)


def test_poll_queries_strictly_after_checkpoint_sequence_id() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        table.extend(
            [
                ("INSERT", "users", 1, {"name": "A"}),
                ("INSERT", "users", 2, {"name": "B"}),
                ("UPDATE", "users", 1, {"name": "C"}),
            ]
        )
        reader = _reader(table, batch_size=2)
        await reader.open()

        batch = await reader.poll(Checkpoint(last_sequence_id=1))

        assert [r.sequence_id for r in batch.records] == [2, 3]
        assert batch.through.last_sequence_id == 3
        assert table.poll_params[-1] == (1, 2)

    asyncio.run(scenario())


def test_poll_with_timestamp_ties_still_orders_by_sequence_id() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        for name in ("A", "B", "C"):
            table.append("UPDATE", "users", 7, {"name": name})
        reader = _reader(table)
        await reader.open()

        batch = await reader.poll(Checkpoint(last_sequence_id=0, last_timestamp=CHANGE_TIME))

        assert [r.payload["name"] for r in batch.records if r.payload] == ["A", "B", "C"]

    asyncio.run(scenario())


def test_poll_returns_empty_batch_when_no_new_changes() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        table.append("INSERT", "users", 1, {"name": "A"})
        reader = _reader(table)
        await reader.open()
        since = Checkpoint(last_sequence_id=1, last_timestamp=CHANGE_TIME)

        batch = await reader.poll(since)

        assert batch.records == ()
        assert batch.through == since

    asyncio.run(scenario())


def test_poison_row_is_reported_without_losing_the_rest_of_the_batch() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        table.append("INSERT", "users", 1, {"name": "A"})
        table.append("INSERT", "users", 2, "{broken")
        table.append("INSERT", "users", 3, {"name": "C"})
        reader = _reader(table)
        await reader.open()

        with pytest.raises(PoisonRecordError) as exc_info:
            await reader.poll(Checkpoint())

        error = exc_info.value
        assert error.sequence_id == 2
        assert error.sequence_ids == (2,)
        assert [r.sequence_id for r in error.batch.records] == [1, 3]
        assert error.batch.through.last_sequence_id == 3

    asyncio.run(scenario())


def test_trailing_poison_row_still_moves_batch_position() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        table.append("INSERT", "users", 1, {"name": "A"})
        table.append("TRUNCATE", "users", 1, None)
        reader = _reader(table)
        await reader.open()

        with pytest.raises(PoisonRecordError) as exc_info:
            await reader.poll(Checkpoint())

        assert exc_info.value.batch.through.last_sequence_id == 2
        assert exc_info.value.batch.row_count == 2

    asyncio.run(scenario())


def test_connectivity_errors_are_retryable() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        reader = _reader(table)
        await reader.open()

        table.errors.append(psycopg.OperationalError("server closed the connection unexpectedly"))
        with pytest.raises(RetryableError):
            await reader.poll(Checkpoint())

        table.errors.append(PoolTimeout("couldn't get a connection after 5.00 sec"))
        with pytest.raises(RetryableError):
            await reader.poll(Checkpoint())

    asyncio.run(scenario())


def test_missing_table_at_runtime_is_fatal() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        reader = _reader(table)
        await reader.open()

        table.errors.append(psycopg.errors.UndefinedTable('relation "change_log" does not exist'))
        with pytest.raises(FatalConfigurationError):
            await reader.poll(Checkpoint())

    asyncio.run(scenario())


def test_open_failures_are_fatal_configuration_errors() -> None:
    async def scenario() -> None:
        unreachable = ChangeLogTable()
        unreachable.pool.open_error = PoolTimeout("pool initialization incomplete after 5.0 sec")
        with pytest.raises(FatalConfigurationError):
            await _reader(unreachable).open()

        missing_table = ChangeLogTable()
        missing_table.errors.append(psycopg.errors.UndefinedTable("relation does not exist"))
        with pytest.raises(FatalConfigurationError):
            await _reader(missing_table).open()
        assert missing_table.pool.opened
        assert missing_table.pool.closed

    asyncio.run(scenario())


def test_close_closes_pool() -> None:
    async def scenario() -> None:
        table = ChangeLogTable()
        reader = _reader(table)
        await reader.open()
        await reader.close()

        assert table.pool.closed

    asyncio.run(scenario())

