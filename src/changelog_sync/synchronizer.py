from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from changelog_sync.checkpoint import CheckpointTracker
from changelog_sync.errors import (
    FatalConfigurationError,
    PartialBatchFailure,
    PoisonRecordError,
    RetryableError,
)
from changelog_sync.models import ApplyResult, Checkpoint, SyncBatch
from changelog_sync.queue import ChangeQueue
from changelog_sync.retry import retry_delay, wait_or_stop
from changelog_sync.settings import SyncConfig

LOGGER = logging.getLogger(__name__)


class SyncState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.STOPPED: frozenset({SyncState.STARTING}),
    SyncState.STARTING: frozenset({SyncState.RUNNING, SyncState.ERROR}),
    SyncState.RUNNING: frozenset({SyncState.STOPPING, SyncState.ERROR}),
    SyncState.STOPPING: frozenset({SyncState.STOPPED}),
    SyncState.ERROR: frozenset(),
}


class ChangeSource(Protocol):
    async def open(self) -> None:
        ...

    async def poll(self, since: Checkpoint) -> SyncBatch:
        ...

    async def close(self) -> None:
        ...


class ChangeSink(Protocol):
    async def open(self) -> None:
        ...

    async def apply(self, batch: SyncBatch) -> ApplyResult:
        ...

    async def close(self) -> None:
        ...


class _Resource(Protocol):
    async def close(self) -> None:
        ...


class SyncStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: SyncState
    last_sequence_id: int
    read_sequence_id: int
    queued_batches: int
    error: str | None = None


class Synchronizer:
    """Drives the poll loop and the apply loop between a change log and a document store.

    The poll loop owns the read position; the apply loop is the only caller
    that advances the durable checkpoint.
    """

    def __init__(
        self,
        *,
        config: SyncConfig,
        reader: ChangeSource,
        writer: ChangeSink,
        checkpoints: CheckpointTracker,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._reader = reader
        self._writer = writer
        self._checkpoints = checkpoints
        self._logger = logger or LOGGER

        self._state = SyncState.STOPPED
        self._error: BaseException | None = None
        self._queue = ChangeQueue(max_batches=config.queue_capacity)
        self._read_position = Checkpoint()
        self._stopping = asyncio.Event()
        self._abandon = asyncio.Event()
        self._finished = asyncio.Event()
        self._started = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._apply_task: asyncio.Task[None] | None = None
        self._supervisor: asyncio.Task[None] | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def checkpoint(self) -> Checkpoint:
        return self._checkpoints.current

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            last_sequence_id=self._checkpoints.current.last_sequence_id,
            read_sequence_id=self._read_position.last_sequence_id,
            queued_batches=self._queue.qsize(),
            error=str(self._error) if self._error is not None else None,
        )

    async def start(self) -> None:
        if self._finished.is_set():
            raise RuntimeError("A stopped Synchronizer cannot be restarted; build a new one")
        self._transition(SyncState.STARTING)

        opened: list[_Resource] = []
        try:
            for resource in (self._reader, self._writer, self._checkpoints):
                await resource.open()
                opened.append(resource)
            checkpoint = await self._checkpoints.load()
        except Exception as exc:
            await self._close_resources(opened)
            error = (
                exc
                if isinstance(exc, FatalConfigurationError)
                else FatalConfigurationError(f"Synchronizer failed to start: {exc}")
            )
            self._error = error
            self._transition(SyncState.ERROR)
            self._logger.error(
                "synchronizer_start_failed",
                exc_info=exc,
                extra={"error_type": type(exc).__name__},
            )
            self._started.set()
            self._finished.set()
            if error is exc:
                raise
            raise error from exc

        self._read_position = checkpoint
        self._transition(SyncState.RUNNING)
        self._poll_task = asyncio.create_task(self._poll_loop(), name="changelog_poll")
        self._apply_task = asyncio.create_task(self._apply_loop(), name="document_apply")
        self._supervisor = asyncio.create_task(self._supervise(), name="sync_supervisor")
        self._started.set()

    async def stop(self) -> None:
        if self._state is SyncState.STOPPED:
            return
        if self._state is SyncState.STARTING:
            await self._started.wait()
        if self._state is not SyncState.RUNNING:
            await self._finished.wait()
            return

        self._transition(SyncState.STOPPING)
        if self._supervisor is not None:
            self._supervisor.cancel()
            await asyncio.gather(self._supervisor, return_exceptions=True)

        await self._halt_polling()
        await self._drain()
        await self._close_resources([self._reader, self._writer, self._checkpoints])
        self._transition(SyncState.STOPPED)
        self._finished.set()

    async def wait(self) -> SyncState:
        await self._finished.wait()
        return self._state

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid synchronizer transition {self._state.value} -> {new_state.value}")

        previous = self._state
        self._state = new_state
        self._logger.info(
            "synchronizer_state",
            extra={"from_state": previous.value, "to_state": new_state.value},
        )

    async def _supervise(self) -> None:
        assert self._poll_task is not None and self._apply_task is not None
        done, _ = await asyncio.wait(
            {self._poll_task, self._apply_task},
            return_when=asyncio.FIRST_EXCEPTION,
        )
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                await self._fail(exc)
                return

        if self._state is SyncState.RUNNING:
            await self._fail(RuntimeError("Synchronizer loops stopped unexpectedly"))

    async def _fail(self, exc: BaseException) -> None:
        self._error = exc
        self._transition(SyncState.ERROR)
        self._logger.error(
            "synchronizer_failed",
            exc_info=exc,
            extra={"error_type": type(exc).__name__},
        )

        # The in-flight write is allowed to finish; queued batches are left for the next run.
        self._abandon.set()
        await self._halt_polling()
        await self._queue.close()
        if self._apply_task is not None:
            await asyncio.gather(self._apply_task, return_exceptions=True)
        await self._close_resources([self._reader, self._writer, self._checkpoints])
        self._finished.set()

    async def _halt_polling(self) -> None:
        self._stopping.set()
        if self._poll_task is None:
            return
        # Reads are safe to interrupt; nothing past the durable checkpoint is lost.
        self._poll_task.cancel()
        results = await asyncio.gather(self._poll_task, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and result is not self._error:
                self._logger.error("poll_loop_failed", exc_info=result)

    async def _drain(self) -> None:
        await self._queue.close()
        if self._apply_task is None:
            return

        try:
            await asyncio.wait_for(
                asyncio.shield(self._apply_task),
                timeout=self._config.shutdown_grace_s,
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                "drain_grace_expired",
                extra={
                    "grace_s": self._config.shutdown_grace_s,
                    "queued_batches": self._queue.qsize(),
                },
            )
            self._abandon.set()
            results = await asyncio.gather(self._apply_task, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._logger.error("apply_loop_failed", exc_info=result)
        except Exception:
            self._logger.exception("apply_loop_failed")

    async def _close_resources(self, resources: Sequence[_Resource]) -> None:
        for resource in reversed(resources):
            try:
                await resource.close()
            except Exception:
                self._logger.exception(
                    "resource_close_failed",
                    extra={"resource": type(resource).__name__},
                )

    def _retry_delay(self, attempt: int) -> float:
        return retry_delay(
            attempt,
            base_s=self._config.retry_base_delay_ms / 1000.0,
            max_s=self._config.retry_max_delay_ms / 1000.0,
        )

    async def _poll_loop(self) -> None:
        while not self._stopping.is_set():
            since = self._read_position
            batch = await self._poll_with_retries(since)
            if batch is None:
                return

            self._logger.log(
                logging.INFO if batch.row_count else logging.DEBUG,
                "poll_cycle",
                extra={
                    "since_sequence_id": since.last_sequence_id,
                    "rows": batch.row_count,
                    "records": len(batch),
                    "through_sequence_id": batch.through.last_sequence_id,
                },
            )

            if batch.through.last_sequence_id > since.last_sequence_id:
                if not await self._enqueue(batch):
                    return
                self._read_position = batch.through
                if batch.row_count >= self._config.batch_size:
                    # Backlog: poll again right away instead of waiting a full interval.
                    continue

            if await wait_or_stop(self._stopping, self._config.sync_interval_s):
                return

    async def _poll_with_retries(self, since: Checkpoint) -> SyncBatch | None:
        attempt = 0
        while not self._stopping.is_set():
            try:
                return await self._reader.poll(since)
            except PoisonRecordError as exc:
                for poisoned in exc.poisoned:
                    self._logger.error(
                        "poison_record_skipped",
                        extra={"sequence_id": poisoned.sequence_id, "reason": poisoned.reason},
                    )
                return exc.batch
            except RetryableError:
                delay = self._retry_delay(attempt)
                attempt += 1
                self._logger.warning(
                    "poll_failed_retrying",
                    exc_info=True,
                    extra={
                        "since_sequence_id": since.last_sequence_id,
                        "attempt": attempt,
                        "retry_in_s": round(delay, 3),
                    },
                )
                if await wait_or_stop(self._stopping, delay):
                    return None
        return None

    async def _enqueue(self, batch: SyncBatch) -> bool:
        while not self._stopping.is_set():
            if await self._queue.put(batch, timeout_s=self._config.enqueue_timeout_s):
                return True
            self._logger.warning(
                "queue_full_backpressure",
                extra={
                    "queued_batches": self._queue.qsize(),
                    "through_sequence_id": batch.through.last_sequence_id,
                },
            )
        return False

    async def _apply_loop(self) -> None:
        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            if self._abandon.is_set():
                self._logger.warning(
                    "queued_batches_abandoned",
                    extra={
                        "abandoned_batches": self._queue.qsize() + 1,
                        "first_sequence_id": batch.first_sequence_id,
                    },
                )
                return
            await self._apply_with_retries(batch)

    async def _apply_with_retries(self, batch: SyncBatch) -> None:
        pending = batch
        attempt = 0
        while True:
            try:
                try:
                    result = await self._writer.apply(pending)
                except PartialBatchFailure as exc:
                    result = exc.result
                if result.applied_through is not None:
                    await self._checkpoints.advance(result.applied_through)
            except RetryableError:
                delay = self._retry_delay(attempt)
                self._logger.warning(
                    "apply_failed_retrying",
                    exc_info=True,
                    extra={
                        "first_sequence_id": pending.first_sequence_id,
                        "through_sequence_id": pending.through.last_sequence_id,
                        "attempt": attempt + 1,
                        "retry_in_s": round(delay, 3),
                    },
                )
            else:
                if not result.is_partial:
                    self._logger.info(
                        "batch_applied",
                        extra={
                            "records": len(batch),
                            "skipped": len(result.skipped) + len(batch.poisoned),
                            "through_sequence_id": pending.through.last_sequence_id,
                        },
                    )
                    return

                assert result.applied_through is not None
                attempt = 0
                delay = self._retry_delay(attempt)
                first_failed = result.failed[0]
                self._logger.warning(
                    "apply_partial_failure",
                    extra={
                        "applied_through_sequence_id": result.applied_through.last_sequence_id,
                        "failed": len(result.failed),
                        "first_failed_sequence_id": first_failed.sequence_id,
                        "reason": first_failed.reason,
                        "retry_in_s": round(delay, 3),
                    },
                )
                pending = pending.after(result.applied_through)

            attempt += 1
            if await wait_or_stop(self._abandon, delay):
                self._logger.warning(
                    "batch_abandoned",
                    extra={
                        "first_sequence_id": pending.first_sequence_id,
                        "through_sequence_id": pending.through.last_sequence_id,
                    },
                )
                return
