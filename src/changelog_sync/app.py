from __future__ import annotations

import asyncio
import logging
import os
import signal

from changelog_sync.changelog import ChangeLogReader
from changelog_sync.checkpoint import (
    CheckpointStore,
    CheckpointTracker,
    DynamoDBCheckpointStore,
    FileCheckpointStore,
)
from changelog_sync.dynamodb import DynamoDBWriter
from changelog_sync.errors import FatalConfigurationError
from changelog_sync.settings import Settings
from changelog_sync.synchronizer import Synchronizer, SyncState

LOGGER = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_checkpoint_store(settings: Settings) -> CheckpointStore:
    if settings.checkpoint_backend == "file":
        assert settings.checkpoint_path is not None
        return FileCheckpointStore(settings.checkpoint_path)
    return DynamoDBCheckpointStore(
        config=settings.checkpoint_store,
        sync_name=settings.sync_name,
    )


def build_synchronizer(settings: Settings, *, logger: logging.Logger | None = None) -> Synchronizer:
    sync_config = settings.sync
    reader = ChangeLogReader(
        config=settings.source_database,
        batch_size=sync_config.batch_size,
        table=settings.change_log_table,
        min_pool_size=settings.source_pool_min_size,
        max_pool_size=settings.source_pool_max_size,
        logger=logger,
    )
    writer = DynamoDBWriter(config=settings.document_store, logger=logger)
    checkpoints = CheckpointTracker(build_checkpoint_store(settings), logger=logger)
    return Synchronizer(
        config=sync_config,
        reader=reader,
        writer=writer,
        checkpoints=checkpoints,
        logger=logger,
    )


async def run() -> None:
    configure_logging()
    settings = Settings()

    LOGGER.info(
        "service_start",
        extra={
            "sync_name": settings.sync_name,
            "change_log_table": settings.change_log_table,
            "dynamodb_table": settings.dynamodb_table,
            "checkpoint_backend": settings.checkpoint_backend,
            "batch_size": settings.batch_size,
        },
    )

    synchronizer = build_synchronizer(settings)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await synchronizer.start()

    finished = asyncio.create_task(synchronizer.wait(), name="synchronizer_wait")
    stopping = asyncio.create_task(stop_requested.wait(), name="stop_signal")
    try:
        await asyncio.wait({finished, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if stop_requested.is_set():
            LOGGER.info("shutdown_requested")
            await synchronizer.stop()
    finally:
        stopping.cancel()
        finished.cancel()
        await asyncio.gather(finished, stopping, return_exceptions=True)

    LOGGER.info("service_stop", extra={"state": synchronizer.state.value})
    if synchronizer.state is SyncState.ERROR:
        error = synchronizer.error
        if isinstance(error, Exception):
            raise error
        raise FatalConfigurationError("Synchronizer stopped in ERROR state")
