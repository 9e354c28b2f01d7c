from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from changelog_sync.dynamodb import (
    CONDITIONAL_CHECK_FAILED,
    DynamoDBClient,
    create_dynamodb_client,
    describe_hash_key_table,
    extract_exception_error,
    is_fatal_error,
)
from changelog_sync.errors import FatalConfigurationError, RetryableError
from changelog_sync.models import Checkpoint
from changelog_sync.settings import DocumentStoreConfig

LOGGER = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    async def open(self) -> None:
        ...

    async def load(self) -> Checkpoint | None:
        ...

    async def save(self, checkpoint: Checkpoint) -> bool:
        """Durably persist ``checkpoint``; False if the store refused it as a regression."""
        ...

    async def close(self) -> None:
        ...


class FileCheckpointStore:
    """Checkpoint kept in a local JSON file, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        try:
            await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalConfigurationError(
                f"Checkpoint directory {self._path.parent} is not writable: {exc}"
            ) from exc

    async def load(self) -> Checkpoint | None:
        return await asyncio.to_thread(self._read)

    async def save(self, checkpoint: Checkpoint) -> bool:
        try:
            await asyncio.to_thread(self._write, checkpoint)
        except OSError as exc:
            raise RetryableError(f"Failed to write checkpoint file {self._path}: {exc}") from exc
        return True

    async def close(self) -> None:
        return None

    def _read(self) -> Checkpoint | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise FatalConfigurationError(f"Checkpoint file {self._path} is unreadable: {exc}") from exc

        try:
            return Checkpoint.model_validate_json(raw)
        except ValidationError as exc:
            raise FatalConfigurationError(
                f"Corrupt checkpoint file {self._path}: {exc.errors()[0]['msg']}"
            ) from exc

    def _write(self, checkpoint: Checkpoint) -> None:
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(checkpoint.model_dump_json())
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)

        dir_fd = os.open(self._path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


class DynamoDBCheckpointStore:
    """Checkpoint kept as one item per sync name; regressions are refused server side."""

    def __init__(
        self,
        *,
        config: DocumentStoreConfig,
        sync_name: str,
        client: DynamoDBClient | None = None,
    ) -> None:
        self._config = config
        self._sync_name = sync_name
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = create_dynamodb_client(self._config)
        await describe_hash_key_table(
            self._client,
            table=self._config.table,
            key_attribute=self._config.key_attribute,
        )

    async def load(self) -> Checkpoint | None:
        client = self._require_client()
        try:
            response = await asyncio.to_thread(
                client.get_item,
                TableName=self._config.table,
                Key=self._key(),
                ConsistentRead=True,
            )
        except Exception as exc:
            raise self._translate(exc, action="load") from exc

        item = response.get("Item")
        if not item:
            return None

        try:
            timestamp = item.get("last_timestamp", {}).get("S")
            return Checkpoint(
                last_sequence_id=int(item["last_sequence_id"]["N"]),
                last_timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            )
        except (KeyError, ValueError) as exc:
            raise FatalConfigurationError(
                f"Corrupt checkpoint item {self._sync_name!r} in {self._config.table!r}: {exc}"
            ) from exc

    async def save(self, checkpoint: Checkpoint) -> bool:
        client = self._require_client()
        item = {
            **self._key(),
            "last_sequence_id": {"N": str(checkpoint.last_sequence_id)},
            "updated_at": {"S": datetime.now(timezone.utc).isoformat()},
        }
        if checkpoint.last_timestamp is not None:
            item["last_timestamp"] = {"S": checkpoint.last_timestamp.isoformat()}

        try:
            await asyncio.to_thread(
                client.put_item,
                TableName=self._config.table,
                Item=item,
                ConditionExpression="attribute_not_exists(#seq) OR #seq < :seq",
                ExpressionAttributeNames={"#seq": "last_sequence_id"},
                ExpressionAttributeValues={":seq": {"N": str(checkpoint.last_sequence_id)}},
            )
        except Exception as exc:
            code, _ = extract_exception_error(exc)
            if code == CONDITIONAL_CHECK_FAILED:
                return False
            raise self._translate(exc, action="save") from exc
        return True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await asyncio.to_thread(self._client.close)

    def _key(self) -> dict[str, dict[str, str]]:
        return {self._config.key_attribute: {"S": self._sync_name}}

    def _require_client(self) -> DynamoDBClient:
        if self._client is None:
            raise RuntimeError("DynamoDBCheckpointStore.open() must be called first")
        return self._client

    def _translate(self, exc: Exception, *, action: str) -> Exception:
        code, message = extract_exception_error(exc)
        detail = f"Checkpoint {action} failed for {self._sync_name!r} ({code or type(exc).__name__}): {message}"
        if is_fatal_error(code=code, message=message):
            return FatalConfigurationError(detail)
        return RetryableError(detail)


class CheckpointTracker:
    """Owns the resume position; only ever moves it forward."""

    def __init__(self, store: CheckpointStore, *, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._logger = logger or LOGGER
        self._current = Checkpoint()
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Checkpoint:
        return self._current

    async def open(self) -> None:
        await self._store.open()

    async def close(self) -> None:
        await self._store.close()

    async def load(self) -> Checkpoint:
        stored = await self._store.load()
        self._current = stored if stored is not None else Checkpoint()
        self._logger.info(
            "checkpoint_loaded",
            extra={
                "last_sequence_id": self._current.last_sequence_id,
                "full_resync": stored is None,
            },
        )
        return self._current

    async def advance(self, checkpoint: Checkpoint) -> bool:
        async with self._lock:
            if checkpoint.last_sequence_id <= self._current.last_sequence_id:
                self._logger.debug(
                    "checkpoint_advance_ignored",
                    extra={
                        "requested_sequence_id": checkpoint.last_sequence_id,
                        "last_sequence_id": self._current.last_sequence_id,
                    },
                )
                return False

            if not await self._store.save(checkpoint):
                # The store already holds this position or a later one; adopt it.
                stored = await self._store.load()
                if stored is not None and stored.last_sequence_id > self._current.last_sequence_id:
                    self._current = stored
                self._logger.warning(
                    "checkpoint_store_refused_advance",
                    extra={
                        "requested_sequence_id": checkpoint.last_sequence_id,
                        "last_sequence_id": self._current.last_sequence_id,
                    },
                )
                return False

            self._current = checkpoint
            self._logger.info(
                "checkpoint_advanced",
                extra={"last_sequence_id": checkpoint.last_sequence_id},
            )
            return True
