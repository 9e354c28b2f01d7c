from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import boto3
from boto3.dynamodb.types import TypeSerializer
from botocore.config import Config

from changelog_sync.errors import FatalConfigurationError, PartialBatchFailure, RetryableError
from changelog_sync.models import (
    ApplyResult,
    ChangeRecord,
    Checkpoint,
    FailedRecord,
    Operation,
    PoisonedRecord,
    SyncBatch,
)
from changelog_sync.settings import DocumentStoreConfig

LOGGER = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_FATAL_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "ResourceNotFound",
    "ResourceNotFoundException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "MissingAuthenticationTokenException",
}
_FATAL_ERROR_PREFIXES = ("AccessDenied", "ResourceNotFound")
_POISON_ERROR_CODES = {
    "ValidationException",
    "SerializationException",
    "ItemCollectionSizeLimitExceededException",
}
_POISON_MESSAGE_MARKERS = (
    "item size has exceeded",
    "size has exceeded the maximum",
    "nested levels have exceeded",
)

# Only overwrite or delete when the stored copy is not newer than this change.
_SEQUENCE_GUARD = "attribute_not_exists(#seq) OR #seq <= :seq"


class DynamoDBClient(Protocol):
    def put_item(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def delete_item(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def get_item(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def describe_table(self, *, TableName: str) -> dict[str, Any]:
        ...

    def close(self) -> None:
        ...


def create_dynamodb_client(config: DocumentStoreConfig) -> DynamoDBClient:
    return boto3.client(
        "dynamodb",
        region_name=config.region,
        endpoint_url=config.endpoint_url,
        config=Config(
            max_pool_connections=config.max_pool_connections,
            connect_timeout=config.connect_timeout_s,
            read_timeout=config.read_timeout_s,
            retries={"mode": "standard", "max_attempts": 3},
        ),
    )


async def describe_hash_key_table(
    client: DynamoDBClient,
    *,
    table: str,
    key_attribute: str,
) -> None:
    """Fail fast unless ``table`` exists with string ``key_attribute`` as its only key."""

    try:
        response = await asyncio.to_thread(client.describe_table, TableName=table)
    except Exception as exc:
        code, message = extract_exception_error(exc)
        raise FatalConfigurationError(
            f"DynamoDB table {table!r} is not usable ({code or 'error'}): {message}"
        ) from exc

    description = response.get("Table", {})
    key_schema = description.get("KeySchema", [])
    hash_keys = [k.get("AttributeName") for k in key_schema if k.get("KeyType") == "HASH"]
    if hash_keys != [key_attribute] or len(key_schema) != 1:
        raise FatalConfigurationError(
            f"DynamoDB table {table!r} must have a single hash key named {key_attribute!r} "
            f"(found {key_schema})"
        )

    # Keys are written as strings; any other key type rejects every item.
    key_types = {
        d.get("AttributeName"): d.get("AttributeType")
        for d in description.get("AttributeDefinitions", [])
    }
    if key_types.get(key_attribute) != "S":
        raise FatalConfigurationError(
            f"DynamoDB table {table!r} hash key {key_attribute!r} must be of type S "
            f"(found {key_types.get(key_attribute)!r})"
        )


class DynamoDBWriter:
    """Applies change batches to a DynamoDB table as idempotent puts and deletes."""

    def __init__(
        self,
        *,
        config: DocumentStoreConfig,
        client: DynamoDBClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._logger = logger or LOGGER
        self._serializer = TypeSerializer()

    async def open(self) -> None:
        if self._client is None:
            self._client = create_dynamodb_client(self._config)

        await describe_hash_key_table(
            self._client,
            table=self._config.table,
            key_attribute=self._config.key_attribute,
        )
        self._logger.info(
            "document_writer_ready",
            extra={
                "dynamodb_table": self._config.table,
                "max_pool_connections": self._config.max_pool_connections,
            },
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await asyncio.to_thread(self._client.close)

    async def apply(self, batch: SyncBatch) -> ApplyResult:
        """Apply ``batch`` in sequence order.

        Records the store rejects as malformed are skipped and reported. A
        retryable fault stops the batch: RetryableError when nothing was
        handled yet, PartialBatchFailure otherwise.
        """

        if self._client is None:
            raise RuntimeError("DynamoDBWriter.open() must be called before apply()")

        handled: Checkpoint | None = None
        skipped: list[PoisonedRecord] = []

        for index, record in enumerate(batch.records):
            try:
                request = self._build_request(record)
            except (TypeError, ValueError) as exc:
                skipped.append(self._skip(record, reason=f"unserializable document: {exc}"))
                handled = record.checkpoint
                continue

            try:
                await self._send(record, request)
            except Exception as exc:
                code, message = extract_exception_error(exc)
                if code == CONDITIONAL_CHECK_FAILED:
                    self._logger.debug(
                        "dynamodb_stale_change_ignored",
                        extra={"sequence_id": record.sequence_id, "document_key": record.document_key},
                    )
                    handled = record.checkpoint
                    continue

                if is_fatal_error(code=code, message=message):
                    raise FatalConfigurationError(
                        f"DynamoDB rejected writes to {self._config.table!r} ({code}): {message}"
                    ) from exc

                if is_poison_error(code=code, message=message):
                    skipped.append(self._skip(record, reason=f"{code}: {message}"))
                    handled = record.checkpoint
                    continue

                if handled is None:
                    raise RetryableError(
                        f"DynamoDB write failed at sequence_id {record.sequence_id} "
                        f"({code or type(exc).__name__}): {message}"
                    ) from exc

                failed = [FailedRecord(sequence_id=record.sequence_id, reason=f"{code}: {message}")]
                failed.extend(
                    FailedRecord(sequence_id=r.sequence_id, reason="not attempted")
                    for r in batch.records[index + 1:]
                )
                raise PartialBatchFailure(
                    ApplyResult(
                        applied_through=handled,
                        skipped=tuple(skipped),
                        failed=tuple(failed),
                    )
                ) from exc

            handled = record.checkpoint

        return ApplyResult(applied_through=batch.through, skipped=tuple(skipped))

    def _skip(self, record: ChangeRecord, *, reason: str) -> PoisonedRecord:
        self._logger.error(
            "poison_record_skipped",
            extra={
                "sequence_id": record.sequence_id,
                "document_key": record.document_key,
                "reason": reason,
            },
        )
        return PoisonedRecord(sequence_id=record.sequence_id, reason=reason)

    def _build_request(self, record: ChangeRecord) -> dict[str, Any]:
        key = {self._config.key_attribute: {"S": record.document_key}}
        request: dict[str, Any] = {
            "TableName": self._config.table,
            "ConditionExpression": _SEQUENCE_GUARD,
            "ExpressionAttributeNames": {"#seq": "sequence_id"},
            "ExpressionAttributeValues": {":seq": {"N": str(record.sequence_id)}},
        }
        if record.operation is Operation.DELETE:
            request["Key"] = key
            return request

        request["Item"] = {
            **key,
            "table_name": {"S": record.table_name},
            "record_id": {"S": record.record_id},
            "sequence_id": {"N": str(record.sequence_id)},
            "change_timestamp": {"S": record.change_timestamp.isoformat()},
            "document": self._serializer.serialize(record.payload),
        }
        return request

    async def _send(self, record: ChangeRecord, request: dict[str, Any]) -> None:
        assert self._client is not None
        if record.operation is Operation.DELETE:
            await asyncio.to_thread(self._client.delete_item, **request)
        else:
            await asyncio.to_thread(self._client.put_item, **request)


def extract_exception_error(exc: Exception) -> tuple[str | None, str | None]:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error")
        if isinstance(error, dict):
            code = error.get("Code")
            message = error.get("Message")
            return (
                str(code) if code is not None else None,
                str(message) if message is not None else None,
            )

    return None, str(exc)


def is_fatal_error(*, code: str | None, message: str | None) -> bool:
    normalized_code = code.strip() if code else None
    if not normalized_code:
        return False
    if normalized_code in _FATAL_ERROR_CODES:
        return True
    return any(normalized_code.startswith(prefix) for prefix in _FATAL_ERROR_PREFIXES)


def is_poison_error(*, code: str | None, message: str | None) -> bool:
    normalized_code = code.strip() if code else None
    if normalized_code in _POISON_ERROR_CODES:
        return True

    message_lc = message.lower() if message else ""
    return normalized_code is not None and any(
        marker in message_lc for marker in _POISON_MESSAGE_MARKERS
    )
