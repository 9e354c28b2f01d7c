from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Checkpoint(BaseModel):
    """Position of the last change-log row durably handled."""

    model_config = ConfigDict(frozen=True)

    last_sequence_id: int = Field(default=0, ge=0)
    last_timestamp: datetime | None = None


class ChangeRecord(BaseModel):
    """Single change-log row destined for the document store."""

    model_config = ConfigDict(frozen=True)

    table_name: str = Field(min_length=1)
    record_id: str = Field(min_length=1)
    operation: Operation
    payload: dict[str, Any] | None = None
    change_timestamp: datetime
    sequence_id: int = Field(gt=0)

    @model_validator(mode="after")
    def _upserts_carry_a_document(self) -> ChangeRecord:
        if self.operation is not Operation.DELETE and self.payload is None:
            raise ValueError(f"{self.operation.value} change requires an object payload")
        return self

    @property
    def document_key(self) -> str:
        return f"{self.table_name}:{self.record_id}"

    @property
    def checkpoint(self) -> Checkpoint:
        return Checkpoint(last_sequence_id=self.sequence_id, last_timestamp=self.change_timestamp)


class PoisonedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence_id: int
    reason: str


class FailedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence_id: int
    reason: str


class SyncBatch(BaseModel):
    """Ordered change records read in one poll.

    ``through`` covers every change-log row the batch was built from, poisoned
    rows included, so applying the whole batch moves the checkpoint past them.
    """

    model_config = ConfigDict(frozen=True)

    records: tuple[ChangeRecord, ...] = ()
    poisoned: tuple[PoisonedRecord, ...] = ()
    through: Checkpoint

    @model_validator(mode="after")
    def _validate_ordering(self) -> SyncBatch:
        previous = 0
        for record in self.records:
            if record.sequence_id <= previous:
                raise ValueError(
                    "Batch records must be strictly increasing by sequence_id "
                    f"(got {record.sequence_id} after {previous})"
                )
            previous = record.sequence_id
        if previous > self.through.last_sequence_id:
            raise ValueError(
                f"Batch position {self.through.last_sequence_id} is behind record {previous}"
            )
        return self

    def __len__(self) -> int:
        return len(self.records)

    @property
    def row_count(self) -> int:
        return len(self.records) + len(self.poisoned)

    @property
    def first_sequence_id(self) -> int | None:
        return self.records[0].sequence_id if self.records else None

    def after(self, checkpoint: Checkpoint) -> SyncBatch:
        remaining = tuple(
            r for r in self.records if r.sequence_id > checkpoint.last_sequence_id
        )
        return SyncBatch(records=remaining, through=self.through)


class ApplyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    applied_through: Checkpoint | None = None
    skipped: tuple[PoisonedRecord, ...] = ()
    failed: tuple[FailedRecord, ...] = ()

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)
