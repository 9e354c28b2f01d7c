from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from changelog_sync.models import ApplyResult, PoisonedRecord, SyncBatch


class SyncError(RuntimeError):
    """Base class for synchronizer failures."""


class RetryableError(SyncError):
    """Transient connectivity or throttling fault on either store."""


class FatalConfigurationError(SyncError):
    """A store is unreachable or misconfigured in a way retries cannot fix."""


class QueueClosedError(SyncError):
    """Raised when enqueueing into a queue that has been shut down."""


class PoisonRecordError(SyncError):
    """One or more change-log rows could not be decoded.

    ``batch`` holds the rows that decoded cleanly, with the poisoned rows listed
    in ``batch.poisoned`` so the caller can skip them and carry on.
    """

    def __init__(self, poisoned: Sequence[PoisonedRecord], *, batch: SyncBatch) -> None:
        if not poisoned:
            raise ValueError("PoisonRecordError requires at least one poisoned record")
        self.poisoned = tuple(poisoned)
        self.batch = batch
        first = self.poisoned[0]
        super().__init__(
            f"Poison change record at sequence_id {first.sequence_id}: {first.reason}"
            + (f" (+{len(self.poisoned) - 1} more)" if len(self.poisoned) > 1 else "")
        )

    @property
    def sequence_id(self) -> int:
        return self.poisoned[0].sequence_id

    @property
    def sequence_ids(self) -> tuple[int, ...]:
        return tuple(p.sequence_id for p in self.poisoned)


class PartialBatchFailure(SyncError):
    """Some records in a batch failed to apply after a contiguous prefix succeeded."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        through = result.applied_through.last_sequence_id if result.applied_through else None
        super().__init__(
            f"Batch partially applied through sequence_id {through}; "
            f"{len(result.failed)} record(s) pending"
        )
