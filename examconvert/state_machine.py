"""
File Lifecycle State Machine
============================
Deterministic state machine for the per-file conversion lifecycle.

    queued → classifying → classified → formatting → completed
                         ↘ needs-review
    any non-terminal     → error

The only way back to `queued` is an explicit batch reset. Every transition
returns a new ProcessedFile; the BatchStateMachine swaps it in with a
compare-and-set on the file's current status, so concurrent stage
completions are applied one at a time and never merged.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable, Optional

from .exceptions import InvalidTransitionError
from .models import (
    BatchError,
    BatchPhase,
    BatchSnapshot,
    FileStatus,
    ProcessedFile,
    RawFile,
)

logger = logging.getLogger(__name__)

# ─── Transition Table ─────────────────────────────────────────────────────────

TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.QUEUED: frozenset({FileStatus.CLASSIFYING, FileStatus.ERROR}),
    FileStatus.CLASSIFYING: frozenset({
        FileStatus.CLASSIFIED,
        FileStatus.NEEDS_REVIEW,
        FileStatus.ERROR,
    }),
    FileStatus.CLASSIFIED: frozenset({FileStatus.FORMATTING, FileStatus.ERROR}),
    FileStatus.FORMATTING: frozenset({FileStatus.COMPLETED, FileStatus.ERROR}),
    FileStatus.COMPLETED: frozenset(),
    FileStatus.ERROR: frozenset(),
    FileStatus.NEEDS_REVIEW: frozenset(),
}

# Progress reached on entering each status
CLASSIFYING_PROGRESS = 10.0
CLASSIFIED_PROGRESS = 30.0
FORMATTING_PROGRESS = 30.0
FORMATTING_CEILING = 95.0
COMPLETED_PROGRESS = 100.0


def can_transition(current: FileStatus, target: FileStatus) -> bool:
    return target in TRANSITIONS[current]


def advance(record: ProcessedFile, target: FileStatus, **changes) -> ProcessedFile:
    """
    Move a record to `target`, returning the new record.

    Progress never decreases; `error` and `needs-review` require a message
    and `completed` requires output.

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the move.
    """
    if not can_transition(record.status, target):
        raise InvalidTransitionError(
            record.id, record.status.value, target.value
        )

    progress = changes.pop("progress", record.progress)
    if target is FileStatus.COMPLETED:
        progress = COMPLETED_PROGRESS
        if changes.get("output", record.output) is None:
            raise ValueError(f"File {record.id}: completed without output")
    else:
        progress = min(progress, FORMATTING_CEILING)

    if target in (FileStatus.ERROR, FileStatus.NEEDS_REVIEW):
        message = changes.get("error") or record.error
        if not message:
            raise ValueError(
                f"File {record.id}: {target.value} requires a message"
            )

    return record.model_copy(update={
        **changes,
        "status": target,
        "progress": max(record.progress, progress),
    })


def fail(record: ProcessedFile, message: str) -> ProcessedFile:
    return advance(record, FileStatus.ERROR, error=message or "Unknown error")


def with_progress(record: ProcessedFile, progress: float) -> ProcessedFile:
    """Raise progress within the current status; never lowers it."""
    progress = min(progress, FORMATTING_CEILING)
    if progress <= record.progress:
        return record
    return record.model_copy(update={"progress": progress})


def reset_record(record: ProcessedFile) -> ProcessedFile:
    """Explicit reset: back to `queued`, dropping all downstream results."""
    return record.model_copy(update={
        "status": FileStatus.QUEUED,
        "progress": 0.0,
        "slot": None,
        "confidence": None,
        "error": None,
        "output": None,
    })


# ─── Batch Table ──────────────────────────────────────────────────────────────


class BatchStateMachine:
    """
    Ordered table of ProcessedFile records keyed by file id.

    Single writer: only the coordinator calls the mutating methods, and every
    stage result goes through compare_and_set.
    """

    def __init__(self, exam_id: str):
        self.exam_id = exam_id
        self.phase = BatchPhase.IDLE
        self.error: Optional[BatchError] = None
        self._files: "OrderedDict[str, ProcessedFile]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._files

    def ids(self) -> list[str]:
        return list(self._files)

    def get(self, file_id: str) -> ProcessedFile:
        return self._files[file_id]

    def load(self, raw_files: Iterable[RawFile]):
        """Replace the batch with freshly queued files."""
        self._files = OrderedDict()
        for index, raw in enumerate(raw_files):
            record = ProcessedFile.from_raw(raw, index)
            self._files[record.id] = record
        self.phase = BatchPhase.IDLE
        self.error = None
        logger.info(f"Batch loaded with {len(self._files)} file(s)")

    def reset(self, exam_id: Optional[str] = None):
        """Return every file to `queued`, discarding prior results."""
        if exam_id is not None:
            self.exam_id = exam_id
        for file_id, record in self._files.items():
            self._files[file_id] = reset_record(record)
        self.phase = BatchPhase.IDLE
        self.error = None

    def compare_and_set(
        self,
        file_id: str,
        expected: FileStatus,
        record: ProcessedFile,
    ) -> bool:
        """
        Swap in `record` only if the stored record is still in `expected`.

        Returns:
            True if applied, False if the stored status moved on.
        """
        current = self._files.get(file_id)
        if current is None or current.status is not expected:
            logger.debug(
                f"File {file_id}: dropped update, expected {expected.value}, "
                f"found {current.status.value if current else 'nothing'}"
            )
            return False
        self._files[file_id] = record
        return True

    def all_terminal(self) -> bool:
        return bool(self._files) and all(
            f.status.is_terminal for f in self._files.values()
        )

    def snapshot(self) -> BatchSnapshot:
        return BatchSnapshot(
            exam_id=self.exam_id,
            phase=self.phase,
            files=tuple(self._files.values()),
            error=self.error,
        )
