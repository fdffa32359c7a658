"""
Pipeline Coordinator
====================
Runs classification and formatting for every file of a batch and decides
when the batch can be packaged.

Usage:
    coordinator = PipelineCoordinator(ConversionEngine(), "upsc")
    coordinator.select_files(raw_files)
    snapshot = await coordinator.run()
    if snapshot.ready_to_package:
        result = await coordinator.package()

Concurrency model:
    - One asyncio task per file; the CPU-bound stages run in worker threads
    - Formatting is bounded by a semaphore (max_concurrent_formats)
    - Every write to the batch table is a compare-and-set tagged with the
      run generation; results from a superseded run are dropped
    - Formatter progress is marshalled back onto the loop thread
    - Cancelling a run stops its formatting threads at their next progress
      report; the next run starts only once they have returned

Failure containment:
    - Classification / formatting errors become that file's `error` state
    - InfrastructureError aborts the batch, cancels all pending tasks and
      returns every file to `queued`
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import date
from functools import partial
from typing import Callable, Iterable, Optional

from .engine import ConversionEngine, EngineHandle
from .exam_configs import get_config
from .exceptions import (
    ClassificationError,
    ConversionError,
    FormattingError,
    InfrastructureError,
    PackagingError,
    RunCancelledError,
)
from .models import (
    BatchError,
    BatchPhase,
    BatchSnapshot,
    ConversionResult,
    ExamConfig,
    FailedPhase,
    FileStatus,
    FormattedResult,
    ProcessedFile,
    ProgressEvent,
    RawFile,
    Slot,
    SlotConstraint,
)
from .packager import archive_name, plan_entries
from .state_machine import (
    CLASSIFIED_PROGRESS,
    CLASSIFYING_PROGRESS,
    FORMATTING_CEILING,
    FORMATTING_PROGRESS,
    BatchStateMachine,
    advance,
    with_progress,
)
from .validator import ValidationEngine

logger = logging.getLogger(__name__)

NEEDS_REVIEW_MESSAGE = (
    "Could not match this file to a photo, signature or document slot; "
    "review it manually or remove it from the batch"
)

SnapshotListener = Callable[[BatchSnapshot], None]

_CLOSED = object()


class ProgressChannel:
    """
    Progress stream of one file for one run.

    Yields ProgressEvents in order and finishes when the file reaches a
    terminal status or the run is reset. Single consumer.
    """

    def __init__(self, file_id: str):
        self.file_id = file_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent):
        if self._closed:
            return
        self._queue.put_nowait(event)
        if event.is_final:
            self.close()

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ProgressChannel":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._drained:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise StopAsyncIteration
        return item


class PipelineCoordinator:
    """
    Owns the per-file lifecycle of one batch.

    The coordinator is the single writer of the batch table; stages only
    return values.
    """

    def __init__(
        self,
        engine: ConversionEngine,
        exam_id: str,
        max_concurrent_formats: Optional[int] = None,
    ):
        # Raises UnknownExamError before any state exists
        self.exam: ExamConfig = get_config(exam_id)
        self.engine = engine
        self.max_concurrent_formats = max(
            1, max_concurrent_formats or engine.config.max_concurrent_formats
        )
        self.validator = ValidationEngine()

        self._batch = BatchStateMachine(self.exam.exam_id)
        self._handle: Optional[EngineHandle] = None
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._workers: set[asyncio.Future] = set()
        self._cancel_event = threading.Event()
        self._channels: dict[str, ProgressChannel] = {}
        self._listeners: list[SnapshotListener] = []
        self._result: Optional[ConversionResult] = None

    # ─── Read-only Views ──────────────────────────────────────────────────

    def snapshot(self) -> BatchSnapshot:
        return self._batch.snapshot()

    @property
    def result(self) -> Optional[ConversionResult]:
        """Archive from the last successful package() call."""
        return self._result

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, listener: SnapshotListener):
        """Register a callable receiving a snapshot after every transition."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def progress(self, file_id: str) -> ProgressChannel:
        """
        Progress channel of a file for the current run.

        Raises:
            KeyError: If the file is not part of the batch.
        """
        if file_id not in self._batch:
            raise KeyError(file_id)
        return self._channels[file_id]

    # ─── Batch Selection ──────────────────────────────────────────────────

    def select_files(self, raw_files: Iterable[RawFile]) -> BatchSnapshot:
        """Replace the batch. Cancels any run in flight."""
        self._invalidate()
        self._batch.load(raw_files)
        self._result = None
        self._open_channels()
        self._notify()
        return self.snapshot()

    def select_exam(self, exam_id: str) -> BatchSnapshot:
        """
        Switch exam. Cancels any run in flight and re-queues every file.

        Raises:
            UnknownExamError: Nothing is changed.
        """
        config = get_config(exam_id)
        self._invalidate()
        self.exam = config
        self._batch.reset(config.exam_id)
        self._result = None
        self._open_channels()
        self._notify()
        logger.info(f"Exam changed to {config.name}")
        return self.snapshot()

    def cancel(self) -> BatchSnapshot:
        """Abandon the current run; late stage results are dropped."""
        self._invalidate()
        self._batch.reset()
        self._open_channels()
        self._notify()
        return self.snapshot()

    # ─── Phases ───────────────────────────────────────────────────────────

    async def initialize(self) -> EngineHandle:
        """
        Acquire the engine handle.

        Raises:
            InfrastructureError: Files stay queued; retry() re-initializes.
        """
        if self._handle is not None:
            return self._handle

        self._batch.phase = BatchPhase.INITIALIZING
        self._notify()
        try:
            handle = await self.engine.initialize()
        except InfrastructureError as e:
            self._batch.phase = BatchPhase.FAILED
            self._batch.error = BatchError(
                phase=FailedPhase.INITIALIZATION, message=str(e)
            )
            self._notify()
            raise

        self._handle = handle
        self._batch.phase = BatchPhase.IDLE
        self._batch.error = None
        self._notify()
        return handle

    async def run(self) -> BatchSnapshot:
        """
        Process every file of the batch.

        Returns:
            Final snapshot. `snapshot.failed` is True when no file completed.

        Raises:
            InfrastructureError: Engine unavailable; files remain queued.
            RunCancelledError: A reset superseded this run.
        """
        if not len(self._batch):
            raise ValueError("No files selected")

        self._invalidate()
        self._batch.reset()
        self._result = None
        self._open_channels()
        generation = self._generation
        exam = self.exam
        cancelled = self._cancel_event

        await self._drain_workers()
        try:
            handle = await self.initialize()
        except InfrastructureError:
            for channel in self._channels.values():
                channel.close()
            raise
        if generation != self._generation:
            raise RunCancelledError("Run was superseded during initialization")

        self._batch.phase = BatchPhase.PROCESSING
        for file_id in self._batch.ids():
            self._publish(self._batch.get(file_id))
        self._notify()

        logger.info(
            f"Run {generation}: converting {len(self._batch)} file(s) "
            f"for {exam.name}"
        )

        semaphore = asyncio.Semaphore(self.max_concurrent_formats)
        tasks = [
            asyncio.create_task(
                self._process_file(
                    generation, handle, exam, file_id, semaphore, cancelled
                ),
                name=f"examconvert-{file_id}",
            )
            for file_id in self._batch.ids()
        ]
        self._tasks.update(tasks)

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            if generation != self._generation:
                raise RunCancelledError(
                    "Run was superseded by a new file selection or exam change"
                ) from None
            self._cancel_tasks(tasks)
            raise
        except InfrastructureError as e:
            logger.error(f"Run {generation}: aborted — {e}")
            self._cancel_tasks(tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._abort_batch(e)
            raise
        finally:
            self._tasks.difference_update(tasks)

        if generation != self._generation:
            raise RunCancelledError("Run was superseded while finishing")

        snapshot = self.snapshot()
        if snapshot.failed:
            self._batch.phase = BatchPhase.FAILED
            self._batch.error = BatchError(
                phase=FailedPhase.PROCESSING,
                message=(
                    f"No file could be converted: {snapshot.error_count} "
                    f"failed, {snapshot.needs_review_count} need review"
                ),
            )
            logger.warning(f"Run {generation}: {self._batch.error.message}")
        else:
            self._batch.phase = BatchPhase.FINISHED

        snapshot = self.snapshot()
        self.validator.validate(snapshot)
        self._notify()
        return snapshot

    async def package(self, today: Optional[date] = None) -> ConversionResult:
        """
        Build the archive from the files completed at this moment.

        Raises:
            PackagingError: Not ready, or the packager failed. File states
                are never changed by a packaging failure.
        """
        snapshot = self.snapshot()
        if not snapshot.ready_to_package:
            raise PackagingError(
                "Batch is not ready to package: "
                f"{snapshot.completed_count} completed of {len(snapshot.files)}"
                f"{'' if snapshot.is_finished else ', still processing'}"
            )

        handle = await self.initialize()
        generation = self._generation
        exam_id = self.exam.exam_id
        entries = plan_entries(snapshot.files)

        self._batch.phase = BatchPhase.PACKAGING
        self._notify()
        try:
            content = await asyncio.to_thread(
                handle.packager.package, entries, exam_id
            )
        except Exception as e:
            error = e if isinstance(e, PackagingError) else PackagingError(
                f"Failed to build archive: {e}"
            )
            if generation == self._generation:
                self._batch.phase = BatchPhase.FAILED
                self._batch.error = BatchError(
                    phase=FailedPhase.PACKAGING, message=str(error)
                )
                self._notify()
            if error is e:
                raise
            raise error from e

        if generation != self._generation:
            raise RunCancelledError("Batch changed while packaging")

        today = today or date.today()
        self._result = ConversionResult(
            exam_id=exam_id,
            archive_name=archive_name(exam_id, today),
            content=content,
            files=tuple(e.name for e in entries),
            created=today,
        )
        self._batch.phase = BatchPhase.PACKAGED
        self._batch.error = None
        self._notify()
        logger.info(
            f"Archive {self._result.archive_name} ready "
            f"({len(entries)} file(s), {self._result.size_bytes} bytes)"
        )
        return self._result

    async def retry(self):
        """Re-attempt only the phase that failed last."""
        error = self._batch.error
        if error is None:
            raise ValueError("Nothing to retry")

        logger.info(f"Retrying {error.phase.value}")
        if error.phase is FailedPhase.INITIALIZATION:
            return await self.initialize()
        if error.phase is FailedPhase.PROCESSING:
            return await self.run()
        return await self.package()

    # ─── Per-file Pipeline ────────────────────────────────────────────────

    async def _process_file(
        self,
        generation: int,
        handle: EngineHandle,
        exam: ExamConfig,
        file_id: str,
        semaphore: asyncio.Semaphore,
        cancelled: threading.Event,
    ):
        raw = self._batch.get(file_id).to_raw()

        # ── Classification ────────────────────────────────────────────
        if not self._transition(
            generation, file_id, FileStatus.QUEUED, FileStatus.CLASSIFYING,
            progress=CLASSIFYING_PROGRESS,
        ):
            return

        try:
            classification = await asyncio.to_thread(
                handle.classifier.classify, raw, exam
            )
        except InfrastructureError:
            raise
        except ClassificationError as e:
            logger.warning(f"{raw.name}: classification failed — {e}")
            self._fail(generation, file_id, FileStatus.CLASSIFYING, str(e))
            return
        except Exception as e:
            logger.exception(f"{raw.name}: unexpected classification failure")
            self._fail(
                generation, file_id, FileStatus.CLASSIFYING,
                f"Classification failed: {e}",
            )
            return

        if classification.slot is Slot.UNKNOWN:
            logger.info(f"{raw.name}: no matching slot, needs review")
            self._transition(
                generation, file_id, FileStatus.CLASSIFYING,
                FileStatus.NEEDS_REVIEW,
                slot=Slot.UNKNOWN,
                confidence=classification.confidence,
                error=NEEDS_REVIEW_MESSAGE,
            )
            return

        try:
            constraint = exam.constraint_for(classification.slot)
        except FormattingError as e:
            self._fail(generation, file_id, FileStatus.CLASSIFYING, str(e))
            return

        if not self._transition(
            generation, file_id, FileStatus.CLASSIFYING, FileStatus.CLASSIFIED,
            slot=classification.slot,
            confidence=classification.confidence,
            progress=CLASSIFIED_PROGRESS,
        ):
            return

        # ── Formatting ────────────────────────────────────────────────
        # The slot stays taken until the worker thread returns, even when
        # this task is cancelled first
        await semaphore.acquire()
        if not self._transition(
            generation, file_id, FileStatus.CLASSIFIED, FileStatus.FORMATTING,
            progress=FORMATTING_PROGRESS,
        ):
            semaphore.release()
            return

        loop = asyncio.get_running_loop()

        def on_progress(value: float):
            if cancelled.is_set():
                raise RunCancelledError(f"Run {generation} was cancelled")
            loop.call_soon_threadsafe(
                self._on_format_progress, generation, file_id, value
            )

        worker = loop.run_in_executor(
            None,
            partial(self._format_and_verify, handle, raw, constraint, on_progress),
        )
        self._track_worker(worker, semaphore)

        try:
            formatted, problems = await asyncio.shield(worker)
        except InfrastructureError:
            raise
        except RunCancelledError:
            logger.debug(f"{raw.name}: formatting stopped, run {generation} cancelled")
            return
        except FormattingError as e:
            logger.warning(f"{raw.name}: formatting failed ({e.kind.value}) — {e}")
            self._fail(generation, file_id, FileStatus.FORMATTING, str(e))
            return
        except Exception as e:
            logger.exception(f"{raw.name}: unexpected formatting failure")
            self._fail(
                generation, file_id, FileStatus.FORMATTING,
                f"Formatting failed: {e}",
            )
            return

        if problems:
            self._fail(
                generation, file_id, FileStatus.FORMATTING,
                "Output does not meet the requirements: " + "; ".join(problems),
            )
            return

        self._transition(
            generation, file_id, FileStatus.FORMATTING, FileStatus.COMPLETED,
            output=formatted,
        )

    def _format_and_verify(
        self,
        handle: EngineHandle,
        raw: RawFile,
        constraint: SlotConstraint,
        on_progress: Callable[[float], None],
    ) -> tuple[FormattedResult, list[str]]:
        """Worker-thread half of the formatting stage."""
        formatted = handle.formatter.format(raw, constraint, on_progress)
        return formatted, self.validator.verify_output(formatted, constraint)

    def _on_format_progress(self, generation: int, file_id: str, value: float):
        if generation != self._generation:
            return
        record = self._batch.get(file_id)
        if record.status is not FileStatus.FORMATTING:
            return
        span = FORMATTING_CEILING - FORMATTING_PROGRESS
        updated = with_progress(record, FORMATTING_PROGRESS + span * value / 100)
        if updated is not record:
            self._commit(file_id, FileStatus.FORMATTING, updated)

    # ─── Single-writer Update Path ────────────────────────────────────────

    def _transition(
        self,
        generation: int,
        file_id: str,
        expected: FileStatus,
        target: FileStatus,
        **changes,
    ) -> bool:
        """Apply one lifecycle transition if the run and status still match."""
        if generation != self._generation:
            logger.debug(
                f"File {file_id}: dropped stale {target.value} from run "
                f"{generation}"
            )
            return False
        record = self._batch.get(file_id)
        if record.status is not expected:
            return False
        return self._commit(file_id, expected, advance(record, target, **changes))

    def _fail(
        self, generation: int, file_id: str, expected: FileStatus, message: str
    ) -> bool:
        return self._transition(
            generation, file_id, expected, FileStatus.ERROR,
            error=message or "Unknown error",
        )

    def _commit(
        self, file_id: str, expected: FileStatus, record: ProcessedFile
    ) -> bool:
        if not self._batch.compare_and_set(file_id, expected, record):
            return False
        self._publish(record)
        self._notify()
        return True

    def _publish(self, record: ProcessedFile):
        channel = self._channels.get(record.id)
        if channel is not None:
            channel.publish(ProgressEvent(
                file_id=record.id,
                status=record.status,
                progress=record.progress,
                message=record.error,
            ))

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    # ─── Run Management ───────────────────────────────────────────────────

    def _invalidate(self):
        """Start a new generation; in-flight work of the old one is cancelled."""
        self._generation += 1
        self._cancel_event.set()
        self._cancel_event = threading.Event()
        self._cancel_tasks(list(self._tasks))
        self._tasks.clear()
        for channel in self._channels.values():
            channel.close()

    def _track_worker(self, worker: asyncio.Future, semaphore: asyncio.Semaphore):
        """Release the formatting slot only once the thread has returned."""
        self._workers.add(worker)

        def done(future: asyncio.Future):
            self._workers.discard(future)
            semaphore.release()
            if not future.cancelled():
                # Nobody awaits an abandoned worker
                future.exception()

        worker.add_done_callback(done)

    async def _drain_workers(self):
        """Wait for formatting threads of a superseded run to stop."""
        loop = asyncio.get_running_loop()
        pending = [
            w for w in self._workers if not w.done() and w.get_loop() is loop
        ]
        if not pending:
            return
        logger.debug(f"Waiting for {len(pending)} cancelled formatting worker(s)")
        await asyncio.wait(pending)

    def _open_channels(self):
        self._channels = {
            file_id: ProgressChannel(file_id) for file_id in self._batch.ids()
        }

    def _cancel_tasks(self, tasks: list[asyncio.Task]):
        for task in tasks:
            if not task.done():
                task.cancel()

    def _abort_batch(self, error: ConversionError):
        """Batch-fatal failure: back to queued, engine must be re-initialized."""
        self._invalidate()
        self._batch.reset()
        self._open_channels()
        self._handle = None
        self.engine.invalidate()
        self._batch.phase = BatchPhase.FAILED
        self._batch.error = BatchError(
            phase=FailedPhase.INITIALIZATION, message=str(error)
        )
        self._notify()
