from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from recordshift.cleanup.types import DeletionError
from recordshift.core.config import Settings
from recordshift.items.errors import classify_error
from recordshift.jobs.documents import empty_progress, merge_progress
from recordshift.jobs.lifecycle import HeartbeatTicker, JobLifecycleMonitor
from recordshift.jobs.service import InvalidJobStateError, enforce_transition
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import (
    RUNNING_STATUSES,
    TERMINAL_STATUSES,
    BatchCheckpoint,
    CheckpointStatus,
    Job,
    JobError,
    JobStatus,
    JobType,
    ProgressUpdate,
    RecordId,
)
from recordshift.platform import RecordPlatform

logger = logging.getLogger(__name__)

DELETION_ABORTED = "DELETION_ABORTED"

T = TypeVar("T")


class CleanupValidationError(ValueError):
    pass


class DeletionAbortedError(RuntimeError):
    """Raised to stop a run after a failed deletion when ``stop_on_error`` is set."""


@dataclass(slots=True)
class DeletionOutcome:
    deleted: int = 0
    failed: int = 0
    errors: list[DeletionError] = field(default_factory=list)
    paused: bool = False


class DeletionEngine:
    """Run machinery for jobs that delete records in checkpointed batches.

    Subclasses pick the job type and the step names written to the job's
    error list; a run registers with the shutdown coordinator, keeps a
    heartbeat while it executes and stops at the next batch boundary when a
    pause or shutdown is requested.
    """

    job_type: JobType = JobType.CLEANUP
    stage = "cleanup"
    execution_step = "cleanup_execution"
    delete_step = "cleanup_delete"
    execution_error_code = "CLEANUP_EXECUTION_ERROR"

    def __init__(
        self,
        settings: Settings,
        store: JobStateStore,
        monitor: JobLifecycleMonitor,
        coordinator: ShutdownCoordinator,
        platform: RecordPlatform,
    ):
        self._settings = settings
        self._store = store
        self._monitor = monitor
        self._coordinator = coordinator
        self._platform = platform

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _require_job(self, job_id: str) -> Job:
        job = self._store.require(job_id)
        if job.job_type != self.job_type:
            raise InvalidJobStateError(f"Job {job_id} is not a {self.job_type.value} job")
        return job

    def _guarded_run(
        self,
        job_id: str,
        first_status: JobStatus,
        body: Callable[[threading.Lock, threading.Event], T],
    ) -> T:
        run_lock = threading.Lock()
        stop_requested = threading.Event()
        stopped = threading.Event()
        self._coordinator.register_active(job_id)
        self._coordinator.register_callback(job_id, lambda: self._stop_for_shutdown(job_id, stop_requested, stopped))
        try:
            self._set_status(job_id, first_status, run_lock)
            with HeartbeatTicker(self._monitor, job_id, lock=run_lock):
                try:
                    return body(run_lock, stop_requested)
                except Exception as exc:
                    logger.exception("Run failed", extra={"job_id": job_id, "stage": self.stage})
                    code = DELETION_ABORTED if isinstance(exc, DeletionAbortedError) else self.execution_error_code
                    with run_lock:
                        self._fail(job_id, str(exc), code)
                    raise
        finally:
            stopped.set()
            self._coordinator.unregister_active(job_id)

    def _stop_for_shutdown(self, job_id: str, stop_requested: threading.Event, stopped: threading.Event) -> None:
        stop_requested.set()
        if not stopped.wait(timeout=float(self._settings.shutdown_grace_seconds)):
            logger.warning("Run did not stop before the shutdown grace period", extra={"job_id": job_id})

    def _should_stop(self, job_id: str, stop_requested: threading.Event) -> bool:
        return stop_requested.is_set() or self._coordinator.is_pause_requested(job_id)

    def _set_status(self, job_id: str, status: JobStatus, run_lock: threading.Lock) -> Job:
        def apply(job: Job) -> None:
            now = self._now()
            enforce_transition(job.status, status)
            job.status = status
            job.last_heartbeat = now
            job.completed_at = now if status in TERMINAL_STATUSES else None

        with run_lock:
            job = self._store.mutate(job_id, apply)
        logger.info("Job now %s", status.value, extra={"job_id": job_id, "stage": self.stage})
        return job

    def _pause(self, job_id: str, run_lock: threading.Lock) -> None:
        self._set_status(job_id, JobStatus.PAUSED, run_lock)
        self._coordinator.clear_pause_request(job_id)

    def _fail(self, job_id: str, message: str, code: str) -> None:
        def apply(job: Job) -> None:
            now = self._now()
            if job.status not in RUNNING_STATUSES:
                return
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.errors.append(JobError(step=self.execution_step, message=message, code=code, timestamp=now))

        self._store.mutate(job_id, apply)

    def _delete_items(
        self,
        job_id: str,
        item_ids: list[RecordId],
        *,
        batch_size: int,
        concurrency: int,
        run_lock: threading.Lock,
        stop_requested: threading.Event,
        progress_for: Callable[[int, DeletionOutcome], ProgressUpdate],
        stop_on_error: bool = False,
    ) -> DeletionOutcome:
        """Delete ``item_ids`` from the last checkpoint onward, one committed batch at a time.

        ``progress_for(position, outcome)`` builds the progress written with
        each batch. Returns with ``paused`` set when a stop was requested.
        """
        job = self._store.require(job_id)
        progress = job.progress or empty_progress(self._now())
        latest = self._store.get_latest_checkpoint(job_id)
        offset = latest.offset + latest.limit if latest is not None else 0
        batch_number = latest.batch_number if latest is not None else 0
        outcome = DeletionOutcome(
            deleted=progress.successful if latest is not None else 0,
            failed=progress.failed if latest is not None else 0,
        )
        if offset:
            logger.info("Resuming deletion at item %s of %s", offset, len(item_ids), extra={"job_id": job_id})

        while offset < len(item_ids):
            if self._should_stop(job_id, stop_requested):
                logger.info("Pause requested before deletion batch", extra={"job_id": job_id, "stage": self.stage})
                self._pause(job_id, run_lock)
                outcome.paused = True
                return outcome

            batch = item_ids[offset : offset + batch_size]
            batch_number += 1
            started_at = self._now()
            batch_errors = self._delete_batch(job_id, batch, concurrency)
            failed_ids = {error.item_id for error in batch_errors}
            outcome.errors.extend(batch_errors)
            outcome.deleted += len(batch) - len(batch_errors)
            outcome.failed += len(batch_errors)
            position = offset + len(batch)

            checkpoint = BatchCheckpoint(
                batch_number=batch_number,
                offset=offset,
                limit=batch_size,
                started_at=started_at,
                status=CheckpointStatus.COMPLETED,
                completed_item_ids=[item_id for item_id in batch if item_id not in failed_ids],
                completed_at=self._now(),
                items_processed=len(batch),
                items_successful=len(batch) - len(batch_errors),
                items_failed=len(batch_errors),
            )
            self._commit_batch(job_id, checkpoint, progress_for(position, outcome), batch_errors, run_lock)
            logger.info(
                "Deletion batch %s: %s/%s items, deleted=%s failed=%s",
                batch_number,
                position,
                len(item_ids),
                outcome.deleted,
                outcome.failed,
                extra={"job_id": job_id, "stage": self.stage},
            )
            offset = position

            if stop_on_error and batch_errors:
                first = batch_errors[0]
                raise DeletionAbortedError(f"Stopping on failed deletion of item {first.item_id}: {first.message}")

        return outcome

    def _delete_batch(self, job_id: str, batch: list[RecordId], concurrency: int) -> list[DeletionError]:
        def delete_one(item_id: RecordId) -> DeletionError | None:
            try:
                self._platform.delete_record(item_id)
            except Exception as exc:
                classified = classify_error(exc)
                logger.warning(
                    "Failed to delete item %s: %s",
                    item_id,
                    classified.message,
                    extra={"job_id": job_id, "stage": self.stage},
                )
                return DeletionError(
                    message=str(exc) or classified.message,
                    item_id=item_id,
                    code=classified.code,
                    category=classified.category.value,
                )
            return None

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"{self.stage}-{job_id[:8]}") as pool:
            outcomes = list(pool.map(delete_one, batch))
        return [item for item in outcomes if item is not None]

    def _batch_metadata(self, metadata: dict[str, Any], update: ProgressUpdate) -> dict[str, Any]:
        return metadata

    def _commit_batch(
        self,
        job_id: str,
        checkpoint: BatchCheckpoint,
        update: ProgressUpdate,
        batch_errors: list[DeletionError],
        run_lock: threading.Lock,
    ) -> None:
        update.batch_checkpoints = [checkpoint]

        def apply(job: Job) -> None:
            now = self._now()
            progress = job.progress or empty_progress(now)
            categories = dict(progress.failed_items_by_category)
            for error in batch_errors:
                if error.category:
                    categories[error.category] = categories.get(error.category, 0) + 1
            update.failed_items_by_category = categories
            job.progress = merge_progress(progress, update, now)
            job.metadata = self._batch_metadata(job.metadata, update)
            job.last_heartbeat = now
            for error in batch_errors:
                job.errors.append(
                    JobError(
                        step=self.delete_step,
                        message=f"Failed to delete item {error.item_id}: {error.message}",
                        code=error.code,
                        timestamp=now,
                    )
                )

        with run_lock:
            self._store.mutate(job_id, apply)
