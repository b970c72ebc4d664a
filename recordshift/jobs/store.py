from __future__ import annotations

import json
import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from recordshift.core.config import Settings
from recordshift.core.path_safety import resolve_job_document, validate_job_id
from recordshift.jobs.documents import (
    DocumentFormatError,
    compute_percent,
    empty_progress,
    job_from_document,
    job_to_document,
    merge_progress,
    take_snapshot,
)
from recordshift.jobs.types import (
    BatchCheckpoint,
    Job,
    JobError,
    JobStatus,
    JobType,
    Progress,
    ProgressUpdate,
    Step,
    StepType,
    ThroughputMetrics,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    pass


class StepNotFoundError(RuntimeError):
    pass


class JobStoreWriteError(RuntimeError):
    pass


_STEP_FIELDS = {"status", "target_id", "error", "started_at", "completed_at"}


class JobStateStore:
    """One JSON document per job under ``settings.jobs_root``.

    Writes go to a uniquely named temp file which is fsynced, read back and
    verified, then renamed over the canonical document. Readers therefore
    only ever observe a complete previous or complete next version.
    """

    def __init__(self, settings: Settings, *, sleep: Callable[[float], None] = time.sleep):
        self._settings = settings
        self._root = Path(settings.jobs_root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._sleep = sleep

    @property
    def root(self) -> Path:
        return self._root

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _path(self, job_id: str) -> Path:
        return resolve_job_document(self._root, job_id)

    # -- raw document IO -------------------------------------------------

    def _write_once(self, path: Path, payload: bytes) -> None:
        temp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        try:
            with open(temp_path, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())

            written = temp_path.read_bytes()
            if len(written) != len(payload):
                raise JobStoreWriteError(
                    f"Temp file size mismatch for {path.name}: expected {len(payload)}, got {len(written)}"
                )
            json.loads(written.decode("utf-8"))

            os.replace(temp_path, path)
        finally:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to remove temp file %s", temp_path)

    def _write_document(self, job_id: str, document: dict[str, Any]) -> None:
        path = self._path(job_id)
        payload = json.dumps(document, indent=2).encode("utf-8")
        attempts = self._settings.save_max_attempts
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                self._write_once(path, payload)
                return
            except (OSError, ValueError, JobStoreWriteError) as exc:
                last_error = exc
                if attempt + 1 >= attempts:
                    break
                delay_ms = self._settings.save_backoff_base_ms * (2**attempt)
                logger.warning(
                    "Job save attempt %s/%s failed for %s, retrying in %sms: %s",
                    attempt + 1,
                    attempts,
                    job_id,
                    delay_ms,
                    exc,
                    extra={"job_id": job_id, "stage": "state_store"},
                )
                self._sleep(delay_ms / 1000.0)
        raise JobStoreWriteError(f"Failed to save job {job_id} after {attempts} attempts: {last_error}") from last_error

    def _backup_corrupted(self, path: Path) -> Path | None:
        backup = path.with_name(f"{path.name}.corrupted.{int(time.time() * 1000)}")
        try:
            shutil.copy2(path, backup)
        except OSError:
            logger.exception("Failed to back up corrupted job document %s", path)
            return None
        return backup

    def _read(self, path: Path) -> Job | None:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return job_from_document(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, DocumentFormatError) as exc:
            backup = self._backup_corrupted(path)
            logger.error(
                "Corrupted job document %s (backup: %s): %s",
                path.name,
                backup.name if backup is not None else "none",
                exc,
            )
            return None

    # -- public contract -------------------------------------------------

    def create(
        self,
        source_ref: str,
        target_ref: str,
        metadata: dict[str, Any] | None = None,
        *,
        job_type: JobType | None = None,
        job_id: str | None = None,
    ) -> Job:
        now = self._now()
        job = Job(
            id=validate_job_id(job_id) if job_id is not None else str(uuid4()),
            job_type=job_type,
            source_ref=source_ref,
            target_ref=target_ref,
            status=JobStatus.PLANNING,
            started_at=now,
            metadata=dict(metadata or {}),
            progress=empty_progress(now),
        )
        self.save(job)
        logger.info("Created job %s (%s -> %s)", job.id, source_ref, target_ref, extra={"job_id": job.id})
        return job

    def get(self, job_id: str) -> Job | None:
        return self._read(self._path(job_id))

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Migration job not found: {job_id}")
        return job

    def save(self, job: Job) -> None:
        self._write_document(job.id, job_to_document(job))

    def list(self) -> list[Job]:
        jobs: list[Job] = []
        for path in sorted(self._root.glob("*.json")):
            job = self._read(path)
            if job is not None:
                jobs.append(job)
        jobs.sort(key=lambda item: item.started_at, reverse=True)
        return jobs

    def delete(self, job_id: str) -> bool:
        path = self._path(job_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted job %s", job_id, extra={"job_id": job_id})
        return True

    def mutate(self, job_id: str, change: Callable[[Job], Job | None]) -> Job:
        """Read-modify-write one job. ``change`` may edit in place or return a replacement."""
        job = self.require(job_id)
        result = change(job)
        if result is not None:
            job = result
        self.save(job)
        return job

    def update_status(self, job_id: str, status: JobStatus, completed_at: datetime | None = None) -> Job:
        def apply(job: Job) -> None:
            job.status = status
            if completed_at is not None:
                job.completed_at = completed_at

        return self.mutate(job_id, apply)

    def add_step(self, job_id: str, step_type: StepType, source_id: str) -> str:
        step_id = f"{step_type.value}-{source_id}-{uuid4().hex[:8]}"

        def apply(job: Job) -> None:
            job.steps.append(Step(id=step_id, type=step_type, source_id=source_id))

        self.mutate(job_id, apply)
        return step_id

    def update_step(self, job_id: str, step_id: str, **changes: Any) -> Job:
        unknown = set(changes) - _STEP_FIELDS
        if unknown:
            raise ValueError(f"Unknown step fields: {sorted(unknown)}")

        def apply(job: Job) -> None:
            for index, step in enumerate(job.steps):
                if step.id == step_id:
                    job.steps[index] = replace(step, **changes)
                    return
            raise StepNotFoundError(f"Step not found: {step_id} in job {job_id}")

        return self.mutate(job_id, apply)

    def add_error(self, job_id: str, step: str, message: str, code: str | None = None) -> Job:
        def apply(job: Job) -> None:
            job.errors.append(JobError(step=step, message=message, code=code, timestamp=self._now()))

        return self.mutate(job_id, apply)

    def update_progress(
        self,
        job_id: str,
        update: ProgressUpdate,
        *,
        heartbeat: bool = False,
    ) -> Job:
        """Merge ``update`` into the stored progress.

        With ``heartbeat=True`` the same write also stamps ``last_heartbeat``
        so a batch commit and its liveness signal land atomically.
        """

        def apply(job: Job) -> None:
            now = self._now()
            job.progress = merge_progress(job.progress, update, now)
            if heartbeat:
                job.last_heartbeat = now

        return self.mutate(job_id, apply)

    def update_metadata(self, job_id: str, updates: dict[str, Any]) -> Job:
        def apply(job: Job) -> None:
            job.metadata = {**job.metadata, **updates}

        return self.mutate(job_id, apply)

    def update_throughput(self, job_id: str, metrics: ThroughputMetrics) -> Job:
        return self.update_progress(job_id, ProgressUpdate(throughput=metrics))

    def save_checkpoint(self, job_id: str, checkpoint: BatchCheckpoint) -> Job:
        return self.update_progress(job_id, ProgressUpdate(batch_checkpoints=[checkpoint]))

    def get_latest_checkpoint(self, job_id: str) -> BatchCheckpoint | None:
        job = self.get(job_id)
        if job is None or job.progress is None or not job.progress.batch_checkpoints:
            return None
        return max(job.progress.batch_checkpoints, key=lambda item: item.batch_number)

    def increment_failed_counts(self, job_id: str, deltas: dict[str, int]) -> Job:
        def apply(job: Job) -> None:
            progress = job.progress or empty_progress(self._now())
            categories = dict(progress.failed_items_by_category)
            added = 0
            for category, delta in deltas.items():
                key = str(getattr(category, "value", category))
                categories[key] = categories.get(key, 0) + int(delta)
                added += int(delta)
            failed = progress.failed + added
            processed = progress.processed + added
            job.progress = merge_progress(
                progress,
                ProgressUpdate(
                    failed=failed,
                    processed=processed,
                    percent=compute_percent(processed, progress.total),
                    failed_items_by_category=categories,
                ),
                self._now(),
            )

        return self.mutate(job_id, apply)

    def snapshot_progress_for_retry(self, job_id: str) -> Job:
        """Freeze the current counters and reset them for a retry pass.

        ``total`` and the batch checkpoints are kept; the failure category
        breakdown starts empty because the retry pass re-counts it.
        """

        def apply(job: Job) -> None:
            now = self._now()
            progress: Progress = job.progress or empty_progress(now)
            job.progress = replace(
                progress,
                pre_retry_snapshot=take_snapshot(progress),
                processed=0,
                successful=0,
                failed=0,
                percent=0.0,
                failed_items_by_category={},
                throughput=None,
                last_update=now,
            )

        return self.mutate(job_id, apply)
