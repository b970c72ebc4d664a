from __future__ import annotations

import logging
import threading
from typing import Any

from recordshift.cleanup.base import CleanupValidationError, DeletionEngine, DeletionOutcome
from recordshift.cleanup.types import (
    DeletePhase,
    ItemDeleteRequest,
    ItemDeleteResult,
    ItemDeleteStatus,
    delete_request_from_metadata,
    delete_request_to_metadata,
)
from recordshift.items.errors import NON_RETRYABLE
from recordshift.items.filters import convert_filters, validate_filters
from recordshift.jobs.documents import compute_percent, empty_progress, merge_progress
from recordshift.jobs.service import enforce_transition
from recordshift.jobs.types import ErrorCategory, Job, JobStatus, JobType, ProgressUpdate, RecordId

logger = logging.getLogger(__name__)

_PHASE_MESSAGES = {
    DeletePhase.DETECTING: "Detecting items to delete...",
    DeletePhase.DELETING: "Deleting items...",
    DeletePhase.COMPLETED: "Deletion completed",
    DeletePhase.FAILED: "Deletion failed",
}


def delete_phase(job: Job) -> DeletePhase:
    """Phase of a delete job, derived from its status and whether detection finished."""
    if job.status == JobStatus.COMPLETED:
        return DeletePhase.COMPLETED
    if job.status in {JobStatus.FAILED, JobStatus.CANCELLED}:
        return DeletePhase.FAILED
    if job.status == JobStatus.DELETING or "itemIds" in job.metadata:
        return DeletePhase.DELETING
    return DeletePhase.DETECTING


class ItemDeleteEngine(DeletionEngine):
    """Deletes every record of a collection that matches a filter set.

    Runs ``planning -> detecting -> deleting -> completed``. Detection stores
    the matched ids on the job, so a resumed run continues deleting from the
    last checkpoint without scanning the collection again.
    """

    job_type = JobType.ITEM_DELETE
    stage = "item_delete"
    execution_step = "delete_execution"
    delete_step = "item_delete"
    execution_error_code = "DELETE_EXECUTION_ERROR"

    def validate_request(self, request: ItemDeleteRequest) -> None:
        errors: list[str] = []
        if not request.collection_id:
            errors.append("collection_id is required")
        if not 1 <= request.batch_size <= self._settings.max_batch_size:
            errors.append(f"batch_size must be between 1 and {self._settings.max_batch_size}")
        if not 1 <= request.concurrency <= self._settings.max_concurrency:
            errors.append(f"concurrency must be between 1 and {self._settings.max_concurrency}")
        if request.max_items is not None and request.max_items < 1:
            errors.append("max_items must be positive")
        errors.extend(validate_filters(request.filters))
        if errors:
            raise CleanupValidationError("; ".join(errors))
        # Raises PlatformApiError for collections the platform does not know.
        self._platform.collection_fields(request.collection_id)

    def create_job(self, request: ItemDeleteRequest) -> Job:
        self.validate_request(request)
        job = self._store.create(
            request.collection_id,
            request.collection_id,
            delete_request_to_metadata(request),
            job_type=JobType.ITEM_DELETE,
        )
        logger.info(
            "Created delete job: collection=%s max_items=%s dry_run=%s",
            request.collection_id,
            request.max_items,
            request.dry_run,
            extra={"job_id": job.id, "stage": self.stage},
        )
        return job

    def run(self, job_id: str) -> ItemDeleteResult:
        job = self._require_job(job_id)
        request = delete_request_from_metadata(job.metadata)
        stored_ids = job.metadata.get("itemIds")
        next_status = JobStatus.DELETING if stored_ids is not None else JobStatus.DETECTING
        enforce_transition(job.status, next_status)

        def body(run_lock: threading.Lock, stop_requested: threading.Event) -> ItemDeleteResult:
            item_ids = list(stored_ids) if stored_ids is not None else None
            if item_ids is None:
                item_ids = self._detect(job_id, request, run_lock, stop_requested)
                if item_ids is None:
                    return self._result(job_id, request, [], DeletionOutcome(), JobStatus.PAUSED)
                if request.dry_run:
                    self._finish_dry_run(job_id, item_ids, run_lock)
                    return self._result(job_id, request, item_ids, DeletionOutcome(), JobStatus.COMPLETED)
                self._start_deleting(job_id, len(item_ids), run_lock)
            return self._delete(job_id, request, item_ids, run_lock, stop_requested)

        return self._guarded_run(job_id, next_status, body)

    def _detect(
        self,
        job_id: str,
        request: ItemDeleteRequest,
        run_lock: threading.Lock,
        stop_requested: threading.Event,
    ) -> list[RecordId] | None:
        """Collect the ids to delete; ``None`` means the job paused mid-scan."""
        filters = convert_filters(request.filters) or None
        page_size = self._settings.max_batch_size
        limit = request.max_items
        item_ids: list[RecordId] = []
        estimated_total: int | None = None
        offset = 0
        while True:
            if self._should_stop(job_id, stop_requested):
                logger.info("Pause requested during detection", extra={"job_id": job_id, "stage": self.stage})
                self._pause(job_id, run_lock)
                return None
            page = self._platform.list_records(request.collection_id, offset=offset, limit=page_size, filters=filters)
            if estimated_total is None:
                estimated_total = page.filtered if page.filtered is not None else page.total
                if limit is not None:
                    estimated_total = min(estimated_total, limit)
            for record in page.items:
                if limit is not None and len(item_ids) >= limit:
                    break
                item_ids.append(record.id)
            offset += len(page.items)
            self._record_detection(job_id, len(item_ids), estimated_total, run_lock)
            logger.info(
                "Detecting progress: fetched=%s estimated_total=%s",
                len(item_ids),
                estimated_total,
                extra={"job_id": job_id, "stage": self.stage},
            )
            if len(page.items) < page_size or (limit is not None and len(item_ids) >= limit):
                break

        def apply(job: Job) -> None:
            job.metadata = {**job.metadata, "itemIds": list(item_ids)}

        with run_lock:
            self._store.mutate(job_id, apply)
        logger.info("Detection complete: %s item(s)", len(item_ids), extra={"job_id": job_id, "stage": self.stage})
        return item_ids

    def _record_detection(self, job_id: str, fetched: int, estimated_total: int, run_lock: threading.Lock) -> None:
        percent = compute_percent(fetched, estimated_total)

        def apply(job: Job) -> None:
            now = self._now()
            phase_progress = dict(job.metadata.get("phaseProgress") or {})
            phase_progress["detecting"] = {"fetched": fetched, "estimatedTotal": estimated_total, "percent": percent}
            job.metadata = {**job.metadata, "phaseProgress": phase_progress}
            job.progress = merge_progress(
                job.progress or empty_progress(now),
                ProgressUpdate(total=estimated_total, processed=fetched, successful=0, failed=0, percent=percent),
                now,
            )
            job.last_heartbeat = now

        with run_lock:
            self._store.mutate(job_id, apply)

    def _finish_dry_run(self, job_id: str, item_ids: list[RecordId], run_lock: threading.Lock) -> None:
        logger.info("Dry run, skipping deletion of %s item(s)", len(item_ids), extra={"job_id": job_id})

        def apply(job: Job) -> None:
            now = self._now()
            count = len(item_ids)
            job.progress = merge_progress(
                job.progress or empty_progress(now),
                ProgressUpdate(total=count, processed=count, successful=count, failed=0, percent=100.0),
                now,
            )

        with run_lock:
            self._store.mutate(job_id, apply)
        self._set_status(job_id, JobStatus.COMPLETED, run_lock)

    def _start_deleting(self, job_id: str, total: int, run_lock: threading.Lock) -> None:
        def apply(job: Job) -> None:
            now = self._now()
            job.progress = merge_progress(
                job.progress or empty_progress(now),
                ProgressUpdate(total=total, processed=0, successful=0, failed=0, percent=0.0, total_items_to_delete=total),
                now,
            )
            job.metadata = self._deleting_metadata(job.metadata, total, 0, 0, 0)

        with run_lock:
            self._store.mutate(job_id, apply)
        self._set_status(job_id, JobStatus.DELETING, run_lock)

    def _deleting_metadata(
        self,
        metadata: dict[str, Any],
        total: int,
        processed: int,
        successful: int,
        failed: int,
    ) -> dict[str, Any]:
        phase_progress = dict(metadata.get("phaseProgress") or {})
        phase_progress["deleting"] = {
            "total": total,
            "processed": processed,
            "successful": successful,
            "failed": failed,
            "percent": compute_percent(processed, total),
        }
        return {**metadata, "phaseProgress": phase_progress}

    def _batch_metadata(self, metadata: dict[str, Any], update: ProgressUpdate) -> dict[str, Any]:
        return self._deleting_metadata(
            metadata,
            update.total or 0,
            update.processed or 0,
            update.successful or 0,
            update.failed or 0,
        )

    def _delete(
        self,
        job_id: str,
        request: ItemDeleteRequest,
        item_ids: list[RecordId],
        run_lock: threading.Lock,
        stop_requested: threading.Event,
    ) -> ItemDeleteResult:
        def progress_for(position: int, outcome: DeletionOutcome) -> ProgressUpdate:
            return ProgressUpdate(
                total=len(item_ids),
                processed=position,
                successful=outcome.deleted,
                failed=outcome.failed,
                percent=compute_percent(position, len(item_ids)),
            )

        outcome = self._delete_items(
            job_id,
            item_ids,
            batch_size=request.batch_size,
            concurrency=request.concurrency,
            run_lock=run_lock,
            stop_requested=stop_requested,
            progress_for=progress_for,
            stop_on_error=request.stop_on_error,
        )
        if outcome.paused:
            return self._result(job_id, request, item_ids, outcome, JobStatus.PAUSED)

        self._set_status(job_id, JobStatus.COMPLETED, run_lock)
        logger.info(
            "Deletion complete: total=%s deleted=%s failed=%s",
            len(item_ids),
            outcome.deleted,
            outcome.failed,
            extra={"job_id": job_id, "stage": self.stage},
        )
        return self._result(job_id, request, item_ids, outcome, JobStatus.COMPLETED)

    def _result(
        self,
        job_id: str,
        request: ItemDeleteRequest,
        item_ids: list[RecordId],
        outcome: DeletionOutcome,
        status: JobStatus,
    ) -> ItemDeleteResult:
        return ItemDeleteResult(
            job_id=job_id,
            status=status.value,
            total_items=len(item_ids),
            deleted=outcome.deleted,
            failed=outcome.failed,
            dry_run=request.dry_run,
            item_ids=list(item_ids) if request.dry_run else [],
            errors=outcome.errors,
        )

    def status(self, job_id: str) -> ItemDeleteStatus:
        job = self._require_job(job_id)
        request = delete_request_from_metadata(job.metadata)
        progress = job.progress or empty_progress(job.started_at)
        phase = delete_phase(job)
        phase_status = _PHASE_MESSAGES[phase]
        if job.status == JobStatus.PAUSED:
            phase_status = f"Paused while {phase.value}"
        elif job.status == JobStatus.CANCELLED:
            phase_status = "Deletion cancelled"
        elif phase == DeletePhase.COMPLETED and request.dry_run:
            phase_status = "Dry run completed"

        counts = progress.failed_items_by_category
        total_failed = sum(counts.values())
        errors_by_category = {
            category: {
                "count": count,
                "percentage": round(count * 100 / total_failed) if total_failed else 0,
                "retryable": ErrorCategory(category) not in NON_RETRYABLE,
            }
            for category, count in counts.items()
            if count
        }
        return ItemDeleteStatus(
            job_id=job.id,
            status=job.status.value,
            phase=phase,
            phase_status=phase_status,
            phase_progress=dict(job.metadata.get("phaseProgress") or {}),
            total=progress.total,
            processed=progress.processed,
            successful=progress.successful,
            failed=progress.failed,
            percent=progress.percent,
            dry_run=request.dry_run,
            started_at=job.started_at,
            last_update=progress.last_update,
            completed_at=job.completed_at,
            errors_by_category=errors_by_category,
            errors=[
                {"step": error.step, "message": error.message, "code": error.code, "timestamp": error.timestamp}
                for error in job.errors
            ],
        )
