from __future__ import annotations

import logging
import threading
from typing import Any

from recordshift.cleanup.base import CleanupValidationError, DeletionEngine, DeletionOutcome
from recordshift.cleanup.types import (
    INVALID_MATCH_FIELD_TYPES,
    CleanupMode,
    CleanupPreview,
    CleanupRequest,
    CleanupResult,
    CleanupStatus,
    request_from_metadata,
    request_to_metadata,
    summarize_groups,
)
from recordshift.duplicates import GroupAccumulator, apply_keep_strategy
from recordshift.duplicates.types import (
    DuplicateGroup,
    KeepStrategy,
    duplicate_group_from_dict,
    duplicate_group_to_dict,
)
from recordshift.items.filters import convert_filters, validate_filters
from recordshift.jobs.documents import compute_percent, empty_progress, merge_progress
from recordshift.jobs.service import InvalidJobStateError, enforce_transition
from recordshift.jobs.types import Job, JobStatus, JobType, ProgressUpdate, RecordId

logger = logging.getLogger(__name__)

__all__ = ["CleanupEngine", "CleanupValidationError"]


class CleanupEngine(DeletionEngine):
    """Finds records sharing a match value in one collection and deletes the extras.

    Automated jobs go ``planning -> detecting -> deleting``; manual jobs stop
    at ``waiting_approval`` until :meth:`approve` stores the groups a person
    signed off on, and deletion then uses exactly those groups.
    """

    job_type = JobType.CLEANUP

    # -- job creation ------------------------------------------------------

    def validate_request(self, request: CleanupRequest) -> None:
        errors: list[str] = []
        if not request.collection_id:
            errors.append("collection_id is required")
        if not request.match_field or not request.match_field.strip():
            errors.append("match_field is required")
        if not 1 <= request.batch_size <= self._settings.max_batch_size:
            errors.append(f"batch_size must be between 1 and {self._settings.max_batch_size}")
        if not 1 <= request.concurrency <= self._settings.max_concurrency:
            errors.append(f"concurrency must be between 1 and {self._settings.max_concurrency}")
        if request.max_groups is not None and request.max_groups < 1:
            errors.append("max_groups must be positive")
        errors.extend(validate_filters(request.filters))
        if errors:
            raise CleanupValidationError("; ".join(errors))

        fields = self._platform.collection_fields(request.collection_id)
        match = next(
            (item for item in fields if request.match_field in {item.external_id, item.field_id}),
            None,
        )
        if match is None:
            raise CleanupValidationError(
                f'Match field not found: "{request.match_field}" does not exist in collection {request.collection_id}'
            )
        if match.type in INVALID_MATCH_FIELD_TYPES:
            raise CleanupValidationError(
                f'Invalid match field type: "{match.label or match.external_id}" is a {match.type} field. '
                "Duplicate detection needs a text, number, email, phone or similar value field."
            )

    def create_job(self, request: CleanupRequest) -> Job:
        self.validate_request(request)
        job = self._store.create(
            request.collection_id,
            request.collection_id,
            request_to_metadata(request),
            job_type=JobType.CLEANUP,
        )
        logger.info(
            "Created cleanup job: collection=%s match_field=%s mode=%s dry_run=%s",
            request.collection_id,
            request.match_field,
            request.mode.value,
            request.dry_run,
            extra={"job_id": job.id, "stage": "cleanup"},
        )
        return job

    # -- manual approval ---------------------------------------------------

    def approve(self, job_id: str, groups: list[DuplicateGroup]) -> Job:
        """Persist exactly the caller-approved groups; the job stays ``waiting_approval``."""
        job = self._require_job(job_id)
        if job.status != JobStatus.WAITING_APPROVAL:
            raise InvalidJobStateError(
                f"Cleanup job {job_id} is {job.status.value}; groups can only be approved while waiting_approval"
            )
        request = request_from_metadata(job.metadata)
        resolved = [self._resolve_approved_group(group, request.keep_strategy) for group in groups]
        total_to_delete = sum(len(group.delete_item_ids or []) for group in resolved)

        def apply(current: Job) -> None:
            now = self._now()
            current.metadata = {
                **current.metadata,
                "approvedGroups": [duplicate_group_to_dict(group) for group in resolved],
            }
            progress = current.progress or empty_progress(now)
            current.progress = merge_progress(
                progress,
                ProgressUpdate(total=len(resolved), total_items_to_delete=total_to_delete),
                now,
            )

        updated = self._store.mutate(job_id, apply)
        logger.info(
            "Approved %s group(s), %s item(s) to delete",
            len(resolved),
            total_to_delete,
            extra={"job_id": job_id, "stage": "cleanup"},
        )
        return updated

    def _resolve_approved_group(self, group: DuplicateGroup, strategy: KeepStrategy) -> DuplicateGroup:
        if not group.delete_item_ids:
            if len(group.items) < 2:
                raise CleanupValidationError(
                    f'Group "{group.match_value}" has no delete_item_ids and fewer than two items'
                )
            effective = KeepStrategy.NEWEST if strategy == KeepStrategy.NEWEST else KeepStrategy.OLDEST
            resolved = apply_keep_strategy([group], effective)[0]
            resolved.approved = True
            return resolved

        members = {str(item.item_id) for item in group.items}
        if members:
            unknown = [item_id for item_id in group.delete_item_ids if str(item_id) not in members]
            if unknown:
                raise CleanupValidationError(
                    f'Group "{group.match_value}" deletes items that are not members: {unknown}'
                )
        if group.keep_item_id is not None and str(group.keep_item_id) in {str(i) for i in group.delete_item_ids}:
            raise CleanupValidationError(f'Group "{group.match_value}" deletes its own keep item {group.keep_item_id}')
        return DuplicateGroup(
            match_value=group.match_value,
            items=list(group.items),
            keep_item_id=group.keep_item_id,
            delete_item_ids=list(group.delete_item_ids),
            approved=True,
        )

    def execute(self, job_id: str, groups: list[DuplicateGroup]) -> CleanupResult | CleanupPreview:
        self.approve(job_id, groups)
        return self.run(job_id)

    # -- execution ---------------------------------------------------------

    def run(self, job_id: str) -> CleanupResult | CleanupPreview:
        job = self._require_job(job_id)
        request = request_from_metadata(job.metadata)
        plan = self._stored_plan(job, request)
        next_status = JobStatus.DELETING if plan is not None else JobStatus.DETECTING
        if job.status == JobStatus.WAITING_APPROVAL and plan is None:
            raise InvalidJobStateError(f"Cleanup job {job_id} is waiting for approved groups")
        enforce_transition(job.status, next_status)

        def body(run_lock: threading.Lock, stop_requested: threading.Event) -> CleanupResult | CleanupPreview:
            groups = plan
            if groups is None:
                outcome = self._detect(job_id, request, run_lock, stop_requested)
                if outcome is None:
                    return self._paused_result(job_id)
                if isinstance(outcome, CleanupPreview):
                    return outcome
                groups = outcome
                self._set_status(job_id, JobStatus.DELETING, run_lock)
            return self._delete(job_id, request, groups, run_lock, stop_requested)

        return self._guarded_run(job_id, next_status, body)

    def _stored_plan(self, job: Job, request: CleanupRequest) -> list[DuplicateGroup] | None:
        key = "approvedGroups" if request.mode == CleanupMode.MANUAL else "deletionPlan"
        raw = job.metadata.get(key)
        if raw is None:
            return None
        return [duplicate_group_from_dict(item) for item in raw]

    def _paused_result(self, job_id: str) -> CleanupResult:
        job = self._store.require(job_id)
        progress = job.progress or empty_progress(self._now())
        return CleanupResult(
            job_id=job_id,
            total_groups=progress.total,
            total_items_deleted=progress.successful,
            failed_deletions=progress.failed,
            status=job.status.value,
        )

    def _detect(
        self,
        job_id: str,
        request: CleanupRequest,
        run_lock: threading.Lock,
        stop_requested: threading.Event,
    ) -> list[DuplicateGroup] | CleanupPreview | None:
        """Stream the collection and group it; ``None`` means the job paused mid-scan."""
        accumulator = GroupAccumulator(request.match_field)
        filters = convert_filters(request.filters) or None
        page_size = self._settings.max_batch_size
        offset = 0
        while True:
            if self._should_stop(job_id, stop_requested):
                logger.info("Pause requested during detection", extra={"job_id": job_id, "stage": "cleanup"})
                self._pause(job_id, run_lock)
                return None
            page = self._platform.list_records(request.collection_id, offset=offset, limit=page_size, filters=filters)
            for record in page.items:
                accumulator.add(record)
            offset += len(page.items)
            logger.debug("Scanned %s record(s)", accumulator.items_seen, extra={"job_id": job_id})
            if len(page.items) < page_size:
                break

        groups = accumulator.groups()
        if request.max_groups is not None:
            groups = groups[: request.max_groups]

        if request.mode == CleanupMode.MANUAL:
            return self._await_approval(job_id, groups, run_lock)

        strategy = KeepStrategy.NEWEST if request.keep_strategy == KeepStrategy.NEWEST else KeepStrategy.OLDEST
        planned = apply_keep_strategy(groups, strategy)
        total_to_delete = sum(len(group.delete_item_ids or []) for group in planned)
        encoded = [duplicate_group_to_dict(group) for group in planned]

        if request.dry_run:
            self._record_plan(job_id, {"duplicateGroups": encoded}, len(planned), total_to_delete, run_lock)
            self._set_status(job_id, JobStatus.COMPLETED, run_lock)
            return CleanupPreview(
                job_id=job_id,
                total_groups=len(planned),
                total_items_to_delete=total_to_delete,
                duplicate_groups=planned,
                summary=summarize_groups(planned, total_to_delete),
                status=JobStatus.COMPLETED.value,
            )

        self._record_plan(job_id, {"deletionPlan": encoded}, len(planned), total_to_delete, run_lock)
        return planned

    def _await_approval(
        self,
        job_id: str,
        groups: list[DuplicateGroup],
        run_lock: threading.Lock,
    ) -> CleanupPreview:
        logger.info("Returning %s group(s) for approval", len(groups), extra={"job_id": job_id, "stage": "cleanup"})
        self._record_plan(
            job_id,
            {"duplicateGroups": [duplicate_group_to_dict(group) for group in groups]},
            len(groups),
            0,
            run_lock,
        )
        self._set_status(job_id, JobStatus.WAITING_APPROVAL, run_lock)
        return CleanupPreview(
            job_id=job_id,
            total_groups=len(groups),
            total_items_to_delete=0,
            duplicate_groups=groups,
            summary=summarize_groups(groups),
            status=JobStatus.WAITING_APPROVAL.value,
        )

    def _record_plan(
        self,
        job_id: str,
        metadata: dict[str, Any],
        total_groups: int,
        total_to_delete: int,
        run_lock: threading.Lock,
    ) -> None:
        def apply(job: Job) -> None:
            now = self._now()
            job.metadata = {**job.metadata, **metadata}
            progress = job.progress or empty_progress(now)
            job.progress = merge_progress(
                progress,
                ProgressUpdate(total=total_groups, total_items_to_delete=total_to_delete),
                now,
            )
            job.last_heartbeat = now

        with run_lock:
            self._store.mutate(job_id, apply)

    def _delete(
        self,
        job_id: str,
        request: CleanupRequest,
        groups: list[DuplicateGroup],
        run_lock: threading.Lock,
        stop_requested: threading.Event,
    ) -> CleanupResult:
        item_ids: list[RecordId] = []
        group_ends: list[int] = []
        for group in groups:
            item_ids.extend(group.delete_item_ids or [])
            group_ends.append(len(item_ids))

        def progress_for(position: int, outcome: DeletionOutcome) -> ProgressUpdate:
            return ProgressUpdate(
                total=len(groups),
                processed=sum(1 for end in group_ends if end <= position),
                successful=outcome.deleted,
                failed=outcome.failed,
                percent=compute_percent(position, len(item_ids)),
                total_items_to_delete=len(item_ids),
            )

        outcome = self._delete_items(
            job_id,
            item_ids,
            batch_size=request.batch_size,
            concurrency=request.concurrency,
            run_lock=run_lock,
            stop_requested=stop_requested,
            progress_for=progress_for,
        )
        if outcome.paused:
            status = JobStatus.PAUSED
        else:
            status = JobStatus.COMPLETED
            self._set_status(job_id, status, run_lock)
            logger.info(
                "Cleanup complete: groups=%s deleted=%s failed=%s",
                len(groups),
                outcome.deleted,
                outcome.failed,
                extra={"job_id": job_id, "stage": self.stage},
            )
        return CleanupResult(
            job_id=job_id,
            total_groups=len(groups),
            total_items_deleted=outcome.deleted,
            failed_deletions=outcome.failed,
            errors=outcome.errors,
            status=status.value,
        )

    # -- status ------------------------------------------------------------

    def status(self, job_id: str) -> CleanupStatus:
        job = self._require_job(job_id)
        request = request_from_metadata(job.metadata)
        progress = job.progress or empty_progress(job.started_at)
        raw_groups = job.metadata.get("approvedGroups") or job.metadata.get("duplicateGroups")
        return CleanupStatus(
            job_id=job.id,
            status=job.status.value,
            mode=request.mode,
            keep_strategy=request.keep_strategy,
            total_groups=progress.total,
            processed_groups=progress.processed,
            total_items_to_delete=progress.total_items_to_delete or 0,
            deleted_items=progress.successful,
            failed_deletions=progress.failed,
            percent=progress.percent,
            started_at=job.started_at,
            last_update=progress.last_update,
            completed_at=job.completed_at,
            duplicate_groups=[duplicate_group_from_dict(item) for item in raw_groups] if raw_groups else None,
            errors=[
                {"step": error.step, "message": error.message, "code": error.code, "timestamp": error.timestamp}
                for error in job.errors
            ],
        )
