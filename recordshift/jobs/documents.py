"""Conversion between job dataclasses and the persisted JSON document.

Documents use camelCase keys and ISO-8601 timestamps. Every timestamp read
back from disk is turned into a timezone-aware UTC ``datetime``.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from recordshift.jobs.types import (
    BatchCheckpoint,
    CheckpointStatus,
    Job,
    JobError,
    JobStatus,
    JobType,
    Progress,
    ProgressSnapshot,
    ProgressUpdate,
    Step,
    StepStatus,
    StepType,
    ThroughputMetrics,
)


class DocumentFormatError(ValueError):
    pass


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise DocumentFormatError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise DocumentFormatError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_object(raw: Any, name: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise DocumentFormatError(f"{name} must be a JSON object, got {type(raw).__name__}")
    return raw


def _require_timestamp(value: Any, name: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise DocumentFormatError(f"Missing required timestamp: {name}")
    return parsed


def _throughput_to_dict(metrics: ThroughputMetrics) -> dict[str, Any]:
    return {
        "itemsPerSecond": metrics.items_per_second,
        "batchesPerMinute": metrics.batches_per_minute,
        "avgBatchDuration": metrics.avg_batch_duration_ms,
        "estimatedCompletionTime": format_timestamp(metrics.estimated_completion_time),
        "rateLimitPauses": metrics.rate_limit_pauses,
        "totalRateLimitDelay": metrics.total_rate_limit_delay_ms,
    }


def _throughput_from_dict(raw: dict[str, Any]) -> ThroughputMetrics:
    raw = _require_object(raw, "progress.throughput")
    return ThroughputMetrics(
        items_per_second=float(raw.get("itemsPerSecond", 0.0)),
        batches_per_minute=float(raw.get("batchesPerMinute", 0.0)),
        avg_batch_duration_ms=float(raw.get("avgBatchDuration", 0.0)),
        estimated_completion_time=parse_timestamp(raw.get("estimatedCompletionTime")),
        rate_limit_pauses=int(raw.get("rateLimitPauses", 0)),
        total_rate_limit_delay_ms=int(raw.get("totalRateLimitDelay", 0)),
    )


def checkpoint_to_dict(checkpoint: BatchCheckpoint) -> dict[str, Any]:
    return {
        "batchNumber": checkpoint.batch_number,
        "offset": checkpoint.offset,
        "limit": checkpoint.limit,
        "completedItemIds": list(checkpoint.completed_item_ids),
        "startedAt": format_timestamp(checkpoint.started_at),
        "completedAt": format_timestamp(checkpoint.completed_at),
        "status": checkpoint.status.value,
        "itemsProcessed": checkpoint.items_processed,
        "itemsSuccessful": checkpoint.items_successful,
        "itemsFailed": checkpoint.items_failed,
    }


def checkpoint_from_dict(raw: dict[str, Any]) -> BatchCheckpoint:
    raw = _require_object(raw, "checkpoint")
    return BatchCheckpoint(
        batch_number=int(raw["batchNumber"]),
        offset=int(raw["offset"]),
        limit=int(raw["limit"]),
        completed_item_ids=list(raw.get("completedItemIds") or []),
        started_at=_require_timestamp(raw.get("startedAt"), "checkpoint.startedAt"),
        completed_at=parse_timestamp(raw.get("completedAt")),
        status=CheckpointStatus(raw.get("status", CheckpointStatus.PENDING.value)),
        items_processed=int(raw.get("itemsProcessed", 0)),
        items_successful=int(raw.get("itemsSuccessful", 0)),
        items_failed=int(raw.get("itemsFailed", 0)),
    )


def _snapshot_to_dict(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "total": snapshot.total,
        "processed": snapshot.processed,
        "successful": snapshot.successful,
        "failed": snapshot.failed,
        "percent": snapshot.percent,
        "lastUpdate": format_timestamp(snapshot.last_update),
    }


def _snapshot_from_dict(raw: dict[str, Any]) -> ProgressSnapshot:
    raw = _require_object(raw, "preRetrySnapshot")
    return ProgressSnapshot(
        total=int(raw.get("total", 0)),
        processed=int(raw.get("processed", 0)),
        successful=int(raw.get("successful", 0)),
        failed=int(raw.get("failed", 0)),
        percent=float(raw.get("percent", 0.0)),
        last_update=_require_timestamp(raw.get("lastUpdate"), "preRetrySnapshot.lastUpdate"),
    )


def progress_to_dict(progress: Progress) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "total": progress.total,
        "processed": progress.processed,
        "successful": progress.successful,
        "failed": progress.failed,
        "percent": progress.percent,
        "lastUpdate": format_timestamp(progress.last_update),
        "batchCheckpoints": [checkpoint_to_dict(item) for item in progress.batch_checkpoints],
        "failedItemsByCategory": dict(progress.failed_items_by_category),
    }
    if progress.throughput is not None:
        payload["throughput"] = _throughput_to_dict(progress.throughput)
    if progress.pre_retry_snapshot is not None:
        payload["preRetrySnapshot"] = _snapshot_to_dict(progress.pre_retry_snapshot)
    if progress.total_items_to_delete is not None:
        payload["totalItemsToDelete"] = progress.total_items_to_delete
    return payload


def progress_from_dict(raw: dict[str, Any]) -> Progress:
    raw = _require_object(raw, "progress")
    throughput_raw = raw.get("throughput")
    snapshot_raw = raw.get("preRetrySnapshot")
    total_items_to_delete = raw.get("totalItemsToDelete")
    return Progress(
        total=int(raw.get("total", 0)),
        processed=int(raw.get("processed", 0)),
        successful=int(raw.get("successful", 0)),
        failed=int(raw.get("failed", 0)),
        percent=float(raw.get("percent", 0.0)),
        last_update=_require_timestamp(raw.get("lastUpdate"), "progress.lastUpdate"),
        throughput=_throughput_from_dict(throughput_raw) if throughput_raw else None,
        batch_checkpoints=[checkpoint_from_dict(item) for item in raw.get("batchCheckpoints") or []],
        failed_items_by_category={str(k): int(v) for k, v in (raw.get("failedItemsByCategory") or {}).items()},
        pre_retry_snapshot=_snapshot_from_dict(snapshot_raw) if snapshot_raw else None,
        total_items_to_delete=int(total_items_to_delete) if total_items_to_delete is not None else None,
    )


def _step_to_dict(step: Step) -> dict[str, Any]:
    return {
        "id": step.id,
        "type": step.type.value,
        "sourceId": step.source_id,
        "targetId": step.target_id,
        "status": step.status.value,
        "error": step.error,
        "startedAt": format_timestamp(step.started_at),
        "completedAt": format_timestamp(step.completed_at),
    }


def _step_from_dict(raw: dict[str, Any]) -> Step:
    raw = _require_object(raw, "step")
    return Step(
        id=str(raw["id"]),
        type=StepType(raw["type"]),
        source_id=str(raw["sourceId"]),
        target_id=raw.get("targetId"),
        status=StepStatus(raw.get("status", StepStatus.PENDING.value)),
        error=raw.get("error"),
        started_at=parse_timestamp(raw.get("startedAt")),
        completed_at=parse_timestamp(raw.get("completedAt")),
    )


def _error_to_dict(error: JobError) -> dict[str, Any]:
    return {
        "step": error.step,
        "message": error.message,
        "code": error.code,
        "timestamp": format_timestamp(error.timestamp),
    }


def _error_from_dict(raw: dict[str, Any]) -> JobError:
    raw = _require_object(raw, "error")
    return JobError(
        step=str(raw["step"]),
        message=str(raw["message"]),
        code=raw.get("code"),
        timestamp=_require_timestamp(raw.get("timestamp"), "error.timestamp"),
    )


def job_to_document(job: Job) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": job.id,
        "jobType": job.job_type.value if job.job_type is not None else None,
        "sourceRef": job.source_ref,
        "targetRef": job.target_ref,
        "status": job.status.value,
        "startedAt": format_timestamp(job.started_at),
        "completedAt": format_timestamp(job.completed_at),
        "lastHeartbeat": format_timestamp(job.last_heartbeat),
        "steps": [_step_to_dict(step) for step in job.steps],
        "errors": [_error_to_dict(error) for error in job.errors],
        "metadata": job.metadata,
    }
    if job.progress is not None:
        payload["progress"] = progress_to_dict(job.progress)
    return payload


def job_from_document(raw: Any) -> Job:
    if not isinstance(raw, dict):
        raise DocumentFormatError("Job document must be a JSON object")
    try:
        job_type_raw = raw.get("jobType")
        progress_raw = raw.get("progress")
        return Job(
            id=str(raw["id"]),
            job_type=JobType(job_type_raw) if job_type_raw else None,
            source_ref=str(raw.get("sourceRef", "")),
            target_ref=str(raw.get("targetRef", "")),
            status=JobStatus(raw["status"]),
            started_at=_require_timestamp(raw.get("startedAt"), "startedAt"),
            completed_at=parse_timestamp(raw.get("completedAt")),
            last_heartbeat=parse_timestamp(raw.get("lastHeartbeat")),
            steps=[_step_from_dict(item) for item in raw.get("steps") or []],
            errors=[_error_from_dict(item) for item in raw.get("errors") or []],
            metadata=dict(raw.get("metadata") or {}),
            progress=progress_from_dict(progress_raw) if progress_raw else None,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        if isinstance(exc, DocumentFormatError):
            raise
        raise DocumentFormatError(f"Malformed job document: {exc}") from exc


def take_snapshot(progress: Progress) -> ProgressSnapshot:
    return ProgressSnapshot(
        total=progress.total,
        processed=progress.processed,
        successful=progress.successful,
        failed=progress.failed,
        percent=progress.percent,
        last_update=progress.last_update,
    )


def empty_progress(now: datetime) -> Progress:
    return Progress(last_update=now)


def merge_checkpoints(existing: list[BatchCheckpoint], incoming: list[BatchCheckpoint]) -> list[BatchCheckpoint]:
    """Upsert checkpoints by batch number. Existing rows are never dropped."""
    merged = {item.batch_number: item for item in existing}
    for item in incoming:
        merged[item.batch_number] = item
    return [merged[number] for number in sorted(merged)]


def merge_progress(current: Progress | None, update: ProgressUpdate, now: datetime) -> Progress:
    """Apply a partial progress write on top of the stored progress.

    Field rules:

    * ``total``/``processed``/``successful``/``failed``/``percent``: replaced
      when provided, kept otherwise.
    * ``throughput``, ``pre_retry_snapshot``, ``total_items_to_delete``:
      replaced when provided, kept otherwise.
    * ``batch_checkpoints``: upserted by ``batch_number``.
    * ``failed_items_by_category``: merged per key, provided keys win,
      absent keys keep their stored counts.
    * ``last_update``: always stamped with ``now``.
    """
    base = current if current is not None else empty_progress(now)
    categories = dict(base.failed_items_by_category)
    if update.failed_items_by_category:
        for key, value in update.failed_items_by_category.items():
            categories[str(key)] = int(value)

    checkpoints = list(base.batch_checkpoints)
    if update.batch_checkpoints:
        checkpoints = merge_checkpoints(checkpoints, update.batch_checkpoints)

    return replace(
        base,
        total=base.total if update.total is None else update.total,
        processed=base.processed if update.processed is None else update.processed,
        successful=base.successful if update.successful is None else update.successful,
        failed=base.failed if update.failed is None else update.failed,
        percent=base.percent if update.percent is None else update.percent,
        throughput=base.throughput if update.throughput is None else update.throughput,
        batch_checkpoints=checkpoints,
        failed_items_by_category=categories,
        pre_retry_snapshot=base.pre_retry_snapshot if update.pre_retry_snapshot is None else update.pre_retry_snapshot,
        total_items_to_delete=(
            base.total_items_to_delete if update.total_items_to_delete is None else update.total_items_to_delete
        ),
        last_update=now,
    )


def compute_percent(processed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(processed, total) * 100.0 / total, 2)
