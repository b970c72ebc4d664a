from __future__ import annotations

from typing import Any

from recordshift.jobs.documents import format_timestamp, progress_to_dict
from recordshift.jobs.types import Job, JobHealth, JobStatus


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PLANNING: {JobStatus.IN_PROGRESS, JobStatus.DETECTING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELLED},
    JobStatus.DETECTING: {
        JobStatus.WAITING_APPROVAL,
        JobStatus.DELETING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.PAUSED,
        JobStatus.CANCELLED,
    },
    JobStatus.WAITING_APPROVAL: {JobStatus.DELETING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.DELETING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELLED},
    JobStatus.PAUSED: {
        JobStatus.IN_PROGRESS,
        JobStatus.DETECTING,
        JobStatus.DELETING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    # A failed migration may be resumed from its last checkpoint; both terminal
    # states may be re-planned for a retry pass.
    JobStatus.FAILED: {JobStatus.IN_PROGRESS, JobStatus.PLANNING},
    JobStatus.COMPLETED: {JobStatus.PLANNING},
    JobStatus.CANCELLED: set(),
}


def enforce_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    if from_status == to_status:
        return
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type.value if job.job_type is not None else None,
        "source_ref": job.source_ref,
        "target_ref": job.target_ref,
        "status": job.status.value,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "last_heartbeat": job.last_heartbeat,
        "steps": [
            {
                "id": step.id,
                "type": step.type.value,
                "source_id": step.source_id,
                "target_id": step.target_id,
                "status": step.status.value,
                "error": step.error,
                "started_at": step.started_at,
                "completed_at": step.completed_at,
            }
            for step in job.steps
        ],
        "errors": [
            {
                "step": error.step,
                "message": error.message,
                "code": error.code,
                "timestamp": error.timestamp,
            }
            for error in job.errors
        ],
        "progress": progress_to_dict(job.progress) if job.progress is not None else None,
        "metadata": job.metadata,
    }


def health_to_dict(health: JobHealth) -> dict[str, Any]:
    return {
        "job_id": health.job_id,
        "status": health.status,
        "is_active": health.is_active,
        "health_status": health.health_status.value,
        "last_heartbeat": format_timestamp(health.last_heartbeat),
        "seconds_since_heartbeat": health.seconds_since_heartbeat,
    }
