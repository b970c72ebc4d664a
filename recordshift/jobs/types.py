from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

RecordId = Union[int, str]


class JobType(str, Enum):
    ITEM_MIGRATION = "item_migration"
    CLEANUP = "cleanup"
    ITEM_DELETE = "item_delete"
    FLOW_CLONE = "flow_clone"


class JobStatus(str, Enum):
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    DETECTING = "detecting"
    WAITING_APPROVAL = "waiting_approval"
    DELETING = "deleting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Statuses in which a process claims to be executing the job.
RUNNING_STATUSES = frozenset({JobStatus.IN_PROGRESS, JobStatus.DETECTING, JobStatus.DELETING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
STOPPED_STATUSES = frozenset({JobStatus.PAUSED, JobStatus.CANCELLED})


class StepType(str, Enum):
    CLONE_APP = "clone_app"
    CLONE_FLOW = "clone_flow"
    CLONE_HOOK = "clone_hook"
    UPDATE_REFERENCES = "update_references"
    MIGRATE_ITEMS = "migrate_items"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorCategory(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    NOT_RUNNING = "not_running"


@dataclass(slots=True)
class Step:
    id: str
    type: StepType
    source_id: str
    status: StepStatus = StepStatus.PENDING
    target_id: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class JobError:
    step: str
    message: str
    timestamp: datetime
    code: str | None = None


@dataclass(slots=True)
class ThroughputMetrics:
    items_per_second: float = 0.0
    batches_per_minute: float = 0.0
    avg_batch_duration_ms: float = 0.0
    estimated_completion_time: datetime | None = None
    rate_limit_pauses: int = 0
    total_rate_limit_delay_ms: int = 0


@dataclass(slots=True)
class BatchCheckpoint:
    batch_number: int
    offset: int
    limit: int
    started_at: datetime
    status: CheckpointStatus = CheckpointStatus.PENDING
    completed_item_ids: list[RecordId] = field(default_factory=list)
    completed_at: datetime | None = None
    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0


@dataclass(slots=True)
class ProgressSnapshot:
    total: int
    processed: int
    successful: int
    failed: int
    percent: float
    last_update: datetime


@dataclass(slots=True)
class Progress:
    last_update: datetime
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    percent: float = 0.0
    throughput: ThroughputMetrics | None = None
    batch_checkpoints: list[BatchCheckpoint] = field(default_factory=list)
    failed_items_by_category: dict[str, int] = field(default_factory=dict)
    pre_retry_snapshot: ProgressSnapshot | None = None
    total_items_to_delete: int | None = None


@dataclass(slots=True)
class ProgressUpdate:
    """Partial progress write. Fields left as None keep their stored value."""

    total: int | None = None
    processed: int | None = None
    successful: int | None = None
    failed: int | None = None
    percent: float | None = None
    throughput: ThroughputMetrics | None = None
    batch_checkpoints: list[BatchCheckpoint] | None = None
    failed_items_by_category: dict[str, int] | None = None
    pre_retry_snapshot: ProgressSnapshot | None = None
    total_items_to_delete: int | None = None


@dataclass(slots=True)
class Job:
    id: str
    job_type: JobType | None
    source_ref: str
    target_ref: str
    status: JobStatus
    started_at: datetime
    steps: list[Step] = field(default_factory=list)
    errors: list[JobError] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None
    progress: Progress | None = None


@dataclass(slots=True)
class JobHealth:
    job_id: str
    status: str
    is_active: bool
    health_status: HealthStatus
    last_heartbeat: datetime | None = None
    seconds_since_heartbeat: float | None = None
