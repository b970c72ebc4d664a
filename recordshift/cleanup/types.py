from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from recordshift.duplicates.types import DuplicateGroup, KeepStrategy, duplicate_group_to_dict
from recordshift.items.filters import MigrationFilters, filters_from_dict, filters_to_dict
from recordshift.jobs.types import RecordId

# Field types whose values cannot identify a duplicate: references, media and system fields.
INVALID_MATCH_FIELD_TYPES = frozenset(
    {"app", "category", "contact", "date", "image", "file", "embed", "created_on", "created_by", "created_via"}
)
VALID_MATCH_FIELD_TYPES = frozenset(
    {"text", "number", "calculation", "email", "phone", "tel", "duration", "money", "location", "question"}
)


class CleanupMode(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


@dataclass(slots=True)
class CleanupRequest:
    collection_id: str
    match_field: str
    mode: CleanupMode = CleanupMode.MANUAL
    keep_strategy: KeepStrategy = KeepStrategy.OLDEST
    dry_run: bool = False
    max_groups: int | None = None
    batch_size: int = 100
    concurrency: int = 3
    filters: MigrationFilters | None = None


@dataclass(slots=True)
class CleanupSummary:
    total_source_items: int
    unique_items: int
    duplicate_items: int
    groups_with_duplicates: int


@dataclass(slots=True)
class CleanupPreview:
    job_id: str
    total_groups: int
    total_items_to_delete: int
    duplicate_groups: list[DuplicateGroup]
    summary: CleanupSummary
    status: str = ""


@dataclass(slots=True)
class DeletionError:
    message: str
    item_id: RecordId | None = None
    code: str | None = None
    category: str | None = None


@dataclass(slots=True)
class CleanupResult:
    job_id: str
    total_groups: int
    total_items_deleted: int
    failed_deletions: int
    errors: list[DeletionError] = field(default_factory=list)
    status: str = ""


@dataclass(slots=True)
class CleanupStatus:
    job_id: str
    status: str
    mode: CleanupMode
    keep_strategy: KeepStrategy
    total_groups: int
    processed_groups: int
    total_items_to_delete: int
    deleted_items: int
    failed_deletions: int
    percent: float
    started_at: datetime
    last_update: datetime | None = None
    completed_at: datetime | None = None
    duplicate_groups: list[DuplicateGroup] | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


def request_to_metadata(request: CleanupRequest) -> dict[str, Any]:
    return {
        "jobType": "cleanup",
        "collectionId": request.collection_id,
        "matchField": request.match_field,
        "mode": request.mode.value,
        "keepStrategy": request.keep_strategy.value,
        "dryRun": request.dry_run,
        "maxGroups": request.max_groups,
        "batchSize": request.batch_size,
        "concurrency": request.concurrency,
        "filters": filters_to_dict(request.filters),
    }


def request_from_metadata(metadata: dict[str, Any]) -> CleanupRequest:
    return CleanupRequest(
        collection_id=str(metadata["collectionId"]),
        match_field=str(metadata["matchField"]),
        mode=CleanupMode(metadata.get("mode", CleanupMode.MANUAL.value)),
        keep_strategy=KeepStrategy(metadata.get("keepStrategy") or KeepStrategy.OLDEST.value),
        dry_run=bool(metadata.get("dryRun", False)),
        max_groups=metadata.get("maxGroups"),
        batch_size=int(metadata.get("batchSize") or 100),
        concurrency=int(metadata.get("concurrency") or 3),
        filters=filters_from_dict(metadata.get("filters")),
    )


def summarize_groups(groups: list[DuplicateGroup], items_to_delete: int | None = None) -> CleanupSummary:
    total_items = sum(len(group.items) for group in groups)
    return CleanupSummary(
        total_source_items=total_items,
        unique_items=len(groups),
        duplicate_items=items_to_delete if items_to_delete is not None else total_items - len(groups),
        groups_with_duplicates=len(groups),
    )


def cleanup_status_to_dict(snapshot: CleanupStatus) -> dict[str, Any]:
    return {
        "job_id": snapshot.job_id,
        "status": snapshot.status,
        "mode": snapshot.mode.value,
        "keep_strategy": snapshot.keep_strategy.value,
        "progress": {
            "total_groups": snapshot.total_groups,
            "processed_groups": snapshot.processed_groups,
            "total_items_to_delete": snapshot.total_items_to_delete,
            "deleted_items": snapshot.deleted_items,
            "failed_deletions": snapshot.failed_deletions,
            "percent": snapshot.percent,
            "last_update": snapshot.last_update,
        },
        "duplicate_groups": (
            [duplicate_group_to_dict(group) for group in snapshot.duplicate_groups]
            if snapshot.duplicate_groups is not None
            else None
        ),
        "errors": snapshot.errors,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }


class DeletePhase(str, Enum):
    DETECTING = "detecting"
    DELETING = "deleting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class ItemDeleteRequest:
    collection_id: str
    filters: MigrationFilters | None = None
    max_items: int | None = None
    dry_run: bool = False
    batch_size: int = 100
    concurrency: int = 5
    stop_on_error: bool = False


@dataclass(slots=True)
class ItemDeleteResult:
    job_id: str
    status: str
    total_items: int
    deleted: int
    failed: int
    dry_run: bool = False
    item_ids: list[RecordId] = field(default_factory=list)
    errors: list[DeletionError] = field(default_factory=list)


@dataclass(slots=True)
class ItemDeleteStatus:
    job_id: str
    status: str
    phase: DeletePhase
    phase_status: str
    phase_progress: dict[str, Any]
    total: int
    processed: int
    successful: int
    failed: int
    percent: float
    dry_run: bool
    started_at: datetime
    last_update: datetime | None = None
    completed_at: datetime | None = None
    errors_by_category: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)


def delete_request_to_metadata(request: ItemDeleteRequest) -> dict[str, Any]:
    return {
        "jobType": "item_delete",
        "collectionId": request.collection_id,
        "filters": filters_to_dict(request.filters),
        "maxItems": request.max_items,
        "dryRun": request.dry_run,
        "batchSize": request.batch_size,
        "concurrency": request.concurrency,
        "stopOnError": request.stop_on_error,
        "phaseProgress": {"detecting": {"fetched": 0, "estimatedTotal": 0, "percent": 0.0}},
    }


def delete_request_from_metadata(metadata: dict[str, Any]) -> ItemDeleteRequest:
    return ItemDeleteRequest(
        collection_id=str(metadata["collectionId"]),
        filters=filters_from_dict(metadata.get("filters")),
        max_items=metadata.get("maxItems"),
        dry_run=bool(metadata.get("dryRun", False)),
        batch_size=int(metadata.get("batchSize") or 100),
        concurrency=int(metadata.get("concurrency") or 5),
        stop_on_error=bool(metadata.get("stopOnError", False)),
    )


def item_delete_status_to_dict(snapshot: ItemDeleteStatus) -> dict[str, Any]:
    return {
        "job_id": snapshot.job_id,
        "status": snapshot.status,
        "phase": snapshot.phase.value,
        "phase_status": snapshot.phase_status,
        "phase_progress": snapshot.phase_progress,
        "dry_run": snapshot.dry_run,
        "progress": {
            "total": snapshot.total,
            "processed": snapshot.processed,
            "successful": snapshot.successful,
            "failed": snapshot.failed,
            "percent": snapshot.percent,
            "last_update": snapshot.last_update,
        },
        "errors_by_category": snapshot.errors_by_category,
        "errors": snapshot.errors,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }
