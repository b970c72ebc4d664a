from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from recordshift.duplicates.types import CacheStats
from recordshift.items.filters import MigrationFilters, filters_from_dict, filters_to_dict
from recordshift.jobs.types import ErrorCategory, RecordId, ThroughputMetrics


class MigrationMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UPSERT = "upsert"


class DuplicatePolicy(str, Enum):
    SKIP = "skip"
    ERROR = "error"
    UPDATE = "update"


class ItemOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class MigrationConfig:
    source_collection_id: str
    target_collection_id: str
    field_mapping: dict[str, str]
    mode: MigrationMode = MigrationMode.CREATE
    source_match_field: str | None = None
    target_match_field: str | None = None
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.SKIP
    batch_size: int = 500
    concurrency: int = 5
    stop_on_error: bool = False
    filters: MigrationFilters | None = None
    resume_token: str | None = None
    max_items: int | None = None
    retry_item_ids: list[RecordId] | None = None


@dataclass(slots=True)
class MigrationPlan:
    total_items: int
    batch_count: int
    estimated_minutes: float


@dataclass(slots=True)
class FailedItem:
    source_item_id: RecordId
    category: ErrorCategory
    message: str
    first_attempt_at: datetime
    last_attempt_at: datetime
    attempt_count: int = 1
    code: str | None = None
    target_item_id: RecordId | None = None
    batch_number: int | None = None


@dataclass(slots=True)
class ItemResult:
    source_item_id: RecordId
    outcome: ItemOutcome
    target_item_id: RecordId | None = None
    failure: FailedItem | None = None
    duplicate_skipped: bool = False
    duplicate_updated: bool = False
    rate_limit_delay_ms: int = 0


@dataclass(slots=True)
class MigrationResult:
    job_id: str
    processed: int
    successful: int
    failed: int
    failed_items: list[FailedItem]
    duration_ms: int
    throughput: ThroughputMetrics | None
    completed: bool
    resume_token: str | None
    duplicates_skipped: int = 0
    duplicates_updated: int = 0
    cache_stats: CacheStats | None = None
    status: str = ""


def config_to_metadata(config: MigrationConfig) -> dict[str, Any]:
    return {
        "sourceCollectionId": config.source_collection_id,
        "targetCollectionId": config.target_collection_id,
        "fieldMapping": dict(config.field_mapping),
        "mode": config.mode.value,
        "sourceMatchField": config.source_match_field,
        "targetMatchField": config.target_match_field,
        "duplicatePolicy": config.duplicate_policy.value,
        "batchSize": config.batch_size,
        "concurrency": config.concurrency,
        "stopOnError": config.stop_on_error,
        "filters": filters_to_dict(config.filters),
        "maxItems": config.max_items,
    }


def config_from_metadata(metadata: dict[str, Any]) -> MigrationConfig:
    retry_ids = metadata.get("retryItemIds")
    return MigrationConfig(
        source_collection_id=str(metadata["sourceCollectionId"]),
        target_collection_id=str(metadata["targetCollectionId"]),
        field_mapping=dict(metadata.get("fieldMapping") or {}),
        mode=MigrationMode(metadata.get("mode", MigrationMode.CREATE.value)),
        source_match_field=metadata.get("sourceMatchField"),
        target_match_field=metadata.get("targetMatchField"),
        duplicate_policy=DuplicatePolicy(metadata.get("duplicatePolicy", DuplicatePolicy.SKIP.value)),
        batch_size=int(metadata.get("batchSize", 500)),
        concurrency=int(metadata.get("concurrency", 5)),
        stop_on_error=bool(metadata.get("stopOnError", False)),
        filters=filters_from_dict(metadata.get("filters")),
        resume_token=metadata.get("resumeToken"),
        max_items=metadata.get("maxItems"),
        retry_item_ids=list(retry_ids) if retry_ids else None,
    )


def failed_item_to_dict(item: FailedItem) -> dict[str, Any]:
    return {
        "source_item_id": item.source_item_id,
        "target_item_id": item.target_item_id,
        "category": item.category.value,
        "code": item.code,
        "message": item.message,
        "attempt_count": item.attempt_count,
        "batch_number": item.batch_number,
        "first_attempt_at": item.first_attempt_at,
        "last_attempt_at": item.last_attempt_at,
    }
