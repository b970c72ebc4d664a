from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from recordshift.api.schemas.migrations import MigrationFiltersModel
from recordshift.cleanup.types import CleanupMode, CleanupRequest
from recordshift.duplicates.types import DuplicateGroup, DuplicateItem, KeepStrategy


class CreateCleanupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collection_id: str = Field(min_length=1)
    match_field: str = Field(min_length=1)
    mode: CleanupMode = CleanupMode.MANUAL
    keep_strategy: KeepStrategy = KeepStrategy.OLDEST
    dry_run: bool = False
    max_groups: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    filters: MigrationFiltersModel | None = None

    def to_request(self, *, default_batch_size: int, default_concurrency: int) -> CleanupRequest:
        return CleanupRequest(
            collection_id=self.collection_id,
            match_field=self.match_field,
            mode=self.mode,
            keep_strategy=self.keep_strategy,
            dry_run=self.dry_run,
            max_groups=self.max_groups,
            batch_size=self.batch_size or default_batch_size,
            concurrency=self.concurrency or default_concurrency,
            filters=self.filters.to_filters() if self.filters is not None else None,
        )


class DuplicateItemModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    item_id: int | str
    title: str = ""
    created_on: str | None = None
    last_edit_on: str | None = None
    match_value: str = ""


class ApprovedGroupModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    match_value: str
    items: list[DuplicateItemModel] = Field(default_factory=list)
    keep_item_id: int | str | None = None
    delete_item_ids: list[int | str] | None = None

    def to_group(self) -> DuplicateGroup:
        return DuplicateGroup(
            match_value=self.match_value,
            items=[
                DuplicateItem(
                    item_id=item.item_id,
                    title=item.title or f"Item {item.item_id}",
                    created_on=item.created_on,
                    last_edit_on=item.last_edit_on,
                    match_value=item.match_value or self.match_value,
                )
                for item in self.items
            ],
            keep_item_id=self.keep_item_id,
            delete_item_ids=list(self.delete_item_ids) if self.delete_item_ids is not None else None,
        )


class ExecuteCleanupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approved_groups: list[ApprovedGroupModel] = Field(min_length=1)


class CleanupProgressResponse(BaseModel):
    total_groups: int
    processed_groups: int
    total_items_to_delete: int
    deleted_items: int
    failed_deletions: int
    percent: float
    last_update: datetime | None


class CleanupStatusResponse(BaseModel):
    job_id: str
    status: str
    mode: str
    keep_strategy: str
    progress: CleanupProgressResponse
    duplicate_groups: list[dict[str, Any]] | None
    errors: list[dict[str, Any]]
    started_at: datetime
    completed_at: datetime | None
