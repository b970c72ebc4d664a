from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from recordshift.api.schemas.migrations import MigrationFiltersModel
from recordshift.cleanup.types import ItemDeleteRequest


class CreateItemDeleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collection_id: str = Field(min_length=1)
    filters: MigrationFiltersModel | None = None
    max_items: int | None = Field(default=None, ge=1)
    dry_run: bool = False
    batch_size: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    stop_on_error: bool = False

    def to_request(self, *, default_batch_size: int, default_concurrency: int) -> ItemDeleteRequest:
        return ItemDeleteRequest(
            collection_id=self.collection_id,
            filters=self.filters.to_filters() if self.filters is not None else None,
            max_items=self.max_items,
            dry_run=self.dry_run,
            batch_size=self.batch_size or default_batch_size,
            concurrency=self.concurrency or default_concurrency,
            stop_on_error=self.stop_on_error,
        )


class ItemDeleteProgressResponse(BaseModel):
    total: int
    processed: int
    successful: int
    failed: int
    percent: float
    last_update: datetime | None


class ItemDeleteStatusResponse(BaseModel):
    job_id: str
    status: str
    phase: str
    phase_status: str
    phase_progress: dict[str, Any]
    dry_run: bool
    progress: ItemDeleteProgressResponse
    errors_by_category: dict[str, dict[str, Any]]
    errors: list[dict[str, Any]]
    started_at: datetime
    completed_at: datetime | None
