from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from recordshift.api.schemas.jobs import JobResponse
from recordshift.items.filters import MigrationFilters
from recordshift.items.types import DuplicatePolicy, MigrationConfig, MigrationMode


class MigrationFiltersModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    created_from: str | None = None
    created_to: str | None = None
    last_edit_from: str | None = None
    last_edit_to: str | None = None
    tags: list[str] = Field(default_factory=list)

    def to_filters(self) -> MigrationFilters:
        return MigrationFilters(
            created_from=self.created_from,
            created_to=self.created_to,
            last_edit_from=self.last_edit_from,
            last_edit_to=self.last_edit_to,
            tags=list(self.tags),
        )


class CreateMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_collection_id: str = Field(min_length=1)
    target_collection_id: str = Field(min_length=1)
    field_mapping: dict[str, str]
    mode: MigrationMode = MigrationMode.CREATE
    source_match_field: str | None = None
    target_match_field: str | None = None
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.SKIP
    batch_size: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    stop_on_error: bool = False
    filters: MigrationFiltersModel | None = None
    max_items: int | None = Field(default=None, ge=1)

    def to_config(self, *, default_batch_size: int, default_concurrency: int) -> MigrationConfig:
        return MigrationConfig(
            source_collection_id=self.source_collection_id,
            target_collection_id=self.target_collection_id,
            field_mapping=dict(self.field_mapping),
            mode=self.mode,
            source_match_field=self.source_match_field,
            target_match_field=self.target_match_field,
            duplicate_policy=self.duplicate_policy,
            batch_size=self.batch_size or default_batch_size,
            concurrency=self.concurrency or default_concurrency,
            stop_on_error=self.stop_on_error,
            filters=self.filters.to_filters() if self.filters is not None else None,
            max_items=self.max_items,
        )


class RetryMigrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field_mapping: dict[str, str] | None = None


class MigrationPlanResponse(BaseModel):
    total_items: int
    batch_count: int
    estimated_minutes: float


class MigrationJobResponse(BaseModel):
    job: JobResponse
    plan: MigrationPlanResponse | None = None
