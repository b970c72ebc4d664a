from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from recordshift.api.deps import get_migrator, get_runtime
from recordshift.api.schemas.jobs import JobResponse
from recordshift.api.schemas.migrations import (
    CreateMigrationRequest,
    MigrationJobResponse,
    MigrationPlanResponse,
    RetryMigrationRequest,
)
from recordshift.core.path_safety import PathSafetyError
from recordshift.items.filters import FilterValidationError
from recordshift.items.service import ItemMigrator
from recordshift.items.types import failed_item_to_dict
from recordshift.jobs.service import InvalidJobStateError, job_to_dict
from recordshift.jobs.store import JobNotFoundError
from recordshift.platform import PlatformApiError
from recordshift.worker.pipeline import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migrations", tags=["migrations"])


def _run_in_background(migrator: ItemMigrator, job_id: str) -> None:
    try:
        migrator.run(job_id)
    except Exception as exc:
        # The migrator has already marked the job failed and logged the traceback.
        logger.error("Background migration ended with %s: %s", type(exc).__name__, exc, extra={"job_id": job_id})


@router.post("", response_model=MigrationJobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_migration(
    request: CreateMigrationRequest,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
    migrator: ItemMigrator = Depends(get_migrator),
) -> MigrationJobResponse:
    config = request.to_config(
        default_batch_size=runtime.settings.migration_batch_size,
        default_concurrency=runtime.settings.migration_concurrency,
    )
    try:
        plan = migrator.plan(config)
        job = migrator.create_job(config)
    except (ValueError, FilterValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PlatformApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_human_readable()) from exc

    background_tasks.add_task(_run_in_background, migrator, job.id)
    return MigrationJobResponse(
        job=JobResponse.model_validate(job_to_dict(job)),
        plan=MigrationPlanResponse(
            total_items=plan.total_items,
            batch_count=plan.batch_count,
            estimated_minutes=plan.estimated_minutes,
        ),
    )


@router.post("/{job_id}/resume", response_model=MigrationJobResponse, status_code=status.HTTP_202_ACCEPTED)
def resume_migration(
    job_id: str,
    background_tasks: BackgroundTasks,
    migrator: ItemMigrator = Depends(get_migrator),
) -> MigrationJobResponse:
    try:
        job = migrator.prepare_resume(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    background_tasks.add_task(_run_in_background, migrator, job.id)
    return MigrationJobResponse(job=JobResponse.model_validate(job_to_dict(job)))


@router.post("/{job_id}/retry", response_model=MigrationJobResponse, status_code=status.HTTP_202_ACCEPTED)
def retry_migration(
    job_id: str,
    background_tasks: BackgroundTasks,
    request: RetryMigrationRequest | None = None,
    migrator: ItemMigrator = Depends(get_migrator),
) -> MigrationJobResponse:
    field_mapping = request.field_mapping if request is not None else None
    try:
        job = migrator.prepare_retry(job_id, field_mapping=field_mapping)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    background_tasks.add_task(_run_in_background, migrator, job.id)
    return MigrationJobResponse(job=JobResponse.model_validate(job_to_dict(job)))


@router.get("/{job_id}/failures")
def list_failures(
    job_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, object]:
    try:
        runtime.store.require(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    items = runtime.failure_log.list_for_job(job_id, limit=limit, offset=offset)
    return {
        "items": [failed_item_to_dict(item) for item in items],
        "by_category": runtime.failure_log.count_by_category(job_id),
        "total": runtime.failure_log.count(job_id),
    }
