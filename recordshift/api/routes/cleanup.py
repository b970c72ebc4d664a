from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from recordshift.api.deps import get_cleanup_engine, get_runtime
from recordshift.api.schemas.cleanup import CleanupStatusResponse, CreateCleanupRequest, ExecuteCleanupRequest
from recordshift.cleanup.service import CleanupEngine
from recordshift.cleanup.types import cleanup_status_to_dict
from recordshift.core.path_safety import PathSafetyError
from recordshift.jobs.service import InvalidJobStateError
from recordshift.jobs.store import JobNotFoundError
from recordshift.platform import PlatformApiError
from recordshift.worker.pipeline import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cleanup", tags=["cleanup"])


def _run_in_background(engine: CleanupEngine, job_id: str) -> None:
    try:
        engine.run(job_id)
    except Exception as exc:
        logger.error("Background cleanup ended with %s: %s", type(exc).__name__, exc, extra={"job_id": job_id})


@router.post("", response_model=CleanupStatusResponse, status_code=status.HTTP_202_ACCEPTED)
def create_cleanup(
    request: CreateCleanupRequest,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
    engine: CleanupEngine = Depends(get_cleanup_engine),
) -> CleanupStatusResponse:
    cleanup_request = request.to_request(
        default_batch_size=runtime.settings.cleanup_batch_size,
        default_concurrency=runtime.settings.cleanup_concurrency,
    )
    try:
        job = engine.create_job(cleanup_request)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PlatformApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_human_readable()) from exc

    background_tasks.add_task(_run_in_background, engine, job.id)
    return CleanupStatusResponse.model_validate(cleanup_status_to_dict(engine.status(job.id)))


@router.get("/{job_id}", response_model=CleanupStatusResponse)
def get_cleanup(job_id: str, engine: CleanupEngine = Depends(get_cleanup_engine)) -> CleanupStatusResponse:
    try:
        snapshot = engine.status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return CleanupStatusResponse.model_validate(cleanup_status_to_dict(snapshot))


@router.post("/{job_id}/execute", response_model=CleanupStatusResponse, status_code=status.HTTP_202_ACCEPTED)
def execute_cleanup(
    job_id: str,
    request: ExecuteCleanupRequest,
    background_tasks: BackgroundTasks,
    engine: CleanupEngine = Depends(get_cleanup_engine),
) -> CleanupStatusResponse:
    try:
        engine.approve(job_id, [group.to_group() for group in request.approved_groups])
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    background_tasks.add_task(_run_in_background, engine, job_id)
    return CleanupStatusResponse.model_validate(cleanup_status_to_dict(engine.status(job_id)))
