from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from recordshift.api.deps import get_item_delete_engine, get_runtime
from recordshift.api.schemas.deletes import CreateItemDeleteRequest, ItemDeleteStatusResponse
from recordshift.cleanup.bulk import ItemDeleteEngine
from recordshift.cleanup.types import item_delete_status_to_dict
from recordshift.core.path_safety import PathSafetyError
from recordshift.jobs.service import InvalidJobStateError
from recordshift.jobs.store import JobNotFoundError
from recordshift.platform import PlatformApiError
from recordshift.worker.pipeline import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/delete/items", tags=["delete"])


def _run_in_background(engine: ItemDeleteEngine, job_id: str) -> None:
    try:
        engine.run(job_id)
    except Exception as exc:
        logger.error("Background delete ended with %s: %s", type(exc).__name__, exc, extra={"job_id": job_id})


@router.post("", response_model=ItemDeleteStatusResponse, status_code=status.HTTP_202_ACCEPTED)
def create_item_delete(
    request: CreateItemDeleteRequest,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
    engine: ItemDeleteEngine = Depends(get_item_delete_engine),
) -> ItemDeleteStatusResponse:
    delete_request = request.to_request(
        default_batch_size=runtime.settings.delete_batch_size,
        default_concurrency=runtime.settings.delete_concurrency,
    )
    try:
        job = engine.create_job(delete_request)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PlatformApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_human_readable()) from exc

    background_tasks.add_task(_run_in_background, engine, job.id)
    return ItemDeleteStatusResponse.model_validate(item_delete_status_to_dict(engine.status(job.id)))


@router.get("/{job_id}", response_model=ItemDeleteStatusResponse)
def get_item_delete(job_id: str, engine: ItemDeleteEngine = Depends(get_item_delete_engine)) -> ItemDeleteStatusResponse:
    try:
        snapshot = engine.status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ItemDeleteStatusResponse.model_validate(item_delete_status_to_dict(snapshot))
