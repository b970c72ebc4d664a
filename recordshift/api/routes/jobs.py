from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from recordshift.api.deps import get_runtime
from recordshift.api.schemas.jobs import JobHealthResponse, JobListResponse, JobResponse
from recordshift.core.path_safety import PathSafetyError
from recordshift.jobs.service import InvalidJobStateError, health_to_dict, job_to_dict
from recordshift.jobs.shutdown import PauseTimeoutError
from recordshift.jobs.store import JobNotFoundError
from recordshift.worker.pipeline import Runtime, job_health, pause_job, recover_stale_jobs

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
def list_jobs(runtime: Runtime = Depends(get_runtime)) -> JobListResponse:
    return JobListResponse(items=[JobResponse.model_validate(job_to_dict(job)) for job in runtime.store.list()])


@router.post("/recover-stale")
def recover_stale(runtime: Runtime = Depends(get_runtime)) -> dict[str, int]:
    return {"recovered": recover_stale_jobs(runtime)}


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobResponse:
    try:
        job = runtime.store.require(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobResponse.model_validate(job_to_dict(job))


@router.get("/{job_id}/health", response_model=JobHealthResponse)
def get_job_health(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobHealthResponse:
    try:
        health = job_health(runtime, job_id)
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if health.status == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Migration job not found: {job_id}")
    return JobHealthResponse.model_validate(health_to_dict(health))


@router.post("/{job_id}/pause", response_model=JobResponse)
def pause(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobResponse:
    try:
        job = pause_job(runtime, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PauseTimeoutError as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobResponse.model_validate(job_to_dict(job))


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    try:
        if runtime.monitor.is_active(job_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Job {job_id} is still running. Pause it before deleting.",
            )
        deleted = runtime.store.delete(job_id)
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Migration job not found: {job_id}")
    runtime.failure_log.clear(job_id)
