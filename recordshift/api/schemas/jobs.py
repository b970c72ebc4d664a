from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class JobStepResponse(BaseModel):
    id: str
    type: str
    source_id: str
    target_id: str | None
    status: str
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None


class JobErrorResponse(BaseModel):
    step: str
    message: str
    code: str | None
    timestamp: datetime


class JobResponse(BaseModel):
    id: str
    job_type: str | None
    source_ref: str
    target_ref: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    last_heartbeat: datetime | None
    steps: list[JobStepResponse]
    errors: list[JobErrorResponse]
    progress: dict[str, Any] | None
    metadata: dict[str, Any]


class JobListResponse(BaseModel):
    items: list[JobResponse]


class JobHealthResponse(BaseModel):
    job_id: str
    status: str
    is_active: bool
    health_status: str
    last_heartbeat: datetime | None
    seconds_since_heartbeat: float | None
