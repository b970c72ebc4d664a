from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from recordshift.api.deps import get_runtime
from recordshift.worker.pipeline import Runtime

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    settings = runtime.settings
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "platform_configured": runtime.platform is not None,
        "active_jobs": len(runtime.coordinator.active_job_ids()),
        "timestamp": datetime.now(tz=timezone.utc),
    }
