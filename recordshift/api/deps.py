from __future__ import annotations

from fastapi import HTTPException, Request, status

from recordshift.cleanup.bulk import ItemDeleteEngine
from recordshift.cleanup.service import CleanupEngine
from recordshift.items.service import ItemMigrator
from recordshift.worker.pipeline import PlatformNotConfiguredError, Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_migrator(request: Request) -> ItemMigrator:
    try:
        return get_runtime(request).migrator()
    except PlatformNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def get_cleanup_engine(request: Request) -> CleanupEngine:
    try:
        return get_runtime(request).cleanup()
    except PlatformNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def get_item_delete_engine(request: Request) -> ItemDeleteEngine:
    try:
        return get_runtime(request).item_deleter()
    except PlatformNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
