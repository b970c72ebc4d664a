from __future__ import annotations

import logging
from dataclasses import dataclass

from recordshift.cleanup.bulk import ItemDeleteEngine
from recordshift.cleanup.service import CleanupEngine
from recordshift.cleanup.types import CleanupPreview, CleanupRequest, CleanupResult, ItemDeleteRequest, ItemDeleteResult
from recordshift.core.config import Settings, get_settings
from recordshift.db.init_db import initialize_database
from recordshift.db.session import get_session_factory
from recordshift.items.failures import FailureLog
from recordshift.items.service import ItemMigrator
from recordshift.items.types import MigrationConfig, MigrationResult
from recordshift.jobs.lifecycle import JobLifecycleMonitor
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import Job, JobHealth
from recordshift.platform import RateLimitProvider, RecordPlatform

logger = logging.getLogger(__name__)


class PlatformNotConfiguredError(RuntimeError):
    pass


@dataclass(slots=True)
class Runtime:
    """Services shared by every job in one process.

    The coordinator must be a single instance per process: pause requests and
    shutdown callbacks are only visible through the instance that registered them.
    """

    settings: Settings
    store: JobStateStore
    monitor: JobLifecycleMonitor
    coordinator: ShutdownCoordinator
    failure_log: FailureLog
    platform: RecordPlatform | None = None
    rate_limits: RateLimitProvider | None = None

    def _require_platform(self) -> RecordPlatform:
        if self.platform is None:
            raise PlatformNotConfiguredError("No record platform client is configured for this process")
        return self.platform

    def migrator(self) -> ItemMigrator:
        return ItemMigrator(
            self.settings,
            self.store,
            self.monitor,
            self.coordinator,
            self._require_platform(),
            self.rate_limits,
            self.failure_log,
        )

    def cleanup(self) -> CleanupEngine:
        return CleanupEngine(self.settings, self.store, self.monitor, self.coordinator, self._require_platform())

    def item_deleter(self) -> ItemDeleteEngine:
        return ItemDeleteEngine(self.settings, self.store, self.monitor, self.coordinator, self._require_platform())


def build_runtime(
    platform: RecordPlatform | None = None,
    rate_limits: RateLimitProvider | None = None,
    *,
    settings: Settings | None = None,
) -> Runtime:
    settings = settings or get_settings()
    initialize_database()
    store = JobStateStore(settings)
    monitor = JobLifecycleMonitor(settings, store)
    coordinator = ShutdownCoordinator(settings, store, monitor)
    return Runtime(
        settings=settings,
        store=store,
        monitor=monitor,
        coordinator=coordinator,
        failure_log=FailureLog(get_session_factory()),
        platform=platform,
        rate_limits=rate_limits,
    )


def enqueue_item_migration(runtime: Runtime, config: MigrationConfig) -> str:
    job = runtime.migrator().create_job(config)
    logger.info(
        "Queued item migration %s -> %s",
        config.source_collection_id,
        config.target_collection_id,
        extra={"job_id": job.id},
    )
    return job.id


def enqueue_cleanup(runtime: Runtime, request: CleanupRequest) -> str:
    return runtime.cleanup().create_job(request).id


def enqueue_item_delete(runtime: Runtime, request: ItemDeleteRequest) -> str:
    return runtime.item_deleter().create_job(request).id


def run_migration(runtime: Runtime, job_id: str) -> MigrationResult:
    return runtime.migrator().run(job_id)


def run_cleanup(runtime: Runtime, job_id: str) -> CleanupResult | CleanupPreview:
    return runtime.cleanup().run(job_id)


def run_item_delete(runtime: Runtime, job_id: str) -> ItemDeleteResult:
    return runtime.item_deleter().run(job_id)


def pause_job(runtime: Runtime, job_id: str) -> Job:
    return runtime.coordinator.pause_job(job_id)


def job_health(runtime: Runtime, job_id: str) -> JobHealth:
    return runtime.monitor.get_health(job_id)


def recover_stale_jobs(runtime: Runtime) -> int:
    return runtime.monitor.cleanup_stale()
