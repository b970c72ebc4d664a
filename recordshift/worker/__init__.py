from recordshift.worker.pipeline import (
    PlatformNotConfiguredError,
    Runtime,
    build_runtime,
    enqueue_cleanup,
    enqueue_item_delete,
    enqueue_item_migration,
    job_health,
    pause_job,
    recover_stale_jobs,
    run_cleanup,
    run_item_delete,
    run_migration,
)

__all__ = [
    "PlatformNotConfiguredError",
    "Runtime",
    "build_runtime",
    "enqueue_item_migration",
    "enqueue_cleanup",
    "enqueue_item_delete",
    "run_migration",
    "run_cleanup",
    "run_item_delete",
    "pause_job",
    "job_health",
    "recover_stale_jobs",
]
