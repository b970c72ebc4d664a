from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import recordshift.db.session as db_session_module
from fakes import FakePlatform, configure_env, email_field, make_record, text_field
from recordshift.cleanup.types import CleanupMode, CleanupRequest, CleanupResult, ItemDeleteRequest
from recordshift.core.config import get_settings
from recordshift.duplicates.types import KeepStrategy
from recordshift.items.types import MigrationConfig
from recordshift.jobs.types import HealthStatus, Job, JobStatus, JobType
from recordshift.platform import CollectionField
from recordshift.worker import (
    PlatformNotConfiguredError,
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


def make_platform() -> FakePlatform:
    records = [
        make_record(1, "2024-01-01 00:00:00", text_field("title", "One"), email_field("email", "dup@x.io")),
        make_record(2, "2024-01-02 00:00:00", text_field("title", "Two"), email_field("email", "DUP@x.io")),
    ]
    fields = {"people": [CollectionField("email", "email", "email"), CollectionField("title", "title", "text")]}
    return FakePlatform({"people": records, "archive": []}, fields)


def test_runtime_without_platform_refuses_platform_work(tmp_path: Path) -> None:
    configure_env(tmp_path)
    runtime = build_runtime()
    with pytest.raises(PlatformNotConfiguredError):
        runtime.migrator()
    with pytest.raises(PlatformNotConfiguredError):
        runtime.cleanup()
    assert recover_stale_jobs(runtime) == 0


def test_build_runtime_prepares_the_failure_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configure_env(tmp_path)
    fresh = tmp_path / "fresh" / "failures.sqlite3"
    monkeypatch.setenv("RECORDSHIFT_DATABASE_URL", f"sqlite:///{fresh.as_posix()}")
    get_settings.cache_clear()
    db_session_module.reset_engine()

    runtime = build_runtime(make_platform())

    assert fresh.exists()
    assert runtime.failure_log.count("any-job") == 0
    assert runtime.failure_log.list_for_job("any-job") == []


def test_migration_entry_points(tmp_path: Path) -> None:
    settings = configure_env(tmp_path)
    platform = make_platform()
    runtime = build_runtime(platform, settings=settings)

    job_id = enqueue_item_migration(
        runtime,
        MigrationConfig(
            source_collection_id="people",
            target_collection_id="archive",
            field_mapping={"title": "title"},
            batch_size=10,
            concurrency=2,
        ),
    )
    assert runtime.store.require(job_id).status == JobStatus.PLANNING

    result = run_migration(runtime, job_id)

    assert result.completed is True
    assert len(platform.created) == 2
    assert job_health(runtime, job_id).health_status == HealthStatus.NOT_RUNNING
    assert pause_job(runtime, job_id).status == JobStatus.COMPLETED


def test_cleanup_entry_points(tmp_path: Path) -> None:
    settings = configure_env(tmp_path)
    platform = make_platform()
    runtime = build_runtime(platform, settings=settings)

    job_id = enqueue_cleanup(
        runtime,
        CleanupRequest(
            collection_id="people",
            match_field="email",
            mode=CleanupMode.AUTOMATED,
            keep_strategy=KeepStrategy.NEWEST,
        ),
    )
    result = run_cleanup(runtime, job_id)

    assert isinstance(result, CleanupResult)
    assert result.total_items_deleted == 1
    assert platform.deleted == [1]


def test_recover_stale_jobs_marks_abandoned_runs_failed(tmp_path: Path) -> None:
    settings = configure_env(tmp_path)
    runtime = build_runtime(settings=settings)
    job = runtime.store.create("people", "archive")

    def abandon(current: Job) -> None:
        current.status = JobStatus.IN_PROGRESS
        current.last_heartbeat = datetime.now(tz=timezone.utc) - timedelta(minutes=10)

    runtime.store.mutate(job.id, abandon)

    assert recover_stale_jobs(runtime) == 1
    assert runtime.store.require(job.id).status == JobStatus.FAILED


def test_item_delete_entry_points(tmp_path: Path) -> None:
    settings = configure_env(tmp_path)
    platform = make_platform()
    runtime = build_runtime(platform, settings=settings)

    job_id = enqueue_item_delete(runtime, ItemDeleteRequest(collection_id="people", max_items=1))
    assert runtime.store.require(job_id).job_type == JobType.ITEM_DELETE

    result = run_item_delete(runtime, job_id)

    assert result.status == JobStatus.COMPLETED.value
    assert platform.deleted == [1]
