from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakePlatform, configure_env, make_record, text_field
from recordshift.cleanup.base import CleanupValidationError, DeletionAbortedError
from recordshift.cleanup.bulk import ItemDeleteEngine
from recordshift.cleanup.types import DeletePhase, ItemDeleteRequest
from recordshift.items.filters import MigrationFilters
from recordshift.jobs.lifecycle import JobLifecycleMonitor
from recordshift.jobs.service import InvalidJobStateError
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import JobStatus, JobType
from recordshift.platform import CollectionField, PlatformApiError


def tasks_platform() -> FakePlatform:
    records = [
        make_record(record_id, f"2024-01-0{record_id} 00:00:00", text_field("title", f"Task {record_id}"))
        for record_id in range(1, 6)
    ]
    return FakePlatform({"tasks": records}, {"tasks": [CollectionField("title", "title", "text", "Title")]})


def make_engine(
    tmp_path: Path, platform: FakePlatform, **overrides: object
) -> tuple[JobStateStore, ShutdownCoordinator, ItemDeleteEngine]:
    settings = configure_env(tmp_path, **overrides)
    store = JobStateStore(settings)
    monitor = JobLifecycleMonitor(settings, store)
    coordinator = ShutdownCoordinator(settings, store, monitor, exit_func=lambda _code: None)
    return store, coordinator, ItemDeleteEngine(settings, store, monitor, coordinator, platform)


def make_request(**overrides: object) -> ItemDeleteRequest:
    values: dict[str, object] = {"collection_id": "tasks", "batch_size": 2, "concurrency": 2}
    values.update(overrides)
    return ItemDeleteRequest(**values)  # type: ignore[arg-type]


def test_create_job_records_delete_request(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(max_items=3, dry_run=True, stop_on_error=True))

    stored = store.require(job.id)
    assert stored.job_type == JobType.ITEM_DELETE
    assert stored.status == JobStatus.PLANNING
    assert stored.source_ref == stored.target_ref == "tasks"
    assert stored.metadata["maxItems"] == 3
    assert stored.metadata["dryRun"] is True
    assert stored.metadata["stopOnError"] is True
    assert platform.list_calls == []

    status = engine.status(job.id)
    assert status.phase == DeletePhase.DETECTING
    assert status.phase_progress["detecting"] == {"fetched": 0, "estimatedTotal": 0, "percent": 0.0}


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"batch_size": 0}, "batch_size"),
        ({"concurrency": 99}, "concurrency"),
        ({"max_items": 0}, "max_items must be positive"),
        ({"filters": MigrationFilters(created_from="yesterday")}, "Invalid createdFrom date format"),
    ],
)
def test_invalid_requests_are_rejected(tmp_path: Path, overrides: dict[str, object], message: str) -> None:
    store, _coordinator, engine = make_engine(tmp_path, tasks_platform())
    with pytest.raises(CleanupValidationError) as excinfo:
        engine.create_job(make_request(**overrides))
    assert message in str(excinfo.value)
    assert store.list() == []


def test_unknown_collection_surfaces_platform_error(tmp_path: Path) -> None:
    store, _coordinator, engine = make_engine(tmp_path, tasks_platform())
    with pytest.raises(PlatformApiError):
        engine.create_job(make_request(collection_id="nowhere"))
    assert store.list() == []


def test_matching_items_are_detected_then_deleted_in_batches(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(filters=MigrationFilters(created_from="2024-01-01", tags=["stale"])))

    result = engine.run(job.id)

    assert result.status == JobStatus.COMPLETED.value
    assert (result.total_items, result.deleted, result.failed) == (5, 5, 0)
    assert result.item_ids == []
    assert sorted(platform.deleted) == [1, 2, 3, 4, 5]
    assert platform.list_calls[0][3] == {"created_on": {"from": "2024-01-01"}, "tags": ["stale"]}

    stored = store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.metadata["itemIds"] == [1, 2, 3, 4, 5]
    assert (stored.progress.total, stored.progress.processed, stored.progress.successful) == (5, 5, 5)
    assert stored.progress.percent == 100.0
    assert [item.items_processed for item in stored.progress.batch_checkpoints] == [2, 2, 1]
    assert coordinator.active_job_ids() == []

    status = engine.status(job.id)
    assert status.phase == DeletePhase.COMPLETED
    assert status.phase_status == "Deletion completed"
    assert status.phase_progress["detecting"]["fetched"] == 5
    assert status.phase_progress["deleting"] == {
        "total": 5,
        "processed": 5,
        "successful": 5,
        "failed": 0,
        "percent": 100.0,
    }


def test_detection_pages_through_the_collection(tmp_path: Path) -> None:
    platform = tasks_platform()
    _store, _coordinator, engine = make_engine(
        tmp_path,
        platform,
        max_batch_size=2,
        migration_batch_size=2,
        cleanup_batch_size=2,
        delete_batch_size=2,
    )
    job = engine.create_job(make_request())

    result = engine.run(job.id)

    assert [call[1] for call in platform.list_calls] == [0, 2, 4]
    assert result.deleted == 5


def test_dry_run_lists_items_without_deleting(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(dry_run=True))

    result = engine.run(job.id)

    assert result.status == JobStatus.COMPLETED.value
    assert result.dry_run is True
    assert result.item_ids == [1, 2, 3, 4, 5]
    assert result.deleted == 0
    assert platform.deleted == []

    stored = store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress.processed == 5
    assert stored.progress.batch_checkpoints == []
    assert engine.status(job.id).phase_status == "Dry run completed"


def test_max_items_caps_detection(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(max_items=3))

    result = engine.run(job.id)

    assert result.total_items == 3
    assert sorted(platform.deleted) == [1, 2, 3]
    assert store.require(job.id).metadata["phaseProgress"]["detecting"]["estimatedTotal"] == 3


def test_failed_deletions_are_counted_by_category(tmp_path: Path) -> None:
    platform = tasks_platform()
    platform.delete_failures[2] = PlatformApiError("gone", status_code=404)
    platform.delete_failures[4] = PlatformApiError("denied", status_code=403)
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request())

    result = engine.run(job.id)

    assert result.status == JobStatus.COMPLETED.value
    assert (result.deleted, result.failed) == (3, 2)
    assert sorted(platform.deleted) == [1, 3, 5]

    stored = store.require(job.id)
    assert stored.progress.failed_items_by_category == {"validation": 1, "permission": 1}
    assert [error.step for error in stored.errors] == ["item_delete", "item_delete"]

    status = engine.status(job.id)
    assert status.errors_by_category == {
        "validation": {"count": 1, "percentage": 50, "retryable": False},
        "permission": {"count": 1, "percentage": 50, "retryable": False},
    }


def test_stop_on_error_fails_the_job_after_the_batch(tmp_path: Path) -> None:
    platform = tasks_platform()
    platform.delete_failures[1] = PlatformApiError("boom", status_code=500)
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(stop_on_error=True))

    with pytest.raises(DeletionAbortedError):
        engine.run(job.id)

    assert platform.deleted == [2]
    stored = store.require(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.progress.processed == 2
    assert [(error.step, error.code) for error in stored.errors] == [
        ("item_delete", "SERVER_ERROR"),
        ("delete_execution", "DELETION_ABORTED"),
    ]
    assert engine.status(job.id).phase == DeletePhase.FAILED

    with pytest.raises(InvalidJobStateError):
        engine.run(job.id)


def test_pause_during_deletion_resumes_without_detecting_again(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(batch_size=1, concurrency=1))
    delete_record = platform.delete_record

    def delete_then_pause(record_id: object) -> None:
        delete_record(record_id)
        coordinator.request_pause(job.id)

    platform.delete_record = delete_then_pause  # type: ignore[method-assign]
    paused = engine.run(job.id)

    assert paused.status == JobStatus.PAUSED.value
    assert paused.deleted == 1
    stored = store.require(job.id)
    assert stored.status == JobStatus.PAUSED
    assert stored.completed_at is None
    status = engine.status(job.id)
    assert status.phase == DeletePhase.DELETING
    assert status.phase_status == "Paused while deleting"

    platform.delete_record = delete_record  # type: ignore[method-assign]
    resumed = engine.run(job.id)

    assert resumed.status == JobStatus.COMPLETED.value
    assert resumed.deleted == 5
    assert sorted(platform.deleted) == [1, 2, 3, 4, 5]
    assert len(platform.deleted) == 5
    assert len(platform.list_calls) == 1


def test_pause_during_detection(tmp_path: Path) -> None:
    platform = tasks_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request())
    coordinator.request_pause(job.id)

    paused = engine.run(job.id)

    assert paused.status == JobStatus.PAUSED.value
    assert platform.list_calls == []
    assert store.require(job.id).status == JobStatus.PAUSED
    assert engine.status(job.id).phase == DeletePhase.DETECTING

    finished = engine.run(job.id)
    assert finished.status == JobStatus.COMPLETED.value
    assert sorted(platform.deleted) == [1, 2, 3, 4, 5]


def test_status_rejects_other_job_types(tmp_path: Path) -> None:
    store, _coordinator, engine = make_engine(tmp_path, tasks_platform())
    job = store.create("source", "target")
    with pytest.raises(InvalidJobStateError):
        engine.status(job.id)
    with pytest.raises(InvalidJobStateError):
        engine.run(job.id)
