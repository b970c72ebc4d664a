from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakePlatform, configure_env, email_field, make_record
from recordshift.cleanup.service import CleanupEngine, CleanupValidationError
from recordshift.cleanup.types import CleanupMode, CleanupPreview, CleanupRequest, CleanupResult
from recordshift.duplicates.types import DuplicateGroup, KeepStrategy
from recordshift.jobs.lifecycle import JobLifecycleMonitor
from recordshift.jobs.service import InvalidJobStateError
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import JobStatus, JobType
from recordshift.platform import CollectionField, PlatformApiError


def contacts_platform() -> FakePlatform:
    records = [
        make_record(1, "2024-01-03 00:00:00", email_field("email", "a@x.io")),
        make_record(2, "2024-01-01 00:00:00", email_field("email", "A@x.io")),
        make_record(3, "2024-01-02 00:00:00", email_field("email", " a@x.io")),
        make_record(4, "2024-01-05 00:00:00", email_field("email", "b@x.io")),
        make_record(5, "2024-01-04 00:00:00", email_field("email", "B@X.IO")),
        make_record(6, "2024-01-06 00:00:00", email_field("email", "c@x.io")),
    ]
    fields = {
        "contacts": [
            CollectionField("email", "email", "email", "Email"),
            CollectionField("owner", "owner", "contact", "Owner"),
            CollectionField("100", "title", "text", "Title"),
        ]
    }
    return FakePlatform({"contacts": records}, fields)


def make_engine(tmp_path: Path, platform: FakePlatform) -> tuple[JobStateStore, ShutdownCoordinator, CleanupEngine]:
    settings = configure_env(tmp_path)
    store = JobStateStore(settings)
    monitor = JobLifecycleMonitor(settings, store)
    coordinator = ShutdownCoordinator(settings, store, monitor, exit_func=lambda _code: None)
    return store, coordinator, CleanupEngine(settings, store, monitor, coordinator, platform)


def make_request(**overrides: object) -> CleanupRequest:
    values: dict[str, object] = {"collection_id": "contacts", "match_field": "email", "batch_size": 2, "concurrency": 2}
    values.update(overrides)
    return CleanupRequest(**values)  # type: ignore[arg-type]


def test_create_job_records_cleanup_request(tmp_path: Path) -> None:
    store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED, keep_strategy=KeepStrategy.NEWEST))

    stored = store.require(job.id)
    assert stored.job_type == JobType.CLEANUP
    assert stored.status == JobStatus.PLANNING
    assert stored.source_ref == stored.target_ref == "contacts"
    assert stored.metadata["matchField"] == "email"
    assert stored.metadata["keepStrategy"] == "newest"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"match_field": "owner"}, "Invalid match field type"),
        ({"match_field": "missing"}, "Match field not found"),
        ({"match_field": "  "}, "match_field is required"),
        ({"batch_size": 0}, "batch_size"),
        ({"concurrency": 99}, "concurrency"),
    ],
)
def test_invalid_requests_are_rejected(tmp_path: Path, overrides: dict[str, object], message: str) -> None:
    store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    with pytest.raises(CleanupValidationError) as excinfo:
        engine.create_job(make_request(**overrides))
    assert message in str(excinfo.value)
    assert store.list() == []


def test_match_field_may_be_given_by_field_id(tmp_path: Path) -> None:
    _store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    engine.validate_request(make_request(match_field="100"))


def test_unknown_collection_surfaces_platform_error(tmp_path: Path) -> None:
    _store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    with pytest.raises(PlatformApiError):
        engine.create_job(make_request(collection_id="nowhere"))


def test_automated_cleanup_keeps_oldest_and_deletes_in_batches(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED))

    result = engine.run(job.id)

    assert isinstance(result, CleanupResult)
    assert result.status == JobStatus.COMPLETED.value
    assert result.total_groups == 2
    assert result.total_items_deleted == 3
    assert result.failed_deletions == 0
    assert sorted(platform.deleted) == [1, 3, 4]

    stored = store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.progress.processed == 2
    assert stored.progress.successful == 3
    assert stored.progress.total_items_to_delete == 3
    assert stored.progress.percent == 100.0
    assert [item.items_processed for item in stored.progress.batch_checkpoints] == [2, 1]
    plan = stored.metadata["deletionPlan"]
    assert [group["keepItemId"] for group in plan] == [2, 5]
    assert coordinator.active_job_ids() == []


def test_newest_strategy_keeps_latest_record(tmp_path: Path) -> None:
    platform = contacts_platform()
    _store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED, keep_strategy=KeepStrategy.NEWEST))

    engine.run(job.id)

    assert sorted(platform.deleted) == [2, 3, 5]


def test_dry_run_previews_without_deleting(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED, dry_run=True))

    preview = engine.run(job.id)

    assert isinstance(preview, CleanupPreview)
    assert preview.status == JobStatus.COMPLETED.value
    assert preview.total_groups == 2
    assert preview.total_items_to_delete == 3
    assert [group.match_value for group in preview.duplicate_groups] == ["a@x.io", "b@x.io"]
    assert [item.item_id for item in preview.duplicate_groups[0].items] == [2, 3, 1]
    assert preview.summary.total_source_items == 5
    assert platform.deleted == []

    stored = store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert "duplicateGroups" in stored.metadata
    assert "deletionPlan" not in stored.metadata


def test_max_groups_limits_detection(tmp_path: Path) -> None:
    _store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED, dry_run=True, max_groups=1))

    preview = engine.run(job.id)

    assert isinstance(preview, CleanupPreview)
    assert preview.total_groups == 1
    assert preview.total_items_to_delete == 2


def test_manual_cleanup_waits_then_deletes_only_approved_groups(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request())

    preview = engine.run(job.id)

    assert isinstance(preview, CleanupPreview)
    assert preview.status == JobStatus.WAITING_APPROVAL.value
    assert preview.total_items_to_delete == 0
    assert store.require(job.id).status == JobStatus.WAITING_APPROVAL
    assert platform.deleted == []
    with pytest.raises(InvalidJobStateError):
        engine.run(job.id)

    first = preview.duplicate_groups[0]
    approved = DuplicateGroup(
        match_value=first.match_value,
        items=first.items,
        keep_item_id=1,
        delete_item_ids=[2],
    )
    list_calls_before = len(platform.list_calls)

    result = engine.execute(job.id, [approved])

    assert isinstance(result, CleanupResult)
    assert result.status == JobStatus.COMPLETED.value
    assert result.total_groups == 1
    assert platform.deleted == [2]
    assert len(platform.list_calls) == list_calls_before

    status = engine.status(job.id)
    assert status.deleted_items == 1
    assert status.processed_groups == 1
    assert status.duplicate_groups is not None
    assert status.duplicate_groups[0].approved is True


def test_approved_group_without_deletions_uses_keep_strategy(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(keep_strategy=KeepStrategy.MANUAL))
    preview = engine.run(job.id)
    assert isinstance(preview, CleanupPreview)

    second = preview.duplicate_groups[1]
    updated = engine.approve(job.id, [DuplicateGroup(match_value=second.match_value, items=second.items)])

    groups = updated.metadata["approvedGroups"]
    assert groups[0]["keepItemId"] == 5
    assert groups[0]["deleteItemIds"] == [4]
    assert updated.progress.total_items_to_delete == 1
    assert store.require(job.id).status == JobStatus.WAITING_APPROVAL


def test_invalid_approvals_are_rejected(tmp_path: Path) -> None:
    _store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    job = engine.create_job(make_request())
    with pytest.raises(InvalidJobStateError):
        engine.approve(job.id, [])

    preview = engine.run(job.id)
    assert isinstance(preview, CleanupPreview)
    group = preview.duplicate_groups[0]

    with pytest.raises(CleanupValidationError):
        engine.approve(job.id, [DuplicateGroup(group.match_value, group.items, keep_item_id=2, delete_item_ids=[99])])
    with pytest.raises(CleanupValidationError):
        engine.approve(job.id, [DuplicateGroup(group.match_value, group.items, keep_item_id=2, delete_item_ids=[2])])
    with pytest.raises(CleanupValidationError):
        engine.approve(job.id, [DuplicateGroup(group.match_value, group.items[:1])])


def test_failed_deletions_are_recorded(tmp_path: Path) -> None:
    platform = contacts_platform()
    platform.delete_failures[1] = PlatformApiError("gone", status_code=404)
    store, _coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED))

    result = engine.run(job.id)

    assert isinstance(result, CleanupResult)
    assert result.status == JobStatus.COMPLETED.value
    assert result.total_items_deleted == 2
    assert result.failed_deletions == 1
    assert result.errors[0].item_id == 1
    assert result.errors[0].code == "NOT_FOUND"

    stored = store.require(job.id)
    assert stored.progress.failed == 1
    assert [error.step for error in stored.errors] == ["cleanup_delete"]


def test_pause_during_deletion_resumes_from_checkpoint(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED, batch_size=1, concurrency=1))
    delete_record = platform.delete_record

    def delete_then_pause(record_id: object) -> None:
        delete_record(record_id)
        coordinator.request_pause(job.id)

    platform.delete_record = delete_then_pause  # type: ignore[method-assign]
    paused = engine.run(job.id)

    assert isinstance(paused, CleanupResult)
    assert paused.status == JobStatus.PAUSED.value
    assert paused.total_items_deleted == 1
    stored = store.require(job.id)
    assert stored.status == JobStatus.PAUSED
    assert stored.completed_at is None

    platform.delete_record = delete_record  # type: ignore[method-assign]
    resumed = engine.run(job.id)

    assert isinstance(resumed, CleanupResult)
    assert resumed.status == JobStatus.COMPLETED.value
    assert resumed.total_items_deleted == 3
    assert sorted(platform.deleted) == [1, 3, 4]
    assert len(platform.deleted) == 3


def test_pause_during_detection(tmp_path: Path) -> None:
    platform = contacts_platform()
    store, coordinator, engine = make_engine(tmp_path, platform)
    job = engine.create_job(make_request(mode=CleanupMode.AUTOMATED))
    coordinator.request_pause(job.id)

    paused = engine.run(job.id)

    assert isinstance(paused, CleanupResult)
    assert paused.status == JobStatus.PAUSED.value
    assert platform.list_calls == []
    assert store.require(job.id).status == JobStatus.PAUSED

    finished = engine.run(job.id)
    assert isinstance(finished, CleanupResult)
    assert finished.status == JobStatus.COMPLETED.value
    assert sorted(platform.deleted) == [1, 3, 4]


def test_status_rejects_migration_jobs(tmp_path: Path) -> None:
    store, _coordinator, engine = make_engine(tmp_path, contacts_platform())
    job = store.create("source", "target")
    with pytest.raises(InvalidJobStateError):
        engine.status(job.id)
