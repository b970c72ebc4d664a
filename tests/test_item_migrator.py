from __future__ import annotations

import random
from dataclasses import dataclass
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

import recordshift.db.session as db_session_module
from fakes import FakePlatform, FakeRateLimits, configure_env, email_field, make_record, text_field
from recordshift.items.failures import FailureLog
from recordshift.items.filters import FilterValidationError, MigrationFilters
from recordshift.items.service import MIGRATION_ABORTED, ItemMigrator
from recordshift.items.types import DuplicatePolicy, MigrationConfig, MigrationMode
from recordshift.jobs.lifecycle import JobLifecycleMonitor
from recordshift.jobs.service import InvalidJobStateError
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import ErrorCategory, JobStatus, StepStatus
from recordshift.platform import CollectionField, PlatformApiError


@dataclass
class Harness:
    store: JobStateStore
    coordinator: ShutdownCoordinator
    failure_log: FailureLog
    platform: FakePlatform
    migrator: ItemMigrator
    sleeps: list[float]


def make_harness(
    tmp_path: Path,
    platform: FakePlatform,
    rate_limits: FakeRateLimits | None = None,
    **env: object,
) -> Harness:
    settings = configure_env(tmp_path, **env)
    store = JobStateStore(settings)
    monitor = JobLifecycleMonitor(settings, store)
    coordinator = ShutdownCoordinator(settings, store, monitor, exit_func=lambda _code: None)
    failure_log = FailureLog(db_session_module.get_session_factory())
    sleeps: list[float] = []
    migrator = ItemMigrator(
        settings,
        store,
        monitor,
        coordinator,
        platform,
        rate_limits,
        failure_log,
        sleep=sleeps.append,
        rng=random.Random(3),
    )
    return Harness(store, coordinator, failure_log, platform, migrator, sleeps)


def source_platform(count: int = 5) -> FakePlatform:
    records = [
        make_record(index, f"2024-01-{index:02d} 00:00:00", text_field("title", f"Item {index}"))
        for index in range(1, count + 1)
    ]
    fields = {
        "source": [CollectionField("title", "title", "text"), CollectionField("email", "email", "email")],
        "target": [CollectionField("name", "name", "text"), CollectionField("email", "email", "email")],
    }
    return FakePlatform({"source": records, "target": []}, fields)


def make_config(**overrides: object) -> MigrationConfig:
    values: dict[str, object] = {
        "source_collection_id": "source",
        "target_collection_id": "target",
        "field_mapping": {"title": "name"},
        "batch_size": 2,
        "concurrency": 1,
    }
    values.update(overrides)
    return MigrationConfig(**values)  # type: ignore[arg-type]


def test_plan_estimates_batches_and_minutes(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform(5))
    plan = harness.migrator.plan(make_config())
    assert plan.total_items == 5
    assert plan.batch_count == 3
    assert plan.estimated_minutes == 1

    capped = harness.migrator.plan(make_config(max_items=3))
    assert capped.total_items == 3
    assert capped.batch_count == 2


def test_invalid_configs_are_rejected(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform())
    with pytest.raises(ValueError):
        harness.migrator.create_job(make_config(field_mapping={}))
    with pytest.raises(ValueError):
        harness.migrator.create_job(make_config(mode=MigrationMode.UPDATE))
    with pytest.raises(ValueError):
        harness.migrator.create_job(make_config(batch_size=10_000))
    with pytest.raises(FilterValidationError):
        harness.migrator.create_job(make_config(filters=MigrationFilters(created_from="last tuesday")))
    assert harness.store.list() == []


def test_migration_runs_all_batches_and_completes(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform(5))
    job = harness.migrator.create_job(make_config())

    result = harness.migrator.run(job.id)

    assert result.completed is True
    assert result.resume_token is None
    assert (result.processed, result.successful, result.failed) == (5, 5, 0)
    assert len(harness.platform.created) == 5
    assert harness.platform.created[0][2] == {"name": "Item 1"}

    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.progress.total == 5
    assert stored.progress.percent == 100.0
    assert [item.batch_number for item in stored.progress.batch_checkpoints] == [1, 2, 3]
    assert [item.offset for item in stored.progress.batch_checkpoints] == [0, 2, 4]
    assert stored.steps[0].status == StepStatus.COMPLETED
    assert harness.coordinator.active_job_ids() == []


def test_failures_are_retried_classified_and_logged(tmp_path: Path) -> None:
    platform = source_platform(4)
    platform.create_failures["migrated-2"] = [PlatformApiError("bad", status_code=400, error_detail="title is invalid")]
    platform.create_failures["migrated-3"] = [ConnectionError("connection reset")]
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config())

    result = harness.migrator.run(job.id)

    assert (result.processed, result.successful, result.failed) == (4, 3, 1)
    assert result.processed == result.successful + result.failed
    assert [item.source_item_id for item in result.failed_items] == [2]
    assert result.failed_items[0].category == ErrorCategory.VALIDATION
    assert result.failed_items[0].attempt_count == 1
    assert len(harness.sleeps) == 1

    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress.failed_items_by_category == {"validation": 1}
    assert harness.failure_log.count_by_category(job.id) == {"validation": 1}
    assert harness.failure_log.source_ids_for_retry(job.id) == [2]


@pytest.mark.parametrize("retries", [3, 1])
def test_persistent_network_failure_exhausts_retries(tmp_path: Path, retries: int) -> None:
    platform = source_platform(1)
    platform.create_failures["migrated-1"] = [ConnectionError("down")] * 5
    harness = make_harness(tmp_path, platform, item_max_retries=retries)
    job = harness.migrator.create_job(make_config())

    result = harness.migrator.run(job.id)

    assert result.failed == 1
    assert result.failed_items[0].category == ErrorCategory.NETWORK
    assert result.failed_items[0].attempt_count == retries + 1
    assert len(harness.sleeps) == retries
    assert len(platform.created) == 0


def test_stop_on_error_fails_job_after_batch(tmp_path: Path) -> None:
    platform = source_platform(5)
    platform.create_failures["migrated-1"] = [PlatformApiError("denied", status_code=403)]
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config(stop_on_error=True))

    result = harness.migrator.run(job.id)

    assert result.completed is False
    assert result.status == JobStatus.FAILED.value
    assert result.processed == 2
    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.errors[-1].code == MIGRATION_ABORTED
    assert len(stored.progress.batch_checkpoints) == 1
    assert stored.steps[0].status == StepStatus.FAILED


def test_pause_between_batches_then_resume_without_duplicates(tmp_path: Path) -> None:
    platform = source_platform(5)
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config())

    def pause_after_first_write(_external_id: str | None) -> None:
        harness.coordinator.request_pause(job.id)
        platform.on_create = None

    platform.on_create = pause_after_first_write
    paused = harness.migrator.run(job.id)

    assert paused.status == JobStatus.PAUSED.value
    assert paused.resume_token == job.id
    assert paused.processed == 2
    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.PAUSED
    assert stored.completed_at is None
    assert harness.coordinator.is_pause_requested(job.id) is False

    harness.migrator.prepare_resume(job.id)
    resumed = harness.migrator.run(job.id)

    assert resumed.completed is True
    assert resumed.processed == 5
    external_ids = [item[3] for item in platform.created]
    assert sorted(external_ids) == [f"migrated-{index}" for index in range(1, 6)]
    assert "resumeToken" not in harness.store.require(job.id).metadata


def test_failure_log_outage_does_not_lose_the_batch_checkpoint(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    platform = source_platform(4)
    platform.create_failures["migrated-2"] = [PlatformApiError("bad", status_code=400, error_detail="title is invalid")]
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config())

    def broken_append(_job_id: str, _failure: object) -> None:
        raise OperationalError("INSERT INTO item_failures", {}, Exception("no such table: item_failures"))

    def pause_after_first_write(_external_id: str | None) -> None:
        harness.coordinator.request_pause(job.id)
        platform.on_create = None

    monkeypatch.setattr(harness.failure_log, "append", broken_append)
    platform.on_create = pause_after_first_write
    paused = harness.migrator.run(job.id)
    monkeypatch.undo()

    assert paused.status == JobStatus.PAUSED.value
    assert (paused.processed, paused.failed) == (2, 1)
    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.PAUSED
    assert [item.batch_number for item in stored.progress.batch_checkpoints] == [1]
    assert stored.progress.failed_items_by_category == {"validation": 1}
    assert harness.failure_log.count(job.id) == 0

    harness.migrator.prepare_resume(job.id)
    resumed = harness.migrator.run(job.id)

    assert resumed.completed is True
    external_ids = [item[3] for item in platform.created]
    assert sorted(external_ids) == ["migrated-1", "migrated-3", "migrated-4"]


def test_resume_is_rejected_for_completed_jobs(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform(1))
    job = harness.migrator.create_job(make_config())
    harness.migrator.run(job.id)
    with pytest.raises(InvalidJobStateError):
        harness.migrator.prepare_resume(job.id)


def test_duplicates_are_skipped_in_create_mode(tmp_path: Path) -> None:
    source = [
        make_record(1, "2024-01-01 00:00:00", text_field("title", "A"), email_field("email", " Known@X.io")),
        make_record(2, "2024-01-02 00:00:00", text_field("title", "B"), email_field("email", "new@x.io")),
        make_record(3, "2024-01-03 00:00:00", text_field("title", "C"), email_field("email", "NEW@x.io")),
        make_record(4, "2024-01-04 00:00:00", text_field("title", "D")),
    ]
    target = [make_record(500, "2023-01-01 00:00:00", email_field("email", "known@x.io"))]
    platform = FakePlatform({"source": source, "target": target})
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(
        make_config(
            field_mapping={"title": "name", "email": "email"},
            source_match_field="email",
            target_match_field="email",
        )
    )

    result = harness.migrator.run(job.id)

    assert result.completed is True
    assert result.duplicates_skipped == 2
    assert (result.processed, result.successful, result.failed) == (4, 4, 0)
    assert [item[3] for item in platform.created] == ["migrated-2"]
    assert result.cache_stats is not None
    assert result.cache_stats.hits == 1


def test_duplicate_error_policy_records_duplicate_failure(tmp_path: Path) -> None:
    source = [make_record(1, None, text_field("title", "A"), email_field("email", "a@x.io"))]
    target = [make_record(900, None, email_field("email", "A@x.io"))]
    platform = FakePlatform({"source": source, "target": target})
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(
        make_config(source_match_field="email", target_match_field="email", duplicate_policy=DuplicatePolicy.ERROR)
    )

    result = harness.migrator.run(job.id)

    assert result.failed == 1
    failure = result.failed_items[0]
    assert failure.category == ErrorCategory.DUPLICATE
    assert failure.target_item_id == 900
    assert platform.created == []


def test_update_and_upsert_modes(tmp_path: Path) -> None:
    source = [
        make_record(1, None, text_field("title", "A"), email_field("email", "a@x.io")),
        make_record(2, None, text_field("title", "B"), email_field("email", "b@x.io")),
    ]
    target = [make_record(700, None, email_field("email", "a@x.io"))]

    platform = FakePlatform({"source": list(source), "target": list(target)})
    harness = make_harness(tmp_path / "update", platform)
    job = harness.migrator.create_job(
        make_config(mode=MigrationMode.UPDATE, source_match_field="email", target_match_field="email")
    )
    result = harness.migrator.run(job.id)
    assert platform.updated == [(700, {"name": "A"})]
    assert result.failed == 1
    assert result.failed_items[0].category == ErrorCategory.VALIDATION
    assert "No matching item" in result.failed_items[0].message

    platform = FakePlatform({"source": list(source), "target": list(target)})
    harness = make_harness(tmp_path / "upsert", platform)
    job = harness.migrator.create_job(
        make_config(mode=MigrationMode.UPSERT, source_match_field="email", target_match_field="email")
    )
    result = harness.migrator.run(job.id)
    assert result.failed == 0
    assert [item[0] for item in platform.updated] == [700]
    assert [item[3] for item in platform.created] == ["migrated-2"]


def test_retry_pass_reprocesses_only_failed_items(tmp_path: Path) -> None:
    platform = source_platform(5)
    platform.create_failures["migrated-2"] = [PlatformApiError("bad", status_code=422)]
    platform.create_failures["migrated-4"] = [PlatformApiError("bad", status_code=422)]
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config())
    first = harness.migrator.run(job.id)
    assert first.failed == 2

    prepared = harness.migrator.prepare_retry(job.id, field_mapping={"title": "name"})
    assert prepared.status == JobStatus.PLANNING
    assert prepared.metadata["retryItemIds"] == [2, 4]
    assert prepared.metadata["retryAttempts"] == 1
    assert [entry["source"] for entry in prepared.metadata["fieldMappingHistory"]] == ["original", "user-edited"]
    assert harness.failure_log.count(job.id) == 0

    retried = harness.migrator.run(job.id)

    assert retried.completed is True
    assert (retried.processed, retried.successful, retried.failed) == (2, 2, 0)
    assert retried.cache_stats is None
    assert sorted(item[3] for item in platform.created) == [f"migrated-{index}" for index in range(1, 6)]

    stored = harness.store.require(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress.pre_retry_snapshot is not None
    assert stored.progress.pre_retry_snapshot.failed == 2
    assert "retryItemIds" not in stored.metadata


def test_retry_without_failures_is_rejected(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform(2))
    job = harness.migrator.create_job(make_config())
    harness.migrator.run(job.id)
    with pytest.raises(InvalidJobStateError):
        harness.migrator.prepare_retry(job.id)


def test_retry_rejects_unknown_mapping_fields(tmp_path: Path) -> None:
    platform = source_platform(1)
    platform.create_failures["migrated-1"] = [PlatformApiError("bad", status_code=400)]
    harness = make_harness(tmp_path, platform)
    job = harness.migrator.create_job(make_config())
    harness.migrator.run(job.id)

    with pytest.raises(ValueError):
        harness.migrator.prepare_retry(job.id, field_mapping={"title": "not-a-field"})
    assert harness.store.require(job.id).status == JobStatus.COMPLETED


def test_rate_limit_pause_is_recorded_in_throughput(tmp_path: Path) -> None:
    rate_limits = FakeRateLimits(pauses=1, seconds=1.5)
    harness = make_harness(tmp_path, source_platform(3), rate_limits)
    job = harness.migrator.create_job(make_config())

    result = harness.migrator.run(job.id)

    assert rate_limits.waits == 1
    assert result.throughput is not None
    assert result.throughput.rate_limit_pauses == 1
    assert result.throughput.total_rate_limit_delay_ms == 1500


def test_max_items_limits_the_run(tmp_path: Path) -> None:
    harness = make_harness(tmp_path, source_platform(5))
    job = harness.migrator.create_job(make_config(max_items=3))

    result = harness.migrator.run(job.id)

    assert result.completed is True
    assert result.processed == 3
    assert harness.store.require(job.id).progress.total == 3
