from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from recordshift.core.config import Settings
from recordshift.duplicates.matcher import DuplicateMatcher
from recordshift.items.errors import ItemValidationError, classify_error, retry_delay_ms, should_retry
from recordshift.items.failures import FailureLog
from recordshift.items.filters import FilterValidationError, convert_filters, validate_filters
from recordshift.items.throughput import ThroughputCalculator
from recordshift.items.types import (
    DuplicatePolicy,
    FailedItem,
    ItemOutcome,
    ItemResult,
    MigrationConfig,
    MigrationMode,
    MigrationPlan,
    MigrationResult,
    config_from_metadata,
    config_to_metadata,
)
from recordshift.jobs.documents import compute_percent, empty_progress, format_timestamp, merge_progress
from recordshift.jobs.lifecycle import HeartbeatTicker, JobLifecycleMonitor
from recordshift.jobs.service import InvalidJobStateError, enforce_transition
from recordshift.jobs.shutdown import ShutdownCoordinator
from recordshift.jobs.store import JobStateStore
from recordshift.jobs.types import (
    RUNNING_STATUSES,
    BatchCheckpoint,
    CheckpointStatus,
    ErrorCategory,
    Job,
    JobError,
    JobStatus,
    JobType,
    ProgressUpdate,
    RecordId,
    StepStatus,
    StepType,
)
from recordshift.platform import (
    NullRateLimitProvider,
    RateLimitProvider,
    Record,
    RecordPlatform,
    extract_field_value,
    map_record_fields,
)

logger = logging.getLogger(__name__)

MIGRATION_ABORTED = "MIGRATION_ABORTED"
EXECUTION_ERROR = "EXECUTION_ERROR"
MAX_MAPPING_HISTORY = 10


class MigrationAbortedError(RuntimeError):
    pass


class DuplicateConflictError(RuntimeError):
    def __init__(self, message: str, source_item_id: RecordId, target_item_id: RecordId):
        super().__init__(message)
        self.source_item_id = source_item_id
        self.target_item_id = target_item_id


@dataclass(slots=True)
class _RunState:
    total: int
    processed: int
    successful: int
    failed: int
    duplicates_skipped: int = 0
    duplicates_updated: int = 0
    failed_items: list[FailedItem] = field(default_factory=list)


@dataclass(slots=True)
class _RunContext:
    job_id: str
    config: MigrationConfig
    matcher: DuplicateMatcher
    retry_pass: bool


class ItemMigrator:
    """Copies records from a source collection to a target collection in checkpointed batches."""

    def __init__(
        self,
        settings: Settings,
        store: JobStateStore,
        monitor: JobLifecycleMonitor,
        coordinator: ShutdownCoordinator,
        platform: RecordPlatform,
        rate_limits: RateLimitProvider | None,
        failure_log: FailureLog,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self._settings = settings
        self._store = store
        self._monitor = monitor
        self._coordinator = coordinator
        self._platform = platform
        self._rate_limits = rate_limits or NullRateLimitProvider()
        self._failure_log = failure_log
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    # -- planning --------------------------------------------------------

    def validate_config(self, config: MigrationConfig) -> None:
        errors: list[str] = []
        if not config.source_collection_id or not config.target_collection_id:
            errors.append("source_collection_id and target_collection_id are required")
        if not config.field_mapping:
            errors.append("field_mapping cannot be empty")
        if not 1 <= config.batch_size <= self._settings.max_batch_size:
            errors.append(f"batch_size must be between 1 and {self._settings.max_batch_size}")
        if not 1 <= config.concurrency <= self._settings.max_concurrency:
            errors.append(f"concurrency must be between 1 and {self._settings.max_concurrency}")
        if config.max_items is not None and config.max_items < 1:
            errors.append("max_items must be positive")
        if bool(config.source_match_field) != bool(config.target_match_field):
            errors.append("source_match_field and target_match_field must be set together")
        if config.mode in {MigrationMode.UPDATE, MigrationMode.UPSERT} and not config.source_match_field:
            errors.append(f"{config.mode.value.upper()} mode requires both source_match_field and target_match_field")
        if errors:
            raise ValueError("; ".join(errors))

        filter_errors = validate_filters(config.filters)
        if filter_errors:
            raise FilterValidationError(filter_errors)

    def plan(self, config: MigrationConfig) -> MigrationPlan:
        self.validate_config(config)
        page = self._platform.list_records(
            config.source_collection_id,
            offset=0,
            limit=1,
            filters=convert_filters(config.filters) or None,
        )
        total = page.filtered if page.filtered is not None else page.total
        if config.max_items is not None:
            total = min(total, config.max_items)

        batch_count = math.ceil(total / config.batch_size)
        estimated_seconds = batch_count * (config.batch_size / config.concurrency)
        plan = MigrationPlan(
            total_items=total,
            batch_count=batch_count,
            estimated_minutes=math.ceil(estimated_seconds / 60),
        )
        logger.info(
            "Migration plan: total=%s batches=%s estimated_minutes=%s",
            plan.total_items,
            plan.batch_count,
            plan.estimated_minutes,
        )
        return plan

    def create_job(self, config: MigrationConfig) -> Job:
        self.validate_config(config)
        job = self._store.create(
            config.source_collection_id,
            config.target_collection_id,
            config_to_metadata(config),
            job_type=JobType.ITEM_MIGRATION,
        )
        self._store.add_step(job.id, StepType.MIGRATE_ITEMS, config.source_collection_id)
        return self._store.require(job.id)

    # -- resume / retry ----------------------------------------------------

    def prepare_resume(self, job_id: str) -> Job:
        job = self._store.require(job_id)
        if job.status not in {JobStatus.PAUSED, JobStatus.FAILED}:
            raise InvalidJobStateError(
                f"Job is in '{job.status.value}' state and cannot be resumed. "
                "Only 'paused' or 'failed' jobs can be resumed."
            )
        latest = self._store.get_latest_checkpoint(job_id)
        if latest is None:
            logger.warning("No checkpoint found, resuming from the first batch", extra={"job_id": job_id})
        return self._store.update_metadata(job_id, {"resumeToken": job_id})

    def prepare_retry(self, job_id: str, field_mapping: dict[str, str] | None = None) -> Job:
        """Queue a pass over the job's failed source records.

        Counters are frozen into ``pre_retry_snapshot`` and reset; the failure
        log entries being retried are cleared so the pass re-records only
        what fails again.
        """
        job = self._store.require(job_id)
        if job.status in RUNNING_STATUSES:
            raise InvalidJobStateError(
                f"Job {job_id} is already in progress. Please wait for it to complete before retrying."
            )
        enforce_transition(job.status, JobStatus.PLANNING)

        retry_ids = self._failure_log.source_ids_for_retry(job_id)
        if not retry_ids:
            raise InvalidJobStateError("This migration has no failed items to retry.")

        config = config_from_metadata(job.metadata)
        mapping = None
        if field_mapping is not None:
            mapping = self._validate_mapping(config, field_mapping)

        self._store.snapshot_progress_for_retry(job_id)
        now = self._now()
        latest = self._store.get_latest_checkpoint(job_id)

        def apply(current: Job) -> None:
            metadata = dict(current.metadata)
            metadata.pop("resumeToken", None)
            metadata["retryItemIds"] = list(retry_ids)
            metadata["retryStartBatch"] = latest.batch_number if latest is not None else 0
            metadata["retryAttempts"] = int(metadata.get("retryAttempts") or 0) + 1
            metadata["lastRetryTimestamp"] = format_timestamp(now)
            if mapping is not None:
                history = list(metadata.get("fieldMappingHistory") or [])
                if not history:
                    history.append(
                        {
                            "timestamp": format_timestamp(current.started_at),
                            "mapping": dict(metadata.get("fieldMapping") or {}),
                            "source": "original",
                        }
                    )
                history.append({"timestamp": format_timestamp(now), "mapping": mapping, "source": "user-edited"})
                if len(history) > MAX_MAPPING_HISTORY:
                    history = [history[0], *history[-(MAX_MAPPING_HISTORY - 1) :]]
                metadata["fieldMappingHistory"] = history
                metadata["fieldMapping"] = mapping
            current.metadata = metadata
            current.status = JobStatus.PLANNING
            current.completed_at = None
            progress = current.progress or empty_progress(now)
            current.progress = merge_progress(progress, ProgressUpdate(total=len(retry_ids)), now)

        updated = self._store.mutate(job_id, apply)
        cleared = self._failure_log.clear(job_id)
        logger.info(
            "Prepared retry of %s failed item(s), cleared %s failure record(s)",
            len(retry_ids),
            cleared,
            extra={"job_id": job_id, "stage": "retry"},
        )
        return updated

    def _validate_mapping(self, config: MigrationConfig, mapping: dict[str, str]) -> dict[str, str]:
        if not mapping:
            raise ValueError("Field mapping cannot be empty. Omit field_mapping to use the existing mapping.")

        def known(collection_id: str) -> set[str]:
            ids: set[str] = set()
            for item in self._platform.collection_fields(collection_id):
                ids.add(item.field_id)
                ids.add(item.external_id)
            return ids

        source_fields = known(config.source_collection_id)
        target_fields = known(config.target_collection_id)
        errors = [f"Unknown source field: {key}" for key in mapping if key not in source_fields]
        errors.extend(f"Unknown target field: {value}" for value in mapping.values() if value not in target_fields)
        if errors:
            raise ValueError("; ".join(errors))
        return dict(mapping)

    # -- execution ---------------------------------------------------------

    def run(self, job_id: str) -> MigrationResult:
        job = self._store.require(job_id)
        enforce_transition(job.status, JobStatus.IN_PROGRESS)
        config = config_from_metadata(job.metadata)
        started = self._clock()

        progress = job.progress or empty_progress(self._now())
        state = _RunState(
            total=progress.total,
            processed=progress.processed,
            successful=progress.successful,
            failed=progress.failed,
        )
        context = _RunContext(
            job_id=job_id,
            config=config,
            matcher=DuplicateMatcher(),
            retry_pass=bool(config.retry_item_ids),
        )
        throughput = ThroughputCalculator(clock=self._clock)
        run_lock = threading.Lock()
        stop_requested = threading.Event()
        stopped = threading.Event()

        self._begin(job_id)
        self._coordinator.register_active(job_id)
        self._coordinator.register_callback(job_id, lambda: self._stop_for_shutdown(job_id, stop_requested, stopped))
        logger.info(
            "Starting item migration: %s -> %s mode=%s retry_pass=%s",
            config.source_collection_id,
            config.target_collection_id,
            config.mode.value,
            context.retry_pass,
            extra={"job_id": job_id, "stage": "migration"},
        )

        outcome = JobStatus.FAILED
        try:
            with HeartbeatTicker(self._monitor, job_id, lock=run_lock):
                try:
                    outcome = self._execute(job, context, state, throughput, run_lock, stop_requested)
                except MigrationAbortedError as exc:
                    logger.error("Migration aborted: %s", exc, extra={"job_id": job_id, "stage": "migration"})
                    with run_lock:
                        self._finish(job_id, JobStatus.FAILED, throughput, state, str(exc), MIGRATION_ABORTED)
                except Exception as exc:
                    logger.exception("Migration failed", extra={"job_id": job_id, "stage": "migration"})
                    with run_lock:
                        self._finish(job_id, JobStatus.FAILED, throughput, state, str(exc), EXECUTION_ERROR)
                    raise
                else:
                    with run_lock:
                        self._finish(job_id, outcome, throughput, state)
        finally:
            stopped.set()
            self._coordinator.unregister_active(job_id)

        duration_ms = round((self._clock() - started) * 1000)
        result = MigrationResult(
            job_id=job_id,
            processed=state.processed,
            successful=state.successful,
            failed=state.failed,
            failed_items=state.failed_items,
            duration_ms=duration_ms,
            throughput=throughput.metrics(state.total, state.processed),
            completed=outcome == JobStatus.COMPLETED,
            resume_token=None if outcome == JobStatus.COMPLETED else job_id,
            duplicates_skipped=state.duplicates_skipped,
            duplicates_updated=state.duplicates_updated,
            cache_stats=context.matcher.stats() if config.source_match_field and not context.retry_pass else None,
            status=outcome.value,
        )
        logger.info(
            "Item migration finished: status=%s processed=%s successful=%s failed=%s duration_ms=%s",
            result.status,
            result.processed,
            result.successful,
            result.failed,
            result.duration_ms,
            extra={"job_id": job_id, "stage": "migration"},
        )
        return result

    def _stop_for_shutdown(self, job_id: str, stop_requested: threading.Event, stopped: threading.Event) -> None:
        logger.info("Shutdown callback triggered", extra={"job_id": job_id, "stage": "shutdown"})
        stop_requested.set()
        if not stopped.wait(timeout=float(self._settings.shutdown_grace_seconds)):
            logger.warning(
                "Job did not stop within %ss of shutdown",
                self._settings.shutdown_grace_seconds,
                extra={"job_id": job_id, "stage": "shutdown"},
            )

    def _should_stop(self, job_id: str, stop_requested: threading.Event) -> bool:
        return stop_requested.is_set() or self._coordinator.is_pause_requested(job_id)

    def _begin(self, job_id: str) -> None:
        now = self._now()

        def apply(job: Job) -> None:
            enforce_transition(job.status, JobStatus.IN_PROGRESS)
            job.status = JobStatus.IN_PROGRESS
            job.completed_at = None
            job.last_heartbeat = now

        job = self._store.mutate(job_id, apply)
        step_id = self._migration_step_id(job)
        if step_id is not None:
            self._store.update_step(job_id, step_id, status=StepStatus.IN_PROGRESS, started_at=now, error=None)

    def _migration_step_id(self, job: Job) -> str | None:
        for step in job.steps:
            if step.type == StepType.MIGRATE_ITEMS:
                return step.id
        return None

    def _resume_position(self, job: Job, context: _RunContext) -> tuple[int, int]:
        """Return ``(offset, last_batch_number)`` for the next batch."""
        checkpoints = job.progress.batch_checkpoints if job.progress is not None else []
        last_number = max((item.batch_number for item in checkpoints), default=0)
        if context.config.resume_token != job.id:
            return 0, last_number

        floor = int(job.metadata.get("retryStartBatch") or 0) if context.retry_pass else 0
        eligible = [item for item in checkpoints if item.batch_number > floor]
        if not eligible:
            return 0, last_number
        latest = max(eligible, key=lambda item: item.batch_number)
        logger.info(
            "Resuming after batch %s at offset %s",
            latest.batch_number,
            latest.offset + latest.limit,
            extra={"job_id": job.id, "stage": "migration"},
        )
        return latest.offset + latest.limit, last_number

    def _execute(
        self,
        job: Job,
        context: _RunContext,
        state: _RunState,
        throughput: ThroughputCalculator,
        run_lock: threading.Lock,
        stop_requested: threading.Event,
    ) -> JobStatus:
        config = context.config
        offset, batch_number = self._resume_position(job, context)
        filters = convert_filters(config.filters) or None
        retry_ids = config.retry_item_ids or []

        while True:
            if self._should_stop(job.id, stop_requested):
                logger.info("Pause requested, stopping before batch %s", batch_number + 1, extra={"job_id": job.id})
                return JobStatus.PAUSED

            self._respect_rate_limit(job.id, throughput)

            if context.retry_pass:
                chunk = retry_ids[offset : offset + config.batch_size]
                records = self._platform.get_records(chunk) if chunk else []
                if len(records) < len(chunk):
                    logger.warning(
                        "Retry batch: %s of %s source records not found",
                        len(chunk) - len(records),
                        len(chunk),
                        extra={"job_id": job.id},
                    )
                exhausted = offset + config.batch_size >= len(retry_ids)
            else:
                page = self._platform.list_records(
                    config.source_collection_id,
                    offset=offset,
                    limit=config.batch_size,
                    filters=filters,
                )
                if state.total == 0:
                    state.total = page.filtered if page.filtered is not None else page.total
                    if config.max_items is not None:
                        state.total = min(state.total, config.max_items)
                records = page.items
                exhausted = len(page.items) < config.batch_size
                if config.max_items is not None:
                    remaining = max(config.max_items - state.processed, 0)
                    if len(records) >= remaining:
                        records = records[:remaining]
                        exhausted = True

            if not records:
                return JobStatus.COMPLETED

            batch_number += 1
            self._run_batch(context, state, throughput, run_lock, batch_number, offset, records)
            offset += config.batch_size
            if exhausted:
                return JobStatus.COMPLETED

    def _respect_rate_limit(self, job_id: str, throughput: ThroughputCalculator) -> None:
        if not self._rate_limits.should_pause(self._settings.rate_limit_pause_threshold):
            return
        wait_seconds = self._rate_limits.seconds_until_reset()
        logger.warning(
            "Rate limit nearly exhausted, pausing %.1fs before next batch",
            wait_seconds,
            extra={"job_id": job_id, "stage": "rate_limit"},
        )
        self._rate_limits.wait_for_reset()
        throughput.record_rate_limit_pause(int(wait_seconds * 1000))

    def _run_batch(
        self,
        context: _RunContext,
        state: _RunState,
        throughput: ThroughputCalculator,
        run_lock: threading.Lock,
        batch_number: int,
        offset: int,
        records: list[Record],
    ) -> None:
        job_id = context.job_id
        started_at = self._now()
        batch_started = throughput.start_batch()

        with ThreadPoolExecutor(
            max_workers=context.config.concurrency,
            thread_name_prefix=f"migrate-{job_id[:8]}",
        ) as pool:
            futures = [pool.submit(self._migrate_item, context, record, batch_number) for record in records]
            results = [future.result() for future in futures]

        written: list[RecordId] = []
        failures: list[FailedItem] = []
        category_deltas: dict[str, int] = {}
        rate_limit_delay = 0
        successful = 0
        for item in results:
            rate_limit_delay += item.rate_limit_delay_ms
            if item.outcome == ItemOutcome.FAILED and item.failure is not None:
                key = item.failure.category.value
                category_deltas[key] = category_deltas.get(key, 0) + 1
                state.failed_items.append(item.failure)
                failures.append(item.failure)
                continue
            successful += 1
            if item.duplicate_skipped:
                state.duplicates_skipped += 1
            if item.duplicate_updated:
                state.duplicates_updated += 1
            if item.outcome in {ItemOutcome.CREATED, ItemOutcome.UPDATED} and item.target_item_id is not None:
                written.append(item.target_item_id)

        failed = len(results) - successful
        state.processed += len(results)
        state.successful += successful
        state.failed += failed
        throughput.complete_batch(
            batch_number,
            batch_started,
            len(results),
            rate_limited=rate_limit_delay > 0,
            rate_limit_delay_ms=rate_limit_delay,
        )

        checkpoint = BatchCheckpoint(
            batch_number=batch_number,
            offset=offset,
            limit=context.config.batch_size,
            started_at=started_at,
            status=CheckpointStatus.COMPLETED,
            completed_item_ids=written,
            completed_at=self._now(),
            items_processed=len(results),
            items_successful=successful,
            items_failed=failed,
        )
        metrics = throughput.metrics(state.total, state.processed)

        def apply(job: Job) -> None:
            now = self._now()
            progress = job.progress or empty_progress(now)
            categories = dict(progress.failed_items_by_category)
            for key, delta in category_deltas.items():
                categories[key] = categories.get(key, 0) + delta
            job.progress = merge_progress(
                progress,
                ProgressUpdate(
                    total=state.total,
                    processed=state.processed,
                    successful=state.successful,
                    failed=state.failed,
                    percent=compute_percent(state.processed, state.total),
                    throughput=metrics,
                    batch_checkpoints=[checkpoint],
                    failed_items_by_category=categories,
                ),
                now,
            )
            job.last_heartbeat = now

        with run_lock:
            self._store.mutate(job_id, apply)

        self._log_failures(job_id, failures)

        if state.processed != state.successful + state.failed:
            logger.warning(
                "Counter drift: processed=%s successful=%s failed=%s",
                state.processed,
                state.successful,
                state.failed,
                extra={"job_id": job_id},
            )
        logger.info(
            "Batch %s committed: items=%s successful=%s failed=%s total_processed=%s/%s",
            batch_number,
            len(results),
            successful,
            failed,
            state.processed,
            state.total,
            extra={"job_id": job_id, "stage": "migration"},
        )

        if failed and context.config.stop_on_error:
            first = next(item.failure for item in results if item.failure is not None)
            raise MigrationAbortedError(
                f"Stopping on first item failure: source item {first.source_item_id}: {first.message}"
            )

    def _log_failures(self, job_id: str, failures: list[FailedItem]) -> None:
        """Append failure detail for a committed batch; the job document stays authoritative."""
        for failure in failures:
            try:
                self._failure_log.append(job_id, failure)
            except SQLAlchemyError:
                logger.exception(
                    "Could not record failure detail for source item %s",
                    failure.source_item_id,
                    extra={"job_id": job_id, "stage": "migration"},
                )

    def _migrate_item(self, context: _RunContext, record: Record, batch_number: int) -> ItemResult:
        max_retries = self._settings.item_max_retries
        first_attempt = self._now()
        rate_limit_delay = 0
        attempt = 0
        while True:
            try:
                result = self._write_item(context, record)
                result.rate_limit_delay_ms = rate_limit_delay
                return result
            except Exception as exc:
                classified = classify_error(exc)
                if should_retry(classified.category, attempt, max_retries):
                    delay = retry_delay_ms(
                        attempt,
                        base_ms=classified.retry_delay_ms or self._settings.item_retry_base_ms,
                        max_ms=self._settings.item_retry_max_ms,
                        rng=self._rng,
                    )
                    if classified.category == ErrorCategory.RATE_LIMIT:
                        rate_limit_delay += delay
                    logger.debug(
                        "Retrying source item %s after %s error in %sms (attempt %s)",
                        record.id,
                        classified.category.value,
                        delay,
                        attempt + 1,
                        extra={"job_id": context.job_id},
                    )
                    self._sleep(delay / 1000.0)
                    attempt += 1
                    continue

                logger.debug(
                    "Source item %s failed: %s (%s)",
                    record.id,
                    classified.message,
                    classified.category.value,
                    extra={"job_id": context.job_id},
                )
                target_id = exc.target_item_id if isinstance(exc, DuplicateConflictError) else None
                return ItemResult(
                    source_item_id=record.id,
                    outcome=ItemOutcome.FAILED,
                    failure=FailedItem(
                        source_item_id=record.id,
                        category=classified.category,
                        message=str(exc) or classified.message,
                        code=classified.code,
                        first_attempt_at=first_attempt,
                        last_attempt_at=self._now(),
                        attempt_count=attempt + 1,
                        target_item_id=target_id,
                        batch_number=batch_number,
                    ),
                    rate_limit_delay_ms=rate_limit_delay,
                )

    def _write_item(self, context: _RunContext, record: Record) -> ItemResult:
        config = context.config
        fields = map_record_fields(record, config.field_mapping)
        external_id = f"migrated-{record.id}"

        if context.retry_pass or not config.source_match_field or not config.target_match_field:
            target_id = self._platform.create_record(config.target_collection_id, fields, external_id)
            return ItemResult(source_item_id=record.id, outcome=ItemOutcome.CREATED, target_item_id=target_id)

        source_field = record.field_by_id(config.source_match_field)
        if source_field is None or not source_field.values:
            if config.mode == MigrationMode.CREATE:
                logger.warning(
                    "Source match field %s missing on item %s, skipping to avoid a duplicate",
                    config.source_match_field,
                    record.id,
                    extra={"job_id": context.job_id},
                )
                return ItemResult(source_item_id=record.id, outcome=ItemOutcome.SKIPPED)
            raise ItemValidationError(f"Source match field '{config.source_match_field}' not found in item")

        value = extract_field_value(source_field)
        target_field = config.target_match_field

        def lookup(normalized: str) -> Record | None:
            matches = self._platform.find_records(config.target_collection_id, target_field, normalized)
            return matches[0] if matches else None

        check = context.matcher.check(lookup, config.target_collection_id, target_field, value, source_field.type)
        existing = check.existing

        if existing is None:
            if config.mode == MigrationMode.UPDATE:
                raise ItemValidationError(
                    f"No matching item found for {config.source_match_field}={check.normalized_key or value}"
                )
            target_id = self._platform.create_record(config.target_collection_id, fields, external_id)
            context.matcher.remember(
                config.target_collection_id,
                target_field,
                check.normalized_key,
                Record(id=target_id, external_id=external_id),
            )
            return ItemResult(source_item_id=record.id, outcome=ItemOutcome.CREATED, target_item_id=target_id)

        if config.mode == MigrationMode.CREATE:
            if config.duplicate_policy == DuplicatePolicy.SKIP:
                logger.debug(
                    "Duplicate skipped: source=%s target=%s key=%s",
                    record.id,
                    existing.id,
                    check.normalized_key,
                    extra={"job_id": context.job_id},
                )
                return ItemResult(
                    source_item_id=record.id,
                    outcome=ItemOutcome.SKIPPED,
                    target_item_id=existing.id,
                    duplicate_skipped=True,
                )
            if config.duplicate_policy == DuplicatePolicy.ERROR:
                raise DuplicateConflictError(
                    f"Duplicate item found for {config.source_match_field}={check.normalized_key} "
                    f"(source: {record.id}, target: {existing.id})",
                    record.id,
                    existing.id,
                )

        self._platform.update_record(existing.id, fields)
        return ItemResult(
            source_item_id=record.id,
            outcome=ItemOutcome.UPDATED,
            target_item_id=existing.id,
            duplicate_updated=config.mode == MigrationMode.CREATE,
        )

    def _finish(
        self,
        job_id: str,
        outcome: JobStatus,
        throughput: ThroughputCalculator,
        state: _RunState,
        error: str | None = None,
        code: str | None = None,
    ) -> None:
        metrics = throughput.metrics(state.total, state.processed)

        def apply(job: Job) -> None:
            now = self._now()
            if job.status not in RUNNING_STATUSES:
                logger.warning(
                    "Job moved to %s while running, leaving status unchanged",
                    job.status.value,
                    extra={"job_id": job_id},
                )
                return
            enforce_transition(job.status, outcome)
            job.status = outcome
            if outcome != JobStatus.PAUSED:
                job.completed_at = now
            if error is not None:
                job.errors.append(JobError(step="migration_execution", message=error, code=code, timestamp=now))
            if outcome == JobStatus.COMPLETED:
                job.metadata = {
                    key: value
                    for key, value in job.metadata.items()
                    if key not in {"resumeToken", "retryItemIds", "retryStartBatch"}
                }
            progress = job.progress or empty_progress(now)
            job.progress = merge_progress(progress, ProgressUpdate(throughput=metrics), now)

        job = self._store.mutate(job_id, apply)
        if outcome == JobStatus.PAUSED:
            self._coordinator.clear_pause_request(job_id)

        step_id = self._migration_step_id(job)
        if step_id is not None and outcome != JobStatus.PAUSED:
            step_status = StepStatus.COMPLETED if outcome == JobStatus.COMPLETED else StepStatus.FAILED
            self._store.update_step(job_id, step_id, status=step_status, completed_at=self._now(), error=error)
        logger.info("Job marked %s", job.status.value, extra={"job_id": job_id, "stage": "migration"})
