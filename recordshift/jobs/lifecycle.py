from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

from recordshift.core.config import Settings
from recordshift.jobs.service import enforce_transition
from recordshift.jobs.store import JobNotFoundError, JobStateStore, JobStoreWriteError
from recordshift.jobs.types import RUNNING_STATUSES, HealthStatus, Job, JobError, JobHealth, JobStatus

logger = logging.getLogger(__name__)

STALE_JOB_CLEANUP = "STALE_JOB_CLEANUP"
STALE_JOB_MESSAGE = (
    "Job marked as failed due to missing heartbeat. "
    "The job appears to have been orphaned (server restart or crash)."
)


def is_job_active_from(job: Job, now: datetime, stale_after: timedelta) -> bool:
    """A running job is alive while its heartbeat (or start, before the first beat) is fresh."""
    if job.status not in RUNNING_STATUSES:
        return False
    reference = job.last_heartbeat if job.last_heartbeat is not None else job.started_at
    return now - reference < stale_after


class JobLifecycleMonitor:
    def __init__(self, settings: Settings, store: JobStateStore):
        self._settings = settings
        self._store = store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self._settings.stale_after_seconds)

    @property
    def heartbeat_interval(self) -> float:
        return float(self._settings.heartbeat_interval_seconds)

    def is_active(self, job_id: str) -> bool:
        job = self._store.get(job_id)
        if job is None:
            logger.debug("Job not found when checking liveness", extra={"job_id": job_id})
            return False
        active = is_job_active_from(job, self._now(), self.stale_after)
        if not active and job.status in RUNNING_STATUSES:
            logger.debug(
                "Job %s claims %s but its heartbeat is stale (last=%s)",
                job_id,
                job.status.value,
                job.last_heartbeat,
                extra={"job_id": job_id},
            )
        return active

    def update_heartbeat(self, job_id: str) -> bool:
        job = self._store.get(job_id)
        if job is None:
            logger.warning("Cannot update heartbeat, job not found", extra={"job_id": job_id})
            return False
        if job.status not in RUNNING_STATUSES:
            logger.debug("Skipping heartbeat for %s job", job.status.value, extra={"job_id": job_id})
            return False
        job.last_heartbeat = self._now()
        try:
            self._store.save(job)
        except JobStoreWriteError:
            logger.exception("Failed to persist heartbeat", extra={"job_id": job_id, "stage": "heartbeat"})
            return False
        return True

    def find_stale(self) -> list[Job]:
        now = self._now()
        return [
            job
            for job in self._store.list()
            if job.status in RUNNING_STATUSES and not is_job_active_from(job, now, self.stale_after)
        ]

    def cleanup_stale(self) -> int:
        candidates = self.find_stale()
        if not candidates:
            logger.info("No stale jobs found")
            return 0

        logger.warning("Found %s stale job(s): %s", len(candidates), [job.id for job in candidates])
        cleaned = 0
        for candidate in candidates:
            fresh = self._store.get(candidate.id)
            if fresh is None or fresh.status not in RUNNING_STATUSES:
                logger.debug("Skip cleanup, job no longer running", extra={"job_id": candidate.id})
                continue
            now = self._now()
            if is_job_active_from(fresh, now, self.stale_after):
                logger.debug("Skip cleanup, job became active", extra={"job_id": fresh.id})
                continue

            try:
                self._mark_failed(fresh.id, now)
            except (JobNotFoundError, JobStoreWriteError):
                logger.exception("Failed to clean up stale job", extra={"job_id": fresh.id})
                continue
            cleaned += 1

        logger.info("Stale job cleanup complete: cleaned=%s detected=%s", cleaned, len(candidates))
        return cleaned

    def _mark_failed(self, job_id: str, now: datetime) -> None:
        def apply(job: Job) -> None:
            enforce_transition(job.status, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.errors.append(
                JobError(step="job_lifecycle", message=STALE_JOB_MESSAGE, code=STALE_JOB_CLEANUP, timestamp=now)
            )

        self._store.mutate(job_id, apply)
        logger.warning("Marked stale job as failed", extra={"job_id": job_id, "stage": "job_lifecycle"})

    def get_health(self, job_id: str) -> JobHealth:
        job = self._store.get(job_id)
        if job is None:
            return JobHealth(
                job_id=job_id,
                status="not_found",
                is_active=False,
                health_status=HealthStatus.NOT_RUNNING,
            )

        now = self._now()
        active = is_job_active_from(job, now, self.stale_after)
        seconds_since = (now - job.last_heartbeat).total_seconds() if job.last_heartbeat is not None else None
        if job.status not in RUNNING_STATUSES:
            health = HealthStatus.NOT_RUNNING
        elif active:
            health = HealthStatus.HEALTHY
        else:
            health = HealthStatus.STALE
        return JobHealth(
            job_id=job_id,
            status=job.status.value,
            is_active=active,
            health_status=health,
            last_heartbeat=job.last_heartbeat,
            seconds_since_heartbeat=seconds_since,
        )


class HeartbeatTicker:
    """Background thread that stamps a job's heartbeat at a fixed interval.

    ``lock`` is shared with the run loop so a heartbeat never interleaves
    with a batch commit on the same document.
    """

    def __init__(
        self,
        monitor: JobLifecycleMonitor,
        job_id: str,
        *,
        interval: float | None = None,
        lock: threading.Lock | None = None,
    ):
        self._monitor = monitor
        self._job_id = job_id
        self._interval = interval if interval is not None else monitor.heartbeat_interval
        self._lock = lock or threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> "HeartbeatTicker":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{self._job_id}", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            with self._lock:
                try:
                    self._monitor.update_heartbeat(self._job_id)
                except (JobNotFoundError, OSError, ValueError):
                    logger.exception("Heartbeat tick failed", extra={"job_id": self._job_id, "stage": "heartbeat"})

    def __enter__(self) -> "HeartbeatTicker":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def run_startup_recovery(monitor: JobLifecycleMonitor) -> int:
    """Reconcile jobs orphaned by a previous process. Never raises."""
    logger.info("Running startup recovery")
    try:
        stale = monitor.find_stale()
        if not stale:
            logger.info("Startup recovery: no stale jobs found")
            return 0
        logger.warning("Startup recovery: found %s stale job(s) from a previous session", len(stale))
        cleaned = monitor.cleanup_stale()
    except Exception:
        logger.exception("Startup recovery failed")
        return 0
    logger.info("Startup recovery complete: found=%s cleaned=%s", len(stale), cleaned)
    return cleaned
