from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from types import FrameType, TracebackType

from recordshift.core.config import Settings
from recordshift.core.logging import flush_logging
from recordshift.jobs.lifecycle import JobLifecycleMonitor
from recordshift.jobs.service import enforce_transition
from recordshift.jobs.store import JobNotFoundError, JobStateStore
from recordshift.jobs.types import RUNNING_STATUSES, STOPPED_STATUSES, TERMINAL_STATUSES, Job, JobError, JobStatus

logger = logging.getLogger(__name__)

STALE_JOB_FORCE_CANCELLED = "STALE_JOB_FORCE_CANCELLED"

ShutdownCallback = Callable[[], None]


class PauseTimeoutError(RuntimeError):
    pass


class ShutdownCoordinator:
    """Registry of running jobs plus the cooperative pause/shutdown protocol.

    Engines register a callback per job that stops the run after the batch
    in flight and leaves the job ``paused``. Signals and uncaught errors call
    every callback concurrently, flush logging, then exit the process.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStateStore,
        monitor: JobLifecycleMonitor,
        *,
        exit_func: Callable[[int], None] = os._exit,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._store = store
        self._monitor = monitor
        self._exit = exit_func
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._callbacks: dict[str, ShutdownCallback] = {}
        self._pause_requests: set[str] = set()
        self._shutdown_requested = False
        self._handlers_installed = False

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    # -- registries ------------------------------------------------------

    def register_active(self, job_id: str) -> None:
        with self._lock:
            self._active.add(job_id)
            total = len(self._active)
        logger.debug("Registered active job (total=%s)", total, extra={"job_id": job_id})

    def unregister_active(self, job_id: str) -> None:
        with self._lock:
            self._active.discard(job_id)
            self._callbacks.pop(job_id, None)
            self._pause_requests.discard(job_id)
            remaining = len(self._active)
        logger.debug("Unregistered active job (remaining=%s)", remaining, extra={"job_id": job_id})

    def register_callback(self, job_id: str, callback: ShutdownCallback) -> None:
        with self._lock:
            self._callbacks[job_id] = callback

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def request_pause(self, job_id: str) -> None:
        with self._lock:
            self._pause_requests.add(job_id)
        logger.info("Pause requested", extra={"job_id": job_id})

    def is_pause_requested(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._pause_requests or self._shutdown_requested

    def clear_pause_request(self, job_id: str) -> None:
        with self._lock:
            self._pause_requests.discard(job_id)

    def is_shutdown_requested(self) -> bool:
        with self._lock:
            return self._shutdown_requested

    # -- process shutdown ------------------------------------------------

    def initiate_shutdown(self, reason: str, exit_code: int = 0, *, exit_process: bool = True) -> None:
        with self._lock:
            if self._shutdown_requested:
                logger.warning("Shutdown already in progress (reason=%s)", reason)
                return
            self._shutdown_requested = True
            callbacks = list(self._callbacks.items())
            active = len(self._active)

        logger.info("Initiating graceful shutdown: reason=%s active_jobs=%s", reason, active)
        if callbacks:
            with ThreadPoolExecutor(max_workers=len(callbacks), thread_name_prefix="shutdown") as pool:
                futures = {pool.submit(callback): job_id for job_id, callback in callbacks}
                wait(futures)
                for future, job_id in futures.items():
                    error = future.exception()
                    if error is not None:
                        logger.error(
                            "Shutdown callback failed: %s",
                            error,
                            exc_info=error,
                            extra={"job_id": job_id, "stage": "shutdown"},
                        )

        logger.info("Flushing log buffers")
        flush_logging()
        logger.info("Graceful shutdown complete")
        flush_logging()
        if exit_process:
            self._exit(exit_code)

    def install_signal_handlers(self) -> None:
        if self._handlers_installed:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Signal handlers can only be installed from the main thread")
            return

        for name in ("SIGTERM", "SIGINT", "SIGUSR2"):
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, self._handle_signal)

        previous_excepthook = sys.excepthook

        def excepthook(
            exc_type: type[BaseException],
            exc: BaseException,
            tb: TracebackType | None,
        ) -> None:
            logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
            if issubclass(exc_type, KeyboardInterrupt):
                previous_excepthook(exc_type, exc, tb)
                return
            self.initiate_shutdown("uncaught_exception", exit_code=1)

        def thread_excepthook(args: threading.ExceptHookArgs) -> None:
            if args.exc_type is SystemExit:
                return
            logger.critical(
                "Uncaught exception in thread %s",
                args.thread.name if args.thread is not None else "?",
                exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            )
            self.initiate_shutdown("uncaught_thread_exception", exit_code=1)

        sys.excepthook = excepthook
        threading.excepthook = thread_excepthook
        self._handlers_installed = True
        logger.info("Signal handlers registered")

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.info("Received %s", name)
        # Callbacks block until their batch finishes; keep the handler itself short.
        threading.Thread(target=self.initiate_shutdown, args=(name,), name="shutdown", daemon=False).start()

    # -- UI pause ----------------------------------------------------------

    def pause_job(self, job_id: str) -> Job:
        """Stop a job at its next batch boundary and wait until it reports a stopped status."""
        logger.info("Pause request initiated", extra={"job_id": job_id, "stage": "pause_operation"})
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(
                f"Migration not found: {job_id}. The job document may be missing or corrupted."
            )

        if job.status in STOPPED_STATUSES or job.status in TERMINAL_STATUSES:
            logger.info("Job already %s", job.status.value, extra={"job_id": job_id})
            self.clear_pause_request(job_id)
            return job

        if job.status not in RUNNING_STATUSES:
            logger.info(
                "Job is %s and not executing; nothing to pause",
                job.status.value,
                extra={"job_id": job_id, "stage": "pause_operation"},
            )
            self.clear_pause_request(job_id)
            return job

        if not self._monitor.is_active(job_id):
            return self._force_cancel(job)

        self.request_pause(job_id)
        logger.info("Waiting for active job to pause gracefully", extra={"job_id": job_id})

        timeout = float(self._settings.pause_timeout_seconds)
        started = self._clock()
        checks = 0
        while self._clock() - started < timeout:
            current = self._store.get(job_id)
            if current is None:
                raise JobNotFoundError(
                    f"Job document became unreadable during pause: {job_id}. Check the jobs root for backup files."
                )
            if current.status in STOPPED_STATUSES or current.status in TERMINAL_STATUSES:
                logger.info("Job stopped with status %s", current.status.value, extra={"job_id": job_id})
                self.clear_pause_request(job_id)
                return current

            checks += 1
            if checks % self._settings.pause_log_every_polls == 0:
                logger.info(
                    "Still waiting for job to pause: status=%s elapsed=%ss timeout=%ss",
                    current.status.value,
                    round(self._clock() - started),
                    round(timeout),
                    extra={"job_id": job_id, "stage": "pause_operation"},
                )
            self._sleep(self._settings.pause_poll_seconds)

        final = self._store.get(job_id)
        status = final.status.value if final is not None else "unknown"
        logger.error(
            "Timeout waiting for job to pause: status=%s",
            status,
            extra={"job_id": job_id, "stage": "pause_operation"},
        )
        raise PauseTimeoutError(
            f"Timeout waiting for migration {job_id} to stop after {round(timeout)} seconds. "
            f"Current status: {status}. The migration may be processing a large batch. "
            "You can try again or use the admin API to force-cancel the job."
        )

    def _force_cancel(self, job: Job) -> Job:
        logger.warning(
            "Job claims %s but has no recent heartbeat, force-cancelling",
            job.status.value,
            extra={"job_id": job.id, "stage": "pause_operation"},
        )
        previous = job.status

        def apply(current: Job) -> None:
            now = self._now()
            enforce_transition(current.status, JobStatus.CANCELLED)
            current.status = JobStatus.CANCELLED
            current.completed_at = now
            current.errors.append(
                JobError(
                    step="pause_operation",
                    message=(
                        f'Job was in "{previous.value}" status but was not actually running '
                        "(no recent heartbeat). Marked as cancelled during pause request."
                    ),
                    code=STALE_JOB_FORCE_CANCELLED,
                    timestamp=now,
                )
            )

        cancelled = self._store.mutate(job.id, apply)
        self.clear_pause_request(job.id)
        return cancelled
