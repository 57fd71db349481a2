from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from knowledge_service.core.config import Settings, settings as default_settings
from knowledge_service.core.errors import UnknownJobTypeError, error_code_of, is_retryable
from knowledge_service.core.logging import clear_job_context, log_event, set_job_context
from knowledge_service.db.entities import Job, JobRun, new_id, utcnow
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.workers.payloads import account_id_of
from knowledge_service.workers.queue import compute_backoff

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]
JobHandler = Callable[[Job, ProgressCallback], dict[str, Any] | None]

STAT_KEYS = ("discovered", "processed", "skipped", "failed")


class JobHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def list_registered(self) -> list[str]:
        return sorted(self._handlers.keys())


class ThrottledProgressWriter:
    """Keeps the latest progress stats and writes them to the run at most once per interval."""

    def __init__(
        self,
        repo: CorpusRepository,
        run_id: str,
        interval_seconds: float,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repo = repo
        self.run_id = run_id
        self.interval_seconds = interval_seconds
        self.monotonic = monotonic
        self.latest: dict[str, Any] = {}
        self.writes = 0
        self._last_write: float | None = None

    def report(self, stats: dict[str, Any]) -> None:
        self.latest = {**self.latest, **stats}
        now = self.monotonic()
        final = stats.get("stage") in ("done", "error")
        if not final and self._last_write is not None and now - self._last_write < self.interval_seconds:
            return
        self._last_write = now
        try:
            self.repo.update_job_run(self.run_id, stats=dict(self.latest))
            self.writes += 1
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("job_progress_write_failed", extra={"run_id": self.run_id, "error": str(exc)})


class JobRunner:
    """Polls the repository for due jobs and runs them through registered handlers.

    One poll cycle sweeps expired locks, claims a single job, applies the
    per-account concurrency slot and rate-limit bucket, then executes the
    handler and records the outcome on the job and its run.
    """

    def __init__(
        self,
        repo: CorpusRepository,
        registry: JobHandlerRegistry,
        worker_id: str | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.registry = registry
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.settings = settings or default_settings
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep_stale_locks(self, now: datetime) -> int:
        locked_before = now - timedelta(seconds=self.settings.JOB_LOCK_TIMEOUT_SECONDS)
        unlocked = 0
        for job in self.repo.list_stale_running_jobs(locked_before):
            if not job.locked_by:
                continue
            if not self.repo.unlock_stale_job(job.id, job.locked_by):
                continue
            unlocked += 1
            for run in self.repo.list_job_runs(job.id):
                if run.status == "running":
                    self.repo.update_job_run(
                        run.id,
                        status="failed",
                        finished_at=now,
                        error=f"Lock held by {job.locked_by} expired",
                        error_code="J-LOCK-EXPIRED",
                    )
            LOGGER.warning("job_stale_lock_released", extra={"job_id": job.id, "locked_by": job.locked_by})
        return unlocked

    def run_once(self) -> bool:
        """Run one poll cycle; returns True when a job was claimed."""
        now = self.clock()
        self.sweep_stale_locks(now)
        job = self.repo.claim_next_job(self.worker_id, now)
        if job is None:
            return False
        set_job_context(job_id=job.id, worker_id=self.worker_id)
        try:
            self._admit_and_execute(job)
        finally:
            clear_job_context()
        return True

    def _concurrency_limit(self, connector_type: str) -> int:
        if connector_type == "upload":
            return self.settings.CONNECTOR_UPLOAD_MAX_CONCURRENCY
        return self.settings.CONNECTOR_DEFAULT_MAX_CONCURRENCY

    def _rate_limit(self, connector_type: str) -> tuple[float, float]:
        if connector_type == "upload":
            return self.settings.RATE_LIMIT_UPLOAD_MAX_TOKENS, self.settings.RATE_LIMIT_UPLOAD_REFILL_PER_SECOND
        return self.settings.RATE_LIMIT_DEFAULT_MAX_TOKENS, self.settings.RATE_LIMIT_DEFAULT_REFILL_PER_SECOND

    def _admit_and_execute(self, job: Job) -> None:
        if not job.connector_type:
            self._execute(job)
            return

        account_id = account_id_of(job.input) or job.user_id
        if not self.repo.try_acquire_concurrency_slot(job.connector_type, account_id, self._concurrency_limit(job.connector_type)):
            self._defer(job, self.settings.JOB_CONCURRENCY_RETRY_DELAY_SECONDS, "concurrency_limit")
            return
        try:
            max_tokens, refill_rate = self._rate_limit(job.connector_type)
            has_token = self.repo.consume_rate_limit_token(
                account_id,
                job.connector_type,
                max_tokens=max_tokens,
                refill_rate=refill_rate,
                now=self.clock(),
            )
            if not has_token:
                self._defer(job, self.settings.JOB_RATE_LIMIT_RETRY_DELAY_SECONDS, "rate_limited")
                return
            self._execute(job)
        finally:
            self.repo.release_concurrency_slot(job.connector_type, account_id)

    def _defer(self, job: Job, delay_seconds: float, reason: str) -> None:
        next_run_at = self.clock() + timedelta(seconds=delay_seconds)
        self.repo.release_job(job.id, self.worker_id, next_run_at)
        LOGGER.info("job_deferred", extra={"job_id": job.id, "reason": reason, "next_run_at": next_run_at.isoformat()})

    def _execute(self, job: Job) -> None:
        started = time.monotonic()
        run = self.repo.create_job_run(
            JobRun(id=new_id(), job_id=job.id, attempt_number=job.attempts + 1, started_at=self.clock())
        )
        progress = ThrottledProgressWriter(self.repo, run.id, self.settings.JOB_PROGRESS_WRITE_INTERVAL_SECONDS)
        LOGGER.info("job_started", extra={"job_id": job.id, "job_type": job.type, "attempt": run.attempt_number})
        try:
            handler = self.registry.get(job.type)
            output = handler(job, progress.report) or {}
        except Exception as exc:  # noqa: BLE001
            self._fail(job, run, exc, started, progress.latest)
            return
        self._complete(job, run, output, started, progress.latest)

    def _finish(self, job: Job, **changes: Any) -> bool:
        if self.repo.finish_job(job.id, self.worker_id, **changes) is not None:
            return True
        # The stale-lock sweep released the job while the handler was running.
        LOGGER.warning("job_lock_lost", extra={"job_id": job.id, "worker_id": self.worker_id, "intended_status": changes.get("status")})
        return False

    def _complete(self, job: Job, run: JobRun, output: dict[str, Any], started: float, progress: dict[str, Any]) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        stats = {**progress, **{key: output[key] for key in STAT_KEYS if key in output}, "duration_ms": duration_ms}
        now = self.clock()
        self.repo.update_job_run(run.id, status="completed", finished_at=now, stats=stats)
        if not self._finish(
            job,
            status="completed",
            output=output,
            attempts=run.attempt_number,
            completed_at=now,
            locked_by=None,
            locked_at=None,
            last_error=None,
            last_error_code=None,
        ):
            return
        log_event(
            "job.completed",
            payload={"job_type": job.type, "attempt": run.attempt_number, "duration_ms": duration_ms},
            job_id=job.id,
        )

    def _fail(self, job: Job, run: JobRun, exc: Exception, started: float, progress: dict[str, Any]) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        error_code = error_code_of(exc)
        retryable = is_retryable(exc)
        attempts = job.attempts + 1
        now = self.clock()
        self.repo.update_job_run(
            run.id,
            status="failed",
            finished_at=now,
            stats={**progress, "duration_ms": duration_ms},
            error=str(exc),
            error_code=error_code,
        )

        if not retryable or attempts >= job.max_attempts:
            if not self._finish(
                job,
                status="dead_letter",
                attempts=attempts,
                completed_at=now,
                locked_by=None,
                locked_at=None,
                last_error=str(exc),
                last_error_code=error_code,
            ):
                return
            log_event(
                "job.dead_lettered",
                level=logging.ERROR,
                payload={"job_type": job.type, "attempts": attempts, "error_code": error_code, "retryable": retryable},
                job_id=job.id,
            )
            return

        backoff = compute_backoff(
            attempts,
            base_seconds=self.settings.JOB_BACKOFF_BASE_SECONDS,
            max_seconds=self.settings.JOB_BACKOFF_MAX_SECONDS,
        )
        next_run_at = now + timedelta(seconds=backoff)
        if not self._finish(
            job,
            status="pending",
            attempts=attempts,
            next_run_at=next_run_at,
            locked_by=None,
            locked_at=None,
            last_error=str(exc),
            last_error_code=error_code,
        ):
            return
        log_event(
            "job.retry_scheduled",
            level=logging.WARNING,
            payload={"job_type": job.type, "attempts": attempts, "error_code": error_code, "backoff_seconds": backoff},
            job_id=job.id,
        )

    def run_forever(self, poll_interval_seconds: float | None = None, stop_event: threading.Event | None = None) -> None:
        interval = self.settings.JOB_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        stop_event = stop_event or self._stop_event
        LOGGER.info("job_runner_started", extra={"worker_id": self.worker_id})
        while not stop_event.is_set():
            try:
                has_work = self.run_once()
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("job_runner_poll_failed", extra={"worker_id": self.worker_id, "error": str(exc)})
                has_work = False
            if not has_work:
                stop_event.wait(max(0.1, interval))
        LOGGER.info("job_runner_stopped", extra={"worker_id": self.worker_id})

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name=self.worker_id, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
