"""In-process scheduler for deferred payment captures.

Each order has at most one live job. Jobs run on an APScheduler
``BackgroundScheduler`` and are dispatched by whichever of two triggers
reaches them first:

  1. a one-shot ``date`` job, added at schedule time for ``due_at``
  2. the ``interval`` sweep job, which picks up overdue jobs whose date job
     never ran (host sleep, a missed wake-up, a stop/start cycle)

Both triggers go through ``_dispatch``, which claims the job by moving it from
PENDING to EXECUTING under the registry lock. The capture call itself runs
outside the lock.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from src.capture_scheduler.logger import CaptureLogger
from src.capture_scheduler.retry import RetryPolicy
from src.errors import CaptureFailure, PermissionDenied, PlatformError, ValidationError
from src.models.capture import CaptureOutcome, CaptureRecord
from src.models.job import JobState, JobSummary, ScheduledCaptureJob
from src.observability.alerting import AlertManager
from src.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "capture-sweep"
RECONCILE_JOB_ID = "capture-reconcile"


class CaptureCapability(Protocol):
    def capture(self, order_id: str, transaction_id: str) -> dict: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def background_scheduler() -> BaseScheduler:
    return BackgroundScheduler(timezone="UTC")


class DeferredCaptureScheduler:
    """Schedules, dispatches and cancels deferred capture jobs."""

    def __init__(
        self,
        capture_client: CaptureCapability,
        clock: Callable[[], datetime] = utcnow,
        job_scheduler_factory: Callable[[], BaseScheduler] = background_scheduler,
        retry_policy: RetryPolicy | None = None,
        capture_logger: CaptureLogger | None = None,
        metrics: MetricsCollector | None = None,
        alert_manager: AlertManager | None = None,
        sweep_interval_seconds: float = 60,
        reconcile_interval_seconds: float = 24 * 60 * 60,
    ):
        self.capture_client = capture_client
        self.clock = clock
        self.job_scheduler_factory = job_scheduler_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.capture_logger = capture_logger or CaptureLogger()
        self.metrics = metrics
        self.alert_manager = alert_manager
        self.sweep_interval_seconds = sweep_interval_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds

        self._jobs: dict[str, ScheduledCaptureJob] = {}  # order_id -> live job
        self._job_scheduler: BaseScheduler | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the job scheduler, arm every pending job and run a first reconciliation."""
        with self._lock:
            if self._job_scheduler is not None:
                return
            job_scheduler = self.job_scheduler_factory()
            job_scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
            job_scheduler.start()
            self._job_scheduler = job_scheduler

            job_scheduler.add_job(
                self.sweep,
                "interval",
                id=SWEEP_JOB_ID,
                seconds=self.sweep_interval_seconds,
                replace_existing=True,
            )
            job_scheduler.add_job(
                self.reconcile,
                "interval",
                id=RECONCILE_JOB_ID,
                seconds=self.reconcile_interval_seconds,
                replace_existing=True,
            )
            now = self.clock()
            for job in self._jobs.values():
                if job.state is JobState.PENDING:
                    self._arm(job, now)
        logger.info("Payment scheduler started (sweep every %ss)", self.sweep_interval_seconds)
        self.reconcile()

    def stop(self) -> None:
        """Shut the job scheduler down. Pending jobs stay registered and are re-armed by start()."""
        with self._lock:
            job_scheduler, self._job_scheduler = self._job_scheduler, None
        if job_scheduler is None:
            return
        job_scheduler.shutdown(wait=False)
        logger.info("Payment scheduler stopped")

    @property
    def running(self) -> bool:
        return self._job_scheduler is not None

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    def schedule(self, order_id: str, transaction_id: str, due_at: datetime) -> str:
        """Schedule a capture for ``order_id`` at ``due_at``.

        Any live job for the same order is cancelled first. A ``due_at`` in
        the past is dispatched as soon as the job scheduler wakes. While the
        scheduler is stopped the job is only registered; ``start()`` arms it.
        Returns the new job id.
        """
        order_id = _require_id("order_id", order_id)
        transaction_id = _require_id("transaction_id", transaction_id)
        if due_at.tzinfo is None:
            due_at = due_at.replace(tzinfo=timezone.utc)

        now = self.clock()
        job = ScheduledCaptureJob(
            job_id=f"cap_{uuid.uuid4().hex[:16]}",
            order_id=order_id,
            transaction_id=transaction_id,
            due_at=due_at,
            created_at=now,
        )
        with self._lock:
            replaced = self._discard(order_id)
            self._jobs[order_id] = job
            self._arm(job, now)

        if replaced is not None:
            logger.info(
                "Replaced scheduled capture %s for order %s", replaced.job_id, order_id
            )
        logger.info(
            "Payment scheduled for order %s at %s (job %s)",
            order_id, due_at.isoformat(), job.job_id,
        )
        return job.job_id

    def schedule_in(self, order_id: str, transaction_id: str, delay_seconds: float) -> str:
        return self.schedule(
            order_id, transaction_id, self.clock() + timedelta(seconds=delay_seconds)
        )

    def cancel(self, order_id: str) -> bool:
        """Cancel the live job for ``order_id``. Returns False if there was none."""
        with self._lock:
            job = self._discard(str(order_id))
        if job is None:
            return False
        logger.info("Cancelled scheduled payment for order %s (job %s)", order_id, job.job_id)
        return True

    def list(self) -> list[JobSummary]:
        """Summaries of every live job, in scheduling order.

        A job whose capture is in flight is still listed, with
        ``state=EXECUTING``, until its outcome is recorded.
        """
        now = self.clock()
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.is_live]
            return [
                JobSummary(
                    job_id=job.job_id,
                    order_id=job.order_id,
                    due_at=job.due_at,
                    time_remaining=max(0.0, (job.due_at - now).total_seconds()),
                    state=job.state,
                )
                for job in jobs
            ]

    def get_job(self, job_id: str) -> ScheduledCaptureJob | None:
        with self._lock:
            for job in self._jobs.values():
                if job.job_id == job_id:
                    return job
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def sweep(self) -> int:
        """Dispatch every overdue PENDING job. Returns how many were dispatched."""
        now = self.clock()
        with self._lock:
            overdue = [
                (job.order_id, job.job_id)
                for job in self._jobs.values()
                if job.state is JobState.PENDING and job.due_at <= now
            ]

        if overdue:
            logger.info("Sweep found %d overdue capture job(s)", len(overdue))
        dispatched = 0
        for order_id, job_id in overdue:
            if self._dispatch(order_id, job_id):
                dispatched += 1
        return dispatched

    def reconcile(self) -> int:
        """Daily pass over pending jobs.

        There is no external store to rebuild the registry from, so this only
        reports what is pending. Returns the number of pending jobs.
        """
        logger.info("Checking for pending pay_later orders...")
        with self._lock:
            pending = [job for job in self._jobs.values() if job.state is JobState.PENDING]
        for job in pending:
            logger.info(
                "Order %s is pending payment capture (due %s)",
                job.order_id, job.due_at.isoformat(),
            )
        return len(pending)

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _on_job_error(self, event) -> None:
        logger.error(
            "Capture scheduler job %s failed: %s", event.job_id, event.exception,
            exc_info=event.exception,
        )

    def _dispatch(self, order_id: str, job_id: str) -> bool:
        """Claim and execute one job. Returns False if another trigger got there first."""
        job = self._claim(order_id, job_id)
        if job is None:
            logger.debug("Capture job %s for order %s no longer pending", job_id, order_id)
            return False
        self._execute(job)
        return True

    def _claim(self, order_id: str, job_id: str) -> ScheduledCaptureJob | None:
        with self._lock:
            job = self._jobs.get(order_id)
            if job is None or job.job_id != job_id or job.state is not JobState.PENDING:
                return None
            job.state = JobState.EXECUTING
            job.attempts += 1
            self._disarm(job_id)
            return job

    def _execute(self, job: ScheduledCaptureJob) -> None:
        logger.info(
            "Executing scheduled payment capture for order %s (attempt %d)",
            job.order_id, job.attempts,
        )
        start = time.monotonic()
        error = None
        try:
            self.capture_client.capture(job.order_id, job.transaction_id)
        except PlatformError as e:
            error = e
        except Exception as e:
            logger.exception("Unexpected error capturing payment for order %s", job.order_id)
            error = e
        elapsed_ms = (time.monotonic() - start) * 1000

        if error is None:
            self._complete(job, elapsed_ms)
        else:
            self._fail(job, error, elapsed_ms)

    def _complete(self, job: ScheduledCaptureJob, elapsed_ms: float) -> None:
        with self._lock:
            job.state = JobState.COMPLETED
            self._release(job)

        self._record(job, CaptureOutcome.CAPTURED, elapsed_ms)
        if self.metrics:
            self.metrics.record(CaptureOutcome.CAPTURED, elapsed_ms)
        if self.alert_manager:
            self.alert_manager.check()
        logger.info(
            "Successfully captured payment for order %s (transaction %s)",
            job.order_id, job.transaction_id,
        )

    def _fail(self, job: ScheduledCaptureJob, error: Exception, elapsed_ms: float) -> None:
        retry = job.attempts - 1
        with self._lock:
            still_owned = self._jobs.get(job.order_id) is job
            if (
                still_owned
                and self.retry_policy.should_retry(error)
                and self.retry_policy.has_attempts_remaining(retry)
            ):
                now = self.clock()
                job.state = JobState.PENDING
                job.due_at = now + timedelta(seconds=self.retry_policy.next_delay(retry))
                self._arm(job, now)
                outcome = CaptureOutcome.RETRYING
            else:
                job.state = JobState.FAILED
                self._release(job)
                outcome = CaptureOutcome.FAILED

        self._record(job, outcome, elapsed_ms, error=str(error))
        if self.metrics:
            self.metrics.record(outcome, elapsed_ms)
        if self.alert_manager:
            self.alert_manager.check()

        failure = CaptureFailure(job.order_id, job.transaction_id, error)
        if outcome is CaptureOutcome.RETRYING:
            logger.warning("%s; retrying at %s", failure, job.due_at.isoformat())
        else:
            logger.error("%s", failure)
        if isinstance(error, PermissionDenied):
            logger.warning(
                "Capture for order %s was refused for lack of permission; "
                "check the app's write_orders scope",
                job.order_id,
            )

    def _record(
        self,
        job: ScheduledCaptureJob,
        outcome: CaptureOutcome,
        elapsed_ms: float,
        error: str | None = None,
    ) -> None:
        self.capture_logger.log(
            CaptureRecord(
                record_id=f"rec_{uuid.uuid4().hex[:16]}",
                job_id=job.job_id,
                order_id=job.order_id,
                transaction_id=job.transaction_id,
                outcome=outcome,
                timestamp=self.clock(),
                elapsed_ms=elapsed_ms,
                error=error,
            )
        )


    # ------------------------------------------------------------------ #
    # Registry helpers, called with the lock held
    # ------------------------------------------------------------------ #

    def _arm(self, job: ScheduledCaptureJob, now: datetime) -> None:
        if self._job_scheduler is None:
            return
        self._job_scheduler.add_job(
            self._dispatch,
            "date",
            id=job.job_id,
            args=(job.order_id, job.job_id),
            run_date=max(job.due_at, now),
            misfire_grace_time=None,
            replace_existing=True,
        )

    def _disarm(self, job_id: str) -> None:
        if self._job_scheduler is None:
            return
        try:
            self._job_scheduler.remove_job(job_id)
        except JobLookupError:
            # Date jobs are dropped by the job scheduler once they have run
            logger.debug("Capture job %s already left the job scheduler", job_id)

    def _discard(self, order_id: str) -> ScheduledCaptureJob | None:
        job = self._jobs.pop(order_id, None)
        if job is None:
            return None
        job.state = JobState.CANCELLED
        self._disarm(job.job_id)
        return job

    def _release(self, job: ScheduledCaptureJob) -> None:
        # A job cancelled or replaced while in flight is no longer the registry entry.
        if self._jobs.get(job.order_id) is job:
            del self._jobs[job.order_id]


def _require_id(name: str, value) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required")
    return str(value)
