# services/job_processor.py
"""
Async job processor.

Lifecycle of a job:

    queue_job  -> pending (persisted, first run scheduled immediately)
    process_job: pending -> processing (atomic claim)
        success -> completed (+ signed callback, JobCompleted event)
        failure -> pending again with retry_count + 1, rescheduled after
                   2**retry_count * 60 seconds, until max retries are used
                -> failed (JobFailed event)

Completed and failed jobs are terminal; only cleanup_old_jobs removes them.
"""

import base64
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from gateway.core.config import Settings, get_settings
from gateway.core.errors import (
    InvalidJobTypeError,
    JobAlreadyProcessedError,
    JobExecutionError,
    JobNotFoundError,
    JobQueueError,
)
from gateway.core.logger import get_logger
from gateway.schemas.job_models import Job, JobStatus, JobType, parse_job_type, utc_now
from gateway.services.callback_delivery import CallbackDispatcher
from gateway.services.events import EventBus, JobCompleted, JobFailed
from gateway.services.job_handlers import JobHandler
from gateway.services.job_store import JobStore
from gateway.services.scheduler import Scheduler

logger = get_logger("jobs")

BACKOFF_BASE_SECONDS = 60

"""
Executor hook: (job_type, input_payload, job) -> result, or None to pass
the job on to the next executor / the registered handler.
"""
JobExecutor = Callable[[JobType, Any, Job], Any]


def backoff_delay(retry_count: int, cap: Optional[int] = None) -> int:
    """Seconds to wait before attempt ``retry_count`` (1-based) is retried."""
    delay = (2 ** retry_count) * BACKOFF_BASE_SECONDS
    if cap is not None:
        delay = min(delay, cap)
    return delay


def _serialize_input(input_data: Any) -> str:
    if isinstance(input_data, (bytes, bytearray)):
        try:
            input_data = bytes(input_data).decode("utf-8")
        except UnicodeDecodeError:
            # Binary payloads are kept as a base64 envelope
            return json.dumps({"encoding": "base64", "data": base64.b64encode(input_data).decode("ascii")})
    if isinstance(input_data, str):
        try:
            json.loads(input_data)
            return input_data
        except ValueError:
            return json.dumps(input_data)
    try:
        return json.dumps(input_data if input_data is not None else {})
    except (TypeError, ValueError) as e:
        raise JobQueueError(
            f"Input data is not JSON serializable: {e}",
            code="invalid_input_data",
            http_status=400,
        ) from e


class AsyncJobProcessor:
    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        events: Optional[EventBus] = None,
        callbacks: Optional[CallbackDispatcher] = None,
        handlers: Optional[Dict[JobType, JobHandler]] = None,
        settings_provider: Callable[[], Settings] = get_settings,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.scheduler = scheduler
        self.events = events or EventBus()
        self.callbacks = callbacks
        self._handlers: Dict[JobType, JobHandler] = dict(handlers or {})
        self._executors: List[JobExecutor] = []
        self._settings = settings_provider
        self._now = now

    # ====================================
    # Extension points
    # ====================================

    def register_handler(self, job_type: Any, handler: JobHandler) -> None:
        parsed = parse_job_type(job_type)
        if parsed is None:
            raise InvalidJobTypeError(f"Invalid job type: {job_type}")
        self._handlers[parsed] = handler

    def register_executor(self, executor: JobExecutor) -> None:
        self._executors.append(executor)

    # ====================================
    # Submission
    # ====================================

    def queue_job(
        self,
        job_type: Any,
        input_data: Any,
        callback_url: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Persist a pending job and schedule its first run. Returns job_id."""
        parsed = parse_job_type(job_type)
        if parsed is None:
            raise InvalidJobTypeError(f"Invalid job type: {job_type}")

        job = Job(
            job_type=parsed,
            input_data=_serialize_input(input_data),
            callback_url=callback_url or None,
            session_id=session_id or None,
        )

        try:
            self.store.create(job)
        except Exception as e:
            logger.error(f"Failed to persist job: type={parsed.value}, error={e}")
            raise JobQueueError("Failed to queue job") from e

        try:
            self.scheduler.schedule(job.job_id, 0)
        except Exception as e:
            # Record is durable; recover_pending picks it up on next start
            logger.error(f"Failed to schedule job {job.job_id}: {e}")

        logger.info(
            "Job queued",
            extra={"job_id": job.job_id, "job_type": parsed.value, "session_id": job.session_id}
        )
        return job.job_id

    # ====================================
    # Execution
    # ====================================

    def process_job(self, job_id: str) -> Any:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")

        if job.status != JobStatus.PENDING:
            raise JobAlreadyProcessedError(f"Job {job_id} is already {job.status.value}")

        claimed = self.store.compare_and_set_status(job_id, [JobStatus.PENDING], JobStatus.PROCESSING)
        if claimed is None:
            raise JobAlreadyProcessedError(f"Job {job_id} was claimed by another worker")

        logger.info(f"Processing job {job_id} ({claimed.job_type.value}), attempt {claimed.retry_count + 1}")

        try:
            result = self._execute(claimed)
            output_data = json.dumps(result)
        except Exception as e:
            self._handle_failure(claimed, e)
            raise JobExecutionError(f"Job {job_id} failed: {e}") from e

        claimed.status = JobStatus.COMPLETED
        claimed.output_data = output_data
        claimed.completed_at = self._now()
        self.store.update(claimed)
        logger.info(f"Job completed: {job_id}")

        if claimed.callback_url and self.callbacks is not None:
            self.callbacks.dispatch(claimed.callback_url, job_id, result)

        self.events.publish(JobCompleted(
            job_id=job_id,
            job_type=claimed.job_type.value,
            result=result,
            session_id=claimed.session_id,
            retry_count=claimed.retry_count,
        ))
        return result

    def _execute(self, job: Job) -> Any:
        data = job.input_payload()

        for executor in self._executors:
            result = executor(job.job_type, data, job)
            if result is not None:
                return result

        handler = self._handlers.get(job.job_type)
        if handler is None:
            raise InvalidJobTypeError(f"No handler registered for {job.job_type.value}")
        return handler(data, job)

    def _handle_failure(self, job: Job, error: Exception) -> None:
        settings = self._settings()
        job.error_message = str(error) or type(error).__name__

        if job.retry_count < settings.JOB_MAX_RETRIES:
            job.retry_count += 1
            job.status = JobStatus.PENDING
            self.store.update(job)

            delay = backoff_delay(job.retry_count, settings.JOB_MAX_BACKOFF_SECONDS)
            self.scheduler.schedule(job.job_id, delay)
            logger.warning(
                f"Job {job.job_id} failed, retry {job.retry_count}/{settings.JOB_MAX_RETRIES} in {delay}s: "
                f"{job.error_message}"
            )
            return

        job.status = JobStatus.FAILED
        job.completed_at = self._now()
        self.store.update(job)
        logger.error(
            f"Job {job.job_id} failed permanently after {job.retry_count} retries: {job.error_message}"
        )
        self.events.publish(JobFailed(
            job_id=job.job_id,
            job_type=job.job_type.value,
            error_message=job.error_message,
            session_id=job.session_id,
            retry_count=job.retry_count,
        ))

    # ====================================
    # Queries & maintenance
    # ====================================

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job.status_view()

    def cleanup_old_jobs(self, days: Optional[int] = None) -> int:
        """Delete completed/failed jobs whose completed_at is older than ``days``."""
        if days is None:
            days = self._settings().JOB_RETENTION_DAYS
        cutoff = self._now() - timedelta(days=days)
        deleted = self.store.delete_terminal_before(cutoff)
        if deleted:
            logger.info(f"Cleaned up {deleted} jobs older than {days} days")
        return deleted

    def recover_pending(self) -> int:
        """Reschedule every pending job found in the store (after a restart)."""
        pending = self.store.list_by_status(JobStatus.PENDING)
        cap = self._settings().JOB_MAX_BACKOFF_SECONDS
        for job in pending:
            delay = backoff_delay(job.retry_count, cap) if job.retry_count else 0
            self.scheduler.schedule(job.job_id, delay)
        if pending:
            logger.info(f"Rescheduled {len(pending)} pending jobs")
        return len(pending)
