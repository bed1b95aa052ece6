# services/job_store.py
"""
Job record persistence: Redis (production) or in-memory (single process).

Storage Structure in Redis:
- Jobs: job:{job_id} -> Job JSON (no TTL; removed by cleanup_old_jobs)

The only transition that needs atomicity is pending -> processing, which
both backends expose as ``compare_and_set_status``.
"""

import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

import redis

from gateway.core.logger import get_logger
from gateway.schemas.job_models import Job, JobStatus, utc_now

logger = get_logger("job_store")

JOB_KEY_PREFIX = "job:"


class JobStore(Protocol):
    def create(self, job: Job) -> Job: ...
    def get(self, job_id: str) -> Optional[Job]: ...
    def update(self, job: Job) -> None: ...
    def compare_and_set_status(
        self, job_id: str, expected: Iterable[JobStatus], new_status: JobStatus
    ) -> Optional[Job]: ...
    def delete(self, job_id: str) -> bool: ...
    def list_by_status(self, status: JobStatus) -> List[Job]: ...
    def delete_terminal_before(self, cutoff: datetime) -> int: ...


def _is_expired_terminal(job: Job, cutoff: datetime) -> bool:
    return job.status.is_terminal and job.completed_at is not None and job.completed_at < cutoff


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------

class RedisJobStore:
    """Persist jobs as JSON strings in Redis. Survives restarts."""

    def __init__(self, client: redis.Redis, namespace: str = "gateway"):
        self.redis = client
        self.namespace = namespace

    def _key(self, job_id: str) -> str:
        return f"{self.namespace}:{JOB_KEY_PREFIX}{job_id}"

    def _iter_jobs(self):
        for key in self.redis.scan_iter(match=f"{self.namespace}:{JOB_KEY_PREFIX}*"):
            data = self.redis.get(key)
            if data:
                yield Job.model_validate_json(data)

    def create(self, job: Job) -> Job:
        created = self.redis.set(self._key(job.job_id), job.model_dump_json(), nx=True)
        if not created:
            raise ValueError(f"Job {job.job_id} already exists")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        data = self.redis.get(self._key(job_id))
        if not data:
            return None
        return Job.model_validate_json(data)

    def update(self, job: Job) -> None:
        job.updated_at = utc_now()
        self.redis.set(self._key(job.job_id), job.model_dump_json())

    def compare_and_set_status(
        self, job_id: str, expected: Iterable[JobStatus], new_status: JobStatus
    ) -> Optional[Job]:
        """
        Atomically move a job to ``new_status`` if its current status is one
        of ``expected``. Returns the updated job, or None when the job is
        missing or in another state. Uses WATCH/MULTI optimistic locking.
        """
        expected = set(expected)
        key = self._key(job_id)
        with self.redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    data = pipe.get(key)
                    if not data:
                        pipe.unwatch()
                        return None
                    job = Job.model_validate_json(data)
                    if job.status not in expected:
                        pipe.unwatch()
                        return None
                    job.status = new_status
                    job.updated_at = utc_now()
                    pipe.multi()
                    pipe.set(key, job.model_dump_json())
                    pipe.execute()
                    return job
                except redis.WatchError:
                    logger.debug(f"Concurrent update on job {job_id}, retrying status swap")
                    continue

    def delete(self, job_id: str) -> bool:
        return bool(self.redis.delete(self._key(job_id)))

    def list_by_status(self, status: JobStatus) -> List[Job]:
        return [job for job in self._iter_jobs() if job.status == status]

    def delete_terminal_before(self, cutoff: datetime) -> int:
        expired = [job.job_id for job in self._iter_jobs() if _is_expired_terminal(job, cutoff)]
        if not expired:
            return 0
        return int(self.redis.delete(*(self._key(job_id) for job_id in expired)))


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryJobStore:
    """
    Lock-guarded dict of serialized jobs. Callers always receive copies, so
    mutating a returned Job never changes the stored record.
    """

    def __init__(self):
        self._jobs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job.model_dump_json()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            data = self._jobs.get(job_id)
        return Job.model_validate_json(data) if data else None

    def update(self, job: Job) -> None:
        job.updated_at = utc_now()
        with self._lock:
            self._jobs[job.job_id] = job.model_dump_json()

    def compare_and_set_status(
        self, job_id: str, expected: Iterable[JobStatus], new_status: JobStatus
    ) -> Optional[Job]:
        expected = set(expected)
        with self._lock:
            data = self._jobs.get(job_id)
            if not data:
                return None
            job = Job.model_validate_json(data)
            if job.status not in expected:
                return None
            job.status = new_status
            job.updated_at = utc_now()
            self._jobs[job_id] = job.model_dump_json()
            return job

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list_by_status(self, status: JobStatus) -> List[Job]:
        with self._lock:
            jobs = [Job.model_validate_json(data) for data in self._jobs.values()]
        return [job for job in jobs if job.status == status]

    def delete_terminal_before(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [
                job_id for job_id, data in self._jobs.items()
                if _is_expired_terminal(Job.model_validate_json(data), cutoff)
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return len(expired)
