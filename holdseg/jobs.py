"""
Job table: the asynchronous front of the inference core.

Callers submit image bytes and get a job id back immediately; the work
runs on the WorkerPool and callers poll for the outcome. Each job moves
through

    pending → running → done | error

and never backwards. A job that reached done or error is never changed
again: a second terminal transition raises InternalError and the first
outcome stays.

Non-goals:
    - No persistence: jobs live in memory and vanish on restart.
    - No HTTP, auth or storage concerns.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from holdseg.config import AppConfig, load_config
from holdseg.detection import PredictionSet
from holdseg.errors import (
    HoldsegError,
    InputError,
    InternalError,
    JobNotFoundError,
    PoolError,
)
from holdseg.pool import Task, WorkerPool
from holdseg.worker import RuntimeFactory

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


@dataclass
class Job:
    """Mutable job record, owned by JobManager and changed under its lock."""

    id: str
    status: JobStatus = JobStatus.PENDING
    result: Optional[PredictionSet] = None
    error: Optional[HoldsegError] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


@dataclass(frozen=True)
class JobView:
    """Read-only snapshot of a job, returned by JobManager.poll()."""

    job_id: str
    status: JobStatus
    result: Optional[PredictionSet] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = 0.0
    finished_at: Optional[float] = None

    @classmethod
    def of(cls, job: Job) -> "JobView":
        return cls(
            job_id=job.id,
            status=job.status,
            result=job.result,
            error_kind=job.error.kind if job.error is not None else None,
            error_message=str(job.error) if job.error is not None else None,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        """Poll response body: status plus predictions or error when present."""
        payload = {"status": self.status.value}
        if self.result is not None:
            payload.update(self.result.to_dict())
        if self.error_kind is not None:
            payload["error"] = self.error_message
            payload["errorKind"] = self.error_kind
        return payload


class JobManager:
    """Issues job ids, tracks their state, and fronts the worker pool.

    Usage:
        with JobManager(config) as jobs:
            job_id = jobs.submit(image_bytes)
            view = jobs.poll(job_id)          # never blocks
            view = jobs.wait(job_id, 30.0)    # convenience for scripts

    ``submit`` and ``poll`` never wait on inference. The pool calls back
    into ``mark_running``, ``complete`` and ``fail``.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ) -> None:
        if config is None:
            config = load_config()

        self._config = config
        self._ttl = config.pool.job_ttl
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._pool = WorkerPool(config, self, runtime_factory=runtime_factory)

    # ------------------------------------------------------------------ #
    # Caller-facing API
    # ------------------------------------------------------------------ #

    def submit(self, image_bytes: bytes) -> str:
        """Register a job for ``image_bytes`` and hand it to the pool.

        Returns the job id immediately. A missing or empty payload still
        gets a job, which is failed with InputError on the spot.
        """
        with self._lock:
            self._prune_expired_locked()
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())
            self._jobs[job_id] = Job(id=job_id)
        logger.info("Created job %s", job_id)

        if not isinstance(image_bytes, (bytes, bytearray, memoryview)) or len(image_bytes) == 0:
            self.fail(job_id, InputError("No image payload provided."))
            return job_id

        try:
            self._pool.dispatch(Task(job_id=job_id, payload=bytes(image_bytes)))
        except PoolError as e:
            self.fail(job_id, e)
        return job_id

    def poll(self, job_id: str) -> JobView:
        """Return the current state of a job.

        Raises:
            JobNotFoundError: If the id is unknown or has expired.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or self._is_expired(job, time.time()):
                raise JobNotFoundError(f"Job not found: {job_id}")
            return JobView.of(job)

    def wait(self, job_id: str, timeout: Optional[float] = None, interval: float = 0.05) -> JobView:
        """Poll until the job is terminal or ``timeout`` seconds pass.

        Returns the last observed view, terminal or not.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            view = self.poll(job_id)
            if view.is_terminal:
                return view
            if deadline is not None and time.monotonic() >= deadline:
                return view
            time.sleep(interval)

    def stats(self) -> Dict[str, int]:
        """Job counts per status plus the pool's worker counts."""
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
        counts.update(self._pool.stats())
        return counts

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the pool. Unfinished jobs end in error(PoolError)."""
        self._pool.shutdown(timeout)

    def __enter__(self) -> "JobManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ #
    # Pool-facing transitions
    # ------------------------------------------------------------------ #

    def mark_running(self, job_id: str) -> None:
        """pending → running.

        Raises:
            InternalError: If the job is unknown or not pending.
        """
        with self._lock:
            job = self._require_locked(job_id)
            if job.status is not JobStatus.PENDING:
                raise InternalError(
                    f"Job {job_id} cannot start from status '{job.status.value}'."
                )
            job.status = JobStatus.RUNNING
            job.started_at = time.time()
        logger.info("Job %s running", job_id)

    def complete(self, job_id: str, result: PredictionSet) -> None:
        """Record a successful result. Rejected if the job already finished."""
        with self._lock:
            job = self._finish_locked(job_id)
            job.status = JobStatus.DONE
            job.result = result
            elapsed = job.finished_at - job.created_at
        logger.info("Job %s done in %.2fs (%d polygons)", job_id, elapsed, len(result))

    def fail(self, job_id: str, error: HoldsegError) -> None:
        """Record a failure. Rejected if the job already finished."""
        with self._lock:
            job = self._finish_locked(job_id)
            job.status = JobStatus.ERROR
            job.error = error
        logger.warning("Job %s failed: %s: %s", job_id, error.kind, error)

    # ------------------------------------------------------------------ #
    # Internals (call with the lock held)
    # ------------------------------------------------------------------ #

    def _require_locked(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise InternalError(f"Unknown job {job_id}.")
        return job

    def _finish_locked(self, job_id: str) -> Job:
        job = self._require_locked(job_id)
        if job.status.is_terminal:
            raise InternalError(
                f"Job {job_id} already finished with status '{job.status.value}'."
            )
        job.finished_at = time.time()
        return job

    def _is_expired(self, job: Job, now: float) -> bool:
        return (
            job.status.is_terminal
            and job.finished_at is not None
            and now - job.finished_at > self._ttl
        )

    def _prune_expired_locked(self) -> None:
        now = time.time()
        expired = [job_id for job_id, job in self._jobs.items() if self._is_expired(job, now)]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Pruned %d expired jobs", len(expired))
