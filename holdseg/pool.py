"""
Worker pool and scheduler.

Responsibility:
    Own a bounded set of worker processes, each hosting one loaded
    model, and hand every task to exactly one of them. Tasks that
    arrive while all workers are busy wait in a FIFO queue.

Scheduling rules:
    - dispatch: the task joins the FIFO queue; an idle ready worker takes
      the head at once. While fewer workers are starting than tasks are
      waiting and the pool is below max_workers, another worker is spawned.
    - A new worker loads its model first and announces itself with a
      "ready" message. Tasks are only sent to ready workers, so no caller
      ever waits on a model load.
    - A worker that reports back is released and immediately handed the
      oldest queued task, if any.
    - A worker that dies or fails to load before it became ready takes
      the oldest queued task down with it, so a model that cannot load
      fails jobs one by one instead of respawning forever.
    - A worker that dies (pipe EOF, process exit, fatal load error) is
      removed and its in-flight job failed. If tasks are waiting, a
      replacement is spawned right away; otherwise on the next dispatch.
    - A worker whose task outlives pool.job_timeout is terminated and
      its job failed with a timeout.

Concurrency:
    All pool state (worker handles, busy flags, queue) is guarded by one
    lock. A single coordinator thread waits on every worker pipe and
    process sentinel and applies results under that lock; callers of
    dispatch() take the same lock. Job state itself lives in the
    JobManager and is only changed through its mark_running / complete
    / fail methods.
"""

import logging
import multiprocessing
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from multiprocessing.connection import wait as wait_ready
from typing import Deque, Dict, List, Optional

from holdseg.config import AppConfig
from holdseg.errors import HoldsegError, JobTimeoutError, PoolError, error_from_kind
from holdseg.worker import RuntimeFactory, worker_main

logger = logging.getLogger(__name__)

# Seconds to wait for a worker to exit before escalating to kill().
_JOIN_TIMEOUT = 1.0


@dataclass
class Task:
    """One image waiting for, or assigned to, a worker."""

    job_id: str
    payload: bytes = field(repr=False)
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass(eq=False)
class WorkerHandle:
    """Coordinator-side view of one worker process.

    ``busy`` is True exactly while ``task`` is set. Until ``ready``,
    ``deadline`` bounds the model load instead of a task.
    """

    worker_id: int
    process: multiprocessing.process.BaseProcess
    conn: multiprocessing.connection.Connection
    ready: bool = False
    busy: bool = False
    task: Optional[Task] = None
    deadline: Optional[float] = None

    @property
    def sentinel(self) -> int:
        return self.process.sentinel


class WorkerPool:
    """Bounded pool of isolated inference workers.

    Args:
        config: Application configuration; ``config.pool`` sets the
                limits and the whole object is sent to each worker.
        manager: Receives job transitions. Must provide
                 ``mark_running(job_id)``, ``complete(job_id, result)``
                 and ``fail(job_id, error)``.
        runtime_factory: Optional picklable callable building the model
                         runtime inside each worker. Defaults to loading
                         the ONNX model from ``config.model``.
    """

    def __init__(self, config: AppConfig, manager, runtime_factory: Optional[RuntimeFactory] = None) -> None:
        self._config = config
        self._max_workers = config.pool.max_workers
        self._timeout = config.pool.job_timeout
        self._poll_interval = config.pool.poll_interval
        self._manager = manager
        self._runtime_factory = runtime_factory
        self._ctx = multiprocessing.get_context(config.pool.start_method)

        self._lock = threading.Lock()
        self._workers: List[WorkerHandle] = []
        self._queue: Deque[Task] = deque()
        self._next_worker_id = 0
        self._closed = False

        self._stop = threading.Event()
        self._coordinator = threading.Thread(
            target=self._run, name="holdseg-coordinator", daemon=True
        )
        self._coordinator.start()

        logger.info(
            "WorkerPool started (max_workers=%d, job_timeout=%.1fs, start_method=%s)",
            self._max_workers, self._timeout, config.pool.start_method,
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def dispatch(self, task: Task) -> None:
        """Queue ``task`` and hand it to a ready idle worker if there is one.

        Never waits for a worker to start or load its model. A worker that
        cannot be started fails the oldest queued job with PoolError.

        Raises:
            PoolError: If the pool is shut down.
        """
        with self._lock:
            if self._closed:
                raise PoolError("Worker pool is shut down.")

            self._queue.append(task)
            self._refill_locked()

            if self._queue and self._queue[-1] is task:
                logger.info(
                    "Job %s queued (position %d, %d/%d workers live)",
                    task.job_id, len(self._queue),
                    len(self._workers), self._max_workers,
                )

    def stats(self) -> Dict[str, int]:
        """Snapshot of live, starting, busy and queued counts."""
        with self._lock:
            return {
                "workers": len(self._workers),
                "starting": self._starting_count(),
                "busy": sum(1 for w in self._workers if w.busy),
                "queued": len(self._queue),
            }

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the coordinator and all workers.

        Every queued or in-flight job is failed with PoolError so no job
        is left pending or running.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

            while self._queue:
                task = self._queue.popleft()
                self._settle_locked(task.job_id, error=PoolError("Worker pool shut down before the job started."))

        self._stop.set()
        self._coordinator.join(timeout)

        with self._lock:
            for worker in self._workers:
                if worker.task is not None:
                    self._settle_locked(
                        worker.task.job_id,
                        error=PoolError("Worker pool shut down while the job was running."),
                    )
                    worker.task = None
                    worker.busy = False
                try:
                    worker.conn.send(None)
                except (OSError, ValueError):
                    pass

            deadline = time.monotonic() + timeout
            for worker in self._workers:
                worker.process.join(max(0.0, deadline - time.monotonic()))
                self._stop_process(worker, terminate=True)
                worker.conn.close()
            self._workers.clear()

        logger.info("WorkerPool shut down.")

    # ------------------------------------------------------------------ #
    # Worker lifecycle (call with the lock held)
    # ------------------------------------------------------------------ #

    def _idle_worker(self) -> Optional[WorkerHandle]:
        for worker in self._workers:
            if worker.ready and not worker.busy:
                return worker
        return None

    def _spawn_locked(self) -> WorkerHandle:
        worker_id = self._next_worker_id
        self._next_worker_id += 1

        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=worker_main,
            args=(child_conn, self._config, self._runtime_factory),
            name=f"holdseg-worker-{worker_id}",
            daemon=True,
        )
        try:
            process.start()
        except Exception as e:
            parent_conn.close()
            child_conn.close()
            raise PoolError(f"Failed to start worker process: {e}") from e
        child_conn.close()

        worker = WorkerHandle(
            worker_id=worker_id,
            process=process,
            conn=parent_conn,
            deadline=time.monotonic() + self._timeout if self._timeout > 0 else None,
        )
        self._workers.append(worker)
        logger.info(
            "Spawned worker %d (pid %s, %d/%d live)",
            worker_id, process.pid, len(self._workers), self._max_workers,
        )
        return worker

    def _assign_locked(self, worker: WorkerHandle, task: Task) -> None:
        worker.busy = True
        worker.task = task
        worker.deadline = time.monotonic() + self._timeout if self._timeout > 0 else None
        self._manager.mark_running(task.job_id)

        try:
            worker.conn.send((task.job_id, task.payload))
        except (OSError, ValueError) as e:
            logger.warning("Worker %d unreachable: %s", worker.worker_id, e)
            self._lose_worker_locked(
                worker, PoolError(f"Worker {worker.worker_id} died before accepting the job.")
            )
            return

        logger.debug(
            "Job %s assigned to worker %d after %.3fs in queue",
            task.job_id, worker.worker_id, time.monotonic() - task.enqueued_at,
        )

    def _release_locked(self, worker: WorkerHandle) -> None:
        worker.busy = False
        worker.task = None
        worker.deadline = None
        # Queued work goes to the freed worker before anyone else sees it idle.
        self._refill_locked()

    def _lose_worker_locked(self, worker: WorkerHandle, error: HoldsegError, terminate: bool = False) -> None:
        """Remove a dead or abandoned worker and fail its in-flight job."""
        if worker not in self._workers:
            return
        task = worker.task
        self._workers.remove(worker)
        worker.task = None
        worker.busy = False
        worker.conn.close()
        self._stop_process(worker, terminate=terminate)

        if task is not None:
            self._settle_locked(task.job_id, error=error)
        elif not worker.ready and self._queue:
            orphan = self._queue.popleft()
            self._settle_locked(orphan.job_id, error=error)
        logger.warning(
            "Worker %d removed (%s); %d/%d live",
            worker.worker_id, error.kind, len(self._workers), self._max_workers,
        )
        self._refill_locked()

    def _refill_locked(self) -> None:
        """Hand queued tasks to ready idle workers and start more workers if needed."""
        while self._queue and not self._closed:
            worker = self._idle_worker()
            if worker is None:
                break
            self._assign_locked(worker, self._queue.popleft())

        while (
            self._queue
            and not self._closed
            and self._starting_count() < len(self._queue)
            and len(self._workers) < self._max_workers
        ):
            try:
                self._spawn_locked()
            except PoolError as e:
                task = self._queue.popleft()
                self._settle_locked(task.job_id, error=e)

    def _starting_count(self) -> int:
        return sum(1 for w in self._workers if not w.ready)

    @staticmethod
    def _stop_process(worker: WorkerHandle, terminate: bool) -> None:
        process = worker.process
        if process.is_alive() and terminate:
            process.terminate()
        process.join(_JOIN_TIMEOUT)
        if process.is_alive():
            logger.warning("Worker %d did not exit, killing it.", worker.worker_id)
            process.kill()
            process.join(_JOIN_TIMEOUT)

    def _settle_locked(self, job_id: str, result=None, error: Optional[HoldsegError] = None) -> None:
        """Report a terminal transition, never letting it escape the coordinator."""
        try:
            if error is not None:
                self._manager.fail(job_id, error)
            else:
                self._manager.complete(job_id, result)
        except HoldsegError as e:
            logger.error("Could not settle job %s: %s", job_id, e)

    # ------------------------------------------------------------------ #
    # Coordinator
    # ------------------------------------------------------------------ #

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._lock:
                waitables: Dict[object, WorkerHandle] = {}
                for worker in self._workers:
                    waitables[worker.conn] = worker
                    waitables[worker.sentinel] = worker

            ready: list = []
            if waitables:
                try:
                    ready = wait_ready(list(waitables), timeout=self._poll_interval)
                except (OSError, ValueError):
                    # A connection was closed under us; rebuild the wait set.
                    ready = []
            else:
                self._stop.wait(self._poll_interval)

            with self._lock:
                if self._closed:
                    return
                for obj in ready:
                    worker = waitables[obj]
                    if worker not in self._workers:
                        continue
                    if obj is worker.conn:
                        self._read_locked(worker)
                    else:
                        self._reap_locked(worker)
                self._expire_locked()

    def _read_locked(self, worker: WorkerHandle) -> None:
        try:
            message = worker.conn.recv()
        except (EOFError, OSError):
            self._reap_locked(worker)
            return
        self._handle_message_locked(worker, message)

    def _handle_message_locked(self, worker: WorkerHandle, message: tuple) -> None:
        tag = message[0]

        if tag == "fatal":
            _, kind, text = message
            logger.error("Worker %d could not start: %s", worker.worker_id, text)
            self._lose_worker_locked(worker, error_from_kind(kind, text))
            return

        if tag == "ready":
            worker.ready = True
            worker.deadline = None
            logger.info("Worker %d ready", worker.worker_id)
            self._refill_locked()
            return

        if tag not in ("done", "error"):
            logger.warning("Worker %d sent unknown message %r", worker.worker_id, tag)
            return

        job_id = message[1]
        if worker.task is None or worker.task.job_id != job_id:
            logger.warning("Worker %d reported stale job %s, ignoring", worker.worker_id, job_id)
            return

        if tag == "done":
            self._settle_locked(job_id, result=message[2])
        else:
            _, _, kind, text = message
            self._settle_locked(job_id, error=error_from_kind(kind, text))
        self._release_locked(worker)

    def _reap_locked(self, worker: WorkerHandle) -> None:
        """The worker exited or its pipe closed: salvage replies, then remove it."""
        try:
            while worker in self._workers and worker.conn.poll():
                self._handle_message_locked(worker, worker.conn.recv())
        except (EOFError, OSError):
            pass
        if worker not in self._workers:
            return

        worker.process.join(_JOIN_TIMEOUT)
        self._lose_worker_locked(
            worker,
            PoolError(
                f"Worker {worker.worker_id} exited unexpectedly "
                f"(exit code {worker.process.exitcode})."
            ),
        )

    def _expire_locked(self) -> None:
        now = time.monotonic()
        for worker in list(self._workers):
            if not worker.ready and worker.deadline is not None and now >= worker.deadline:
                logger.warning(
                    "Worker %d did not load its model within %.1fs, stopping it",
                    worker.worker_id, self._timeout,
                )
                self._lose_worker_locked(
                    worker,
                    JobTimeoutError(f"Worker did not become ready within {self._timeout:.1f}s."),
                    terminate=True,
                )
                continue
            if worker.busy and worker.deadline is not None and now >= worker.deadline:
                logger.warning(
                    "Job %s exceeded %.1fs on worker %d, recycling worker",
                    worker.task.job_id, self._timeout, worker.worker_id,
                )
                self._lose_worker_locked(
                    worker,
                    JobTimeoutError(f"Job exceeded the {self._timeout:.1f}s deadline."),
                    terminate=True,
                )
