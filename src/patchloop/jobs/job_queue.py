"""Thread-backed priority job queue.

Jobs are ordered by priority (higher first) and FIFO within a priority.
A fixed pool of worker threads pulls from the head of the queue. A failed
job is pushed back to the front after an exponential backoff until its
retry budget is spent.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable

from patchloop.config import MAX_CONCURRENT_JOBS_LIMIT, MAX_RETRIES_LIMIT, PatchLoopSettings
from patchloop.jobs.exceptions import JobQueueError, UnknownJobError
from patchloop.models import Job, JobStatus

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Any]


class JobQueue:
    """Schedules jobs onto max_concurrent_jobs worker threads."""

    def __init__(
        self,
        handlers: dict[str, JobHandler] | None = None,
        max_concurrent_jobs: int = 3,
        backoff_base: float = 1.0,
        default_priority: int = 5,
        default_max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the queue and start its workers.

        Args:
            handlers: Mapping of job_type -> callable taking the Job.
            max_concurrent_jobs: Worker thread count, clamped to 1..32.
            backoff_base: Seconds; a retry waits backoff_base * 2**retry_count.
            default_priority: Priority for jobs enqueued without one.
            default_max_retries: Retry budget for jobs enqueued without one.
            sleep: Injected for tests.
        """
        self._handlers: dict[str, JobHandler] = dict(handlers or {})
        self.max_concurrent_jobs = max(1, min(max_concurrent_jobs, MAX_CONCURRENT_JOBS_LIMIT))
        self.backoff_base = max(0.0, backoff_base)
        self.default_priority = default_priority
        self.default_max_retries = max(0, min(default_max_retries, MAX_RETRIES_LIMIT))
        self._sleep = sleep

        self._cond = threading.Condition()
        self._jobs: dict[str, Job] = {}
        self._queue: list[str] = []  # Job ids, head first
        self._active = 0
        self._stopping = False

        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"patchloop-worker-{i}", daemon=True)
            for i in range(self.max_concurrent_jobs)
        ]
        for worker in self._workers:
            worker.start()

    @classmethod
    def from_settings(
        cls,
        settings: PatchLoopSettings,
        handlers: dict[str, JobHandler] | None = None,
    ) -> "JobQueue":
        """Build a queue from the job-related fields of settings."""
        return cls(
            handlers=handlers,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            backoff_base=settings.backoff_base_seconds,
            default_priority=settings.job_priority,
            default_max_retries=settings.job_max_retries,
        )

    def __enter__(self) -> "JobQueue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Registration and submission
    # ------------------------------------------------------------------

    def register(self, job_type: str, handler: JobHandler) -> None:
        with self._cond:
            self._handlers[job_type] = handler

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        max_retries: int | None = None,
        parent_job_id: str | None = None,
    ) -> Job:
        """Create a job and place it in the queue.

        Args:
            job_type: Must have a registered handler.
            payload: Handler-specific input.
            priority: Higher runs first. Defaults to default_priority.
            max_retries: Retries after the first failure.
            parent_job_id: Links the new job as a child of an existing job.

        Returns:
            The live Job record; its fields change as the job progresses.

        Raises:
            UnknownJobError: If job_type has no handler or the parent is unknown.
            JobQueueError: If the queue has been shut down.
        """
        with self._cond:
            if self._stopping:
                raise JobQueueError("Queue is shut down")
            if job_type not in self._handlers:
                raise UnknownJobError(f"No handler registered for job type '{job_type}'")
            if parent_job_id is not None and parent_job_id not in self._jobs:
                raise UnknownJobError(f"Unknown parent job: {parent_job_id}")

            retries = self.default_max_retries if max_retries is None else max_retries
            job = Job(
                job_type=job_type,
                priority=self.default_priority if priority is None else priority,
                payload=dict(payload or {}),
                max_retries=max(0, min(retries, MAX_RETRIES_LIMIT)),
                parent_job_id=parent_job_id,
            )
            self._jobs[job.id] = job
            if parent_job_id is not None:
                self._jobs[parent_job_id].child_job_ids.append(job.id)

            self._insert_by_priority(job)
            logger.debug("Enqueued %s (%s, priority %d)", job.id, job_type, job.priority)
            self._cond.notify_all()
            return job

    def _insert_by_priority(self, job: Job) -> None:
        # Caller holds the lock
        for idx, queued_id in enumerate(self._queue):
            if self._jobs[queued_id].priority < job.priority:
                self._queue.insert(idx, job.id)
                return
        self._queue.append(job.id)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        """Return the job record.

        Raises:
            UnknownJobError: If job_id was never enqueued.
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJobError(f"Unknown job: {job_id}")
            return job

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        with self._cond:
            return [job for job in self._jobs.values() if status is None or job.status == status]

    def queued_ids(self) -> list[str]:
        """Snapshot of the queue order, head first."""
        with self._cond:
            return list(self._queue)

    def stats(self) -> dict[str, int]:
        with self._cond:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            counts["total"] = len(self._jobs)
            counts["active"] = self._active
            counts["workers"] = len(self._workers)
            return counts

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, job_id: str, cascade: bool = True) -> bool:
        """Cancel a job.

        A queued or paused job is removed outright. A running job is only
        flagged; its handler observes job.is_cancelled and stops on its own.
        With cascade, the job's unfinished children are cancelled too.

        Returns:
            False if the job had already finished.

        Raises:
            UnknownJobError: If job_id was never enqueued.
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJobError(f"Unknown job: {job_id}")
            if job.is_terminal:
                return False

            self._cancel_locked(job, cascade)
            logger.info("Cancelled job %s", job.id)
            self._cond.notify_all()
            return True

    def _cancel_locked(self, job: Job, cascade: bool) -> None:
        if job.id in self._queue:
            self._queue.remove(job.id)
        if job.status != JobStatus.RUNNING:
            job.completed_at = datetime.now()
        job.status = JobStatus.CANCELLED
        if not cascade:
            return
        for child_id in job.child_job_ids:
            child = self._jobs[child_id]
            if not child.is_terminal:
                self._cancel_locked(child, cascade)

    def pause(self, job_id: str) -> bool:
        """Take a queued job out of the queue without cancelling it.

        Returns:
            False unless the job was QUEUED.
        """
        with self._cond:
            job = self.get(job_id)
            if job.status != JobStatus.QUEUED or job.id not in self._queue:
                return False
            self._queue.remove(job.id)
            job.status = JobStatus.PAUSED
            self._cond.notify_all()
            return True

    def resume(self, job_id: str) -> bool:
        """Put a paused job back in the queue at its priority position.

        Returns:
            False unless the job was PAUSED.
        """
        with self._cond:
            job = self.get(job_id)
            if job.status != JobStatus.PAUSED:
                return False
            job.status = JobStatus.QUEUED
            self._insert_by_priority(job)
            self._cond.notify_all()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until no job is queued or running.

        Paused jobs do not keep the queue busy.

        Returns:
            True if the queue went idle, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and self._active == 0, timeout)

    def shutdown(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop the workers. Running jobs finish; queued jobs stay queued."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if wait:
            for worker in self._workers:
                worker.join(timeout)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._stopping or bool(self._queue))
                if self._stopping:
                    return
                job = self._jobs[self._queue.pop(0)]
                job.status = JobStatus.RUNNING
                if job.started_at is None:
                    job.started_at = datetime.now()
                handler = self._handlers[job.job_type]
                self._active += 1

            try:
                self._run_job(job, handler)
            finally:
                with self._cond:
                    self._active -= 1
                    self._cond.notify_all()

    def _run_job(self, job: Job, handler: JobHandler) -> None:
        try:
            result = handler(job)
        except Exception as exc:
            self._handle_failure(job, exc)
            return

        with self._cond:
            job.completed_at = datetime.now()
            if job.is_cancelled:
                logger.info("Job %s stopped after cancellation", job.id)
                return
            job.result = result
            job.error = None
            job.status = JobStatus.COMPLETED
            logger.info("Job %s completed", job.id)

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        message = f"{type(exc).__name__}: {exc}"
        with self._cond:
            job.error = message
            if job.is_cancelled:
                job.completed_at = datetime.now()
                return
            if job.retry_count >= job.max_retries:
                job.status = JobStatus.FAILED
                job.completed_at = datetime.now()
                logger.error("Job %s failed after %d retries: %s", job.id, job.retry_count, message)
                return
            delay = self.backoff_base * (2 ** job.retry_count)
            job.retry_count += 1
            logger.warning(
                "Job %s failed (%s); retry %d/%d in %gs",
                job.id, message, job.retry_count, job.max_retries, delay,
            )

        if delay > 0:
            self._sleep(delay)

        with self._cond:
            if job.is_cancelled:
                job.completed_at = datetime.now()
                return
            job.status = JobStatus.QUEUED
            self._queue.insert(0, job.id)
            self._cond.notify_all()
