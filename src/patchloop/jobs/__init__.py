"""Priority job queue with retry, cancellation and pause/resume."""

from patchloop.jobs.exceptions import JobQueueError, UnknownJobError
from patchloop.jobs.job_queue import JobQueue

__all__ = ["JobQueue", "JobQueueError", "UnknownJobError"]
