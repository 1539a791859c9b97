"""Exceptions for job queue operations."""


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class UnknownJobError(JobQueueError):
    """Raised when a job id or job type is not known to the queue."""
