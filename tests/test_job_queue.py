"""Tests for the thread-backed JobQueue."""
import threading
import time

import pytest

from patchloop.config import PatchLoopSettings
from patchloop.jobs import JobQueue, JobQueueError, UnknownJobError
from patchloop.models import JobStatus

TIMEOUT = 5.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Gate:
    """Handler that blocks until opened, so queue order can be inspected."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, job):
        self.started.set()
        assert self.release.wait(TIMEOUT)
        return "gate"


def make_queue(handlers=None, workers=1, **kwargs):
    sleeps = []
    queue = JobQueue(
        handlers=handlers,
        max_concurrent_jobs=workers,
        sleep=sleeps.append,
        **kwargs,
    )
    queue.sleeps = sleeps
    return queue


@pytest.fixture
def gate():
    return Gate()


@pytest.fixture
def blocked_queue(gate):
    """Single-worker queue whose worker is held by the gate job."""
    order = []

    def record(job):
        order.append(job.payload["name"])
        return job.payload["name"]

    queue = make_queue({"gate": gate, "work": record})
    queue.order = order
    queue.enqueue("gate")
    assert gate.started.wait(TIMEOUT)
    yield queue
    gate.release.set()
    queue.shutdown(timeout=TIMEOUT)


# ---------------------------------------------------------------------------
# Submission and ordering
# ---------------------------------------------------------------------------

class TestSubmission:

    def test_job_completes_with_result(self):
        with make_queue({"echo": lambda job: job.payload["value"] * 2}) as queue:
            job = queue.enqueue("echo", {"value": 21})
            assert queue.wait(TIMEOUT)

            assert job.status == JobStatus.COMPLETED
            assert job.result == 42
            assert job.started_at is not None
            assert job.completed_at is not None

    def test_priority_then_fifo(self, blocked_queue, gate):
        """Higher priority runs first; equal priorities keep submission order."""
        for name, priority in [("low", 1), ("mid-1", 5), ("high", 9), ("mid-2", 5)]:
            blocked_queue.enqueue("work", {"name": name}, priority=priority)

        queued = [blocked_queue.get(i).payload["name"] for i in blocked_queue.queued_ids()]
        assert queued == ["high", "mid-1", "mid-2", "low"]

        gate.release.set()
        assert blocked_queue.wait(TIMEOUT)
        assert blocked_queue.order == ["high", "mid-1", "mid-2", "low"]

    def test_defaults_applied(self, blocked_queue):
        job = blocked_queue.enqueue("work", {"name": "x"})
        assert job.priority == 5
        assert job.max_retries == 3
        assert job.status == JobStatus.QUEUED

    def test_unknown_job_type(self):
        with make_queue({}) as queue:
            with pytest.raises(UnknownJobError, match="No handler registered"):
                queue.enqueue("mystery")

    def test_register_after_construction(self):
        with make_queue() as queue:
            queue.register("echo", lambda job: "ok")
            job = queue.enqueue("echo")
            assert queue.wait(TIMEOUT)
            assert job.result == "ok"

    def test_unknown_parent(self):
        with make_queue({"echo": lambda job: None}) as queue:
            with pytest.raises(UnknownJobError, match="Unknown parent"):
                queue.enqueue("echo", parent_job_id="job-missing")

    def test_enqueue_after_shutdown(self):
        queue = make_queue({"echo": lambda job: None})
        queue.shutdown(timeout=TIMEOUT)
        with pytest.raises(JobQueueError):
            queue.enqueue("echo")

    def test_get_unknown(self):
        with make_queue() as queue:
            with pytest.raises(UnknownJobError):
                queue.get("job-nope")

    def test_worker_count_clamped(self):
        with make_queue(workers=0) as queue:
            assert queue.max_concurrent_jobs == 1
            assert queue.stats()["workers"] == 1


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

class TestRetries:

    def test_retry_with_backoff_then_success(self):
        calls = {"n": 0}

        def flaky(job):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("transient")
            return "done"

        with make_queue({"flaky": flaky}) as queue:
            job = queue.enqueue("flaky")
            assert queue.wait(TIMEOUT)

            assert job.status == JobStatus.COMPLETED
            assert job.result == "done"
            assert job.retry_count == 2
            assert job.error is None
            assert queue.sleeps == [1.0, 2.0]

    def test_exhausted_retries_fail(self):
        def broken(job):
            raise ValueError("bad input")

        with make_queue({"broken": broken}, backoff_base=0.5) as queue:
            job = queue.enqueue("broken", max_retries=2)
            assert queue.wait(TIMEOUT)

            assert job.status == JobStatus.FAILED
            assert job.error == "ValueError: bad input"
            assert job.retry_count == 2
            assert queue.sleeps == [0.5, 1.0]

    def test_no_retries(self):
        def broken(job):
            raise ValueError("bad")

        with make_queue({"broken": broken}) as queue:
            job = queue.enqueue("broken", max_retries=0)
            assert queue.wait(TIMEOUT)
            assert job.status == JobStatus.FAILED
            assert queue.sleeps == []

    def test_retry_goes_to_front(self, gate):
        """A retried job runs before jobs queued behind it at the same priority."""
        order = []
        failed_once = {"flag": False}

        def first(job):
            order.append("first")
            if not failed_once["flag"]:
                failed_once["flag"] = True
                raise RuntimeError("again")

        def second(job):
            order.append("second")

        queue = make_queue({"gate": gate, "first": first, "second": second})
        try:
            queue.enqueue("gate")
            assert gate.started.wait(TIMEOUT)
            queue.enqueue("first")
            queue.enqueue("second")
            gate.release.set()
            assert queue.wait(TIMEOUT)
        finally:
            queue.shutdown(timeout=TIMEOUT)

        assert order == ["first", "first", "second"]


# ---------------------------------------------------------------------------
# Cancel / pause / resume
# ---------------------------------------------------------------------------

class TestControl:

    def test_cancel_queued_job(self, blocked_queue, gate):
        job = blocked_queue.enqueue("work", {"name": "never"})

        assert blocked_queue.cancel(job.id) is True
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert job.id not in blocked_queue.queued_ids()

        gate.release.set()
        assert blocked_queue.wait(TIMEOUT)
        assert blocked_queue.order == []

    def test_cancel_finished_job_returns_false(self):
        with make_queue({"echo": lambda job: 1}) as queue:
            job = queue.enqueue("echo")
            assert queue.wait(TIMEOUT)
            assert queue.cancel(job.id) is False
            assert job.status == JobStatus.COMPLETED

    def test_cancel_cascades_to_children(self, blocked_queue):
        parent = blocked_queue.enqueue("work", {"name": "parent"})
        child = blocked_queue.enqueue("work", {"name": "child"}, parent_job_id=parent.id)
        grandchild = blocked_queue.enqueue("work", {"name": "gc"}, parent_job_id=child.id)

        assert parent.child_job_ids == [child.id]
        blocked_queue.cancel(parent.id)

        assert {parent.status, child.status, grandchild.status} == {JobStatus.CANCELLED}

    def test_cancel_without_cascade(self, blocked_queue):
        parent = blocked_queue.enqueue("work", {"name": "parent"})
        child = blocked_queue.enqueue("work", {"name": "child"}, parent_job_id=parent.id)

        blocked_queue.cancel(parent.id, cascade=False)

        assert parent.status == JobStatus.CANCELLED
        assert child.status == JobStatus.QUEUED

    def test_cancel_running_job_is_cooperative(self):
        """A running job is flagged; its result is discarded when it returns."""
        started = threading.Event()
        stopped = threading.Event()

        def cooperative(job):
            started.set()
            while not job.is_cancelled:
                time.sleep(0.01)
            stopped.set()
            return "late"

        with make_queue({"coop": cooperative}) as queue:
            job = queue.enqueue("coop")
            assert started.wait(TIMEOUT)
            assert queue.cancel(job.id) is True
            assert stopped.wait(TIMEOUT)
            assert queue.wait(TIMEOUT)

            assert job.status == JobStatus.CANCELLED
            assert job.result is None

    def test_pause_and_resume(self, blocked_queue, gate):
        job = blocked_queue.enqueue("work", {"name": "paused"})

        assert blocked_queue.pause(job.id) is True
        assert job.status == JobStatus.PAUSED
        assert blocked_queue.queued_ids() == []
        assert blocked_queue.pause(job.id) is False

        gate.release.set()
        assert blocked_queue.wait(TIMEOUT)
        assert blocked_queue.order == []

        assert blocked_queue.resume(job.id) is True
        assert blocked_queue.wait(TIMEOUT)
        assert job.status == JobStatus.COMPLETED
        assert blocked_queue.resume(job.id) is False

    def test_unknown_ids(self):
        with make_queue() as queue:
            with pytest.raises(UnknownJobError):
                queue.cancel("job-nope")
            with pytest.raises(UnknownJobError):
                queue.pause("job-nope")


# ---------------------------------------------------------------------------
# Concurrency and stats
# ---------------------------------------------------------------------------

class TestConcurrency:

    def test_jobs_run_in_parallel(self):
        barrier = threading.Barrier(2, timeout=TIMEOUT)

        def meet(job):
            barrier.wait()
            return True

        with make_queue({"meet": meet}, workers=2) as queue:
            jobs = [queue.enqueue("meet") for _ in range(2)]
            assert queue.wait(TIMEOUT)
            assert all(job.status == JobStatus.COMPLETED for job in jobs)

    def test_stats(self, blocked_queue):
        blocked_queue.enqueue("work", {"name": "a"})
        paused = blocked_queue.enqueue("work", {"name": "b"})
        blocked_queue.pause(paused.id)

        stats = blocked_queue.stats()

        assert stats["total"] == 3
        assert stats["running"] == 1
        assert stats["queued"] == 1
        assert stats["paused"] == 1
        assert stats["active"] == 1

    def test_list_jobs_by_status(self, blocked_queue):
        blocked_queue.enqueue("work", {"name": "a"})
        assert len(blocked_queue.list_jobs()) == 2
        assert [j.job_type for j in blocked_queue.list_jobs(JobStatus.RUNNING)] == ["gate"]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestFromSettings:

    def test_uses_job_settings(self):
        settings = PatchLoopSettings(
            max_concurrent_jobs=2,
            job_max_retries=1,
            job_priority=8,
            backoff_base_seconds=0.0,
        )
        with JobQueue.from_settings(settings, {"echo": lambda job: "ok"}) as queue:
            assert queue.max_concurrent_jobs == 2
            assert queue.stats()["workers"] == 2
            assert queue.backoff_base == 0.0

            job = queue.enqueue("echo")
            assert job.priority == 8
            assert job.max_retries == 1
            assert queue.wait(TIMEOUT)
            assert job.status == JobStatus.COMPLETED

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("PATCHLOOP_MAX_CONCURRENT_JOBS", "4")
        monkeypatch.setenv("PATCHLOOP_JOB_PRIORITY", "1")
        settings = PatchLoopSettings.from_env(load_env_file=False)

        with JobQueue.from_settings(settings, {"echo": lambda job: None}) as queue:
            assert queue.max_concurrent_jobs == 4
            assert queue.default_priority == 1
