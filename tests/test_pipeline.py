"""Tests for the processing queue."""

import threading
import time
from pathlib import Path

import pytest


class FakeRunner:
    """Scripted JobRunner: optionally blocks, then returns or raises."""

    def __init__(self, outcome=None, gate=None):
        self.outcome = outcome
        self.gate = gate
        self.cancelled = threading.Event()
        self.calls = 0

    def run(self):
        from h265split.errors import ProcessCancelledError

        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.cancelled.is_set():
            raise ProcessCancelledError()
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    def cancel(self):
        self.cancelled.set()
        if self.gate is not None:
            self.gate.set()


@pytest.fixture
def dirs(temp_dir):
    paths = {name: temp_dir / name for name in ("in", "out", "done", "failed")}
    paths["in"].mkdir()
    return paths


@pytest.fixture
def make_queue(dirs):
    from h265split.config import Config
    from h265split.pipeline import ProcessingQueue

    def make(factory, events=None, keep_history=True, **overrides):
        values = dict(
            input_dir=str(dirs["in"]),
            output_dir=str(dirs["out"]),
            processed_dir=str(dirs["done"]),
            failed_dir=str(dirs["failed"]),
        )
        values.update(overrides)
        on_event = (lambda event, job: events.append((event, job.path.name))) if events is not None else None
        return ProcessingQueue(
            Config(**values), backend="x265", runner_factory=factory, on_event=on_event, keep_history=keep_history
        )

    return make


def _source(dirs, name="rec.mkv", size=100):
    path = dirs["in"] / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    return path


class TestEnqueue:
    """Tests for enqueue() and deduplication."""

    def test_dedupe_while_pending_or_processing(self, make_queue, dirs):
        gate = threading.Event()
        queue = make_queue(lambda job: FakeRunner("ok", gate))
        path = _source(dirs)

        first = queue.enqueue(path)
        second = queue.enqueue(path)
        third = queue.enqueue(Path(str(path)))

        assert first is not None
        assert second is None and third is None
        assert len(queue.jobs) == 1

        gate.set()
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

    def test_dedupe_pending_job(self, make_queue, dirs):
        gate = threading.Event()
        queue = make_queue(lambda job: FakeRunner("ok", gate))
        busy = _source(dirs, "a.mkv")
        waiting = _source(dirs, "b.mkv")

        queue.enqueue(busy)
        queue.enqueue(waiting)
        queue.enqueue(waiting)

        assert [j.path.name for j in queue.jobs] == ["a.mkv", "b.mkv"]
        gate.set()
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

    def test_unreadable_file_not_queued(self, make_queue, dirs):
        queue = make_queue(lambda job: FakeRunner("ok"))

        assert queue.enqueue(dirs["in"] / "missing.mkv") is None
        assert queue.jobs == []

    def test_relative_path_and_output_dir(self, make_queue, dirs):
        gate = threading.Event()
        queue = make_queue(lambda job: FakeRunner("ok", gate))
        path = _source(dirs, "cam1/day2/rec.mkv", size=123)

        job = queue.enqueue(path)

        assert job.relative_path == Path("cam1/day2/rec.mkv")
        assert job.request.output_dir == dirs["out"] / "cam1" / "day2"
        assert job.size == 123
        gate.set()
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

    def test_output_next_to_source_by_default(self, make_queue, dirs):
        gate = threading.Event()
        queue = make_queue(lambda job: FakeRunner("ok", gate), output_dir=None)
        path = _source(dirs)

        job = queue.enqueue(path)

        assert job.request.output_dir == dirs["in"]
        gate.set()
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)


class TestLifecycle:
    """Tests for success, retry and failure handling."""

    def test_success_moves_to_processed(self, make_queue, dirs):
        from h265split.pipeline import JobStatus

        events = []
        queue = make_queue(lambda job: FakeRunner("result"), events)
        path = _source(dirs, "sub/rec.mkv")

        job = queue.enqueue(path)
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.result == "result"
        assert not path.exists()
        assert (dirs["done"] / "sub" / "rec.mkv").exists()
        assert [e for e, _ in events] == ["queued", "start", "done"]

    def test_retry_bound(self, make_queue, dirs):
        """A job that always fails is attempted exactly max_retries times."""
        from h265split.errors import EncodeFailedError
        from h265split.pipeline import JobStatus

        runners = []

        def factory(job):
            runners.append(FakeRunner(EncodeFailedError("GStreamer exited with code 1", 1)))
            return runners[-1]

        events = []
        queue = make_queue(factory, events, max_retries=3)
        path = _source(dirs)

        job = queue.enqueue(path)
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert job.status is JobStatus.FAILED
        assert job.attempts == 3
        assert sum(r.calls for r in runners) == 3
        assert "exited with code 1" in job.last_error
        assert [e for e, _ in events].count("retry") == 2
        assert events[-1][0] == "failed"
        assert (dirs["failed"] / "rec.mkv").exists()

    def test_retry_then_success(self, make_queue, dirs):
        from h265split.errors import EncodeFailedError
        from h265split.pipeline import JobStatus

        outcomes = [EncodeFailedError("crash", 139), "ok"]
        queue = make_queue(lambda job: FakeRunner(outcomes.pop(0)))

        job = queue.enqueue(_source(dirs))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 2
        assert job.last_error is None

    @pytest.mark.parametrize("error_name", ["PlanningError", "SpawnError", "BackendUnavailableError"])
    def test_not_retried(self, make_queue, dirs, error_name):
        from h265split import errors
        from h265split.pipeline import JobStatus

        error = getattr(errors, error_name)("nope")
        queue = make_queue(lambda job: FakeRunner(error), max_retries=5)

        job = queue.enqueue(_source(dirs))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert job.status is JobStatus.FAILED
        assert job.attempts == 1

    def test_unexpected_exception_fails(self, make_queue, dirs):
        from h265split.pipeline import JobStatus

        queue = make_queue(lambda job: FakeRunner(RuntimeError("boom")))

        job = queue.enqueue(_source(dirs))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert job.status is JobStatus.FAILED
        assert job.attempts == 1
        assert job.last_error == "boom"

    def test_no_move_without_dirs(self, make_queue, dirs):
        from h265split.errors import SpawnError

        queue = make_queue(lambda job: FakeRunner(SpawnError("no gst")), failed_dir=None)
        path = _source(dirs)

        queue.enqueue(path)
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)
        assert path.exists()

    def test_retry_delay(self, dirs, fake_clock):
        from h265split.config import Config
        from h265split.errors import EncodeFailedError
        from h265split.pipeline import JobStatus, ProcessingQueue

        outcomes = [EncodeFailedError("busy", 1), "ok"]
        cfg = Config(input_dir=str(dirs["in"]), retry_delay_sec=30)
        queue = ProcessingQueue(cfg, runner_factory=lambda job: FakeRunner(outcomes.pop(0)), clock=fake_clock)

        job = queue.enqueue(_source(dirs))
        deadline = time.monotonic() + 5
        while (job.status is not JobStatus.PENDING or queue._active) and time.monotonic() < deadline:
            time.sleep(0.01)

        assert job.status is JobStatus.PENDING
        assert job.not_before == fake_clock.now + 30
        assert queue.tick() == 0

        fake_clock.advance(31)
        assert queue.tick() == 1
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 2


class TestConcurrency:
    """Tests for the concurrency bound and cancellation."""

    def test_max_concurrency(self, make_queue, dirs):
        gate = threading.Event()
        queue = make_queue(lambda job: FakeRunner("ok", gate), concurrency=2)

        for name in ("a.mkv", "b.mkv", "c.mkv"):
            queue.enqueue(_source(dirs, name))

        assert len(queue.active_jobs()) == 2
        assert queue.get_status()["pending"] == 1

        gate.set()
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)
        assert queue.get_status()["completed"] == 3

    def test_cancel_all(self, make_queue, dirs):
        from h265split.pipeline import JobStatus

        gate = threading.Event()
        events = []
        queue = make_queue(lambda job: FakeRunner("ok", gate), events)
        path = _source(dirs)

        job = queue.enqueue(path)
        queue.cancel_all()
        queue.shutdown(wait=True)

        assert job.status is JobStatus.CANCELLED
        assert job.attempts == 1
        assert path.exists()
        assert not dirs["failed"].exists()
        assert events[-1][0] == "cancelled"

    def test_shutdown_rejects_new_jobs(self, make_queue, dirs):
        queue = make_queue(lambda job: FakeRunner("ok"))
        queue.shutdown()

        assert queue.enqueue(_source(dirs)) is None


class TestStatus:
    """Tests for get_status() and compact()."""

    def test_status_counts(self, make_queue, dirs):
        from h265split.errors import SpawnError

        outcomes = {"a.mkv": "ok", "b.mkv": SpawnError("x"), "c.mkv": "ok"}
        queue = make_queue(lambda job: FakeRunner(outcomes[job.path.name]))

        for name, size in (("a.mkv", 10), ("b.mkv", 20), ("c.mkv", 30)):
            queue.enqueue(_source(dirs, name, size))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        status = queue.get_status()
        assert status["completed"] == 2
        assert status["failed"] == 1
        assert status["pending"] == status["processing"] == 0
        assert status["total"] == 3
        assert status["bytes_processed"] == 40

    def test_compact(self, make_queue, dirs):
        queue = make_queue(lambda job: FakeRunner("ok"))
        queue.enqueue(_source(dirs))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert queue.compact() == 1
        assert queue.jobs == []
        status = queue.get_status()
        assert status["completed"] == 1
        assert status["total"] == 1
        assert status["bytes_processed"] == 100

    def test_without_history_jobs_leave_after_terminal_event(self, make_queue, dirs):
        from h265split.errors import SpawnError

        outcomes = {"a.mkv": "ok", "b.mkv": SpawnError("x")}
        events = []
        queue = make_queue(lambda job: FakeRunner(outcomes[job.path.name]), events=events, keep_history=False)

        for name, size in (("a.mkv", 10), ("b.mkv", 20)):
            queue.enqueue(_source(dirs, name, size))
        assert queue.wait_for_completion(poll_interval=0.01, timeout=5)

        assert queue.jobs == []
        assert ("done", "a.mkv") in events
        assert ("failed", "b.mkv") in events
        status = queue.get_status()
        assert status["completed"] == 1
        assert status["failed"] == 1
        assert status["total"] == 2
        assert status["bytes_processed"] == 10
