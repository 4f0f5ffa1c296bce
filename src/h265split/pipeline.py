"""
Processing queue for h265split.

Bounds the number of concurrent encodes, retries failed jobs, dedupes
paths and routes finished sources to the processed/failed directories.
Each active job runs on its own worker thread; the actual work happens in
the gst-launch subprocess owned by the job's runner.
"""

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from h265split.config import Config
from h265split.converter import TranscodeRequest
from h265split.errors import ProcessCancelledError, TranscodeError
from h265split.progress import ProgressSnapshot
from h265split.runner import JobResult, JobRunner

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    """A queued source file."""

    request: TranscodeRequest
    path: Path
    relative_path: Path
    size: int
    added_at: float
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    result: Optional[JobResult] = None
    progress: Optional[ProgressSnapshot] = None
    not_before: float = 0.0

    @property
    def key(self) -> str:
        return os.path.abspath(str(self.path))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


EventCallback = Callable[[str, Job], None]
JobProgressCallback = Callable[[Job, ProgressSnapshot], None]


class ProcessingQueue:
    """
    Concurrency-bounded, retrying job queue.

    Events passed to ``on_event``: queued, start, done, retry, failed, cancelled.

    With ``keep_history=False`` a job leaves ``jobs`` once its terminal event
    has been delivered; get_status() still counts it.
    """

    def __init__(
        self,
        cfg: Config,
        backend: Optional[str] = None,
        runner_factory: Optional[Callable[[Job], Any]] = None,
        on_event: Optional[EventCallback] = None,
        on_progress: Optional[JobProgressCallback] = None,
        log_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
        keep_history: bool = True,
    ):
        self.cfg = cfg
        self.backend = backend or cfg.encoder
        self.max_concurrency = max(1, cfg.concurrency)
        self.max_retries = max(1, cfg.max_retries)
        self.retry_delay = max(0.0, cfg.retry_delay_sec)
        self.input_dir = Path(cfg.input_dir).resolve() if cfg.input_dir else None
        self.output_dir = Path(cfg.output_dir) if cfg.output_dir else None
        self.processed_dir = Path(cfg.processed_dir) if cfg.processed_dir else None
        self.failed_dir = Path(cfg.failed_dir) if cfg.failed_dir else None
        self.runner_factory = runner_factory or self._make_runner
        self.on_event = on_event
        self.on_progress = on_progress
        self.log_dir = log_dir
        self.clock = clock
        self.started_at = clock()
        self.keep_history = keep_history

        self.jobs: List[Job] = []
        self._lock = threading.RLock()
        # id(runner) -> (runner, worker thread) for every attempt in flight
        self._active: Dict[int, Tuple[Any, threading.Thread]] = {}
        self._accepting = True
        # totals of jobs dropped from self.jobs by compact() or keep_history=False
        self._retired: Dict[str, int] = {s.value: 0 for s in TERMINAL_STATUSES}
        self._retired["bytes_processed"] = 0

    # -------------------- public API --------------------

    def enqueue(self, path: Path) -> Optional[Job]:
        """
        Add a file to the queue.

        Returns the new job, or None if the path is already pending or
        processing, cannot be stat'ed, or the queue is shut down.
        """
        path = Path(path)
        key = os.path.abspath(str(path))
        with self._lock:
            if not self._accepting:
                logger.debug("Queue shut down, ignoring %s", path)
                return None
            for job in self.jobs:
                if job.key == key and job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                    logger.debug("Already queued: %s", path)
                    return None
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning("Cannot queue %s: %s", path, e)
                return None

            relative = self._relative_path(path)
            out_dir = self._output_dir_for(path, relative)
            job = Job(
                request=self.cfg.to_request(path, out_dir, self.backend),
                path=path,
                relative_path=relative,
                size=size,
                added_at=self.clock(),
            )
            self.jobs.append(job)
            logger.info("Queued %s (%d bytes)", relative, size)
        self._emit("queued", job)
        self.tick()
        return job

    def tick(self) -> int:
        """Start pending jobs while a concurrency slot is free. Returns the number started."""
        started = 0
        with self._lock:
            if not self._accepting:
                return 0
            now = self.clock()
            for job in self.jobs:
                if self._processing_count() >= self.max_concurrency:
                    break
                if job.status is not JobStatus.PENDING or job.not_before > now:
                    continue
                self._start(job)
                started += 1
        return started

    def wait_for_completion(self, poll_interval: float = 0.5, timeout: Optional[float] = None) -> bool:
        """Block until nothing is pending or processing. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                busy = any(j.status in (JobStatus.PENDING, JobStatus.PROCESSING) for j in self.jobs)
            if not busy:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self.tick()
            time.sleep(poll_interval)

    def shutdown(self, wait: bool = True) -> None:
        """Stop starting new jobs and wait for the active ones to exit."""
        with self._lock:
            self._accepting = False
            threads = [t for _runner, t in self._active.values()]
        if wait:
            for t in threads:
                t.join()

    def cancel_all(self) -> None:
        """Signal every active runner to cancel."""
        with self._lock:
            runners = [r for r, _thread in self._active.values()]
        for runner in runners:
            runner.cancel()

    def compact(self) -> int:
        """
        Drop terminal jobs from the history. Returns the number removed.

        Their outcomes stay counted in get_status().
        """
        with self._lock:
            done = [j for j in self.jobs if j.is_terminal]
            for job in done:
                self._retire(job)
            return len(done)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            counts = {s.value: 0 for s in JobStatus}
            bytes_done = 0
            for job in self.jobs:
                counts[job.status.value] += 1
                if job.status is JobStatus.COMPLETED:
                    bytes_done += job.size
            retired = 0
            for status in TERMINAL_STATUSES:
                counts[status.value] += self._retired[status.value]
                retired += self._retired[status.value]
            counts["total"] = len(self.jobs) + retired
            counts["bytes_processed"] = bytes_done + self._retired["bytes_processed"]
            counts["elapsed"] = self.clock() - self.started_at
            return counts

    def active_jobs(self) -> List[Job]:
        with self._lock:
            return [j for j in self.jobs if j.status is JobStatus.PROCESSING]

    # -------------------- internals --------------------

    def _retire(self, job: Job) -> None:
        self.jobs.remove(job)
        self._retired[job.status.value] += 1
        if job.status is JobStatus.COMPLETED:
            self._retired["bytes_processed"] += job.size

    def _processing_count(self) -> int:
        return sum(1 for j in self.jobs if j.status is JobStatus.PROCESSING)

    def _relative_path(self, path: Path) -> Path:
        if self.input_dir is not None:
            try:
                return path.resolve().relative_to(self.input_dir)
            except ValueError:
                pass
        return Path(path.name)

    def _output_dir_for(self, path: Path, relative: Path) -> Path:
        base = self.output_dir if self.output_dir is not None else path.parent
        return base / relative.parent

    def _emit(self, event: str, job: Job) -> None:
        if self.on_event is not None:
            self.on_event(event, job)

    def _make_runner(self, job: Job) -> JobRunner:
        def on_snapshot(snap: ProgressSnapshot) -> None:
            job.progress = snap
            if self.on_progress is not None:
                self.on_progress(job, snap)

        log_path = self.log_dir / f"{job.path.stem}.log" if self.log_dir is not None else None
        return JobRunner(job.request, self.cfg, progress_callback=on_snapshot, log_path=log_path)

    def _start(self, job: Job) -> None:
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.progress = None
        runner = self.runner_factory(job)
        thread = threading.Thread(target=self._worker, args=(job, runner), name=f"job_{job.path.name}", daemon=True)
        self._active[id(runner)] = (runner, thread)
        logger.info("Starting %s (attempt %d/%d)", job.relative_path, job.attempts, self.max_retries)
        self._emit("start", job)
        thread.start()

    def _worker(self, job: Job, runner: Any) -> None:
        result: Optional[JobResult] = None
        error: Optional[BaseException] = None
        try:
            result = runner.run()
        except Exception as e:
            error = e
        try:
            self._finish(job, result, error)
            self.tick()
        finally:
            with self._lock:
                self._active.pop(id(runner), None)

    def _finish(self, job: Job, result: Optional[JobResult], error: Optional[BaseException]) -> None:
        """
        Record the outcome of one attempt.

        The job stays PROCESSING until the source has been moved and the
        event delivered, so a terminal status means all side effects are done.
        """
        move_to: Optional[Path] = None
        if error is None:
            status, event = JobStatus.COMPLETED, "done"
            job.result = result
            job.last_error = None
            move_to = self.processed_dir
            logger.info("%s completed", job.relative_path)
        elif isinstance(error, ProcessCancelledError):
            status, event = JobStatus.CANCELLED, "cancelled"
            job.last_error = str(error)
            logger.info("%s cancelled", job.relative_path)
        else:
            job.last_error = str(error)
            retryable = isinstance(error, TranscodeError) and error.retryable
            if not isinstance(error, TranscodeError):
                logger.exception("Unexpected error processing %s", job.path, exc_info=error)
            if retryable and job.attempts < self.max_retries:
                status, event = JobStatus.PENDING, "retry"
                logger.warning(
                    "%s failed (attempt %d/%d), retrying: %s", job.relative_path, job.attempts, self.max_retries, error
                )
            else:
                status, event = JobStatus.FAILED, "failed"
                move_to = self.failed_dir
                logger.error("%s failed: %s", job.relative_path, error)

        try:
            if move_to is not None:
                self._move_source(job, move_to)
            self._emit(event, job)
        finally:
            with self._lock:
                if status is JobStatus.PENDING:
                    job.not_before = self.clock() + self.retry_delay
                job.status = status
                if job.is_terminal and not self.keep_history:
                    self._retire(job)

        if status is JobStatus.PENDING and self.retry_delay > 0:
            timer = threading.Timer(self.retry_delay, self.tick)
            timer.daemon = True
            timer.start()

    def _move_source(self, job: Job, base_dir: Path) -> None:
        """Move the source under base_dir, mirroring its relative path."""
        dest = base_dir / job.relative_path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(job.path), str(dest))
            logger.info("Moved %s -> %s", job.path, dest)
        except OSError as e:
            logger.error("Could not move %s to %s: %s", job.path, dest, e)
