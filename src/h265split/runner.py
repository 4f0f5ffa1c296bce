"""
Job runner for h265split.

Owns one gst-launch-1.0 subprocess: resolve -> plan -> build -> spawn ->
stream output through the progress tracker -> classify the exit.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from h265split.converter import TranscodeRequest, build_pipeline, gst_env, gst_tool, scan_output_chunks
from h265split.errors import (
    BackendUnavailableError,
    EncodeFailedError,
    ErrorClassifier,
    PlanningError,
    ProcessCancelledError,
    SpawnError,
    describe_exit_code,
    is_cancel_signal,
)
from h265split.planner import RateControlPlan, plan, validate_request
from h265split.probe import DurationEstimate, resolve
from h265split.progress import ProgressSnapshot, ProgressTracker

if TYPE_CHECKING:
    from h265split.config import Config

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL
TERMINATE_GRACE = 2.0

# Track active gst-launch processes for cleanup on interrupt
_active_processes: List[subprocess.Popen] = []
_processes_lock = threading.Lock()


def register_process(proc: subprocess.Popen) -> None:
    """Register a process for tracking."""
    with _processes_lock:
        _active_processes.append(proc)


def unregister_process(proc: subprocess.Popen) -> None:
    """Unregister a process from tracking."""
    with _processes_lock:
        if proc in _active_processes:
            _active_processes.remove(proc)


def terminate_process(proc: subprocess.Popen, grace: float = TERMINATE_GRACE) -> None:
    """Send SIGTERM, then SIGKILL if the process is still alive after ``grace`` seconds."""
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after SIGTERM, killing", proc.pid)
        try:
            proc.kill()
        except OSError:
            pass
    except OSError:
        pass


def terminate_all_processes() -> None:
    """Terminate all active processes."""
    with _processes_lock:
        procs = list(_active_processes)
    threads = [threading.Thread(target=terminate_process, args=(p,), daemon=True) for p in procs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


@dataclass
class JobResult:
    """Outcome of a successful encode."""

    input_path: Path
    estimate: DurationEstimate
    plan: RateControlPlan
    chunks: List[Path] = field(default_factory=list)
    output_bytes: int = 0
    elapsed_seconds: float = 0.0

    @property
    def actual_ratio(self) -> Optional[float]:
        if self.output_bytes <= 0 or self.estimate.file_size_bytes <= 0:
            return None
        return self.estimate.file_size_bytes / self.output_bytes


ProgressCallback = Callable[[ProgressSnapshot], None]


class JobRunner:
    """Runs one TranscodeRequest to completion, failure or cancellation."""

    def __init__(
        self,
        request: TranscodeRequest,
        cfg: Optional["Config"] = None,
        progress_callback: Optional[ProgressCallback] = None,
        log_path: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        resolver: Callable[[Path, Optional["Config"]], DurationEstimate] = resolve,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = 1.0,
    ):
        self.request = request
        self.cfg = cfg
        self.progress_callback = progress_callback
        self.log_path = log_path
        self.cancel_event = cancel_event or threading.Event()
        self.popen = popen
        self.resolver = resolver
        self.clock = clock
        self.tick_interval = tick_interval
        self.classifier = ErrorClassifier()
        self.tracker: Optional[ProgressTracker] = None
        self._proc: Optional[subprocess.Popen] = None
        self._proc_lock = threading.Lock()

    @property
    def gstreamer_path(self) -> Optional[str]:
        return self.cfg.gstreamer_path if self.cfg is not None else None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation; the subprocess is terminated in the background."""
        self.cancel_event.set()
        with self._proc_lock:
            proc = self._proc
        if proc is not None:
            threading.Thread(target=terminate_process, args=(proc,), daemon=True).start()

    def prepare(self) -> Tuple[DurationEstimate, RateControlPlan, List[str]]:
        """Validate, resolve, plan and build without spawning anything."""
        validate_request(self.request)
        if not self.request.input_path.is_file():
            raise PlanningError(f"Input file not found: {self.request.input_path}")
        estimate = self.resolver(self.request.input_path, self.cfg)
        rc_plan = plan(self.request, estimate)
        args = build_pipeline(self.request, rc_plan)
        return estimate, rc_plan, args

    def command(self, args: List[str]) -> List[str]:
        return [gst_tool("gst-launch-1.0", self.gstreamer_path), *args]

    def run(self) -> JobResult:
        """
        Encode the request.

        Raises:
            PlanningError: invalid request.
            SpawnError: gst-launch-1.0 could not be started.
            EncodeFailedError: nonzero exit (BackendUnavailableError if the
                encoder element is missing).
            ProcessCancelledError: cancelled before or during the encode.
        """
        start = self.clock()
        estimate, rc_plan, args = self.prepare()
        if self.cancelled:
            raise ProcessCancelledError()

        self.request.output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.command(args)
        logger.info("Starting encode of %s with %s", self.request.input_path.name, rc_plan.element)
        logger.debug("Pipeline: %s", " ".join(cmd))

        tracker = self.tracker = ProgressTracker(
            self.request,
            estimate.duration_seconds,
            estimate.is_estimated,
            callback=self.progress_callback,
            clock=self.clock,
        )
        rc = self._run_process(cmd, tracker)

        if rc != 0 or self.cancelled:
            self._raise_failure(rc, tracker)

        tracker.finish()
        chunks = scan_output_chunks(self.request.output_dir, self.request.base_name, self.request.container)
        result = JobResult(
            input_path=self.request.input_path,
            estimate=estimate,
            plan=rc_plan,
            chunks=[p for p, _size in chunks],
            output_bytes=sum(size for _p, size in chunks),
            elapsed_seconds=self.clock() - start,
        )
        ratio = result.actual_ratio
        logger.info(
            "Finished %s: %d chunk(s), %d bytes, compression %s (target %sx)",
            self.request.input_path.name,
            len(result.chunks),
            result.output_bytes,
            f"{ratio:.2f}x" if ratio else "n/a",
            self.request.compression_ratio,
        )
        return result

    def _run_process(self, cmd: List[str], tracker: ProgressTracker) -> int:
        try:
            proc = self.popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                env=gst_env(self.gstreamer_path),
            )
        except FileNotFoundError as e:
            raise SpawnError(
                f"GStreamer executable not found: {cmd[0]}. "
                "Install GStreamer 1.x or point gstreamer_path at its installation directory."
            ) from e
        except OSError as e:
            raise SpawnError(f"Could not start {cmd[0]}: {e}") from e

        with self._proc_lock:
            self._proc = proc
        register_process(proc)
        if self.cancelled:
            self.cancel()

        stop_ticker = threading.Event()
        ticker = threading.Thread(
            target=self._tick_loop, args=(tracker, stop_ticker), name="progress_ticker", daemon=True
        )
        ticker.start()

        log_file = None
        try:
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = self.log_path.open("a", encoding="utf-8", errors="replace")
                log_file.write(f"CMD: {' '.join(cmd)}\n")
            if proc.stdout is not None:
                for line in proc.stdout:
                    if log_file is not None:
                        log_file.write(line)
                    tracker.feed_line(line)
            return proc.wait()
        finally:
            stop_ticker.set()
            ticker.join()
            if proc.poll() is None:
                logger.warning("Stopping %s after an error while reading its output", cmd[0])
                terminate_process(proc)
            unregister_process(proc)
            if log_file is not None:
                log_file.write(f"EXIT: {proc.returncode}\n")
                log_file.close()

    def _tick_loop(self, tracker: ProgressTracker, stop: threading.Event) -> None:
        while not stop.wait(self.tick_interval):
            tracker.tick()

    def _raise_failure(self, rc: int, tracker: ProgressTracker) -> None:
        if self.cancelled or is_cancel_signal(rc):
            logger.info("Processing of %s cancelled", self.request.input_path.name)
            raise ProcessCancelledError()

        output = tracker.error_output
        message = describe_exit_code(rc, self.request.backend)
        if output:
            message += "\n" + output[-2000:]
        if self.classifier.is_backend_unavailable(output):
            raise BackendUnavailableError(message, rc, output)
        raise EncodeFailedError(message, rc, output)
