"""
Progress tracking for h265split.

Turns the line-oriented output of gst-launch (``progressreport`` lines plus
status and error text) into a per-job ProgressSnapshot with smoothed speed
and ETA. Smoothing state is held in plain dataclasses and advanced by pure
functions so it can be tested on synthetic sequences.
"""

import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from h265split.converter import TranscodeRequest, scan_output_chunks
from h265split.planner import round_half_up

logger = logging.getLogger(__name__)

# "progressreport0 (00:00:03): 12 / 1352 seconds ( 0.9 %)"
PROGRESS_RE = re.compile(
    r"(?P<label>[\w.-]+)\s*\((?P<clock>[^)]+)\):\s*(?P<pos>\d+(?:\.\d+)?)\s*/\s*(?P<dur>\d+(?:\.\d+)?)\s*seconds",
    re.IGNORECASE,
)

# Substrings marking gst-launch output that is status, not an error
BENIGN_MARKERS = (
    "Setting pipeline",
    "Pipeline is",
    "New clock",
    "Redistribute latency",
    "high-resolution clock",
    "Prerolled",
    "Got context from element",
    "Got EOS from element",
    "Execution ended after",
    "Freeing pipeline",
    "Interrupt: Stopping pipeline",
    "EOS on shutdown enabled",
    "Waiting for EOS",
    "handling interrupt",
)

MIN_PROGRESS_FOR_ETA = 3  # percent
MIN_TIME_FOR_ETA = 10.0  # seconds
MAX_ETA_STABILITY = 10


class LineKind(Enum):
    PROGRESS = "progress"
    STATUS = "status"
    ERROR = "error"
    EMPTY = "empty"


@dataclass(frozen=True)
class ProgressReport:
    """One parsed progressreport line."""

    label: str
    clock: str
    position: float
    duration: float


def parse_progress_line(line: str) -> Optional[ProgressReport]:
    """Parse a ``<label> (<clock>): <pos> / <dur> seconds`` line, or return None."""
    m = PROGRESS_RE.search(line)
    if not m:
        return None
    return ProgressReport(m.group("label"), m.group("clock"), float(m.group("pos")), float(m.group("dur")))


def classify_line(line: str) -> LineKind:
    """Classify one line of gst-launch output."""
    text = line.strip()
    if not text:
        return LineKind.EMPTY
    if parse_progress_line(text) is not None:
        return LineKind.PROGRESS
    if any(marker in text for marker in BENIGN_MARKERS):
        return LineKind.STATUS
    return LineKind.ERROR


# -------------------- SMOOTHING --------------------


def smooth_speed(previous: Optional[float], sample: float) -> float:
    """Exponential smoothing, 90% previous / 10% new."""
    if previous is None:
        return sample
    return previous * 0.9 + sample * 0.1


def smooth_throughput(previous: float, sample: float) -> float:
    """Output byte-rate smoothing, 70% previous / 30% new."""
    if previous <= 0:
        return sample
    return previous * 0.7 + sample * 0.3


@dataclass(frozen=True)
class EtaState:
    """Asymmetrically smoothed ETA."""

    smoothed: Optional[float] = None
    stability: int = 0

    @property
    def display(self) -> Optional[int]:
        """ETA to show, rounded to 5 s; None until two stable samples were seen."""
        if self.smoothed is None or self.stability < 2:
            return None
        return round_half_up(self.smoothed / 5) * 5


def smooth_eta(state: EtaState, raw_eta: float) -> EtaState:
    """
    Fold one raw ETA sample into the smoothed value.

    Decreases are accepted at a 95/5 blend. Increases are ignored unless
    the sample exceeds the current value by more than 10%, in which case
    they are blended 90/10.
    """
    if state.smoothed is None:
        return EtaState(float(raw_eta), 1)
    current = state.smoothed
    candidate = current * 0.95 + raw_eta * 0.05
    if candidate < current:
        current = candidate
    elif raw_eta > current * 1.1:
        current = current * 0.9 + raw_eta * 0.1
    return EtaState(current, min(MAX_ETA_STABILITY, state.stability + 1))


@dataclass
class SmoothingState:
    """Per-job accumulators, never shared between jobs."""

    speed: Optional[float] = None
    eta: EtaState = field(default_factory=EtaState)
    last_file_progress: int = 0
    last_output_bytes: int = 0
    last_size_check: float = 0.0
    bytes_per_second: float = 0.0


@dataclass
class ProgressSnapshot:
    """Progress of one job, as reported to callbacks."""

    position_seconds: float = 0.0
    total_duration_seconds: float = 0.0
    current_chunk: int = 0
    total_chunks: int = 0
    completed_chunks: int = 0
    file_progress: int = 0
    chunk_progress: int = 0
    smoothed_speed: Optional[float] = None
    smoothed_eta_seconds: Optional[int] = None
    chunk_eta_seconds: Optional[int] = None
    output_bytes_written: int = 0
    throughput_bps: float = 0.0
    elapsed_seconds: float = 0.0
    duration_is_estimated: bool = False
    finished: bool = False


def count_chunks(duration: float, chunk_duration: float) -> int:
    if duration <= 0 or chunk_duration <= 0:
        return 0
    return math.ceil(duration / chunk_duration)


ChunkScanner = Callable[[], List[Tuple[Path, int]]]


class ProgressTracker:
    """
    Tracks one encode job.

    ``feed_line`` is called by the output reader thread and ``tick`` by a
    1 s timer thread; both update the snapshot under a lock and invoke the
    callback with a copy. Delivery is serialized separately and a snapshot
    older than the last delivered one is dropped, so callbacks always see
    non-decreasing file progress.
    """

    def __init__(
        self,
        request: TranscodeRequest,
        duration_seconds: float,
        duration_is_estimated: bool,
        callback: Optional[Callable[[ProgressSnapshot], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        chunk_scanner: Optional[ChunkScanner] = None,
    ):
        self.request = request
        self.chunk_duration = request.chunk_duration_seconds
        self.duration = duration_seconds
        self.duration_is_estimated = duration_is_estimated
        self.total_chunks = count_chunks(duration_seconds, self.chunk_duration)
        self.callback = callback
        self.clock = clock
        self._scan = chunk_scanner or (
            lambda: scan_output_chunks(request.output_dir, request.base_name, request.container)
        )
        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._last_emitted = -1
        self._start = clock()
        self._position = 0.0
        self._state = SmoothingState(last_size_check=self._start)
        self._snapshot = ProgressSnapshot(
            total_duration_seconds=duration_seconds,
            total_chunks=self.total_chunks,
            duration_is_estimated=duration_is_estimated,
        )
        self.error_lines: List[str] = []

    @property
    def error_output(self) -> str:
        return "\n".join(self.error_lines)

    def feed_line(self, line: str) -> LineKind:
        """Consume one line of subprocess output."""
        report = parse_progress_line(line)
        if report is not None:
            self.on_position_update(report.position, report.duration)
            return LineKind.PROGRESS
        kind = classify_line(line)
        if kind is LineKind.ERROR:
            self.error_lines.append(line.strip())
            logger.debug("[GStreamer ERROR] %s", line.strip())
        elif kind is LineKind.STATUS:
            logger.debug("[GStreamer] %s", line.strip())
        return kind

    def on_position_update(self, position: float, duration: Optional[float] = None) -> ProgressSnapshot:
        with self._lock:
            self._position = max(self._position, position)
            if duration:
                if self.duration_is_estimated:
                    if duration != self.duration:
                        logger.debug(
                            "[Progress] Ignoring probe duration (%ss), keeping estimated duration (%.0fs)",
                            duration,
                            self.duration,
                        )
                elif self.duration <= 0:
                    self.duration = float(duration)
                    self.total_chunks = count_chunks(self.duration, self.chunk_duration)
                    logger.info("[Progress] Duration from probe: %ss, chunks: %d", duration, self.total_chunks)
            snap = self._update()
        self._emit(snap)
        return snap

    def tick(self) -> ProgressSnapshot:
        """Periodic refresh (chunk files, output size, speed decay)."""
        with self._lock:
            snap = self._update()
        self._emit(snap)
        return snap

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return replace(self._snapshot)

    def finish(self) -> ProgressSnapshot:
        """Mark the job complete and emit a final 100% event."""
        with self._lock:
            snap = self._update()
            chunks = max(snap.current_chunk, snap.total_chunks, snap.completed_chunks)
            snap.file_progress = 100
            snap.chunk_progress = 100
            snap.current_chunk = chunks
            snap.total_chunks = chunks
            snap.completed_chunks = chunks
            snap.smoothed_eta_seconds = 0
            snap.chunk_eta_seconds = 0
            snap.finished = True
            self._snapshot = snap
            snap = replace(snap)
        self._emit(snap)
        return snap

    # -------------------- internals --------------------

    def _emit(self, snap: ProgressSnapshot) -> None:
        with self._emit_lock:
            if snap.file_progress < self._last_emitted:
                return
            self._last_emitted = snap.file_progress
            if self.callback is not None:
                self.callback(snap)

    def _scan_chunks(self) -> Tuple[int, int]:
        """Return (chunk file count, total bytes)."""
        try:
            chunks = self._scan()
        except OSError as e:
            logger.debug("[Progress] Error checking chunks: %s", e)
            return 0, 0
        # qtmux writes an empty file until the fragment is finalized
        allow_empty = self.request.container in ("mp4", "mov")
        count = sum(1 for _path, size in chunks if size > 0 or allow_empty)
        return count, sum(size for _path, size in chunks)

    def _update(self) -> ProgressSnapshot:
        now = self.clock()
        elapsed = now - self._start
        st = self._state
        pos = self._position
        dur = self.duration

        file_progress = 0
        if dur > 0 and pos > 0:
            file_progress = min(99, round_half_up(pos / dur * 100))
        file_progress = max(file_progress, st.last_file_progress)
        st.last_file_progress = file_progress

        chunk_files, output_bytes = self._scan_chunks()
        if output_bytes > 0 and now - st.last_size_check >= 1:
            growth = output_bytes - st.last_output_bytes
            if growth > 0:
                st.bytes_per_second = smooth_throughput(st.bytes_per_second, growth / (now - st.last_size_check))
            st.last_output_bytes = output_bytes
            st.last_size_check = now

        implied = 0
        if pos > 0 and self.chunk_duration > 0:
            implied = int(pos // self.chunk_duration) + 1
            if self.total_chunks:
                implied = min(implied, self.total_chunks)
        current = max(implied, chunk_files)
        total = max(self.total_chunks, current)
        completed = max(0, chunk_files - 1)

        chunk_progress = 0
        chunk_end = dur
        if total <= 1:
            chunk_progress = file_progress
        elif current > 0 and dur > 0:
            chunk_start = (current - 1) * self.chunk_duration
            chunk_end = min(current * self.chunk_duration, dur)
            length = chunk_end - chunk_start
            if length > 0 and pos >= chunk_start:
                chunk_progress = min(99, round_half_up((pos - chunk_start) / length * 100))

        if pos > 0 and elapsed > 0:
            st.speed = smooth_speed(st.speed, pos / elapsed)

        file_eta = chunk_eta = None
        if file_progress >= MIN_PROGRESS_FOR_ETA and elapsed >= MIN_TIME_FOR_ETA and st.speed and dur > 0:
            file_eta = round_half_up(max(0.0, dur - pos) / st.speed)
            chunk_eta = round_half_up(max(0.0, chunk_end - pos) / st.speed) if total > 1 else file_eta
            st.eta = smooth_eta(st.eta, file_eta)
        display_eta = st.eta.display

        self._snapshot = ProgressSnapshot(
            position_seconds=pos,
            total_duration_seconds=dur,
            current_chunk=current,
            total_chunks=total,
            completed_chunks=completed,
            file_progress=file_progress,
            chunk_progress=chunk_progress,
            smoothed_speed=st.speed,
            smoothed_eta_seconds=display_eta,
            chunk_eta_seconds=chunk_eta if display_eta is not None else None,
            output_bytes_written=output_bytes,
            throughput_bps=st.bytes_per_second,
            elapsed_seconds=elapsed,
            duration_is_estimated=self.duration_is_estimated,
        )
        return replace(self._snapshot)
