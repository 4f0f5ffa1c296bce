"""
JSON progress output for h265split.

This module provides structured JSON-lines output for integration
with other applications (GUIs, monitoring tools, etc.).
"""

import json
import sys
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from h265split.pipeline import Job
    from h265split.progress import ProgressSnapshot


@dataclass
class FileProgress:
    """Progress information for a single file."""

    filename: str
    filepath: str
    status: str  # "queued", "encoding", "retrying", "done", "failed", "cancelled"
    attempt: int = 0
    progress_percent: int = 0
    chunk_progress: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    completed_chunks: int = 0
    position_seconds: float = 0.0
    duration_seconds: float = 0.0
    duration_is_estimated: bool = False
    speed: Optional[float] = None
    eta_seconds: Optional[int] = None
    output_bytes: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    chunks: List[str] = field(default_factory=list)


@dataclass
class OverallProgress:
    """Overall progress for the entire batch."""

    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    cancelled_files: int = 0
    overall_percent: float = 0.0
    started_at: Optional[float] = None
    backend: str = ""
    concurrency: int = 1


@dataclass
class JSONProgressState:
    """Complete state for JSON progress output."""

    version: str = "1.0"
    timestamp: float = field(default_factory=time.time)
    event: str = "progress"  # "start", "file_queued", "file_start", "progress", "file_retry", "file_done", "complete"
    overall: OverallProgress = field(default_factory=OverallProgress)
    # unfinished files only; an entry is dropped after its file_done event
    files: Dict[str, FileProgress] = field(default_factory=dict)


class JSONProgressOutput:
    """
    Manages JSON progress output to stdout.

    Each event carries the overall counters and the files still in flight.
    A finished file appears in its own file_done event and is then
    dropped from the state.
    """

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdout
        self.state = JSONProgressState()
        self._lock = threading.Lock()

    def _emit(self, event: str, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a JSON progress event."""
        self.state.timestamp = time.time()
        self.state.event = event
        output = asdict(self.state)
        if extra:
            output.update(extra)
        print(json.dumps(output), file=self.stream, flush=True)

    def start(self, total_files: int, backend: str, concurrency: int) -> None:
        """Signal start of processing."""
        with self._lock:
            self.state.overall = OverallProgress(
                total_files=total_files,
                backend=backend,
                concurrency=concurrency,
                started_at=time.time(),
            )
            self._emit("start")

    def file_queued(self, filepath: Path) -> None:
        with self._lock:
            key = str(filepath)
            self.state.files[key] = FileProgress(filename=filepath.name, filepath=key, status="queued")
            overall = self.state.overall
            overall.total_files = max(overall.total_files, self._finished_count() + len(self.state.files))
            self._update_overall()
            self._emit("file_queued", {"file": filepath.name})

    def file_start(self, filepath: Path, attempt: int = 1) -> None:
        """Signal encoding has started (or restarted) for a file."""
        with self._lock:
            fp = self._get(filepath)
            fp.status = "encoding"
            fp.attempt = attempt
            fp.progress_percent = 0
            fp.error = None
            fp.started_at = time.time()
            self._emit("file_start", {"file": filepath.name, "attempt": attempt})

    def file_progress(self, filepath: Path, snap: "ProgressSnapshot") -> None:
        """Update encoding progress for a file."""
        with self._lock:
            key = str(filepath)
            if key not in self.state.files:
                return
            fp = self.state.files[key]
            fp.progress_percent = snap.file_progress
            fp.chunk_progress = snap.chunk_progress
            fp.current_chunk = snap.current_chunk
            fp.total_chunks = snap.total_chunks
            fp.completed_chunks = snap.completed_chunks
            fp.position_seconds = snap.position_seconds
            fp.duration_seconds = snap.total_duration_seconds
            fp.duration_is_estimated = snap.duration_is_estimated
            fp.speed = round(snap.smoothed_speed, 3) if snap.smoothed_speed is not None else None
            fp.eta_seconds = snap.smoothed_eta_seconds
            fp.output_bytes = snap.output_bytes_written
            self._update_overall()
            self._emit("progress", {"file": filepath.name})

    def file_done(self, filepath: Path, status: str, error: Optional[str] = None, chunks: Optional[list] = None) -> None:
        """Signal a file has reached a terminal state ("done", "failed", "cancelled")."""
        with self._lock:
            fp = self._get(filepath)
            fp.status = status
            fp.finished_at = time.time()
            fp.error = error
            if status == "done":
                fp.progress_percent = 100
                fp.chunks = [str(c) for c in chunks or []]
                self.state.overall.completed_files += 1
            elif status == "failed":
                self.state.overall.failed_files += 1
            else:
                self.state.overall.cancelled_files += 1
            self._update_overall()
            self._emit("file_done", {"file": filepath.name, "status": status})
            del self.state.files[str(filepath)]

    def file_retry(self, filepath: Path, attempt: int, error: Optional[str] = None) -> None:
        """Signal a failed attempt that will be retried after a delay."""
        with self._lock:
            fp = self._get(filepath)
            fp.status = "retrying"
            fp.attempt = attempt
            fp.progress_percent = 0
            fp.chunk_progress = 0
            fp.speed = None
            fp.eta_seconds = None
            fp.error = error
            self._update_overall()
            self._emit("file_retry", {"file": filepath.name, "attempt": attempt, "error": error})

    def complete(self) -> None:
        """Signal all processing is complete."""
        with self._lock:
            self.state.overall.overall_percent = 100.0
            self._emit("complete")

    # Queue adapters

    def handle_event(self, event: str, job: "Job") -> None:
        if event == "queued":
            self.file_queued(job.path)
        elif event == "start":
            self.file_start(job.path, job.attempts)
        elif event == "retry":
            self.file_retry(job.path, job.attempts, job.last_error)
        elif event == "done":
            chunks = job.result.chunks if job.result is not None else []
            self.file_done(job.path, "done", chunks=chunks)
        elif event == "failed":
            self.file_done(job.path, "failed", error=job.last_error)
        elif event == "cancelled":
            self.file_done(job.path, "cancelled", error=job.last_error)

    def handle_progress(self, job: "Job", snap: "ProgressSnapshot") -> None:
        self.file_progress(job.path, snap)

    def _get(self, filepath: Path) -> FileProgress:
        key = str(filepath)
        if key not in self.state.files:
            self.state.files[key] = FileProgress(filename=filepath.name, filepath=key, status="queued")
        return self.state.files[key]

    def _finished_count(self) -> int:
        overall = self.state.overall
        return overall.completed_files + overall.failed_files + overall.cancelled_files

    def _update_overall(self) -> None:
        total = self.state.overall.total_files
        if total <= 0:
            return
        finished = self._finished_count()
        partial = sum(fp.progress_percent / 100.0 for fp in self.state.files.values() if fp.status == "encoding")
        self.state.overall.overall_percent = min(100.0, (finished + partial) / total * 100)
