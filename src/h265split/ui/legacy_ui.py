"""
Plain text progress UI for h265split.

Used in non-interactive terminals: one rewritten progress line when
stdout is a TTY, otherwise plain log lines only.
"""

import shutil
import sys
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

if TYPE_CHECKING:
    from h265split.pipeline import Job
    from h265split.progress import ProgressSnapshot


def term_width() -> int:
    """Get terminal width."""
    try:
        return shutil.get_terminal_size((120, 20)).columns
    except OSError:
        return 120


def mkbar(pct: int, width: int = 26) -> str:
    """Create a simple progress bar string."""
    pct = max(0, min(100, pct))
    filled = int(pct * width / 100)
    empty = width - filled
    return "#" * filled + "-" * empty


def shorten(s: str, maxlen: int) -> str:
    """Shorten a string with ellipsis if too long."""
    if maxlen <= 0:
        return ""
    if len(s) <= maxlen:
        return s
    if maxlen <= 3:
        return s[:maxlen]
    return s[: maxlen - 3] + "..."


def fmt_hms(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    if seconds < 0:
        seconds = 0
    s = int(round(seconds))
    h = s // 3600
    m = (s % 3600) // 60
    r = s % 60
    return f"{h:02d}:{m:02d}:{r:02d}"


def fmt_size(num_bytes: float) -> str:
    """Format a byte count with a binary unit."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}" if unit != "B" else f"{int(num_bytes)} B"
        num_bytes /= 1024
    return f"{num_bytes:.2f} TB"


def fmt_eta(snap: "ProgressSnapshot") -> str:
    if snap.smoothed_eta_seconds is not None:
        return fmt_hms(snap.smoothed_eta_seconds)
    if snap.elapsed_seconds > 5:
        return "calculating..."
    return "starting..."


def fmt_speed(snap: "ProgressSnapshot") -> str:
    return f"{snap.smoothed_speed:.2f}x" if snap.smoothed_speed else ""


@dataclass
class UIState:
    """State for plain UI rendering."""

    pct: int
    chunk: int
    chunks: int
    base: str
    eta: str
    speed: str
    estimated: bool = False


class PlainProgressUI:
    """Single-line progress UI for terminals without rich rendering."""

    def __init__(self, progress: bool = True, bar_width: int = 26):
        self.enabled = progress and sys.stdout.isatty()
        self.bar_width = bar_width
        self.lock = threading.Lock()
        self._last_render: Optional[str] = None

        self.ok = 0
        self.failed = 0
        self.cancelled = 0

    def start(self) -> None:
        pass

    def stop(self) -> None:
        self.endline()

    def render(self, st: UIState) -> None:
        """Render progress line to terminal."""
        if not self.enabled:
            return

        w = term_width()
        bar = mkbar(st.pct, self.bar_width)
        est = " ~" if st.estimated else ""
        left = f"[{bar}] {st.pct:3d}% | chunk {st.chunk}/{st.chunks or '?'}{est} "
        right = f"| ETA {st.eta} {st.speed}".rstrip()

        avail = max(10, w - len(left) - len(right) - 1)
        name = shorten(st.base, avail)

        line = f"{left}{name} {right}"
        with self.lock:
            pad = ""
            if self._last_render is not None and len(self._last_render) > len(line):
                pad = " " * (len(self._last_render) - len(line))
            if line != self._last_render:
                sys.stdout.write("\r" + line + pad)
                sys.stdout.flush()
                self._last_render = line

    def endline(self) -> None:
        """Clear the current progress line."""
        if not self.enabled:
            return
        with self.lock:
            sys.stdout.write("\r" + " " * (len(self._last_render) if self._last_render else 80) + "\r")
            sys.stdout.flush()
            self._last_render = None

    def log(self, msg: str) -> None:
        """Print a log message, clearing progress line first."""
        with self.lock:
            if self.enabled and self._last_render:
                sys.stdout.write("\r" + " " * len(self._last_render) + "\r")
                sys.stdout.flush()
            print(msg, flush=True)
            self._last_render = None

    def handle_event(self, event: str, job: "Job") -> None:
        name = job.relative_path
        if event == "start":
            self.log(f"> {name} (attempt {job.attempts})")
        elif event == "done":
            self.ok += 1
            chunks = len(job.result.chunks) if job.result is not None else 0
            self.log(f"OK {name}: {chunks} chunk(s)")
        elif event == "retry":
            self.log(f"RETRY {name}: {job.last_error}")
        elif event == "failed":
            self.failed += 1
            self.log(f"FAILED {name}: {job.last_error}")
        elif event == "cancelled":
            self.cancelled += 1
            self.log(f"CANCELLED {name}")

    def handle_progress(self, job: "Job", snap: "ProgressSnapshot") -> None:
        self.render(
            UIState(
                pct=snap.file_progress,
                chunk=snap.current_chunk,
                chunks=snap.total_chunks,
                base=job.path.name,
                eta=fmt_eta(snap),
                speed=fmt_speed(snap),
                estimated=snap.duration_is_estimated,
            )
        )

    def get_stats(self) -> Tuple[int, int, int]:
        """Get (ok, failed, cancelled)."""
        return (self.ok, self.failed, self.cancelled)
