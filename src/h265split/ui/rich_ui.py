"""
Rich-based progress UI for h265split.

Shows one row per active job (chunk, progress bar, speed, ETA) plus the
most recent finished files, refreshed by a rich Live display.

Respects:
- NO_COLOR environment variable
- H265SPLIT_SCRIPT_MODE environment variable
- sys.stdout.isatty() for automatic detection
"""

import os
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from h265split.ui.legacy_ui import fmt_eta, fmt_hms, fmt_size, fmt_speed, shorten


def _should_use_color() -> bool:
    """Check if color output should be used."""
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("H265SPLIT_SCRIPT_MODE"):
        return False
    try:
        if not sys.stdout.isatty():
            return False
    except (AttributeError, ValueError):
        return False
    return True


@dataclass
class JobView:
    """Display state of a single file."""

    path: Path
    stage: str = "QUEUED"  # QUEUED, ENCODE, DONE, FAILED, CANCELLED
    pct: int = 0
    chunk: int = 0
    chunks: int = 0
    chunk_pct: int = 0
    speed: str = ""
    eta: str = ""
    estimated: bool = False
    attempt: int = 0
    start_time: float = 0
    elapsed: float = 0
    result_msg: str = ""


class RichProgressUI:
    """Rich Live table of the processing queue."""

    def __init__(self, console: Optional[Console] = None):
        use_color = _should_use_color()
        self.console = console or Console(
            force_terminal=use_color if use_color else None,
            no_color=not use_color,
        )
        self.lock = threading.Lock()

        self.ok = 0
        self.failed = 0
        self.cancelled = 0

        self.jobs: Dict[str, JobView] = {}
        self.messages: List[str] = []
        self.max_messages = 5
        self.max_finished = 8

        self.live: Optional[Live] = None

    def _make_progress_bar(self, pct: int, width: int = 25) -> Text:
        """Create a colored progress bar."""
        pct = max(0, min(100, pct))
        filled = int(pct * width / 100)
        bar = Text()
        bar.append("█" * filled, style="green")
        bar.append("░" * (width - filled), style="dim")
        return bar

    def _render(self) -> Group:
        with self.lock:
            parts: List[Any] = []
            views = list(self.jobs.values())

            for job in [j for j in views if j.stage == "DONE"][-5:]:
                line = Text()
                line.append("✓ DONE ", style="bold green")
                line.append(shorten(job.path.name, 50), style="green")
                line.append(f" ({job.result_msg}, {fmt_hms(job.elapsed)})", style="dim")
                parts.append(line)

            for job in [j for j in views if j.stage in ("FAILED", "CANCELLED")][-3:]:
                style = "red" if job.stage == "FAILED" else "yellow"
                line = Text()
                line.append(f"✗ {job.stage} ", style=f"bold {style}")
                line.append(shorten(job.path.name, 50), style=style)
                if job.result_msg:
                    line.append(f" ({shorten(job.result_msg.splitlines()[0], 60)})", style=f"{style} dim")
                parts.append(line)

            active = [j for j in views if j.stage == "ENCODE"]
            if active:
                table = Table(box=None, show_header=True, header_style="bold", pad_edge=False)
                table.add_column("File", no_wrap=True)
                table.add_column("Chunk", justify="right")
                table.add_column("Progress")
                table.add_column("%", justify="right")
                table.add_column("Speed", justify="right", style="magenta")
                table.add_column("ETA", justify="right")
                for job in active:
                    chunk = f"{job.chunk}/{job.chunks or '?'}"
                    if job.chunks > 1:
                        chunk += f" ({job.chunk_pct}%)"
                    name = shorten(job.path.name, 40)
                    if job.attempt > 1:
                        name += f" [{job.attempt}]"
                    eta = Text(job.eta)
                    if job.estimated:
                        eta.append(" est.", style="dim italic")
                    table.add_row(
                        Text(name, style="bold yellow"),
                        chunk,
                        self._make_progress_bar(job.pct),
                        f"{job.pct:3d}%",
                        job.speed,
                        eta,
                    )
                parts.append(table)

            waiting = [j for j in views if j.stage == "QUEUED"]
            if waiting:
                parts.append(Text(f"⏳ Waiting: {len(waiting)} file(s)", style="dim"))

            for msg in self.messages[-self.max_messages :]:
                parts.append(Text(msg, style="dim"))

            if not parts:
                parts.append(Text("Waiting for files...", style="dim"))
            return Group(*parts)

    def start(self) -> None:
        """Start the live display."""
        self.live = Live(self._render(), console=self.console, refresh_per_second=4, transient=False)
        self.live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self.live is not None:
            self.live.update(self._render())
            self.live.stop()
            self.live = None

    def refresh(self) -> None:
        if self.live is not None:
            self.live.update(self._render())

    def log(self, msg: str) -> None:
        with self.lock:
            self.messages.append(msg)
            del self.messages[: -self.max_messages]
        self.refresh()

    def handle_event(self, event: str, job: Any) -> None:
        key = str(job.path)
        with self.lock:
            if event == "queued":
                self.jobs.pop(key, None)
            view = self.jobs.setdefault(key, JobView(path=job.path, start_time=time.time()))
            if event == "start":
                view.stage = "ENCODE"
                view.attempt = job.attempts
                view.pct = 0
                view.eta = "starting..."
            elif event == "retry":
                view.stage = "QUEUED"
                view.pct = 0
                view.chunk_pct = 0
                view.speed = ""
                view.eta = ""
                self.messages.append(f"Retrying {job.path.name}: {job.last_error.splitlines()[0] if job.last_error else ''}")
                del self.messages[: -self.max_messages]
            elif event == "done":
                self.ok += 1
                view.stage = "DONE"
                view.pct = 100
                view.elapsed = time.time() - view.start_time
                if job.result is not None:
                    view.result_msg = f"{len(job.result.chunks)} chunk(s), {fmt_size(job.result.output_bytes)}"
            elif event == "failed":
                self.failed += 1
                view.stage = "FAILED"
                view.result_msg = job.last_error or "error"
            elif event == "cancelled":
                self.cancelled += 1
                view.stage = "CANCELLED"
            self._drop_old_finished()
        self.refresh()

    def _drop_old_finished(self) -> None:
        finished = [key for key, view in self.jobs.items() if view.stage in ("DONE", "FAILED", "CANCELLED")]
        for key in finished[: -self.max_finished]:
            del self.jobs[key]

    def handle_progress(self, job: Any, snap: Any) -> None:
        with self.lock:
            view = self.jobs.get(str(job.path))
            if view is None:
                return
            view.pct = snap.file_progress
            view.chunk = snap.current_chunk
            view.chunks = snap.total_chunks
            view.chunk_pct = snap.chunk_progress
            view.speed = fmt_speed(snap)
            view.eta = fmt_eta(snap)
            view.estimated = snap.duration_is_estimated
        self.refresh()

    def get_stats(self) -> Tuple[int, int, int]:
        """Get (ok, failed, cancelled)."""
        with self.lock:
            return (self.ok, self.failed, self.cancelled)


def print_summary(console: Console, status: Dict[str, Any], jobs: List[Any]) -> None:
    """Print the final per-file table and totals."""
    table = Table(title="h265split summary", show_lines=False)
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Output", justify="right")
    styles = {"completed": "green", "failed": "red", "cancelled": "yellow"}
    for job in jobs:
        result = job.result
        table.add_row(
            str(job.relative_path),
            Text(job.status.value, style=styles.get(job.status.value, "")),
            str(job.attempts),
            str(len(result.chunks)) if result is not None else "-",
            fmt_size(result.output_bytes) if result is not None else "-",
        )
    console.print(table)
    console.print(
        f"[green]{status['completed']} completed[/green], "
        f"[red]{status['failed']} failed[/red], "
        f"[yellow]{status['cancelled']} cancelled[/yellow] "
        f"| {fmt_size(status['bytes_processed'])} processed in {fmt_hms(status['elapsed'])}"
    )
