"""
Watch mode for h265split.

Monitors a directory for new video files and hands them to the processing
queue once they have finished copying.
"""

import logging
import os
import time
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Callable, Iterable, Iterator, List, Optional, Set

from watchdog.events import FileCreatedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from h265split.config import Config
from h265split.integrity import wait_for_stable_size

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {
    ".mp4",
    ".mkv",
    ".mov",
    ".avi",
    ".wmv",
    ".flv",
    ".webm",
    ".m4v",
    ".mpg",
    ".mpeg",
    ".m2v",
    ".ts",
    ".mts",
    ".m2ts",
    ".vob",
    ".3gp",
    ".3g2",
    ".f4v",
    ".ogv",
    ".divx",
    ".asf",
}

EXCLUDED_DIRS = {
    "node_modules",
    ".git",
    "dist",
    "build",
    "out",
    ".next",
    ".nuxt",
    "vendor",
    "__pycache__",
    ".venv",
    "venv",
}

# Browser and download-manager partial files
PARTIAL_SUFFIXES = (".part", ".tmp", ".crdownload", ".partial", ".download")


def is_video_file(path: Path, root: Optional[Path] = None) -> bool:
    """
    True for a recognized video file.

    When root is given, files inside build/VCS directories below it are rejected.
    """
    name = path.name
    lower = name.lower()
    if name.startswith("."):
        return False
    if lower.endswith(PARTIAL_SUFFIXES):
        return False
    # TypeScript declaration files share the .ts extension
    if lower.endswith(".d.ts"):
        return False
    if path.suffix.lower() not in VIDEO_EXTENSIONS:
        return False
    if root is None:
        return True
    try:
        parents = path.relative_to(root).parts[:-1]
    except ValueError:
        return True
    return not any(part in EXCLUDED_DIRS or part.startswith(".") for part in parents)


def scan_directory(root: Path, recursive: bool = True) -> Iterator[Path]:
    """Yield video files under root in sorted order."""
    if recursive:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith("."))
            for f in sorted(filenames):
                p = Path(dirpath) / f
                if is_video_file(p, root):
                    yield p
    else:
        for item in sorted(root.iterdir()):
            if item.is_file() and is_video_file(item):
                yield item


def is_under(path: Path, dirs: Iterable[Path]) -> bool:
    """True if path lies inside any of dirs."""
    resolved = path.resolve()
    return any(resolved.is_relative_to(Path(d).resolve()) for d in dirs)


def queue_output_dirs(cfg: Config) -> List[Path]:
    """Directories the queue writes into; files there are never new sources."""
    dirs = (cfg.output_dir, cfg.processed_dir, cfg.failed_dir)
    return [Path(d) for d in dirs if d]


class VideoFileHandler:
    """Waits for new video files to settle, then calls enqueue."""

    def __init__(
        self,
        enqueue_callback: Callable[[Path], object],
        stable_wait: float = 2.0,
        stop_event: Optional[Event] = None,
        root: Optional[Path] = None,
        ignore_dirs: Iterable[Path] = (),
    ):
        self.enqueue_callback = enqueue_callback
        self.root = root
        self.ignore_dirs = list(ignore_dirs)
        self.stable_wait = stable_wait
        self.stop_event = stop_event or Event()
        self.pending: Set[Path] = set()
        self._lock = Lock()

    def handle_file(self, filepath: Path) -> bool:
        """Handle a new or moved file. Returns True if it was passed on."""
        if not is_video_file(filepath, self.root):
            return False
        if self.is_ignored(filepath):
            return False

        with self._lock:
            if filepath in self.pending:
                return False
            self.pending.add(filepath)

        try:
            if not wait_for_stable_size(filepath, self.stable_wait, stop_event=self.stop_event):
                logger.debug("Skipping unstable or vanished file: %s", filepath)
                return False
            logger.info("New file detected: %s", filepath)
            self.enqueue_callback(filepath)
            return True
        finally:
            with self._lock:
                self.pending.discard(filepath)

    def is_ignored(self, filepath: Path) -> bool:
        return is_under(filepath, self.ignore_dirs)


class WatchdogHandler(FileSystemEventHandler):
    """Watchdog event handler for video files."""

    def __init__(self, video_handler: VideoFileHandler):
        super().__init__()
        self.video_handler = video_handler

    def _dispatch_path(self, raw_path) -> None:
        src = os.fsdecode(raw_path)
        # Run in thread to not block the observer during the stability wait
        Thread(target=self.video_handler.handle_file, args=(Path(src),), daemon=True).start()

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._dispatch_path(event.src_path)

    def on_moved(self, event: FileMovedEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self._dispatch_path(event.dest_path)


class DirectoryWatcher:
    """Watch a directory for new video files."""

    def __init__(
        self,
        watch_path: Path,
        enqueue_callback: Callable[[Path], object],
        cfg: Config,
    ):
        """
        Initialize the watcher.

        Args:
            watch_path: Directory to watch.
            enqueue_callback: Called with each stable new video file.
            cfg: Configuration instance (recursive, watch_poll, watch_interval, stable_wait).
        """
        self.watch_path = watch_path
        self.enqueue_callback = enqueue_callback
        self.cfg = cfg
        self.stop_event = Event()
        self._observer = None
        self.video_handler = VideoFileHandler(
            enqueue_callback, cfg.stable_wait, self.stop_event, root=watch_path, ignore_dirs=self._ignore_dirs()
        )

    def _ignore_dirs(self) -> List[Path]:
        return queue_output_dirs(self.cfg)

    @property
    def mode(self) -> str:
        return "polling" if self.cfg.watch_poll else "watchdog"

    def enqueue_existing(self) -> int:
        """Enqueue the files already present. Returns how many were found."""
        count = 0
        for path in scan_directory(self.watch_path, self.cfg.recursive):
            if self.video_handler.is_ignored(path):
                continue
            self.enqueue_callback(path)
            count += 1
        return count

    def start(self) -> None:
        """Start watching the directory."""
        if self.cfg.watch_poll:
            observer = PollingObserver(timeout=self.cfg.watch_interval)
        else:
            observer = Observer()
        observer.schedule(WatchdogHandler(self.video_handler), str(self.watch_path), recursive=self.cfg.recursive)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        """Stop watching."""
        self.stop_event.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def wait(self) -> None:
        """Wait until stopped (blocks)."""
        try:
            while not self.stop_event.is_set():
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass


def watch_directory(
    path: Path,
    enqueue_callback: Callable[[Path], object],
    cfg: Config,
    print_fn: Optional[Callable[[str], None]] = None,
) -> bool:
    """
    Watch a directory and enqueue new video files.

    Existing files are enqueued first. Blocks until interrupted (Ctrl+C).
    Returns False if path is not a directory.
    """
    if print_fn is None:
        print_fn = print

    if not path.is_dir():
        print_fn(f"Error: {path} is not a directory")
        return False

    watcher = DirectoryWatcher(path, enqueue_callback, cfg)
    recursive = "recursive" if cfg.recursive else "non-recursive"

    print_fn(f"Watching {path} ({watcher.mode}, {recursive})")
    print_fn("Press Ctrl+C to stop")

    try:
        existing = watcher.enqueue_existing()
        if existing:
            print_fn(f"Queued {existing} existing file(s)")
        watcher.start()
        watcher.wait()
    except KeyboardInterrupt:
        print_fn("\nStopping watcher...")
    finally:
        watcher.stop()
        print_fn("Watcher stopped.")
    return True
