"""
File stability checks for h265split.

Sources dropped into a watched directory may still be copying; they are
only handed to the queue once their size stops changing.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def file_size(path: Path) -> int:
    """Get file size in bytes, returns 0 on error."""
    try:
        return path.stat().st_size
    except OSError:
        return 0


def wait_for_stable_size(
    path: Path,
    wait_seconds: float = 2.0,
    max_checks: int = 0,
    stop_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Block until the file size is unchanged for ``wait_seconds``.

    Args:
        path: File to watch.
        wait_seconds: Debounce window.
        max_checks: Give up after this many windows (0 = no limit).
        stop_event: Abort early when set.
        sleep: Injectable sleep function.

    Returns:
        True once stable, False if the file vanished, the check limit was
        reached or the stop event fired.
    """
    last = file_size(path)
    checks = 0
    while True:
        if stop_event is not None and stop_event.is_set():
            return False
        if not path.exists():
            logger.debug("File disappeared while waiting: %s", path)
            return False
        if wait_seconds <= 0:
            return True
        sleep(wait_seconds)
        current = file_size(path)
        if current == last and current > 0:
            return True
        logger.debug("Still writing: %s (%d -> %d bytes)", path.name, last, current)
        last = current
        checks += 1
        if max_checks and checks >= max_checks:
            return False
