"""
Duration and bitrate resolution for h265split.

Container metadata from unfinished recordings is often wrong: a 15 GB file
may claim to last 30 seconds. ``resolve`` never fails on a missing or
implausible duration; it degrades to a size-based estimate and flags it,
so the planner can switch to quality-based rate control.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple

from h265split.converter import gst_env, gst_tool, to_file_uri
from h265split.errors import DiscoveryError

if TYPE_CHECKING:
    from h265split.config import Config

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024

# Conservative bitrate used to derive a duration from the file size
ASSUMED_BITRATE_BPS = 20_000_000
ASSUMED_BITRATE_KBPS = ASSUMED_BITRATE_BPS / 1000

# Metadata of large files claiming less than a minute is treated as corrupt
LARGE_FILE_BYTES = 10 * GIB
MIN_PLAUSIBLE_DURATION = 60.0

# Nothing real exceeds this; the duration must be wrong instead
MAX_PLAUSIBLE_BITRATE_KBPS = 500_000

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+\.?\d*)", re.IGNORECASE)
_JSON_RE = re.compile(r"\{.*\"duration\".*\}", re.DOTALL)


@dataclass(frozen=True)
class DurationEstimate:
    """Resolved playable duration of one input."""

    duration_seconds: float
    is_estimated: bool
    source_bitrate_kbps: Optional[float]
    file_size_bytes: int = 0
    source: str = "none"  # gst-discoverer, ffprobe, file-size, none

    @property
    def is_known(self) -> bool:
        return self.duration_seconds > 0


def discovery_timeout(size_bytes: int) -> float:
    """Discovery timeout in seconds, scaled to the file size."""
    if size_bytes > LARGE_FILE_BYTES:
        return 120.0
    if size_bytes > GIB:
        return 60.0
    return 30.0


def estimate_from_size(size_bytes: int) -> float:
    """Duration in seconds assuming the conservative bitrate."""
    return size_bytes * 8 / ASSUMED_BITRATE_BPS


def parse_discoverer_output(output: str) -> Optional[float]:
    """
    Extract a duration in seconds from gst-discoverer output.

    Accepts ``Duration: H:MM:SS.fraction`` or a JSON fragment carrying a
    numeric ``duration`` in nanoseconds. Returns None if neither is found.
    """
    m = _DURATION_RE.search(output)
    if m:
        hours, minutes, seconds = int(m.group(1)), int(m.group(2)), float(m.group(3))
        return hours * 3600 + minutes * 60 + seconds

    m = _JSON_RE.search(output)
    if m:
        try:
            data = json.loads(m.group(0))
        except ValueError:
            return None
        duration = data.get("duration") if isinstance(data, dict) else None
        if isinstance(duration, (int, float)) and not isinstance(duration, bool) and duration:
            return duration / 1_000_000_000
    return None


def parse_ffprobe_output(output: str) -> Optional[float]:
    """Extract ``format.duration`` (seconds) from ffprobe JSON output."""
    try:
        data = json.loads(output)
        return float(data["format"]["duration"])
    except (ValueError, KeyError, TypeError):
        return None


def _run_tool(cmd: list, timeout: float, env: Optional[dict] = None) -> str:
    """Run a discovery tool and return its merged output; raise DiscoveryError on failure."""
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired:
        raise DiscoveryError(f"{Path(cmd[0]).name} timed out after {timeout:.0f}s") from None
    except OSError as e:
        raise DiscoveryError(f"{Path(cmd[0]).name} could not be started: {e}") from e
    if result.returncode != 0:
        raise DiscoveryError(f"{Path(cmd[0]).name} exited with code {result.returncode}: {result.stdout[:200]}")
    return result.stdout


def run_discoverer(path: Path, timeout: float, gstreamer_path: Optional[str] = None) -> float:
    """Query gst-discoverer-1.0 for the duration."""
    output = _run_tool(
        [gst_tool("gst-discoverer-1.0", gstreamer_path), to_file_uri(str(path))],
        timeout,
        gst_env(gstreamer_path),
    )
    logger.debug("[Duration Discovery] Output: %s", output[:500])
    duration = parse_discoverer_output(output)
    if not duration or duration <= 0:
        raise DiscoveryError(f"Could not parse duration from GStreamer output: {output[:200]}")
    return duration


def run_ffprobe(path: Path, timeout: float) -> float:
    """Query ffprobe for the container duration."""
    output = _run_tool(
        ["ffprobe", "-v", "error", "-show_entries", "format=duration", "-of", "json", str(path)],
        timeout,
    )
    duration = parse_ffprobe_output(output)
    if not duration or duration <= 0:
        raise DiscoveryError(f"Could not parse duration from ffprobe output: {output[:200]}")
    return duration


def discover_duration(path: Path, size_bytes: int, gstreamer_path: Optional[str] = None) -> Tuple[float, str]:
    """
    Ask the discovery tools for a duration, primary first.

    Returns:
        Tuple of (duration_seconds, tool_name).

    Raises:
        DiscoveryError: if every tool failed.
    """
    timeout = discovery_timeout(size_bytes)
    logger.info("[Duration] Using %.0fs discovery timeout for %.2fGB file", timeout, size_bytes / GIB)

    errors = []
    for name, query in (
        ("gst-discoverer", lambda: run_discoverer(path, timeout, gstreamer_path)),
        ("ffprobe", lambda: run_ffprobe(path, timeout)),
    ):
        try:
            return query(), name
        except DiscoveryError as e:
            logger.warning("[Duration] %s", e)
            errors.append(str(e))
    raise DiscoveryError("; ".join(errors))


def resolve(path: Path, cfg: Optional["Config"] = None) -> DurationEstimate:
    """
    Resolve duration and source bitrate for an input file.

    Never raises for a missing duration: discovery failures fall back to an
    estimate from the file size, flagged with ``is_estimated``.
    """
    gstreamer_path = cfg.gstreamer_path if cfg is not None else None
    path = Path(path)

    try:
        size = path.stat().st_size
    except OSError as e:
        logger.error("Failed to get file size: %s", e)
        size = 0

    try:
        duration, source = discover_duration(path, size, gstreamer_path)
        estimated = False
    except DiscoveryError as e:
        logger.warning("[Video Info] Could not get duration: %s", e)
        if size <= 0:
            # Unknown: the live progress probe may still report it
            return DurationEstimate(0.0, False, None, 0, "none")
        duration, source, estimated = estimate_from_size(size), "file-size", True
        logger.info("[Video Info] Estimated duration from file size: %.0fs", duration)

    if size > LARGE_FILE_BYTES and duration < MIN_PLAUSIBLE_DURATION:
        logger.warning(
            "[Video Info] Duration detection seems incorrect (%.2fs for %.2fGB file), estimating from file size",
            duration,
            size / GIB,
        )
        duration, source, estimated = estimate_from_size(size), "file-size", True

    if size <= 0:
        return DurationEstimate(duration, estimated, None, 0, source)

    bitrate_kbps = size * 8 / duration / 1000

    if bitrate_kbps > MAX_PLAUSIBLE_BITRATE_KBPS and not estimated:
        logger.warning(
            "[Bitrate Sanity Check] Calculated bitrate %.0f Mbps exceeds %d Mbps; "
            "duration metadata is likely corrupt (%.2fGB, reported %.2fs). Estimating from file size",
            bitrate_kbps / 1000,
            MAX_PLAUSIBLE_BITRATE_KBPS // 1000,
            size / GIB,
            duration,
        )
        duration, source, estimated = estimate_from_size(size), "file-size", True
        bitrate_kbps = ASSUMED_BITRATE_KBPS

    logger.info(
        "[Video Info] Duration: %.1fs (%d min), size %.2fGB, bitrate %.0f kbps%s",
        duration,
        round(duration / 60),
        size / GIB,
        bitrate_kbps,
        " (estimated)" if estimated else "",
    )
    return DurationEstimate(duration, estimated, bitrate_kbps, size, source)
