"""
Core conversion logic for h265split.

Contains:
- The per-file TranscodeRequest
- Encoding backend table and detection (gst-inspect-1.0)
- GStreamer tool resolution
- gst-launch pipeline building
- Output chunk naming and scanning
"""

import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from h265split.planner import RateControlPlan

logger = logging.getLogger(__name__)

NANOSECONDS = 1_000_000_000

# Highest chunk index scanned when counting output files
MAX_CHUNK_SCAN = 100


@dataclass(frozen=True)
class TranscodeRequest:
    """Immutable per-file intent."""

    input_path: Path
    output_dir: Path
    chunk_duration_seconds: float
    container: str
    backend: str
    compression_ratio: Optional[int]
    speed_preset: Optional[str] = None

    @property
    def base_name(self) -> str:
        return self.input_path.stem


@dataclass(frozen=True)
class Backend:
    """One H.265 encoding backend."""

    id: str
    name: str
    element: str
    hardware: bool
    priority: int  # Higher = better (used for auto selection)
    platform: str = "all"  # all, linux, macos, windows


BACKENDS: Dict[str, Backend] = {
    "nvh265": Backend("nvh265", "NVIDIA NVENC", "nvh265enc", True, 100),
    "vtenc": Backend("vtenc", "Apple VideoToolbox", "vtenc_h265", True, 95, "macos"),
    "qsvh265": Backend("qsvh265", "Intel Quick Sync", "qsvh265enc", True, 90),
    "vaapih265": Backend("vaapih265", "VA-API", "vaapih265enc", True, 80, "linux"),
    "msdkh265": Backend("msdkh265", "Intel Media SDK", "msdkh265enc", True, 70, "linux"),
    "x265": Backend("x265", "Software (x265)", "x265enc", False, 10),
}

# Container extension -> muxer element
CONTAINERS: Dict[str, str] = {
    "mkv": "matroskamux",
    "mp4": "qtmux",
    "mov": "qtmux",
}


def get_backend(backend_id: str) -> Backend:
    try:
        return BACKENDS[backend_id]
    except KeyError:
        from h265split.errors import PlanningError

        raise PlanningError(f"Unknown encoding backend: {backend_id}") from None


# -------------------- GSTREAMER TOOLS --------------------


def _exe(name: str) -> str:
    return name + ".exe" if sys.platform == "win32" else name


def gst_bin_dir(gstreamer_path: Optional[str]) -> Optional[Path]:
    """Locate the directory holding gst-launch-1.0 inside a GStreamer installation."""
    if not gstreamer_path:
        return None
    root = Path(gstreamer_path).expanduser()
    for candidate in (root / "bin", root):
        if (candidate / _exe("gst-launch-1.0")).exists():
            return candidate
    return root / "bin"


def gst_tool(name: str, gstreamer_path: Optional[str] = None) -> str:
    """Return the path (or bare name, resolved through PATH) of a GStreamer tool."""
    bin_dir = gst_bin_dir(gstreamer_path)
    if bin_dir is not None:
        full = bin_dir / _exe(name)
        if full.exists():
            return str(full)
    return _exe(name)


def gst_env(gstreamer_path: Optional[str] = None) -> Dict[str, str]:
    """Environment for GStreamer subprocesses, pointing at a custom installation if any."""
    env = dict(os.environ)
    bin_dir = gst_bin_dir(gstreamer_path)
    if bin_dir is None:
        return env
    env["PATH"] = str(bin_dir) + os.pathsep + env.get("PATH", "")
    plugin_dir = bin_dir.parent / "lib" / "gstreamer-1.0"
    if plugin_dir.is_dir():
        env["GST_PLUGIN_PATH"] = str(plugin_dir)
    return env


# -------------------- BACKEND DETECTION --------------------


def _current_platform() -> str:
    if sys.platform == "darwin":
        return "macos"
    if sys.platform == "win32":
        return "windows"
    return "linux"


def have_element(element: str, gstreamer_path: Optional[str] = None, timeout: float = 5.0) -> bool:
    """Check if gst-inspect-1.0 knows the given element."""
    try:
        result = subprocess.run(
            [gst_tool("gst-inspect-1.0", gstreamer_path), element],
            capture_output=True,
            text=True,
            timeout=timeout,
            env=gst_env(gstreamer_path),
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0 and bool(result.stdout) and "No such element" not in result.stderr


def detect_backends(gstreamer_path: Optional[str] = None) -> List[Tuple[Backend, bool]]:
    """Return (backend, available) for every backend usable on this platform, best first."""
    platform = _current_platform()
    results = []
    for backend in sorted(BACKENDS.values(), key=lambda b: b.priority, reverse=True):
        if backend.platform not in ("all", platform):
            continue
        available = have_element(backend.element, gstreamer_path)
        logger.debug("%s (%s): %s", backend.name, backend.element, "available" if available else "not available")
        results.append((backend, available))
    return results


def pick_backend(encoder: str, gstreamer_path: Optional[str] = None) -> str:
    """
    Select the encoding backend.

    Returns the configured backend unchanged unless it is "auto", in which
    case the highest-priority available backend is chosen (x265 fallback).
    """
    if encoder != "auto":
        return encoder
    for backend, available in detect_backends(gstreamer_path):
        if available:
            logger.info("Auto-selected encoder: %s (%s)", backend.id, backend.name)
            return backend.id
    logger.info("No GStreamer H.265 encoder detected, defaulting to x265")
    return "x265"


# -------------------- PATHS --------------------

_DRIVE_RE = re.compile(r"^([A-Za-z]):")


def to_gst_path(path: str) -> str:
    """Normalize a filesystem path to forward slashes for gst-launch."""
    return path.replace("\\", "/")


def to_file_uri(path: str) -> str:
    """
    Convert a path to the file:// URI form uridecodebin expects.

    ``C:\\Videos\\a.mp4`` becomes ``file:///C:/Videos/a.mp4`` and
    ``/srv/a.mp4`` becomes ``file:///srv/a.mp4``. Relative paths are
    returned with forward slashes only.
    """
    uri = to_gst_path(path)
    if _DRIVE_RE.match(uri):
        return _DRIVE_RE.sub(r"file:///\1:", uri, count=1)
    if uri.startswith("/"):
        return "file://" + uri
    return uri


def chunk_location(request: TranscodeRequest) -> str:
    """splitmuxsink location pattern for a request."""
    base = to_gst_path(os.path.join(str(request.output_dir), request.base_name))
    return f"{base}_%02d.{request.container}"


def chunk_path(output_dir: Path, base_name: str, index: int, container: str) -> Path:
    """Path of the index-th output chunk (0-based, two digits)."""
    return output_dir / f"{base_name}_{index:02d}.{container}"


def scan_output_chunks(output_dir: Path, base_name: str, container: str) -> List[Tuple[Path, int]]:
    """
    Return (path, size) for each sequential chunk file present on disk.

    Scanning stops at the first missing index.
    """
    chunks: List[Tuple[Path, int]] = []
    for index in range(MAX_CHUNK_SCAN + 1):
        p = chunk_path(output_dir, base_name, index, container)
        try:
            size = p.stat().st_size
        except OSError:
            break
        chunks.append((p, size))
    return chunks


# -------------------- PIPELINE BUILDING --------------------


def build_pipeline(request: TranscodeRequest, plan: "RateControlPlan") -> List[str]:
    """
    Build the gst-launch-1.0 argument list for one request.

    Pure: performs no I/O. The stages are source decode, video-only caps
    filter, bounded ingress queue, progress probe, pixel-format conversion,
    the encoder configured from the plan, bitstream parser, egress queue
    and the chunking sink.
    """
    backend = get_backend(request.backend)
    muxer = CONTAINERS.get(request.container)
    if muxer is None:
        from h265split.errors import PlanningError

        raise PlanningError(f"Unsupported container: {request.container}")

    pixel_format = "NV12" if backend.hardware else "I420"
    max_size_time = int(round(request.chunk_duration_seconds * NANOSECONDS))

    args = [
        "uridecodebin",
        f"uri={to_file_uri(str(request.input_path))}",
        "!",
        "video/x-raw",
        "!",
        "queue",
        "max-size-buffers=100",
        "max-size-time=2000000000",
        "!",
        "progressreport",
        "update-freq=1",
        "silent=false",
        "!",
        "videoconvert",
        "!",
        f"video/x-raw,format={pixel_format}",
        "!",
        plan.element,
        *[f"{key}={value}" for key, value in plan.backend_args],
        "!",
        "h265parse",
        "!",
        "queue",
        "max-size-buffers=50",
        "!",
        "splitmuxsink",
        f'location="{chunk_location(request)}"',
        f"max-size-time={max_size_time}",
        f"muxer={muxer}",
    ]
    if muxer == "matroskamux":
        # Matroska can be written incrementally; qtmux buffers until EOS
        args += ["muxer-properties=properties,streamable=true", "async-finalize=true"]
    args.append("send-keyframe-requests=true")
    return args
