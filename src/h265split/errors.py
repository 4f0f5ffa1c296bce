"""
Error taxonomy and GStreamer failure classification for h265split.

The queue decides whether to retry a job from the exception type alone:
only ``EncodeFailedError`` (minus ``BackendUnavailableError``) is retried.
"""

import signal
from dataclasses import dataclass
from typing import List, Optional, Tuple


class TranscodeError(Exception):
    """Base class for every per-file failure."""

    retryable = False


class DiscoveryError(TranscodeError):
    """Metadata discovery failed. Recovered inside the resolver, never surfaced."""


class PlanningError(TranscodeError):
    """The request cannot be planned (missing compression ratio, unknown backend...)."""


class SpawnError(TranscodeError):
    """The encode process could not be started."""


class EncodeFailedError(TranscodeError):
    """gst-launch exited with a nonzero code."""

    retryable = True

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class BackendUnavailableError(EncodeFailedError):
    """The selected encoder element is missing from the GStreamer installation."""

    retryable = False


class ProcessCancelledError(TranscodeError):
    """Processing was cancelled."""

    def __init__(self, message: str = "Processing was cancelled"):
        super().__init__(message)


# -------------------- EXIT CODES --------------------

# Windows NTSTATUS codes seen when a plugin crashes inside gst-launch
ACCESS_VIOLATION_CODES = {3221225477, -1073741819, 3221226356, -1073740940}


def describe_exit_code(returncode: int, backend: str = "") -> str:
    """Return an actionable description of a gst-launch exit code."""
    msg = f"GStreamer exited with code {returncode}"
    if returncode in ACCESS_VIOLATION_CODES:
        msg += " (Access violation - encoder may not be available or incompatible)"
    elif returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        msg += f" (killed by {name})"
        if -returncode in (signal.SIGSEGV, signal.SIGABRT):
            msg += " - the encoder plugin crashed"
    if backend == "qsvh265" and (returncode in ACCESS_VIOLATION_CODES or returncode < 0):
        msg += (
            "\n\nIntel QSV encoder may not be available in your GStreamer installation. "
            "Try using x265 (Software) encoder instead, or check if Intel GPU drivers are properly installed."
        )
    return msg


def is_cancel_signal(returncode: Optional[int]) -> bool:
    """True when the process was stopped by a termination signal rather than crashing."""
    return returncode is not None and returncode in (-signal.SIGTERM, -signal.SIGKILL)


# -------------------- OUTPUT CLASSIFICATION --------------------


@dataclass
class GstError:
    """A known GStreamer error marker."""

    pattern: str
    category: str  # 'backend', 'input', 'resource', 'pipeline'
    description: str


GST_ERROR_MAP: List[GstError] = [
    # Encoder element missing or not usable
    GstError("no element", "backend", "Encoder element not found in GStreamer installation"),
    GstError("no such element", "backend", "Encoder element not found in GStreamer installation"),
    GstError("could not create", "backend", "Encoder element could not be created"),
    GstError("no nvenc capable devices", "backend", "No NVENC capable GPU"),
    GstError("cuda error", "backend", "CUDA error"),
    GstError("mfx_err", "backend", "Intel Media SDK error"),
    GstError("failed to open va display", "backend", "VA-API display not available"),
    GstError("vtcompressionsession", "backend", "VideoToolbox session failed"),
    # Input problems
    GstError("could not open resource", "input", "Input file could not be opened"),
    GstError("resource not found", "input", "Input file not found"),
    GstError("could not determine type of stream", "input", "Unrecognized input format"),
    GstError("no suitable plugins found", "input", "Missing decoder plugin for input"),
    # Resources
    GstError("no space left", "resource", "No disk space"),
    GstError("could not write to resource", "resource", "Output could not be written"),
    GstError("out of memory", "resource", "Out of memory"),
    # Negotiation
    GstError("not-negotiated", "pipeline", "Caps negotiation failed"),
    GstError("internal data stream error", "pipeline", "Internal data stream error"),
    GstError("erroneous pipeline", "pipeline", "Invalid pipeline description"),
]


class ErrorClassifier:
    """Classifies GStreamer error output."""

    def __init__(self, error_map: Optional[List[GstError]] = None):
        self.error_map = error_map or GST_ERROR_MAP

    def classify(self, text: str) -> Tuple[Optional[GstError], str]:
        """Return (matched_error, category); category is 'unknown' if nothing matched."""
        lower = text.lower()
        for error in self.error_map:
            if error.pattern in lower:
                return error, error.category
        return None, "unknown"

    def is_backend_unavailable(self, text: str) -> bool:
        _error, category = self.classify(text)
        return category == "backend"
