"""
h265split - Batch H.265 transcoding into fixed-duration chunks with GStreamer.

Drives gst-launch-1.0 to re-encode large recordings as H.265, split into
chunks of a fixed duration, targeting a user-facing compression ratio.
Corrupt duration metadata is detected and handled by switching to
quality-based rate control.

Example usage:
    # As a command-line tool
    $ h265split /srv/incoming -o /srv/chunks --compression-ratio 4
    $ h265split /srv/incoming -o /srv/chunks --watch --encoder auto

    # As a Python module
    from h265split import Config, JobRunner

    config = Config.for_library(encoder="nvh265", compression_ratio=4)
    request = config.to_request(Path("rec.mkv"), Path("/srv/chunks"))
    result = JobRunner(request, config).run()
"""

__version__ = "1.0.0"
__author__ = "h265split contributors"
__license__ = "MIT"
__description__ = "Batch H.265 chunked transcoding with GStreamer"

# Public API exports
from h265split.config import Config, get_app_dirs, load_config_file
from h265split.converter import TranscodeRequest, build_pipeline, pick_backend
from h265split.errors import (
    BackendUnavailableError,
    EncodeFailedError,
    PlanningError,
    ProcessCancelledError,
    SpawnError,
    TranscodeError,
)
from h265split.json_progress import JSONProgressOutput
from h265split.pipeline import Job, JobStatus, ProcessingQueue
from h265split.planner import RateControlMode, RateControlPlan, plan
from h265split.probe import DurationEstimate, resolve
from h265split.progress import ProgressSnapshot, ProgressTracker
from h265split.runner import JobResult, JobRunner

__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Config
    "Config",
    "get_app_dirs",
    "load_config_file",
    # Core
    "TranscodeRequest",
    "DurationEstimate",
    "resolve",
    "RateControlMode",
    "RateControlPlan",
    "plan",
    "build_pipeline",
    "pick_backend",
    "ProgressSnapshot",
    "ProgressTracker",
    "JobRunner",
    "JobResult",
    "ProcessingQueue",
    "Job",
    "JobStatus",
    # Errors
    "TranscodeError",
    "PlanningError",
    "SpawnError",
    "EncodeFailedError",
    "BackendUnavailableError",
    "ProcessCancelledError",
    # JSON progress
    "JSONProgressOutput",
]
