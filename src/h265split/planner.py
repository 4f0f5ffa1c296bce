"""
Rate-control planning for h265split.

Turns a user-facing compression ratio into concrete encoder properties.
Two regimes are possible and the choice depends only on whether the
resolved duration is trusted:

- BITRATE: duration trusted, target = source bitrate / ratio
- QUALITY: duration estimated, fixed quality value per ratio bucket
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

from h265split.converter import TranscodeRequest, get_backend
from h265split.errors import PlanningError

if TYPE_CHECKING:
    from h265split.probe import DurationEstimate

logger = logging.getLogger(__name__)

COMPRESSION_RATIOS = (1, 2, 3, 4, 5, 10, 20)

# Used when the source bitrate could not be computed
ASSUMED_INPUT_BITRATE_KBPS = 20_000

# x265enc rejects bitrates above 100 Mbps
X265_MAX_BITRATE_KBPS = 100_000

SPEED_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)

DEFAULT_X265_PRESET = "veryfast"

# Preset name -> nvh265enc preset
NVENC_PRESETS = {
    "ultrafast": "hp",
    "superfast": "hp",
    "veryfast": "hp",
    "faster": "default",
    "fast": "default",
    "medium": "default",
    "slow": "hq",
    "slower": "hq",
    "veryslow": "hq",
}

# Preset name -> target-usage / quality-level (1 = best quality, 7 = fastest)
USAGE_LEVELS = {
    "ultrafast": 7,
    "superfast": 7,
    "veryfast": 6,
    "faster": 5,
    "fast": 4,
    "medium": 4,
    "slow": 3,
    "slower": 2,
    "veryslow": 1,
}


class RateControlMode(Enum):
    BITRATE = "bitrate"
    QUALITY = "quality"


@dataclass(frozen=True)
class QualityValues:
    """Quality parameters for one compression-ratio bucket."""

    qp: int  # nvenc constqp, vaapi cqp
    icq: int  # qsv/msdk ICQ
    crf: int  # x265
    normalized: float  # vtenc, 0-1, higher is better


@dataclass(frozen=True)
class RateControlPlan:
    """Encoder configuration for one request. Exactly one of bitrate/quality is set."""

    mode: RateControlMode
    element: str
    backend_args: Tuple[Tuple[str, str], ...]
    target_bitrate_kbps: Optional[int] = None
    quality: Optional[float] = None

    def args_dict(self) -> Dict[str, str]:
        return dict(self.backend_args)


def round_half_up(value: float) -> int:
    """Round .5 upwards, the way the bitrate targets have always been computed."""
    return int(math.floor(value + 0.5))


def quality_for_ratio(ratio: float) -> QualityValues:
    """Map a compression ratio to its quality bucket."""
    if ratio <= 1:
        return QualityValues(18, 18, 18, 0.75)  # near-lossless
    if ratio <= 2:
        return QualityValues(22, 22, 22, 0.65)  # high
    if ratio <= 4:
        return QualityValues(26, 26, 26, 0.50)  # good
    if ratio <= 5:
        return QualityValues(28, 28, 28, 0.45)  # balanced
    if ratio <= 10:
        return QualityValues(32, 32, 32, 0.35)  # compact
    return QualityValues(38, 38, 38, 0.25)  # maximum compression


def target_bitrate(source_kbps: Optional[float], ratio: int) -> int:
    if not source_kbps:
        source_kbps = ASSUMED_INPUT_BITRATE_KBPS
    return round_half_up(source_kbps / ratio)


# -------------------- PER-BACKEND PLANNERS --------------------

Args = Tuple[Tuple[str, str], ...]


def _x265(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    speed = preset or DEFAULT_X265_PRESET
    if mode is RateControlMode.QUALITY:
        return (
            ("speed-preset", speed),
            ("tune", "fastdecode"),
            ("option-string", f"crf={q.crf}"),
        )
    capped = min(bitrate, X265_MAX_BITRATE_KBPS)
    if bitrate > X265_MAX_BITRATE_KBPS:
        logger.warning(
            "Target bitrate %d kbps exceeds x265enc maximum, capping to %d kbps", bitrate, X265_MAX_BITRATE_KBPS
        )
    return (
        ("bitrate", str(capped)),
        ("speed-preset", speed),
        ("tune", "fastdecode"),
        ("option-string", f"vbv-maxrate={capped}:vbv-bufsize={capped * 2}"),
    )


def _nvenc(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    if mode is RateControlMode.QUALITY:
        args: Args = (("rc-mode", "constqp"), ("qp-const", str(q.qp)))
    else:
        args = (("rc-mode", "cbr"), ("bitrate", str(bitrate)), ("max-bitrate", str(bitrate)))
    if preset:
        args += (("preset", NVENC_PRESETS[preset]),)
    return args


def _qsv(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    if mode is RateControlMode.QUALITY:
        args: Args = (("rate-control", "icq"), ("icq-quality", str(q.icq)))
    else:
        args = (("rate-control", "cbr"), ("bitrate", str(bitrate)), ("max-bitrate", str(bitrate)))
    if preset:
        args += (("target-usage", str(USAGE_LEVELS[preset])),)
    return args


def _vaapi(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    if mode is RateControlMode.QUALITY:
        args: Args = (("rate-control", "cqp"), ("init-qp", str(q.qp)))
    else:
        args = (("rate-control", "cbr"), ("bitrate", str(bitrate)))
    if preset:
        args += (("quality-level", str(USAGE_LEVELS[preset])),)
    return args


def _msdk(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    if mode is RateControlMode.QUALITY:
        args: Args = (("rate-control", "icq"), ("qpi", str(q.icq)))
    else:
        args = (("rate-control", "cbr"), ("bitrate", str(bitrate)))
    if preset:
        args += (("target-usage", str(USAGE_LEVELS[preset])),)
    return args


def _vtenc(mode: RateControlMode, bitrate: int, q: QualityValues, preset: Optional[str]) -> Args:
    # VideoToolbox has no speed knob
    if mode is RateControlMode.QUALITY:
        return (("quality", f"{q.normalized:.3f}"), ("allow-frame-reordering", "true"))
    return (
        ("bitrate", str(bitrate)),
        ("rate-control", "1"),  # 0 = abr, 1 = cbr
        ("quality", "0.5"),
        ("allow-frame-reordering", "true"),
    )


PLANNERS: Dict[str, Callable[[RateControlMode, int, QualityValues, Optional[str]], Args]] = {
    "x265": _x265,
    "nvh265": _nvenc,
    "qsvh265": _qsv,
    "vaapih265": _vaapi,
    "msdkh265": _msdk,
    "vtenc": _vtenc,
}


def validate_request(request: TranscodeRequest) -> int:
    """Raise PlanningError for a request no planner can handle; return its compression ratio."""
    ratio = request.compression_ratio
    if ratio is None:
        raise PlanningError("Compression ratio is required")
    if ratio not in COMPRESSION_RATIOS:
        raise PlanningError(f"Unsupported compression ratio: {ratio}")
    if request.speed_preset is not None and request.speed_preset not in SPEED_PRESETS:
        raise PlanningError(f"Unknown speed preset: {request.speed_preset}")
    backend = get_backend(request.backend)
    if backend.id not in PLANNERS:
        raise PlanningError(f"No rate-control planner for backend: {backend.id}")
    return ratio


def plan(request: TranscodeRequest, estimate: "DurationEstimate") -> RateControlPlan:
    """
    Compute the rate-control plan for a request.

    Raises:
        PlanningError: missing or unsupported ratio, unknown backend or preset.
    """
    ratio = validate_request(request)
    backend = get_backend(request.backend)
    planner = PLANNERS[backend.id]

    if estimate.is_estimated:
        values = quality_for_ratio(ratio)
        args = planner(RateControlMode.QUALITY, 0, values, request.speed_preset)
        quality = values.normalized if backend.id == "vtenc" else float(values.qp)
        logger.info(
            "[%s] Duration estimated - using QUALITY mode. Compression: %sx -> quality %s",
            backend.id,
            ratio,
            quality,
        )
        return RateControlPlan(RateControlMode.QUALITY, backend.element, args, quality=quality)

    bitrate = target_bitrate(estimate.source_bitrate_kbps, ratio)
    args = planner(RateControlMode.BITRATE, bitrate, quality_for_ratio(ratio), request.speed_preset)
    logger.info(
        "[%s] Duration known - using BITRATE mode. Compression: %sx -> %d kbps (%.2f Mbps)",
        backend.id,
        ratio,
        bitrate,
        bitrate / 1000,
    )
    return RateControlPlan(RateControlMode.BITRATE, backend.element, args, target_bitrate_kbps=bitrate)
