"""
Configuration management for h265split.

Handles:
- XDG Base Directory compliance
- TOML/INI configuration file loading
- Config dataclass with all options
- Configuration merging (system -> user -> explicit file -> CLI)
"""

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from h265split.converter import BACKENDS, CONTAINERS, TranscodeRequest
from h265split.planner import COMPRESSION_RATIOS, SPEED_PRESETS

logger = logging.getLogger(__name__)

try:
    import tomllib  # Python 3.11+

    TOML_AVAILABLE = True
except ImportError:
    try:
        import tomli as tomllib  # pip install tomli

        TOML_AVAILABLE = True
    except ImportError:
        TOML_AVAILABLE = False


# -------------------- XDG DIRECTORIES --------------------


def get_xdg_config_home() -> Path:
    """Get XDG config home directory."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def get_xdg_state_home() -> Path:
    """Get XDG state home directory."""
    return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))


def get_app_dirs() -> Dict[str, Path]:
    """Return all application directories, creating them if needed."""
    dirs = {
        "config": get_xdg_config_home() / "h265split",
        "state": get_xdg_state_home() / "h265split",
        "logs": get_xdg_state_home() / "h265split" / "logs",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


# -------------------- CONFIGURATION DATACLASS --------------------


@dataclass
class Config:
    """All configuration options for h265split."""

    # Directories
    input_dir: Optional[str] = None
    output_dir: Optional[str] = None
    processed_dir: Optional[str] = None
    failed_dir: Optional[str] = None

    # Output settings
    chunk_minutes: float = 60
    container: str = "mkv"

    # Encoding
    encoder: str = "x265"  # auto, x265, nvh265, qsvh265, vaapih265, msdkh265, vtenc
    compression_ratio: Optional[int] = 2
    speed_preset: Optional[str] = None

    # GStreamer installation (directory holding gst-launch-1.0, or its parent)
    gstreamer_path: Optional[str] = None

    # Scan / watch settings
    recursive: bool = True
    watch: bool = False
    watch_poll: bool = False
    watch_interval: float = 5.0
    stable_wait: float = 2.0

    # Queue
    concurrency: int = 1
    max_retries: int = 3
    retry_delay_sec: float = 0.0

    # UI settings
    progress: bool = True
    json_progress: bool = False

    # Debug/test
    debug: bool = False
    dryrun: bool = False
    log_level: str = "info"

    @property
    def chunk_duration_seconds(self) -> float:
        return float(self.chunk_minutes) * 60

    def validate(self) -> None:
        """Raise ValueError for option values no backend can accept."""
        if self.container not in CONTAINERS:
            raise ValueError(f"Unsupported container: {self.container}")
        if self.encoder != "auto" and self.encoder not in BACKENDS:
            raise ValueError(f"Unknown encoder: {self.encoder}")
        if self.compression_ratio is not None and self.compression_ratio not in COMPRESSION_RATIOS:
            allowed = ", ".join(str(r) for r in COMPRESSION_RATIOS)
            raise ValueError(f"Compression ratio must be one of {allowed}")
        if self.speed_preset is not None and self.speed_preset not in SPEED_PRESETS:
            raise ValueError(f"Unknown speed preset: {self.speed_preset}")
        if self.chunk_minutes <= 0:
            raise ValueError("Chunk duration must be positive")
        if self.concurrency < 1:
            raise ValueError("Concurrency must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def to_request(self, input_path: Path, output_dir: Path, backend: Optional[str] = None) -> TranscodeRequest:
        """Build the immutable per-file request for one input."""
        return TranscodeRequest(
            input_path=input_path,
            output_dir=output_dir,
            chunk_duration_seconds=self.chunk_duration_seconds,
            container=self.container,
            backend=backend or self.encoder,
            compression_ratio=self.compression_ratio,
            speed_preset=self.speed_preset,
        )

    @classmethod
    def for_library(cls, **kwargs) -> "Config":
        """
        Create a Config instance optimized for library usage.

        Example:
            >>> config = Config.for_library(encoder="nvh265", compression_ratio=4)
        """
        defaults: Dict[str, Any] = {
            "progress": False,
            "json_progress": False,
        }
        defaults.update(kwargs)
        return cls(**defaults)


# -------------------- CONFIG FILE LOADING --------------------


def _parse_ini_value(value: str):
    """Parse INI value: bool, int, float, or string."""
    v = value.strip()
    if not v:
        return ""
    if v.lower() in ("true", "yes", "on"):
        return True
    if v.lower() in ("false", "no", "off"):
        return False
    try:
        return int(v)
    except ValueError:
        pass
    try:
        return float(v)
    except ValueError:
        pass
    return v


def _load_ini_config(path: Path) -> Dict[str, Any]:
    """Load INI file and convert to nested dict."""
    cp = configparser.ConfigParser()
    cp.read(path)
    result: Dict[str, Any] = {}
    for section in cp.sections():
        result[section] = {}
        for key, value in cp.items(section):
            result[section][key] = _parse_ini_value(value)
    return result


def load_config_path(path: Path) -> Dict[str, Any]:
    """Load a single TOML or INI file, chosen by extension."""
    if path.suffix.lower() == ".toml":
        if not TOML_AVAILABLE:
            raise RuntimeError(f"Cannot read {path}: install 'tomli' for TOML support")
        with path.open("rb") as f:
            return dict(tomllib.load(f))
    return _load_ini_config(path)


def _load_single_config(config_dir: Path) -> Dict[str, Any]:
    """Load config from a single directory (TOML or INI file)."""
    toml_path = config_dir / "config.toml"
    ini_path = config_dir / "config.ini"

    for path in (toml_path, ini_path):
        if not path.exists():
            continue
        if path is toml_path and not TOML_AVAILABLE:
            continue
        try:
            return load_config_path(path)
        except Exception as e:
            logger.warning("Failed to load %s: %s", path, e)
            return {}
    return {}


def _deep_merge_dicts(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(config_dir: Path, explicit: Optional[Path] = None) -> dict:
    """
    Load config with priority (highest last):
    1. System config: /etc/h265split/config.toml
    2. User config: ~/.config/h265split/config.toml
    3. Explicit file passed with --config
    """
    merged: Dict[str, Any] = {}

    system_config_dir = Path("/etc/h265split")
    if system_config_dir.exists():
        merged = _load_single_config(system_config_dir)

    user_config = _load_single_config(config_dir)
    if user_config:
        merged = _deep_merge_dicts(merged, user_config)

    if explicit is not None:
        merged = _deep_merge_dicts(merged, load_config_path(explicit))

    return merged


def _get_default_config_toml() -> str:
    """Return default config as TOML string."""
    return """# h265split configuration file

[paths]
# input = "/srv/incoming"
# output = "/srv/chunks"
# processed = "/srv/done"
# failed = "/srv/failed"
# gstreamer = "/opt/gstreamer"

[output]
chunk_minutes = 60
container = "mkv"  # mkv, mp4, mov

[encoding]
encoder = "x265"  # auto, x265, nvh265, qsvh265, vaapih265, msdkh265, vtenc
compression_ratio = 2  # 1, 2, 3, 4, 5, 10, 20
# speed_preset = "veryfast"

[queue]
concurrency = 1
max_retries = 3
retry_delay = 0

[watch]
enabled = false
poll = false
stable_wait = 2
"""


def save_default_config(config_dir: Path) -> Path:
    """Create default config file (TOML). Returns path."""
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "config.toml"
    if not path.exists():
        path.write_text(_get_default_config_toml())
    return path


# Map config file keys to Config attribute names
CONFIG_FILE_MAPPINGS = {
    ("paths", "input"): "input_dir",
    ("paths", "output"): "output_dir",
    ("paths", "processed"): "processed_dir",
    ("paths", "failed"): "failed_dir",
    ("paths", "gstreamer"): "gstreamer_path",
    ("output", "chunk_minutes"): "chunk_minutes",
    ("output", "container"): "container",
    ("encoding", "encoder"): "encoder",
    ("encoding", "compression_ratio"): "compression_ratio",
    ("encoding", "speed_preset"): "speed_preset",
    ("queue", "concurrency"): "concurrency",
    ("queue", "max_retries"): "max_retries",
    ("queue", "retry_delay"): "retry_delay_sec",
    ("watch", "enabled"): "watch",
    ("watch", "poll"): "watch_poll",
    ("watch", "interval"): "watch_interval",
    ("watch", "stable_wait"): "stable_wait",
    ("scan", "recursive"): "recursive",
    ("logging", "level"): "log_level",
}


def apply_config_to_args(file_config: dict, cfg: Config) -> None:
    """
    Apply file config values to a Config instance.

    Only applies values that the CLI left at their defaults, so command-line
    arguments keep priority over the config file.
    """
    default_cfg = Config()

    for (section, key), attr_name in CONFIG_FILE_MAPPINGS.items():
        if section not in file_config or key not in file_config[section]:
            continue
        file_val = file_config[section][key]
        if getattr(cfg, attr_name) != getattr(default_cfg, attr_name):
            continue
        if file_val == "":
            continue
        setattr(cfg, attr_name, file_val)
