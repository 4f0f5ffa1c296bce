"""
Pytest configuration and shared fixtures for h265split tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_dir(temp_dir: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = temp_dir / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def mock_xdg_dirs(temp_dir: Path, monkeypatch):
    """Mock XDG directories to use temporary paths."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(temp_dir / "state"))


@pytest.fixture
def default_config():
    """Return a default Config instance for testing."""
    from h265split.config import Config

    return Config()


@pytest.fixture
def sparse_file(temp_dir: Path):
    """Factory creating a file of the given apparent size without writing its data."""

    def make(name: str, size: int) -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            if size > 0:
                f.truncate(size)
        return path

    return make


@pytest.fixture
def make_request(temp_dir: Path):
    """Factory for TranscodeRequest objects pointing into temp_dir."""
    from h265split.converter import TranscodeRequest

    def make(**overrides) -> TranscodeRequest:
        values = dict(
            input_path=temp_dir / "rec.mkv",
            output_dir=temp_dir / "chunks",
            chunk_duration_seconds=3600.0,
            container="mkv",
            backend="x265",
            compression_ratio=2,
            speed_preset=None,
        )
        values.update(overrides)
        return TranscodeRequest(**values)

    return make


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
