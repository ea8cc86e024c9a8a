"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import FakeControlPlane  # noqa: E402

from vault_operator.config import Config  # noqa: E402


class RecordingSleep:
    """Stand-in for time.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Fast configuration with state under tmp_path."""
    return Config(
        state_dir=tmp_path / "state",
        poll_interval_seconds=5,
        poll_timeout_seconds=300,
        role_settle_seconds=5,
        lock_settle_seconds=3,
    )

