"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.config import Config  # noqa: E402
from converge.provider import ProviderRegistry  # noqa: E402
from converge.state import StateStore  # noqa: E402
from fake_cloud import FakeCloudProvider  # noqa: E402


@pytest.fixture
def cloud() -> FakeCloudProvider:
    """Empty fake cloud."""
    return FakeCloudProvider()


@pytest.fixture
def registry(cloud: FakeCloudProvider) -> ProviderRegistry:
    """Registry serving the fake cloud."""
    return ProviderRegistry([cloud])


@pytest.fixture
def definitions_dir(tmp_path: Path) -> Path:
    path = tmp_path / "definitions"
    path.mkdir()
    return path


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "converge.state.json"


@pytest.fixture
def store(state_path: Path) -> Iterator[StateStore]:
    """State store holding the lock for the duration of the test."""
    state_store = StateStore(state_path, holder="pytest")
    state_store.acquire_lock(operation="test")
    yield state_store
    state_store.release_lock()


@pytest.fixture
def make_config(definitions_dir: Path, state_path: Path) -> Callable[..., Config]:
    """Config factory pointing at the test directories, without retry delays."""

    def _make(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "definitions_path": definitions_dir,
            "state_path": state_path,
            "retry_backoff_base_seconds": 0.0,
            "retry_backoff_max_seconds": 0.0,
        }
        values.update(overrides)
        return Config(**values)

    return _make
