"""Pytest configuration and fixtures."""

import copy
import logging
import sys
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from k8s_mock import FakeClock, MockObjectStore  # noqa: E402

from ssaengine.config import EngineConfig  # noqa: E402
from ssaengine.lifecycle import LifecycleOrchestrator  # noqa: E402

CONFIGMAP: dict[str, Any] = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {"name": "app", "namespace": "default"},
    "data": {"a": "1", "b": "2"},
}


@pytest.fixture
def configmap() -> dict[str, Any]:
    """A fresh ConfigMap document with two data keys."""
    return copy.deepcopy(CONFIGMAP)


@pytest.fixture
def store() -> MockObjectStore:
    return MockObjectStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def orchestrator(
    store: MockObjectStore, clock: FakeClock, config: EngineConfig
) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(store, config, sleep=clock.sleep, clock=clock.monotonic)


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Undo setup_logging calls made during a test."""
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_ssaengine_handler", False):
            root.removeHandler(handler)
