"""Pytest configuration and fixtures."""

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fake_cloud import FakeCloud, build_fake_registry  # noqa: E402

FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def cloud() -> FakeCloud:
    """Empty in-memory cloud."""
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud):
    """Registry with fake drivers for every fake.* kind."""
    return build_fake_registry(cloud)


@pytest.fixture
def fixed_clock():
    """Clock frozen at FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def restore_logging():
    """Undo setup_logging() calls made by the code under test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
