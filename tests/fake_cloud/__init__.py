"""In-memory cloud for engine tests.

Provides fake drivers backed by a shared FakeCloud so tests can apply
declarations without any remote API, inject failures and delays per
resource, and assert on the calls the engine made.

Usage:
    cloud = FakeCloud()
    registry = build_fake_registry(cloud)
    cloud.fail("container")                 # every write fails, not retryable
    cloud.fail("store", retryable=True, times=2)
    cloud.delay("app", 0.05)

    result = await Deployment(declaration, registry).apply()
    assert cloud.count("create", "store") == 1
"""

from .drivers import (
    FAKE_KINDS,
    FAST_RETRY,
    FakeDriver,
    build_fake_registry,
)
from .state import FakeCloud, FakeObject

__all__ = [
    "FAKE_KINDS",
    "FAST_RETRY",
    "FakeCloud",
    "FakeDriver",
    "FakeObject",
    "build_fake_registry",
]
