"""
Shared pytest fixtures and configuration for livecache tests.
"""

import pytest

from livecache import InMemoryDocumentStore, SubscriptionRegistry
from livecache.registry import _reset_registry
from tests.utils import FakeUpstream


@pytest.fixture(autouse=True)
def reset_registry():
    """Reset the process-wide registry around each test to prevent state leakage."""
    _reset_registry()
    yield
    _reset_registry()


@pytest.fixture
def upstream():
    """Recording upstream that only pushes when a test tells it to."""
    return FakeUpstream()


@pytest.fixture
def registry(upstream):
    """Registry wired to the recording upstream."""
    return SubscriptionRegistry(upstream)


@pytest.fixture
def store():
    """Fresh in-memory document store with a fixed clock."""
    ticks = iter(range(1000, 10**9))
    with InMemoryDocumentStore(clock=lambda: float(next(ticks))) as store:
        yield store


@pytest.fixture
def store_registry(store):
    """Registry wired to the in-memory document store."""
    return SubscriptionRegistry(store)
