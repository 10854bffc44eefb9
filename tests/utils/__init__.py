"""
Test utilities for livecache.

Shared fakes and leak-checking helpers used across the unit and integration
suites.
"""

from .fake_upstream import FakeUpstream, rec, snap
from .memory_utils import assert_cleaned_up, count_instances

__all__ = [
    "FakeUpstream",
    "rec",
    "snap",
    "assert_cleaned_up",
    "count_instances",
]
