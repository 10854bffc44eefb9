"""
Error kinds raised and propagated by the live-query cache.
"""

from typing import Any, Optional


class LiveQueryError(Exception):
    """Base class for errors surfaced by the live-query cache."""

    pass


class MalformedQuery(LiveQueryError, ValueError):
    """Raised when a query description cannot be normalized."""

    pass


class UpstreamUnavailable(LiveQueryError):
    """
    Raised when the upstream subscription could not be opened or was dropped.

    The original upstream exception, if any, is chained as ``__cause__``.
    """

    def __init__(self, message: str, key: Any = None):
        super().__init__(message)
        self.key = key

    @classmethod
    def wrap(cls, error: BaseException, key: Any = None) -> "LiveQueryError":
        """Wrap an arbitrary upstream exception, passing cache errors through."""
        if isinstance(error, LiveQueryError):
            return error
        wrapped = cls(f"upstream error for {key!r}: {error}", key=key)
        wrapped.__cause__ = error
        return wrapped


def describe(error: Optional[BaseException]) -> str:
    """Short human-readable form of an error (used in logs and the demo)."""
    if error is None:
        return ""
    return f"{type(error).__name__}: {error}"
