"""
Subscription Registry
=====================

Process-wide map from normalized query keys to subscription entries.

The registry is the single mutual-exclusion domain for the cache: the key
map, every entry's state, reference count and stored snapshot are only
mutated while holding its reentrant lock. Find-or-create on acquire and
close-and-remove on the last release happen inside one critical section, so
a concurrent acquire for the same key either sees a live entry or none at
all, never a half-closed one.

Usage:
    registry = SubscriptionRegistry(upstream)
    unsubscribe = subscribe(query("tasks"), print, registry=registry)
    ...
    unsubscribe()

A default registry can be installed for the whole process:

    configure(upstream)
    get_registry().stats()
"""

import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .entry import EntryState, SubscriptionEntry
from .query import KeyNormalizer

if TYPE_CHECKING:
    from .consumer import ConsumerHandle


class SubscriptionRegistry:
    """
    Reference-counted cache of live subscriptions.

    Features:
    - At most one upstream subscription per logical query
    - Synchronous teardown when the last consumer leaves
    - Fresh entry (and upstream subscription) after a close, never reuse
    - Counters for opens, closes, shared joins and notifications

    Args:
        upstream: Object with ``subscribe(target, on_snapshot, on_error)``
            returning an unsubscribe callable
        key_cache_size: Size of the LRU memo used by key normalization
            (0 disables it)
    """

    def __init__(self, upstream: Any, key_cache_size: int = 1024):
        if not callable(getattr(upstream, "subscribe", None)):
            raise TypeError("upstream must provide a subscribe(target, on_snapshot, on_error) method")
        self.upstream = upstream
        self._lock = threading.RLock()
        self._entries: Dict[Any, SubscriptionEntry] = {}
        self._normalizer = KeyNormalizer(key_cache_size)
        self._stats = {
            "opens": 0,
            "closes": 0,
            "shares": 0,
            "warm_joins": 0,
            "notifications": 0,
            "suppressed": 0,
            "errors": 0,
        }

    def normalize(self, description: Any) -> Any:
        """Normalize a description into a key (raises MalformedQuery)."""
        return self._normalizer(description)

    def acquire(self, key: Any, handle: "ConsumerHandle") -> SubscriptionEntry:
        """
        Attach a handle to the entry for ``key``, creating and opening it if needed.

        Returns the entry; its reference count includes ``handle``.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = SubscriptionEntry(key, handle.target, self, document=handle.document)
                self._entries[key] = entry
                self._stats["opens"] += 1
            else:
                self._stats["shares"] += 1

            entry.attach(handle)
            handle.entry = entry

            if entry.state is EntryState.UNOPENED:
                entry.open(self.upstream)
            return entry

    def release(self, key: Any, handle: "ConsumerHandle") -> bool:
        """
        Detach a handle; close and remove the entry when it was the last one.

        Returns True if the handle was attached.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry is not handle.entry:
                return False
            if not entry.detach(handle):
                return False
            if entry.ref_count == 0:
                del self._entries[key]
                self._stats["closes"] += 1
                entry.close()
            return True

    def get(self, key: Any) -> Optional[SubscriptionEntry]:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> List[Any]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        """Disable every handle and close every entry."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                for handle in entry.handles:
                    handle.disable()
                    entry.detach(handle)
                self._stats["closes"] += 1
                entry.close()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
            stats["entries"] = len(self._entries)
            stats["consumers"] = sum(e.ref_count for e in self._entries.values())
            return stats

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[name] += amount

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            return key in self._entries

    def __repr__(self) -> str:
        return f"SubscriptionRegistry(entries={len(self)})"


_registry: Optional[SubscriptionRegistry] = None
_registry_lock = threading.Lock()


def configure(upstream: Any, **options: Any) -> SubscriptionRegistry:
    """
    Install the process-wide registry.

    Replaces (and clears) any previously installed registry.
    """
    global _registry
    with _registry_lock:
        previous, _registry = _registry, SubscriptionRegistry(upstream, **options)
    if previous is not None:
        previous.clear()
    return _registry


def get_registry() -> SubscriptionRegistry:
    """Return the process-wide registry installed by ``configure``."""
    registry = _registry
    if registry is None:
        raise RuntimeError("no upstream configured; call livecache.configure(upstream) first")
    return registry


def _reset_registry() -> None:
    """
    Drop the process-wide registry for testing purposes.

    Closes whatever it still holds. Not for production use.
    """
    global _registry
    with _registry_lock:
        previous, _registry = _registry, None
    if previous is not None:
        previous.clear()
