"""
Subscription Entry
==================

One entry owns one upstream subscription for one query key, the latest
snapshot and error it produced, and the consumer handles attached to it.

State machine:

    UNOPENED --first attach--> ACTIVE --last detach--> CLOSED

Entries never leave CLOSED; the registry creates a fresh entry when the same
key is requested again.

All state changes happen under the owning registry's lock. Fanout to handles
happens after the commit, over a copy of the handle list, so callbacks may
subscribe or unsubscribe reentrantly.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .exceptions import LiveQueryError, UpstreamUnavailable
from .snapshot import EMPTY_SNAPSHOT, Record, Snapshot

if TYPE_CHECKING:
    from .consumer import ConsumerHandle
    from .registry import SubscriptionRegistry


class EntryState(Enum):
    """Lifecycle states of a subscription entry."""

    UNOPENED = "unopened"
    ACTIVE = "active"
    CLOSED = "closed"


class SubscriptionEntry:
    """
    Shared state for one upstream subscription.

    Attributes:
        key: Normalized query key
        target: Description handed to the upstream ``subscribe`` call
        document: True when the upstream pushes a single record (or None)
        snapshot: Latest snapshot, None until the first push
        error: Latest error, cleared by the next successful push
        generation: Incremented on every committed push or error
    """

    def __init__(
        self,
        key: Any,
        target: Any,
        registry: "SubscriptionRegistry",
        document: bool = False,
    ):
        self.key = key
        self.target = target
        self.document = document
        self.state = EntryState.UNOPENED
        self.snapshot: Optional[Snapshot] = None
        self.error: Optional[LiveQueryError] = None
        self.generation = 0

        self._registry = registry
        self._lock = registry._lock
        self._handles: Dict[int, "ConsumerHandle"] = {}
        self._unsubscribe: Optional[Callable[[], Any]] = None

    @property
    def ref_count(self) -> int:
        return len(self._handles)

    @property
    def handles(self) -> Tuple["ConsumerHandle", ...]:
        with self._lock:
            return tuple(self._handles.values())

    # ------------------------------------------------------------------
    # Membership (called by the registry with its lock held)
    # ------------------------------------------------------------------

    def attach(self, handle: "ConsumerHandle") -> None:
        if self.state is EntryState.CLOSED:
            raise RuntimeError(f"cannot attach to closed entry {self.key}")
        self._handles[id(handle)] = handle

    def detach(self, handle: "ConsumerHandle") -> bool:
        """Remove a handle. Returns True if it was attached."""
        if self._handles.get(id(handle)) is not handle:
            return False
        del self._handles[id(handle)]
        return True

    # ------------------------------------------------------------------
    # Upstream lifecycle
    # ------------------------------------------------------------------

    def open(self, upstream: Any) -> None:
        """
        Open the upstream subscription. Called once, on first attach.

        The upstream may deliver its initial snapshot synchronously from
        inside ``subscribe``; a consumer may even detach during that
        delivery, in which case the returned unsubscribe runs immediately.
        """
        if self.state is not EntryState.UNOPENED:
            return
        self.state = EntryState.ACTIVE
        logging.debug(f"Opening upstream subscription for {self.key}")

        try:
            unsubscribe = upstream.subscribe(
                self.target, self._on_snapshot, self._on_error
            )
        except Exception as e:
            logging.error(f"Upstream subscribe failed for {self.key}: {e}")
            self._on_error(e)
            return

        if self.state is EntryState.CLOSED:
            self._call_unsubscribe(unsubscribe)
        else:
            self._unsubscribe = unsubscribe

    def close(self) -> None:
        """Close the upstream subscription. Called with zero consumers."""
        if self.state is EntryState.CLOSED:
            return
        self.state = EntryState.CLOSED
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        logging.debug(f"Closing upstream subscription for {self.key}")
        if unsubscribe is not None:
            self._call_unsubscribe(unsubscribe)

    def _call_unsubscribe(self, unsubscribe: Callable[[], Any]) -> None:
        try:
            unsubscribe()
        except Exception as e:
            logging.error(f"Upstream unsubscribe failed for {self.key}: {e}")

    # ------------------------------------------------------------------
    # Upstream callbacks
    # ------------------------------------------------------------------

    def _coerce(self, payload: Any) -> Snapshot:
        if self.document:
            if payload is None:
                return EMPTY_SNAPSHOT
            if not isinstance(payload, Record):
                raise TypeError(
                    f"document push for {self.key} must be a Record or None, "
                    f"got {type(payload).__name__}"
                )
            return Snapshot((payload,))
        return Snapshot.coerce(payload)

    def _on_snapshot(self, payload: Any) -> None:
        try:
            snapshot = self._coerce(payload)
        except TypeError as e:
            self._on_error(e)
            return

        with self._lock:
            if self.state is EntryState.CLOSED:
                logging.debug(f"Ignoring push for closed entry {self.key}")
                return
            self.snapshot = snapshot
            self.error = None
            self.generation += 1
            generation = self.generation
            handles = list(self._handles.values())

        self._fanout(handles, generation, snapshot, None)

    def _on_error(self, error: BaseException) -> None:
        wrapped = UpstreamUnavailable.wrap(error, self.key)
        with self._lock:
            if self.state is EntryState.CLOSED:
                logging.debug(f"Ignoring error for closed entry {self.key}: {error}")
                return
            self.error = wrapped
            self.generation += 1
            generation = self.generation
            handles = list(self._handles.values())
            self._registry._count("errors")

        self._fanout(handles, generation, None, wrapped)

    # ------------------------------------------------------------------
    # Fanout
    # ------------------------------------------------------------------

    def _fanout(
        self,
        handles: List["ConsumerHandle"],
        generation: int,
        snapshot: Optional[Snapshot],
        error: Optional[LiveQueryError],
    ) -> None:
        delivered = 0
        for handle in handles:
            if handle.receive(generation, snapshot, error):
                delivered += 1
        self._registry._count("notifications", delivered)
        self._registry._count("suppressed", len(handles) - delivered)

    def replay(self, handle: "ConsumerHandle") -> bool:
        """Deliver already-cached state to a newly attached handle."""
        with self._lock:
            generation = self.generation
            snapshot = self.snapshot
            error = self.error
        if generation == 0:
            return False
        delivered = handle.receive(generation, snapshot, error)
        if delivered:
            self._registry._count("warm_joins")
        return delivered

    def __repr__(self) -> str:
        return (
            f"SubscriptionEntry({self.key}, state={self.state.value}, "
            f"refs={self.ref_count}, generation={self.generation})"
        )
