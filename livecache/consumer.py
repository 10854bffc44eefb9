"""
Consumer Handles and Live Views
===============================

The consumer-facing side of the cache.

``subscribe`` / ``subscribe_document`` register callbacks against a query and
return an idempotent unsubscribe function. ``use_live_query`` /
``use_live_document`` wrap the same machinery in an object exposing the last
known ``data``, ``loading`` and ``error`` synchronously, and notifying its own
observers whenever that state changes.

Each handle remembers the fingerprint of the last snapshot it delivered, so a
push that does not change ids or versions never reaches its callback.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Tuple

from .exceptions import LiveQueryError, MalformedQuery
from .query import OpaqueKey, coerce, is_document_key
from .registry import SubscriptionRegistry, get_registry
from .snapshot import EMPTY_SNAPSHOT, UNSET, Record, Snapshot

Unsubscribe = Callable[[], bool]


class ConsumerHandle:
    """
    One consumer's registration against a subscription entry.

    Attributes:
        key: Normalized query key
        target: Description passed upstream if this handle opens the entry
        document: Deliver a single Record-or-None instead of a Snapshot
        entry: Entry this handle is attached to (set on start)
        fingerprint: Fingerprint of the last delivered snapshot
        enabled: False once released; in-flight deliveries are dropped
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        key: Any,
        target: Any,
        on_update: Callable[[Any], Any],
        on_error: Optional[Callable[[LiveQueryError], Any]] = None,
        document: bool = False,
    ):
        self.registry = registry
        self.key = key
        self.target = target
        self.document = document
        self.entry = None
        self.enabled = True
        self.fingerprint = UNSET
        self.snapshot: Optional[Snapshot] = None
        self.error: Optional[LiveQueryError] = None
        self.loading = True

        self._on_update = on_update
        self._on_error = on_error
        self._generation = 0
        self._released = False
        self._lock = threading.Lock()
        self._pending: Deque[Tuple[bool, Any, Optional[LiveQueryError]]] = deque()
        self._delivering = False

    @property
    def data(self) -> Any:
        return self._present(self.snapshot)

    def _present(self, snapshot: Optional[Snapshot]) -> Any:
        if self.document:
            return snapshot.first() if snapshot is not None else None
        return snapshot if snapshot is not None else EMPTY_SNAPSHOT

    def start(self) -> "ConsumerHandle":
        """Attach to the shared entry and replay any cached state."""
        entry = self.registry.acquire(self.key, self)
        entry.replay(self)
        return self

    def release(self) -> bool:
        """
        Detach from the entry. Idempotent: only the first call has an effect.

        Returns True on the call that actually released.
        """
        with self._lock:
            if self._released:
                return False
            self._released = True
            self.enabled = False
        self.registry.release(self.key, self)
        return True

    __call__ = release

    def disable(self) -> None:
        with self._lock:
            self._released = True
            self.enabled = False

    def receive(
        self,
        generation: int,
        snapshot: Optional[Snapshot],
        error: Optional[LiveQueryError],
    ) -> bool:
        """
        Accept a delivery from the entry.

        Deliveries older than the newest already seen are dropped. Data is
        passed on only when the fingerprint changed, or when it clears an
        error; errors are always passed on.

        Callbacks run in generation order. A delivery arriving while another
        thread (or an enclosing callback) is still delivering to this handle
        is queued and run by that delivery loop before it returns.

        Returns True if a callback was invoked or queued.
        """
        with self._lock:
            if not self.enabled or generation <= self._generation:
                return False
            self._generation = generation

            had_error = self.error is not None
            data_changed = False
            if snapshot is not None:
                data_changed = snapshot.fingerprint != self.fingerprint
                self.fingerprint = snapshot.fingerprint
                self.snapshot = snapshot
            self.error = error
            self.loading = False

            notify_update = data_changed or (error is None and had_error)
            if not notify_update and error is None:
                return False
            self._pending.append((notify_update, self._present(self.snapshot), error))
            if self._delivering:
                return True
            self._delivering = True

        self._drain()
        return True

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending:
                    self._delivering = False
                    return
                notify_update, value, error = self._pending.popleft()

            if notify_update and self.enabled:
                self._invoke(self._on_update, value)
            if error is not None and self.enabled:
                if self._on_error is not None:
                    self._invoke(self._on_error, error)
                else:
                    logging.error(f"Unhandled live query error for {self.key}: {error}")

    def _invoke(self, callback: Callable[[Any], Any], value: Any) -> None:
        try:
            callback(value)
        except Exception as e:
            # One failing consumer must not starve the others sharing the entry
            logging.error(f"Error in consumer callback for {self.key}: {e}")

    def __repr__(self) -> str:
        state = "released" if self._released else "attached"
        return f"ConsumerHandle({self.key}, {state})"


def _make_handle(
    registry: SubscriptionRegistry,
    description: Any,
    on_update: Callable[[Any], Any],
    on_error: Optional[Callable[[LiveQueryError], Any]],
    document: bool,
) -> ConsumerHandle:
    key = registry.normalize(description)
    if isinstance(key, OpaqueKey):
        target = key.target
    else:
        if is_document_key(key) != document:
            if document:
                raise MalformedQuery(f"{key} is a collection query, not a document")
            raise MalformedQuery(f"{key} is a document, not a collection query")
        target = coerce(description)
    return ConsumerHandle(registry, key, target, on_update, on_error, document)


def subscribe(
    description: Any,
    on_update: Callable[[Snapshot], Any],
    on_error: Optional[Callable[[LiveQueryError], Any]] = None,
    registry: Optional[SubscriptionRegistry] = None,
) -> Unsubscribe:
    """
    Subscribe to a live query.

    ``on_update`` receives a Snapshot whenever the result set changes
    (immediately, if the query is already cached). ``on_error`` receives
    upstream errors; without one they are logged.

    Raises:
        MalformedQuery: Synchronously, if the description cannot be normalized

    Returns:
        Idempotent unsubscribe function
    """
    registry = registry if registry is not None else get_registry()
    return _make_handle(registry, description, on_update, on_error, False).start().release


def subscribe_document(
    ref: Any,
    on_update: Callable[[Optional[Record]], Any],
    on_error: Optional[Callable[[LiveQueryError], Any]] = None,
    registry: Optional[SubscriptionRegistry] = None,
) -> Unsubscribe:
    """Single-document variant of ``subscribe``; ``on_update`` gets a Record or None."""
    registry = registry if registry is not None else get_registry()
    return _make_handle(registry, ref, on_update, on_error, True).start().release


# ============================================================================
# LIVE VIEWS
# ============================================================================


@dataclass(frozen=True)
class LiveState:
    """Last known state of a live view."""

    data: Any
    loading: bool
    error: Optional[LiveQueryError] = None


class LiveQuery:
    """
    Synchronously readable, asynchronously updated view of a live query.

    ``loading`` stays True only until this view receives its first snapshot
    or error. A disabled view (``enabled=False`` or no description) opens
    nothing and reports empty data, not loading.

    Usage:
        tasks = use_live_query(query("tasks", order_by("createdAt", "desc")))
        tasks.subscribe(lambda state: render(state.data))
        ...
        tasks.close()
    """

    document = False

    def __init__(
        self,
        description: Any,
        enabled: bool = True,
        registry: Optional[SubscriptionRegistry] = None,
    ):
        self._registry = registry
        self._observers: List[Callable[[LiveState], Any]] = []
        self._lock = threading.Lock()
        self._handle: Optional[ConsumerHandle] = None
        self._state = self._idle_state()
        self._attach(description, enabled)

    def _empty(self) -> Any:
        return None if self.document else EMPTY_SNAPSHOT

    def _idle_state(self) -> LiveState:
        return LiveState(self._empty(), loading=False, error=None)

    def _attach(self, description: Any, enabled: bool) -> None:
        if description is None or not enabled:
            self._set_state(self._idle_state())
            return
        registry = self._registry if self._registry is not None else get_registry()
        handle = _make_handle(
            registry, description, self._on_update, self._on_error, self.document
        )
        self._handle = handle
        self._set_state(LiveState(self._empty(), loading=True, error=None))
        handle.start()

    def _on_update(self, value: Any) -> None:
        handle = self._handle
        error = handle.error if handle is not None else None
        self._set_state(LiveState(value, loading=False, error=error))

    def _on_error(self, error: LiveQueryError) -> None:
        handle = self._handle
        data = handle.data if handle is not None else self._empty()
        self._set_state(LiveState(data, loading=False, error=error))

    def _set_state(self, state: LiveState) -> None:
        with self._lock:
            if state == self._state:
                return
            self._state = state
            observers = tuple(self._observers)
        for observer in observers:
            try:
                observer(state)
            except Exception as e:
                logging.error(f"Error in live view observer: {e}")

    @property
    def state(self) -> LiveState:
        return self._state

    @property
    def data(self) -> Any:
        return self._state.data

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def error(self) -> Optional[LiveQueryError]:
        return self._state.error

    @property
    def key(self) -> Any:
        return self._handle.key if self._handle is not None else None

    def subscribe(self, observer: Callable[[LiveState], Any]) -> "LiveQuery":
        with self._lock:
            self._observers.append(observer)
        return self

    def unsubscribe(self, observer: Callable[[LiveState], Any]) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def retarget(self, description: Any, enabled: bool = True) -> "LiveQuery":
        """
        Point the view at another query, releasing the previous one.

        Re-targeting to a description with the same key is a no-op.
        """
        handle = self._handle
        if handle is not None and enabled and description is not None:
            registry = self._registry if self._registry is not None else get_registry()
            if registry.normalize(description) == handle.key:
                return self
        self.close()
        self._attach(description, enabled)
        return self

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.release()

    def __enter__(self) -> "LiveQuery":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = self._state
        return (
            f"{type(self).__name__}({self.key}, loading={state.loading}, "
            f"error={state.error!r})"
        )


class LiveDocument(LiveQuery):
    """Single-document live view; ``data`` is a Record or None."""

    document = True


def use_live_query(
    description: Any,
    enabled: bool = True,
    registry: Optional[SubscriptionRegistry] = None,
) -> LiveQuery:
    return LiveQuery(description, enabled=enabled, registry=registry)


def use_live_document(
    ref: Any,
    enabled: bool = True,
    registry: Optional[SubscriptionRegistry] = None,
) -> LiveDocument:
    return LiveDocument(ref, enabled=enabled, registry=registry)
