"""
In-Memory Document Store
========================

A push-based document store living in the current process. It implements the
upstream interface the cache expects:

    subscribe(target, on_snapshot, on_error) -> unsubscribe

where ``target`` is a ``QueryDescription`` (pushes a ``Snapshot``) or a
``DocumentRef`` (pushes a ``Record`` or ``None``). It is used by the demo
script and the test suite, and is a reasonable stand-in wherever a real
document database is not available.

Behavior worth knowing:
- Every subscription receives an initial push as soon as it is registered.
- Every write re-pushes every subscription on the written collection, even
  when that subscription's result did not change.
- Each write bumps the document's integer version, unless told otherwise.
- Deliveries run outside the store lock, so callbacks may call back into
  the store (or unsubscribe) freely.

Usage:
    store = InMemoryDocumentStore()
    ref = store.add("tasks", {"title": "Ship it", "createdAt": SERVER_TIMESTAMP})

    unsubscribe = store.subscribe(query("tasks"), print, print)
    store.update(ref, {"status": "in-progress"})   # pushes again
    unsubscribe()

    with store.batch():
        store.add("tasks", {...})
        store.add("tasks", {...})
        # one push per subscription here
"""

import concurrent.futures
import itertools
import threading
import time
import uuid
import weakref
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple

from .query import DocumentRef, Filter, QueryDescription, coerce, normalize, split_path
from .snapshot import Record, Snapshot

CollectionPath = Tuple[str, ...]


class _ServerTimestamp:
    """Placeholder replaced by the store clock when a document is written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ChangeType(Enum):
    """Types of writes that can occur in the store."""

    SET = "set"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    """
    A single write, queued while a batch is open.

    Attributes:
        collection: Path of the written collection
        doc_id: Written document id
        change_type: SET or DELETE
    """

    collection: CollectionPath
    doc_id: str
    change_type: ChangeType


class StoreSubscription:
    """
    One upstream subscription held by the store.

    Deliveries carry a sequence number; a delivery older than the last one
    accepted is dropped. Accepted deliveries run one at a time in sequence
    order: one arriving while another is being delivered is queued and run by
    the thread already delivering, so pushes from different workers never
    arrive out of order.
    """

    def __init__(
        self,
        subscription_id: int,
        target: Any,
        on_snapshot: Callable[[Any], Any],
        on_error: Callable[[BaseException], Any],
        store: "InMemoryDocumentStore",
    ):
        self.id = subscription_id
        self.target = target
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.document = isinstance(target, DocumentRef)
        self.collection = split_path(target.collection)
        self.active = True
        self._store_ref = weakref.ref(store)
        self._last_sequence = 0
        self._pending: Deque[Tuple[Callable[[Any], Any], Any]] = deque()
        self._delivering = False
        self._lock = threading.Lock()

    def unsubscribe(self) -> None:
        """Stop deliveries and remove the subscription from its store."""
        self.active = False
        store = self._store_ref()
        if store:
            store._remove_subscription(self.id)

    def matches(self, collection: CollectionPath) -> bool:
        return self.collection == collection

    def deliver(self, sequence: int, payload: Any) -> None:
        self._enqueue(sequence, self.on_snapshot, payload)

    def fail(self, sequence: int, error: BaseException) -> None:
        self._enqueue(sequence, self.on_error, error)

    def _enqueue(self, sequence: int, callback: Callable[[Any], Any], value: Any) -> None:
        with self._lock:
            if not self.active or sequence <= self._last_sequence:
                return
            self._last_sequence = sequence
            self._pending.append((callback, value))
            if self._delivering:
                return
            self._delivering = True

        while True:
            with self._lock:
                if not self._pending:
                    self._delivering = False
                    return
                callback, value = self._pending.popleft()
            if not self.active:
                continue
            try:
                callback(value)
            except Exception:
                with self._lock:
                    self._delivering = False
                raise


class InMemoryDocumentStore:
    """
    Push-based document store keyed by collection path.

    Features:
    - Collection queries with filters, multi-field ordering and limits
    - Single-document subscriptions
    - Monotonic per-document version tokens
    - Batched writes with one push per subscription
    - Error injection and subscription rejection for failure testing
    - Optional asynchronous delivery through a thread pool

    Args:
        async_notifications: Deliver pushes from a worker thread
        max_workers: Worker threads used for asynchronous delivery
        clock: Source of timestamps for ``SERVER_TIMESTAMP``
    """

    def __init__(
        self,
        async_notifications: bool = False,
        max_workers: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        self._collections: Dict[CollectionPath, Dict[str, Record]] = {}
        self._subscriptions: Dict[int, StoreSubscription] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._versions = itertools.count(1)
        self._sequence = itertools.count(1)
        self._next_subscription_id = 0

        self._batch_depth = 0
        self._batch_events: List[ChangeEvent] = []

        self._executor = (
            concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
            if async_notifications
            else None
        )

        # When set, subscribe() raises this instead of registering
        self.reject_subscriptions: Optional[BaseException] = None

        self._stats = {
            "subscribes": 0,
            "unsubscribes": 0,
            "pushes": 0,
            "errors": 0,
            "writes": 0,
        }

    # ------------------------------------------------------------------
    # Upstream interface
    # ------------------------------------------------------------------

    def subscribe(
        self,
        target: Any,
        on_snapshot: Callable[[Any], Any],
        on_error: Callable[[BaseException], Any],
    ) -> Callable[[], None]:
        """
        Register a live subscription and push its current result.

        Returns:
            Function removing the subscription (safe to call repeatedly)
        """
        target = coerce(target)
        if not isinstance(target, (QueryDescription, DocumentRef)):
            raise TypeError(f"cannot subscribe to {target!r}")
        normalize(target)  # validate before registering

        with self._lock:
            if self.reject_subscriptions is not None:
                raise self.reject_subscriptions
            sub_id = self._next_subscription_id
            self._next_subscription_id += 1
            subscription = StoreSubscription(sub_id, target, on_snapshot, on_error, self)
            self._subscriptions[sub_id] = subscription
            self._stats["subscribes"] += 1
            pending = [(subscription, next(self._sequence), self._result_for(subscription))]

        self._dispatch(pending)
        return subscription.unsubscribe

    def _remove_subscription(self, subscription_id: int) -> bool:
        with self._lock:
            if self._subscriptions.pop(subscription_id, None) is None:
                return False
            self._stats["unsubscribes"] += 1
            return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, collection: str, fields: Mapping[str, Any]) -> DocumentRef:
        """Create a document with a generated id."""
        ref = DocumentRef("/".join(split_path(collection)), uuid.uuid4().hex[:20])
        self.set(ref, fields)
        return ref

    def set(self, ref: Any, fields: Mapping[str, Any], merge: bool = False) -> Record:
        """Create or replace a document (or merge into it with ``merge=True``)."""
        ref = self._ref(ref)
        collection = split_path(ref.collection)
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            current = docs.get(ref.id)
            data = dict(current.fields) if (merge and current is not None) else {}
            data.update(self._resolve(fields))
            record = Record(ref.id, next(self._versions), data)
            docs[ref.id] = record
            self._record(ChangeEvent(collection, ref.id, ChangeType.SET))
        self._after_write()
        return record

    def update(
        self, ref: Any, updates: Mapping[str, Any], bump_version: bool = True
    ) -> Record:
        """
        Merge fields into an existing document.

        With ``bump_version=False`` the version token is left as is, which
        the cache cannot distinguish from "nothing changed".

        Raises:
            KeyError: If the document does not exist
        """
        ref = self._ref(ref)
        collection = split_path(ref.collection)
        with self._lock:
            docs = self._collections.get(collection, {})
            if ref.id not in docs:
                raise KeyError(f"no document at {ref.path}")
            current = docs[ref.id]
            data = dict(current.fields)
            data.update(self._resolve(updates))
            version = next(self._versions) if bump_version else current.version
            record = Record(ref.id, version, data)
            docs[ref.id] = record
            self._record(ChangeEvent(collection, ref.id, ChangeType.SET))
        self._after_write()
        return record

    def delete(self, ref: Any) -> bool:
        """Delete a document. Returns True if it existed."""
        ref = self._ref(ref)
        collection = split_path(ref.collection)
        with self._lock:
            docs = self._collections.get(collection)
            if not docs or ref.id not in docs:
                return False
            del docs[ref.id]
            self._record(ChangeEvent(collection, ref.id, ChangeType.DELETE))
        self._after_write()
        return True

    def batch(self) -> "_BatchContext":
        """
        Context manager deferring pushes until the outermost batch exits.

        Each affected subscription receives a single push afterwards.
        """
        return _BatchContext(self)

    def _resolve(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        now = None
        resolved = {}
        for name, value in fields.items():
            if value is SERVER_TIMESTAMP:
                if now is None:
                    now = self._clock()
                value = now
            resolved[name] = value
        return resolved

    def _record(self, event: ChangeEvent) -> None:
        # Called with the store lock held
        self._stats["writes"] += 1
        self._batch_events.append(event)

    def _after_write(self) -> None:
        with self._lock:
            if self._batch_depth:
                return
        self._flush()

    def _flush(self) -> None:
        with self._lock:
            events, self._batch_events = self._batch_events, []
            touched: Set[CollectionPath] = {e.collection for e in events}
            pending = [
                (sub, next(self._sequence), self._result_for(sub))
                for sub in list(self._subscriptions.values())
                if any(sub.matches(c) for c in touched)
            ]
        self._dispatch(pending)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, ref: Any) -> Optional[Record]:
        ref = self._ref(ref)
        with self._lock:
            return self._collections.get(split_path(ref.collection), {}).get(ref.id)

    def query(self, description: Any) -> Snapshot:
        description = coerce(description)
        if not isinstance(description, QueryDescription):
            raise TypeError(f"not a collection query: {description!r}")
        normalize(description)
        with self._lock:
            docs = list(self._collections.get(split_path(description.collection), {}).values())
        return evaluate(description, docs)

    def _result_for(self, subscription: StoreSubscription) -> Any:
        if subscription.document:
            return self._collections.get(subscription.collection, {}).get(subscription.target.id)
        docs = list(self._collections.get(subscription.collection, {}).values())
        return evaluate(subscription.target, docs)

    def _ref(self, ref: Any) -> DocumentRef:
        ref = coerce(ref)
        if not isinstance(ref, DocumentRef):
            raise TypeError(f"not a document reference: {ref!r}")
        return ref

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail(self, error: BaseException, target: Any = None) -> int:
        """
        Push ``error`` to every subscription on ``target`` (all if None).

        Returns the number of subscriptions notified.
        """
        wanted = normalize(target) if target is not None else None
        with self._lock:
            pending = [
                (sub, next(self._sequence), error)
                for sub in list(self._subscriptions.values())
                if wanted is None or normalize(sub.target) == wanted
            ]
        self._dispatch(pending, failure=True)
        return len(pending)

    def resend(self, target: Any = None) -> int:
        """Re-push current results without any write (a redundant push)."""
        wanted = normalize(target) if target is not None else None
        with self._lock:
            pending = [
                (sub, next(self._sequence), self._result_for(sub))
                for sub in list(self._subscriptions.values())
                if wanted is None or normalize(sub.target) == wanted
            ]
        self._dispatch(pending)
        return len(pending)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _dispatch(self, pending: List[Tuple[StoreSubscription, int, Any]], failure: bool = False) -> None:
        with self._lock:
            self._stats["errors" if failure else "pushes"] += len(pending)
        for subscription, sequence, payload in pending:
            deliver = subscription.fail if failure else subscription.deliver
            if self._executor is not None:
                self._executor.submit(deliver, sequence, payload)
            else:
                deliver(sequence, payload)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
            stats["active_subscriptions"] = len(self._subscriptions)
            stats["documents"] = sum(len(d) for d in self._collections.values())
            return stats

    def close(self) -> None:
        """Clean up resources, especially the delivery thread pool."""
        if self._executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "InMemoryDocumentStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class _BatchContext:
    """Context manager for batched writes."""

    def __init__(self, store: InMemoryDocumentStore):
        self.store = store

    def __enter__(self):
        with self.store._lock:
            self.store._batch_depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        with self.store._lock:
            self.store._batch_depth -= 1
            outermost = self.store._batch_depth == 0
        if outermost:
            self.store._flush()
        return False


# ============================================================================
# QUERY EVALUATION
# ============================================================================


def _freeze(value: Any) -> Any:
    # Filter values hold tuples where stored fields hold lists
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _matches(record: Record, flt: Filter) -> bool:
    value = _freeze(record.get(flt.field))
    expected = flt.value
    try:
        if flt.op == "==":
            return value == expected
        if flt.op == "!=":
            return value is not None and value != expected
        if flt.op == "in":
            return value in expected
        if flt.op == "not-in":
            return value is not None and value not in expected
        if flt.op == "array-contains":
            return isinstance(value, (list, tuple)) and expected in value
        if flt.op == "array-contains-any":
            return isinstance(value, (list, tuple)) and any(v in value for v in expected)
        if value is None:
            return False
        if flt.op == "<":
            return value < expected
        if flt.op == "<=":
            return value <= expected
        if flt.op == ">":
            return value > expected
        if flt.op == ">=":
            return value >= expected
    except TypeError:
        # Incomparable types never match
        return False
    raise ValueError(f"unknown filter operator {flt.op!r}")


def _sort_key(value: Any) -> Tuple:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, datetime):
        return (2, value.timestamp())
    if isinstance(value, str):
        return (3, value)
    return (4, repr(value))


def evaluate(description: QueryDescription, records: List[Record]) -> Snapshot:
    """Apply filters, ordering and limit to a list of records."""
    result = [r for r in records if all(_matches(r, f) for f in description.filters)]
    result.sort(key=lambda r: r.id)
    for clause in reversed(description.order_by):
        result.sort(
            key=lambda r, name=clause.field: _sort_key(r.get(name)),
            reverse=str(clause.direction).lower() == "desc",
        )
    if description.limit is not None:
        result = result[: description.limit]
    return Snapshot(result)
