"""
livecache - Shared Live-Query Subscription Cache

Sits between consumers and a push-based document store: identical queries
share one upstream subscription, redundant pushes are filtered out by
fingerprint, and subscriptions close as soon as their last consumer leaves.
"""

# Consumer-facing API
from .consumer import (
    ConsumerHandle,
    LiveDocument,
    LiveQuery,
    LiveState,
    subscribe,
    subscribe_document,
    use_live_document,
    use_live_query,
)
from .entry import EntryState, SubscriptionEntry

# Exceptions
from .exceptions import LiveQueryError, MalformedQuery, UpstreamUnavailable

# In-process upstream
from .memory_store import SERVER_TIMESTAMP, InMemoryDocumentStore

# Query descriptions and keys
from .query import (
    DocumentRef,
    Filter,
    OpaqueKey,
    OrderBy,
    QueryDescription,
    QueryKey,
    document,
    normalize,
    order_by,
    query,
    where,
)

# Registry
from .registry import SubscriptionRegistry, _reset_registry, configure, get_registry

# Snapshots
from .snapshot import EMPTY_FINGERPRINT, EMPTY_SNAPSHOT, Record, Snapshot, fingerprint

__all__ = [
    # Consumer API
    "subscribe",
    "subscribe_document",
    "use_live_query",
    "use_live_document",
    "LiveQuery",
    "LiveDocument",
    "LiveState",
    "ConsumerHandle",
    # Registry
    "SubscriptionRegistry",
    "SubscriptionEntry",
    "EntryState",
    "configure",
    "get_registry",
    # Queries
    "QueryDescription",
    "DocumentRef",
    "Filter",
    "OrderBy",
    "QueryKey",
    "OpaqueKey",
    "query",
    "where",
    "order_by",
    "document",
    "normalize",
    # Snapshots
    "Record",
    "Snapshot",
    "EMPTY_SNAPSHOT",
    "EMPTY_FINGERPRINT",
    "fingerprint",
    # Upstream
    "InMemoryDocumentStore",
    "SERVER_TIMESTAMP",
    # Exceptions
    "LiveQueryError",
    "MalformedQuery",
    "UpstreamUnavailable",
    # Testing utilities (internal use)
    "_reset_registry",
]
