"""
Query Descriptions and Key Normalization
========================================

Structured descriptions of live queries and the normalizer that turns them
into canonical, hashable cache keys.

Two descriptions that ask for the same result set normalize to equal keys:

    >>> a = query("tasks", where("team", "==", "design"), where("status", "==", "open"))
    >>> b = query("/tasks/", where("status", "==", "open"), where("team", "==", "design"))
    >>> normalize(a) == normalize(b)
    True

Filters form a conjunction, so their order is noise and is canonicalized away.
Ordering clauses are significant and keep their order. Values are tagged with
their type so ``1``, ``1.0``, ``True`` and ``"1"`` never collapse into one key.

Objects the normalizer cannot introspect get an ``OpaqueKey`` compared by
identity: such queries are never shared, but never shared incorrectly either.
"""

import threading
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Mapping, Optional, Tuple, Union

from cachetools import LRUCache

from .exceptions import MalformedQuery

OPERATORS = frozenset(
    {
        "==",
        "!=",
        "<",
        "<=",
        ">",
        ">=",
        "in",
        "not-in",
        "array-contains",
        "array-contains-any",
    }
)

# Operators whose value is a set of alternatives (element order is noise)
SET_OPERATORS = frozenset({"in", "not-in", "array-contains-any"})

DIRECTIONS = ("asc", "desc")


def _freeze_sequence(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze_sequence(v) for v in value)
    return value


@dataclass(frozen=True)
class Filter:
    """A single ``field <op> value`` predicate."""

    field: str
    op: str
    value: Any = None

    def __post_init__(self):
        # Lists become tuples so descriptions stay hashable
        object.__setattr__(self, "value", _freeze_sequence(self.value))


@dataclass(frozen=True)
class OrderBy:
    """A single ordering clause."""

    field: str
    direction: str = "asc"


@dataclass(frozen=True)
class QueryDescription:
    """
    Logical description of a collection query.

    Attributes:
        collection: Slash-separated collection path ("tasks", "tasks/t1/comments")
        filters: Conjunction of predicates
        order_by: Ordering clauses, most significant first
        limit: Optional maximum number of records
    """

    collection: str
    filters: Tuple[Filter, ...] = ()
    order_by: Tuple[OrderBy, ...] = ()
    limit: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "filters", tuple(self.filters))
        object.__setattr__(self, "order_by", tuple(self.order_by))

    def where(self, field_name: str, op: str, value: Any) -> "QueryDescription":
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def ordered(self, field_name: str, direction: str = "asc") -> "QueryDescription":
        return replace(self, order_by=self.order_by + (OrderBy(field_name, direction),))

    def limited(self, count: int) -> "QueryDescription":
        return replace(self, limit=count)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "QueryDescription":
        """
        Build a description from a plain mapping.

        Accepted shape::

            {
                "collection": "tasks",
                "where": [("team", "==", "design"), {"field": "status", "op": "in", "value": [...]}],
                "order_by": ["createdAt", ("title", "desc")],
                "limit": 20,
            }
        """
        if "collection" not in mapping:
            raise MalformedQuery(f"query mapping has no 'collection': {mapping!r}")
        unknown = set(mapping) - {"collection", "where", "order_by", "limit"}
        if unknown:
            raise MalformedQuery(f"unknown query keys: {sorted(unknown)}")

        filters = []
        for item in mapping.get("where") or ():
            if isinstance(item, Filter):
                filters.append(item)
            elif isinstance(item, Mapping):
                try:
                    filters.append(Filter(item["field"], item["op"], item.get("value")))
                except KeyError as e:
                    raise MalformedQuery(f"filter {item!r} is missing {e}") from e
            elif isinstance(item, (list, tuple)) and len(item) == 3:
                filters.append(Filter(*item))
            else:
                raise MalformedQuery(f"cannot interpret filter {item!r}")

        ordering = []
        for item in mapping.get("order_by") or ():
            if isinstance(item, OrderBy):
                ordering.append(item)
            elif isinstance(item, str):
                ordering.append(OrderBy(item))
            elif isinstance(item, (list, tuple)) and len(item) in (1, 2):
                ordering.append(OrderBy(*item))
            else:
                raise MalformedQuery(f"cannot interpret ordering {item!r}")

        return cls(mapping["collection"], tuple(filters), tuple(ordering), mapping.get("limit"))


@dataclass(frozen=True)
class DocumentRef:
    """Reference to a single document: collection path plus document id."""

    collection: str
    id: str

    @property
    def path(self) -> str:
        return f"{self.collection.strip('/')}/{self.id}"

    @classmethod
    def parse(cls, path: str) -> "DocumentRef":
        segments = split_path(path)
        if len(segments) % 2:
            raise MalformedQuery(f"document path needs an even number of segments: {path!r}")
        return cls("/".join(segments[:-1]), segments[-1])


def query(collection: str, *constraints: Union[Filter, OrderBy, int]) -> QueryDescription:
    """
    Compose a description from constraint helpers.

    Integers are treated as a limit:

        query("tasks", where("team", "==", "design"), order_by("createdAt", "desc"), 50)
    """
    filters = []
    ordering = []
    limit = None
    for constraint in constraints:
        if isinstance(constraint, Filter):
            filters.append(constraint)
        elif isinstance(constraint, OrderBy):
            ordering.append(constraint)
        elif isinstance(constraint, int) and not isinstance(constraint, bool):
            limit = constraint
        else:
            raise MalformedQuery(f"unsupported query constraint {constraint!r}")
    return QueryDescription(collection, tuple(filters), tuple(ordering), limit)


def where(field_name: str, op: str, value: Any) -> Filter:
    return Filter(field_name, op, value)


def order_by(field_name: str, direction: str = "asc") -> OrderBy:
    return OrderBy(field_name, direction)


def document(path_or_collection: str, doc_id: Optional[str] = None) -> DocumentRef:
    if doc_id is None:
        return DocumentRef.parse(path_or_collection)
    return DocumentRef(path_or_collection, doc_id)


# ============================================================================
# KEYS
# ============================================================================


@dataclass(frozen=True)
class QueryKey:
    """
    Canonical, value-comparable identity of a live query.

    ``kind`` is "query" for collection queries and "document" for
    single-document subscriptions.
    """

    kind: str
    path: Tuple[str, ...]
    filters: Tuple[Tuple[str, str, Any], ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None

    def __str__(self) -> str:
        text = "/".join(self.path)
        if self.kind == "document":
            return f"doc:{text}"
        parts = [text]
        parts.extend(f"{f} {op} {_render(v)}" for f, op, v in self.filters)
        parts.extend(f"order {f} {d}" for f, d in self.order_by)
        if self.limit is not None:
            parts.append(f"limit {self.limit}")
        return "query:" + " | ".join(parts)


class OpaqueKey:
    """
    Identity-based key for descriptions the normalizer cannot introspect.

    Holds a strong reference to the target, so its id cannot be recycled by
    another object while the key is alive.
    """

    __slots__ = ("target",)

    kind = "opaque"

    def __init__(self, target: Any):
        self.target = target

    def __eq__(self, other: object) -> bool:
        return isinstance(other, OpaqueKey) and other.target is self.target

    def __hash__(self) -> int:
        return id(self.target)

    def __repr__(self) -> str:
        return f"OpaqueKey({type(self.target).__name__}@{id(self.target):#x})"

    __str__ = __repr__


def split_path(path: Any) -> Tuple[str, ...]:
    """Split a slash-separated path, rejecting empty inner segments."""
    if isinstance(path, (list, tuple)):
        segments = tuple(str(s) for s in path)
    elif isinstance(path, str):
        stripped = path.strip().strip("/")
        segments = tuple(stripped.split("/")) if stripped else ()
    else:
        raise MalformedQuery(f"path must be a string, got {type(path).__name__}")
    if not segments or any(not s.strip() for s in segments):
        raise MalformedQuery(f"invalid path {path!r}")
    return tuple(s.strip() for s in segments)


def freeze_value(value: Any) -> Tuple:
    """Type-tagged, hashable canonical form of a filter value."""
    if value is None:
        return ("null",)
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, int):
        return ("int", value)
    if isinstance(value, float):
        return ("float", repr(value))
    if isinstance(value, str):
        return ("str", value)
    if isinstance(value, bytes):
        return ("bytes", value)
    if isinstance(value, datetime):
        return ("timestamp", value.isoformat())
    if isinstance(value, date):
        return ("date", value.isoformat())
    if isinstance(value, DocumentRef):
        return ("ref", value.path)
    if isinstance(value, Mapping):
        items = sorted(((str(k), freeze_value(v)) for k, v in value.items()), key=repr)
        return ("map", tuple(items))
    if isinstance(value, (list, tuple)):
        return ("array", tuple(freeze_value(v) for v in value))
    if isinstance(value, (set, frozenset)):
        return ("set", tuple(sorted((freeze_value(v) for v in value), key=repr)))
    try:
        hash(value)
    except TypeError:
        raise MalformedQuery(f"unsupported filter value {value!r}") from None
    return ("object", f"{type(value).__module__}.{type(value).__qualname__}", value)


def _render(frozen: Tuple) -> str:
    tag = frozen[0]
    if tag == "null":
        return "null"
    if tag in ("array", "set"):
        return "[" + ", ".join(_render(v) for v in frozen[1]) + "]"
    if tag == "map":
        return "{" + ", ".join(f"{k}: {_render(v)}" for k, v in frozen[1]) + "}"
    return repr(frozen[-1])


def _canonical_filter(flt: Filter) -> Tuple[str, str, Any]:
    if not isinstance(flt.field, str) or not flt.field:
        raise MalformedQuery(f"filter field must be a non-empty string: {flt!r}")
    if flt.op not in OPERATORS:
        raise MalformedQuery(f"unknown filter operator {flt.op!r}")
    if flt.op in SET_OPERATORS:
        if not isinstance(flt.value, (list, tuple, set, frozenset)):
            raise MalformedQuery(f"operator {flt.op!r} needs a list value, got {flt.value!r}")
        alternatives = {freeze_value(v) for v in flt.value}
        frozen = ("set", tuple(sorted(alternatives, key=repr)))
    else:
        frozen = freeze_value(flt.value)
    return (flt.field, flt.op, frozen)


def _canonical_order(clause: OrderBy) -> Tuple[str, str]:
    if not isinstance(clause.field, str) or not clause.field:
        raise MalformedQuery(f"ordering field must be a non-empty string: {clause!r}")
    direction = str(clause.direction).lower()
    if direction not in DIRECTIONS:
        raise MalformedQuery(f"ordering direction must be 'asc' or 'desc': {clause!r}")
    return (clause.field, direction)


def _query_key(description: QueryDescription) -> QueryKey:
    path = split_path(description.collection)
    if len(path) % 2 == 0:
        raise MalformedQuery(
            f"collection path needs an odd number of segments: {description.collection!r}"
        )
    filters = tuple(sorted({_canonical_filter(f) for f in description.filters}, key=repr))
    ordering = tuple(_canonical_order(o) for o in description.order_by)
    limit = description.limit
    if limit is not None and (
        not isinstance(limit, int) or isinstance(limit, bool) or limit < 0
    ):
        raise MalformedQuery(f"limit must be a non-negative integer, got {limit!r}")
    return QueryKey("query", path, filters, ordering, limit)


def _document_key(ref: DocumentRef) -> QueryKey:
    collection = split_path(ref.collection)
    if len(collection) % 2 == 0:
        raise MalformedQuery(f"document collection path is invalid: {ref.collection!r}")
    if not isinstance(ref.id, str) or not ref.id.strip() or "/" in ref.id:
        raise MalformedQuery(f"invalid document id {ref.id!r}")
    return QueryKey("document", collection + (ref.id.strip(),))


def coerce(description: Any) -> Any:
    """
    Turn supported loose inputs into a ``QueryDescription`` or ``DocumentRef``.

    Strings are read as paths (odd segment count: collection, even: document);
    mappings go through ``QueryDescription.from_mapping`` or carry a
    ``"document"`` path. Anything else is returned unchanged.
    """
    if description is None:
        raise MalformedQuery("query description is None")
    if isinstance(description, (QueryDescription, DocumentRef)):
        return description
    if isinstance(description, str):
        segments = split_path(description)
        if len(segments) % 2:
            return QueryDescription("/".join(segments))
        return DocumentRef("/".join(segments[:-1]), segments[-1])
    if isinstance(description, Mapping):
        if "document" in description:
            if len(description) != 1:
                raise MalformedQuery(f"document mapping takes only 'document': {description!r}")
            return DocumentRef.parse(description["document"])
        return QueryDescription.from_mapping(description)
    return description


def _value_signature(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return (type(value), tuple(_value_signature(v) for v in value))
    if isinstance(value, (set, frozenset)):
        # Equal sets can hold differently typed elements ({1, 2.0} == {1.0, 2})
        return (type(value), tuple(sorted((freeze_value(v) for v in value), key=repr)))
    return type(value)


def _type_signature(target: Union[QueryDescription, DocumentRef]) -> Tuple:
    if isinstance(target, DocumentRef):
        return (type(target.id),)
    return tuple(_value_signature(f.value) for f in target.filters) + (type(target.limit),)


class KeyNormalizer:
    """
    Callable normalizer with an LRU memo for hashable descriptions.

    Normalizing the same frozen description repeatedly (every subscribe call
    does it) hits the cache instead of re-canonicalizing filters.
    """

    def __init__(self, cache_size: int = 1024):
        self._cache = LRUCache(maxsize=cache_size) if cache_size > 0 else None
        self._lock = threading.Lock()

    def __call__(self, description: Any) -> Union[QueryKey, OpaqueKey]:
        target = coerce(description)
        if not isinstance(target, (QueryDescription, DocumentRef)):
            return OpaqueKey(target)
        if self._cache is None:
            return self._build(target)

        # 1 == True == 1.0 in Python, so the memo key carries value types too
        memo_key = (target, _type_signature(target))
        try:
            with self._lock:
                cached = self._cache.get(memo_key)
        except TypeError:
            # Unhashable filter value (e.g. a dict); skip the memo
            return self._build(target)
        if cached is not None:
            return cached

        key = self._build(target)
        with self._lock:
            self._cache[memo_key] = key
        return key

    @staticmethod
    def _build(target: Union[QueryDescription, DocumentRef]) -> QueryKey:
        if isinstance(target, DocumentRef):
            return _document_key(target)
        return _query_key(target)

    def clear(self) -> None:
        with self._lock:
            if self._cache is not None:
                self._cache.clear()


_default_normalizer = KeyNormalizer()


def normalize(description: Any) -> Union[QueryKey, OpaqueKey]:
    """
    Normalize a query description into a canonical key.

    Raises:
        MalformedQuery: If the description is structurally invalid
    """
    return _default_normalizer(description)


def is_document_key(key: Any) -> bool:
    return getattr(key, "kind", None) == "document"
