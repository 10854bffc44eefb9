"""
Snapshots and Fingerprints
==========================

A ``Snapshot`` is the full, immutable result set of a live query at one point
in time. A fingerprint is a cheap summary of it, built from record ids and
version tokens only, used to decide whether consumers need to hear about a
new snapshot at all.

Limitation: a record whose fields change without its version token moving
produces the same fingerprint, so that change is not propagated. Upstream
sources are expected to bump versions on every write.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional, Tuple, Union

# Distinguished fingerprints; neither can be produced by a non-empty snapshot
# because those always start with RECORD_PREFIX.
EMPTY_FINGERPRINT = "\x00empty"
UNSET = "\x00unset"

RECORD_PREFIX = "#"
PAIR_SEPARATOR = ","
ID_VERSION_SEPARATOR = ":"


def _read_only(fields: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if fields is None:
        return MappingProxyType({})
    if isinstance(fields, MappingProxyType):
        return fields
    return MappingProxyType(dict(fields))


def _seconds(value: Any) -> Any:
    """Timestamp-ish value to seconds, or None if it has no usable form."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, datetime):
        return value.timestamp()
    seconds = getattr(value, "seconds", None)
    if seconds is not None:
        return seconds
    if isinstance(value, Mapping):
        return value.get("seconds")
    return None


def version_from_fields(fields: Mapping[str, Any]) -> Any:
    """
    Derive a version token from document fields.

    Uses ``updatedAt`` seconds, falling back to ``createdAt`` seconds, then 0.
    """
    for name in ("updatedAt", "createdAt"):
        seconds = _seconds(fields.get(name))
        if seconds:
            return seconds
    return 0


@dataclass(frozen=True)
class Record:
    """
    One document in a snapshot.

    Attributes:
        id: Document id
        version: Opaque comparable token, non-decreasing per id upstream
        fields: Read-only document fields
    """

    id: str
    version: Any = 0
    fields: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "fields", _read_only(self.fields))

    @classmethod
    def from_fields(cls, doc_id: str, fields: Mapping[str, Any]) -> "Record":
        return cls(doc_id, version_from_fields(fields), fields)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]

    def to_dict(self) -> dict:
        """Flat dict with the id merged into the fields."""
        data = {"id": self.id}
        data.update(self.fields)
        return data


class Snapshot:
    """
    Immutable ordered sequence of records.

    Fingerprints are computed lazily and memoized on the instance.

    Usage:
        snap = Snapshot([Record("a", 1), Record("b", 3)])
        snap.ids()          # ("a", "b")
        snap.get("b")       # Record("b", 3)
        fingerprint(snap)   # "#a:1,#b:3"
    """

    __slots__ = ("_records", "_fingerprint")

    def __init__(self, records: Iterable[Record] = ()):
        records = tuple(records)
        for record in records:
            if not isinstance(record, Record):
                raise TypeError(f"Snapshot holds Record instances, got {type(record).__name__}")
        self._records: Tuple[Record, ...] = records
        self._fingerprint: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["Snapshot", Iterable[Record], None]) -> "Snapshot":
        if isinstance(value, Snapshot):
            return value
        if value is None:
            return EMPTY_SNAPSHOT
        if isinstance(value, Record):
            return cls((value,))
        return cls(value)

    @property
    def records(self) -> Tuple[Record, ...]:
        return self._records

    def ids(self) -> Tuple[str, ...]:
        return tuple(r.id for r in self._records)

    def get(self, doc_id: str) -> Optional[Record]:
        for record in self._records:
            if record.id == doc_id:
                return record
        return None

    def first(self) -> Optional[Record]:
        return self._records[0] if self._records else None

    @property
    def fingerprint(self) -> str:
        if self._fingerprint is None:
            self._fingerprint = _compute_fingerprint(self._records)
        return self._fingerprint

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    def __getitem__(self, index: int) -> Record:
        return self._records[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Snapshot):
            return self._records == other._records
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._records)

    def __repr__(self) -> str:
        return f"Snapshot({len(self._records)} records, {self.fingerprint!r})"


EMPTY_SNAPSHOT = Snapshot()


def _escape(text: str) -> str:
    # Backslash first so escapes themselves stay unambiguous
    return (
        text.replace("\\", "\\\\")
        .replace(PAIR_SEPARATOR, "\\" + PAIR_SEPARATOR)
        .replace(ID_VERSION_SEPARATOR, "\\" + ID_VERSION_SEPARATOR)
        .replace(RECORD_PREFIX, "\\" + RECORD_PREFIX)
    )


def _compute_fingerprint(records: Tuple[Record, ...]) -> str:
    if not records:
        return EMPTY_FINGERPRINT
    return PAIR_SEPARATOR.join(
        f"{RECORD_PREFIX}{_escape(str(r.id))}{ID_VERSION_SEPARATOR}{_escape(repr(r.version))}"
        for r in records
    )


def fingerprint(snapshot: Union[Snapshot, Iterable[Record], Record, None]) -> str:
    """
    Fingerprint of a snapshot from its (id, version) pairs, in order.

    Pure and total. ``None`` and empty snapshots map to ``EMPTY_FINGERPRINT``.
    """
    return Snapshot.coerce(snapshot).fingerprint
