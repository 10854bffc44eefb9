"""Unit tests for snapshots and fingerprints."""

from datetime import datetime, timezone

import pytest

from livecache import EMPTY_FINGERPRINT, EMPTY_SNAPSHOT, Record, Snapshot, fingerprint
from livecache.snapshot import UNSET, version_from_fields
from tests.utils import rec, snap


@pytest.mark.unit
def test_fingerprint_is_stable_for_the_same_snapshot():
    s = snap(rec("a", 1), rec("b", 2))

    assert fingerprint(s) == fingerprint(s)
    assert fingerprint(s) == fingerprint(snap(rec("a", 1), rec("b", 2)))


@pytest.mark.unit
def test_fingerprint_ignores_field_contents():
    """Same ids and versions with different fields fingerprint equally"""
    before = snap(rec("a", 1, title="old"), rec("b", 2))
    after = snap(rec("a", 1, title="new"), rec("b", 2, extra=True))

    assert fingerprint(before) == fingerprint(after)
    assert before != after


@pytest.mark.unit
def test_fingerprint_tracks_versions_membership_and_order():
    base = snap(rec("a", 1), rec("b", 2))

    assert fingerprint(base) != fingerprint(snap(rec("a", 1), rec("b", 3)))
    assert fingerprint(base) != fingerprint(snap(rec("b", 2), rec("a", 1)))
    assert fingerprint(base) != fingerprint(snap(rec("a", 1)))
    assert fingerprint(base) != fingerprint(snap(rec("a", 1), rec("b", 2), rec("c", 1)))


@pytest.mark.unit
def test_empty_fingerprint_is_distinguished():
    """Empty and None map to EMPTY_FINGERPRINT; no real record can produce it"""
    assert fingerprint(EMPTY_SNAPSHOT) == EMPTY_FINGERPRINT
    assert fingerprint(None) == EMPTY_FINGERPRINT
    assert fingerprint([]) == EMPTY_FINGERPRINT
    assert fingerprint(snap(rec("empty", 0))) != EMPTY_FINGERPRINT
    assert fingerprint(snap(rec(EMPTY_FINGERPRINT, 0))) != EMPTY_FINGERPRINT
    assert EMPTY_FINGERPRINT != UNSET


@pytest.mark.unit
def test_separators_inside_ids_cannot_forge_another_snapshot():
    """An id containing separators does not collide with two records"""
    two_records = snap(rec("a", 1), rec("b", 1))
    one_tricky_record = Snapshot([Record("a:1,#b", 1)])

    assert fingerprint(two_records) != fingerprint(one_tricky_record)


@pytest.mark.unit
def test_version_tokens_keep_their_type():
    """Version 1 and version "1" are different tokens"""
    assert fingerprint(snap(rec("a", 1))) != fingerprint(snap(rec("a", "1")))


@pytest.mark.unit
def test_fingerprint_accepts_loose_inputs():
    record = rec("a", 4)

    assert fingerprint(record) == fingerprint(snap(record))
    assert fingerprint([record]) == fingerprint(snap(record))


@pytest.mark.unit
def test_snapshot_helpers():
    s = snap(rec("a", 1, title="A"), rec("b", 2, title="B"))

    assert s.ids() == ("a", "b")
    assert s.get("b").get("title") == "B"
    assert s.get("zzz") is None
    assert s.first().id == "a"
    assert len(s) == 2
    assert [r.id for r in s] == ["a", "b"]
    assert s[1].id == "b"
    assert EMPTY_SNAPSHOT.first() is None
    assert not EMPTY_SNAPSHOT


@pytest.mark.unit
def test_snapshot_rejects_non_records():
    with pytest.raises(TypeError):
        Snapshot([{"id": "a"}])


@pytest.mark.unit
def test_record_fields_are_read_only():
    record = rec("a", 1, title="A")

    with pytest.raises(TypeError):
        record.fields["title"] = "B"
    assert record["title"] == "A"
    assert record.to_dict() == {"id": "a", "title": "A"}


@pytest.mark.unit
def test_record_copies_its_fields():
    """Mutating the source mapping does not reach the record"""
    fields = {"title": "A"}
    record = Record("a", 1, fields)
    fields["title"] = "B"

    assert record["title"] == "A"


@pytest.mark.unit
def test_version_from_fields_prefers_updated_then_created():
    assert version_from_fields({"updatedAt": 200, "createdAt": 100}) == 200
    assert version_from_fields({"updatedAt": None, "createdAt": {"seconds": 5}}) == 5
    assert version_from_fields({"title": "no timestamps"}) == 0

    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert version_from_fields({"createdAt": moment}) == moment.timestamp()


@pytest.mark.unit
def test_record_from_fields_derives_version():
    record = Record.from_fields("t1", {"title": "x", "updatedAt": 42})

    assert record.version == 42
    assert record.id == "t1"
