"""Unit tests for query descriptions and key normalization."""

import pytest

from livecache import (
    DocumentRef,
    MalformedQuery,
    OpaqueKey,
    OrderBy,
    QueryDescription,
    document,
    normalize,
    order_by,
    query,
    where,
)
from livecache.query import KeyNormalizer, coerce


@pytest.mark.unit
def test_filter_order_does_not_change_the_key():
    """Filters are a conjunction, so their order is noise"""
    a = query("tasks", where("team", "==", "design"), where("status", "==", "in-progress"))
    b = query("tasks", where("status", "==", "in-progress"), where("team", "==", "design"))

    assert normalize(a) == normalize(b)
    assert hash(normalize(a)) == hash(normalize(b))


@pytest.mark.unit
def test_path_slashes_and_whitespace_are_noise():
    """Leading/trailing slashes and padding do not create new keys"""
    assert normalize(query("tasks")) == normalize(query("/tasks/"))
    assert normalize(query("tasks/t1/comments")) == normalize(query(" tasks/t1/comments/ "))


@pytest.mark.unit
def test_ordering_clauses_are_significant():
    """Ordering changes the result, so order-by order is kept"""
    a = query("tasks", order_by("priority"), order_by("createdAt"))
    b = query("tasks", order_by("createdAt"), order_by("priority"))

    assert normalize(a) != normalize(b)


@pytest.mark.unit
def test_direction_is_case_insensitive():
    """DESC and desc normalize identically, asc is the default"""
    assert normalize(query("tasks", order_by("createdAt", "DESC"))) == normalize(
        query("tasks", order_by("createdAt", "desc"))
    )
    assert normalize(query("tasks", OrderBy("createdAt"))) == normalize(
        query("tasks", order_by("createdAt", "asc"))
    )


@pytest.mark.unit
def test_values_of_different_types_never_share_a_key():
    """1, 1.0, True and "1" are distinct filter values"""
    keys = {
        normalize(query("tasks", where("priority", "==", value)))
        for value in (1, 1.0, True, "1")
    }

    assert len(keys) == 4


@pytest.mark.unit
def test_membership_values_are_order_insensitive():
    """The alternatives of an 'in' filter form a set"""
    a = query("tasks", where("status", "in", ["in-review", "not-started"]))
    b = query("tasks", where("status", "in", ["not-started", "in-review", "not-started"]))

    assert normalize(a) == normalize(b)


@pytest.mark.unit
def test_array_equality_values_keep_their_order():
    """An '==' against a list compares the whole list, order included"""
    a = query("tasks", where("tags", "==", ["a", "b"]))
    b = query("tasks", where("tags", "==", ["b", "a"]))

    assert normalize(a) != normalize(b)


@pytest.mark.unit
def test_distinct_queries_get_distinct_keys():
    """Collection, value and limit differences all separate keys"""
    base = query("tasks", where("team", "==", "design"))

    assert normalize(base) != normalize(query("devices", where("team", "==", "design")))
    assert normalize(base) != normalize(query("tasks", where("team", "==", "ops")))
    assert normalize(base) != normalize(base.limited(10))
    assert normalize(base) != normalize(query("tasks", where("team", "!=", "design")))


@pytest.mark.unit
def test_mapping_description_matches_structured_description():
    """Plain mappings normalize like the equivalent QueryDescription"""
    structured = query(
        "tasks",
        where("team", "==", "design"),
        where("status", "in", ["not-started"]),
        order_by("createdAt", "desc"),
        20,
    )
    mapping = {
        "collection": "tasks",
        "where": [
            {"field": "status", "op": "in", "value": ["not-started"]},
            ("team", "==", "design"),
        ],
        "order_by": [("createdAt", "desc")],
        "limit": 20,
    }

    assert normalize(mapping) == normalize(structured)


@pytest.mark.unit
def test_builder_methods_match_helper_functions():
    """QueryDescription.where/ordered/limited compose like query()"""
    built = QueryDescription("tasks").where("team", "==", "design").ordered("createdAt", "desc").limited(5)
    helper = query("tasks", where("team", "==", "design"), order_by("createdAt", "desc"), 5)

    assert built == helper
    assert normalize(built) == normalize(helper)


@pytest.mark.unit
def test_document_references_normalize_to_document_keys():
    """Paths with an even segment count name a document"""
    key = normalize(DocumentRef("tasks", "t1"))

    assert key.kind == "document"
    assert key == normalize("tasks/t1")
    assert key == normalize({"document": "/tasks/t1"})
    assert key == normalize(document("tasks", "t1"))
    assert key != normalize(DocumentRef("tasks", "t2"))


@pytest.mark.unit
def test_string_paths_are_read_as_collections_or_documents():
    """coerce() turns strings into descriptions by segment count"""
    assert coerce("tasks") == QueryDescription("tasks")
    assert coerce("tasks/t1/comments/c1") == DocumentRef("tasks/t1/comments", "c1")


@pytest.mark.unit
def test_dict_filter_values_normalize_regardless_of_key_order():
    """Unhashable mapping values still normalize, canonically"""
    a = query("devices", where("meta", "==", {"rev": 2, "board": "b1"}))
    b = query("devices", where("meta", "==", {"board": "b1", "rev": 2}))

    assert normalize(a) == normalize(b)


@pytest.mark.unit
@pytest.mark.parametrize(
    "description",
    [
        None,
        "",
        query("tasks", where("team", "~=", "design")),
        query("tasks/t1"),
        query("tasks", order_by("createdAt", "sideways")),
        QueryDescription("tasks", limit=-1),
        QueryDescription("tasks", limit=True),
        query("tasks", where("status", "in", "not-started")),
        query("tasks", where("", "==", 1)),
        query("tasks//comments"),
        DocumentRef("tasks/t1", "c1"),
        {"where": []},
        {"collection": "tasks", "select": ["title"]},
        {"collection": "tasks", "where": [("team", "==")]},
        {"document": "tasks"},
    ],
)
def test_malformed_descriptions_are_rejected(description):
    """Structurally invalid input raises MalformedQuery"""
    with pytest.raises(MalformedQuery):
        normalize(description)


@pytest.mark.unit
def test_malformed_query_is_a_value_error():
    """Callers catching ValueError also catch normalization failures"""
    with pytest.raises(ValueError):
        normalize(query("tasks", where("team", "~=", "design")))


@pytest.mark.unit
def test_opaque_descriptions_fall_back_to_identity_keys():
    """Uninspectable objects are only ever equal to themselves"""
    first = object()
    second = object()

    assert isinstance(normalize(first), OpaqueKey)
    assert normalize(first) == normalize(first)
    assert normalize(first) != normalize(second)
    assert normalize(first).target is first


@pytest.mark.unit
def test_normalizer_without_memo_gives_the_same_keys():
    """Disabling the LRU memo does not change results"""
    uncached = KeyNormalizer(cache_size=0)
    q = query("tasks", where("team", "==", "design"), order_by("createdAt", "desc"))

    assert uncached(q) == normalize(q)


@pytest.mark.unit
def test_memo_does_not_confuse_equal_but_differently_typed_values():
    """1 == True in Python, but the memo must still keep them apart"""
    normalizer = KeyNormalizer(cache_size=16)
    as_int = normalizer(query("tasks", where("done", "==", 1)))
    as_bool = normalizer(query("tasks", where("done", "==", True)))

    assert as_int != as_bool


@pytest.mark.unit
def test_memo_keeps_equal_sets_with_differently_typed_members_apart():
    """frozenset({1, 2.0}) == frozenset({1.0, 2}), yet they are different filters"""
    normalizer = KeyNormalizer(cache_size=16)
    first = query("tasks", where("x", "in", frozenset({1, 2.0})))
    second = query("tasks", where("x", "in", frozenset({1.0, 2})))

    first_key = normalizer(first)
    second_key = normalizer(second)

    assert first_key != second_key
    assert second_key == KeyNormalizer(cache_size=0)(second)
    assert first_key == KeyNormalizer(cache_size=0)(first)


@pytest.mark.unit
def test_key_renders_readably():
    """str(key) is usable in logs"""
    key = normalize(query("tasks", where("team", "==", "design"), order_by("createdAt", "desc"), 5))

    text = str(key)
    assert text.startswith("query:tasks")
    assert "team == 'design'" in text
    assert "order createdAt desc" in text
    assert "limit 5" in text
    assert str(normalize("tasks/t1")) == "doc:tasks/t1"
