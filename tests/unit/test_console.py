"""Unit tests for the console's query builders and live views."""

import pytest

from livecache import DocumentRef, normalize
from livecache.console import (
    OPEN_STATUSES,
    PRIORITY_MAP,
    STATUS_MAP,
    TEAM_MAP,
    all_devices,
    comments,
    device,
    my_tasks,
    subtasks,
    task,
    team_tasks,
    use_comments,
    use_device,
    use_devices,
    use_my_tasks,
    use_subtasks,
    use_team_tasks,
)


@pytest.mark.unit
def test_team_board_query_shape():
    description = team_tasks("design")

    assert description.collection == "tasks"
    assert [(f.field, f.op, f.value) for f in description.filters] == [
        ("team", "==", "design"),
        ("parentTaskId", "==", None),
    ]
    assert [(o.field, o.direction) for o in description.order_by] == [("createdAt", "desc")]


@pytest.mark.unit
def test_status_filter_narrows_the_board():
    filtered = team_tasks("design", "in-review")

    assert ("status", "==", "in-review") in [(f.field, f.op, f.value) for f in filtered.filters]
    assert normalize(filtered) != normalize(team_tasks("design"))


@pytest.mark.unit
def test_builders_normalize_to_distinct_keys():
    keys = {
        normalize(team_tasks("design")),
        normalize(subtasks("t1")),
        normalize(my_tasks("u1")),
        normalize(all_devices()),
        normalize(comments("t1")),
        normalize(device("hw-1")),
        normalize(task("t1")),
    }

    assert len(keys) == 7


@pytest.mark.unit
def test_document_builders_and_comment_paths():
    assert device("hw-1") == DocumentRef("devices", "hw-1")
    assert task("t1").path == "tasks/t1"
    assert comments("t1").collection == "tasks/t1/comments"
    assert my_tasks("u1").filters[1].value == tuple(OPEN_STATUSES)


@pytest.mark.unit
def test_lookup_tables_cover_the_constants():
    assert TEAM_MAP["design"] == "Design"
    assert STATUS_MAP["in-review"] == "In Review"
    assert PRIORITY_MAP[3]["label"] == "High"
    assert "completed" not in OPEN_STATUSES


@pytest.mark.unit
@pytest.mark.parametrize(
    "factory",
    [use_team_tasks, use_subtasks, use_my_tasks, use_comments, use_device],
)
@pytest.mark.parametrize("empty", [None, ""])
def test_views_without_a_selection_are_disabled(registry, upstream, factory, empty):
    view = factory(empty, registry=registry)

    assert view.loading is False
    assert view.key is None
    assert upstream.subscribe_calls == []


@pytest.mark.unit
def test_widgets_on_the_same_board_share_one_listener(registry, upstream):
    board = use_team_tasks("design", registry=registry)
    sidebar = use_team_tasks("design", registry=registry)
    devices = use_devices(registry=registry)
    bench = use_device("hw-1", registry=registry)

    assert board.key == sidebar.key
    assert len(upstream.subscribe_calls) == 3
    assert bench.data is None

    for view in (board, sidebar, devices, bench):
        view.close()
    assert len(registry) == 0
