"""
Console Queries
===============

The live queries the task/device console subscribes to, plus the domain
constants they are built from. Every view goes through the shared cache, so
several widgets watching the same team board share one upstream listener.

Each ``use_*`` helper disables itself (no subscription, not loading) when its
argument is empty, the way a view with nothing selected should behave.
"""

from typing import Any, Dict, List, Optional

from .consumer import LiveDocument, LiveQuery, use_live_document, use_live_query
from .query import DocumentRef, QueryDescription, document, order_by, query, where
from .registry import SubscriptionRegistry

TASKS = "tasks"
DEVICES = "devices"
COMMENTS = "comments"

TEAMS: List[Dict[str, str]] = [
    {"slug": "cloud-development", "label": "Cloud Development"},
    {"slug": "app-development", "label": "App Development"},
    {"slug": "embedded-development", "label": "Embedded Development"},
    {"slug": "web-development", "label": "Web Development"},
    {"slug": "ml-development", "label": "ML Development"},
    {"slug": "design", "label": "Design"},
    {"slug": "operations", "label": "Operations"},
]

STATUSES: List[Dict[str, str]] = [
    {"value": "not-started", "label": "Not Started"},
    {"value": "in-progress", "label": "In Progress"},
    {"value": "in-review", "label": "In Review"},
    {"value": "completed", "label": "Completed"},
]

PRIORITIES: List[Dict[str, Any]] = [
    {"value": 1, "label": "Low", "color": "#4ade80"},
    {"value": 2, "label": "Medium", "color": "#facc15"},
    {"value": 3, "label": "High", "color": "#ef4444"},
]

# Statuses counted as "still on someone's plate"
OPEN_STATUSES = ["not-started", "in-progress", "in-review"]

TEAM_MAP = {t["slug"]: t["label"] for t in TEAMS}
STATUS_MAP = {s["value"]: s["label"] for s in STATUSES}
PRIORITY_MAP = {p["value"]: p for p in PRIORITIES}


# ============================================================================
# QUERY BUILDERS
# ============================================================================


def team_tasks(team: str, status: Optional[str] = None) -> QueryDescription:
    """Top-level tasks of one team, newest first, optionally by status."""
    constraints = [
        where("team", "==", team),
        where("parentTaskId", "==", None),
        order_by("createdAt", "desc"),
    ]
    if status:
        constraints.insert(1, where("status", "==", status))
    return query(TASKS, *constraints)


def subtasks(parent_task_id: str) -> QueryDescription:
    return query(
        TASKS,
        where("parentTaskId", "==", parent_task_id),
        order_by("createdAt", "asc"),
    )


def my_tasks(user_id: str) -> QueryDescription:
    """Open tasks assigned to a user across all teams."""
    return query(
        TASKS,
        where("assigneeId", "==", user_id),
        where("status", "in", OPEN_STATUSES),
        order_by("createdAt", "desc"),
    )


def all_devices() -> QueryDescription:
    return query(DEVICES, order_by("createdAt", "desc"))


def device(device_id: str) -> DocumentRef:
    return document(DEVICES, device_id)


def task(task_id: str) -> DocumentRef:
    return document(TASKS, task_id)


def comments(task_id: str) -> QueryDescription:
    return query(f"{TASKS}/{task_id}/{COMMENTS}", order_by("createdAt", "asc"))


# ============================================================================
# LIVE VIEWS
# ============================================================================


def use_team_tasks(
    team: Optional[str],
    status: Optional[str] = None,
    registry: Optional[SubscriptionRegistry] = None,
) -> LiveQuery:
    return use_live_query(
        team_tasks(team, status) if team else None, enabled=bool(team), registry=registry
    )


def use_subtasks(
    parent_task_id: Optional[str], registry: Optional[SubscriptionRegistry] = None
) -> LiveQuery:
    return use_live_query(
        subtasks(parent_task_id) if parent_task_id else None,
        enabled=bool(parent_task_id),
        registry=registry,
    )


def use_my_tasks(
    user_id: Optional[str], registry: Optional[SubscriptionRegistry] = None
) -> LiveQuery:
    return use_live_query(
        my_tasks(user_id) if user_id else None, enabled=bool(user_id), registry=registry
    )


def use_devices(registry: Optional[SubscriptionRegistry] = None) -> LiveQuery:
    return use_live_query(all_devices(), registry=registry)


def use_device(
    device_id: Optional[str], registry: Optional[SubscriptionRegistry] = None
) -> LiveDocument:
    return use_live_document(
        device(device_id) if device_id else None, enabled=bool(device_id), registry=registry
    )


def use_comments(
    task_id: Optional[str], registry: Optional[SubscriptionRegistry] = None
) -> LiveQuery:
    return use_live_query(
        comments(task_id) if task_id else None, enabled=bool(task_id), registry=registry
    )
