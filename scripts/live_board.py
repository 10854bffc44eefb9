#!/usr/bin/env python3
"""
Live Task Board - terminal demo of the shared subscription cache

Seeds an in-memory document store with tasks and devices, opens several
console views on top of the shared cache, then replays a short script of
writes. After every step the board is re-rendered and the cache counters are
shown, so you can watch:

- two board widgets on the same team sharing a single upstream listener
- redundant pushes being absorbed instead of re-rendering
- an upstream error reaching every view, and the next push clearing it
- listeners closing the moment their last view goes away

Usage:
    python scripts/live_board.py              # run the scripted session
    python scripts/live_board.py --delay 1    # pause between steps
    python scripts/live_board.py --async      # deliver pushes from a worker thread
"""

import argparse
import logging
import sys
import time
from typing import Callable, List, Tuple

# Add the project root to the Python path
sys.path.insert(0, ".")

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from livecache import SERVER_TIMESTAMP, InMemoryDocumentStore, configure
from livecache.console import (
    PRIORITY_MAP,
    STATUS_MAP,
    TEAM_MAP,
    use_device,
    use_my_tasks,
    use_team_tasks,
)
from livecache.exceptions import describe

console = Console()

TEAM = "design"
USER = "user-ada"


def seed(store: InMemoryDocumentStore) -> None:
    with store.batch():
        for title, priority, assignee in [
            ("Refresh login screen", 2, USER),
            ("Icon set for device list", 1, None),
            ("Review onboarding copy", 3, USER),
        ]:
            store.add(
                "tasks",
                {
                    "title": title,
                    "team": TEAM,
                    "status": "not-started",
                    "priority": priority,
                    "assigneeId": assignee,
                    "parentTaskId": None,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
        store.set(
            "devices/hw-0001",
            {"name": "Bench unit", "type": "hardware", "createdAt": SERVER_TIMESTAMP},
        )


def render_board(title: str, view) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("v", justify="right", style="dim")

    if view.loading:
        table.add_row("[yellow]loading...[/yellow]", "", "", "")
    for record in view.data:
        priority = PRIORITY_MAP.get(record.get("priority"), {})
        table.add_row(
            record.get("title", record.id),
            STATUS_MAP.get(record.get("status"), record.get("status") or ""),
            f"[{priority.get('color', 'white')}]{priority.get('label', '?')}[/]",
            str(record.version),
        )
    if view.error is not None:
        table.caption = f"[red]{describe(view.error)}[/red]"
    return table


def render_stats(registry, store: InMemoryDocumentStore, renders: dict) -> Panel:
    stats = registry.stats()
    upstream = store.stats()
    lines = [
        f"cache entries: [bold]{stats['entries']}[/bold]   consumers: {stats['consumers']}",
        f"upstream listeners: [bold]{upstream['active_subscriptions']}[/bold]"
        f"   opened: {upstream['subscribes']}   closed: {upstream['unsubscribes']}",
        f"notifications: {stats['notifications']}   suppressed: {stats['suppressed']}"
        f"   upstream pushes: {upstream['pushes']}",
        "renders: " + ", ".join(f"{name}={count}" for name, count in renders.items()),
    ]
    return Panel("\n".join(lines), title="Cache", border_style="cyan")


def main() -> int:
    parser = argparse.ArgumentParser(description="Live task board demo")
    parser.add_argument("--delay", type=float, default=0.0, help="seconds between steps")
    parser.add_argument(
        "--async", dest="async_mode", action="store_true", help="deliver pushes from a worker thread"
    )
    parser.add_argument("--verbose", action="store_true", help="show cache debug logs")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    store = InMemoryDocumentStore(async_notifications=args.async_mode)
    seed(store)
    registry = configure(store)

    renders = {"board": 0, "sidebar": 0, "mine": 0}

    def counter(name: str) -> Callable:
        def bump(state) -> None:
            renders[name] += 1

        return bump

    board = use_team_tasks(TEAM).subscribe(counter("board"))
    sidebar = use_team_tasks(TEAM).subscribe(counter("sidebar"))
    mine = use_my_tasks(USER).subscribe(counter("mine"))
    bench = use_device("hw-0001")

    if args.async_mode:
        time.sleep(0.05)
    if not board.data:
        console.print("[red]board never loaded[/red]")
        return 1
    first_task = board.data[0]

    steps: List[Tuple[str, Callable[[], None]]] = [
        ("Initial state", lambda: None),
        ("Redundant push (nothing changed)", lambda: store.resend()),
        (
            "Move a task to in-progress",
            lambda: store.update(
                f"tasks/{first_task.id}", {"status": "in-progress", "updatedAt": SERVER_TIMESTAMP}
            ),
        ),
        ("Upstream drops the connection", lambda: store.fail(ConnectionError("listener dropped"))),
        ("Next push clears the error", lambda: store.resend()),
        ("Sidebar closes (board keeps the listener)", sidebar.close),
        ("Board closes (listener released)", board.close),
    ]

    for title, action in steps:
        action()
        if args.async_mode:
            time.sleep(0.05)
        console.rule(f"[bold]{title}")
        console.print(render_board(f"{TEAM_MAP[TEAM]} board", board))
        console.print(render_board("My open tasks", mine))
        device_record = bench.data
        console.print(
            f"Device: {device_record.get('name') if device_record else '-'}"
            f"{' (loading)' if bench.loading else ''}"
        )
        console.print(render_stats(registry, store, renders))
        if args.delay:
            time.sleep(args.delay)

    mine.close()
    bench.close()
    store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
