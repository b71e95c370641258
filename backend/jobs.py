#!/usr/bin/env python3
"""
PulseBoard — Scheduled jobs
Run from cron (or any scheduler) outside the API process.

Usage:
    python jobs.py sync-gitlab-links
    python jobs.py sync-gitlab-links --batch-size 50 --interval 5
    python jobs.py due-date-triggers
"""

import json
import asyncio
import logging
import argparse
from datetime import date
from typing import Optional

from sqlalchemy import select

from activity import log_task_activity
from database import get_db_context, close_db
from gitlab_sync import sync_stale_links
from models import Board, BoardColumn, Task, TaskActivity

logger = logging.getLogger("pulseboard.jobs")

DUE_DATE_ACTION = "due_date_reached"


async def fire_due_date_triggers(db, today: Optional[date] = None) -> int:
    """Record `due_date_reached` for every open task whose due date has arrived.

    Each (task, due date) pair fires once; moving the due date re-arms it.
    Returns the number of tasks that fired.
    """
    today = today or date.today()
    result = await db.execute(
        select(Task.id, Task.due_date)
        .join(BoardColumn, BoardColumn.id == Task.column_id)
        .join(Board, Board.id == Task.board_id)
        .where(
            Task.due_date.is_not(None),
            Task.due_date <= today,
            BoardColumn.is_done_column.is_not(True),
            Board.is_archived.is_not(True),
        )
        .order_by(Task.due_date, Task.id)
    )
    candidates = [(task_id, due.isoformat()) for task_id, due in result.all()]
    if not candidates:
        return 0

    fired_before = set()
    activity = await db.execute(
        select(TaskActivity.task_id, TaskActivity.changes).where(
            TaskActivity.action == DUE_DATE_ACTION,
            TaskActivity.task_id.in_([task_id for task_id, _ in candidates]),
        )
    )
    for task_id, changes in activity.all():
        fired_before.add((task_id, (changes or {}).get("due_date")))

    fired = 0
    for task_id, due_iso in candidates:
        if (task_id, due_iso) in fired_before:
            continue
        task = await db.get(Task, task_id)
        if task is None:
            continue
        await log_task_activity(db, task, DUE_DATE_ACTION, {"due_date": due_iso}, None)
        fired += 1

    logger.info(f"Due date triggers fired for {fired} task(s)")
    return fired


async def _run_sync(args) -> dict:
    async with get_db_context() as db:
        report = await sync_stale_links(db, interval_minutes=args.interval, batch_size=args.batch_size)
    return report.to_dict()


async def _run_due_dates(args) -> dict:
    today = date.fromisoformat(args.today) if args.today else None
    async with get_db_context() as db:
        fired = await fire_due_date_triggers(db, today)
    return {"fired": fired}


COMMANDS = {
    "sync-gitlab-links": _run_sync,
    "due-date-triggers": _run_due_dates,
}


async def _main(args) -> dict:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await close_db()


def main(argv=None):
    parser = argparse.ArgumentParser(description="PulseBoard scheduled jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync-gitlab-links", help="Refresh stale merge request links from GitLab")
    sync.add_argument("--interval", type=int, default=None, help="Staleness threshold in minutes")
    sync.add_argument("--batch-size", type=int, default=None, help="Maximum links refreshed per run")

    due = sub.add_parser("due-date-triggers", help="Fire due_date_reached for tasks that are due")
    due.add_argument("--today", default=None, help="Override today's date (YYYY-MM-DD)")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s %(message)s")

    report = asyncio.run(_main(args))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
