# activity.py — Task activity trail, board broadcasts and automation triggers
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from automation_engine import execute_automation_rules
from models import Task, TaskActivity, TriggerType
from routers.websocket_router import broadcast_board_change

logger = logging.getLogger("pulseboard.activity")


def _trigger_events(action: str, task_id: str, changes: Dict[str, Any]) -> List[Tuple[TriggerType, Dict[str, Any]]]:
    """Map an activity to the (trigger, context) pairs it fires"""
    base = dict(changes, task_id=task_id)
    if action == "created":
        return [(TriggerType.TASK_CREATED, base)]
    if action == "moved":
        return [(TriggerType.TASK_MOVED, base)]
    if action == "assigned":
        return [(TriggerType.TASK_ASSIGNED, dict(base, user_id=uid)) for uid in changes.get("added", [])]
    if action == "labels_added":
        return [(TriggerType.LABEL_ADDED, dict(base, label_id=lid)) for lid in changes.get("added", [])]
    if action == "due_date_reached":
        return [(TriggerType.DUE_DATE_REACHED, base)]
    if action == "gitlab_mr_merged":
        return [(TriggerType.GITLAB_MR_MERGED, base)]
    return []


async def fire_triggers(
    db: AsyncSession,
    board_id: str,
    trigger_type: TriggerType,
    context: Dict[str, Any],
) -> None:
    """Run the rule engine; failures never reach the caller"""
    try:
        await execute_automation_rules(db, board_id, trigger_type, context)
    except Exception as e:
        await db.rollback()
        logger.warning(
            f"Automation execution failed for task {context.get('task_id')} "
            f"trigger={trigger_type.value}: {e}"
        )


async def log_task_activity(
    db: AsyncSession,
    task: Task,
    action: str,
    changes: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    broadcast: bool = True,
) -> None:
    """Record an activity row for the task, publish it on the board channel and run matching rules.

    ``actor_id`` is the acting user; None records a system action. Commits.
    """
    changes = changes or {}
    task_id, board_id = task.id, task.board_id

    db.add(TaskActivity(task_id=task_id, user_id=actor_id, action=action, changes=changes))
    await db.commit()

    if broadcast:
        await broadcast_board_change(board_id, f"task.{action}", dict(changes, task_id=task_id), actor_id)

    for trigger_type, context in _trigger_events(action, task_id, changes):
        await fire_triggers(db, board_id, trigger_type, context)
