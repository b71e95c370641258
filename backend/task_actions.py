# task_actions.py — Task mutations that feed the activity trail and automation triggers
# Every mutating call takes the acting user's id explicitly; None means a system action.
import logging
from collections import deque
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import select, func, insert, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from activity import log_task_activity
from exceptions import DomainValidationError
from models import (
    Board, BoardColumn, Label, Task, TaskAssignee, TaskDependency, TaskPriority, User,
    task_labels, utcnow,
)

logger = logging.getLogger("pulseboard.tasks")


async def _next_task_number(db: AsyncSession, board_id: str) -> int:
    # Row lock on the board serialises concurrent creators (no-op on SQLite)
    await db.execute(select(Board.id).where(Board.id == board_id).with_for_update())
    result = await db.execute(select(func.max(Task.task_number)).where(Task.board_id == board_id))
    return (result.scalar() or 0) + 1


async def _resolve_column(db: AsyncSession, board_id: str, column_id: Optional[str]) -> BoardColumn:
    if column_id:
        column = await db.get(BoardColumn, column_id)
        if column is None or column.board_id != board_id:
            raise DomainValidationError("column_id", "The column must belong to the task's board.")
        return column
    result = await db.execute(
        select(BoardColumn)
        .where(BoardColumn.board_id == board_id)
        .order_by(BoardColumn.sort_order, BoardColumn.created_at)
        .limit(1)
    )
    column = result.scalar_one_or_none()
    if column is None:
        raise DomainValidationError("column_id", "The board has no columns.")
    return column


async def create_task(
    db: AsyncSession,
    board: Board,
    title: str,
    actor_id: Optional[str],
    column_id: Optional[str] = None,
    description: Optional[str] = None,
    priority: TaskPriority = TaskPriority.NONE,
    due_date: Optional[date] = None,
    effort_estimate: Optional[int] = None,
) -> Task:
    column = await _resolve_column(db, board.id, column_id)

    max_sort = await db.execute(select(func.max(Task.sort_order)).where(Task.column_id == column.id))
    task = Task(
        board_id=board.id,
        column_id=column.id,
        task_number=await _next_task_number(db, board.id),
        title=title,
        description=description,
        priority=priority,
        sort_order=(max_sort.scalar() or 0) + 1,
        due_date=due_date,
        effort_estimate=effort_estimate,
        created_by=actor_id,
    )
    db.add(task)
    await db.commit()

    await log_task_activity(db, task, "created", {"task_number": task.task_number}, actor_id)
    await db.refresh(task)
    return task


async def move_task(
    db: AsyncSession,
    task: Task,
    column_id: str,
    actor_id: Optional[str],
    sort_order: Optional[int] = None,
) -> Task:
    column = await _resolve_column(db, task.board_id, column_id)
    from_column_id = task.column_id
    if sort_order is not None:
        task.sort_order = sort_order
    if from_column_id == column.id:
        await db.commit()
        return task

    task.column_id = column.id
    task.updated_at = utcnow()
    await db.commit()

    await log_task_activity(
        db, task, "moved",
        {"from_column_id": from_column_id, "to_column_id": column.id},
        actor_id,
    )
    await db.refresh(task)
    return task


async def assign_users(db: AsyncSession, task: Task, user_ids: Iterable[str], actor_id: Optional[str]) -> List[str]:
    """Attach users not already assigned; returns the ids that were added"""
    added = []
    for user_id in dict.fromkeys(user_ids):
        user = await db.get(User, user_id)
        if user is None:
            raise DomainValidationError("user_ids", f"Unknown user {user_id}.")
        if await db.get(TaskAssignee, (task.id, user_id)) is not None:
            continue
        db.add(TaskAssignee(task_id=task.id, user_id=user_id, assigned_by=actor_id))
        added.append(user_id)
    await db.commit()

    if added:
        await log_task_activity(db, task, "assigned", {"added": added}, actor_id)
    return added


async def add_labels(db: AsyncSession, task: Task, label_ids: Iterable[str], actor_id: Optional[str]) -> List[str]:
    added = []
    for label_id in dict.fromkeys(label_ids):
        label = await db.get(Label, label_id)
        if label is None or label.board_id != task.board_id:
            raise DomainValidationError("label_ids", "Labels must belong to the task's board.")
        existing = await db.execute(
            select(task_labels.c.label_id).where(
                task_labels.c.task_id == task.id, task_labels.c.label_id == label_id,
            )
        )
        if existing.first() is not None:
            continue
        await db.execute(insert(task_labels).values(task_id=task.id, label_id=label_id))
        added.append(label_id)
    await db.commit()

    if added:
        await log_task_activity(db, task, "labels_added", {"added": added}, actor_id)
    return added


async def task_label_ids(db: AsyncSession, task_id: str) -> List[str]:
    result = await db.execute(select(task_labels.c.label_id).where(task_labels.c.task_id == task_id))
    return [row[0] for row in result.all()]


async def task_assignee_ids(db: AsyncSession, task_id: str) -> List[str]:
    result = await db.execute(
        select(TaskAssignee.user_id).where(TaskAssignee.task_id == task_id).order_by(TaskAssignee.assigned_at)
    )
    return list(result.scalars().all())


# ============================================================
# DEPENDENCIES
# ============================================================

async def _creates_cycle(db: AsyncSession, task_id: str, depends_on_id: str) -> bool:
    """BFS along depends_on edges from the prospective target; reaching task_id means a cycle"""
    visited = {task_id}
    queue = deque([depends_on_id])
    while queue:
        current = queue.popleft()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        result = await db.execute(
            select(TaskDependency.depends_on_task_id).where(TaskDependency.task_id == current)
        )
        queue.extend(result.scalars().all())
    return False


async def add_dependency(db: AsyncSession, task: Task, depends_on: Task, actor_id: Optional[str]) -> TaskDependency:
    if await _creates_cycle(db, task.id, depends_on.id):
        raise DomainValidationError(
            "depends_on_task_id", "Adding this dependency would create a circular reference."
        )

    existing = await db.execute(
        select(TaskDependency.id).where(
            TaskDependency.task_id == task.id,
            TaskDependency.depends_on_task_id == depends_on.id,
        )
    )
    if existing.first() is not None:
        raise DomainValidationError("depends_on_task_id", "This dependency already exists.")

    dependency = TaskDependency(task_id=task.id, depends_on_task_id=depends_on.id, created_by=actor_id)
    db.add(dependency)
    await db.commit()
    dependency_id = dependency.id

    await log_task_activity(
        db, task, "dependency_added",
        {"depends_on_task_id": depends_on.id, "depends_on_title": depends_on.title},
        actor_id,
    )
    return await db.get(TaskDependency, dependency_id)


async def remove_dependency(db: AsyncSession, task: Task, depends_on_task_id: str, actor_id: Optional[str]) -> bool:
    result = await db.execute(
        delete(TaskDependency).where(
            TaskDependency.task_id == task.id,
            TaskDependency.depends_on_task_id == depends_on_task_id,
        )
    )
    await db.commit()
    if not result.rowcount:
        return False

    await log_task_activity(db, task, "dependency_removed", {"depends_on_task_id": depends_on_task_id}, actor_id)
    return True


async def list_dependencies(db: AsyncSession, task_id: str) -> dict:
    depends_on = await db.execute(
        select(Task)
        .join(TaskDependency, TaskDependency.depends_on_task_id == Task.id)
        .where(TaskDependency.task_id == task_id)
        .order_by(Task.task_number)
    )
    blocking = await db.execute(
        select(Task)
        .join(TaskDependency, TaskDependency.task_id == Task.id)
        .where(TaskDependency.depends_on_task_id == task_id)
        .order_by(Task.task_number)
    )
    return {
        "depends_on": list(depends_on.scalars().all()),
        "blocking": list(blocking.scalars().all()),
    }


# ============================================================
# COLUMNS
# ============================================================

async def delete_column(db: AsyncSession, column: BoardColumn, move_to_column_id: Optional[str] = None) -> None:
    count = await db.execute(select(func.count(BoardColumn.id)).where(BoardColumn.board_id == column.board_id))
    if (count.scalar() or 0) <= 1:
        raise DomainValidationError("column", "Cannot delete the last column on a board.")

    if move_to_column_id:
        target = await db.get(BoardColumn, move_to_column_id)
        if target is None or target.board_id != column.board_id or target.id == column.id:
            raise DomainValidationError("move_to_column_id", "Target column must be another column on the same board.")
        moved = await db.execute(update(Task).where(Task.column_id == column.id).values(column_id=target.id))
        logger.info(f"Deleting column {column.id}: moved {moved.rowcount} task(s) to {target.id}")
    else:
        removed = await db.execute(delete(Task).where(Task.column_id == column.id))
        logger.info(f"Deleting column {column.id} with {removed.rowcount} task(s)")

    await db.delete(column)
    await db.commit()
