# routers/kanban.py — Boards, columns, labels and the task operations that drive automation
from datetime import datetime, date
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import task_actions
from auth import (
    get_current_user, require_team_member, require_team_admin, require_board_access, CurrentUser,
)
from database import get_db_session
from models import Board, BoardColumn, Label, Task, TaskActivity, TaskPriority

router = APIRouter(prefix="/api/v1/kanban", tags=["Kanban Board"])

DEFAULT_COLUMNS = [
    {"name": "Backlog", "color": "#64748b"},
    {"name": "To Do", "color": "#3b82f6"},
    {"name": "In Progress", "color": "#f59e0b", "wip_limit": 5},
    {"name": "In Review", "color": "#8b5cf6", "wip_limit": 3},
    {"name": "Done", "color": "#22c55e", "is_done": True},
]


# ============================================================
# SCHEMAS
# ============================================================

class BoardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    use_default_columns: bool = True


class ColumnOut(BaseModel):
    id: str
    name: str
    sort_order: int
    wip_limit: Optional[int] = None
    color: Optional[str] = None
    is_done_column: bool
    task_count: int = 0


class LabelOut(BaseModel):
    id: str
    name: str
    color: str


class BoardOut(BaseModel):
    id: str
    team_id: str
    name: str
    description: Optional[str] = None
    columns: List[ColumnOut] = []
    labels: List[LabelOut] = []
    created_at: str


class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    wip_limit: Optional[int] = None
    color: Optional[str] = None
    is_done_column: bool = False


class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = "#6366f1"


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.NONE
    column_id: Optional[str] = None
    due_date: Optional[date] = None
    effort_estimate: Optional[int] = Field(default=None, ge=0)
    assignee_ids: List[str] = Field(default_factory=list)
    label_ids: List[str] = Field(default_factory=list)


class TaskMove(BaseModel):
    column_id: str
    sort_order: Optional[int] = None


class AssigneesAdd(BaseModel):
    user_ids: List[str] = Field(..., min_length=1)


class LabelsAdd(BaseModel):
    label_ids: List[str] = Field(..., min_length=1)


class DependencyCreate(BaseModel):
    depends_on_task_id: str


class TaskOut(BaseModel):
    id: str
    board_id: str
    column_id: str
    task_number: int
    key: str
    title: str
    description: Optional[str] = None
    priority: str
    sort_order: int = 0
    due_date: Optional[str] = None
    effort_estimate: Optional[int] = None
    assignee_ids: List[str] = []
    label_ids: List[str] = []
    created_by: Optional[str] = None
    created_at: str
    updated_at: str


class TaskRefOut(BaseModel):
    id: str
    task_number: int
    title: str
    column_id: str


class DependenciesOut(BaseModel):
    depends_on: List[TaskRefOut] = []
    blocking: List[TaskRefOut] = []


class ActivityOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    changes: dict = {}
    created_at: str


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, (datetime, date)) else str(dt)


async def _board_out(board_id: str, db: AsyncSession) -> BoardOut:
    board = await db.get(Board, board_id)
    columns = (await db.execute(
        select(BoardColumn).where(BoardColumn.board_id == board_id).order_by(BoardColumn.sort_order)
    )).scalars().all()
    counts = dict((await db.execute(
        select(Task.column_id, func.count(Task.id)).where(Task.board_id == board_id).group_by(Task.column_id)
    )).all())
    labels = (await db.execute(
        select(Label).where(Label.board_id == board_id).order_by(Label.name)
    )).scalars().all()
    return BoardOut(
        id=board.id,
        team_id=board.team_id,
        name=board.name,
        description=board.description,
        columns=[ColumnOut(
            id=c.id, name=c.name, sort_order=c.sort_order, wip_limit=c.wip_limit,
            color=c.color, is_done_column=c.is_done_column or False,
            task_count=counts.get(c.id, 0),
        ) for c in columns],
        labels=[LabelOut(id=l.id, name=l.name, color=l.color) for l in labels],
        created_at=_ts(board.created_at),
    )


async def _task_out(task: Task, db: AsyncSession) -> TaskOut:
    return TaskOut(
        id=task.id,
        board_id=task.board_id,
        column_id=task.column_id,
        task_number=task.task_number,
        key=f"PB-{task.task_number}",
        title=task.title,
        description=task.description,
        priority=task.priority.value if isinstance(task.priority, TaskPriority) else task.priority,
        sort_order=task.sort_order or 0,
        due_date=_ts(task.due_date),
        effort_estimate=task.effort_estimate,
        assignee_ids=await task_actions.task_assignee_ids(db, task.id),
        label_ids=await task_actions.task_label_ids(db, task.id),
        created_by=task.created_by,
        created_at=_ts(task.created_at),
        updated_at=_ts(task.updated_at),
    )


async def get_accessible_task(task_id: str, user: CurrentUser, db: AsyncSession) -> Task:
    task = await db.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    await require_board_access(db, task.board_id, user)
    return task


# ============================================================
# BOARD ENDPOINTS
# ============================================================

@router.get("/teams/{team_id}/boards", response_model=List[BoardOut])
async def list_boards(
    team_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List boards of a team"""
    await require_team_member(db, team_id, user)
    result = await db.execute(
        select(Board.id)
        .where(Board.team_id == team_id, Board.is_archived.is_(False))
        .order_by(Board.created_at)
    )
    return [await _board_out(board_id, db) for board_id in result.scalars().all()]


@router.post("/teams/{team_id}/boards", response_model=BoardOut, status_code=201)
async def create_board(
    team_id: str,
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a board, with default columns unless asked otherwise"""
    await require_team_admin(db, team_id, user)
    board = Board(team_id=team_id, name=data.name, description=data.description, created_by=user.id)
    db.add(board)
    await db.flush()

    if data.use_default_columns:
        for position, col_def in enumerate(DEFAULT_COLUMNS):
            db.add(BoardColumn(
                board_id=board.id,
                name=col_def["name"],
                sort_order=position,
                color=col_def.get("color"),
                wip_limit=col_def.get("wip_limit"),
                is_done_column=col_def.get("is_done", False),
            ))
    await db.commit()
    return await _board_out(board.id, db)


@router.get("/boards/{board_id}", response_model=BoardOut)
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_board_access(db, board_id, user)
    return await _board_out(board_id, db)


# ============================================================
# COLUMN & LABEL ENDPOINTS
# ============================================================

@router.post("/boards/{board_id}/columns", response_model=ColumnOut, status_code=201)
async def create_column(
    board_id: str,
    data: ColumnCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Append a column to a board"""
    await require_board_access(db, board_id, user, admin=True)
    max_result = await db.execute(select(func.max(BoardColumn.sort_order)).where(BoardColumn.board_id == board_id))
    max_pos = max_result.scalar()

    col = BoardColumn(
        board_id=board_id,
        name=data.name,
        sort_order=0 if max_pos is None else max_pos + 1,
        wip_limit=data.wip_limit,
        color=data.color,
        is_done_column=data.is_done_column,
    )
    db.add(col)
    await db.commit()
    await db.refresh(col)
    return ColumnOut(
        id=col.id, name=col.name, sort_order=col.sort_order, wip_limit=col.wip_limit,
        color=col.color, is_done_column=col.is_done_column or False, task_count=0,
    )


@router.delete("/boards/{board_id}/columns/{column_id}")
async def delete_column(
    board_id: str,
    column_id: str,
    move_tasks_to: Optional[str] = Query(None, description="Column ID to move tasks to"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a column; its tasks move to `move_tasks_to` or are deleted with it"""
    await require_board_access(db, board_id, user, admin=True)
    col = await db.get(BoardColumn, column_id)
    if not col or col.board_id != board_id:
        raise HTTPException(status_code=404, detail="Column not found")

    await task_actions.delete_column(db, col, move_tasks_to)
    return {"status": "deleted", "column_id": column_id}


@router.post("/boards/{board_id}/labels", response_model=LabelOut, status_code=201)
async def create_label(
    board_id: str,
    data: LabelCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_board_access(db, board_id, user)
    label = Label(board_id=board_id, name=data.name, color=data.color)
    db.add(label)
    await db.commit()
    await db.refresh(label)
    return LabelOut(id=label.id, name=label.name, color=label.color)


# ============================================================
# TASK ENDPOINTS
# ============================================================

@router.get("/boards/{board_id}/tasks", response_model=List[TaskOut])
async def list_tasks(
    board_id: str,
    column_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_board_access(db, board_id, user)
    stmt = select(Task).where(Task.board_id == board_id).order_by(Task.sort_order, Task.task_number)
    if column_id:
        stmt = stmt.where(Task.column_id == column_id)
    tasks = (await db.execute(stmt)).scalars().all()
    return [await _task_out(t, db) for t in tasks]


@router.post("/boards/{board_id}/tasks", response_model=TaskOut, status_code=201)
async def create_task(
    board_id: str,
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task; runs task_created (and assignment/label) automation rules"""
    board = await require_board_access(db, board_id, user)
    task = await task_actions.create_task(
        db, board, data.title, user.id,
        column_id=data.column_id,
        description=data.description,
        priority=data.priority,
        due_date=data.due_date,
        effort_estimate=data.effort_estimate,
    )
    task_id = task.id
    if data.assignee_ids:
        await task_actions.assign_users(db, await db.get(Task, task_id), data.assignee_ids, user.id)
    if data.label_ids:
        await task_actions.add_labels(db, await db.get(Task, task_id), data.label_ids, user.id)

    task = await db.get(Task, task_id)
    await db.refresh(task)
    return await _task_out(task, db)


@router.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_accessible_task(task_id, user, db)
    return await _task_out(task, db)


@router.post("/tasks/{task_id}/move", response_model=TaskOut)
async def move_task(
    task_id: str,
    data: TaskMove,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a task to another column of its board"""
    task = await get_accessible_task(task_id, user, db)
    task = await task_actions.move_task(db, task, data.column_id, user.id, data.sort_order)
    return await _task_out(task, db)


@router.post("/tasks/{task_id}/assignees", response_model=TaskOut)
async def add_assignees(
    task_id: str,
    data: AssigneesAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_accessible_task(task_id, user, db)
    await task_actions.assign_users(db, task, data.user_ids, user.id)
    task = await db.get(Task, task_id)
    await db.refresh(task)
    return await _task_out(task, db)


@router.post("/tasks/{task_id}/labels", response_model=TaskOut)
async def add_labels(
    task_id: str,
    data: LabelsAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_accessible_task(task_id, user, db)
    await task_actions.add_labels(db, task, data.label_ids, user.id)
    task = await db.get(Task, task_id)
    await db.refresh(task)
    return await _task_out(task, db)


@router.get("/tasks/{task_id}/activity", response_model=List[ActivityOut])
async def list_activity(
    task_id: str,
    limit: int = Query(default=50, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_accessible_task(task_id, user, db)
    result = await db.execute(
        select(TaskActivity)
        .where(TaskActivity.task_id == task_id)
        .order_by(TaskActivity.created_at.desc())
        .limit(limit)
    )
    return [ActivityOut(
        id=a.id, user_id=a.user_id, action=a.action, changes=a.changes or {}, created_at=_ts(a.created_at),
    ) for a in result.scalars().all()]


# ============================================================
# DEPENDENCY ENDPOINTS
# ============================================================

def _ref(task: Task) -> TaskRefOut:
    return TaskRefOut(id=task.id, task_number=task.task_number, title=task.title, column_id=task.column_id)


@router.get("/tasks/{task_id}/dependencies", response_model=DependenciesOut)
async def list_dependencies(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_accessible_task(task_id, user, db)
    deps = await task_actions.list_dependencies(db, task_id)
    return DependenciesOut(
        depends_on=[_ref(t) for t in deps["depends_on"]],
        blocking=[_ref(t) for t in deps["blocking"]],
    )


@router.post("/tasks/{task_id}/dependencies", status_code=201)
async def add_dependency(
    task_id: str,
    data: DependencyCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add 'task depends on other task'; rejected with 422 when it would close a cycle"""
    task = await get_accessible_task(task_id, user, db)
    depends_on = await get_accessible_task(data.depends_on_task_id, user, db)
    dependency = await task_actions.add_dependency(db, task, depends_on, user.id)
    return {
        "id": dependency.id,
        "task_id": dependency.task_id,
        "depends_on_task_id": dependency.depends_on_task_id,
        "created_at": _ts(dependency.created_at),
    }


@router.delete("/tasks/{task_id}/dependencies/{depends_on_task_id}")
async def remove_dependency(
    task_id: str,
    depends_on_task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_accessible_task(task_id, user, db)
    if not await task_actions.remove_dependency(db, task, depends_on_task_id, user.id):
        raise HTTPException(status_code=404, detail="Dependency not found")
    return {"status": "deleted", "task_id": task_id, "depends_on_task_id": depends_on_task_id}
