# routers/gitlab.py — GitLab connections (admin), team project links and task branch/MR links
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import gitlab_projects
from auth import (
    get_current_user, require_admin_role, require_team_member, require_team_admin, CurrentUser,
)
from database import get_db_session
from gitlab_client import GitlabApiError
from gitlab_projects import ClientFactory, get_gitlab_client_factory
from models import GitlabConnection, GitlabProject, LinkType, TaskGitlabLink
from routers.kanban import get_accessible_task

router = APIRouter(prefix="/api/v1/gitlab", tags=["GitLab"])


# ============================================================
# SCHEMAS
# ============================================================

class ConnectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    base_url: str = Field(..., min_length=1, pattern=r"^https?://")
    api_token: str = Field(..., min_length=1)


class ConnectionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    base_url: Optional[str] = Field(default=None, pattern=r"^https?://")
    api_token: Optional[str] = None
    is_active: Optional[bool] = None


class ConnectionOut(BaseModel):
    id: str
    name: str
    base_url: str
    is_active: bool
    project_count: int = 0
    created_at: Optional[str] = None


class ProjectLink(BaseModel):
    gitlab_connection_id: str
    gitlab_project_id: int


class ProjectOut(BaseModel):
    id: str
    gitlab_connection_id: str
    team_id: str
    gitlab_project_id: int
    name: str
    path_with_namespace: str
    default_branch: str
    web_url: str
    webhook_id: Optional[int] = None


class BranchCreate(BaseModel):
    gitlab_project_id: str  # local linked-project id
    branch_name: Optional[str] = Field(default=None, max_length=100)
    ref: Optional[str] = None


class MergeRequestCreate(BaseModel):
    gitlab_project_id: str  # local linked-project id
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=255)


class LinkOut(BaseModel):
    id: str
    task_id: str
    gitlab_project_id: str
    link_type: str
    gitlab_iid: Optional[int] = None
    gitlab_ref: Optional[str] = None
    title: Optional[str] = None
    state: Optional[str] = None
    url: Optional[str] = None
    pipeline_status: Optional[str] = None
    author: Optional[str] = None
    meta: Dict[str, Any] = {}
    last_synced_at: Optional[str] = None


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if isinstance(dt, datetime) else None


def _project_out(p: GitlabProject) -> ProjectOut:
    return ProjectOut(
        id=p.id, gitlab_connection_id=p.gitlab_connection_id, team_id=p.team_id,
        gitlab_project_id=p.gitlab_project_id, name=p.name, path_with_namespace=p.path_with_namespace,
        default_branch=p.default_branch, web_url=p.web_url, webhook_id=p.webhook_id,
    )


def _link_out(link: TaskGitlabLink) -> LinkOut:
    return LinkOut(
        id=link.id,
        task_id=link.task_id,
        gitlab_project_id=link.gitlab_project_id,
        link_type=LinkType(link.link_type).value,
        gitlab_iid=link.gitlab_iid,
        gitlab_ref=link.gitlab_ref,
        title=link.title,
        state=link.state,
        url=link.url,
        pipeline_status=link.pipeline_status,
        author=link.author,
        meta=link.meta or {},
        last_synced_at=_ts(link.last_synced_at),
    )


def _gitlab_error(e: GitlabApiError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.message)


async def _get_connection(connection_id: str, db: AsyncSession) -> GitlabConnection:
    connection = await db.get(GitlabConnection, connection_id)
    if not connection:
        raise HTTPException(status_code=404, detail="GitLab connection not found")
    return connection


async def _connection_out(connection: GitlabConnection, db: AsyncSession) -> ConnectionOut:
    projects = await db.execute(
        select(GitlabProject.id).where(GitlabProject.gitlab_connection_id == connection.id)
    )
    return ConnectionOut(
        id=connection.id, name=connection.name, base_url=connection.base_url,
        is_active=connection.is_active, project_count=len(projects.all()),
        created_at=_ts(connection.created_at),
    )


# ============================================================
# CONNECTIONS (platform admin)
# ============================================================

@router.get("/connections", response_model=List[ConnectionOut])
async def list_connections(
    user: CurrentUser = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(GitlabConnection).order_by(GitlabConnection.name))
    return [await _connection_out(c, db) for c in result.scalars().all()]


@router.post("/connections", response_model=ConnectionOut, status_code=201)
async def create_connection(
    data: ConnectionCreate,
    user: CurrentUser = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db_session),
):
    connection = await gitlab_projects.create_connection(db, data.name, data.base_url, data.api_token)
    return await _connection_out(connection, db)


@router.patch("/connections/{connection_id}", response_model=ConnectionOut)
async def update_connection(
    connection_id: str,
    data: ConnectionUpdate,
    user: CurrentUser = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db_session),
):
    connection = await _get_connection(connection_id, db)
    connection = await gitlab_projects.update_connection(
        db, connection,
        name=data.name, base_url=data.base_url, api_token=data.api_token, is_active=data.is_active,
    )
    return await _connection_out(connection, db)


@router.post("/connections/{connection_id}/test")
async def verify_connection(
    connection_id: str,
    user: CurrentUser = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    """Verify the stored token against GitLab"""
    connection = await _get_connection(connection_id, db)
    try:
        message = await gitlab_projects.check_connection(connection, client_factory)
    except GitlabApiError as e:
        raise _gitlab_error(e)
    return {"success": True, "message": message}


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    user: CurrentUser = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    """Delete the connection and every project linked through it"""
    connection = await _get_connection(connection_id, db)
    result = await gitlab_projects.delete_connection(db, connection, client_factory)
    return {"status": "deleted", "connection_id": connection_id, **result.to_dict()}


# ============================================================
# TEAM PROJECTS
# ============================================================

@router.get("/teams/{team_id}/projects", response_model=List[ProjectOut])
async def list_projects(
    team_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_team_member(db, team_id, user)
    return [_project_out(p) for p in await gitlab_projects.list_team_projects(db, team_id)]


@router.get("/teams/{team_id}/projects/search")
async def search_projects(
    team_id: str,
    connection_id: str,
    q: str = Query("", max_length=255),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    """Remote projects visible to the connection that the team has not linked yet"""
    team = await require_team_admin(db, team_id, user)
    connection = await _get_connection(connection_id, db)
    try:
        projects = await gitlab_projects.search_remote_projects(db, team, connection, q, client_factory)
    except GitlabApiError as e:
        raise _gitlab_error(e)
    return [
        {
            "id": p.get("id"),
            "name": p.get("name"),
            "path_with_namespace": p.get("path_with_namespace"),
            "web_url": p.get("web_url"),
            "default_branch": p.get("default_branch"),
        }
        for p in projects
    ]


@router.post("/teams/{team_id}/projects", response_model=ProjectOut, status_code=201)
async def link_project(
    team_id: str,
    data: ProjectLink,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    """Link a remote project to the team and register the PulseBoard webhook on it"""
    team = await require_team_admin(db, team_id, user)
    connection = await _get_connection(data.gitlab_connection_id, db)
    if not connection.is_active:
        raise HTTPException(status_code=422, detail="GitLab connection is disabled")
    try:
        project = await gitlab_projects.link_project(db, team, connection, data.gitlab_project_id, client_factory)
    except GitlabApiError as e:
        raise _gitlab_error(e)
    return _project_out(project)


@router.delete("/teams/{team_id}/projects/{project_id}")
async def unlink_project(
    team_id: str,
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    await require_team_admin(db, team_id, user)
    project = await db.get(GitlabProject, project_id)
    if not project or project.team_id != team_id:
        raise HTTPException(status_code=404, detail="GitLab project not found")
    result = await gitlab_projects.unlink_project(db, project, client_factory)
    return {"status": "deleted", "project_id": project_id, **result.to_dict()}


# ============================================================
# TASK LINKS
# ============================================================

async def _get_task_project(project_id: str, db: AsyncSession) -> GitlabProject:
    project = await db.get(GitlabProject, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="GitLab project not found")
    return project


@router.get("/tasks/{task_id}/links", response_model=List[LinkOut])
async def list_task_links(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_accessible_task(task_id, user, db)
    result = await db.execute(
        select(TaskGitlabLink).where(TaskGitlabLink.task_id == task_id).order_by(TaskGitlabLink.created_at)
    )
    return [_link_out(link) for link in result.scalars().all()]


@router.post("/tasks/{task_id}/branches", response_model=LinkOut, status_code=201)
async def create_branch(
    task_id: str,
    data: BranchCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    """Create `pb-<n>-<slug>` from the project's default branch and link it"""
    task = await get_accessible_task(task_id, user, db)
    project = await _get_task_project(data.gitlab_project_id, db)
    try:
        link = await gitlab_projects.create_branch_for_task(
            db, task, project, user.id, client_factory, branch_name=data.branch_name, ref=data.ref,
        )
    except GitlabApiError as e:
        raise _gitlab_error(e)
    return _link_out(link)


@router.post("/tasks/{task_id}/merge-requests", response_model=LinkOut, status_code=201)
async def create_merge_request(
    task_id: str,
    data: MergeRequestCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    client_factory: ClientFactory = Depends(get_gitlab_client_factory),
):
    task = await get_accessible_task(task_id, user, db)
    project = await _get_task_project(data.gitlab_project_id, db)
    try:
        link = await gitlab_projects.create_merge_request_for_task(
            db, task, project, user.id, client_factory,
            source_branch=data.source_branch, target_branch=data.target_branch, title=data.title,
        )
    except GitlabApiError as e:
        raise _gitlab_error(e)
    return _link_out(link)


@router.delete("/tasks/{task_id}/links/{link_id}")
async def delete_task_link(
    task_id: str,
    link_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_accessible_task(task_id, user, db)
    link = await db.get(TaskGitlabLink, link_id)
    if not link or link.task_id != task_id:
        raise HTTPException(status_code=404, detail="Link not found")
    await gitlab_projects.delete_task_link(db, link)
    return {"status": "deleted", "link_id": link_id}
