# gitlab_projects.py — GitLab connections, linked projects and task branch/MR creation
import re
import logging
import secrets
from typing import Callable, Dict, List, Optional, Any

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

import gitlab_config
from activity import log_task_activity
from exceptions import CleanupResult, DomainValidationError
from gitlab_client import GitlabClient
from models import (
    Board, GitlabConnection, GitlabProject, LinkType, Task, TaskGitlabLink, Team, utcnow,
)

logger = logging.getLogger("pulseboard.gitlab")

ClientFactory = Callable[[GitlabConnection], GitlabClient]

MAX_BRANCH_LENGTH = 100
MR_DESCRIPTION_EXCERPT = 500


def get_gitlab_client_factory() -> ClientFactory:
    """FastAPI dependency; tests override it to inject a fake transport"""
    return GitlabClient.for_connection


# ============================================================
# CONNECTIONS
# ============================================================

async def create_connection(db: AsyncSession, name: str, base_url: str, api_token: str) -> GitlabConnection:
    connection = GitlabConnection(
        name=name,
        base_url=base_url.rstrip("/"),
        api_token=api_token,
        webhook_secret=secrets.token_hex(16),
        is_active=True,
    )
    db.add(connection)
    await db.commit()
    await db.refresh(connection)
    return connection


async def update_connection(
    db: AsyncSession,
    connection: GitlabConnection,
    name: Optional[str] = None,
    base_url: Optional[str] = None,
    api_token: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> GitlabConnection:
    """Partial update; the token is only replaced when a new one is supplied"""
    if name is not None:
        connection.name = name
    if base_url is not None:
        connection.base_url = base_url.rstrip("/")
    if api_token:
        connection.api_token = api_token
    if is_active is not None:
        connection.is_active = is_active
    connection.updated_at = utcnow()
    await db.commit()
    await db.refresh(connection)
    return connection


async def check_connection(connection: GitlabConnection, client_factory: ClientFactory) -> str:
    async with client_factory(connection) as client:
        user = await client.test_connection()
    return f"Connected as {user.get('name', '')} ({user.get('username', '')})"


async def _remove_remote_hook(client: GitlabClient, project: GitlabProject, result: CleanupResult) -> None:
    if not project.webhook_id:
        return
    try:
        await client.delete_webhook(project.gitlab_project_id, project.webhook_id)
    except Exception as e:
        message = f"Failed to delete webhook {project.webhook_id} on project {project.path_with_namespace}: {e}"
        logger.warning(message)
        result.warnings.append(message)


async def _delete_projects_locally(db: AsyncSession, project_ids: List[str]) -> None:
    if not project_ids:
        return
    await db.execute(delete(TaskGitlabLink).where(TaskGitlabLink.gitlab_project_id.in_(project_ids)))
    await db.execute(delete(GitlabProject).where(GitlabProject.id.in_(project_ids)))


async def delete_connection(
    db: AsyncSession,
    connection: GitlabConnection,
    client_factory: ClientFactory,
) -> CleanupResult:
    """Best-effort remote hook removal for every linked project, then local deletion"""
    result = CleanupResult()
    projects = (await db.execute(
        select(GitlabProject).where(GitlabProject.gitlab_connection_id == connection.id)
    )).scalars().all()

    if any(p.webhook_id for p in projects):
        async with client_factory(connection) as client:
            for project in projects:
                await _remove_remote_hook(client, project, result)

    await _delete_projects_locally(db, [p.id for p in projects])
    await db.delete(connection)
    await db.commit()
    return result


# ============================================================
# PROJECTS
# ============================================================

async def list_team_projects(db: AsyncSession, team_id: str) -> List[GitlabProject]:
    result = await db.execute(
        select(GitlabProject).where(GitlabProject.team_id == team_id).order_by(GitlabProject.name)
    )
    return list(result.scalars().all())


async def search_remote_projects(
    db: AsyncSession,
    team: Team,
    connection: GitlabConnection,
    query: str,
    client_factory: ClientFactory,
) -> List[Dict[str, Any]]:
    """Remote projects matching the query that the team has not linked yet"""
    async with client_factory(connection) as client:
        remote = await client.search_projects(query)
    linked = set((await db.execute(
        select(GitlabProject.gitlab_project_id).where(GitlabProject.team_id == team.id)
    )).scalars().all())
    return [p for p in remote if p.get("id") not in linked]


async def link_project(
    db: AsyncSession,
    team: Team,
    connection: GitlabConnection,
    gitlab_project_id: int,
    client_factory: ClientFactory,
) -> GitlabProject:
    existing = await db.execute(
        select(GitlabProject.id).where(
            GitlabProject.team_id == team.id,
            GitlabProject.gitlab_project_id == gitlab_project_id,
        )
    )
    if existing.first() is not None:
        raise DomainValidationError("gitlab_project_id", "This GitLab project is already linked to the team.")

    async with client_factory(connection) as client:
        remote = await client.get_project(gitlab_project_id)
        hook = await client.register_webhook(
            gitlab_project_id, gitlab_config.webhook_url(connection.id), connection.webhook_secret,
        )

    project = GitlabProject(
        gitlab_connection_id=connection.id,
        team_id=team.id,
        gitlab_project_id=int(remote.get("id", gitlab_project_id)),
        name=remote.get("name", ""),
        path_with_namespace=remote.get("path_with_namespace", ""),
        default_branch=remote.get("default_branch") or "main",
        web_url=remote.get("web_url", ""),
        webhook_id=hook.get("id"),
        last_synced_at=utcnow(),
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)
    logger.info(f"Linked GitLab project {project.path_with_namespace} to team {team.id}")
    return project


async def unlink_project(
    db: AsyncSession,
    project: GitlabProject,
    client_factory: ClientFactory,
) -> CleanupResult:
    result = CleanupResult()
    if project.webhook_id:
        connection = await db.get(GitlabConnection, project.gitlab_connection_id)
        if connection is not None:
            async with client_factory(connection) as client:
                await _remove_remote_hook(client, project, result)

    await _delete_projects_locally(db, [project.id])
    await db.commit()
    return result


# ============================================================
# TASK BRANCHES & MERGE REQUESTS
# ============================================================

def build_branch_name(task: Task) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (task.title or "").lower()).strip("-")
    name = f"pb-{task.task_number}-{slug}" if slug else f"pb-{task.task_number}"
    return name[:MAX_BRANCH_LENGTH].rstrip("-")


async def _ensure_same_team(db: AsyncSession, task: Task, project: GitlabProject) -> None:
    board = await db.get(Board, task.board_id)
    if board is None or board.team_id != project.team_id:
        raise DomainValidationError("gitlab_project_id", "The GitLab project is not linked to this task's team.")


async def create_branch_for_task(
    db: AsyncSession,
    task: Task,
    project: GitlabProject,
    actor_id: Optional[str],
    client_factory: ClientFactory,
    branch_name: Optional[str] = None,
    ref: Optional[str] = None,
) -> TaskGitlabLink:
    await _ensure_same_team(db, task, project)
    connection = await db.get(GitlabConnection, project.gitlab_connection_id)
    name = branch_name or build_branch_name(task)
    ref = ref or project.default_branch

    async with client_factory(connection) as client:
        branch = await client.create_branch(project.gitlab_project_id, name, ref)

    link = TaskGitlabLink(
        task_id=task.id,
        gitlab_project_id=project.id,
        link_type=LinkType.BRANCH,
        gitlab_ref=branch.get("name", name),
        title=branch.get("name", name),
        url=branch.get("web_url") or f"{project.web_url.rstrip('/')}/-/tree/{name}",
        meta={"ref": ref},
        last_synced_at=utcnow(),
    )
    db.add(link)
    await db.commit()
    link_id = link.id

    await log_task_activity(db, task, "gitlab_branch_created", {"branch": link.gitlab_ref}, actor_id)
    return await db.get(TaskGitlabLink, link_id)


async def _existing_branch(db: AsyncSession, task: Task, project: GitlabProject) -> Optional[str]:
    result = await db.execute(
        select(TaskGitlabLink.gitlab_ref)
        .where(
            TaskGitlabLink.task_id == task.id,
            TaskGitlabLink.gitlab_project_id == project.id,
            TaskGitlabLink.link_type == LinkType.BRANCH,
            TaskGitlabLink.gitlab_ref.is_not(None),
        )
        .order_by(TaskGitlabLink.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_merge_request_for_task(
    db: AsyncSession,
    task: Task,
    project: GitlabProject,
    actor_id: Optional[str],
    client_factory: ClientFactory,
    source_branch: Optional[str] = None,
    target_branch: Optional[str] = None,
    title: Optional[str] = None,
) -> TaskGitlabLink:
    """Open an MR for the task, reusing its linked branch or creating one first"""
    await _ensure_same_team(db, task, project)
    task_id, task_number = task.id, task.task_number
    mr_title = title or f"PB-{task_number}: {task.title}"
    description = f"Task: PB-{task_number}"
    if task.description:
        description += "\n\n" + task.description[:MR_DESCRIPTION_EXCERPT]

    source = source_branch or await _existing_branch(db, task, project)
    if not source:
        branch_link = await create_branch_for_task(db, task, project, actor_id, client_factory)
        source = branch_link.gitlab_ref
    target = target_branch or project.default_branch

    connection = await db.get(GitlabConnection, project.gitlab_connection_id)
    async with client_factory(connection) as client:
        mr = await client.create_merge_request(project.gitlab_project_id, source, target, mr_title, description)

    link = TaskGitlabLink(
        task_id=task_id,
        gitlab_project_id=project.id,
        link_type=LinkType.MERGE_REQUEST,
        gitlab_iid=mr.get("iid"),
        gitlab_ref=source,
        title=mr.get("title", mr_title),
        state=mr.get("state", "opened"),
        url=mr.get("web_url"),
        author=(mr.get("author") or {}).get("name"),
        meta={"approvals": 0, "source_branch": source, "target_branch": target},
        last_synced_at=utcnow(),
    )
    db.add(link)
    await db.commit()
    link_id = link.id

    task = await db.get(Task, task_id)
    await log_task_activity(
        db, task, "gitlab_mr_created",
        {"merge_request_iid": mr.get("iid"), "source_branch": source, "target_branch": target},
        actor_id,
    )
    return await db.get(TaskGitlabLink, link_id)


async def delete_task_link(db: AsyncSession, link: TaskGitlabLink) -> None:
    await db.delete(link)
    await db.commit()
