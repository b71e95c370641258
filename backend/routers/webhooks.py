# routers/webhooks.py — Inbound GitLab webhooks
# Every non-auth outcome is acknowledged with 200 so GitLab does not retry-storm.
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import gitlab_config
from database import get_db_session
from gitlab_linking import dispatch_webhook_event
from models import GitlabConnection, GitlabProject

router = APIRouter(prefix=f"/{gitlab_config.webhook_prefix()}", tags=["Webhooks"])
logger = logging.getLogger("pulseboard.webhooks")


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _token_matches(expected: str, provided: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


@router.post("/{connection_id}")
async def receive_gitlab_webhook(
    connection_id: str,
    request: Request,
    x_gitlab_token: Optional[str] = Header(default=None),
    x_gitlab_event: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
):
    connection = await db.get(GitlabConnection, connection_id)
    if connection is None:
        return _message(404, "Unknown connection")
    if not _token_matches(connection.webhook_secret, x_gitlab_token):
        logger.warning(f"Rejected GitLab webhook for connection {connection_id}: invalid token")
        return _message(403, "Invalid webhook token")

    try:
        payload = await request.json()
    except ValueError:
        return _message(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        return _message(400, "Invalid JSON payload")

    project_info = payload.get("project") or {}
    if not isinstance(project_info, dict):
        return _message(400, "Invalid project in payload")
    remote_project_id = project_info.get("id") or payload.get("project_id")
    if remote_project_id is None:
        return _message(400, "No project ID in payload")
    try:
        remote_project_id = int(remote_project_id)
    except (TypeError, ValueError):
        return _message(400, "Invalid project ID in payload")

    result = await db.execute(
        select(GitlabProject)
        .where(
            GitlabProject.gitlab_connection_id == connection.id,
            GitlabProject.gitlab_project_id == remote_project_id,
        )
        .order_by(GitlabProject.created_at)
    )
    # One remote project may be linked by several teams
    project_ids = [p.id for p in result.scalars().all()]
    if not project_ids:
        logger.info(f"GitLab webhook for unlinked project {remote_project_id} on connection {connection_id}")
        return _message(200, "Project not linked")

    handled = False
    for project_id in project_ids:
        project = await db.get(GitlabProject, project_id)
        handled = await dispatch_webhook_event(db, project, x_gitlab_event, payload) or handled

    return _message(200, "OK" if handled else "Event ignored")
