# gitlab_linking.py — Task reference auto-linking and GitLab webhook event handling
"""
GitLab text (MR titles/descriptions, branch names) is scanned for task
references like ``PB-42``; every resolvable reference gets a
``TaskGitlabLink`` row unless an equivalent one already exists.

Webhook handlers reconcile links from merge request, pipeline and push
events, then publish board events and run automation triggers. All refresh
writes are plain overwrites, so replayed deliveries are harmless.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import gitlab_config
from activity import fire_triggers, log_task_activity
from models import Board, GitlabProject, LinkType, Task, TaskGitlabLink, TriggerType, utcnow
from routers.websocket_router import broadcast_board_change

logger = logging.getLogger("pulseboard.gitlab")

MERGE_REQUEST_HOOK = "Merge Request Hook"
PIPELINE_HOOK = "Pipeline Hook"
PUSH_HOOK = "Push Hook"

BRANCH_REF_PREFIX = "refs/heads/"
NULL_SHA = "0" * 40


def extract_task_numbers(text: Optional[str], pattern=None) -> List[int]:
    """Distinct task numbers referenced in text, in order of first appearance"""
    if not text:
        return []
    pattern = pattern or gitlab_config.auto_link_pattern()
    numbers: List[int] = []
    for match in pattern.finditer(text):
        try:
            number = int(match.group(1))
        except (IndexError, TypeError, ValueError):
            continue
        if number not in numbers:
            numbers.append(number)
    return numbers


async def find_team_task(db: AsyncSession, team_id: str, task_number: int) -> Optional[Task]:
    """Task with this number on any of the team's boards; oldest board wins on collisions"""
    result = await db.execute(
        select(Task)
        .join(Board, Board.id == Task.board_id)
        .where(Board.team_id == team_id, Task.task_number == task_number)
        .order_by(Board.created_at, Board.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _link_exists(
    db: AsyncSession,
    task_id: str,
    project_id: str,
    link_type: LinkType,
    iid: Optional[int],
    ref: Optional[str],
) -> bool:
    stmt = select(TaskGitlabLink.id).where(
        TaskGitlabLink.task_id == task_id,
        TaskGitlabLink.gitlab_project_id == project_id,
        TaskGitlabLink.link_type == link_type,
    )
    if iid is not None:
        stmt = stmt.where(TaskGitlabLink.gitlab_iid == iid)
    elif ref:
        stmt = stmt.where(TaskGitlabLink.gitlab_ref == ref)
    result = await db.execute(stmt.limit(1))
    return result.first() is not None


async def auto_link_tasks(
    db: AsyncSession,
    project: GitlabProject,
    text: Optional[str],
    link_type: LinkType,
    *,
    iid: Optional[int] = None,
    ref: Optional[str] = None,
    title: Optional[str] = None,
    state: Optional[str] = None,
    url: Optional[str] = None,
    author: Optional[str] = None,
    pipeline_status: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> List[TaskGitlabLink]:
    """Create links for task references in text. Returns only the new rows; existing ones are left alone.

    Flushes but does not commit.
    """
    created: List[TaskGitlabLink] = []
    for number in extract_task_numbers(text):
        task = await find_team_task(db, project.team_id, number)
        if task is None:
            continue
        if await _link_exists(db, task.id, project.id, link_type, iid, ref):
            continue

        link = TaskGitlabLink(
            task_id=task.id,
            gitlab_project_id=project.id,
            link_type=link_type,
            gitlab_iid=iid,
            gitlab_ref=ref,
            title=title,
            state=state,
            url=url,
            author=author,
            pipeline_status=pipeline_status,
            meta=dict(meta or {}),
            last_synced_at=utcnow(),
        )
        db.add(link)
        # Later references in the same text must see this row
        await db.flush()
        created.append(link)
        logger.info(f"Linked task PB-{number} to {link_type.value} in project {project.path_with_namespace}")
    return created


async def _task_boards(db: AsyncSession, task_ids: List[str]) -> Dict[str, str]:
    if not task_ids:
        return {}
    result = await db.execute(select(Task.id, Task.board_id).where(Task.id.in_(task_ids)))
    return {task_id: board_id for task_id, board_id in result.all()}


# ============================================================
# WEBHOOK EVENTS
# ============================================================

def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


async def handle_merge_request_event(db: AsyncSession, project: GitlabProject, payload: Dict[str, Any]) -> int:
    """Link and refresh merge request associations; returns how many links were touched"""
    attrs = _mapping(payload.get("object_attributes"))
    try:
        iid = int(attrs["iid"])
    except (KeyError, TypeError, ValueError):
        logger.info(f"Merge request event without a usable iid for project {project.gitlab_project_id}; ignored")
        return 0

    title = _text(attrs.get("title"))
    state = _text(attrs.get("state")) or None
    url = _text(attrs.get("url")) or None
    source_branch = _text(attrs.get("source_branch"))
    target_branch = _text(attrs.get("target_branch"))
    author = _text(_mapping(payload.get("user")).get("name")) or None
    branch_meta = {"source_branch": source_branch, "target_branch": target_branch}

    links_stmt = select(TaskGitlabLink).where(
        TaskGitlabLink.gitlab_project_id == project.id,
        TaskGitlabLink.link_type == LinkType.MERGE_REQUEST,
        TaskGitlabLink.gitlab_iid == iid,
    )
    result = await db.execute(links_stmt)
    previous_states = {link.id: link.state for link in result.scalars().all()}

    search_text = " ".join([title, _text(attrs.get("description")), source_branch])
    new_links = await auto_link_tasks(
        db, project, search_text, LinkType.MERGE_REQUEST,
        iid=iid, ref=source_branch or None, title=title, state=state, url=url,
        author=author, meta=branch_meta,
    )
    new_ids = {link.id for link in new_links}

    result = await db.execute(links_stmt.order_by(TaskGitlabLink.created_at))
    links = result.scalars().all()
    now = utcnow()
    events = []
    for link in links:
        link.title = title
        link.state = state
        link.url = url
        link.author = author
        if source_branch:
            link.gitlab_ref = source_branch
        link.meta = {**(link.meta or {}), **branch_meta}
        link.last_synced_at = now

        if state in ("merged", "closed") and previous_states.get(link.id) != state:
            action = f"gitlab_mr_{state}"
        elif link.id in new_ids:
            action = "gitlab_mr_created"
        else:
            action = "gitlab_mr_updated"
        events.append((link.task_id, action, {
            "task_id": link.task_id,
            "link_id": link.id,
            "merge_request_iid": iid,
            "title": title,
            "state": state,
            "url": url,
        }))
    await db.commit()

    boards = await _task_boards(db, [task_id for task_id, _, _ in events])
    for task_id, action, data in events:
        if task_id in boards:
            await broadcast_board_change(boards[task_id], action, data)

    for task_id, action, _ in events:
        if action != "gitlab_mr_merged":
            continue
        task = await db.get(Task, task_id)
        if task is not None:
            await log_task_activity(
                db, task, "gitlab_mr_merged",
                {"merge_request_iid": iid, "title": title, "source_branch": source_branch},
                actor_id=None, broadcast=False,
            )
    return len(events)


async def handle_pipeline_event(db: AsyncSession, project: GitlabProject, payload: Dict[str, Any]) -> int:
    """Overwrite pipeline_status on every link for (project, ref); returns the number of affected tasks"""
    attrs = _mapping(payload.get("object_attributes"))
    ref = _text(attrs.get("ref"))
    status = _text(attrs.get("status"))
    if not ref or not status:
        logger.info(f"Pipeline event without ref/status for project {project.gitlab_project_id}; ignored")
        return 0

    result = await db.execute(
        select(TaskGitlabLink)
        .where(TaskGitlabLink.gitlab_project_id == project.id, TaskGitlabLink.gitlab_ref == ref)
        .order_by(TaskGitlabLink.created_at)
    )
    links = result.scalars().all()
    now = utcnow()
    task_ids: List[str] = []
    for link in links:
        link.pipeline_status = status
        link.last_synced_at = now
        if link.task_id not in task_ids:
            task_ids.append(link.task_id)
    await db.commit()

    boards = await _task_boards(db, task_ids)
    for task_id in task_ids:
        if task_id in boards:
            await broadcast_board_change(boards[task_id], "gitlab_pipeline_updated", {
                "task_id": task_id,
                "pipeline_status": status,
                "ref": ref,
            })

    for task_id in task_ids:
        if task_id in boards:
            await fire_triggers(db, boards[task_id], TriggerType.GITLAB_PIPELINE_STATUS, {
                "task_id": task_id,
                "pipeline_status": status,
                "ref": ref,
            })
    return len(task_ids)


async def handle_push_event(db: AsyncSession, project: GitlabProject, payload: Dict[str, Any]) -> int:
    """Link tasks referenced by a pushed branch name; tag pushes and branch deletions are ignored"""
    ref = _text(payload.get("ref"))
    if not ref.startswith(BRANCH_REF_PREFIX):
        return 0
    branch = ref[len(BRANCH_REF_PREFIX):]
    if not branch or payload.get("after") == NULL_SHA:
        return 0

    new_links = await auto_link_tasks(
        db, project, branch, LinkType.BRANCH,
        ref=branch, title=branch,
        url=f"{project.web_url.rstrip('/')}/-/tree/{branch}",
        author=_text(payload.get("user_name")) or None,
    )
    events = [(link.task_id, {"task_id": link.task_id, "link_id": link.id, "ref": branch}) for link in new_links]
    await db.commit()

    boards = await _task_boards(db, [task_id for task_id, _ in events])
    for task_id, data in events:
        if task_id in boards:
            await broadcast_board_change(boards[task_id], "gitlab_branch_linked", data)
    return len(events)


EVENT_HANDLERS = {
    MERGE_REQUEST_HOOK: handle_merge_request_event,
    PIPELINE_HOOK: handle_pipeline_event,
    PUSH_HOOK: handle_push_event,
}


async def dispatch_webhook_event(
    db: AsyncSession,
    project: GitlabProject,
    event_kind: Optional[str],
    payload: Dict[str, Any],
) -> bool:
    """Route one event to its handler; False when the event kind is not handled"""
    handler = EVENT_HANDLERS.get(event_kind or "")
    if handler is None:
        logger.info(f"Unhandled GitLab event '{event_kind}' for project {project.gitlab_project_id}")
        return False
    await handler(db, project, payload)
    return True
