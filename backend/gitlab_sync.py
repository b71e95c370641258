# gitlab_sync.py — Poll GitLab for merge request links that webhooks may have missed
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import gitlab_config
from gitlab_client import GitlabClient
from models import GitlabConnection, GitlabProject, LinkType, TaskGitlabLink, utcnow

logger = logging.getLogger("pulseboard.gitlab.sync")

ClientFactory = Callable[[GitlabConnection], GitlabClient]


@dataclass
class SyncReport:
    synced: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {"synced": self.synced, "errors": self.errors}


async def select_stale_links(
    db: AsyncSession,
    interval_minutes: int,
    batch_size: int,
    now: datetime,
):
    """(link, project, connection) rows, stalest first, never-synced before all others"""
    cutoff = now - timedelta(minutes=interval_minutes)
    result = await db.execute(
        select(TaskGitlabLink, GitlabProject, GitlabConnection)
        .join(GitlabProject, GitlabProject.id == TaskGitlabLink.gitlab_project_id)
        .join(GitlabConnection, GitlabConnection.id == GitlabProject.gitlab_connection_id)
        .where(
            TaskGitlabLink.link_type == LinkType.MERGE_REQUEST,
            TaskGitlabLink.gitlab_iid.is_not(None),
            GitlabConnection.is_active.is_(True),
            (TaskGitlabLink.last_synced_at.is_(None)) | (TaskGitlabLink.last_synced_at < cutoff),
        )
        .order_by(
            TaskGitlabLink.last_synced_at.is_not(None),
            TaskGitlabLink.last_synced_at,
            TaskGitlabLink.id,
        )
        .limit(batch_size)
    )
    return result.all()


async def _sync_link(client: GitlabClient, link: TaskGitlabLink, project: GitlabProject, now: datetime) -> None:
    mr = await client.get_merge_request(project.gitlab_project_id, link.gitlab_iid)

    # Read the whole body before touching the row; a malformed field leaves it unchanged
    title = mr.get("title", link.title)
    state = mr.get("state", link.state)
    author = (mr.get("author") or {}).get("name", link.author)
    url = mr.get("web_url") or link.url
    ref = link.gitlab_ref or mr.get("source_branch")

    pipeline_status = link.pipeline_status
    if ref:
        try:
            pipeline = await client.get_pipeline_status(project.gitlab_project_id, ref)
            if pipeline.get("status"):
                pipeline_status = pipeline["status"]
        except Exception as e:
            logger.debug(f"Pipeline lookup skipped for link {link.id}: {e}")

    link.title = title
    link.state = state
    link.author = author
    link.url = url
    link.pipeline_status = pipeline_status
    link.last_synced_at = now


async def sync_stale_links(
    db: AsyncSession,
    *,
    interval_minutes: Optional[int] = None,
    batch_size: Optional[int] = None,
    client_factory: Optional[ClientFactory] = None,
    now: Optional[datetime] = None,
) -> SyncReport:
    """Refresh up to `batch_size` stale merge request links. Never raises; failures are counted.

    A row whose merge request fetch fails keeps its old ``last_synced_at`` so the
    next run picks it up again.
    """
    interval_minutes = interval_minutes if interval_minutes is not None else gitlab_config.sync_interval_minutes()
    batch_size = batch_size if batch_size is not None else gitlab_config.sync_batch_size()
    client_factory = client_factory or GitlabClient.for_connection
    now = now or utcnow()
    report = SyncReport()

    try:
        rows = await select_stale_links(db, interval_minutes, batch_size, now)
    except Exception as e:
        logger.error(f"GitLab sync could not load stale links: {e}", exc_info=True)
        report.errors += 1
        return report

    grouped = OrderedDict()
    for link, project, connection in rows:
        grouped.setdefault(connection.id, (connection, []))[1].append((link, project))

    for connection, items in grouped.values():
        try:
            client = client_factory(connection)
        except Exception as e:
            report.errors += len(items)
            logger.warning(f"GitLab sync could not build a client for connection {connection.id}: {e}")
            continue
        try:
            for link, project in items:
                try:
                    await _sync_link(client, link, project, now)
                    report.synced += 1
                except Exception as e:
                    report.errors += 1
                    logger.warning(
                        f"GitLab sync failed for link {link.id} "
                        f"(project {project.gitlab_project_id}, MR !{link.gitlab_iid}): {e}"
                    )
        finally:
            await client.close()

    try:
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"GitLab sync commit failed: {e}", exc_info=True)
        report.errors += report.synced
        report.synced = 0

    logger.info(f"GitLab sync complete: synced={report.synced} errors={report.errors}")
    return report
