# tests/test_gitlab_sync.py — Periodic merge request refresh
from datetime import timedelta

import pytest

from gitlab_sync import select_stale_links, sync_stale_links
from models import LinkType, TaskGitlabLink, utcnow
from tests.conftest import FakeGitlab, aware, make_task


def mr_body(iid, title, state="opened"):
    return {
        "iid": iid,
        "title": title,
        "state": state,
        "author": {"name": "Dana Dev"},
        "web_url": f"https://gitlab.example.com/acme/web/-/merge_requests/{iid}",
        "source_branch": f"pb-{iid}",
    }


async def add_mr_link(db, task, project, iid, last_synced_at=None, ref=None):
    link = TaskGitlabLink(
        task_id=task.id,
        gitlab_project_id=project.id,
        link_type=LinkType.MERGE_REQUEST,
        gitlab_iid=iid,
        gitlab_ref=ref or f"pb-{iid}",
        title=f"Old title {iid}",
        state="opened",
        last_synced_at=last_synced_at,
    )
    db.add(link)
    await db.commit()
    return link


@pytest.mark.asyncio
async def test_failed_fetch_is_counted_and_retried_next_run(db_session, board, gitlab_project):
    task = await make_task(db_session, board, "Login form")
    links = [await add_mr_link(db_session, task, gitlab_project, iid) for iid in (1, 2, 3)]
    fake = FakeGitlab()
    fake.add("GET", "/projects/42/merge_requests/1", json=mr_body(1, "Login form", state="merged"))
    fake.add("GET", "/projects/42/merge_requests/2", json=mr_body(2, "Session cookie"))
    fake.add("GET", "/projects/42/merge_requests/3", status=404, json={"message": "404 Not found"})
    fake.add("GET", "/projects/42/pipelines", json=[{"id": 5, "status": "success"}])

    report = await sync_stale_links(db_session, client_factory=fake.factory)

    assert report.to_dict() == {"synced": 2, "errors": 1}
    assert links[0].state == "merged"
    assert links[0].title == "Login form"
    assert links[0].author == "Dana Dev"
    assert links[0].pipeline_status == "success"
    assert links[0].last_synced_at is not None
    assert links[1].title == "Session cookie"
    # The failed row keeps its old timestamp so the next run retries it
    assert links[2].last_synced_at is None
    assert links[2].title == "Old title 3"


@pytest.mark.asyncio
async def test_batch_takes_stalest_first(db_session, board, gitlab_project):
    now = utcnow()
    task = await make_task(db_session, board, "Login form")
    never = await add_mr_link(db_session, task, gitlab_project, 1)
    old = await add_mr_link(db_session, task, gitlab_project, 2, last_synced_at=now - timedelta(hours=2))
    fresh = await add_mr_link(db_session, task, gitlab_project, 3, last_synced_at=now - timedelta(minutes=1))

    rows = await select_stale_links(db_session, 15, 10, now)
    assert [link.id for link, _, _ in rows] == [never.id, old.id]

    fake = FakeGitlab()
    for iid in (1, 2, 3):
        fake.add("GET", f"/projects/42/merge_requests/{iid}", json=mr_body(iid, f"MR {iid}"))

    first = await sync_stale_links(db_session, interval_minutes=15, batch_size=1, client_factory=fake.factory, now=now)
    assert first.synced == 1
    assert aware(never.last_synced_at) == now
    assert old.title == "Old title 2"

    second = await sync_stale_links(db_session, interval_minutes=15, batch_size=1, client_factory=fake.factory, now=now)
    assert second.synced == 1
    assert old.title == "MR 2"

    third = await sync_stale_links(db_session, interval_minutes=15, batch_size=1, client_factory=fake.factory, now=now)
    assert third.to_dict() == {"synced": 0, "errors": 0}
    assert fresh.title == "Old title 3"


@pytest.mark.asyncio
async def test_pipeline_lookup_failure_is_not_a_sync_error(db_session, board, gitlab_project):
    task = await make_task(db_session, board, "Login form")
    link = await add_mr_link(db_session, task, gitlab_project, 1)
    fake = FakeGitlab()
    fake.add("GET", "/projects/42/merge_requests/1", json=mr_body(1, "Login form"))
    fake.add("GET", "/projects/42/pipelines", status=500, json={"message": "pipeline service down"})

    report = await sync_stale_links(db_session, client_factory=fake.factory)

    assert report.to_dict() == {"synced": 1, "errors": 0}
    assert link.pipeline_status is None
    assert link.last_synced_at is not None


@pytest.mark.asyncio
async def test_inactive_connections_and_branch_links_are_skipped(db_session, board, gitlab_project, gitlab_connection):
    task = await make_task(db_session, board, "Login form")
    db_session.add(TaskGitlabLink(
        task_id=task.id, gitlab_project_id=gitlab_project.id, link_type=LinkType.BRANCH, gitlab_ref="pb-1",
    ))
    await add_mr_link(db_session, task, gitlab_project, 1)
    gitlab_connection.is_active = False
    await db_session.commit()
    fake = FakeGitlab()

    report = await sync_stale_links(db_session, client_factory=fake.factory)

    assert report.to_dict() == {"synced": 0, "errors": 0}
    assert fake.requests == []


@pytest.mark.asyncio
async def test_client_construction_failure_counts_every_link(db_session, board, gitlab_project):
    task = await make_task(db_session, board, "Login form")
    for iid in (1, 2):
        await add_mr_link(db_session, task, gitlab_project, iid)

    def broken_factory(connection):
        raise RuntimeError("token decryption failed")

    report = await sync_stale_links(db_session, client_factory=broken_factory)

    assert report.to_dict() == {"synced": 0, "errors": 2}


@pytest.mark.asyncio
async def test_malformed_merge_request_leaves_row_untouched(db_session, board, gitlab_project):
    task = await make_task(db_session, board, "Login form")
    link = await add_mr_link(db_session, task, gitlab_project, 1)
    fake = FakeGitlab()
    body = mr_body(1, "Renamed upstream", state="merged")
    body["author"] = "dana"
    fake.add("GET", "/projects/42/merge_requests/1", json=body)

    report = await sync_stale_links(db_session, client_factory=fake.factory)

    assert report.to_dict() == {"synced": 0, "errors": 1}
    assert link.title == "Old title 1"
    assert link.state == "opened"
    assert link.last_synced_at is None
