# tests/test_gitlab_projects.py — Connections, project linking and task branch/MR creation
import json

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from gitlab_projects import build_branch_name
from models import GitlabConnection, GitlabProject, LinkType, Task, TaskActivity, TaskGitlabLink, Team
from tests.conftest import WEBHOOK_SECRET, REMOTE_PROJECT_ID, get_auth_headers, make_task

REMOTE_PROJECT = {
    "id": REMOTE_PROJECT_ID,
    "name": "web",
    "path_with_namespace": "acme/web",
    "default_branch": "main",
    "web_url": "https://gitlab.example.com/acme/web",
}


async def fetch(db, stmt):
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalars().all()


def test_build_branch_name():
    assert build_branch_name(Task(task_number=3, title="Fix: Login/Logout flow!!")) == "pb-3-fix-login-logout-flow"
    assert build_branch_name(Task(task_number=8, title="???")) == "pb-8"
    long_name = build_branch_name(Task(task_number=12, title="word " * 60))
    assert len(long_name) <= 100
    assert long_name.startswith("pb-12-word-word")
    assert not long_name.endswith("-")


# ============================================================
# CONNECTIONS
# ============================================================

@pytest.mark.asyncio
async def test_connections_require_platform_admin(client: AsyncClient, test_user):
    resp = await client.get("/api/v1/gitlab/connections", headers=get_auth_headers(test_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_create_and_verify_connection(client: AsyncClient, db_session, admin_user, gitlab_api):
    headers = get_auth_headers(admin_user)
    resp = await client.post(
        "/api/v1/gitlab/connections",
        json={"name": "Company GitLab", "base_url": "https://gitlab.example.com/", "api_token": "glpat-abc"},
        headers=headers,
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["base_url"] == "https://gitlab.example.com"
    assert "api_token" not in data

    stored = (await fetch(db_session, select(GitlabConnection)))[0]
    assert len(stored.webhook_secret) == 32

    gitlab_api.add("GET", "/user", json={"name": "Deploy Bot", "username": "deploy-bot"})
    resp = await client.post(f"/api/v1/gitlab/connections/{data['id']}/test", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Connected as Deploy Bot (deploy-bot)"}
    assert gitlab_api.requests[0].headers["Authorization"] == "Bearer glpat-abc"


@pytest.mark.asyncio
async def test_connection_check_reports_gitlab_error(client: AsyncClient, admin_user, gitlab_connection, gitlab_api):
    gitlab_api.add("GET", "/user", status=401, json={"message": "401 Unauthorized"})

    resp = await client.post(
        f"/api/v1/gitlab/connections/{gitlab_connection.id}/test", headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "Failed to connect to GitLab: 401 Unauthorized"


@pytest.mark.asyncio
async def test_update_connection_keeps_token_when_blank(client: AsyncClient, db_session, admin_user, gitlab_connection):
    resp = await client.patch(
        f"/api/v1/gitlab/connections/{gitlab_connection.id}",
        json={"name": "Renamed", "api_token": "", "is_active": False},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False

    stored = (await fetch(db_session, select(GitlabConnection)))[0]
    assert stored.name == "Renamed"
    assert stored.api_token == "glpat-test-token"


@pytest.mark.asyncio
async def test_delete_connection_removes_projects(
    client: AsyncClient, db_session, admin_user, gitlab_connection, gitlab_project, gitlab_api,
):
    gitlab_api.add("DELETE", f"/projects/{REMOTE_PROJECT_ID}/hooks/7", status=204)

    resp = await client.delete(f"/api/v1/gitlab/connections/{gitlab_connection.id}", headers=get_auth_headers(admin_user))
    assert resp.status_code == 200
    assert resp.json()["partial"] is False
    assert await fetch(db_session, select(GitlabProject)) == []
    assert len(gitlab_api.calls("DELETE", f"/projects/{REMOTE_PROJECT_ID}/hooks/7")) == 1


# ============================================================
# PROJECTS
# ============================================================

@pytest.mark.asyncio
async def test_link_project_registers_webhook(client: AsyncClient, admin_user, team, gitlab_connection, gitlab_api):
    gitlab_api.add("GET", f"/projects/{REMOTE_PROJECT_ID}", json=REMOTE_PROJECT)
    gitlab_api.add("POST", f"/projects/{REMOTE_PROJECT_ID}/hooks", status=201, json={"id": 77})
    headers = get_auth_headers(admin_user)
    body = {"gitlab_connection_id": gitlab_connection.id, "gitlab_project_id": REMOTE_PROJECT_ID}

    resp = await client.post(f"/api/v1/gitlab/teams/{team.id}/projects", json=body, headers=headers)
    assert resp.status_code == 201
    project = resp.json()
    assert project["path_with_namespace"] == "acme/web"
    assert project["webhook_id"] == 77

    hook = json.loads(gitlab_api.calls("POST", f"/projects/{REMOTE_PROJECT_ID}/hooks")[0].content)
    assert hook["url"] == f"https://pulseboard.test/api/webhooks/gitlab/{gitlab_connection.id}"
    assert hook["token"] == WEBHOOK_SECRET

    again = await client.post(f"/api/v1/gitlab/teams/{team.id}/projects", json=body, headers=headers)
    assert again.status_code == 422
    assert again.json()["detail"][0]["loc"] == ["body", "gitlab_project_id"]

    listed = await client.get(f"/api/v1/gitlab/teams/{team.id}/projects", headers=headers)
    assert [p["id"] for p in listed.json()] == [project["id"]]


@pytest.mark.asyncio
async def test_member_cannot_link_project(client: AsyncClient, test_user, team, gitlab_connection, gitlab_api):
    resp = await client.post(
        f"/api/v1/gitlab/teams/{team.id}/projects",
        json={"gitlab_connection_id": gitlab_connection.id, "gitlab_project_id": REMOTE_PROJECT_ID},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 403
    assert gitlab_api.requests == []


@pytest.mark.asyncio
async def test_link_project_surfaces_gitlab_error(client: AsyncClient, admin_user, team, gitlab_connection, gitlab_api):
    gitlab_api.add("GET", "/projects/404", status=404, json={"message": "404 Project Not Found"})

    resp = await client.post(
        f"/api/v1/gitlab/teams/{team.id}/projects",
        json={"gitlab_connection_id": gitlab_connection.id, "gitlab_project_id": 404},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "Failed to get project: 404 Project Not Found"


@pytest.mark.asyncio
async def test_search_excludes_linked_projects(client: AsyncClient, admin_user, team, gitlab_connection, gitlab_project, gitlab_api):
    gitlab_api.add("GET", "/projects", json=[REMOTE_PROJECT, {"id": 43, "name": "api", "path_with_namespace": "acme/api"}])

    resp = await client.get(
        f"/api/v1/gitlab/teams/{team.id}/projects/search",
        params={"connection_id": gitlab_connection.id, "q": "acme"},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    assert [p["id"] for p in resp.json()] == [43]


@pytest.mark.asyncio
async def test_unlink_project_tolerates_hook_cleanup_failure(
    client: AsyncClient, db_session, admin_user, team, board, gitlab_project, gitlab_api,
):
    task = await make_task(db_session, board, "Login form")
    db_session.add(TaskGitlabLink(
        task_id=task.id, gitlab_project_id=gitlab_project.id, link_type=LinkType.BRANCH, gitlab_ref="pb-1",
    ))
    await db_session.commit()
    gitlab_api.add("DELETE", f"/projects/{REMOTE_PROJECT_ID}/hooks/7", status=500, json={"message": "oops"})

    resp = await client.delete(
        f"/api/v1/gitlab/teams/{team.id}/projects/{gitlab_project.id}", headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["deleted"] is True
    assert data["partial"] is True
    assert len(data["warnings"]) == 1
    assert await fetch(db_session, select(GitlabProject)) == []
    assert await fetch(db_session, select(TaskGitlabLink)) == []


# ============================================================
# TASK BRANCHES & MERGE REQUESTS
# ============================================================

@pytest.mark.asyncio
async def test_create_branch_for_task(client: AsyncClient, db_session, test_user, board, gitlab_project, gitlab_api):
    task = await make_task(db_session, board, "Login form")
    gitlab_api.add(
        "POST", f"/projects/{REMOTE_PROJECT_ID}/repository/branches", status=201,
        json={"name": "pb-1-login-form", "web_url": "https://gitlab.example.com/acme/web/-/tree/pb-1-login-form"},
    )

    resp = await client.post(
        f"/api/v1/gitlab/tasks/{task.id}/branches",
        json={"gitlab_project_id": gitlab_project.id},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 201
    link = resp.json()
    assert link["link_type"] == "branch"
    assert link["gitlab_ref"] == "pb-1-login-form"

    sent = json.loads(gitlab_api.requests[0].content)
    assert sent == {"branch": "pb-1-login-form", "ref": "main"}

    activity = await fetch(db_session, select(TaskActivity).where(TaskActivity.action == "gitlab_branch_created"))
    assert len(activity) == 1
    assert activity[0].user_id == test_user.id


@pytest.mark.asyncio
async def test_create_merge_request_creates_branch_first(
    client: AsyncClient, db_session, test_user, board, gitlab_project, gitlab_api,
):
    task = await make_task(db_session, board, "Login form", description="Email + password form")
    gitlab_api.add("POST", f"/projects/{REMOTE_PROJECT_ID}/repository/branches", status=201, json={"name": "pb-1-login-form"})
    gitlab_api.add(
        "POST", f"/projects/{REMOTE_PROJECT_ID}/merge_requests", status=201,
        json={
            "iid": 5,
            "title": "PB-1: Login form",
            "state": "opened",
            "web_url": "https://gitlab.example.com/acme/web/-/merge_requests/5",
            "author": {"name": "Deploy Bot"},
        },
    )

    resp = await client.post(
        f"/api/v1/gitlab/tasks/{task.id}/merge-requests",
        json={"gitlab_project_id": gitlab_project.id},
        headers=get_auth_headers(test_user),
    )
    assert resp.status_code == 201
    link = resp.json()
    assert link["link_type"] == "merge_request"
    assert link["gitlab_iid"] == 5
    assert link["meta"] == {"approvals": 0, "source_branch": "pb-1-login-form", "target_branch": "main"}

    sent = json.loads(gitlab_api.calls("POST", f"/projects/{REMOTE_PROJECT_ID}/merge_requests")[0].content)
    assert sent["title"] == "PB-1: Login form"
    assert sent["description"] == "Task: PB-1\n\nEmail + password form"
    assert sent["source_branch"] == "pb-1-login-form"

    links = (await client.get(f"/api/v1/gitlab/tasks/{task.id}/links", headers=get_auth_headers(test_user))).json()
    assert [l["link_type"] for l in links] == ["branch", "merge_request"]


@pytest.mark.asyncio
async def test_project_of_another_team_rejected(client: AsyncClient, db_session, admin_user, board, gitlab_connection, gitlab_api):
    other_team = Team(name="Other", slug="other")
    db_session.add(other_team)
    await db_session.flush()
    foreign = GitlabProject(
        gitlab_connection_id=gitlab_connection.id, team_id=other_team.id, gitlab_project_id=99,
        name="other", path_with_namespace="other/other", web_url="https://gitlab.example.com/other/other",
    )
    db_session.add(foreign)
    await db_session.commit()
    task = await make_task(db_session, board, "Login form")

    resp = await client.post(
        f"/api/v1/gitlab/tasks/{task.id}/branches",
        json={"gitlab_project_id": foreign.id},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 422
    assert gitlab_api.requests == []


@pytest.mark.asyncio
async def test_delete_task_link(client: AsyncClient, db_session, test_user, board, gitlab_project):
    task = await make_task(db_session, board, "Login form")
    link = TaskGitlabLink(task_id=task.id, gitlab_project_id=gitlab_project.id, link_type=LinkType.BRANCH, gitlab_ref="pb-1")
    db_session.add(link)
    await db_session.commit()
    headers = get_auth_headers(test_user)

    resp = await client.delete(f"/api/v1/gitlab/tasks/{task.id}/links/{link.id}", headers=headers)
    assert resp.status_code == 200
    resp = await client.delete(f"/api/v1/gitlab/tasks/{task.id}/links/{link.id}", headers=headers)
    assert resp.status_code == 404
