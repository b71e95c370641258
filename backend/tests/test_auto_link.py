# tests/test_auto_link.py — Task reference extraction and link reconciliation
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from gitlab_linking import auto_link_tasks, extract_task_numbers, find_team_task
from models import GitlabProject, LinkType, Task, TaskGitlabLink, Team
from tests.conftest import make_board


async def add_tasks(db, board, column, numbers):
    tasks = {}
    for n in numbers:
        task = Task(board_id=board.id, column_id=column.id, task_number=n, title=f"Task {n}")
        db.add(task)
        tasks[n] = task
    await db.commit()
    return tasks


async def all_links(db):
    result = await db.execute(select(TaskGitlabLink).order_by(TaskGitlabLink.created_at))
    return result.scalars().all()


def test_extract_task_numbers():
    assert extract_task_numbers("Fixes PB-12 and pb-7; see also PB-12") == [12, 7]
    assert extract_task_numbers("pb-3-login-form") == [3]
    assert extract_task_numbers("no references here") == []
    assert extract_task_numbers(None) == []


def test_pattern_is_read_from_environment(monkeypatch):
    monkeypatch.setenv("GITLAB_AUTO_LINK_PATTERN", r"TASK#(\d+)")
    assert extract_task_numbers("Closes task#5 and PB-6") == [5]


@pytest.mark.asyncio
async def test_auto_link_creates_one_link_per_reference(db_session, board, columns, gitlab_project):
    tasks = await add_tasks(db_session, board, columns[0], [7, 12])
    text = "Fixes PB-12 and PB-7"

    created = await auto_link_tasks(
        db_session, gitlab_project, text, LinkType.MERGE_REQUEST,
        iid=3, ref="feature/login", title=text, state="opened",
    )
    await db_session.commit()

    assert {link.task_id for link in created} == {tasks[7].id, tasks[12].id}
    assert all(link.gitlab_iid == 3 and link.state == "opened" for link in created)

    again = await auto_link_tasks(db_session, gitlab_project, text, LinkType.MERGE_REQUEST, iid=3, title=text)
    await db_session.commit()
    assert again == []
    assert len(await all_links(db_session)) == 2


@pytest.mark.asyncio
async def test_unknown_task_numbers_are_skipped(db_session, board, columns, gitlab_project):
    await add_tasks(db_session, board, columns[0], [1])

    created = await auto_link_tasks(db_session, gitlab_project, "PB-1 PB-404", LinkType.BRANCH, ref="pb-1-x")
    await db_session.commit()

    assert len(created) == 1


@pytest.mark.asyncio
async def test_branch_links_are_unique_per_ref(db_session, board, columns, gitlab_project):
    await add_tasks(db_session, board, columns[0], [4])

    first = await auto_link_tasks(db_session, gitlab_project, "pb-4-api", LinkType.BRANCH, ref="pb-4-api")
    second = await auto_link_tasks(db_session, gitlab_project, "pb-4-api", LinkType.BRANCH, ref="pb-4-api")
    other = await auto_link_tasks(db_session, gitlab_project, "pb-4-retry", LinkType.BRANCH, ref="pb-4-retry")
    await db_session.commit()

    assert (len(first), len(second), len(other)) == (1, 0, 1)


@pytest.mark.asyncio
async def test_collision_resolves_to_oldest_board(db_session, team, gitlab_project):
    older, older_columns = await make_board(db_session, team, "Older", created_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
    newer, newer_columns = await make_board(db_session, team, "Newer", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    newer_task = (await add_tasks(db_session, newer, newer_columns[0], [3]))[3]
    older_task = (await add_tasks(db_session, older, older_columns[0], [3]))[3]

    found = await find_team_task(db_session, team.id, 3)
    assert found.id == older_task.id
    assert found.id != newer_task.id


@pytest.mark.asyncio
async def test_tasks_of_other_teams_are_never_linked(db_session, board, columns, gitlab_connection):
    await add_tasks(db_session, board, columns[0], [9])
    other_team = Team(name="Other", slug="other")
    db_session.add(other_team)
    await db_session.flush()
    foreign_project = GitlabProject(
        gitlab_connection_id=gitlab_connection.id,
        team_id=other_team.id,
        gitlab_project_id=99,
        name="other",
        path_with_namespace="other/other",
        web_url="https://gitlab.example.com/other/other",
    )
    db_session.add(foreign_project)
    await db_session.commit()

    created = await auto_link_tasks(db_session, foreign_project, "PB-9", LinkType.MERGE_REQUEST, iid=1)
    assert created == []
