# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["APP_URL"] = "https://pulseboard.test"
os.environ["GITLAB_RETRY_WAIT"] = "0"

import database
import task_actions
from models import (
    Base, User, UserRole, Team, TeamMember, TeamRole, Board, BoardColumn, Label,
    GitlabConnection, GitlabProject,
)
from auth import AuthService
from database import get_db_session
from gitlab_client import GitlabClient
from gitlab_projects import get_gitlab_client_factory
from main import app
from routers.websocket_router import manager, board_channel

WEBHOOK_SECRET = "hook-secret-for-tests"
REMOTE_PROJECT_ID = 42


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    # The app engine (health check, WebSocket, jobs) pools connections per event loop
    await database.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# USERS, TEAMS, BOARDS
# ============================================================

async def _make_user(db, email: str, display_name: str, role: UserRole) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name,
        password_hash=AuthService.hash_password("TestPassword123!"),
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Platform admin who also owns the test team"""
    return await _make_user(db_session, "admin@pulseboard.dev", "Admin User", UserRole.ADMIN)


@pytest_asyncio.fixture
async def test_user(db_session):
    """Regular team member"""
    return await _make_user(db_session, "member@pulseboard.dev", "Team Member", UserRole.MEMBER)


@pytest_asyncio.fixture
async def outsider(db_session):
    """User outside the test team"""
    return await _make_user(db_session, "outsider@pulseboard.dev", "Outsider", UserRole.MEMBER)


@pytest_asyncio.fixture
async def team(db_session, admin_user, test_user):
    team = Team(name="Platform", slug="platform")
    db_session.add(team)
    await db_session.flush()
    db_session.add(TeamMember(team_id=team.id, user_id=admin_user.id, role=TeamRole.OWNER))
    db_session.add(TeamMember(team_id=team.id, user_id=test_user.id, role=TeamRole.MEMBER))
    await db_session.commit()
    await db_session.refresh(team)
    return team


async def make_board(db, team, name: str = "Sprint Board", created_at=None):
    """Board with To Do / In Progress / Done columns; returns (board, columns)"""
    board = Board(team_id=team.id, name=name)
    if created_at is not None:
        board.created_at = created_at
    db.add(board)
    await db.flush()
    columns = [
        BoardColumn(board_id=board.id, name="To Do", sort_order=0),
        BoardColumn(board_id=board.id, name="In Progress", sort_order=1),
        BoardColumn(board_id=board.id, name="Done", sort_order=2, is_done_column=True),
    ]
    for column in columns:
        db.add(column)
    await db.commit()
    return board, columns


@pytest_asyncio.fixture
async def board_columns(db_session, team):
    return await make_board(db_session, team)


@pytest.fixture
def board(board_columns):
    return board_columns[0]


@pytest.fixture
def columns(board_columns):
    return board_columns[1]


@pytest_asyncio.fixture
async def label(db_session, board):
    label = Label(board_id=board.id, name="bug", color="#ef4444")
    db_session.add(label)
    await db_session.commit()
    await db_session.refresh(label)
    return label


async def make_task(db, board, title: str = "Task", **kwargs):
    """Create a task through the real service path (numbering, activity, triggers)"""
    return await task_actions.create_task(db, board, title, None, **kwargs)


# ============================================================
# GITLAB
# ============================================================

@pytest_asyncio.fixture
async def gitlab_connection(db_session):
    connection = GitlabConnection(
        name="gitlab.example.com",
        base_url="https://gitlab.example.com",
        api_token="glpat-test-token",
        webhook_secret=WEBHOOK_SECRET,
        is_active=True,
    )
    db_session.add(connection)
    await db_session.commit()
    await db_session.refresh(connection)
    return connection


@pytest_asyncio.fixture
async def gitlab_project(db_session, team, gitlab_connection):
    project = GitlabProject(
        gitlab_connection_id=gitlab_connection.id,
        team_id=team.id,
        gitlab_project_id=REMOTE_PROJECT_ID,
        name="web",
        path_with_namespace="acme/web",
        default_branch="main",
        web_url="https://gitlab.example.com/acme/web",
        webhook_id=7,
    )
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


class FakeGitlab:
    """Scripted GitLab API served through httpx.MockTransport.

    Routes map (METHOD, path below /api/v4) to a queue of outcomes; the last
    outcome repeats. An outcome is (status, json) or an exception to raise.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.transport = httpx.MockTransport(self._handle)

    def add(self, method: str, path: str, status: int = 200, json=None):
        self.routes.setdefault((method.upper(), path), []).append((status, json))
        return self

    def fail(self, method: str, path: str, exc: Exception):
        self.routes.setdefault((method.upper(), path), []).append(exc)
        return self

    def calls(self, method: str, path: str) -> list:
        return [r for r in self.requests if r.method == method.upper() and self._path(r) == path]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        path = request.url.path
        return path[len("/api/v4"):] if path.startswith("/api/v4") else path

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcomes = self.routes.get((request.method, self._path(request)))
        if not outcomes:
            return httpx.Response(404, json={"message": "404 Not Found"})
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def client(self, base_url: str = "https://gitlab.example.com", token: str = "glpat-test-token") -> GitlabClient:
        return GitlabClient(base_url, token, transport=self.transport, retry_wait=0)

    def factory(self, connection) -> GitlabClient:
        return GitlabClient.for_connection(connection, transport=self.transport, retry_wait=0)


@pytest.fixture
def gitlab_api():
    """Fake GitLab wired into the API's client factory dependency"""
    fake = FakeGitlab()
    app.dependency_overrides[get_gitlab_client_factory] = lambda: fake.factory
    yield fake
    app.dependency_overrides.pop(get_gitlab_client_factory, None)


# ============================================================
# BOARD EVENTS
# ============================================================

class RecordingSocket:
    def __init__(self):
        self.messages = []

    async def send_json(self, message: dict):
        self.messages.append(message)


@pytest.fixture
def board_events(board):
    """Every message published on the test board's channel"""
    listener_id = f"listener-{uuid.uuid4()}"
    socket = RecordingSocket()
    manager._connections[listener_id] = socket
    manager.subscribe(listener_id, board_channel(board.id))
    yield socket.messages
    manager.disconnect(listener_id)


def event_actions(messages: list) -> list:
    return [m["action"] for m in messages]


def aware(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored as UTC"""
    return dt if dt is None or dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
