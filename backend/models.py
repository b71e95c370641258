# models.py — Database models for PulseBoard
# - UUID string primary keys everywhere
# - Teams own boards; boards own columns, labels, tasks and automation rules
# - Per-board sequential task numbers ("PB-42") used as the GitLab correlation key
# - GitLab connections, linked projects and task <-> GitLab links

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, Integer, Table,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"
    MEMBER = "member"


class TeamRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class TaskPriority(str, PyEnum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class TriggerType(str, PyEnum):
    TASK_MOVED = "task_moved"
    TASK_CREATED = "task_created"
    TASK_ASSIGNED = "task_assigned"
    LABEL_ADDED = "label_added"
    DUE_DATE_REACHED = "due_date_reached"
    GITLAB_MR_MERGED = "gitlab_mr_merged"
    GITLAB_PIPELINE_STATUS = "gitlab_pipeline_status"


class ActionType(str, PyEnum):
    MOVE_TO_COLUMN = "move_to_column"
    ASSIGN_USER = "assign_user"
    ADD_LABEL = "add_label"
    UPDATE_FIELD = "update_field"


class LinkType(str, PyEnum):
    BRANCH = "branch"
    MERGE_REQUEST = "merge_request"
    ISSUE = "issue"


# ============================================================
# USERS & TEAMS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.MEMBER, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    boards = relationship("Board", back_populates="team")


class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(String, primary_key=True, default=new_uuid)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(TeamRole), default=TeamRole.MEMBER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_member"),
    )


# ============================================================
# KANBAN BOARD
# ============================================================

class Board(Base):
    """Kanban board owned by a team"""
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_archived = Column(Boolean, default=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    team = relationship("Team", back_populates="boards")
    columns = relationship("BoardColumn", back_populates="board", order_by="BoardColumn.sort_order")
    labels = relationship("Label", back_populates="board")


class BoardColumn(Base):
    __tablename__ = "board_columns"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    wip_limit = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_done_column = Column(Boolean, default=False)  # tasks here are considered complete
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="columns")

    __table_args__ = (
        Index("idx_col_board_order", "board_id", "sort_order"),
    )


class Label(Base):
    __tablename__ = "labels"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, default="#6366f1")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="labels")


task_labels = Table(
    "task_labels",
    Base.metadata,
    Column("task_id", String, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", String, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True),
)


class Task(Base):
    """Task card; task_number is sequential per board"""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    column_id = Column(String, ForeignKey("board_columns.id", ondelete="CASCADE"), nullable=False, index=True)
    task_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.NONE, nullable=False)
    sort_order = Column(Integer, default=0)
    due_date = Column(Date, nullable=True)
    effort_estimate = Column(Integer, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("board_id", "task_number", name="uq_task_board_number"),
        Index("idx_task_board_col", "board_id", "column_id"),
    )


class TaskAssignee(Base):
    """Assignment with who/when metadata"""
    __tablename__ = "task_assignees"

    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    assigned_by = Column(String, ForeignKey("users.id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=utcnow)


class TaskDependency(Base):
    """Directed edge: task depends on depends_on_task"""
    __tablename__ = "task_dependencies"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    depends_on_task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependency"),
    )


class TaskActivity(Base):
    """Activity trail for a task; user_id is NULL for system actions"""
    __tablename__ = "task_activities"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)  # "created", "moved", "assigned", "labels_added", ...
    changes = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_activity_task_time", "task_id", "created_at"),
    )


# ============================================================
# AUTOMATION
# ============================================================

class AutomationRule(Base):
    """Board-scoped trigger -> action rule. Configs are stored as open JSON documents."""
    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    trigger_type = Column(SQLEnum(TriggerType), nullable=False)
    trigger_config = Column(JSON, nullable=False, default=dict)
    action_type = Column(SQLEnum(ActionType), nullable=False)
    action_config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_rule_board_trigger", "board_id", "trigger_type", "is_active"),
    )


# ============================================================
# GITLAB INTEGRATION
# ============================================================

class GitlabConnection(Base):
    __tablename__ = "gitlab_connections"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    api_token = Column(String, nullable=False)
    webhook_secret = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class GitlabProject(Base):
    """A remote GitLab project linked to a team"""
    __tablename__ = "gitlab_projects"

    id = Column(String, primary_key=True, default=new_uuid)
    gitlab_connection_id = Column(String, ForeignKey("gitlab_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    gitlab_project_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    path_with_namespace = Column(String, nullable=False)
    default_branch = Column(String, nullable=False, default="main")
    web_url = Column(String, nullable=False)
    webhook_id = Column(Integer, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", "gitlab_project_id", name="uq_team_gitlab_project"),
        Index("idx_gitlab_project_remote", "gitlab_project_id"),
    )


class TaskGitlabLink(Base):
    """Task <-> branch / merge request / issue. Uniqueness is checked before insert, not enforced here."""
    __tablename__ = "task_gitlab_links"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    gitlab_project_id = Column(String, ForeignKey("gitlab_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    link_type = Column(SQLEnum(LinkType), nullable=False)
    gitlab_iid = Column(Integer, nullable=True)
    gitlab_ref = Column(String, nullable=True)
    title = Column(String, nullable=True)
    state = Column(String, nullable=True)
    url = Column(String, nullable=True)
    pipeline_status = Column(String, nullable=True)
    author = Column(String, nullable=True)
    meta = Column(JSON, default=dict)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_link_project_type_iid", "gitlab_project_id", "link_type", "gitlab_iid"),
        Index("idx_link_project_ref", "gitlab_project_id", "gitlab_ref"),
        Index("idx_link_sync", "link_type", "last_synced_at"),
    )
