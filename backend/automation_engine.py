# automation_engine.py — Board automation rules (trigger -> action)
"""
Rules are stored with free-form JSON configs; on read each config is parsed
into the typed model registered for its trigger/action kind, so matching and
execution only ever see validated data.

Execution contract:
- only active rules of the requested trigger type on the board are evaluated,
  ordered by creation time (then id);
- each rule is isolated: a failure is logged with the rule id and the next
  rule still runs;
- actions mutate the task directly and never emit further triggers.

Each executed rule is committed on its own, so callers must commit their own
change before running the engine.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from sqlalchemy import select, insert
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    AutomationRule, BoardColumn, Label, Task, TaskAssignee, TaskPriority, User,
    TriggerType, ActionType, task_labels, utcnow,
)

logger = logging.getLogger("pulseboard.automation")

UPDATABLE_FIELDS = ("priority", "due_date", "effort_estimate")


def _blank_to_none(value):
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


def _constraint_matches(expected: Optional[str], actual: Any) -> bool:
    return expected is None or expected == actual


# ============================================================
# TRIGGER CONFIGS
# ============================================================

class TriggerConfig(BaseModel):
    """Base trigger: no constraints, matches every event of its type"""
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_unset(cls, value: Any) -> Any:
        return _blank_to_none(value)

    def matches(self, context: Dict[str, Any]) -> bool:
        return True


class UnconstrainedTrigger(TriggerConfig):
    pass


class TaskMovedTrigger(TriggerConfig):
    from_column_id: Optional[str] = None
    to_column_id: Optional[str] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        return (
            _constraint_matches(self.from_column_id, context.get("from_column_id"))
            and _constraint_matches(self.to_column_id, context.get("to_column_id"))
        )


class TaskAssignedTrigger(TriggerConfig):
    user_id: Optional[str] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        return _constraint_matches(self.user_id, context.get("user_id"))


class LabelAddedTrigger(TriggerConfig):
    label_id: Optional[str] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        return _constraint_matches(self.label_id, context.get("label_id"))


class PipelineStatusTrigger(TriggerConfig):
    status: Optional[str] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        return _constraint_matches(self.status, context.get("pipeline_status"))


TRIGGER_CONFIGS: Dict[TriggerType, Type[TriggerConfig]] = {
    TriggerType.TASK_MOVED: TaskMovedTrigger,
    TriggerType.TASK_CREATED: UnconstrainedTrigger,
    TriggerType.TASK_ASSIGNED: TaskAssignedTrigger,
    TriggerType.LABEL_ADDED: LabelAddedTrigger,
    TriggerType.DUE_DATE_REACHED: UnconstrainedTrigger,
    TriggerType.GITLAB_MR_MERGED: UnconstrainedTrigger,
    TriggerType.GITLAB_PIPELINE_STATUS: PipelineStatusTrigger,
}


# ============================================================
# ACTION CONFIGS
# ============================================================

class ActionConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    async def apply(self, db: AsyncSession, task: Task) -> bool:
        """Mutate the task; returns False when the action was a no-op"""
        raise NotImplementedError


class MoveToColumnAction(ActionConfig):
    column_id: str

    async def apply(self, db: AsyncSession, task: Task) -> bool:
        column = await db.get(BoardColumn, self.column_id)
        # Target must be on the task's own board
        if column is None or column.board_id != task.board_id:
            return False
        if task.column_id == column.id:
            return False
        task.column_id = column.id
        task.updated_at = utcnow()
        return True


class AssignUserAction(ActionConfig):
    user_id: str

    async def apply(self, db: AsyncSession, task: Task) -> bool:
        user = await db.get(User, self.user_id)
        if user is None or not user.is_active:
            return False
        existing = await db.get(TaskAssignee, (task.id, self.user_id))
        if existing is not None:
            return False
        db.add(TaskAssignee(task_id=task.id, user_id=self.user_id, assigned_by=None))
        return True


class AddLabelAction(ActionConfig):
    label_id: str

    async def apply(self, db: AsyncSession, task: Task) -> bool:
        label = await db.get(Label, self.label_id)
        if label is None or label.board_id != task.board_id:
            return False
        result = await db.execute(
            select(task_labels.c.label_id).where(
                task_labels.c.task_id == task.id,
                task_labels.c.label_id == self.label_id,
            )
        )
        if result.first() is not None:
            return False
        await db.execute(insert(task_labels).values(task_id=task.id, label_id=self.label_id))
        return True


class UpdateFieldAction(ActionConfig):
    field: str
    value: Union[TaskPriority, date, int, None] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_value(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        field_name = data.get("field")
        value = _blank_to_none(data.get("value"))
        if value is None and field_name == "priority":
            raise ValueError("priority cannot be cleared")
        if value is not None:
            if field_name == "priority":
                value = TaskPriority(value)
            elif field_name == "due_date" and isinstance(value, str):
                value = date.fromisoformat(value)
            elif field_name == "effort_estimate":
                value = int(value)
            elif field_name not in UPDATABLE_FIELDS:
                # Unknown fields are accepted and ignored at execution time
                value = None
        data["value"] = value
        return data

    async def apply(self, db: AsyncSession, task: Task) -> bool:
        if self.field not in UPDATABLE_FIELDS:
            return False
        setattr(task, self.field, self.value)
        task.updated_at = utcnow()
        return True


ACTION_CONFIGS: Dict[ActionType, Type[ActionConfig]] = {
    ActionType.MOVE_TO_COLUMN: MoveToColumnAction,
    ActionType.ASSIGN_USER: AssignUserAction,
    ActionType.ADD_LABEL: AddLabelAction,
    ActionType.UPDATE_FIELD: UpdateFieldAction,
}


def parse_trigger_config(trigger_type: Union[TriggerType, str], raw: Optional[dict]) -> TriggerConfig:
    """Raises ValueError / pydantic.ValidationError on unknown type or bad config"""
    model = TRIGGER_CONFIGS[TriggerType(trigger_type)]
    return model.model_validate(raw or {})


def parse_action_config(action_type: Union[ActionType, str], raw: Optional[dict]) -> ActionConfig:
    model = ACTION_CONFIGS[ActionType(action_type)]
    return model.model_validate(raw or {})


# ============================================================
# ENGINE
# ============================================================

@dataclass
class AutomationReport:
    evaluated: int = 0
    matched: int = 0
    executed: int = 0
    failed: int = 0


async def execute_automation_rules(
    db: AsyncSession,
    board_id: str,
    trigger_type: Union[TriggerType, str],
    context: Dict[str, Any],
) -> AutomationReport:
    trigger_type = TriggerType(trigger_type)
    report = AutomationReport()

    result = await db.execute(
        select(AutomationRule)
        .where(
            AutomationRule.board_id == board_id,
            AutomationRule.is_active.is_(True),
            AutomationRule.trigger_type == trigger_type,
        )
        .order_by(AutomationRule.created_at, AutomationRule.id)
    )
    # Plain snapshots: a failed rule rolls the session back and expires ORM state
    rules = [
        (r.id, r.trigger_config, r.action_type, r.action_config)
        for r in result.scalars().all()
    ]

    task_id = context.get("task_id")
    for rule_id, trigger_config, action_type, action_config in rules:
        report.evaluated += 1
        try:
            trigger = parse_trigger_config(trigger_type, trigger_config)
            if not trigger.matches(context):
                continue
            report.matched += 1

            action = parse_action_config(action_type, action_config)
            task = await db.get(Task, task_id) if task_id else None
            if task is None or task.board_id != board_id:
                continue

            if await action.apply(db, task):
                await db.commit()
                report.executed += 1
                logger.info(
                    f"Automation rule {rule_id} applied {ActionType(action_type).value} to task {task_id}"
                )
        except Exception as e:
            report.failed += 1
            await db.rollback()
            logger.warning(f"Automation rule {rule_id} failed: {e}", extra={"rule_id": rule_id})

    return report
