# routers/automation.py — Board automation rule management
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_board_access, CurrentUser
from automation_engine import parse_action_config, parse_trigger_config
from database import get_db_session
from exceptions import DomainValidationError
from models import AutomationRule, TriggerType, ActionType, utcnow

router = APIRouter(prefix="/api/v1/boards/{board_id}/automation-rules", tags=["Automation"])


# ============================================================
# SCHEMAS
# ============================================================

class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType
    action_config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    action_type: Optional[ActionType] = None
    action_config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class RuleOut(BaseModel):
    id: str
    board_id: str
    name: str
    is_active: bool
    trigger_type: str
    trigger_config: dict
    action_type: str
    action_config: dict
    created_at: str
    updated_at: str


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if isinstance(dt, datetime) else None


def _rule_out(rule: AutomationRule) -> RuleOut:
    return RuleOut(
        id=rule.id,
        board_id=rule.board_id,
        name=rule.name,
        is_active=rule.is_active,
        trigger_type=TriggerType(rule.trigger_type).value,
        trigger_config=rule.trigger_config or {},
        action_type=ActionType(rule.action_type).value,
        action_config=rule.action_config or {},
        created_at=_ts(rule.created_at),
        updated_at=_ts(rule.updated_at),
    )


def _validated_configs(trigger_type, trigger_config, action_type, action_config):
    """Parse both configs; store the normalised documents"""
    try:
        trigger = parse_trigger_config(trigger_type, trigger_config)
    except ValidationError as e:
        raise DomainValidationError("trigger_config", f"Invalid trigger configuration: {e.errors()[0]['msg']}")
    try:
        action = parse_action_config(action_type, action_config)
    except ValidationError as e:
        raise DomainValidationError("action_config", f"Invalid action configuration: {e.errors()[0]['msg']}")
    return (
        trigger.model_dump(mode="json", exclude_none=True),
        action.model_dump(mode="json", exclude_none=True),
    )


async def _get_rule(board_id: str, rule_id: str, db: AsyncSession) -> AutomationRule:
    rule = await db.get(AutomationRule, rule_id)
    if not rule or rule.board_id != board_id:
        raise HTTPException(status_code=404, detail="Automation rule not found")
    return rule


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=List[RuleOut])
async def list_rules(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Rules in evaluation order"""
    await require_board_access(db, board_id, user)
    result = await db.execute(
        select(AutomationRule)
        .where(AutomationRule.board_id == board_id)
        .order_by(AutomationRule.created_at, AutomationRule.id)
    )
    return [_rule_out(r) for r in result.scalars().all()]


@router.post("", response_model=RuleOut, status_code=201)
async def create_rule(
    board_id: str,
    data: RuleCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_board_access(db, board_id, user, admin=True)
    trigger_config, action_config = _validated_configs(
        data.trigger_type, data.trigger_config, data.action_type, data.action_config,
    )
    rule = AutomationRule(
        board_id=board_id,
        name=data.name,
        is_active=data.is_active,
        trigger_type=data.trigger_type,
        trigger_config=trigger_config,
        action_type=data.action_type,
        action_config=action_config,
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return _rule_out(rule)


@router.patch("/{rule_id}", response_model=RuleOut)
async def update_rule(
    board_id: str,
    rule_id: str,
    data: RuleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Partial update; configs are re-validated against the (possibly new) types"""
    await require_board_access(db, board_id, user, admin=True)
    rule = await _get_rule(board_id, rule_id, db)

    trigger_type = data.trigger_type or rule.trigger_type
    action_type = data.action_type or rule.action_type
    trigger_config = data.trigger_config if data.trigger_config is not None else rule.trigger_config
    action_config = data.action_config if data.action_config is not None else rule.action_config
    trigger_config, action_config = _validated_configs(trigger_type, trigger_config, action_type, action_config)

    if data.name is not None:
        rule.name = data.name
    if data.is_active is not None:
        rule.is_active = data.is_active
    rule.trigger_type = TriggerType(trigger_type)
    rule.trigger_config = trigger_config
    rule.action_type = ActionType(action_type)
    rule.action_config = action_config
    rule.updated_at = utcnow()

    await db.commit()
    await db.refresh(rule)
    return _rule_out(rule)


@router.delete("/{rule_id}")
async def delete_rule(
    board_id: str,
    rule_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_board_access(db, board_id, user, admin=True)
    rule = await _get_rule(board_id, rule_id, db)
    await db.delete(rule)
    await db.commit()
    return {"status": "deleted", "rule_id": rule_id}
