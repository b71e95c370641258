# auth.py — Bearer JWT authentication and team-scoped access checks
# Login/SSO flows live outside this service; it only verifies tokens it is handed.

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, UserRole, Team, TeamMember, TeamRole, Board

logger = logging.getLogger("pulseboard.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

security = HTTPBearer()

TEAM_ADMIN_ROLES = {TeamRole.OWNER, TeamRole.ADMIN}


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    is_active: bool


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def decode_token_or_none(token: str) -> Optional[Dict[str, Any]]:
        """Non-raising variant for WebSocket handshakes"""
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != "access":
            return None
        return payload


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=user.role.value if isinstance(user.role, UserRole) else user.role,
        is_active=user.is_active,
    )


async def require_admin_role(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if UserRole(user.role) != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def get_team_membership(db: AsyncSession, team_id: str, user: CurrentUser) -> Optional[TeamMember]:
    result = await db.execute(
        select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user.id)
    )
    return result.scalar_one_or_none()


async def require_team_member(db: AsyncSession, team_id: str, user: CurrentUser) -> Team:
    """Resolve a team the user belongs to, or 404 (existence is not leaked to outsiders)"""
    team = await db.get(Team, team_id)
    if not team or not await get_team_membership(db, team_id, user):
        raise HTTPException(status_code=404, detail="Team not found")
    return team


async def require_team_admin(db: AsyncSession, team_id: str, user: CurrentUser) -> Team:
    team = await db.get(Team, team_id)
    membership = await get_team_membership(db, team_id, user) if team else None
    if not membership:
        raise HTTPException(status_code=404, detail="Team not found")
    if membership.role not in TEAM_ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Team admin access required")
    return team


async def require_board_access(db: AsyncSession, board_id: str, user: CurrentUser, admin: bool = False) -> Board:
    board = await db.get(Board, board_id)
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    if admin:
        await require_team_admin(db, board.team_id, user)
    else:
        membership = await get_team_membership(db, board.team_id, user)
        if not membership:
            raise HTTPException(status_code=404, detail="Board not found")
    return board
