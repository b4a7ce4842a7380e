# auth.py - Bearer-token authentication for FabTrack
# Tokens are issued by the identity service; this module only verifies them
# and resolves the acting user.
# - HS256 JWT with JTI
# - Role floor checks: staff < manager < admin

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from logging_system import get_current_context
from models import User, UserRole

logger = logging.getLogger("fabtrack.auth")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if len(JWT_SECRET_KEY) < 32:
    JWT_SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning("JWT_SECRET_KEY missing or shorter than 32 chars; using an ephemeral key")

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

bearer_scheme = HTTPBearer()

ROLE_RANK = {
    UserRole.STAFF: 1,
    UserRole.MANAGER: 2,
    UserRole.ADMIN: 3,
}


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    role: str
    is_active: bool

    @property
    def rank(self) -> int:
        return ROLE_RANK.get(UserRole(self.role), 0)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class AuthService:

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """Signed access token; used by tests and internal tooling."""
        issued_at = datetime.now(timezone.utc)
        claims = dict(data)
        claims["iat"] = issued_at
        claims["exp"] = issued_at + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
        claims["type"] = "access"
        claims["jti"] = str(uuid.uuid4())
        return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)

    @staticmethod
    def subject_of(token: str) -> str:
        """User id carried by a valid access token."""
        try:
            claims = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        except ExpiredSignatureError:
            raise _unauthorized("Token expired")
        except JWTError:
            raise _unauthorized("Invalid token")

        if claims.get("type") != "access":
            raise _unauthorized("Invalid token type")
        if not claims.get("sub"):
            raise _unauthorized("Invalid token")
        return claims["sub"]


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    user = await db.get(User, AuthService.subject_of(credentials.credentials))
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")

    # Later log records of this request carry the acting user
    context = get_current_context()
    if context is not None:
        context.user_id = user.id

    return CurrentUser(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        is_active=user.is_active,
    )


def require_min_role(min_role: UserRole):
    """Dependency factory: the user's role must rank at least ``min_role``."""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.rank < ROLE_RANK[min_role]:
            logger.warning(f"User {user.id} ({user.role}) denied: requires {min_role.value}")
            raise HTTPException(status_code=403, detail="Insufficient role privileges")
        return user
    return _check
