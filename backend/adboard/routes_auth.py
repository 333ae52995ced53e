"""
Authentication routes.

Each agency user logs in with email and password; the bearer token maps back
to the user id that scopes every tenant operation.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import User
from .settings import get_settings

router = APIRouter(prefix="/api/auth", tags=["auth"])
security = HTTPBearer(auto_error=False)

TOKEN_EXPIRY_HOURS = 24


@dataclass
class TokenGrant:
    user_id: int
    expires_at: datetime


# In-memory token store; tokens do not survive a restart
_tokens: dict[str, TokenGrant] = {}


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str
    expires_at: str
    user_id: int


def hash_password(password: str) -> str:
    """Hash password with SHA256."""
    return hashlib.sha256(password.encode()).hexdigest()


def _generate_token() -> str:
    return secrets.token_urlsafe(32)


def _cleanup_expired_tokens():
    now = datetime.now(timezone.utc)
    expired = [t for t, grant in _tokens.items() if grant.expires_at < now]
    for t in expired:
        del _tokens[t]


def issue_token(user_id: int) -> tuple[str, TokenGrant]:
    _cleanup_expired_tokens()
    token = _generate_token()
    grant = TokenGrant(user_id=user_id, expires_at=datetime.now(timezone.utc) + timedelta(hours=TOKEN_EXPIRY_HOURS))
    _tokens[token] = grant
    return token, grant


def _password_matches(user: User, password: str) -> bool:
    if user.password_hash:
        return secrets.compare_digest(hash_password(password), user.password_hash)
    admin_password = get_settings().admin_password
    if not admin_password:
        # No password anywhere: dev mode
        return True
    return secrets.compare_digest(hash_password(password), hash_password(admin_password))


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, session: AsyncSession = Depends(get_session)):
    """Returns a bearer token valid for 24 hours."""
    user = await session.scalar(select(User).where(User.email == request.email.strip().lower()))
    if not user or not _password_matches(user, request.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token, grant = issue_token(user.id)
    return LoginResponse(token=token, expires_at=grant.expires_at.isoformat(), user_id=user.id)


@router.post("/logout")
async def logout(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Invalidate current token."""
    if credentials and credentials.credentials in _tokens:
        del _tokens[credentials.credentials]
    return {"status": "logged out"}


def _grant_for(credentials: Optional[HTTPAuthorizationCredentials]) -> TokenGrant:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    _cleanup_expired_tokens()
    grant = _tokens.get(credentials.credentials)
    if grant is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return grant


@router.get("/me")
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: AsyncSession = Depends(get_session),
):
    grant = _grant_for(credentials)
    user = await session.get(User, grant.user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {
        "authenticated": True,
        "user_id": user.id,
        "email": user.email,
        "name": user.name,
        "timezone": user.timezone,
        "expires_at": grant.expires_at.isoformat(),
    }


def require_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> int:
    """Dependency that requires authentication and yields the tenant's user id."""
    return _grant_for(credentials).user_id
