"""
Meta integration lifecycle: OAuth connect, status, disconnect.

The OAuth state issued by `start_oauth` is held in memory for ten minutes and
names the tenant the browser callback belongs to, since the provider redirect
carries no bearer token.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adboard.crypto import encrypt
from adboard.integrations.meta_api import MetaAdsClient
from adboard.models import IntegrationStatus, MetaIntegration
from adboard.services.classification import to_int
from adboard.settings import get_settings

logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)


@dataclass
class PendingOAuth:
    user_id: int
    expires_at: datetime


_pending: dict[str, PendingOAuth] = {}


def _cleanup_expired_states(now: datetime):
    expired = [s for s, pending in _pending.items() if pending.expires_at < now]
    for s in expired:
        del _pending[s]


def start_oauth(user_id: int, client: MetaAdsClient, now: datetime | None = None) -> str:
    """Register a state for the tenant and return the provider's consent URL."""
    if not get_settings().meta_app_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="META_APP_ID missing")
    now = now or datetime.now(timezone.utc)
    _cleanup_expired_states(now)
    state = secrets.token_urlsafe(24)
    _pending[state] = PendingOAuth(user_id=user_id, expires_at=now + OAUTH_STATE_TTL)
    return client.oauth_url(state)


def consume_oauth_state(state: str | None, now: datetime | None = None) -> int | None:
    """Pop a pending state; the tenant's user id, or None if unknown or expired."""
    if not state:
        return None
    now = now or datetime.now(timezone.utc)
    _cleanup_expired_states(now)
    pending = _pending.pop(state, None)
    return pending.user_id if pending else None


async def get_integration(session: AsyncSession, user_id: int) -> MetaIntegration | None:
    return await session.scalar(select(MetaIntegration).where(MetaIntegration.user_id == user_id))


async def complete_oauth(
    session: AsyncSession,
    user_id: int,
    code: str,
    client: MetaAdsClient,
    now: datetime | None = None,
) -> MetaIntegration:
    """Exchange the code for a long-lived token and store it encrypted."""
    now = now or datetime.now(timezone.utc)
    short_token = await client.exchange_code_for_token(code)
    long_token = await client.exchange_for_long_lived_token(short_token["access_token"])
    access_token = long_token["access_token"]
    meta_user = await client.fetch_me(access_token)

    integration = await get_integration(session, user_id)
    if not integration:
        integration = MetaIntegration(user_id=user_id)
    integration.status = IntegrationStatus.connected.value
    integration.access_token_encrypted = encrypt(access_token)
    expires_in = to_int(long_token.get("expires_in"))
    integration.token_expires_at = now + timedelta(seconds=expires_in) if expires_in else None
    integration.meta_user_id = meta_user.get("id")
    integration.meta_user_name = meta_user.get("name")
    session.add(integration)
    await session.commit()
    logger.info(f"[meta_integration] user={user_id} connected as Meta user {integration.meta_user_id}")
    return integration


async def disconnect(session: AsyncSession, user_id: int) -> None:
    integration = await get_integration(session, user_id)
    if not integration:
        return
    integration.status = IntegrationStatus.disconnected.value
    integration.access_token_encrypted = None
    integration.token_expires_at = None
    await session.commit()
    logger.info(f"[meta_integration] user={user_id} disconnected")
