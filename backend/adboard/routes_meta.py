from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .crypto import CredentialError
from .db import get_session
from .integrations.meta_api import MetaAdsClient, MetaApiError, get_meta_client
from .routes_auth import require_user
from .schemas import MetaIntegrationRead, OAuthStartResponse, SyncNowResponse
from .services import meta_integration
from .services.meta_sync import run_full_sync
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["meta"])

SessionDep = Depends(get_session)
UserDep = Depends(require_user)
MetaDep = Depends(get_meta_client)


def _integrations_redirect(outcome: str) -> RedirectResponse:
    return RedirectResponse(f"{get_settings().integrations_page_url}?status={outcome}", status_code=302)


@router.post("/sync-now", response_model=SyncNowResponse)
async def sync_now(session: AsyncSession = SessionDep, user_id: int = UserDep, meta: MetaAdsClient = MetaDep):
    """Refresh ad accounts, campaigns and snapshots from Meta right away."""
    try:
        report = await run_full_sync(session, user_id, client=meta)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MetaApiError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return SyncNowResponse(
        accounts=report.accounts,
        campaigns=report.campaigns,
        snapshots=report.snapshots,
        errors=report.errors,
    )


@router.get("/meta/oauth/start", response_model=OAuthStartResponse)
async def oauth_start(user_id: int = UserDep, meta: MetaAdsClient = MetaDep):
    """Consent URL for the browser to open; the state ties the callback to this tenant."""
    return OAuthStartResponse(url=meta_integration.start_oauth(user_id, meta))


@router.get("/meta/oauth/callback")
async def oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    session: AsyncSession = SessionDep,
    meta: MetaAdsClient = MetaDep,
):
    user_id = meta_integration.consume_oauth_state(state)
    if not code or user_id is None:
        return _integrations_redirect("error")
    try:
        await meta_integration.complete_oauth(session, user_id, code, meta)
    except (MetaApiError, KeyError) as e:
        logger.error(f"[meta_integration] OAuth callback failed for user {user_id}: {e}")
        return _integrations_redirect("error")
    return _integrations_redirect("connected")


@router.get("/meta/integration", response_model=MetaIntegrationRead)
async def read_integration(session: AsyncSession = SessionDep, user_id: int = UserDep):
    integration = await meta_integration.get_integration(session, user_id)
    if not integration:
        return MetaIntegrationRead()
    return MetaIntegrationRead(
        status=integration.status,
        connected=integration.is_connected,
        meta_user_id=integration.meta_user_id,
        meta_user_name=integration.meta_user_name,
        token_expires_at=integration.token_expires_at,
        last_sync_at=integration.last_sync_at,
    )


@router.delete("/meta/integration")
async def delete_integration(session: AsyncSession = SessionDep, user_id: int = UserDep):
    await meta_integration.disconnect(session, user_id)
    return {"status": "DISCONNECTED"}
