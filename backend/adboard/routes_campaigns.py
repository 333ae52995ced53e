from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .crypto import CredentialError, get_stored_access_token
from .db import get_session
from .integrations.meta_api import MetaAdsClient, MetaApiError, get_meta_client
from .models import AdAccount, Campaign, MetaIntegration
from .routes_auth import require_user
from .routes_dashboard import PRESET_PATTERN
from .schemas import CampaignRead, CampaignRow, CampaignStatusUpdate
from .services.metrics_aggregator import MetricsQuery, list_campaigns

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])

SessionDep = Depends(get_session)
UserDep = Depends(require_user)


@router.get("", response_model=List[CampaignRow])
async def get_campaigns(
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    preset: Optional[str] = Query(default=None, pattern=PRESET_PATTERN),
    tz: Optional[str] = Query(default=None),
    client_id: Optional[int] = Query(default=None, alias="clientId"),
    ad_account_id: Optional[str] = Query(default=None, alias="adAccountId"),
    status: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=200),
    session: AsyncSession = SessionDep,
    user_id: int = UserDep,
):
    """Campaign registry merged with snapshot or live metrics for the window."""
    query = MetricsQuery(
        date_from=date_from,
        date_to=date_to,
        preset=preset,
        tz=tz,
        client_id=client_id,
        ad_account_id=ad_account_id,
        status=status,
        search=q,
    )
    try:
        return await list_campaigns(session, user_id, query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{campaign_id}", response_model=CampaignRead)
async def update_campaign_status(
    campaign_id: str,
    payload: CampaignStatusUpdate,
    session: AsyncSession = SessionDep,
    user_id: int = UserDep,
    meta: MetaAdsClient = Depends(get_meta_client),
):
    """Push ACTIVE/PAUSED to Meta, then persist it locally."""
    campaign = await session.scalar(
        select(Campaign)
        .join(AdAccount, Campaign.ad_account_id == AdAccount.id)
        .where(Campaign.id == campaign_id, AdAccount.user_id == user_id)
    )
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found")

    integration = await session.scalar(select(MetaIntegration).where(MetaIntegration.user_id == user_id))
    if integration is None or not integration.is_connected:
        raise HTTPException(status_code=400, detail="Meta integration not connected")
    try:
        token = get_stored_access_token(integration.access_token_encrypted)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        await meta.update_campaign_status(token, campaign_id, payload.status)
    except MetaApiError as e:
        logger.error(f"[campaigns] Status update failed for {campaign_id}: {e}")
        raise HTTPException(status_code=502, detail=e.message)

    campaign.status = payload.status
    campaign.effective_status = payload.status
    await session.commit()
    return campaign
