from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import AlertStatus
from .routes_auth import require_user
from .schemas import AlertConfigRead, AlertConfigWrite, AlertRead, AlertSyncResponse
from .services import alert_store
from .services.alert_engine import run_alert_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

SessionDep = Depends(get_session)
UserDep = Depends(require_user)


@router.post("/sync", response_model=AlertSyncResponse)
async def sync_alerts(session: AsyncSession = SessionDep, user_id: int = UserDep):
    """Regenerate the tenant's alerts from the campaign registry and snapshots."""
    result = await run_alert_sync(session, user_id)
    return AlertSyncResponse(created=result.created, skipped=result.skipped)


@router.get("", response_model=List[AlertRead])
async def list_alerts(
    status: Optional[AlertStatus] = Query(default=None),
    client_id: Optional[int] = Query(default=None, alias="clientId"),
    limit: int = Query(default=200, ge=1, le=1000),
    session: AsyncSession = SessionDep,
    user_id: int = UserDep,
):
    return await alert_store.list_alerts(
        session,
        user_id,
        status_filter=status.value if status else None,
        client_id=client_id,
        limit=limit,
    )


@router.get("/config", response_model=AlertConfigRead)
async def read_alert_config(session: AsyncSession = SessionDep, user_id: int = UserDep):
    return await alert_store.get_alert_config(session, user_id)


@router.post("/config", response_model=AlertConfigRead)
async def write_alert_config(
    payload: AlertConfigWrite,
    session: AsyncSession = SessionDep,
    user_id: int = UserDep,
):
    return await alert_store.upsert_alert_config(session, user_id, payload)


@router.post("/{alert_id}/read", response_model=AlertRead)
async def mark_alert_read(alert_id: int, session: AsyncSession = SessionDep, user_id: int = UserDep):
    return await alert_store.set_alert_status(session, user_id, alert_id, AlertStatus.read)


@router.post("/{alert_id}/resolve", response_model=AlertRead)
async def resolve_alert(alert_id: int, session: AsyncSession = SessionDep, user_id: int = UserDep):
    return await alert_store.set_alert_status(session, user_id, alert_id, AlertStatus.resolved)
