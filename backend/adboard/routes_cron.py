"""
Cron endpoints for external schedulers, guarded by the shared CRON_SECRET.
"""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import MetaIntegration, User
from .services.alert_engine import run_alert_sync
from .services.meta_sync import run_full_sync
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])

SessionDep = Depends(get_session)


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().cron_secret
    if not expected or not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/alerts", dependencies=[Depends(require_cron_secret)])
async def cron_alerts(session: AsyncSession = SessionDep):
    """Run the alert engine for every tenant."""
    user_ids = (await session.execute(select(User.id).order_by(User.id))).scalars().all()
    results = []
    for user_id in user_ids:
        try:
            result = await run_alert_sync(session, user_id)
            results.append({"user_id": user_id, "created": result.created, "skipped": result.skipped})
        except Exception as e:
            logger.error(f"[cron] Alert sync failed for user {user_id}: {e}")
            results.append({"user_id": user_id, "error": str(e)})
    return {"ok": True, "results": results}


@router.get("/sync", dependencies=[Depends(require_cron_secret)])
async def cron_sync(session: AsyncSession = SessionDep):
    """Run the full Meta sync for every connected tenant."""
    integrations = (await session.execute(select(MetaIntegration))).scalars().all()
    user_ids = [i.user_id for i in integrations if i.is_connected]
    results = []
    for user_id in user_ids:
        try:
            report = await run_full_sync(session, user_id)
            results.append({
                "user_id": user_id,
                "accounts": report.accounts,
                "campaigns": report.campaigns,
                "snapshots": report.snapshots,
                "errors": len(report.errors),
            })
        except Exception as e:
            logger.error(f"[cron] Meta sync failed for user {user_id}: {e}")
            results.append({"user_id": user_id, "error": str(e)})
    return {"ok": True, "results": results}
