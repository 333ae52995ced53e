"""
Dashboard API routes: agency KPIs, spend timeline and ad account highlights.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .routes_auth import require_user
from .schemas import DashboardResponse
from .services.date_windows import PRESETS
from .services.metrics_aggregator import MetricsQuery, build_dashboard

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

PRESET_PATTERN = "^(" + "|".join(PRESETS) + ")$"


@router.get("", response_model=DashboardResponse)
async def get_dashboard(
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    preset: Optional[str] = Query(default=None, pattern=PRESET_PATTERN),
    days: Optional[int] = Query(default=None, ge=1, le=365),
    tz: Optional[str] = Query(default=None),
    client_id: Optional[int] = Query(default=None, alias="clientId"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(require_user),
):
    query = MetricsQuery(
        date_from=date_from,
        date_to=date_to,
        preset=preset,
        days=days,
        tz=tz,
        client_id=client_id,
    )
    try:
        return await build_dashboard(session, user_id, query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
