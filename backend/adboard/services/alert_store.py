from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from adboard.models import Alert, AlertConfig, AlertStatus
from adboard.schemas import AlertConfigRead, AlertConfigWrite, AlertRead
from adboard.services.alert_engine import load_alert_config

_ALERT_NAMES = (selectinload(Alert.client), selectinload(Alert.ad_account), selectinload(Alert.campaign))


def to_alert_read(alert: Alert) -> AlertRead:
    data = AlertRead.model_validate(alert)
    data.client_name = alert.client.name if alert.client else None
    data.ad_account_name = alert.ad_account.name if alert.ad_account else None
    data.campaign_name = alert.campaign.name if alert.campaign else None
    return data


async def list_alerts(
    session: AsyncSession,
    user_id: int,
    *,
    status_filter: str | None = None,
    client_id: int | None = None,
    limit: int = 200,
) -> list[AlertRead]:
    stmt = select(Alert).where(Alert.user_id == user_id).options(*_ALERT_NAMES)
    if status_filter:
        stmt = stmt.where(Alert.status == status_filter.upper())
    if client_id is not None:
        stmt = stmt.where(Alert.client_id == client_id)
    stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return [to_alert_read(alert) for alert in result.scalars().all()]


async def set_alert_status(session: AsyncSession, user_id: int, alert_id: int, new_status: AlertStatus) -> AlertRead:
    alert = await session.scalar(
        select(Alert).where(Alert.id == alert_id, Alert.user_id == user_id).options(*_ALERT_NAMES)
    )
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    alert.status = new_status.value
    await session.commit()
    return to_alert_read(alert)


async def get_alert_config(session: AsyncSession, user_id: int) -> AlertConfigRead:
    config = await load_alert_config(session, user_id)
    return AlertConfigRead(
        budget_low_threshold=config.budget_low_threshold,
        enabled=config.enabled,
        persisted=config.persisted,
    )


async def upsert_alert_config(session: AsyncSession, user_id: int, payload: AlertConfigWrite) -> AlertConfigRead:
    row = await session.scalar(select(AlertConfig).where(AlertConfig.user_id == user_id))
    if not row:
        row = AlertConfig(user_id=user_id)
    row.budget_low_threshold = payload.budget_low_threshold
    row.enabled = payload.enabled
    session.add(row)
    await session.commit()
    return AlertConfigRead(budget_low_threshold=row.budget_low_threshold, enabled=row.enabled, persisted=True)
