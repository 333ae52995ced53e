"""
Meta sync jobs: refresh the ad account registry, the campaign registry and the
daily metric snapshots the dashboard and the alert engine read from.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adboard.crypto import get_stored_access_token
from adboard.integrations.meta_api import MetaAdsClient, get_meta_client
from adboard.models import (
    AdAccount,
    Campaign,
    ClientAdAccount,
    MetaIntegration,
    MetricSnapshot,
    MetricSource,
    ScopeType,
)
from adboard.services.classification import (
    budget_cents,
    compute_cpl,
    normalize_campaign_status,
    pick_primary_result,
    to_cents,
    to_int,
)
from adboard.settings import get_settings

logger = logging.getLogger(__name__)

ACTIVE_ACCOUNT_STATUSES = {1}
PAUSED_ACCOUNT_STATUSES = {2, 3, 7, 8, 9, 101, 201}


@dataclass
class SyncReport:
    accounts: int = 0
    campaigns: int = 0
    snapshots: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


def map_account_status(account_status: Any) -> str:
    code = to_int(account_status)
    if code in ACTIVE_ACCOUNT_STATUSES:
        return "ACTIVE"
    if code in PAUSED_ACCOUNT_STATUSES:
        return "PAUSED"
    return "UNKNOWN"


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        # Graph returns "2024-05-01T12:00:00+0000"
        return datetime.strptime(str(value), "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            return None


async def sync_ad_accounts(session: AsyncSession, user_id: int, token: str, client: MetaAdsClient) -> int:
    raw_accounts = await client.fetch_ad_accounts(token)
    synced = 0
    for item in raw_accounts:
        account_id = item.get("id")
        if not account_id:
            continue
        account = await session.get(AdAccount, account_id)
        if not account:
            account = AdAccount(id=account_id, name=item.get("name") or account_id)
        account.user_id = user_id
        account.name = item.get("name") or account.name
        account.currency = item.get("currency")
        account.timezone = item.get("timezone_name")
        account.status = map_account_status(item.get("account_status"))
        cap = to_cents(item.get("spend_cap")) if item.get("spend_cap") not in (None, "", "0") else None
        account.spend_cap = cap
        session.add(account)
        synced += 1
    await session.flush()
    logger.info(f"[meta_sync] {synced} ad accounts upserted")
    return synced


async def sync_campaigns(
    session: AsyncSession, user_id: int, token: str, client: MetaAdsClient, report: SyncReport | None = None
) -> int:
    account_ids = (await session.execute(select(AdAccount.id).where(AdAccount.user_id == user_id))).scalars().all()
    synced = 0
    for account_id in account_ids:
        try:
            raw_campaigns = await client.fetch_campaigns(token, account_id)
        except Exception as e:
            logger.error(f"[meta_sync] Campaign fetch failed for {account_id}: {e}")
            if report is not None:
                report.errors.append({"ad_account_id": account_id, "stage": "campaigns", "error": str(e)})
            continue
        for item in raw_campaigns:
            campaign_id = item.get("id")
            if not campaign_id:
                continue
            campaign = await session.get(Campaign, campaign_id)
            if not campaign:
                campaign = Campaign(id=campaign_id, ad_account_id=account_id, name=item.get("name") or campaign_id)
            campaign.ad_account_id = account_id
            campaign.name = item.get("name") or campaign.name
            campaign.objective = item.get("objective")
            campaign.status = normalize_campaign_status(item.get("status"))
            campaign.effective_status = item.get("effective_status")
            campaign.daily_budget = budget_cents(item.get("daily_budget"))
            campaign.lifetime_budget = budget_cents(item.get("lifetime_budget"))
            campaign.updated_time = _parse_time(item.get("updated_time"))
            session.add(campaign)
            synced += 1
    await session.flush()
    logger.info(f"[meta_sync] {synced} campaigns upserted across {len(account_ids)} ad accounts")
    return synced


def _snapshot_values(row: dict) -> dict[str, Any]:
    spend = to_cents(row.get("spend"))
    leads = pick_primary_result(row.get("actions"))
    return {
        "spend": spend,
        "impressions": to_int(row.get("impressions")),
        "clicks": to_int(row.get("clicks")),
        "leads": leads,
        "cpl": compute_cpl(spend, leads),
    }


async def _upsert_snapshots(
    session: AsyncSession,
    scope_type: ScopeType,
    rows: list[tuple[str, date, dict[str, Any]]],
    since: date,
) -> int:
    if not rows:
        return 0
    scope_ids = sorted({scope_id for scope_id, _, _ in rows})
    existing_q = await session.execute(
        select(MetricSnapshot).where(
            MetricSnapshot.scope_type == scope_type.value,
            MetricSnapshot.scope_id.in_(scope_ids),
            MetricSnapshot.date >= since,
        )
    )
    existing = {(snap.scope_id, snap.date): snap for snap in existing_q.scalars().all()}
    for scope_id, day, values in rows:
        snap = existing.get((scope_id, day))
        if snap is None:
            snap = MetricSnapshot(scope_type=scope_type.value, scope_id=scope_id, date=day)
            existing[(scope_id, day)] = snap
        for key, value in values.items():
            setattr(snap, key, value)
        snap.source = MetricSource.meta.value
        session.add(snap)
    return len(rows)


async def sync_snapshots(
    session: AsyncSession,
    user_id: int,
    token: str,
    client: MetaAdsClient,
    lookback_days: int | None = None,
    report: SyncReport | None = None,
    today: date | None = None,
) -> int:
    """Upsert AD_ACCOUNT and CAMPAIGN daily snapshots for the tenant's linked ad accounts."""
    lookback_days = lookback_days or get_settings().meta_sync_lookback_days
    today = today or datetime.now(timezone.utc).date()
    since = today - timedelta(days=lookback_days)
    since_s, until_s = since.isoformat(), today.isoformat()

    linked_q = await session.execute(
        select(ClientAdAccount.ad_account_id)
        .join(AdAccount, ClientAdAccount.ad_account_id == AdAccount.id)
        .where(AdAccount.user_id == user_id)
        .distinct()
    )
    account_ids = list(linked_q.scalars().all())
    written = 0

    for account_id in account_ids:
        try:
            account_rows = await client.fetch_all_insights(token, account_id, since_s, until_s)
            campaign_rows = await client.fetch_all_insights(token, account_id, since_s, until_s, level="campaign")
        except Exception as e:
            logger.error(f"[meta_sync] Insights fetch failed for {account_id}: {e}")
            if report is not None:
                report.errors.append({"ad_account_id": account_id, "stage": "snapshots", "error": str(e)})
            continue

        account_batch = []
        for row in account_rows:
            day = row.get("date_start")
            if day:
                account_batch.append((account_id, date.fromisoformat(day[:10]), _snapshot_values(row)))
        campaign_batch = []
        for row in campaign_rows:
            day = row.get("date_start")
            campaign_id = row.get("campaign_id")
            if day and campaign_id:
                campaign_batch.append((campaign_id, date.fromisoformat(day[:10]), _snapshot_values(row)))

        written += await _upsert_snapshots(session, ScopeType.ad_account, account_batch, since)
        written += await _upsert_snapshots(session, ScopeType.campaign, campaign_batch, since)
        await session.flush()

    logger.info(f"[meta_sync] {written} snapshots upserted for {len(account_ids)} linked ad accounts")
    return written


async def run_full_sync(
    session: AsyncSession,
    user_id: int,
    *,
    client: MetaAdsClient | None = None,
) -> SyncReport:
    integration = await session.scalar(select(MetaIntegration).where(MetaIntegration.user_id == user_id))
    if integration is None or not integration.is_connected:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Meta integration not connected")

    token = get_stored_access_token(integration.access_token_encrypted)
    client = client or get_meta_client()
    report = SyncReport()

    try:
        report.accounts = await sync_ad_accounts(session, user_id, token, client)
        report.campaigns = await sync_campaigns(session, user_id, token, client, report)
        report.snapshots = await sync_snapshots(session, user_id, token, client, report=report)
        integration.last_sync_at = datetime.now(timezone.utc)
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception(f"[meta_sync] Full sync failed for user {user_id}")
        raise

    logger.info(
        f"[meta_sync] user={user_id}: {report.accounts} accounts, {report.campaigns} campaigns, "
        f"{report.snapshots} snapshots, {len(report.errors)} errors"
    )
    return report
