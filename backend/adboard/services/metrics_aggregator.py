"""
Dashboard and campaign-list aggregation.

Stored snapshots are always computed first as the baseline. When the tenant
has a connected Meta integration, live insights are fetched concurrently per
ad account (dashboard) or per campaign (campaign list) and replace the
snapshot-derived numbers for every entity whose live fetch succeeded. Entities
whose live fetch failed keep their snapshot contribution. Nothing on the live
path is allowed to fail the request.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from adboard.crypto import get_stored_access_token
from adboard.integrations.meta_api import MetaAdsClient, get_meta_client
from adboard.models import (
    AdAccount,
    Campaign,
    Client,
    ClientAdAccount,
    ClientStatus,
    MetaIntegration,
    MetricSnapshot,
    ScopeType,
    User,
)
from adboard.schemas import CampaignRow, DashboardResponse, DateRangeRead, Highlight, Kpis, TimelinePoint
from adboard.services.classification import (
    budget_cents,
    cost_per_lead,
    normalize_campaign_status,
    pick_primary_result,
    response_rate,
    to_cents,
    to_int,
)
from adboard.services.date_windows import DateRange, month_to_date, resolve_range
from adboard.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsQuery:
    date_from: date | None = None
    date_to: date | None = None
    preset: str | None = None
    days: int | None = None
    tz: str | None = None
    client_id: int | None = None
    ad_account_id: str | None = None
    status: str | None = None
    search: str | None = None


@dataclass
class Totals:
    spend: int = 0
    leads: int = 0
    clicks: int = 0
    impressions: int = 0

    def add(self, spend: int, leads: int, clicks: int, impressions: int) -> None:
        self.spend += spend
        self.leads += leads
        self.clicks += clicks
        self.impressions += impressions

    def merge(self, other: "Totals") -> None:
        self.add(other.spend, other.leads, other.clicks, other.impressions)


@dataclass
class Contribution:
    """One scope's share of the dashboard over the requested window."""

    totals: Totals = field(default_factory=Totals)
    timeline: dict[date, int] = field(default_factory=dict)
    month_spend: int = 0
    last_updated: datetime | date | None = None
    live: bool = False


def _parse_day(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def contribution_from_snapshots(
    snapshots: Iterable[MetricSnapshot], window: DateRange, month: DateRange
) -> Contribution:
    contrib = Contribution()
    for snap in snapshots:
        if window.contains(snap.date):
            contrib.totals.add(snap.spend, snap.leads, snap.clicks, snap.impressions)
            contrib.timeline[snap.date] = contrib.timeline.get(snap.date, 0) + snap.spend
            if contrib.last_updated is None or snap.date > contrib.last_updated:
                contrib.last_updated = snap.date
        if month.contains(snap.date):
            contrib.month_spend += snap.spend
    return contrib


def contribution_from_insights(
    window_rows: Sequence[dict], month_rows: Sequence[dict], fetched_at: datetime
) -> Contribution:
    contrib = Contribution(live=True, last_updated=fetched_at)
    for row in window_rows:
        spend = to_cents(row.get("spend"))
        contrib.totals.add(
            spend,
            pick_primary_result(row.get("actions")),
            to_int(row.get("clicks")),
            to_int(row.get("impressions")),
        )
        day = _parse_day(row.get("date_start"))
        if day is not None:
            contrib.timeline[day] = contrib.timeline.get(day, 0) + spend
    contrib.month_spend = sum(to_cents(row.get("spend")) for row in month_rows)
    return contrib


async def _connected_token(session: AsyncSession, user_id: int) -> str | None:
    integration = await session.scalar(select(MetaIntegration).where(MetaIntegration.user_id == user_id))
    if integration is None or not integration.is_connected:
        return None
    return get_stored_access_token(integration.access_token_encrypted)


async def _tenant_timezone(session: AsyncSession, user_id: int, requested: str | None) -> str | None:
    if requested:
        return requested
    user = await session.get(User, user_id)
    return user.timezone if user else None


def _tenant_account_ids(user_id: int):
    return select(AdAccount.id).where(AdAccount.user_id == user_id)


async def _client_account_ids(session: AsyncSession, user_id: int, client_id: int | None) -> list[str] | None:
    if client_id is None:
        return None
    result = await session.execute(
        select(ClientAdAccount.ad_account_id)
        .join(Client, ClientAdAccount.client_id == Client.id)
        .where(ClientAdAccount.client_id == client_id, Client.user_id == user_id)
    )
    return [row[0] for row in result.all()]


def like_pattern(text: str) -> str:
    """Substring LIKE pattern matching `text` literally (backslash is the escape)."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _client_name(account: AdAccount) -> str:
    primary = account.primary_link()
    if primary is not None:
        return primary.client.name
    if account.client_links:
        return account.client_links[0].client.name
    return "-"


# ── Dashboard ────────────────────────────────────────────────

async def _fetch_account_live(
    client: MetaAdsClient,
    token: str,
    account_id: str,
    window: DateRange,
    month: DateRange,
    semaphore: asyncio.Semaphore,
) -> Contribution | None:
    async with semaphore:
        window_rows, month_rows = await asyncio.gather(
            client.fetch_all_insights(token, account_id, *window.as_params()),
            client.fetch_all_insights(token, account_id, *month.as_params()),
            return_exceptions=True,
        )
    for outcome in (window_rows, month_rows):
        if isinstance(outcome, BaseException):
            logger.warning(f"[dashboard] Live insights failed for {account_id}, using snapshots: {outcome}")
            return None
    return contribution_from_insights(window_rows, month_rows, datetime.now(timezone.utc))


async def _overlay_live_accounts(
    session: AsyncSession,
    user_id: int,
    accounts: Sequence[AdAccount],
    contributions: dict[str, Contribution],
    window: DateRange,
    month: DateRange,
    client: MetaAdsClient | None,
) -> bool:
    """Replace per-account contributions with live data; True if any account went live."""
    try:
        token = await _connected_token(session, user_id)
        if not token or not accounts:
            return False
        client = client or get_meta_client()
        semaphore = asyncio.Semaphore(max(1, get_settings().live_fetch_concurrency))
        results = await asyncio.gather(*[
            _fetch_account_live(client, token, account.id, window, month, semaphore)
            for account in accounts
        ])
    except Exception as e:
        logger.warning(f"[dashboard] Live enrichment unavailable for user {user_id}: {e}")
        return False

    went_live = False
    for account, live in zip(accounts, results):
        if live is not None:
            contributions[account.id] = live
            went_live = True
    return went_live


async def build_dashboard(
    session: AsyncSession,
    user_id: int,
    query: MetricsQuery,
    *,
    client: MetaAdsClient | None = None,
    now: datetime | None = None,
) -> DashboardResponse:
    tz = await _tenant_timezone(session, user_id, query.tz)
    window = resolve_range(query.date_from, query.date_to, preset=query.preset, days=query.days, tz_name=tz, now=now)
    month = month_to_date(tz, now)

    account_ids = await _client_account_ids(session, user_id, query.client_id)
    accounts_q = select(AdAccount).options(
        selectinload(AdAccount.client_links).selectinload(ClientAdAccount.client)
    ).where(AdAccount.user_id == user_id).order_by(AdAccount.name)
    snapshots_q = select(MetricSnapshot).where(
        MetricSnapshot.scope_type == ScopeType.ad_account.value,
        MetricSnapshot.scope_id.in_(_tenant_account_ids(user_id)),
        MetricSnapshot.date >= min(window.since, month.since),
        MetricSnapshot.date <= max(window.until, month.until),
    )
    if account_ids is not None:
        accounts_q = accounts_q.where(AdAccount.id.in_(account_ids))
        snapshots_q = snapshots_q.where(MetricSnapshot.scope_id.in_(account_ids))
    accounts = list((await session.execute(accounts_q)).scalars().all())
    snapshots = list((await session.execute(snapshots_q.order_by(MetricSnapshot.date))).scalars().all())

    by_scope: dict[str, list[MetricSnapshot]] = {}
    for snap in snapshots:
        by_scope.setdefault(snap.scope_id, []).append(snap)
    contributions = {
        scope_id: contribution_from_snapshots(rows, window, month) for scope_id, rows in by_scope.items()
    }

    went_live = await _overlay_live_accounts(session, user_id, accounts, contributions, window, month, client)

    totals = Totals()
    timeline: dict[date, int] = {}
    for contrib in contributions.values():
        totals.merge(contrib.totals)
        for day, value in contrib.timeline.items():
            timeline[day] = timeline.get(day, 0) + value

    highlights = []
    for account in accounts:
        contrib = contributions.get(account.id) or Contribution()
        highlights.append(Highlight(
            id=account.id,
            name=account.name,
            client=_client_name(account),
            status=account.status,
            month_spend=contrib.month_spend,
            spend_cap=int(account.spend_cap or 0),
            last_updated=contrib.last_updated or account.updated_at,
            live=contrib.live,
        ))

    if query.client_id is not None:
        active_clients = 1
    else:
        active_clients = await session.scalar(
            select(func.count(Client.id)).where(Client.user_id == user_id, Client.status == ClientStatus.active.value)
        ) or 0

    return DashboardResponse(
        range=DateRangeRead(since=window.since, until=window.until),
        kpis=Kpis(
            spend=totals.spend,
            leads=totals.leads,
            clicks=totals.clicks,
            impressions=totals.impressions,
            cpl=cost_per_lead(totals.spend, totals.leads),
            response_rate=response_rate(totals.leads, totals.clicks),
            active_clients=active_clients,
        ),
        timeline=[TimelinePoint(date=day, value=value) for day, value in sorted(timeline.items())],
        highlights=highlights,
        source="live" if went_live else "snapshot",
    )


# ── Campaign list ────────────────────────────────────────────

@dataclass
class LiveCampaign:
    details: dict | None = None
    adsets: list[dict] | None = None
    insights: list[dict] | None = None


def _sum_adset_budget(adsets: Sequence[dict] | None, key: str) -> int:
    return sum(budget_cents(adset.get(key)) or 0 for adset in adsets or [])


def merge_budgets(campaign: Campaign, live: LiveCampaign | None) -> tuple[int | None, int | None, int | None]:
    """(daily, lifetime, remaining): campaign-level live budget, then ad-set sum, then registry."""
    details = (live.details if live else None) or {}
    adsets = live.adsets if live else None

    def pick(key: str, stored: int | None) -> int | None:
        direct = budget_cents(details.get(key))
        if direct:
            return direct
        from_adsets = _sum_adset_budget(adsets, key)
        if from_adsets:
            return from_adsets
        return stored

    return (
        pick("daily_budget", campaign.daily_budget),
        pick("lifetime_budget", campaign.lifetime_budget),
        pick("budget_remaining", None),
    )


async def _fetch_campaign_live(
    client: MetaAdsClient,
    token: str,
    campaign_id: str,
    window: DateRange,
    semaphore: asyncio.Semaphore,
) -> LiveCampaign:
    async with semaphore:
        details, adsets, insights = await asyncio.gather(
            client.fetch_campaign_details(token, campaign_id),
            client.fetch_campaign_adsets(token, campaign_id),
            client.fetch_campaign_insights(token, campaign_id, *window.as_params(), increment=None),
            return_exceptions=True,
        )
    live = LiveCampaign()
    for name, value in (("details", details), ("adsets", adsets), ("insights", insights)):
        if isinstance(value, BaseException):
            logger.warning(f"[campaigns] Live {name} failed for {campaign_id}: {value}")
            continue
        setattr(live, name, value)
    return live


async def list_campaigns(
    session: AsyncSession,
    user_id: int,
    query: MetricsQuery,
    *,
    client: MetaAdsClient | None = None,
    now: datetime | None = None,
) -> list[CampaignRow]:
    tz = await _tenant_timezone(session, user_id, query.tz)
    window = resolve_range(query.date_from, query.date_to, preset=query.preset, days=query.days, tz_name=tz, now=now)

    stmt = (
        select(Campaign)
        .join(AdAccount, Campaign.ad_account_id == AdAccount.id)
        .where(AdAccount.user_id == user_id)
        .options(selectinload(Campaign.ad_account).selectinload(AdAccount.client_links))
        .order_by(Campaign.updated_at.desc())
    )
    account_ids = await _client_account_ids(session, user_id, query.client_id)
    if query.ad_account_id:
        stmt = stmt.where(Campaign.ad_account_id == query.ad_account_id)
    elif account_ids is not None:
        stmt = stmt.where(Campaign.ad_account_id.in_(account_ids))
    if query.search:
        pattern = like_pattern(query.search.strip())
        stmt = stmt.where(or_(Campaign.name.ilike(pattern, escape="\\"), Campaign.id.ilike(pattern, escape="\\")))
    campaigns = list((await session.execute(stmt)).scalars().all())
    if not campaigns:
        return []

    snapshots_q = await session.execute(
        select(MetricSnapshot).where(
            MetricSnapshot.scope_type == ScopeType.campaign.value,
            MetricSnapshot.scope_id.in_([c.id for c in campaigns]),
            MetricSnapshot.date >= window.since,
            MetricSnapshot.date <= window.until,
        )
    )
    baseline: dict[str, Totals] = {}
    for snap in snapshots_q.scalars().all():
        baseline.setdefault(snap.scope_id, Totals()).add(snap.spend, snap.leads, snap.clicks, snap.impressions)

    live_by_id: dict[str, LiveCampaign] = {}
    try:
        token = await _connected_token(session, user_id)
        if token:
            client = client or get_meta_client()
            semaphore = asyncio.Semaphore(max(1, get_settings().live_fetch_concurrency))
            results = await asyncio.gather(*[
                _fetch_campaign_live(client, token, c.id, window, semaphore) for c in campaigns
            ])
            live_by_id = {c.id: live for c, live in zip(campaigns, results)}
    except Exception as e:
        logger.warning(f"[campaigns] Live enrichment unavailable for user {user_id}: {e}")

    rows: list[CampaignRow] = []
    for campaign in campaigns:
        live = live_by_id.get(campaign.id)
        details = (live.details if live else None) or {}
        status = details.get("status") or campaign.status
        effective_status = details.get("effective_status") or campaign.effective_status
        daily, lifetime, remaining = merge_budgets(campaign, live)

        if live is not None and live.insights is not None:
            totals = Totals()
            for row in live.insights:
                totals.add(
                    to_cents(row.get("spend")),
                    pick_primary_result(row.get("actions")),
                    to_int(row.get("clicks")),
                    to_int(row.get("impressions")),
                )
            source = "live"
        else:
            totals = baseline.get(campaign.id, Totals())
            source = "snapshot"

        links = campaign.ad_account.client_links if campaign.ad_account else []
        primary = campaign.ad_account.primary_link() if campaign.ad_account else None
        rows.append(CampaignRow(
            id=campaign.id,
            name=campaign.name,
            objective=campaign.objective,
            ad_account_id=campaign.ad_account_id,
            ad_account_name=campaign.ad_account.name if campaign.ad_account else None,
            client_id=primary.client_id if primary else (links[0].client_id if links else None),
            status=normalize_campaign_status(status),
            effective_status=effective_status,
            daily_budget=daily,
            lifetime_budget=lifetime,
            budget_remaining=remaining,
            spend=totals.spend,
            leads=totals.leads,
            clicks=totals.clicks,
            impressions=totals.impressions,
            cpl=cost_per_lead(totals.spend, totals.leads),
            response_rate=response_rate(totals.leads, totals.clicks),
            source=source,
            updated_at=campaign.updated_at,
        ))

    if query.status:
        wanted = query.status.strip().upper()
        rows = [r for r in rows if r.status == wanted or (r.effective_status or "").upper() == wanted]
    return rows
