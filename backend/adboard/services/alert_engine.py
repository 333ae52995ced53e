"""
Alert rule engine.

Each run rebuilds the tenant's alert set from scratch:

  1. load config, integration, the tenant's campaigns (+ account + client
     links), their trailing CAMPAIGN snapshots and the tenant's stored alerts
     in one batch
  2. walk campaigns sequentially, troubled ones first, optionally refreshing
     status from the Meta API within a per-run call budget
  3. classify delivery and evaluate the independent rules
  4. replace the tenant's stored alerts in a single transaction

An alert's identity is (campaign, ad account, title, message). Identical
drafts inside a run collapse to the first one, and a draft matching an alert
from the previous run inherits that alert's status (NEW/READ/RESOLVED).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, NamedTuple, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from adboard.crypto import CredentialError, get_stored_access_token
from adboard.integrations.meta_api import MetaAdsClient, get_meta_client, is_rate_limit_error
from adboard.models import (
    AdAccount,
    Alert,
    AlertConfig,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    Campaign,
    MetaIntegration,
    MetricSnapshot,
    ScopeType,
)
from adboard.services.classification import (
    DeliveryState,
    campaign_priority,
    classify_delivery,
    issues_text,
)
from adboard.services.date_windows import as_utc
from adboard.settings import get_settings

logger = logging.getLogger(__name__)

SPIKE_FACTOR = 2
SPIKE_MIN_SPEND = 2000
DROP_FACTOR = 0.3
DROP_MIN_AVERAGE = 2000
TRAILING_DAYS = 7


# ── Config ───────────────────────────────────────────────────

@dataclass(frozen=True)
class EffectiveAlertConfig:
    budget_low_threshold: int
    enabled: bool
    persisted: bool


async def load_alert_config(session: AsyncSession, user_id: int) -> EffectiveAlertConfig:
    """Return the tenant's alert config.

    A missing row is a valid state, not an error: it yields the default
    threshold (DEFAULT_BUDGET_LOW_THRESHOLD, 1000 cents) with alerts enabled.
    """
    row = await session.scalar(select(AlertConfig).where(AlertConfig.user_id == user_id))
    if row is None:
        return EffectiveAlertConfig(
            budget_low_threshold=get_settings().default_budget_low_threshold,
            enabled=True,
            persisted=False,
        )
    return EffectiveAlertConfig(
        budget_low_threshold=row.budget_low_threshold,
        enabled=row.enabled,
        persisted=True,
    )


# ── Drafts, identity, run state ──────────────────────────────

class AlertKey(NamedTuple):
    campaign_id: str | None
    ad_account_id: str | None
    title: str
    message: str

    @classmethod
    def of(cls, alert: Any) -> "AlertKey":
        return cls(alert.campaign_id, alert.ad_account_id, alert.title, alert.message)


@dataclass
class AlertDraft:
    rule: AlertRule
    severity: AlertSeverity
    title: str
    message: str
    status: str = AlertStatus.new.value
    client_id: int | None = None
    ad_account_id: str | None = None
    campaign_id: str | None = None
    payload: dict[str, Any] | None = None

    @property
    def key(self) -> AlertKey:
        return AlertKey.of(self)

    def as_row(self, user_id: int) -> dict[str, Any]:
        return {
            "user_id": user_id,
            "rule": self.rule.value,
            "severity": self.severity.value,
            "status": self.status,
            "client_id": self.client_id,
            "ad_account_id": self.ad_account_id,
            "campaign_id": self.campaign_id,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
        }


class AlertBook:
    """Staged alerts for one run: first occurrence wins, prior status carries over."""

    def __init__(self, previous: Iterable[Any] = ()):
        self._previous: dict[AlertKey, str] = {AlertKey.of(alert): alert.status for alert in previous}
        self._staged: dict[AlertKey, AlertDraft] = {}

    def add(self, draft: AlertDraft) -> bool:
        key = draft.key
        if key in self._staged:
            return False
        draft.status = self._previous.get(key, draft.status)
        self._staged[key] = draft
        return True

    def drafts(self) -> list[AlertDraft]:
        return list(self._staged.values())

    def __len__(self) -> int:
        return len(self._staged)


@dataclass
class RunState:
    max_detail_calls: int
    detail_calls_used: int = 0
    rate_limited: bool = False

    def can_fetch_details(self) -> bool:
        return not self.rate_limited and self.detail_calls_used < self.max_detail_calls


@dataclass
class AlertSyncResult:
    created: int
    skipped: str | None = None
    campaigns_evaluated: int = 0
    detail_calls: int = 0
    rate_limited: bool = False


# ── Snapshot window ──────────────────────────────────────────

@dataclass(frozen=True)
class SpendWindow:
    spend_7d: int = 0
    leads_7d: int = 0
    yesterday_spend: int = 0
    yesterday_leads: int = 0

    @property
    def avg_7d(self) -> float:
        return self.spend_7d / TRAILING_DAYS if self.spend_7d > 0 else 0


def summarize_snapshots(snapshots: Sequence[Any]) -> SpendWindow:
    """Trailing 7-day sums and the latest day ("yesterday") from a snapshot series."""
    if not snapshots:
        return SpendWindow()
    ordered = sorted(snapshots, key=lambda snap: snap.date)
    last_week = ordered[-TRAILING_DAYS:]
    latest = ordered[-1]
    return SpendWindow(
        spend_7d=sum(snap.spend for snap in last_week),
        leads_7d=sum(snap.leads for snap in last_week),
        yesterday_spend=latest.spend,
        yesterday_leads=latest.leads,
    )


# ── Rules ────────────────────────────────────────────────────

def _money(cents: float) -> str:
    return f"{cents / 100:.2f}"


@dataclass(frozen=True)
class CampaignContext:
    campaign_id: str
    ad_account_id: str
    client_id: int | None
    status: str
    effective_status: str
    daily_budget: int
    # registry values from before any live refresh
    stored_status: str | None = None
    stored_effective_status: str | None = None


def evaluate_campaign(
    ctx: CampaignContext,
    delivery: DeliveryState,
    window: SpendWindow,
    budget_low_threshold: int,
) -> list[AlertDraft]:
    """Apply every campaign rule; rules are independent except spike/drop."""
    scope = {"client_id": ctx.client_id, "ad_account_id": ctx.ad_account_id, "campaign_id": ctx.campaign_id}
    avg7 = window.avg_7d
    yesterday = window.yesterday_spend
    drafts: list[AlertDraft] = []

    if delivery.has_payment_error:
        drafts.append(AlertDraft(
            rule=AlertRule.payment_error,
            severity=AlertSeverity.high,
            title="Payment error",
            message="Campaign has a payment error. Check billing in Meta Ads Manager.",
            payload={"status": ctx.stored_status, "effectiveStatus": ctx.stored_effective_status},
            **scope,
        ))

    if delivery.is_delivering and avg7 > 0 and yesterday > avg7 * SPIKE_FACTOR and yesterday > SPIKE_MIN_SPEND:
        drafts.append(AlertDraft(
            rule=AlertRule.spend_spike,
            severity=AlertSeverity.high,
            title="Spend above normal",
            message=(
                f"Yesterday's spend {_money(yesterday)} is more than 2x "
                f"the 7-day average ({_money(avg7)})."
            ),
            payload={"yesterdaySpend": yesterday, "avg7": round(avg7, 2)},
            **scope,
        ))
    elif delivery.is_delivering and avg7 > 0 and yesterday < avg7 * DROP_FACTOR and avg7 > DROP_MIN_AVERAGE:
        drafts.append(AlertDraft(
            rule=AlertRule.spend_drop,
            severity=AlertSeverity.medium,
            title="Spend below normal",
            message=(
                f"Yesterday's spend {_money(yesterday)} is well below "
                f"the 7-day average ({_money(avg7)})."
            ),
            payload={"yesterdaySpend": yesterday, "avg7": round(avg7, 2)},
            **scope,
        ))

    if delivery.is_delivering and yesterday > 0 and window.yesterday_leads == 0:
        drafts.append(AlertDraft(
            rule=AlertRule.zero_results,
            severity=AlertSeverity.medium,
            title="Zero results",
            message="Active campaign spent yesterday without any results.",
            payload={"yesterdaySpend": yesterday, "yesterdayLeads": window.yesterday_leads},
            **scope,
        ))

    if budget_low_threshold > 0 and ctx.daily_budget > 0 and ctx.daily_budget < budget_low_threshold:
        drafts.append(AlertDraft(
            rule=AlertRule.budget_low,
            severity=AlertSeverity.low,
            title="Low daily budget",
            message=f"Daily budget is below the configured threshold ({_money(budget_low_threshold)}).",
            payload={"dailyBudget": ctx.daily_budget, "threshold": budget_low_threshold},
            **scope,
        ))

    return drafts


def rate_limit_draft(campaign: Campaign, exc: BaseException) -> AlertDraft:
    return AlertDraft(
        rule=AlertRule.rate_limit,
        severity=AlertSeverity.medium,
        title="Rate limit hit",
        message="Meta is throttling calls for this account. Try again in a few minutes.",
        client_id=None,
        ad_account_id=campaign.ad_account_id,
        campaign_id=campaign.id,
        payload={"code": getattr(exc, "code", None), "fbtrace_id": getattr(exc, "fbtrace_id", None)},
    )


def stale_sync_draft(last_sync_at: datetime, hours: int) -> AlertDraft:
    return AlertDraft(
        rule=AlertRule.stale_sync,
        severity=AlertSeverity.medium,
        title="Sync out of date",
        message=f"The Meta integration has not synced in more than {hours}h.",
        payload={"lastSyncAt": last_sync_at.isoformat()},
    )


# ── Run ──────────────────────────────────────────────────────

async def _load_inputs(session: AsyncSession, user_id: int, since) -> tuple:
    integration = await session.scalar(select(MetaIntegration).where(MetaIntegration.user_id == user_id))
    tenant_campaign_ids = (
        select(Campaign.id).join(AdAccount, Campaign.ad_account_id == AdAccount.id).where(AdAccount.user_id == user_id)
    )
    campaigns_q = await session.execute(
        select(Campaign)
        .join(AdAccount, Campaign.ad_account_id == AdAccount.id)
        .where(AdAccount.user_id == user_id)
        .options(selectinload(Campaign.ad_account).selectinload(AdAccount.client_links))
    )
    snapshots_q = await session.execute(
        select(MetricSnapshot).where(
            MetricSnapshot.scope_type == ScopeType.campaign.value,
            MetricSnapshot.scope_id.in_(tenant_campaign_ids),
            MetricSnapshot.date >= since,
        )
    )
    existing_q = await session.execute(select(Alert).where(Alert.user_id == user_id))
    return (
        integration,
        list(campaigns_q.scalars().all()),
        list(snapshots_q.scalars().all()),
        list(existing_q.scalars().all()),
    )


def _resolve_token(integration: MetaIntegration | None) -> str | None:
    if integration is None or not integration.is_connected:
        return None
    try:
        return get_stored_access_token(integration.access_token_encrypted)
    except CredentialError as e:
        logger.warning(f"[alert_sync] Stored Meta token unusable, running without live status: {e}")
        return None


async def run_alert_sync(
    session: AsyncSession,
    user_id: int,
    *,
    client: MetaAdsClient | None = None,
    now: datetime | None = None,
) -> AlertSyncResult:
    """Regenerate the tenant's alerts and atomically replace the stored set."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    config = await load_alert_config(session, user_id)
    if not config.enabled:
        logger.info(f"[alert_sync] Alerts disabled for user {user_id}, skipping")
        return AlertSyncResult(created=0, skipped="alerts disabled")

    since = (now - timedelta(days=settings.snapshot_lookback_days)).date()
    integration, campaigns, snapshots, existing = await _load_inputs(session, user_id, since)

    by_campaign: dict[str, list[MetricSnapshot]] = {}
    for snap in snapshots:
        by_campaign.setdefault(snap.scope_id, []).append(snap)

    book = AlertBook(existing)
    token = _resolve_token(integration)
    client = client or get_meta_client()
    state = RunState(max_detail_calls=settings.alert_max_detail_calls)

    ordered = sorted(campaigns, key=lambda c: campaign_priority(c.status, c.effective_status))
    evaluated = 0

    for campaign in ordered:
        window = summarize_snapshots(by_campaign.get(campaign.id, []))
        stored_status, stored_effective_status = campaign.status, campaign.effective_status
        status = stored_status or ""
        effective_status = stored_effective_status or ""
        issues = ""

        if token and state.can_fetch_details():
            state.detail_calls_used += 1
            try:
                details = await client.fetch_campaign_details(token, campaign.id)
            except Exception as e:
                if is_rate_limit_error(e):
                    logger.warning(
                        f"[alert_sync] Rate limited on campaign {campaign.id}; "
                        f"no further detail calls this run"
                    )
                    book.add(rate_limit_draft(campaign, e))
                    state.rate_limited = True
                    continue
                logger.error(f"[alert_sync] fetch_campaign_details failed for {campaign.id}: {e}")
            else:
                status = details.get("status") or status
                effective_status = details.get("effective_status") or effective_status
                issues = issues_text(details.get("issues_info"))
                # keep the registry warm
                campaign.status = status
                campaign.effective_status = effective_status

        primary = campaign.ad_account.primary_link() if campaign.ad_account else None
        ctx = CampaignContext(
            campaign_id=campaign.id,
            ad_account_id=campaign.ad_account_id,
            client_id=primary.client_id if primary else None,
            status=status,
            effective_status=effective_status,
            daily_budget=int(campaign.daily_budget or 0),
            stored_status=stored_status,
            stored_effective_status=stored_effective_status,
        )
        delivery = classify_delivery(status, effective_status, issues)
        for draft in evaluate_campaign(ctx, delivery, window, config.budget_low_threshold):
            book.add(draft)
        evaluated += 1

    last_sync_at = as_utc(integration.last_sync_at) if integration else None
    if last_sync_at and now - last_sync_at > timedelta(hours=settings.stale_sync_hours):
        book.add(stale_sync_draft(last_sync_at, settings.stale_sync_hours))

    drafts = book.drafts()
    try:
        await session.execute(delete(Alert).where(Alert.user_id == user_id))
        if drafts:
            await session.execute(insert(Alert), [draft.as_row(user_id) for draft in drafts])
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception(f"[alert_sync] Commit failed for user {user_id}; previous alerts kept")
        raise

    logger.info(
        f"[alert_sync] user={user_id}: {len(drafts)} alerts, {evaluated}/{len(campaigns)} campaigns evaluated, "
        f"{state.detail_calls_used} detail calls, rate_limited={state.rate_limited}"
    )
    return AlertSyncResult(
        created=len(drafts),
        campaigns_evaluated=evaluated,
        detail_calls=state.detail_calls_used,
        rate_limited=state.rate_limited,
    )
