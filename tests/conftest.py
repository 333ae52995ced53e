import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adboard.crypto import encrypt
from adboard.db import Base
from adboard.models import (
    AdAccount,
    Campaign,
    Client,
    ClientAdAccount,
    IntegrationStatus,
    MetaIntegration,
    MetricSnapshot,
    ScopeType,
    User,
)

NOW = datetime(2026, 3, 15, 15, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

async def seed_tenant(session, *, accounts=("act_1",), client_name="Clinica Sorriso", timezone_name="UTC",
                      email="owner@agency.test"):
    """One user owning one client and its linked ad accounts (first one primary)."""
    user = User(email=email, name="Owner", timezone=timezone_name)
    session.add(user)
    await session.flush()
    client = Client(user_id=user.id, name=client_name, city="Recife", state="PE")
    session.add(client)
    await session.flush()
    for index, account_id in enumerate(accounts):
        session.add(AdAccount(id=account_id, user_id=user.id, name=f"Account {account_id}", status="ACTIVE", spend_cap=500000))
        await session.flush()
        session.add(ClientAdAccount(client_id=client.id, ad_account_id=account_id, is_primary=index == 0))
    await session.commit()
    return user, client


async def connect_integration(session, user, *, last_sync_at=None, token="live-token"):
    integration = MetaIntegration(
        user_id=user.id,
        status=IntegrationStatus.connected.value,
        meta_user_id="meta-1",
        meta_user_name="Owner",
        access_token_encrypted=encrypt(token),
        last_sync_at=last_sync_at or NOW,
    )
    session.add(integration)
    await session.commit()
    return integration


async def add_campaign(session, campaign_id, *, ad_account_id="act_1", status="ACTIVE",
                       effective_status="ACTIVE", daily_budget=None, name=None):
    campaign = Campaign(
        id=campaign_id,
        ad_account_id=ad_account_id,
        name=name or f"Campaign {campaign_id}",
        objective="OUTCOME_LEADS",
        status=status,
        effective_status=effective_status,
        daily_budget=daily_budget,
    )
    session.add(campaign)
    await session.commit()
    return campaign


async def add_series(session, scope_type: ScopeType, scope_id: str, spends, *, leads=None, clicks=None,
                     end: date | None = None):
    """Daily snapshots ending at `end` (default: yesterday), oldest first."""
    end = end or TODAY - timedelta(days=1)
    leads = leads or [0] * len(spends)
    clicks = clicks or [0] * len(spends)
    start = end - timedelta(days=len(spends) - 1)
    for offset, (spend, lead, click) in enumerate(zip(spends, leads, clicks)):
        session.add(MetricSnapshot(
            scope_type=scope_type.value,
            scope_id=scope_id,
            date=start + timedelta(days=offset),
            spend=spend,
            leads=lead,
            clicks=click,
            impressions=click * 10,
        ))
    await session.commit()


# ---------------------------------------------------------------------------
# Fake Meta client
# ---------------------------------------------------------------------------

class FakeMetaClient:
    """In-memory stand-in for MetaAdsClient recording every call."""

    def __init__(self):
        self.details: dict[str, dict] = {}
        self.detail_errors: dict[str, Exception] = {}
        self.detail_error_on_call: dict[int, Exception] = {}
        self.adsets: dict[str, list[dict]] = {}
        self.campaign_insights: dict[str, list[dict]] = {}
        self.account_insights: dict[str, list[dict]] = {}
        self.level_insights: dict[str, list[dict]] = {}
        self.insight_errors: dict[str, Exception] = {}
        self.ad_accounts: list[dict] = []
        self.campaigns: dict[str, list[dict]] = {}
        self.detail_calls: list[str] = []
        self.insight_calls: list[tuple] = []
        self.exchanged_codes: list[str] = []
        self.oauth_error: Exception | None = None
        self.status_updates: list[tuple] = []

    async def fetch_campaign_details(self, token, campaign_id):
        self.detail_calls.append(campaign_id)
        call_no = len(self.detail_calls)
        if call_no in self.detail_error_on_call:
            raise self.detail_error_on_call[call_no]
        if campaign_id in self.detail_errors:
            raise self.detail_errors[campaign_id]
        return self.details.get(campaign_id, {})

    async def fetch_campaign_adsets(self, token, campaign_id):
        return self.adsets.get(campaign_id, [])

    async def fetch_campaign_insights(self, token, campaign_id, since, until, increment="1"):
        if campaign_id in self.insight_errors:
            raise self.insight_errors[campaign_id]
        return _in_range(self.campaign_insights.get(campaign_id, []), since, until)

    async def fetch_all_insights(self, token, ad_account_id, since, until, *, level=None):
        self.insight_calls.append((ad_account_id, since, until, level))
        if ad_account_id in self.insight_errors:
            raise self.insight_errors[ad_account_id]
        source = self.level_insights if level else self.account_insights
        return _in_range(source.get(ad_account_id, []), since, until)

    async def fetch_ad_accounts(self, token):
        return self.ad_accounts

    async def fetch_campaigns(self, token, ad_account_id):
        return self.campaigns.get(ad_account_id, [])

    def oauth_url(self, state):
        return f"https://www.facebook.com/dialog/oauth?state={state}"

    async def exchange_code_for_token(self, code):
        if self.oauth_error:
            raise self.oauth_error
        self.exchanged_codes.append(code)
        return {"access_token": f"short-{code}", "expires_in": 3600}

    async def exchange_for_long_lived_token(self, short_token):
        return {"access_token": "long-token", "expires_in": 5184000}

    async def fetch_me(self, token):
        return {"id": "meta-42", "name": "Agency Owner"}

    async def update_campaign_status(self, token, campaign_id, status):
        self.status_updates.append((token, campaign_id, status))
        return {"success": True}


def _in_range(rows, since, until):
    return [row for row in rows if since <= row.get("date_start", since) <= until]


def insight_row(day: date, spend: str, *, leads=0, clicks=0, impressions=0, **extra):
    row = {
        "date_start": day.isoformat(),
        "date_stop": day.isoformat(),
        "spend": spend,
        "clicks": str(clicks),
        "impressions": str(impressions),
        "actions": [{"action_type": "onsite_conversion.messaging_first_reply", "value": str(leads)}] if leads else [],
    }
    row.update(extra)
    return row


@pytest.fixture
def fake_meta():
    return FakeMetaClient()
