"""Tests for dashboard and campaign-list aggregation.

Tests verify:
- Snapshot baseline totals, derived KPIs, timeline and highlights
- Live data replaces the snapshot contribution per ad account
- A failing account (or a broken credential) degrades to snapshots, never raises
- Client scoping, search and status filters on the campaign list
- Budget precedence: campaign level, then ad-set sum, then registry
"""

from datetime import date, timedelta

from adboard.integrations.meta_api import MetaApiError
from adboard.models import AdAccount, Client, ClientAdAccount, MetaIntegration, ScopeType
from adboard.services.metrics_aggregator import MetricsQuery, build_dashboard, like_pattern, list_campaigns

from conftest import NOW, TODAY, add_campaign, add_series, connect_integration, insight_row, seed_tenant

YESTERDAY = TODAY - timedelta(days=1)
WEEK = MetricsQuery(days=7, tz="UTC")


async def _seed_two_accounts(session):
    user, client = await seed_tenant(session, accounts=("act_1", "act_2"))
    await add_series(session, ScopeType.ad_account, "act_1", [1000] * 7, leads=[1] * 7, clicks=[10] * 7)
    await add_series(session, ScopeType.ad_account, "act_2", [500] * 7, clicks=[5] * 7)
    return user, client


def _live_week(spend="20.00", leads=2, clicks=10):
    return [insight_row(YESTERDAY - timedelta(days=i), spend, leads=leads, clicks=clicks) for i in range(7)]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

async def test_dashboard_from_snapshots(session, fake_meta):
    user, _ = await _seed_two_accounts(session)

    result = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert result.source == "snapshot"
    assert (result.range.since, result.range.until) == (date(2026, 3, 8), date(2026, 3, 14))
    assert result.kpis.spend == 10500
    assert result.kpis.leads == 7
    assert result.kpis.clicks == 105
    assert result.kpis.cpl == 1500
    assert result.kpis.response_rate == 6.7
    assert result.kpis.active_clients == 1
    assert [p.value for p in result.timeline] == [1500] * 7
    assert [h.id for h in result.highlights] == ["act_1", "act_2"]
    assert result.highlights[0].client == "Clinica Sorriso"
    assert result.highlights[0].month_spend == 7000
    assert result.highlights[0].spend_cap == 500000
    assert not any(h.live for h in result.highlights)
    assert fake_meta.insight_calls == []


async def test_dashboard_kpis_are_zero_without_leads_or_clicks(session, fake_meta):
    user, _ = await seed_tenant(session)
    await add_series(session, ScopeType.ad_account, "act_1", [2500] * 3)

    result = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert result.kpis.spend == 7500
    assert result.kpis.cpl == 0
    assert result.kpis.response_rate == 0


async def test_live_data_replaces_snapshots_per_account(session, fake_meta):
    user, _ = await _seed_two_accounts(session)
    await connect_integration(session, user)
    fake_meta.account_insights["act_1"] = _live_week()
    fake_meta.insight_errors["act_2"] = MetaApiError("Meta insights error: boom", status_code=500)

    result = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert result.source == "live"
    # act_1 live (7 x 2000), act_2 from snapshots (7 x 500)
    assert result.kpis.spend == 14000 + 3500
    assert result.kpis.leads == 14
    assert result.kpis.clicks == 70 + 35
    highlights = {h.id: h for h in result.highlights}
    assert highlights["act_1"].live
    assert highlights["act_1"].month_spend == 14000
    assert not highlights["act_2"].live
    assert highlights["act_2"].month_spend == 3500
    # requested window and month-to-date for every account
    windows = {(account, since, until) for account, since, until, _ in fake_meta.insight_calls}
    assert ("act_1", "2026-03-08", "2026-03-14") in windows
    assert ("act_1", "2026-03-01", "2026-03-15") in windows


async def test_all_live_fetches_failing_keeps_snapshot_view(session, fake_meta):
    user, _ = await _seed_two_accounts(session)
    await connect_integration(session, user)
    for account_id in ("act_1", "act_2"):
        fake_meta.insight_errors[account_id] = MetaApiError("Meta insights error: too many calls", code=80004)

    result = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert result.source == "snapshot"
    assert result.kpis.spend == 10500


async def test_broken_credential_does_not_fail_dashboard(session, fake_meta):
    user, _ = await _seed_two_accounts(session)
    session.add(MetaIntegration(user_id=user.id, status="CONNECTED", access_token_encrypted="not:a:token"))
    await session.commit()

    result = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert result.source == "snapshot"
    assert result.kpis.spend == 10500


async def test_dashboard_client_filter(session, fake_meta):
    user, client = await _seed_two_accounts(session)
    other = Client(user_id=user.id, name="Outra Clinica")
    session.add_all([other, AdAccount(id="act_9", user_id=user.id, name="Other account", status="ACTIVE")])
    await session.flush()
    session.add(ClientAdAccount(client_id=other.id, ad_account_id="act_9", is_primary=True))
    await session.commit()
    await add_series(session, ScopeType.ad_account, "act_9", [99999] * 7)

    scoped = await build_dashboard(session, user.id, MetricsQuery(days=7, tz="UTC", client_id=other.id),
                                   client=fake_meta, now=NOW)
    everything = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)

    assert scoped.kpis.spend == 99999 * 7
    assert [h.id for h in scoped.highlights] == ["act_9"]
    assert scoped.kpis.active_clients == 1
    assert everything.kpis.spend == 10500 + 99999 * 7
    assert everything.kpis.active_clients == 2


# ---------------------------------------------------------------------------
# Campaign list
# ---------------------------------------------------------------------------

async def _seed_campaigns(session):
    user, client = await seed_tenant(session)
    await add_campaign(session, "c1", name="Promo Implantes", daily_budget=800)
    await add_campaign(session, "c2", name="Clareamento", status="PAUSED", effective_status="CAMPAIGN_PAUSED")
    await add_series(session, ScopeType.campaign, "c1", [1000] * 5, leads=[2] * 5, clicks=[20] * 5)
    await add_series(session, ScopeType.campaign, "c2", [300] * 5, clicks=[3] * 5)
    return user, client


async def test_campaign_list_from_snapshots(session, fake_meta):
    user, client = await _seed_campaigns(session)

    rows = await list_campaigns(session, user.id, MetricsQuery(tz="UTC"), client=fake_meta, now=NOW)

    by_id = {row.id: row for row in rows}
    assert set(by_id) == {"c1", "c2"}
    assert by_id["c1"].spend == 5000
    assert by_id["c1"].leads == 10
    assert by_id["c1"].cpl == 500
    assert by_id["c1"].response_rate == 10.0
    assert by_id["c1"].daily_budget == 800
    assert by_id["c1"].client_id == client.id
    assert by_id["c1"].source == "snapshot"
    assert by_id["c2"].status == "PAUSED"
    assert by_id["c2"].cpl == 0


async def test_campaign_search_and_status_filters(session, fake_meta):
    user, _ = await _seed_campaigns(session)

    found = await list_campaigns(session, user.id, MetricsQuery(tz="UTC", search="implant"),
                                 client=fake_meta, now=NOW)
    paused = await list_campaigns(session, user.id, MetricsQuery(tz="UTC", status="paused"),
                                  client=fake_meta, now=NOW)
    other_account = await list_campaigns(session, user.id, MetricsQuery(tz="UTC", ad_account_id="act_404"),
                                         client=fake_meta, now=NOW)

    assert [row.id for row in found] == ["c1"]
    assert [row.id for row in paused] == ["c2"]
    assert other_account == []


async def test_campaign_list_merges_live_data(session, fake_meta):
    user, _ = await _seed_campaigns(session)
    await connect_integration(session, user)
    fake_meta.details["c1"] = {"status": "ACTIVE", "effective_status": "ACTIVE", "budget_remaining": "1200"}
    fake_meta.adsets["c1"] = [{"daily_budget": "1500"}, {"daily_budget": "2500"}]
    fake_meta.campaign_insights["c1"] = [
        {"date_start": "2026-02-13", "spend": "75.00", "clicks": "30", "impressions": "900",
         "actions": [{"action_type": "link_click", "value": "30"},
                     {"action_type": "messaging_conversation_started", "value": "5"}]},
    ]
    fake_meta.details["c2"] = {"status": "ACTIVE", "effective_status": "ACTIVE", "daily_budget": "900"}
    fake_meta.adsets["c2"] = [{"daily_budget": "5000"}]
    fake_meta.insight_errors["c2"] = MetaApiError("Meta campaign insights error: boom", status_code=500)

    rows = await list_campaigns(session, user.id, MetricsQuery(tz="UTC"), client=fake_meta, now=NOW)

    by_id = {row.id: row for row in rows}
    c1, c2 = by_id["c1"], by_id["c2"]
    assert c1.source == "live"
    assert c1.spend == 7500
    assert c1.leads == 5
    assert c1.daily_budget == 4000
    assert c1.budget_remaining == 1200
    # insights failed: metrics from snapshots, status and budget still live
    assert c2.source == "snapshot"
    assert c2.spend == 1500
    assert c2.status == "ACTIVE"
    assert c2.daily_budget == 900


def test_like_pattern_escapes_wildcards():
    assert like_pattern("50%") == "%50\\%%"
    assert like_pattern("promo_a") == "%promo\\_a%"
    assert like_pattern("a\\b") == "%a\\\\b%"


async def test_campaign_search_matches_wildcards_literally(session, fake_meta):
    user, _ = await seed_tenant(session)
    await add_campaign(session, "c1", name="Desconto 50% implante")
    await add_campaign(session, "c2", name="Desconto 500 leads")
    await add_campaign(session, "c3", name="promo_a")
    await add_campaign(session, "c4", name="promoXa")

    percent = await list_campaigns(session, user.id, MetricsQuery(tz="UTC", search="50%"),
                                   client=fake_meta, now=NOW)
    underscore = await list_campaigns(session, user.id, MetricsQuery(tz="UTC", search="promo_a"),
                                      client=fake_meta, now=NOW)

    assert [row.id for row in percent] == ["c1"]
    assert [row.id for row in underscore] == ["c3"]


async def test_other_tenants_data_is_invisible(session, fake_meta):
    user, client = await _seed_campaigns(session)
    await add_series(session, ScopeType.ad_account, "act_1", [1000] * 7)
    other, other_client = await seed_tenant(session, accounts=("act_2",), client_name="Odonto Norte",
                                            email="second@agency.test")
    await add_campaign(session, "c9", ad_account_id="act_2")
    await add_series(session, ScopeType.ad_account, "act_2", [77777] * 7)

    dashboard = await build_dashboard(session, user.id, WEEK, client=fake_meta, now=NOW)
    foreign_scope = await build_dashboard(session, user.id, MetricsQuery(days=7, tz="UTC", client_id=other_client.id),
                                          client=fake_meta, now=NOW)
    rows = await list_campaigns(session, user.id, MetricsQuery(tz="UTC"), client=fake_meta, now=NOW)

    assert dashboard.kpis.spend == 7000
    assert [h.id for h in dashboard.highlights] == ["act_1"]
    assert dashboard.kpis.active_clients == 1
    assert foreign_scope.kpis.spend == 0
    assert foreign_scope.highlights == []
    assert {row.id for row in rows} == {"c1", "c2"}
