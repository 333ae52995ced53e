"""Unit tests for delivery classification and KPI arithmetic.

Tests verify:
- Substring classification of status / effective status / issue text
- Priority buckets used to order the alert run
- Lead precedence over raw action records
- Money conversion and derived KPIs (cpl, response rate)
"""

import pytest

from adboard.services.classification import (
    DeliveryKind,
    budget_cents,
    campaign_priority,
    classify_delivery,
    compute_cpl,
    cost_per_lead,
    issues_text,
    normalize_campaign_status,
    pick_primary_result,
    response_rate,
    to_cents,
)


# ---------------------------------------------------------------------------
# classify_delivery
# ---------------------------------------------------------------------------

class TestClassifyDelivery:
    def test_active_campaign_is_delivering(self):
        state = classify_delivery("ACTIVE", "ACTIVE")
        assert state.kind == DeliveryKind.delivering
        assert state.is_delivering
        assert not state.is_paused

    def test_billing_hold_is_payment_error_and_paused(self):
        state = classify_delivery("ACTIVE", "PENDING_BILLING_INFO")
        assert state.has_payment_error
        assert state.is_paused
        assert not state.is_delivering
        assert state.kind == DeliveryKind.payment_error

    def test_payment_marker_in_issue_info(self):
        issues = issues_text([{"error_code": 1, "error_summary": "Pagamento recusado"}])
        state = classify_delivery("ACTIVE", "ACTIVE", issues)
        assert state.has_payment_error

    def test_with_issues(self):
        state = classify_delivery("ACTIVE", "with issues")
        assert state.has_issues
        assert state.is_paused
        assert state.kind == DeliveryKind.with_issues

    @pytest.mark.parametrize("status", ["PAUSED", "CAMPAIGN_PAUSED", "INACTIVE", "stopped"])
    def test_paused_variants(self, status):
        state = classify_delivery(status, None)
        assert state.is_paused
        assert not state.is_delivering

    def test_unknown_vocabulary(self):
        state = classify_delivery("DRAFT", "")
        assert state.kind == DeliveryKind.unknown
        assert not state.is_paused
        assert not state.is_delivering


def test_issues_text_handles_missing_and_strings():
    assert issues_text(None) == ""
    assert issues_text("") == ""
    assert issues_text("raw") == "raw"


def test_priority_puts_troubled_campaigns_first():
    assert campaign_priority("ACTIVE", "WITH ISSUES") == 0
    assert campaign_priority("PAUSED", "CAMPAIGN_PAUSED") == 0
    assert campaign_priority("ACTIVE", "INACTIVE") == 0
    assert campaign_priority("ACTIVE", "ACTIVE") == 1


def test_normalize_campaign_status():
    assert normalize_campaign_status("ACTIVE") == "ACTIVE"
    assert normalize_campaign_status("paused") == "PAUSED"
    assert normalize_campaign_status("DISABLED") == "PAUSED"
    assert normalize_campaign_status("ARCHIVED") == "ARCHIVED"
    assert normalize_campaign_status("completed") == "ARCHIVED"
    assert normalize_campaign_status(None) == "UNKNOWN"


# ---------------------------------------------------------------------------
# Leads and money
# ---------------------------------------------------------------------------

class TestPickPrimaryResult:
    def test_first_reply_wins_over_conversation_started(self):
        actions = [
            {"action_type": "messaging_conversation_started", "value": "9"},
            {"action_type": "onsite_conversion.messaging_first_reply", "value": "4"},
        ]
        assert pick_primary_result(actions) == 4

    def test_seven_day_variant_before_plain_started(self):
        actions = [
            {"action_type": "messaging_conversation_started", "value": "9"},
            {"action_type": "onsite_conversion.messaging_conversation_started_7d", "value": "6"},
        ]
        assert pick_primary_result(actions) == 6

    def test_link_click_is_last_resort(self):
        assert pick_primary_result([{"action_type": "link_click", "value": "12"}]) == 12

    def test_unrelated_actions_count_as_zero(self):
        assert pick_primary_result([{"action_type": "video_view", "value": "100"}]) == 0
        assert pick_primary_result(None) == 0


def test_to_cents_rounds_half_up():
    assert to_cents("12.34") == 1234
    assert to_cents("0.125") == 13
    assert to_cents(None) == 0
    assert to_cents("n/a") == 0


def test_budget_cents_keeps_minor_units():
    assert budget_cents("2500") == 2500
    assert budget_cents("") is None
    assert budget_cents(None) is None


def test_cost_per_lead_is_zero_without_leads():
    assert cost_per_lead(123456, 0) == 0
    assert cost_per_lead(1000, 3) == 333
    assert compute_cpl(1000, 0) is None
    assert compute_cpl(1001, 2) == 501


def test_response_rate_is_zero_without_clicks():
    assert response_rate(5, 0) == 0
    assert response_rate(1, 3) == 33.3
