"""
Campaign health classification and KPI arithmetic shared by the alert
engine, the metrics aggregator and the Meta sync jobs.

Delivery classification is a substring heuristic over the provider's free-text
status vocabulary (status, effective status and issue info). The marker
tables below are the single place to revise it.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

PAYMENT_ERROR_MARKERS: tuple[str, ...] = (
    "payment",
    "billing",
    "pagamento",
    "fatur",
    "hold",
    "risk",
    "erro",
    "error",
    "issue_payment",
    "issue_billing",
)
ISSUES_MARKER = "with issues"
PAUSED_MARKERS: tuple[str, ...] = ("pause", "inactive", "stopped")
DELIVERING_MARKERS: tuple[str, ...] = ("active", "delivery", "delivering", "eligible", "running")
PRIORITY_MARKERS: tuple[str, ...] = ("issues", "inactive", "pause")

# Lead attribution precedence: the first action type present wins.
LEAD_ACTION_PRECEDENCE: tuple[str, ...] = (
    "onsite_conversion.messaging_first_reply",
    "onsite_conversion.messaging_conversation_started_7d",
    "messaging_conversation_started",
    "link_click",
)


class DeliveryKind(str, Enum):
    payment_error = "PAYMENT_ERROR"
    with_issues = "WITH_ISSUES"
    paused = "PAUSED"
    delivering = "DELIVERING"
    unknown = "UNKNOWN"


@dataclass(frozen=True)
class DeliveryState:
    kind: DeliveryKind
    has_payment_error: bool
    has_issues: bool
    is_paused: bool
    is_delivering: bool


def issues_text(issues_info: Any) -> str:
    """Serialize provider issue info into searchable text ("" when absent)."""
    if issues_info is None or issues_info == "":
        return ""
    if isinstance(issues_info, str):
        return issues_info
    return json.dumps(issues_info, ensure_ascii=False, default=str)


def classify_delivery(status: str | None, effective_status: str | None, issues: str | None = "") -> DeliveryState:
    text = f"{status or ''} {effective_status or ''} {issues or ''}".lower()

    has_payment_error = any(marker in text for marker in PAYMENT_ERROR_MARKERS)
    has_issues = ISSUES_MARKER in text
    is_paused = any(marker in text for marker in PAUSED_MARKERS) or has_payment_error or has_issues
    is_delivering = not is_paused and any(marker in text for marker in DELIVERING_MARKERS)

    if has_payment_error:
        kind = DeliveryKind.payment_error
    elif has_issues:
        kind = DeliveryKind.with_issues
    elif is_paused:
        kind = DeliveryKind.paused
    elif is_delivering:
        kind = DeliveryKind.delivering
    else:
        kind = DeliveryKind.unknown

    return DeliveryState(
        kind=kind,
        has_payment_error=has_payment_error,
        has_issues=has_issues,
        is_paused=is_paused,
        is_delivering=is_delivering,
    )


def campaign_priority(status: str | None, effective_status: str | None) -> int:
    """0 for campaigns already flagged as troubled or inactive, 1 otherwise."""
    text = f"{status or ''} {effective_status or ''}".lower()
    return 0 if any(marker in text for marker in PRIORITY_MARKERS) else 1


def normalize_campaign_status(status: str | None) -> str:
    normalized = str(status or "").lower()
    if "active" in normalized:
        return "ACTIVE"
    if "paused" in normalized or "disabled" in normalized:
        return "PAUSED"
    if "archived" in normalized or "completed" in normalized:
        return "ARCHIVED"
    return "UNKNOWN"


def pick_primary_result(actions: Iterable[dict] | None) -> int:
    if not actions:
        return 0
    actions = list(actions)
    for action_type in LEAD_ACTION_PRECEDENCE:
        for action in actions:
            if action.get("action_type") == action_type:
                return to_int(action.get("value"))
    return 0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def to_cents(value: Any) -> int:
    """Convert a provider currency amount ("12.34") to integer cents."""
    if value is None or value == "":
        return 0
    try:
        return round_half_up(float(value) * 100)
    except (TypeError, ValueError):
        return 0


def budget_cents(value: Any) -> int | None:
    """Provider budgets are already expressed in minor units; None when unset."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def compute_cpl(spend: int, leads: int) -> int | None:
    return round_half_up(spend / leads) if leads > 0 else None


def cost_per_lead(spend: int, leads: int) -> int:
    return round_half_up(spend / leads) if leads > 0 else 0


def response_rate(leads: int, clicks: int) -> float:
    return round(leads / clicks * 100, 1) if clicks > 0 else 0
