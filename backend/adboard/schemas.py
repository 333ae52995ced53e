from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class AlertRead(BaseModel):
    id: int
    rule: str
    severity: str
    status: str
    client_id: int | None = None
    client_name: str | None = None
    ad_account_id: str | None = None
    ad_account_name: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    title: str
    message: str
    payload: dict[str, Any] | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class AlertConfigRead(BaseModel):
    budget_low_threshold: int
    enabled: bool
    persisted: bool = True

    class Config:
        from_attributes = True


class AlertConfigWrite(BaseModel):
    budget_low_threshold: int = Field(ge=0)
    enabled: bool


class AlertSyncResponse(BaseModel):
    created: int
    skipped: str | None = None


class Kpis(BaseModel):
    spend: int = 0
    leads: int = 0
    clicks: int = 0
    impressions: int = 0
    cpl: int = 0
    response_rate: float = 0
    active_clients: int = 0


class TimelinePoint(BaseModel):
    date: dt.date
    value: int


class Highlight(BaseModel):
    id: str
    name: str
    client: str
    status: str
    month_spend: int
    spend_cap: int
    last_updated: datetime | date | None = None
    live: bool = False


class DateRangeRead(BaseModel):
    since: date
    until: date


class DashboardResponse(BaseModel):
    range: DateRangeRead
    kpis: Kpis
    timeline: list[TimelinePoint]
    highlights: list[Highlight]
    source: Literal["snapshot", "live"] = "snapshot"


class CampaignRow(BaseModel):
    id: str
    name: str
    objective: str | None = None
    ad_account_id: str
    ad_account_name: str | None = None
    client_id: int | None = None
    status: str
    effective_status: str | None = None
    daily_budget: int | None = None
    lifetime_budget: int | None = None
    budget_remaining: int | None = None
    spend: int = 0
    leads: int = 0
    clicks: int = 0
    impressions: int = 0
    cpl: int = 0
    response_rate: float = 0
    source: Literal["snapshot", "live"] = "snapshot"
    updated_at: datetime | None = None


class CampaignStatusUpdate(BaseModel):
    status: Literal["ACTIVE", "PAUSED"]

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class CampaignRead(BaseModel):
    id: str
    name: str
    ad_account_id: str
    status: str | None = None
    effective_status: str | None = None
    daily_budget: int | None = None
    lifetime_budget: int | None = None

    class Config:
        from_attributes = True


class SyncNowResponse(BaseModel):
    accounts: int = 0
    campaigns: int = 0
    snapshots: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class MetaIntegrationRead(BaseModel):
    status: str = "DISCONNECTED"
    connected: bool = False
    meta_user_id: str | None = None
    meta_user_name: str | None = None
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None


class OAuthStartResponse(BaseModel):
    url: str
