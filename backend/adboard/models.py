from __future__ import annotations

import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScopeType(str, Enum):
    ad_account = "AD_ACCOUNT"
    campaign = "CAMPAIGN"


class MetricSource(str, Enum):
    meta = "META"
    manual = "MANUAL"


class AlertSeverity(str, Enum):
    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"


class AlertStatus(str, Enum):
    new = "NEW"
    read = "READ"
    resolved = "RESOLVED"


class AlertRule(str, Enum):
    payment_error = "PAYMENT_ERROR"
    spend_spike = "SPEND_SPIKE"
    spend_drop = "SPEND_DROP"
    zero_results = "ZERO_RESULTS"
    budget_low = "BUDGET_LOW"
    stale_sync = "STALE_SYNC"
    rate_limit = "RATE_LIMIT"


class IntegrationStatus(str, Enum):
    connected = "CONNECTED"
    disconnected = "DISCONNECTED"


class ClientStatus(str, Enum):
    active = "ACTIVE"
    paused = "PAUSED"
    archived = "ARCHIVED"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(sa.String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    password_hash: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    timezone: Mapped[str] = mapped_column(sa.String(64), nullable=False, default="America/Sao_Paulo", server_default="America/Sao_Paulo")
    currency: Mapped[str] = mapped_column(sa.String(8), nullable=False, default="BRL", server_default="BRL")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )

    alert_config: Mapped["AlertConfig | None"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )
    integration: Mapped["MetaIntegration | None"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(sa.String(2), nullable=True)
    monthly_fee: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=ClientStatus.active.value, server_default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    account_links: Mapped[list["ClientAdAccount"]] = relationship(
        back_populates="client", cascade="all, delete-orphan", passive_deletes=True
    )


class AdAccount(Base):
    __tablename__ = "ad_accounts"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    # the tenant whose token last synced this account
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    currency: Mapped[str | None] = mapped_column(sa.String(8), nullable=True)
    timezone: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="UNKNOWN", server_default="UNKNOWN")
    spend_cap: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    client_links: Mapped[list["ClientAdAccount"]] = relationship(
        back_populates="ad_account", cascade="all, delete-orphan", passive_deletes=True
    )
    campaigns: Mapped[list["Campaign"]] = relationship(
        back_populates="ad_account", cascade="all, delete-orphan", passive_deletes=True
    )

    def primary_link(self) -> "ClientAdAccount | None":
        """Return the link flagged as primary; requires client_links to be loaded."""
        for link in self.client_links:
            if link.is_primary:
                return link
        return None


class ClientAdAccount(Base):
    __tablename__ = "client_ad_accounts"
    __table_args__ = (sa.UniqueConstraint("client_id", "ad_account_id", name="uq_client_ad_accounts_pair"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    ad_account_id: Mapped[str] = mapped_column(
        sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_primary: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False, server_default=sa.false())

    client: Mapped[Client] = relationship(back_populates="account_links")
    ad_account: Mapped[AdAccount] = relationship(back_populates="client_links")


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    ad_account_id: Mapped[str] = mapped_column(
        sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    objective: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    effective_status: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    daily_budget: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    lifetime_budget: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    updated_time: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    ad_account: Mapped[AdAccount] = relationship(back_populates="campaigns")


class MetricSnapshot(Base):
    __tablename__ = "metric_snapshots"
    __table_args__ = (
        sa.UniqueConstraint("scope_type", "scope_id", "date", name="uq_metric_snapshots_scope_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scope_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False, index=True)
    spend: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    impressions: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    leads: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)
    cpl: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    source: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=MetricSource.meta.value, server_default="META")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    rule: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    severity: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=AlertStatus.new.value, server_default="NEW")
    client_id: Mapped[int | None] = mapped_column(sa.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    ad_account_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("ad_accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    campaign_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    message: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    client: Mapped[Client | None] = relationship()
    ad_account: Mapped[AdAccount | None] = relationship()
    campaign: Mapped[Campaign | None] = relationship()


class AlertConfig(Base):
    __tablename__ = "alert_configs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    budget_low_threshold: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=1000, server_default="1000")
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True, server_default=sa.true())
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    user: Mapped[User] = relationship(back_populates="alert_config")


class MetaIntegration(Base):
    __tablename__ = "meta_integrations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=IntegrationStatus.disconnected.value, server_default="DISCONNECTED"
    )
    meta_user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    meta_user_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    access_token_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    user: Mapped[User] = relationship(back_populates="integration")

    @property
    def is_connected(self) -> bool:
        return self.status == IntegrationStatus.connected.value and bool(self.access_token_encrypted)
