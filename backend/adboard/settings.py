from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "adboard"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "ADBOARD_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/adboard",
        validation_alias=AliasChoices("DATABASE_URL", "ADBOARD_DATABASE_URL"),
    )
    encryption_key: str | None = Field(default=None, validation_alias=AliasChoices("ENCRYPTION_KEY", "ADBOARD_ENCRYPTION_KEY"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "ADBOARD_CRON_SECRET"))
    admin_password: str | None = Field(default=None, validation_alias=AliasChoices("ADMIN_PASSWORD", "ADBOARD_ADMIN_PASSWORD"))
    meta_graph_version: str = Field(default="v22.0", validation_alias=AliasChoices("META_GRAPH_VERSION", "ADBOARD_META_GRAPH_VERSION"))
    meta_api_timeout_sec: float = Field(default=20.0, validation_alias=AliasChoices("META_API_TIMEOUT_SEC", "ADBOARD_META_API_TIMEOUT_SEC"))
    meta_app_id: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_ID", "ADBOARD_META_APP_ID"))
    meta_app_secret: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_SECRET", "ADBOARD_META_APP_SECRET"))
    meta_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("META_REDIRECT_URI", "ADBOARD_META_REDIRECT_URI"))
    meta_oauth_scopes: str = Field(default="ads_read,business_management,read_insights", validation_alias=AliasChoices("META_OAUTH_SCOPES", "ADBOARD_META_OAUTH_SCOPES"))
    integrations_page_url: str = Field(default="/integrations", validation_alias=AliasChoices("INTEGRATIONS_PAGE_URL", "ADBOARD_INTEGRATIONS_PAGE_URL"))
    default_timezone: str = Field(default="America/Sao_Paulo", validation_alias=AliasChoices("DEFAULT_TIMEZONE", "ADBOARD_DEFAULT_TIMEZONE"))
    default_budget_low_threshold: int = Field(default=1000, validation_alias=AliasChoices("DEFAULT_BUDGET_LOW_THRESHOLD", "ADBOARD_DEFAULT_BUDGET_LOW_THRESHOLD"))
    alert_max_detail_calls: int = Field(default=15, validation_alias=AliasChoices("ALERT_MAX_DETAIL_CALLS", "ADBOARD_ALERT_MAX_DETAIL_CALLS"))
    stale_sync_hours: int = Field(default=12, validation_alias=AliasChoices("STALE_SYNC_HOURS", "ADBOARD_STALE_SYNC_HOURS"))
    snapshot_lookback_days: int = Field(default=14, validation_alias=AliasChoices("SNAPSHOT_LOOKBACK_DAYS", "ADBOARD_SNAPSHOT_LOOKBACK_DAYS"))
    meta_sync_lookback_days: int = Field(default=90, validation_alias=AliasChoices("META_SYNC_LOOKBACK_DAYS", "ADBOARD_META_SYNC_LOOKBACK_DAYS"))
    live_fetch_concurrency: int = Field(default=5, validation_alias=AliasChoices("LIVE_FETCH_CONCURRENCY", "ADBOARD_LIVE_FETCH_CONCURRENCY"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "ADBOARD_SCHEDULER_ENABLED"))
    alert_sync_interval_minutes: int = Field(default=60, validation_alias=AliasChoices("ALERT_SYNC_INTERVAL_MINUTES", "ADBOARD_ALERT_SYNC_INTERVAL_MINUTES"))
    meta_sync_interval_hours: int = Field(default=6, validation_alias=AliasChoices("META_SYNC_INTERVAL_HOURS", "ADBOARD_META_SYNC_INTERVAL_HOURS"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def meta_base_url(self) -> str:
        return f"https://graph.facebook.com/{self.meta_graph_version}"

    @property
    def meta_oauth_dialog_url(self) -> str:
        return f"https://www.facebook.com/{self.meta_graph_version}/dialog/oauth"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
