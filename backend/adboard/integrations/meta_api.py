from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx

from adboard.settings import get_settings

RATE_LIMIT_CODES = {80004}
RATE_LIMIT_MARKERS = ("rate-limiting", "too many calls")

INSIGHT_FIELDS = "spend,impressions,clicks,actions,date_start,date_stop"
CAMPAIGN_FIELDS = "id,name,objective,status,effective_status,daily_budget,lifetime_budget,updated_time"
CAMPAIGN_DETAIL_FIELDS = (
    "id,name,status,effective_status,issues_info,daily_budget,lifetime_budget,budget_remaining"
)
ADSET_FIELDS = "id,name,daily_budget,lifetime_budget,budget_remaining,status,effective_status"
AD_ACCOUNT_FIELDS = "id,name,currency,timezone_name,account_status,spend_cap"


class MetaApiError(Exception):
    """Graph API failure carrying the provider's structured error, when present."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        subcode: int | None = None,
        fbtrace_id: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.fbtrace_id = fbtrace_id
        self.status_code = status_code

    @classmethod
    def from_body(cls, body: Any, status_code: int | None = None, context: str = "Meta API error") -> "MetaApiError":
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return cls(f"{context}: HTTP {status_code}", status_code=status_code)
        return cls(
            f"{context}: {error.get('message') or 'unknown error'}",
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            fbtrace_id=error.get("fbtrace_id"),
            status_code=status_code,
        )

    @property
    def is_rate_limit(self) -> bool:
        return is_rate_limit_error(self)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True when a failure matches the provider's rate-limit signature."""
    code = getattr(exc, "code", None)
    if code in RATE_LIMIT_CODES:
        return True
    message = str(getattr(exc, "message", None) or exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def normalize_account_id(ad_account_id: str) -> str:
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


class MetaAdsClient:
    """Thin async client for the Graph endpoints the dashboard consumes.

    Every method takes the plaintext access token explicitly so tokens are
    decrypted just-in-time by the caller and never held by the client.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.meta_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.meta_api_timeout_sec
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        data: dict | None = None,
        context: str = "Meta API error",
    ) -> dict:
        async with self._client() as client:
            resp = await client.request(method, url, params=params, data=data)
        try:
            body = resp.json()
        except ValueError:
            raise MetaApiError(f"{context}: malformed response (HTTP {resp.status_code})", status_code=resp.status_code)
        if resp.status_code >= 400 or (isinstance(body, dict) and "error" in body):
            raise MetaApiError.from_body(body, resp.status_code, context)
        return body

    async def _get(self, path: str, token: str, params: dict | None = None, context: str = "Meta API error") -> dict:
        query = {"access_token": token, **(params or {})}
        return await self._request("GET", f"{self.base_url}/{path.lstrip('/')}", params=query, context=context)

    async def _get_all(self, path: str, token: str, params: dict, context: str) -> List[Dict[str, Any]]:
        rows: list[dict] = []
        page = await self._get(path, token, params, context=context)
        while True:
            rows.extend(page.get("data") or [])
            next_url = (page.get("paging") or {}).get("next")
            if not next_url:
                break
            # paging.next already carries the token and the original query
            page = await self._request("GET", next_url, context=context)
        return rows

    def oauth_url(self, state: str) -> str:
        settings = get_settings()
        params = {
            "client_id": settings.meta_app_id or "",
            "redirect_uri": settings.meta_redirect_uri or "",
            "state": state,
            "scope": settings.meta_oauth_scopes,
        }
        return str(httpx.URL(settings.meta_oauth_dialog_url, params=params))

    async def exchange_code_for_token(self, code: str) -> dict:
        settings = get_settings()
        params = {
            "client_id": settings.meta_app_id or "",
            "client_secret": settings.meta_app_secret or "",
            "redirect_uri": settings.meta_redirect_uri or "",
            "code": code,
        }
        return await self._request(
            "GET", f"{self.base_url}/oauth/access_token", params=params, context="Meta token error"
        )

    async def exchange_for_long_lived_token(self, short_token: str) -> dict:
        settings = get_settings()
        params = {
            "grant_type": "fb_exchange_token",
            "client_id": settings.meta_app_id or "",
            "client_secret": settings.meta_app_secret or "",
            "fb_exchange_token": short_token,
        }
        return await self._request(
            "GET", f"{self.base_url}/oauth/access_token", params=params, context="Meta long-lived token error"
        )

    async def fetch_me(self, token: str) -> dict:
        return await self._get("me", token, {"fields": "id,name"}, context="Meta user error")

    async def fetch_ad_accounts(self, token: str) -> List[Dict[str, Any]]:
        return await self._get_all(
            "me/adaccounts", token, {"fields": AD_ACCOUNT_FIELDS}, context="Meta ad accounts error"
        )

    async def fetch_campaigns(self, token: str, ad_account_id: str) -> List[Dict[str, Any]]:
        return await self._get_all(
            f"{normalize_account_id(ad_account_id)}/campaigns",
            token,
            {"fields": CAMPAIGN_FIELDS},
            context="Meta campaigns error",
        )

    async def fetch_campaign_details(self, token: str, campaign_id: str) -> dict:
        return await self._get(
            campaign_id, token, {"fields": CAMPAIGN_DETAIL_FIELDS}, context="Meta campaign detail error"
        )

    async def fetch_campaign_adsets(self, token: str, campaign_id: str) -> List[Dict[str, Any]]:
        return await self._get_all(
            f"{campaign_id}/adsets", token, {"fields": ADSET_FIELDS}, context="Meta ad sets error"
        )

    async def fetch_campaign_insights(
        self,
        token: str,
        campaign_id: str,
        since: str,
        until: str,
        increment: str | None = "1",
    ) -> List[Dict[str, Any]]:
        params = {
            "time_range": json.dumps({"since": since, "until": until}),
            "fields": INSIGHT_FIELDS,
        }
        if increment:
            params["time_increment"] = increment
        return await self._get_all(
            f"{campaign_id}/insights", token, params, context="Meta campaign insights error"
        )

    async def fetch_all_insights(
        self,
        token: str,
        ad_account_id: str,
        since: str,
        until: str,
        *,
        level: str | None = None,
    ) -> List[Dict[str, Any]]:
        """Daily insights for an ad account, every page drained."""
        fields = INSIGHT_FIELDS
        params = {
            "time_range": json.dumps({"since": since, "until": until}),
            "time_increment": "1",
        }
        if level:
            params["level"] = level
            fields = f"{level}_id,{fields}"
        params["fields"] = fields
        return await self._get_all(
            f"{normalize_account_id(ad_account_id)}/insights", token, params, context="Meta insights error"
        )

    async def update_campaign_status(self, token: str, campaign_id: str, status: str) -> dict:
        return await self._request(
            "POST",
            f"{self.base_url}/{campaign_id}",
            data={"access_token": token, "status": status},
            context="Meta update campaign error",
        )


_default_client: MetaAdsClient | None = None


def get_meta_client() -> MetaAdsClient:
    global _default_client
    if _default_client is None:
        _default_client = MetaAdsClient()
    return _default_client
