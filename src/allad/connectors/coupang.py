from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any

from allad.connectors.base import (
    AdapterCapabilities,
    AdapterContext,
    CampaignRecord,
    DateRange,
    PerformanceRecord,
    to_float,
    to_int,
)
from allad.errors import PlatformErrorCode, platform_error
from allad.models import CoupangData

_BASE_URL = "https://api-gateway.coupang.com"


class _CoupangClient:
    """Thin wrapper around Coupang Wing Open API with HMAC-SHA256 auth."""

    def __init__(self, ctx: AdapterContext, *, access_key: str, secret_key: str):
        self.ctx = ctx
        self.access_key = access_key
        self.secret_key = secret_key

    def _authorization_header(self, method: str, path: str, query: str) -> str:
        now = datetime.now(tz=timezone.utc).strftime("%y%m%dT%H%M%SZ")
        message = f"{now}{method}{path}{query}"
        signature = hmac.new(
            self.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return (
            f"CEA algorithm=HmacSHA256, access-key={self.access_key}, "
            f"signed-date={now}, signature={signature}"
        )

    async def request_json(self, method: str, path: str, params: dict | None = None) -> Any:
        query = ""
        if params:
            query = "&".join(f"{k}={v}" for k, v in sorted(params.items()))

        auth = self._authorization_header(method.upper(), path, query)
        url = _BASE_URL + path
        if query:
            url = f"{url}?{query}"

        async with self.ctx.http_client() as client:
            resp = await client.request(method, url, headers={"Authorization": auth})
            resp.raise_for_status()
            return resp.json()


class CoupangManualAdapter:
    """
    Coupang Ads has no public campaign API. Campaigns and daily metrics are
    entered by the team and kept in the local campaign tables; this adapter
    reads them back so Coupang looks like any other platform to callers.
    The Wing API keys are only used to prove the seller account is real.
    """

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
        manual=True,
    )

    def __init__(self, ctx: AdapterContext):
        self.ctx = ctx

    def _repo(self):
        if self.ctx.repo is None:
            raise platform_error("coupang", PlatformErrorCode.CONFIG_ERROR, detail="manual adapter needs a repo")
        return self.ctx.repo

    def _extras(self) -> CoupangData:
        extras = self.ctx.credential.extras
        return extras if isinstance(extras, CoupangData) else CoupangData()

    async def verify_keys(self) -> dict[str, Any]:
        """One signed Wing API read. A 401 here means the key pair is wrong."""
        data = self._extras()
        if not data.vendor_id or not data.secret_key or not self.ctx.credential.access_token:
            raise platform_error("coupang", PlatformErrorCode.CONFIG_ERROR, detail="vendor_id and key pair required")
        client = _CoupangClient(
            self.ctx,
            access_key=self.ctx.credential.access_token,
            secret_key=data.secret_key,
        )
        day = datetime.now(tz=timezone.utc).date().isoformat()
        await client.request_json(
            "GET",
            f"/v2/providers/openapi/apis/api/v4/vendors/{data.vendor_id}/ordersheets",
            params={
                "createdAtFrom": f"{day}T00:00",
                "createdAtTo": f"{day}T23:59",
                "searchType": "timeFrame",
                "status": "ACCEPT",
                "maxPerPage": "1",
            },
        )
        return {"platform": "coupang", "vendor_id": data.vendor_id, "verified": True}

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        rows = self._repo().list_campaigns(self.ctx.credential.team_id, "coupang")
        return [
            CampaignRecord(
                platform="coupang",
                campaign_id=str(r["platform_campaign_id"]),
                account_id=r.get("account_id"),
                name=r.get("name"),
                status=r.get("status"),
                is_active=bool(r.get("is_active")),
                budget=r.get("budget"),
            )
            for r in rows
            if not account_id or r.get("account_id") == account_id
        ]

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        rows = self._repo().list_campaign_metrics(
            self.ctx.credential.team_id,
            "coupang",
            str(campaign_id),
            start=date_range.start.isoformat(),
            end=date_range.end.isoformat(),
        )
        return [
            PerformanceRecord(
                campaign_id=str(campaign_id),
                date=str(r["date"]),
                impressions=to_int(r.get("impressions")),
                clicks=to_int(r.get("clicks")),
                spend=to_float(r.get("spend")),
                conversions=to_float(r.get("conversions")),
                revenue=to_float(r.get("revenue")),
            )
            for r in rows
        ]

    # Writes land in the local mirror; there is no remote side to push to.

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        self._repo().update_campaign_budget(self.ctx.credential.team_id, "coupang", str(campaign_id), amount)
        return {"platform": "coupang", "campaign_id": str(campaign_id), "budget": float(amount), "manual": True}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        self._repo().update_campaign_status(self.ctx.credential.team_id, "coupang", str(campaign_id), active)
        return {
            "platform": "coupang",
            "campaign_id": str(campaign_id),
            "status": "ACTIVE" if active else "PAUSED",
            "manual": True,
        }
