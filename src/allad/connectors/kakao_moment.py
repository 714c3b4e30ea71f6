from __future__ import annotations

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
from allad.models import KakaoData

MOMENT_API = "https://apis.moment.kakao.com/openapi/v4"


def _ymd(d: Any) -> str:
    return d.isoformat().replace("-", "")


def _day_iso(raw: Any) -> str:
    s = str(raw or "")
    if len(s) == 8 and s.isdigit():
        return f"{s[0:4]}-{s[4:6]}-{s[6:8]}"
    return s[:10]


class KakaoMomentAdapter:
    """Kakao Moment adapter (openapi v4). Calls are scoped by the `adAccountId` header."""

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    def __init__(self, ctx: AdapterContext):
        self.ctx = ctx

    def _ad_account_id(self, account_id: str | None = None) -> str:
        if account_id:
            return str(account_id)
        extras = self.ctx.credential.extras
        if isinstance(extras, KakaoData) and extras.ad_account_id:
            return extras.ad_account_id
        raise platform_error("kakao", PlatformErrorCode.INVALID_ACCOUNT, detail="no moment ad account id")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        body: dict | None = None,
        account_id: str | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self.ctx.credential.access_token}",
            "adAccountId": self._ad_account_id(account_id),
        }
        async with self.ctx.http_client() as client:
            r = await client.request(method, f"{MOMENT_API}/{path.lstrip('/')}", params=params, json=body, headers=headers)
            r.raise_for_status()
            return r.json() if r.content else {}

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        ad_account_id = self._ad_account_id(account_id)
        obj = await self._request("GET", "campaigns", account_id=ad_account_id)
        rows = obj.get("content") if isinstance(obj, dict) else obj
        out: list[CampaignRecord] = []
        for c in rows or []:
            camp_id = str(c.get("id") or "").strip()
            if not camp_id:
                continue
            config = str(c.get("userConfig") or c.get("config") or "").upper()
            budget = c.get("dailyBudgetAmount")
            out.append(
                CampaignRecord(
                    platform="kakao",
                    campaign_id=camp_id,
                    account_id=ad_account_id,
                    name=c.get("name"),
                    status=str(c.get("statusDescription") or config or "") or None,
                    is_active=config == "ON",
                    budget=to_float(budget) if budget is not None else None,
                )
            )
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        obj = await self._request(
            "GET",
            "campaigns/report",
            params={
                "campaignId": str(campaign_id),
                "start": _ymd(date_range.start),
                "end": _ymd(date_range.end),
                "timeUnit": "DAY",
                "metricsGroup": "BASIC",
            },
        )
        out: list[PerformanceRecord] = []
        for row in (obj.get("data") if isinstance(obj, dict) else None) or []:
            m = row.get("metrics") or {}
            out.append(
                PerformanceRecord(
                    campaign_id=str(campaign_id),
                    date=_day_iso(row.get("start")),
                    impressions=to_int(m.get("imp")),
                    clicks=to_int(m.get("click")),
                    spend=to_float(m.get("cost")),
                    conversions=to_float(m.get("conv_purchase_7d")),
                    revenue=to_float(m.get("conv_purchase_p_7d")),
                )
            )
        return out

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        await self._request(
            "PUT",
            "campaigns/dailyBudgetAmount",
            body={"id": int(campaign_id), "dailyBudgetAmount": int(round(amount))},
        )
        return {"platform": "kakao", "campaign_id": str(campaign_id), "budget": float(amount)}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        config = "ON" if active else "OFF"
        await self._request("PUT", "campaigns/onOff", body={"id": int(campaign_id), "config": config})
        return {"platform": "kakao", "campaign_id": str(campaign_id), "status": config}
