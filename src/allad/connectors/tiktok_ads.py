from __future__ import annotations

import json
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
from allad.errors import ProviderResponseError
from allad.models import TikTokData
from allad.platforms import TIKTOK_API


class TikTokAdsAdapter:
    """TikTok Ads adapter (Business API v1.3, `{code, message, data}` envelopes)."""

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    def __init__(self, ctx: AdapterContext):
        self.ctx = ctx

    def _advertiser_id(self, account_id: str | None = None) -> str:
        if account_id:
            return str(account_id)
        extras = self.ctx.credential.extras
        if isinstance(extras, TikTokData) and extras.advertiser_ids:
            return extras.advertiser_ids[0]
        return self.ctx.credential.account_id

    def _headers(self) -> dict[str, str]:
        return {"Access-Token": self.ctx.credential.access_token}

    async def _request(self, method: str, path: str, *, params: dict | None = None, body: dict | None = None) -> dict:
        async with self.ctx.http_client() as client:
            r = await client.request(
                method,
                f"{TIKTOK_API}/{path.lstrip('/')}",
                params=params,
                json=body,
                headers=self._headers(),
            )
            r.raise_for_status()
            obj = r.json()
        if not isinstance(obj, dict) or obj.get("code") not in (0, "0"):
            raise ProviderResponseError(obj if isinstance(obj, dict) else {"message": "malformed response"})
        data = obj.get("data")
        return data if isinstance(data, dict) else {}

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        advertiser_id = self._advertiser_id(account_id)
        out: list[CampaignRecord] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                "campaign/get/",
                params={"advertiser_id": advertiser_id, "page": page, "page_size": 100},
            )
            for c in data.get("list") or []:
                camp_id = str(c.get("campaign_id") or "").strip()
                if not camp_id:
                    continue
                status = str(c.get("operation_status") or "") or None
                out.append(
                    CampaignRecord(
                        platform="tiktok",
                        campaign_id=camp_id,
                        account_id=advertiser_id,
                        name=c.get("campaign_name"),
                        status=status,
                        is_active=status == "ENABLE",
                        budget=to_float(c.get("budget")) if c.get("budget") is not None else None,
                        meta={"budget_mode": c.get("budget_mode")} if c.get("budget_mode") else {},
                    )
                )
            total_page = to_int((data.get("page_info") or {}).get("total_page"))
            if page >= max(total_page, 1):
                break
            page += 1
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        data = await self._request(
            "GET",
            "report/integrated/get/",
            params={
                "advertiser_id": self._advertiser_id(),
                "report_type": "BASIC",
                "data_level": "AUCTION_CAMPAIGN",
                "dimensions": json.dumps(["campaign_id", "stat_time_day"]),
                "metrics": json.dumps(["spend", "impressions", "clicks", "conversion", "total_purchase_value"]),
                "filtering": json.dumps(
                    [{"field_name": "campaign_ids", "filter_type": "IN", "filter_value": json.dumps([campaign_id])}]
                ),
                "start_date": date_range.start.isoformat(),
                "end_date": date_range.end.isoformat(),
                "page_size": 1000,
            },
        )
        out: list[PerformanceRecord] = []
        for row in data.get("list") or []:
            dims = row.get("dimensions") or {}
            m = row.get("metrics") or {}
            out.append(
                PerformanceRecord(
                    campaign_id=str(campaign_id),
                    date=str(dims.get("stat_time_day") or "")[:10],
                    impressions=to_int(m.get("impressions")),
                    clicks=to_int(m.get("clicks")),
                    spend=to_float(m.get("spend")),
                    conversions=to_float(m.get("conversion")),
                    revenue=to_float(m.get("total_purchase_value")),
                )
            )
        out.sort(key=lambda r: r.date)
        return out

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        await self._request(
            "POST",
            "campaign/update/",
            body={"advertiser_id": self._advertiser_id(), "campaign_id": str(campaign_id), "budget": float(amount)},
        )
        return {"platform": "tiktok", "campaign_id": str(campaign_id), "budget": float(amount)}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        status = "ENABLE" if active else "DISABLE"
        await self._request(
            "POST",
            "campaign/status/update/",
            body={
                "advertiser_id": self._advertiser_id(),
                "campaign_ids": [str(campaign_id)],
                "operation_status": status,
            },
        )
        return {"platform": "tiktok", "campaign_id": str(campaign_id), "status": status}
