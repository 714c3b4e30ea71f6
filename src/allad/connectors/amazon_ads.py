from __future__ import annotations

import asyncio
import gzip
import json
from typing import Any, Awaitable, Callable

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
from allad.models import AmazonData
from allad.platforms import client_credentials

REGION_BASE_URLS = {
    "NA": "https://advertising-api.amazon.com",
    "EU": "https://advertising-api-eu.amazon.com",
    "FE": "https://advertising-api-fe.amazon.com",
}
SP_CAMPAIGN_MEDIA_TYPE = "application/vnd.spCampaign.v3+json"
REPORT_MEDIA_TYPE = "application/vnd.createasyncreportrequest.v3+json"


class AmazonAdsAdapter:
    """
    Amazon Ads adapter (Sponsored Products v3).

    Every call is scoped to an advertising profile through the
    `Amazon-Advertising-API-Scope` header. Performance comes from the async
    reporting API: create, poll, then download the gzipped JSON.
    """

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    report_poll_interval_sec = 5.0
    report_max_polls = 60

    def __init__(self, ctx: AdapterContext, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.ctx = ctx
        self._sleep = sleep

    def _extras(self) -> AmazonData:
        extras = self.ctx.credential.extras
        return extras if isinstance(extras, AmazonData) else AmazonData()

    def _base_url(self) -> str:
        return REGION_BASE_URLS.get(self._extras().region.upper(), REGION_BASE_URLS["NA"])

    def _headers(self, profile_id: str | None = None, media_type: str | None = None) -> dict[str, str]:
        profile = profile_id or self._extras().profile_id
        if not profile:
            raise platform_error("amazon", PlatformErrorCode.INVALID_ACCOUNT, detail="no advertising profile id")
        creds = client_credentials("amazon")
        if creds is None:
            raise platform_error("amazon", PlatformErrorCode.CONFIG_ERROR, detail="amazon client id not configured")
        headers = {
            "Authorization": f"Bearer {self.ctx.credential.access_token}",
            "Amazon-Advertising-API-ClientId": creds[0],
            "Amazon-Advertising-API-Scope": str(profile),
        }
        if media_type:
            headers["Content-Type"] = media_type
            headers["Accept"] = media_type
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict | None = None,
        profile_id: str | None = None,
        media_type: str | None = None,
    ) -> Any:
        async with self.ctx.http_client() as client:
            r = await client.request(
                method,
                f"{self._base_url()}{path}",
                json=body,
                headers=self._headers(profile_id, media_type),
            )
            r.raise_for_status()
            return r.json() if r.content else {}

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        out: list[CampaignRecord] = []
        next_token: str | None = None
        while True:
            body: dict[str, Any] = {"stateFilter": {"include": ["ENABLED", "PAUSED"]}, "maxResults": 100}
            if next_token:
                body["nextToken"] = next_token
            obj = await self._request(
                "POST",
                "/sp/campaigns/list",
                body=body,
                profile_id=account_id,
                media_type=SP_CAMPAIGN_MEDIA_TYPE,
            )
            for c in obj.get("campaigns") or []:
                camp_id = str(c.get("campaignId") or "").strip()
                if not camp_id:
                    continue
                state = str(c.get("state") or "").upper() or None
                budget = (c.get("budget") or {}).get("budget")
                out.append(
                    CampaignRecord(
                        platform="amazon",
                        campaign_id=camp_id,
                        account_id=account_id or self._extras().profile_id,
                        name=c.get("name"),
                        status=state,
                        is_active=state == "ENABLED",
                        budget=to_float(budget) if budget is not None else None,
                        meta={"targeting_type": c.get("targetingType")} if c.get("targetingType") else {},
                    )
                )
            next_token = obj.get("nextToken")
            if not next_token:
                break
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        created = await self._request(
            "POST",
            "/reporting/reports",
            media_type=REPORT_MEDIA_TYPE,
            body={
                "name": f"allad campaign {campaign_id}",
                "startDate": date_range.start.isoformat(),
                "endDate": date_range.end.isoformat(),
                "configuration": {
                    "adProduct": "SPONSORED_PRODUCTS",
                    "groupBy": ["campaign"],
                    "columns": ["date", "campaignId", "impressions", "clicks", "cost", "purchases7d", "sales7d"],
                    "filters": [{"field": "campaignId", "values": [str(campaign_id)]}],
                    "reportTypeId": "spCampaigns",
                    "timeUnit": "DAILY",
                    "format": "GZIP_JSON",
                },
            },
        )
        report_id = str(created.get("reportId") or "")
        if not report_id:
            raise platform_error("amazon", PlatformErrorCode.DATA_ERROR, detail="report creation returned no id")

        url = None
        for _ in range(self.report_max_polls):
            status = await self._request("GET", f"/reporting/reports/{report_id}")
            state = str(status.get("status") or "").upper()
            if state == "COMPLETED":
                url = status.get("url")
                break
            if state == "FAILED":
                raise platform_error("amazon", PlatformErrorCode.DATA_ERROR, detail=str(status.get("failureReason")))
            await self._sleep(self.report_poll_interval_sec)
        if not url:
            raise platform_error("amazon", PlatformErrorCode.CONNECTION_ERROR, detail="report not ready in time")

        # The download URL is pre-signed; no advertising headers.
        async with self.ctx.http_client() as client:
            r = await client.get(str(url))
            r.raise_for_status()
            raw = r.content
        try:
            rows = json.loads(gzip.decompress(raw))
        except OSError:
            rows = json.loads(raw)

        out = [
            PerformanceRecord(
                campaign_id=str(row.get("campaignId") or campaign_id),
                date=str(row.get("date") or ""),
                impressions=to_int(row.get("impressions")),
                clicks=to_int(row.get("clicks")),
                spend=to_float(row.get("cost")),
                conversions=to_float(row.get("purchases7d")),
                revenue=to_float(row.get("sales7d")),
            )
            for row in rows or []
            if isinstance(row, dict)
        ]
        out.sort(key=lambda r: r.date)
        return out

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        obj = await self._request(
            "PUT",
            "/sp/campaigns",
            media_type=SP_CAMPAIGN_MEDIA_TYPE,
            body={
                "campaigns": [
                    {"campaignId": str(campaign_id), "budget": {"budget": float(amount), "budgetType": "DAILY"}}
                ]
            },
        )
        _raise_on_item_errors(obj)
        return {"platform": "amazon", "campaign_id": str(campaign_id), "budget": float(amount)}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        state = "ENABLED" if active else "PAUSED"
        obj = await self._request(
            "PUT",
            "/sp/campaigns",
            media_type=SP_CAMPAIGN_MEDIA_TYPE,
            body={"campaigns": [{"campaignId": str(campaign_id), "state": state}]},
        )
        _raise_on_item_errors(obj)
        return {"platform": "amazon", "campaign_id": str(campaign_id), "status": state}


def _raise_on_item_errors(obj: Any) -> None:
    # v3 batch endpoints answer 207 with per-item success/error lists.
    errors = ((obj or {}).get("campaigns") or {}).get("error") if isinstance(obj, dict) else None
    if errors:
        first = errors[0] if isinstance(errors, list) else errors
        raise platform_error("amazon", PlatformErrorCode.BAD_REQUEST, detail=json.dumps(first)[:500])
