from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

import httpx

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
from allad.models import NaverData

_DEFAULT_BASE_URL = "https://api.searchad.naver.com"
_STAT_FIELDS = ["impCnt", "clkCnt", "salesAmt", "ccnt", "convAmt"]


class _NaverSearchAdClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        secret_key: str,
        customer_id: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self.customer_id = customer_id
        self.timeout = timeout
        self.transport = transport

    def _signature(self, timestamp_ms: str, method: str, uri: str) -> str:
        msg = f"{timestamp_ms}.{method}.{uri}"
        digest = hmac.new(
            self.secret_key.encode("utf-8", errors="strict"),
            msg.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii", errors="strict")

    def _headers(self, method: str, uri: str) -> dict[str, str]:
        ts = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json; charset=UTF-8",
            "X-Timestamp": ts,
            "X-API-KEY": self.api_key,
            "X-Customer": str(self.customer_id),
            "X-Signature": self._signature(ts, method, uri),
        }

    async def request_json(
        self,
        *,
        method: str,
        uri: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | list[dict[str, Any]] | None = None,
    ) -> Any:
        url = f"{self.base_url}{uri}"
        headers = self._headers(method, uri)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.request(method, url, params=params, json=json_body, headers=headers)
            r.raise_for_status()
        if not r.content:
            return None
        return r.json()


class NaverSearchAdAdapter:
    """
    Naver SearchAd adapter.

    The SearchAd API does not accept the Naver login token; it signs every
    request with the customer's API key pair stored on the credential.
    """

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    def __init__(self, ctx: AdapterContext, *, base_url: str = _DEFAULT_BASE_URL):
        self.ctx = ctx
        self.base_url = base_url

    def _build_client(self, account_id: str | None = None) -> _NaverSearchAdClient:
        extras = self.ctx.credential.extras
        data = extras if isinstance(extras, NaverData) else NaverData()
        customer_id = account_id or data.customer_id
        if not data.api_key or not data.secret_key or not customer_id:
            raise platform_error(
                "naver",
                PlatformErrorCode.CONFIG_ERROR,
                detail="naver searchad api_key, secret_key and customer_id are required",
            )
        return _NaverSearchAdClient(
            base_url=self.base_url,
            api_key=data.api_key,
            secret_key=data.secret_key,
            customer_id=str(customer_id),
            timeout=self.ctx.settings.http_timeout_sec,
            transport=self.ctx.transport,
        )

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        client = self._build_client(account_id)
        rows = await client.request_json(method="GET", uri="/ncc/campaigns")
        out: list[CampaignRecord] = []
        for c in rows if isinstance(rows, list) else []:
            camp_id = str(c.get("nccCampaignId") or "").strip()
            if not camp_id:
                continue
            locked = bool(c.get("userLock"))
            out.append(
                CampaignRecord(
                    platform="naver",
                    campaign_id=camp_id,
                    account_id=client.customer_id,
                    name=c.get("name"),
                    status=str(c.get("status") or "") or None,
                    is_active=not locked,
                    budget=to_float(c.get("dailyBudget")) if c.get("useDailyBudget") else None,
                    meta={"campaign_tp": c.get("campaignTp")} if c.get("campaignTp") else {},
                )
            )
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        client = self._build_client()
        obj = await client.request_json(
            method="GET",
            uri="/stats",
            params={
                "id": str(campaign_id),
                "fields": json.dumps(_STAT_FIELDS),
                "timeRange": json.dumps(
                    {"since": date_range.start.isoformat(), "until": date_range.end.isoformat()}
                ),
                "timeIncrement": "1",
            },
        )
        rows = obj.get("data") if isinstance(obj, dict) else None
        return [
            PerformanceRecord(
                campaign_id=str(campaign_id),
                date=str(r.get("dateStart") or "")[:10],
                impressions=to_int(r.get("impCnt")),
                clicks=to_int(r.get("clkCnt")),
                spend=to_float(r.get("salesAmt")),
                conversions=to_float(r.get("ccnt")),
                revenue=to_float(r.get("convAmt")),
            )
            for r in rows or []
            if isinstance(r, dict)
        ]

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        client = self._build_client()
        new_budget = int(round(amount))
        after_data = await client.request_json(
            method="PUT",
            uri=f"/ncc/campaigns/{campaign_id}",
            params={"fields": "budget"},
            json_body={
                "nccCampaignId": str(campaign_id),
                "dailyBudget": new_budget,
                "useDailyBudget": True,
            },
        )
        after_data = after_data if isinstance(after_data, dict) else {}
        return {
            "platform": "naver",
            "campaign_id": str(campaign_id),
            "budget": float(after_data.get("dailyBudget", new_budget)),
        }

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        client = self._build_client()
        user_lock = not active
        after_data = await client.request_json(
            method="PUT",
            uri=f"/ncc/campaigns/{campaign_id}",
            params={"fields": "userLock"},
            json_body={"nccCampaignId": str(campaign_id), "userLock": user_lock},
        )
        after_data = after_data if isinstance(after_data, dict) else {}
        return {
            "platform": "naver",
            "campaign_id": str(campaign_id),
            "status": "PAUSED" if after_data.get("userLock", user_lock) else "ACTIVE",
        }
