from __future__ import annotations

import hashlib
import hmac
import json
import re
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
from allad.errors import ProviderResponseError
from allad.models import FacebookData
from allad.platforms import GRAPH_VERSION, client_credentials

GRAPH_BASE_URL = "https://graph.facebook.com"

# Reasonable defaults for ecommerce conversions.
PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase")


def _act_id(raw: Any) -> str:
    # keep digits only (UI sometimes includes separators)
    return re.sub(r"\D+", "", str(raw or "").removeprefix("act_"))


def _action_sum(items: Any, types: tuple[str, ...]) -> float:
    if not isinstance(items, list):
        return 0.0
    return sum(
        to_float(it.get("value"))
        for it in items
        if isinstance(it, dict) and str(it.get("action_type") or "") in types
    )


class MetaAdsAdapter:
    """
    Meta Ads adapter (Graph API).

    Budgets are passed through in the account currency's minor unit, as the
    Graph API reports them.
    """

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    def __init__(self, ctx: AdapterContext):
        self.ctx = ctx

    def _access_token(self) -> str:
        return self.ctx.credential.access_token

    def _appsecret_proof(self) -> str | None:
        # https://developers.facebook.com/docs/graph-api/securing-requests/
        creds = client_credentials("facebook")
        token = self._access_token()
        if not creds or not token:
            return None
        return hmac.new(
            creds[1].encode("utf-8", errors="strict"),
            token.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).hexdigest()

    def _auth_params(self) -> dict[str, Any]:
        p: dict[str, Any] = {"access_token": self._access_token()}
        proof = self._appsecret_proof()
        if proof:
            p["appsecret_proof"] = proof
        return p

    @staticmethod
    def _check(r: httpx.Response) -> Any:
        r.raise_for_status()
        obj = r.json()
        if isinstance(obj, dict) and isinstance(obj.get("error"), dict):
            raise ProviderResponseError(obj["error"], status_code=r.status_code)
        return obj

    async def _iter_graph_data(self, *, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Return the full data list for a Graph API collection endpoint, following cursor pagination."""
        p = dict(params)
        p.update(self._auth_params())
        url: str | None = f"{GRAPH_BASE_URL}/{GRAPH_VERSION}/{path.lstrip('/')}"
        out: list[dict[str, Any]] = []
        async with self.ctx.http_client() as client:
            next_params: dict[str, Any] | None = p
            while url:
                obj = self._check(await client.get(url, params=next_params))
                data = obj.get("data") if isinstance(obj, dict) else None
                if isinstance(data, list):
                    out.extend(it for it in data if isinstance(it, dict))
                paging = obj.get("paging") if isinstance(obj, dict) else None
                next_url = paging.get("next") if isinstance(paging, dict) else None
                url = str(next_url) if next_url else None
                next_params = None  # next URL already includes query params.
        return out

    async def _post(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        url = f"{GRAPH_BASE_URL}/{GRAPH_VERSION}/{path.lstrip('/')}"
        async with self.ctx.http_client() as client:
            obj = self._check(await client.post(url, data={**data, **self._auth_params()}))
        return obj if isinstance(obj, dict) else {}

    async def _ad_account_ids(self, account_id: str | None) -> list[str]:
        extras = self.ctx.credential.extras
        explicit = account_id or (extras.ad_account_id if isinstance(extras, FacebookData) else None)
        if explicit:
            return [_act_id(explicit)]
        accounts = await self._iter_graph_data(path="me/adaccounts", params={"fields": "account_id,name"})
        return [_act_id(a.get("account_id") or a.get("id")) for a in accounts if a.get("account_id") or a.get("id")]

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        out: list[CampaignRecord] = []
        for act in await self._ad_account_ids(account_id):
            rows = await self._iter_graph_data(
                path=f"act_{act}/campaigns",
                params={"fields": "id,name,status,effective_status,objective,daily_budget", "limit": 200},
            )
            for c in rows:
                camp_id = str(c.get("id") or "").strip()
                if not camp_id:
                    continue
                status = str(c.get("effective_status") or c.get("status") or "").strip() or None
                budget = c.get("daily_budget")
                out.append(
                    CampaignRecord(
                        platform="facebook",
                        campaign_id=camp_id,
                        account_id=act,
                        name=str(c.get("name") or "") or None,
                        status=status,
                        is_active=status == "ACTIVE",
                        budget=to_float(budget) if budget is not None else None,
                        meta={"objective": c.get("objective")} if c.get("objective") else {},
                    )
                )
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        rows = await self._iter_graph_data(
            path=f"{campaign_id}/insights",
            params={
                "fields": "impressions,clicks,spend,actions,action_values",
                "time_range": json.dumps(
                    {"since": date_range.start.isoformat(), "until": date_range.end.isoformat()}
                ),
                "time_increment": 1,
            },
        )
        return [
            PerformanceRecord(
                campaign_id=str(campaign_id),
                date=str(r.get("date_start") or ""),
                impressions=to_int(r.get("impressions")),
                clicks=to_int(r.get("clicks")),
                spend=to_float(r.get("spend")),
                conversions=_action_sum(r.get("actions"), PURCHASE_ACTION_TYPES),
                revenue=_action_sum(r.get("action_values"), PURCHASE_ACTION_TYPES),
            )
            for r in rows
        ]

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        resp = await self._post(str(campaign_id), {"daily_budget": str(int(round(amount)))})
        return {"platform": "facebook", "campaign_id": str(campaign_id), "budget": float(amount), "response": resp}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        status = "ACTIVE" if active else "PAUSED"
        resp = await self._post(str(campaign_id), {"status": status})
        return {"platform": "facebook", "campaign_id": str(campaign_id), "status": status, "response": resp}
