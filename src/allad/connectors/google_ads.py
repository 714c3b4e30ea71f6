from __future__ import annotations

import asyncio
import re
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
from allad.models import GoogleData
from allad.platforms import client_credentials, google_developer_token


def _normalize_customer_id(raw: Any) -> str:
    # Google Ads customer id is digits only (UI shows hyphens).
    return re.sub(r"\D+", "", str(raw or ""))


def _micros_to_currency(v: Any) -> float:
    return to_float(v) / 1_000_000.0


def _enum_name(v: Any) -> str:
    return str(getattr(v, "name", v) or "")


class GoogleAdsAdapter:
    """
    Google Ads adapter.

    Uses GAQL and mutates through the official `google-ads` client, built from
    the credential's refresh token. The client is blocking, so every call runs
    in a worker thread.
    """

    capabilities = AdapterCapabilities(
        read_campaigns=True,
        read_performance=True,
        write_budget=True,
        write_status=True,
    )

    def __init__(self, ctx: AdapterContext):
        self.ctx = ctx

    def _extras(self) -> GoogleData:
        extras = self.ctx.credential.extras
        return extras if isinstance(extras, GoogleData) else GoogleData()

    def _google_client(self):
        try:
            from google.ads.googleads.client import GoogleAdsClient  # type: ignore
        except Exception as e:  # noqa: BLE001
            raise RuntimeError("Missing dependency: google-ads") from e

        developer_token = google_developer_token()
        creds = client_credentials("google")
        refresh_token = self.ctx.credential.refresh_token
        if not developer_token or creds is None or not refresh_token:
            raise platform_error(
                "google",
                PlatformErrorCode.CONFIG_ERROR,
                detail="google-ads client needs developer token, oauth client and refresh token",
            )
        cfg: dict[str, Any] = {
            "developer_token": developer_token,
            "client_id": creds[0],
            "client_secret": creds[1],
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        login_customer_id = _normalize_customer_id(self._extras().login_customer_id)
        if login_customer_id:
            cfg["login_customer_id"] = login_customer_id
        return GoogleAdsClient.load_from_dict(cfg)

    def _google_customer_id(self, account_id: str | None = None) -> str:
        raw = account_id or self._extras().customer_id or self.ctx.credential.account_id
        cid = _normalize_customer_id(raw)
        if not cid:
            raise platform_error("google", PlatformErrorCode.INVALID_ACCOUNT, detail="no google ads customer id")
        return cid

    def _query_single(self, client: Any, cid: str, gaql: str) -> Any:
        """Run a GAQL query and return the first result row, or None."""
        ga_service = client.get_service("GoogleAdsService")
        q = gaql.strip()
        if "LIMIT" not in q.upper():
            q = q + " LIMIT 1"
        response = ga_service.search(customer_id=cid, query=q)
        for row in response:
            return row
        return None

    # ---- reads ---- #

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        return await asyncio.to_thread(self._fetch_campaigns, account_id)

    def _fetch_campaigns(self, account_id: str | None) -> list[CampaignRecord]:
        cid = self._google_customer_id(account_id)
        client = self._google_client()
        ga_service = client.get_service("GoogleAdsService")
        query = """
        SELECT
          campaign.id,
          campaign.name,
          campaign.status,
          campaign_budget.amount_micros
        FROM campaign
        WHERE campaign.status != 'REMOVED'
        """
        out: list[CampaignRecord] = []
        for row in ga_service.search(customer_id=cid, query=query):
            camp_id = str(getattr(row.campaign, "id", "") or "").strip()
            if not camp_id:
                continue
            status = _enum_name(getattr(row.campaign, "status", "")) or None
            out.append(
                CampaignRecord(
                    platform="google",
                    campaign_id=camp_id,
                    account_id=cid,
                    name=str(getattr(row.campaign, "name", "") or "") or None,
                    status=status,
                    is_active=status == "ENABLED",
                    budget=_micros_to_currency(getattr(row.campaign_budget, "amount_micros", 0)),
                    meta={"source": "google_ads_api"},
                )
            )
        return out

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        return await asyncio.to_thread(self._fetch_performance, campaign_id, date_range)

    def _fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        cid = self._google_customer_id()
        client = self._google_client()
        ga_service = client.get_service("GoogleAdsService")
        entity_id = _normalize_customer_id(campaign_id)
        query = f"""
        SELECT
          segments.date,
          metrics.impressions,
          metrics.clicks,
          metrics.cost_micros,
          metrics.conversions,
          metrics.conversions_value
        FROM campaign
        WHERE campaign.id = {entity_id}
          AND segments.date BETWEEN '{date_range.start.isoformat()}' AND '{date_range.end.isoformat()}'
        """
        out: list[PerformanceRecord] = []
        for row in ga_service.search(customer_id=cid, query=query):
            out.append(
                PerformanceRecord(
                    campaign_id=str(campaign_id),
                    date=str(getattr(row.segments, "date", "") or ""),
                    impressions=to_int(getattr(row.metrics, "impressions", 0)),
                    clicks=to_int(getattr(row.metrics, "clicks", 0)),
                    spend=_micros_to_currency(getattr(row.metrics, "cost_micros", 0)),
                    conversions=to_float(getattr(row.metrics, "conversions", 0)),
                    revenue=to_float(getattr(row.metrics, "conversions_value", 0)),
                )
            )
        return out

    # ---- writes ---- #

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        return await asyncio.to_thread(self._update_budget, campaign_id, amount)

    def _update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        cid = self._google_customer_id()
        client = self._google_client()
        entity_id = _normalize_customer_id(campaign_id)
        new_amount_micros = int(round(float(amount) * 1_000_000))

        row = self._query_single(
            client, cid,
            f"SELECT campaign.campaign_budget FROM campaign WHERE campaign.id = {entity_id}",
        )
        if not row:
            raise platform_error("google", PlatformErrorCode.NOT_FOUND, detail=f"campaign {entity_id} not found")
        budget_resource = str(
            getattr(getattr(row, "campaign", None), "campaign_budget", "") or ""
        ).strip()
        if not budget_resource:
            raise platform_error("google", PlatformErrorCode.DATA_ERROR, detail=f"no budget for campaign {entity_id}")

        svc = client.get_service("CampaignBudgetService")
        op = client.get_type("CampaignBudgetOperation")
        op.update.resource_name = budget_resource
        op.update.amount_micros = new_amount_micros
        op.update_mask.paths.extend(["amount_micros"])
        svc.mutate_campaign_budgets(customer_id=cid, operations=[op])
        return {
            "platform": "google",
            "campaign_id": entity_id,
            "budget": float(amount),
            "amount_micros": new_amount_micros,
            "resource_name": budget_resource,
        }

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        return await asyncio.to_thread(self._update_status, campaign_id, active)

    def _update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        cid = self._google_customer_id()
        client = self._google_client()
        entity_id = _normalize_customer_id(campaign_id)
        new_status_name = "ENABLED" if active else "PAUSED"

        svc = client.get_service("CampaignService")
        op = client.get_type("CampaignOperation")
        op.update.resource_name = f"customers/{cid}/campaigns/{entity_id}"
        op.update.status = getattr(client.enums.CampaignStatusEnum, new_status_name)
        op.update_mask.paths.extend(["status"])
        resp = svc.mutate_campaigns(customer_id=cid, operations=[op])
        resource_name = (
            resp.results[0].resource_name
            if resp.results
            else f"customers/{cid}/campaigns/{entity_id}"
        )
        return {
            "platform": "google",
            "campaign_id": entity_id,
            "status": new_status_name,
            "resource_name": resource_name,
        }
