from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Callable

from allad.config import Settings
from allad.connectors import DateRange, PlatformAdapter
from allad.errors import PlatformError, PlatformErrorCode, platform_error
from allad.models import Credential, normalize_platform
from allad.registry import AdapterRegistry
from allad.repo import Repo


logger = logging.getLogger(__name__)

PUSH_FAILED = "platform update failed"


class CampaignService:
    """
    Campaign actions over the local mirror.

    Budget and status changes are written locally first and then pushed to
    the platform on a best-effort basis: a platform failure comes back as a
    warning next to `success: True`, and the local change stays.
    """

    def __init__(self, settings: Settings, repo: Repo, registry: AdapterRegistry):
        self.settings = settings
        self.repo = repo
        self.registry = registry

    def _credential_for(self, team_id: str, platform: str, campaign: dict[str, Any] | None = None) -> Credential | None:
        cred_id = (campaign or {}).get("credential_id")
        if cred_id:
            cred = self.repo.get_credential_by_id(str(cred_id))
            if cred is not None and cred.is_active:
                return cred
        return self.repo.get_credential(team_id, platform)

    def _require_credential(self, team_id: str, platform: str) -> Credential:
        cred = self.repo.get_credential(team_id, platform)
        if cred is None:
            raise platform_error(
                platform,
                PlatformErrorCode.INVALID_ACCOUNT,
                detail="no active credential for team",
                locale=self.settings.locale,
            )
        return cred

    async def _push(
        self,
        team_id: str,
        platform: str,
        campaign: dict[str, Any],
        call: Callable[[PlatformAdapter], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            cred = self._credential_for(team_id, platform, campaign)
            if cred is None:
                raise platform_error(
                    platform,
                    PlatformErrorCode.INVALID_ACCOUNT,
                    detail="no active credential for team",
                    locale=self.settings.locale,
                )
            result = await call(self.registry.get_adapter(platform, cred))
        except PlatformError as err:
            logger.warning(
                "platform push failed platform=%s team=%s campaign=%s code=%s",
                platform,
                team_id,
                campaign.get("platform_campaign_id"),
                err.code.value,
            )
            return {"warning": PUSH_FAILED, "error": err.to_dict()}
        return {"platform_result": result}

    def _local_campaign(self, team_id: str, platform: str, campaign_id: str) -> dict[str, Any]:
        campaign = self.repo.get_campaign(team_id, platform, campaign_id)
        if campaign is None:
            raise LookupError(f"campaign {platform}/{campaign_id} not found")
        return campaign

    async def update_budget(self, team_id: str, platform: str, campaign_id: str, amount: float) -> dict[str, Any]:
        platform = normalize_platform(platform)
        amount = float(amount)
        if math.isnan(amount) or math.isinf(amount) or amount < 0:
            raise ValueError("budget must be a non-negative number")
        campaign = self._local_campaign(team_id, platform, campaign_id)
        self.repo.update_campaign_budget(team_id, platform, campaign_id, amount)
        pushed = await self._push(team_id, platform, campaign, lambda a: a.update_budget(campaign_id, amount))
        return {"success": True, "campaign_id": campaign_id, "budget": amount, **pushed}

    async def update_status(self, team_id: str, platform: str, campaign_id: str, active: bool) -> dict[str, Any]:
        platform = normalize_platform(platform)
        campaign = self._local_campaign(team_id, platform, campaign_id)
        self.repo.update_campaign_status(team_id, platform, campaign_id, bool(active))
        pushed = await self._push(team_id, platform, campaign, lambda a: a.update_status(campaign_id, bool(active)))
        return {"success": True, "campaign_id": campaign_id, "is_active": bool(active), **pushed}

    async def sync_campaigns(self, team_id: str, platform: str) -> int:
        """Pull campaigns from the platform into the local mirror. Returns the number upserted."""
        platform = normalize_platform(platform)
        cred = self._require_credential(team_id, platform)
        adapter = self.registry.get_adapter(platform, cred)
        records = await adapter.fetch_campaigns()
        for rec in records:
            self.repo.upsert_campaign(
                team_id=team_id,
                platform=platform,
                platform_campaign_id=rec.campaign_id,
                credential_id=cred.id,
                account_id=rec.account_id,
                name=rec.name,
                status=rec.status,
                is_active=rec.is_active,
                budget=rec.budget,
                meta=rec.meta,
            )
        if cred.id:
            self.repo.touch_credential_synced(cred.id)
        logger.info("synced %d campaign(s) platform=%s team=%s", len(records), platform, team_id)
        return len(records)

    async def fetch_performance(
        self,
        team_id: str,
        platform: str,
        campaign_id: str,
        date_range: DateRange,
    ) -> list[dict[str, Any]]:
        platform = normalize_platform(platform)
        campaign = self.repo.get_campaign(team_id, platform, campaign_id)
        cred = self._credential_for(team_id, platform, campaign)
        if cred is None:
            cred = self._require_credential(team_id, platform)
        adapter = self.registry.get_adapter(platform, cred)
        rows = await adapter.fetch_performance(campaign_id, date_range)
        return [r.to_dict() for r in rows]

    # ---- Coupang (manual) ---- #

    async def connect_coupang(
        self,
        team_id: str,
        user_id: str,
        *,
        vendor_id: str,
        access_key: str,
        secret_key: str,
        account_name: str | None = None,
    ) -> Credential:
        """Verify a Wing API key pair with one signed call, then store it as the team's Coupang credential."""
        vendor_id = str(vendor_id or "").strip()
        if not vendor_id or not access_key or not secret_key:
            raise ValueError("vendor_id, access_key and secret_key are required")
        candidate = Credential(
            team_id=team_id,
            user_id=user_id,
            platform="coupang",
            account_id=vendor_id,
            account_name=account_name or f"Coupang ({vendor_id})",
            access_token=access_key,
            data={"vendor_id": vendor_id, "secret_key": secret_key},
        )
        adapter = self.registry.get_adapter("coupang", candidate)
        await adapter.verify_keys()
        saved = self.repo.upsert_credential(candidate)
        logger.info("coupang credential saved team=%s vendor=%s id=%s", team_id, vendor_id, saved.id)
        return saved

    def create_manual_campaign(
        self,
        team_id: str,
        *,
        campaign_id: str,
        name: str,
        status: str = "active",
        budget: float | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        cred = self.repo.get_credential(team_id, "coupang")
        if cred is None:
            raise LookupError("Coupang credentials not found")
        campaign_id = str(campaign_id or "").strip()
        if not campaign_id or not str(name or "").strip():
            raise ValueError("campaign id and name are required")
        status = str(status or "active").lower()
        if status not in {"active", "paused", "ended"}:
            raise ValueError("status must be one of active, paused, ended")
        if budget is not None and float(budget) < 0:
            raise ValueError("budget must be a non-negative number")
        self.repo.upsert_campaign(
            team_id=team_id,
            platform="coupang",
            platform_campaign_id=campaign_id,
            credential_id=cred.id,
            account_id=cred.account_id,
            name=name,
            status=status.upper(),
            is_active=status == "active",
            budget=float(budget) if budget is not None else None,
            meta={"notes": notes} if notes else {},
        )
        return self.repo.get_campaign(team_id, "coupang", campaign_id) or {}

    def record_manual_metrics(self, team_id: str, campaign_id: str, rows: list[dict[str, Any]]) -> int:
        if self.repo.get_campaign(team_id, "coupang", campaign_id) is None:
            raise LookupError(f"campaign coupang/{campaign_id} not found")
        n = 0
        for row in rows:
            day = str(row.get("date") or "").strip()
            if not day:
                raise ValueError("every metrics row needs a date")
            DateRange.parse(day, day)
            self.repo.upsert_campaign_metric(
                team_id=team_id,
                platform="coupang",
                platform_campaign_id=campaign_id,
                day=day,
                impressions=row.get("impressions"),
                clicks=row.get("clicks"),
                spend=row.get("spend"),
                conversions=row.get("conversions"),
                revenue=row.get("revenue"),
            )
            n += 1
        return n
