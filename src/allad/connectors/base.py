from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from allad.config import Settings
from allad.models import Credential

if TYPE_CHECKING:
    from allad.repo import Repo


@dataclass(frozen=True)
class AdapterCapabilities:
    read_campaigns: bool = False
    read_performance: bool = False
    write_budget: bool = False
    write_status: bool = False
    # Campaign data lives in our own tables instead of a remote API.
    manual: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "read_campaigns": self.read_campaigns,
            "read_performance": self.read_performance,
            "write_budget": self.write_budget,
            "write_status": self.write_status,
            "manual": self.manual,
        }


@dataclass(frozen=True)
class AdapterContext:
    credential: Credential
    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None
    repo: "Repo | None" = None

    @property
    def platform(self) -> str:
        return self.credential.platform

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout_sec, transport=self.transport, **kwargs)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("date range end is before start")

    @staticmethod
    def parse(start: str, end: str) -> "DateRange":
        return DateRange(date.fromisoformat(start), date.fromisoformat(end))


@dataclass(frozen=True)
class CampaignRecord:
    platform: str
    campaign_id: str
    account_id: str | None
    name: str | None
    status: str | None
    is_active: bool
    budget: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PerformanceRecord:
    campaign_id: str
    date: str
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "date": self.date,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "spend": self.spend,
            "conversions": self.conversions,
            "revenue": self.revenue,
        }


class PlatformAdapter(Protocol):
    capabilities: AdapterCapabilities

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        """List campaigns of the credential's ad account."""

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        """Daily metrics for one campaign, inclusive date range."""

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        """Set the campaign's daily budget. Raises on failure."""

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        """Enable or pause the campaign. Raises on failure."""


def to_float(v: Any) -> float:
    try:
        return float(str(v).replace(",", "")) if v is not None else 0.0
    except ValueError:
        return 0.0


def to_int(v: Any) -> int:
    return int(to_float(v))
