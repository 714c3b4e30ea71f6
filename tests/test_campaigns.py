from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from allad.campaigns import PUSH_FAILED, CampaignService
from allad.config import RetryPolicy, Settings
from allad.connectors import AdapterCapabilities, AdapterContext, CampaignRecord, DateRange, PerformanceRecord
from allad.db import CredentialDB
from allad.errors import PlatformError, PlatformErrorCode
from allad.models import Credential
from allad.registry import AdapterRegistry, build_default_registry
from allad.repo import Repo


def _settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        site_url="https://app.example.test",
        web_host="127.0.0.1",
        web_port=0,
        locale="en",
        refresh_window_minutes=30,
        refresh_interval_minutes=60,
        oauth_state_ttl_minutes=10,
        http_timeout_sec=5.0,
        retry=RetryPolicy(attempts=2, initial_delay_sec=0.1),
        cron_secret=None,
        dashboard_path="/settings/integrations",
    )


async def _no_sleep(_delay: float) -> None:
    return None


class _FakeAdapter:
    capabilities = AdapterCapabilities(read_campaigns=True, read_performance=True, write_budget=True, write_status=True)

    def __init__(self, ctx: AdapterContext, log: list[tuple[str, Any]], fail: Exception | None = None):
        self.ctx = ctx
        self.log = log
        self.fail = fail

    async def fetch_campaigns(self, account_id: str | None = None) -> list[CampaignRecord]:
        self.log.append(("fetch_campaigns", account_id))
        if self.fail:
            raise self.fail
        return [
            CampaignRecord("google", "c1", self.ctx.credential.account_id, "Brand", "ENABLED", True, 10.0),
            CampaignRecord("google", "c2", self.ctx.credential.account_id, "Generic", "PAUSED", False, None),
        ]

    async def fetch_performance(self, campaign_id: str, date_range: DateRange) -> list[PerformanceRecord]:
        self.log.append(("fetch_performance", campaign_id))
        return [PerformanceRecord(campaign_id, date_range.start.isoformat(), 100, 5, 12.5, 1.0, 30.0)]

    async def update_budget(self, campaign_id: str, amount: float) -> dict[str, Any]:
        self.log.append(("update_budget", (campaign_id, amount)))
        if self.fail:
            raise self.fail
        return {"platform": "google", "campaign_id": campaign_id, "budget": amount}

    async def update_status(self, campaign_id: str, active: bool) -> dict[str, Any]:
        self.log.append(("update_status", (campaign_id, active)))
        if self.fail:
            raise self.fail
        return {"platform": "google", "campaign_id": campaign_id, "status": "ENABLED" if active else "PAUSED"}


def _setup(tmp_path: Path, fail: Exception | None = None):
    settings = _settings(tmp_path / "allad.sqlite3")
    CredentialDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    log: list[tuple[str, Any]] = []
    registry = AdapterRegistry(settings, repo=repo, sleep=_no_sleep)
    registry.register("google", lambda ctx: _FakeAdapter(ctx, log, fail))
    cred = repo.upsert_credential(
        Credential(team_id="team_1", platform="google", account_id="123", access_token="at", refresh_token="rt")
    )
    return CampaignService(settings, repo, registry), repo, log, cred


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://googleads.example.test/x")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status, request=request))


# ------------------------------------------------------------------ #
# Sync                                                                 #
# ------------------------------------------------------------------ #


def test_sync_campaigns_upserts_and_stamps_credential(tmp_path: Path) -> None:
    svc, repo, _log, cred = _setup(tmp_path)

    n = asyncio.run(svc.sync_campaigns("team_1", "google"))

    assert n == 2
    rows = {r["platform_campaign_id"]: r for r in repo.list_campaigns("team_1", "google")}
    assert rows["c1"]["budget"] == 10.0
    assert rows["c1"]["credential_id"] == cred.id
    assert not rows["c2"]["is_active"]
    cur = repo.get_credential_by_id(str(cred.id))
    assert cur is not None and cur.last_synced_at


def test_sync_without_credential_is_invalid_account(tmp_path: Path) -> None:
    svc, _repo, _log, _cred = _setup(tmp_path)
    with pytest.raises(PlatformError) as ei:
        asyncio.run(svc.sync_campaigns("team_2", "google"))
    assert ei.value.code == PlatformErrorCode.INVALID_ACCOUNT


def test_sync_failure_is_retried_then_classified(tmp_path: Path) -> None:
    svc, _repo, log, _cred = _setup(tmp_path, fail=_status_error(503))
    with pytest.raises(PlatformError) as ei:
        asyncio.run(svc.sync_campaigns("team_1", "google"))
    assert ei.value.code == PlatformErrorCode.SERVER_ERROR
    assert [name for name, _ in log] == ["fetch_campaigns", "fetch_campaigns"]


# ------------------------------------------------------------------ #
# Budget / status                                                      #
# ------------------------------------------------------------------ #


def test_budget_update_pushes_after_local_write(tmp_path: Path) -> None:
    svc, repo, log, _cred = _setup(tmp_path)
    asyncio.run(svc.sync_campaigns("team_1", "google"))

    out = asyncio.run(svc.update_budget("team_1", "google", "c1", 42.0))

    assert out["success"] is True
    assert "warning" not in out
    assert out["platform_result"]["budget"] == 42.0
    assert ("update_budget", ("c1", 42.0)) in log
    assert repo.get_campaign("team_1", "google", "c1")["budget"] == 42.0


def test_budget_push_failure_keeps_local_change(tmp_path: Path) -> None:
    svc, repo, log, _cred = _setup(tmp_path)
    asyncio.run(svc.sync_campaigns("team_1", "google"))
    log.clear()
    svc.registry.register("google", lambda ctx: _FakeAdapter(ctx, log, _status_error(403)))

    out = asyncio.run(svc.update_budget("team_1", "google", "c1", 7.0))

    assert out["success"] is True
    assert out["warning"] == PUSH_FAILED
    assert out["error"]["code"] == "AUTH_ERROR"
    assert out["error"]["retryable"] is True
    # writes are not retried
    assert [name for name, _ in log] == ["update_budget"]
    assert repo.get_campaign("team_1", "google", "c1")["budget"] == 7.0


def test_status_push_without_credential_warns(tmp_path: Path) -> None:
    svc, repo, _log, cred = _setup(tmp_path)
    asyncio.run(svc.sync_campaigns("team_1", "google"))
    repo.set_credential_active(str(cred.id), False)

    out = asyncio.run(svc.update_status("team_1", "google", "c1", False))

    assert out["success"] is True
    assert out["warning"] == PUSH_FAILED
    assert out["error"]["code"] == "INVALID_ACCOUNT"
    assert repo.get_campaign("team_1", "google", "c1")["status"] == "PAUSED"


def test_budget_validation(tmp_path: Path) -> None:
    svc, _repo, _log, _cred = _setup(tmp_path)
    asyncio.run(svc.sync_campaigns("team_1", "google"))
    with pytest.raises(ValueError):
        asyncio.run(svc.update_budget("team_1", "google", "c1", -1))
    with pytest.raises(LookupError):
        asyncio.run(svc.update_budget("team_1", "google", "nope", 1))


def test_fetch_performance(tmp_path: Path) -> None:
    svc, _repo, _log, _cred = _setup(tmp_path)
    rows = asyncio.run(
        svc.fetch_performance("team_1", "google", "c1", DateRange.parse("2026-01-01", "2026-01-07"))
    )
    assert rows == [
        {
            "campaign_id": "c1",
            "date": "2026-01-01",
            "impressions": 100,
            "clicks": 5,
            "spend": 12.5,
            "conversions": 1.0,
            "revenue": 30.0,
        }
    ]


# ------------------------------------------------------------------ #
# Coupang (manual)                                                     #
# ------------------------------------------------------------------ #


def _coupang_service(tmp_path: Path, status: int = 200):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json={"code": 200, "data": []})

    settings = _settings(tmp_path / "allad.sqlite3")
    CredentialDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    registry = build_default_registry(settings, repo, httpx.MockTransport(handler), sleep=_no_sleep)
    return CampaignService(settings, repo, registry), repo, seen


def test_connect_coupang_verifies_keys_with_signed_call(tmp_path: Path) -> None:
    svc, repo, seen = _coupang_service(tmp_path)

    cred = asyncio.run(
        svc.connect_coupang("team_1", "user_1", vendor_id="A000123", access_key="ak", secret_key="sk")
    )

    assert cred.platform == "coupang"
    assert cred.account_id == "A000123"
    assert "secret_key" not in cred.public_dict()["settings"]
    assert len(seen) == 1
    auth = seen[0].headers["authorization"]
    assert auth.startswith("CEA algorithm=HmacSHA256, access-key=ak, signed-date=")
    assert "/vendors/A000123/ordersheets" in seen[0].url.path
    assert repo.get_credential("team_1", "coupang") is not None


def test_connect_coupang_rejected_keys_store_nothing(tmp_path: Path) -> None:
    svc, repo, seen = _coupang_service(tmp_path, status=401)

    with pytest.raises(PlatformError) as ei:
        asyncio.run(svc.connect_coupang("team_1", "user_1", vendor_id="A1", access_key="ak", secret_key="bad"))

    assert ei.value.code == PlatformErrorCode.AUTH_ERROR
    assert ei.value.retryable is False
    assert len(seen) == 1
    assert repo.get_credentials("team_1", include_inactive=True) == []


def test_manual_campaigns_and_metrics_round_trip_through_adapter(tmp_path: Path) -> None:
    svc, repo, _seen = _coupang_service(tmp_path)
    asyncio.run(svc.connect_coupang("team_1", "user_1", vendor_id="A1", access_key="ak", secret_key="sk"))

    svc.create_manual_campaign("team_1", campaign_id="cp1", name="Rocket", budget=50000)
    n = svc.record_manual_metrics(
        "team_1",
        "cp1",
        [
            {"date": "2026-03-01", "impressions": 1000, "clicks": 30, "spend": 12000, "revenue": 90000},
            {"date": "2026-03-02", "impressions": 800, "clicks": 20, "spend": 9000},
        ],
    )
    assert n == 2

    rows = asyncio.run(
        svc.fetch_performance("team_1", "coupang", "cp1", DateRange.parse("2026-03-02", "2026-03-31"))
    )
    assert [r["date"] for r in rows] == ["2026-03-02"]
    assert rows[0]["clicks"] == 20

    out = asyncio.run(svc.update_status("team_1", "coupang", "cp1", False))
    assert "warning" not in out
    assert out["platform_result"]["manual"] is True
    assert repo.get_campaign("team_1", "coupang", "cp1")["status"] == "PAUSED"


def test_manual_campaign_needs_coupang_credential(tmp_path: Path) -> None:
    svc, _repo, _seen = _coupang_service(tmp_path)
    with pytest.raises(LookupError):
        svc.create_manual_campaign("team_1", campaign_id="cp1", name="Rocket")
