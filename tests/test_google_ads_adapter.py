from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from allad.config import RetryPolicy, Settings
from allad.connectors.base import AdapterContext, DateRange
from allad.connectors.google_ads import GoogleAdsAdapter
from allad.errors import PlatformError, PlatformErrorCode
from allad.models import Credential

CID = "8666829099"


# ------------------------------------------------------------------ #
# Helpers                                                              #
# ------------------------------------------------------------------ #


def _make_adapter(**data) -> GoogleAdsAdapter:
    settings = Settings(
        db_path=Path("unused.sqlite3"),
        site_url="https://app.example.test",
        web_host="127.0.0.1",
        web_port=0,
        locale="en",
        refresh_window_minutes=30,
        refresh_interval_minutes=60,
        oauth_state_ttl_minutes=10,
        http_timeout_sec=5.0,
        retry=RetryPolicy(),
        cron_secret=None,
        dashboard_path="/settings/integrations",
    )
    cred = Credential(
        team_id="team_1",
        platform="google",
        account_id="866-682-9099",
        access_token="at",
        refresh_token="rt",
        data=data,
    )
    return GoogleAdsAdapter(AdapterContext(credential=cred, settings=settings))


def _mock_row(**attrs):
    """Create a mock GAQL row with nested attribute access."""
    row = MagicMock()
    for path, val in attrs.items():
        parts = path.split(".")
        obj = row
        for part in parts[:-1]:
            obj = getattr(obj, part)
        setattr(obj, parts[-1], val)
    return row


def _setup_client(search_rows_sequence=None):
    """
    Build a mock Google Ads client with pre-wired services.

    search_rows_sequence: rows returned by successive ga_service.search() calls.
    """
    client = MagicMock()
    client.enums.CampaignStatusEnum.PAUSED = "PAUSED"
    client.enums.CampaignStatusEnum.ENABLED = "ENABLED"

    ga_service = MagicMock()
    if search_rows_sequence is not None:
        ga_service.search.side_effect = [list(rows) for rows in search_rows_sequence]

    services: dict[str, MagicMock] = {
        "GoogleAdsService": ga_service,
        "CampaignService": MagicMock(),
        "CampaignBudgetService": MagicMock(),
    }

    def get_service(name: str) -> MagicMock:
        return services.get(name, MagicMock())

    client.get_service.side_effect = get_service
    return client, services


# ------------------------------------------------------------------ #
# Tests                                                                #
# ------------------------------------------------------------------ #


def test_customer_id_is_normalized_from_account_id():
    adapter = _make_adapter()
    assert adapter._google_customer_id() == CID


def test_customer_id_prefers_settings_override():
    adapter = _make_adapter(customer_id="123-456-7890")
    assert adapter._google_customer_id() == "1234567890"


def test_fetch_campaigns_maps_rows():
    adapter = _make_adapter()
    rows = [
        _mock_row(**{
            "campaign.id": 111,
            "campaign.name": "Brand",
            "campaign.status": "ENABLED",
            "campaign_budget.amount_micros": 30_000_000,
        }),
        _mock_row(**{
            "campaign.id": 222,
            "campaign.name": "Generic",
            "campaign.status": "PAUSED",
            "campaign_budget.amount_micros": 0,
        }),
    ]
    client, services = _setup_client(search_rows_sequence=[rows])

    with patch.object(adapter, "_google_client", return_value=client):
        out = asyncio.run(adapter.fetch_campaigns())

    assert [c.campaign_id for c in out] == ["111", "222"]
    assert out[0].account_id == CID
    assert out[0].is_active is True
    assert out[0].budget == 30.0
    assert out[1].is_active is False
    assert out[1].status == "PAUSED"
    call_args = services["GoogleAdsService"].search.call_args
    assert call_args.kwargs.get("customer_id") == CID
    assert "REMOVED" in call_args.kwargs.get("query")


def test_fetch_performance_converts_micros():
    adapter = _make_adapter()
    row = _mock_row(**{
        "segments.date": "2026-01-02",
        "metrics.impressions": 1000,
        "metrics.clicks": 40,
        "metrics.cost_micros": 12_500_000,
        "metrics.conversions": 2.0,
        "metrics.conversions_value": 99.5,
    })
    client, services = _setup_client(search_rows_sequence=[[row]])

    with patch.object(adapter, "_google_client", return_value=client):
        out = asyncio.run(adapter.fetch_performance("111", DateRange.parse("2026-01-01", "2026-01-07")))

    assert [r.to_dict() for r in out] == [
        {
            "campaign_id": "111",
            "date": "2026-01-02",
            "impressions": 1000,
            "clicks": 40,
            "spend": 12.5,
            "conversions": 2.0,
            "revenue": 99.5,
        }
    ]
    query = services["GoogleAdsService"].search.call_args.kwargs.get("query")
    assert "campaign.id = 111" in query
    assert "BETWEEN '2026-01-01' AND '2026-01-07'" in query


def test_pause_campaign():
    adapter = _make_adapter()
    client, services = _setup_client()

    mutate_result = MagicMock()
    mutate_result.resource_name = f"customers/{CID}/campaigns/111"
    services["CampaignService"].mutate_campaigns.return_value.results = [mutate_result]

    with patch.object(adapter, "_google_client", return_value=client):
        result = asyncio.run(adapter.update_status("111", False))

    assert result == {
        "platform": "google",
        "campaign_id": "111",
        "status": "PAUSED",
        "resource_name": f"customers/{CID}/campaigns/111",
    }
    services["CampaignService"].mutate_campaigns.assert_called_once()
    call_args = services["CampaignService"].mutate_campaigns.call_args
    assert call_args.kwargs.get("customer_id") == CID


def test_set_budget():
    adapter = _make_adapter()

    budget_rn = f"customers/{CID}/campaignBudgets/999"
    row_campaign = _mock_row(**{"campaign.campaign_budget": budget_rn})
    client, services = _setup_client(search_rows_sequence=[[row_campaign]])

    with patch.object(adapter, "_google_client", return_value=client):
        result = asyncio.run(adapter.update_budget("111", 50.25))

    assert result["budget"] == 50.25
    assert result["amount_micros"] == 50_250_000
    assert result["resource_name"] == budget_rn
    services["CampaignBudgetService"].mutate_campaign_budgets.assert_called_once()
    call_args = services["CampaignBudgetService"].mutate_campaign_budgets.call_args
    assert call_args.kwargs.get("customer_id") == CID


def test_set_budget_unknown_campaign():
    adapter = _make_adapter()
    client, services = _setup_client(search_rows_sequence=[[]])

    with patch.object(adapter, "_google_client", return_value=client):
        with pytest.raises(PlatformError) as ei:
            asyncio.run(adapter.update_budget("404", 10))

    assert ei.value.code == PlatformErrorCode.NOT_FOUND
    services["CampaignBudgetService"].mutate_campaign_budgets.assert_not_called()


def test_client_without_developer_token_is_config_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GOOGLE_DEVELOPER_TOKEN", raising=False)
    monkeypatch.delenv("GOOGLE_ADS_DEVELOPER_TOKEN", raising=False)
    adapter = _make_adapter()
    with pytest.raises(PlatformError) as ei:
        adapter._google_client()
    assert ei.value.code == PlatformErrorCode.CONFIG_ERROR
