from __future__ import annotations

import asyncio
import logging

from allad.config import Settings
from allad.db import CredentialDB
from allad.oauth import OAuthFlowController
from allad.refresh import RefreshSummary, TokenRefreshService
from allad.repo import Repo


logger = logging.getLogger(__name__)


def build_refresh_service(settings: Settings) -> TokenRefreshService:
    CredentialDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    return TokenRefreshService(settings, repo, OAuthFlowController(settings, repo))


async def _tick(
    settings: Settings,
    *,
    team_id: str | None = None,
    platform: str | None = None,
    service: TokenRefreshService | None = None,
) -> RefreshSummary:
    service = service or build_refresh_service(settings)
    summary = await service.refresh_due(team_id=team_id, platform=platform)
    service.sweep_expired_states()
    return summary


def run_tick(settings: Settings, *, team_id: str | None = None, platform: str | None = None) -> RefreshSummary:
    return asyncio.run(_tick(settings, team_id=team_id, platform=platform))


async def _run_forever(settings: Settings) -> None:
    # Sleep-between-ticks only; the cron route is the primary trigger.
    interval = max(1, settings.refresh_interval_minutes) * 60
    service = build_refresh_service(settings)
    while True:
        try:
            summary = await _tick(settings, service=service)
            logger.info("worker tick: %s", summary.message())
        except Exception:  # noqa: BLE001
            logger.exception("worker tick failed")
        await asyncio.sleep(interval)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
