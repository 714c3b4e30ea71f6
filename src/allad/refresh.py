from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from allad.config import Settings
from allad.errors import PlatformError, classify, is_terminal, with_retry
from allad.models import Credential
from allad.oauth import OAuthFlowController
from allad.platforms import REFRESHABLE_PLATFORMS, get_platform_config
from allad.repo import Repo
from allad.util import expires_at_from, now_utc


logger = logging.getLogger(__name__)

REFRESHED = "refreshed"
NOT_NEEDED = "not_needed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class RefreshResult:
    credential_id: str
    platform: str
    account_id: str
    status: str
    error: dict[str, Any] | None = None
    expires_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RefreshSummary:
    attempted: int = 0
    refreshed: int = 0
    failed: int = 0
    not_needed: int = 0
    results: list[RefreshResult] = field(default_factory=list)

    def add(self, result: RefreshResult) -> None:
        self.results.append(result)
        if result.status == SKIPPED:
            return
        self.attempted += 1
        if result.status == REFRESHED:
            self.refreshed += 1
        elif result.status == FAILED:
            self.failed += 1
        else:
            self.not_needed += 1

    def message(self) -> str:
        return f"Refreshed {self.refreshed} of {self.attempted} credentials ({self.failed} failed)"

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "not_needed": self.not_needed,
            "results": [r.to_dict() for r in self.results],
        }


class TokenRefreshService:
    """
    Keeps near-expiry credentials alive.

    Credentials are handled one at a time and each failure stays with its
    credential. Terminal failures deactivate the credential so the user is
    asked to reconnect; transient ones are recorded and retried next tick.
    """

    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        oauth: OAuthFlowController,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.oauth = oauth
        self._sleep = sleep

    def _is_due(self, credential: Credential, now: datetime) -> bool:
        expires = credential.expires_at_dt()
        if expires is None:
            return False
        return expires < now + timedelta(minutes=self.settings.refresh_window_minutes)

    async def refresh_due(
        self,
        team_id: str | None = None,
        platform: str | None = None,
        account_id: str | None = None,
    ) -> RefreshSummary:
        summary = RefreshSummary()
        due = self.repo.list_credentials_due_for_refresh(
            window_minutes=self.settings.refresh_window_minutes,
            platforms=REFRESHABLE_PLATFORMS,
            team_id=team_id,
            platform=platform,
            account_id=account_id,
        )
        logger.info("refresh scan: %d credential(s) due", len(due))
        seen: set[str] = set()
        for cred in due:
            if not cred.id or cred.id in seen:
                continue
            seen.add(cred.id)
            try:
                result = await self.refresh_one(cred)
            except Exception as e:  # noqa: BLE001 - one credential must not stop the batch
                err = classify(e, cred.platform, locale=self.settings.locale)
                logger.exception("refresh crashed id=%s platform=%s", cred.id, cred.platform)
                result = RefreshResult(cred.id, cred.platform, cred.account_id, FAILED, error=err.to_dict())
            summary.add(result)
        logger.info(
            "refresh done: attempted=%d refreshed=%d failed=%d not_needed=%d",
            summary.attempted,
            summary.refreshed,
            summary.failed,
            summary.not_needed,
        )
        return summary

    async def refresh_one(self, credential: Credential, *, force: bool = False) -> RefreshResult:
        cid = str(credential.id or "")

        def result(status: str, **kw: Any) -> RefreshResult:
            return RefreshResult(cid, credential.platform, credential.account_id, status, **kw)

        cfg = get_platform_config(credential.platform)
        if not credential.is_active or not credential.refresh_token or cfg is None or not cfg.refresh_strategy:
            return result(SKIPPED)
        if not force and not self._is_due(credential, now_utc()):
            return result(NOT_NEEDED)

        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        try:
            tokens = await with_retry(
                lambda: self.oauth.refresh_tokens(credential),
                platform=credential.platform,
                policy=self.settings.retry,
                locale=self.settings.locale,
                **kwargs,
            )
        except PlatformError as err:
            return self._handle_failure(credential, err, result)

        expires_at = expires_at_from(tokens.expires_in)
        swapped = self.repo.update_credential_tokens(
            cid,
            expected_access_token=credential.access_token,
            expected_expires_at=credential.expires_at,
            access_token=tokens.access_token,
            expires_at=expires_at,
            scope=tokens.scope,
            refresh_token=tokens.refresh_token,
        )
        if not swapped:
            logger.info("refresh lost race id=%s platform=%s", cid, credential.platform)
            return result(NOT_NEEDED)
        logger.info("refreshed id=%s platform=%s expires_at=%s", cid, credential.platform, expires_at)
        return result(REFRESHED, expires_at=expires_at)

    def _handle_failure(
        self,
        credential: Credential,
        err: PlatformError,
        result: Callable[..., RefreshResult],
    ) -> RefreshResult:
        cid = str(credential.id or "")
        if is_terminal(err):
            logger.warning(
                "refresh failed terminally id=%s platform=%s code=%s; deactivating",
                cid,
                credential.platform,
                err.code.value,
            )
            self.repo.deactivate_credential(cid, err.user_message)
        else:
            logger.warning(
                "refresh failed transiently id=%s platform=%s code=%s",
                cid,
                credential.platform,
                err.code.value,
            )
            self.repo.record_credential_error(cid, err.user_message)
        return result(FAILED, error=err.to_dict())

    def status(
        self,
        team_id: str,
        platform: str | None = None,
        account_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read-only view of each credential's expiry and whether the next scan would pick it up."""
        now = now_utc()
        out: list[dict[str, Any]] = []
        for cred in self.repo.get_credentials(team_id, platform, include_inactive=True):
            if account_id and cred.account_id != account_id:
                continue
            expires = cred.expires_at_dt()
            out.append(
                {
                    **cred.public_dict(),
                    "auto_refresh": cred.platform in REFRESHABLE_PLATFORMS,
                    "expired": bool(expires and expires <= now),
                    "needs_refresh": bool(
                        cred.is_active and cred.refresh_token and self._is_due(cred, now)
                    ),
                    "expires_in_seconds": int((expires - now).total_seconds()) if expires else None,
                }
            )
        return out

    def sweep_expired_states(self) -> int:
        n = self.repo.delete_expired_oauth_states()
        if n:
            logger.info("swept %d expired oauth state(s)", n)
        return n
