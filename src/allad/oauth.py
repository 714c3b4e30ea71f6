"""
Per-platform OAuth 2.0 authorization-code flow.

`initiate()` mints a single-use state and returns the provider URL.
`handle_callback()` validates the state, exchanges the code, looks up the
account and persists one credential. Nothing is written to
platform_credentials before the token exchange and account lookup succeed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from allad.config import Settings
from allad.errors import (
    PlatformError,
    PlatformErrorCode,
    ProviderResponseError,
    classify,
    platform_error,
)
from allad.models import SUPPORTED_PLATFORMS, AccountInfo, Credential, TokenSet, normalize_platform
from allad.platforms import (
    PlatformOAuthConfig,
    client_credentials,
    get_platform_config,
    google_developer_token,
)
from allad.repo import Repo, StoreError
from allad.util import expires_at_from, new_state_token


logger = logging.getLogger(__name__)

# Facebook omits expires_in on some long-lived exchanges; their documented lifetime is 60 days.
FACEBOOK_LONG_LIVED_SECONDS = 60 * 24 * 3600
KAKAO_MOMENT_AD_ACCOUNTS_URL = "https://apis.moment.kakao.com/openapi/v4/adAccounts"
AMAZON_PROFILES_URL = "https://advertising-api.amazon.com/v2/profiles"
_AMAZON_REGION_BY_COUNTRY = {
    **dict.fromkeys(("US", "CA", "MX", "BR"), "NA"),
    **dict.fromkeys(("UK", "GB", "DE", "FR", "ES", "IT", "NL", "SE", "PL", "BE", "TR", "AE", "SA", "EG", "IN"), "EU"),
    **dict.fromkeys(("JP", "AU", "SG"), "FE"),
}

# (refresh_token, access_token) -> accessible customer ids
GoogleCustomerLookup = Callable[[str | None, str], list[str]]


class OAuthFlowError(RuntimeError):
    REASONS = (
        "invalid_state",
        "oauth_denied",
        "invalid_callback",
        "config_not_found",
        "token_exchange_failed",
        "account_lookup_failed",
        "unsupported_platform",
    )

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        *,
        platform: str | None = None,
        error: PlatformError | None = None,
    ):
        self.reason = reason
        self.platform = platform
        self.error = error
        self.message = message or (error.user_message if error else reason)
        super().__init__(f"{reason}: {self.message}")


class OAuthFlowController:
    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        google_customer_lookup: GoogleCustomerLookup | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.transport = transport
        self._google_lookup = google_customer_lookup or _list_accessible_customers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.http_timeout_sec, transport=self.transport)

    def _config(self, platform: str) -> tuple[PlatformOAuthConfig, str, str]:
        cfg = get_platform_config(platform)
        if cfg is None:
            raise OAuthFlowError(
                "unsupported_platform",
                f"{platform} does not support OAuth connections",
                platform=platform,
            )
        creds = client_credentials(platform)
        if creds is None:
            raise OAuthFlowError(
                "config_not_found",
                f"OAuth client for {platform} is not configured",
                platform=platform,
            )
        return cfg, creds[0], creds[1]

    def _token_set(self, platform: str, payload: Any) -> TokenSet:
        if not isinstance(payload, dict):
            raise platform_error(platform, PlatformErrorCode.DATA_ERROR, detail="token response is not an object")
        if payload.get("error") and not payload.get("access_token"):
            raise ProviderResponseError(payload)
        try:
            return TokenSet.from_response(payload)
        except ValueError as e:
            raise platform_error(platform, PlatformErrorCode.DATA_ERROR, detail=str(e)) from e

    @staticmethod
    def _tiktok_data(body: Any) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise ProviderResponseError({"message": "malformed TikTok response"})
        if body.get("code") not in (0, "0", None):
            raise ProviderResponseError(body)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------ #
    # Initiation                                                           #
    # ------------------------------------------------------------------ #

    def initiate(self, platform: str, user_id: str, team_id: str) -> str:
        """Persist a fresh state row and return the provider authorization URL."""
        platform = normalize_platform(platform)
        if platform not in SUPPORTED_PLATFORMS:
            raise OAuthFlowError("unsupported_platform", f"unknown platform {platform!r}", platform=platform)
        cfg, client_id, _ = self._config(platform)

        state = new_state_token()
        self.repo.create_oauth_state(
            state=state,
            platform=platform,
            user_id=user_id,
            team_id=team_id,
            ttl_minutes=self.settings.oauth_state_ttl_minutes,
        )
        params: dict[str, str] = {
            cfg.client_id_param: client_id,
            "redirect_uri": self.settings.redirect_uri(platform),
            "response_type": "code",
            "state": state,
        }
        if cfg.scopes:
            params["scope"] = cfg.scope_param()
        params.update(cfg.extra_auth_params)
        logger.info("oauth initiated platform=%s team=%s", platform, team_id)
        return f"{cfg.authorization_url}?{urlencode(params)}"

    # ------------------------------------------------------------------ #
    # Callback                                                             #
    # ------------------------------------------------------------------ #

    async def handle_callback(
        self,
        platform: str,
        code: str | None,
        state: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> Credential:
        platform = normalize_platform(platform)
        if platform not in SUPPORTED_PLATFORMS:
            raise OAuthFlowError("unsupported_platform", f"unknown platform {platform!r}", platform=platform)

        if error:
            # Burn the state so the same URL cannot be replayed with a code later.
            if state:
                self.repo.consume_oauth_state(state, platform)
            raise OAuthFlowError("oauth_denied", error_description or error, platform=platform)
        if not code or not state:
            raise OAuthFlowError("invalid_callback", "missing code or state", platform=platform)

        row = self.repo.consume_oauth_state(state, platform)
        if row is None:
            logger.warning("oauth callback with unknown or expired state platform=%s", platform)
            raise OAuthFlowError("invalid_state", "invalid or expired state", platform=platform)

        try:
            tokens = await self.exchange_code(platform, code)
            if platform == "facebook":
                tokens = await self.exchange_facebook_long_lived(tokens.access_token)
        except OAuthFlowError:
            raise
        except Exception as e:  # noqa: BLE001 - classify provider failures
            err = classify(e, platform, locale=self.settings.locale)
            logger.warning("token exchange failed platform=%s code=%s", platform, err.code.value)
            raise OAuthFlowError("token_exchange_failed", platform=platform, error=err) from e

        try:
            info = await self.fetch_account_info(platform, tokens)
        except Exception as e:  # noqa: BLE001 - classify provider failures
            err = classify(e, platform, locale=self.settings.locale)
            logger.warning("account lookup failed platform=%s code=%s", platform, err.code.value)
            raise OAuthFlowError("account_lookup_failed", platform=platform, error=err) from e

        # Facebook has no refresh token; the long-lived token doubles as one so the refresh scan sees it.
        refresh_token = tokens.access_token if platform == "facebook" else tokens.refresh_token
        credential = Credential(
            team_id=row.team_id,
            user_id=row.user_id,
            platform=platform,
            account_id=info.account_id,
            account_name=info.account_name,
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            scope=tokens.scope,
            expires_at=expires_at_from(tokens.expires_in),
            data=dict(info.extras),
        )
        saved = self.repo.upsert_credential(credential)
        logger.info(
            "credential saved platform=%s team=%s account=%s id=%s",
            platform,
            saved.team_id,
            saved.account_id,
            saved.id,
        )
        if platform == "google":
            saved = await self._attach_google_customer(saved, tokens)
        return saved

    async def _attach_google_customer(self, saved: Credential, tokens: TokenSet) -> Credential:
        """Re-key a fresh Google credential from the userinfo id to the Ads customer id."""
        try:
            customer_id = await self.resolve_google_customer_id(tokens)
        except Exception as e:  # noqa: BLE001 - the saved credential stays usable
            err = classify(e, "google")
            logger.warning("google customer lookup failed id=%s code=%s", saved.id, err.code.value)
            return saved
        if not customer_id or customer_id == saved.account_id:
            return saved

        data = dict(saved.data)
        data["customer_id"] = customer_id
        name = f"Google Ads ({customer_id})"
        try:
            patched = self.repo.patch_credential_identity(
                str(saved.id),
                account_id=customer_id,
                account_name=name,
                data=data,
            )
        except StoreError as e:
            if e.code != "DUPLICATE_ENTRY":
                logger.warning("google identity patch failed id=%s: %s", saved.id, e.code)
                return saved
            # Reconnect of a customer we already hold: fold the new tokens into that row.
            merged = self.repo.upsert_credential(
                replace(saved, id=None, account_id=customer_id, account_name=name, data=data)
            )
            self.repo.delete_credential(str(saved.id))
            return merged
        return patched or saved

    # ------------------------------------------------------------------ #
    # Provider calls                                                       #
    # ------------------------------------------------------------------ #

    async def exchange_code(self, platform: str, code: str) -> TokenSet:
        cfg, client_id, client_secret = self._config(platform)
        async with self._client() as client:
            if cfg.token_style == "tiktok":
                r = await client.post(
                    cfg.token_url,
                    json={"app_id": client_id, "secret": client_secret, "auth_code": code},
                )
                r.raise_for_status()
                return self._token_set(platform, self._tiktok_data(r.json()))

            r = await client.post(
                cfg.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.redirect_uri(platform),
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                headers={"Accept": "application/json"},
            )
            r.raise_for_status()
            return self._token_set(platform, r.json())

    async def exchange_facebook_long_lived(self, token: str) -> TokenSet:
        cfg, client_id, client_secret = self._config("facebook")
        async with self._client() as client:
            r = await client.get(
                cfg.token_url,
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "fb_exchange_token": token,
                },
            )
            r.raise_for_status()
            tokens = self._token_set("facebook", r.json())
        if tokens.expires_in is None:
            tokens = replace(tokens, expires_in=FACEBOOK_LONG_LIVED_SECONDS)
        return tokens

    async def fetch_account_info(self, platform: str, tokens: TokenSet) -> AccountInfo:
        cfg = get_platform_config(platform)
        if cfg is None or not cfg.account_info_url:
            raise platform_error(platform, PlatformErrorCode.CONFIG_ERROR, detail="no account info endpoint")
        bearer = {"Authorization": f"Bearer {tokens.access_token}"}

        async with self._client() as client:
            if platform == "facebook":
                r = await client.get(
                    cfg.account_info_url,
                    params={"fields": "id,name,email", "access_token": tokens.access_token},
                )
                r.raise_for_status()
                me = r.json()
                email = me.get("email")
                return _account(platform, me.get("id"), me.get("name") or email, email, {"email": email})

            if platform == "tiktok":
                creds = client_credentials(platform)
                params = {"app_id": creds[0], "secret": creds[1]} if creds else {}
                r = await client.get(
                    cfg.account_info_url,
                    params=params,
                    headers={"Access-Token": tokens.access_token},
                )
                r.raise_for_status()
                data = self._tiktok_data(r.json())
                rows = [x for x in (data.get("list") or []) if isinstance(x, dict)]
                ids = [str(x.get("advertiser_id")) for x in rows if x.get("advertiser_id")]
                if not ids:
                    ids = [str(x) for x in (tokens.raw.get("advertiser_ids") or [])]
                name = rows[0].get("advertiser_name") if rows else None
                return _account(platform, ids[0] if ids else None, name, None, {"advertiser_ids": ids})

            r = await client.get(cfg.account_info_url, headers=bearer)
            r.raise_for_status()
            me = r.json()

            if platform == "google":
                email = me.get("email")
                return _account(platform, me.get("id"), me.get("name") or email, email, {"email": email})

            if platform == "kakao":
                account = me.get("kakao_account") or {}
                profile = account.get("profile") or {}
                extras: dict[str, Any] = {}
                ad_account_id = await _first_kakao_ad_account(client, bearer)
                if ad_account_id:
                    extras["ad_account_id"] = ad_account_id
                return _account(
                    platform,
                    me.get("id"),
                    profile.get("nickname") or account.get("email"),
                    account.get("email"),
                    extras,
                )

            if platform == "naver":
                if str(me.get("resultcode", "00")) != "00":
                    raise ProviderResponseError(me)
                resp = me.get("response") or {}
                email = resp.get("email")
                return _account(platform, resp.get("id"), resp.get("name") or resp.get("nickname") or email, email, {})

            if platform == "amazon":
                email = me.get("email")
                profile = await _first_amazon_profile(client, bearer, client_credentials(platform))
                return _account(platform, me.get("user_id"), me.get("name") or email, email, profile)

        raise platform_error(platform, PlatformErrorCode.CONFIG_ERROR, detail="no account info mapping")

    async def resolve_google_customer_id(self, tokens: TokenSet) -> str | None:
        ids = await asyncio.to_thread(self._google_lookup, tokens.refresh_token, tokens.access_token)
        for raw in ids or []:
            cid = str(raw).rsplit("/", 1)[-1].replace("-", "").strip()
            if cid:
                return cid
        return None

    # ------------------------------------------------------------------ #
    # Refresh                                                              #
    # ------------------------------------------------------------------ #

    async def refresh_tokens(self, credential: Credential) -> TokenSet:
        """Obtain new tokens for `credential`. Raises provider errors unclassified."""
        platform = credential.platform
        cfg = get_platform_config(platform)
        if cfg is None or cfg.refresh_strategy is None:
            raise platform_error(platform, PlatformErrorCode.CONFIG_ERROR, detail="platform has no refresh strategy")
        creds = client_credentials(platform)
        if creds is None:
            raise platform_error(platform, PlatformErrorCode.CONFIG_ERROR, detail="oauth client not configured")
        client_id, client_secret = creds
        if not credential.refresh_token:
            raise platform_error(platform, PlatformErrorCode.AUTH_ERROR, detail="no refresh token stored")

        if cfg.refresh_strategy == "fb_exchange_token":
            tokens = await self.exchange_facebook_long_lived(credential.refresh_token)
            return replace(tokens, refresh_token=tokens.access_token)

        async with self._client() as client:
            if cfg.refresh_strategy == "tiktok":
                r = await client.post(
                    cfg.refresh_url or cfg.token_url,
                    json={
                        "app_id": client_id,
                        "secret": client_secret,
                        "refresh_token": credential.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
                r.raise_for_status()
                return self._token_set(platform, self._tiktok_data(r.json()))

            r = await client.post(
                cfg.refresh_url or cfg.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                headers={"Accept": "application/json"},
            )
            r.raise_for_status()
            return self._token_set(platform, r.json())


def _account(
    platform: str,
    account_id: Any,
    name: Any,
    email: Any,
    extras: dict[str, Any],
) -> AccountInfo:
    aid = str(account_id or "").strip()
    if not aid:
        raise platform_error(platform, PlatformErrorCode.DATA_ERROR, detail="account info without id")
    return AccountInfo(
        account_id=aid,
        account_name=str(name) if name else None,
        email=str(email) if email else None,
        extras={k: v for k, v in extras.items() if v is not None},
    )


async def _first_kakao_ad_account(client: httpx.AsyncClient, headers: dict[str, str]) -> str | None:
    # Moment access is optional at connect time; a user without ad accounts can still connect.
    try:
        r = await client.get(KAKAO_MOMENT_AD_ACCOUNTS_URL, headers=headers)
        r.raise_for_status()
        body = r.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.info("kakao moment ad account lookup skipped: %s", type(e).__name__)
        return None
    rows = body.get("content") if isinstance(body, dict) else body
    for row in rows or []:
        if isinstance(row, dict) and row.get("id") is not None:
            return str(row["id"])
    return None


def _list_accessible_customers(refresh_token: str | None, access_token: str) -> list[str]:
    """CustomerService.ListAccessibleCustomers through the google-ads client (blocking)."""
    developer_token = google_developer_token()
    creds = client_credentials("google")
    if not developer_token or not creds or not refresh_token:
        logger.info("google customer lookup skipped: developer token or refresh token missing")
        return []
    try:
        from google.ads.googleads.client import GoogleAdsClient  # type: ignore
    except Exception as e:  # noqa: BLE001
        raise RuntimeError("Missing dependency: google-ads") from e

    client = GoogleAdsClient.load_from_dict(
        {
            "developer_token": developer_token,
            "client_id": creds[0],
            "client_secret": creds[1],
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
    )
    customer_service = client.get_service("CustomerService")
    response = customer_service.list_accessible_customers()
    return [str(rn).rsplit("/", 1)[-1] for rn in response.resource_names]


async def _first_amazon_profile(
    client: httpx.AsyncClient,
    headers: dict[str, str],
    creds: tuple[str, str] | None,
) -> dict[str, Any]:
    # Profiles scope every Ads API call; without one the user can still connect and set it later.
    if creds is None:
        return {}
    try:
        r = await client.get(
            AMAZON_PROFILES_URL,
            headers={**headers, "Amazon-Advertising-API-ClientId": creds[0]},
        )
        r.raise_for_status()
        rows = r.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.info("amazon profile lookup skipped: %s", type(e).__name__)
        return {}
    for row in rows if isinstance(rows, list) else []:
        if isinstance(row, dict) and row.get("profileId") is not None:
            out: dict[str, Any] = {"profile_id": str(row["profileId"])}
            if row.get("countryCode"):
                out["region"] = _AMAZON_REGION_BY_COUNTRY.get(str(row["countryCode"]).upper(), "NA")
            return out
    return {}
