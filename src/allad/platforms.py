from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any


# Platforms the scheduled refresh scan considers.
REFRESHABLE_PLATFORMS = ("google", "facebook", "kakao")

GRAPH_VERSION = "v23.0"
TIKTOK_API = "https://business-api.tiktok.com/open_api/v1.3"


@dataclass(frozen=True)
class PlatformOAuthConfig:
    platform: str
    authorization_url: str
    token_url: str
    client_id_envs: tuple[str, ...]
    client_secret_envs: tuple[str, ...]
    scopes: tuple[str, ...] = ()
    scope_separator: str = " "
    client_id_param: str = "client_id"
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    # "form": RFC 6749 form post. "tiktok": JSON body + {code, data} envelope.
    token_style: str = "form"
    # "refresh_token", "fb_exchange_token", "tiktok" or None.
    refresh_strategy: str | None = "refresh_token"
    refresh_url: str | None = None
    account_info_url: str | None = None

    def scope_param(self) -> str:
        return self.scope_separator.join(self.scopes)


PLATFORM_CONFIGS: dict[str, PlatformOAuthConfig] = {
    "google": PlatformOAuthConfig(
        platform="google",
        authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        client_id_envs=("GOOGLE_CLIENT_ID",),
        client_secret_envs=("GOOGLE_CLIENT_SECRET",),
        scopes=(
            "https://www.googleapis.com/auth/adwords",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ),
        # offline + consent: Google only returns a refresh_token on a fresh consent.
        extra_auth_params={"access_type": "offline", "prompt": "consent"},
        account_info_url="https://www.googleapis.com/oauth2/v2/userinfo",
    ),
    "facebook": PlatformOAuthConfig(
        platform="facebook",
        authorization_url=f"https://www.facebook.com/{GRAPH_VERSION}/dialog/oauth",
        token_url=f"https://graph.facebook.com/{GRAPH_VERSION}/oauth/access_token",
        client_id_envs=("FACEBOOK_CLIENT_ID", "META_CLIENT_ID"),
        client_secret_envs=("FACEBOOK_CLIENT_SECRET", "META_CLIENT_SECRET"),
        scopes=("ads_management", "ads_read", "business_management"),
        scope_separator=",",
        refresh_strategy="fb_exchange_token",
        account_info_url=f"https://graph.facebook.com/{GRAPH_VERSION}/me",
    ),
    "kakao": PlatformOAuthConfig(
        platform="kakao",
        authorization_url="https://kauth.kakao.com/oauth/authorize",
        token_url="https://kauth.kakao.com/oauth/token",
        client_id_envs=("KAKAO_CLIENT_ID",),
        client_secret_envs=("KAKAO_CLIENT_SECRET",),
        scopes=("moment:read", "moment:write"),
        scope_separator=",",
        account_info_url="https://kapi.kakao.com/v2/user/me",
    ),
    "naver": PlatformOAuthConfig(
        platform="naver",
        authorization_url="https://nid.naver.com/oauth2.0/authorize",
        token_url="https://nid.naver.com/oauth2.0/token",
        client_id_envs=("NAVER_CLIENT_ID",),
        client_secret_envs=("NAVER_CLIENT_SECRET",),
        account_info_url="https://openapi.naver.com/v1/nid/me",
    ),
    "amazon": PlatformOAuthConfig(
        platform="amazon",
        authorization_url="https://www.amazon.com/ap/oa",
        token_url="https://api.amazon.com/auth/o2/token",
        client_id_envs=("AMAZON_CLIENT_ID",),
        client_secret_envs=("AMAZON_CLIENT_SECRET",),
        scopes=("advertising::campaign_management",),
        account_info_url="https://api.amazon.com/user/profile",
    ),
    "tiktok": PlatformOAuthConfig(
        platform="tiktok",
        authorization_url=f"{TIKTOK_API}/oauth2/authorize/",
        token_url=f"{TIKTOK_API}/oauth2/access_token/",
        client_id_envs=("TIKTOK_CLIENT_ID", "TIKTOK_APP_ID"),
        client_secret_envs=("TIKTOK_CLIENT_SECRET", "TIKTOK_APP_SECRET"),
        scopes=("ad.group.read", "ad.group.write", "campaign.read", "campaign.write"),
        scope_separator=",",
        client_id_param="app_id",
        token_style="tiktok",
        refresh_strategy="tiktok",
        refresh_url=f"{TIKTOK_API}/oauth2/refresh_token/",
        account_info_url=f"{TIKTOK_API}/oauth2/advertiser/get/",
    ),
}


def get_platform_config(platform: str) -> PlatformOAuthConfig | None:
    """OAuth settings for `platform`, or None when it has no OAuth flow (coupang)."""
    return PLATFORM_CONFIGS.get(platform)


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return v
    return None


def client_credentials(platform: str) -> tuple[str, str] | None:
    cfg = get_platform_config(platform)
    if cfg is None:
        return None
    client_id = _first_env(cfg.client_id_envs)
    client_secret = _first_env(cfg.client_secret_envs)
    if not client_id or not client_secret:
        return None
    return client_id, client_secret


def google_developer_token() -> str | None:
    return _first_env(("GOOGLE_DEVELOPER_TOKEN", "GOOGLE_ADS_DEVELOPER_TOKEN"))


def describe_platforms() -> list[dict[str, Any]]:
    """Connection catalog for the UI: which platforms can be connected right now."""
    out: list[dict[str, Any]] = []
    for key, cfg in PLATFORM_CONFIGS.items():
        out.append(
            {
                "platform": key,
                "oauth": True,
                "configured": client_credentials(key) is not None,
                "auto_refresh": key in REFRESHABLE_PLATFORMS,
            }
        )
    out.append({"platform": "coupang", "oauth": False, "configured": True, "auto_refresh": False})
    return out
