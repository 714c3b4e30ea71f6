from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Union

from allad.util import parse_utc_iso


SUPPORTED_PLATFORMS = ("google", "facebook", "naver", "kakao", "tiktok", "amazon", "coupang")


def normalize_platform(raw: str | None) -> str:
    """
    Map UI/route spellings onto the platform key.
    `meta` is the UI name for facebook; callback slugs end in `-ads`.
    """
    p = str(raw or "").strip().lower()
    p = p.removesuffix("-ads").removesuffix("_ads")
    if p == "meta":
        return "facebook"
    return p


# ------------------------------------------------------------------ #
# Typed per-platform extras (stored in platform_credentials.data_json) #
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class GoogleData:
    customer_id: str | None = None
    login_customer_id: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class FacebookData:
    ad_account_id: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class TikTokData:
    advertiser_ids: tuple[str, ...] = ()
    business_center_id: str | None = None


@dataclass(frozen=True)
class KakaoData:
    ad_account_id: str | None = None


@dataclass(frozen=True)
class NaverData:
    customer_id: str | None = None
    api_key: str | None = None
    secret_key: str | None = None


@dataclass(frozen=True)
class AmazonData:
    profile_id: str | None = None
    region: str = "NA"


@dataclass(frozen=True)
class CoupangData:
    vendor_id: str | None = None
    secret_key: str | None = None


PlatformData = Union[GoogleData, FacebookData, TikTokData, KakaoData, NaverData, AmazonData, CoupangData]

# Extras that are credentials in their own right; never returned to the UI.
SECRET_DATA_KEYS = frozenset({"api_key", "secret_key"})

_DATA_TYPES: dict[str, type] = {
    "google": GoogleData,
    "facebook": FacebookData,
    "tiktok": TikTokData,
    "kakao": KakaoData,
    "naver": NaverData,
    "amazon": AmazonData,
    "coupang": CoupangData,
}


def parse_platform_data(platform: str, raw: dict[str, Any] | None) -> PlatformData | None:
    """Build the typed extras record for `platform`, ignoring unknown keys."""
    cls = _DATA_TYPES.get(platform)
    if cls is None:
        return None
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for k, v in raw.items():
        if k not in known or v is None:
            continue
        if k == "advertiser_ids":
            if isinstance(v, (list, tuple)):
                v = tuple(str(x) for x in v)
            else:
                v = (str(v),)
        elif not isinstance(v, str):
            v = str(v)
        kwargs[k] = v
    return cls(**kwargs)


def platform_data_fields(platform: str) -> frozenset[str]:
    """Keys a credential of `platform` may carry in its data bag."""
    cls = _DATA_TYPES.get(platform)
    return frozenset(f.name for f in fields(cls)) if cls else frozenset()


# ------------------------------------------------------------------ #
# Records                                                              #
# ------------------------------------------------------------------ #


@dataclass
class Credential:
    team_id: str
    platform: str
    account_id: str
    access_token: str
    account_name: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    expires_at: str | None = None
    is_active: bool = True
    error_message: str | None = None
    last_synced_at: str | None = None
    user_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def extras(self) -> PlatformData | None:
        return parse_platform_data(self.platform, self.data)

    def expires_at_dt(self) -> datetime | None:
        return parse_utc_iso(self.expires_at)

    @staticmethod
    def from_row(row: Any) -> "Credential":
        d = dict(row)
        try:
            data = json.loads(d.get("data_json") or "{}")
        except ValueError:
            data = {}
        return Credential(
            id=d.get("id"),
            team_id=d["team_id"],
            user_id=d.get("user_id"),
            platform=d["platform"],
            account_id=d["account_id"],
            account_name=d.get("account_name"),
            access_token=d.get("access_token") or "",
            refresh_token=d.get("refresh_token"),
            scope=d.get("scope"),
            expires_at=d.get("expires_at"),
            is_active=bool(d.get("is_active")),
            error_message=d.get("error_message"),
            last_synced_at=d.get("last_synced_at"),
            data=data if isinstance(data, dict) else {},
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def public_dict(self) -> dict[str, Any]:
        """Credential view safe to return to the UI (no tokens)."""
        return {
            "id": self.id,
            "team_id": self.team_id,
            "platform": self.platform,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "scope": self.scope,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
            "error_message": self.error_message,
            "last_synced_at": self.last_synced_at,
            "has_refresh_token": bool(self.refresh_token),
            "settings": {k: v for k, v in self.data.items() if k not in SECRET_DATA_KEYS},
        }


@dataclass(frozen=True)
class OAuthState:
    state: str
    platform: str
    user_id: str
    team_id: str
    created_at: str
    expires_at: str


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @staticmethod
    def from_response(payload: dict[str, Any]) -> "TokenSet":
        access = str(payload.get("access_token") or "").strip()
        if not access:
            raise ValueError("token response missing access_token")
        expires_in = payload.get("expires_in")
        try:
            expires = int(float(expires_in)) if expires_in not in (None, "") else None
        except (TypeError, ValueError):
            expires = None
        scope = payload.get("scope")
        if isinstance(scope, list):
            scope = " ".join(str(s) for s in scope)
        return TokenSet(
            access_token=access,
            refresh_token=(str(payload["refresh_token"]) if payload.get("refresh_token") else None),
            expires_in=expires,
            scope=str(scope) if scope else None,
            token_type=payload.get("token_type"),
            raw=payload,
        )


@dataclass(frozen=True)
class AccountInfo:
    account_id: str
    account_name: str | None = None
    email: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)
