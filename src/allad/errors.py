"""
Normalize third-party ad-platform failures into one flat taxonomy.

Every adapter call, token exchange and token refresh funnels its exceptions
through `classify()`. Callers only ever see `PlatformError`, whose
`user_message` comes from the locale table below; raw provider text stays in
`detail` for logs.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import httpx
from google.auth.exceptions import RefreshError

if TYPE_CHECKING:
    from allad.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PlatformErrorCode(str, Enum):
    AUTH_ERROR = "AUTH_ERROR"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    RATE_LIMIT = "RATE_LIMIT"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    DATA_ERROR = "DATA_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    NOT_FOUND = "NOT_FOUND"
    BAD_REQUEST = "BAD_REQUEST"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# A credential that hits one of these must be re-authorized by the user.
TERMINAL_CODES = frozenset(
    {
        PlatformErrorCode.AUTH_ERROR,
        PlatformErrorCode.TOKEN_EXPIRED,
        PlatformErrorCode.PERMISSION_ERROR,
        PlatformErrorCode.INVALID_ACCOUNT,
        PlatformErrorCode.CONFIG_ERROR,
    }
)

PLATFORM_LABELS = {
    "google": "Google Ads",
    "facebook": "Meta Ads",
    "naver": "Naver Search Ad",
    "kakao": "Kakao Moment",
    "tiktok": "TikTok Ads",
    "amazon": "Amazon Ads",
    "coupang": "Coupang Ads",
}

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "auth": "Authentication failed. Please reconnect your account.",
        "token_expired": "Your access has expired. Please reconnect your account.",
        "permission": "This account does not have permission for that action.",
        "invalid_account": "The connected ad account is no longer available.",
        "rate_limit": "Rate limit exceeded. Please try again later.",
        "not_found": "The requested resource was not found.",
        "server": "Temporary server issue. Please try again later.",
        "bad_request": "Invalid request. Please check your parameters.",
        "network": "Network connection issue. Please check your internet connection.",
        "connection": "Could not reach the ad platform. Please try again later.",
        "config": "{label} is not configured. Please contact your administrator.",
        "data": "The ad platform returned data we could not read.",
        "unknown": "An error occurred with {label}. Please try again or contact support.",
        "google.auth": "Google Ads authentication failed. Please reconnect your account.",
        "google.quota": "Google Ads API quota exceeded. Please try again later.",
        "facebook.auth": "Facebook authentication failed. Please reconnect your account.",
        "facebook.rate_limit": "Facebook API rate limit reached. Please try again later.",
        "facebook.permission": "Facebook denied access to this ad account. Please check your permissions.",
        "amazon.auth": "Amazon Ads authentication failed. Please reconnect your account.",
        "amazon.throttle": "Amazon API request throttled. Please try again later.",
        "tiktok.auth": "TikTok authentication failed. Please reconnect your account.",
        "tiktok.token_expired": "TikTok access token expired. Please reconnect your account.",
        "tiktok.rate_limit": "TikTok API rate limit reached. Please try again later.",
        "tiktok.server": "TikTok server error. Please try again later.",
        "kakao.auth": "Kakao authentication failed. Please reconnect your account.",
        "kakao.rate_limit": "Kakao API rate limit reached. Please try again later.",
        "naver.auth": "Naver authentication failed. Please reconnect your account.",
        "naver.rate_limit": "Naver API rate limit reached. Please try again later.",
        "coupang.auth": "Coupang authentication failed. Please check your credentials.",
        "oauth.invalid_grant": "The authorization is no longer valid. Please reconnect your account.",
        "with_code": "{platform} error ({code}) during {action}. Please try again.",
        "without_code": "An error occurred with {platform} during {action}. Please try again.",
    },
    "ko": {
        "auth": "인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "token_expired": "접근 권한이 만료되었습니다. 계정을 다시 연결해 주세요.",
        "permission": "이 계정에는 해당 작업 권한이 없습니다.",
        "invalid_account": "연결된 광고 계정을 더 이상 사용할 수 없습니다.",
        "rate_limit": "요청 한도를 초과했습니다. 잠시 후 다시 시도해 주세요.",
        "not_found": "요청한 리소스를 찾을 수 없습니다.",
        "server": "일시적인 서버 문제입니다. 잠시 후 다시 시도해 주세요.",
        "bad_request": "잘못된 요청입니다. 입력값을 확인해 주세요.",
        "network": "네트워크 연결에 문제가 있습니다. 인터넷 연결을 확인해 주세요.",
        "connection": "광고 플랫폼에 연결할 수 없습니다. 잠시 후 다시 시도해 주세요.",
        "config": "{label} 설정이 되어 있지 않습니다. 관리자에게 문의해 주세요.",
        "data": "광고 플랫폼 응답을 해석할 수 없습니다.",
        "unknown": "{label} 처리 중 오류가 발생했습니다. 다시 시도하거나 고객센터에 문의해 주세요.",
        "google.auth": "Google Ads 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "google.quota": "Google Ads API 할당량을 초과했습니다. 잠시 후 다시 시도해 주세요.",
        "facebook.auth": "Facebook 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "facebook.rate_limit": "Facebook API 요청 한도에 도달했습니다. 잠시 후 다시 시도해 주세요.",
        "facebook.permission": "Facebook에서 이 광고 계정 접근을 거부했습니다. 권한을 확인해 주세요.",
        "amazon.auth": "Amazon Ads 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "amazon.throttle": "Amazon API 요청이 제한되었습니다. 잠시 후 다시 시도해 주세요.",
        "tiktok.auth": "TikTok 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "tiktok.token_expired": "TikTok 액세스 토큰이 만료되었습니다. 계정을 다시 연결해 주세요.",
        "tiktok.rate_limit": "TikTok API 요청 한도에 도달했습니다. 잠시 후 다시 시도해 주세요.",
        "tiktok.server": "TikTok 서버 오류입니다. 잠시 후 다시 시도해 주세요.",
        "kakao.auth": "카카오 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "kakao.rate_limit": "카카오 API 요청 한도에 도달했습니다. 잠시 후 다시 시도해 주세요.",
        "naver.auth": "네이버 인증에 실패했습니다. 계정을 다시 연결해 주세요.",
        "naver.rate_limit": "네이버 API 요청 한도에 도달했습니다. 잠시 후 다시 시도해 주세요.",
        "coupang.auth": "쿠팡 인증에 실패했습니다. 자격 증명을 확인해 주세요.",
        "oauth.invalid_grant": "인증이 더 이상 유효하지 않습니다. 계정을 다시 연결해 주세요.",
        "with_code": "{platform} 오류 ({code}): {action} 중 문제가 발생했습니다. 다시 시도해 주세요.",
        "without_code": "{platform}에서 {action} 중 오류가 발생했습니다. 다시 시도해 주세요.",
    },
}


def message(key: str, *, locale: str = "en", **fmt: Any) -> str:
    table = MESSAGES.get(locale) or MESSAGES["en"]
    template = table.get(key) or MESSAGES["en"].get(key) or MESSAGES["en"]["unknown"]
    try:
        return template.format(**fmt)
    except (KeyError, IndexError):
        return template


class PlatformError(RuntimeError):
    def __init__(
        self,
        platform: str,
        code: PlatformErrorCode | str,
        *,
        retryable: bool,
        user_message: str,
        detail: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        self.platform = platform
        self.code = PlatformErrorCode(code)
        self.retryable = retryable
        self.user_message = user_message
        self.detail = detail
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"[{platform}] {self.code.value}: {detail or user_message}")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "platform": self.platform,
            "code": self.code.value,
            "retryable": self.retryable,
            "message": self.user_message,
        }
        if self.retry_after_seconds is not None:
            out["retry_after_seconds"] = self.retry_after_seconds
        return out


_RETRYABLE_OWN = frozenset(
    {
        PlatformErrorCode.CONNECTION_ERROR,
        PlatformErrorCode.NETWORK_ERROR,
        PlatformErrorCode.SERVER_ERROR,
        PlatformErrorCode.RATE_LIMIT,
    }
)


class ProviderResponseError(RuntimeError):
    """A 2xx provider response whose body carries an error (TikTok envelopes, Naver token errors)."""

    def __init__(self, payload: dict[str, Any], *, status_code: int | None = None):
        self.payload = payload
        self.status_code = status_code
        code = payload.get("code")
        self.code = code if code not in (0, "0") else None
        self.error = payload.get("error")
        text = payload.get("message") or payload.get("error_description") or payload.get("error") or "provider error"
        super().__init__(str(text))


def platform_error(
    platform: str,
    code: PlatformErrorCode,
    *,
    detail: str | None = None,
    locale: str = "en",
) -> PlatformError:
    """Build a PlatformError raised by our own code (not a provider response)."""
    key = {
        PlatformErrorCode.CONFIG_ERROR: "config",
        PlatformErrorCode.DATA_ERROR: "data",
        PlatformErrorCode.INVALID_ACCOUNT: "invalid_account",
        PlatformErrorCode.CONNECTION_ERROR: "connection",
        PlatformErrorCode.NOT_FOUND: "not_found",
        PlatformErrorCode.AUTH_ERROR: "auth",
        PlatformErrorCode.TOKEN_EXPIRED: "token_expired",
        PlatformErrorCode.PERMISSION_ERROR: "permission",
        PlatformErrorCode.RATE_LIMIT: "rate_limit",
        PlatformErrorCode.BAD_REQUEST: "bad_request",
        PlatformErrorCode.SERVER_ERROR: "server",
        PlatformErrorCode.NETWORK_ERROR: "network",
    }.get(code, "unknown")
    retryable = code in _RETRYABLE_OWN
    return PlatformError(
        platform,
        code,
        retryable=retryable,
        user_message=message(key, locale=locale, label=PLATFORM_LABELS.get(platform, platform)),
        detail=detail,
    )


# ------------------------------------------------------------------ #
# Mapping tables                                                       #
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _Rule:
    codes: frozenset[int | str]
    code: PlatformErrorCode
    retryable: bool
    message_key: str
    # Provider-code rules never look at the HTTP status (Facebook 200 is a permission error).
    provider_only: bool = False


def _rule(
    codes: list[int | str],
    code: PlatformErrorCode,
    retryable: bool,
    key: str,
    *,
    provider_only: bool = False,
) -> _Rule:
    return _Rule(frozenset(codes), code, retryable, key, provider_only)


E = PlatformErrorCode

GENERIC_RULES: tuple[_Rule, ...] = (
    # OAuth token-endpoint error strings (RFC 6749 §5.2) arrive with a 400 and say more than it.
    _rule(["invalid_grant", "invalid_token", "unauthorized_client"], E.AUTH_ERROR, False, "oauth.invalid_grant"),
    _rule(["invalid_client"], E.CONFIG_ERROR, False, "config"),
    _rule([401], E.AUTH_ERROR, True, "auth"),
    _rule([403], E.PERMISSION_ERROR, False, "permission"),
    _rule([429], E.RATE_LIMIT, True, "rate_limit"),
    _rule([404], E.NOT_FOUND, False, "not_found"),
    _rule([500, 502, 503, 504], E.SERVER_ERROR, True, "server"),
    _rule([400], E.BAD_REQUEST, False, "bad_request"),
)

PLATFORM_RULES: dict[str, tuple[_Rule, ...]] = {
    "google": (
        _rule([401, 403], E.AUTH_ERROR, True, "google.auth"),
        _rule([429], E.RATE_LIMIT, True, "google.quota"),
    ),
    "facebook": (
        _rule([190, 102], E.AUTH_ERROR, True, "facebook.auth", provider_only=True),
        _rule([4, 17, 32, 613], E.RATE_LIMIT, True, "facebook.rate_limit", provider_only=True),
        _rule([10, 200], E.PERMISSION_ERROR, False, "facebook.permission", provider_only=True),
    ),
    "amazon": (
        _rule([401, 403], E.AUTH_ERROR, True, "amazon.auth"),
        _rule([429], E.RATE_LIMIT, True, "amazon.throttle"),
    ),
    "tiktok": (
        _rule([40100, 40102], E.AUTH_ERROR, True, "tiktok.auth", provider_only=True),
        _rule([40101], E.TOKEN_EXPIRED, True, "tiktok.token_expired", provider_only=True),
        _rule([40001], E.RATE_LIMIT, True, "tiktok.rate_limit", provider_only=True),
        _rule([50001, 50002], E.SERVER_ERROR, True, "tiktok.server", provider_only=True),
    ),
    "kakao": (
        _rule([401, 403, -401], E.AUTH_ERROR, True, "kakao.auth"),
        _rule([429], E.RATE_LIMIT, True, "kakao.rate_limit"),
    ),
    "naver": (
        _rule([401, 403], E.AUTH_ERROR, True, "naver.auth"),
        _rule([429], E.RATE_LIMIT, True, "naver.rate_limit"),
    ),
    # Coupang keys are static HMAC credentials: retrying a 401 cannot help.
    "coupang": (_rule([401], E.AUTH_ERROR, False, "coupang.auth"),),
}

# gRPC status names raised through the google-ads client, as the HTTP status they stand for.
_GRPC_STATUS = {
    "UNAUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
    "RESOURCE_EXHAUSTED": 429,
    "NOT_FOUND": 404,
    "INVALID_ARGUMENT": 400,
    "INTERNAL": 500,
    "UNAVAILABLE": 503,
    "DEADLINE_EXCEEDED": 504,
}

_NETWORK_CODES = frozenset({"econnreset", "econnrefused", "etimedout", "enotfound", "eai_again", "epipe"})
_NETWORK_WORDS = ("timeout", "timed out", "network", "fetch")


# ------------------------------------------------------------------ #
# Extraction                                                           #
# ------------------------------------------------------------------ #


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    try:
        return getattr(obj, name, None)
    except Exception:  # noqa: BLE001 - exotic descriptors must not break classification
        return None


def _coerce(v: Any) -> int | str | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return None
        try:
            return int(s)
        except ValueError:
            return s.lower()
    return None


def _response_body(response: Any) -> Any:
    if isinstance(response, httpx.Response):
        try:
            return response.json()
        except ValueError:
            return None
    return _get(response, "data")


def _grpc_status(raw: Any) -> int | None:
    # GoogleAdsException keeps the grpc call on .error; a bare grpc.RpcError is the call itself.
    for call in (_get(raw, "error"), _get(raw, "call"), raw):
        code_fn = _get(call, "code")
        if not callable(code_fn):
            continue
        try:
            name = getattr(code_fn(), "name", None)
        except Exception:  # noqa: BLE001 - a half-built call object is just not a gRPC error
            continue
        if name in _GRPC_STATUS:
            return _GRPC_STATUS[name]
    return None


def _refresh_error_code(raw: RefreshError) -> str | None:
    # google-auth raises RefreshError("invalid_grant: <description>", <response body>)
    for arg in raw.args[1:]:
        if isinstance(arg, dict) and isinstance(arg.get("error"), str):
            return arg["error"]
    if raw.args and isinstance(raw.args[0], str):
        head, sep, _ = raw.args[0].partition(":")
        if sep and head.strip() and " " not in head.strip():
            return head.strip()
    return None


def _dedupe(values: list[Any]) -> list[int | str]:
    out: list[int | str] = []
    for v in values:
        c = _coerce(v)
        if c is not None and c != 0 and c not in out:
            out.append(c)
    return out


def _split_candidates(raw: Any) -> tuple[list[int | str], list[int | str]]:
    """(HTTP statuses, provider codes) carried by `raw`. A 2xx status is not an error code."""
    response = _get(raw, "response")
    body = _response_body(response) if response is not None else None
    body_error = _get(body, "error") if isinstance(body, dict) else None

    statuses = _dedupe(
        [
            _get(raw, "status_code"),
            _get(raw, "statusCode"),
            _get(response, "status"),
            _get(response, "status_code"),
            _grpc_status(raw),
        ]
    )
    statuses = [s for s in statuses if not (isinstance(s, int) and 200 <= s < 300)]

    found: list[Any] = []
    if isinstance(raw, RefreshError):
        found.append(_refresh_error_code(raw))
    if isinstance(body_error, dict):
        found.append(body_error.get("code"))
    elif isinstance(body_error, str):
        found.append(body_error)
    if isinstance(body, dict):
        # TikTok wraps everything in {"code": 40100, "message": ...}
        found.append(body.get("code"))
        found.append(body.get("error_code"))
    found.append(_get(raw, "code"))
    found.append(_get(raw, "error_code"))
    raw_error = _get(raw, "error")
    if isinstance(raw_error, dict):
        found.append(raw_error.get("code"))
    elif isinstance(raw_error, str):
        found.append(raw_error)
    return statuses, _dedupe(found)


def _candidates(raw: Any) -> list[int | str]:
    """Error codes in lookup order: HTTP status locations, then provider codes."""
    statuses, provider = _split_candidates(raw)
    return statuses + [c for c in provider if c not in statuses]


_URL_QUERY = re.compile(r"(https?://[^\s?'\"]+)\?[^\s'\"]*")


def _strip_query(text: str) -> str:
    # Graph and token URLs carry access_token, client_secret and appsecret_proof in the query.
    return _URL_QUERY.sub(r"\1", text)


def _message_of(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return _strip_query(raw)
    if isinstance(raw, BaseException):
        text = str(raw)
    else:
        text = str(_get(raw, "message") or "")
    response = _get(raw, "response")
    body = _response_body(response) if response is not None else None
    if isinstance(body, dict):
        err = body.get("error")
        extra = ""
        if isinstance(err, dict):
            extra = str(err.get("message") or "")
        elif body.get("error_description"):
            extra = str(body.get("error_description"))
        elif body.get("message"):
            extra = str(body.get("message"))
        if extra and extra not in text:
            text = f"{text} {extra}".strip()
    return _strip_query(text)


def _retry_after(raw: Any) -> int | None:
    response = _get(raw, "response")
    headers = _get(response, "headers")
    value = None
    if headers is not None:
        try:
            value = headers.get("retry-after")
        except AttributeError:
            value = None
    if value is None:
        value = _get(raw, "retry_after")
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_error_code(raw: Any) -> int | str | None:
    if isinstance(raw, PlatformError):
        return raw.code.value
    cands = _candidates(raw)
    return cands[0] if cands else None


def _from_rule(rule: _Rule, platform: str, raw: Any, locale: str) -> PlatformError:
    label = PLATFORM_LABELS.get(platform, platform)
    return PlatformError(
        platform,
        rule.code,
        retryable=rule.retryable,
        user_message=message(rule.message_key, locale=locale, label=label),
        detail=_message_of(raw)[:500] or None,
        retry_after_seconds=_retry_after(raw),
    )


def _is_network(raw: Any, cands: list[int | str], text: str) -> bool:
    if isinstance(raw, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return True
    if any(isinstance(c, str) and c in _NETWORK_CODES for c in cands):
        return True
    lowered = text.lower()
    return any(w in lowered for w in _NETWORK_WORDS)


def classify(raw: Any, platform: str, *, locale: str = "en") -> PlatformError:
    """Map anything an HTTP call can throw or return onto a PlatformError. Never raises."""
    if isinstance(raw, PlatformError):
        return raw
    try:
        statuses, provider = _split_candidates(raw)
        cands = statuses + provider
        for rule in (*PLATFORM_RULES.get(platform, ()), *GENERIC_RULES):
            pool = provider if rule.provider_only else cands
            if any(c in rule.codes for c in pool):
                return _from_rule(rule, platform, raw, locale)

        text = _message_of(raw)
        if _is_network(raw, cands, text):
            return PlatformError(
                platform,
                E.NETWORK_ERROR,
                retryable=True,
                user_message=message("network", locale=locale),
                detail=text[:500] or type(raw).__name__,
            )
        return PlatformError(
            platform,
            E.UNKNOWN_ERROR,
            retryable=False,
            user_message=message("unknown", locale=locale, label=PLATFORM_LABELS.get(platform, platform)),
            detail=text[:500] or None,
        )
    except Exception as e:  # noqa: BLE001 - classification is total
        logger.debug("classify fallback for %s: %s", platform, type(e).__name__)
        return PlatformError(
            platform,
            E.UNKNOWN_ERROR,
            retryable=False,
            user_message=message("unknown", locale=locale, label=PLATFORM_LABELS.get(platform, platform)),
        )


def is_retryable(raw: Any, platform: str = "") -> bool:
    return classify(raw, platform).retryable


def is_terminal(err: PlatformError) -> bool:
    return err.code in TERMINAL_CODES or not err.retryable


def create_user_error_message(raw: Any, platform: str, action: str, *, locale: str = "en") -> str:
    if isinstance(raw, PlatformError):
        return raw.user_message
    code = extract_error_code(raw)
    if code is not None:
        return message("with_code", locale=locale, platform=platform, code=code, action=action)
    return message("without_code", locale=locale, platform=platform, action=action)


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    platform: str,
    policy: "RetryPolicy",
    locale: str = "en",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run `call` with exponential backoff.
    Only retryable, non-terminal errors are retried; the final error is raised classified.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call()
        except Exception as e:  # noqa: BLE001 - classify and decide
            err = classify(e, platform, locale=locale)
            if attempt >= policy.attempts or is_terminal(err):
                if err is e:
                    raise
                raise err from e
            delay = policy.delay_for(attempt)
            if err.retry_after_seconds:
                delay = min(max(delay, float(err.retry_after_seconds)), policy.max_delay_sec)
            logger.warning(
                "%s call failed (%s), retry %d/%d in %.1fs",
                platform,
                err.code.value,
                attempt,
                policy.attempts - 1,
                delay,
            )
            await sleep(delay)
