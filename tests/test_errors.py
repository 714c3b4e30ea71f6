from __future__ import annotations

import asyncio

import grpc
import httpx
import pytest
from google.ads.googleads.errors import GoogleAdsException
from google.auth.exceptions import RefreshError

from allad.config import RetryPolicy
from allad.errors import (
    MESSAGES,
    PlatformError,
    PlatformErrorCode,
    ProviderResponseError,
    classify,
    create_user_error_message,
    extract_error_code,
    is_retryable,
    is_terminal,
    with_retry,
)


# ------------------------------------------------------------------ #
# Helpers                                                              #
# ------------------------------------------------------------------ #


def _status_error(status: int, body: dict | None = None, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.test/x")
    response = httpx.Response(status, json=body or {}, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _GrpcCall:
    def __init__(self, status: grpc.StatusCode) -> None:
        self._status = status

    def code(self) -> grpc.StatusCode:
        return self._status


def _google_ads_error(status: grpc.StatusCode) -> GoogleAdsException:
    call = _GrpcCall(status)
    return GoogleAdsException(call, call, None, "req-1")


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


# ------------------------------------------------------------------ #
# classify                                                             #
# ------------------------------------------------------------------ #


@pytest.mark.parametrize(
    "raw",
    [None, "boom", 42, ValueError("bad"), {"weird": object()}, object(), {"response": {"status": "x"}}],
)
def test_classify_never_raises(raw) -> None:
    err = classify(raw, "google")
    assert isinstance(err, PlatformError)
    assert err.user_message


def test_facebook_190_beats_generic_400() -> None:
    raw = _status_error(400, {"error": {"code": 190, "message": "Error validating access token"}})
    err = classify(raw, "facebook")
    assert err.code == PlatformErrorCode.AUTH_ERROR
    assert err.user_message == MESSAGES["en"]["facebook.auth"]


def test_coupang_401_is_not_retryable_while_generic_401_is() -> None:
    coupang = classify(_status_error(401), "coupang")
    generic = classify(_status_error(401), "naver-unknown")
    assert coupang.code == PlatformErrorCode.AUTH_ERROR
    assert coupang.retryable is False
    assert generic.code == PlatformErrorCode.AUTH_ERROR
    assert generic.retryable is True


@pytest.mark.parametrize("platform", ["google", "facebook", "tiktok", "kakao", "naver", "amazon", "coupang"])
def test_429_retryable_and_404_not(platform: str) -> None:
    assert classify(_status_error(429), platform).retryable is True
    assert classify(_status_error(429), platform).code == PlatformErrorCode.RATE_LIMIT
    assert classify(_status_error(404), platform).retryable is False
    assert classify(_status_error(404), platform).code == PlatformErrorCode.NOT_FOUND


def test_tiktok_envelope_codes() -> None:
    auth = classify(ProviderResponseError({"code": 40100, "message": "invalid token"}), "tiktok")
    server = classify(ProviderResponseError({"code": 50002, "message": "busy"}), "tiktok")
    assert auth.code == PlatformErrorCode.AUTH_ERROR
    assert server.code == PlatformErrorCode.SERVER_ERROR
    assert server.retryable is True


@pytest.mark.parametrize("status", [grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED])
def test_google_ads_grpc_auth_failures(status: grpc.StatusCode) -> None:
    err = classify(_google_ads_error(status), "google")
    assert err.code == PlatformErrorCode.AUTH_ERROR
    assert err.user_message == MESSAGES["en"]["google.auth"]
    assert is_terminal(err)


def test_google_ads_grpc_quota_is_retryable() -> None:
    err = classify(_google_ads_error(grpc.StatusCode.RESOURCE_EXHAUSTED), "google")
    assert err.code == PlatformErrorCode.RATE_LIMIT
    assert err.retryable is True
    assert err.user_message == MESSAGES["en"]["google.quota"]


def test_google_refresh_error_invalid_grant() -> None:
    with_body = RefreshError(
        "invalid_grant: Token has been expired or revoked.",
        {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
    )
    bare = RefreshError("invalid_grant: Token has been expired or revoked.")
    for raw in (with_body, bare):
        err = classify(raw, "google")
        assert err.code == PlatformErrorCode.AUTH_ERROR
        assert err.retryable is False


def test_facebook_error_on_http_200_uses_body_code() -> None:
    unknown = classify(ProviderResponseError({"code": 100}, status_code=200), "facebook")
    denied = ProviderResponseError({"code": 200, "message": "Permissions error"}, status_code=200)
    permission = classify(denied, "facebook")
    nested = classify({"response": {"status": 200, "data": {"error": {"code": 2}}}}, "facebook")
    assert unknown.code == PlatformErrorCode.UNKNOWN_ERROR
    assert permission.code == PlatformErrorCode.PERMISSION_ERROR
    assert nested.code == PlatformErrorCode.UNKNOWN_ERROR
    assert extract_error_code(ProviderResponseError({"code": 100}, status_code=200)) == 100


def test_detail_drops_url_query() -> None:
    request = httpx.Request(
        "GET",
        "https://graph.facebook.com/v19.0/oauth/access_token?client_secret=s3cret&fb_exchange_token=tok123",
    )
    response = httpx.Response(500, json={}, request=request)
    with pytest.raises(httpx.HTTPStatusError) as ei:
        response.raise_for_status()
    err = classify(ei.value, "facebook")
    assert err.detail is not None
    assert "graph.facebook.com/v19.0/oauth/access_token" in err.detail
    assert "s3cret" not in err.detail
    assert "tok123" not in str(err)


def test_oauth_invalid_grant_is_terminal() -> None:
    raw = _status_error(400, {"error": "invalid_grant", "error_description": "Token has been revoked."})
    err = classify(raw, "google")
    assert err.code == PlatformErrorCode.AUTH_ERROR
    assert err.retryable is False
    assert is_terminal(err)


def test_network_errors() -> None:
    timeout = classify(httpx.ConnectTimeout("timed out"), "kakao")
    reset = classify({"code": "ECONNRESET", "message": "socket hang up"}, "naver")
    assert timeout.code == PlatformErrorCode.NETWORK_ERROR
    assert timeout.retryable is True
    assert reset.code == PlatformErrorCode.NETWORK_ERROR


def test_unknown_error_mentions_platform_label() -> None:
    err = classify(RuntimeError("something odd"), "amazon")
    assert err.code == PlatformErrorCode.UNKNOWN_ERROR
    assert "Amazon Ads" in err.user_message


def test_korean_locale() -> None:
    err = classify(_status_error(429), "google", locale="ko")
    assert err.user_message == MESSAGES["ko"]["google.quota"]


def test_retry_after_header_is_kept() -> None:
    err = classify(_status_error(429, headers={"Retry-After": "7"}), "facebook")
    assert err.retry_after_seconds == 7


def test_is_retryable_and_extract_code() -> None:
    assert is_retryable(_status_error(503), "google") is True
    assert extract_error_code({"error": {"code": 613}}) == 613
    assert extract_error_code("nothing here") is None


def test_create_user_error_message() -> None:
    with_code = create_user_error_message({"status_code": 500}, "Google Ads", "sync")
    without_code = create_user_error_message("oops", "Google Ads", "sync")
    assert with_code == "Google Ads error (500) during sync. Please try again."
    assert without_code == "An error occurred with Google Ads during sync. Please try again."

    err = classify(_status_error(403), "facebook")
    assert create_user_error_message(err, "facebook", "sync") == err.user_message


# ------------------------------------------------------------------ #
# with_retry                                                           #
# ------------------------------------------------------------------ #


def test_with_retry_backs_off_then_succeeds() -> None:
    sleeps = _Sleeps()
    calls = {"n": 0}

    async def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise _status_error(503)
        return "ok"

    policy = RetryPolicy(attempts=3, initial_delay_sec=1.0, multiplier=2.0, max_delay_sec=30.0)
    out = asyncio.run(with_retry(flaky, platform="google", policy=policy, sleep=sleeps))
    assert out == "ok"
    assert calls["n"] == 3
    assert sleeps.calls == [1.0, 2.0]


def test_with_retry_does_not_retry_terminal() -> None:
    sleeps = _Sleeps()
    calls = {"n": 0}

    async def revoked() -> None:
        calls["n"] += 1
        raise _status_error(400, {"error": "invalid_grant"})

    with pytest.raises(PlatformError) as ei:
        asyncio.run(with_retry(revoked, platform="kakao", policy=RetryPolicy(), sleep=sleeps))
    assert ei.value.code == PlatformErrorCode.AUTH_ERROR
    assert calls["n"] == 1
    assert sleeps.calls == []


def test_with_retry_gives_up_after_attempts() -> None:
    sleeps = _Sleeps()

    async def down() -> None:
        raise httpx.ConnectError("connection refused")

    policy = RetryPolicy(attempts=2, initial_delay_sec=0.5)
    with pytest.raises(PlatformError) as ei:
        asyncio.run(with_retry(down, platform="tiktok", policy=policy, sleep=sleeps))
    assert ei.value.code == PlatformErrorCode.NETWORK_ERROR
    assert sleeps.calls == [0.5]


def test_with_retry_backs_off_on_google_quota() -> None:
    sleeps = _Sleeps()
    calls = {"n": 0}

    async def throttled() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _google_ads_error(grpc.StatusCode.RESOURCE_EXHAUSTED)
        return "ok"

    policy = RetryPolicy(attempts=3, initial_delay_sec=1.0)
    assert asyncio.run(with_retry(throttled, platform="google", policy=policy, sleep=sleeps)) == "ok"
    assert sleeps.calls == [1.0]
