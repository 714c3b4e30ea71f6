from __future__ import annotations

import hmac
import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import httpx
import uvicorn

from allad.campaigns import CampaignService
from allad.config import Settings
from allad.connectors import DateRange
from allad.db import CredentialDB
from allad.errors import PlatformError, PlatformErrorCode
from allad.models import SUPPORTED_PLATFORMS, Credential, normalize_platform, platform_data_fields
from allad.oauth import GoogleCustomerLookup, OAuthFlowController, OAuthFlowError
from allad.platforms import describe_platforms
from allad.refresh import TokenRefreshService
from allad.registry import AdapterRegistry, build_default_registry
from allad.repo import Repo, StoreError


logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    PlatformErrorCode.AUTH_ERROR: 401,
    PlatformErrorCode.TOKEN_EXPIRED: 401,
    PlatformErrorCode.PERMISSION_ERROR: 403,
    PlatformErrorCode.INVALID_ACCOUNT: 404,
    PlatformErrorCode.NOT_FOUND: 404,
    PlatformErrorCode.BAD_REQUEST: 400,
    PlatformErrorCode.DATA_ERROR: 502,
    PlatformErrorCode.RATE_LIMIT: 429,
    PlatformErrorCode.CONFIG_ERROR: 500,
    PlatformErrorCode.SERVER_ERROR: 502,
    PlatformErrorCode.NETWORK_ERROR: 502,
    PlatformErrorCode.CONNECTION_ERROR: 502,
    PlatformErrorCode.UNKNOWN_ERROR: 502,
}


class IdentityRequired(Exception):
    pass


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def _error(code: str, message: str, status_code: int, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": code, "message": message, "retryable": retryable}},
        status_code=status_code,
    )


def _identity(request: Request) -> tuple[str, str]:
    """(user_id, team_id) from the headers set by the authenticating proxy."""
    user_id = (request.headers.get("x-user-id") or "").strip()
    team_id = (request.headers.get("x-team-id") or "").strip()
    if not user_id or not team_id:
        raise IdentityRequired()
    return user_id, team_id


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValueError("invalid json") from e
    if not isinstance(payload, dict):
        raise ValueError("body must be a JSON object")
    return payload


def _redirect_with(base: str, params: dict[str, str | None]) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v})
    sep = "&" if "?" in base else "?"
    return RedirectResponse(url=f"{base}{sep}{query}", status_code=302)


def create_app(
    settings: Settings,
    *,
    registry: AdapterRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    google_customer_lookup: GoogleCustomerLookup | None = None,
) -> FastAPI:
    CredentialDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    registry = registry or build_default_registry(settings, repo, transport)
    oauth = OAuthFlowController(
        settings,
        repo,
        transport=transport,
        google_customer_lookup=google_customer_lookup,
    )
    refresher = TokenRefreshService(settings, repo, oauth)
    campaigns = CampaignService(settings, repo, registry)

    app = FastAPI(title="AllAd")
    app.state.repo = repo
    app.state.registry = registry
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IdentityRequired)
    async def _identity_required(_request: Request, _exc: IdentityRequired):
        return _error("UNAUTHENTICATED", "Missing user or team identity.", 401)

    @app.exception_handler(PlatformError)
    async def _platform_error(_request: Request, exc: PlatformError):
        body: dict[str, Any] = {"code": exc.code.value, "message": exc.user_message, "retryable": exc.retryable}
        if exc.retry_after_seconds is not None:
            body["retry_after_seconds"] = exc.retry_after_seconds
        if settings.dev_mode and exc.detail:
            # Provider text can echo request data; only exposed on local dev.
            body["detail"] = exc.detail
        return JSONResponse({"error": body}, status_code=_STATUS_BY_CODE.get(exc.code, 502))

    @app.exception_handler(StoreError)
    async def _store_error(_request: Request, exc: StoreError):
        return _error(exc.code, str(exc), exc.status_code)

    def _owned_credential(credential_id: str, team_id: str) -> Credential | None:
        cred = repo.get_credential_by_id(credential_id)
        if cred is None or cred.team_id != team_id:
            return None
        return cred

    # ------------------------------------------------------------------ #
    # OAuth                                                                #
    # ------------------------------------------------------------------ #

    @app.get("/api/auth/oauth/{platform}")
    def oauth_initiate(request: Request, platform: str):
        user_id, team_id = _identity(request)
        try:
            url = oauth.initiate(platform, user_id, team_id)
        except OAuthFlowError as e:
            return _redirect_with(
                settings.dashboard_url(),
                {"error": e.reason, "platform": normalize_platform(platform), "message": e.message},
            )
        return RedirectResponse(url=url, status_code=302)

    async def _callback(request: Request, platform: str):
        q = request.query_params
        key = normalize_platform(platform)
        try:
            cred = await oauth.handle_callback(
                key,
                q.get("code"),
                q.get("state"),
                error=q.get("error"),
                error_description=q.get("error_description"),
            )
        except OAuthFlowError as e:
            return _redirect_with(
                settings.dashboard_url(),
                {"error": e.reason, "platform": key, "message": e.message},
            )
        except StoreError as e:
            logger.warning("oauth callback store failure platform=%s code=%s", key, e.code)
            return _redirect_with(settings.dashboard_url(), {"error": "storage_failed", "platform": key})
        return _redirect_with(
            settings.dashboard_url(),
            {
                "success": "platform_connected",
                "platform": key,
                "account": cred.account_name or cred.account_id,
            },
        )

    @app.get("/api/auth/oauth/{platform}/callback")
    async def oauth_callback(request: Request, platform: str):
        return await _callback(request, platform)

    @app.get("/api/auth/callback/{platform}-ads")
    async def oauth_callback_redirect_uri(request: Request, platform: str):
        return await _callback(request, platform)

    @app.get("/api/auth/platforms")
    def platforms_catalog():
        catalog = describe_platforms()
        for entry in catalog:
            caps = registry.capabilities(entry["platform"])
            entry["capabilities"] = caps.to_dict() if caps else None
        return JSONResponse({"platforms": catalog})

    # ------------------------------------------------------------------ #
    # Refresh                                                              #
    # ------------------------------------------------------------------ #

    @app.post("/api/auth/refresh")
    async def refresh_now(request: Request):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        platform = normalize_platform(body.get("platform")) if body.get("platform") else None
        account_id = str(body.get("accountId") or body.get("account_id") or "").strip() or None
        summary = await refresher.refresh_due(team_id=team_id, platform=platform, account_id=account_id)
        return JSONResponse({"success": True, "message": summary.message(), **summary.to_dict()})

    @app.get("/api/auth/refresh")
    def refresh_status(request: Request, platform: str | None = None, accountId: str | None = None):
        _user_id, team_id = _identity(request)
        rows = refresher.status(team_id, normalize_platform(platform) if platform else None, accountId)
        return JSONResponse({"success": True, "credentials": rows})

    @app.post("/api/cron/refresh-tokens")
    async def cron_refresh(request: Request):
        if settings.cron_secret:
            auth = request.headers.get("authorization") or ""
            if not hmac.compare_digest(auth, f"Bearer {settings.cron_secret}"):
                return _error("UNAUTHENTICATED", "Invalid cron secret.", 401)
        summary = await refresher.refresh_due()
        swept = refresher.sweep_expired_states()
        return JSONResponse(
            {"success": True, "message": summary.message(), "swept_states": swept, **summary.to_dict()}
        )

    # ------------------------------------------------------------------ #
    # Credentials                                                          #
    # ------------------------------------------------------------------ #

    @app.get("/api/auth/credentials")
    def list_credentials(request: Request, platform: str | None = None):
        _user_id, team_id = _identity(request)
        creds = repo.get_credentials(
            team_id,
            normalize_platform(platform) if platform else None,
            include_inactive=True,
        )
        return JSONResponse({"credentials": [c.public_dict() for c in creds]})

    @app.post("/api/auth/credentials/{credential_id}/active")
    async def set_credential_active(request: Request, credential_id: str):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        if "active" not in body:
            return _error("BAD_REQUEST", "active is required", 400)
        if _owned_credential(credential_id, team_id) is None:
            return _error("NOT_FOUND", "Credential not found.", 404)
        active = _to_bool(body.get("active"))
        repo.set_credential_active(credential_id, active)
        return JSONResponse({"success": True, "id": credential_id, "is_active": active})

    @app.put("/api/auth/credentials/{credential_id}/settings")
    async def update_credential_settings(request: Request, credential_id: str):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        cred = _owned_credential(credential_id, team_id)
        if cred is None:
            return _error("NOT_FOUND", "Credential not found.", 404)
        allowed = platform_data_fields(cred.platform)
        unknown = sorted(k for k in body if k not in allowed)
        if unknown:
            return _error("BAD_REQUEST", f"unknown settings for {cred.platform}: {', '.join(unknown)}", 400)
        updated = repo.update_credential_data(credential_id, body)
        return JSONResponse({"success": True, "credential": updated.public_dict() if updated else None})

    @app.delete("/api/auth/disconnect/{credential_id}")
    def disconnect(request: Request, credential_id: str):
        _user_id, team_id = _identity(request)
        if _owned_credential(credential_id, team_id) is None:
            return _error("NOT_FOUND", "Credential not found.", 404)
        repo.delete_credential(credential_id)
        logger.info("credential disconnected id=%s team=%s", credential_id, team_id)
        return JSONResponse({"success": True})

    @app.post("/api/auth/coupang")
    async def connect_coupang(request: Request):
        user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
            cred = await campaigns.connect_coupang(
                team_id,
                user_id,
                vendor_id=str(body.get("vendorId") or body.get("vendor_id") or ""),
                access_key=str(body.get("accessKey") or body.get("access_key") or ""),
                secret_key=str(body.get("secretKey") or body.get("secret_key") or ""),
                account_name=body.get("accountName") or body.get("account_name"),
            )
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        return JSONResponse({"success": True, "credential": cred.public_dict()})

    # ------------------------------------------------------------------ #
    # Campaigns                                                            #
    # ------------------------------------------------------------------ #

    @app.get("/api/campaigns")
    def list_campaigns(request: Request, platform: str | None = None):
        _user_id, team_id = _identity(request)
        rows = repo.list_campaigns(team_id, normalize_platform(platform) if platform else None)
        return JSONResponse({"campaigns": rows})

    @app.post("/api/sync/{platform}")
    async def sync_platform(request: Request, platform: str):
        _user_id, team_id = _identity(request)
        key = normalize_platform(platform)
        if key not in SUPPORTED_PLATFORMS:
            return _error("BAD_REQUEST", f"unknown platform {platform!r}", 400)
        n = await campaigns.sync_campaigns(team_id, key)
        return JSONResponse({"success": True, "platform": key, "synced": n})

    @app.put("/api/campaigns/{platform}/{campaign_id}/budget")
    async def update_budget(request: Request, platform: str, campaign_id: str):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
            if body.get("budget") is None:
                raise ValueError("budget is required")
            out = await campaigns.update_budget(team_id, platform, campaign_id, float(body["budget"]))
        except (TypeError, ValueError) as e:
            return _error("BAD_REQUEST", str(e), 400)
        except LookupError as e:
            return _error("NOT_FOUND", str(e), 404)
        return JSONResponse(out)

    @app.put("/api/campaigns/{platform}/{campaign_id}/status")
    async def update_status(request: Request, platform: str, campaign_id: str):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
            if "active" not in body:
                raise ValueError("active is required")
            out = await campaigns.update_status(team_id, platform, campaign_id, _to_bool(body["active"]))
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        except LookupError as e:
            return _error("NOT_FOUND", str(e), 404)
        return JSONResponse(out)

    @app.get("/api/campaigns/{platform}/{campaign_id}/metrics")
    async def campaign_metrics(request: Request, platform: str, campaign_id: str, start: str, end: str):
        _user_id, team_id = _identity(request)
        try:
            date_range = DateRange.parse(start, end)
        except ValueError as e:
            return _error("BAD_REQUEST", str(e), 400)
        rows = await campaigns.fetch_performance(team_id, platform, campaign_id, date_range)
        return JSONResponse({"campaign_id": campaign_id, "metrics": rows})

    # Coupang has no campaign API; the team keys campaigns and daily numbers in by hand.

    @app.post("/api/campaigns/coupang")
    async def create_coupang_campaign(request: Request):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
            row = campaigns.create_manual_campaign(
                team_id,
                campaign_id=str(body.get("campaignId") or body.get("campaign_id") or ""),
                name=str(body.get("name") or ""),
                status=str(body.get("status") or "active"),
                budget=body.get("budget"),
                notes=body.get("notes"),
            )
        except (TypeError, ValueError) as e:
            return _error("BAD_REQUEST", str(e), 400)
        except LookupError as e:
            return _error("NOT_FOUND", str(e), 404)
        return JSONResponse({"success": True, "campaign": row})

    @app.post("/api/campaigns/coupang/{campaign_id}/metrics")
    async def record_coupang_metrics(request: Request, campaign_id: str):
        _user_id, team_id = _identity(request)
        try:
            body = await _json_body(request)
            rows = body.get("metrics")
            if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
                raise ValueError("metrics must be a list of objects")
            n = campaigns.record_manual_metrics(team_id, campaign_id, rows)
        except (TypeError, ValueError) as e:
            return _error("BAD_REQUEST", str(e), 400)
        except LookupError as e:
            return _error("NOT_FOUND", str(e), 404)
        return JSONResponse({"success": True, "recorded": n})

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
