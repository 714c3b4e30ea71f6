from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    return int(_float_env(name, float(default)))


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    initial_delay_sec: float = 1.0
    multiplier: float = 2.0
    max_delay_sec: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = self.initial_delay_sec * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay_sec)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    site_url: str
    web_host: str
    web_port: int
    locale: str
    refresh_window_minutes: int
    refresh_interval_minutes: int
    oauth_state_ttl_minutes: int
    http_timeout_sec: float
    retry: RetryPolicy
    cron_secret: str | None
    dashboard_path: str
    dev_mode: bool = False

    def redirect_uri(self, platform: str) -> str:
        return f"{self.site_url.rstrip('/')}/api/auth/callback/{platform}-ads"

    def dashboard_url(self) -> str:
        return f"{self.site_url.rstrip('/')}{self.dashboard_path}"

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ALLAD_DB_PATH", "./data/allad.sqlite3"))
        site_url = (os.getenv("SITE_URL") or "http://localhost:3000").strip()
        web_host = os.getenv("ALLAD_WEB_HOST", "127.0.0.1")
        web_port = _int_env("ALLAD_WEB_PORT", 8020)

        locale = os.getenv("ALLAD_LOCALE", "ko").strip().lower() or "ko"
        if locale not in {"en", "ko"}:
            locale = "en"

        retry = RetryPolicy(
            attempts=max(1, _int_env("ALLAD_RETRY_ATTEMPTS", 3)),
            initial_delay_sec=_float_env("ALLAD_RETRY_INITIAL_DELAY_SEC", 1.0),
            multiplier=_float_env("ALLAD_RETRY_MULTIPLIER", 2.0),
            max_delay_sec=_float_env("ALLAD_RETRY_MAX_DELAY_SEC", 30.0),
        )

        return Settings(
            db_path=db_path,
            site_url=site_url,
            web_host=web_host,
            web_port=web_port,
            locale=locale,
            refresh_window_minutes=_int_env("ALLAD_REFRESH_WINDOW_MINUTES", 30),
            refresh_interval_minutes=_int_env("ALLAD_REFRESH_INTERVAL_MINUTES", 60),
            oauth_state_ttl_minutes=_int_env("ALLAD_OAUTH_STATE_TTL_MINUTES", 10),
            http_timeout_sec=_float_env("ALLAD_HTTP_TIMEOUT_SEC", 30.0),
            retry=retry,
            cron_secret=(os.getenv("ALLAD_CRON_SECRET") or "").strip() or None,
            dashboard_path=os.getenv("ALLAD_DASHBOARD_PATH", "/settings/integrations").strip()
            or "/settings/integrations",
            dev_mode=_truthy(os.getenv("ALLAD_DEV_MODE", "0")),
        )
