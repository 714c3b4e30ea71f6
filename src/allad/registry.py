from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from allad.config import Settings
from allad.connectors import (
    AdapterCapabilities,
    AdapterContext,
    AmazonAdsAdapter,
    CoupangManualAdapter,
    GoogleAdsAdapter,
    KakaoMomentAdapter,
    MetaAdsAdapter,
    NaverSearchAdAdapter,
    PlatformAdapter,
    TikTokAdsAdapter,
)
from allad.errors import PlatformErrorCode, classify, platform_error, with_retry
from allad.models import Credential, normalize_platform
from allad.repo import Repo


logger = logging.getLogger(__name__)

AdapterFactory = Callable[[AdapterContext], PlatformAdapter]


class _ClassifyingAdapter:
    """
    Wrap an adapter so every platform call leaves as a PlatformError.
    Reads are retried with backoff; writes run once.
    Other attributes are transparently forwarded.
    """

    _READS = frozenset({"fetch_campaigns", "fetch_performance"})
    _WRITES = frozenset({"update_budget", "update_status", "verify_keys"})

    def __init__(
        self,
        inner: Any,
        *,
        platform: str,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self._inner = inner
        self._platform = platform
        self._settings = settings
        self._sleep = sleep

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._inner, name)
        if name in self._READS:
            return self._with_retry(attr)
        if name in self._WRITES:
            return self._classified(attr)
        return attr

    def _with_retry(self, fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def call(*args: Any, **kwargs: Any) -> Any:
            extra: dict[str, Any] = {}
            if self._sleep is not None:
                extra["sleep"] = self._sleep
            return await with_retry(
                lambda: fn(*args, **kwargs),
                platform=self._platform,
                policy=self._settings.retry,
                locale=self._settings.locale,
                **extra,
            )

        return call

    def _classified(self, fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        async def call(*args: Any, **kwargs: Any) -> Any:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:  # noqa: BLE001 - normalize at the adapter boundary
                err = classify(e, self._platform, locale=self._settings.locale)
                if err is e:
                    raise
                raise err from e

        return call


class AdapterRegistry:
    """Platform key -> adapter factory. Built once at startup and passed around."""

    def __init__(
        self,
        settings: Settings,
        *,
        repo: Repo | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.transport = transport
        self._sleep = sleep
        self._factories: dict[str, AdapterFactory] = {}

    def register(self, platform: str, factory: AdapterFactory) -> None:
        self._factories[normalize_platform(platform)] = factory

    def platforms(self) -> list[str]:
        return sorted(self._factories)

    def capabilities(self, platform: str) -> AdapterCapabilities | None:
        """What the registered adapter can do, without building one."""
        return getattr(self._factories.get(normalize_platform(platform)), "capabilities", None)

    def get_adapter(self, platform: str, credential: Credential) -> PlatformAdapter:
        key = normalize_platform(platform)
        factory = self._factories.get(key)
        if factory is None:
            raise platform_error(
                key,
                PlatformErrorCode.CONFIG_ERROR,
                detail=f"no adapter registered for {key!r}",
                locale=self.settings.locale,
            )
        ctx = AdapterContext(
            credential=credential,
            settings=self.settings,
            transport=self.transport,
            repo=self.repo,
        )
        return _ClassifyingAdapter(factory(ctx), platform=key, settings=self.settings, sleep=self._sleep)  # type: ignore[return-value]


def build_default_registry(
    settings: Settings,
    repo: Repo | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> AdapterRegistry:
    registry = AdapterRegistry(settings, repo=repo, transport=transport, sleep=sleep)
    registry.register("google", GoogleAdsAdapter)
    registry.register("facebook", MetaAdsAdapter)
    registry.register("tiktok", TikTokAdsAdapter)
    registry.register("kakao", KakaoMomentAdapter)
    registry.register("naver", NaverSearchAdAdapter)
    registry.register("amazon", AmazonAdsAdapter)
    registry.register("coupang", CoupangManualAdapter)
    return registry
