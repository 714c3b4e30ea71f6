from allad.connectors.base import (
    AdapterCapabilities,
    AdapterContext,
    CampaignRecord,
    DateRange,
    PerformanceRecord,
    PlatformAdapter,
)
from allad.connectors.amazon_ads import AmazonAdsAdapter
from allad.connectors.coupang import CoupangManualAdapter
from allad.connectors.google_ads import GoogleAdsAdapter
from allad.connectors.kakao_moment import KakaoMomentAdapter
from allad.connectors.meta_ads import MetaAdsAdapter
from allad.connectors.naver_searchad import NaverSearchAdAdapter
from allad.connectors.tiktok_ads import TikTokAdsAdapter

__all__ = [
    "AdapterCapabilities",
    "AdapterContext",
    "CampaignRecord",
    "DateRange",
    "PerformanceRecord",
    "PlatformAdapter",
    "AmazonAdsAdapter",
    "CoupangManualAdapter",
    "GoogleAdsAdapter",
    "KakaoMomentAdapter",
    "MetaAdsAdapter",
    "NaverSearchAdAdapter",
    "TikTokAdsAdapter",
]
