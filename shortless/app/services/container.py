import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from ..config import Settings
from .remote_cache import RemoteCacheClient
from .shorts import ShortsClassifier
from .subfeed import SubscriptionFeed
from .ttl_cache import TTLCache
from .youtube_client import InFlightRegistry, QuotaState, YouTubeClient

logger = logging.getLogger(__name__)

PUBLIC_CACHE_PREFIX = "pub:"
USER_CACHE_PREFIX = "usr:"


@dataclass
class Services:
    """Process-wide objects, built once at startup and handed to every handler."""

    settings: Settings
    remote: RemoteCacheClient
    public_cache: TTLCache
    user_cache: TTLCache
    quota: QuotaState
    inflight: InFlightRegistry
    youtube: YouTubeClient
    shorts: ShortsClassifier
    feed: SubscriptionFeed

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        remote: RemoteCacheClient | None = None,
        http: httpx.AsyncClient | None = None,
        token_refresher: Callable[[str], Awaitable[str]] | None = None,
    ) -> "Services":
        settings = settings or Settings.from_env()
        remote = remote or RemoteCacheClient()
        public_cache = TTLCache(PUBLIC_CACHE_PREFIX, remote)
        user_cache = TTLCache(USER_CACHE_PREFIX, remote)
        quota = QuotaState()
        inflight = InFlightRegistry()
        youtube = YouTubeClient(
            settings.youtube_api_key,
            public_cache=public_cache,
            user_cache=user_cache,
            quota=quota,
            inflight=inflight,
            http=http,
            region_code=settings.region_code,
            token_refresher=token_refresher,
        )
        return cls(
            settings=settings,
            remote=remote,
            public_cache=public_cache,
            user_cache=user_cache,
            quota=quota,
            inflight=inflight,
            youtube=youtube,
            shorts=ShortsClassifier(public_cache, http=http),
            feed=SubscriptionFeed(youtube),
        )

    def start(self) -> None:
        self.public_cache.start_sweeper()
        self.user_cache.start_sweeper()
        if not self.settings.youtube_api_key:
            logger.warning("YOUTUBE_API_KEY is not set; public endpoints will fail until it is")

    async def aclose(self) -> None:
        await self.public_cache.close()
        await self.user_cache.close()
        await self.youtube.aclose()
        await self.shorts.aclose()
        await self.remote.aclose()
