"""
YouTube Data API v3 client.

All upstream traffic goes through `YouTubeClient.api_get`, which:
- refuses to dispatch while the daily quota is known to be spent,
- marks the quota as spent (until the next Pacific midnight) on a 403
  quotaExceeded response,
- injects the API key for public calls or a bearer token for user calls.

List, search and paginated operations are cached (public or per-user tier)
and coalesced: concurrent callers asking for the same page share one
in-flight call and receive the same result or the same error.
"""
import asyncio
import json
import logging
import re
import time
from datetime import datetime, time as dt_time, timedelta, timezone
from functools import lru_cache, partial
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx
from pydantic import TypeAdapter, ValidationError

from ..config import YOUTUBE_API_BASE, YOUTUBE_SUGGEST_URL
from .errors import ConfigurationError, NotFoundError, QuotaExhaustedError, UpstreamError
from .models import (
    Category,
    ChannelItem,
    CommentItem,
    MixedSearchPage,
    Page,
    PlaylistItem,
    SearchResult,
    UserProfile,
    VideoItem,
)
from .ttl_cache import (
    FIFTEEN_MINUTES,
    FIVE_MINUTES,
    ONE_DAY,
    ONE_HOUR,
    THIRTY_DAYS,
    TTLCache,
    build_key,
    principal_hash,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_RESET_TZ = ZoneInfo("America/Los_Angeles")
QUOTA_ERROR_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
MAX_BATCH_SIZE = 50
PAGE_SIZE = 20
API_TIMEOUT_SECONDS = 15.0
SUGGEST_TIMEOUT_SECONDS = 5.0

API_KEY_RE = re.compile(r"key=[^&]+")
SUGGEST_PAYLOAD_RE = re.compile(r"\[.+\]", re.DOTALL)

SEARCH_KINDS = {
    "youtube#video": ("video", "videoId"),
    "youtube#channel": ("channel", "channelId"),
    "youtube#playlist": ("playlist", "playlistId"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def chunked(lst, n):
    for i in range(0, len(lst), n):
        yield lst[i:i + n]


def unique(values) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def next_quota_reset(now: datetime) -> datetime:
    """Next midnight in the quota's reference timezone, returned in UTC."""
    local = now.astimezone(QUOTA_RESET_TZ)
    tomorrow = local.date() + timedelta(days=1)
    # zoneinfo picks the right UTC offset for that date, so DST shifts are handled
    reset_local = datetime.combine(tomorrow, dt_time(0, 0), tzinfo=QUOTA_RESET_TZ)
    return reset_local.astimezone(timezone.utc)


def mask_api_key(url: str) -> str:
    return API_KEY_RE.sub("key=***", url)


def is_quota_exceeded_response(response: httpx.Response) -> bool:
    if response.status_code != 403:
        return False
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        errors = (payload.get("error") or {}).get("errors") or []
        for error in errors:
            if isinstance(error, dict) and error.get("reason") in QUOTA_ERROR_REASONS:
                return True
    lowered = response.text.lower()
    return "quotaexceeded" in lowered or "youtube.quota" in lowered


@lru_cache(maxsize=None)
def _adapter(tp) -> TypeAdapter:
    return TypeAdapter(tp)


class QuotaState:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self.exhausted_until: datetime | None = None

    def is_exhausted(self) -> bool:
        if self.exhausted_until is None:
            return False
        if self._clock() >= self.exhausted_until:
            logger.info("quota reset boundary %s passed", self.exhausted_until.isoformat())
            self.exhausted_until = None
            return False
        return True

    def check(self) -> None:
        if self.is_exhausted():
            raise QuotaExhaustedError(self.exhausted_until)

    def mark_exhausted(self) -> datetime:
        reset_at = next_quota_reset(self._clock())
        if self.exhausted_until is None or reset_at > self.exhausted_until:
            logger.error("YouTube quota exhausted; failing fast until %s", reset_at.isoformat())
            self.exhausted_until = reset_at
        return self.exhausted_until


class InFlightRegistry:
    """At most one pending task per key; every waiter gets that task's outcome."""

    def __init__(self):
        self._pending: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(partial(self._settled, key))
        else:
            logger.debug("coalesced onto in-flight call %s", key)
        # shield: one waiter being cancelled must not cancel the shared call
        return await asyncio.shield(task)

    def _settled(self, key: str, task: asyncio.Future) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()


class YouTubeClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        public_cache: TTLCache,
        user_cache: TTLCache,
        quota: QuotaState | None = None,
        inflight: InFlightRegistry | None = None,
        http: httpx.AsyncClient | None = None,
        base_url: str = YOUTUBE_API_BASE,
        region_code: str = "US",
        token_refresher: Callable[[str], Awaitable[str]] | None = None,
    ):
        self.api_key = api_key
        self.public_cache = public_cache
        self.user_cache = user_cache
        self.quota = quota or QuotaState()
        self.inflight = inflight or InFlightRegistry()
        self.base_url = base_url.rstrip("/")
        self.region_code = region_code
        self.token_refresher = token_refresher
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=API_TIMEOUT_SECONDS)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("Missing YOUTUBE_API_KEY")
        return self.api_key

    # ---------------------------
    # Transport
    # ---------------------------

    async def api_get(
        self,
        endpoint: str,
        params: dict[str, Any],
        access_token: str | None = None,
        *,
        _refreshed: bool = False,
    ) -> dict[str, Any]:
        self.quota.check()

        query = {key: str(value) for key, value in params.items() if value is not None}
        headers: dict[str, str] = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        else:
            query["key"] = self._require_api_key()

        url = f"{self.base_url}/{endpoint}"
        started = time.monotonic()
        try:
            response = await self._client().get(url, params=query, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("YouTube %s transport failure: %s", endpoint, exc)
            raise UpstreamError(
                "YouTube is temporarily unavailable. Please try again.",
                endpoint=endpoint,
            ) from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "YouTube %s -> %s in %sms (authenticated=%s) %s",
            endpoint,
            response.status_code,
            elapsed_ms,
            bool(access_token),
            mask_api_key(str(response.request.url)),
        )

        if response.status_code == 200:
            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError(f"Malformed response from {endpoint}", endpoint=endpoint) from exc
            if not isinstance(payload, dict):
                raise UpstreamError(f"Unexpected payload from {endpoint}", endpoint=endpoint)
            return payload

        if response.status_code == 401 and access_token and self.token_refresher and not _refreshed:
            logger.info("YouTube %s rejected the access token; refreshing once", endpoint)
            fresh_token = await self.token_refresher(access_token)
            return await self.api_get(endpoint, params, fresh_token, _refreshed=True)

        if is_quota_exceeded_response(response):
            raise QuotaExhaustedError(self.quota.mark_exhausted())

        if response.status_code == 404:
            raise NotFoundError(f"YouTube {endpoint}: not found")

        logger.warning("YouTube %s error %s: %s", endpoint, response.status_code, response.text[:500])
        raise UpstreamError(
            f"YouTube API error {response.status_code} on {endpoint}",
            endpoint=endpoint,
            status_code=response.status_code,
        )

    @staticmethod
    def coalescing_key(endpoint: str, params: dict[str, Any], access_token: str | None = None) -> str:
        normalized = urlencode(sorted((k, str(v)) for k, v in params.items() if v is not None))
        principal = principal_hash(access_token) if access_token else "anon"
        return f"{endpoint}?{normalized}#{principal}"

    async def fetch_coalesced(
        self,
        endpoint: str,
        params: dict[str, Any],
        access_token: str | None = None,
    ) -> dict[str, Any]:
        key = self.coalescing_key(endpoint, params, access_token)
        return await self.inflight.run(key, lambda: self.api_get(endpoint, params, access_token))

    async def _cached(
        self,
        cache: TTLCache,
        key: str,
        ttl: float,
        tp: Any,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        adapter = _adapter(tp)
        hit = await cache.get_with_remote(key, ttl)
        if hit is not None:
            try:
                value = adapter.validate_python(hit)
            except ValidationError as exc:
                # stale schema or truncated entry; the loader's write replaces it
                logger.warning("discarding unreadable cache entry %s%s: %s", cache.prefix, key, exc)
                cache.delete(key)
            else:
                logger.debug("cache hit %s%s", cache.prefix, key)
                return value
        logger.debug("cache miss %s%s", cache.prefix, key)

        async def load_and_store():
            value = await loader()
            cache.set(key, adapter.dump_python(value, mode="json"), ttl)
            return value

        # The cache key already names the operation and its parameters.
        return await self.inflight.run(cache.prefix + key, load_and_store)

    # ---------------------------
    # Detail lookups (per-id cache, batched misses)
    # ---------------------------

    async def _details(
        self,
        ids: list[str],
        *,
        prefix: str,
        endpoint: str,
        part: str,
        ttl: float,
        model,
    ) -> list:
        wanted = unique(ids)
        if not wanted:
            return []
        keys = {item_id: build_key(prefix, item_id) for item_id in wanted}
        hits = await self.public_cache.batch_get(list(keys.values()), ttl)
        found = {}
        for item_id, key in keys.items():
            if key not in hits:
                continue
            try:
                found[item_id] = model.model_validate(hits[key])
            except ValidationError as exc:
                logger.warning("discarding unreadable cache entry %s%s: %s", self.public_cache.prefix, key, exc)
                self.public_cache.delete(key)
        missing = [item_id for item_id in wanted if item_id not in found]
        if missing:
            logger.debug("%s details: %s cached, %s to fetch", endpoint, len(found), len(missing))

        for batch in chunked(missing, MAX_BATCH_SIZE):
            try:
                payload = await self.api_get(
                    endpoint,
                    {"part": part, "id": ",".join(batch), "maxResults": MAX_BATCH_SIZE},
                )
            except NotFoundError:
                continue
            for raw in payload.get("items", []):
                record = model.from_api(raw)
                if not record.id:
                    continue
                found[record.id] = record
                self.public_cache.set(build_key(prefix, record.id), record.model_dump(mode="json"), ttl)

        return [found[item_id] for item_id in wanted if item_id in found]

    async def get_video_details(self, ids: list[str]) -> list[VideoItem]:
        return await self._details(
            ids,
            prefix="video",
            endpoint="videos",
            part="snippet,contentDetails,statistics",
            ttl=FIFTEEN_MINUTES,
            model=VideoItem,
        )

    async def get_channel_details(self, ids: list[str]) -> list[ChannelItem]:
        return await self._details(
            ids,
            prefix="channel",
            endpoint="channels",
            part="snippet,statistics,brandingSettings",
            ttl=ONE_HOUR,
            model=ChannelItem,
        )

    async def get_playlist_details(self, ids: list[str]) -> list[PlaylistItem]:
        return await self._details(
            ids,
            prefix="playlist",
            endpoint="playlists",
            part="snippet,contentDetails",
            ttl=FIFTEEN_MINUTES,
            model=PlaylistItem,
        )

    async def hydrate_videos(self, videos: list[VideoItem]) -> list[VideoItem]:
        """
        Second step for search-style results: fetch duration and statistics
        and merge them in. Videos the detail call no longer knows about
        (private, deleted) are dropped.
        """
        if not videos:
            return []
        details = await self.get_video_details([v.id for v in videos])
        by_id = {d.id: d for d in details}
        hydrated = []
        for video in videos:
            detail = by_id.get(video.id)
            if detail is not None:
                hydrated.append(video.merged_with(detail))
        return hydrated

    # ---------------------------
    # Search
    # ---------------------------

    async def _search(self, query: str, kind: str, page_token: str | None, **extra) -> dict[str, Any]:
        params = {
            "part": "snippet",
            "type": kind,
            "q": query,
            "maxResults": PAGE_SIZE,
            "pageToken": page_token,
            **extra,
        }
        try:
            return await self.api_get("search", params)
        except NotFoundError:
            return {}

    async def search_videos(
        self,
        query: str,
        page_token: str | None = None,
        video_duration: str | None = None,
        order: str | None = None,
    ) -> Page[VideoItem]:
        key = build_key("search:v", query, page_token, video_duration, order)

        async def load() -> Page[VideoItem]:
            data = await self._search(query, "video", page_token, videoDuration=video_duration, order=order)
            light = [VideoItem.from_api(i) for i in data.get("items", [])]
            videos = await self.hydrate_videos([v for v in light if v.id])
            logger.debug("search_videos %r: %s ids, %s hydrated", query, len(light), len(videos))
            return Page[VideoItem](
                items=videos,
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[VideoItem], load)

    async def search_channels(self, query: str, page_token: str | None = None) -> Page[ChannelItem]:
        key = build_key("search:c", query, page_token)

        async def load() -> Page[ChannelItem]:
            data = await self._search(query, "channel", page_token)
            ids = [(i.get("id") or {}).get("channelId") for i in data.get("items", [])]
            return Page[ChannelItem](
                items=await self.get_channel_details(unique(ids)),
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[ChannelItem], load)

    async def search_playlists(self, query: str, page_token: str | None = None) -> Page[PlaylistItem]:
        key = build_key("search:p", query, page_token)

        async def load() -> Page[PlaylistItem]:
            data = await self._search(query, "playlist", page_token)
            ids = [(i.get("id") or {}).get("playlistId") for i in data.get("items", [])]
            # search has no contentDetails, so itemCount needs the playlists call
            return Page[PlaylistItem](
                items=await self.get_playlist_details(unique(ids)),
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[PlaylistItem], load)

    async def search_mixed(
        self,
        query: str,
        types: list[str],
        page_token: str | None = None,
    ) -> MixedSearchPage:
        """One search call across several resource types, each kind hydrated in one batch."""
        kinds = [t for t in ("video", "channel", "playlist") if t in types] or ["video"]
        key = build_key("search:m", query, ",".join(kinds), page_token)

        async def load() -> MixedSearchPage:
            data = await self._search(query, ",".join(kinds), page_token)
            ordered: list[tuple[str, str]] = []
            for raw in data.get("items", []):
                resource = raw.get("id") or {}
                kind = SEARCH_KINDS.get(resource.get("kind"))
                if kind and resource.get(kind[1]):
                    ordered.append((kind[0], resource[kind[1]]))

            light_videos = [
                VideoItem.from_api(raw)
                for raw in data.get("items", [])
                if (raw.get("id") or {}).get("kind") == "youtube#video"
            ]
            videos, channels, playlists = await asyncio.gather(
                self.hydrate_videos(light_videos),
                self.get_channel_details([i for t, i in ordered if t == "channel"]),
                self.get_playlist_details([i for t, i in ordered if t == "playlist"]),
            )
            by_kind = {
                "video": {v.id: v for v in videos},
                "channel": {c.id: c for c in channels},
                "playlist": {p.id: p for p in playlists},
            }
            results = [
                SearchResult(type=kind, item=by_kind[kind][item_id])
                for kind, item_id in ordered
                if item_id in by_kind[kind]
            ]
            return MixedSearchPage(results=results, next_page_token=data.get("nextPageToken"))

        return await self._cached(self.public_cache, key, FIVE_MINUTES, MixedSearchPage, load)

    # ---------------------------
    # Collections
    # ---------------------------

    async def get_uploads_playlist_id(self, channel_id: str) -> str:
        """
        Channels have no "list videos" endpoint; their uploads live in a hidden
        playlist. The mapping never changes, so it is cached for a long time.
        Raises NotFoundError when the channel has no uploads playlist.
        """
        key = build_key("ch:uploads", channel_id)

        async def load() -> str:
            data = await self.api_get("channels", {"part": "contentDetails", "id": channel_id})
            items = data.get("items", [])
            uploads = ""
            if items:
                uploads = (((items[0].get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")) or ""
            if not uploads:
                raise NotFoundError(f"channel {channel_id} has no uploads playlist")
            return uploads

        return await self._cached(self.public_cache, key, THIRTY_DAYS, str, load)

    async def get_playlist_items(
        self,
        playlist_id: str,
        page_token: str | None = None,
        max_results: int = PAGE_SIZE,
    ) -> Page[VideoItem]:
        """One page of a playlist as lightweight (unhydrated) video records."""
        key = build_key("plitems", playlist_id, page_token, max_results)

        async def load() -> Page[VideoItem]:
            params = {
                "part": "snippet,contentDetails",
                "playlistId": playlist_id,
                "maxResults": max_results,
                "pageToken": page_token,
            }
            try:
                data = await self.api_get("playlistItems", params)
            except NotFoundError:
                return Page[VideoItem]()
            items = [VideoItem.from_playlist_item(raw) for raw in data.get("items", [])]
            return Page[VideoItem](
                items=[item for item in items if item is not None],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[VideoItem], load)

    async def get_playlist_videos(self, playlist_id: str, page_token: str | None = None) -> Page[VideoItem]:
        key = build_key("plvideos", playlist_id, page_token)

        async def load() -> Page[VideoItem]:
            page = await self.get_playlist_items(playlist_id, page_token)
            return Page[VideoItem](
                items=await self.hydrate_videos(page.items),
                next_page_token=page.next_page_token,
                total_results=page.total_results,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[VideoItem], load)

    async def get_channel_videos(self, channel_id: str, page_token: str | None = None) -> Page[VideoItem]:
        try:
            uploads = await self.get_uploads_playlist_id(channel_id)
        except NotFoundError:
            return Page[VideoItem]()
        return await self.get_playlist_videos(uploads, page_token)

    async def get_more_from_channel(self, video: VideoItem, limit: int = 12) -> list[VideoItem]:
        """Other uploads from the same channel; shares the channel browse cache entry."""
        if not video.channel_id:
            return []
        page = await self.get_channel_videos(video.channel_id)
        return [v for v in page.items if v.id != video.id][:limit]

    async def get_playlist(self, playlist_id: str) -> PlaylistItem | None:
        playlists = await self.get_playlist_details([playlist_id])
        return playlists[0] if playlists else None

    # ---------------------------
    # Trending & categories
    # ---------------------------

    async def get_trending(self, category_id: str | None = None, page_token: str | None = None) -> Page[VideoItem]:
        key = build_key("trending", self.region_code, category_id, page_token)

        async def load() -> Page[VideoItem]:
            try:
                data = await self.api_get(
                    "videos",
                    {
                        "part": "snippet,contentDetails,statistics",
                        "chart": "mostPopular",
                        "regionCode": self.region_code,
                        "maxResults": PAGE_SIZE,
                        "videoCategoryId": category_id,
                        "pageToken": page_token,
                    },
                )
            except NotFoundError:
                # videoChartNotFound: the category has no chart in this region
                return Page[VideoItem]()
            videos = [VideoItem.from_api(raw) for raw in data.get("items", [])]
            # chart results are already full records; share them with detail lookups
            for video in videos:
                self.public_cache.set(build_key("video", video.id), video.model_dump(mode="json"), FIFTEEN_MINUTES)
            return Page[VideoItem](
                items=videos,
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[VideoItem], load)

    async def get_video_categories(self) -> list[Category]:
        key = build_key("categories", self.region_code)

        async def load() -> list[Category]:
            try:
                data = await self.api_get("videoCategories", {"part": "snippet", "regionCode": self.region_code})
            except NotFoundError:
                return []
            return [
                Category(id=raw.get("id") or "", title=(raw.get("snippet") or {}).get("title") or "")
                for raw in data.get("items", [])
                if (raw.get("snippet") or {}).get("assignable") is True
            ]

        return await self._cached(self.public_cache, key, ONE_DAY, list[Category], load)

    # ---------------------------
    # Comments
    # ---------------------------

    async def get_comments(self, video_id: str, page_token: str | None = None) -> Page[CommentItem]:
        key = build_key("comments", video_id, page_token)

        async def load() -> Page[CommentItem]:
            try:
                data = await self.api_get(
                    "commentThreads",
                    {
                        "part": "snippet",
                        "videoId": video_id,
                        "order": "relevance",
                        "maxResults": PAGE_SIZE,
                        "pageToken": page_token,
                    },
                )
            except NotFoundError:
                return Page[CommentItem]()
            return Page[CommentItem](
                items=[CommentItem.from_thread(raw) for raw in data.get("items", [])],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[CommentItem], load)

    async def get_comment_replies(self, comment_id: str, page_token: str | None = None) -> Page[CommentItem]:
        key = build_key("replies", comment_id, page_token)

        async def load() -> Page[CommentItem]:
            try:
                data = await self.api_get(
                    "comments",
                    {
                        "part": "snippet",
                        "parentId": comment_id,
                        "maxResults": PAGE_SIZE,
                        "pageToken": page_token,
                    },
                )
            except NotFoundError:
                return Page[CommentItem]()
            return Page[CommentItem](
                items=[CommentItem.from_comment(raw) for raw in data.get("items", [])],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.public_cache, key, FIVE_MINUTES, Page[CommentItem], load)

    # ---------------------------
    # Authenticated endpoints
    # ---------------------------

    async def get_subscriptions(
        self,
        access_token: str,
        page_token: str | None = None,
        *,
        order: str = "alphabetical",
        max_results: int = PAGE_SIZE,
    ) -> Page[ChannelItem]:
        key = build_key("user:subs", principal_hash(access_token), order, max_results, page_token)

        async def load() -> Page[ChannelItem]:
            try:
                data = await self.api_get(
                    "subscriptions",
                    {
                        "part": "snippet",
                        "mine": "true",
                        "order": order,
                        "maxResults": max_results,
                        "pageToken": page_token,
                    },
                    access_token,
                )
            except NotFoundError:
                return Page[ChannelItem]()
            channels = [ChannelItem.from_subscription(raw) for raw in data.get("items", [])]
            return Page[ChannelItem](
                items=[c for c in channels if c.id],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.user_cache, key, FIVE_MINUTES, Page[ChannelItem], load)

    async def get_liked_videos(self, access_token: str, page_token: str | None = None) -> Page[VideoItem]:
        key = build_key("user:liked", principal_hash(access_token), page_token)

        async def load() -> Page[VideoItem]:
            try:
                data = await self.api_get(
                    "videos",
                    {
                        "part": "snippet,contentDetails,statistics",
                        "myRating": "like",
                        "maxResults": PAGE_SIZE,
                        "pageToken": page_token,
                    },
                    access_token,
                )
            except NotFoundError:
                return Page[VideoItem]()
            return Page[VideoItem](
                items=[VideoItem.from_api(raw) for raw in data.get("items", [])],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.user_cache, key, FIVE_MINUTES, Page[VideoItem], load)

    async def get_user_playlists(self, access_token: str, page_token: str | None = None) -> Page[PlaylistItem]:
        key = build_key("user:playlists", principal_hash(access_token), page_token)

        async def load() -> Page[PlaylistItem]:
            try:
                data = await self.api_get(
                    "playlists",
                    {
                        "part": "snippet,contentDetails",
                        "mine": "true",
                        "maxResults": PAGE_SIZE,
                        "pageToken": page_token,
                    },
                    access_token,
                )
            except NotFoundError:
                return Page[PlaylistItem]()
            return Page[PlaylistItem](
                items=[PlaylistItem.from_api(raw) for raw in data.get("items", [])],
                next_page_token=data.get("nextPageToken"),
                total_results=(data.get("pageInfo") or {}).get("totalResults") or 0,
            )

        return await self._cached(self.user_cache, key, FIVE_MINUTES, Page[PlaylistItem], load)

    async def get_user_profile(self, access_token: str) -> UserProfile | None:
        key = build_key("user:profile", principal_hash(access_token))

        async def load() -> UserProfile:
            data = await self.api_get("channels", {"part": "snippet", "mine": "true"}, access_token)
            items = data.get("items", [])
            if not items:
                raise NotFoundError("authenticated user has no channel")
            snippet = items[0].get("snippet") or {}
            thumbnails = snippet.get("thumbnails") or {}
            return UserProfile(
                avatar_url=(thumbnails.get("default") or {}).get("url") or "",
                channel_title=snippet.get("title") or "",
            )

        try:
            return await self._cached(self.user_cache, key, FIVE_MINUTES, UserProfile, load)
        except (UpstreamError, NotFoundError) as exc:
            logger.warning("get_user_profile failed: %s", exc)
            return None

    # ---------------------------
    # Autocomplete (not quota-metered)
    # ---------------------------

    async def get_autocomplete_suggestions(self, query: str) -> list[str]:
        """
        The suggest service answers with a JSONP-style body such as
        window.google.ac.h([["cats",[["cats",0],["cats meowing",0]],...]])
        so the outermost array is cut out with a regex before parsing.
        """
        query = (query or "").strip()
        if not query:
            return []

        key = build_key("autocomplete", query)
        cached = self.public_cache.get(key)
        if cached is not None:
            return list(cached)

        try:
            response = await self._client().get(
                YOUTUBE_SUGGEST_URL,
                params={"client": "youtube", "ds": "yt", "q": query},
                timeout=SUGGEST_TIMEOUT_SECONDS,
            )
            match = SUGGEST_PAYLOAD_RE.search(response.text)
            if not match:
                return []
            parsed = json.loads(match.group(0))
            suggestions = [str(entry[0]) for entry in parsed[1] if isinstance(entry, list) and entry]
        except (httpx.HTTPError, ValueError, IndexError, TypeError) as exc:
            logger.warning("autocomplete for %r failed: %s", query, exc)
            return []

        self.public_cache.set(key, suggestions, FIVE_MINUTES, local_only=True)
        return suggestions
