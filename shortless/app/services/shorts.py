"""
Shorts detection.

The Data API has no "is short" flag, so classification runs through stages
and stops at the first one that settles the verdict:

1. duration above SHORTS_MAX_SECONDS        -> not short
2. 0 < duration <= SHORTS_CERTAIN_SECONDS   -> short
3. zero duration with views                 -> live broadcast, not short
4. local verdict cache
5. remote verdict cache (one batched lookup per call)
6. HEAD /shorts/{id} without redirects: 200 = short, redirect to /watch = not short

Only definitive verdicts are cached. An inconclusive probe keeps the video
(fail-open) and is retried on a later request.
"""
import asyncio
import logging
from collections import OrderedDict

import httpx

from ..config import YOUTUBE_SHORTS_URL
from .errors import ProbeInconclusiveError
from .models import VideoItem, iso8601_duration_to_seconds
from .ttl_cache import ONE_YEAR, TTLCache, build_key

logger = logging.getLogger(__name__)

SHORTS_CERTAIN_SECONDS = 60
SHORTS_MAX_SECONDS = 180

VERDICT_CACHE_MAX_ENTRIES = 10_000
VERDICT_CACHE_EVICT_FRACTION = 0.1

PROBE_TIMEOUT_SECONDS = 5.0
PROBE_CONCURRENCY = 8
PROBE_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; shortless/1.0)"}

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

BROKEN_TITLES = {"deleted video", "private video"}


def parse_duration_seconds(duration: str | None) -> int:
    return iso8601_duration_to_seconds(duration)


def filter_out_broken_videos(videos: list[VideoItem]) -> list[VideoItem]:
    """Drop placeholders for deleted/private videos (no title or no thumbnail)."""
    clean = []
    for video in videos:
        if not video.id or not video.thumbnail_url:
            continue
        title = (video.title or "").strip()
        if not title or title.lower() in BROKEN_TITLES:
            continue
        clean.append(video)
    return clean


def verdict_key(video_id: str) -> str:
    return build_key("short2", video_id)


def duration_verdict(video: VideoItem) -> bool | None:
    """Stages 1-3. None means the duration alone does not decide."""
    seconds = video.duration_seconds
    if seconds > SHORTS_MAX_SECONDS:
        return False
    if 0 < seconds <= SHORTS_CERTAIN_SECONDS:
        return True
    if seconds == 0 and video.views > 0:
        return False
    return None


class VerdictCache:
    """Insertion-ordered, bounded map of video id -> is_short."""

    def __init__(self, max_entries: int = VERDICT_CACHE_MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, bool] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, video_id: str) -> bool:
        return video_id in self._entries

    def get(self, video_id: str) -> bool | None:
        return self._entries.get(video_id)

    def set(self, video_id: str, is_short: bool) -> None:
        if video_id in self._entries:
            self._entries[video_id] = is_short
            return
        if len(self._entries) >= self.max_entries:
            evict = max(1, int(self.max_entries * VERDICT_CACHE_EVICT_FRACTION))
            for _ in range(evict):
                self._entries.popitem(last=False)
            logger.debug("verdict cache full; evicted %s oldest entries", evict)
        self._entries[video_id] = is_short

    def clear(self) -> None:
        self._entries.clear()


class ShortsClassifier:
    def __init__(
        self,
        public_cache: TTLCache,
        *,
        verdicts: VerdictCache | None = None,
        http: httpx.AsyncClient | None = None,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        concurrency: int = PROBE_CONCURRENCY,
    ):
        self.public_cache = public_cache
        self.verdicts = verdicts or VerdictCache()
        self.probe_timeout = probe_timeout
        self.concurrency = concurrency
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.probe_timeout, headers=PROBE_HEADERS)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def probe(self, video_id: str) -> bool:
        """
        One HEAD request to the Shorts URL.
        Raises ProbeInconclusiveError for anything that is not a clean
        200 or a redirect to a watch page.
        """
        url = YOUTUBE_SHORTS_URL.format(video_id=video_id)
        try:
            response = await self._client().head(
                url,
                follow_redirects=False,
                timeout=self.probe_timeout,
            )
        except httpx.HTTPError as exc:
            raise ProbeInconclusiveError(f"probe for {video_id} failed: {exc!r}") from exc

        if response.status_code == 200:
            return True
        if response.status_code in REDIRECT_STATUSES:
            location = (response.headers.get("location") or "").lower()
            if "/watch" in location:
                return False
            raise ProbeInconclusiveError(f"probe for {video_id} redirected to {location or '?'}")
        raise ProbeInconclusiveError(f"probe for {video_id} returned HTTP {response.status_code}")

    async def classify(self, videos: list[VideoItem]) -> dict[str, bool | None]:
        """
        Verdict per video id. None marks an inconclusive probe; those ids are
        not cached anywhere.
        """
        verdicts: dict[str, bool | None] = {}
        pending: list[str] = []

        for video in videos:
            if not video.id or video.id in verdicts or video.id in pending:
                continue
            verdict = duration_verdict(video)
            if verdict is None:
                verdict = self.verdicts.get(video.id)
            if verdict is None:
                pending.append(video.id)
            else:
                verdicts[video.id] = verdict

        if not pending:
            return verdicts

        remote_hits = await self.public_cache.fetch_remote_many([verdict_key(vid) for vid in pending])
        to_probe = []
        for video_id in pending:
            hit = remote_hits.get(verdict_key(video_id))
            if isinstance(hit, bool):
                self.verdicts.set(video_id, hit)
                verdicts[video_id] = hit
            else:
                to_probe.append(video_id)

        if to_probe:
            probed = await self._probe_many(to_probe)
            verdicts.update(probed)
        return verdicts

    async def _probe_many(self, video_ids: list[str]) -> dict[str, bool | None]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(video_id: str) -> bool | None:
            async with semaphore:
                try:
                    return await self.probe(video_id)
                except ProbeInconclusiveError as exc:
                    logger.info("%s; keeping video", exc)
                    return None

        outcomes = await asyncio.gather(*(run(video_id) for video_id in video_ids))
        results = dict(zip(video_ids, outcomes))

        definitive = [(vid, verdict) for vid, verdict in results.items() if verdict is not None]
        for video_id, verdict in definitive:
            self.verdicts.set(video_id, verdict)
        self.public_cache.store_remote_many(
            [(verdict_key(video_id), verdict) for video_id, verdict in definitive],
            ONE_YEAR,
        )
        logger.debug(
            "probed %s videos: %s shorts, %s not shorts, %s inconclusive",
            len(results),
            sum(1 for v in results.values() if v is True),
            sum(1 for v in results.values() if v is False),
            sum(1 for v in results.values() if v is None),
        )
        return results

    async def classify_and_filter(self, videos: list[VideoItem]) -> list[VideoItem]:
        verdicts = await self.classify(videos)
        kept = [video for video in videos if verdicts.get(video.id) is not True]
        if len(kept) != len(videos):
            logger.debug("removed %s shorts from %s videos", len(videos) - len(kept), len(videos))
        return kept
