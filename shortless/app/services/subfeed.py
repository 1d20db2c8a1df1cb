"""
Merged subscription feed.

Each subscribed channel is read through its uploads playlist (newest first).
A k-way merge over per-channel buffers emits the globally newest item until
the page target is reached. A buffer's next page is fetched only when its
placeholder, keyed on the last timestamp it emitted, reaches the top of the
heap; a channel that cannot beat the current head is never paged further.

The only state carried between pages is the cursor: one
{"playlistId", "offset"} entry per uploads playlist still in play.
"""
import asyncio
import heapq
import json
import logging
from collections import deque
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFoundError, UpstreamError
from .models import VideoItem
from .youtube_client import YouTubeClient

logger = logging.getLogger(__name__)

MAX_FEED_CHANNELS = 15
FEED_TARGET_ITEMS = 20
MAX_CURSOR_LENGTH = 5000
# resuming walks pages from the start, so deep offsets cost one call per page
MAX_CURSOR_OFFSET = 1000


class CursorEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="playlistId", min_length=1, max_length=64)
    offset: int = Field(ge=0, le=MAX_CURSOR_OFFSET)


class SubFeedCursor(BaseModel):
    entries: list[CursorEntry] = Field(default_factory=list, max_length=MAX_FEED_CHANNELS)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def to_wire(self) -> list[dict]:
        return [entry.model_dump(by_alias=True) for entry in self.entries]

    def serialize(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def parse(cls, raw: str | None) -> "SubFeedCursor":
        """Raises ValueError (including pydantic's ValidationError) on a malformed cursor."""
        if not raw:
            return cls()
        if len(raw) > MAX_CURSOR_LENGTH:
            raise ValueError("cursor too long")
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("cursor must be a JSON array")
        return cls(entries=data)


@dataclass
class ChannelBuffer:
    source_id: str
    start_offset: int
    items: deque = field(default_factory=deque)
    next_page_token: str | None = None
    emitted: int = 0

    @property
    def offset(self) -> int:
        return self.start_offset + self.emitted

    @property
    def exhausted(self) -> bool:
        return not self.items and not self.next_page_token


@dataclass
class FeedPage:
    items: list[VideoItem]
    cursor: SubFeedCursor


class SubscriptionFeed:
    def __init__(self, client: YouTubeClient, *, target: int = FEED_TARGET_ITEMS):
        self.client = client
        self.target = target

    async def build(self, access_token: str, cursor: SubFeedCursor | None = None) -> FeedPage:
        """
        Without a cursor, the merge starts over the user's top subscriptions.
        A non-empty cursor is the closed set of sources for the rest of the
        session: subscriptions are not re-read, so channels subscribed after
        the first page (or already exhausted and dropped from the cursor) do
        not join until the client starts a fresh feed.
        """
        if cursor:
            seen = set()
            starts = []
            for entry in cursor.entries:
                if entry.source_id not in seen:
                    seen.add(entry.source_id)
                    starts.append((entry.source_id, entry.offset))
        else:
            starts = [(playlist_id, 0) for playlist_id in await self._uploads_playlists(access_token)]

        loaded = await asyncio.gather(*(self._load_buffer(pid, offset) for pid, offset in starts))
        buffers = [buf for buf in loaded if buf is not None and not buf.exhausted]
        logger.debug("subfeed: %s sources requested, %s in play", len(starts), len(buffers))

        selected = await self._merge(buffers)
        items = await self.client.hydrate_videos(selected)

        next_cursor = SubFeedCursor(
            entries=[
                CursorEntry(source_id=buf.source_id, offset=buf.offset)
                for buf in buffers
                if not buf.exhausted
            ]
        )
        logger.info("subfeed: %s items selected, %s sources left", len(items), len(next_cursor.entries))
        return FeedPage(items=items, cursor=next_cursor)

    async def _uploads_playlists(self, access_token: str) -> list[str]:
        subscriptions = await self.client.get_subscriptions(
            access_token,
            order="relevance",
            max_results=MAX_FEED_CHANNELS,
        )
        channel_ids = [c.id for c in subscriptions.items][:MAX_FEED_CHANNELS]

        async def resolve(channel_id: str) -> str | None:
            try:
                return await self.client.get_uploads_playlist_id(channel_id)
            except NotFoundError:
                return None
            except UpstreamError as exc:
                logger.warning("subfeed: skipping channel %s: %s", channel_id, exc)
                return None

        resolved = await asyncio.gather(*(resolve(cid) for cid in channel_ids))
        return [pid for pid in resolved if pid]

    async def _load_buffer(self, source_id: str, offset: int) -> ChannelBuffer | None:
        """
        Position a buffer at `offset` by walking the (cached) pages from the
        start. Returns None when the source fails to load.
        """
        buf = ChannelBuffer(source_id=source_id, start_offset=offset)
        remaining = offset
        token = None
        try:
            while True:
                page = await self.client.get_playlist_items(source_id, token)
                if remaining < len(page.items):
                    buf.items.extend(page.items[remaining:])
                    buf.next_page_token = page.next_page_token
                    return buf
                remaining -= len(page.items)
                if not page.next_page_token:
                    # offset is at or past the end; nothing left to emit
                    return buf
                token = page.next_page_token
        except UpstreamError as exc:
            logger.warning("subfeed: dropping source %s: %s", source_id, exc)
            return None

    async def _fetch_next(self, buf: ChannelBuffer) -> None:
        token = buf.next_page_token
        buf.next_page_token = None
        try:
            page = await self.client.get_playlist_items(buf.source_id, token)
        except UpstreamError as exc:
            logger.warning("subfeed: dropping source %s: %s", buf.source_id, exc)
            return
        buf.items.extend(page.items)
        buf.next_page_token = page.next_page_token

    async def _merge(self, buffers: list[ChannelBuffer]) -> list[VideoItem]:
        heap: list[tuple[float, int, int, bool]] = []
        seq = 0

        def push(index: int, ts: float, placeholder: bool = False) -> None:
            nonlocal seq
            heapq.heappush(heap, (-ts, seq, index, placeholder))
            seq += 1

        for index, buf in enumerate(buffers):
            if buf.items:
                push(index, buf.items[0].published_ts)

        selected: list[VideoItem] = []
        while heap and len(selected) < self.target:
            neg_ts, _, index, placeholder = heapq.heappop(heap)
            buf = buffers[index]

            if placeholder:
                await self._fetch_next(buf)
                if buf.items:
                    push(index, buf.items[0].published_ts)
                elif buf.next_page_token:
                    push(index, -neg_ts, placeholder=True)
                continue

            item = buf.items.popleft()
            buf.emitted += 1
            selected.append(item)
            if buf.items:
                push(index, buf.items[0].published_ts)
            elif buf.next_page_token:
                # Older pages can't be newer than what this source just emitted.
                push(index, item.published_ts, placeholder=True)

        return selected
