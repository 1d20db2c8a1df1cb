"""
Normalized YouTube records.

Search and playlist responses only carry snippet data; duration, counts and
statistics come from a second detail call. Both shapes parse into the same
model, and `VideoItem.merged_with` folds the detail record into the
lightweight one.
"""
import re
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field, model_validator

T = TypeVar("T")

ISO_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


def iso8601_duration_to_seconds(duration: str | None) -> int:
    match = ISO_DURATION_RE.match(duration or "")
    if not match:
        return 0
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2) or 0)
    seconds = int(match.group(3) or 0)
    return hours * 3600 + minutes * 60 + seconds


def parse_iso8601_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def best_thumbnail_url(thumbnails: dict | None) -> str:
    thumbnails = thumbnails or {}
    for key in ("medium", "high", "default", "standard", "maxres"):
        t = thumbnails.get(key)
        if isinstance(t, dict) and t.get("url"):
            return t["url"]
    return ""


def _resource_id(item: dict, id_key: str) -> str:
    raw = item.get("id")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return raw.get(id_key) or ""
    return ""


class VideoItem(BaseModel):
    id: str
    title: str = ""
    thumbnail_url: str = ""
    channel_id: str = ""
    channel_title: str = ""
    channel_avatar_url: str | None = None
    view_count: str = "0"
    published_at: str = ""
    # ISO 8601; empty when the record has not been hydrated
    duration: str = ""
    description: str = ""
    like_count: str = "0"
    live_broadcast_content: str | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "VideoItem":
        snippet = item.get("snippet") or {}
        details = item.get("contentDetails") or {}
        stats = item.get("statistics") or {}
        return cls(
            id=_resource_id(item, "videoId"),
            title=snippet.get("title") or "",
            thumbnail_url=best_thumbnail_url(snippet.get("thumbnails")),
            channel_id=snippet.get("channelId") or "",
            channel_title=snippet.get("channelTitle") or "",
            view_count=str(stats.get("viewCount") or "0"),
            published_at=snippet.get("publishedAt") or "",
            duration=details.get("duration") or "",
            description=snippet.get("description") or "",
            like_count=str(stats.get("likeCount") or "0"),
            live_broadcast_content=snippet.get("liveBroadcastContent"),
        )

    @classmethod
    def from_playlist_item(cls, item: dict[str, Any]) -> "VideoItem | None":
        snippet = item.get("snippet") or {}
        details = item.get("contentDetails") or {}
        video_id = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
        if not video_id:
            return None
        return cls(
            id=video_id,
            title=snippet.get("title") or "",
            thumbnail_url=best_thumbnail_url(snippet.get("thumbnails")),
            # videoOwnerChannel* is the uploader; channelId is the playlist owner
            channel_id=snippet.get("videoOwnerChannelId") or snippet.get("channelId") or "",
            channel_title=snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle") or "",
            # snippet.publishedAt is when the item was added to the playlist
            published_at=details.get("videoPublishedAt") or snippet.get("publishedAt") or "",
            description=snippet.get("description") or "",
        )

    @property
    def duration_seconds(self) -> int:
        return iso8601_duration_to_seconds(self.duration)

    @property
    def views(self) -> int:
        try:
            return int(self.view_count or 0)
        except ValueError:
            return 0

    @property
    def published_ts(self) -> float:
        published = parse_iso8601_datetime(self.published_at)
        return published.timestamp() if published else 0.0

    def merged_with(self, detail: "VideoItem") -> "VideoItem":
        """Detail fields win; fields the detail record left empty keep their current value."""
        merged = self.model_dump()
        for field, value in detail.model_dump().items():
            if value not in (None, "", "0") or merged.get(field) in (None, ""):
                merged[field] = value
        return VideoItem(**merged)


class ChannelItem(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    subscriber_count: str = "0"
    video_count: str = "0"
    view_count: str | None = None
    published_at: str | None = None
    banner_url: str | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "ChannelItem":
        snippet = item.get("snippet") or {}
        stats = item.get("statistics") or {}
        branding = (item.get("brandingSettings") or {}).get("image") or {}
        return cls(
            id=_resource_id(item, "channelId"),
            title=snippet.get("title") or "",
            description=snippet.get("description") or "",
            thumbnail_url=best_thumbnail_url(snippet.get("thumbnails")),
            subscriber_count=str(stats.get("subscriberCount") or "0"),
            video_count=str(stats.get("videoCount") or "0"),
            view_count=stats.get("viewCount"),
            published_at=snippet.get("publishedAt"),
            banner_url=branding.get("bannerExternalUrl"),
        )

    @classmethod
    def from_subscription(cls, item: dict[str, Any]) -> "ChannelItem":
        snippet = item.get("snippet") or {}
        return cls(
            id=(snippet.get("resourceId") or {}).get("channelId") or "",
            title=snippet.get("title") or "",
            description=snippet.get("description") or "",
            thumbnail_url=best_thumbnail_url(snippet.get("thumbnails")),
        )


class PlaylistItem(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    thumbnail_url: str = ""
    channel_title: str = ""
    item_count: int = 0

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "PlaylistItem":
        snippet = item.get("snippet") or {}
        details = item.get("contentDetails") or {}
        return cls(
            id=_resource_id(item, "playlistId"),
            title=snippet.get("title") or "",
            description=snippet.get("description") or "",
            thumbnail_url=best_thumbnail_url(snippet.get("thumbnails")),
            channel_title=snippet.get("channelTitle") or "",
            item_count=int(details.get("itemCount") or 0),
        )


class CommentItem(BaseModel):
    id: str
    author_name: str = ""
    author_avatar_url: str = ""
    text: str = ""
    like_count: int = 0
    published_at: str = ""
    reply_count: int = 0

    @classmethod
    def from_thread(cls, item: dict[str, Any]) -> "CommentItem":
        snippet = item.get("snippet") or {}
        top = ((snippet.get("topLevelComment") or {}).get("snippet")) or {}
        comment = cls.from_comment({"id": item.get("id"), "snippet": top})
        comment.reply_count = int(snippet.get("totalReplyCount") or 0)
        return comment

    @classmethod
    def from_comment(cls, item: dict[str, Any]) -> "CommentItem":
        snippet = item.get("snippet") or {}
        return cls(
            id=item.get("id") or "",
            author_name=snippet.get("authorDisplayName") or "",
            author_avatar_url=snippet.get("authorProfileImageUrl") or "",
            # textOriginal is plain text; textDisplay is rendered HTML
            text=snippet.get("textOriginal") or snippet.get("textDisplay") or "",
            like_count=int(snippet.get("likeCount") or 0),
            published_at=snippet.get("publishedAt") or "",
        )


class Category(BaseModel):
    id: str
    title: str


class UserProfile(BaseModel):
    avatar_url: str = ""
    channel_title: str = ""


class Page(BaseModel, Generic[T]):
    items: list[T] = Field(default_factory=list)
    next_page_token: str | None = None
    total_results: int = 0


RESULT_MODELS: dict[str, type[BaseModel]] = {
    "video": VideoItem,
    "channel": ChannelItem,
    "playlist": PlaylistItem,
}


class SearchResult(BaseModel):
    type: Literal["video", "channel", "playlist"]
    item: VideoItem | ChannelItem | PlaylistItem

    @model_validator(mode="before")
    @classmethod
    def _item_by_type(cls, data: Any) -> Any:
        # The three item shapes overlap, so pick the model from the tag.
        if isinstance(data, dict) and isinstance(data.get("item"), dict):
            model = RESULT_MODELS.get(data.get("type"))
            if model is not None:
                data = {**data, "item": model.model_validate(data["item"])}
        return data


class MixedSearchPage(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)
    next_page_token: str | None = None
