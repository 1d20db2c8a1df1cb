import asyncio
import logging
import time
from collections import deque
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

try:
    from shortless.app.config import Settings
    from shortless.app.services.container import Services
    from shortless.app.services.errors import (
        ConfigurationError,
        NotFoundError,
        QuotaExhaustedError,
        UpstreamError,
    )
    from shortless.app.services.models import VideoItem
    from shortless.app.services.shorts import filter_out_broken_videos
    from shortless.app.services.subfeed import SubFeedCursor
except ModuleNotFoundError:
    from app.config import Settings
    from app.services.container import Services
    from app.services.errors import (
        ConfigurationError,
        NotFoundError,
        QuotaExhaustedError,
        UpstreamError,
    )
    from app.services.models import VideoItem
    from app.services.shorts import filter_out_broken_videos
    from app.services.subfeed import SubFeedCursor


settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("shortless")

API_RATE_LIMIT_WINDOW_SECONDS = settings.rate_limit_window_seconds
API_RATE_LIMIT_MAX_REQUESTS = settings.rate_limit_max_requests
API_RATE_LIMIT_BUCKETS: dict[str, deque] = {}

MAX_PAGE_TOKEN_LENGTH = 200
MAX_ID_LENGTH = 30
MAX_PLAYLIST_ID_LENGTH = 64
MAX_QUERY_LENGTH = 500

PLAYLIST_TARGET_VIDEOS = 12
PLAYLIST_MAX_PAGES = 6
MORE_FROM_CHANNEL_LIMIT = 12

VIDEO_SOURCES = {"trending", "channel", "playlist", "liked", "search", "subfeed"}
SEARCH_TYPES = ("video", "channel", "playlist")

SERVICES: Services | None = None


def get_services() -> Services:
    global SERVICES
    if SERVICES is None:
        SERVICES = Services.build(settings)
    return SERVICES


# ---------------------------
# Helpers
# ---------------------------

def get_client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_api_rate_limit(request: Request, scope: str = "api") -> None:
    # Per-process sliding window; instances do not share buckets.
    now_ts = time.time()
    key = f"{scope}:{get_client_ip(request)}"
    bucket = API_RATE_LIMIT_BUCKETS.get(key)
    if bucket is None:
        bucket = deque()
        API_RATE_LIMIT_BUCKETS[key] = bucket

    cutoff = now_ts - API_RATE_LIMIT_WINDOW_SECONDS
    while bucket and bucket[0] < cutoff:
        bucket.popleft()

    if len(bucket) >= API_RATE_LIMIT_MAX_REQUESTS:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait a minute and try again.",
        )

    bucket.append(now_ts)


def get_access_token(request: Request) -> str | None:
    header = (request.headers.get("authorization") or "").strip()
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_access_token(request: Request) -> str:
    token = get_access_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Sign in required")
    return token


def check_length(name: str, value: str | None, limit: int) -> None:
    if value is not None and len(value) > limit:
        raise HTTPException(status_code=400, detail=f"{name} too long")


def require_param(name: str, value: str | None, limit: int) -> str:
    value = (value or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing {name} parameter")
    check_length(name, value, limit)
    return value


async def clean_videos(services: Services, videos: list[VideoItem]) -> list[VideoItem]:
    return await services.shorts.classify_and_filter(filter_out_broken_videos(videos))


async def degrade(label: str, awaitable, default):
    """Secondary data: upstream failures become `default` plus a warning."""
    try:
        return await awaitable
    except (UpstreamError, NotFoundError) as exc:
        logger.warning("%s unavailable: %s", label, exc)
        return default


# ---------------------------
# App setup
# ---------------------------

app = FastAPI(title="shortless")

cors_origins, cors_credentials = settings.parse_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QuotaExhaustedError)
async def youtube_quota_exhausted_handler(_request: Request, exc: QuotaExhaustedError):
    return JSONResponse(
        status_code=429,
        content={
            "detail": "YouTube API quota is currently exhausted. Please try again after it resets.",
            "error_code": "youtube_quota_exhausted",
            "reset_at": exc.reset_at.isoformat() if exc.reset_at else None,
        },
    )


@app.exception_handler(UpstreamError)
async def youtube_upstream_error_handler(_request: Request, exc: UpstreamError):
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "error_code": "youtube_upstream_error"},
    )


@app.exception_handler(NotFoundError)
async def youtube_not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "error_code": "not_found"},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_request: Request, exc: ConfigurationError):
    logger.error("configuration error: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service is not configured", "error_code": "configuration_error"},
    )


@app.on_event("startup")
async def on_startup():
    get_services().start()


@app.on_event("shutdown")
async def on_shutdown():
    global SERVICES
    if SERVICES is not None:
        await SERVICES.aclose()
        SERVICES = None


# ---------------------------
# Routes
# ---------------------------

@app.get("/health")
def health():
    quota = get_services().quota
    exhausted = quota.is_exhausted()
    return {
        "ok": True,
        "quota_exhausted_until": quota.exhausted_until.isoformat() if exhausted else None,
    }


@app.get("/api/videos")
async def list_videos(
    request: Request,
    source: str | None = None,
    page_token: str | None = None,
    channel_id: str | None = None,
    playlist_id: str | None = None,
    category_id: str | None = None,
    q: str | None = None,
    types: str | None = None,
    cursor: str | None = None,
):
    """
    Paginated video listings, with broken items and Shorts removed.
    source: trending | channel | playlist | liked | search | subfeed
    """
    if not source:
        raise HTTPException(status_code=400, detail="Missing source parameter")
    if source not in VIDEO_SOURCES:
        raise HTTPException(status_code=400, detail=f"Unknown source: {source}")
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="videos")
    services = get_services()
    youtube = services.youtube

    if source == "subfeed":
        token = require_access_token(request)
        try:
            feed_cursor = SubFeedCursor.parse(cursor)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid cursor: {exc}") from exc
        page = await services.feed.build(token, feed_cursor)
        return {
            "items": await clean_videos(services, page.items),
            "cursor": page.cursor.to_wire() if page.cursor else None,
        }

    if source == "search":
        query = require_param("q", q, MAX_QUERY_LENGTH)
        wanted = [t for t in (types or "").split(",") if t in SEARCH_TYPES] or list(SEARCH_TYPES)
        page = await youtube.search_mixed(query, wanted, page_token)
        videos = [r.item for r in page.results if r.type == "video"]
        kept = {v.id for v in await clean_videos(services, videos)}
        results = [r for r in page.results if r.type != "video" or r.item.id in kept]
        return {"results": results, "next_page_token": page.next_page_token}

    if source == "trending":
        check_length("category_id", category_id, MAX_ID_LENGTH)
        page = await youtube.get_trending(category_id, page_token)
    elif source == "channel":
        channel_id = require_param("channel_id", channel_id, MAX_ID_LENGTH)
        page = await youtube.get_channel_videos(channel_id, page_token)
    elif source == "playlist":
        playlist_id = require_param("playlist_id", playlist_id, MAX_PLAYLIST_ID_LENGTH)
        page = await youtube.get_playlist_videos(playlist_id, page_token)
    else:
        page = await youtube.get_liked_videos(require_access_token(request), page_token)

    return {
        "items": await clean_videos(services, page.items),
        "next_page_token": page.next_page_token,
    }


@app.get("/api/watch")
async def watch(request: Request, v: str | None = None):
    video_id = require_param("v", v, MAX_ID_LENGTH)
    enforce_api_rate_limit(request, scope="watch")
    services = get_services()
    youtube = services.youtube

    videos = await youtube.get_video_details([video_id])
    if not videos:
        raise HTTPException(status_code=404, detail="Video not found")
    video = videos[0]

    channels, comments, more = await asyncio.gather(
        degrade("channel", youtube.get_channel_details([video.channel_id]), []),
        degrade("comments", youtube.get_comments(video.id), None),
        degrade("more from channel", youtube.get_more_from_channel(video, MORE_FROM_CHANNEL_LIMIT), []),
    )
    channel = channels[0] if channels else None
    if channel is not None and channel.thumbnail_url:
        video = video.model_copy(update={"channel_avatar_url": channel.thumbnail_url})

    return {
        "video": video,
        "channel": channel,
        "comments": comments.items if comments else [],
        "comments_next_page_token": comments.next_page_token if comments else None,
        "more_from_channel": await clean_videos(services, more),
    }


@app.get("/api/channel/{channel_id}")
async def channel_page(request: Request, channel_id: str, page_token: str | None = None):
    check_length("channel_id", channel_id, MAX_ID_LENGTH)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="channel")
    services = get_services()

    channels = await services.youtube.get_channel_details([channel_id])
    if not channels:
        raise HTTPException(status_code=404, detail="Channel not found")
    page = await services.youtube.get_channel_videos(channel_id, page_token)
    return {
        "channel": channels[0],
        "items": await clean_videos(services, page.items),
        "next_page_token": page.next_page_token,
    }


@app.get("/api/playlist/{playlist_id}")
async def playlist_page(request: Request, playlist_id: str, page_token: str | None = None):
    """
    Filtering can empty a page, so pages are collected until enough videos
    survive or the page cap is hit.
    """
    check_length("playlist_id", playlist_id, MAX_PLAYLIST_ID_LENGTH)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="playlist")
    services = get_services()

    playlist = await services.youtube.get_playlist(playlist_id)
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist not found")

    items: list[VideoItem] = []
    token = page_token
    for _ in range(PLAYLIST_MAX_PAGES):
        page = await services.youtube.get_playlist_videos(playlist_id, token)
        items.extend(await clean_videos(services, page.items))
        token = page.next_page_token
        if not token or len(items) >= PLAYLIST_TARGET_VIDEOS:
            break

    return {"playlist": playlist, "items": items, "next_page_token": token}


@app.get("/api/comments")
async def comments(request: Request, video_id: str | None = None, page_token: str | None = None):
    video_id = require_param("video_id", video_id, MAX_ID_LENGTH)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="comments")
    page = await get_services().youtube.get_comments(video_id, page_token)
    return {"items": page.items, "next_page_token": page.next_page_token}


@app.get("/api/replies")
async def replies(request: Request, comment_id: str | None = None, page_token: str | None = None):
    comment_id = require_param("comment_id", comment_id, MAX_PLAYLIST_ID_LENGTH)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="comments")
    page = await get_services().youtube.get_comment_replies(comment_id, page_token)
    return {"items": page.items, "next_page_token": page.next_page_token}


@app.get("/api/suggest")
async def suggest(request: Request, q: str | None = None) -> list[str]:
    query = (q or "").strip()
    if not query:
        return []
    check_length("q", query, MAX_QUERY_LENGTH)
    enforce_api_rate_limit(request, scope="suggest")
    return await get_services().youtube.get_autocomplete_suggestions(query)


@app.get("/api/categories")
async def categories(request: Request):
    enforce_api_rate_limit(request, scope="categories")
    return {"items": await get_services().youtube.get_video_categories()}


@app.get("/api/subscriptions")
async def subscriptions(request: Request, page_token: str | None = None):
    token = require_access_token(request)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="user")
    page = await get_services().youtube.get_subscriptions(token, page_token)
    return {"items": page.items, "next_page_token": page.next_page_token}


@app.get("/api/me")
async def me(request: Request) -> dict[str, Any]:
    token = require_access_token(request)
    enforce_api_rate_limit(request, scope="user")
    return {"profile": await get_services().youtube.get_user_profile(token)}


@app.get("/api/me/playlists")
async def my_playlists(request: Request, page_token: str | None = None):
    token = require_access_token(request)
    check_length("page_token", page_token, MAX_PAGE_TOKEN_LENGTH)
    enforce_api_rate_limit(request, scope="user")
    page = await get_services().youtube.get_user_playlists(token, page_token)
    return {"items": page.items, "next_page_token": page.next_page_token}
