from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from starlette.requests import Request

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import shortless.main as main_module
from shortless.app.config import Settings
from shortless.app.services.container import Services
from shortless.app.services.errors import QuotaExhaustedError
from shortless.app.services.remote_cache import RemoteCacheClient


def make_request(ip: str = "127.0.0.1", token: str | None = None) -> Request:
    headers = [(b"authorization", f"Bearer {token}".encode())] if token else []
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def make_video(video_id: str, days_ago: int, views: int, duration: str, channel_id: str = "UCsmoke") -> dict:
    published_at = (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat().replace("+00:00", "Z")
    return {
        "id": video_id,
        "snippet": {
            "title": f"Video {video_id}",
            "channelId": channel_id,
            "channelTitle": "Smoke Channel",
            "publishedAt": published_at,
            "thumbnails": {"medium": {"url": f"https://img/{video_id}.jpg"}},
        },
        "statistics": {"viewCount": str(views)},
        "contentDetails": {"duration": duration},
    }


def make_playlist_entry(video_id: str, days_ago: int, channel_id: str) -> dict:
    published_at = (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat().replace("+00:00", "Z")
    return {
        "snippet": {
            "title": f"Video {video_id}",
            "videoOwnerChannelId": channel_id,
            "thumbnails": {"medium": {"url": f"https://img/{video_id}.jpg"}},
        },
        "contentDetails": {"videoId": video_id, "videoPublishedAt": published_at},
    }


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


class FakeUpstream:
    def __init__(self):
        self.routes = {}
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.youtube.com":
            video_id = request.url.path.rsplit("/", 1)[-1]
            self.calls.append(("probe", video_id))
            return httpx.Response(303, headers={"location": f"https://www.youtube.com/watch?v={video_id}"})
        endpoint = request.url.path.rsplit("/", 1)[-1]
        params = dict(request.url.params)
        self.calls.append((endpoint, params))
        route = self.routes.get(endpoint)
        if route is None:
            return httpx.Response(404, json={"error": {"code": 404}})
        result = route(params)
        return result if isinstance(result, httpx.Response) else httpx.Response(200, json=result)

    def count(self, endpoint: str) -> int:
        return sum(1 for call in self.calls if call[0] == endpoint)


def reset_state() -> FakeUpstream:
    upstream = FakeUpstream()
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    main_module.SERVICES = Services.build(
        Settings(youtube_api_key="smoke-key"),
        remote=RemoteCacheClient(from_env=False),
        http=http,
    )
    main_module.API_RATE_LIMIT_BUCKETS.clear()
    return upstream


def test_health() -> None:
    reset_state()
    payload = main_module.health()
    assert_true(payload.get("ok") is True, "/health should return ok=true")


def test_trending_cache() -> None:
    upstream = reset_state()
    upstream.routes["videos"] = lambda params: {
        "items": [make_video("top1", 3, 25000, "PT12M"), make_video("short1", 2, 15000, "PT45S")],
        "nextPageToken": "NEXT_TOKEN",
    }

    async def scenario():
        request = make_request()
        first = await main_module.list_videos(request, source="trending")
        second = await main_module.list_videos(request, source="trending")
        return first, second

    payload_1, payload_2 = asyncio.run(scenario())
    assert_true([v.id for v in payload_1["items"]] == ["top1"], "trending should drop the <=60s item")
    assert_true(payload_1 == payload_2, "trending cached response should be identical")
    assert_true(upstream.count("videos") == 1, "trending should hit source once then cache")


def test_coalesced_search() -> None:
    upstream = reset_state()
    upstream.routes["search"] = lambda params: {
        "items": [{"id": {"kind": "youtube#video", "videoId": "s1"}, "snippet": {"title": "s1"}}]
    }
    upstream.routes["videos"] = lambda params: {"items": [make_video("s1", 1, 100, "PT5M")]}

    async def scenario():
        youtube = main_module.get_services().youtube
        return await asyncio.gather(*(youtube.search_videos("smoke") for _ in range(4)))

    pages = asyncio.run(scenario())
    assert_true(upstream.count("search") == 1, "concurrent identical searches should share one call")
    assert_true(all(page is pages[0] for page in pages), "coalesced callers should get the same result")


def test_quota_fail_fast() -> None:
    upstream = reset_state()
    upstream.routes["videos"] = lambda params: httpx.Response(
        403, json={"error": {"errors": [{"reason": "quotaExceeded"}]}}
    )

    async def scenario():
        youtube = main_module.get_services().youtube
        outcomes = []
        for category in (None, "10"):
            try:
                await youtube.get_trending(category)
            except QuotaExhaustedError as exc:
                outcomes.append(exc.reset_at)
        return outcomes

    outcomes = asyncio.run(scenario())
    assert_true(len(outcomes) == 2, "both calls should fail with quota exhaustion")
    assert_true(upstream.count("videos") == 1, "second call should not reach upstream")
    assert_true(main_module.health()["quota_exhausted_until"] is not None, "/health should report the reset time")


def test_subfeed_page() -> None:
    upstream = reset_state()
    upstream.routes["subscriptions"] = lambda params: {
        "items": [{"snippet": {"resourceId": {"channelId": cid}}} for cid in ("UCa", "UCb")]
    }
    upstream.routes["channels"] = lambda params: {
        "items": [{"id": params["id"], "contentDetails": {"relatedPlaylists": {"uploads": "UU" + params["id"][2:]}}}]
    }
    uploads = {
        "UUa": [make_playlist_entry("a1", 1, "UCa"), make_playlist_entry("a2", 4, "UCa")],
        "UUb": [make_playlist_entry("b1", 2, "UCb")],
    }
    upstream.routes["playlistItems"] = lambda params: {"items": uploads[params["playlistId"]]}
    upstream.routes["videos"] = lambda params: {
        "items": [make_video(vid, 1, 100, "PT9M") for vid in params["id"].split(",")]
    }

    async def scenario():
        return await main_module.list_videos(make_request(token="smoke-token"), source="subfeed")

    payload = asyncio.run(scenario())
    assert_true([v.id for v in payload["items"]] == ["a1", "b1", "a2"], "subfeed should merge newest first")
    assert_true(payload["cursor"] is None, "exhausted channels should leave no cursor")


def run() -> int:
    checks = [
        ("health", test_health),
        ("trending cache", test_trending_cache),
        ("coalesced search", test_coalesced_search),
        ("quota fail-fast", test_quota_fail_fast),
        ("subfeed page", test_subfeed_page),
    ]
    failures = []

    for check_name, check_fn in checks:
        try:
            check_fn()
            print(f"[PASS] {check_name}")
        except Exception as exc:  # pragma: no cover - smoke script output path
            failures.append((check_name, str(exc)))
            print(f"[FAIL] {check_name}: {exc}")

    if failures:
        print(f"\nSmoke checks failed: {len(failures)}")
        for check_name, message in failures:
            print(f"- {check_name}: {message}")
        return 1

    print("\nAll smoke checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
