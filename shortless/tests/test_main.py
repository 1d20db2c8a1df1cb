import json
from datetime import datetime, timezone

import httpx
import pytest
from fastapi import HTTPException
from starlette.requests import Request

import shortless.main as main_module
from conftest import playlist_entry, video_resource
from shortless.app.config import Settings
from shortless.app.services.container import Services
from shortless.app.services.errors import NotFoundError, QuotaExhaustedError, UpstreamError
from shortless.app.services.remote_cache import RemoteCacheClient
from shortless.main import (
    channel_page,
    enforce_api_rate_limit,
    get_access_token,
    health,
    list_videos,
    playlist_page,
    suggest,
    watch,
    youtube_not_found_handler,
    youtube_quota_exhausted_handler,
    youtube_upstream_error_handler,
)


def make_request(ip: str = "127.0.0.1", token: str | None = None) -> Request:
    headers = []
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
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


@pytest.fixture
def services(monkeypatch, fake_youtube):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_youtube.handler))
    services = Services.build(
        Settings(youtube_api_key="test-key"),
        remote=RemoteCacheClient(from_env=False),
        http=http,
    )
    monkeypatch.setattr(main_module, "SERVICES", services)
    main_module.API_RATE_LIMIT_BUCKETS.clear()
    return services


def test_get_access_token():
    assert get_access_token(make_request(token="abc")) == "abc"
    assert get_access_token(make_request()) is None


def test_rate_limit_per_ip(monkeypatch):
    monkeypatch.setattr(main_module, "API_RATE_LIMIT_MAX_REQUESTS", 2)
    main_module.API_RATE_LIMIT_BUCKETS.clear()

    enforce_api_rate_limit(make_request("1.1.1.1"))
    enforce_api_rate_limit(make_request("1.1.1.1"))
    with pytest.raises(HTTPException) as exc:
        enforce_api_rate_limit(make_request("1.1.1.1"))
    assert exc.value.status_code == 429
    enforce_api_rate_limit(make_request("2.2.2.2"))


def test_health_reports_quota(services):
    assert health() == {"ok": True, "quota_exhausted_until": None}


@pytest.mark.asyncio
async def test_quota_handler_returns_specific_error_code():
    reset_at = datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc)
    response = await youtube_quota_exhausted_handler(make_request(), QuotaExhaustedError(reset_at))
    body = json.loads(response.body)
    assert response.status_code == 429
    assert body["error_code"] == "youtube_quota_exhausted"
    assert body["reset_at"] == "2024-01-16T08:00:00+00:00"


@pytest.mark.asyncio
async def test_upstream_handler_returns_502():
    response = await youtube_upstream_error_handler(make_request(), UpstreamError("down", endpoint="videos"))
    assert response.status_code == 502


@pytest.mark.asyncio
async def test_not_found_handler_returns_404():
    response = await youtube_not_found_handler(make_request(), NotFoundError("YouTube videos: not found"))
    assert response.status_code == 404
    assert json.loads(response.body)["error_code"] == "not_found"


def test_settings_read_rate_limit_window(monkeypatch):
    monkeypatch.setenv("API_RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("API_RATE_LIMIT_WINDOW_SECONDS", "10")
    settings = Settings.from_env()
    assert (settings.rate_limit_max_requests, settings.rate_limit_window_seconds) == (5, 10)


@pytest.mark.asyncio
async def test_list_videos_validates_source(services):
    with pytest.raises(HTTPException) as exc:
        await list_videos(make_request())
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        await list_videos(make_request(), source="bogus")
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        await list_videos(make_request(), source="trending", page_token="x" * 201)
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_trending_removes_shorts_and_broken_items(services, fake_youtube):
    fake_youtube.routes["videos"] = lambda params: {
        "items": [
            video_resource("long", duration="PT12M"),
            video_resource("short", duration="PT30S"),
            video_resource("gone", title="Deleted video", thumbnail=False),
        ],
        "nextPageToken": "CAUQAA",
    }

    result = await list_videos(make_request(), source="trending")

    assert [v.id for v in result["items"]] == ["long"]
    assert result["next_page_token"] == "CAUQAA"
    assert fake_youtube.probe_calls == []


@pytest.mark.asyncio
async def test_subfeed_requires_auth_and_valid_cursor(services):
    with pytest.raises(HTTPException) as exc:
        await list_videos(make_request(), source="subfeed")
    assert exc.value.status_code == 401

    with pytest.raises(HTTPException) as exc:
        await list_videos(make_request(token="tok"), source="subfeed", cursor="{broken")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_subfeed_returns_wire_cursor(services, fake_youtube):
    fake_youtube.routes["subscriptions"] = lambda params: {
        "items": [{"snippet": {"title": "A", "resourceId": {"channelId": "UCA"}}}]
    }
    fake_youtube.routes["channels"] = lambda params: {
        "items": [{"id": "UCA", "contentDetails": {"relatedPlaylists": {"uploads": "UUA"}}}]
    }
    fake_youtube.serve_playlists({"UUA": [playlist_entry(f"a{i}", -i, "UCA") for i in range(25)]})
    fake_youtube.serve_videos([video_resource(f"a{i}", channel_id="UCA") for i in range(25)])

    result = await list_videos(make_request(token="tok"), source="subfeed")

    assert len(result["items"]) == 20
    assert result["cursor"] == [{"playlistId": "UUA", "offset": 20}]


@pytest.mark.asyncio
async def test_watch_missing_video_is_404(services, fake_youtube):
    fake_youtube.serve_videos([])
    with pytest.raises(HTTPException) as exc:
        await watch(make_request(), v="nope")
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_watch_degrades_secondary_data(services, fake_youtube):
    fake_youtube.serve_videos([video_resource("main", channel_id="UC1")])
    fake_youtube.routes["channels"] = lambda params: httpx.Response(500, text="oops")
    fake_youtube.routes["commentThreads"] = lambda params: httpx.Response(
        403, json={"error": {"errors": [{"reason": "commentsDisabled"}]}}
    )

    result = await watch(make_request(), v="main")

    assert result["video"].id == "main"
    assert result["channel"] is None
    assert result["comments"] == []
    assert result["more_from_channel"] == []


@pytest.mark.asyncio
async def test_channel_page_rejects_long_ids(services):
    with pytest.raises(HTTPException) as exc:
        await channel_page(make_request(), "UC" + "x" * 40)
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_playlist_page_collects_until_enough_survivors(services, fake_youtube):
    entries = [playlist_entry(f"s{i}", -i) for i in range(20)] + [playlist_entry(f"l{i}", -20 - i) for i in range(30)]
    fake_youtube.serve_playlists({"PL1": entries})
    fake_youtube.serve_videos(
        [video_resource(f"s{i}", duration="PT20S") for i in range(20)]
        + [video_resource(f"l{i}", duration="PT8M") for i in range(30)]
    )
    fake_youtube.routes["playlists"] = lambda params: {
        "items": [{"id": "PL1", "snippet": {"title": "Mix"}, "contentDetails": {"itemCount": 50}}]
    }

    result = await playlist_page(make_request(), "PL1")

    assert result["playlist"].title == "Mix"
    assert [v.id for v in result["items"]] == [f"l{i}" for i in range(20)]
    assert result["next_page_token"] == "40"
    assert fake_youtube.count("playlistItems") == 2


@pytest.mark.asyncio
async def test_suggest_blank_query_skips_upstream(services, fake_youtube):
    assert await suggest(make_request(), q="  ") == []
    assert fake_youtube.calls == []


@pytest.mark.asyncio
async def test_trending_unknown_category_is_an_empty_page(services, fake_youtube):
    fake_youtube.routes["videos"] = lambda params: httpx.Response(
        404, json={"error": {"code": 404, "errors": [{"reason": "videoChartNotFound"}]}}
    )

    result = await list_videos(make_request(), source="trending", category_id="99")

    assert result["items"] == []
    assert result["next_page_token"] is None
