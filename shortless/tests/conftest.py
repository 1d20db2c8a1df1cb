import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from shortless.app.services.remote_cache import RemoteCacheClient
from shortless.app.services.ttl_cache import TTLCache
from shortless.app.services.youtube_client import QuotaState, YouTubeClient

REMOTE_URL = "https://cache.test"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def iso(hours: float) -> str:
    return (BASE_TIME + timedelta(hours=hours)).isoformat().replace("+00:00", "Z")


def video_resource(
    video_id,
    duration="PT10M",
    views=1000,
    published_hours=0,
    channel_id="UCchannel",
    title=None,
    thumbnail=True,
):
    snippet = {
        "title": f"Video {video_id}" if title is None else title,
        "channelId": channel_id,
        "channelTitle": f"Channel {channel_id}",
        "publishedAt": iso(published_hours),
        "thumbnails": {"medium": {"url": f"https://img/{video_id}.jpg"}} if thumbnail else {},
    }
    return {
        "kind": "youtube#video",
        "id": video_id,
        "snippet": snippet,
        "contentDetails": {"duration": duration},
        "statistics": {"viewCount": str(views), "likeCount": "10"},
    }


def playlist_entry(video_id, published_hours=0, channel_id="UCchannel"):
    return {
        "snippet": {
            "title": f"Video {video_id}",
            "channelId": "UCplaylistowner",
            "videoOwnerChannelId": channel_id,
            "videoOwnerChannelTitle": f"Channel {channel_id}",
            "thumbnails": {"medium": {"url": f"https://img/{video_id}.jpg"}},
            "resourceId": {"videoId": video_id},
        },
        "contentDetails": {"videoId": video_id, "videoPublishedAt": iso(published_hours)},
    }


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class FakeRedis:
    """Upstash-style REST endpoint backed by a dict."""

    def __init__(self):
        self.store = {}
        self.commands = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(500, text="boom")
        body = json.loads(request.content)
        if request.url.path.endswith("/pipeline"):
            return httpx.Response(200, json=[{"result": self.execute(cmd)} for cmd in body])
        return httpx.Response(200, json={"result": self.execute(body)})

    def execute(self, cmd):
        self.commands.append(cmd)
        op = cmd[0].upper()
        if op == "GET":
            return self.store.get(cmd[1])
        if op == "SET":
            self.store[cmd[1]] = cmd[2]
            return "OK"
        if op == "MGET":
            return [self.store.get(key) for key in cmd[1:]]
        return None

    def count(self, op):
        return sum(1 for cmd in self.commands if cmd[0].upper() == op)


class FakeYouTube:
    """
    Answers Data API calls from `routes` (endpoint -> fn(params) -> payload or
    httpx.Response), Shorts probes from `probes`, and autocomplete from
    `suggest_body`.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.probes = {}
        self.probe_calls = []
        self.suggest_body = ""

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.youtube.com":
            video_id = request.url.path.rsplit("/", 1)[-1]
            self.probe_calls.append(video_id)
            outcome = self.probes.get(video_id)
            if outcome is None:
                outcome = httpx.Response(303, headers={"location": f"https://www.youtube.com/watch?v={video_id}"})
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        if request.url.host.startswith("suggestqueries"):
            return httpx.Response(200, text=self.suggest_body)

        endpoint = request.url.path.rsplit("/", 1)[-1]
        params = dict(request.url.params)
        self.calls.append((endpoint, params, request.headers.get("authorization")))
        route = self.routes.get(endpoint)
        if route is None:
            return httpx.Response(404, json={"error": {"code": 404, "message": "not found"}})
        result = route(params)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def count(self, endpoint):
        return sum(1 for call in self.calls if call[0] == endpoint)

    def requested_ids(self, endpoint="videos"):
        ids = []
        for name, params, _auth in self.calls:
            if name == endpoint and params.get("id"):
                ids.extend(params["id"].split(","))
        return ids

    def serve_videos(self, videos):
        """Route `videos?id=...` to the given resources, keyed by id."""
        by_id = {v["id"]: v for v in videos}

        def route(params):
            ids = params.get("id", "").split(",")
            return {"items": [by_id[i] for i in ids if i in by_id]}

        self.routes["videos"] = route

    def serve_playlists(self, playlists, page_size=20):
        """Route `playlistItems` for {playlist_id: [entries]} with numeric page tokens."""

        def route(params):
            entries = playlists.get(params.get("playlistId"))
            if entries is None:
                return httpx.Response(404, json={"error": {"code": 404}})
            size = int(params.get("maxResults") or page_size)
            start = int(params.get("pageToken") or 0)
            page = entries[start:start + size]
            payload = {"items": page, "pageInfo": {"totalResults": len(entries)}}
            if start + size < len(entries):
                payload["nextPageToken"] = str(start + size)
            return payload

        self.routes["playlistItems"] = route


def quota_exceeded_response():
    return httpx.Response(
        403,
        json={
            "error": {
                "code": 403,
                "message": "The request cannot be completed because you have exceeded your quota.",
                "errors": [{"reason": "quotaExceeded", "domain": "youtube.quota"}],
            }
        },
    )


@pytest.fixture
def fake_youtube():
    return FakeYouTube()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def http(fake_youtube, fake_redis):
    def router(request):
        if request.url.host == "cache.test":
            return fake_redis.handler(request)
        return fake_youtube.handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(router))


@pytest.fixture
def remote(http):
    return RemoteCacheClient(REMOTE_URL, "secret", http=http)


@pytest.fixture
def public_cache(remote):
    return TTLCache("pub:", remote)


@pytest.fixture
def user_cache(remote):
    return TTLCache("usr:", remote)


@pytest.fixture
def quota_clock():
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def youtube(http, public_cache, user_cache, quota_clock):
    return YouTubeClient(
        "test-key",
        public_cache=public_cache,
        user_cache=user_cache,
        quota=QuotaState(clock=quota_clock),
        http=http,
    )
