import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
YOUTUBE_SHORTS_URL = "https://www.youtube.com/shorts/{video_id}"
YOUTUBE_SUGGEST_URL = "https://suggestqueries-clients6.youtube.com/complete/search"

# Checked in order; the first non-empty value wins.
REMOTE_CACHE_URL_ENV = ("SHORTLESS_YT_CACHE_KV_URL", "UPSTASH_REDIS_REST_URL", "KV_REST_API_URL")
REMOTE_CACHE_TOKEN_ENV = ("SHORTLESS_YT_CACHE_KV_TOKEN", "UPSTASH_REDIS_REST_TOKEN", "KV_REST_API_TOKEN")

DEFAULT_CORS_ORIGINS = ["http://localhost:5173"]


def first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    youtube_api_key: str | None = None
    cors_allowed_origins: str = ""
    log_level: str = "INFO"
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: int = 60
    region_code: str = "US"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            youtube_api_key=(os.getenv("YOUTUBE_API_KEY") or "").strip() or None,
            cors_allowed_origins=(os.getenv("CORS_ALLOWED_ORIGINS") or "").strip(),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            rate_limit_max_requests=_int_env("API_RATE_LIMIT_MAX_REQUESTS", 60),
            rate_limit_window_seconds=_int_env("API_RATE_LIMIT_WINDOW_SECONDS", 60),
            region_code=(os.getenv("YOUTUBE_REGION_CODE") or "US").upper(),
        )

    def parse_cors_origins(self) -> tuple[list[str], bool]:
        raw = self.cors_allowed_origins
        if not raw:
            return list(DEFAULT_CORS_ORIGINS), True
        if raw == "*":
            return ["*"], False
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if not origins:
            return list(DEFAULT_CORS_ORIGINS), True
        return origins, True
