"""
Client for the shared remote cache tier (Upstash-compatible Redis REST API).

Every command is a single HTTPS round trip, so nothing here holds a socket
open between requests. When no URL/token pair is configured the client runs
in no-op mode: reads miss, writes succeed trivially.
"""
import json
import logging
from typing import Any

import httpx

from ..config import REMOTE_CACHE_TOKEN_ENV, REMOTE_CACHE_URL_ENV, first_env
from .errors import RemoteCacheError

logger = logging.getLogger(__name__)

REMOTE_CACHE_TIMEOUT_SECONDS = 2.0


def ttl_to_seconds(ttl: float) -> int:
    return max(1, int(round(ttl)))


class RemoteCacheClient:
    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = REMOTE_CACHE_TIMEOUT_SECONDS,
        from_env: bool = True,
    ):
        self._url = url.rstrip("/") if url else None
        self._token = token
        self._http = http
        self._owns_http = http is None
        self._timeout = timeout
        self._from_env = from_env and not (url and token)
        self._resolved = bool(url and token) or not from_env

    def _resolve(self) -> None:
        # Environment is read on first use, not at import.
        if self._resolved:
            return
        self._resolved = True
        if self._from_env:
            self._url = (first_env(REMOTE_CACHE_URL_ENV) or "").rstrip("/") or None
            self._token = first_env(REMOTE_CACHE_TOKEN_ENV)
        if self.enabled:
            logger.info("remote cache enabled at %s", self._url)
        else:
            logger.info("remote cache not configured; running local-only")

    @property
    def enabled(self) -> bool:
        return bool(self._url and self._token)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _post(self, path: str, body: list[Any]) -> Any:
        url = f"{self._url}{path}"
        try:
            response = await self._client().post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            raise RemoteCacheError(f"remote cache request failed: {exc}") from exc

        if response.status_code != 200:
            raise RemoteCacheError(f"remote cache returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteCacheError("remote cache returned malformed JSON") from exc
        return payload

    async def _command(self, *args: Any) -> Any:
        payload = await self._post("", list(args))
        if not isinstance(payload, dict):
            raise RemoteCacheError("remote cache returned an unexpected payload")
        if payload.get("error"):
            raise RemoteCacheError(str(payload["error"]))
        return payload.get("result")

    @staticmethod
    def _decode(raw: Any) -> Any:
        if raw is None:
            return None
        if not isinstance(raw, str):
            return raw
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def get(self, key: str) -> Any | None:
        self._resolve()
        if not self.enabled:
            return None
        try:
            raw = await self._command("GET", key)
        except RemoteCacheError as exc:
            logger.warning("remote cache GET %s failed: %s", key, exc)
            return None
        return self._decode(raw)

    async def set(self, key: str, value: Any, ttl: float) -> bool:
        self._resolve()
        if not self.enabled:
            return True
        try:
            await self._command("SET", key, json.dumps(value), "EX", ttl_to_seconds(ttl))
        except (RemoteCacheError, TypeError, ValueError) as exc:
            logger.warning("remote cache SET %s failed: %s", key, exc)
            return False
        return True

    async def mget(self, keys: list[str]) -> dict[str, Any]:
        self._resolve()
        found: dict[str, Any] = {}
        if not self.enabled or not keys:
            return found
        try:
            values = await self._command("MGET", *keys)
        except RemoteCacheError as exc:
            logger.warning("remote cache MGET of %s keys failed: %s", len(keys), exc)
            return found
        if not isinstance(values, list):
            logger.warning("remote cache MGET returned %s, expected a list", type(values).__name__)
            return found
        for key, raw in zip(keys, values):
            value = self._decode(raw)
            if value is not None:
                found[key] = value
        return found

    async def mset(self, entries: list[tuple[str, Any, float]]) -> bool:
        """Pipelined SET ... EX for each (key, value, ttl) entry."""
        self._resolve()
        if not self.enabled or not entries:
            return True
        try:
            commands = [
                ["SET", key, json.dumps(value), "EX", ttl_to_seconds(ttl)]
                for key, value, ttl in entries
            ]
            results = await self._post("/pipeline", commands)
        except (RemoteCacheError, TypeError, ValueError) as exc:
            logger.warning("remote cache pipeline of %s writes failed: %s", len(entries), exc)
            return False
        if isinstance(results, list):
            failures = [r for r in results if isinstance(r, dict) and r.get("error")]
            if failures:
                logger.warning("remote cache pipeline: %s of %s writes failed", len(failures), len(entries))
                return False
        return True
