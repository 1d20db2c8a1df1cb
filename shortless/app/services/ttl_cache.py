"""
Two-tier TTL cache: an in-process dict in front of the shared remote cache.

Local entries expire lazily on read and are swept periodically. Remote writes
are fire-and-forget tasks; a failed remote write only shows up in the logs.
If the remote tier is unconfigured or unreachable the cache behaves as a
plain local cache with a lower hit rate.
"""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

from .remote_cache import RemoteCacheClient

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 5 * 60
PRINCIPAL_HASH_LENGTH = 16

FIVE_MINUTES = 5 * 60
FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60
ONE_DAY = 24 * 60 * 60
THIRTY_DAYS = 30 * ONE_DAY
ONE_YEAR = 365 * ONE_DAY


def escape_segment(segment: Any) -> str:
    if segment is None:
        return ""
    return quote(str(segment), safe="")


def build_key(prefix: str, *segments: Any) -> str:
    """
    Join a logical prefix and user-controlled segments with ':'.
    Segments are percent-escaped, so 'a:b' and 'a%3Ab' never collide.
    """
    return ":".join([prefix, *(escape_segment(s) for s in segments)])


def principal_hash(access_token: str) -> str:
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:PRINCIPAL_HASH_LENGTH]


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    def __init__(
        self,
        prefix: str,
        remote: RemoteCacheClient | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    ):
        self.prefix = prefix
        self.remote = remote
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._store: dict[str, CacheEntry] = {}
        self._pending_writes: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._store)

    def _remote_key(self, key: str) -> str:
        return self.prefix + key

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._store.pop(key, None)
            return None
        return entry.value

    def _set_local(self, key: str, value: Any, ttl: float) -> None:
        self._store[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    async def get_with_remote(self, key: str, ttl: float) -> Any | None:
        hit = self.get(key)
        if hit is not None:
            return hit
        if self.remote is None:
            return None
        value = await self.remote.get(self._remote_key(key))
        if value is None:
            return None
        self._set_local(key, value, ttl)
        return value

    def set(self, key: str, value: Any, ttl: float, *, local_only: bool = False) -> None:
        self._set_local(key, value, ttl)
        if self.remote is not None and not local_only:
            self._spawn(self.remote.set(self._remote_key(key), value, ttl), key)

    async def batch_get(self, keys: list[str], ttl: float) -> dict[str, Any]:
        found: dict[str, Any] = {}
        misses: list[str] = []
        for key in keys:
            hit = self.get(key)
            if hit is not None:
                found[key] = hit
            elif key not in misses:
                misses.append(key)

        if misses and self.remote is not None:
            remote_hits = await self.fetch_remote_many(misses)
            for key, value in remote_hits.items():
                self._set_local(key, value, ttl)
                found[key] = value
        return found

    async def fetch_remote_many(self, keys: list[str]) -> dict[str, Any]:
        """Remote-tier lookup only; no local promotion. Keys are unprefixed."""
        if self.remote is None or not keys:
            return {}
        remote_keys = [self._remote_key(k) for k in keys]
        hits = await self.remote.mget(remote_keys)
        return {key: hits[rk] for key, rk in zip(keys, remote_keys) if rk in hits}

    def store_remote_many(self, entries: list[tuple[str, Any]], ttl: float) -> None:
        if self.remote is None or not entries:
            return
        batch = [(self._remote_key(key), value, ttl) for key, value in entries]
        self._spawn(self.remote.mset(batch), f"{len(batch)} keys")

    def _spawn(self, coro, label: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("no running loop; skipped remote write for %s", label)
            return
        self._pending_writes.add(task)
        task.add_done_callback(self._write_finished)

    def _write_finished(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("remote cache write failed: %s", exc)

    async def drain(self) -> None:
        """Wait for outstanding remote writes (shutdown and tests)."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        """Clears the local tier only."""
        self._store.clear()

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._store.items() if now > entry.expires_at]
        for key in expired:
            self._store.pop(key, None)
        if expired:
            logger.debug("%s swept %s expired entries", self.prefix, len(expired))
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.drain()
        self._store.clear()
