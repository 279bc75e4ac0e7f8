"""Collection cache: key derivation, fetch-or-compute, prefix invalidation.

Keys look like:

    sleep_records/user_42/params_<sha256>/<freshness>

- the namespace (``sleep_records/user_42/``) is what invalidation deletes by prefix
- the params digest covers only whitelisted query parameters
- the freshness token is the scoped collection's max(updated_at), so any
  write produces a new key even if an invalidation was missed

The cache is strictly an optimization. Backend failures are logged and the
value is computed directly; they never fail a request.
"""

import hashlib
import json
import re
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar
from uuid import uuid4

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from shared.clock import Clock
from shared.config import settings
from shared.metrics import cache_invalidations_total, cache_lookups_total

logger = structlog.get_logger()

T = TypeVar("T")

SLEEP_RECORDS = "sleep_record"
FOLLOWINGS = "following"
FOLLOWED_SLEEP_RECORDS = "sleep_record_following"

CACHE_PARAM_KEYS = (
    "page",
    "per_page",
    "sort_by",
    "sort_direction",
    "start_date",
    "end_date",
    "from_last_week",
    "completed_only",
    "in_progress_only",
    "limit",
    "followed_user_ids",
)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class CacheBackendError(Exception):
    """Any failure talking to the cache backend."""


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class FreshnessSource(Protocol):
    async def latest_update(self, collection: str, owner_id: int) -> datetime | None: ...


# --- Backends ---


class RedisCacheBackend:
    """Redis backend. Prefix deletion walks SCAN MATCH and UNLINKs in batches."""

    SCAN_BATCH = 500

    def __init__(self, url: str, socket_timeout: float = 1.0, client: redis.Redis | None = None):
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise CacheBackendError(f"SET {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise CacheBackendError(f"DEL {key} failed: {exc}") from exc

    async def delete_prefix(self, prefix: str) -> int:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        removed = 0
        batch: list[str] = []
        try:
            async for key in self._client.scan_iter(match=pattern, count=self.SCAN_BATCH):
                batch.append(key)
                if len(batch) >= self.SCAN_BATCH:
                    removed += await self._client.unlink(*batch)
                    batch = []
            if batch:
                removed += await self._client.unlink(*batch)
        except RedisError as exc:
            raise CacheBackendError(f"prefix delete {prefix!r} failed: {exc}") from exc
        return removed

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            raise CacheBackendError(f"PING failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCacheBackend:
    """Process-local backend for single-node deployments and tests."""

    PURGE_EVERY = 256

    def __init__(self, timer: Callable[[], float] = time.monotonic):
        self._timer = timer
        self._entries: dict[str, tuple[float, str]] = {}
        self._writes = 0

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._timer() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._timer()
        self._writes += 1
        if self._writes >= self.PURGE_EVERY:
            self._writes = 0
            self.purge_expired(now)
        self._entries[key] = (now + ttl_seconds, value)

    def purge_expired(self, now: float | None = None) -> int:
        """Drop every expired entry, including keys orphaned by a newer freshness token."""
        now = self._timer() if now is None else now
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return [key for key in list(self._entries) if self._live(key) is not None]


_backend: CacheBackend | None = None


def get_cache_backend() -> CacheBackend:
    """FastAPI dependency returning the process-wide backend."""
    global _backend
    if _backend is None:
        if settings.cache_backend == "memory":
            _backend = MemoryCacheBackend()
        else:
            _backend = RedisCacheBackend(
                settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
            )
    return _backend


async def close_cache_backend() -> None:
    global _backend
    if _backend is not None:
        await _backend.close()
        _backend = None


async def roundtrip_check(backend: CacheBackend) -> dict[str, Any]:
    """Write, read back and delete a probe key. Used by the cache health endpoint."""
    key = f"health_check/{uuid4().hex}"
    value = uuid4().hex
    started = time.monotonic()
    await backend.set(key, value, 10)
    read_back = await backend.get(key)
    await backend.delete(key)
    elapsed_ms = round((time.monotonic() - started) * 1000, 2)
    return {"ok": read_back == value, "response_time_ms": elapsed_ms}


# --- Key derivation ---


def pluralize(collection: str) -> str:
    return collection if collection.endswith("s") else f"{collection}s"


def namespace(collection: str, owner_id: int) -> str:
    return f"{pluralize(collection)}/user_{owner_id}/"


def cache_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only whitelisted, supplied parameters in a canonical form."""
    selected: dict[str, Any] = {}
    for name in CACHE_PARAM_KEYS:
        value = params.get(name)
        if value is None:
            continue
        if name == "followed_user_ids":
            value = sorted(str(v) for v in value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        selected[name] = value
    return selected


def params_digest(params: Mapping[str, Any]) -> str:
    canonical = json.dumps(cache_params(params), sort_keys=True)
    return hashlib.sha256(canonical.encode()).hexdigest()


def freshness_token(latest_update: datetime | None) -> str:
    """Epoch microseconds of the latest mutation, or "none" for an empty scope."""
    if latest_update is None:
        return "none"
    return str((latest_update - _EPOCH) // timedelta(microseconds=1))


def build_cache_key(
    collection: str, owner_id: int, params: Mapping[str, Any], freshness: str
) -> str:
    return f"{namespace(collection, owner_id)}params_{params_digest(params)}/{freshness}"


# --- Request-scoped facade ---


class CollectionCache:
    """Fetch-or-compute and invalidation for one request.

    `enabled=False` turns every read into a direct compute and every
    invalidation into a no-op.
    """

    def __init__(
        self,
        backend: CacheBackend | None,
        freshness: FreshnessSource,
        clock: Clock,
        *,
        enabled: bool = True,
        ttl_seconds: int = 900,
    ):
        self.backend = backend
        self.freshness = freshness
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and self.backend is not None

    async def key(self, collection: str, owner_id: int, params: Mapping[str, Any]) -> str:
        try:
            token = freshness_token(await self.freshness.latest_update(collection, owner_id))
        except SQLAlchemyError as exc:
            logger.warning(
                "cache_freshness_lookup_failed",
                collection=collection,
                owner_id=owner_id,
                error=str(exc),
            )
            token = str(int(self.clock.now().timestamp()))
        return build_cache_key(collection, owner_id, params, token)

    async def fetch_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        collection = key.split("/", 1)[0]
        if not self.enabled:
            cache_lookups_total.labels(collection=collection, result="bypass").inc()
            return await compute()

        try:
            cached = await self.backend.get(key)
        except CacheBackendError as exc:
            cache_lookups_total.labels(collection=collection, result="error").inc()
            logger.warning("cache_backend_error", operation="get", key=key, error=str(exc))
            return await compute()

        if cached is not None:
            try:
                value = json.loads(cached)
            except ValueError:
                logger.warning("cache_entry_unreadable", key=key)
            else:
                cache_lookups_total.labels(collection=collection, result="hit").inc()
                logger.debug("cache_hit", key=key)
                return value

        cache_lookups_total.labels(collection=collection, result="miss").inc()
        logger.info("cache_miss", key=key)
        value = await compute()
        try:
            await self.backend.set(key, json.dumps(value), ttl_seconds or self.ttl_seconds)
        except CacheBackendError as exc:
            logger.warning("cache_backend_error", operation="set", key=key, error=str(exc))
        return value

    async def invalidate(self, collection: str, owner_id: int) -> None:
        if not self.enabled:
            return
        prefix = namespace(collection, owner_id)
        try:
            removed = await self.backend.delete_prefix(prefix)
        except CacheBackendError as exc:
            logger.warning("cache_backend_error", operation="delete_prefix", prefix=prefix, error=str(exc))
            return
        cache_invalidations_total.labels(collection=pluralize(collection)).inc()
        logger.debug("cache_invalidated", prefix=prefix, removed=removed)

    async def invalidate_sleep_records(self, owner_id: int, follower_ids: Iterable[int]) -> None:
        """A sleep record changed: the owner's list and every follower's feed are stale."""
        await self.invalidate(SLEEP_RECORDS, owner_id)
        for follower_id in sorted(set(follower_ids)):
            await self.invalidate(FOLLOWED_SLEEP_RECORDS, follower_id)

    async def invalidate_followings(self, follower_id: int) -> None:
        """An edge changed: the follower's followed list and feed are stale."""
        await self.invalidate(FOLLOWINGS, follower_id)
        await self.invalidate(FOLLOWED_SLEEP_RECORDS, follower_id)

    async def invalidate_user(self, user_id: int, follower_ids: Iterable[int]) -> None:
        """A user was deleted along with their records and edges in both directions."""
        await self.invalidate(SLEEP_RECORDS, user_id)
        for owner_id in sorted({*follower_ids, user_id}):
            await self.invalidate_followings(owner_id)
