"""
TTL cache for processor output.

Entries live in the cache_entries table, keyed by namespace and a sha256 of
the caller's key. Expiry is enforced on read, so a stale entry is never
returned even if no sweep has run.
"""

import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskqueue.clock import Clock, utcnow
from taskqueue.config import get_settings
from taskqueue.constants import DEFAULT_CACHE_TTLS
from taskqueue.db.connection import session_scope
from taskqueue.db.repository import CacheRepository
from taskqueue.observability.metrics import MetricsCollector, get_metrics
from taskqueue.types.job import CacheStats

logger = logging.getLogger(__name__)


def cache_key(*parts: object) -> str:
    """
    Build a composite key such as ("summary", user_id, "2024-01-01").

    None parts are skipped so optional qualifiers do not leak into the key.
    """
    return ":".join(str(part) for part in parts if part is not None)


def hash_key(namespace: str, key: str) -> str:
    """Stable storage key for a namespace/key pair."""
    return hashlib.sha256(f"{namespace}:{key}".encode()).hexdigest()


class CacheService:
    """Namespaced key/value cache with per-entry expiry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_ttl_seconds: int | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the cache.

        Args:
            session_factory: Factory for database sessions.
            default_ttl_seconds: TTL for namespaces without their own default.
            clock: Source of the current (naive UTC) time.
            metrics: Metrics collector.
        """
        self._session_factory = session_factory
        self.default_ttl_seconds = (
            get_settings().cache_default_ttl_seconds
            if default_ttl_seconds is None
            else default_ttl_seconds
        )
        self._clock = clock
        self._metrics = metrics or get_metrics()

    def ttl_for(self, namespace: str) -> int:
        """Default TTL in seconds for a namespace."""
        return DEFAULT_CACHE_TTLS.get(namespace, self.default_ttl_seconds)

    async def get(self, namespace: str, key: str) -> Any | None:
        """
        Return the cached value, or None when absent or expired.

        A hit increments the entry's access count in the database.
        """
        now = self._clock()
        hashed = hash_key(namespace, key)

        async with session_scope(self._session_factory) as session:
            repo = CacheRepository(session)
            entry = await repo.get_live(namespace, hashed, now)
            if entry is None:
                self._metrics.record_cache_lookup(namespace, hit=False)
                return None

            value = entry.value
            await repo.touch(namespace, hashed, now)

        self._metrics.record_cache_lookup(namespace, hit=True)
        return value

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        *,
        ttl: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """
        Store a value, replacing any existing entry for the key.

        Args:
            namespace: Cache namespace.
            key: Caller key, hashed before storage.
            value: JSON-serialisable value.
            ttl: Lifetime in seconds; defaults per namespace.
            metadata: Optional JSON annotations.
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl if ttl is not None else self.ttl_for(namespace))

        async with session_scope(self._session_factory) as session:
            await CacheRepository(session).upsert(
                namespace,
                hash_key(namespace, key),
                value,
                expires_at,
                now,
                meta=metadata,
            )

        logger.debug(
            "Cache entry stored",
            extra={"namespace": namespace, "expires_at": expires_at.isoformat()},
        )

    async def invalidate(self, namespace: str, key: str) -> bool:
        async with session_scope(self._session_factory) as session:
            return await CacheRepository(session).delete(namespace, hash_key(namespace, key))

    async def invalidate_namespace(self, namespace: str) -> int:
        async with session_scope(self._session_factory) as session:
            deleted = await CacheRepository(session).delete_namespace(namespace)

        logger.info(f"Invalidated {deleted} cache entries", extra={"namespace": namespace})
        return deleted

    async def cleanup_expired(self) -> int:
        """
        Delete expired entries.

        Returns:
            Number of deleted entries.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            deleted = await CacheRepository(session).delete_expired(now)

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired cache entries")
        return deleted

    async def get_stats(self) -> CacheStats:
        """
        Entry counts per namespace.

        hit_rate is the percentage of entries read at least once after
        being written.
        """
        async with session_scope(self._session_factory) as session:
            stats = await CacheRepository(session).stats_by_namespace()

        total = sum(count for count, _ in stats.values())
        reused = sum(reused_count for _, reused_count in stats.values())
        return CacheStats(
            total_entries=total,
            by_namespace={namespace: count for namespace, (count, _) in stats.items()},
            hit_rate=(reused / total * 100) if total else 0.0,
        )

    async def get_or_compute(
        self,
        namespace: str,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        *,
        ttl: int | None = None,
    ) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        A None result is returned but not cached.
        """
        cached = await self.get(namespace, key)
        if cached is not None:
            return cached

        value = await compute()
        if value is not None:
            await self.set(namespace, key, value, ttl=ttl)
        return value
