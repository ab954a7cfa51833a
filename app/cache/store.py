"""
Durable shop-scoped cache backed by the StoreCache table.

Entries are keyed by (shop, data_type) and written by upsert, so a shop never
has more than one row per data type. Expired rows are kept until the next
write, which is what lets reads serve stale data while a refresh runs.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models import StoreCache
from .background import spawn_background
from .core import (
    CacheableDataType,
    CacheCorruptionError,
    CacheEnvelope,
    CacheMetadata,
    CacheResult,
    now_ms,
)

logger = logging.getLogger("cache.store")

DEFAULT_TTL_SECONDS = 15 * 60
STALE_THRESHOLD = 0.8  # Entry counts as stale at 80% of its TTL

DataType = Union[CacheableDataType, str]


def _utc(epoch_seconds: float) -> datetime:
    """Naive UTC datetime, matching the DateTime columns."""
    return datetime.fromtimestamp(epoch_seconds, timezone.utc).replace(tzinfo=None)


def _type_name(data_type: DataType) -> str:
    if isinstance(data_type, Enum):
        return data_type.value
    return str(data_type)


class PersistentCacheStore:
    """
    Shop-scoped key/value cache with explicit expiry.

    Reads have two modes:
    - plain: an expired entry is reported as absent
    - stale-while-revalidate: the expired payload is returned immediately and
      `on_stale_data` is spawned as a background task

    Usage:
        store = PersistentCacheStore(session_factory)
        await store.set(shop, CacheableDataType.VENDORS, payload)
        result = await store.get(shop, CacheableDataType.VENDORS)
    """

    def __init__(
        self,
        session_factory,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        stale_threshold: float = STALE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker bound to the cache database
            default_ttl: Seconds an entry stays fresh when `set` gets no ttl
            stale_threshold: Fraction of the TTL after which an entry is stale
            clock: Epoch-seconds clock (overridable in tests)
        """
        self._session_factory = session_factory
        self._default_ttl = default_ttl
        self._stale_threshold = stale_threshold
        self._clock = clock
        self._hit_stats: Dict[str, Dict[str, int]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(
        self,
        shop: str,
        data_type: DataType,
        stale_while_revalidate: bool = False,
        on_stale_data: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> CacheResult:
        """
        Read one cache entry.

        Args:
            shop: Shop domain
            data_type: Logical data type
            stale_while_revalidate: Serve expired payloads instead of None
            on_stale_data: Refresh callback spawned (not awaited) when the
                served entry is stale or expired

        Returns:
            CacheResult with data=None on miss, expiry (plain mode) or corruption

        Raises:
            sqlalchemy.exc.SQLAlchemyError: datastore failures propagate
        """
        type_name = _type_name(data_type)
        cache_key = f"{shop}:{type_name}"
        stats = self._stats_for(cache_key)

        row = await asyncio.to_thread(self._load_row, shop, type_name)
        if row is None:
            stats["misses"] += 1
            logger.debug(f"CACHE MISS: {cache_key}")
            return CacheResult()

        try:
            envelope = CacheEnvelope.from_json(row.data)
        except CacheCorruptionError as e:
            stats["misses"] += 1
            logger.warning(f"Corrupt cache entry treated as miss: {cache_key} - {e}")
            return CacheResult()

        now = now_ms(self._clock)
        age = now - envelope.timestamp
        is_expired = now > envelope.expires_at
        is_stale = is_expired or age > envelope.ttl_ms * self._stale_threshold

        if is_expired and not stale_while_revalidate:
            stats["misses"] += 1
            logger.debug(f"CACHE EXPIRED: {cache_key} [age={age}ms]")
            return CacheResult(data=None, metadata=self._metadata(
                cache_key, is_stale, is_expired, age, envelope.expires_at - now
            ))

        stats["hits"] += 1
        metadata = self._metadata(cache_key, is_stale, is_expired, age, envelope.expires_at - now)

        if is_stale and on_stale_data is not None:
            logger.info(
                f"CACHE HIT (stale, revalidating): {cache_key} "
                f"[age={age}ms, expired={is_expired}]"
            )
            spawn_background(on_stale_data, label=f"refresh:{cache_key}")
        else:
            logger.debug(f"CACHE HIT: {cache_key} [age={age}ms, stale={is_stale}]")

        return CacheResult(data=envelope.data, metadata=metadata)

    async def set(
        self,
        shop: str,
        data_type: DataType,
        data: Any,
        ttl: Optional[float] = None,
    ) -> None:
        """
        Write (upsert) one cache entry.

        Args:
            shop: Shop domain
            data_type: Logical data type
            data: JSON-serializable payload
            ttl: Seconds until expiry (defaults to the store's default TTL)

        Raises:
            sqlalchemy.exc.SQLAlchemyError: datastore failures propagate
        """
        ttl = self._default_ttl if ttl is None else ttl
        written_at = now_ms(self._clock)
        envelope = CacheEnvelope(
            data=data,
            timestamp=written_at,
            expires_at=written_at + int(ttl * 1000),
        )
        type_name = _type_name(data_type)
        await asyncio.to_thread(self._upsert_row, shop, type_name, envelope)
        logger.debug(f"Cache set: {shop}:{type_name} [ttl={ttl}s]")

    async def update(
        self,
        shop: str,
        data_type: DataType,
        mutate: Callable[[Any], Any],
    ) -> Optional[Any]:
        """
        Rewrite the payload of an existing entry, keeping its timestamp and expiry.

        A partial update must not make the rest of the entry look fresh, so
        the entry ages and expires exactly as it would have without it. Does
        not count towards hit/miss stats.

        Args:
            shop: Shop domain
            data_type: Logical data type
            mutate: Maps the current payload to the new one (runs in a worker thread)

        Returns:
            The new payload, or None when there is no readable entry (nothing written)

        Raises:
            sqlalchemy.exc.SQLAlchemyError: datastore failures propagate
        """
        type_name = _type_name(data_type)
        data = await asyncio.to_thread(self._update_row, shop, type_name, mutate)
        if data is not None:
            logger.debug(f"Cache updated in place: {shop}:{type_name}")
        return data

    async def invalidate(self, shop: str, data_type: DataType) -> bool:
        """
        Delete one cache entry.

        Returns:
            True if an entry existed and was removed
        """
        type_name = _type_name(data_type)
        removed = await asyncio.to_thread(self._delete_row, shop, type_name)
        if removed:
            logger.info(f"Invalidated cache: {shop}:{type_name}")
        return removed

    async def list_entries(self, shop: str) -> List[Dict[str, Any]]:
        """Per-entry age and expiry details for one shop."""
        rows = await asyncio.to_thread(self._load_rows, shop)
        now = _utc(self._clock())
        entries = []
        for row in rows:
            age = (now - row.updated_at).total_seconds()
            remaining = (row.expires_at - now).total_seconds()
            ttl = (row.expires_at - row.updated_at).total_seconds()
            is_expired = remaining <= 0
            entries.append({
                "dataType": row.data_type,
                "createdAt": row.created_at.isoformat() + "Z",
                "updatedAt": row.updated_at.isoformat() + "Z",
                "expiresAt": row.expires_at.isoformat() + "Z",
                "age": round(age),
                "remainingTTL": round(remaining),
                "isExpired": is_expired,
                "isStale": is_expired or age > ttl * self._stale_threshold,
            })
        return entries

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        """Hit/miss counts and hit rate for every key read so far."""
        all_stats = {}
        for key, stats in self._hit_stats.items():
            total = stats["hits"] + stats["misses"]
            all_stats[key] = {
                "hits": stats["hits"],
                "misses": stats["misses"],
                "total": total,
                "hitRate": (stats["hits"] / total * 100) if total else 0,
            }
        return all_stats

    def clear_stats(self) -> None:
        self._hit_stats.clear()

    # ------------------------------------------------------------------
    # Internals (run in worker threads)
    # ------------------------------------------------------------------

    def _load_row(self, shop: str, type_name: str) -> Optional[StoreCache]:
        with self._session_factory() as session:
            return session.execute(
                select(StoreCache).where(
                    StoreCache.shop == shop,
                    StoreCache.data_type == type_name,
                )
            ).scalar_one_or_none()

    def _load_rows(self, shop: str) -> List[StoreCache]:
        with self._session_factory() as session:
            return list(session.execute(
                select(StoreCache).where(StoreCache.shop == shop)
            ).scalars())

    def _upsert_row(self, shop: str, type_name: str, envelope: CacheEnvelope) -> None:
        try:
            self._write_row(shop, type_name, envelope)
        except IntegrityError:
            # Another writer inserted the row first; update it instead
            logger.debug(f"Concurrent insert for {shop}:{type_name}, retrying as update")
            self._write_row(shop, type_name, envelope)

    def _write_row(self, shop: str, type_name: str, envelope: CacheEnvelope) -> None:
        written_at = _utc(envelope.timestamp / 1000)
        expires_at = _utc(envelope.expires_at / 1000)
        with self._session_factory() as session:
            row = session.execute(
                select(StoreCache).where(
                    StoreCache.shop == shop,
                    StoreCache.data_type == type_name,
                )
            ).scalar_one_or_none()
            if row is None:
                row = StoreCache(
                    shop=shop,
                    data_type=type_name,
                    created_at=written_at,
                )
                session.add(row)
            row.data = envelope.to_json()
            row.updated_at = written_at
            row.expires_at = expires_at
            session.commit()

    def _update_row(self, shop: str, type_name: str, mutate: Callable[[Any], Any]) -> Optional[Any]:
        with self._session_factory() as session:
            row = session.execute(
                select(StoreCache).where(
                    StoreCache.shop == shop,
                    StoreCache.data_type == type_name,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            try:
                envelope = CacheEnvelope.from_json(row.data)
            except CacheCorruptionError as e:
                logger.warning(f"Corrupt cache entry not updated: {shop}:{type_name} - {e}")
                return None
            data = mutate(envelope.data)
            row.data = CacheEnvelope(
                data=data,
                timestamp=envelope.timestamp,
                expires_at=envelope.expires_at,
            ).to_json()
            session.commit()
            return data

    def _delete_row(self, shop: str, type_name: str) -> bool:
        with self._session_factory() as session:
            row = session.execute(
                select(StoreCache).where(
                    StoreCache.shop == shop,
                    StoreCache.data_type == type_name,
                )
            ).scalar_one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def _stats_for(self, cache_key: str) -> Dict[str, int]:
        if cache_key not in self._hit_stats:
            self._hit_stats[cache_key] = {"hits": 0, "misses": 0}
        return self._hit_stats[cache_key]

    def _hit_rate(self, cache_key: str) -> float:
        stats = self._stats_for(cache_key)
        total = stats["hits"] + stats["misses"]
        return (stats["hits"] / total * 100) if total else 0.0

    def _metadata(
        self,
        cache_key: str,
        is_stale: bool,
        is_expired: bool,
        age: int,
        remaining: int,
    ) -> CacheMetadata:
        return CacheMetadata(
            is_stale=is_stale,
            is_expired=is_expired,
            age=age,
            remaining_ttl=max(0, remaining),
            hit_rate=self._hit_rate(cache_key),
        )
