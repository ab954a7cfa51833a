"""
Read path for cached catalog data.

Coalescer -> durable store (stale-while-revalidate) -> refresher on miss.
Store read failures fall back to a live upstream fetch that is not cached.
On irrecoverable failure the result is None, never a guessed value.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .coalescer import RequestCoalescer
from .core import CacheableDataType
from .store import PersistentCacheStore
from .warming import CacheWarmingService

logger = logging.getLogger("cache.catalog")


class CatalogCache:
    """Cached vendors and product types for route handlers."""

    def __init__(
        self,
        store: PersistentCacheStore,
        coalescer: RequestCoalescer,
        refresher: CacheWarmingService,
    ):
        self._store = store
        self._coalescer = coalescer
        self._refresher = refresher

    async def get_vendors(self, shop: str) -> Optional[Dict[str, Any]]:
        """`{"vendors", "totalVendors", "lastUpdated"}` or None."""
        key = RequestCoalescer.generate_key("vendors", {"shop": shop})
        return await self._coalescer.deduplicate(
            key, lambda: self._read_through(shop, CacheableDataType.VENDORS)
        )

    async def get_product_types(self, shop: str) -> Optional[Dict[str, Any]]:
        """`{"productTypesByVendor", "allProductTypes", "totalProducts", ...}` or None."""
        key = RequestCoalescer.generate_key("productTypes", {"shop": shop})
        return await self._coalescer.deduplicate(
            key, lambda: self._read_through(shop, CacheableDataType.PRODUCT_TYPES)
        )

    async def get_product_types_for_vendor(self, shop: str, vendor: str) -> Optional[List[str]]:
        """
        Product types seen for one vendor.

        Served from the cached map when the vendor is in it; otherwise only
        that vendor's products are fetched. They are merged into an existing
        map and returned uncached when there is none.
        """
        key = RequestCoalescer.generate_key("productTypesByVendor", {"shop": shop, "vendor": vendor})
        return await self._coalescer.deduplicate(
            key, lambda: self._read_vendor(shop, vendor)
        )

    async def _read_through(self, shop: str, data_type: CacheableDataType) -> Optional[Dict[str, Any]]:
        try:
            cached = await self._store.get(
                shop,
                data_type,
                stale_while_revalidate=True,
                on_stale_data=self._refresher.stale_callback(shop, data_type),
            )
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {shop}:{data_type.value}, fetching live: {e}")
            return await self._live(shop, data_type)

        if cached.data is not None:
            return cached.data

        result = await self._refresher.refresh_stale_cache(shop, data_type)
        if not result.ok:
            logger.error(f"Unable to load {data_type.value} for {shop}: {result.error}")
            return None
        return result.data

    async def _read_vendor(self, shop: str, vendor: str) -> Optional[List[str]]:
        try:
            cached = await self._store.get(
                shop,
                CacheableDataType.PRODUCT_TYPES,
                stale_while_revalidate=True,
                on_stale_data=self._refresher.stale_callback(shop, CacheableDataType.PRODUCT_TYPES),
            )
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {shop}:productTypes, fetching live: {e}")
            return await self._refresher.collect_vendor_product_types(shop, vendor)

        by_vendor = (cached.data or {}).get("productTypesByVendor") or {}
        if vendor in by_vendor:
            return by_vendor[vendor]

        result = await self._refresher.refresh_vendor_product_types(shop, vendor)
        if not result.ok:
            logger.error(f"Unable to load product types for {shop} vendor '{vendor}': {result.error}")
            return None
        return result.data["productTypesByVendor"].get(vendor, [])

    async def _live(self, shop: str, data_type: CacheableDataType) -> Dict[str, Any]:
        if data_type == CacheableDataType.VENDORS:
            return await self._refresher.collect_vendors(shop)
        return await self._refresher.collect_product_types(shop)
