"""
Cache warming and background refresh for the durable shop-data cache.

Walks the upstream catalog to completion, builds the cached payloads and
writes them back. Every refresh returns a RefreshResult instead of raising:
warming runs during installation and on stale reads, and must never fail
the surrounding operation.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .core import CacheableDataType, Page, now_ms
from .store import PersistentCacheStore

logger = logging.getLogger("cache.warming")


class CatalogSource(Protocol):
    """Cursor-paginated upstream listings the refresher needs."""

    async def fetch_vendors_page(self, cursor: Optional[str]) -> Page:
        """Page of vendor names."""
        ...

    async def fetch_products_page(self, cursor: Optional[str], query: Optional[str] = None) -> Page:
        """Page of {"productType", "vendor"} dicts, optionally filtered."""
        ...


SourceFactory = Callable[[str], CatalogSource]

# Data types this service knows how to rebuild
REFRESHABLE_TYPES = frozenset({CacheableDataType.VENDORS, CacheableDataType.PRODUCT_TYPES})


@dataclass
class RefreshResult:
    """
    Outcome of one refresh attempt.

    `ok` reports whether the upstream data was collected; `ok=False` carries
    the logged error. A collected payload is returned in `data` even when
    storing it failed (`cached=False`).
    """
    data_type: str
    ok: bool
    count: int = 0
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    # False when the payload was collected but could not be stored
    cached: bool = True

    def to_dict(self) -> dict:
        return {
            "dataType": self.data_type,
            "ok": self.ok,
            "count": self.count,
            "error": self.error,
            "cached": self.cached,
        }


def vendor_query(vendor: str) -> str:
    """Products search filter for a single vendor."""
    escaped = vendor.replace("\\", "\\\\").replace("'", "\\'")
    return f"vendor:'{escaped}'"


async def collect_pages(
    fetch_page: Callable[[Optional[str]], Awaitable[Page]],
) -> List[Any]:
    """Follow cursors until the source reports no next page."""
    items: List[Any] = []
    cursor = None
    while True:
        page = await fetch_page(cursor)
        items.extend(page.items)
        if not page.has_next_page:
            return items
        cursor = page.end_cursor


def group_product_types(products: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Sorted, de-duplicated product types per vendor."""
    by_vendor: Dict[str, set] = {}
    for product in products:
        product_type = product.get("productType")
        vendor = product.get("vendor")
        if product_type and vendor:
            by_vendor.setdefault(vendor, set()).add(product_type)
    return {vendor: sorted(types) for vendor, types in by_vendor.items()}


def _merge_vendor(
    current: Optional[Dict[str, Any]],
    vendor: str,
    vendor_types: List[str],
) -> Dict[str, Any]:
    current = current or {}
    by_vendor = dict(current.get("productTypesByVendor") or {})
    by_vendor[vendor] = sorted(set(vendor_types))
    all_types = set(current.get("allProductTypes") or [])
    all_types.update(vendor_types)
    return {
        "productTypesByVendor": by_vendor,
        "allProductTypes": sorted(all_types),
        "totalProducts": current.get("totalProducts", 0),
        "lastUpdated": current.get("lastUpdated"),
    }


class CacheWarmingService:
    """
    Repopulates the durable cache for a shop from the upstream catalog.

    Invoked eagerly by the app/installed webhook (`warm_cache`) and lazily as
    the stale-data callback of cache reads (`stale_callback`).
    """

    def __init__(
        self,
        store: PersistentCacheStore,
        source_factory: SourceFactory,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Durable cache to write into
            source_factory: Builds the upstream source for a shop
            ttl: Seconds written entries stay fresh (store default if None)
            clock: Epoch-seconds clock used for `lastUpdated`
        """
        self._store = store
        self._source_factory = source_factory
        self._ttl = ttl
        self._clock = clock
        # Serializes read-modify-write merges per shop within this process
        self._merge_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Payload builders (raise on upstream errors)
    # ------------------------------------------------------------------

    async def collect_vendors(self, shop: str) -> Dict[str, Any]:
        source = self._source_factory(shop)
        names = await collect_pages(source.fetch_vendors_page)
        vendors = sorted({name for name in names if name})
        return {
            "vendors": vendors,
            "totalVendors": len(vendors),
            "lastUpdated": now_ms(self._clock),
        }

    async def collect_product_types(self, shop: str) -> Dict[str, Any]:
        source = self._source_factory(shop)
        products = await collect_pages(source.fetch_products_page)
        counted = [p for p in products if p.get("productType") and p.get("vendor")]
        return {
            "productTypesByVendor": group_product_types(counted),
            "allProductTypes": sorted({p["productType"] for p in counted}),
            "totalProducts": len(counted),
            "lastUpdated": now_ms(self._clock),
        }

    async def collect_vendor_product_types(self, shop: str, vendor: str) -> List[str]:
        source = self._source_factory(shop)
        query = vendor_query(vendor)
        products = await collect_pages(
            lambda cursor: source.fetch_products_page(cursor, query=query)
        )
        return sorted({
            p["productType"] for p in products
            if p.get("productType") and p.get("vendor", vendor) == vendor
        })

    # ------------------------------------------------------------------
    # Refreshes (never raise)
    # ------------------------------------------------------------------

    async def warm_cache(self, shop: str) -> List[RefreshResult]:
        """Pre-populate vendors and product types, e.g. on app installation."""
        logger.info(f"Starting cache warming: {shop}")
        results = [
            await self.refresh_vendors(shop),
            await self.refresh_product_types(shop),
        ]
        if all(result.ok for result in results):
            logger.info(f"Cache warming completed successfully: {shop}")
        else:
            failed = [r.data_type for r in results if not r.ok]
            logger.warning(f"Cache warming incomplete for {shop}: failed {failed}")
        return results

    async def refresh_vendors(self, shop: str) -> RefreshResult:
        data_type = CacheableDataType.VENDORS.value
        try:
            payload = await self.collect_vendors(shop)
        except Exception as e:
            logger.error(f"Failed to warm vendors cache for {shop}: {e}")
            return RefreshResult(data_type=data_type, ok=False, error=str(e))

        cached = await self._write(shop, CacheableDataType.VENDORS, payload)
        if cached:
            logger.info(f"Vendors cache warmed for {shop}: {payload['totalVendors']} vendors")
        return RefreshResult(
            data_type=data_type,
            ok=True,
            count=payload["totalVendors"],
            data=payload,
            cached=cached,
        )

    async def refresh_product_types(self, shop: str) -> RefreshResult:
        data_type = CacheableDataType.PRODUCT_TYPES.value
        try:
            payload = await self.collect_product_types(shop)
        except Exception as e:
            logger.error(f"Failed to warm product types cache for {shop}: {e}")
            return RefreshResult(data_type=data_type, ok=False, error=str(e))

        async with self._merge_lock(shop):
            cached = await self._write(shop, CacheableDataType.PRODUCT_TYPES, payload)
        if cached:
            logger.info(
                f"Product types cache warmed for {shop}: "
                f"{len(payload['productTypesByVendor'])} vendors, "
                f"{len(payload['allProductTypes'])} types, "
                f"{payload['totalProducts']} products"
            )
        return RefreshResult(
            data_type=data_type,
            ok=True,
            count=len(payload["allProductTypes"]),
            data=payload,
            cached=cached,
        )

    async def refresh_vendor_product_types(self, shop: str, vendor: str) -> RefreshResult:
        """
        Refresh one vendor's product types and merge them into the cached map.

        Only that vendor's products are paged. Other vendors' lists are kept
        as they are; the vendor's own list is replaced by the fresh one and
        its types are added to `allProductTypes`. The entry keeps its expiry,
        so a stale map still gets its full refresh.

        With no readable product-types entry there is nothing to merge into:
        the vendor's types are returned uncached rather than written as a
        partial catalog.
        """
        data_type = CacheableDataType.PRODUCT_TYPES.value
        try:
            vendor_types = await self.collect_vendor_product_types(shop, vendor)
        except Exception as e:
            logger.error(f"Failed to refresh product types for {shop} vendor '{vendor}': {e}")
            return RefreshResult(data_type=data_type, ok=False, error=str(e))

        uncached = RefreshResult(
            data_type=data_type,
            ok=True,
            count=len(vendor_types),
            data={"productTypesByVendor": {vendor: vendor_types}},
            cached=False,
        )
        try:
            async with self._merge_lock(shop):
                payload = await self._store.update(
                    shop,
                    CacheableDataType.PRODUCT_TYPES,
                    lambda current: _merge_vendor(current, vendor, vendor_types),
                )
        except Exception as e:
            logger.warning(f"Cache write failed for {shop}:{data_type}, serving uncached: {e}")
            return uncached

        if payload is None:
            logger.info(f"No product types map for {shop}; vendor '{vendor}' served uncached")
            return uncached

        logger.info(
            f"Product types refreshed for {shop} vendor '{vendor}': {len(vendor_types)} types"
        )
        return RefreshResult(data_type=data_type, ok=True, count=len(vendor_types), data=payload)

    async def refresh_stale_cache(self, shop: str, data_type) -> RefreshResult:
        """Refresh whichever entry a stale read reported."""
        try:
            name = CacheableDataType(data_type).value
        except ValueError:
            logger.warning(f"Unknown data type for refresh: {data_type}")
            return RefreshResult(data_type=str(data_type), ok=False, error="unknown data type")
        logger.info(f"Refreshing stale cache in background: {shop}:{name}")
        if name == CacheableDataType.VENDORS.value:
            return await self.refresh_vendors(shop)
        if name == CacheableDataType.PRODUCT_TYPES.value:
            return await self.refresh_product_types(shop)
        logger.warning(f"No refresher for data type {name}")
        return RefreshResult(data_type=name, ok=False, error="unsupported data type")

    def stale_callback(self, shop: str, data_type) -> Callable[[], Awaitable[RefreshResult]]:
        """`on_stale_data` callback for PersistentCacheStore.get."""
        return lambda: self.refresh_stale_cache(shop, data_type)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write(self, shop: str, data_type: CacheableDataType, payload: Dict[str, Any]) -> bool:
        """Store a collected payload. A failed write only loses the caching."""
        try:
            await self._store.set(shop, data_type, payload, ttl=self._ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {shop}:{data_type.value}, serving uncached: {e}")
            return False
        return True

    def _merge_lock(self, shop: str) -> asyncio.Lock:
        lock = self._merge_locks.get(shop)
        if lock is None:
            lock = asyncio.Lock()
            self._merge_locks[shop] = lock
        return lock
