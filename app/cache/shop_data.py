"""
Per-shop memo for shop facts that rarely change.

Shop identity, store settings and store metrics are fetched once per
instance. The all-product-types list and validation results carry their own
TTLs. Instances live in a ShopDataRegistry, one per shop.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .core import Page

logger = logging.getLogger("cache.shop_data")

ALL_TYPES_CACHE_TTL = 60 * 60   # 1 hour
VALIDATION_CACHE_TTL = 5 * 60   # 5 minutes


@dataclass
class ShopIdentity:
    shop: str
    name: str
    myshopify_domain: str
    email: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "shop": self.shop,
            "name": self.name,
            "email": self.email,
            "myshopifyDomain": self.myshopify_domain,
        }


@dataclass
class StoreSettings:
    default_weight_unit: str  # GRAMS | KILOGRAMS | OUNCES | POUNDS

    def to_dict(self) -> dict:
        return {"defaultWeightUnit": self.default_weight_unit}


@dataclass
class StoreMetrics:
    product_count: int
    store_size: str  # small | medium | large

    @classmethod
    def from_count(cls, product_count: int) -> "StoreMetrics":
        if product_count > 1000:
            size = "large"
        elif product_count > 100:
            size = "medium"
        else:
            size = "small"
        return cls(product_count=product_count, store_size=size)

    def to_dict(self) -> dict:
        return {"productCount": self.product_count, "storeSize": self.store_size}


class ShopDataService:
    """
    Memoized shop facts for a single shop.

    Obtain instances from a ShopDataRegistry (or `ShopDataService.get_instance`)
    rather than constructing them directly, so a shop always maps to one memo.
    """

    def __init__(
        self,
        shop: str,
        all_types_ttl: float = ALL_TYPES_CACHE_TTL,
        validation_ttl: float = VALIDATION_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.shop = shop
        self._all_types_ttl = all_types_ttl
        self._validation_ttl = validation_ttl
        self._clock = clock

        self._shop_data: Optional[ShopIdentity] = None
        self._store_settings: Optional[StoreSettings] = None
        self._store_metrics: Optional[StoreMetrics] = None
        self._all_product_types: Optional[Tuple[List[str], float]] = None
        self._validation_cache: Dict[str, Tuple[Any, float]] = {}

    # Default registry accessors for code paths without an injected registry

    @classmethod
    def get_instance(cls, shop: str) -> "ShopDataService":
        return default_registry.get(shop)

    @classmethod
    def clear_all_instances(cls) -> None:
        default_registry.clear()

    async def get_shop_data(self, fetch_fn: Callable[[], Awaitable[ShopIdentity]]) -> ShopIdentity:
        """Shop identity, fetched once."""
        if self._shop_data is not None:
            logger.debug(f"Shop data cache hit: {self.shop}")
            return self._shop_data

        logger.info(f"Fetching shop data: {self.shop}")
        self._shop_data = await fetch_fn()
        return self._shop_data

    async def get_store_settings(self, fetch_fn: Callable[[], Awaitable[StoreSettings]]) -> StoreSettings:
        """Store settings, fetched once."""
        if self._store_settings is not None:
            logger.debug(f"Store settings cache hit: {self.shop}")
            return self._store_settings

        logger.info(f"Fetching store settings: {self.shop}")
        self._store_settings = await fetch_fn()
        return self._store_settings

    async def get_store_metrics(self, fetch_fn: Callable[[], Awaitable[int]]) -> StoreMetrics:
        """Product count and size bucket, fetched once."""
        if self._store_metrics is not None:
            logger.debug(f"Store metrics cache hit: {self.shop}")
            return self._store_metrics

        logger.info(f"Fetching store metrics: {self.shop}")
        self._store_metrics = StoreMetrics.from_count(await fetch_fn())
        return self._store_metrics

    async def get_all_product_types(
        self,
        fetch_page: Callable[[Optional[str]], Awaitable[Page]],
    ) -> List[str]:
        """
        Every product type in the shop, sorted and de-duplicated.

        Args:
            fetch_page: Called with the cursor (None first) until a page
                reports no next page

        Returns:
            Sorted product types; cached for the all-types TTL
        """
        now = self._clock()
        if self._all_product_types is not None:
            types, fetched_at = self._all_product_types
            if now - fetched_at < self._all_types_ttl:
                logger.debug(f"All product types cache hit: {self.shop}")
                return types

        logger.info(f"Fetching all product types: {self.shop}")
        collected = set()
        cursor = None
        while True:
            page = await fetch_page(cursor)
            collected.update(item for item in page.items if item)
            if not page.has_next_page:
                break
            cursor = page.end_cursor

        types = sorted(collected)
        self._all_product_types = (types, now)
        return types

    def cache_validation_result(self, validation_type: str, value: str, result: Any) -> None:
        """Remember a validation result (e.g. SKU availability) for a short window."""
        key = f"{validation_type}:{value}"
        self._validation_cache[key] = (result, self._clock())

    def get_cached_validation_result(self, validation_type: str, value: str) -> Optional[Any]:
        """Cached validation result, or None if missing or expired."""
        key = f"{validation_type}:{value}"
        cached = self._validation_cache.get(key)
        if cached is None:
            return None

        result, cached_at = cached
        if self._clock() - cached_at > self._validation_ttl:
            del self._validation_cache[key]
            return None

        logger.debug(f"Validation cache hit: {key}")
        return result

    def clear_cache(self) -> None:
        """Forget every memoized fact for this shop."""
        self._shop_data = None
        self._store_settings = None
        self._store_metrics = None
        self._all_product_types = None
        self._validation_cache.clear()
        logger.info(f"Shop data cache cleared: {self.shop}")


class ShopDataRegistry:
    """Map from shop domain to its ShopDataService. Lookups are idempotent."""

    def __init__(
        self,
        all_types_ttl: float = ALL_TYPES_CACHE_TTL,
        validation_ttl: float = VALIDATION_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._instances: Dict[str, ShopDataService] = {}
        self._all_types_ttl = all_types_ttl
        self._validation_ttl = validation_ttl
        self._clock = clock

    def get(self, shop: str) -> ShopDataService:
        instance = self._instances.get(shop)
        if instance is None:
            instance = ShopDataService(
                shop,
                all_types_ttl=self._all_types_ttl,
                validation_ttl=self._validation_ttl,
                clock=self._clock,
            )
            self._instances[shop] = instance
        return instance

    def clear(self) -> None:
        self._instances.clear()

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, shop: str) -> bool:
        return shop in self._instances


default_registry = ShopDataRegistry()
