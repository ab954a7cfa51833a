"""
Shop-data caching: durable stale-while-revalidate store, request coalescing,
per-shop memo and cache warming.
"""
from .core import (
    CacheableDataType,
    CacheCorruptionError,
    CacheEnvelope,
    CacheMetadata,
    CacheResult,
    Page,
)
from .background import spawn_background, drain_background_tasks
from .store import PersistentCacheStore
from .coalescer import RequestCoalescer, InFlightRequest
from .shop_data import (
    ShopDataService,
    ShopDataRegistry,
    ShopIdentity,
    StoreSettings,
    StoreMetrics,
)
from .warming import CacheWarmingService, CatalogSource, RefreshResult, REFRESHABLE_TYPES
from .catalog import CatalogCache

__all__ = [
    # Core types
    "CacheableDataType",
    "CacheCorruptionError",
    "CacheEnvelope",
    "CacheMetadata",
    "CacheResult",
    "Page",
    # Background tasks
    "spawn_background",
    "drain_background_tasks",
    # Durable store
    "PersistentCacheStore",
    # Coalescing
    "RequestCoalescer",
    "InFlightRequest",
    # Shop facts
    "ShopDataService",
    "ShopDataRegistry",
    "ShopIdentity",
    "StoreSettings",
    "StoreMetrics",
    # Warming
    "CacheWarmingService",
    "CatalogSource",
    "RefreshResult",
    "REFRESHABLE_TYPES",
    # Read path
    "CatalogCache",
]
