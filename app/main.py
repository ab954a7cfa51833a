"""
Product Builder - Main FastAPI Application
Shop metadata (vendors, product types, store facts) served through the cache layer
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from app.cache import (
    CacheableDataType,
    CacheWarmingService,
    CatalogCache,
    PersistentCacheStore,
    REFRESHABLE_TYPES,
    RequestCoalescer,
    ShopDataRegistry,
)
from app.db import init_db, make_engine, make_session_factory
from app.shopify_client import ShopifyAdminClient, ShopifyAPIError
from config.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v1.0.0"
APP_NAME = "Product Builder"


@dataclass
class AppServices:
    """Process-wide cache components, shared by every request."""
    store: PersistentCacheStore
    coalescer: RequestCoalescer
    shop_data: ShopDataRegistry
    refresher: CacheWarmingService
    catalog: CatalogCache
    client_factory: Callable[[str], Any]


def build_services(
    database_url: Optional[str] = None,
    client_factory: Optional[Callable[[str], Any]] = None,
) -> AppServices:
    """
    Wire the cache layer.

    Args:
        database_url: Durable cache database (settings.database_url if not provided)
        client_factory: Builds the upstream client for a shop
    """
    engine = make_engine(database_url)
    init_db(engine)
    client_factory = client_factory or ShopifyAdminClient

    store = PersistentCacheStore(
        make_session_factory(engine),
        default_ttl=settings.cache_ttl_seconds,
        stale_threshold=settings.cache_stale_threshold,
    )
    coalescer = RequestCoalescer(
        ttl=settings.request_dedup_ttl_seconds,
        max_in_flight=settings.max_in_flight_seconds,
    )
    registry = ShopDataRegistry(
        all_types_ttl=settings.all_product_types_ttl_seconds,
        validation_ttl=settings.validation_cache_ttl_seconds,
    )
    refresher = CacheWarmingService(store, client_factory)
    catalog = CatalogCache(store, coalescer, refresher)
    return AppServices(
        store=store,
        coalescer=coalescer,
        shop_data=registry,
        refresher=refresher,
        catalog=catalog,
        client_factory=client_factory,
    )


# ============================================================================
# Dependencies
# ============================================================================

def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_shop(x_shopify_shop_domain: Optional[str] = Header(None)) -> str:
    """Shop domain of the authenticated session (auth itself happens upstream)."""
    if not x_shopify_shop_domain:
        raise HTTPException(status_code=401, detail="Missing shop domain")
    return x_shopify_shop_domain


class RefreshRequest(BaseModel):
    dataType: CacheableDataType


# ============================================================================
# Application
# ============================================================================

def create_app(services: Optional[AppServices] = None) -> FastAPI:
    app = FastAPI(
        title=APP_NAME,
        description="Cached Shopify shop metadata for the product builder",
        version=APP_VERSION,
    )
    app.state.services = services or build_services()

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/version")
    def version_info():
        return {"name": APP_NAME, "version": APP_VERSION}

    @app.get("/api/shopify/vendors")
    async def vendors(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        """All vendors for the shop, sorted."""
        try:
            data = await svc.catalog.get_vendors(shop)
        except Exception as e:
            logger.error(f"Failed to fetch vendors for {shop}: {e}")
            data = None
        if data is None:
            return {"vendors": []}
        return data

    @app.get("/api/shopify/all-product-types")
    async def all_product_types(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        """Product types grouped by vendor plus the shop-wide list."""
        try:
            data = await svc.catalog.get_product_types(shop)
        except Exception as e:
            logger.error(f"Failed to fetch all product types for {shop}: {e}")
            data = None
        if data is None:
            return JSONResponse(status_code=500, content={
                "error": "Failed to fetch product types",
                "productTypesByVendor": {},
                "allProductTypes": [],
            })
        return data

    @app.get("/api/shopify/product-types-by-vendor")
    async def product_types_by_vendor(
        vendor: Optional[str] = Query(None),
        shop: str = Depends(get_shop),
        svc: AppServices = Depends(get_services),
    ):
        if not vendor:
            return {"productTypes": []}
        try:
            types = await svc.catalog.get_product_types_for_vendor(shop, vendor)
        except Exception as e:
            logger.error(f"Failed to fetch product types for {shop} vendor '{vendor}': {e}")
            types = None
        return {"vendor": vendor, "productTypes": types or []}

    @app.get("/api/shopify/shop-types")
    async def shop_product_types(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        """Every product type in the shop, memoized per shop for an hour."""
        client = svc.client_factory(shop)
        try:
            types = await svc.shop_data.get(shop).get_all_product_types(client.fetch_product_types_page)
        except ShopifyAPIError as e:
            logger.error(f"Failed to fetch product types for {shop}: {e}")
            return JSONResponse(status_code=502, content={"error": "Failed to fetch product types", "productTypes": []})
        return {"productTypes": types}

    @app.get("/api/shopify/store-settings")
    async def store_settings(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        client = svc.client_factory(shop)
        memo = svc.shop_data.get(shop)
        try:
            identity = await memo.get_shop_data(client.fetch_shop_identity)
            store = await memo.get_store_settings(client.fetch_store_settings)
            metrics = await memo.get_store_metrics(client.fetch_product_count)
        except ShopifyAPIError as e:
            logger.error(f"Failed to fetch store settings for {shop}: {e}")
            return JSONResponse(status_code=502, content={"error": "Failed to fetch store settings"})
        return {
            "shop": identity.to_dict(),
            "settings": store.to_dict(),
            "metrics": metrics.to_dict(),
        }

    @app.get("/api/shopify/validate-sku")
    async def validate_sku(
        sku: Optional[str] = Query(None),
        shop: str = Depends(get_shop),
        svc: AppServices = Depends(get_services),
    ):
        if not sku:
            return JSONResponse(status_code=400, content={"error": "SKU parameter is required"})

        memo = svc.shop_data.get(shop)
        cached = memo.get_cached_validation_result("sku", sku)
        if cached is not None:
            return cached

        key = RequestCoalescer.generate_key("validate-sku", {"shop": shop, "sku": sku})
        client = svc.client_factory(shop)
        try:
            conflict = await svc.coalescer.deduplicate(key, lambda: client.find_product_by_sku(sku))
        except ShopifyAPIError as e:
            logger.error(f"Error validating SKU for {shop}: {e}")
            return JSONResponse(status_code=500, content={"error": "Failed to validate SKU"})

        result: Dict[str, Any] = {"available": conflict is None}
        if conflict is not None:
            result["conflictingProduct"] = conflict
        memo.cache_validation_result("sku", sku, result)
        return result

    @app.get("/api/shopify/cache-stats")
    async def cache_stats(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        """Hit statistics and per-entry expiry details for the shop."""
        entries = await svc.store.list_entries(shop)
        logger.info(f"Cache stats requested for {shop}: {len(entries)} entries")
        return {
            "shop": shop,
            "hitStats": svc.store.get_all_stats(),
            "coalescer": svc.coalescer.get_stats(),
            "cacheEntries": entries,
            "summary": {
                "totalEntries": len(entries),
                "expiredEntries": sum(1 for e in entries if e["isExpired"]),
                "staleEntries": sum(1 for e in entries if e["isStale"] and not e["isExpired"]),
                "freshEntries": sum(1 for e in entries if not e["isStale"]),
            },
        }

    @app.post("/api/shopify/cache/refresh")
    async def refresh_cache(
        body: RefreshRequest,
        shop: str = Depends(get_shop),
        svc: AppServices = Depends(get_services),
    ):
        """Drop one cache entry and rebuild it from Shopify."""
        if body.dataType not in REFRESHABLE_TYPES:
            raise HTTPException(
                status_code=422,
                detail=f"Cache refresh not supported for {body.dataType.value}",
            )
        await svc.store.invalidate(shop, body.dataType)
        result = await svc.refresher.refresh_stale_cache(shop, body.dataType)
        status = 200 if result.ok else 502
        return JSONResponse(status_code=status, content=result.to_dict())

    @app.post("/webhooks/app/installed")
    async def app_installed(shop: str = Depends(get_shop), svc: AppServices = Depends(get_services)):
        """Warm the cache for a new installation. Always acknowledges."""
        logger.info(f"App installed webhook received: {shop}")
        try:
            await svc.refresher.warm_cache(shop)
        except Exception as e:
            logger.error(f"Error processing app/installed webhook for {shop}: {e}")
        # OK even on failure so Shopify does not retry the webhook
        return PlainTextResponse("OK", status_code=200)

    return app


app = create_app()
