"""
Tests for cache warming: pagination completeness, payload shape,
per-vendor merge and the never-raises contract.
"""
import asyncio

from sqlalchemy.exc import OperationalError

from app.cache.core import CacheableDataType
from app.cache.warming import CacheWarmingService, group_product_types, vendor_query
from app.shopify_client import ShopifyGraphQLError

SHOP = "shop.myshopify.com"


def _refresher(store, fake_shopify, clock):
    return CacheWarmingService(store, lambda shop: fake_shopify, clock=clock)


def test_vendor_warm_accumulates_all_pages(store, fake_shopify, clock):
    fake_shopify.vendors = ["Fig", "Bear", "Dune", "Acme", "Echo", "Cove"]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        result = await refresher.refresh_vendors(SHOP)
        return result, await store.get(SHOP, CacheableDataType.VENDORS)

    result, cached = asyncio.run(scenario())
    assert result.ok
    assert result.count == 6
    assert fake_shopify.calls == [("vendors", None), ("vendors", "2"), ("vendors", "4")]
    assert cached.data["vendors"] == ["Acme", "Bear", "Cove", "Dune", "Echo", "Fig"]
    assert cached.data["totalVendors"] == 6


def test_vendor_warm_drops_duplicates_and_blanks(store, fake_shopify, clock):
    fake_shopify.vendors = ["Acme", "", "Acme", "Bear"]
    result = asyncio.run(_refresher(store, fake_shopify, clock).refresh_vendors(SHOP))
    assert result.data["vendors"] == ["Acme", "Bear"]
    assert result.data["totalVendors"] == 2


def test_warm_cache_end_to_end(store, fake_shopify, clock):
    fake_shopify.vendors = ["Zeta", "Acme"]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        before = await store.get(SHOP, "vendors")
        await refresher.warm_cache(SHOP)
        after = await store.get(SHOP, "vendors")
        return before, after

    before, after = asyncio.run(scenario())
    assert before.data is None
    assert after.data == {
        "vendors": ["Acme", "Zeta"],
        "totalVendors": 2,
        "lastUpdated": int(clock.now * 1000),
    }
    assert after.metadata.remaining_ttl == 15 * 60 * 1000


def test_product_types_warm_groups_by_vendor(store, fake_shopify, clock):
    fake_shopify.products = [
        {"productType": "Shoes", "vendor": "Acme"},
        {"productType": "Hats", "vendor": "Acme"},
        {"productType": "Shoes", "vendor": "Acme"},
        {"productType": "Bags", "vendor": "Zeta"},
        {"productType": "", "vendor": "Zeta"},
    ]
    result = asyncio.run(_refresher(store, fake_shopify, clock).refresh_product_types(SHOP))

    assert result.ok
    assert result.data["productTypesByVendor"] == {"Acme": ["Hats", "Shoes"], "Zeta": ["Bags"]}
    assert result.data["allProductTypes"] == ["Bags", "Hats", "Shoes"]
    assert result.data["totalProducts"] == 4


def test_upstream_error_is_swallowed(store, fake_shopify, clock):
    fake_shopify.fail_with = ShopifyGraphQLError([{"message": "Access denied"}])
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        results = await refresher.warm_cache(SHOP)
        return results, await store.get(SHOP, "vendors")

    results, cached = asyncio.run(scenario())
    assert [r.ok for r in results] == [False, False]
    assert "Access denied" in results[0].error
    assert cached.data is None


def test_failed_refresh_keeps_previous_entry(store, fake_shopify, clock):
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "vendors", {"vendors": ["Old"], "totalVendors": 1, "lastUpdated": 0})
        fake_shopify.fail_with = RuntimeError("timeout")
        result = await refresher.refresh_stale_cache(SHOP, "vendors")
        return result, await store.get(SHOP, "vendors")

    result, cached = asyncio.run(scenario())
    assert not result.ok
    assert cached.data["vendors"] == ["Old"]


def test_vendor_refresh_merges_into_existing_map(store, fake_shopify, clock):
    fake_shopify.products = [
        {"productType": "Boots", "vendor": "Acme"},
        {"productType": "Shoes", "vendor": "Acme"},
        {"productType": "Bags", "vendor": "Zeta"},
    ]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "productTypes", {
            "productTypesByVendor": {"Acme": ["Hats"], "Zeta": ["Scarves"]},
            "allProductTypes": ["Hats", "Scarves"],
            "totalProducts": 2,
            "lastUpdated": 0,
        })
        result = await refresher.refresh_vendor_product_types(SHOP, "Acme")
        return result, await store.get(SHOP, "productTypes")

    result, cached = asyncio.run(scenario())
    assert result.ok
    assert result.count == 2
    assert cached.data["productTypesByVendor"] == {
        "Acme": ["Boots", "Shoes"],
        "Zeta": ["Scarves"],
    }
    assert cached.data["allProductTypes"] == ["Boots", "Hats", "Scarves", "Shoes"]
    assert cached.data["totalProducts"] == 2
    assert ("products", None, "vendor:'Acme'") in fake_shopify.calls


def test_vendor_refresh_on_cold_cache_is_not_written(store, fake_shopify, clock):
    fake_shopify.products = [
        {"productType": "Bags", "vendor": "Zeta"},
        {"productType": "Hats", "vendor": "Acme"},
    ]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        result = await refresher.refresh_vendor_product_types(SHOP, "Zeta")
        return result, await store.get(SHOP, "productTypes")

    result, cached = asyncio.run(scenario())
    assert result.ok
    assert not result.cached
    assert result.data["productTypesByVendor"] == {"Zeta": ["Bags"]}
    assert cached.data is None


def test_vendor_merge_keeps_entry_expiry(store, fake_shopify, clock):
    fake_shopify.products = [{"productType": "Boots", "vendor": "Acme"}]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "productTypes", {
            "productTypesByVendor": {"Zeta": ["Scarves"]},
            "allProductTypes": ["Scarves"],
            "totalProducts": 1,
            "lastUpdated": 0,
        }, ttl=60)
        clock.advance(120)
        result = await refresher.refresh_vendor_product_types(SHOP, "Acme")
        plain = await store.get(SHOP, "productTypes")
        served = await store.get(SHOP, "productTypes", stale_while_revalidate=True)
        return result, plain, served

    result, plain, served = asyncio.run(scenario())
    assert result.ok and result.cached
    assert plain.data is None
    assert plain.metadata.is_expired
    assert served.metadata.is_expired
    assert served.data["productTypesByVendor"] == {"Acme": ["Boots"], "Zeta": ["Scarves"]}
    assert served.data["lastUpdated"] == 0


def test_vendor_merge_into_stale_entry_stays_stale(store, fake_shopify, clock):
    fake_shopify.products = [{"productType": "Boots", "vendor": "Acme"}]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "productTypes", {
            "productTypesByVendor": {},
            "allProductTypes": [],
            "totalProducts": 0,
            "lastUpdated": 0,
        }, ttl=100)
        clock.advance(90)
        await refresher.refresh_vendor_product_types(SHOP, "Acme")
        return await store.get(SHOP, "productTypes")

    cached = asyncio.run(scenario())
    assert cached.metadata.is_stale
    assert not cached.metadata.is_expired
    assert cached.metadata.remaining_ttl == 10 * 1000


def test_vendor_merge_does_not_count_as_cache_read(store, fake_shopify, clock):
    fake_shopify.products = [{"productType": "Boots", "vendor": "Acme"}]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "productTypes", {"productTypesByVendor": {}, "allProductTypes": []})
        await refresher.refresh_vendor_product_types(SHOP, "Acme")

    asyncio.run(scenario())
    assert store.get_all_stats() == {}


def test_store_write_failure_still_returns_collected_payload(store, fake_shopify, clock, monkeypatch):
    fake_shopify.vendors = ["Acme"]
    refresher = _refresher(store, fake_shopify, clock)

    async def broken_set(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "set", broken_set)

    result = asyncio.run(refresher.refresh_vendors(SHOP))
    assert result.ok
    assert not result.cached
    assert result.data["vendors"] == ["Acme"]
    assert result.to_dict()["cached"] is False


def test_concurrent_vendor_refreshes_do_not_lose_updates(store, fake_shopify, clock):
    fake_shopify.products = [
        {"productType": "Shoes", "vendor": "Acme"},
        {"productType": "Bags", "vendor": "Zeta"},
    ]
    refresher = _refresher(store, fake_shopify, clock)

    async def scenario():
        await store.set(SHOP, "productTypes", {
            "productTypesByVendor": {"Fig": ["Hats"]},
            "allProductTypes": ["Hats"],
            "totalProducts": 1,
            "lastUpdated": 0,
        })
        await asyncio.gather(
            refresher.refresh_vendor_product_types(SHOP, "Acme"),
            refresher.refresh_vendor_product_types(SHOP, "Zeta"),
        )
        return await store.get(SHOP, "productTypes")

    cached = asyncio.run(scenario())
    assert cached.data["productTypesByVendor"] == {
        "Acme": ["Shoes"],
        "Fig": ["Hats"],
        "Zeta": ["Bags"],
    }


def test_stale_callback_refreshes_requested_type(store, fake_shopify, clock):
    fake_shopify.vendors = ["Acme"]
    refresher = _refresher(store, fake_shopify, clock)

    result = asyncio.run(refresher.stale_callback(SHOP, CacheableDataType.VENDORS)())
    assert result.ok
    assert result.data_type == "vendors"


def test_unsupported_type_reports_failure(store, fake_shopify, clock):
    result = asyncio.run(_refresher(store, fake_shopify, clock).refresh_stale_cache(SHOP, "storeSettings"))
    assert not result.ok


def test_unknown_type_reports_failure_without_raising(store, fake_shopify, clock):
    result = asyncio.run(_refresher(store, fake_shopify, clock).refresh_stale_cache(SHOP, "bogus"))
    assert not result.ok
    assert result.error == "unknown data type"
    assert fake_shopify.calls == []


def test_vendor_query_escapes_quotes():
    assert vendor_query("Acme") == "vendor:'Acme'"
    assert vendor_query("Bob's") == "vendor:'Bob\\'s'"


def test_group_product_types_skips_incomplete_rows():
    grouped = group_product_types([
        {"productType": "Hats", "vendor": "Acme"},
        {"productType": None, "vendor": "Acme"},
        {"productType": "Bags"},
    ])
    assert grouped == {"Acme": ["Hats"]}
