"""
Shared fixtures: a SQLite-backed cache store per test and a fake Shopify source.
"""
import pytest

from app.cache.core import Page
from app.cache.shop_data import ShopIdentity, StoreSettings
from app.cache.store import PersistentCacheStore
from app.db import init_db, make_engine, make_session_factory


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeShopify:
    """
    In-memory stand-in for ShopifyAdminClient.

    Listings are split into pages of `page_size`; every call is recorded.
    """

    def __init__(self, vendors=None, products=None, product_types=None, page_size=2):
        self.vendors = list(vendors or [])
        self.products = list(products or [])
        self.product_types = list(product_types or [])
        self.page_size = page_size
        self.calls = []
        self.skus = {}
        self.fail_with = None

    def _page(self, items, cursor):
        start = int(cursor) if cursor else 0
        end = start + self.page_size
        has_next = end < len(items)
        return Page(items=items[start:end], has_next_page=has_next, end_cursor=str(end) if has_next else None)

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch_vendors_page(self, cursor):
        self.calls.append(("vendors", cursor))
        self._check()
        return self._page(self.vendors, cursor)

    async def fetch_products_page(self, cursor, query=None):
        self.calls.append(("products", cursor, query))
        self._check()
        products = self.products
        if query:
            vendor = query.split("'")[1]
            products = [p for p in products if p["vendor"] == vendor]
        return self._page(products, cursor)

    async def fetch_product_types_page(self, cursor):
        self.calls.append(("productTypes", cursor))
        self._check()
        return self._page(self.product_types, cursor)

    async def fetch_shop_identity(self):
        self.calls.append(("shop",))
        self._check()
        return ShopIdentity(shop="shop.myshopify.com", name="Shop", myshopify_domain="shop.myshopify.com")

    async def fetch_store_settings(self):
        self.calls.append(("settings",))
        self._check()
        return StoreSettings(default_weight_unit="GRAMS")

    async def fetch_product_count(self):
        self.calls.append(("count",))
        self._check()
        return len(self.products)

    async def find_product_by_sku(self, sku):
        self.calls.append(("sku", sku))
        self._check()
        return self.skus.get(sku)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cache.db'}"


@pytest.fixture
def session_factory(database_url):
    engine = make_engine(database_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return PersistentCacheStore(session_factory, clock=clock)


@pytest.fixture
def fake_shopify():
    return FakeShopify()
