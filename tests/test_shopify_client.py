"""
Tests for the Admin GraphQL client: connection paging, throttling retry,
GraphQL error mapping and SKU lookup, against a scripted HTTP session.
"""
import asyncio

import pytest
import requests
from tenacity import wait_none

from app.shopify_client import (
    ShopifyAdminClient,
    ShopifyAPIError,
    ShopifyGraphQLError,
    ShopifyThrottledError,
    shared_session,
)

SHOP = "shop.myshopify.com"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class ScriptedSession:
    """Returns queued responses in order and records each request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _connection(nodes, has_next=False, cursor=None):
    return {
        "edges": [{"node": node} for node in nodes],
        "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
    }


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(ShopifyAdminClient._post.retry, "wait", wait_none())


def _client(session):
    return ShopifyAdminClient(SHOP, access_token="shpat_test", api_version="2024-10", session=session)


def test_vendors_page_parses_connection():
    session = ScriptedSession(FakeResponse(body={
        "data": {"productVendors": _connection(["Acme", "Zeta"], has_next=True, cursor="abc")}
    }))

    page = asyncio.run(_client(session).fetch_vendors_page(None))

    assert page.items == ["Acme", "Zeta"]
    assert page.has_next_page is True
    assert page.end_cursor == "abc"
    sent = session.requests[0]
    assert sent["url"] == f"https://{SHOP}/admin/api/2024-10/graphql.json"
    assert sent["headers"]["X-Shopify-Access-Token"] == "shpat_test"


def test_products_page_passes_filter_and_maps_nodes():
    session = ScriptedSession(FakeResponse(body={
        "data": {"products": _connection([{"productType": "Hats", "vendor": "Acme", "id": "1"}])}
    }))

    page = asyncio.run(_client(session).fetch_products_page("c1", query="vendor:'Acme'"))

    assert page.items == [{"productType": "Hats", "vendor": "Acme"}]
    variables = session.requests[0]["json"]["variables"]
    assert variables["after"] == "c1"
    assert variables["query"] == "vendor:'Acme'"


def test_missing_connection_is_empty_page():
    session = ScriptedSession(FakeResponse(body={"data": {}}))
    page = asyncio.run(_client(session).fetch_product_types_page(None))
    assert page.items == []
    assert page.has_next_page is False


def test_http_429_is_retried():
    session = ScriptedSession(
        FakeResponse(status_code=429),
        FakeResponse(body={"data": {"productsCount": {"count": 42}}}),
    )

    assert asyncio.run(_client(session).fetch_product_count()) == 42
    assert len(session.requests) == 2


def test_graphql_throttle_gives_up_after_three_attempts():
    throttled = {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
    session = ScriptedSession(*[FakeResponse(body=throttled) for _ in range(3)])

    with pytest.raises(ShopifyThrottledError):
        asyncio.run(_client(session).fetch_product_count())
    assert len(session.requests) == 3


def test_graphql_errors_raise_without_retry():
    session = ScriptedSession(FakeResponse(body={"errors": [{"message": "Field 'x' doesn't exist"}]}))

    with pytest.raises(ShopifyGraphQLError) as excinfo:
        asyncio.run(_client(session).fetch_product_count())
    assert "doesn't exist" in str(excinfo.value)
    assert len(session.requests) == 1


def test_transport_and_http_errors_map_to_api_error():
    session = ScriptedSession(requests.ConnectionError("refused"), FakeResponse(status_code=500))
    client = _client(session)

    with pytest.raises(ShopifyAPIError):
        asyncio.run(client.fetch_product_count())
    with pytest.raises(ShopifyAPIError):
        asyncio.run(client.fetch_product_count())


def test_shop_facts():
    session = ScriptedSession(
        FakeResponse(body={"data": {"shop": {"name": "Demo", "email": "a@b.c", "myshopifyDomain": SHOP}}}),
        FakeResponse(body={"data": {"shop": {"weightUnit": "POUNDS"}}}),
    )
    client = _client(session)

    identity = asyncio.run(client.fetch_shop_identity())
    store_settings = asyncio.run(client.fetch_store_settings())

    assert identity.name == "Demo"
    assert identity.myshopify_domain == SHOP
    assert store_settings.default_weight_unit == "POUNDS"


def test_find_product_by_sku_requires_exact_variant_match():
    product = {
        "id": "gid://shopify/Product/1",
        "title": "Hat",
        "handle": "hat",
        "variants": _connection([{"sku": "ABC-10"}, {"sku": "ABC-1"}]),
    }
    near_miss = dict(product, variants=_connection([{"sku": "ABC-10"}]))
    session = ScriptedSession(
        FakeResponse(body={"data": {"products": _connection([product])}}),
        FakeResponse(body={"data": {"products": _connection([near_miss])}}),
    )
    client = _client(session)

    assert asyncio.run(client.find_product_by_sku("ABC-1")) == {
        "id": "gid://shopify/Product/1", "title": "Hat", "handle": "hat",
    }
    assert asyncio.run(client.find_product_by_sku("ABC-1")) is None
    assert session.requests[0]["json"]["variables"]["query"] == "sku:'ABC-1'"


def test_clients_share_one_session_per_process():
    first = ShopifyAdminClient(SHOP, access_token="a")
    second = ShopifyAdminClient("other.myshopify.com", access_token="b")
    assert first._session is second._session
    assert first._session is shared_session()
