"""
Shopify Admin GraphQL client
Only the queries the cache layer needs: vendors, products, product types,
shop identity, store settings, product count and SKU lookup
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from app.cache.core import Page
from app.cache.shop_data import ShopIdentity, StoreSettings
from config.settings import settings

load_dotenv()

logger = logging.getLogger("shopify_client")

# One connection pool per process, shared by every shop's client
_session: Optional[requests.Session] = None


def shared_session() -> requests.Session:
    global _session
    if _session is None:
        _session = requests.Session()
    return _session


# ============================================================================
# Queries
# ============================================================================

VENDORS_QUERY = """
query getVendors($first: Int!, $after: String) {
  productVendors(first: $first, after: $after) {
    edges { cursor node }
    pageInfo { hasNextPage endCursor }
  }
}"""

PRODUCTS_QUERY = """
query getProductTypes($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    edges { cursor node { productType vendor } }
    pageInfo { hasNextPage endCursor }
  }
}"""

PRODUCT_TYPES_QUERY = """
query getAllProductTypes($first: Int!, $after: String) {
  productTypes(first: $first, after: $after) {
    edges { node }
    pageInfo { hasNextPage endCursor }
  }
}"""

SHOP_QUERY = """
query getShopData {
  shop { name email myshopifyDomain }
}"""

STORE_SETTINGS_QUERY = """
query getStoreSettings {
  shop { weightUnit }
}"""

PRODUCT_COUNT_QUERY = """
query getStoreMetrics {
  productsCount { count }
}"""

SKU_QUERY = """
query checkProductSKU($query: String!) {
  products(first: 50, query: $query) {
    edges {
      node {
        id title handle
        variants(first: 50) { edges { node { sku } } }
      }
    }
  }
}"""


# ============================================================================
# Exceptions
# ============================================================================

class ShopifyAPIError(Exception):
    """Raised when a Shopify Admin API call fails."""
    pass


class ShopifyGraphQLError(ShopifyAPIError):
    """Raised when a GraphQL response carries top-level errors."""

    def __init__(self, errors: List[Dict[str, Any]]):
        self.errors = errors
        messages = "; ".join(str(e.get("message", e)) for e in errors)
        super().__init__(f"GraphQL errors: {messages}")


class ShopifyThrottledError(ShopifyAPIError):
    """Raised when Shopify rate limits the request."""
    pass


def _is_throttled(errors: List[Dict[str, Any]]) -> bool:
    return any(
        (e.get("extensions") or {}).get("code") == "THROTTLED"
        for e in errors
        if isinstance(e, dict)
    )


def _page_from_connection(connection: Optional[Dict[str, Any]], node_fn=None) -> Page:
    """Convert a GraphQL connection into a Page."""
    if not connection:
        return Page()
    nodes = [edge.get("node") for edge in connection.get("edges", [])]
    items = [node_fn(node) if node_fn else node for node in nodes if node]
    page_info = connection.get("pageInfo") or {}
    return Page(
        items=items,
        has_next_page=bool(page_info.get("hasNextPage")),
        end_cursor=page_info.get("endCursor"),
    )


# ============================================================================
# Client
# ============================================================================

class ShopifyAdminClient:
    """
    Admin GraphQL client for one shop.

    Blocking HTTP runs in a worker thread so the async methods never block
    the event loop.
    """

    def __init__(
        self,
        shop: str,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            shop: myshopify domain, e.g. "example.myshopify.com"
            access_token: Admin API token (settings / SHOPIFY_ACCESS_TOKEN if not provided)
            api_version: Admin API version
            timeout: Per-request timeout in seconds
            session: Optional requests session (process-wide shared session if not provided)
        """
        self.shop = shop
        self._access_token = (
            access_token
            or settings.shopify_access_token
            or os.getenv("SHOPIFY_ACCESS_TOKEN", "")
        )
        self._api_version = api_version or settings.shopify_api_version
        self._timeout = timeout or settings.shopify_request_timeout
        self._session = session or shared_session()

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop}/admin/api/{self._api_version}/graphql.json"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(ShopifyThrottledError),
        reraise=True,
    )
    def _post(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        POST one GraphQL document with retry on throttling.

        Returns:
            The `data` object of the response

        Raises:
            ShopifyThrottledError: still throttled after retries
            ShopifyGraphQLError: response carried GraphQL errors
            ShopifyAPIError: transport or HTTP failure
        """
        try:
            response = self._session.post(
                self.endpoint,
                json={"query": query, "variables": variables or {}},
                headers={
                    "X-Shopify-Access-Token": self._access_token,
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Shopify request failed for {self.shop}: {e}")
            raise ShopifyAPIError(str(e)) from e

        if response.status_code == 429:
            logger.warning(f"Shopify rate limit hit for {self.shop}")
            raise ShopifyThrottledError("HTTP 429")

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            logger.error(f"Shopify API error for {self.shop}: {response.status_code}")
            raise ShopifyAPIError(str(e)) from e

        body = response.json()
        errors = body.get("errors")
        if errors:
            if isinstance(errors, list) and _is_throttled(errors):
                logger.warning(f"Shopify GraphQL throttled for {self.shop}")
                raise ShopifyThrottledError("THROTTLED")
            if not isinstance(errors, list):
                errors = [{"message": str(errors)}]
            logger.error(f"GraphQL errors for {self.shop}: {errors}")
            raise ShopifyGraphQLError(errors)

        return body.get("data") or {}

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL document without blocking the event loop."""
        return await asyncio.to_thread(self._post, query, variables)

    # ------------------------------------------------------------------
    # Paginated listings (CatalogSource)
    # ------------------------------------------------------------------

    async def fetch_vendors_page(self, cursor: Optional[str]) -> Page:
        data = await self.graphql(VENDORS_QUERY, {
            "first": settings.vendors_page_size,
            "after": cursor,
        })
        return _page_from_connection(data.get("productVendors"))

    async def fetch_products_page(self, cursor: Optional[str], query: Optional[str] = None) -> Page:
        data = await self.graphql(PRODUCTS_QUERY, {
            "first": settings.products_page_size,
            "after": cursor,
            "query": query,
        })
        return _page_from_connection(
            data.get("products"),
            node_fn=lambda node: {
                "productType": node.get("productType"),
                "vendor": node.get("vendor"),
            },
        )

    async def fetch_product_types_page(self, cursor: Optional[str]) -> Page:
        data = await self.graphql(PRODUCT_TYPES_QUERY, {
            "first": settings.products_page_size,
            "after": cursor,
        })
        return _page_from_connection(data.get("productTypes"))

    # ------------------------------------------------------------------
    # Shop facts
    # ------------------------------------------------------------------

    async def fetch_shop_identity(self) -> ShopIdentity:
        shop = (await self.graphql(SHOP_QUERY)).get("shop") or {}
        return ShopIdentity(
            shop=self.shop,
            name=shop.get("name", ""),
            email=shop.get("email"),
            myshopify_domain=shop.get("myshopifyDomain", self.shop),
        )

    async def fetch_store_settings(self) -> StoreSettings:
        shop = (await self.graphql(STORE_SETTINGS_QUERY)).get("shop") or {}
        return StoreSettings(default_weight_unit=shop.get("weightUnit", "KILOGRAMS"))

    async def fetch_product_count(self) -> int:
        data = await self.graphql(PRODUCT_COUNT_QUERY)
        return int((data.get("productsCount") or {}).get("count", 0))

    async def find_product_by_sku(self, sku: str) -> Optional[Dict[str, str]]:
        """First product with a variant whose SKU matches exactly, or None."""
        escaped = sku.replace("\\", "\\\\").replace("'", "\\'")
        data = await self.graphql(SKU_QUERY, {"query": f"sku:'{escaped}'"})
        for edge in (data.get("products") or {}).get("edges", []):
            product = edge["node"]
            variants = (product.get("variants") or {}).get("edges", [])
            if any(v["node"].get("sku") == sku for v in variants):
                return {
                    "id": product["id"],
                    "title": product["title"],
                    "handle": product["handle"],
                }
        return None
