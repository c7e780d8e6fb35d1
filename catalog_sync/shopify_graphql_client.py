"""Shopify GraphQL Admin API client.

Fetches one page of products or orders at a time, sorted by last update
ascending, so that callers can drive cursor pagination themselves.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import httpx

from .config import Settings
from .models import (
    ImageRef,
    OrderCustomer,
    OrderLineItem,
    OrderTransaction,
    ProductVariantSnapshot,
    SelectedOption,
    ShopifyOrder,
)

logger = logging.getLogger(__name__)


class ShopifyGraphQLError(Exception):
    """Base exception for Shopify GraphQL API errors."""
    pass


@dataclass
class Page:
    """One page of parsed remote records.

    ``node_count`` is the number of remote nodes on the page; for products
    it differs from ``len(items)`` because each product yields one item per
    variant. ``unparsed`` holds the ids of nodes that could not be parsed.
    """
    items: List[Any] = field(default_factory=list)
    end_cursor: Optional[str] = None
    has_next_page: bool = False
    node_count: int = 0
    unparsed: List[str] = field(default_factory=list)


PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String, $sortKey: ProductSortKeys, $reverse: Boolean, $query: String) {
  products(first: $first, after: $after, sortKey: $sortKey, reverse: $reverse, query: $query) {
    edges {
      cursor
      node {
        id
        title
        vendor
        productType
        tags
        handle
        createdAt
        updatedAt
        status
        descriptionHtml
        images(first: 1) {
          edges { node { url altText } }
        }
        variants(first: 50) {
          edges {
            node {
              id
              sku
              price
              inventoryQuantity
              updatedAt
              image { url altText }
              selectedOptions { name value }
              inventoryItem {
                id
                sku
                unitCost { amount currencyCode }
              }
            }
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String, $sortKey: OrderSortKeys, $reverse: Boolean, $query: String) {
  orders(first: $first, after: $after, sortKey: $sortKey, reverse: $reverse, query: $query) {
    edges {
      cursor
      node {
        id name email phone createdAt processedAt updatedAt note tags poNumber
        displayFinancialStatus displayFulfillmentStatus
        customer { id firstName lastName email phone }
        currencyCode
        totalPriceSet { shopMoney { amount currencyCode } }
        subtotalPriceSet { shopMoney { amount currencyCode } }
        totalShippingPriceSet { shopMoney { amount currencyCode } }
        totalTaxSet { shopMoney { amount currencyCode } }
        totalDiscountsSet { shopMoney { amount currencyCode } }
        totalRefundedSet { shopMoney { amount currencyCode } }
        lineItems(first: 50) {
          edges {
            node {
              id title variantTitle quantity sku vendor
              originalTotalSet { shopMoney { amount currencyCode } }
              discountedTotalSet { shopMoney { amount currencyCode } }
            }
          }
        }
        transactions {
          id kind status gateway processedAt errorCode
          amountSet { shopMoney { amount currencyCode } }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""


def _money(money_set: Optional[Dict[str, Any]]) -> Optional[float]:
    """Amount of a MoneyBag in shop currency, or None."""
    amount = ((money_set or {}).get("shopMoney") or {}).get("amount")
    if amount in (None, ""):
        return None
    return float(amount)


def _image(node: Optional[Dict[str, Any]]) -> Optional[ImageRef]:
    if not node or not node.get("url"):
        return None
    return ImageRef(src=node["url"], alt_text=node.get("altText"))


class ShopifyGraphQLClient:
    """Shopify GraphQL Admin API client."""

    def __init__(self, settings: Settings):
        """Initialize GraphQL client.

        Args:
            settings: Application settings with Shopify credentials
        """
        self.settings = settings
        self.graphql_url = settings.graphql_url
        self.access_token = settings.shopify_access_token
        self.rate_limit_delay = settings.shopify_rate_limit_delay
        self._last_request_time: Optional[float] = None
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=30.0)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _respect_rate_limit(self) -> None:
        """Ensure we don't exceed rate limits."""
        loop = asyncio.get_running_loop()
        if self._last_request_time is not None:
            elapsed = loop.time() - self._last_request_time
            if elapsed < self.rate_limit_delay:
                await asyncio.sleep(self.rate_limit_delay - elapsed)

        self._last_request_time = loop.time()

    async def _query(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        retry_on_throttle: bool = True,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query.

        Args:
            query: GraphQL query string
            variables: Optional query variables
            retry_on_throttle: Retry once after a 429 response

        Returns:
            Response data dictionary

        Raises:
            ShopifyGraphQLError: On API errors
        """
        if not self._client:
            raise ShopifyGraphQLError("Client not initialized. Use async context manager.")

        await self._respect_rate_limit()

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self._client.post(
                self.graphql_url,
                json=payload,
                headers={
                    "X-Shopify-Access-Token": self.access_token or "",
                    "Content-Type": "application/json",
                },
            )

            if response.status_code == 429 and retry_on_throttle:
                retry_after = float(response.headers.get("Retry-After", "2.0"))
                logger.warning(f"Rate limit hit, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                return await self._query(query, variables, retry_on_throttle=False)

            response.raise_for_status()
            data = response.json()

            if data.get("errors"):
                error_messages = [e.get("message", str(e)) for e in data["errors"]]
                raise ShopifyGraphQLError(f"GraphQL errors: {', '.join(error_messages)}")

            return data.get("data") or {}

        except httpx.HTTPError as e:
            raise ShopifyGraphQLError(f"HTTP error: {e}") from e

    @staticmethod
    def _page_variables(first: int, after: Optional[str], query_filter: Optional[str]) -> Dict[str, Any]:
        return {
            "first": first,
            "after": after,
            "sortKey": "UPDATED_AT",
            "reverse": False,
            "query": query_filter or None,
        }

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def fetch_products_page(
        self,
        first: int,
        after: Optional[str] = None,
        query_filter: Optional[str] = None,
    ) -> Page:
        """Fetch one page of products, flattened to one snapshot per variant.

        Args:
            first: Number of products to request
            after: Cursor to continue from
            query_filter: Search filter such as ``updated_at:>'...'``

        Returns:
            Page of ProductVariantSnapshot items
        """
        data = await self._query(PRODUCTS_QUERY, self._page_variables(first, after, query_filter))
        connection = data.get("products") or {}
        edges = connection.get("edges") or []
        page_info = connection.get("pageInfo") or {}

        items: List[ProductVariantSnapshot] = []
        unparsed: List[str] = []
        for edge in edges:
            node = edge.get("node") or {}
            try:
                items.extend(self._parse_product_variants(node))
            except Exception as e:
                logger.error(f"Failed to parse product {node.get('id')}: {e}")
                unparsed.append(str(node.get("id")))

        logger.info(f"Fetched {len(edges)} products ({len(items)} variants) from Shopify")
        return Page(
            items=items,
            end_cursor=page_info.get("endCursor"),
            has_next_page=bool(page_info.get("hasNextPage")),
            node_count=len(edges),
            unparsed=unparsed,
        )

    def _parse_product_variants(self, node: Dict[str, Any]) -> List[ProductVariantSnapshot]:
        """Parse a GraphQL product node into one snapshot per variant."""
        product_images = [
            image
            for image in (_image(edge.get("node")) for edge in (node.get("images") or {}).get("edges", []))
            if image is not None
        ]

        snapshots = []
        for edge in (node.get("variants") or {}).get("edges", []):
            variant = edge.get("node") or {}
            inventory_item = variant.get("inventoryItem") or {}
            unit_cost = (inventory_item.get("unitCost") or {}).get("amount")
            price = variant.get("price")

            snapshots.append(ProductVariantSnapshot(
                shopify_variant_id=variant["id"],
                sku=variant.get("sku") or inventory_item.get("sku") or None,
                price=float(price) if price not in (None, "") else None,
                inventory_quantity=variant.get("inventoryQuantity"),
                variant_updated_at=variant.get("updatedAt"),
                variant_image=_image(variant.get("image")),
                shopify_product_id=node["id"],
                product_title=node.get("title") or "",
                product_description_html=node.get("descriptionHtml"),
                product_vendor=node.get("vendor"),
                product_type=node.get("productType"),
                product_tags=node.get("tags") or [],
                product_handle=node.get("handle"),
                product_created_at=node.get("createdAt"),
                product_updated_at=node.get("updatedAt"),
                product_images=product_images,
                product_status=node.get("status"),
                cost=float(unit_cost) if unit_cost not in (None, "") else None,
                selected_options=[
                    SelectedOption(name=opt.get("name", ""), value=opt.get("value", ""))
                    for opt in variant.get("selectedOptions") or []
                ],
            ))
        return snapshots

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def fetch_orders_page(
        self,
        first: int,
        after: Optional[str] = None,
        query_filter: Optional[str] = None,
    ) -> Page:
        """Fetch one page of orders.

        Args:
            first: Number of orders to request
            after: Cursor to continue from
            query_filter: Search filter such as ``updated_at:>'...'``

        Returns:
            Page of ShopifyOrder items
        """
        data = await self._query(ORDERS_QUERY, self._page_variables(first, after, query_filter))
        connection = data.get("orders") or {}
        edges = connection.get("edges") or []
        page_info = connection.get("pageInfo") or {}

        orders: List[ShopifyOrder] = []
        unparsed: List[str] = []
        for edge in edges:
            node = edge.get("node") or {}
            try:
                orders.append(self._parse_order(node))
            except Exception as e:
                logger.error(f"Failed to parse order {node.get('id')}: {e}")
                unparsed.append(str(node.get("id")))

        logger.info(f"Fetched {len(edges)} orders from Shopify")
        return Page(
            items=orders,
            end_cursor=page_info.get("endCursor"),
            has_next_page=bool(page_info.get("hasNextPage")),
            node_count=len(edges),
            unparsed=unparsed,
        )

    def _parse_order(self, node: Dict[str, Any]) -> ShopifyOrder:
        """Parse GraphQL order node to ShopifyOrder model."""
        customer = None
        if node.get("customer"):
            cust = node["customer"]
            customer = OrderCustomer(
                id=cust.get("id"),
                first_name=cust.get("firstName"),
                last_name=cust.get("lastName"),
                email=cust.get("email"),
                phone=cust.get("phone"),
            )

        line_items = []
        for edge in (node.get("lineItems") or {}).get("edges", []):
            item = edge.get("node") or {}
            line_items.append(OrderLineItem(
                id=item.get("id"),
                title=item.get("title") or "",
                variant_title=item.get("variantTitle"),
                quantity=item.get("quantity") or 0,
                sku=item.get("sku") or None,
                vendor=item.get("vendor"),
                original_total=_money(item.get("originalTotalSet")),
                discounted_total=_money(item.get("discountedTotalSet")),
            ))

        transactions = [
            OrderTransaction(
                id=txn.get("id"),
                kind=txn.get("kind"),
                status=txn.get("status"),
                gateway=txn.get("gateway"),
                processed_at=txn.get("processedAt"),
                error_code=txn.get("errorCode"),
                amount=_money(txn.get("amountSet")),
            )
            for txn in node.get("transactions") or []
        ]

        return ShopifyOrder(
            id=node["id"],
            name=node.get("name"),
            email=node.get("email"),
            phone=node.get("phone"),
            created_at=node.get("createdAt"),
            processed_at=node.get("processedAt"),
            updated_at=node.get("updatedAt"),
            note=node.get("note"),
            tags=node.get("tags") or [],
            po_number=node.get("poNumber"),
            display_financial_status=node.get("displayFinancialStatus"),
            display_fulfillment_status=node.get("displayFulfillmentStatus"),
            customer=customer,
            currency_code=node.get("currencyCode"),
            total_price=_money(node.get("totalPriceSet")),
            subtotal_price=_money(node.get("subtotalPriceSet")),
            total_shipping_price=_money(node.get("totalShippingPriceSet")),
            total_tax=_money(node.get("totalTaxSet")),
            total_discounts=_money(node.get("totalDiscountsSet")),
            total_refunded=_money(node.get("totalRefundedSet")),
            line_items=line_items,
            transactions=transactions,
        )

    # =========================================================================
    # CONNECTION TEST
    # =========================================================================

    async def check_connection(self) -> bool:
        """Verify API connection is working.

        Returns:
            True if connection is successful
        """
        try:
            data = await self._query("{ shop { name } }")
            shop = data.get("shop") or {}
            if shop.get("name"):
                logger.info(f"Shopify GraphQL API connection successful: {shop['name']}")
                return True
            return False
        except ShopifyGraphQLError as e:
            logger.error(f"Shopify GraphQL API connection failed: {e}")
            return False
