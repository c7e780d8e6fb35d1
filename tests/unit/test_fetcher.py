"""Unit tests for remote feed pagination.

Tests verify that:
- Sync type is full when forced or when no full run has completed
- Delta runs filter by the previous run's start time
- Pagination follows cursors and stops on the last or an empty page
- Fetch limits cap the number of remote records requested
- A failed request keeps already fetched items and marks the run incomplete
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from catalog_sync.fetcher import RemoteCatalogFetcher, build_filter, determine_sync_type
from catalog_sync.models import Feed, SyncState, SyncType
from catalog_sync.shopify_graphql_client import Page, ShopifyGraphQLClient, ShopifyGraphQLError

from tests.fixtures.shopify_fixtures import make_order, make_variant_snapshot


T1 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def order_page(ids, has_next_page, end_cursor=None):
    return Page(
        items=[make_order(order_id=i, name=f"#{i}") for i in ids],
        end_cursor=end_cursor,
        has_next_page=has_next_page,
        node_count=len(ids),
    )


@pytest.fixture
def client():
    return AsyncMock(spec=ShopifyGraphQLClient)


@pytest.fixture
def fetcher(client, state_store):
    return RemoteCatalogFetcher(client, state_store, order_page_size=2, product_page_size=3)


class TestSyncType:

    def test_no_state_is_full(self):
        assert determine_sync_type(None) == SyncType.FULL

    def test_no_full_completion_is_full(self):
        state = SyncState(last_sync_attempt_timestamp=T1)

        assert determine_sync_type(state) == SyncType.FULL

    def test_completed_full_allows_delta(self):
        state = SyncState(last_sync_attempt_timestamp=T1, last_full_sync_completion_timestamp=T1)

        assert determine_sync_type(state) == SyncType.DELTA

    def test_forced_full(self):
        state = SyncState(last_sync_attempt_timestamp=T1, last_full_sync_completion_timestamp=T1)

        assert determine_sync_type(state, force_full=True) == SyncType.FULL


class TestFilter:

    def test_delta_filter(self):
        state = SyncState(last_sync_attempt_timestamp=T1, last_full_sync_completion_timestamp=T1)

        assert build_filter(SyncType.DELTA, state) == "updated_at:>'2024-01-15T12:00:00Z'"

    def test_full_has_no_filter(self):
        state = SyncState(last_sync_attempt_timestamp=T1, last_full_sync_completion_timestamp=T1)

        assert build_filter(SyncType.FULL, state) is None


class TestFetch:

    @pytest.mark.asyncio
    async def test_follows_cursors_until_last_page(self, fetcher, client):
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            order_page([3, 4], True, "c2"),
            order_page([5], False, "c3"),
        ]

        result = await fetcher.fetch(Feed.ORDERS)

        assert [o.cache_key for o in result.items] == ["1", "2", "3", "4", "5"]
        assert result.sync_type == SyncType.FULL
        assert result.completed is True
        assert result.has_more is False
        assert result.next_cursor is None
        assert result.pages == 3
        cursors = [call.args[1] for call in client.fetch_orders_page.call_args_list]
        assert cursors == [None, "c1", "c2"]

    @pytest.mark.asyncio
    async def test_empty_page_ends_pagination(self, fetcher, client):
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            order_page([], True, "c2"),
        ]

        result = await fetcher.fetch(Feed.ORDERS)

        assert len(result.items) == 2
        assert result.completed is True
        assert client.fetch_orders_page.call_count == 2

    @pytest.mark.asyncio
    async def test_delta_uses_previous_attempt(self, fetcher, client, state_store):
        state_store.write(
            Feed.ORDERS,
            last_sync_attempt_timestamp=T1,
            last_full_sync_completion_timestamp=T1,
        )
        client.fetch_orders_page.side_effect = [order_page([1], False)]

        result = await fetcher.fetch(Feed.ORDERS)

        assert result.sync_type == SyncType.DELTA
        assert client.fetch_orders_page.call_args.args[2] == "updated_at:>'2024-01-15T12:00:00Z'"

    @pytest.mark.asyncio
    async def test_limit_caps_page_size_and_stops(self, fetcher, client):
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            order_page([3], True, "c2"),
        ]

        result = await fetcher.fetch(Feed.ORDERS, limit=3)

        sizes = [call.args[0] for call in client.fetch_orders_page.call_args_list]
        assert sizes == [2, 1]
        assert len(result.items) == 3
        assert result.completed is False
        assert result.has_more is True
        assert result.next_cursor == "c2"

    @pytest.mark.asyncio
    async def test_failure_keeps_fetched_items(self, fetcher, client):
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            ShopifyGraphQLError("HTTP error: 502"),
        ]

        result = await fetcher.fetch(Feed.ORDERS)

        assert len(result.items) == 2
        assert result.completed is False
        assert "502" in result.error
        assert result.next_cursor == "c1"

    @pytest.mark.asyncio
    async def test_products_limit_counts_products(self, fetcher, client):
        client.fetch_products_page.return_value = Page(
            items=[make_variant_snapshot(variant_id=i) for i in range(4)],
            end_cursor="p1",
            has_next_page=True,
            node_count=2,
        )

        result = await fetcher.fetch(Feed.PRODUCTS, limit=2)

        assert client.fetch_products_page.call_count == 1
        assert client.fetch_products_page.call_args.args[0] == 2
        assert result.node_count == 2
        assert len(result.items) == 4

    @pytest.mark.asyncio
    async def test_explicit_page_size(self, fetcher, client):
        client.fetch_products_page.return_value = Page()

        await fetcher.fetch(Feed.PRODUCTS, page_size=10)

        assert client.fetch_products_page.call_args.args[0] == 10

    @pytest.mark.asyncio
    async def test_unparsed_records_collected(self, fetcher, client):
        first = order_page([1], True, "c1")
        first.unparsed = ["gid://shopify/Order/7"]
        second = order_page([2], False)
        second.unparsed = ["gid://shopify/Order/9"]
        client.fetch_orders_page.side_effect = [first, second]

        result = await fetcher.fetch(Feed.ORDERS)

        assert result.completed is True
        assert result.unparsed == ["gid://shopify/Order/7", "gid://shopify/Order/9"]
        assert (
            "Could not parse 2 orders: gid://shopify/Order/7, gid://shopify/Order/9"
            in result.details
        )
