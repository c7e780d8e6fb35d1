"""Unit tests for sync engine orchestration.

Tests verify that:
- Missing credentials fail the run before any remote call
- A held lease blocks a concurrent run of the same feed
- State timestamps advance only when pagination completes
- Stale cache entries are removed only by a completed full run
- Orders are projected into invoices after caching
- A failed invoice commit or unparsed record leaves state and cache safe
- Inventory reconciliation and the sales migration report their results
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from catalog_sync.config import Settings
from catalog_sync.database import DocumentStoreError
from catalog_sync.models import Feed
from catalog_sync.shopify_graphql_client import Page, ShopifyGraphQLClient, ShopifyGraphQLError
from catalog_sync.sync_engine import SyncEngine

from tests.fixtures.shopify_fixtures import make_order, make_variant_snapshot


ORDER_CACHE = "shopifyOrderCache"
PRODUCT_CACHE = "shopifyProductCache"
T1 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def order_page(ids, has_next_page=False, end_cursor=None):
    return Page(
        items=[make_order(order_id=i, name=f"#{i}") for i in ids],
        end_cursor=end_cursor,
        has_next_page=has_next_page,
        node_count=len(ids),
    )


@pytest.fixture
def client():
    client = AsyncMock(spec=ShopifyGraphQLClient)
    client.check_connection.return_value = True
    return client


@pytest.fixture
def engine(mock_settings, store, client):
    return SyncEngine(mock_settings, store, client)


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_missing_credentials(self, no_credentials_env, store, client):
        engine = SyncEngine(Settings(_env_file=None), store, client)

        result = await engine.sync_orders()

        assert result.success is False
        assert "not configured" in result.error
        client.fetch_orders_page.assert_not_called()
        assert engine.get_sync_history() == []

    @pytest.mark.asyncio
    async def test_verify_connection_without_credentials(self, no_credentials_env, store, client):
        engine = SyncEngine(Settings(_env_file=None), store, client)

        assert await engine.verify_connection() is False
        client.check_connection.assert_not_called()

    @pytest.mark.asyncio
    async def test_held_lease_blocks_run(self, engine, client):
        engine.state.acquire_lease(Feed.ORDERS, "other-run", 600)

        result = await engine.sync_orders()

        assert result.success is False
        assert result.error == "A orders sync is already running"
        client.fetch_orders_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, engine, client):
        client.fetch_orders_page.return_value = order_page([])

        await engine.sync_orders()

        assert engine.state.read(Feed.ORDERS).lease_owner is None
        assert engine.state.acquire_lease(Feed.ORDERS, "next-run", 600)


class TestOrderSync:

    @pytest.mark.asyncio
    async def test_full_run_caches_and_projects(self, engine, client, store):
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            order_page([3], False, "c2"),
        ]

        result = await engine.sync_orders()

        assert result.success is True
        assert result.sync_type == "full"
        assert result.fetched == 3
        assert result.completed_pagination is True
        assert store.list_ids(ORDER_CACHE) == ["1", "2", "3"]
        assert result.projection.invoices_created == 3
        assert store.count("invoices") == 3

        state = engine.state.read(Feed.ORDERS)
        assert state.cursor is None
        assert result.started_at <= state.last_sync_attempt_timestamp <= result.completed_at
        assert state.last_full_sync_completion_timestamp is not None

        [run] = engine.get_sync_history()
        assert run["status"] == "success"
        assert run["entities_processed"] == 3

    @pytest.mark.asyncio
    async def test_second_run_is_delta(self, engine, client):
        client.fetch_orders_page.return_value = order_page([1])
        await engine.sync_orders()

        result = await engine.sync_orders()

        assert result.sync_type == "delta"
        assert client.fetch_orders_page.call_args.args[2].startswith("updated_at:>'")
        assert result.projection.invoices_created == 0
        assert result.projection.skipped == 1

    @pytest.mark.asyncio
    async def test_full_run_removes_stale_cache(self, engine, client, store):
        store.set(ORDER_CACHE, "99", make_order(order_id=99, name="#99").to_document())
        client.fetch_orders_page.return_value = order_page([1])

        result = await engine.sync_orders()

        assert store.list_ids(ORDER_CACHE) == ["1"]
        assert result.cache.deleted == 1

    @pytest.mark.asyncio
    async def test_delta_run_keeps_cache(self, engine, client, state_store, store):
        state_store.write(
            Feed.ORDERS,
            last_sync_attempt_timestamp=T1,
            last_full_sync_completion_timestamp=T1,
        )
        store.set(ORDER_CACHE, "99", make_order(order_id=99, name="#99").to_document())
        client.fetch_orders_page.return_value = order_page([1])

        result = await engine.sync_orders()

        assert result.sync_type == "delta"
        assert store.list_ids(ORDER_CACHE) == ["1", "99"]
        state = engine.state.read(Feed.ORDERS)
        assert state.last_full_sync_completion_timestamp == T1
        assert state.last_sync_attempt_timestamp > T1

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_items_and_state(self, engine, client, state_store, store):
        store.set(ORDER_CACHE, "99", make_order(order_id=99, name="#99").to_document())
        client.fetch_orders_page.side_effect = [
            order_page([1, 2], True, "c1"),
            ShopifyGraphQLError("HTTP error: 502"),
        ]

        result = await engine.sync_orders()

        assert result.success is False
        assert "502" in result.error
        assert result.completed_pagination is False
        # Partial full run: fetched items cached, nothing tombstoned.
        assert store.list_ids(ORDER_CACHE) == ["1", "2", "99"]
        state = state_store.read(Feed.ORDERS)
        assert state.cursor == "c1"
        assert state.last_sync_attempt_timestamp is None
        assert state.last_full_sync_completion_timestamp is None
        [run] = engine.get_sync_history()
        assert run["status"] == "failed"

    @pytest.mark.asyncio
    async def test_limited_run_is_incomplete(self, engine, client, store):
        client.fetch_orders_page.return_value = order_page([1, 2], True, "c1")
        store.set(ORDER_CACHE, "99", make_order(order_id=99, name="#99").to_document())

        result = await engine.sync_orders(limit=2)

        assert result.success is True
        assert result.completed_pagination is False
        assert "99" in store.list_ids(ORDER_CACHE)
        state = engine.state.read(Feed.ORDERS)
        assert state.cursor == "c1"
        assert state.last_full_sync_completion_timestamp is None

    @pytest.mark.asyncio
    async def test_force_full_overrides_state(self, engine, client, state_store):
        state_store.write(
            Feed.ORDERS,
            last_sync_attempt_timestamp=T1,
            last_full_sync_completion_timestamp=T1,
        )
        client.fetch_orders_page.return_value = order_page([])

        result = await engine.sync_orders(force_full=True)

        assert result.sync_type == "full"
        assert client.fetch_orders_page.call_args.args[2] is None

    @pytest.mark.asyncio
    async def test_failed_invoice_commit_keeps_state(self, engine, client, store, failing_commit):
        control = failing_commit(collection="invoices")
        client.fetch_orders_page.return_value = order_page([1])

        result = await engine.sync_orders()

        assert result.success is False
        assert "backend down" in result.error
        assert result.projection.invoices_created == 0
        assert store.list_ids(ORDER_CACHE) == ["1"]
        state = engine.state.read(Feed.ORDERS)
        assert state.last_sync_attempt_timestamp is None
        assert state.last_full_sync_completion_timestamp is None
        [run] = engine.get_sync_history()
        assert run["status"] == "failed"

        control["enabled"] = False
        retry = await engine.sync_orders()

        assert retry.success is True
        assert retry.sync_type == "full"
        assert retry.projection.invoices_created == 1
        assert store.count("invoices") == 1

    @pytest.mark.asyncio
    async def test_unparsed_records_block_tombstones(self, engine, client, store):
        store.set(ORDER_CACHE, "7", make_order(order_id=7, name="#7").to_document())
        store.set(ORDER_CACHE, "99", make_order(order_id=99, name="#99").to_document())
        client.fetch_orders_page.return_value = Page(
            items=[make_order(order_id=8, name="#8")],
            node_count=2,
            unparsed=["gid://shopify/Order/7"],
        )

        result = await engine.sync_orders()

        assert result.sync_type == "full"
        assert result.cache.deleted == 0
        assert store.list_ids(ORDER_CACHE) == ["7", "8", "99"]
        assert "Could not parse 1 orders: gid://shopify/Order/7" in result.details

    @pytest.mark.asyncio
    async def test_corrupt_state_runs_full(self, engine, client, store):
        store.set("syncState", "shopifyOrdersSyncState", {"lastSyncAttemptTimestamp": "garbage"})
        client.fetch_orders_page.return_value = order_page([1])

        result = await engine.sync_orders()

        assert result.success is True
        assert result.sync_type == "full"
        state = engine.state.read(Feed.ORDERS)
        assert state.last_full_sync_completion_timestamp is not None
        assert state.lease_owner is None

    @pytest.mark.asyncio
    async def test_history_failure_releases_lease(self, engine, client, store, monkeypatch):
        def start_sync_run(run_id, feed):
            raise DocumentStoreError("backend down")
        monkeypatch.setattr(store, "start_sync_run", start_sync_run)

        result = await engine.sync_orders()

        assert result.success is False
        assert result.error == "backend down"
        client.fetch_orders_page.assert_not_called()
        assert engine.state.acquire_lease(Feed.ORDERS, "next-run", 600)


class TestProductSync:

    @pytest.mark.asyncio
    async def test_products_cached_not_reconciled(self, engine, client, store):
        client.fetch_products_page.return_value = Page(
            items=[make_variant_snapshot(variant_id=1), make_variant_snapshot(variant_id=2, sku="B")],
            node_count=1,
        )

        result = await engine.sync_products()

        assert result.success is True
        assert result.projection is None
        assert store.list_ids(PRODUCT_CACHE) == ["1", "2"]
        assert store.count("inventory") == 0

    @pytest.mark.asyncio
    async def test_then_inventory_sync(self, engine, client, store):
        client.fetch_products_page.return_value = Page(
            items=[make_variant_snapshot(variant_id=1), make_variant_snapshot(variant_id=2, sku="B")],
            node_count=1,
        )
        await engine.sync_products()

        result = engine.sync_inventory()

        assert result.success is True
        assert result.fetched == 2
        assert result.inventory.added == 2
        assert store.count("inventory") == 2


class TestLocalOperations:

    def test_inventory_with_empty_cache(self, engine):
        result = engine.sync_inventory()

        assert result.success is True
        assert result.inventory.added == 0
        assert result.details == ["No products in the product cache to reconcile"]

    def test_migrate_sales(self, engine, store):
        store.set("sales", "s1", {"invoiceNumber": "SH-1001", "quantity": 1, "lineAmount": 5.0})

        result = engine.migrate_sales_to_invoices()

        assert result.success is True
        assert result.projection.invoices_created == 1
        assert result.projection.sales_linked == 1

    def test_next_number(self, engine):
        assert engine.next_number("invoice") == "I000001"
        assert engine.next_number("invoice") == "I000002"

    def test_stats(self, engine, store):
        store.set("inventory", "a", {"sku": "A"})

        stats = engine.get_sync_stats()

        assert stats["documents"]["inventory"] == 1

    def test_cached_orders_newest_first(self, engine, store):
        for order_id, created in [(1, "2024-01-10T00:00:00Z"), (2, "2024-03-01T00:00:00Z"), (3, "2024-02-01T00:00:00Z")]:
            order = make_order(order_id=order_id, name=f"#{order_id}", created_at=created)
            store.set(ORDER_CACHE, str(order_id), order.to_document())

        orders = engine.cached_orders(limit=2)

        assert [o.name for o in orders] == ["#2", "#3"]
