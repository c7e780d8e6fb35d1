"""Core sync orchestration engine.

Runs each feed as one sequential pipeline: fetch all pages, reconcile the
cache, then project orders into invoices or leave products for inventory
reconciliation. Entry points return a SyncRunResult instead of raising.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .batch_writer import BatchCommitError
from .cache import CacheReconciler
from .config import ConfigurationError, Settings
from .database import DocumentStore
from .fetcher import FetchResult, RemoteCatalogFetcher
from .inventory import InventoryReconciler
from .models import Feed, ProductVariantSnapshot, ShopifyOrder, SyncType, utc_now
from .projector import OrderToInvoiceProjector
from .results import SyncRunResult
from .sequence import SequenceGenerator
from .shopify_graphql_client import ShopifyGraphQLClient
from .sync_state import SyncStateStore

logger = logging.getLogger(__name__)

# Orders stage several writes per invoice, so they use a smaller chunk.
ORDER_BATCH_MARGIN = 40


class SyncEngine:
    """Orchestrates sync between the remote catalog and local collections."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        client: ShopifyGraphQLClient,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            store: Document store for state, cache and local collections
            client: Remote GraphQL client (already entered as a context manager)
        """
        self.settings = settings
        self.store = store
        self.client = client
        self.state = SyncStateStore(store)
        self.fetcher = RemoteCatalogFetcher(
            client,
            self.state,
            order_page_size=settings.order_page_size,
            product_page_size=settings.product_page_size,
        )
        self.cache = CacheReconciler(store, batch_ceiling=settings.batch_ceiling)
        self.inventory = InventoryReconciler(
            store,
            store_domain=settings.shopify_store_domain,
            batch_ceiling=settings.batch_ceiling,
        )
        self.projector = OrderToInvoiceProjector(
            store,
            batch_ceiling=max(1, settings.batch_ceiling - ORDER_BATCH_MARGIN),
        )
        self.sequences = SequenceGenerator(store, max_attempts=settings.sequence_max_attempts)

    # =========================================================================
    # REMOTE FEEDS
    # =========================================================================

    async def sync_orders(self, force_full: bool = False, limit: int = 0) -> SyncRunResult:
        """Fetch orders, refresh the order cache and project new invoices."""
        return await self._run_feed(Feed.ORDERS, force_full, limit)

    async def sync_products(self, force_full: bool = False, limit: int = 0) -> SyncRunResult:
        """Fetch products and refresh the product cache."""
        return await self._run_feed(Feed.PRODUCTS, force_full, limit)

    async def _run_feed(self, feed: Feed, force_full: bool, limit: int) -> SyncRunResult:
        started_at = utc_now()
        try:
            self.settings.require_remote_credentials()
        except ConfigurationError as e:
            logger.error(str(e))
            return SyncRunResult(
                success=False, feed=feed.value, error=str(e), started_at=started_at,
                completed_at=utc_now(),
            )

        run_id = str(uuid.uuid4())
        try:
            leased = self.state.acquire_lease(feed, run_id, self.settings.sync_lease_seconds)
        except Exception as e:
            logger.error(f"Could not claim {feed.value} sync: {e}")
            return SyncRunResult(
                success=False, feed=feed.value, run_id=run_id, error=str(e),
                started_at=started_at, completed_at=utc_now(),
            )
        if not leased:
            message = f"A {feed.value} sync is already running"
            return SyncRunResult(
                success=False, feed=feed.value, run_id=run_id, error=message,
                started_at=started_at, completed_at=utc_now(),
            )

        logger.info("=" * 50)
        logger.info(f"SYNCING {feed.value.upper()} (run {run_id})")
        logger.info("=" * 50)

        result = SyncRunResult(success=False, feed=feed.value, run_id=run_id, started_at=started_at)
        history_started = False
        try:
            self.store.start_sync_run(run_id, feed.value)
            history_started = True
            await self._execute(feed, force_full, limit, result)
        except Exception as e:
            logger.error(f"{feed.value} sync run {run_id} failed: {e}")
            result.error = result.error or str(e)
            result.success = False
        finally:
            result.completed_at = utc_now()
            if history_started:
                try:
                    self.store.complete_sync_run(
                        run_id=run_id,
                        status="success" if result.success else "failed",
                        entities_processed=result.fetched,
                        errors=result.total_errors,
                    )
                except Exception as e:
                    logger.error(f"Could not record completion of run {run_id}: {e}")
            self.state.release_lease(feed, run_id)

        logger.info("=" * 50)
        logger.info(
            f"{feed.value.upper()} SYNC {'COMPLETE' if result.success else 'FAILED'}: "
            f"{result.fetched} fetched ({result.sync_type})"
        )
        for line in result.details:
            logger.info(f"  {line}")
        logger.info("=" * 50)
        return result

    async def _execute(self, feed: Feed, force_full: bool, limit: int, result: SyncRunResult) -> None:
        fetched = await self.fetcher.fetch(feed, force_full=force_full, limit=limit)
        result.sync_type = fetched.sync_type.value
        result.fetched = len(fetched.items)
        result.completed_pagination = fetched.completed
        result.details.extend(fetched.details)
        if fetched.error:
            result.error = fetched.error
            result.details.append(f"Fetch aborted: {fetched.error}")

        # Only a complete full fetch proves which cached ids are gone remotely;
        # an unparsed node is still present remotely even though it has no item.
        tombstone = (
            fetched.sync_type == SyncType.FULL
            and fetched.completed
            and not fetched.unparsed
        )
        if fetched.unparsed:
            logger.warning(
                f"Keeping stale {feed.value} cache entries: "
                f"{len(fetched.unparsed)} fetched records could not be parsed"
            )
        try:
            result.cache = self.cache.reconcile(feed, fetched.items, is_full_sync=tombstone)
        except BatchCommitError as e:
            result.error = f"Cache update failed: {e}"
            result.details.append(result.error)
            self._record_state(feed, fetched, cursor_only=True)
            return
        result.details.append(
            f"Cache: {result.cache.upserted} upserted, {result.cache.deleted} deleted"
        )

        if feed == Feed.ORDERS and fetched.items:
            result.projection = self.projector.project(fetched.items)
            result.details.append(
                f"Invoices: {result.projection.invoices_created} created, "
                f"{result.projection.sale_lines_created} sale lines, "
                f"{result.projection.skipped} skipped"
            )
            result.details.extend(str(e) for e in result.projection.errors)
            if result.projection.commit_error:
                result.error = result.error or result.projection.commit_error
                # Orders not yet invoiced must stay inside the next delta window.
                self._record_state(feed, fetched, cursor_only=True)
                return

        self._record_state(feed, fetched)
        result.success = result.error is None

    def _record_state(self, feed: Feed, fetched: FetchResult, cursor_only: bool = False) -> None:
        """Persist the cursor, and the timestamps when pagination completed."""
        if cursor_only or not fetched.completed:
            self.state.write(feed, cursor=fetched.next_cursor)
            return
        self.state.write(
            feed,
            cursor=None,
            last_sync_attempt_timestamp=fetched.started_at,
            last_full_sync_completion_timestamp=(
                utc_now() if fetched.sync_type == SyncType.FULL else None
            ),
        )

    # =========================================================================
    # LOCAL RECONCILIATION
    # =========================================================================

    def sync_inventory(self) -> SyncRunResult:
        """Reconcile the cached product variants into local inventory."""
        started_at = utc_now()
        logger.info("=" * 50)
        logger.info("RECONCILING INVENTORY")
        logger.info("=" * 50)

        try:
            collection = self.cache.collection(Feed.PRODUCTS)
            variants: List[ProductVariantSnapshot] = [
                ProductVariantSnapshot.from_document(None, data)
                for data in self.store.documents(collection).values()
            ]
            summary = self.inventory.reconcile(variants)
        except Exception as e:
            logger.error(f"Inventory reconciliation failed: {e}")
            return SyncRunResult(
                success=False, error=str(e), started_at=started_at, completed_at=utc_now()
            )

        return SyncRunResult(
            success=summary.commit_error is None,
            fetched=len(variants),
            inventory=summary,
            error=summary.commit_error,
            details=list(summary.change_log) + [str(e) for e in summary.errors],
            started_at=started_at,
            completed_at=utc_now(),
        )

    def migrate_sales_to_invoices(self) -> SyncRunResult:
        """Backfill invoices for historical sales."""
        started_at = utc_now()
        try:
            summary = self.projector.migrate_sales_to_invoices()
        except Exception as e:
            logger.error(f"Sales migration failed: {e}")
            return SyncRunResult(
                success=False, error=str(e), started_at=started_at, completed_at=utc_now()
            )
        return SyncRunResult(
            success=summary.commit_error is None,
            projection=summary,
            error=summary.commit_error,
            details=list(summary.details) + [str(e) for e in summary.errors],
            started_at=started_at,
            completed_at=utc_now(),
        )

    def cached_orders(self, limit: int = 250) -> List[ShopifyOrder]:
        """Cached order snapshots, newest ``createdAt`` first."""
        collection = self.cache.collection(Feed.ORDERS)
        orders = [
            ShopifyOrder.from_document(doc_id, data)
            for doc_id, data in self.store.documents(collection).items()
        ]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        orders.sort(key=lambda o: o.created_at or oldest, reverse=True)
        return orders[:limit]

    def next_number(self, sequence_name: str) -> str:
        return self.sequences.next(sequence_name)

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    async def verify_connection(self) -> bool:
        """Verify the remote API connection is working."""
        try:
            self.settings.require_remote_credentials()
        except ConfigurationError as e:
            logger.error(str(e))
            return False
        ok = await self.client.check_connection()
        if not ok:
            logger.error("Shopify API connection failed")
        return ok

    def get_sync_stats(self) -> dict:
        """Get current sync statistics from the store."""
        return self.store.get_stats()

    def get_sync_history(self, limit: int = 10) -> list:
        return self.store.get_sync_history(limit)

    def get_state(self, feed: Feed) -> Optional[dict]:
        state = self.state.read(feed)
        return state.to_document() if state else None
