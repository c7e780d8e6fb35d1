"""Sequential cursor pagination over the remote order and product feeds."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from .models import Feed, SyncState, SyncType, utc_now
from .shopify_graphql_client import Page, ShopifyGraphQLClient
from .sync_state import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Everything fetched by one run, plus how pagination ended.

    ``completed`` is True only when the server reported no further pages
    (or returned an empty page) and no request failed. Items fetched before
    a failure are kept so they can still be cached. ``unparsed`` lists remote
    ids that were fetched but could not be parsed.
    """
    items: List[Any] = field(default_factory=list)
    sync_type: SyncType = SyncType.FULL
    next_cursor: Optional[str] = None
    has_more: bool = False
    completed: bool = False
    started_at: Optional[datetime] = None
    node_count: int = 0
    pages: int = 0
    error: Optional[str] = None
    unparsed: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)


def determine_sync_type(state: Optional[SyncState], force_full: bool = False) -> SyncType:
    """Full when forced or when no full run has ever completed."""
    if force_full or state is None or not state.can_delta_sync:
        return SyncType.FULL
    return SyncType.DELTA


def build_filter(sync_type: SyncType, state: Optional[SyncState]) -> Optional[str]:
    """Server-side filter for a delta run: items updated after the last run started."""
    if sync_type != SyncType.DELTA or state is None or state.last_sync_attempt_timestamp is None:
        return None
    since = state.last_sync_attempt_timestamp.isoformat().replace("+00:00", "Z")
    return f"updated_at:>'{since}'"


class RemoteCatalogFetcher:
    """Pages through one remote feed in server order."""

    def __init__(
        self,
        client: ShopifyGraphQLClient,
        state_store: SyncStateStore,
        order_page_size: int = 25,
        product_page_size: int = 50,
    ):
        self.client = client
        self.state_store = state_store
        self.page_sizes = {
            Feed.ORDERS: order_page_size,
            Feed.PRODUCTS: product_page_size,
        }

    async def fetch_page(
        self,
        feed: Feed,
        cursor: Optional[str],
        query_filter: Optional[str],
        page_size: int,
    ) -> Page:
        """Fetch a single page of a feed."""
        feed = Feed(feed)
        if feed == Feed.ORDERS:
            return await self.client.fetch_orders_page(page_size, cursor, query_filter)
        return await self.client.fetch_products_page(page_size, cursor, query_filter)

    async def fetch(
        self,
        feed: Feed,
        force_full: bool = False,
        limit: int = 0,
        page_size: Optional[int] = None,
    ) -> FetchResult:
        """Fetch every page of a feed, or up to ``limit`` remote records.

        Args:
            feed: Feed to fetch
            force_full: Ignore recorded state and fetch everything
            limit: Maximum remote records to fetch; 0 means no limit
            page_size: Records per request; defaults to the feed's setting

        Returns:
            FetchResult; request failures are reported in ``error`` rather
            than raised
        """
        feed = Feed(feed)
        page_size = page_size or self.page_sizes[feed]
        started_at = utc_now()

        state = self.state_store.read(feed)
        sync_type = determine_sync_type(state, force_full)
        query_filter = build_filter(sync_type, state)
        result = FetchResult(sync_type=sync_type, started_at=started_at)

        logger.info(
            f"Fetching {feed.value} ({sync_type.value} sync, "
            f"filter: {query_filter or 'none'}, limit: {limit or 'none'})"
        )

        cursor: Optional[str] = None
        has_next_page = True
        while has_next_page:
            remaining = limit - result.node_count if limit > 0 else page_size
            if remaining <= 0:
                result.details.append(f"Stopped at fetch limit of {limit}")
                break

            try:
                page = await self.fetch_page(feed, cursor, query_filter, min(page_size, remaining))
            except Exception as e:
                result.error = f"Failed to fetch {feed.value} page {result.pages + 1}: {e}"
                logger.error(result.error)
                break

            result.pages += 1
            result.items.extend(page.items)
            result.node_count += page.node_count
            result.unparsed.extend(page.unparsed)

            if page.node_count == 0:
                has_next_page = False
                break

            has_next_page = page.has_next_page
            cursor = page.end_cursor
            logger.info(
                f"Page {result.pages}: {page.node_count} {feed.value}, "
                f"{result.node_count} so far (more: {has_next_page})"
            )

        result.next_cursor = cursor if has_next_page else None
        result.has_more = has_next_page
        result.completed = result.error is None and not has_next_page
        if result.unparsed:
            result.details.append(
                f"Could not parse {len(result.unparsed)} {feed.value}: {', '.join(result.unparsed)}"
            )
        result.details.append(
            f"Fetched {result.node_count} {feed.value} ({len(result.items)} records) "
            f"in {result.pages} pages"
        )
        return result
