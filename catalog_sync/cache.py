"""Local cache of remote snapshots keyed by numeric remote id."""

import logging
from typing import Iterable, Set

from .batch_writer import BatchWriter
from .database import DocumentStore, WriteOp
from .models import Feed
from .results import CacheResult

logger = logging.getLogger(__name__)

CACHE_COLLECTIONS = {
    Feed.ORDERS: "shopifyOrderCache",
    Feed.PRODUCTS: "shopifyProductCache",
}


class CacheReconciler:
    """Upserts fetched snapshots and, on full syncs, removes stale ones.

    A delta fetch only sees changed records, so a record missing from it
    says nothing about whether it still exists remotely. Deletion therefore
    happens only on full syncs.
    """

    def __init__(self, store: DocumentStore, batch_ceiling: int = 490):
        self.store = store
        self.batch_ceiling = batch_ceiling

    @staticmethod
    def collection(feed: Feed) -> str:
        return CACHE_COLLECTIONS[Feed(feed)]

    def reconcile(self, feed: Feed, items: Iterable, is_full_sync: bool) -> CacheResult:
        """Write snapshots to the feed's cache.

        Args:
            feed: Feed the items came from
            items: Snapshots with ``cache_key`` and ``to_document()``
            is_full_sync: Delete cached ids absent from ``items``

        Raises:
            BatchCommitError: If a chunk commit fails
        """
        collection = self.collection(feed)
        writer = BatchWriter(self.store, ceiling=self.batch_ceiling)

        fetched_ids: Set[str] = set()
        for item in items:
            key = item.cache_key
            if not key:
                logger.warning(f"Skipping {Feed(feed).value} cache item without numeric id")
                continue
            fetched_ids.add(key)
            writer.stage(WriteOp.set(collection, key, item.to_document(), tag="upsert"))

        if is_full_sync:
            stale = [doc_id for doc_id in self.store.list_ids(collection) if doc_id not in fetched_ids]
            for doc_id in stale:
                writer.stage(WriteOp.delete(collection, doc_id, tag="delete"))
            if stale:
                logger.info(f"Removing {len(stale)} stale entries from {collection}")

        writer.flush()
        result = CacheResult(
            upserted=writer.committed["upsert"],
            deleted=writer.committed["delete"],
        )
        logger.info(
            f"Cache {collection}: {result.upserted} upserted, {result.deleted} deleted"
        )
        return result
