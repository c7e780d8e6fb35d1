"""Per-feed sync state: cursor, attempt and full-completion timestamps.

The state documents are the only coordination point between sync runs.
A run-level lease on the same document keeps two runs of one feed from
overlapping.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .database import CLEAR, DocumentStore, DocumentStoreError
from .models import Feed, SyncState, utc_now

logger = logging.getLogger(__name__)

SYNC_STATE_COLLECTION = "syncState"

STATE_DOC_IDS = {
    Feed.ORDERS: "shopifyOrdersSyncState",
    Feed.PRODUCTS: "shopifyProductsSyncState",
}

_UNSET = object()


class SyncStateStore:
    """Reads and merges sync state for each feed."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def doc_id(feed: Feed) -> str:
        return STATE_DOC_IDS[Feed(feed)]

    def read(self, feed: Feed) -> Optional[SyncState]:
        """Read a feed's state.

        An unreadable state document is reported as absent so that the next
        run falls back to a full sync instead of aborting.
        """
        try:
            data = self.store.get(SYNC_STATE_COLLECTION, self.doc_id(feed))
            if data is None:
                logger.info(f"No sync state for {Feed(feed).value}, next sync will be full")
                return None
            return SyncState.from_document(None, data)
        except Exception as e:
            logger.warning(f"Could not read sync state for {Feed(feed).value}, treating as absent: {e}")
            return None

    def write(
        self,
        feed: Feed,
        cursor=_UNSET,
        last_sync_attempt_timestamp: Optional[datetime] = None,
        last_full_sync_completion_timestamp: Optional[datetime] = None,
    ) -> None:
        """Merge the given fields into a feed's state.

        Fields not passed are left as stored. Passing ``cursor=None``
        explicitly clears the stored cursor.
        """
        update = {}
        if cursor is not _UNSET:
            update["cursor"] = CLEAR if cursor is None else cursor
        if last_sync_attempt_timestamp is not None:
            update["lastSyncAttemptTimestamp"] = last_sync_attempt_timestamp
        if last_full_sync_completion_timestamp is not None:
            update["lastFullSyncCompletionTimestamp"] = last_full_sync_completion_timestamp
        if not update:
            return

        self.store.merge(SYNC_STATE_COLLECTION, self.doc_id(feed), update)
        logger.info(f"Sync state updated for {Feed(feed).value}: {sorted(update)}")

    # =========================================================================
    # RUN LEASE
    # =========================================================================

    def acquire_lease(self, feed: Feed, owner: str, ttl_seconds: int) -> bool:
        """Claim the feed for one run.

        Returns:
            True if claimed; False if another unexpired run holds it
        """
        now = utc_now()
        doc_id = self.doc_id(feed)
        try:
            with self.store.transaction() as tx:
                data = tx.get(SYNC_STATE_COLLECTION, doc_id) or {}
                try:
                    state = SyncState.from_document(None, data)
                except Exception as e:
                    logger.warning(
                        f"Unreadable {Feed(feed).value} sync state, treating lease as free: {e}"
                    )
                    state = SyncState()
                held = (
                    state.lease_owner
                    and state.lease_owner != owner
                    and state.lease_expires_at is not None
                    and state.lease_expires_at > now
                )
                if held:
                    logger.warning(
                        f"{Feed(feed).value} sync already running "
                        f"(owner {state.lease_owner}, until {state.lease_expires_at.isoformat()})"
                    )
                    return False
                tx.merge(SYNC_STATE_COLLECTION, doc_id, {
                    "leaseOwner": owner,
                    "leaseExpiresAt": now + timedelta(seconds=ttl_seconds),
                })
        except DocumentStoreError as e:
            logger.error(f"Could not acquire {Feed(feed).value} sync lease: {e}")
            return False
        return True

    def release_lease(self, feed: Feed, owner: str) -> None:
        """Release the feed if this owner still holds it."""
        doc_id = self.doc_id(feed)
        try:
            with self.store.transaction() as tx:
                data = tx.get(SYNC_STATE_COLLECTION, doc_id)
                if not data or data.get("leaseOwner") != owner:
                    return
                tx.merge(SYNC_STATE_COLLECTION, doc_id, {
                    "leaseOwner": CLEAR,
                    "leaseExpiresAt": CLEAR,
                })
        except DocumentStoreError as e:
            logger.warning(f"Could not release {Feed(feed).value} sync lease: {e}")
