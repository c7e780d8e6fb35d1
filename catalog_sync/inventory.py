"""Reconcile cached remote variants into the local inventory collection."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .batch_writer import BatchCommitError, BatchWriter
from .database import CLEAR, DocumentStore, WriteOp, new_id
from .models import (
    InventoryItem,
    ProductVariantSnapshot,
    derive_image_hint,
    map_remote_status,
    utc_now,
)
from .results import ItemFailure, SyncSummary

logger = logging.getLogger(__name__)

INVENTORY_COLLECTION = "inventory"

# Written on every reconciled item; never a reason to stage an update.
BOOKKEEPING_FIELDS = frozenset({
    "updatedAt",
    "shopifyVariantId",
    "shopifyProductId",
    "shopifyUpdatedAt",
    "lastSyncedAt",
})


class InventoryReconciler:
    """Merges remote catalog data into local inventory, matched by SKU.

    Remote is authoritative for catalog metadata. Price and quantity are the
    exception: when the local item was edited after the remote's last
    update, the local values are kept.
    """

    def __init__(
        self,
        store: DocumentStore,
        store_domain: Optional[str] = None,
        batch_ceiling: int = 490,
    ):
        self.store = store
        self.store_domain = store_domain
        self.batch_ceiling = batch_ceiling

    def product_url(self, variant: ProductVariantSnapshot) -> Optional[str]:
        if not self.store_domain or not variant.product_handle:
            return None
        return f"https://{self.store_domain}/products/{variant.product_handle}"

    def load_local_items(self) -> Dict[str, InventoryItem]:
        """Local inventory keyed by SKU; items without a SKU are ignored."""
        by_sku: Dict[str, InventoryItem] = {}
        for doc_id, data in self.store.documents(INVENTORY_COLLECTION).items():
            item = InventoryItem.from_document(doc_id, data)
            if item.sku:
                by_sku[item.sku] = item
        return by_sku

    def reconcile(self, variants: Iterable[ProductVariantSnapshot]) -> SyncSummary:
        """Add or update inventory for each cached variant.

        Per-item failures are collected in ``errors`` and the loop goes on.
        A failed batch commit stops the run; ``added`` and ``updated`` then
        count only what was committed.
        """
        summary = SyncSummary()
        variants = list(variants)
        if not variants:
            summary.change_log.append("No products in the product cache to reconcile")
            logger.info("Inventory sync: product cache is empty, nothing to do")
            return summary

        local_items = self.load_local_items()
        logger.info(
            f"Inventory sync: {len(variants)} cached variants against "
            f"{len(local_items)} local items"
        )

        writer = BatchWriter(self.store, ceiling=self.batch_ceiling)
        now = utc_now()

        try:
            for variant in variants:
                if not variant.sku:
                    summary.skipped += 1
                    summary.change_log.append(
                        f"Skipped: variant {variant.shopify_variant_id} "
                        f"({variant.product_title}) has no SKU"
                    )
                    logger.warning(f"Variant {variant.shopify_variant_id} has no SKU, skipping")
                    continue

                try:
                    existing = local_items.get(variant.sku)
                    if existing is None:
                        item = self._new_item(variant, now)
                        writer.stage(WriteOp.set(
                            INVENTORY_COLLECTION, item.id, item.to_document(), tag="add"
                        ))
                        local_items[variant.sku] = item
                        summary.change_log.append(
                            f"SKU {variant.sku}: Added new item '{variant.product_title}'"
                        )
                        continue

                    update, changes = self._diff(existing, variant, now)
                    if not changes:
                        summary.skipped += 1
                        continue

                    writer.stage(WriteOp.update(
                        INVENTORY_COLLECTION, existing.id, update, tag="update"
                    ))
                    local_items[variant.sku] = self._apply(existing, update)
                    summary.change_log.append(f"SKU {variant.sku}: {'; '.join(changes)}")
                except BatchCommitError:
                    raise
                except Exception as e:
                    logger.error(f"Failed to reconcile SKU {variant.sku}: {e}")
                    summary.errors.append(ItemFailure(variant.sku, str(e)))

            writer.flush()
        except BatchCommitError as e:
            summary.commit_error = str(e)

        summary.added = writer.committed["add"]
        summary.updated = writer.committed["update"]
        logger.info(
            f"Inventory sync: {summary.added} added, {summary.updated} updated, "
            f"{summary.skipped} skipped, {len(summary.errors)} errors"
        )
        return summary

    def _new_item(self, variant: ProductVariantSnapshot, now: datetime) -> InventoryItem:
        image = variant.primary_image
        return InventoryItem(
            id=new_id(),
            sku=variant.sku,
            product_title=variant.product_title,
            description=variant.product_description_html or None,
            variant=variant.variant_label,
            vendor=variant.product_vendor or None,
            product_type=variant.product_type or None,
            tags=list(variant.product_tags),
            images=[image] if image else [],
            price=variant.price,
            cost=variant.cost,
            quantity=variant.inventory_quantity or 0,
            status=map_remote_status(variant.product_status),
            product_url=self.product_url(variant),
            shopify_variant_id=variant.shopify_variant_id,
            shopify_product_id=variant.shopify_product_id,
            shopify_updated_at=variant.remote_updated_at,
            created_at=now,
            updated_at=variant.remote_updated_at or now,
            last_synced_at=now,
            consignment=False,
            image_hint=derive_image_hint(variant.product_type, variant.product_title),
        )

    def _diff(
        self,
        local: InventoryItem,
        variant: ProductVariantSnapshot,
        now: datetime,
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Build the update for an existing item.

        Returns:
            Tuple of (fields to write, human-readable changes); no changes
            means the item should be skipped
        """
        remote_marker = variant.remote_updated_at
        update: Dict[str, Any] = {
            "shopifyVariantId": variant.shopify_variant_id,
            "shopifyProductId": variant.shopify_product_id,
            "shopifyUpdatedAt": remote_marker or CLEAR,
            "lastSyncedAt": now,
        }
        changes: List[str] = []

        status = map_remote_status(variant.product_status)
        if status != local.status:
            update["status"] = status
            changes.append(f"Status set to {status}")
        if variant.product_title != local.product_title:
            update["productTitle"] = variant.product_title
            changes.append("Title updated")

        self._diff_optional(update, changes, "description", "Description",
                            local.description, variant.product_description_html or None)
        self._diff_optional(update, changes, "productUrl", "Product URL",
                            local.product_url, self.product_url(variant))
        self._diff_optional(update, changes, "variant", "Variant",
                            local.variant, variant.variant_label, show_value=True)
        self._diff_optional(update, changes, "vendor", "Vendor",
                            local.vendor, variant.product_vendor or None, show_value=True)
        self._diff_optional(update, changes, "productType", "Product type",
                            local.product_type, variant.product_type or None, show_value=True)

        remote_tags = list(variant.product_tags)
        if sorted(remote_tags) != sorted(local.tags):
            update["tags"] = remote_tags if remote_tags else CLEAR
            changes.append("Tags updated" if remote_tags else "Tags removed")

        image = variant.primary_image
        remote_images = [image] if image else []
        if sorted(remote_images) != sorted(local.images):
            update["images"] = remote_images if remote_images else CLEAR
            changes.append("Images updated")

        preserve_local = (
            local.updated_at is not None
            and remote_marker is not None
            and local.updated_at > remote_marker
        )
        if preserve_local:
            logger.debug(f"SKU {local.sku}: local edit is newer, keeping price and quantity")
        else:
            if variant.price is not None and variant.price != local.price:
                update["price"] = variant.price
                changes.append(f"Price updated to {variant.price}")
            if variant.inventory_quantity is not None and variant.inventory_quantity != local.quantity:
                update["quantity"] = variant.inventory_quantity
                changes.append(f"Quantity updated to {variant.inventory_quantity}")
            if remote_marker is not None:
                update["updatedAt"] = remote_marker

        if local.cost is None and variant.cost is not None:
            update["cost"] = variant.cost
            changes.append(f"Cost set to {variant.cost}")
        elif local.cost is not None and variant.cost is None:
            update["cost"] = CLEAR
            changes.append("Cost removed")
        elif variant.cost is not None and variant.cost != local.cost:
            update["cost"] = variant.cost
            changes.append(f"Cost updated to {variant.cost}")

        if not local.image_hint and (variant.product_type or variant.product_title):
            hint = derive_image_hint(variant.product_type, variant.product_title)
            update["imageHint"] = hint
            changes.append(f"Image hint generated: '{hint}'")

        if changes and preserve_local:
            changes.append("Local item updated more recently; preserving local price & quantity")
        return update, changes

    @staticmethod
    def _diff_optional(
        update: Dict[str, Any],
        changes: List[str],
        field_name: str,
        label: str,
        local_value: Optional[str],
        remote_value: Optional[str],
        show_value: bool = False,
    ) -> None:
        """Set, replace or clear one optional descriptive field."""
        if remote_value == local_value:
            return
        if remote_value is None:
            update[field_name] = CLEAR
            changes.append(f"{label} removed")
        else:
            update[field_name] = remote_value
            changes.append(f"{label} updated to '{remote_value}'" if show_value else f"{label} updated")

    @staticmethod
    def _apply(item: InventoryItem, update: Dict[str, Any]) -> InventoryItem:
        """Local view of an item after a staged update."""
        data = item.to_document()
        for key, value in update.items():
            if value is CLEAR:
                data.pop(key, None)
            else:
                data[key] = value
        return InventoryItem.from_document(item.id, data)
