"""Project remote orders into local invoices and sale lines, exactly once.

The remote order id stored on each invoice is the idempotency key: an order
whose id already appears on an invoice is skipped.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .batch_writer import BatchCommitError, BatchWriter
from .database import DocumentStore, WriteOp, new_id
from .models import (
    Customer,
    Invoice,
    InvoiceItem,
    OrderLineItem,
    Sale,
    ShopifyOrder,
    invoice_number_from_order_name,
    utc_now,
)
from .results import ItemFailure, ProjectionSummary

logger = logging.getLogger(__name__)

CUSTOMERS_COLLECTION = "customers"
INVOICES_COLLECTION = "invoices"
SALES_COLLECTION = "sales"

CHANNEL = "Shopify"
INVOICE_PREFIX = "SH-"
PAID = "Paid"


def _round(amount: float) -> float:
    return round(amount, 2)


def invoice_item_from_line(line: OrderLineItem) -> InvoiceItem:
    """Invoice line from an order line, priced after discounts."""
    total = line.line_total
    quantity = line.quantity or 0
    unit_price = total / quantity if quantity > 0 else total
    return InvoiceItem(
        item_name=line.title,
        item_sku=line.sku or None,
        item_quantity=quantity,
        item_price_per_unit=_round(unit_price),
        line_item_total=_round(total),
    )


def order_total(order: ShopifyOrder, items: List[InvoiceItem]) -> float:
    if order.total_price is not None:
        return _round(order.total_price)
    if order.subtotal_price is not None:
        return _round(order.subtotal_price + (order.total_tax or 0.0))
    return _round(sum(item.line_item_total for item in items))


class OrderToInvoiceProjector:
    """Builds one invoice and one sale per line for each new remote order."""

    def __init__(self, store: DocumentStore, batch_ceiling: int = 450):
        self.store = store
        self.batch_ceiling = batch_ceiling

    def project(self, orders: Iterable[ShopifyOrder]) -> ProjectionSummary:
        """Project orders not yet invoiced.

        Each order's customer, invoice and sales are staged as one group.
        A failed batch commit stops the run; counts then cover only what
        was committed.
        """
        summary = ProjectionSummary()
        writer = BatchWriter(self.store, ceiling=self.batch_ceiling)
        seen_orders: Set[str] = set()
        created_customers: Dict[str, Tuple[str, str]] = {}
        now = utc_now()

        try:
            for order in orders:
                if not order.id or not order.name:
                    summary.skipped += 1
                    summary.details.append("Skipped order with missing id or name")
                    logger.warning(f"Order missing id or name, skipping: {order.id!r}")
                    continue

                if order.id in seen_orders or self._invoice_exists(order.id):
                    summary.skipped += 1
                    summary.details.append(f"Invoice for order {order.name} already exists")
                    logger.debug(f"Invoice already exists for order {order.id}")
                    continue

                try:
                    ops, invoice = self._build(order, created_customers, summary, now)
                except Exception as e:
                    logger.error(f"Failed to project order {order.name}: {e}")
                    summary.errors.append(ItemFailure(order.id, str(e)))
                    continue

                writer.stage_group(ops)
                seen_orders.add(order.id)
                summary.details.append(
                    f"Invoice {invoice.invoice_number} created for order {order.name}"
                )

            writer.flush()
        except BatchCommitError as e:
            summary.commit_error = str(e)
            summary.details.append(f"Stopped after failed commit: {e}")

        summary.invoices_created = writer.committed["invoice"]
        summary.sale_lines_created = writer.committed["sale"]
        summary.customers_created = writer.committed["customer"]
        logger.info(
            f"Projected orders: {summary.invoices_created} invoices, "
            f"{summary.sale_lines_created} sale lines, "
            f"{summary.customers_created} customers, {summary.skipped} skipped"
        )
        return summary

    def _invoice_exists(self, remote_order_id: str) -> bool:
        return bool(self.store.find(INVOICES_COLLECTION, "remoteOrderId", remote_order_id, limit=1))

    def _resolve_customer(
        self,
        order: ShopifyOrder,
        created_customers: Dict[str, Tuple[str, str]],
        now: datetime,
    ) -> Tuple[Optional[str], str, Optional[Customer]]:
        """Find or create the local customer for an order.

        Returns:
            Tuple of (customer id, display name, customer to create or None)
        """
        remote = order.customer
        name = (remote.email if remote else None) or order.email or "Unknown Customer"
        if remote is None:
            return None, name, None

        if not remote.id:
            return None, remote.full_name or order.email or "Shopify Customer", None

        if remote.id in created_customers:
            customer_id, customer_name = created_customers[remote.id]
            return customer_id, customer_name, None

        match = self.store.find_one(CUSTOMERS_COLLECTION, "shopifyCustomerId", remote.id)
        if match:
            doc_id, data = match
            return doc_id, data.get("name") or name, None

        customer = Customer(
            id=new_id(),
            name=remote.full_name or order.email or "Shopify Customer",
            email=remote.email or None,
            phone=remote.phone or None,
            shopify_customer_id=remote.id,
            created_at=now,
            updated_at=now,
        )
        created_customers[remote.id] = (customer.id, customer.name)
        return customer.id, customer.name, customer

    def _build(
        self,
        order: ShopifyOrder,
        created_customers: Dict[str, Tuple[str, str]],
        summary: ProjectionSummary,
        now: datetime,
    ) -> Tuple[List[WriteOp], Invoice]:
        customer_id, customer_name, new_customer = self._resolve_customer(
            order, created_customers, now
        )

        items = [invoice_item_from_line(line) for line in order.line_items]
        total = order_total(order, items)
        invoice = Invoice(
            id=new_id(),
            invoice_number=invoice_number_from_order_name(order.name, INVOICE_PREFIX),
            remote_order_id=order.id,
            invoice_date=order.processed_at or order.created_at,
            customer_id=customer_id,
            customer_name=customer_name,
            items=items,
            subtotal=_round(order.subtotal_price or 0.0),
            tax_amount=_round(order.total_tax or 0.0),
            total_amount=total,
            total_allocated_payment=total,
            total_balance=0.0,
            status=PAID,
            channel=CHANNEL,
            created_at=now,
            updated_at=now,
        )

        ops: List[WriteOp] = []
        if new_customer is not None:
            ops.append(WriteOp.set(
                CUSTOMERS_COLLECTION, new_customer.id, new_customer.to_document(), tag="customer"
            ))
            summary.details.append(
                f"Customer created for {new_customer.shopify_customer_id}: {new_customer.name}"
            )
        ops.append(WriteOp.set(INVOICES_COLLECTION, invoice.id, invoice.to_document(), tag="invoice"))

        for item in items:
            sale = Sale(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                customer_name=invoice.customer_name,
                customer_id=invoice.customer_id,
                date=invoice.invoice_date,
                item_name=item.item_name,
                sku=item.item_sku,
                quantity=item.item_quantity,
                line_amount=item.line_item_total,
                allocated_payment=item.line_item_total,
                balance=0.0,
                channel=CHANNEL,
                created_at=now,
                updated_at=now,
            )
            ops.append(WriteOp.set(SALES_COLLECTION, new_id(), sale.to_document(), tag="sale"))

        return ops, invoice

    # =========================================================================
    # MIGRATION
    # =========================================================================

    def migrate_sales_to_invoices(self) -> ProjectionSummary:
        """Link historical sales to invoices, creating invoices where missing.

        Sales that carry an invoice number but no invoice id are grouped by
        number. Only remote-sourced numbers (``SH-`` prefix) are migrated.
        Running it again finds nothing left to link.
        """
        summary = ProjectionSummary()
        sales = self.store.documents(SALES_COLLECTION)
        summary.details.append(f"Found {len(sales)} sales records")
        if not sales:
            return summary

        groups: "OrderedDict[str, List[Sale]]" = OrderedDict()
        for doc_id, data in sales.items():
            sale = Sale.from_document(doc_id, data)
            if sale.invoice_number and not sale.invoice_id:
                groups.setdefault(sale.invoice_number, []).append(sale)
        summary.details.append(f"Grouped unlinked sales into {len(groups)} invoice numbers")

        writer = BatchWriter(self.store, ceiling=self.batch_ceiling)
        now = utc_now()
        try:
            for invoice_number, group in groups.items():
                if not invoice_number.startswith(INVOICE_PREFIX):
                    summary.skipped += 1
                    summary.details.append(
                        f"Skipping {invoice_number!r}: not a {INVOICE_PREFIX} invoice number"
                    )
                    continue

                try:
                    ops = self._migration_ops(invoice_number, group, summary, now)
                except Exception as e:
                    logger.error(f"Failed to migrate sales for {invoice_number}: {e}")
                    summary.errors.append(ItemFailure(invoice_number, str(e)))
                    continue
                writer.stage_group(ops)

            writer.flush()
        except BatchCommitError as e:
            summary.commit_error = str(e)
            summary.details.append(f"Migration stopped after failed commit: {e}")

        summary.invoices_created = writer.committed["invoice"]
        summary.sales_linked = writer.committed["sale-link"]
        logger.info(
            f"Sales migration: {summary.invoices_created} invoices created, "
            f"{summary.sales_linked} sales linked"
        )
        return summary

    def _migration_ops(
        self,
        invoice_number: str,
        group: List[Sale],
        summary: ProjectionSummary,
        now: datetime,
    ) -> List[WriteOp]:
        ops: List[WriteOp] = []
        match = self.store.find_one(INVOICES_COLLECTION, "invoiceNumber", invoice_number)
        if match:
            invoice_id = match[0]
            summary.details.append(f"Invoice {invoice_number} already exists, linking sales")
        else:
            items = [
                InvoiceItem(
                    item_name=sale.item_name or "Unknown Item",
                    item_sku=sale.sku or None,
                    item_quantity=sale.quantity,
                    item_price_per_unit=_round(
                        sale.line_amount / sale.quantity if sale.quantity > 0 else sale.line_amount
                    ),
                    line_item_total=_round(sale.line_amount),
                )
                for sale in group
            ]
            subtotal = _round(sum(item.line_item_total for item in items))
            first = group[0]
            invoice = Invoice(
                id=new_id(),
                invoice_number=invoice_number,
                invoice_date=first.date or now,
                customer_id=first.customer_id,
                customer_name=first.customer_name or "Unknown Customer",
                items=items,
                subtotal=subtotal,
                tax_amount=0.0,
                total_amount=subtotal,
                total_allocated_payment=subtotal,
                total_balance=0.0,
                status=PAID,
                channel=CHANNEL,
                created_at=first.created_at or now,
                updated_at=now,
            )
            invoice_id = invoice.id
            ops.append(WriteOp.set(INVOICES_COLLECTION, invoice.id, invoice.to_document(), tag="invoice"))
            summary.details.append(f"Staged new invoice {invoice_number} ({invoice.id})")

        for sale in group:
            ops.append(WriteOp.update(
                SALES_COLLECTION, sale.id, {"invoiceId": invoice_id, "updatedAt": now}, tag="sale-link"
            ))
        return ops
