"""Pydantic data models for remote catalog snapshots and local documents.

These models provide validation and type safety for data moving between
the Shopify Admin API, the local cache collections and the authoritative
local collections (inventory, customers, invoices, sales). Field names are
snake_case in Python and camelCase in stored documents.
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def to_instant(value: Any) -> Optional[datetime]:
    """Normalize any stored or remote timestamp to an aware UTC datetime.

    Accepts ISO 8601 strings (including ``Z`` and ``+0000`` offsets),
    native datetimes (naive values are taken as UTC), ``{"seconds",
    "nanoseconds"}`` mappings as written by document stores, and epoch
    seconds.

    Raises:
        ValueError: If the value cannot be interpreted as an instant
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"Timestamp mapping without seconds: {value!r}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        return (
            datetime.fromtimestamp(int(seconds), tz=timezone.utc)
            + timedelta(microseconds=int(nanos) // 1000)
        )
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        # 2024-01-15T12:30:45+0000 -> +00:00
        cleaned = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", cleaned)
        return to_instant(datetime.fromisoformat(cleaned))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def numeric_id(gid: Optional[str]) -> Optional[str]:
    """Extract the numeric suffix of a global id (gid://shopify/Order/123 -> "123")."""
    if not gid:
        return None
    tail = str(gid).split("/")[-1].split("?")[0]
    return tail if tail.isdigit() else None


class Feed(str, Enum):
    """Remote feeds kept in sync."""
    ORDERS = "orders"
    PRODUCTS = "products"


class SyncType(str, Enum):
    FULL = "full"
    DELTA = "delta"


class DocumentModel(BaseModel):
    """Base for models that are stored as camelCase documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """Fields to persist; ``id`` is the document key, not a field."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"id"})

    @classmethod
    def from_document(cls, doc_id: Optional[str], data: Mapping[str, Any]):
        payload = dict(data)
        if doc_id is not None and "id" in cls.model_fields:
            payload.setdefault("id", doc_id)
        return cls.model_validate(payload)


# =============================================================================
# SYNC STATE
# =============================================================================

class SyncState(DocumentModel):
    """Per-feed cursor and timestamps shared between sync runs."""
    cursor: Optional[str] = None
    last_sync_attempt_timestamp: Optional[datetime] = None
    last_full_sync_completion_timestamp: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @field_validator(
        "last_sync_attempt_timestamp",
        "last_full_sync_completion_timestamp",
        "lease_expires_at",
        mode="before",
    )
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)

    @property
    def can_delta_sync(self) -> bool:
        return self.last_full_sync_completion_timestamp is not None


# =============================================================================
# REMOTE SNAPSHOTS (CACHE ITEMS)
# =============================================================================

class ImageRef(DocumentModel):
    src: str
    alt_text: Optional[str] = None


class SelectedOption(DocumentModel):
    name: str
    value: str


class ProductVariantSnapshot(DocumentModel):
    """One cached product variant, denormalized with its product's fields."""
    shopify_variant_id: str
    sku: Optional[str] = None
    price: Optional[float] = None
    inventory_quantity: Optional[int] = None
    variant_updated_at: Optional[datetime] = None
    variant_image: Optional[ImageRef] = None
    shopify_product_id: str
    product_title: str = ""
    product_description_html: Optional[str] = None
    product_vendor: Optional[str] = None
    product_type: Optional[str] = None
    product_tags: List[str] = Field(default_factory=list)
    product_handle: Optional[str] = None
    product_created_at: Optional[datetime] = None
    product_updated_at: Optional[datetime] = None
    product_images: List[ImageRef] = Field(default_factory=list)
    product_status: Optional[str] = None  # ACTIVE, ARCHIVED, DRAFT
    cost: Optional[float] = None
    selected_options: List[SelectedOption] = Field(default_factory=list)

    @field_validator(
        "variant_updated_at", "product_created_at", "product_updated_at", mode="before"
    )
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)

    @property
    def cache_key(self) -> Optional[str]:
        return numeric_id(self.shopify_variant_id)

    @property
    def remote_updated_at(self) -> Optional[datetime]:
        """Last-updated marker used for conflict resolution."""
        return self.product_updated_at or self.variant_updated_at

    @property
    def variant_label(self) -> Optional[str]:
        """Selected option values joined for display, e.g. "Red / Large"."""
        label = " / ".join(opt.value for opt in self.selected_options)
        return label or None

    @property
    def primary_image(self) -> Optional[str]:
        """Variant image first, then the first product image with a URL."""
        if self.variant_image and self.variant_image.src:
            return self.variant_image.src
        for image in self.product_images:
            if image.src:
                return image.src
        return None


class OrderCustomer(DocumentModel):
    """Customer as embedded in a remote order."""
    id: Optional[str] = None  # remote customer GID
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.last_name]
        return " ".join(p for p in parts if p).strip()


class OrderLineItem(DocumentModel):
    id: Optional[str] = None
    title: str = ""
    variant_title: Optional[str] = None
    quantity: int = 0
    sku: Optional[str] = None
    vendor: Optional[str] = None
    original_total: Optional[float] = None
    discounted_total: Optional[float] = None

    @property
    def line_total(self) -> float:
        """Post-discount, pre-shipping amount for the line."""
        if self.discounted_total is not None:
            return self.discounted_total
        return self.original_total or 0.0


class OrderTransaction(DocumentModel):
    id: Optional[str] = None
    kind: Optional[str] = None
    status: Optional[str] = None
    gateway: Optional[str] = None
    processed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    amount: Optional[float] = None

    @field_validator("processed_at", mode="before")
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)


class ShopifyOrder(DocumentModel):
    """Snapshot of a remote order as fetched and cached."""
    id: str  # remote order GID
    name: Optional[str] = None  # e.g. "#1001"
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    note: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    po_number: Optional[str] = None
    display_financial_status: Optional[str] = None
    display_fulfillment_status: Optional[str] = None
    customer: Optional[OrderCustomer] = None
    currency_code: Optional[str] = None
    total_price: Optional[float] = None
    subtotal_price: Optional[float] = None
    total_shipping_price: Optional[float] = None
    total_tax: Optional[float] = None
    total_discounts: Optional[float] = None
    total_refunded: Optional[float] = None
    line_items: List[OrderLineItem] = Field(default_factory=list)
    transactions: List[OrderTransaction] = Field(default_factory=list)

    @field_validator("created_at", "processed_at", "updated_at", mode="before")
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)

    def to_document(self) -> dict:
        # The remote GID stays in the snapshot; the cache key is its numeric suffix.
        return self.model_dump(by_alias=True, exclude_none=True)

    @property
    def cache_key(self) -> Optional[str]:
        return numeric_id(self.id)


# =============================================================================
# LOCAL (AUTHORITATIVE) DOCUMENTS
# =============================================================================

class InventoryItem(DocumentModel):
    """Local inventory item, matched to remote variants by SKU."""
    id: Optional[str] = None
    sku: Optional[str] = None
    product_title: str = ""
    variant: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    price: Optional[float] = None
    quantity: int = 0
    tags: List[str] = Field(default_factory=list)
    product_type: Optional[str] = None
    status: Optional[str] = None
    product_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    vendor: Optional[str] = None
    consignment: bool = False
    image_hint: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    shopify_product_id: Optional[str] = None
    shopify_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @field_validator(
        "shopify_updated_at", "created_at", "updated_at", "last_synced_at", mode="before"
    )
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, value):
        """Older documents store a single image URL as a string."""
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, value):
        return [] if value is None else value


class Customer(DocumentModel):
    id: Optional[str] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    shopify_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)


class InvoiceItem(DocumentModel):
    item_name: str
    item_sku: Optional[str] = None
    item_quantity: int = 0
    item_price_per_unit: float = 0.0
    line_item_total: float = 0.0


class Invoice(DocumentModel):
    id: Optional[str] = None
    invoice_number: str
    remote_order_id: Optional[str] = None
    invoice_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    customer_name: str = "Unknown Customer"
    items: List[InvoiceItem] = Field(default_factory=list)
    subtotal: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0
    total_allocated_payment: float = 0.0
    total_balance: float = 0.0
    status: str = "Draft"
    channel: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("invoice_date", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)


class Sale(DocumentModel):
    """One sold line, denormalized for reporting views."""
    id: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    date: Optional[datetime] = None
    item_name: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 0
    line_amount: float = 0.0
    allocated_payment: float = 0.0
    balance: float = 0.0
    channel: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("date", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_instant(cls, value):
        return to_instant(value)


# =============================================================================
# CONVERSION HELPERS
# =============================================================================

REMOTE_STATUS_MAP = {
    "ACTIVE": "Active",
    "ARCHIVED": "Archived",
    "DRAFT": "Draft",
}


def map_remote_status(remote_status: Optional[str]) -> str:
    """Map a remote product lifecycle state to a local inventory status."""
    return REMOTE_STATUS_MAP.get((remote_status or "").upper(), "Draft")


def derive_image_hint(product_type: Optional[str], title: Optional[str]) -> str:
    """Short lowercase token from type and title used for image hinting.

    At most two words: the first word of the type, followed by the first
    word of the title when it differs; without a type, the first two
    words of the title.
    """
    type_words = (product_type or "").split()
    hint_type = type_words[0] if type_words else ""
    title_words = (title or "").split()[: 1 if hint_type else 2]

    if hint_type:
        hint = hint_type
        if title_words and title_words[0].lower() != hint_type.lower():
            hint = f"{hint} {title_words[0]}"
    else:
        hint = " ".join(title_words)

    hint = " ".join(hint.split()[:2])
    return hint.lower() or "product"


def invoice_number_from_order_name(name: str, prefix: str = "SH-") -> str:
    """Build a local invoice number from a remote order name.

    "#1002" -> "SH-1002"; a leading ordinal such as "3. " is dropped too.
    """
    core = re.sub(r"^#", "", name.strip())
    core = re.sub(r"^[0-9]+\.\s*", "", core)
    return f"{prefix}{core}"
