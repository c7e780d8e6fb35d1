"""Structured results returned by reconcilers, the projector and sync runs."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class ItemFailure:
    """One item that could not be staged."""
    key: str
    message: str

    def __str__(self) -> str:
        return f"{self.key}: {self.message}"


@dataclass
class CacheResult:
    """Outcome of a cache reconciliation."""
    upserted: int = 0
    deleted: int = 0


@dataclass
class SyncSummary:
    """Outcome of an inventory reconciliation."""
    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[ItemFailure] = field(default_factory=list)
    change_log: List[str] = field(default_factory=list)
    commit_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.commit_error is None and not self.errors


@dataclass
class ProjectionSummary:
    """Outcome of projecting orders (or migrating sales) into invoices."""
    invoices_created: int = 0
    sale_lines_created: int = 0
    customers_created: int = 0
    sales_linked: int = 0
    skipped: int = 0
    details: List[str] = field(default_factory=list)
    errors: List[ItemFailure] = field(default_factory=list)
    commit_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.commit_error is None and not self.errors


@dataclass
class SyncRunResult:
    """Result of a sync entry point; entry points return this instead of raising."""
    success: bool
    feed: Optional[str] = None
    sync_type: Optional[str] = None
    run_id: Optional[str] = None
    fetched: int = 0
    cache: Optional[CacheResult] = None
    inventory: Optional[SyncSummary] = None
    projection: Optional[ProjectionSummary] = None
    completed_pagination: bool = False
    error: Optional[str] = None
    details: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_errors(self) -> List[str]:
        errors = []
        if self.error:
            errors.append(self.error)
        if self.inventory:
            errors.extend(str(e) for e in self.inventory.errors)
        if self.projection:
            errors.extend(str(e) for e in self.projection.errors)
        return errors
