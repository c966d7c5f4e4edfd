"""Process-local view of the catalog and the active loans.

Mutations hand their resulting rows to the view (apply-delta-on-success);
any service error invalidates it and the next read re-syncs from the store.
The store stays the owner of the invariants; this is only a read cache.

Requests finish in any order, so counter rows are applied by ``version``:
a row older than the cached one is ignored. Loans only move Active ->
Returned, so a loan seen returned is never shown as active again.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm import Session

from loan_tracker.models.loan_models import Item, ItemVariant, Loan
from loan_tracker.services import catalog_service, loan_service
from loan_tracker.services.errors import LoanTrackerError


LOGGER = logging.getLogger("loan_tracker.view")

T = TypeVar("T")


class InventoryView:
    def __init__(self):
        self._lock = threading.RLock()
        self._items: dict[str, dict] = {}
        self._item_versions: dict[str, int] = {}
        self._variant_versions: dict[str, int] = {}
        self._active_loans: dict[str, dict] = {}
        self._returned_loans: set[str] = set()
        self._deleted: set[str] = set()
        self._loaded = False

    def invalidate(self) -> None:
        with self._lock:
            self._loaded = False

    def resync(self, db: Session) -> None:
        with self._lock:
            items = catalog_service.list_items(db)
            loans = loan_service.list_active(db)
            self._items = {item.id: catalog_service.serialize_item(item) for item in items}
            self._item_versions = {item.id: item.version for item in items}
            self._variant_versions = {
                variant.id: variant.version for item in items for variant in item.variants
            }
            self._active_loans = {loan.id: loan_service.serialize_loan(loan) for loan in loans}
            self._returned_loans = set()
            self._deleted = set()
            self._loaded = True
        LOGGER.debug("View re-synced items=%s active_loans=%s", len(items), len(loans))

    def _ensure_loaded(self, db: Session) -> None:
        if not self._loaded:
            self.resync(db)

    def items(self, db: Session) -> list[dict]:
        with self._lock:
            self._ensure_loaded(db)
            return sorted(self._items.values(), key=lambda row: (row["name"].lower(), str(row["createdAt"])))

    def active_loans(self, db: Session, include_consumables: bool = True) -> list[dict]:
        with self._lock:
            self._ensure_loaded(db)
            rows = list(self._active_loans.values())
        if not include_consumables:
            rows = [row for row in rows if not (row["item"] or {}).get("consumable")]
        rows.sort(key=lambda row: row["loanedAt"], reverse=True)
        return rows

    def apply_item(self, item: Item) -> None:
        with self._lock:
            if not self._loaded:
                return
            if item.id in self._deleted:
                return
            if item.version < self._item_versions.get(item.id, 0):
                LOGGER.debug("Stale item row skipped item_id=%s version=%s", item.id, item.version)
                return
            payload = catalog_service.serialize_item(item, include_variants=False)
            entry = self._items.get(item.id)
            # Variants are applied on their own versions.
            payload["variants"] = entry["variants"] if entry else []
            self._items[item.id] = payload
            self._item_versions[item.id] = item.version

    def apply_variant(self, variant: ItemVariant) -> None:
        with self._lock:
            if not self._loaded:
                return
            if variant.id in self._deleted or variant.item_id in self._deleted:
                return
            entry = self._items.get(variant.item_id)
            if entry is None:
                self._loaded = False
                return
            if variant.version < self._variant_versions.get(variant.id, 0):
                LOGGER.debug("Stale variant row skipped variant_id=%s version=%s", variant.id, variant.version)
                return
            payload = catalog_service.serialize_variant(variant)
            others = [row for row in entry["variants"] if row["variantID"] != variant.id]
            entry["variants"] = sorted(others + [payload], key=lambda row: row["name"])
            self._variant_versions[variant.id] = variant.version

    def forget_item(self, item_id: str) -> None:
        with self._lock:
            entry = self._items.pop(item_id, None)
            self._deleted.add(item_id)
            self._item_versions.pop(item_id, None)
            for row in (entry or {}).get("variants", []):
                self._variant_versions.pop(row["variantID"], None)

    def forget_variant(self, item_id: str, variant_id: str) -> None:
        with self._lock:
            entry = self._items.get(item_id)
            if entry:
                entry["variants"] = [row for row in entry["variants"] if row["variantID"] != variant_id]
            self._variant_versions.pop(variant_id, None)
            self._deleted.add(variant_id)

    def apply_loan(self, loan: Loan) -> None:
        """Record a created or returned loan and the counter it moved."""
        with self._lock:
            if not self._loaded:
                return
            if loan.returned_at is None:
                if loan.id not in self._returned_loans:
                    self._active_loans[loan.id] = loan_service.serialize_loan(loan)
            else:
                self._returned_loans.add(loan.id)
                self._active_loans.pop(loan.id, None)
            if loan.variant is not None:
                self.apply_variant(loan.variant)
            elif loan.item is not None:
                self.apply_item(loan.item)

    def run(self, mutation: Callable[[], T], on_success: Callable[[T], None] | None = None) -> T:
        """Run a service mutation; apply its result, or invalidate on failure."""
        try:
            result = mutation()
        except LoanTrackerError:
            self.invalidate()
            raise
        if on_success is not None:
            on_success(result)
        return result
