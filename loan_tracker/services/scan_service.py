"""Scan intake orchestration.

Decoding a barcode/QR symbol happens on the client; this module receives the
decoded strings, throttles them, resolves what they identify and collects a
basket of loan lines for one borrower.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import Item, ItemVariant, Person
from loan_tracker.services import catalog_service, loan_service, roster_service
from loan_tracker.services.errors import ValidationError
from loan_tracker.services.targets import FulfillmentTarget, ItemTarget, VariantTarget, target_key


LOGGER = logging.getLogger("loan_tracker.scan")

DEFAULT_SCAN_INTERVAL_SECONDS = 2.0


class ScanThrottle:
    """Accept at most one decode per ``min_interval`` seconds."""

    def __init__(self, min_interval: float = DEFAULT_SCAN_INTERVAL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last_accepted: float | None = None
        self._lock = threading.Lock()

    def accept(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last_accepted is not None and now - self._last_accepted < self.min_interval:
                return False
            self._last_accepted = now
            return True


@dataclass
class ScanResolution:
    code: str
    kind: str
    person: Person | None = None
    item: Item | None = None
    variant: ItemVariant | None = None


def resolve_code(db: Session, code: str | None) -> ScanResolution:
    value = (code or "").strip()
    if not value:
        return ScanResolution(code=value, kind="unknown")

    person = roster_service.find_person_by_identifier(db, value)
    if person:
        return ScanResolution(code=value, kind="person", person=person)

    variant = gateway.get(db, ItemVariant, value)
    if variant:
        return ScanResolution(code=value, kind="variant", item=variant.item, variant=variant)

    item = gateway.get(db, Item, value)
    if item:
        return ScanResolution(code=value, kind="item", item=item)

    return ScanResolution(code=value, kind="unknown")


@dataclass
class BasketEntry:
    target: FulfillmentTarget
    label: str
    quantity: int = 1


class ScanBasket:
    def __init__(self):
        self._entries: dict[str, BasketEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, item: Item, variant: ItemVariant | None = None, quantity: int = 1, *, item_has_variants: bool = False) -> BasketEntry:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Basket quantity must be a whole number greater than zero.")
        if variant is not None:
            if variant.item_id != item.id:
                raise ValidationError(f"Variant {variant.id} does not belong to item {item.id}.")
            target: FulfillmentTarget = VariantTarget(item_id=item.id, variant_id=variant.id)
            label = f"{item.name} / {variant.name}"
        else:
            if item_has_variants:
                raise ValidationError(f"Item {item.name} has variants; scan a variant code instead.")
            target = ItemTarget(item_id=item.id)
            label = item.name

        key = target_key(target)
        entry = self._entries.get(key)
        if entry:
            entry.quantity += quantity
        else:
            entry = BasketEntry(target=target, label=label, quantity=quantity)
            self._entries[key] = entry
        return entry

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def lines(self) -> list[loan_service.BasketLine]:
        return [
            loan_service.BasketLine(
                item_id=entry.target.item_id,
                variant_id=entry.target.variant_id,
                quantity=entry.quantity,
            )
            for entry in self._entries.values()
        ]


@dataclass
class ScanSession:
    """One scanning session at a checkout point: borrower plus basket."""

    throttle: ScanThrottle = field(default_factory=ScanThrottle)
    basket: ScanBasket = field(default_factory=ScanBasket)
    person: Person | None = None

    def handle_decode(self, db: Session, code: str) -> ScanResolution | None:
        """Process one decoded string; returns ``None`` when throttled."""
        if not self.throttle.accept():
            return None

        resolution = resolve_code(db, code)
        if resolution.kind == "person":
            self.person = resolution.person
        elif resolution.kind == "variant":
            self.basket.add(resolution.item, resolution.variant)
        elif resolution.kind == "item":
            self.basket.add(
                resolution.item,
                item_has_variants=catalog_service.has_variants(db, resolution.item.id),
            )
        else:
            LOGGER.info("Scanned code not recognised code=%s", resolution.code)
        return resolution

    def commit(self, db: Session, cancel_event: threading.Event | None = None) -> list[loan_service.BasketLineResult]:
        """Commit the basket for the current borrower.

        Lines that were created leave the basket; failed and cancelled lines
        stay so the caller can retry them.
        """
        if self.person is None:
            raise ValidationError("Scan a person before committing the basket.")
        results = loan_service.commit_basket(db, self.person.id, self.basket.lines(), cancel_event)
        for result in results:
            if result.status == "created":
                self.basket.remove(target_key(loan_service.loan_target(result.loan)))
        return results
