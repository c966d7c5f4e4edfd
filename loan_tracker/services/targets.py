from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ItemTarget:
    """Loan fulfilled from the item's own quantity pool (item has no variants)."""

    item_id: str

    @property
    def variant_id(self) -> None:
        return None


@dataclass(frozen=True)
class VariantTarget:
    """Loan fulfilled from one variant's quantity pool."""

    item_id: str
    variant_id: str


FulfillmentTarget = Union[ItemTarget, VariantTarget]


def target_for(item_id: str, variant_id: str | None) -> FulfillmentTarget:
    if variant_id:
        return VariantTarget(item_id=item_id, variant_id=variant_id)
    return ItemTarget(item_id=item_id)


def target_key(target: FulfillmentTarget) -> str:
    if isinstance(target, VariantTarget):
        return f"{target.item_id}:{target.variant_id}"
    if isinstance(target, ItemTarget):
        return target.item_id
    raise TypeError(f"Unknown fulfillment target: {target!r}")
