from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import Item, ItemVariant, Loan
from loan_tracker.services.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from loan_tracker.services.targets import FulfillmentTarget, ItemTarget, VariantTarget


LOGGER = logging.getLogger("loan_tracker.catalog")


def _clean_name(raw: str | None, label: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise ValidationError(f"{label} name must not be empty.")
    return value


def _require_positive_quantity(raw, label: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError(f"{label} must be a whole number.")
    if raw <= 0:
        raise ValidationError(f"{label} must be greater than zero.")
    return raw


def get_item(db: Session, item_id: str) -> Item:
    item = gateway.get(db, Item, item_id)
    if not item:
        raise NotFoundError(f"Item {item_id} not found.")
    return item


def get_variant(db: Session, variant_id: str) -> ItemVariant:
    variant = gateway.get(db, ItemVariant, variant_id)
    if not variant:
        raise NotFoundError(f"Item variant {variant_id} not found.")
    return variant


def list_items(db: Session) -> list[Item]:
    return gateway.query(
        db,
        Item,
        order_by=(Item.name, Item.created_at),
        options=(selectinload(Item.variants),),
    )


def has_variants(db: Session, item_id: str) -> bool:
    return bool(gateway.query(db, ItemVariant, ItemVariant.item_id == item_id, limit=1))


def add_item(db: Session, name: str, total_quantity: int, consumable: bool = False) -> Item:
    clean_name = _clean_name(name, "Item")
    quantity = _require_positive_quantity(total_quantity, "totalQuantity")

    (item,) = gateway.insert(
        db,
        Item,
        [
            {
                "name": clean_name,
                "total_quantity": quantity,
                "available_quantity": quantity,
                "version": 1,
                "consumable": bool(consumable),
                "created_at": datetime.now(),
            }
        ],
    )
    gateway.commit(db)
    LOGGER.info("Item created item_id=%s total=%s consumable=%s", item.id, quantity, bool(consumable))
    return item


def add_variant(db: Session, item_id: str, name: str, total_quantity: int) -> ItemVariant:
    item = get_item(db, item_id)
    clean_name = _clean_name(name, "Variant")
    quantity = _require_positive_quantity(total_quantity, "totalQuantity")

    (variant,) = gateway.insert(
        db,
        ItemVariant,
        [
            {
                "item_id": item.id,
                "name": clean_name,
                "total_quantity": quantity,
                "available_quantity": quantity,
                "version": 1,
                "created_at": datetime.now(),
            }
        ],
    )
    gateway.commit(db)
    LOGGER.info("Variant created item_id=%s variant_id=%s total=%s", item.id, variant.id, quantity)
    return variant


def resolve_target(db: Session, item_id: str, variant_id: str | None = None) -> FulfillmentTarget:
    """Build the fulfillment target a loan of ``item_id``/``variant_id`` draws from.

    Items with variants only lend through their variants; a variant must
    belong to the given item.
    """
    item = get_item(db, item_id)
    if variant_id:
        variant = get_variant(db, variant_id)
        if variant.item_id != item.id:
            raise ValidationError(f"Variant {variant_id} does not belong to item {item_id}.")
        return VariantTarget(item_id=item.id, variant_id=variant.id)
    if has_variants(db, item.id):
        raise ValidationError(f"Item {item_id} has variants; a variant must be selected.")
    return ItemTarget(item_id=item.id)


def _counter_row(target: FulfillmentTarget):
    if isinstance(target, VariantTarget):
        return ItemVariant, target.variant_id, (ItemVariant.item_id == target.item_id,)
    if isinstance(target, ItemTarget):
        return Item, target.item_id, ()
    raise TypeError(f"Unknown fulfillment target: {target!r}")


def adjust_availability(db: Session, target: FulfillmentTarget, delta: int, *, commit: bool = True):
    """Apply ``available_quantity -= delta`` to the target's counter.

    Positive ``delta`` takes units out (loan), negative puts them back
    (return). The bounds check and the write are one conditional UPDATE.
    With ``commit=False`` the caller owns the transaction and must roll back
    on failure.
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be a whole number.")

    model, identifier, scope = _counter_row(target)
    row = gateway.update(
        db,
        model,
        identifier,
        {"available_quantity": model.available_quantity - delta, "version": model.version + 1},
        *scope,
        model.available_quantity - delta >= 0,
        model.available_quantity - delta <= model.total_quantity,
    )
    if row is None:
        current = gateway.get(db, model, identifier, fresh=True)
        if commit:
            db.rollback()
        if current is None or (isinstance(target, VariantTarget) and current.item_id != target.item_id):
            raise NotFoundError(f"{model.__name__} {identifier} not found.")
        raise InvariantViolation(
            f"{model.__name__} {identifier}: available={current.available_quantity} "
            f"total={current.total_quantity} delta={delta} would leave the counter out of bounds."
        )

    if commit:
        gateway.commit(db)
    LOGGER.info(
        "Availability adjusted table=%s id=%s delta=%s available=%s",
        model.__tablename__,
        identifier,
        delta,
        row.available_quantity,
    )
    return row


def _count_active_loans(db: Session, *criteria) -> int:
    stmt = select(func.count(Loan.id)).where(Loan.returned_at.is_(None))
    for criterion in criteria:
        stmt = stmt.where(criterion)
    with gateway.store_call(db, "count:loans"):
        return int(db.execute(stmt).scalar() or 0)


def delete_item(db: Session, item_id: str) -> None:
    get_item(db, item_id)
    gateway.lock_rows(db, Item, Item.id == item_id)
    gateway.lock_rows(db, ItemVariant, ItemVariant.item_id == item_id)

    variant_ids = select(ItemVariant.id).where(ItemVariant.item_id == item_id)
    active = _count_active_loans(db, or_(Loan.item_id == item_id, Loan.variant_id.in_(variant_ids)))
    if active:
        db.rollback()
        LOGGER.warning("Item delete blocked item_id=%s active_loans=%s", item_id, active)
        raise ConflictError(f"Item {item_id} has {active} active loan(s) and cannot be deleted.")

    # Variants go with the item (delete-orphan); returned loans keep their history.
    gateway.delete(db, Item, item_id)
    gateway.commit(db)
    LOGGER.info("Item deleted item_id=%s", item_id)


def delete_variant(db: Session, variant_id: str) -> None:
    get_variant(db, variant_id)
    gateway.lock_rows(db, ItemVariant, ItemVariant.id == variant_id)

    active = _count_active_loans(db, Loan.variant_id == variant_id)
    if active:
        db.rollback()
        LOGGER.warning("Variant delete blocked variant_id=%s active_loans=%s", variant_id, active)
        raise ConflictError(f"Variant {variant_id} has {active} active loan(s) and cannot be deleted.")

    gateway.delete(db, ItemVariant, variant_id)
    gateway.commit(db)
    LOGGER.info("Variant deleted variant_id=%s", variant_id)


def serialize_variant(variant: ItemVariant) -> dict:
    return {
        "variantID": variant.id,
        "itemID": variant.item_id,
        "name": variant.name,
        "totalQuantity": variant.total_quantity,
        "availableQuantity": variant.available_quantity,
        "createdAt": variant.created_at,
    }


def serialize_item(item: Item, include_variants: bool = True) -> dict:
    payload = {
        "itemID": item.id,
        "name": item.name,
        "totalQuantity": item.total_quantity,
        "availableQuantity": item.available_quantity,
        "consumable": bool(item.consumable),
        "createdAt": item.created_at,
    }
    if include_variants:
        payload["variants"] = [serialize_variant(variant) for variant in item.variants]
    return payload
