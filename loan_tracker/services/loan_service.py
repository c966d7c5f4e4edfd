"""Loan lifecycle: Active -> Returned.

Creating a loan debits the fulfillment target's availability and returning
it credits the same amount back. Each pair of writes (counter + loan row)
is committed together; the counter write comes first and is a conditional
UPDATE, so concurrent loans can never drive a counter below zero.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session, selectinload

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import Item, ItemVariant, Loan
from loan_tracker.services import catalog_service, roster_service
from loan_tracker.services.errors import (
    AlreadyReturnedError,
    InsufficientAvailabilityError,
    InvariantViolation,
    LoanTrackerError,
    NotFoundError,
    ValidationError,
)
from loan_tracker.services.targets import FulfillmentTarget, VariantTarget, target_for


LOGGER = logging.getLogger("loan_tracker.loans")

PHOTO_BUCKET = "loan-photos"
_DISPLAY_OPTIONS = (
    selectinload(Loan.item),
    selectinload(Loan.variant),
    selectinload(Loan.person),
)


@dataclass
class BasketLine:
    item_id: str
    quantity: int = 1
    variant_id: str | None = None
    notes: str = ""


@dataclass
class BasketLineResult:
    line: BasketLine
    status: str
    loan: Loan | None = None
    error_kind: str | None = None
    error: str | None = None
    retryable: bool = False


def loan_target(loan: Loan) -> FulfillmentTarget:
    if not loan.item_id:
        raise InvariantViolation(f"Loan {loan.id} no longer references an item.")
    return target_for(loan.item_id, loan.variant_id)


def get_loan(db: Session, loan_id: str) -> Loan:
    loan = gateway.get(db, Loan, loan_id)
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found.")
    return loan


def _available_units(db: Session, target: FulfillmentTarget) -> int | None:
    if isinstance(target, VariantTarget):
        row = gateway.get(db, ItemVariant, target.variant_id, fresh=True)
    else:
        row = gateway.get(db, Item, target.item_id, fresh=True)
    return row.available_quantity if row else None


def create_loan(
    db: Session,
    item_id: str,
    person_id: str,
    quantity: int,
    notes: str | None = "",
    variant_id: str | None = None,
) -> Loan:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Loan quantity must be a whole number greater than zero.")

    person = roster_service.get_person(db, person_id)
    target = catalog_service.resolve_target(db, item_id, variant_id)

    try:
        catalog_service.adjust_availability(db, target, quantity, commit=False)
    except InvariantViolation as exc:
        db.rollback()
        available = _available_units(db, target)
        LOGGER.warning(
            "Loan rejected item_id=%s variant_id=%s requested=%s available=%s",
            target.item_id,
            target.variant_id,
            quantity,
            available,
        )
        raise InsufficientAvailabilityError(
            f"Requested {quantity} but only {available} available."
        ) from exc
    except LoanTrackerError:
        db.rollback()
        raise

    try:
        (loan,) = gateway.insert(
            db,
            Loan,
            [
                {
                    "item_id": target.item_id,
                    "variant_id": target.variant_id,
                    "person_id": person.id,
                    "quantity": quantity,
                    "notes": (notes or "").strip(),
                    "condition_notes": "",
                    "condition_photo": "",
                    "loaned_at": datetime.now(),
                    "returned_at": None,
                }
            ],
        )
        gateway.commit(db)
    except Exception:
        db.rollback()
        raise

    LOGGER.info(
        "Loan created loan_id=%s item_id=%s variant_id=%s person_id=%s quantity=%s",
        loan.id,
        loan.item_id,
        loan.variant_id,
        loan.person_id,
        quantity,
    )
    return loan


def return_loan(db: Session, loan_id: str) -> Loan:
    loan = get_loan(db, loan_id)
    if loan.returned_at is not None:
        raise AlreadyReturnedError(f"Loan {loan_id} was already returned.")

    closed = gateway.update(db, Loan, loan_id, {"returned_at": datetime.now()}, Loan.returned_at.is_(None))
    if closed is None:
        # Another request closed it between our read and our write.
        db.rollback()
        raise AlreadyReturnedError(f"Loan {loan_id} was already returned.")

    try:
        catalog_service.adjust_availability(db, loan_target(closed), -closed.quantity, commit=False)
        gateway.commit(db)
    except Exception:
        db.rollback()
        LOGGER.error("Loan return aborted loan_id=%s", loan_id)
        raise

    LOGGER.info("Loan returned loan_id=%s quantity=%s", loan_id, closed.quantity)
    return closed


def update_condition_notes(db: Session, loan_id: str, notes: str | None, photo_ref: str | None = None) -> Loan:
    """Set condition notes and/or photo; a ``None`` argument leaves that field as it is."""
    patch = {}
    if notes is not None:
        patch["condition_notes"] = notes.strip()
    if photo_ref is not None:
        patch["condition_photo"] = photo_ref
    if not patch:
        return get_loan(db, loan_id)
    loan = gateway.update(db, Loan, loan_id, patch)
    if loan is None:
        db.rollback()
        raise NotFoundError(f"Loan {loan_id} not found.")
    gateway.commit(db)
    return loan


def upload_condition_photo(db: Session, loan_id: str, data: bytes, filename: str | None = None) -> str:
    loan = get_loan(db, loan_id)
    ext = os.path.splitext(filename or "")[1].lower()
    photo_ref = gateway.upload_file(PHOTO_BUCKET, f"{loan.id}/{uuid.uuid4().hex}{ext}", data)
    update_condition_notes(db, loan.id, None, photo_ref)
    LOGGER.info("Condition photo attached loan_id=%s ref=%s", loan.id, photo_ref)
    return photo_ref


def list_active(db: Session, include_consumables: bool = True) -> list[Loan]:
    criteria = [Loan.returned_at.is_(None)]
    if not include_consumables:
        criteria.append(Loan.item.has(Item.consumable.is_(False)))
    return gateway.query(
        db,
        Loan,
        *criteria,
        order_by=(Loan.loaned_at.desc(),),
        options=_DISPLAY_OPTIONS,
    )


def list_loans_for_person(db: Session, person_id: str, include_returned: bool = True) -> list[Loan]:
    roster_service.get_person(db, person_id)
    criteria = [Loan.person_id == person_id]
    if not include_returned:
        criteria.append(Loan.returned_at.is_(None))
    return gateway.query(
        db,
        Loan,
        *criteria,
        order_by=(Loan.loaned_at.desc(),),
        options=_DISPLAY_OPTIONS,
    )


def commit_basket(
    db: Session,
    person_id: str,
    lines: Iterable[BasketLine],
    cancel_event: threading.Event | None = None,
) -> list[BasketLineResult]:
    """Create one loan per basket line for ``person_id``.

    Lines are independent: a failed line does not undo lines committed
    before it, and every line gets its own result. After ``cancel_event`` is
    set the remaining lines are reported as cancelled.
    """
    roster_service.get_person(db, person_id)
    pending = list(lines)
    results: list[BasketLineResult] = []
    for index, line in enumerate(pending):
        if cancel_event is not None and cancel_event.is_set():
            results.extend(BasketLineResult(line=rest, status="cancelled") for rest in pending[index:])
            LOGGER.info("Basket commit cancelled person_id=%s remaining=%s", person_id, len(pending) - index)
            break
        try:
            loan = create_loan(db, line.item_id, person_id, line.quantity, line.notes, line.variant_id)
        except LoanTrackerError as exc:
            LOGGER.warning(
                "Basket line failed person_id=%s item_id=%s variant_id=%s kind=%s",
                person_id,
                line.item_id,
                line.variant_id,
                exc.kind,
            )
            results.append(
                BasketLineResult(
                    line=line,
                    status="failed",
                    error_kind=exc.kind,
                    error=str(exc),
                    retryable=exc.retryable,
                )
            )
            continue
        results.append(BasketLineResult(line=line, status="created", loan=loan))
    return results


def serialize_loan(loan: Loan) -> dict:
    return {
        "loanID": loan.id,
        "itemID": loan.item_id,
        "variantID": loan.variant_id,
        "personID": loan.person_id,
        "quantity": loan.quantity,
        "notes": loan.notes,
        "conditionNotes": loan.condition_notes,
        "conditionPhoto": loan.condition_photo,
        "loanedAt": loan.loaned_at,
        "returnedAt": loan.returned_at,
        "isActive": loan.returned_at is None,
        "item": {
            "itemID": loan.item.id,
            "name": loan.item.name,
            "consumable": bool(loan.item.consumable),
        } if loan.item else None,
        "variant": {
            "variantID": loan.variant.id,
            "name": loan.variant.name,
        } if loan.variant else None,
        "person": {
            "personID": loan.person.id,
            "name": loan.person.name,
            "photoUrl": loan.person.photo_url,
        } if loan.person else None,
    }


def serialize_basket_result(result: BasketLineResult) -> dict:
    return {
        "itemID": result.line.item_id,
        "variantID": result.line.variant_id,
        "quantity": result.line.quantity,
        "status": result.status,
        "loan": serialize_loan(result.loan) if result.loan else None,
        "errorKind": result.error_kind,
        "error": result.error,
        "retryable": result.retryable,
    }
