from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import Person
from loan_tracker.services.errors import LoanTrackerError, NotFoundError, ValidationError


LOGGER = logging.getLogger("loan_tracker.roster")

PHOTO_BUCKET = "people-photos"
_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d. %m. %Y", "%d/%m/%Y")


@dataclass
class PersonImportResult:
    index: int
    name: str
    status: str
    person: Person | None = None
    error_kind: str | None = None
    error: str | None = None


def parse_date_of_birth(raw: Any) -> date | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    value = str(raw).strip()
    if not value:
        return None
    # ISO timestamps ("1990-05-01T00:00:00.000Z") carry the date up front.
    candidate = value.split("T", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f"Unrecognised date of birth: {value!r}")


def add_person(db: Session, name: str, date_of_birth: Any = None, photo_url: str | None = None) -> Person:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationError("Person name must not be empty.")

    (person,) = gateway.insert(
        db,
        Person,
        [
            {
                "name": clean_name,
                "date_of_birth": parse_date_of_birth(date_of_birth),
                "photo_url": (photo_url or "").strip() or None,
                "created_at": datetime.now(),
            }
        ],
    )
    gateway.commit(db)
    LOGGER.info("Person created person_id=%s", person.id)
    return person


def batch_add_people(
    db: Session,
    records: Iterable[dict[str, Any]],
    cancel_event: threading.Event | None = None,
) -> list[PersonImportResult]:
    """Insert people one by one and report the outcome of every record.

    Each record is committed on its own, so a failure never undoes the
    records saved before it. Once ``cancel_event`` is set the remaining
    records are reported as cancelled.
    """
    pending = list(records)
    results: list[PersonImportResult] = []
    for index, record in enumerate(pending):
        name = str(record.get("name") or "").strip()
        if cancel_event is not None and cancel_event.is_set():
            results.extend(
                PersonImportResult(index=i, name=str(r.get("name") or "").strip(), status="cancelled")
                for i, r in enumerate(pending[index:], start=index)
            )
            LOGGER.info("Batch import cancelled saved=%s remaining=%s", index, len(pending) - index)
            break
        try:
            person = add_person(
                db,
                name,
                record.get("dateOfBirth", record.get("date_of_birth")),
                record.get("photoUrl", record.get("photo_url")),
            )
        except LoanTrackerError as exc:
            db.rollback()
            LOGGER.warning("Batch import record failed index=%s kind=%s error=%s", index, exc.kind, exc)
            results.append(
                PersonImportResult(index=index, name=name, status="failed", error_kind=exc.kind, error=str(exc))
            )
            continue
        results.append(PersonImportResult(index=index, name=name, status="saved", person=person))
    return results


def find_person_by_identifier(db: Session, identifier: str | None) -> Person | None:
    value = (identifier or "").strip()
    if not value:
        return None
    return gateway.get(db, Person, value)


def get_person(db: Session, person_id: str) -> Person:
    person = find_person_by_identifier(db, person_id)
    if not person:
        raise NotFoundError(f"Person {person_id} not found.")
    return person


def list_people(db: Session) -> list[Person]:
    return gateway.query(db, Person, order_by=(Person.name, Person.created_at))


def attach_photo(db: Session, person_id: str, photo_ref: str) -> Person:
    ref = (photo_ref or "").strip()
    if not ref:
        raise ValidationError("Photo reference must not be empty.")
    person = gateway.update(db, Person, person_id, {"photo_url": ref})
    if person is None:
        db.rollback()
        raise NotFoundError(f"Person {person_id} not found.")
    gateway.commit(db)
    return person


def upload_person_photo(data: bytes, filename: str | None = None) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return gateway.upload_file(PHOTO_BUCKET, f"{uuid.uuid4().hex}{ext}", data)


def serialize_person(person: Person) -> dict:
    return {
        "personID": person.id,
        "name": person.name,
        "dateOfBirth": person.date_of_birth,
        "photoUrl": person.photo_url,
        "createdAt": person.created_at,
    }


def serialize_import_result(result: PersonImportResult) -> dict:
    return {
        "index": result.index,
        "name": result.name,
        "status": result.status,
        "person": serialize_person(result.person) if result.person else None,
        "errorKind": result.error_kind,
        "error": result.error,
    }
