"""Persistence gateway: the only place that talks to the store directly.

Every call either succeeds, raises a service error, or raises
``TransientError`` when the store is unreachable or the call timed out.
Callers decide whether to retry; nothing here retries on its own.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Any

from sqlalchemy import select, update as sql_update
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from loan_tracker.services.errors import TransientError, ValidationError


LOGGER = logging.getLogger("loan_tracker.gateway")

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_UPLOADS_DIR = BASE_DIR / "static" / "uploads"


def uploads_root() -> Path:
    raw = (os.environ.get("LOAN_TRACKER_UPLOADS_DIR") or "").strip()
    return Path(raw) if raw else DEFAULT_UPLOADS_DIR


@contextmanager
def store_call(db: Session, operation: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        LOGGER.warning("Store unavailable operation=%s error=%s", operation, exc.__class__.__name__)
        raise TransientError(f"Store unavailable during {operation}: {exc}") from exc
    except DBAPIError as exc:
        if not exc.connection_invalidated:
            raise
        db.rollback()
        LOGGER.warning("Store connection lost operation=%s", operation)
        raise TransientError(f"Store connection lost during {operation}") from exc


def query(
    db: Session,
    model,
    *criteria,
    order_by: Sequence[Any] = (),
    options: Sequence[Any] = (),
    limit: int | None = None,
) -> list:
    stmt = select(model)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    if options:
        stmt = stmt.options(*options)
    if order_by:
        stmt = stmt.order_by(*order_by)
    if limit is not None:
        stmt = stmt.limit(limit)
    with store_call(db, f"query:{model.__tablename__}"):
        return list(db.execute(stmt).scalars().all())


def get(db: Session, model, identifier: str, *, fresh: bool = False):
    with store_call(db, f"get:{model.__tablename__}"):
        return db.get(model, identifier, populate_existing=fresh)


def insert(db: Session, model, records: Iterable[dict[str, Any]]) -> list:
    rows = [model(**record) for record in records]
    with store_call(db, f"insert:{model.__tablename__}"):
        db.add_all(rows)
        db.flush()
    return rows


def update(db: Session, model, identifier: str, patch: dict[str, Any], *conditions):
    """Apply ``patch`` to one row, optionally only when ``conditions`` hold.

    The condition check and the write happen in a single UPDATE statement, so
    the store evaluates them atomically. Returns the refreshed row, or
    ``None`` when no row matched.
    """
    stmt = sql_update(model).where(model.id == identifier)
    for condition in conditions:
        stmt = stmt.where(condition)
    stmt = stmt.values(**patch).execution_options(synchronize_session=False)
    with store_call(db, f"update:{model.__tablename__}"):
        result = db.execute(stmt)
        if result.rowcount != 1:
            return None
        return db.get(model, identifier, populate_existing=True)


def lock_rows(db: Session, model, *criteria) -> int:
    """Take write locks on the matching rows for the rest of the transaction.

    Implemented as a no-op UPDATE so it also serializes writers on SQLite,
    where SELECT ... FOR UPDATE is ignored.
    """
    stmt = sql_update(model)
    for criterion in criteria:
        stmt = stmt.where(criterion)
    stmt = stmt.values(id=model.id).execution_options(synchronize_session=False)
    with store_call(db, f"lock:{model.__tablename__}"):
        return db.execute(stmt).rowcount


def delete(db: Session, model, identifier: str) -> bool:
    with store_call(db, f"delete:{model.__tablename__}"):
        row = db.get(model, identifier)
        if row is None:
            return False
        # Reload relationships so cascades see rows added by other sessions.
        db.expire(row)
        db.delete(row)
        db.flush()
    return True


def commit(db: Session) -> None:
    with store_call(db, "commit"):
        db.commit()


def _safe_relative_path(path: str) -> PurePosixPath:
    parts = [part for part in PurePosixPath(path.replace("\\", "/")).parts if part not in {"", ".", "/"}]
    if not parts or any(part == ".." for part in parts):
        raise ValidationError(f"Invalid upload path: {path!r}")
    return PurePosixPath(*parts)


def upload_file(bucket: str, path: str, data: bytes) -> str:
    if not data:
        raise ValidationError("Uploaded file is empty.")
    relative = _safe_relative_path(f"{bucket}/{path}")
    target = uploads_root().joinpath(*relative.parts)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as output:
            output.write(data)
    except OSError as exc:
        LOGGER.warning("Upload failed bucket=%s path=%s error=%s", bucket, path, exc)
        raise TransientError(f"Could not store upload {relative}: {exc}") from exc
    return f"/uploads/{relative}"
