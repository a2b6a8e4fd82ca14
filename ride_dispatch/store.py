from __future__ import annotations

from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StoreFailure


def compare_and_set(db: Session, model, row_id, *, expected: dict[str, Any], values: dict[str, Any]) -> bool:
    """Conditionally update one row.

    The row is written only if every column in ``expected`` still holds the
    given value (a tuple means "any of"). Returns True when exactly one row
    was changed. The session copy of the row is expired so the next access
    reloads it.
    """
    stmt = update(model).where(model.id == row_id)
    for column, value in expected.items():
        col = getattr(model, column)
        if isinstance(value, tuple):
            stmt = stmt.where(col.in_(value))
        elif value is None:
            stmt = stmt.where(col.is_(None))
        else:
            stmt = stmt.where(col == value)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)
    try:
        db.flush()
        result = db.execute(stmt)
    except SQLAlchemyError as exc:
        raise StoreFailure(f"conditional update on {model.__tablename__} failed: {exc}") from exc
    instance = db.identity_map.get(db.identity_key(model, row_id))
    if instance is not None:
        db.expire(instance)
    return result.rowcount == 1
