"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers (SELECT ... FOR UPDATE on PostgreSQL)
- Conditional updates whose rowcount decides a race
"""

import logging
from typing import List, Optional, TypeVar, Type
from sqlalchemy import update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return db.bind.dialect.name == 'postgresql'
    except Exception:
        return False


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a single record.

    SQLite has no row locks; its single-writer transaction model serializes
    writers instead, so the plain query is used there.

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)

    # Only apply locking on PostgreSQL
    if is_postgres(db):
        query = query.with_for_update(nowait=nowait) if nowait else query.with_for_update()

    return query.first()


def lock_rows(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None
) -> List[T]:
    """
    Lock every row matching filter_condition for the rest of the transaction.

    Rows are refreshed from the database so values read by an earlier query in
    the same session are never trusted.
    """
    query = db.query(model).filter(filter_condition).populate_existing()
    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update()

    return query.all()


def conditional_update(
    db: Session,
    model: Type[T],
    where_clause,
    values: dict
) -> int:
    """
    UPDATE model SET values WHERE where_clause, returning the rowcount.

    Used to flip flags exactly once: two racing callers both issue the
    update and only the one that sees rowcount == 1 won.

    Example:
        won = conditional_update(
            db, DiscountCode,
            and_(DiscountCode.id == code_id, DiscountCode.used == False),
            {"used": True},
        ) == 1
    """
    stmt = (
        update(model)
        .where(where_clause)
        .values(values)
        .execution_options(synchronize_session="fetch")
    )
    result = db.execute(stmt)
    return result.rowcount or 0
