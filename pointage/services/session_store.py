from __future__ import annotations

import logging
from datetime import date
from typing import Callable, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from pointage.errors import TransientStoreError
from pointage.models import AttendanceSession, SessionType

logger = logging.getLogger("pointage.store")

T = TypeVar("T")


def read_with_retry(db: Session, reader: Callable[[], T]) -> T:
    """Run a read, reconnecting once if the connection dropped."""
    try:
        return reader()
    except OperationalError:
        logger.warning("store_read_retry", exc_info=True)
        db.rollback()
    try:
        return reader()
    except OperationalError as exc:
        db.rollback()
        raise TransientStoreError("Data store is temporarily unavailable.") from exc


def commit_write(db: Session) -> None:
    # Writes are never replayed here: the commit may have landed before the
    # connection dropped, so the caller decides whether to retry.
    try:
        db.commit()
    except OperationalError as exc:
        db.rollback()
        logger.error("store_write_failed", exc_info=True)
        raise TransientStoreError("Data store is temporarily unavailable.") from exc


def lock_one(db: Session, stmt: Select[tuple[T]]) -> T | None:
    """Fetch one row under ``FOR UPDATE``.

    A lost connection or a deadlock victim aborts the whole transaction, so
    the lock is never re-taken here.
    """
    try:
        return db.scalar(stmt.with_for_update())
    except OperationalError as exc:
        db.rollback()
        logger.error("store_lock_failed", exc_info=True)
        raise TransientStoreError("Data store is temporarily unavailable.") from exc


def get_session(
    db: Session,
    *,
    account_id: int,
    work_date: date,
    session_type: SessionType,
    for_update: bool = False,
) -> AttendanceSession | None:
    stmt = select(AttendanceSession).where(
        AttendanceSession.account_id == account_id,
        AttendanceSession.work_date == work_date,
        AttendanceSession.session_type == session_type,
    )
    if for_update:
        return lock_one(db, stmt)
    return read_with_retry(db, lambda: db.scalar(stmt))


def list_sessions_between(
    db: Session,
    *,
    account_id: int,
    start_date: date,
    end_date: date,
) -> list[AttendanceSession]:
    stmt = (
        select(AttendanceSession)
        .where(
            AttendanceSession.account_id == account_id,
            AttendanceSession.work_date >= start_date,
            AttendanceSession.work_date <= end_date,
        )
        .order_by(AttendanceSession.work_date.asc(), AttendanceSession.session_type.asc())
    )
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def count_distinct_devices(db: Session, *, account_id: int, since_date: date) -> int:
    stmt = select(func.count(func.distinct(AttendanceSession.device_fingerprint))).where(
        AttendanceSession.account_id == account_id,
        AttendanceSession.work_date >= since_date,
        AttendanceSession.device_fingerprint.is_not(None),
    )
    return int(read_with_retry(db, lambda: db.scalar(stmt)) or 0)
