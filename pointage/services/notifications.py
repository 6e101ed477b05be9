from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from pointage.errors import NotFoundError
from pointage.models import (
    APPROVER_ROLES,
    Account,
    AccountStatus,
    Notification,
    NotificationPriority,
    NotificationType,
)
from pointage.services.session_store import commit_write, read_with_retry
from pointage.services.transport import NotificationChannel, default_channels

logger = logging.getLogger("pointage.notifications")

MAX_LIST_LIMIT = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def list_approver_ids(db: Session, *, exclude: Iterable[int] = ()) -> list[int]:
    excluded = set(exclude)
    stmt = (
        select(Account.id)
        .where(
            Account.role.in_(APPROVER_ROLES),
            Account.status == AccountStatus.ACTIVE,
        )
        .order_by(Account.id.asc())
    )
    ids = read_with_retry(db, lambda: list(db.scalars(stmt).all()))
    return [account_id for account_id in ids if account_id not in excluded]


def enqueue_notification(
    db: Session,
    *,
    recipient_id: int,
    type: NotificationType,
    title: str,
    message: str,
    priority: NotificationPriority = NotificationPriority.NORMAL,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    """Stage a notification row in the caller's transaction."""
    row = Notification(
        recipient_id=recipient_id,
        type=type,
        title=title,
        message=message,
        priority=priority,
        is_read=False,
        meta=metadata or {},
        created_at=_utcnow(),
    )
    db.add(row)
    return row


def enqueue_for_approvers(
    db: Session,
    *,
    type: NotificationType,
    title: str,
    message: str,
    priority: NotificationPriority = NotificationPriority.NORMAL,
    metadata: dict[str, Any] | None = None,
    exclude: Iterable[int] = (),
) -> list[Notification]:
    return [
        enqueue_notification(
            db,
            recipient_id=approver_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            metadata=metadata,
        )
        for approver_id in list_approver_ids(db, exclude=exclude)
    ]


def _safe_send(channel: NotificationChannel, notification: Notification) -> bool:
    try:
        return channel.send(notification)
    except Exception:
        logger.warning(
            "notification_delivery_failed",
            exc_info=True,
            extra={
                "channel": channel.name,
                "notification_id": notification.id,
                "recipient_id": notification.recipient_id,
            },
        )
        return False


def deliver_notifications(
    db: Session,
    notifications: Iterable[Notification],
    *,
    channels: list[NotificationChannel] | None = None,
) -> int:
    """Push already-committed notifications to the live transports.

    Returns how many notifications reached at least one channel. Failures
    are logged and never raised.
    """
    if channels is not None:
        active_channels = channels
    else:
        try:
            active_channels = default_channels(db)
        except Exception:
            logger.warning("notification_channels_unavailable", exc_info=True)
            return 0
    delivered = 0
    for notification in notifications:
        reached = False
        for channel in active_channels:
            if _safe_send(channel, notification):
                reached = True
        if reached:
            delivered += 1
    return delivered


def notify(
    db: Session,
    *,
    recipient_id: int,
    type: NotificationType,
    title: str,
    message: str,
    priority: NotificationPriority = NotificationPriority.NORMAL,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    row = enqueue_notification(
        db,
        recipient_id=recipient_id,
        type=type,
        title=title,
        message=message,
        priority=priority,
        metadata=metadata,
    )
    commit_write(db)
    deliver_notifications(db, [row])
    return row


def list_notifications(
    db: Session,
    *,
    recipient_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    stmt = select(Notification).where(Notification.recipient_id == recipient_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    bounded_limit = max(1, min(limit, MAX_LIST_LIMIT))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(bounded_limit)
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def count_unread(db: Session, *, recipient_id: int) -> int:
    stmt = select(func.count(Notification.id)).where(
        Notification.recipient_id == recipient_id,
        Notification.is_read.is_(False),
    )
    return int(read_with_retry(db, lambda: db.scalar(stmt)) or 0)


def _get_owned_notification(db: Session, *, recipient_id: int, notification_id: int) -> Notification:
    row = db.get(Notification, notification_id)
    # Someone else's notification is reported exactly like a missing one.
    if row is None or row.recipient_id != recipient_id:
        raise NotFoundError("Notification not found.", code="NOTIFICATION_NOT_FOUND")
    return row


def mark_read(
    db: Session,
    *,
    recipient_id: int,
    notification_id: int,
    is_read: bool = True,
) -> Notification:
    row = _get_owned_notification(db, recipient_id=recipient_id, notification_id=notification_id)
    if row.is_read != is_read:
        row.is_read = is_read
        row.read_at = _utcnow() if is_read else None
        commit_write(db)
    return row


def mark_all_read(db: Session, *, recipient_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(
            Notification.recipient_id == recipient_id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True, read_at=_utcnow())
    )
    commit_write(db)
    return int(result.rowcount or 0)


def delete_notification(db: Session, *, recipient_id: int, notification_id: int) -> None:
    _get_owned_notification(db, recipient_id=recipient_id, notification_id=notification_id)
    db.execute(delete(Notification).where(Notification.id == notification_id))
    commit_write(db)
