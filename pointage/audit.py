from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from pointage.models import AuditLog, AuditSeverity
from pointage.services.session_store import read_with_retry

logger = logging.getLogger("pointage.audit")

MAX_QUERY_LIMIT = 500


def log_audit(
    db: Session,
    *,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    changes: dict[str, Any] | None = None,
    severity: AuditSeverity = AuditSeverity.INFO,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> AuditLog | None:
    """Append one audit entry in its own commit.

    A failed write is rolled back and reported through the log only; the
    business transaction that triggered it has already been committed.
    """
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        changes=changes or {},
        severity=severity,
        ip=ip,
        user_agent=user_agent,
    )
    try:
        db.add(audit)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_id": actor_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
            },
        )
        return None

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "severity": severity.value,
            "ip": ip,
            "user_agent": user_agent,
            "changes": changes or {},
        },
    )
    return audit


def query_audit_logs(
    db: Session,
    *,
    actor_id: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    severity: AuditSeverity | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if severity is not None:
        stmt = stmt.where(AuditLog.severity == severity)
    if since is not None:
        stmt = stmt.where(AuditLog.ts_utc >= since)
    if until is not None:
        stmt = stmt.where(AuditLog.ts_utc <= until)

    bounded_limit = max(1, min(limit, MAX_QUERY_LIMIT))
    stmt = stmt.order_by(AuditLog.ts_utc.desc(), AuditLog.id.desc()).limit(bounded_limit)
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))
