from __future__ import annotations

from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.security import Principal, require_approver, require_principal
from pointage.services.accounts import ensure_account


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def request_meta(request: Request) -> dict[str, Any]:
    """ip / user_agent / request_id keywords accepted by every mutating service."""
    return {
        "ip": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
    }


def provisioned_principal(
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> Principal:
    ensure_account(db, principal)
    return principal


def provisioned_approver(
    principal: Principal = Depends(require_approver),
    db: Session = Depends(get_db),
) -> Principal:
    ensure_account(db, principal)
    return principal
