from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from pointage.errors import ApiError, ValidationError
from pointage.models import PushSubscription
from pointage.settings import get_settings, is_push_enabled


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_push_public_config() -> dict[str, Any]:
    settings = get_settings()
    enabled = is_push_enabled()
    return {
        "enabled": enabled,
        "vapid_public_key": settings.push_vapid_public_key if enabled else None,
    }


def _parse_subscription_payload(subscription: dict[str, Any]) -> tuple[str, str, str]:
    endpoint = str(subscription.get("endpoint") or "").strip()
    keys = subscription.get("keys")
    if not isinstance(keys, dict):
        raise ValidationError("Subscription keys are missing.", code="INVALID_PUSH_SUBSCRIPTION")

    p256dh = str(keys.get("p256dh") or "").strip()
    auth = str(keys.get("auth") or "").strip()
    if not endpoint or not p256dh or not auth:
        raise ValidationError("Subscription payload is incomplete.", code="INVALID_PUSH_SUBSCRIPTION")
    return endpoint, p256dh, auth


def upsert_push_subscription(
    db: Session,
    *,
    account_id: int,
    subscription: dict[str, Any],
    user_agent: str | None,
) -> PushSubscription:
    if not is_push_enabled():
        raise ApiError(
            "Push notification service is not configured.",
            status_code=503,
            code="PUSH_NOT_CONFIGURED",
        )

    endpoint, p256dh, auth = _parse_subscription_payload(subscription)
    now_utc = _utcnow()

    row = db.scalar(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    if row is None:
        row = PushSubscription(
            account_id=account_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            is_active=True,
            user_agent=user_agent,
            last_error=None,
            last_seen_at=now_utc,
        )
        db.add(row)
    else:
        row.account_id = account_id
        row.p256dh = p256dh
        row.auth = auth
        row.is_active = True
        row.user_agent = user_agent
        row.last_error = None
        row.last_seen_at = now_utc

    db.commit()
    db.refresh(row)
    return row


def list_active_push_subscriptions(db: Session, *, account_id: int) -> list[PushSubscription]:
    stmt = (
        select(PushSubscription)
        .where(
            PushSubscription.account_id == account_id,
            PushSubscription.is_active.is_(True),
        )
        .order_by(PushSubscription.id.desc())
    )
    return list(db.scalars(stmt).all())


def _send_to_subscription_row(
    row: PushSubscription,
    *,
    title: str,
    body: str,
    data: dict[str, Any] | None,
) -> tuple[bool, str | None, int | None]:
    settings = get_settings()
    payload = {
        "title": title,
        "body": body,
        "data": data or {},
        "ts_utc": _utcnow().isoformat(),
    }
    try:
        webpush(
            subscription_info={
                "endpoint": row.endpoint,
                "keys": {
                    "p256dh": row.p256dh,
                    "auth": row.auth,
                },
            },
            data=json.dumps(payload),
            vapid_private_key=settings.push_vapid_private_key,
            vapid_claims={"sub": settings.push_vapid_subject},
            ttl=60,
        )
        return True, None, None
    except WebPushException as exc:
        status_code: int | None = None
        if exc.response is not None:
            status_code = exc.response.status_code
        return False, str(exc), status_code
    except Exception as exc:
        return False, str(exc), None


def send_push_to_subscriptions(
    db: Session,
    *,
    subscriptions: list[PushSubscription],
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    sent = 0
    failed = 0
    deactivated = 0
    failures: list[dict[str, Any]] = []
    now_utc = _utcnow()

    for row in subscriptions:
        ok, error_text, status_code = _send_to_subscription_row(
            row,
            title=title,
            body=body,
            data=data,
        )
        row.last_seen_at = now_utc
        if ok:
            sent += 1
            row.last_error = None
            continue

        failed += 1
        row.last_error = error_text
        # Gone or unknown endpoints will never accept a message again.
        if status_code in {404, 410} and row.is_active:
            row.is_active = False
            deactivated += 1
        failures.append(
            {
                "subscription_id": row.id,
                "endpoint": row.endpoint,
                "status_code": status_code,
                "error": error_text,
            }
        )

    db.commit()
    return {
        "total_targets": len(subscriptions),
        "sent": sent,
        "failed": failed,
        "deactivated": deactivated,
        "failures": failures,
    }


def send_push_to_account(
    db: Session,
    *,
    account_id: int,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if not is_push_enabled():
        return {"total_targets": 0, "sent": 0, "failed": 0, "deactivated": 0, "failures": []}
    subscriptions = list_active_push_subscriptions(db, account_id=account_id)
    return send_push_to_subscriptions(
        db,
        subscriptions=subscriptions,
        title=title,
        body=body,
        data=data,
    )
