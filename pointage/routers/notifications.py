from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.errors import ApiError
from pointage.schemas import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationRead,
    NotificationUpdate,
    PushSubscriptionRequest,
    PushSubscriptionResponse,
)
from pointage.security import Principal, require_principal
from pointage.services.notifications import (
    count_unread,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
)
from pointage.services.push_notifications import get_push_public_config, upsert_push_subscription
from pointage.services.transport import stream_channel_messages
from pointage.settings import is_stream_enabled

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
def list_notifications_endpoint(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> NotificationListResponse:
    rows = list_notifications(db, recipient_id=principal.user_id, unread_only=unread_only, limit=limit)
    return NotificationListResponse(
        items=[NotificationRead.model_validate(item) for item in rows],
        unread_count=count_unread(db, recipient_id=principal.user_id),
    )


@router.post("/mark-all-read", response_model=MarkAllReadResponse)
def mark_all_read_endpoint(
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> MarkAllReadResponse:
    return MarkAllReadResponse(updated=mark_all_read(db, recipient_id=principal.user_id))


@router.get("/stream")
async def notification_stream_endpoint(
    principal: Principal = Depends(require_principal),
) -> StreamingResponse:
    if not is_stream_enabled():
        raise ApiError(
            "Notification stream is not configured.",
            status_code=503,
            code="STREAM_NOT_CONFIGURED",
        )
    return StreamingResponse(
        stream_channel_messages(principal.user_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/push-config")
def push_config_endpoint(_principal: Principal = Depends(require_principal)) -> dict:
    return get_push_public_config()


@router.post("/subscribe", response_model=PushSubscriptionResponse)
def subscribe_endpoint(
    payload: PushSubscriptionRequest,
    request: Request,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> PushSubscriptionResponse:
    row = upsert_push_subscription(
        db,
        account_id=principal.user_id,
        subscription=payload.subscription,
        user_agent=request.headers.get("user-agent"),
    )
    return PushSubscriptionResponse(ok=True, subscription_id=row.id)


@router.patch("/{notification_id}", response_model=NotificationRead)
def update_notification_endpoint(
    notification_id: int,
    payload: NotificationUpdate,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> NotificationRead:
    row = mark_read(
        db,
        recipient_id=principal.user_id,
        notification_id=notification_id,
        is_read=payload.is_read,
    )
    return NotificationRead.model_validate(row)


@router.delete("/{notification_id}", status_code=204)
def delete_notification_endpoint(
    notification_id: int,
    principal: Principal = Depends(require_principal),
    db: Session = Depends(get_db),
) -> Response:
    delete_notification(db, recipient_id=principal.user_id, notification_id=notification_id)
    return Response(status_code=204)
