"""
FastAPI route: per-user notification inbox.

    GET  /api/v1/notifications               — caller's notifications + unread count
    POST /api/v1/notifications               — create one for a user (responders)
    POST /api/v1/notifications/read-all      — mark every unread one read
    POST /api/v1/notifications/{id}/read     — mark one read
    POST /api/v1/notifications/{id}/unread   — mark one unread
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_runtime, require_responder, require_session
from backend.app.api.schemas import (
    BulkUpdateResponse,
    NotificationCreate,
    NotificationListResponse,
    NotificationOut,
)
from backend.app.relay import services
from backend.app.relay.identity import Session
from backend.app.relay.runtime import RelayRuntime

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    items = await services.list_notifications(
        runtime.stores.notifications, actor=session, unread_only=unread_only, limit=limit,
    )
    return {
        "unread": sum(1 for n in items if not n.is_read),
        "notifications": [n.to_dict() for n in items],
    }


@router.post("", response_model=NotificationOut, status_code=201)
async def create_notification(
    body: NotificationCreate,
    session: Session = Depends(require_responder),
    runtime: RelayRuntime = Depends(get_runtime),
):
    notification = await services.create_notification(
        runtime.stores.notifications,
        user_id=body.user_id,
        title=body.title,
        message=body.message,
        type=body.type,
        link=body.link,
    )
    return notification.to_dict()


@router.post("/read-all", response_model=BulkUpdateResponse)
async def mark_all_read(
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    updated = await services.mark_all_read(runtime.stores.notifications, actor=session)
    return {"updated": len(updated)}


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: str,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    notification = await services.set_notification_read(
        runtime.stores.notifications, notification_id, actor=session, is_read=True,
    )
    return notification.to_dict()


@router.post("/{notification_id}/unread", response_model=NotificationOut)
async def mark_unread(
    notification_id: str,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    notification = await services.set_notification_read(
        runtime.stores.notifications, notification_id, actor=session, is_read=False,
    )
    return notification.to_dict()
