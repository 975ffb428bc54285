"""
FastAPI route: responder alert console.

Provides endpoints to:
    GET  /api/v1/alerts                      — list alerts (optional status)
    POST /api/v1/alerts/{id}/acknowledge     — pending → acknowledged
    POST /api/v1/alerts/{id}/resolve         — → resolved (notes optional)
    POST /api/v1/alerts/{id}/false-alarm     — → false_alarm (notes optional)
    POST /api/v1/alerts/{id}/reopen          — terminal → pending (admin)
    GET  /api/v1/alerts/{id}/dispatch        — concierge WhatsApp link
    POST /api/v1/alerts/{id}/contact         — WhatsApp link to the guest

Transitions on an alert that is already terminal, or already in the
requested state, succeed with `changed: false`.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_runtime, require_responder, require_session
from backend.app.api.schemas import (
    AlertListResponse,
    ContactRequest,
    DispatchLinkResponse,
    DispatchRecordOut,
    TransitionRequest,
    TransitionResponse,
)
from backend.app.core.errors import DispatchUnavailableError, NotFoundError
from backend.app.relay import services
from backend.app.relay.dispatch import build_dispatch_message
from backend.app.relay.identity import Session
from backend.app.relay.models import Alert, AlertStatus
from backend.app.relay.runtime import RelayRuntime

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _transition_response(result: services.TransitionResult) -> dict:
    return {"alert": result.alert.to_dict(), "changed": result.changed}


async def _load(runtime: RelayRuntime, alert_id: str) -> Alert:
    row = await runtime.stores.alerts.get(alert_id)
    if row is None:
        raise NotFoundError("Alert", id=alert_id)
    return Alert.from_row(row)


@router.get("", response_model=AlertListResponse, summary="List alerts, newest first")
async def list_alerts(
    status: Optional[AlertStatus] = Query(None, description="Filter by status"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    session: Session = Depends(require_responder),
    runtime: RelayRuntime = Depends(get_runtime),
):
    alerts = await services.list_alerts(runtime.stores.alerts, status=status, limit=limit)
    return {
        "total": len(alerts),
        "active": sum(1 for a in alerts if a.is_active),
        "alerts": [a.to_dict() for a in alerts],
    }


@router.post("/{alert_id}/acknowledge", response_model=TransitionResponse)
async def acknowledge(
    alert_id: str,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    result = await services.acknowledge_alert(runtime.stores.alerts, alert_id, actor=session)
    return _transition_response(result)


@router.post("/{alert_id}/resolve", response_model=TransitionResponse)
async def resolve(
    alert_id: str,
    body: Optional[TransitionRequest] = None,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    result = await services.resolve_alert(
        runtime.stores.alerts, alert_id, actor=session,
        notes=body.notes if body else None,
    )
    return _transition_response(result)


@router.post("/{alert_id}/false-alarm", response_model=TransitionResponse)
async def false_alarm(
    alert_id: str,
    body: Optional[TransitionRequest] = None,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    result = await services.mark_false_alarm(
        runtime.stores.alerts, alert_id, actor=session,
        notes=body.notes if body else None,
    )
    return _transition_response(result)


@router.post("/{alert_id}/reopen", response_model=TransitionResponse)
async def reopen(
    alert_id: str,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    result = await services.reopen_alert(runtime.stores.alerts, alert_id, actor=session)
    return _transition_response(result)


@router.get("/{alert_id}/dispatch", response_model=DispatchLinkResponse)
async def dispatch_link(
    alert_id: str,
    session: Session = Depends(require_responder),
    runtime: RelayRuntime = Depends(get_runtime),
):
    alert = await _load(runtime, alert_id)
    if not alert.is_active:
        raise DispatchUnavailableError(alert.id, f"alert is {alert.status.value}")
    return {
        "alert_id": alert.id,
        "url": runtime.bridge.offer(alert.location),
        "message": build_dispatch_message(alert.location),
    }


@router.post("/{alert_id}/contact", response_model=DispatchRecordOut)
async def contact_subject(
    alert_id: str,
    body: ContactRequest,
    session: Session = Depends(require_responder),
    runtime: RelayRuntime = Depends(get_runtime),
):
    alert = await _load(runtime, alert_id)
    record = await runtime.bridge.contact_subject(alert, body.phone)
    return record.to_dict()
