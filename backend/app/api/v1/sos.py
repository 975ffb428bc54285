"""
FastAPI route: guest SOS submission.

    POST /api/v1/sos   — raise an alert and get the concierge dispatch link

The dispatch link is returned even when the alert could not be recorded
(no session, store unavailable); `persisted` tells the device which.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_runtime, get_session
from backend.app.api.schemas import SOSRequest, SOSResponse
from backend.app.relay.identity import Session
from backend.app.relay.models import GeoPoint
from backend.app.relay.runtime import RelayRuntime
from backend.app.relay.services import submit_sos

router = APIRouter(prefix="/api/v1/sos", tags=["sos"])


@router.post(
    "",
    response_model=SOSResponse,
    summary="Raise an SOS alert",
    description=(
        "Records a pending alert for the caller (idempotent on client_ref) "
        "and returns the WhatsApp dispatch link for the concierge."
    ),
)
async def raise_sos(
    request: SOSRequest,
    session: Optional[Session] = Depends(get_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    location = (
        GeoPoint(request.lat, request.lng)
        if request.lat is not None and request.lng is not None else None
    )
    submission = await submit_sos(
        runtime.stores.alerts,
        runtime.bridge,
        session,
        location=location,
        client_ref=request.client_ref,
    )
    return submission.to_dict()
