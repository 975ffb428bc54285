"""
FastAPI route: guest ↔ admin-pool chat.

    GET  /api/v1/messages?peer_id=…        — conversation, oldest first
    POST /api/v1/messages                  — send (idempotent on client_ref)
    POST /api/v1/messages/read?peer_id=…   — mark inbound messages read

Guests always address the admin pool; responders pass the guest's id as
`peer_id` / `recipient_id`.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_runtime, require_session
from backend.app.api.schemas import BulkUpdateResponse, MessageCreate, MessageOut
from backend.app.relay import services
from backend.app.relay.identity import Session
from backend.app.relay.runtime import RelayRuntime

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


@router.get("", response_model=List[MessageOut])
async def list_messages(
    peer_id: Optional[str] = Query(None, description="Guest id (responders only)"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    messages = await services.list_conversation(
        runtime.stores.messages, viewer=session, peer_id=peer_id, limit=limit,
    )
    return [m.to_dict() for m in messages]


@router.post("", response_model=MessageOut, status_code=201)
async def send_message(
    body: MessageCreate,
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    message = await services.send_message(
        runtime.stores.messages,
        sender=session,
        content=body.content,
        recipient_id=body.recipient_id,
        client_ref=body.client_ref,
    )
    return message.to_dict()


@router.post("/read", response_model=BulkUpdateResponse)
async def mark_read(
    peer_id: Optional[str] = Query(None),
    session: Session = Depends(require_session),
    runtime: RelayRuntime = Depends(get_runtime),
):
    updated = await services.mark_conversation_read(
        runtime.stores.messages, viewer=session, peer_id=peer_id,
    )
    return {"updated": updated}
