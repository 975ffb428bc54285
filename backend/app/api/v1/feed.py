"""
FastAPI route: WebSocket change stream.

    WS /api/v1/feed?table=<table>&event=<*|insert|update|delete>&filter=<col=eq.val>

Identity comes from X-User-Id / X-User-Role headers, or from `user_id` /
`role` query parameters for browsers that cannot set WebSocket headers.

Frames:
    {"type": "change", "table", "eventType", "new", "old", "commit_timestamp"}
    {"type": "system", "status": "disconnected" | "reconnected"}

After a "reconnected" frame the client must re-fetch its snapshot.

Scope rules:
    sos_alerts      responders only
    notifications   non-responders must filter user_id=eq.<self>
    messages        non-responders must filter sender_id / recipient_id = <self>

Close codes: 4401 no session, 4403 scope violation, 4400 bad filter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from backend.app.api.deps import parse_session
from backend.app.core.errors import RelayError
from backend.app.relay.change_feed import ChangeFilter, FeedSignal, parse_filter, to_wire
from backend.app.relay.identity import Session
from backend.app.relay.models import Table, generate_client_ref

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["feed"])

_SELF_COLUMNS = {
    Table.NOTIFICATIONS.value: ("user_id",),
    Table.MESSAGES.value: ("sender_id", "recipient_id"),
}


def allowed(session: Session, change_filter: ChangeFilter) -> bool:
    """May `session` hold a subscription with this filter?"""
    if session.is_responder:
        return True
    if change_filter.table == Table.ALERTS.value:
        return False
    return (
        change_filter.column in _SELF_COLUMNS.get(change_filter.table, ())
        and change_filter.value == session.user_id
    )


@router.websocket("/feed")
async def feed_stream(
    websocket: WebSocket,
    table: str = Query(...),
    event: str = Query("*"),
    filter: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
):
    try:
        session = parse_session(
            websocket.headers.get("x-user-id") or user_id,
            websocket.headers.get("x-user-role") or role,
        )
    except RelayError:
        session = None
    if session is None:
        await websocket.close(code=4401)
        return

    try:
        Table(table)
        change_filter = parse_filter(table, event, filter)
    except ValueError as exc:
        logger.info("Rejected feed subscription: %s", exc)
        await websocket.close(code=4400)
        return

    if not allowed(session, change_filter):
        await websocket.close(code=4403)
        return

    await websocket.accept()
    feed = websocket.app.state.runtime.feed
    name = f"ws:{session.user_id}:{generate_client_ref()}"
    channel = feed.channel(name).add_filter(change_filter)
    logger.info(
        "Feed stream opened for %s on %s", session.user_id, table,
        extra={"channel": name, "table": table},
    )

    async def _watch_disconnect() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            channel.close()

    watcher = asyncio.create_task(_watch_disconnect())
    try:
        async for item in channel:
            if isinstance(item, FeedSignal):
                await websocket.send_json({"type": "system", "status": item.value})
            else:
                await websocket.send_json({"type": "change", **to_wire(item)})
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        feed.remove_channel(name)
        logger.info("Feed stream closed for %s", session.user_id, extra={"channel": name})
