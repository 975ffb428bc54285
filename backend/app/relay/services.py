"""
services.py — Guest SOS submission and responder / inbox / chat actions.

Every action reads the CURRENT row from the store before deciding what to
write; a client's cached copy is never trusted. Writes are retried on
TransientStoreError with exponential backoff.

Guest SOS pipeline:

    ┌──────────┐   ┌──────────────┐   ┌──────────────────┐   ┌──────────┐
    │ vibrate  │──▶│ geolocation  │──▶│ insert (pending) │──▶│ dispatch │
    │ (cue)    │   │ ≤ 5 s        │   │ retry, client_ref│   │ WhatsApp │
    └──────────┘   └──────────────┘   └──────────────────┘   └──────────┘
      best-effort    failure → None     failure recorded       ALWAYS runs

A guest with no session, or whose insert failed, still gets the dispatch
link: the human channel must never depend on the store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from backend.app.core.config import settings
from backend.app.core.errors import (
    NotFoundError,
    PermissionDeniedError,
    RelayError,
    TransientStoreError,
    ValidationError,
)
from backend.app.relay.dispatch import DispatchBridge, DispatchRecord
from backend.app.relay.feedback import CueKind, SensoryAlerter
from backend.app.relay.identity import Session
from backend.app.relay.models import (
    Alert,
    AlertStatus,
    GeoPoint,
    Message,
    Notification,
    generate_client_ref,
)
from backend.app.relay.state_machine import check_responder, plan_reopen, plan_transition
from backend.app.relay.stores import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Store write retry parameters."""
    max_retries: int
    backoff_base_seconds: float
    backoff_type: str = "exponential"  # "exponential" or "linear"


def default_retry() -> RetryConfig:
    return RetryConfig(
        settings.STORE_WRITE_MAX_RETRIES,
        settings.STORE_WRITE_BACKOFF_BASE_SECONDS,
    )


def _compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay before the next attempt.

    Parameters
    ----------
    config : RetryConfig
    attempt : int
        Attempt that just failed (1-based).
    """
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str = "write",
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `operation`, retrying TransientStoreError up to max_retries times."""
    config = config or default_retry()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except TransientStoreError as exc:
            if attempt > config.max_retries:
                logger.error("Store %s failed after %d attempts: %s", label, attempt, exc.message)
                raise
            delay = _compute_backoff(config, attempt)
            logger.warning(
                "Store %s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, config.max_retries + 1, delay, exc.message,
            )
            await sleep(delay)


# ═══════════════════════════════════════════════════════════════════════════
# Guest SOS
# ═══════════════════════════════════════════════════════════════════════════

LocationProvider = Callable[[], Awaitable[Optional[GeoPoint]]]


async def acquire_location(
    provider: Optional[LocationProvider],
    timeout_seconds: Optional[float] = None,
) -> Optional[GeoPoint]:
    """Ask the device for a fix. Timeout, denial or error → None."""
    if provider is None:
        return None
    timeout_seconds = timeout_seconds or settings.GEOLOCATION_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(provider(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.info("Geolocation timed out after %.1fs", timeout_seconds)
    except Exception as exc:
        logger.info("Geolocation unavailable: %s", exc)
    return None


@dataclass
class SOSSubmission:
    """Outcome of one guest SOS press."""
    client_ref: str
    location: Optional[GeoPoint] = None
    persisted: bool = False
    alert_id: Optional[str] = None
    dispatch: Optional[DispatchRecord] = None
    error: Optional[str] = None

    @property
    def dispatch_url(self) -> Optional[str]:
        return self.dispatch.url if self.dispatch else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_ref": self.client_ref,
            "persisted": self.persisted,
            "alert_id": self.alert_id,
            "location": self.location.to_dict() if self.location else None,
            "dispatch_url": self.dispatch_url,
            "dispatch_message": self.dispatch.message if self.dispatch else None,
            "error": self.error,
        }


async def submit_sos(
    alerts: RecordStore,
    bridge: DispatchBridge,
    session: Optional[Session],
    *,
    location: Optional[GeoPoint] = None,
    location_provider: Optional[LocationProvider] = None,
    alerter: Optional[SensoryAlerter] = None,
    client_ref: Optional[str] = None,
    retry: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> SOSSubmission:
    """
    Raise an alert for `session` and dispatch to the concierge.

    Never raises for store or device failures; they are recorded on the
    returned SOSSubmission.
    """
    submission = SOSSubmission(client_ref=client_ref or generate_client_ref())

    if alerter is not None:
        await alerter.cue(CueKind.SOS_SENT)

    if location is None:
        location = await acquire_location(location_provider)
    submission.location = location

    if session is None:
        submission.error = "No active session; alert not recorded"
        logger.warning("SOS without session; dispatching only")
    else:
        row = {
            "user_id": session.user_id,
            "status": AlertStatus.PENDING.value,
            "lat": location.lat if location else None,
            "lng": location.lng if location else None,
        }
        try:
            submission.alert_id = await with_store_retry(
                lambda: alerts.insert(row, client_ref=submission.client_ref),
                label="sos insert",
                config=retry,
                sleep=sleep,
            )
            submission.persisted = True
            logger.warning(
                "SOS raised by %s (location=%s)",
                session.user_id, location.query if location else "unknown",
                extra={"alert_id": submission.alert_id, "correlation_id": submission.client_ref},
            )
        except RelayError as exc:
            submission.error = exc.message
            logger.error(
                "SOS insert failed for %s: %s", session.user_id, exc.message,
                extra={"correlation_id": submission.client_ref},
            )

    submission.dispatch = await bridge.dispatch(location, alert_id=submission.alert_id)
    return submission


# ═══════════════════════════════════════════════════════════════════════════
# Responder actions
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionResult:
    alert: Alert
    changed: bool


async def _load_alert(alerts: RecordStore, alert_id: str) -> Alert:
    row = await alerts.get(alert_id)
    if row is None:
        raise NotFoundError("Alert", id=alert_id)
    return Alert.from_row(row)


async def list_alerts(
    alerts: RecordStore,
    *,
    status: Optional[AlertStatus] = None,
    limit: Optional[int] = None,
) -> List[Alert]:
    filters = {"status": status.value} if status else None
    rows = await alerts.query(filters, limit=limit)
    return [Alert.from_row(r) for r in rows]


async def transition_alert(
    alerts: RecordStore,
    alert_id: str,
    target: AlertStatus,
    *,
    actor: Session,
    notes: Optional[str] = None,
    retry: Optional[RetryConfig] = None,
) -> TransitionResult:
    """
    Move an alert to `target`.

    A request on a terminal alert, or to the current state, returns
    `changed=False` with the current row and writes nothing.
    """
    alert = await _load_alert(alerts, alert_id)
    check_responder(actor, alert, f"mark alert {target.value}")

    changes = plan_transition(alert, target, notes=notes)
    if changes is None:
        return TransitionResult(alert=alert, changed=False)

    row = await with_store_retry(
        lambda: alerts.update(alert_id, changes),
        label="alert update",
        config=retry,
    )
    updated = Alert.from_row(row)
    logger.info(
        "Alert %s %s → %s by %s",
        alert_id, alert.status.value, updated.status.value, actor.user_id,
        extra={"alert_id": alert_id},
    )
    return TransitionResult(alert=updated, changed=True)


async def acknowledge_alert(alerts: RecordStore, alert_id: str, *, actor: Session) -> TransitionResult:
    return await transition_alert(alerts, alert_id, AlertStatus.ACKNOWLEDGED, actor=actor)


async def resolve_alert(
    alerts: RecordStore,
    alert_id: str,
    *,
    actor: Session,
    notes: Optional[str] = None,
) -> TransitionResult:
    return await transition_alert(alerts, alert_id, AlertStatus.RESOLVED, actor=actor, notes=notes)


async def mark_false_alarm(
    alerts: RecordStore,
    alert_id: str,
    *,
    actor: Session,
    notes: Optional[str] = None,
) -> TransitionResult:
    return await transition_alert(alerts, alert_id, AlertStatus.FALSE_ALARM, actor=actor, notes=notes)


async def reopen_alert(
    alerts: RecordStore,
    alert_id: str,
    *,
    actor: Session,
    retry: Optional[RetryConfig] = None,
) -> TransitionResult:
    alert = await _load_alert(alerts, alert_id)
    changes = plan_reopen(alert, actor)
    if changes is None:
        return TransitionResult(alert=alert, changed=False)
    row = await with_store_retry(
        lambda: alerts.update(alert_id, changes),
        label="alert reopen",
        config=retry,
    )
    return TransitionResult(alert=Alert.from_row(row), changed=True)


# ═══════════════════════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════════════════════

async def create_notification(
    notifications: RecordStore,
    *,
    user_id: str,
    title: str,
    message: str,
    type: str = "general",
    link: Optional[str] = None,
) -> Notification:
    row = {
        "user_id": user_id,
        "title": title,
        "message": message,
        "type": type,
        "link": link,
        "is_read": False,
    }
    notification_id = await with_store_retry(
        lambda: notifications.insert(row), label="notification insert",
    )
    stored = await notifications.get(notification_id)
    logger.info(
        "Notification %s created for %s", notification_id, user_id,
        extra={"notification_id": notification_id},
    )
    return Notification.from_row(stored)


async def list_notifications(
    notifications: RecordStore,
    *,
    actor: Session,
    unread_only: bool = False,
    limit: Optional[int] = None,
) -> List[Notification]:
    filters: Dict[str, Any] = {"user_id": actor.user_id}
    if unread_only:
        filters["is_read"] = False
    rows = await notifications.query(filters, limit=limit or settings.SNAPSHOT_LIMIT)
    return [Notification.from_row(r) for r in rows]


async def set_notification_read(
    notifications: RecordStore,
    notification_id: str,
    *,
    actor: Session,
    is_read: bool = True,
) -> Notification:
    """Owner-only. Already in the requested state → returned unchanged."""
    row = await notifications.get(notification_id)
    if row is None:
        raise NotFoundError("Notification", id=notification_id)
    current = Notification.from_row(row)
    if current.user_id != actor.user_id:
        raise PermissionDeniedError("change another user's notification", actor.role.value)
    if current.is_read == is_read:
        return current
    updated = await with_store_retry(
        lambda: notifications.update(notification_id, {"is_read": is_read}),
        label="notification update",
    )
    return Notification.from_row(updated)


async def mark_all_read(notifications: RecordStore, *, actor: Session) -> List[Notification]:
    rows = await with_store_retry(
        lambda: notifications.update_where(
            {"user_id": actor.user_id, "is_read": False}, {"is_read": True},
        ),
        label="notification bulk update",
    )
    logger.info("Marked %d notification(s) read for %s", len(rows), actor.user_id)
    return [Notification.from_row(r) for r in rows]


# ═══════════════════════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════════════════════

async def send_message(
    messages: RecordStore,
    *,
    sender: Session,
    content: str,
    recipient_id: Optional[str] = None,
    client_ref: Optional[str] = None,
) -> Message:
    """
    Guests write to the admin pool (recipient None). Responders must name
    the guest they are answering.
    """
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is empty", field="content")
    if sender.is_responder and not recipient_id:
        raise ValidationError("Responder messages need a recipient", field="recipient_id")
    if not sender.is_responder:
        recipient_id = None

    row = {
        "sender_id": sender.user_id,
        "recipient_id": recipient_id,
        "content": content,
        "is_read": False,
    }
    message_id = await with_store_retry(
        lambda: messages.insert(row, client_ref=client_ref),
        label="message insert",
    )
    stored = await messages.get(message_id)
    return Message.from_row(stored)


def conversation_scope(viewer: Session, peer_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """`any_of` filter groups selecting one guest's conversation."""
    guest_id = peer_id if viewer.is_responder else viewer.user_id
    if not guest_id:
        raise ValidationError("A conversation needs a guest", field="peer_id")
    return [{"sender_id": guest_id}, {"recipient_id": guest_id}]


async def list_conversation(
    messages: RecordStore,
    *,
    viewer: Session,
    peer_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Message]:
    rows = await messages.query(
        any_of=conversation_scope(viewer, peer_id),
        descending=False,
        limit=limit,
    )
    return [Message.from_row(r) for r in rows]


async def mark_conversation_read(
    messages: RecordStore,
    *,
    viewer: Session,
    peer_id: Optional[str] = None,
) -> int:
    """Mark inbound messages in a conversation read. Returns rows changed."""
    if viewer.is_responder:
        if not peer_id:
            raise ValidationError("A conversation needs a guest", field="peer_id")
        filters = {"sender_id": peer_id, "recipient_id": None, "is_read": False}
    else:
        filters = {"recipient_id": viewer.user_id, "is_read": False}
    rows = await with_store_retry(
        lambda: messages.update_where(filters, {"is_read": True}),
        label="message bulk update",
    )
    return len(rows)
