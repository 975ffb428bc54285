"""
views.py — Per-session live views: alert center, notification inbox,
conversation.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    start()
      1. resolve identity          (user-scoped channels need the user id)
      2. hold logical channels     (one or more per view, e.g. generic + mine)
      3. pump task per hold        (decode → shared event queue)
      4. initial snapshot          (silent seed; events queued meanwhile)
      5. drain task                (apply events one at a time)

    drain
      payload       → reconciler.apply → cues (sound, toast)
      DISCONNECTED  → mark offline
      RECONNECTED   → full resync, retried; failure marks the view stale
      merge failure → full resync

    close()
      cancel tasks → release holds → cancel outstanding optimistic writes

A start that fails after step 2 tears down what it opened before raising.
Two views with the same scope share a channel but not a queue; closing one
leaves the other subscribed.

Subscribing BEFORE the snapshot is fetched leaves no gap: anything written
in between is both in the queue and possibly in the snapshot, and the
per-id timestamp comparison makes applying it twice harmless.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from backend.app.core.config import settings
from backend.app.core.logging_config import bind_log_context
from backend.app.core.errors import (
    DispatchUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ReconcileError,
    RelayError,
    ValidationError,
)
from backend.app.relay import services
from backend.app.relay.change_feed import ChangeFeed, ChannelHold, ChangeFilter, ChangeKind, FeedSignal
from backend.app.relay.dispatch import DispatchBridge, DispatchRecord
from backend.app.relay.events import ChangeEvent, decode_change
from backend.app.relay.feedback import CueKind, SensoryAlerter
from backend.app.relay.identity import IdentityProvider, Session
from backend.app.relay.models import (
    Alert,
    AlertStatus,
    BaseRecord,
    Message,
    Notification,
    Table,
    generate_client_ref,
    utcnow,
)
from backend.app.relay.reconciler import DeliveryReconciler, PendingWrite
from backend.app.relay.services import RetryConfig
from backend.app.relay.state_machine import check_responder, plan_reopen, plan_transition
from backend.app.relay.stores import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    """A toast for the user."""
    level: str          # info | error
    title: str
    message: str
    link: Optional[str] = None


NoticeSink = Callable[[Notice], Any]
ChannelSpec = Tuple[str, Sequence[ChangeFilter]]


# ═══════════════════════════════════════════════════════════════════════════
# Base view
# ═══════════════════════════════════════════════════════════════════════════

class LiveView:
    """Owns one session's subscriptions, reconciler and background tasks."""

    table: Table
    write_error_title = "Update failed"

    def __init__(
        self,
        feed: ChangeFeed,
        store: RecordStore,
        identity: IdentityProvider,
        *,
        alerter: Optional[SensoryAlerter] = None,
        on_notice: Optional[NoticeSink] = None,
        confirm_timeout: Optional[float] = None,
        resync_retry: Optional[RetryConfig] = None,
    ):
        self.feed = feed
        self.store = store
        self.identity = identity
        self.alerter = alerter or SensoryAlerter()
        self.on_notice = on_notice
        self.confirm_timeout = confirm_timeout
        self.resync_retry = resync_retry

        self.session: Optional[Session] = None
        self.reconciler: Optional[DeliveryReconciler] = None
        self.connected = False
        self.stale = False
        self.started = False
        self.closed = False

        self._events: "asyncio.Queue[Any]" = asyncio.Queue()
        self._holds: List[ChannelHold] = []
        self._tasks: List["asyncio.Task[None]"] = []

    # ── Hooks ──

    def authorize(self, session: Session) -> None:
        return None

    def channel_specs(self, session: Session) -> List[ChannelSpec]:
        raise NotImplementedError

    def in_scope(self, record: BaseRecord) -> bool:
        return True

    def attention(self, record: BaseRecord) -> bool:
        return False

    async def fetch_snapshot(self) -> Tuple[List[BaseRecord], bool]:
        """Return (records, complete)."""
        raise NotImplementedError

    async def on_cue(self, record: BaseRecord) -> None:
        return None

    async def after_resync(self, initial: bool) -> None:
        return None

    # ── Lifecycle ──

    async def start(self) -> "LiveView":
        if self.started:
            return self
        session = await self.identity.get_current_session()
        if session is None:
            raise PermissionDeniedError("open a live view without a session")
        self.authorize(session)
        self.session = session
        bind_log_context(
            session_id=f"{type(self).__name__}:{session.user_id}",
            user_id=session.user_id,
        )

        self.reconciler = DeliveryReconciler(
            in_scope=self.in_scope,
            attention=self.attention,
            on_error=self._on_write_error,
            confirm_timeout=self.confirm_timeout,
        )

        try:
            for name, filters in self.channel_specs(session):
                hold = self.feed.acquire(name)
                self._holds.append(hold)
                for change_filter in filters:
                    hold.channel.add_filter(change_filter)
                self._tasks.append(asyncio.create_task(self._pump(hold)))
            self.connected = True

            await self.resync(initial=True)
            self._tasks.append(asyncio.create_task(self._drain()))
        except BaseException:
            await self._teardown()
            raise
        self.started = True
        logger.info(
            "%s started for %s (%d channel(s))",
            type(self).__name__, session.user_id, len(self._holds),
        )
        return self

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._teardown()

    async def _teardown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for hold in self._holds:
            hold.release()
        self._holds.clear()
        if self.reconciler is not None:
            self.reconciler.close()
        self.connected = False

    async def __aenter__(self) -> "LiveView":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Pipeline ──

    async def _pump(self, hold: ChannelHold) -> None:
        async for item in hold:
            if isinstance(item, FeedSignal):
                await self._events.put(item)
                continue
            try:
                event = decode_change(item)
            except RelayError as exc:
                logger.warning(
                    "Dropping malformed event on %s: %s", hold.name, exc.message,
                    extra={"channel": hold.name},
                )
                continue
            await self._events.put(event)
        # Channel removed out from under an open view
        if not self.closed:
            await self._events.put(FeedSignal.DISCONNECTED)

    async def _drain(self) -> None:
        while True:
            item = await self._events.get()
            try:
                await self._handle(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("%s failed to handle event: %s", type(self).__name__, exc)
            finally:
                self._events.task_done()

    async def _handle(self, item: Any) -> None:
        if item is FeedSignal.DISCONNECTED:
            self.connected = False
            logger.info("%s offline; waiting for reconnect", type(self).__name__)
            return
        if item is FeedSignal.RECONNECTED:
            self.connected = True
            await self.resync_with_retry()
            return

        try:
            self.reconciler.apply(item)
        except ReconcileError as exc:
            logger.error(
                "Merge failed for %s: %s", exc.details.get("entity_id"), exc.message,
            )
            if settings.RESYNC_ON_MERGE_FAILURE:
                await self.resync_with_retry()
            return
        await self._fire_cues()

    async def resync(self, *, initial: bool = False) -> None:
        """Fetch a full snapshot and merge it."""
        records, complete = await self.fetch_snapshot()
        self.reconciler.seed(records, initial=initial, complete=complete)
        self.stale = False
        await self._fire_cues()
        await self.after_resync(initial)

    async def resync_with_retry(self) -> bool:
        try:
            await services.with_store_retry(
                lambda: self.resync(), label="resync", config=self.resync_retry,
            )
            return True
        except RelayError as exc:
            self.stale = True
            logger.error("%s resync failed: %s", type(self).__name__, exc.message)
            self._notify(Notice(
                level="error",
                title="Connection problem",
                message="Live updates may be out of date. Retrying when the connection recovers.",
            ))
            return False

    async def _fire_cues(self) -> None:
        for record in self.reconciler.pop_cues():
            try:
                await self.on_cue(record)
            except Exception as exc:
                logger.debug("Cue for %s failed: %s", record.id, exc)

    def _notify(self, notice: Notice) -> None:
        if self.on_notice is None:
            return
        try:
            self.on_notice(notice)
        except Exception as exc:
            logger.debug("Notice sink failed: %s", exc)

    def _on_write_error(self, error: RelayError) -> None:
        self._notify(Notice(level="error", title=self.write_error_title, message=error.message))

    def _merge(self, record: BaseRecord) -> None:
        """Merge a row returned by a write without waiting for its echo."""
        self.reconciler.apply(ChangeEvent(
            kind=ChangeKind.UPDATE, table=self.table, record_id=record.id, record=record,
        ))

    async def settle(self, timeout: float = 5.0) -> None:
        """Wait until every queued change has been applied."""
        async def _wait() -> None:
            while True:
                await asyncio.sleep(0)
                if any(hold.backlog for hold in self._holds):
                    continue
                await self._events.join()
                await asyncio.sleep(0)
                if not any(hold.backlog for hold in self._holds) and self._events.empty():
                    return

        await asyncio.wait_for(_wait(), timeout=timeout)

    # ── Reads ──

    def records(self) -> List[BaseRecord]:
        return self.reconciler.records() if self.reconciler else []

    def get(self, record_id: str) -> Optional[BaseRecord]:
        return self.reconciler.get(record_id) if self.reconciler else None

    def _require(self, record_id: str, resource: str) -> BaseRecord:
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(resource, id=record_id)
        return record


# ═══════════════════════════════════════════════════════════════════════════
# Alert center (responders)
# ═══════════════════════════════════════════════════════════════════════════

class AlertCenterView(LiveView):
    """All alerts, newest first. Sound + toast on every new pending alert."""

    table = Table.ALERTS
    write_error_title = "Failed to update alert"

    def __init__(self, *args: Any, bridge: Optional[DispatchBridge] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.bridge = bridge or DispatchBridge()

    def authorize(self, session: Session) -> None:
        if not session.is_responder:
            raise PermissionDeniedError("view the alert center", session.role.value)

    def channel_specs(self, session: Session) -> List[ChannelSpec]:
        return [(
            f"sos_alerts_updates:{session.user_id}",
            [ChangeFilter(table=Table.ALERTS.value)],
        )]

    def attention(self, record: BaseRecord) -> bool:
        return isinstance(record, Alert) and record.status == AlertStatus.PENDING

    async def fetch_snapshot(self) -> Tuple[List[BaseRecord], bool]:
        rows = await self.store.query()
        return [Alert.from_row(r) for r in rows], True

    async def on_cue(self, record: BaseRecord) -> None:
        await self.alerter.cue(CueKind.NEW_ALERT)
        self._notify(Notice(
            level="error",
            title="🚨 New Emergency Alert!",
            message="A new SOS alert has been received.",
        ))

    # ── Reads ──

    def alerts(self) -> List[Alert]:
        return self.records()

    @property
    def active_count(self) -> int:
        return self.reconciler.count(lambda a: a.status == AlertStatus.PENDING)

    def dispatch_link(self, alert_id: str) -> str:
        alert = self._require(alert_id, "Alert")
        if not alert.is_active:
            raise DispatchUnavailableError(alert.id, f"alert is {alert.status.value}")
        return self.bridge.offer(alert.location)

    async def contact_subject(self, alert_id: str, phone: Optional[str]) -> DispatchRecord:
        alert = self._require(alert_id, "Alert")
        return await self.bridge.contact_subject(alert, phone)

    # ── Actions ──

    async def _transition(
        self,
        alert_id: str,
        target: AlertStatus,
        *,
        notes: Optional[str] = None,
        reopen: bool = False,
    ) -> Optional[PendingWrite]:
        current = self._require(alert_id, "Alert")
        if reopen:
            changes = plan_reopen(current, self.session)
        else:
            check_responder(self.session, current, f"mark alert {target.value}")
            changes = plan_transition(current, target, notes=notes)
        if changes is None:
            return None

        pending = self.reconciler.apply_optimistic(alert_id, changes, confirm_on=("status",))
        try:
            if reopen:
                result = await services.reopen_alert(self.store, alert_id, actor=self.session)
            else:
                result = await services.transition_alert(
                    self.store, alert_id, target, actor=self.session, notes=notes,
                )
        except RelayError as exc:
            self.reconciler.reject_pending(alert_id, exc)
            return pending

        if not result.changed:
            # Someone else got there first; adopt their row quietly
            self.reconciler.drop_pending(alert_id)
        self._merge(result.alert)
        return pending

    async def acknowledge(self, alert_id: str) -> Optional[PendingWrite]:
        return await self._transition(alert_id, AlertStatus.ACKNOWLEDGED)

    async def resolve(self, alert_id: str, notes: Optional[str] = None) -> Optional[PendingWrite]:
        return await self._transition(alert_id, AlertStatus.RESOLVED, notes=notes)

    async def mark_false_alarm(self, alert_id: str, notes: Optional[str] = None) -> Optional[PendingWrite]:
        return await self._transition(alert_id, AlertStatus.FALSE_ALARM, notes=notes)

    async def reopen(self, alert_id: str) -> Optional[PendingWrite]:
        return await self._transition(alert_id, AlertStatus.PENDING, reopen=True)


# ═══════════════════════════════════════════════════════════════════════════
# Notification inbox
# ═══════════════════════════════════════════════════════════════════════════

class NotificationInboxView(LiveView):
    """
    One user's notifications.

    Listens broadly on inserts (every user's) AND narrowly on changes to
    this user's rows; the reconciler drops other users' rows and
    deduplicates inserts seen by both listeners.
    """

    table = Table.NOTIFICATIONS
    write_error_title = "Failed to update notification"

    def channel_specs(self, session: Session) -> List[ChannelSpec]:
        return [(
            f"realtime-notifications-{session.user_id}",
            [
                ChangeFilter(table=Table.NOTIFICATIONS.value, event="insert"),
                ChangeFilter(
                    table=Table.NOTIFICATIONS.value,
                    column="user_id",
                    value=session.user_id,
                ),
            ],
        )]

    def in_scope(self, record: BaseRecord) -> bool:
        return isinstance(record, Notification) and record.user_id == self.session.user_id

    def attention(self, record: BaseRecord) -> bool:
        return isinstance(record, Notification) and not record.is_read

    async def fetch_snapshot(self) -> Tuple[List[BaseRecord], bool]:
        limit = settings.SNAPSHOT_LIMIT
        rows = await self.store.query({"user_id": self.session.user_id}, limit=limit)
        return [Notification.from_row(r) for r in rows], len(rows) < limit

    async def on_cue(self, record: BaseRecord) -> None:
        await self.alerter.cue(CueKind.NEW_NOTIFICATION)
        self._notify(Notice(
            level="info",
            title=record.title,
            message=record.message,
            link=record.link,
        ))

    def notifications(self) -> List[Notification]:
        return self.records()

    @property
    def unread_count(self) -> int:
        return self.reconciler.count(lambda n: not n.is_read)

    async def _set_read(self, notification_id: str, is_read: bool) -> Optional[PendingWrite]:
        current = self._require(notification_id, "Notification")
        if current.is_read == is_read:
            return None
        pending = self.reconciler.apply_optimistic(notification_id, {"is_read": is_read})
        try:
            updated = await services.set_notification_read(
                self.store, notification_id, actor=self.session, is_read=is_read,
            )
        except RelayError as exc:
            self.reconciler.reject_pending(notification_id, exc)
            return pending
        self._merge(updated)
        return pending

    async def mark_read(self, notification_id: str) -> Optional[PendingWrite]:
        return await self._set_read(notification_id, True)

    async def mark_unread(self, notification_id: str) -> Optional[PendingWrite]:
        return await self._set_read(notification_id, False)

    async def mark_all_read(self) -> List[PendingWrite]:
        """Optimistic for every unread item; one failure reverts them all."""
        unread = [n for n in self.notifications() if not n.is_read]
        pendings = [
            self.reconciler.apply_optimistic(n.id, {"is_read": True}) for n in unread
        ]
        if not pendings:
            return []
        try:
            updated = await services.mark_all_read(self.store, actor=self.session)
        except RelayError as exc:
            for n in unread:
                self.reconciler.reject_pending(n.id, exc, notify=False)
            self._notify(Notice(
                level="error", title="Error", message="Failed to mark all as read.",
            ))
            return pendings
        for record in updated:
            self._merge(record)
        return pendings


# ═══════════════════════════════════════════════════════════════════════════
# Conversation (guest ↔ admin pool)
# ═══════════════════════════════════════════════════════════════════════════

class ConversationView(LiveView):
    """
    One guest's conversation with the admin pool.

    Guests see their own thread. Responders pass `peer_id` (the guest) and
    have inbound pool messages marked read as they arrive.
    """

    table = Table.MESSAGES
    write_error_title = "Failed to send message"

    def __init__(self, *args: Any, peer_id: Optional[str] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.peer_id = peer_id

    @property
    def guest_id(self) -> str:
        return self.peer_id if self.session.is_responder else self.session.user_id

    def authorize(self, session: Session) -> None:
        if session.is_responder and not self.peer_id:
            raise ValidationError("A conversation needs a guest", field="peer_id")

    def channel_specs(self, session: Session) -> List[ChannelSpec]:
        return [(
            f"messages:{session.user_id}:{self.peer_id or 'pool'}",
            [ChangeFilter(table=Table.MESSAGES.value)],
        )]

    def in_scope(self, record: BaseRecord) -> bool:
        return isinstance(record, Message) and self.guest_id in (record.sender_id, record.recipient_id)

    def _inbound(self, message: Message) -> bool:
        if self.session.is_responder:
            return message.sender_id == self.peer_id
        return message.recipient_id == self.session.user_id

    def attention(self, record: BaseRecord) -> bool:
        return isinstance(record, Message) and self._inbound(record) and not record.is_read

    async def fetch_snapshot(self) -> Tuple[List[BaseRecord], bool]:
        rows = await self.store.query(any_of=services.conversation_scope(self.session, self.peer_id))
        return [Message.from_row(r) for r in rows], True

    async def on_cue(self, record: BaseRecord) -> None:
        await self.alerter.cue(CueKind.NEW_MESSAGE)
        if self.session.is_responder:
            await self._mark_inbound_read()

    async def after_resync(self, initial: bool) -> None:
        if self.session.is_responder and self.unread_count:
            await self._mark_inbound_read()

    async def _mark_inbound_read(self) -> None:
        try:
            await services.mark_conversation_read(
                self.store, viewer=self.session, peer_id=self.peer_id,
            )
        except RelayError as exc:
            logger.warning("Could not mark conversation read: %s", exc.message)

    def messages(self) -> List[Message]:
        """Oldest first, as displayed."""
        return list(reversed(self.records()))

    @property
    def unread_count(self) -> int:
        return self.reconciler.count(self.attention)

    async def send(self, content: str) -> PendingWrite:
        """Show the message at once under a temp id; replaced by the echo."""
        if not (content or "").strip():
            raise ValidationError("Message content is empty", field="content")
        client_ref = generate_client_ref()
        now = utcnow()
        draft = Message(
            id="",
            sender_id=self.session.user_id,
            content=content.strip(),
            created_at=now,
            updated_at=now,
            recipient_id=self.peer_id if self.session.is_responder else None,
            client_ref=client_ref,
        )
        pending = self.reconciler.add_optimistic_insert(draft, client_ref)
        try:
            stored = await services.send_message(
                self.store,
                sender=self.session,
                content=content,
                recipient_id=self.peer_id,
                client_ref=client_ref,
            )
        except RelayError as exc:
            self.reconciler.reject_insert(client_ref, exc)
            return pending
        self.reconciler.apply(ChangeEvent(
            kind=ChangeKind.INSERT, table=self.table, record_id=stored.id, record=stored,
        ))
        return pending
