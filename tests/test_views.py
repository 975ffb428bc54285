"""
End-to-end tests for the live views over the in-memory store and feed.

Covers:
    - Guest SOS reaching every responder exactly once, with sound + toast
    - Two responders resolving the same alert concurrently without errors
    - Offline responder converging on server truth after reconnect
    - Notification inbox ignoring other users' rows
    - Optimistic inbox / alert writes and their revert on failure
    - Resync failure marking the view stale
    - Two views of one admin sharing a channel; cleanup after a failed start
    - Guest ↔ admin-pool conversation with optimistic send

Run with: pytest tests/test_views.py -v
"""

from __future__ import annotations

import asyncio
from urllib.parse import unquote

import pytest

from backend.app.core.config import settings
from backend.app.core.errors import DispatchUnavailableError, PermissionDeniedError, TransientStoreError
from backend.app.relay import services
from backend.app.relay.change_feed import ChangeFeed, ChangeKind, build_payload
from backend.app.relay.dispatch import DispatchBridge, clear_dispatch_log
from backend.app.relay.feedback import SensoryAlerter
from backend.app.relay.identity import Session, StaticIdentity
from backend.app.relay.models import AlertStatus, GeoPoint, Role, Table
from backend.app.relay.services import RetryConfig
from backend.app.relay.stores import InMemoryStore, Stores
from backend.app.relay.views import (
    AlertCenterView,
    ConversationView,
    NotificationInboxView,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

ADMIN_1 = Session("admin-1", Role.ADMIN)
ADMIN_2 = Session("admin-2", Role.ADMIN)
STAFF = Session("staff-1", Role.STAFF)
GUEST = Session("guest-1", Role.GUEST)


class _RecordingDevice:
    def __init__(self):
        self.sounds = []
        self.vibrations = []

    def play_sound(self, clip, volume):
        self.sounds.append((clip, volume))

    def vibrate(self, pattern):
        self.vibrations.append(list(pattern))


class _FlakyStore(InMemoryStore):
    """In-memory store whose reads or writes can be switched to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_queries = False
        self.fail_writes = False

    async def query(self, *args, **kwargs):
        if self.fail_queries:
            raise TransientStoreError("query", "connection reset")
        return await super().query(*args, **kwargs)

    async def update(self, record_id, fields):
        if self.fail_writes:
            raise TransientStoreError("update", "connection reset")
        return await super().update(record_id, fields)

    async def update_where(self, filters, fields):
        if self.fail_writes:
            raise TransientStoreError("update_where", "connection reset")
        return await super().update_where(filters, fields)


def _make_stores(feed: ChangeFeed) -> Stores:
    return Stores(
        alerts=_FlakyStore(Table.ALERTS, feed),
        notifications=_FlakyStore(Table.NOTIFICATIONS, feed),
        messages=_FlakyStore(Table.MESSAGES, feed),
    )


def _make_view(cls, feed, store, session, **kwargs):
    device = _RecordingDevice()
    notices = []
    view = cls(
        feed, store, StaticIdentity(session),
        alerter=SensoryAlerter(device),
        on_notice=notices.append,
        **kwargs,
    )
    return view, device, notices


async def _raise_sos(stores, session=GUEST, location=None):
    return await services.submit_sos(
        stores.alerts, DispatchBridge(), session, location=location,
    )


@pytest.fixture(autouse=True)
def _clear_ledger():
    clear_dispatch_log()
    yield
    clear_dispatch_log()


@pytest.fixture
def no_retries(monkeypatch):
    monkeypatch.setattr(settings, "STORE_WRITE_MAX_RETRIES", 0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Alert center
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertCenter:

    def test_new_sos_reaches_every_responder_once(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view_1, device_1, notices_1 = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            view_2, device_2, notices_2 = _make_view(AlertCenterView, feed, stores.alerts, STAFF)
            await view_1.start()
            await view_2.start()

            submission = await _raise_sos(stores, location=GeoPoint(9.64, -83.67))
            assert submission.persisted
            await view_1.settle()
            await view_2.settle()

            for view, device, notices in ((view_1, device_1, notices_1), (view_2, device_2, notices_2)):
                assert [a.id for a in view.alerts()] == [submission.alert_id]
                assert view.active_count == 1
                assert device.sounds == [(settings.ALERT_SOUND_CLIP, settings.SOUND_VOLUME)]
                assert len(notices) == 1
                assert notices[0].title == "🚨 New Emergency Alert!"

            link = view_1.dispatch_link(submission.alert_id)
            assert "https://maps.google.com/?q=9.64,-83.67" in unquote(link)
            assert "https://maps.google.com/?q=9.64,-83.67" in submission.dispatch.message

            await view_1.close()
            await view_2.close()

        asyncio.run(run())

    def test_existing_alerts_load_silently(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            await _raise_sos(stores)
            view, device, notices = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            await view.start()
            await view.settle()
            assert len(view.alerts()) == 1
            assert device.sounds == []
            assert notices == []
            await view.close()

        asyncio.run(run())

    def test_concurrent_resolve_converges_without_error(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            submission = await _raise_sos(stores)
            view_1, _, notices_1 = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            view_2, _, notices_2 = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_2)
            await view_1.start()
            await view_2.start()

            await asyncio.gather(
                view_1.resolve(submission.alert_id),
                view_2.resolve(submission.alert_id),
            )
            await view_1.settle()
            await view_2.settle()

            stored = await stores.alerts.get(submission.alert_id)
            assert stored["status"] == "resolved"
            assert stored["resolved_at"] is not None
            for view in (view_1, view_2):
                assert view.get(submission.alert_id).status == AlertStatus.RESOLVED
                assert not view.reconciler.is_pending(submission.alert_id)
            assert [n for n in notices_1 + notices_2 if n.level == "error"] == []

            await view_1.close()
            await view_2.close()

        asyncio.run(run())

    def test_offline_responder_converges_after_reconnect(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, device, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            await view.start()

            feed.disconnect_all()
            await view.settle()
            assert view.connected is False

            raised = [
                await _raise_sos(stores, session=Session(f"guest-{i}", Role.GUEST))
                for i in range(3)
            ]
            first_id = raised[0].alert_id
            stale_row = await stores.alerts.get(first_id)
            await services.resolve_alert(stores.alerts, first_id, actor=STAFF)

            feed.reconnect_all()
            # buffered insert of the pre-resolution row arrives after reconnect
            feed.deliver(build_payload(Table.ALERTS.value, ChangeKind.INSERT, new=stale_row))
            await view.settle()

            alerts = view.alerts()
            assert len(alerts) == 3
            assert len({a.id for a in alerts}) == 3
            assert view.active_count == 2
            assert view.get(first_id).status == AlertStatus.RESOLVED
            assert view.connected is True
            assert len(device.sounds) == 2
            await view.close()

        asyncio.run(run())

    def test_acknowledge_confirms_pending_write(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            submission = await _raise_sos(stores)
            view, _, _ = _make_view(AlertCenterView, feed, stores.alerts, STAFF)
            await view.start()

            pending = await view.acknowledge(submission.alert_id)
            confirmed = await asyncio.wait_for(pending, timeout=1.0)
            assert confirmed.status == AlertStatus.ACKNOWLEDGED
            assert await view.acknowledge(submission.alert_id) is None
            await view.close()

        asyncio.run(run())

    def test_failed_write_reverts_and_notifies(self, no_retries):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            submission = await _raise_sos(stores)
            view, _, notices = _make_view(AlertCenterView, feed, stores.alerts, STAFF)
            await view.start()

            stores.alerts.fail_writes = True
            pending = await view.resolve(submission.alert_id)
            with pytest.raises(TransientStoreError):
                await pending
            assert view.get(submission.alert_id).status == AlertStatus.PENDING
            assert notices[-1].title == "Failed to update alert"
            await view.close()

        asyncio.run(run())

    def test_guest_cannot_open(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            view, _, _ = _make_view(AlertCenterView, feed, InMemoryStore(Table.ALERTS, feed), GUEST)
            with pytest.raises(PermissionDeniedError):
                await view.start()
            assert feed.channel_names == []

        asyncio.run(run())

    def test_no_session(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            view = AlertCenterView(feed, InMemoryStore(Table.ALERTS, feed), StaticIdentity(None))
            with pytest.raises(PermissionDeniedError):
                await view.start()

        asyncio.run(run())

    def test_close_releases_channels(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            view, _, _ = _make_view(AlertCenterView, feed, InMemoryStore(Table.ALERTS, feed), ADMIN_1)
            await view.start()
            assert feed.channel_names == ["sos_alerts_updates:admin-1"]
            await view.close()
            await view.close()
            assert feed.channel_names == []

        asyncio.run(run())

    def test_two_tabs_of_one_admin_each_see_every_alert(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            tab_1, device_1, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            tab_2, device_2, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            await tab_1.start()
            await tab_2.start()
            assert feed.channel_names == ["sos_alerts_updates:admin-1"]

            first = await _raise_sos(stores)
            await tab_1.settle()
            await tab_2.settle()
            assert [a.id for a in tab_1.alerts()] == [first.alert_id]
            assert [a.id for a in tab_2.alerts()] == [first.alert_id]
            assert len(device_1.sounds) == 1
            assert len(device_2.sounds) == 1

            await tab_1.close()
            assert feed.channel_names == ["sos_alerts_updates:admin-1"]

            second = await _raise_sos(stores, session=Session("guest-2", Role.GUEST))
            await tab_2.settle()
            assert {a.id for a in tab_2.alerts()} == {first.alert_id, second.alert_id}
            assert tab_2.connected is True
            assert len(device_2.sounds) == 2

            await tab_2.close()
            assert feed.channel_names == []

        asyncio.run(run())

    def test_failed_start_releases_channels(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            stores.alerts.fail_queries = True
            view, _, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            with pytest.raises(TransientStoreError):
                await view.start()
            assert feed.channel_names == []
            assert view._tasks == []
            assert view.started is False
            assert view.connected is False

            stores.alerts.fail_queries = False
            await view.start()
            assert feed.channel_names == ["sos_alerts_updates:admin-1"]
            await view.close()
            assert feed.channel_names == []

        asyncio.run(run())

    def test_dispatch_link_refused_for_resolved_alert(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            submission = await _raise_sos(stores)
            view, _, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            await view.start()
            assert view.dispatch_link(submission.alert_id).startswith(settings.WHATSAPP_BASE_URL)

            await services.resolve_alert(stores.alerts, submission.alert_id, actor=STAFF)
            await view.settle()
            with pytest.raises(DispatchUnavailableError):
                view.dispatch_link(submission.alert_id)
            await view.close()

        asyncio.run(run())


class TestResync:

    def test_failed_resync_marks_stale_then_recovers(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, _, notices = _make_view(
                AlertCenterView, feed, stores.alerts, ADMIN_1,
                resync_retry=RetryConfig(max_retries=0, backoff_base_seconds=0.0),
            )
            await view.start()

            stores.alerts.fail_queries = True
            feed.disconnect_all()
            feed.reconnect_all()
            await view.settle()
            assert view.stale is True
            assert notices[-1].title == "Connection problem"

            stores.alerts.fail_queries = False
            await _raise_sos(stores)
            feed.disconnect_all()
            feed.reconnect_all()
            await view.settle()
            assert view.stale is False
            assert len(view.alerts()) == 1
            await view.close()

        asyncio.run(run())

    def test_malformed_event_dropped(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, device, _ = _make_view(AlertCenterView, feed, stores.alerts, ADMIN_1)
            await view.start()
            feed.deliver({"table": "sos_alerts", "eventType": "INSERT", "new": {"id": "x"}})
            await _raise_sos(stores)
            await view.settle()
            assert len(view.alerts()) == 1
            assert len(device.sounds) == 1
            await view.close()

        asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Notification inbox
# ═══════════════════════════════════════════════════════════════════════════

async def _notify(stores, user_id, title="Dinner", message="Table for two at 8pm"):
    return await services.create_notification(
        stores.notifications, user_id=user_id, title=title, message=message, link="/bookings",
    )


class TestNotificationInbox:

    def test_other_users_notifications_ignored(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, device, notices = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()

            await _notify(stores, "someone-else")
            await view.settle()
            assert view.notifications() == []
            assert view.unread_count == 0
            assert device.sounds == []
            assert notices == []
            await view.close()

        asyncio.run(run())

    def test_own_notification_cues_once_despite_two_listeners(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, device, notices = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()

            created = await _notify(stores, GUEST.user_id, title="Spa")
            await view.settle()
            assert [n.id for n in view.notifications()] == [created.id]
            assert view.unread_count == 1
            assert device.sounds == [(settings.NOTIFICATION_SOUND_CLIP, 1.0)]
            assert len(notices) == 1
            assert notices[0].title == "Spa"
            assert notices[0].link == "/bookings"
            await view.close()

        asyncio.run(run())

    def test_mark_read_and_unread(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            created = await _notify(stores, GUEST.user_id)
            view, _, _ = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()

            await view.mark_read(created.id)
            await view.settle()
            assert view.unread_count == 0
            assert (await stores.notifications.get(created.id))["is_read"] is True

            await view.mark_unread(created.id)
            await view.settle()
            assert view.unread_count == 1
            await view.close()

        asyncio.run(run())

    def test_mark_all_read(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            for title in ("a", "b", "c"):
                await _notify(stores, GUEST.user_id, title=title)
            view, _, _ = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()

            await view.mark_all_read()
            await view.settle()
            assert view.unread_count == 0
            assert await stores.notifications.query({"is_read": False}) == []
            await view.close()

        asyncio.run(run())

    def test_mark_all_read_failure_reverts_everything(self, no_retries):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            for title in ("a", "b"):
                await _notify(stores, GUEST.user_id, title=title)
            view, _, notices = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()

            stores.notifications.fail_writes = True
            await view.mark_all_read()
            assert view.unread_count == 2
            assert [(n.title, n.message) for n in notices] == [("Error", "Failed to mark all as read.")]
            await view.close()

        asyncio.run(run())

    def test_snapshot_limited(self, monkeypatch):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            for i in range(5):
                await _notify(stores, GUEST.user_id, title=f"n{i}")
            view, _, _ = _make_view(NotificationInboxView, feed, stores.notifications, GUEST)
            await view.start()
            assert len(view.notifications()) == 3
            await view.close()

        monkeypatch.setattr(settings, "SNAPSHOT_LIMIT", 3)
        asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Conversation
# ═══════════════════════════════════════════════════════════════════════════

class TestConversation:

    def test_guest_send_replaces_temp_with_stored(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, _, _ = _make_view(ConversationView, feed, stores.messages, GUEST)
            await view.start()

            pending = await view.send("  Need extra towels  ")
            stored = await asyncio.wait_for(pending, timeout=1.0)
            await view.settle()

            messages = view.messages()
            assert [m.id for m in messages] == [stored.id]
            assert messages[0].content == "Need extra towels"
            assert messages[0].recipient_id is None
            await view.close()

        asyncio.run(run())

    def test_responder_sees_guest_message_and_marks_read(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            guest_view, _, _ = _make_view(ConversationView, feed, stores.messages, GUEST)
            admin_view, admin_device, _ = _make_view(
                ConversationView, feed, stores.messages, ADMIN_1, peer_id=GUEST.user_id,
            )
            await guest_view.start()
            await admin_view.start()

            await guest_view.send("Is the pool open?")
            await admin_view.settle()
            await guest_view.settle()

            assert len(admin_view.messages()) == 1
            assert admin_device.sounds == [(settings.NOTIFICATION_SOUND_CLIP, 1.0)]
            assert admin_view.unread_count == 0
            rows = await stores.messages.query({"sender_id": GUEST.user_id})
            assert rows[0]["is_read"] is True

            await admin_view.send("Until 10pm")
            await guest_view.settle()
            assert [m.content for m in guest_view.messages()] == ["Is the pool open?", "Until 10pm"]
            assert guest_view.unread_count == 1

            await guest_view.close()
            await admin_view.close()

        asyncio.run(run())

    def test_other_guests_messages_hidden(self):
        async def run():
            feed = ChangeFeed(queue_size=100)
            stores = _make_stores(feed)
            view, device, _ = _make_view(ConversationView, feed, stores.messages, GUEST)
            await view.start()
            await services.send_message(
                stores.messages, sender=Session("guest-2", Role.GUEST), content="hello",
            )
            await view.settle()
            assert view.messages() == []
            assert device.sounds == []
            await view.close()

        asyncio.run(run())
