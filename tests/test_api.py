"""
Tests for the HTTP and WebSocket surface.

Covers:
    - Guest SOS with and without identity headers
    - Responder console: list, transitions, no-op on terminal, 403 / 404 / 409
    - Dispatch link (refused once resolved) and contact-the-guest
    - Notification inbox and chat endpoints
    - Change stream: rejection close codes, change frames after a write
    - Root and health endpoints

Run with: pytest tests/test_api.py -v
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.app.main import app
from backend.app.relay.dispatch import clear_dispatch_log, get_dispatch_log


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
STAFF = {"X-User-Id": "staff-1", "X-User-Role": "staff"}
GUEST = {"X-User-Id": "guest-1", "X-User-Role": "guest"}
OTHER_GUEST = {"X-User-Id": "guest-2", "X-User-Role": "guest"}


@pytest.fixture
def client():
    clear_dispatch_log()
    with TestClient(app) as c:
        yield c
    clear_dispatch_log()


def _raise_sos(client, headers=GUEST, **body):
    body.setdefault("lat", 9.64)
    body.setdefault("lng", -83.67)
    response = client.post("/api/v1/sos", json=body, headers=headers)
    assert response.status_code == 200
    return response.json()


def _wait_for_channels(client, count: int = 1, timeout: float = 2.0):
    feed = client.app.state.runtime.feed
    deadline = time.monotonic() + timeout
    while len(feed.channel_names) < count:
        assert time.monotonic() < deadline, "feed channel never opened"
        time.sleep(0.01)


# ═══════════════════════════════════════════════════════════════════════════
# SOS
# ═══════════════════════════════════════════════════════════════════════════

class TestSOS:

    def test_guest_sos_persisted_and_dispatched(self, client):
        data = _raise_sos(client)
        assert data["persisted"] is True
        assert data["alert_id"]
        assert data["location"] == {"lat": 9.64, "lng": -83.67}
        assert data["dispatch_url"].startswith("https://wa.me/50688318381?text=")
        assert len(get_dispatch_log(data["alert_id"])) == 1

    def test_no_session_still_gets_link(self, client):
        response = client.post("/api/v1/sos", json={})
        data = response.json()
        assert response.status_code == 200
        assert data["persisted"] is False
        assert data["alert_id"] is None
        assert data["error"]
        assert "Location unavailable" in data["dispatch_message"]

    def test_client_ref_retry(self, client):
        first = _raise_sos(client, client_ref="press-1")
        second = _raise_sos(client, client_ref="press-1")
        assert first["alert_id"] == second["alert_id"]

    def test_bad_latitude(self, client):
        response = client.post("/api/v1/sos", json={"lat": 123, "lng": 0}, headers=GUEST)
        assert response.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestAlerts:

    def test_list_requires_responder(self, client):
        response = client.get("/api/v1/alerts", headers=GUEST)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_list_counts(self, client):
        first = _raise_sos(client)
        _raise_sos(client, headers=OTHER_GUEST)
        client.post(f"/api/v1/alerts/{first['alert_id']}/resolve", headers=STAFF)

        data = client.get("/api/v1/alerts", headers=STAFF).json()
        assert data["total"] == 2
        assert data["active"] == 1

        pending = client.get("/api/v1/alerts?status=pending", headers=STAFF).json()
        assert pending["total"] == 1

    def test_acknowledge_then_resolve(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        ack = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", headers=STAFF).json()
        assert ack["changed"] is True
        assert ack["alert"]["status"] == "acknowledged"

        done = client.post(
            f"/api/v1/alerts/{alert_id}/resolve",
            json={"notes": "Guest escorted to clinic"},
            headers=ADMIN,
        ).json()
        assert done["alert"]["status"] == "resolved"
        assert done["alert"]["resolved_at"] is not None
        assert done["alert"]["notes"] == "Guest escorted to clinic"

    def test_terminal_alert_is_noop(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        client.post(f"/api/v1/alerts/{alert_id}/false-alarm", headers=STAFF)
        again = client.post(f"/api/v1/alerts/{alert_id}/resolve", headers=ADMIN)
        assert again.status_code == 200
        assert again.json()["changed"] is False
        assert again.json()["alert"]["status"] == "false_alarm"

    def test_guest_cannot_acknowledge(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        response = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", headers=OTHER_GUEST)
        assert response.status_code == 403

    def test_anonymous_rejected(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        response = client.post(f"/api/v1/alerts/{alert_id}/acknowledge")
        assert response.status_code == 403

    def test_unknown_alert(self, client):
        response = client.post("/api/v1/alerts/nope/resolve", headers=STAFF)
        body = response.json()
        assert response.status_code == 404
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["path"] == "/api/v1/alerts/nope/resolve"

    def test_reopen_admin_only(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        client.post(f"/api/v1/alerts/{alert_id}/resolve", headers=STAFF)
        assert client.post(f"/api/v1/alerts/{alert_id}/reopen", headers=STAFF).status_code == 403
        reopened = client.post(f"/api/v1/alerts/{alert_id}/reopen", headers=ADMIN).json()
        assert reopened["alert"]["status"] == "pending"

    def test_unknown_role(self, client):
        response = client.get("/api/v1/alerts", headers={"X-User-Id": "x", "X-User-Role": "owner"})
        assert response.status_code == 422


class TestAlertDispatch:

    def test_dispatch_link(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        data = client.get(f"/api/v1/alerts/{alert_id}/dispatch", headers=STAFF).json()
        assert data["alert_id"] == alert_id
        assert data["message"].endswith("https://maps.google.com/?q=9.64,-83.67")

    def test_contact_subject(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        response = client.post(
            f"/api/v1/alerts/{alert_id}/contact",
            json={"phone": "+506 8831-8381"},
            headers=STAFF,
        )
        assert response.status_code == 200
        assert response.json()["url"] == "https://wa.me/50688318381"
        assert response.json()["purpose"] == "contact_subject"

    def test_contact_without_phone(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        response = client.post(f"/api/v1/alerts/{alert_id}/contact", json={}, headers=STAFF)
        assert response.status_code == 422

    def test_dispatch_link_refused_once_resolved(self, client):
        alert_id = _raise_sos(client)["alert_id"]
        client.post(f"/api/v1/alerts/{alert_id}/resolve", headers=STAFF)
        response = client.get(f"/api/v1/alerts/{alert_id}/dispatch", headers=STAFF)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "DISPATCH_UNAVAILABLE"


# ═══════════════════════════════════════════════════════════════════════════
# Notifications and messages
# ═══════════════════════════════════════════════════════════════════════════

class TestNotifications:

    def _create(self, client, user_id="guest-1", title="Room ready"):
        response = client.post(
            "/api/v1/notifications",
            json={"user_id": user_id, "title": title, "message": "Check-in is open."},
            headers=ADMIN,
        )
        assert response.status_code == 201
        return response.json()

    def test_guest_cannot_create(self, client):
        response = client.post(
            "/api/v1/notifications",
            json={"user_id": "guest-2", "title": "x", "message": "y"},
            headers=GUEST,
        )
        assert response.status_code == 403

    def test_inbox_and_read_state(self, client):
        created = self._create(client)
        self._create(client, title="Dinner")
        self._create(client, user_id="guest-2")

        inbox = client.get("/api/v1/notifications", headers=GUEST).json()
        assert inbox["unread"] == 2
        assert len(inbox["notifications"]) == 2

        read = client.post(f"/api/v1/notifications/{created['id']}/read", headers=GUEST).json()
        assert read["is_read"] is True
        unread = client.post(f"/api/v1/notifications/{created['id']}/unread", headers=GUEST).json()
        assert unread["is_read"] is False

        assert client.post("/api/v1/notifications/read-all", headers=GUEST).json() == {"updated": 2}
        assert client.get("/api/v1/notifications", headers=GUEST).json()["unread"] == 0

    def test_cannot_read_others(self, client):
        created = self._create(client, user_id="guest-2")
        response = client.post(f"/api/v1/notifications/{created['id']}/read", headers=GUEST)
        assert response.status_code == 403


class TestMessages:

    def test_conversation(self, client):
        sent = client.post("/api/v1/messages", json={"content": "Need towels"}, headers=GUEST)
        assert sent.status_code == 201
        assert sent.json()["recipient_id"] is None

        reply = client.post(
            "/api/v1/messages",
            json={"content": "On the way", "recipient_id": "guest-1"},
            headers=STAFF,
        )
        assert reply.status_code == 201

        convo = client.get("/api/v1/messages?peer_id=guest-1", headers=STAFF).json()
        assert [m["content"] for m in convo] == ["Need towels", "On the way"]
        assert client.get("/api/v1/messages", headers=GUEST).json() == convo

        assert client.post("/api/v1/messages/read?peer_id=guest-1", headers=STAFF).json() == {"updated": 1}

    def test_responder_needs_recipient(self, client):
        response = client.post("/api/v1/messages", json={"content": "hello"}, headers=STAFF)
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "recipient_id"


# ═══════════════════════════════════════════════════════════════════════════
# Change stream
# ═══════════════════════════════════════════════════════════════════════════

class TestFeed:

    @pytest.mark.parametrize("url,code", [
        ("/api/v1/feed?table=sos_alerts", 4401),
        ("/api/v1/feed?table=bookings&user_id=admin-1&role=admin", 4400),
        ("/api/v1/feed?table=sos_alerts&filter=status=gt.1&user_id=admin-1&role=admin", 4400),
        ("/api/v1/feed?table=sos_alerts&user_id=guest-1&role=guest", 4403),
        ("/api/v1/feed?table=notifications&user_id=guest-1&role=guest", 4403),
        ("/api/v1/feed?table=notifications&filter=user_id=eq.guest-2&user_id=guest-1", 4403),
    ])
    def test_rejected(self, client, url, code):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(url) as ws:
                ws.receive_json()
        assert exc.value.code == code

    def test_responder_receives_new_alert(self, client):
        with client.websocket_connect(
            "/api/v1/feed?table=sos_alerts&event=insert", headers=STAFF,
        ) as ws:
            _wait_for_channels(client)
            alert_id = _raise_sos(client)["alert_id"]
            frame = ws.receive_json()
            assert frame["type"] == "change"
            assert frame["eventType"] == "INSERT"
            assert frame["new"]["id"] == alert_id
            assert frame["new"]["status"] == "pending"

    def test_guest_receives_own_notification(self, client):
        with client.websocket_connect(
            "/api/v1/feed?table=notifications&filter=user_id=eq.guest-1&user_id=guest-1",
        ) as ws:
            _wait_for_channels(client)
            client.post(
                "/api/v1/notifications",
                json={"user_id": "guest-2", "title": "Not yours", "message": "-"},
                headers=ADMIN,
            )
            client.post(
                "/api/v1/notifications",
                json={"user_id": "guest-1", "title": "Yours", "message": "-"},
                headers=ADMIN,
            )
            frame = ws.receive_json()
            assert frame["new"]["title"] == "Yours"

    def test_system_frames_on_transport_drop(self, client):
        with client.websocket_connect("/api/v1/feed?table=sos_alerts", headers=ADMIN) as ws:
            _wait_for_channels(client)
            feed = client.app.state.runtime.feed
            client.portal.call(_drop_and_restore, feed)
            assert ws.receive_json() == {"type": "system", "status": "disconnected"}
            assert ws.receive_json() == {"type": "system", "status": "reconnected"}


async def _drop_and_restore(feed):
    feed.disconnect_all()
    feed.reconnect_all()


# ═══════════════════════════════════════════════════════════════════════════
# Root and health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_root(self, client):
        data = client.get("/").json()
        assert "sos" in data["modules"]

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        names = {c["name"] for c in response.json()["components"]}
        assert {"store", "change_feed", "redis_relay", "dispatch"} <= names

    def test_deep_health(self, client):
        assert client.get("/health").json()["status"] in ("healthy", "degraded")
