"""
Tests for the SQLAlchemy record store (SQLite via aiosqlite).

Covers:
    - Table creation and ping
    - Idempotent insert on client_ref
    - Updates bump updated_at and publish old + new rows
    - Bulk update with NULL filters, any_of queries, ordering, limits
    - Delete publishes the old row
    - Connection failures surface as TransientStoreError

Run with: pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.core.database import create_engine_for
from backend.app.core.errors import NotFoundError, TransientStoreError, ValidationError
from backend.app.relay.change_feed import ChangeFeed, ChangeFilter
from backend.app.relay.models import Table
from backend.app.relay.sql_store import build_sql_stores


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _run_with_stores(db_path, body):
    """Create a fresh database, run `body(stores, channel)`, dispose the engine."""
    async def run():
        feed = ChangeFeed(queue_size=100)
        channel = feed.channel("probe")
        for table in Table:
            channel.add_filter(ChangeFilter(table=table.value))
        engine = create_engine_for(f"sqlite+aiosqlite:///{db_path}")
        stores = build_sql_stores(feed, engine)
        await stores.prepare()
        try:
            return await body(stores, channel)
        finally:
            await stores.close()

    return asyncio.run(run())


def _drain(channel):
    items = []
    while channel.backlog:
        items.append(channel._queue.get_nowait())
    return items


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "relay.db"


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_prepare_and_ping(self, db_path):
        async def body(stores, channel):
            return await stores.ping()

        assert _run_with_stores(db_path, body) is True

    def test_unreachable_database_is_transient(self, tmp_path):
        async def run():
            engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path}/missing/relay.db")
            stores = build_sql_stores(ChangeFeed(), engine)
            try:
                with pytest.raises(TransientStoreError):
                    await stores.alerts.get("a1")
            finally:
                await engine.dispose()

        asyncio.run(run())


# ═══════════════════════════════════════════════════════════════════════════
# Writes
# ═══════════════════════════════════════════════════════════════════════════

class TestInsert:

    def test_insert_and_get(self, db_path):
        async def body(stores, channel):
            alert_id = await stores.alerts.insert(
                {"user_id": "guest-1", "status": "pending", "lat": 9.64, "lng": -83.67},
            )
            row = await stores.alerts.get(alert_id)
            assert row["user_id"] == "guest-1"
            assert row["lat"] == 9.64
            assert row["created_at"].tzinfo is not None
            assert row["resolved_at"] is None

            items = _drain(channel)
            assert len(items) == 1
            assert items[0]["eventType"] == "INSERT"
            assert items[0]["new"]["id"] == alert_id

        _run_with_stores(db_path, body)

    def test_client_ref_idempotent(self, db_path):
        async def body(stores, channel):
            first = await stores.alerts.insert({"user_id": "guest-1"}, client_ref="press-1")
            second = await stores.alerts.insert({"user_id": "guest-1"}, client_ref="press-1")
            assert first == second
            assert len(await stores.alerts.query()) == 1
            assert len(_drain(channel)) == 1

        _run_with_stores(db_path, body)

    def test_unknown_column_rejected(self, db_path):
        async def body(stores, channel):
            with pytest.raises(ValidationError):
                await stores.notifications.insert({"user_id": "u1", "priority": "high"})

        _run_with_stores(db_path, body)


class TestUpdate:

    def test_update_bumps_stamp_and_publishes(self, db_path):
        async def body(stores, channel):
            alert_id = await stores.alerts.insert({"user_id": "guest-1", "status": "pending"})
            before = await stores.alerts.get(alert_id)
            _drain(channel)

            row = await stores.alerts.update(alert_id, {"status": "acknowledged"})
            assert row["status"] == "acknowledged"
            assert row["updated_at"] > before["updated_at"]
            assert row["created_at"] == before["created_at"]

            items = _drain(channel)
            assert items[0]["eventType"] == "UPDATE"
            assert items[0]["old"]["status"] == "pending"
            assert items[0]["new"]["status"] == "acknowledged"

        _run_with_stores(db_path, body)

    def test_update_missing(self, db_path):
        async def body(stores, channel):
            with pytest.raises(NotFoundError):
                await stores.alerts.update("nope", {"status": "resolved"})

        _run_with_stores(db_path, body)

    def test_update_where_null_filter(self, db_path):
        async def body(stores, channel):
            messages = stores.messages
            await messages.insert({"sender_id": "guest-1", "content": "hi"})
            await messages.insert({"sender_id": "guest-1", "recipient_id": "admin-1", "content": "x"})
            await messages.insert({"sender_id": "admin-1", "recipient_id": "guest-1", "content": "hello"})

            updated = await messages.update_where(
                {"sender_id": "guest-1", "recipient_id": None, "is_read": False},
                {"is_read": True},
            )
            assert [r["content"] for r in updated] == ["hi"]

        _run_with_stores(db_path, body)


class TestDeleteAndQuery:

    def test_delete(self, db_path):
        async def body(stores, channel):
            nid = await stores.notifications.insert({"user_id": "u1", "title": "t", "message": "m"})
            _drain(channel)
            assert await stores.notifications.delete(nid) is True
            assert await stores.notifications.delete(nid) is False
            items = _drain(channel)
            assert len(items) == 1
            assert items[0]["eventType"] == "DELETE"
            assert items[0]["old"]["id"] == nid

        _run_with_stores(db_path, body)

    def test_any_of_and_order(self, db_path):
        async def body(stores, channel):
            messages = stores.messages
            for sender, recipient, content in [
                ("guest-1", None, "one"),
                ("admin-1", "guest-1", "two"),
                ("guest-2", None, "other"),
                ("guest-1", None, "three"),
            ]:
                await messages.insert({"sender_id": sender, "recipient_id": recipient, "content": content})

            rows = await messages.query(
                any_of=[{"sender_id": "guest-1"}, {"recipient_id": "guest-1"}],
                descending=False,
            )
            assert [r["content"] for r in rows] == ["one", "two", "three"]

            latest = await messages.query(limit=2)
            assert [r["content"] for r in latest] == ["three", "other"]

        _run_with_stores(db_path, body)
