"""
Tests for the in-memory record store.

Covers:
    - Idempotent insert on client_ref
    - Last-write-wins updates with strictly increasing updated_at
    - Bulk update, delete, filtered / ordered / limited queries
    - Every committed write published to the change feed

Run with: pytest tests/test_stores.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.relay.change_feed import ChangeFeed, ChangeFilter
from backend.app.relay.models import Table
from backend.app.relay.stores import InMemoryStore, build_stores, next_stamp, row_matches


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

T0 = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def _make_store(table: Table = Table.NOTIFICATIONS):
    feed = ChangeFeed(queue_size=100)
    channel = feed.channel("watch").add_filter(ChangeFilter(table=table.value))
    return InMemoryStore(table, feed), channel


def _drain(channel):
    items = []
    while channel.backlog:
        items.append(channel._queue.get_nowait())
    return items


def _notification(user_id: str = "u1", **overrides):
    row = {"user_id": user_id, "title": "Welcome", "message": "Check-in at 3pm"}
    row.update(overrides)
    return row


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestNextStamp:

    def test_uses_now_when_later(self):
        assert next_stamp(T0, now=T0 + timedelta(seconds=1)) == T0 + timedelta(seconds=1)

    def test_bumps_when_clock_has_not_moved(self):
        assert next_stamp(T0, now=T0) == T0 + timedelta(microseconds=1)

    def test_bumps_when_clock_went_backwards(self):
        assert next_stamp(T0, now=T0 - timedelta(seconds=5)) == T0 + timedelta(microseconds=1)


class TestRowMatches:

    def test_filters_and_any_of(self):
        row = {"sender_id": "g1", "recipient_id": None, "is_read": False}
        assert row_matches(row, {"is_read": False})
        assert row_matches(row, None, [{"sender_id": "x"}, {"sender_id": "g1"}])
        assert not row_matches(row, {"is_read": True}, [{"sender_id": "g1"}])


# ═══════════════════════════════════════════════════════════════════════════
# InMemoryStore
# ═══════════════════════════════════════════════════════════════════════════

class TestInsert:

    def test_defaults_applied_and_published(self):
        async def run():
            store, channel = _make_store()
            rid = await store.insert(_notification())
            row = await store.get(rid)
            assert row["is_read"] is False
            assert row["type"] == "general"
            assert row["updated_at"] == row["created_at"]
            events = _drain(channel)
            assert len(events) == 1
            assert events[0]["eventType"] == "INSERT"
            assert events[0]["new"]["id"] == rid

        asyncio.run(run())

    def test_idempotent_on_client_ref(self):
        async def run():
            store, channel = _make_store(Table.ALERTS)
            first = await store.insert({"user_id": "g1"}, client_ref="ref-1")
            second = await store.insert({"user_id": "g1"}, client_ref="ref-1")
            assert first == second
            assert len(store) == 1
            assert len(_drain(channel)) == 1

        asyncio.run(run())

    def test_unknown_column_rejected(self):
        async def run():
            store, _ = _make_store()
            with pytest.raises(ValidationError):
                await store.insert(_notification(colour="red"))

        asyncio.run(run())

    def test_duplicate_id_rejected(self):
        async def run():
            store, _ = _make_store()
            await store.insert(_notification(id="n1"))
            with pytest.raises(ValidationError):
                await store.insert(_notification(id="n1"))

        asyncio.run(run())


class TestUpdate:

    def test_updated_at_strictly_increases(self):
        async def run():
            store, _ = _make_store()
            rid = await store.insert(_notification(created_at=T0 + timedelta(days=3650)))
            first = await store.update(rid, {"is_read": True})
            second = await store.update(rid, {"is_read": False})
            assert first["updated_at"] > first["created_at"]
            assert second["updated_at"] > first["updated_at"]

        asyncio.run(run())

    def test_immutable_columns_ignored(self):
        async def run():
            store, _ = _make_store(Table.ALERTS)
            rid = await store.insert({"user_id": "g1", "created_at": T0}, client_ref="ref-1")
            row = await store.update(rid, {
                "id": "other", "created_at": T0 + timedelta(days=1),
                "client_ref": "ref-2", "status": "acknowledged",
            })
            assert row["id"] == rid
            assert row["created_at"] == T0
            assert row["client_ref"] == "ref-1"
            assert row["status"] == "acknowledged"

        asyncio.run(run())

    def test_publishes_new_and_old(self):
        async def run():
            store, channel = _make_store()
            rid = await store.insert(_notification())
            _drain(channel)
            await store.update(rid, {"is_read": True})
            (event,) = _drain(channel)
            assert event["eventType"] == "UPDATE"
            assert event["old"]["is_read"] is False
            assert event["new"]["is_read"] is True

        asyncio.run(run())

    def test_unknown_id(self):
        async def run():
            store, _ = _make_store()
            with pytest.raises(NotFoundError):
                await store.update("missing", {"is_read": True})

        asyncio.run(run())

    def test_update_where_only_touches_matches(self):
        async def run():
            store, _ = _make_store()
            await store.insert(_notification("u1"))
            await store.insert(_notification("u1"))
            await store.insert(_notification("u2"))
            updated = await store.update_where({"user_id": "u1", "is_read": False}, {"is_read": True})
            assert len(updated) == 2
            assert len(await store.query({"user_id": "u2", "is_read": False})) == 1

        asyncio.run(run())


class TestDeleteAndQuery:

    def test_delete_publishes_old_row(self):
        async def run():
            store, channel = _make_store()
            rid = await store.insert(_notification())
            _drain(channel)
            assert await store.delete(rid) is True
            assert await store.delete(rid) is False
            (event,) = _drain(channel)
            assert event["eventType"] == "DELETE"
            assert event["old"]["id"] == rid
            assert event["new"] == {}

        asyncio.run(run())

    def test_delete_frees_client_ref(self):
        async def run():
            store, _ = _make_store(Table.MESSAGES)
            first = await store.insert({"sender_id": "g1", "content": "hi"}, client_ref="r")
            await store.delete(first)
            second = await store.insert({"sender_id": "g1", "content": "hi"}, client_ref="r")
            assert second != first

        asyncio.run(run())

    def test_query_newest_first_with_limit(self):
        async def run():
            store, _ = _make_store()
            for i in range(5):
                await store.insert(_notification(title=f"n{i}", created_at=T0 + timedelta(minutes=i)))
            rows = await store.query({"user_id": "u1"}, limit=3)
            assert [r["title"] for r in rows] == ["n4", "n3", "n2"]
            oldest = await store.query(descending=False, limit=1)
            assert oldest[0]["title"] == "n0"

        asyncio.run(run())

    def test_query_any_of(self):
        async def run():
            store, _ = _make_store(Table.MESSAGES)
            await store.insert({"sender_id": "g1", "content": "help"})
            await store.insert({"sender_id": "admin-1", "recipient_id": "g1", "content": "coming"})
            await store.insert({"sender_id": "g2", "content": "towels"})
            rows = await store.query(any_of=[{"sender_id": "g1"}, {"recipient_id": "g1"}])
            assert {r["content"] for r in rows} == {"help", "coming"}

        asyncio.run(run())

    def test_get_returns_copy(self):
        async def run():
            store, _ = _make_store()
            rid = await store.insert(_notification())
            row = await store.get(rid)
            row["title"] = "mutated"
            assert (await store.get(rid))["title"] == "Welcome"

        asyncio.run(run())


class TestBuildStores:

    def test_memory_backend(self):
        stores = build_stores(ChangeFeed(), backend="memory")
        assert stores.for_table(Table.MESSAGES) is stores.messages
        assert stores.for_table("sos_alerts") is stores.alerts

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_stores(backend="mongo")
