"""
stores.py — Durable record stores (contract + in-memory implementation).

The stores are the ONLY writers of persisted state. Every committed write
is published to the ChangeFeed so subscribed sessions converge.

Contract (per table):
    insert(row, client_ref=None) → id        idempotent on client_ref
    update(id, fields)           → row        last-write-wins, bumps updated_at
    update_where(filters, fields)→ [row]      bulk update (mark all read)
    delete(id)                   → bool       administrative purge
    get(id)                      → row | None
    query(filters, ...)          → [row]      equality filters, newest first

`updated_at` is strictly increasing per row: a write landing within the
same clock tick as the previous one is stamped one microsecond later, so
readers can always order two versions of the same row.

Rows are plain dicts keyed by column name (see models.COLUMNS).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.relay.change_feed import ChangeFeed, ChangeKind
from backend.app.relay.models import (
    COLUMNS,
    Table,
    generate_id,
    utcnow,
)

logger = logging.getLogger(__name__)


# Column defaults applied on insert
TABLE_DEFAULTS: Dict[Table, Dict[str, Any]] = {
    Table.ALERTS: {"status": "pending"},
    Table.NOTIFICATIONS: {"type": "general", "is_read": False},
    Table.MESSAGES: {"is_read": False},
}

# Columns a caller may never set through update()
_IMMUTABLE_COLUMNS = frozenset({"id", "created_at", "client_ref"})


def next_stamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly after `previous`."""
    now = now or utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def row_matches(
    row: Mapping[str, Any],
    filters: Optional[Mapping[str, Any]] = None,
    any_of: Optional[Sequence[Mapping[str, Any]]] = None,
) -> bool:
    """Equality filters AND (any one of the `any_of` groups)."""
    if filters and any(row.get(k) != v for k, v in filters.items()):
        return False
    if any_of:
        return any(
            all(row.get(k) == v for k, v in group.items())
            for group in any_of
        )
    return True


# ═══════════════════════════════════════════════════════════════════════════
# Contract
# ═══════════════════════════════════════════════════════════════════════════

class RecordStore(ABC):
    """Row store for one table. Publishes committed writes to a ChangeFeed."""

    def __init__(self, table: Table, feed: Optional[ChangeFeed] = None):
        self.table = table
        self.feed = feed

    # ── Helpers shared by implementations ──

    def _check_columns(self, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - COLUMNS[self.table]
        if unknown:
            raise ValidationError(
                f"Unknown column(s) for {self.table.value}: {sorted(unknown)}",
                field=sorted(unknown)[0],
            )

    def _prepare_insert(self, row: Mapping[str, Any], client_ref: Optional[str]) -> Dict[str, Any]:
        self._check_columns(row)
        prepared: Dict[str, Any] = {col: None for col in COLUMNS[self.table]}
        prepared.update(TABLE_DEFAULTS.get(self.table, {}))
        prepared.update({k: v for k, v in row.items() if v is not None})
        prepared["id"] = prepared.get("id") or generate_id()
        prepared["created_at"] = prepared.get("created_at") or utcnow()
        prepared["updated_at"] = prepared.get("updated_at") or prepared["created_at"]
        if client_ref is not None and "client_ref" in COLUMNS[self.table]:
            prepared["client_ref"] = client_ref
        return prepared

    def _prepare_update(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        self._check_columns(fields)
        return {
            k: v for k, v in fields.items()
            if k not in _IMMUTABLE_COLUMNS and k != "updated_at"
        }

    async def _publish(
        self,
        kind: ChangeKind,
        new: Optional[Mapping[str, Any]] = None,
        old: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.feed is not None:
            await self.feed.publish(self.table.value, kind, new, old)

    # ── Operations ──

    @abstractmethod
    async def insert(self, row: Mapping[str, Any], *, client_ref: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update_where(
        self, filters: Mapping[str, Any], fields: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        any_of: Optional[Sequence[Mapping[str, Any]]] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def prepare(self) -> None:
        """Create backing tables if needed."""
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore(RecordStore):
    """
    Process-local store. Default backend for development, single-process
    deployments and tests.
    """

    def __init__(self, table: Table, feed: Optional[ChangeFeed] = None):
        super().__init__(table, feed)
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._by_client_ref: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._rows)

    async def insert(self, row: Mapping[str, Any], *, client_ref: Optional[str] = None) -> str:
        client_ref = client_ref or row.get("client_ref")
        if client_ref and client_ref in self._by_client_ref:
            existing = self._by_client_ref[client_ref]
            logger.info(
                "Duplicate insert on %s for client_ref %s → %s",
                self.table.value, client_ref, existing,
                extra={"table": self.table.value, "correlation_id": client_ref},
            )
            return existing

        prepared = self._prepare_insert(row, client_ref)
        if prepared["id"] in self._rows:
            raise ValidationError(f"Duplicate id {prepared['id']}", field="id")

        self._rows[prepared["id"]] = prepared
        if client_ref:
            self._by_client_ref[client_ref] = prepared["id"]

        await self._publish(ChangeKind.INSERT, new=dict(prepared))
        return prepared["id"]

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        current = self._rows.get(record_id)
        if current is None:
            raise NotFoundError(self.table.value, id=record_id)
        changes = self._prepare_update(fields)

        old = dict(current)
        current.update(changes)
        current["updated_at"] = next_stamp(old["updated_at"])

        await self._publish(ChangeKind.UPDATE, new=dict(current), old=old)
        return dict(current)

    async def update_where(
        self, filters: Mapping[str, Any], fields: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        ids = [rid for rid, row in self._rows.items() if row_matches(row, filters)]
        updated = []
        for rid in ids:
            updated.append(await self.update(rid, fields))
        return updated

    async def delete(self, record_id: str) -> bool:
        old = self._rows.pop(record_id, None)
        if old is None:
            return False
        if old.get("client_ref"):
            self._by_client_ref.pop(old["client_ref"], None)
        await self._publish(ChangeKind.DELETE, old=dict(old))
        return True

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(record_id)
        return dict(row) if row is not None else None

    async def query(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        any_of: Optional[Sequence[Mapping[str, Any]]] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [
            dict(row) for row in self._rows.values()
            if row_matches(row, filters, any_of)
        ]
        rows.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows


# ═══════════════════════════════════════════════════════════════════════════
# Wiring
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Stores:
    alerts: RecordStore
    notifications: RecordStore
    messages: RecordStore

    def for_table(self, table: Table) -> RecordStore:
        return {
            Table.ALERTS: self.alerts,
            Table.NOTIFICATIONS: self.notifications,
            Table.MESSAGES: self.messages,
        }[Table(table)]

    async def prepare(self) -> None:
        await self.alerts.prepare()

    async def ping(self) -> bool:
        return await self.alerts.ping()

    async def close(self) -> None:
        # SQL stores share one engine; closing any one disposes it
        await self.alerts.close()


def build_stores(feed: Optional[ChangeFeed] = None, backend: Optional[str] = None) -> Stores:
    """Create the three stores for the configured backend."""
    backend = (backend or settings.STORE_BACKEND).lower()

    if backend == "memory":
        return Stores(
            alerts=InMemoryStore(Table.ALERTS, feed),
            notifications=InMemoryStore(Table.NOTIFICATIONS, feed),
            messages=InMemoryStore(Table.MESSAGES, feed),
        )

    if backend == "sql":
        from backend.app.relay.sql_store import build_sql_stores
        return build_sql_stores(feed)

    raise ValueError(f"Unknown STORE_BACKEND: {backend}")
