"""
sql_store.py — SQLAlchemy-backed record stores.

Same contract as stores.InMemoryStore, persisted in three tables:

    sos_alerts      id, user_id, lat, lng, status, notes, client_ref,
                    created_at, updated_at, resolved_at
    notifications   id, user_id, title, message, type, link, is_read,
                    created_at, updated_at
    messages        id, sender_id, recipient_id, content, is_read,
                    client_ref, created_at, updated_at

`client_ref` is unique, so a retried insert that raced its own first
attempt resolves to the original row instead of a duplicate.

Connection-level failures surface as TransientStoreError so callers can
retry; changes are published to the ChangeFeed only after commit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    String,
    Text,
    and_,
    or_,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base, close_db, get_engine, get_session_factory, init_db
from backend.app.core.errors import NotFoundError, TransientStoreError, ValidationError
from backend.app.relay.change_feed import ChangeFeed, ChangeKind
from backend.app.relay.models import COLUMNS, Table, as_utc
from backend.app.relay.stores import RecordStore, Stores, next_stamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIMESTAMP_COLUMNS = frozenset({"created_at", "updated_at", "resolved_at"})


# ═══════════════════════════════════════════════════════════════════════════
# ORM models
# ═══════════════════════════════════════════════════════════════════════════

class AlertModel(Base):
    __tablename__ = Table.ALERTS.value

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_ref: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationModel(Base):
    __tablename__ = Table.NOTIFICATIONS.value
    __table_args__ = (Index("ix_notifications_user_read", "user_id", "is_read"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(255), default="")
    message: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(40), default="general")
    link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class MessageModel(Base):
    __tablename__ = Table.MESSAGES.value

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sender_id: Mapped[str] = mapped_column(String(64), index=True)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    content: Mapped[str] = mapped_column(Text, default="")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    client_ref: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


MODELS: Dict[Table, Type[Base]] = {
    Table.ALERTS: AlertModel,
    Table.NOTIFICATIONS: NotificationModel,
    Table.MESSAGES: MessageModel,
}


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlStore(RecordStore):
    """RecordStore over one ORM model."""

    def __init__(
        self,
        table: Table,
        session_factory: async_sessionmaker,
        feed: Optional[ChangeFeed] = None,
        *,
        engine: Optional[AsyncEngine] = None,
    ):
        super().__init__(table, feed)
        self.model = MODELS[table]
        self._session_factory = session_factory
        self._engine = engine

    # ── Plumbing ──

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `fn` in one transaction; connection failures become transient."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning(
                "Store %s on %s failed: %s", operation, self.table.value, exc,
                extra={"table": self.table.value},
            )
            raise TransientStoreError(operation, str(exc), table=self.table.value) from exc

    def _to_row(self, obj: Any) -> Dict[str, Any]:
        row = {}
        for col in COLUMNS[self.table]:
            value = getattr(obj, col)
            row[col] = as_utc(value) if col in _TIMESTAMP_COLUMNS else value
        return row

    def _where(
        self,
        stmt: Any,
        filters: Optional[Mapping[str, Any]],
        any_of: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Any:
        def _eq(col: str, value: Any) -> Any:
            column = getattr(self.model, col)
            return column.is_(None) if value is None else column == value

        if filters:
            self._check_columns(filters)
            stmt = stmt.where(*[_eq(k, v) for k, v in filters.items()])
        if any_of:
            stmt = stmt.where(or_(*[
                and_(*[_eq(k, v) for k, v in group.items()]) for group in any_of
            ]))
        return stmt

    async def _find_by_client_ref(self, client_ref: str) -> Optional[str]:
        if "client_ref" not in COLUMNS[self.table]:
            return None

        async def _do(session: AsyncSession) -> Optional[str]:
            result = await session.execute(
                select(self.model.id).where(self.model.client_ref == client_ref)
            )
            return result.scalar_one_or_none()

        return await self._run("lookup", _do)

    # ── Operations ──

    async def insert(self, row: Mapping[str, Any], *, client_ref: Optional[str] = None) -> str:
        client_ref = client_ref or row.get("client_ref")
        if client_ref:
            existing = await self._find_by_client_ref(client_ref)
            if existing:
                logger.info(
                    "Duplicate insert on %s for client_ref %s → %s",
                    self.table.value, client_ref, existing,
                    extra={"table": self.table.value, "correlation_id": client_ref},
                )
                return existing

        prepared = self._prepare_insert(row, client_ref)

        async def _do(session: AsyncSession) -> None:
            session.add(self.model(**prepared))

        try:
            await self._run("insert", _do)
        except IntegrityError as exc:
            existing = await self._find_by_client_ref(client_ref) if client_ref else None
            if existing:
                return existing
            raise ValidationError(f"Insert rejected: {exc.orig}", table=self.table.value) from exc

        await self._publish(ChangeKind.INSERT, new=prepared)
        return prepared["id"]

    def _apply_changes(self, obj: Any, changes: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        old = self._to_row(obj)
        for key, value in changes.items():
            setattr(obj, key, value)
        obj.updated_at = next_stamp(old["updated_at"])
        return self._to_row(obj), old

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        changes = self._prepare_update(fields)

        async def _do(session: AsyncSession) -> Tuple[Dict[str, Any], Dict[str, Any]]:
            obj = await session.get(self.model, record_id, with_for_update=True)
            if obj is None:
                raise NotFoundError(self.table.value, id=record_id)
            return self._apply_changes(obj, changes)

        new, old = await self._run("update", _do)
        await self._publish(ChangeKind.UPDATE, new=new, old=old)
        return new

    async def update_where(
        self, filters: Mapping[str, Any], fields: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        changes = self._prepare_update(fields)

        async def _do(session: AsyncSession) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
            result = await session.execute(self._where(select(self.model), filters).with_for_update())
            return [self._apply_changes(obj, changes) for obj in result.scalars().all()]

        pairs = await self._run("update_where", _do)
        for new, old in pairs:
            await self._publish(ChangeKind.UPDATE, new=new, old=old)
        return [new for new, _ in pairs]

    async def delete(self, record_id: str) -> bool:
        async def _do(session: AsyncSession) -> Optional[Dict[str, Any]]:
            obj = await session.get(self.model, record_id)
            if obj is None:
                return None
            old = self._to_row(obj)
            await session.delete(obj)
            return old

        old = await self._run("delete", _do)
        if old is None:
            return False
        await self._publish(ChangeKind.DELETE, old=old)
        return True

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        async def _do(session: AsyncSession) -> Optional[Dict[str, Any]]:
            obj = await session.get(self.model, record_id)
            return self._to_row(obj) if obj is not None else None

        return await self._run("get", _do)

    async def query(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        any_of: Optional[Sequence[Mapping[str, Any]]] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        column = getattr(self.model, order_by)
        stmt = self._where(select(self.model), filters, any_of)
        stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async def _do(session: AsyncSession) -> List[Dict[str, Any]]:
            result = await session.execute(stmt)
            return [self._to_row(obj) for obj in result.scalars().all()]

        return await self._run("query", _do)

    async def prepare(self) -> None:
        await init_db(self._engine)

    async def ping(self) -> bool:
        async def _do(session: AsyncSession) -> bool:
            await session.execute(text("SELECT 1"))
            return True

        return await self._run("ping", _do)

    async def close(self) -> None:
        await close_db(self._engine)


def build_sql_stores(
    feed: Optional[ChangeFeed] = None,
    engine: Optional[AsyncEngine] = None,
) -> Stores:
    engine = engine or get_engine()
    factory = get_session_factory(engine)
    return Stores(
        alerts=SqlStore(Table.ALERTS, factory, feed, engine=engine),
        notifications=SqlStore(Table.NOTIFICATIONS, factory, feed, engine=engine),
        messages=SqlStore(Table.MESSAGES, factory, feed, engine=engine),
    )
