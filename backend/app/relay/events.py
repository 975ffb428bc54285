"""
events.py — Validated decode of raw change-feed payloads.

Raw payloads are loosely typed dicts. Nothing reaches the reconciler until
it has been decoded here into a tagged ChangeEvent carrying a fully typed
domain record:

    {"table": "sos_alerts", "eventType": "UPDATE", "new": {...}, "old": {...}}
        │
        ▼  decode_change()
    ChangeEvent(kind=UPDATE, table=ALERTS, record_id="…", record=Alert(...))

Rules:
    • eventType accepted as INSERT/UPDATE/DELETE in either case
    • insert/update must carry a complete `new` row for the table
    • delete carries only the id, taken from `old` (or `new` if absent)
    • naive timestamps are read as UTC; updated_at defaults to created_at
    • anything else raises MalformedEventError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from backend.app.core.errors import MalformedEventError
from backend.app.relay.change_feed import ChangeKind
from backend.app.relay.models import (
    Alert,
    AlertStatus,
    BaseRecord,
    Message,
    Notification,
    Table,
    as_utc,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Row models
# ═══════════════════════════════════════════════════════════════════════════

class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def _default_updated_at(self) -> "_Row":
        if self.updated_at is None:
            self.updated_at = self.created_at
        return self


class AlertRow(_Row):
    user_id: str
    status: AlertStatus
    lat: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    lng: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
    client_ref: Optional[str] = None

    @field_validator("resolved_at", mode="after")
    @classmethod
    def _resolved_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class NotificationRow(_Row):
    user_id: str
    title: str = ""
    message: str = ""
    type: str = "general"
    link: Optional[str] = None
    is_read: bool = False


class MessageRow(_Row):
    sender_id: str
    recipient_id: Optional[str] = None
    content: str = ""
    is_read: bool = False
    client_ref: Optional[str] = None


ROW_MODELS: Dict[Table, Type[_Row]] = {
    Table.ALERTS: AlertRow,
    Table.NOTIFICATIONS: NotificationRow,
    Table.MESSAGES: MessageRow,
}

_RECORDS: Dict[Table, Type[BaseRecord]] = {
    Table.ALERTS: Alert,
    Table.NOTIFICATIONS: Notification,
    Table.MESSAGES: Message,
}


# ═══════════════════════════════════════════════════════════════════════════
# Tagged event
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChangeEvent:
    """
    One decoded change.

    `record` is None for deletes; `old` is the prior record when the
    payload carried a complete previous row.
    """
    kind: ChangeKind
    table: Table
    record_id: str
    record: Optional[BaseRecord] = None
    old: Optional[BaseRecord] = None


def decode_record(table: Table, row: Mapping[str, Any]) -> BaseRecord:
    """Validate a row for `table` and convert it to its domain record."""
    try:
        parsed = ROW_MODELS[table].model_validate(dict(row))
    except PydanticValidationError as exc:
        raise MalformedEventError(
            f"invalid {table.value} row",
            table=table.value,
            errors=[e.get("loc") for e in exc.errors()],
        ) from exc
    return _RECORDS[table].from_row(parsed.model_dump())


def decode_change(payload: Any) -> ChangeEvent:
    """
    Decode one raw payload.

    Raises
    ------
    MalformedEventError
        Unknown table or event type, missing or invalid rows.
    """
    if not isinstance(payload, Mapping):
        raise MalformedEventError("payload is not an object")

    try:
        table = Table(payload.get("table"))
    except ValueError:
        raise MalformedEventError("unknown table", table=payload.get("table"))

    raw_kind = payload.get("eventType") or payload.get("event_type")
    try:
        kind = ChangeKind(str(raw_kind).lower())
    except ValueError:
        raise MalformedEventError("unknown event type", event_type=raw_kind)

    new = payload.get("new") or {}
    old = payload.get("old") or {}
    if not isinstance(new, Mapping) or not isinstance(old, Mapping):
        raise MalformedEventError("rows must be objects", table=table.value)

    if kind == ChangeKind.DELETE:
        record_id = old.get("id") or new.get("id")
        if not record_id:
            raise MalformedEventError("delete without id", table=table.value)
        return ChangeEvent(kind=kind, table=table, record_id=str(record_id))

    if not new:
        raise MalformedEventError(f"{kind.value} without new row", table=table.value)

    record = decode_record(table, new)
    previous = None
    if old:
        try:
            previous = decode_record(table, old)
        except MalformedEventError:
            # Partial `old` rows are common and carry nothing we need
            previous = None
    return ChangeEvent(
        kind=kind,
        table=table,
        record_id=record.id,
        record=record,
        old=previous,
    )
