"""
models.py — Shared data structures for the SOS relay.

Defines:
    • AlertStatus   — alert lifecycle states
    • Role          — platform roles; responders are admin + staff
    • Table         — collections carried by the stores and the change feed
    • GeoPoint      — latitude/longitude pair
    • Alert         — one emergency signal
    • Notification  — one per-user inbox entry
    • Message       — one chat entry between a guest and the admin pool

═══════════════════════════════════════════════════════════════════════════
ROWS AND RECORDS
═══════════════════════════════════════════════════════════════════════════

Stores and the change feed speak in *rows*: flat dicts whose keys are the
column names of the backing tables (`user_id`, `lat`, `lng`, `is_read`...).
Everything above the store speaks in *records*: frozen dataclasses.

    row  ── Record.from_row() ──▶  record
    row  ◀── record.to_row() ───   record

Records are immutable. A merge produces a new record via `merged()`, so a
reader can never observe a half-applied update.

Every row carries `updated_at`. For notifications and messages it defaults
to `created_at`. All timestamps are timezone-aware UTC; naive values coming
back from a driver are interpreted as UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Type, TypeVar, Union


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    PENDING      = "pending"        # raised, nobody has responded yet
    ACKNOWLEDGED = "acknowledged"   # a responder is on it
    RESOLVED     = "resolved"       # terminal
    FALSE_ALARM  = "false_alarm"    # terminal


TERMINAL_STATUSES: FrozenSet[AlertStatus] = frozenset({
    AlertStatus.RESOLVED,
    AlertStatus.FALSE_ALARM,
})


class Role(str, Enum):
    """Platform roles as issued by the identity service."""
    ADMIN       = "admin"
    STAFF       = "staff"
    GUEST       = "guest"
    TRIBE       = "tribe"
    FACILITATOR = "facilitator"


RESPONDER_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.STAFF})


class Table(str, Enum):
    """Collections in the durable store (names match the backing tables)."""
    ALERTS        = "sos_alerts"
    NOTIFICATIONS = "notifications"
    MESSAGES      = "messages"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_id() -> str:
    return str(uuid.uuid4())


def generate_client_ref() -> str:
    """Client-side correlation id for idempotent inserts."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Coerce a datetime or ISO string to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


R = TypeVar("R", bound="BaseRecord")


class BaseRecord:
    """Row ↔ record conversion shared by every record type."""

    table: Table

    id: str
    created_at: datetime
    updated_at: datetime

    def to_row(self) -> Dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_row(cls: Type[R], row: Mapping[str, Any]) -> R:
        raise NotImplementedError

    def merged(self: R, changes: Mapping[str, Any]) -> R:
        """Return a new record with row-level `changes` applied."""
        row = self.to_row()
        row.update(changes)
        return type(self).from_row(row)

    def matches(self, changes: Mapping[str, Any]) -> bool:
        """True if every column in `changes` already holds that value."""
        row = self.to_row()
        return all(row.get(k) == v for k, v in changes.items())

    @property
    def version(self):
        """Dedup key for user-visible side effects."""
        return (self.id, self.updated_at)


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""
    lat: float
    lng: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"latitude out of range: {self.lat}")
        if not -180.0 <= self.lng <= 180.0:
            raise ValueError(f"longitude out of range: {self.lng}")

    @property
    def query(self) -> str:
        """`lat,lng` as used in map links."""
        return f"{self.lat},{self.lng}"

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Alert(BaseRecord):
    """
    One emergency signal.

    Attributes
    ----------
    id : str
        Server-assigned identifier.
    subject_user_id : str
        Guest who raised the alert.
    status : AlertStatus
        Lifecycle state; see state_machine.
    location : GeoPoint | None
        Absent when geolocation failed or timed out.
    resolved_at : datetime | None
        Set iff status is terminal.
    notes : str | None
        Free text set by a responder.
    client_ref : str | None
        Correlation id generated by the reporting device.
    """
    table = Table.ALERTS

    id: str
    subject_user_id: str
    status: AlertStatus
    created_at: datetime
    updated_at: datetime
    location: Optional[GeoPoint] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
    client_ref: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.PENDING

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.subject_user_id,
            "lat": self.location.lat if self.location else None,
            "lng": self.location.lng if self.location else None,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
            "notes": self.notes,
            "client_ref": self.client_ref,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Alert":
        lat, lng = row.get("lat"), row.get("lng")
        created = as_utc(row["created_at"])
        return cls(
            id=str(row["id"]),
            subject_user_id=str(row["user_id"]),
            status=AlertStatus(row["status"]),
            created_at=created,
            updated_at=as_utc(row.get("updated_at")) or created,
            location=(
                GeoPoint(float(lat), float(lng))
                if lat is not None and lng is not None else None
            ),
            resolved_at=as_utc(row.get("resolved_at")),
            notes=row.get("notes"),
            client_ref=row.get("client_ref"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_user_id": self.subject_user_id,
            "status": self.status.value,
            "location": self.location.to_dict() if self.location else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "resolved_at": _iso(self.resolved_at),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class Notification(BaseRecord):
    """One addressable inbox entry owned by exactly one user."""
    table = Table.NOTIFICATIONS

    id: str
    user_id: str
    title: str
    message: str
    created_at: datetime
    updated_at: datetime
    type: str = "general"
    link: Optional[str] = None
    is_read: bool = False

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "link": self.link,
            "is_read": self.is_read,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        created = as_utc(row["created_at"])
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "",
            message=row.get("message") or "",
            type=row.get("type") or "general",
            link=row.get("link"),
            is_read=bool(row.get("is_read", False)),
            created_at=created,
            updated_at=as_utc(row.get("updated_at")) or created,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["created_at"] = _iso(self.created_at)
        d["updated_at"] = _iso(self.updated_at)
        return d


@dataclass(frozen=True)
class Message(BaseRecord):
    """
    One chat entry. `recipient_id` None means the general admin-pool inbox.
    """
    table = Table.MESSAGES

    id: str
    sender_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    recipient_id: Optional[str] = None
    is_read: bool = False
    client_ref: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "content": self.content,
            "is_read": self.is_read,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "client_ref": self.client_ref,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        created = as_utc(row["created_at"])
        return cls(
            id=str(row["id"]),
            sender_id=str(row["sender_id"]),
            recipient_id=row.get("recipient_id"),
            content=row.get("content") or "",
            is_read=bool(row.get("is_read", False)),
            created_at=created,
            updated_at=as_utc(row.get("updated_at")) or created,
            client_ref=row.get("client_ref"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["created_at"] = _iso(self.created_at)
        d["updated_at"] = _iso(self.updated_at)
        return d


RECORD_TYPES: Dict[Table, Type[BaseRecord]] = {
    Table.ALERTS: Alert,
    Table.NOTIFICATIONS: Notification,
    Table.MESSAGES: Message,
}

# Columns each table accepts on insert/update
COLUMNS: Dict[Table, FrozenSet[str]] = {
    Table.ALERTS: frozenset({
        "id", "user_id", "lat", "lng", "status", "created_at",
        "updated_at", "resolved_at", "notes", "client_ref",
    }),
    Table.NOTIFICATIONS: frozenset({
        "id", "user_id", "title", "message", "type", "link", "is_read",
        "created_at", "updated_at",
    }),
    Table.MESSAGES: frozenset({
        "id", "sender_id", "recipient_id", "content", "is_read",
        "created_at", "updated_at", "client_ref",
    }),
}
