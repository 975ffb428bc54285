"""
Pydantic schemas for the relay HTTP API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, background workers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from backend.app.relay.models import AlertStatus


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class LocationOut(BaseModel):
    lat: float
    lng: float


# ---------------------------------------------------------------------------
# SOS
# ---------------------------------------------------------------------------

class SOSRequest(BaseModel):
    """
    Body for POST /api/v1/sos.

    Location is optional: a device whose geolocation failed or timed out
    sends neither coordinate.
    """
    lat: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[9.64])
    lng: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[-83.67])
    client_ref: Optional[str] = Field(
        None, max_length=64,
        description="Device-generated correlation id; makes retries idempotent",
    )

    @model_validator(mode="after")
    def _both_or_neither(self) -> "SOSRequest":
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")
        return self


class SOSResponse(BaseModel):
    client_ref: str
    persisted: bool
    alert_id: Optional[str] = None
    location: Optional[LocationOut] = None
    dispatch_url: Optional[str] = None
    dispatch_message: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AlertOut(BaseModel):
    id: str
    subject_user_id: str
    status: AlertStatus
    location: Optional[LocationOut] = None
    created_at: str
    updated_at: str
    resolved_at: Optional[str] = None
    notes: Optional[str] = None


class AlertListResponse(BaseModel):
    total: int
    active: int
    alerts: List[AlertOut]


class TransitionRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000, examples=["Guest escorted to clinic"])


class TransitionResponse(BaseModel):
    alert: AlertOut
    changed: bool = Field(..., description="False when the request was a no-op")


class DispatchLinkResponse(BaseModel):
    alert_id: str
    url: str
    message: str


class ContactRequest(BaseModel):
    phone: Optional[str] = Field(None, examples=["+506 8831-8381"])


class DispatchRecordOut(BaseModel):
    dispatch_id: str
    purpose: str
    alert_id: Optional[str] = None
    target: str
    url: str
    message: Optional[str] = None
    location: Optional[LocationOut] = None
    channels: List[str] = Field(default_factory=list)
    failed_channels: List[str] = Field(default_factory=list)
    created_at: str


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationCreate(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["guest-42"])
    title: str = Field(..., min_length=1, max_length=255, examples=["Room ready"])
    message: str = Field(..., examples=["Your room is ready for check-in."])
    type: str = Field("general", max_length=40)
    link: Optional[str] = Field(None, max_length=500, examples=["/dashboard"])


class NotificationOut(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: str
    link: Optional[str] = None
    is_read: bool
    created_at: str
    updated_at: str


class NotificationListResponse(BaseModel):
    unread: int
    notifications: List[NotificationOut]


class BulkUpdateResponse(BaseModel):
    updated: int


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000)
    recipient_id: Optional[str] = Field(
        None, description="Guest being answered; omitted by guests (admin pool)",
    )
    client_ref: Optional[str] = Field(None, max_length=64)


class MessageOut(BaseModel):
    id: str
    sender_id: str
    recipient_id: Optional[str] = None
    content: str
    is_read: bool
    created_at: str
    updated_at: str
    client_ref: Optional[str] = None


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

class FeedFrame(BaseModel):
    """One frame on the WebSocket change stream."""
    type: str = Field(..., description="'change' or 'system'")
    status: Optional[str] = None
    table: Optional[str] = None
    eventType: Optional[str] = None
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
