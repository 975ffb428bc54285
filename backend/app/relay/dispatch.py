"""
dispatch.py — Human dispatch: WhatsApp deep links, map links, outbound
channels and the local dispatch ledger.

Dispatch is the out-of-band path to a human concierge. It does not depend
on the durable store: a guest whose alert failed to persist still gets a
ready-to-send message.

Message template:

    SOS! I need help. My location: https://maps.google.com/?q=<lat>,<lng>
    SOS! I need help. Location unavailable - please check my last known
    location in the app.

Deep link:

    https://wa.me/<digits>?text=<urlencoded message>

Channels:
    • DeepLinkChannel — hands the URL to an opener callback (the device)
    • WebhookChannel  — POSTs the dispatch record as JSON (httpx)

Every initiated dispatch is appended to the in-memory ledger and logged.
No delivery receipts exist, so none are tracked.
"""

from __future__ import annotations

import inspect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from backend.app.core.config import settings
from backend.app.core.errors import DispatchUnavailableError, ExternalServiceError
from backend.app.relay.models import Alert, GeoPoint, generate_id, utcnow

logger = logging.getLogger(__name__)


SOS_MESSAGE = "SOS! I need help."
LOCATION_UNAVAILABLE = "Location unavailable - please check my last known location in the app."

# Characters encodeURIComponent leaves untouched
_URI_COMPONENT_SAFE = "-_.!~*'()"


# ═══════════════════════════════════════════════════════════════════════════
# Link builders
# ═══════════════════════════════════════════════════════════════════════════

def maps_link(location: GeoPoint) -> str:
    return f"{settings.MAPS_BASE_URL}?q={location.query}"


def build_dispatch_message(location: Optional[GeoPoint]) -> str:
    if location is None:
        return f"{SOS_MESSAGE} {LOCATION_UNAVAILABLE}"
    return f"{SOS_MESSAGE} My location: {maps_link(location)}"


def normalise_phone(phone: str) -> str:
    """Digits only, as wa.me expects. Raises ValueError if none remain."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise ValueError(f"Not a phone number: {phone!r}")
    return digits


def whatsapp_url(phone: str, text: Optional[str] = None) -> str:
    url = f"{settings.WHATSAPP_BASE_URL.rstrip('/')}/{normalise_phone(phone)}"
    if text:
        url += "?text=" + quote(text, safe=_URI_COMPONENT_SAFE)
    return url


# ═══════════════════════════════════════════════════════════════════════════
# Ledger
# ═══════════════════════════════════════════════════════════════════════════

class DispatchPurpose(str, Enum):
    SOS             = "sos"               # guest → concierge
    CONTACT_SUBJECT = "contact_subject"   # responder → guest


@dataclass
class DispatchRecord:
    """One initiated dispatch."""
    purpose: DispatchPurpose
    target: str
    url: str
    message: Optional[str] = None
    alert_id: Optional[str] = None
    location: Optional[GeoPoint] = None
    channels: List[str] = field(default_factory=list)
    failed_channels: List[str] = field(default_factory=list)
    dispatch_id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dispatch_id": self.dispatch_id,
            "purpose": self.purpose.value,
            "alert_id": self.alert_id,
            "target": self.target,
            "url": self.url,
            "message": self.message,
            "location": self.location.to_dict() if self.location else None,
            "channels": list(self.channels),
            "failed_channels": list(self.failed_channels),
            "created_at": self.created_at.isoformat(),
        }


_dispatch_log: List[DispatchRecord] = []


def record_dispatch(record: DispatchRecord) -> None:
    _dispatch_log.append(record)


def get_dispatch_log(alert_id: Optional[str] = None) -> List[DispatchRecord]:
    if alert_id is None:
        return list(_dispatch_log)
    return [r for r in _dispatch_log if r.alert_id == alert_id]


def clear_dispatch_log() -> None:
    _dispatch_log.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Outbound channels
# ═══════════════════════════════════════════════════════════════════════════

class OutboundChannel(ABC):
    name: str = "outbound"

    @abstractmethod
    async def send(self, record: DispatchRecord) -> None:
        ...

    async def close(self) -> None:
        return None


class DeepLinkChannel(OutboundChannel):
    """Hands the deep link to the device (e.g. opens WhatsApp)."""

    name = "deep_link"

    def __init__(self, opener: Optional[Callable[[str], Any]] = None):
        self.opener = opener

    async def send(self, record: DispatchRecord) -> None:
        if self.opener is None:
            return
        result = self.opener(record.url)
        if inspect.isawaitable(result):
            await result


class WebhookChannel(OutboundChannel):
    """POSTs each dispatch record to an external endpoint."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds or settings.DISPATCH_WEBHOOK_TIMEOUT_SECONDS
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def send(self, record: DispatchRecord) -> None:
        client = await self._get_client()
        try:
            response = await client.post(self.url, json=record.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("dispatch_webhook", str(exc), url=self.url) from exc

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Bridge
# ═══════════════════════════════════════════════════════════════════════════

class DispatchBridge:
    """
    Builds dispatch links and hands them to every configured channel.

    Channel failures are logged and recorded on the DispatchRecord; they
    never propagate to the caller.
    """

    def __init__(
        self,
        channels: Optional[Sequence[OutboundChannel]] = None,
        *,
        concierge_number: Optional[str] = None,
    ):
        self.channels: List[OutboundChannel] = list(channels or [DeepLinkChannel()])
        self.concierge_number = normalise_phone(
            concierge_number or settings.CONCIERGE_WHATSAPP_NUMBER
        )

    def offer(self, location: Optional[GeoPoint]) -> str:
        """Deep link to the concierge for `location`; no side effects."""
        return whatsapp_url(self.concierge_number, build_dispatch_message(location))

    async def _send(self, record: DispatchRecord) -> DispatchRecord:
        for channel in self.channels:
            try:
                await channel.send(record)
                record.channels.append(channel.name)
            except Exception as exc:
                record.failed_channels.append(channel.name)
                logger.warning(
                    "[DISPATCH] %s channel failed: %s", channel.name, exc,
                    extra={"alert_id": record.alert_id},
                )
        record_dispatch(record)
        logger.warning(
            "[DISPATCH] %s → %s | alert=%s | channels=%s",
            record.purpose.value, record.target, record.alert_id,
            ",".join(record.channels) or "none",
            extra={"alert_id": record.alert_id},
        )
        return record

    async def dispatch(
        self,
        location: Optional[GeoPoint],
        *,
        alert_id: Optional[str] = None,
    ) -> DispatchRecord:
        """Guest path: send the SOS message to the concierge."""
        message = build_dispatch_message(location)
        record = DispatchRecord(
            purpose=DispatchPurpose.SOS,
            target=self.concierge_number,
            url=whatsapp_url(self.concierge_number, message),
            message=message,
            alert_id=alert_id,
            location=location,
        )
        return await self._send(record)

    async def dispatch_alert(self, alert: Alert) -> DispatchRecord:
        """Re-dispatch an active alert to the concierge."""
        if not alert.is_active:
            raise DispatchUnavailableError(alert.id, f"alert is {alert.status.value}")
        return await self.dispatch(alert.location, alert_id=alert.id)

    async def contact_subject(self, alert: Alert, phone: Optional[str]) -> DispatchRecord:
        """Responder path: open a chat with the guest who raised `alert`."""
        if not phone:
            raise DispatchUnavailableError(alert.id, "no phone number registered")
        try:
            target = normalise_phone(phone)
        except ValueError:
            raise DispatchUnavailableError(alert.id, "invalid phone number")
        record = DispatchRecord(
            purpose=DispatchPurpose.CONTACT_SUBJECT,
            target=target,
            url=whatsapp_url(target),
            alert_id=alert.id,
            location=alert.location,
        )
        return await self._send(record)

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()
