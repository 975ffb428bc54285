"""
feedback.py — Best-effort sound and vibration cues.

A cue is strictly downstream of delivery: audio autoplay may be blocked,
vibration may be unsupported, a device may hang. None of that is allowed
to reach the reconciler or a store write. Every failure is swallowed and
logged at DEBUG; every device call is bounded by a short timeout.

    CueKind            Sound                    Vibration
    ────────────────   ──────────────────────   ─────────────────────────
    NEW_ALERT          ALERT_SOUND_CLIP @ 0.7   ALERT_VIBRATION_PATTERN
    NEW_NOTIFICATION   NOTIFICATION_SOUND_CLIP  —
    NEW_MESSAGE        NOTIFICATION_SOUND_CLIP  —
    SOS_SENT           —                        SOS_VIBRATION_PATTERN
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class CueKind(str, Enum):
    NEW_ALERT        = "new_alert"
    NEW_NOTIFICATION = "new_notification"
    NEW_MESSAGE      = "new_message"
    SOS_SENT         = "sos_sent"


class DeviceFeedback(Protocol):
    """Device capabilities. Either method may be sync or return an awaitable."""

    def play_sound(self, clip: str, volume: float) -> Optional[Awaitable[None]]:
        ...

    def vibrate(self, pattern: Sequence[int]) -> Optional[Awaitable[None]]:
        ...


@dataclass(frozen=True)
class FeedbackPermissions:
    sound: bool = True
    vibration: bool = True


class NullFeedback:
    """Headless device: cues go nowhere."""

    def play_sound(self, clip: str, volume: float) -> None:
        return None

    def vibrate(self, pattern: Sequence[int]) -> None:
        return None


def _plan(kind: CueKind) -> Tuple[Optional[str], float, Optional[List[int]]]:
    if kind == CueKind.NEW_ALERT:
        return settings.ALERT_SOUND_CLIP, settings.SOUND_VOLUME, list(settings.ALERT_VIBRATION_PATTERN)
    if kind in (CueKind.NEW_NOTIFICATION, CueKind.NEW_MESSAGE):
        return settings.NOTIFICATION_SOUND_CLIP, 1.0, None
    return None, 0.0, list(settings.SOS_VIBRATION_PATTERN)


class SensoryAlerter:
    """Fires cues on a DeviceFeedback without ever raising."""

    def __init__(
        self,
        device: Optional[DeviceFeedback] = None,
        *,
        permissions: Optional[FeedbackPermissions] = None,
        timeout_seconds: float = 1.0,
    ):
        self.device = device or NullFeedback()
        self.permissions = permissions or FeedbackPermissions()
        self.timeout_seconds = timeout_seconds
        self.fired: Dict[CueKind, int] = {}

    async def _invoke(self, label: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.timeout_seconds)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("[FEEDBACK] %s failed: %s", label, exc)
            return False

    async def cue(self, kind: CueKind) -> bool:
        """Play the cue for `kind`. Returns True if every part fired."""
        clip, volume, pattern = _plan(kind)
        ok = True

        if clip and self.permissions.sound:
            ok = await self._invoke("sound", self.device.play_sound, clip, volume) and ok
        if pattern and self.permissions.vibration:
            ok = await self._invoke("vibration", self.device.vibrate, pattern) and ok

        self.fired[kind] = self.fired.get(kind, 0) + 1
        return ok

    async def vibrate(self, pattern: Sequence[int]) -> bool:
        if not self.permissions.vibration:
            return False
        return await self._invoke("vibration", self.device.vibrate, list(pattern))
