"""
identity.py — Contract with the external identity service.

The relay never authenticates anyone itself. It asks an IdentityProvider
for the current session and gets back a stable user id and role, or None
when nobody is signed in. User-scoped subscriptions are only opened after
the session has been resolved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from backend.app.relay.models import RESPONDER_ROLES, Role


@dataclass(frozen=True)
class Session:
    user_id: str
    role: Role = Role.GUEST

    @property
    def is_responder(self) -> bool:
        return self.role in RESPONDER_ROLES


class IdentityProvider(Protocol):
    async def get_current_session(self) -> Optional[Session]:
        ...


class StaticIdentity:
    """Identity provider that always returns the same session (or None)."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session

    async def get_current_session(self) -> Optional[Session]:
        return self._session
