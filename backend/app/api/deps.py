"""
FastAPI dependencies: runtime access and caller identity.

The external identity service sits in front of the API and forwards the
resolved caller as headers:

    X-User-Id:   stable user id
    X-User-Role: admin | staff | guest | tribe | facilitator
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from backend.app.core.errors import PermissionDeniedError, ValidationError
from backend.app.relay.identity import Session
from backend.app.relay.models import Role
from backend.app.relay.runtime import RelayRuntime


def get_runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime


def parse_session(user_id: Optional[str], role: Optional[str]) -> Optional[Session]:
    if not user_id:
        return None
    try:
        parsed = Role((role or Role.GUEST.value).lower())
    except ValueError:
        raise ValidationError(f"Unknown role: {role}", field="X-User-Role")
    return Session(user_id=user_id, role=parsed)


def get_session(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Optional[Session]:
    return parse_session(x_user_id, x_user_role)


def require_session(session: Optional[Session] = Depends(get_session)) -> Session:
    if session is None:
        raise PermissionDeniedError("call this endpoint without signing in")
    return session


def require_responder(session: Session = Depends(require_session)) -> Session:
    if not session.is_responder:
        raise PermissionDeniedError("access responder endpoints", session.role.value)
    return session
