"""
state_machine.py — Alert lifecycle rules.

═══════════════════════════════════════════════════════════════════════════
STATES AND EDGES
═══════════════════════════════════════════════════════════════════════════

    pending ──▶ acknowledged ──▶ resolved
       │              │
       │              └────────▶ false_alarm
       ├───────────────────────▶ resolved
       └───────────────────────▶ false_alarm

    `pending` is the only initial state. `resolved` and `false_alarm` are
    terminal. `resolved_at` is non-null iff the status is terminal.

Concurrent responders race freely; the store is last-write-wins. To keep
that harmless, any normal transition requested on a terminal alert, or to
the state the alert is already in, is a NO-OP rather than an error: the
second of two "Resolve" clicks simply finds the work done.

Reopen (terminal → pending) is not an edge of the machine. It is an
explicit administrative override that clears `resolved_at`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from backend.app.core.errors import InvalidTransitionError, PermissionDeniedError
from backend.app.relay.identity import Session
from backend.app.relay.models import (
    Alert,
    AlertStatus,
    RESPONDER_ROLES,
    Role,
    TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: FrozenSet[Tuple[AlertStatus, AlertStatus]] = frozenset({
    (AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED),
    (AlertStatus.PENDING, AlertStatus.RESOLVED),
    (AlertStatus.PENDING, AlertStatus.FALSE_ALARM),
    (AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED),
    (AlertStatus.ACKNOWLEDGED, AlertStatus.FALSE_ALARM),
})


def check_responder(actor: Session, alert: Alert, action: str) -> None:
    """Only responders, and never the alert's own subject, may act on it."""
    if actor.role not in RESPONDER_ROLES:
        raise PermissionDeniedError(action, actor.role.value)
    if actor.user_id == alert.subject_user_id:
        raise PermissionDeniedError(action, actor.role.value)


def plan_transition(
    alert: Alert,
    target: AlertStatus,
    *,
    now: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Compute the row changes that move `alert` to `target`.

    Returns
    -------
    dict | None
        Column changes to write, or None when the request is a no-op
        (already in `target`, or alert is terminal).

    Raises
    ------
    InvalidTransitionError
        For a backward edge such as acknowledged → pending.
    """
    if alert.is_terminal:
        logger.info(
            "Alert %s already %s; %s request is a no-op",
            alert.id, alert.status.value, target.value,
            extra={"alert_id": alert.id},
        )
        return None

    if alert.status == target:
        return None

    if (alert.status, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(alert.id, alert.status.value, target.value)

    now = now or utcnow()
    changes: Dict[str, Any] = {"status": target.value}
    if target in TERMINAL_STATUSES:
        changes["resolved_at"] = now
    if notes is not None:
        changes["notes"] = notes
    return changes


def plan_reopen(alert: Alert, actor: Session) -> Optional[Dict[str, Any]]:
    """
    Administrative override: reset a terminal alert to pending.

    Admin only. Reopening a non-terminal alert is a no-op.
    """
    if actor.role != Role.ADMIN:
        raise PermissionDeniedError("reopen alert", actor.role.value)
    if not alert.is_terminal:
        return None
    logger.warning(
        "Alert %s reopened by %s (was %s)",
        alert.id, actor.user_id, alert.status.value,
        extra={"alert_id": alert.id},
    )
    return {"status": AlertStatus.PENDING.value, "resolved_at": None}
