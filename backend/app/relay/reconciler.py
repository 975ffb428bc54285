"""
reconciler.py — DeliveryReconciler: snapshot + live events + optimistic
writes merged into one consistent local view.

═══════════════════════════════════════════════════════════════════════════
STATE
═══════════════════════════════════════════════════════════════════════════

    confirmed   id → record        server truth as last seen
    overlay     id → PendingWrite  optimistic field changes awaiting echo
    temp        client_ref → PendingWrite (+ temp record "temp-<ref>")
    tombstones  {id}               deleted ids; never resurrected
    ledger      {(id, updated_at)} versions that already produced a cue

    visible view = confirmed ⊕ overlay ∪ temp

═══════════════════════════════════════════════════════════════════════════
MERGE RULES
═══════════════════════════════════════════════════════════════════════════

    insert  held with equal updated_at         → DUPLICATE
            held with newer updated_at         → IGNORED_STALE
            otherwise                          → APPLIED
    update  older than held                    → IGNORED_STALE
            equal to held                      → DUPLICATE
            unknown id                         → treated as insert
    delete  remove + tombstone                 → REMOVED
    any     record fails the scope predicate   → OUT_OF_SCOPE (no effect)
    any     id is tombstoned                   → IGNORED_STALE

Per-id `updated_at` comparison is the only ordering relied upon, so a
terminal alert can never be moved backward by a late, older event.

A cue (sound / toast) is queued only when a record transitions INTO the
attention predicate, was not already visible in that state, is not the
echo of this session's own optimistic write, and its (id, updated_at)
pair has not cued before. The initial snapshot never cues.

Anything unexpected raised while merging is re-raised as ReconcileError;
the owner is expected to resync rather than keep a possibly inconsistent
view.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from backend.app.core.config import settings
from backend.app.core.errors import (
    NotFoundError,
    OptimisticWriteTimeout,
    ReconcileError,
    RelayError,
)
from backend.app.relay.change_feed import ChangeKind
from backend.app.relay.events import ChangeEvent
from backend.app.relay.models import BaseRecord, utcnow

logger = logging.getLogger(__name__)


Predicate = Callable[[BaseRecord], bool]


class MergeOutcome(str, Enum):
    APPLIED       = "applied"
    DUPLICATE     = "duplicate"
    IGNORED_STALE = "ignored_stale"
    REMOVED       = "removed"
    OUT_OF_SCOPE  = "out_of_scope"


@dataclass
class PendingWrite:
    """
    One optimistic write awaiting confirmation.

    `future` resolves with the confirmed record, or fails with
    OptimisticWriteTimeout / the write error. Cancelled on close().
    """
    entity_id: str
    changes: Dict[str, Any]
    future: "asyncio.Future[Optional[BaseRecord]]"
    client_ref: Optional[str] = None
    record: Optional[BaseRecord] = None          # temp record for inserts
    confirm_on: Optional[Tuple[str, ...]] = None  # None → every changed column
    timer: Optional[asyncio.TimerHandle] = None
    started_at: datetime = field(default_factory=utcnow)

    @property
    def done(self) -> bool:
        return self.future.done()

    def confirmed_by(self, record: BaseRecord) -> bool:
        keys = self.confirm_on if self.confirm_on is not None else tuple(self.changes)
        return record.matches({k: self.changes[k] for k in keys if k in self.changes})

    def __await__(self):
        return self.future.__await__()


def _accept_all(_record: BaseRecord) -> bool:
    return True


class DeliveryReconciler:
    """
    Merge engine for one live view. Not thread-safe; owned by one event
    loop and driven sequentially by its view.
    """

    def __init__(
        self,
        *,
        in_scope: Predicate = _accept_all,
        attention: Optional[Predicate] = None,
        on_error: Optional[Callable[[RelayError], None]] = None,
        confirm_timeout: Optional[float] = None,
    ):
        self.in_scope = in_scope
        self.attention = attention
        self.on_error = on_error
        self.confirm_timeout = (
            confirm_timeout if confirm_timeout is not None
            else settings.OPTIMISTIC_CONFIRM_TIMEOUT_SECONDS
        )

        self._confirmed: Dict[str, BaseRecord] = {}
        self._overlay: Dict[str, PendingWrite] = {}
        self._temp: Dict[str, PendingWrite] = {}
        self._tombstones: Set[str] = set()
        self._ledger: Set[Tuple[str, datetime]] = set()
        self._cues: List[BaseRecord] = []
        self.seeded = False

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    def get(self, record_id: str) -> Optional[BaseRecord]:
        """Visible record for `record_id` (overlay applied), or None."""
        for pending in self._temp.values():
            if pending.entity_id == record_id:
                return pending.record
        confirmed = self._confirmed.get(record_id)
        if confirmed is None:
            return None
        pending = self._overlay.get(record_id)
        return confirmed.merged(pending.changes) if pending else confirmed

    def confirmed(self, record_id: str) -> Optional[BaseRecord]:
        return self._confirmed.get(record_id)

    def records(self) -> List[BaseRecord]:
        """Visible view, newest first."""
        visible: List[BaseRecord] = [
            self.get(rid) for rid in self._confirmed
        ]
        visible.extend(p.record for p in self._temp.values())
        visible.sort(key=lambda r: r.created_at, reverse=True)
        return visible

    def count(self, predicate: Predicate) -> int:
        return sum(1 for r in self.records() if predicate(r))

    def is_pending(self, record_id: str) -> bool:
        return record_id in self._overlay or any(
            p.entity_id == record_id for p in self._temp.values()
        )

    def is_tombstoned(self, record_id: str) -> bool:
        return record_id in self._tombstones

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._temp)

    def pop_cues(self) -> List[BaseRecord]:
        """Records that earned a user-visible cue since the last call."""
        cues, self._cues = self._cues, []
        return cues

    # ═══════════════════════════════════════════════════════════════════
    # Snapshot
    # ═══════════════════════════════════════════════════════════════════

    def seed(
        self,
        records: Iterable[BaseRecord],
        *,
        initial: bool = False,
        complete: bool = True,
    ) -> int:
        """
        Merge a fetched snapshot.

        initial   first load after mount: never cues
        complete  snapshot covers the whole scope: held ids missing from it
                  were deleted while disconnected and are removed
        Returns the number of records applied.
        """
        applied = 0
        seen: Set[str] = set()
        for record in records:
            if not self.in_scope(record):
                continue
            seen.add(record.id)
            if record.id in self._tombstones:
                continue
            held = self._confirmed.get(record.id)
            if held is not None and held.updated_at >= record.updated_at:
                continue
            self._claim_temp(record)
            if initial:
                self._ledger.add(record.version)
            else:
                self._maybe_cue(held, record)
            self._confirmed[record.id] = record
            self._check_overlay(record)
            applied += 1

        if complete:
            for rid in [rid for rid in self._confirmed if rid not in seen]:
                self._remove(rid)

        self.seeded = True
        logger.debug(
            "Seeded %d record(s) (initial=%s, complete=%s)",
            applied, initial, complete,
        )
        return applied

    # ═══════════════════════════════════════════════════════════════════
    # Live events
    # ═══════════════════════════════════════════════════════════════════

    def apply(self, event: ChangeEvent) -> MergeOutcome:
        """Merge one decoded change event."""
        try:
            return self._apply(event)
        except RelayError:
            raise
        except Exception as exc:
            raise ReconcileError(event.record_id, str(exc)) from exc

    def _apply(self, event: ChangeEvent) -> MergeOutcome:
        if event.kind == ChangeKind.DELETE:
            if event.record_id in self._tombstones:
                return MergeOutcome.DUPLICATE
            self._remove(event.record_id)
            return MergeOutcome.REMOVED

        record = event.record
        if record is None:
            raise ReconcileError(event.record_id, f"{event.kind.value} without record")

        if not self.in_scope(record):
            if record.id in self._confirmed:
                del self._confirmed[record.id]
                self._drop_overlay(record.id)
            return MergeOutcome.OUT_OF_SCOPE

        if record.id in self._tombstones:
            return MergeOutcome.IGNORED_STALE

        held = self._confirmed.get(record.id)
        if held is not None:
            if record.updated_at == held.updated_at:
                self._check_overlay(held)
                return MergeOutcome.DUPLICATE
            if record.updated_at < held.updated_at:
                logger.debug(
                    "Stale %s for %s ignored (%s < %s)",
                    event.kind.value, record.id, record.updated_at, held.updated_at,
                )
                return MergeOutcome.IGNORED_STALE

        own_write = self._claim_temp(record) or record.id in self._overlay
        if not own_write:
            self._maybe_cue(held, record)
        else:
            self._ledger.add(record.version)
        self._confirmed[record.id] = record
        self._check_overlay(record)
        return MergeOutcome.APPLIED

    def _remove(self, record_id: str) -> None:
        self._tombstones.add(record_id)
        self._confirmed.pop(record_id, None)
        pending = self._overlay.pop(record_id, None)
        if pending is not None:
            self._settle(pending, error=NotFoundError("record", id=record_id))

    def _maybe_cue(self, held: Optional[BaseRecord], record: BaseRecord) -> None:
        if self.attention is None or not self.attention(record):
            return
        if held is not None and self.attention(held):
            return
        if record.version in self._ledger:
            return
        self._ledger.add(record.version)
        self._cues.append(record)

    # ═══════════════════════════════════════════════════════════════════
    # Optimistic field writes
    # ═══════════════════════════════════════════════════════════════════

    def apply_optimistic(
        self,
        record_id: str,
        changes: Dict[str, Any],
        *,
        confirm_on: Optional[Iterable[str]] = None,
    ) -> PendingWrite:
        """
        Show `changes` immediately and wait for the store to echo them.

        The returned PendingWrite resolves once an event arrives whose
        record matches `changes` on the `confirm_on` columns (all changed
        columns by default), or fails with OptimisticWriteTimeout after
        `confirm_timeout`. Columns stamped by the server, such as
        `resolved_at`, are displayed but belong outside `confirm_on`.
        """
        confirmed = self._confirmed.get(record_id)
        if confirmed is None:
            raise NotFoundError("record", id=record_id)

        loop = asyncio.get_running_loop()
        previous = self._overlay.pop(record_id, None)
        if previous is not None:
            changes = {**previous.changes, **changes}
            self._settle(previous, result=confirmed)

        pending = PendingWrite(
            entity_id=record_id,
            changes=dict(changes),
            future=loop.create_future(),
            confirm_on=tuple(confirm_on) if confirm_on is not None else None,
        )
        if pending.confirmed_by(confirmed):
            pending.future.set_result(confirmed)
            return pending

        pending.timer = loop.call_later(self.confirm_timeout, self._expire, pending)
        self._overlay[record_id] = pending
        return pending

    def _check_overlay(self, record: BaseRecord) -> None:
        pending = self._overlay.get(record.id)
        if pending is not None and pending.confirmed_by(record):
            del self._overlay[record.id]
            self._settle(pending, result=record)

    def _drop_overlay(self, record_id: str) -> None:
        pending = self._overlay.pop(record_id, None)
        if pending is not None:
            self._settle(pending, result=None)

    def drop_pending(self, record_id: str) -> None:
        """Forget an optimistic write quietly (the store reported a no-op)."""
        pending = self._overlay.pop(record_id, None)
        if pending is not None:
            self._settle(pending, result=self._confirmed.get(record_id))

    def reject_pending(self, record_id: str, error: RelayError, *, notify: bool = True) -> None:
        """The write failed outright: revert now and surface `error`."""
        pending = self._overlay.pop(record_id, None)
        if pending is not None:
            self._settle(pending, error=error, notify=notify)

    # ═══════════════════════════════════════════════════════════════════
    # Optimistic inserts
    # ═══════════════════════════════════════════════════════════════════

    def add_optimistic_insert(self, record: BaseRecord, client_ref: str) -> PendingWrite:
        """
        Show a not-yet-persisted record under `temp-<client_ref>`.

        The server row echoing the same client_ref replaces it.
        """
        loop = asyncio.get_running_loop()
        temp_record = dataclasses.replace(record, id=f"temp-{client_ref}")
        pending = PendingWrite(
            entity_id=temp_record.id,
            changes={},
            future=loop.create_future(),
            client_ref=client_ref,
            record=temp_record,
        )
        pending.timer = loop.call_later(self.confirm_timeout, self._expire, pending)
        self._temp[client_ref] = pending
        return pending

    def _claim_temp(self, record: BaseRecord) -> bool:
        client_ref = getattr(record, "client_ref", None)
        if not client_ref:
            return False
        pending = self._temp.pop(client_ref, None)
        if pending is None:
            return False
        self._settle(pending, result=record)
        return True

    def reject_insert(self, client_ref: str, error: RelayError) -> None:
        pending = self._temp.pop(client_ref, None)
        if pending is not None:
            self._settle(pending, error=error, notify=True)

    # ═══════════════════════════════════════════════════════════════════
    # Settlement
    # ═══════════════════════════════════════════════════════════════════

    def _expire(self, pending: PendingWrite) -> None:
        if pending.client_ref is not None:
            if self._temp.get(pending.client_ref) is not pending:
                return
            del self._temp[pending.client_ref]
        else:
            if self._overlay.get(pending.entity_id) is not pending:
                return
            del self._overlay[pending.entity_id]
        logger.warning(
            "Optimistic write on %s not confirmed within %.1fs; reverted",
            pending.entity_id, self.confirm_timeout,
            extra={"correlation_id": pending.client_ref},
        )
        self._settle(
            pending,
            error=OptimisticWriteTimeout(pending.entity_id, self.confirm_timeout),
            notify=True,
        )

    def _settle(
        self,
        pending: PendingWrite,
        *,
        result: Optional[BaseRecord] = None,
        error: Optional[RelayError] = None,
        notify: bool = False,
    ) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return
        if error is None:
            pending.future.set_result(result)
            return
        pending.future.set_exception(error)
        # The owner reports through on_error; an unawaited future is fine
        pending.future.exception()
        if notify and self.on_error is not None:
            self.on_error(error)

    def close(self) -> None:
        """Cancel every outstanding optimistic write."""
        for pending in list(self._overlay.values()) + list(self._temp.values()):
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.cancel()
        self._overlay.clear()
        self._temp.clear()
