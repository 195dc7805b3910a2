"""
The order lifecycle transition table.

Each entry is (from_state, event, to_state). Anything not listed is rejected
by the machine with a GuardViolation. Guards beyond the table (gate status,
checklist completeness, ...) live with the commands in machine.py.
"""

from enum import Enum
from typing import FrozenSet, List, Set, Tuple

from order_kernel.models.order import OrderState, TERMINAL_STATES

S = OrderState


class OrderEvent(str, Enum):
    SUBMIT = "submit"
    REQUEST_ASSIGNMENT = "request_assignment"
    OFFER_DISPATCHED = "offer_dispatched"
    OFFER_ACCEPTED = "offer_accepted"
    OFFERS_EXHAUSTED = "offers_exhausted"
    CONFIRM_SCHEDULE = "confirm_schedule"
    BEGIN_TRANSIT = "begin_transit"
    CHECK_IN = "check_in"
    BLOCK_ON_PARTS = "block_on_parts"
    PARTS_RESOLVED = "parts_resolved"
    PAUSE = "pause"
    RESUME = "resume"
    CHECK_OUT = "check_out"
    WCF_CREATED = "wcf_created"
    WCF_APPROVED = "wcf_approved"
    WCF_REJECTED = "wcf_rejected"
    INVOICE_ISSUED = "invoice_issued"
    CLOSE = "close"
    REASSIGN = "reassign"
    CANCEL = "cancel"
    HOLD = "hold"


E = OrderEvent

NON_TERMINAL_STATES: FrozenSet[OrderState] = frozenset(s for s in OrderState if s not in TERMINAL_STATES)

# States an order can be put on hold from, and therefore resumed back into
HOLDABLE_STATES: FrozenSet[OrderState] = NON_TERMINAL_STATES - {S.ON_HOLD}

REWORK_STATES: FrozenSet[OrderState] = frozenset({S.IN_PROGRESS, S.PENDING_PARTS})

_FORWARD: List[Tuple[OrderState, OrderEvent, OrderState]] = [
    (S.DRAFT, E.SUBMIT, S.NEW),
    (S.NEW, E.REQUEST_ASSIGNMENT, S.PENDING_ASSIGNMENT),
    (S.PENDING_ASSIGNMENT, E.OFFER_DISPATCHED, S.PENDING_ACCEPTANCE),
    (S.PENDING_ACCEPTANCE, E.OFFER_ACCEPTED, S.ASSIGNED),
    (S.PENDING_ACCEPTANCE, E.OFFERS_EXHAUSTED, S.PENDING_ASSIGNMENT),
    (S.ASSIGNED, E.CONFIRM_SCHEDULE, S.SCHEDULED),
    (S.SCHEDULED, E.BEGIN_TRANSIT, S.IN_TRANSIT),
    (S.IN_TRANSIT, E.CHECK_IN, S.IN_PROGRESS),
    (S.IN_PROGRESS, E.BLOCK_ON_PARTS, S.PENDING_PARTS),
    (S.PENDING_PARTS, E.PARTS_RESOLVED, S.IN_PROGRESS),
    (S.IN_PROGRESS, E.PAUSE, S.PAUSED),
    (S.PAUSED, E.RESUME, S.IN_PROGRESS),
    (S.IN_PROGRESS, E.CHECK_OUT, S.COMPLETED),
    (S.COMPLETED, E.WCF_CREATED, S.PENDING_WCF),
    (S.PENDING_WCF, E.WCF_APPROVED, S.PENDING_INVOICE),
    (S.PENDING_WCF, E.WCF_REJECTED, S.IN_PROGRESS),
    (S.PENDING_WCF, E.WCF_REJECTED, S.PENDING_PARTS),
    (S.PENDING_INVOICE, E.INVOICE_ISSUED, S.INVOICED),
    (S.INVOICED, E.CLOSE, S.CLOSED),
    (S.PENDING_ACCEPTANCE, E.REASSIGN, S.PENDING_ASSIGNMENT),
    (S.ASSIGNED, E.REASSIGN, S.PENDING_ASSIGNMENT),
    (S.SCHEDULED, E.REASSIGN, S.PENDING_ASSIGNMENT),
]


def _build_table() -> FrozenSet[Tuple[OrderState, OrderEvent, OrderState]]:
    table: Set[Tuple[OrderState, OrderEvent, OrderState]] = set(_FORWARD)
    for state in NON_TERMINAL_STATES:
        table.add((state, E.CANCEL, S.CANCELLED))
    for state in HOLDABLE_STATES:
        table.add((state, E.HOLD, S.ON_HOLD))
        table.add((S.ON_HOLD, E.RESUME, state))
    return frozenset(table)


TRANSITIONS = _build_table()


def is_allowed(from_state: OrderState, event: OrderEvent, to_state: OrderState) -> bool:
    return (from_state, event, to_state) in TRANSITIONS


def targets(from_state: OrderState, event: OrderEvent) -> List[OrderState]:
    """Every state `event` may lead to from `from_state` (empty when not allowed)."""
    return sorted(
        (to for frm, ev, to in TRANSITIONS if frm == from_state and ev == event),
        key=lambda s: s.value,
    )


def allowed_events(from_state: OrderState) -> List[OrderEvent]:
    return sorted({ev for frm, ev, _ in TRANSITIONS if frm == from_state}, key=lambda e: e.value)
