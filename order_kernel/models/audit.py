"""Audit records — the append-only history of every decision the kernel takes."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from order_kernel.models.order import OrderState


class AuditKind(str, Enum):
    TRANSITION = "transition"
    REJECTED_COMMAND = "rejected_command"
    GATE_DECISION = "gate_decision"
    ASSIGNMENT_DECISION = "assignment_decision"
    ORDER_UPDATE = "order_update"


class StateTransitionRecord(BaseModel):
    """One accepted state transition. Never mutated or deleted."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    from_state: OrderState
    to_state: OrderState
    event: str
    actor: str
    timestamp: datetime
    reason: Optional[str] = None


class AuditEntry(BaseModel):
    """
    The system-of-record entry. Answers: what happened to which order,
    on whose authority, when, and why.
    """

    id: str
    kind: AuditKind
    order_id: str
    actor: str
    timestamp: datetime
    command: Optional[str] = None           # Requested command / event name
    from_state: Optional[OrderState] = None
    to_state: Optional[OrderState] = None
    reason: Optional[str] = None
    payload: dict = {}

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None

    def as_transition(self) -> Optional[StateTransitionRecord]:
        if self.kind != AuditKind.TRANSITION:
            return None
        return StateTransitionRecord(
            order_id=self.order_id,
            from_state=self.from_state,
            to_state=self.to_state,
            event=self.command or "",
            actor=self.actor,
            timestamp=self.timestamp,
            reason=self.reason,
        )
