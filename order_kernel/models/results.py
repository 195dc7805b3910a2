"""Command results returned to callers of the Lifecycle State Machine."""

from typing import List, Optional

from pydantic import BaseModel

from order_kernel.errors import ErrorKind, error_for_kind
from order_kernel.models.assignment import AssignmentOffer
from order_kernel.models.order import ServiceOrder


class CommandResult(BaseModel):
    """
    Outcome of one command. A rejection leaves the order as it was, except a
    blocked begin_transit keeps the gate decision it recorded and a late offer
    accept keeps the offer's TIMEOUT. `order` is the authoritative snapshot
    either way so callers can show why.
    """

    command: str
    accepted: bool
    order: Optional[ServiceOrder] = None
    error: Optional[ErrorKind] = None
    reason: Optional[str] = None
    events: List[str] = []
    offers: List[AssignmentOffer] = []

    def raise_for_error(self) -> "CommandResult":
        if not self.accepted and self.error is not None:
            raise error_for_kind(self.error, self.reason or "rejected", self.order)
        return self
