"""Outbound domain events consumed by notification and portal collaborators."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel

from order_kernel.models.assignment import AssignmentMode, OfferStatus
from order_kernel.models.execution import WCFStatus
from order_kernel.models.order import GoExecStatus, OrderState, TimeSlot


class DomainEvent(BaseModel):
    order_id: str
    actor: str
    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__


class OrderStateChanged(DomainEvent):
    from_state: OrderState
    to_state: OrderState
    event: str
    reason: Optional[str] = None


class OfferCreated(DomainEvent):
    offer_id: str
    provider_id: str
    mode: AssignmentMode
    total_score: float
    expires_at: Optional[datetime] = None


class OfferResolved(DomainEvent):
    offer_id: str
    provider_id: str
    status: OfferStatus
    reason: Optional[str] = None


class GoExecDecided(DomainEvent):
    decision_id: str
    status: GoExecStatus
    block_reason: Optional[str] = None


class WCFStatusChanged(DomainEvent):
    wcf_id: str
    status: WCFStatus


class RescheduleRequested(DomainEvent):
    scheduled_date: date
    scheduled_time_slot: TimeSlot
    reason: str
    reassign_provider: bool
    notify_customer: bool
    notify_provider: bool
    previous_provider_id: Optional[str] = None
