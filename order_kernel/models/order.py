"""Service Order — the aggregate owned by the Lifecycle State Machine."""

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from order_kernel.models.execution import CheckInRecord, CheckOutRecord, Checklist


class OrderState(str, Enum):
    DRAFT = "DRAFT"
    NEW = "NEW"
    PENDING_ASSIGNMENT = "PENDING_ASSIGNMENT"
    PENDING_ACCEPTANCE = "PENDING_ACCEPTANCE"
    ASSIGNED = "ASSIGNED"
    SCHEDULED = "SCHEDULED"
    IN_TRANSIT = "IN_TRANSIT"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_PARTS = "PENDING_PARTS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    PENDING_WCF = "PENDING_WCF"
    PENDING_INVOICE = "PENDING_INVOICE"
    INVOICED = "INVOICED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"


TERMINAL_STATES = frozenset({OrderState.CLOSED, OrderState.CANCELLED})


class GoExecStatus(str, Enum):
    OK = "OK"
    NOK = "NOK"
    DEROGATION = "DEROGATION"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    NOT_REQUIRED = "NOT_REQUIRED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"


class RiskLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TimeSlot(str, Enum):
    AM = "AM"
    PM = "PM"


class Urgency(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class GeoPoint(BaseModel):
    """Coordinates as delivered by the geocoding collaborator."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: Optional[str] = None


class CustomerRef(BaseModel):
    """Customer identity as supplied by the customer collaborator."""

    customer_id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ServiceOrder(BaseModel):
    """
    A service order. `state` and `go_exec_status` are independent axes:
    scheduling progress never implies execution readiness.
    """

    id: str
    external_id: Optional[str] = None
    service_type: Optional[str] = None
    urgency: Urgency = Urgency.NORMAL
    customer: Optional[CustomerRef] = None
    location: Optional[GeoPoint] = None
    required_skills: List[str] = []
    estimated_duration_minutes: Optional[int] = None

    state: OrderState = OrderState.DRAFT

    # GO-EXEC
    go_exec_status: GoExecStatus = GoExecStatus.NOK
    go_exec_block_reason: Optional[str] = None
    go_exec_reason_codes: List[str] = []
    go_exec_blocked_at: Optional[datetime] = None
    go_exec_overridden_at: Optional[datetime] = None
    go_exec_overridden_by: Optional[str] = None
    derogation_reason: Optional[str] = None
    operator_block_reason: Optional[str] = None

    # FACTS FROM COLLABORATORS
    payment_status: PaymentStatus = PaymentStatus.PENDING
    product_delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_blocks_execution: bool = False
    risk_level: RiskLevel = RiskLevel.NONE
    risk_acknowledged_at: Optional[datetime] = None

    # SCHEDULING & ASSIGNMENT
    scheduled_date: Optional[date] = None
    scheduled_time_slot: Optional[TimeSlot] = None
    assigned_provider_id: Optional[str] = None
    assigned_technician_id: Optional[str] = None

    # SIDE-STATE BOOKKEEPING
    held_from_state: Optional[OrderState] = None
    hold_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    parts_block_reason: Optional[str] = None

    # EXECUTION
    check_in: Optional[CheckInRecord] = None
    check_out: Optional[CheckOutRecord] = None
    checklist: Optional[Checklist] = None

    # CLOSE-OUT
    current_wcf_id: Optional[str] = None
    wcf_ids: List[str] = []
    invoice_reference: Optional[str] = None

    # META
    created_by: str
    created_at: datetime
    updated_at: datetime
    state_changed_at: datetime
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
