"""Service order kernel data models."""

from order_kernel.models.assignment import (
    AssignmentMode,
    AssignmentOffer,
    AssignmentRound,
    OfferStatus,
    RoundOutcome,
)
from order_kernel.models.audit import AuditEntry, AuditKind, StateTransitionRecord
from order_kernel.models.config import (
    AssignmentConfig,
    AuditConfig,
    GateConfig,
    KernelConfig,
    LoggingConfig,
    ReconcilerConfig,
    ScoringConfig,
)
from order_kernel.models.events import (
    DomainEvent,
    GoExecDecided,
    OfferCreated,
    OfferResolved,
    OrderStateChanged,
    RescheduleRequested,
    WCFStatusChanged,
)
from order_kernel.models.execution import (
    CheckInRecord,
    Checklist,
    ChecklistItem,
    CheckOutRecord,
    SignatureRole,
    WCFRejectionReason,
    WCFStatus,
    WorkCompletionForm,
)
from order_kernel.models.gate import Derogation, GoExecDecision
from order_kernel.models.order import (
    CustomerRef,
    DeliveryStatus,
    GeoPoint,
    GoExecStatus,
    OrderState,
    PaymentStatus,
    RiskLevel,
    ServiceOrder,
    TimeSlot,
    Urgency,
)
from order_kernel.models.results import CommandResult
from order_kernel.models.scoring import (
    IneligibleCandidate,
    ProviderCandidate,
    ScoringFactor,
    ScoringResult,
)

__all__ = [
    "AssignmentConfig",
    "AssignmentMode",
    "AssignmentOffer",
    "AssignmentRound",
    "AuditConfig",
    "AuditEntry",
    "AuditKind",
    "CheckInRecord",
    "CheckOutRecord",
    "Checklist",
    "ChecklistItem",
    "CommandResult",
    "CustomerRef",
    "DeliveryStatus",
    "Derogation",
    "DomainEvent",
    "GateConfig",
    "GeoPoint",
    "GoExecDecided",
    "GoExecDecision",
    "GoExecStatus",
    "IneligibleCandidate",
    "KernelConfig",
    "LoggingConfig",
    "OfferCreated",
    "OfferResolved",
    "OfferStatus",
    "OrderState",
    "OrderStateChanged",
    "PaymentStatus",
    "ProviderCandidate",
    "ReconcilerConfig",
    "RescheduleRequested",
    "RiskLevel",
    "RoundOutcome",
    "ScoringConfig",
    "ScoringFactor",
    "ScoringResult",
    "ServiceOrder",
    "SignatureRole",
    "StateTransitionRecord",
    "TimeSlot",
    "Urgency",
    "WCFRejectionReason",
    "WCFStatus",
    "WCFStatusChanged",
    "WorkCompletionForm",
]
