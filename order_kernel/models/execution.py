"""Field execution records — check-in/out, checklists, work completion forms."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ChecklistItem(BaseModel):
    id: str
    label: str
    mandatory: bool = False
    completed: bool = False
    response: Optional[str] = None


class Checklist(BaseModel):
    """Technician checklist submitted at check-out."""

    items: List[ChecklistItem] = []

    def incomplete_mandatory(self) -> List[ChecklistItem]:
        return [i for i in self.items if i.mandatory and not i.completed]


class CheckInRecord(BaseModel):
    technician_id: str
    occurred_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_meters: Optional[float] = None
    notes: Optional[str] = None


class CheckOutRecord(BaseModel):
    technician_id: str
    occurred_at: datetime
    duration_minutes: int
    notes: Optional[str] = None


class WCFStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    SIGNED = "SIGNED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SignatureRole(str, Enum):
    CUSTOMER = "customer"
    TECHNICIAN = "technician"


class WCFRejectionReason(str, Enum):
    INCOMPLETE_WORK = "incomplete_work"
    QUALITY_ISSUES = "quality_issues"
    WRONG_PARTS = "wrong_parts"
    CUSTOMER_COMPLAINT = "customer_complaint"
    SAFETY_CONCERN = "safety_concern"
    OTHER = "other"


class WorkCompletionForm(BaseModel):
    """
    Work Completion Form: the customer/technician attestation that closes
    on-site work. Rejected forms are never deleted; a new draft supersedes them.
    Signatures hold opaque references issued by the storage collaborator.
    """

    id: str
    order_id: str
    status: WCFStatus = WCFStatus.DRAFT
    checklist: Optional[Checklist] = None
    responses: Dict[str, str] = {}
    signatures: Dict[SignatureRole, str] = {}
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    notes: Optional[str] = None
    rejection_reason: Optional[WCFRejectionReason] = None
    supersedes: Optional[str] = None
    superseded_by: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
