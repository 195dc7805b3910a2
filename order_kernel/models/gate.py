"""Go-Exec Decision — output of the Execution Readiness Gate."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from order_kernel.models.order import GoExecStatus

MIN_BLOCK_REASON_LENGTH = 20
MIN_DEROGATION_REASON_LENGTH = 30
MIN_APPROVER_LENGTH = 3


class GoExecDecision(BaseModel):
    """
    One gate evaluation. When a derogation is in force the prior block reason
    stays on the decision next to the derogation reason.
    """

    id: str
    order_id: str
    status: GoExecStatus
    reason_codes: List[str] = []             # Machine-readable, e.g. "payment:PENDING"
    block_reason: Optional[str] = None       # Human-readable
    approved_by: Optional[str] = None
    derogation_reason: Optional[str] = None
    derogation_id: Optional[str] = None
    superseded_derogation_id: Optional[str] = None
    decided_at: datetime
    actor: str = "go_exec_gate"


class Derogation(BaseModel):
    """An audited manager override of a NOK gate."""

    id: str
    order_id: str
    reason: str
    approved_by: str
    covered_codes: List[str]
    block_reason: Optional[str] = None
    requested_by: str
    granted_at: datetime
    superseded_at: Optional[datetime] = None
