"""Assignment offers and the rounds that produce them."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from order_kernel.models.scoring import ScoringResult


class AssignmentMode(str, Enum):
    DIRECT = "DIRECT"
    OFFER = "OFFER"
    BROADCAST = "BROADCAST"


class OfferStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REFUSED = "REFUSED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


class RoundOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    EXHAUSTED = "EXHAUSTED"
    CANCELLED = "CANCELLED"


class AssignmentOffer(BaseModel):
    """
    A time-boxed proposal of an order to one provider.
    Resolved exactly once; never changed after resolution.
    """

    id: str
    order_id: str
    round_id: str
    provider_id: str
    mode: AssignmentMode
    status: OfferStatus = OfferStatus.PENDING
    scoring_result: ScoringResult
    offered_at: datetime
    expires_at: Optional[datetime] = None    # None for DIRECT
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == OfferStatus.PENDING


class AssignmentRound(BaseModel):
    """One pass of the orchestrator over a ranked candidate list."""

    id: str
    order_id: str
    mode: AssignmentMode
    ranked: List[ScoringResult]
    cursor: int = 0                            # Next ranked index to offer (OFFER mode)
    offer_ids: List[str] = []
    started_by: str
    started_at: datetime
    closed_at: Optional[datetime] = None
    outcome: Optional[RoundOutcome] = None

    @property
    def is_open(self) -> bool:
        return self.outcome is None
