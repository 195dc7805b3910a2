"""Scoring results and the provider candidate snapshot they are computed from."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from order_kernel.models.order import GeoPoint


class ProviderCandidate(BaseModel):
    """A provider in the candidate pool, with live availability."""

    provider_id: str
    name: str
    location: GeoPoint
    skills: List[str] = []
    rating: float = Field(ge=0, le=5, default=0.0)
    active_jobs: int = Field(ge=0, default=0)
    capacity: int = Field(ge=1, default=1)
    available: bool = True
    active: bool = True
    availability_schedule: Optional[str] = None   # Cron expression of working windows
    technician_id: Optional[str] = None


class ScoringFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: float = Field(ge=0, le=100)
    weight: float = Field(ge=0, le=1)
    rationale: str


class ScoringResult(BaseModel):
    """A candidate's weighted score. Recomputed, never patched."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    total_score: float
    factors: List[ScoringFactor]


class IneligibleCandidate(BaseModel):
    provider_id: str
    reason: str
