"""Kernel configuration models."""

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from order_kernel.models.order import PaymentStatus, RiskLevel


def _default_weights() -> Dict[str, float]:
    return {
        "proximity": 0.35,
        "rating": 0.25,
        "workload": 0.2,
        "skill_match": 0.2,
    }


class ScoringConfig(BaseModel):
    """Factor weights must sum to 1.0; the engine refuses anything else."""

    model_config = ConfigDict(extra="forbid")

    weights: Dict[str, float] = Field(default_factory=_default_weights)
    max_radius_km: float = Field(gt=0, default=50.0)
    min_score: float = Field(ge=0, le=100, default=0.0)


class AssignmentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    offer_timeout_seconds: int = Field(gt=0, default=1800)
    broadcast_size: int = Field(ge=1, default=3)
    rearm_attempts: int = Field(ge=1, default=3)


class GateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accepted_payment_statuses: List[PaymentStatus] = [
        PaymentStatus.PAID,
        PaymentStatus.NOT_REQUIRED,
    ]
    blocking_risk_levels: List[RiskLevel] = [RiskLevel.HIGH, RiskLevel.CRITICAL]


class ReconcilerConfig(BaseModel):
    """Configuration for the offer reconciler heartbeat."""

    model_config = ConfigDict(extra="forbid")

    heartbeat_interval_seconds: int = Field(gt=0, default=30)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: str = "json"                    # "json" | "text"


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = ":memory:"


class KernelConfig(BaseModel):
    """Root configuration container. Every section has working defaults."""

    model_config = ConfigDict(extra="forbid")

    scoring: ScoringConfig = ScoringConfig()
    assignment: AssignmentConfig = AssignmentConfig()
    gate: GateConfig = GateConfig()
    reconciler: ReconcilerConfig = ReconcilerConfig()
    logging: LoggingConfig = LoggingConfig()
    audit: AuditConfig = AuditConfig()
