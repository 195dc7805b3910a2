"""
Scoring Engine — ranks a candidate pool for a service order.

Behavioral Contract:
- score(order, candidates) returns one ScoringResult per eligible candidate,
  sorted by total_score descending (ties broken by provider_id)
- Each result decomposes into named factors scored 0-100 with configured
  weights; total_score = sum(score * weight)
- Weights come from configuration and must sum to 1.0; malformed weight sets
  are rejected at construction, never renormalised
- Pure and deterministic: identical inputs yield identical results
"""

import math
from datetime import datetime, time, timezone
from typing import Callable, Dict, List, Optional, Tuple

from croniter import croniter

from order_kernel.errors import ConfigurationError
from order_kernel.models.config import ScoringConfig
from order_kernel.models.order import GeoPoint, ServiceOrder, TimeSlot
from order_kernel.models.scoring import (
    IneligibleCandidate,
    ProviderCandidate,
    ScoringFactor,
    ScoringResult,
)

WEIGHT_TOLERANCE = 1e-9
EARTH_RADIUS_KM = 6371.0

SLOT_START = {
    TimeSlot.AM: time(9, 0),
    TimeSlot.PM: time(14, 0),
}

FactorFn = Callable[[ServiceOrder, ProviderCandidate, ScoringConfig], Tuple[float, str]]


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def _proximity(order: ServiceOrder, candidate: ProviderCandidate, config: ScoringConfig) -> Tuple[float, str]:
    if order.location is None:
        return 0.0, "Order has no service location"
    distance = haversine_km(order.location, candidate.location)
    score = _clamp(100.0 * (1.0 - distance / config.max_radius_km))
    return score, f"{distance:.1f} km from service address (radius {config.max_radius_km:.0f} km)"


def _rating(order: ServiceOrder, candidate: ProviderCandidate, config: ScoringConfig) -> Tuple[float, str]:
    return _clamp(candidate.rating / 5.0 * 100.0), f"Average rating {candidate.rating:.1f}/5"


def _workload(order: ServiceOrder, candidate: ProviderCandidate, config: ScoringConfig) -> Tuple[float, str]:
    free = max(0, candidate.capacity - candidate.active_jobs)
    score = _clamp(100.0 * free / candidate.capacity)
    return score, f"{candidate.active_jobs} active jobs of {candidate.capacity} capacity"


def _skill_match(order: ServiceOrder, candidate: ProviderCandidate, config: ScoringConfig) -> Tuple[float, str]:
    required = sorted(set(order.required_skills))
    if not required:
        return 100.0, "No specific skills required"
    have = set(candidate.skills)
    matched = [s for s in required if s in have]
    score = 100.0 * len(matched) / len(required)
    missing = [s for s in required if s not in have]
    if missing:
        return score, f"Matches {len(matched)}/{len(required)} skills; missing {', '.join(missing)}"
    return score, f"Matches all {len(required)} required skills"


FACTORS: Dict[str, FactorFn] = {
    "proximity": _proximity,
    "rating": _rating,
    "workload": _workload,
    "skill_match": _skill_match,
}


def validate_weights(weights: Dict[str, float]) -> None:
    """Raise ConfigurationError unless weights name known factors and sum to 1.0."""
    if not weights:
        raise ConfigurationError("Scoring weights must name at least one factor")
    unknown = sorted(set(weights) - set(FACTORS))
    if unknown:
        raise ConfigurationError(f"Unknown scoring factors: {', '.join(unknown)}")
    negative = sorted(name for name, w in weights.items() if w < 0)
    if negative:
        raise ConfigurationError(f"Scoring weights must be non-negative: {', '.join(negative)}")
    total = math.fsum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigurationError(f"Scoring weights must sum to 1.0, got {total:.6f}")


def appointment_start(order: ServiceOrder) -> Optional[datetime]:
    """The moment a provider must be working for this order, if scheduled."""
    if order.scheduled_date is None:
        return None
    slot = order.scheduled_time_slot or TimeSlot.AM
    return datetime.combine(order.scheduled_date, SLOT_START[slot], tzinfo=timezone.utc)


def _within_schedule(schedule: str, moment: datetime) -> bool:
    try:
        return croniter.match(schedule, moment)
    except (ValueError, KeyError):
        # Unparseable working window counts as unavailable
        return False


class ScoringEngine:
    """Deterministic weighted scoring. Read-only; needs no synchronisation."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()
        validate_weights(self.config.weights)
        # Fixed factor order keeps summation (and rounding) reproducible
        self._factor_order = [name for name in FACTORS if name in self.config.weights]

    def eligibility(
        self, order: ServiceOrder, candidate: ProviderCandidate
    ) -> Optional[str]:
        """Return why a candidate cannot take this order, or None when eligible."""
        if not candidate.active:
            return "Provider is not active"
        if not candidate.available:
            return "Provider is currently unavailable"
        if order.location is not None:
            distance = haversine_km(order.location, candidate.location)
            if distance > self.config.max_radius_km:
                return f"Provider is {distance:.1f} km away, outside the {self.config.max_radius_km:.0f} km radius"
        start = appointment_start(order)
        if candidate.availability_schedule and start is not None:
            if not _within_schedule(candidate.availability_schedule, start):
                return f"Provider does not work at {start.isoformat()}"
        return None

    def score_candidate(self, order: ServiceOrder, candidate: ProviderCandidate) -> ScoringResult:
        factors = []
        for name in self._factor_order:
            weight = self.config.weights[name]
            score, rationale = FACTORS[name](order, candidate, self.config)
            factors.append(ScoringFactor(
                name=name,
                score=round(score, 2),
                weight=weight,
                rationale=rationale,
            ))
        total = math.fsum(f.score * f.weight for f in factors)
        return ScoringResult(
            provider_id=candidate.provider_id,
            total_score=round(total, 4),
            factors=factors,
        )

    def evaluate(
        self, order: ServiceOrder, candidates: List[ProviderCandidate]
    ) -> Tuple[List[ScoringResult], List[IneligibleCandidate]]:
        """Score eligible candidates and report why the others were excluded."""
        results = []
        ineligible = []
        for candidate in candidates:
            why_not = self.eligibility(order, candidate)
            if why_not:
                ineligible.append(IneligibleCandidate(provider_id=candidate.provider_id, reason=why_not))
                continue
            results.append(self.score_candidate(order, candidate))
        results.sort(key=lambda r: (-r.total_score, r.provider_id))
        ineligible.sort(key=lambda i: i.provider_id)
        return results, ineligible

    def score(self, order: ServiceOrder, candidates: List[ProviderCandidate]) -> List[ScoringResult]:
        results, _ = self.evaluate(order, candidates)
        return results
