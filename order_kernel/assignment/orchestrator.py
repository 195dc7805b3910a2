"""
Assignment / Offer Orchestrator.

Turns an order in PENDING_ASSIGNMENT into exactly one ACCEPTED offer, or
reports exhaustion.

Modes:
  DIRECT     top-scored (or operator-forced) provider, accepted immediately
  OFFER      one provider at a time; refuse / timeout advances down the ranking
  BROADCAST  top-N concurrent offers, shared deadline, first accept wins

Behavioral Contract:
- Callers hold the order's lock (OrderStore.lock_for) around dispatch,
  respond and cancel_outstanding; timer callbacks take it themselves
- An offer is resolved exactly once and never changed afterwards
- At most one ACCEPTED offer per order: the first accept cancels every
  PENDING sibling and its timer before the lock is released
- When a running round runs out of candidates the exhaustion handler is
  invoked so the state machine can send the order back to PENDING_ASSIGNMENT
- Timer callbacks that find their offer already resolved are logged and dropped
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from order_kernel.audit.log import AuditLog
from order_kernel.errors import NotFoundError
from order_kernel.events.bus import EventBus
from order_kernel.models.assignment import (
    AssignmentMode,
    AssignmentOffer,
    AssignmentRound,
    OfferStatus,
    RoundOutcome,
)
from order_kernel.models.audit import AuditKind
from order_kernel.models.config import AssignmentConfig
from order_kernel.models.events import OfferCreated, OfferResolved
from order_kernel.models.order import ServiceOrder
from order_kernel.models.scoring import IneligibleCandidate, ScoringResult
from order_kernel.order_store.store import OrderStore
from order_kernel.providers.pool import ProviderPool
from order_kernel.scoring.engine import ScoringEngine
from order_kernel.timing.clock import Clock
from order_kernel.timing.timers import TimerService

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "assignment_orchestrator"
TIMER_ACTOR = "offer_timer"

ExhaustionHandler = Callable[[str, str, str], None]   # (order_id, reason, actor)


@dataclass
class DispatchOutcome:
    """What a dispatch produced: offers, an immediate acceptance, or exhaustion."""
    round: Optional[AssignmentRound] = None
    offers: List[AssignmentOffer] = field(default_factory=list)
    accepted: Optional[AssignmentOffer] = None
    exhausted_reason: Optional[str] = None
    ineligible: List[IneligibleCandidate] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.exhausted_reason is not None


@dataclass
class ResponseOutcome:
    """Result of a provider's accept / refuse."""
    offer: AssignmentOffer
    accepted: Optional[AssignmentOffer] = None
    cancelled: List[AssignmentOffer] = field(default_factory=list)
    new_offers: List[AssignmentOffer] = field(default_factory=list)
    exhausted_reason: Optional[str] = None
    conflict_reason: Optional[str] = None

    @property
    def conflict(self) -> bool:
        return self.conflict_reason is not None


class AssignmentOrchestrator:
    def __init__(
        self,
        store: OrderStore,
        scoring_engine: ScoringEngine,
        provider_pool: ProviderPool,
        timers: TimerService,
        clock: Clock,
        audit_log: AuditLog,
        event_bus: EventBus,
        config: Optional[AssignmentConfig] = None,
    ):
        self.store = store
        self.scoring = scoring_engine
        self.providers = provider_pool
        self.timers = timers
        self.clock = clock
        self.audit = audit_log
        self.events = event_bus
        self.config = config or AssignmentConfig()
        self._exhaustion_handler: Optional[ExhaustionHandler] = None

    def set_exhaustion_handler(self, handler: ExhaustionHandler) -> None:
        self._exhaustion_handler = handler

    # --- Ranking ---

    def rank(self, order: ServiceOrder) -> Tuple[List[ScoringResult], List[IneligibleCandidate]]:
        """Eligible candidates at or above the minimum score, best first."""
        results, ineligible = self.scoring.evaluate(order, self.providers.candidates(order))
        min_score = self.scoring.config.min_score
        ranked = []
        for result in results:
            if result.total_score < min_score:
                ineligible.append(IneligibleCandidate(
                    provider_id=result.provider_id,
                    reason=f"Score {result.total_score:.1f} below minimum {min_score:.1f}",
                ))
            else:
                ranked.append(result)
        return ranked, ineligible

    # --- Dispatch ---

    def dispatch(
        self,
        order: ServiceOrder,
        mode: AssignmentMode,
        actor: str,
        top_n: Optional[int] = None,
        provider_id: Optional[str] = None,
    ) -> DispatchOutcome:
        """
        Start an assignment round for an order. Caller holds the order lock.

        `provider_id` forces a DIRECT assignment to that provider; it is still
        scored so the decision stays explainable.
        """
        now = self.clock.now()
        stale = self.store.open_round(order.id)
        if stale is not None:
            self.cancel_outstanding(order.id, actor, "Superseded by a new assignment round")

        if provider_id is not None:
            candidate = self.providers.get(provider_id)
            if candidate is None:
                return DispatchOutcome(exhausted_reason=f"Provider {provider_id} is not in the candidate pool")
            ranked = [self.scoring.score_candidate(order, candidate)]
            why_not = self.scoring.eligibility(order, candidate)
            ineligible = (
                [IneligibleCandidate(provider_id=provider_id, reason=f"Forced despite: {why_not}")]
                if why_not else []
            )
            mode = AssignmentMode.DIRECT
        else:
            ranked, ineligible = self.rank(order)

        round_ = AssignmentRound(
            id=f"rnd_{uuid4().hex[:12]}",
            order_id=order.id,
            mode=mode,
            ranked=ranked,
            started_by=actor,
            started_at=now,
        )
        self.store.add_round(round_)
        self.audit.record(
            kind=AuditKind.ASSIGNMENT_DECISION,
            order_id=order.id,
            actor=actor,
            timestamp=now,
            command="round_started",
            reason=f"{mode.value} round over {len(ranked)} ranked candidates",
            payload={
                "round_id": round_.id,
                "mode": mode.value,
                "ranking": [r.model_dump(mode="json") for r in ranked],
                "ineligible": [i.model_dump(mode="json") for i in ineligible],
            },
        )

        if not ranked:
            reason = "No eligible provider candidates"
            self._close_round(round_, RoundOutcome.EXHAUSTED, actor, reason)
            return DispatchOutcome(round=round_, exhausted_reason=reason, ineligible=ineligible)

        if mode == AssignmentMode.DIRECT:
            offer = self._create_offer(round_, ranked[0], actor, expires_at=None)
            round_.cursor = 1
            self._resolve(offer, OfferStatus.ACCEPTED, actor, "Direct assignment")
            self._close_round(round_, RoundOutcome.ACCEPTED, actor, f"Assigned to {offer.provider_id}")
            return DispatchOutcome(round=round_, offers=[offer], accepted=offer, ineligible=ineligible)

        if mode == AssignmentMode.OFFER:
            batch = ranked[:1]
        else:
            size = top_n or self.config.broadcast_size
            batch = ranked[:size]

        expires_at = now + timedelta(seconds=self.config.offer_timeout_seconds)
        offers = [self._create_offer(round_, result, actor, expires_at) for result in batch]
        round_.cursor = len(batch)
        return DispatchOutcome(round=round_, offers=offers, ineligible=ineligible)

    # --- Responses ---

    def respond(self, offer_id: str, accept: bool, actor: str) -> ResponseOutcome:
        """
        Apply a provider's accept / refuse. Caller holds the order lock.
        """
        offer = self.store.get_offer(offer_id)
        now = self.clock.now()

        if not offer.is_pending:
            return ResponseOutcome(
                offer=offer,
                conflict_reason=f"Offer {offer.id} is already {offer.status.value}",
            )

        if offer.expires_at is not None and now >= offer.expires_at:
            self.timers.cancel(offer.id)
            self._resolve(offer, OfferStatus.TIMEOUT, TIMER_ACTOR, "Response arrived after the offer expired")
            new_offers, exhausted = self._advance(offer, TIMER_ACTOR)
            return ResponseOutcome(
                offer=offer,
                new_offers=new_offers,
                exhausted_reason=exhausted,
                conflict_reason=f"Offer {offer.id} expired at {offer.expires_at.isoformat()}",
            )

        if not accept:
            self.timers.cancel(offer.id)
            self._resolve(offer, OfferStatus.REFUSED, actor, "Refused by provider")
            new_offers, exhausted = self._advance(offer, actor)
            return ResponseOutcome(offer=offer, new_offers=new_offers, exhausted_reason=exhausted)

        # First accept wins: resolve, then cancel every sibling before returning
        self.timers.cancel(offer.id)
        self._resolve(offer, OfferStatus.ACCEPTED, actor, "Accepted by provider")
        cancelled = []
        for sibling in self.store.pending_offers(offer.order_id):
            self.timers.cancel(sibling.id)
            self._resolve(
                sibling,
                OfferStatus.CANCELLED,
                SYSTEM_ACTOR,
                f"Provider {offer.provider_id} accepted first",
            )
            cancelled.append(sibling)
        round_ = self.store.get_round(offer.round_id)
        self._close_round(round_, RoundOutcome.ACCEPTED, actor, f"Accepted by {offer.provider_id}")
        return ResponseOutcome(offer=offer, accepted=offer, cancelled=cancelled)

    def expire(self, offer_id: str) -> None:
        """Timer callback: the offer's deadline has passed."""
        try:
            offer = self.store.get_offer(offer_id)
        except NotFoundError:
            logger.warning("Timer fired for unknown offer; dropped", extra={"offer_id": offer_id})
            return

        with self.store.lock_for(offer.order_id):
            try:
                offer = self.store.get_offer(offer_id)
            except NotFoundError:
                logger.warning("Timer fired for a rolled-back offer; dropped", extra={"offer_id": offer_id})
                return
            if not offer.is_pending:
                logger.warning(
                    "Offer timer fired after resolution; dropped",
                    extra={"offer_id": offer.id, "status": offer.status.value},
                )
                return
            order = self.store.find_order(offer.order_id)
            if order is None or order.is_terminal:
                self._resolve(offer, OfferStatus.CANCELLED, TIMER_ACTOR, "Order no longer active")
                logger.warning(
                    "Offer timer fired for an inactive order; dropped",
                    extra={"offer_id": offer.id, "order_id": offer.order_id},
                )
                return
            self._resolve(offer, OfferStatus.TIMEOUT, TIMER_ACTOR, "No response before the offer expired")
            self._advance(offer, TIMER_ACTOR)

    def cancel_outstanding(self, order_id: str, actor: str, reason: str) -> List[AssignmentOffer]:
        """Cancel every PENDING offer of an order and stop their timers. Caller holds the lock."""
        cancelled = []
        for offer in self.store.pending_offers(order_id):
            self.timers.cancel(offer.id)
            self._resolve(offer, OfferStatus.CANCELLED, actor, reason)
            cancelled.append(offer)
        round_ = self.store.open_round(order_id)
        if round_ is not None:
            self._close_round(round_, RoundOutcome.CANCELLED, actor, reason)
        return cancelled

    # --- Restart & sweeping ---

    def rearm(self) -> int:
        """
        Re-schedule a timer for every PENDING offer from its expires_at.
        Overdue offers fire as soon as the timer service allows.
        """
        rearmed = 0
        for offer in self.store.pending_offers():
            if offer.expires_at is None:
                continue
            self._schedule_with_retry(offer)
            rearmed += 1
        logger.info("Re-armed offer timers", extra={"count": rearmed})
        return rearmed

    def resync_timers(self, order_id: str, dropped_offer_ids: List[str]) -> None:
        """
        After a rolled-back command: stop timers of offers that no longer exist
        and re-arm every PENDING offer the order has again. Caller holds the lock.
        """
        for offer_id in dropped_offer_ids:
            self.timers.cancel(offer_id)
        for offer in self.store.pending_offers(order_id):
            if offer.expires_at is not None and not self.timers.is_scheduled(offer.id):
                self._schedule_with_retry(offer)

    def sweep_expired(self) -> int:
        """Expire every PENDING offer whose deadline has passed."""
        now = self.clock.now()
        overdue = [
            o for o in self.store.pending_offers()
            if o.expires_at is not None and o.expires_at <= now
        ]
        for offer in overdue:
            self.timers.cancel(offer.id)
            self.expire(offer.id)
        return len(overdue)

    def recover_stalled(self, awaiting: List[str]) -> List[str]:
        """
        Orders awaiting acceptance with no PENDING offer left can never progress;
        treat their round as exhausted. `awaiting` holds candidate order ids.
        """
        recovered = []
        for order_id in awaiting:
            with self.store.lock_for(order_id):
                if self.store.pending_offers(order_id):
                    continue
                order = self.store.find_order(order_id)
                if order is None or order.is_terminal:
                    continue
                reason = "No outstanding offers remain"
                round_ = self.store.open_round(order_id)
                if round_ is not None:
                    self._close_round(round_, RoundOutcome.EXHAUSTED, SYSTEM_ACTOR, reason)
                if self._exhaustion_handler is not None:
                    self._exhaustion_handler(order_id, reason, SYSTEM_ACTOR)
                recovered.append(order_id)
        return recovered

    # --- Internals ---

    def _create_offer(
        self,
        round_: AssignmentRound,
        result: ScoringResult,
        actor: str,
        expires_at,
    ) -> AssignmentOffer:
        now = self.clock.now()
        offer = AssignmentOffer(
            id=f"ofr_{uuid4().hex[:12]}",
            order_id=round_.order_id,
            round_id=round_.id,
            provider_id=result.provider_id,
            mode=round_.mode,
            scoring_result=result,
            offered_at=now,
            expires_at=expires_at,
        )
        self.store.add_offer(offer)
        round_.offer_ids.append(offer.id)
        self.audit.record(
            kind=AuditKind.ASSIGNMENT_DECISION,
            order_id=offer.order_id,
            actor=actor,
            timestamp=now,
            command="offer_created",
            reason=f"Offered to {offer.provider_id} with score {result.total_score:.2f}",
            payload={
                "offer_id": offer.id,
                "round_id": round_.id,
                "mode": offer.mode.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "scoring_result": result.model_dump(mode="json"),
            },
        )
        self.events.publish(OfferCreated(
            order_id=offer.order_id,
            actor=actor,
            occurred_at=now,
            offer_id=offer.id,
            provider_id=offer.provider_id,
            mode=offer.mode,
            total_score=result.total_score,
            expires_at=expires_at,
        ))
        if expires_at is not None:
            self._schedule_with_retry(offer)
        return offer

    def _schedule_with_retry(self, offer: AssignmentOffer) -> None:
        attempts = self.config.rearm_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.timers.schedule(offer.id, offer.expires_at, lambda oid=offer.id: self.expire(oid))
                return
            except Exception:
                logger.warning(
                    "Scheduling offer timer failed",
                    extra={"offer_id": offer.id, "attempt": attempt},
                    exc_info=True,
                )
                if attempt == attempts:
                    raise

    def _resolve(self, offer: AssignmentOffer, status: OfferStatus, actor: str, reason: str) -> None:
        now = self.clock.now()
        offer.status = status
        offer.resolved_at = now
        offer.resolved_by = actor
        offer.resolution_reason = reason
        self.audit.record(
            kind=AuditKind.ASSIGNMENT_DECISION,
            order_id=offer.order_id,
            actor=actor,
            timestamp=now,
            command="offer_resolved",
            reason=reason,
            payload={
                "offer_id": offer.id,
                "provider_id": offer.provider_id,
                "status": status.value,
            },
        )
        self.events.publish(OfferResolved(
            order_id=offer.order_id,
            actor=actor,
            occurred_at=now,
            offer_id=offer.id,
            provider_id=offer.provider_id,
            status=status,
            reason=reason,
        ))

    def _advance(self, offer: AssignmentOffer, actor: str) -> Tuple[List[AssignmentOffer], Optional[str]]:
        """After a refusal or timeout: offer to the next candidate or exhaust the round."""
        round_ = self.store.get_round(offer.round_id)
        if not round_.is_open:
            return [], None

        if round_.mode == AssignmentMode.BROADCAST:
            if any(self.store.get_offer(oid).is_pending for oid in round_.offer_ids):
                return [], None
            reason = "Every broadcast offer was refused or timed out"
        elif round_.cursor < len(round_.ranked):
            next_result = round_.ranked[round_.cursor]
            round_.cursor += 1
            expires_at = self.clock.now() + timedelta(seconds=self.config.offer_timeout_seconds)
            return [self._create_offer(round_, next_result, actor, expires_at)], None
        else:
            reason = "All ranked candidates refused or timed out"

        self._close_round(round_, RoundOutcome.EXHAUSTED, actor, reason)
        if self._exhaustion_handler is not None:
            self._exhaustion_handler(round_.order_id, reason, actor)
        return [], reason

    def _close_round(self, round_: AssignmentRound, outcome: RoundOutcome, actor: str, reason: str) -> None:
        now = self.clock.now()
        round_.outcome = outcome
        round_.closed_at = now
        self.audit.record(
            kind=AuditKind.ASSIGNMENT_DECISION,
            order_id=round_.order_id,
            actor=actor,
            timestamp=now,
            command=f"round_{outcome.value.lower()}",
            reason=reason,
            payload={"round_id": round_.id, "mode": round_.mode.value},
        )
