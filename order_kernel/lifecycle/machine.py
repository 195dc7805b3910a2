"""
Order Lifecycle State Machine.

The single entry point for inbound commands. Every command:
  validate input -> take the order lock -> check the transition table and
  guards -> mutate -> append to the audit log -> publish events

Behavioral Contract:
- Only transitions listed in lifecycle.transitions are ever applied
- Leaving SCHEDULED re-evaluates the Go-Exec gate on every attempt; NOK
  blocks with the gate's block reason
- A rejected command leaves the order's state untouched, is audited with
  actor, requested command and reason, and comes back as a CommandResult
  with accepted=False and the authoritative order snapshot
- A command runs against a checkpoint of the order's records. A rejection
  or an unexpected failure restores it, so no partial mutation survives.
  Two rejections keep what they recorded: begin_transit keeps the gate
  decision that blocked it, and a late accept keeps the offer TIMEOUT.
  Audit entries already appended stay; the rejected_command entry follows them.
- Unexpected failures are audited as rejected_command (error "internal")
  and re-raised
- Every command names its actor explicitly
"""

import logging
from datetime import date
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from order_kernel.assignment.orchestrator import AssignmentOrchestrator, DispatchOutcome
from order_kernel.audit.log import AuditLog
from order_kernel.errors import (
    ConflictError,
    ErrorKind,
    GuardViolation,
    KernelError,
    NotFoundError,
    ValidationError,
)
from order_kernel.events.bus import EventBus
from order_kernel.gate.evaluator import GoExecGate, validate_block_reason, validate_derogation
from order_kernel.lifecycle.transitions import (
    HOLDABLE_STATES,
    REWORK_STATES,
    OrderEvent,
    allowed_events,
    targets,
)
from order_kernel.models.assignment import AssignmentMode, AssignmentOffer
from order_kernel.models.audit import AuditKind, StateTransitionRecord
from order_kernel.models.events import (
    GoExecDecided,
    OrderStateChanged,
    RescheduleRequested,
    WCFStatusChanged,
)
from order_kernel.models.execution import (
    CheckInRecord,
    Checklist,
    CheckOutRecord,
    SignatureRole,
    WCFRejectionReason,
    WCFStatus,
    WorkCompletionForm,
)
from order_kernel.models.gate import GoExecDecision
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
from order_kernel.order_store.store import OrderCheckpoint, OrderStore
from order_kernel.timing.clock import Clock

logger = logging.getLogger(__name__)

MIN_RESCHEDULE_REASON_LENGTH = 10

RESCHEDULABLE_STATES = frozenset({
    OrderState.NEW,
    OrderState.PENDING_ASSIGNMENT,
    OrderState.PENDING_ACCEPTANCE,
    OrderState.ASSIGNED,
    OrderState.SCHEDULED,
    OrderState.PENDING_PARTS,
    OrderState.PAUSED,
    OrderState.ON_HOLD,
})

REASSIGNABLE_STATES = frozenset({
    OrderState.PENDING_ACCEPTANCE,
    OrderState.ASSIGNED,
    OrderState.SCHEDULED,
})

REQUIRED_SIGNATURES = frozenset({SignatureRole.CUSTOMER, SignatureRole.TECHNICIAN})


class _Command:
    """Bookkeeping for one in-flight command."""

    def __init__(self, name: str, actor: str):
        self.name = name
        self.actor = actor
        self.events: List[str] = []
        self.offers: List[AssignmentOffer] = []
        self.reason: Optional[str] = None
        # Set by handlers whose rejection still records an outcome
        self.keep_effects = False


def _require_text(value: Optional[str], field_name: str, min_length: int = 1) -> str:
    if value is None or len(value.strip()) < min_length:
        if min_length <= 1:
            raise ValidationError(f"{field_name} is required")
        raise ValidationError(f"{field_name} must be at least {min_length} characters")
    return value.strip()


class LifecycleMachine:
    """
    Owns every order mutation. Collaborators are injected so tests can drive
    time with a ManualClock and inspect the audit log directly.
    """

    def __init__(
        self,
        store: OrderStore,
        gate: GoExecGate,
        orchestrator: AssignmentOrchestrator,
        audit_log: AuditLog,
        event_bus: EventBus,
        clock: Clock,
    ):
        self.store = store
        self.gate = gate
        self.orchestrator = orchestrator
        self.audit = audit_log
        self.events = event_bus
        self.clock = clock
        orchestrator.set_exhaustion_handler(self._on_offers_exhausted)

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _execute(
        self,
        command: str,
        order_id: str,
        actor: str,
        handler: Callable[[ServiceOrder, _Command], None],
    ) -> CommandResult:
        if not actor or not actor.strip():
            return self._reject(command, order_id, actor or "anonymous", ErrorKind.VALIDATION, "actor is required")
        with self.store.lock_for(order_id):
            order = self.store.find_order(order_id)
            if order is None:
                return self._reject(
                    command, order_id, actor, ErrorKind.NOT_FOUND, f"Service order {order_id} not found"
                )
            ctx = _Command(command, actor)
            checkpoint = self.store.checkpoint(order_id)
            try:
                handler(order, ctx)
            except KernelError as exc:
                if not ctx.keep_effects:
                    self._rollback(checkpoint)
                return self._reject(
                    command, order_id, actor, exc.kind, exc.reason, self.store.find_order(order_id)
                )
            except Exception:
                self._rollback(checkpoint)
                logger.exception(
                    "Command failed; order restored",
                    extra={"order_id": order_id, "command": command, "actor": actor},
                )
                self._audit_rejection(
                    command, order_id, actor, "internal", "Command failed unexpectedly",
                    self.store.find_order(order_id),
                )
                raise
            return CommandResult(
                command=command,
                accepted=True,
                order=self.store.snapshot(order_id),
                reason=ctx.reason,
                events=ctx.events,
                offers=[o.model_copy(deep=True) for o in ctx.offers],
            )

    def _reject(
        self,
        command: str,
        order_id: str,
        actor: str,
        kind: Optional[ErrorKind],
        reason: str,
        order: Optional[ServiceOrder] = None,
    ) -> CommandResult:
        kind = kind or ErrorKind.VALIDATION
        self._audit_rejection(command, order_id, actor, kind.value, reason, order)
        logger.warning(
            "Command rejected",
            extra={
                "order_id": order_id,
                "command": command,
                "actor": actor,
                "error": kind.value,
                "reason": reason,
            },
        )
        return CommandResult(
            command=command,
            accepted=False,
            order=order.model_copy(deep=True) if order else None,
            error=kind,
            reason=reason,
        )

    def _audit_rejection(
        self,
        command: str,
        order_id: str,
        actor: str,
        error: str,
        reason: str,
        order: Optional[ServiceOrder],
    ) -> None:
        self.audit.record(
            kind=AuditKind.REJECTED_COMMAND,
            order_id=order_id,
            actor=actor,
            timestamp=self.clock.now(),
            command=command,
            from_state=order.state if order else None,
            reason=reason,
            payload={"error": error},
        )

    def _rollback(self, checkpoint: OrderCheckpoint) -> None:
        """Undo a failed command's store mutations and bring offer timers back in line."""
        dropped = self.store.restore(checkpoint)
        self.orchestrator.resync_timers(checkpoint.order_id, dropped)

    def _target(self, order: ServiceOrder, event: OrderEvent) -> OrderState:
        """The single target of `event` from the order's state, or GuardViolation."""
        options = targets(order.state, event)
        if not options:
            raise GuardViolation(f"Cannot {event.value} an order in state {order.state.value}")
        return options[0]

    def _transition(
        self,
        order: ServiceOrder,
        event: OrderEvent,
        to_state: OrderState,
        ctx: _Command,
        reason: Optional[str] = None,
    ) -> None:
        if to_state not in targets(order.state, event):
            raise GuardViolation(
                f"Cannot {event.value} from {order.state.value} to {to_state.value}"
            )
        now = self.clock.now()
        from_state = order.state
        order.state = to_state
        order.state_changed_at = now
        order.updated_at = now
        order.version += 1
        self.audit.record_transition(StateTransitionRecord(
            order_id=order.id,
            from_state=from_state,
            to_state=to_state,
            event=event.value,
            actor=ctx.actor,
            timestamp=now,
            reason=reason,
        ))
        ctx.events.append(event.value)
        logger.info(
            "Order transitioned",
            extra={
                "order_id": order.id,
                "event": event.value,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor": ctx.actor,
            },
        )
        self.events.publish(OrderStateChanged(
            order_id=order.id,
            actor=ctx.actor,
            occurred_at=now,
            from_state=from_state,
            to_state=to_state,
            event=event.value,
            reason=reason,
        ))

    def _record_update(self, order: ServiceOrder, ctx: _Command, reason: str, payload: dict) -> None:
        """Audit a mutation that does not change state."""
        now = self.clock.now()
        order.updated_at = now
        order.version += 1
        self.audit.record(
            kind=AuditKind.ORDER_UPDATE,
            order_id=order.id,
            actor=ctx.actor,
            timestamp=now,
            command=ctx.name,
            from_state=order.state,
            to_state=order.state,
            reason=reason,
            payload=payload,
        )

    def _apply_gate(self, order: ServiceOrder, actor: str) -> GoExecDecision:
        now = self.clock.now()
        derogation = self.store.active_derogation(order.id)
        decision = self.gate.evaluate(order, derogation, current_time=now, actor=actor)
        self.store.add_decision(decision)
        if derogation is not None and decision.superseded_derogation_id == derogation.id:
            derogation.superseded_at = now

        previous = order.go_exec_status
        order.go_exec_status = decision.status
        order.go_exec_reason_codes = list(decision.reason_codes)
        if decision.status == GoExecStatus.OK:
            order.go_exec_block_reason = None
            order.go_exec_blocked_at = None
            order.go_exec_overridden_at = None
            order.go_exec_overridden_by = None
            order.derogation_reason = None
        elif decision.status == GoExecStatus.NOK:
            order.go_exec_block_reason = decision.block_reason
            if previous != GoExecStatus.NOK or order.go_exec_blocked_at is None:
                order.go_exec_blocked_at = now
            order.go_exec_overridden_at = None
            order.go_exec_overridden_by = None
            order.derogation_reason = None
        else:
            # The prior block reason is retained alongside the override
            order.go_exec_block_reason = decision.block_reason
            order.go_exec_overridden_at = derogation.granted_at
            order.go_exec_overridden_by = derogation.approved_by
            order.derogation_reason = derogation.reason
        order.updated_at = now

        self.audit.record(
            kind=AuditKind.GATE_DECISION,
            order_id=order.id,
            actor=actor,
            timestamp=now,
            command="go_exec_evaluated",
            from_state=order.state,
            to_state=order.state,
            reason=decision.block_reason or decision.status.value,
            payload={
                **decision.model_dump(mode="json"),
                "structured_reason": self.gate.structured_reason(decision),
            },
        )
        self.events.publish(GoExecDecided(
            order_id=order.id,
            actor=actor,
            occurred_at=now,
            decision_id=decision.id,
            status=decision.status,
            block_reason=decision.block_reason,
        ))
        return decision

    def _apply_dispatch(self, order: ServiceOrder, outcome: DispatchOutcome, ctx: _Command) -> None:
        if outcome.exhausted:
            ctx.reason = outcome.exhausted_reason
            return
        ctx.offers.extend(outcome.offers)
        if order.state != OrderState.PENDING_ACCEPTANCE:
            self._transition(
                order,
                OrderEvent.OFFER_DISPATCHED,
                OrderState.PENDING_ACCEPTANCE,
                ctx,
                reason=f"{len(outcome.offers)} {outcome.round.mode.value} offer(s) dispatched",
            )
        if outcome.accepted is not None:
            self._assign(order, outcome.accepted, ctx)

    def _assign(self, order: ServiceOrder, offer: AssignmentOffer, ctx: _Command) -> None:
        provider = self.orchestrator.providers.get(offer.provider_id)
        order.assigned_provider_id = offer.provider_id
        order.assigned_technician_id = provider.technician_id if provider else None
        self._transition(
            order,
            OrderEvent.OFFER_ACCEPTED,
            OrderState.ASSIGNED,
            ctx,
            reason=f"Offer {offer.id} accepted by {offer.provider_id}",
        )

    def _on_offers_exhausted(self, order_id: str, reason: str, actor: str) -> None:
        with self.store.lock_for(order_id):
            order = self.store.find_order(order_id)
            if order is None or order.state != OrderState.PENDING_ACCEPTANCE:
                logger.warning(
                    "Offer exhaustion ignored; order is not awaiting acceptance",
                    extra={"order_id": order_id, "state": order.state.value if order else None},
                )
                return
            self._transition(
                order,
                OrderEvent.OFFERS_EXHAUSTED,
                OrderState.PENDING_ASSIGNMENT,
                _Command(OrderEvent.OFFERS_EXHAUSTED.value, actor),
                reason=reason,
            )

    def _current_wcf(self, order: ServiceOrder) -> WorkCompletionForm:
        if order.state != OrderState.PENDING_WCF or order.current_wcf_id is None:
            raise GuardViolation(
                f"No work completion form is open; order is in state {order.state.value}"
            )
        return self.store.get_wcf(order.current_wcf_id)

    def _publish_wcf(self, wcf: WorkCompletionForm, actor: str) -> None:
        self.events.publish(WCFStatusChanged(
            order_id=wcf.order_id,
            actor=actor,
            occurred_at=self.clock.now(),
            wcf_id=wcf.id,
            status=wcf.status,
        ))

    def _validate_not_past(self, scheduled_date: date) -> None:
        today = self.clock.now().date()
        if scheduled_date < today:
            raise ValidationError(
                f"Scheduled date {scheduled_date.isoformat()} is before today ({today.isoformat()})"
            )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: str) -> ServiceOrder:
        return self.store.snapshot(order_id)

    def list_orders(self, state: Optional[OrderState] = None) -> List[ServiceOrder]:
        return [
            o.model_copy(deep=True)
            for o in self.store.list_orders()
            if state is None or o.state == state
        ]

    def allowed_events(self, order_id: str) -> List[OrderEvent]:
        return allowed_events(self.store.get_order(order_id).state)

    def history(self, order_id: str) -> List[StateTransitionRecord]:
        self.store.get_order(order_id)
        return self.audit.transitions_for(order_id)

    # =========================================================================
    # Creation & assignment
    # =========================================================================

    def create_order(
        self,
        actor: str,
        service_type: Optional[str] = None,
        customer: Optional[CustomerRef] = None,
        location: Optional[GeoPoint] = None,
        required_skills: Optional[List[str]] = None,
        urgency: Urgency = Urgency.NORMAL,
        external_id: Optional[str] = None,
        estimated_duration_minutes: Optional[int] = None,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        product_delivery_status: DeliveryStatus = DeliveryStatus.PENDING,
        delivery_blocks_execution: bool = False,
        risk_level: RiskLevel = RiskLevel.NONE,
        scheduled_date: Optional[date] = None,
        scheduled_time_slot: Optional[TimeSlot] = None,
        order_id: Optional[str] = None,
    ) -> CommandResult:
        """Create a DRAFT order and run the gate once so its Go-Exec status is meaningful."""
        order_id = order_id or f"so_{uuid4().hex[:12]}"
        command = "create_order"
        if not actor or not actor.strip():
            return self._reject(command, order_id, actor or "anonymous", ErrorKind.VALIDATION, "actor is required")
        if estimated_duration_minutes is not None and estimated_duration_minutes <= 0:
            return self._reject(
                command, order_id, actor, ErrorKind.VALIDATION, "estimated_duration_minutes must be positive"
            )

        with self.store.lock_for(order_id):
            existing = self.store.find_order(order_id)
            if existing is not None:
                return self._reject(
                    command, order_id, actor, ErrorKind.CONFLICT, f"Service order {order_id} already exists", existing
                )
            now = self.clock.now()
            order = ServiceOrder(
                id=order_id,
                external_id=external_id,
                service_type=service_type,
                urgency=urgency,
                customer=customer,
                location=location,
                required_skills=list(required_skills or []),
                estimated_duration_minutes=estimated_duration_minutes,
                payment_status=payment_status,
                product_delivery_status=product_delivery_status,
                delivery_blocks_execution=delivery_blocks_execution,
                risk_level=risk_level,
                scheduled_date=scheduled_date,
                scheduled_time_slot=scheduled_time_slot,
                created_by=actor,
                created_at=now,
                updated_at=now,
                state_changed_at=now,
            )
            checkpoint = self.store.checkpoint(order_id)
            self.store.add_order(order)
            ctx = _Command(command, actor)
            try:
                self._record_update(order, ctx, "Order created", {"external_id": external_id})
                self._apply_gate(order, actor)
            except Exception:
                self._rollback(checkpoint)
                logger.exception("Order creation failed; order discarded", extra={"order_id": order_id})
                raise
            logger.info("Order created", extra={"order_id": order_id, "actor": actor})
            return CommandResult(command=command, accepted=True, order=self.store.snapshot(order_id))

    def submit(self, order_id: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.SUBMIT)
            missing = []
            if order.customer is None:
                missing.append("customer")
            if not order.service_type:
                missing.append("service type")
            if order.location is None:
                missing.append("location")
            if missing:
                raise GuardViolation(f"Cannot submit: missing {', '.join(missing)}")
            self._transition(order, OrderEvent.SUBMIT, target, ctx)

        return self._execute("submit", order_id, actor, handler)

    def request_assignment(
        self,
        order_id: str,
        actor: str,
        mode: AssignmentMode = AssignmentMode.OFFER,
        top_n: Optional[int] = None,
    ) -> CommandResult:
        """
        Move a NEW order to PENDING_ASSIGNMENT and dispatch a round.
        Also retries dispatch for an order already back in PENDING_ASSIGNMENT.
        """
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if top_n is not None and top_n < 1:
                raise ValidationError("top_n must be at least 1")
            if order.state == OrderState.NEW:
                self._transition(order, OrderEvent.REQUEST_ASSIGNMENT, OrderState.PENDING_ASSIGNMENT, ctx)
            elif order.state != OrderState.PENDING_ASSIGNMENT:
                raise GuardViolation(
                    f"Cannot request assignment for an order in state {order.state.value}"
                )
            outcome = self.orchestrator.dispatch(order, mode, ctx.actor, top_n=top_n)
            self._apply_dispatch(order, outcome, ctx)

        return self._execute("request_assignment", order_id, actor, handler)

    def force_direct_assign(self, order_id: str, provider_id: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if not provider_id:
                raise ValidationError("provider_id is required")
            if self.orchestrator.providers.get(provider_id) is None:
                raise ValidationError(f"Provider {provider_id} is not in the candidate pool")
            if order.state == OrderState.NEW:
                self._transition(order, OrderEvent.REQUEST_ASSIGNMENT, OrderState.PENDING_ASSIGNMENT, ctx)
            elif order.state != OrderState.PENDING_ASSIGNMENT:
                raise GuardViolation(
                    f"Cannot force an assignment for an order in state {order.state.value}"
                )
            outcome = self.orchestrator.dispatch(
                order, AssignmentMode.DIRECT, ctx.actor, provider_id=provider_id
            )
            self._apply_dispatch(order, outcome, ctx)

        return self._execute("force_direct_assign", order_id, actor, handler)

    def respond_to_offer(self, offer_id: str, accept: bool, actor: str) -> CommandResult:
        command = "accept_offer" if accept else "refuse_offer"
        try:
            offer = self.store.get_offer(offer_id)
        except NotFoundError as exc:
            logger.warning("Response to unknown offer", extra={"offer_id": offer_id, "actor": actor})
            return CommandResult(command=command, accepted=False, error=ErrorKind.NOT_FOUND, reason=exc.reason)

        def handler(order: ServiceOrder, ctx: _Command) -> None:
            outcome = self.orchestrator.respond(offer_id, accept, ctx.actor)
            if outcome.conflict:
                # An expired offer stays TIMEOUT and its round moves on
                ctx.keep_effects = True
                raise ConflictError(outcome.conflict_reason)
            if outcome.accepted is not None:
                ctx.offers.append(outcome.accepted)
                ctx.offers.extend(outcome.cancelled)
                self._assign(order, outcome.accepted, ctx)
                return
            ctx.offers.append(outcome.offer)
            ctx.offers.extend(outcome.new_offers)
            if outcome.exhausted_reason:
                ctx.reason = outcome.exhausted_reason
                if order.state == OrderState.PENDING_ASSIGNMENT:
                    ctx.events.append(OrderEvent.OFFERS_EXHAUSTED.value)

        return self._execute(command, offer.order_id, actor, handler)

    # =========================================================================
    # Scheduling & execution
    # =========================================================================

    def confirm_schedule(
        self,
        order_id: str,
        actor: str,
        scheduled_date: Optional[date] = None,
        time_slot: Optional[TimeSlot] = None,
    ) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.CONFIRM_SCHEDULE)
            if scheduled_date is not None:
                self._validate_not_past(scheduled_date)
            new_date = scheduled_date or order.scheduled_date
            if new_date is None:
                raise GuardViolation("Cannot confirm schedule: no scheduled date set")
            order.scheduled_date = new_date
            order.scheduled_time_slot = time_slot or order.scheduled_time_slot
            slot = order.scheduled_time_slot.value if order.scheduled_time_slot else "unspecified slot"
            self._transition(
                order, OrderEvent.CONFIRM_SCHEDULE, target, ctx,
                reason=f"Scheduled for {new_date.isoformat()} ({slot})",
            )

        return self._execute("confirm_schedule", order_id, actor, handler)

    def begin_transit(self, order_id: str, actor: str) -> CommandResult:
        """Leave SCHEDULED. The gate is re-evaluated on every attempt."""
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.BEGIN_TRANSIT)
            decision = self._apply_gate(order, ctx.actor)
            if decision.status == GoExecStatus.NOK:
                ctx.keep_effects = True
                raise GuardViolation(f"Go-Exec is NOK: {decision.block_reason}")
            if decision.status == GoExecStatus.DEROGATION:
                reason = f"Go-Exec DEROGATION approved by {decision.approved_by}"
            else:
                reason = "Go-Exec OK"
            self._transition(order, OrderEvent.BEGIN_TRANSIT, target, ctx, reason=reason)

        return self._execute("begin_transit", order_id, actor, handler)

    def check_in(
        self,
        order_id: str,
        actor: str,
        technician_id: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        accuracy_meters: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if latitude is not None and not -90 <= latitude <= 90:
                raise ValidationError("latitude must be between -90 and 90")
            if longitude is not None and not -180 <= longitude <= 180:
                raise ValidationError("longitude must be between -180 and 180")
            if accuracy_meters is not None and accuracy_meters < 0:
                raise ValidationError("accuracy_meters must not be negative")
            target = self._target(order, OrderEvent.CHECK_IN)
            order.check_in = CheckInRecord(
                technician_id=technician_id or order.assigned_technician_id or ctx.actor,
                occurred_at=self.clock.now(),
                latitude=latitude,
                longitude=longitude,
                accuracy_meters=accuracy_meters,
                notes=notes,
            )
            self._transition(order, OrderEvent.CHECK_IN, target, ctx)

        return self._execute("check_in", order_id, actor, handler)

    def check_out(
        self,
        order_id: str,
        actor: str,
        checklist: Optional[Checklist] = None,
        technician_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if duration_minutes is not None and duration_minutes < 0:
                raise ValidationError("duration_minutes must not be negative")
            target = self._target(order, OrderEvent.CHECK_OUT)
            if order.check_in is None:
                raise GuardViolation("Cannot check out: no check-in recorded")
            final = checklist or order.checklist
            if final is not None:
                incomplete = final.incomplete_mandatory()
                if incomplete:
                    labels = ", ".join(item.label for item in incomplete)
                    raise GuardViolation(f"Mandatory checklist items incomplete: {labels}")
            now = self.clock.now()
            if duration_minutes is None:
                elapsed = int((now - order.check_in.occurred_at).total_seconds() // 60)
            else:
                elapsed = duration_minutes
            order.checklist = final
            order.check_out = CheckOutRecord(
                technician_id=technician_id or order.check_in.technician_id,
                occurred_at=now,
                duration_minutes=max(0, elapsed),
                notes=notes,
            )
            self._transition(order, OrderEvent.CHECK_OUT, target, ctx)

        return self._execute("check_out", order_id, actor, handler)

    def pause(self, order_id: str, actor: str, reason: Optional[str] = None) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.PAUSE)
            self._transition(order, OrderEvent.PAUSE, target, ctx, reason=reason)

        return self._execute("pause", order_id, actor, handler)

    def resume(self, order_id: str, actor: str) -> CommandResult:
        """Resume a PAUSED order, or return an ON_HOLD order to where it was held."""
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if order.state == OrderState.ON_HOLD:
                target = order.held_from_state
                if target is None:
                    raise GuardViolation("Cannot resume: no held-from state recorded")
                order.held_from_state = None
                order.hold_reason = None
                self._transition(order, OrderEvent.RESUME, target, ctx, reason="Resumed from hold")
                if target == OrderState.PENDING_ACCEPTANCE:
                    self._redispatch(order, ctx)
                return
            target = self._target(order, OrderEvent.RESUME)
            self._transition(order, OrderEvent.RESUME, target, ctx)

        return self._execute("resume", order_id, actor, handler)

    def _redispatch(self, order: ServiceOrder, ctx: _Command) -> None:
        """A fresh round in the mode of the round the hold cancelled."""
        rounds = self.store.rounds_for(order.id)
        last = rounds[-1] if rounds else None
        mode = last.mode if last else AssignmentMode.OFFER
        top_n = len(last.offer_ids) if last and mode == AssignmentMode.BROADCAST else None
        outcome = self.orchestrator.dispatch(order, mode, ctx.actor, top_n=top_n)
        if outcome.exhausted:
            ctx.reason = outcome.exhausted_reason
            self._transition(
                order, OrderEvent.OFFERS_EXHAUSTED, OrderState.PENDING_ASSIGNMENT, ctx,
                reason=outcome.exhausted_reason,
            )
            return
        self._apply_dispatch(order, outcome, ctx)

    def block_on_parts(self, order_id: str, reason: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            text = _require_text(reason, "Parts block reason")
            target = self._target(order, OrderEvent.BLOCK_ON_PARTS)
            order.parts_block_reason = text
            self._transition(order, OrderEvent.BLOCK_ON_PARTS, target, ctx, reason=text)

        return self._execute("block_on_parts", order_id, actor, handler)

    def parts_resolved(self, order_id: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.PARTS_RESOLVED)
            order.parts_block_reason = None
            self._transition(order, OrderEvent.PARTS_RESOLVED, target, ctx)

        return self._execute("parts_resolved", order_id, actor, handler)

    # =========================================================================
    # Work completion form
    # =========================================================================

    def create_wcf(self, order_id: str, actor: str, checklist: Optional[Checklist] = None) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.WCF_CREATED)
            now = self.clock.now()
            wcf = WorkCompletionForm(
                id=f"wcf_{uuid4().hex[:12]}",
                order_id=order.id,
                checklist=checklist or order.checklist,
                created_by=ctx.actor,
                created_at=now,
                updated_at=now,
            )
            previous = self.store.get_wcf(order.current_wcf_id) if order.current_wcf_id else None
            if previous is not None and previous.status == WCFStatus.REJECTED:
                wcf.supersedes = previous.id
                previous.superseded_by = wcf.id
                previous.updated_at = now
            self.store.add_wcf(wcf)
            order.current_wcf_id = wcf.id
            order.wcf_ids.append(wcf.id)
            self._transition(order, OrderEvent.WCF_CREATED, target, ctx, reason=f"WCF {wcf.id} drafted")
            self._publish_wcf(wcf, ctx.actor)

        return self._execute("create_wcf", order_id, actor, handler)

    def submit_wcf(self, order_id: str, actor: str, responses: Optional[Dict[str, str]] = None) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            wcf = self._current_wcf(order)
            if wcf.status != WCFStatus.DRAFT:
                raise GuardViolation(f"WCF {wcf.id} is {wcf.status.value}, not DRAFT")
            wcf.responses = dict(responses or {})
            wcf.status = WCFStatus.PENDING_SIGNATURE
            wcf.updated_at = self.clock.now()
            self._record_update(order, ctx, f"WCF {wcf.id} submitted for signature", {"wcf_id": wcf.id})
            self._publish_wcf(wcf, ctx.actor)

        return self._execute("submit_wcf", order_id, actor, handler)

    def sign_wcf(self, order_id: str, role: SignatureRole, signature_ref: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            ref = _require_text(signature_ref, "signature_ref")
            wcf = self._current_wcf(order)
            if wcf.status != WCFStatus.PENDING_SIGNATURE:
                raise GuardViolation(f"WCF {wcf.id} is {wcf.status.value}, not PENDING_SIGNATURE")
            if role in wcf.signatures:
                raise ConflictError(f"WCF {wcf.id} already carries a {role.value} signature")
            wcf.signatures[role] = ref
            if REQUIRED_SIGNATURES <= set(wcf.signatures):
                wcf.status = WCFStatus.SIGNED
            wcf.updated_at = self.clock.now()
            self._record_update(
                order, ctx, f"WCF {wcf.id} signed by {role.value}",
                {"wcf_id": wcf.id, "role": role.value, "status": wcf.status.value},
            )
            self._publish_wcf(wcf, ctx.actor)

        return self._execute("sign_wcf", order_id, actor, handler)

    def approve_wcf(
        self,
        order_id: str,
        actor: str,
        rating: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if rating is not None and not 1 <= rating <= 5:
                raise ValidationError("rating must be between 1 and 5")
            target = self._target(order, OrderEvent.WCF_APPROVED)
            wcf = self._current_wcf(order)
            if wcf.status != WCFStatus.SIGNED:
                raise GuardViolation(f"WCF {wcf.id} is {wcf.status.value}; it must be SIGNED before approval")
            now = self.clock.now()
            wcf.status = WCFStatus.APPROVED
            wcf.rating = rating
            wcf.notes = notes
            wcf.decided_by = ctx.actor
            wcf.decided_at = now
            wcf.updated_at = now
            self._transition(order, OrderEvent.WCF_APPROVED, target, ctx, reason=f"WCF {wcf.id} approved")
            self._publish_wcf(wcf, ctx.actor)

        return self._execute("approve_wcf", order_id, actor, handler)

    def reject_wcf(
        self,
        order_id: str,
        reason: WCFRejectionReason,
        notes: str,
        actor: str,
        rework_state: OrderState = OrderState.IN_PROGRESS,
    ) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if reason is None:
                raise ValidationError("Rejection reason is required")
            text = _require_text(notes, "Rejection notes")
            if rework_state not in REWORK_STATES:
                raise ValidationError(
                    f"Rework state must be one of {', '.join(sorted(s.value for s in REWORK_STATES))}"
                )
            wcf = self._current_wcf(order)
            if wcf.status in (WCFStatus.APPROVED, WCFStatus.REJECTED):
                raise GuardViolation(f"WCF {wcf.id} is already {wcf.status.value}")
            now = self.clock.now()
            wcf.status = WCFStatus.REJECTED
            wcf.rejection_reason = reason
            wcf.notes = text
            wcf.decided_by = ctx.actor
            wcf.decided_at = now
            wcf.updated_at = now
            if rework_state == OrderState.PENDING_PARTS:
                order.parts_block_reason = text
            self._transition(
                order, OrderEvent.WCF_REJECTED, rework_state, ctx,
                reason=f"WCF {wcf.id} rejected ({reason.value}): {text}",
            )
            self._publish_wcf(wcf, ctx.actor)

        return self._execute("reject_wcf", order_id, actor, handler)

    # =========================================================================
    # Billing close-out
    # =========================================================================

    def issue_invoice(self, order_id: str, reference: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            ref = _require_text(reference, "Invoice reference")
            target = self._target(order, OrderEvent.INVOICE_ISSUED)
            order.invoice_reference = ref
            self._transition(order, OrderEvent.INVOICE_ISSUED, target, ctx, reason=f"Invoice {ref}")

        return self._execute("issue_invoice", order_id, actor, handler)

    def close(self, order_id: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            target = self._target(order, OrderEvent.CLOSE)
            self._transition(order, OrderEvent.CLOSE, target, ctx)

        return self._execute("close", order_id, actor, handler)

    # =========================================================================
    # Reschedule
    # =========================================================================

    def reschedule(
        self,
        order_id: str,
        scheduled_date: date,
        time_slot: TimeSlot,
        reason: str,
        actor: str,
        reassign_provider: bool = False,
        notify_customer: bool = True,
        notify_provider: bool = True,
    ) -> CommandResult:
        """
        Move the appointment without changing state. With reassign_provider the
        assignment is dropped and the order goes back to PENDING_ASSIGNMENT.
        """
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if scheduled_date is None:
                raise ValidationError("scheduled_date is required")
            if time_slot is None:
                raise ValidationError("time_slot is required")
            text = _require_text(reason, "Reschedule reason", MIN_RESCHEDULE_REASON_LENGTH)
            self._validate_not_past(scheduled_date)
            if order.state not in RESCHEDULABLE_STATES:
                raise GuardViolation(f"Cannot reschedule an order in state {order.state.value}")
            if reassign_provider and order.state not in REASSIGNABLE_STATES:
                raise GuardViolation(
                    f"Cannot reassign the provider of an order in state {order.state.value}"
                )

            previous_date = order.scheduled_date
            previous_slot = order.scheduled_time_slot
            previous_provider = order.assigned_provider_id
            order.scheduled_date = scheduled_date
            order.scheduled_time_slot = time_slot
            self._record_update(order, ctx, text, {
                "previous_date": previous_date.isoformat() if previous_date else None,
                "previous_slot": previous_slot.value if previous_slot else None,
                "scheduled_date": scheduled_date.isoformat(),
                "scheduled_time_slot": time_slot.value,
                "reassign_provider": reassign_provider,
            })

            if reassign_provider:
                ctx.offers.extend(
                    self.orchestrator.cancel_outstanding(order.id, ctx.actor, "Order rescheduled with reassignment")
                )
                order.assigned_provider_id = None
                order.assigned_technician_id = None
                self._transition(order, OrderEvent.REASSIGN, OrderState.PENDING_ASSIGNMENT, ctx, reason=text)

            self.events.publish(RescheduleRequested(
                order_id=order.id,
                actor=ctx.actor,
                occurred_at=self.clock.now(),
                scheduled_date=scheduled_date,
                scheduled_time_slot=time_slot,
                reason=text,
                reassign_provider=reassign_provider,
                notify_customer=notify_customer,
                notify_provider=notify_provider,
                previous_provider_id=previous_provider,
            ))

        return self._execute("reschedule", order_id, actor, handler)

    # =========================================================================
    # Go-Exec
    # =========================================================================

    def update_go_exec(
        self,
        order_id: str,
        actor: str,
        payment_status: Optional[PaymentStatus] = None,
        product_delivery_status: Optional[DeliveryStatus] = None,
        delivery_blocks_execution: Optional[bool] = None,
        risk_level: Optional[RiskLevel] = None,
        block_reason: Optional[str] = None,
        clear_block: bool = False,
    ) -> CommandResult:
        """Record new Go-Exec facts from collaborators or an operator, then re-run the gate."""
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if block_reason is not None and clear_block:
                raise ValidationError("block_reason and clear_block are mutually exclusive")
            if block_reason is not None:
                error = validate_block_reason(block_reason)
                if error:
                    raise ValidationError(error)
            supplied = [
                payment_status, product_delivery_status, delivery_blocks_execution, risk_level, block_reason,
            ]
            if all(v is None for v in supplied) and not clear_block:
                raise ValidationError("No Go-Exec facts supplied")
            if order.is_terminal:
                raise GuardViolation(f"Cannot update Go-Exec facts of a {order.state.value} order")

            changes = {}
            if payment_status is not None:
                changes["payment_status"] = payment_status.value
                order.payment_status = payment_status
            if product_delivery_status is not None:
                changes["product_delivery_status"] = product_delivery_status.value
                order.product_delivery_status = product_delivery_status
            if delivery_blocks_execution is not None:
                changes["delivery_blocks_execution"] = delivery_blocks_execution
                order.delivery_blocks_execution = delivery_blocks_execution
            if risk_level is not None:
                changes["risk_level"] = risk_level.value
                if risk_level != order.risk_level:
                    order.risk_acknowledged_at = None
                order.risk_level = risk_level
            if block_reason is not None:
                changes["operator_block_reason"] = block_reason.strip()
                order.operator_block_reason = block_reason.strip()
            if clear_block:
                changes["operator_block_reason"] = None
                order.operator_block_reason = None

            self._record_update(order, ctx, "Go-Exec facts updated", changes)
            decision = self._apply_gate(order, ctx.actor)
            ctx.reason = decision.block_reason or f"Go-Exec {decision.status.value}"

        return self._execute("update_go_exec", order_id, actor, handler)

    def acknowledge_risk(self, order_id: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            if order.is_terminal:
                raise GuardViolation(f"Cannot acknowledge risk on a {order.state.value} order")
            if order.risk_level == RiskLevel.NONE:
                raise GuardViolation("Order carries no risk to acknowledge")
            order.risk_acknowledged_at = self.clock.now()
            self._record_update(
                order, ctx, f"Risk level {order.risk_level.value} acknowledged",
                {"risk_level": order.risk_level.value},
            )
            decision = self._apply_gate(order, ctx.actor)
            ctx.reason = decision.block_reason or f"Go-Exec {decision.status.value}"

        return self._execute("acknowledge_risk", order_id, actor, handler)

    def request_derogation(self, order_id: str, reason: str, approved_by: str, actor: str) -> CommandResult:
        """Override a NOK gate. Keeps the block reason for audit."""
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            error = validate_derogation(reason, approved_by)
            if error:
                raise ValidationError(error)
            if order.is_terminal:
                raise GuardViolation(f"Cannot grant a derogation on a {order.state.value} order")
            if order.go_exec_status != GoExecStatus.NOK:
                raise GuardViolation(
                    f"A derogation only applies while Go-Exec is NOK (currently {order.go_exec_status.value})"
                )
            derogation = self.gate.grant_derogation(
                order, reason, approved_by, requested_by=ctx.actor, current_time=self.clock.now(),
            )
            self.store.add_derogation(derogation)
            self._record_update(order, ctx, derogation.reason, {
                "derogation_id": derogation.id,
                "approved_by": derogation.approved_by,
                "covered_codes": derogation.covered_codes,
            })
            decision = self._apply_gate(order, ctx.actor)
            ctx.reason = f"Go-Exec {decision.status.value}"

        return self._execute("request_derogation", order_id, actor, handler)

    # =========================================================================
    # Side states
    # =========================================================================

    def cancel(self, order_id: str, reason: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            text = _require_text(reason, "Cancellation reason")
            target = self._target(order, OrderEvent.CANCEL)
            ctx.offers.extend(self.orchestrator.cancel_outstanding(order.id, ctx.actor, "Order cancelled"))
            order.cancellation_reason = text
            order.held_from_state = None
            self._transition(order, OrderEvent.CANCEL, target, ctx, reason=text)

        return self._execute("cancel", order_id, actor, handler)

    def hold(self, order_id: str, reason: str, actor: str) -> CommandResult:
        def handler(order: ServiceOrder, ctx: _Command) -> None:
            text = _require_text(reason, "Hold reason")
            if order.state not in HOLDABLE_STATES:
                raise GuardViolation(f"Cannot hold an order in state {order.state.value}")
            if order.state == OrderState.PENDING_ACCEPTANCE:
                ctx.offers.extend(
                    self.orchestrator.cancel_outstanding(order.id, ctx.actor, "Order put on hold")
                )
            order.held_from_state = order.state
            order.hold_reason = text
            self._transition(order, OrderEvent.HOLD, OrderState.ON_HOLD, ctx, reason=text)

        return self._execute("hold", order_id, actor, handler)
