"""
Service Order Kernel API — FastAPI endpoints.

Exposes every inbound command of the Lifecycle State Machine plus:
- Provider pool maintenance and candidate scoring previews
- Order history, offers, work completion forms and Go-Exec decisions
- Audit trail queries and chain verification
- Reconciler status and manual trigger

Rejected commands map to HTTP status codes: guard violations and conflicts
409, validation 422, unknown identifiers 404. The body always carries the
reason and the current order snapshot.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from order_kernel.errors import ErrorKind, KernelError
from order_kernel.kernel import Kernel, build_kernel
from order_kernel.logging_config import setup_logging
from order_kernel.models.assignment import AssignmentMode
from order_kernel.models.audit import AuditKind
from order_kernel.models.config import KernelConfig
from order_kernel.models.execution import Checklist, SignatureRole, WCFRejectionReason
from order_kernel.models.order import (
    CustomerRef,
    DeliveryStatus,
    GeoPoint,
    OrderState,
    PaymentStatus,
    RiskLevel,
    TimeSlot,
    Urgency,
)
from order_kernel.models.results import CommandResult
from order_kernel.models.scoring import ProviderCandidate
from order_kernel.timing.clock import SystemClock
from order_kernel.timing.timers import AsyncioTimerService

logger = logging.getLogger(__name__)

STATUS_FOR_ERROR = {
    ErrorKind.GUARD_VIOLATION: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
}


# --- Request Models ---

class ActorRequest(BaseModel):
    actor: str


class CreateOrderRequest(ActorRequest):
    service_type: Optional[str] = None
    customer: Optional[CustomerRef] = None
    location: Optional[GeoPoint] = None
    required_skills: List[str] = []
    urgency: Urgency = Urgency.NORMAL
    external_id: Optional[str] = None
    estimated_duration_minutes: Optional[int] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    product_delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_blocks_execution: bool = False
    risk_level: RiskLevel = RiskLevel.NONE
    scheduled_date: Optional[date] = None
    scheduled_time_slot: Optional[TimeSlot] = None


class AssignmentRequest(ActorRequest):
    mode: AssignmentMode = AssignmentMode.OFFER
    top_n: Optional[int] = None


class DirectAssignRequest(ActorRequest):
    provider_id: str


class OfferResponseRequest(ActorRequest):
    accept: bool


class ConfirmScheduleRequest(ActorRequest):
    scheduled_date: Optional[date] = None
    time_slot: Optional[TimeSlot] = None


class CheckInRequest(ActorRequest):
    technician_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_meters: Optional[float] = None
    notes: Optional[str] = None


class CheckOutRequest(ActorRequest):
    checklist: Optional[Checklist] = None
    technician_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    notes: Optional[str] = None


class ReasonRequest(ActorRequest):
    reason: str


class OptionalReasonRequest(ActorRequest):
    reason: Optional[str] = None


class CreateWCFRequest(ActorRequest):
    checklist: Optional[Checklist] = None


class SubmitWCFRequest(ActorRequest):
    responses: Dict[str, str] = {}


class SignWCFRequest(ActorRequest):
    role: SignatureRole
    signature_ref: str


class ApproveWCFRequest(ActorRequest):
    rating: Optional[int] = None
    notes: Optional[str] = None


class RejectWCFRequest(ActorRequest):
    reason: WCFRejectionReason
    notes: str
    rework_state: OrderState = OrderState.IN_PROGRESS


class InvoiceRequest(ActorRequest):
    reference: str


class RescheduleRequest(ActorRequest):
    scheduled_date: date
    time_slot: TimeSlot
    reason: str
    reassign_provider: bool = False
    notify_customer: bool = True
    notify_provider: bool = True


class GoExecUpdateRequest(ActorRequest):
    payment_status: Optional[PaymentStatus] = None
    product_delivery_status: Optional[DeliveryStatus] = None
    delivery_blocks_execution: Optional[bool] = None
    risk_level: Optional[RiskLevel] = None
    block_reason: Optional[str] = None
    clear_block: bool = False


class DerogationRequest(ActorRequest):
    reason: str
    approved_by: str


class ProviderUpsertRequest(BaseModel):
    name: str
    location: GeoPoint
    skills: List[str] = []
    rating: float = Field(ge=0, le=5, default=0.0)
    active_jobs: int = Field(ge=0, default=0)
    capacity: int = Field(ge=1, default=1)
    available: bool = True
    active: bool = True
    availability_schedule: Optional[str] = None
    technician_id: Optional[str] = None


def _command_response(result: CommandResult):
    if result.accepted:
        return result.model_dump(mode="json")
    return JSONResponse(
        status_code=STATUS_FOR_ERROR.get(result.error, 422),
        content={
            "command": result.command,
            "error": result.error.value if result.error else None,
            "reason": result.reason,
            "order": result.order.model_dump(mode="json") if result.order else None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(KernelError)
    async def kernel_error_handler(request: Request, exc: KernelError):
        order = exc.order.model_dump(mode="json") if exc.order is not None else None
        return JSONResponse(
            status_code=STATUS_FOR_ERROR.get(exc.kind, 500),
            content={
                "error": exc.kind.value if exc.kind else "configuration",
                "reason": exc.reason,
                "order": order,
            },
        )


# --- Application Factory ---

def create_app(
    kernel: Optional[Kernel] = None,
    config: Optional[KernelConfig] = None,
    run_reconciler: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    An injected kernel is used as-is. Without one, the lifespan builds a
    kernel on wall-clock time with asyncio-backed offer timers.
    """
    cfg = config or (kernel.config if kernel else KernelConfig())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.kernel is None
        if owned:
            setup_logging(cfg.logging.level, cfg.logging.format)
            clock = SystemClock()
            timers = AsyncioTimerService(asyncio.get_running_loop(), clock)
            app.state.kernel = build_kernel(cfg, clock=clock, timers=timers)

        stop_event = asyncio.Event()
        task = None
        if run_reconciler:
            task = asyncio.create_task(app.state.kernel.reconciler.run_async(stop_event))
        logger.info("Service order kernel starting", extra={"run_reconciler": run_reconciler})

        yield

        logger.info("Service order kernel shutting down")
        stop_event.set()
        if task is not None:
            await task
        if owned:
            app.state.kernel.close()

    app = FastAPI(
        title="Service Order Kernel API",
        description="Service order lifecycle, Go-Exec gate and provider assignment",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.kernel = kernel
    register_exception_handlers(app)

    def k() -> Kernel:
        return app.state.kernel

    # === OPERATIONS ===

    @app.get("/health")
    def health():
        return {"status": "ok", "orders": len(k().store.list_orders())}

    # === ORDERS ===

    @app.post("/orders")
    def create_order(req: CreateOrderRequest):
        """Create a DRAFT service order."""
        return _command_response(k().machine.create_order(
            actor=req.actor,
            service_type=req.service_type,
            customer=req.customer,
            location=req.location,
            required_skills=req.required_skills,
            urgency=req.urgency,
            external_id=req.external_id,
            estimated_duration_minutes=req.estimated_duration_minutes,
            payment_status=req.payment_status,
            product_delivery_status=req.product_delivery_status,
            delivery_blocks_execution=req.delivery_blocks_execution,
            risk_level=req.risk_level,
            scheduled_date=req.scheduled_date,
            scheduled_time_slot=req.scheduled_time_slot,
        ))

    @app.get("/orders")
    def list_orders(state: Optional[OrderState] = None):
        return [o.model_dump(mode="json") for o in k().machine.list_orders(state)]

    @app.get("/orders/{order_id}")
    def get_order(order_id: str):
        return k().machine.get_order(order_id).model_dump(mode="json")

    @app.get("/orders/{order_id}/history")
    def get_history(order_id: str):
        """Accepted state transitions, oldest first."""
        return [r.model_dump(mode="json") for r in k().machine.history(order_id)]

    @app.get("/orders/{order_id}/allowed-events")
    def get_allowed_events(order_id: str):
        return [e.value for e in k().machine.allowed_events(order_id)]

    @app.get("/orders/{order_id}/offers")
    def get_offers(order_id: str):
        k().store.get_order(order_id)
        return [o.model_dump(mode="json") for o in k().store.offers_for(order_id)]

    @app.get("/orders/{order_id}/wcfs")
    def get_wcfs(order_id: str):
        k().store.get_order(order_id)
        return [w.model_dump(mode="json") for w in k().store.wcfs_for(order_id)]

    @app.get("/orders/{order_id}/go-exec")
    def get_go_exec(order_id: str):
        """Current gate status plus every decision and derogation."""
        order = k().store.snapshot(order_id)
        return {
            "status": order.go_exec_status.value,
            "block_reason": order.go_exec_block_reason,
            "reason_codes": order.go_exec_reason_codes,
            "decisions": [d.model_dump(mode="json") for d in k().store.decisions_for(order_id)],
            "derogations": [d.model_dump(mode="json") for d in k().store.derogations_for(order_id)],
        }

    @app.get("/orders/{order_id}/candidates")
    def preview_candidates(order_id: str):
        """Score the current pool for an order without dispatching anything."""
        order = k().store.snapshot(order_id)
        ranked, ineligible = k().orchestrator.rank(order)
        return {
            "ranked": [r.model_dump(mode="json") for r in ranked],
            "ineligible": [i.model_dump(mode="json") for i in ineligible],
        }

    # === LIFECYCLE COMMANDS ===

    @app.post("/orders/{order_id}/submit")
    def submit(order_id: str, req: ActorRequest):
        return _command_response(k().machine.submit(order_id, req.actor))

    @app.post("/orders/{order_id}/assignment")
    def request_assignment(order_id: str, req: AssignmentRequest):
        return _command_response(
            k().machine.request_assignment(order_id, req.actor, mode=req.mode, top_n=req.top_n)
        )

    @app.post("/orders/{order_id}/assignment/direct")
    def force_direct_assign(order_id: str, req: DirectAssignRequest):
        return _command_response(k().machine.force_direct_assign(order_id, req.provider_id, req.actor))

    @app.post("/offers/{offer_id}/respond")
    def respond_to_offer(offer_id: str, req: OfferResponseRequest):
        return _command_response(k().machine.respond_to_offer(offer_id, req.accept, req.actor))

    @app.post("/orders/{order_id}/schedule/confirm")
    def confirm_schedule(order_id: str, req: ConfirmScheduleRequest):
        return _command_response(k().machine.confirm_schedule(
            order_id, req.actor, scheduled_date=req.scheduled_date, time_slot=req.time_slot,
        ))

    @app.post("/orders/{order_id}/transit")
    def begin_transit(order_id: str, req: ActorRequest):
        return _command_response(k().machine.begin_transit(order_id, req.actor))

    @app.post("/orders/{order_id}/check-in")
    def check_in(order_id: str, req: CheckInRequest):
        return _command_response(k().machine.check_in(
            order_id,
            req.actor,
            technician_id=req.technician_id,
            latitude=req.latitude,
            longitude=req.longitude,
            accuracy_meters=req.accuracy_meters,
            notes=req.notes,
        ))

    @app.post("/orders/{order_id}/check-out")
    def check_out(order_id: str, req: CheckOutRequest):
        return _command_response(k().machine.check_out(
            order_id,
            req.actor,
            checklist=req.checklist,
            technician_id=req.technician_id,
            duration_minutes=req.duration_minutes,
            notes=req.notes,
        ))

    @app.post("/orders/{order_id}/pause")
    def pause(order_id: str, req: OptionalReasonRequest):
        return _command_response(k().machine.pause(order_id, req.actor, reason=req.reason))

    @app.post("/orders/{order_id}/resume")
    def resume(order_id: str, req: ActorRequest):
        return _command_response(k().machine.resume(order_id, req.actor))

    @app.post("/orders/{order_id}/parts/block")
    def block_on_parts(order_id: str, req: ReasonRequest):
        return _command_response(k().machine.block_on_parts(order_id, req.reason, req.actor))

    @app.post("/orders/{order_id}/parts/resolve")
    def parts_resolved(order_id: str, req: ActorRequest):
        return _command_response(k().machine.parts_resolved(order_id, req.actor))

    @app.post("/orders/{order_id}/wcf")
    def create_wcf(order_id: str, req: CreateWCFRequest):
        return _command_response(k().machine.create_wcf(order_id, req.actor, checklist=req.checklist))

    @app.post("/orders/{order_id}/wcf/submit")
    def submit_wcf(order_id: str, req: SubmitWCFRequest):
        return _command_response(k().machine.submit_wcf(order_id, req.actor, responses=req.responses))

    @app.post("/orders/{order_id}/wcf/sign")
    def sign_wcf(order_id: str, req: SignWCFRequest):
        return _command_response(k().machine.sign_wcf(order_id, req.role, req.signature_ref, req.actor))

    @app.post("/orders/{order_id}/wcf/approve")
    def approve_wcf(order_id: str, req: ApproveWCFRequest):
        return _command_response(
            k().machine.approve_wcf(order_id, req.actor, rating=req.rating, notes=req.notes)
        )

    @app.post("/orders/{order_id}/wcf/reject")
    def reject_wcf(order_id: str, req: RejectWCFRequest):
        return _command_response(k().machine.reject_wcf(
            order_id, req.reason, req.notes, req.actor, rework_state=req.rework_state,
        ))

    @app.post("/orders/{order_id}/invoice")
    def issue_invoice(order_id: str, req: InvoiceRequest):
        return _command_response(k().machine.issue_invoice(order_id, req.reference, req.actor))

    @app.post("/orders/{order_id}/close")
    def close(order_id: str, req: ActorRequest):
        return _command_response(k().machine.close(order_id, req.actor))

    @app.post("/orders/{order_id}/reschedule")
    def reschedule(order_id: str, req: RescheduleRequest):
        return _command_response(k().machine.reschedule(
            order_id,
            req.scheduled_date,
            req.time_slot,
            req.reason,
            req.actor,
            reassign_provider=req.reassign_provider,
            notify_customer=req.notify_customer,
            notify_provider=req.notify_provider,
        ))

    @app.post("/orders/{order_id}/cancel")
    def cancel(order_id: str, req: ReasonRequest):
        return _command_response(k().machine.cancel(order_id, req.reason, req.actor))

    @app.post("/orders/{order_id}/hold")
    def hold(order_id: str, req: ReasonRequest):
        return _command_response(k().machine.hold(order_id, req.reason, req.actor))

    # === GO-EXEC ===

    @app.post("/orders/{order_id}/go-exec")
    def update_go_exec(order_id: str, req: GoExecUpdateRequest):
        return _command_response(k().machine.update_go_exec(
            order_id,
            req.actor,
            payment_status=req.payment_status,
            product_delivery_status=req.product_delivery_status,
            delivery_blocks_execution=req.delivery_blocks_execution,
            risk_level=req.risk_level,
            block_reason=req.block_reason,
            clear_block=req.clear_block,
        ))

    @app.post("/orders/{order_id}/go-exec/acknowledge-risk")
    def acknowledge_risk(order_id: str, req: ActorRequest):
        return _command_response(k().machine.acknowledge_risk(order_id, req.actor))

    @app.post("/orders/{order_id}/go-exec/derogation")
    def request_derogation(order_id: str, req: DerogationRequest):
        return _command_response(
            k().machine.request_derogation(order_id, req.reason, req.approved_by, req.actor)
        )

    # === PROVIDERS ===

    @app.get("/providers")
    def list_providers():
        return [p.model_dump(mode="json") for p in k().providers.all()]

    @app.put("/providers/{provider_id}")
    def upsert_provider(provider_id: str, req: ProviderUpsertRequest):
        provider = ProviderCandidate(provider_id=provider_id, **req.model_dump())
        k().providers.upsert(provider)
        return provider.model_dump(mode="json")

    @app.delete("/providers/{provider_id}")
    def remove_provider(provider_id: str):
        if not k().providers.remove(provider_id):
            return JSONResponse(status_code=404, content={"reason": f"Provider {provider_id} not found"})
        return {"status": "removed", "provider_id": provider_id}

    # === AUDIT ===

    @app.get("/audit")
    def get_audit(limit: int = 50, kind: Optional[AuditKind] = None):
        if kind is not None:
            entries = k().audit_log.query_by_kind(kind)[-limit:]
        else:
            entries = k().audit_log.query_recent(limit)
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/orders/{order_id}/audit")
    def get_order_audit(order_id: str):
        return [e.model_dump(mode="json") for e in k().audit_log.query_by_order(order_id)]

    @app.get("/audit/verify")
    def verify_audit():
        """Verify the audit log's hash chain."""
        log = k().audit_log
        return {
            "integrity_valid": log.verify_chain_integrity(),
            "total_records": log.count(),
        }

    # === RECONCILER ===

    @app.get("/reconciler/status")
    def reconciler_status():
        reconciler = k().reconciler
        return {
            "status": reconciler.status,
            "heartbeat_interval_seconds": reconciler.config.heartbeat_interval_seconds,
            "pending_offers": len(k().store.pending_offers()),
            "last_report": reconciler.last_report.model_dump(mode="json") if reconciler.last_report else None,
        }

    @app.post("/reconciler/trigger")
    def trigger_reconciliation():
        return k().reconciler.reconcile_once().model_dump(mode="json")

    return app
