"""
Execution Readiness Gate ("Go-Exec Gate").

Evaluates whether a service order may enter active execution. Returns
OK / NOK / DEROGATION decisions with machine-readable reason codes and a
human-readable block reason.

Behavioral Contract:
- Accepts a ServiceOrder (payment, delivery, risk and operator-block facts)
  and the order's active derogation, if any
- NOK when any blocking rule fires, OK otherwise
- A derogation only covers the reason codes it was granted against; a new or
  changed blocking fact yields a fresh NOK that supersedes it
- Never mutates the order; the Lifecycle State Machine applies decisions
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from order_kernel.models.config import GateConfig
from order_kernel.models.gate import (
    MIN_APPROVER_LENGTH,
    MIN_BLOCK_REASON_LENGTH,
    MIN_DEROGATION_REASON_LENGTH,
    Derogation,
    GoExecDecision,
)
from order_kernel.models.order import DeliveryStatus, GoExecStatus, ServiceOrder

BlockingReason = Tuple[str, str]   # (reason code, human-readable sentence)
GateRule = Callable[[ServiceOrder, GateConfig], Optional[BlockingReason]]


def _check_payment(order: ServiceOrder, config: GateConfig) -> Optional[BlockingReason]:
    """Payment must be in an accepted terminal state."""
    if order.payment_status in config.accepted_payment_statuses:
        return None
    status = order.payment_status.value
    return (
        f"payment:{status}",
        f"Payment not confirmed: payment status is {status}.",
    )


def _check_delivery(order: ServiceOrder, config: GateConfig) -> Optional[BlockingReason]:
    """Products must be delivered, but only when delivery blocks execution."""
    if not order.delivery_blocks_execution:
        return None
    if order.product_delivery_status == DeliveryStatus.DELIVERED:
        return None
    status = order.product_delivery_status.value
    return (
        f"delivery:{status}",
        f"Products not delivered: delivery status is {status}.",
    )


def _check_risk(order: ServiceOrder, config: GateConfig) -> Optional[BlockingReason]:
    """High risk orders need an explicit acknowledgement."""
    if order.risk_level not in config.blocking_risk_levels:
        return None
    if order.risk_acknowledged_at is not None:
        return None
    level = order.risk_level.value
    return (
        f"risk:{level}",
        f"Risk level {level} has not been acknowledged.",
    )


def _check_operator_block(order: ServiceOrder, config: GateConfig) -> Optional[BlockingReason]:
    if not order.operator_block_reason:
        return None
    return ("operator_block", order.operator_block_reason)


DEFAULT_RULES: List[GateRule] = [
    _check_payment,
    _check_delivery,
    _check_risk,
    _check_operator_block,
]


def _format_structured_reason(codes: List[str]) -> str:
    """Machine-readable summary of the blocking reason codes."""
    return "|".join(codes)


def _format_human_reason(reasons: List[BlockingReason]) -> Optional[str]:
    if not reasons:
        return None
    return " ".join(text for _, text in reasons)


def validate_block_reason(reason: Optional[str]) -> Optional[str]:
    """Return an error message, or None when the operator block reason is acceptable."""
    if reason is None or len(reason.strip()) < MIN_BLOCK_REASON_LENGTH:
        return f"Block reason must be at least {MIN_BLOCK_REASON_LENGTH} characters"
    return None


def validate_derogation(reason: Optional[str], approved_by: Optional[str]) -> Optional[str]:
    """Return an error message, or None when the derogation request is well formed."""
    if reason is None or len(reason.strip()) < MIN_DEROGATION_REASON_LENGTH:
        return f"Derogation reason must be at least {MIN_DEROGATION_REASON_LENGTH} characters"
    if approved_by is None or len(approved_by.strip()) < MIN_APPROVER_LENGTH:
        return f"Derogation approver must be at least {MIN_APPROVER_LENGTH} characters"
    return None


class GoExecGate:
    """
    The execution readiness gate. Stateless apart from its configuration,
    so it is re-run on every attempt to leave SCHEDULED.
    """

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        rules: Optional[List[GateRule]] = None,
    ):
        self.config = config or GateConfig()
        self._rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def register_rule(self, rule: GateRule) -> None:
        """Add a blocking rule (e.g. a site-access or permit check)."""
        self._rules.append(rule)

    def blocking_reasons(self, order: ServiceOrder) -> List[BlockingReason]:
        reasons = []
        for rule in self._rules:
            result = rule(order, self.config)
            if result:
                reasons.append(result)
        return reasons

    def evaluate(
        self,
        order: ServiceOrder,
        active_derogation: Optional[Derogation] = None,
        current_time: Optional[datetime] = None,
        actor: str = "go_exec_gate",
    ) -> GoExecDecision:
        """
        Evaluate the gate for an order.

        Returns OK, NOK (with block reason) or DEROGATION (when an active
        derogation covers every current blocking reason).
        """
        if current_time is None:
            raise ValueError("current_time is required")

        decision_id = f"gox_{uuid4().hex[:12]}"
        reasons = self.blocking_reasons(order)
        codes = [code for code, _ in reasons]

        if not reasons:
            return GoExecDecision(
                id=decision_id,
                order_id=order.id,
                status=GoExecStatus.OK,
                superseded_derogation_id=active_derogation.id if active_derogation else None,
                decided_at=current_time,
                actor=actor,
            )

        block_reason = _format_human_reason(reasons)

        if active_derogation and set(codes) <= set(active_derogation.covered_codes):
            return GoExecDecision(
                id=decision_id,
                order_id=order.id,
                status=GoExecStatus.DEROGATION,
                reason_codes=codes,
                block_reason=block_reason,
                approved_by=active_derogation.approved_by,
                derogation_reason=active_derogation.reason,
                derogation_id=active_derogation.id,
                decided_at=current_time,
                actor=actor,
            )

        return GoExecDecision(
            id=decision_id,
            order_id=order.id,
            status=GoExecStatus.NOK,
            reason_codes=codes,
            block_reason=block_reason,
            superseded_derogation_id=active_derogation.id if active_derogation else None,
            decided_at=current_time,
            actor=actor,
        )

    def grant_derogation(
        self,
        order: ServiceOrder,
        reason: str,
        approved_by: str,
        requested_by: str,
        current_time: datetime,
    ) -> Derogation:
        """
        Build a derogation covering the order's current blocking reasons.
        Caller must have validated the request and confirmed the gate is NOK.
        """
        codes = [code for code, _ in self.blocking_reasons(order)]
        return Derogation(
            id=f"der_{uuid4().hex[:12]}",
            order_id=order.id,
            reason=reason.strip(),
            approved_by=approved_by.strip(),
            covered_codes=codes,
            block_reason=order.go_exec_block_reason,
            requested_by=requested_by,
            granted_at=current_time,
        )

    @staticmethod
    def structured_reason(decision: GoExecDecision) -> str:
        return _format_structured_reason(decision.reason_codes)
