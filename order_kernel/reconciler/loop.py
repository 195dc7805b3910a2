"""
Offer Reconciler — the kernel's heartbeat.

Timers are the primary mechanism for expiring offers; the reconciler is the
safety net around them.

Each cycle:
  1. expire every PENDING offer whose deadline has passed (a lost or late timer)
  2. send orders stuck in PENDING_ACCEPTANCE with no PENDING offer back to
     PENDING_ASSIGNMENT

On start it re-arms a timer for every PENDING offer, so a restarted process
resumes the deadlines it had promised.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from order_kernel.assignment.orchestrator import AssignmentOrchestrator
from order_kernel.models.config import ReconcilerConfig
from order_kernel.models.order import OrderState
from order_kernel.order_store.store import OrderStore
from order_kernel.timing.clock import Clock

logger = logging.getLogger(__name__)


class ReconcileReport(BaseModel):
    ran_at: datetime
    expired_offers: int = 0
    recovered_orders: List[str] = []


class OfferReconciler:
    def __init__(
        self,
        orchestrator: AssignmentOrchestrator,
        store: OrderStore,
        clock: Clock,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.clock = clock
        self.config = config or ReconcilerConfig()
        self._running = False
        self.last_report: Optional[ReconcileReport] = None

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def start(self) -> int:
        """Re-arm timers for every PENDING offer. Call once per process start."""
        return self.orchestrator.rearm()

    def reconcile_once(self) -> ReconcileReport:
        expired = self.orchestrator.sweep_expired()
        awaiting = [
            o.id for o in self.store.list_orders()
            if o.state == OrderState.PENDING_ACCEPTANCE
        ]
        recovered = self.orchestrator.recover_stalled(awaiting)
        report = ReconcileReport(
            ran_at=self.clock.now(),
            expired_offers=expired,
            recovered_orders=recovered,
        )
        if expired or recovered:
            logger.info(
                "Reconciler corrected offers",
                extra={"expired_offers": expired, "recovered_orders": recovered},
            )
        self.last_report = report
        return report

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the heartbeat until `stop_event` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        self.start()
        try:
            while not stop_event.is_set():
                try:
                    self.reconcile_once()
                except Exception:
                    logger.exception("Reconcile cycle failed")
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.heartbeat_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
