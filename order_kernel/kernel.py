"""Wiring of the kernel's components from a KernelConfig."""

from typing import Optional

from order_kernel.assignment.orchestrator import AssignmentOrchestrator
from order_kernel.audit.log import AuditLog
from order_kernel.events.bus import EventBus
from order_kernel.gate.evaluator import GoExecGate
from order_kernel.lifecycle.machine import LifecycleMachine
from order_kernel.models.config import KernelConfig
from order_kernel.order_store.store import OrderStore
from order_kernel.providers.pool import InMemoryProviderPool, ProviderPool
from order_kernel.reconciler.loop import OfferReconciler
from order_kernel.scoring.engine import ScoringEngine
from order_kernel.timing.clock import Clock, ManualClock
from order_kernel.timing.timers import ManualTimerService, TimerService


class Kernel:
    """Every component of one running kernel, already wired together."""

    def __init__(
        self,
        config: KernelConfig,
        clock: Clock,
        timers: TimerService,
        store: OrderStore,
        providers: ProviderPool,
        audit_log: AuditLog,
        event_bus: EventBus,
        gate: GoExecGate,
        scoring: ScoringEngine,
        orchestrator: AssignmentOrchestrator,
        machine: LifecycleMachine,
        reconciler: OfferReconciler,
    ):
        self.config = config
        self.clock = clock
        self.timers = timers
        self.store = store
        self.providers = providers
        self.audit_log = audit_log
        self.event_bus = event_bus
        self.gate = gate
        self.scoring = scoring
        self.orchestrator = orchestrator
        self.machine = machine
        self.reconciler = reconciler

    def close(self) -> None:
        for key in self.timers.pending():
            self.timers.cancel(key)
        self.audit_log.close()


def build_kernel(
    config: Optional[KernelConfig] = None,
    clock: Optional[Clock] = None,
    timers: Optional[TimerService] = None,
    providers: Optional[ProviderPool] = None,
    audit_log: Optional[AuditLog] = None,
    event_bus: Optional[EventBus] = None,
) -> Kernel:
    """
    Build a kernel. Without an explicit clock and timer service the kernel runs
    on manual time, which is what tests and offline tooling want.
    """
    config = config or KernelConfig()
    if clock is None:
        clock = ManualClock()
    if timers is None:
        if not isinstance(clock, ManualClock):
            raise ValueError("A timer service is required when the clock is not a ManualClock")
        timers = ManualTimerService(clock)

    store = OrderStore()
    providers = providers if providers is not None else InMemoryProviderPool()
    audit_log = audit_log or AuditLog(config.audit.db_path)
    event_bus = event_bus or EventBus()
    gate = GoExecGate(config.gate)
    scoring = ScoringEngine(config.scoring)
    orchestrator = AssignmentOrchestrator(
        store=store,
        scoring_engine=scoring,
        provider_pool=providers,
        timers=timers,
        clock=clock,
        audit_log=audit_log,
        event_bus=event_bus,
        config=config.assignment,
    )
    machine = LifecycleMachine(
        store=store,
        gate=gate,
        orchestrator=orchestrator,
        audit_log=audit_log,
        event_bus=event_bus,
        clock=clock,
    )
    reconciler = OfferReconciler(orchestrator, store, clock, config.reconciler)
    return Kernel(
        config=config,
        clock=clock,
        timers=timers,
        store=store,
        providers=providers,
        audit_log=audit_log,
        event_bus=event_bus,
        gate=gate,
        scoring=scoring,
        orchestrator=orchestrator,
        machine=machine,
        reconciler=reconciler,
    )
