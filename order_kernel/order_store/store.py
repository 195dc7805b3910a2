"""
Order Store — the canonical records of orders, offers, rounds and WCFs.

Updated by: Lifecycle State Machine commands + Orchestrator resolutions
Queried by: every component, by reference

Every mutation of an order or of its offers happens while holding that
order's lock from `lock_for()`. Locks are re-entrant so a command may call
into the orchestrator, which may call back into the machine.

The store's own dicts are guarded by a store-wide lock, so commands on
different orders can add and list records concurrently. Listings return
new lists; the records in them are the live ones.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from order_kernel.errors import NotFoundError
from order_kernel.models.assignment import AssignmentOffer, AssignmentRound, OfferStatus
from order_kernel.models.execution import WorkCompletionForm
from order_kernel.models.gate import Derogation, GoExecDecision
from order_kernel.models.order import ServiceOrder


@dataclass
class OrderCheckpoint:
    """Deep copies of everything the store holds for one order."""
    order_id: str
    order: Optional[ServiceOrder]
    offers: List[AssignmentOffer] = field(default_factory=list)
    rounds: List[AssignmentRound] = field(default_factory=list)
    wcfs: List[WorkCompletionForm] = field(default_factory=list)
    derogations: List[Derogation] = field(default_factory=list)
    decisions: List[GoExecDecision] = field(default_factory=list)


class OrderStore:
    """
    In-memory store for the prototype.
    Production would use a persistent database.
    """

    def __init__(self):
        self._orders: Dict[str, ServiceOrder] = {}
        self._offers: Dict[str, AssignmentOffer] = {}
        self._rounds: Dict[str, AssignmentRound] = {}
        self._wcfs: Dict[str, WorkCompletionForm] = {}
        self._offers_by_order: Dict[str, List[str]] = {}
        self._rounds_by_order: Dict[str, List[str]] = {}
        self._wcfs_by_order: Dict[str, List[str]] = {}
        self._derogations: Dict[str, List[Derogation]] = {}
        self._decisions: Dict[str, List[GoExecDecision]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._lock = threading.RLock()

    # --- Locks ---

    def lock_for(self, order_id: str) -> threading.RLock:
        """The mutual-exclusion boundary for one order."""
        with self._registry_lock:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[order_id] = lock
            return lock

    # --- Orders ---

    def add_order(self, order: ServiceOrder) -> None:
        with self._lock:
            self._orders[order.id] = order

    def get_order(self, order_id: str) -> ServiceOrder:
        order = self.find_order(order_id)
        if order is None:
            raise NotFoundError(f"Service order {order_id} not found")
        return order

    def find_order(self, order_id: str) -> Optional[ServiceOrder]:
        with self._lock:
            return self._orders.get(order_id)

    def list_orders(self) -> List[ServiceOrder]:
        with self._lock:
            return list(self._orders.values())

    def snapshot(self, order_id: str) -> ServiceOrder:
        """A detached copy safe to hand to callers."""
        return self.get_order(order_id).model_copy(deep=True)

    # --- Offers & rounds ---

    def add_offer(self, offer: AssignmentOffer) -> None:
        with self._lock:
            self._offers[offer.id] = offer
            self._offers_by_order.setdefault(offer.order_id, []).append(offer.id)

    def get_offer(self, offer_id: str) -> AssignmentOffer:
        with self._lock:
            offer = self._offers.get(offer_id)
        if offer is None:
            raise NotFoundError(f"Assignment offer {offer_id} not found")
        return offer

    def offers_for(self, order_id: str) -> List[AssignmentOffer]:
        with self._lock:
            return [self._offers[oid] for oid in self._offers_by_order.get(order_id, [])]

    def pending_offers(self, order_id: Optional[str] = None) -> List[AssignmentOffer]:
        with self._lock:
            if order_id is None:
                offers = list(self._offers.values())
            else:
                offers = [self._offers[oid] for oid in self._offers_by_order.get(order_id, [])]
        return [o for o in offers if o.status == OfferStatus.PENDING]

    def accepted_offers(self, order_id: str) -> List[AssignmentOffer]:
        return [o for o in self.offers_for(order_id) if o.status == OfferStatus.ACCEPTED]

    def add_round(self, round_: AssignmentRound) -> None:
        with self._lock:
            self._rounds[round_.id] = round_
            self._rounds_by_order.setdefault(round_.order_id, []).append(round_.id)

    def get_round(self, round_id: str) -> AssignmentRound:
        with self._lock:
            round_ = self._rounds.get(round_id)
        if round_ is None:
            raise NotFoundError(f"Assignment round {round_id} not found")
        return round_

    def open_round(self, order_id: str) -> Optional[AssignmentRound]:
        for round_ in self.rounds_for(order_id):
            if round_.is_open:
                return round_
        return None

    def rounds_for(self, order_id: str) -> List[AssignmentRound]:
        with self._lock:
            return [self._rounds[rid] for rid in self._rounds_by_order.get(order_id, [])]

    # --- Work completion forms ---

    def add_wcf(self, wcf: WorkCompletionForm) -> None:
        with self._lock:
            self._wcfs[wcf.id] = wcf
            self._wcfs_by_order.setdefault(wcf.order_id, []).append(wcf.id)

    def get_wcf(self, wcf_id: str) -> WorkCompletionForm:
        with self._lock:
            wcf = self._wcfs.get(wcf_id)
        if wcf is None:
            raise NotFoundError(f"Work completion form {wcf_id} not found")
        return wcf

    def wcfs_for(self, order_id: str) -> List[WorkCompletionForm]:
        with self._lock:
            return [self._wcfs[wid] for wid in self._wcfs_by_order.get(order_id, [])]

    # --- Gate history ---

    def add_derogation(self, derogation: Derogation) -> None:
        with self._lock:
            self._derogations.setdefault(derogation.order_id, []).append(derogation)

    def derogations_for(self, order_id: str) -> List[Derogation]:
        with self._lock:
            return list(self._derogations.get(order_id, []))

    def active_derogation(self, order_id: str) -> Optional[Derogation]:
        for derogation in reversed(self.derogations_for(order_id)):
            if derogation.superseded_at is None:
                return derogation
        return None

    def add_decision(self, decision: GoExecDecision) -> None:
        with self._lock:
            self._decisions.setdefault(decision.order_id, []).append(decision)

    def decisions_for(self, order_id: str) -> List[GoExecDecision]:
        with self._lock:
            return list(self._decisions.get(order_id, []))

    # --- Checkpoints ---

    def checkpoint(self, order_id: str) -> OrderCheckpoint:
        """Copy one order's records so a failed command can be undone. Caller holds the order lock."""
        with self._lock:
            order = self._orders.get(order_id)
            return OrderCheckpoint(
                order_id=order_id,
                order=order.model_copy(deep=True) if order is not None else None,
                offers=[o.model_copy(deep=True) for o in self.offers_for(order_id)],
                rounds=[r.model_copy(deep=True) for r in self.rounds_for(order_id)],
                wcfs=[w.model_copy(deep=True) for w in self.wcfs_for(order_id)],
                derogations=[d.model_copy(deep=True) for d in self.derogations_for(order_id)],
                decisions=[d.model_copy(deep=True) for d in self.decisions_for(order_id)],
            )

    def restore(self, checkpoint: OrderCheckpoint) -> List[str]:
        """
        Put an order's records back as they were at `checkpoint`.
        Returns the ids of offers created since, which no longer exist.
        Caller holds the order lock.
        """
        order_id = checkpoint.order_id
        with self._lock:
            kept = {o.id for o in checkpoint.offers}
            dropped = [oid for oid in self._offers_by_order.get(order_id, []) if oid not in kept]
            for oid in self._offers_by_order.pop(order_id, []):
                self._offers.pop(oid, None)
            for rid in self._rounds_by_order.pop(order_id, []):
                self._rounds.pop(rid, None)
            for wid in self._wcfs_by_order.pop(order_id, []):
                self._wcfs.pop(wid, None)

            if checkpoint.order is None:
                self._orders.pop(order_id, None)
            else:
                self._orders[order_id] = checkpoint.order
            for offer in checkpoint.offers:
                self.add_offer(offer)
            for round_ in checkpoint.rounds:
                self.add_round(round_)
            for wcf in checkpoint.wcfs:
                self.add_wcf(wcf)
            self._derogations[order_id] = list(checkpoint.derogations)
            self._decisions[order_id] = list(checkpoint.decisions)
            return dropped
