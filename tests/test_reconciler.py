"""Tests for the offer reconciler heartbeat."""

import asyncio

from factories import OrderFlow, manual_kernel
from order_kernel.assignment.orchestrator import SYSTEM_ACTOR
from order_kernel.models.assignment import AssignmentMode, OfferStatus
from order_kernel.models.order import OrderState


class TestReconcileOnce:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_quiet_cycle(self):
        self.flow.scheduled()
        report = self.kernel.reconciler.reconcile_once()
        assert report.expired_offers == 0
        assert report.recovered_orders == []
        assert report.ran_at == self.kernel.clock.now()
        assert self.kernel.reconciler.last_report == report

    def test_expires_offer_whose_timer_was_lost(self):
        order_id = self.flow.new()
        first = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(first.id)
        self.kernel.clock.advance(31)

        report = self.kernel.reconciler.reconcile_once()

        assert report.expired_offers == 1
        assert self.kernel.store.get_offer(first.id).status == OfferStatus.TIMEOUT
        pending = self.kernel.store.pending_offers(order_id)
        assert [o.provider_id for o in pending] == ["p2"]
        assert self.kernel.timers.is_scheduled(pending[0].id)

    def test_offer_not_yet_due_is_left_alone(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)
        self.kernel.clock.advance(29)

        assert self.kernel.reconciler.reconcile_once().expired_offers == 0
        assert self.kernel.store.get_offer(offer.id).is_pending

    def test_recovers_order_with_no_outstanding_offers(self):
        order_id = self.flow.new()
        offers = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers
        # Offers resolved behind the orchestrator's back, e.g. restored from a partial snapshot
        for offer in offers:
            self.kernel.timers.cancel(offer.id)
            self.kernel.store.get_offer(offer.id).status = OfferStatus.CANCELLED

        report = self.kernel.reconciler.reconcile_once()

        assert report.recovered_orders == [order_id]
        order = self.kernel.machine.get_order(order_id)
        assert order.state == OrderState.PENDING_ASSIGNMENT
        last = self.kernel.machine.history(order_id)[-1]
        assert last.event == "offers_exhausted"
        assert last.actor == SYSTEM_ACTOR
        assert self.kernel.store.open_round(order_id) is None

    def test_broadcast_deadline_missed_entirely(self):
        order_id = self.flow.new()
        offers = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers
        for offer in offers:
            self.kernel.timers.cancel(offer.id)
        self.kernel.clock.advance(60)

        report = self.kernel.reconciler.reconcile_once()

        assert report.expired_offers == 3
        assert self.kernel.machine.get_order(order_id).state == OrderState.PENDING_ASSIGNMENT
        # The last expiry exhausted the round, so nothing was left to recover
        assert report.recovered_orders == []


class TestStart:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_start_rearms_pending_offers(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)

        assert self.kernel.reconciler.start() == 1
        assert self.kernel.timers.fire_at_of(offer.id) == offer.expires_at

    def test_rearmed_overdue_offer_fires_immediately(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)
        self.kernel.clock.advance(120)

        self.kernel.reconciler.start()
        assert self.kernel.timers.fire_due() == 1
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.TIMEOUT


class TestRunAsync:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_runs_until_stopped(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)
        self.kernel.clock.advance(31)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(self.kernel.reconciler.run_async(stop))
            await asyncio.sleep(0.05)
            assert self.kernel.reconciler.status == "running"
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert self.kernel.reconciler.status == "stopped"
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.TIMEOUT
        assert self.kernel.reconciler.last_report.expired_offers == 1

    def test_failed_cycle_does_not_stop_the_loop(self, monkeypatch):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(self.kernel.reconciler, "reconcile_once", broken)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(self.kernel.reconciler.run_async(stop))
            await asyncio.sleep(0.05)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert calls == [1]
        assert self.kernel.reconciler.status == "stopped"
