"""Tests for the Assignment / Offer Orchestrator, driven through the state machine."""

import threading
from datetime import timedelta

import pytest

from factories import START, OrderFlow, manual_kernel
from order_kernel.errors import ConflictError, ErrorKind
from order_kernel.models.assignment import AssignmentMode, OfferStatus, RoundOutcome
from order_kernel.models.audit import AuditKind
from order_kernel.models.config import AssignmentConfig, KernelConfig, ScoringConfig
from order_kernel.models.events import OfferCreated, OfferResolved
from order_kernel.models.order import OrderState
from order_kernel.events.bus import RecordingSubscriber


def _offers_by_provider(kernel, order_id):
    return {o.provider_id: o for o in kernel.store.offers_for(order_id)}


class TestDirect:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_direct_assigns_top_candidate(self):
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.DIRECT)

        assert result.accepted
        assert result.events == ["request_assignment", "offer_dispatched", "offer_accepted"]
        assert result.order.state == OrderState.ASSIGNED
        assert result.order.assigned_provider_id == "p1"
        assert result.order.assigned_technician_id == "tech_p1"
        assert result.offers[0].status == OfferStatus.ACCEPTED
        assert result.offers[0].expires_at is None
        assert self.kernel.timers.pending() == []

    def test_forced_provider(self):
        order_id = self.flow.new()
        result = self.kernel.machine.force_direct_assign(order_id, "p3", "ops_lead")

        assert result.accepted
        assert result.order.assigned_provider_id == "p3"
        offer = result.offers[0]
        assert offer.mode == AssignmentMode.DIRECT
        assert offer.scoring_result.provider_id == "p3"

    def test_forced_unknown_provider_rejected(self):
        order_id = self.flow.new()
        result = self.kernel.machine.force_direct_assign(order_id, "nobody", "ops_lead")
        assert not result.accepted
        assert result.error == ErrorKind.VALIDATION
        assert result.order.state == OrderState.NEW


class TestOfferMode:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_single_offer_to_best_candidate(self):
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.OFFER)

        assert result.order.state == OrderState.PENDING_ACCEPTANCE
        assert len(result.offers) == 1
        offer = result.offers[0]
        assert offer.provider_id == "p1"
        assert offer.status == OfferStatus.PENDING
        assert offer.expires_at == START + timedelta(seconds=30)
        assert self.kernel.timers.is_scheduled(offer.id)

    def test_refusal_advances_down_the_ranking(self):
        order_id = self.flow.new()
        first = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]

        result = self.kernel.machine.respond_to_offer(first.id, False, "p1")
        assert result.accepted
        assert result.order.state == OrderState.PENDING_ACCEPTANCE
        statuses = {o.provider_id: o.status for o in result.offers}
        assert statuses == {"p1": OfferStatus.REFUSED, "p2": OfferStatus.PENDING}
        assert not self.kernel.timers.is_scheduled(first.id)

    def test_timeout_then_accept(self):
        order_id = self.flow.new()
        self.kernel.machine.request_assignment(order_id, "dispatcher")
        self.kernel.timers.advance(30)

        offers = _offers_by_provider(self.kernel, order_id)
        assert offers["p1"].status == OfferStatus.TIMEOUT
        assert offers["p1"].resolved_by == "offer_timer"
        assert offers["p2"].status == OfferStatus.PENDING

        result = self.kernel.machine.respond_to_offer(offers["p2"].id, True, "p2")
        assert result.accepted
        assert result.order.state == OrderState.ASSIGNED
        assert result.order.assigned_provider_id == "p2"

    def test_all_refuse_exhausts(self):
        order_id = self.flow.new()
        self.kernel.machine.request_assignment(order_id, "dispatcher")
        for provider_id in ("p1", "p2", "p3"):
            offer = _offers_by_provider(self.kernel, order_id)[provider_id]
            result = self.kernel.machine.respond_to_offer(offer.id, False, provider_id)

        assert result.accepted
        assert result.order.state == OrderState.PENDING_ASSIGNMENT
        assert "offers_exhausted" in result.events
        assert result.reason == "All ranked candidates refused or timed out"
        rounds = self.kernel.store.rounds_for(order_id)
        assert rounds[-1].outcome == RoundOutcome.EXHAUSTED

    def test_single_candidate_times_out(self):
        self.kernel.providers.set_availability("p2", False)
        self.kernel.providers.set_availability("p3", False)
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.OFFER)
        offer_id = result.offers[0].id

        self.kernel.timers.advance(29)
        assert self.kernel.store.get_offer(offer_id).status == OfferStatus.PENDING

        self.kernel.timers.advance(1)
        assert self.kernel.store.get_offer(offer_id).status == OfferStatus.TIMEOUT
        order = self.kernel.machine.get_order(order_id)
        assert order.state == OrderState.PENDING_ASSIGNMENT
        history = self.kernel.machine.history(order_id)
        assert history[-1].event == "offers_exhausted"
        assert history[-1].actor == "offer_timer"

    def test_accept_after_expiry_is_conflict(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]

        # Deadline passes but the timer has not fired yet
        self.kernel.clock.advance(30)
        result = self.kernel.machine.respond_to_offer(offer.id, True, "p1")

        assert not result.accepted
        assert result.error == ErrorKind.CONFLICT
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.TIMEOUT
        assert self.kernel.machine.get_order(order_id).assigned_provider_id is None

    def test_retry_after_exhaustion(self):
        for provider_id in ("p1", "p2", "p3"):
            self.kernel.providers.set_availability(provider_id, False)
        order_id = self.flow.new()

        result = self.kernel.machine.request_assignment(order_id, "dispatcher")
        assert result.accepted
        assert result.offers == []
        assert result.order.state == OrderState.PENDING_ASSIGNMENT
        assert result.reason == "No eligible provider candidates"

        self.kernel.providers.set_availability("p2", True)
        result = self.kernel.machine.request_assignment(order_id, "dispatcher")
        assert result.order.state == OrderState.PENDING_ACCEPTANCE
        assert [o.provider_id for o in result.offers] == ["p2"]


class TestBroadcast:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_first_accept_wins(self):
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST)
        assert sorted(o.provider_id for o in result.offers) == ["p1", "p2", "p3"]
        assert len({o.expires_at for o in result.offers}) == 1
        offers = {o.provider_id: o for o in result.offers}

        self.kernel.timers.advance(10)
        accepted = self.kernel.machine.respond_to_offer(offers["p2"].id, True, "p2")
        assert accepted.accepted
        assert accepted.order.state == OrderState.ASSIGNED
        assert accepted.order.assigned_provider_id == "p2"

        stored = _offers_by_provider(self.kernel, order_id)
        for provider_id in ("p1", "p3"):
            assert stored[provider_id].status == OfferStatus.CANCELLED
            assert stored[provider_id].resolved_at == START + timedelta(seconds=10)
        assert self.kernel.timers.pending() == []

        self.kernel.timers.advance(2)
        late = self.kernel.machine.respond_to_offer(offers["p1"].id, True, "p1")
        assert not late.accepted
        assert late.error == ErrorKind.CONFLICT
        with pytest.raises(ConflictError):
            late.raise_for_error()
        assert len(self.kernel.store.accepted_offers(order_id)) == 1

    def test_top_n_override(self):
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(
            order_id, "dispatcher", mode=AssignmentMode.BROADCAST, top_n=2
        )
        assert sorted(o.provider_id for o in result.offers) == ["p1", "p2"]

    def test_invalid_top_n_rejected(self):
        order_id = self.flow.new()
        result = self.kernel.machine.request_assignment(
            order_id, "dispatcher", mode=AssignmentMode.BROADCAST, top_n=0
        )
        assert result.error == ErrorKind.VALIDATION
        assert result.order.state == OrderState.NEW

    def test_all_refuse_exhausts(self):
        order_id = self.flow.new()
        offers = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers
        for offer in offers[:-1]:
            result = self.kernel.machine.respond_to_offer(offer.id, False, offer.provider_id)
            assert result.order.state == OrderState.PENDING_ACCEPTANCE
        result = self.kernel.machine.respond_to_offer(offers[-1].id, False, offers[-1].provider_id)
        assert result.order.state == OrderState.PENDING_ASSIGNMENT

    def test_shared_deadline_expires_all(self):
        order_id = self.flow.new()
        self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST)
        fired = self.kernel.timers.advance(30)

        assert fired == 3
        assert {o.status for o in self.kernel.store.offers_for(order_id)} == {OfferStatus.TIMEOUT}
        assert self.kernel.machine.get_order(order_id).state == OrderState.PENDING_ASSIGNMENT

    def test_concurrent_accepts_yield_one_winner(self):
        order_id = self.flow.new()
        offers = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers
        barrier = threading.Barrier(len(offers))
        results = []
        results_lock = threading.Lock()

        def accept(offer):
            barrier.wait()
            result = self.kernel.machine.respond_to_offer(offer.id, True, offer.provider_id)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=accept, args=(o,)) for o in offers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(results) == len(offers)
        winners = [r for r in results if r.accepted]
        losers = [r for r in results if not r.accepted]
        assert len(winners) == 1
        assert all(r.error == ErrorKind.CONFLICT for r in losers)
        assert len(self.kernel.store.accepted_offers(order_id)) == 1
        order = self.kernel.machine.get_order(order_id)
        assert order.state == OrderState.ASSIGNED
        assert order.assigned_provider_id == self.kernel.store.accepted_offers(order_id)[0].provider_id


class TestCancellationAndTimers:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_cancel_cancels_offers_and_timers(self):
        order_id = self.flow.new()
        offers = self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers

        result = self.kernel.machine.cancel(order_id, "Customer moved house", "dispatcher")
        assert result.order.state == OrderState.CANCELLED
        assert {o.status for o in self.kernel.store.offers_for(order_id)} == {OfferStatus.CANCELLED}
        assert self.kernel.timers.pending() == []

        late = self.kernel.machine.respond_to_offer(offers[0].id, True, offers[0].provider_id)
        assert late.error == ErrorKind.CONFLICT

    def test_timer_after_resolution_is_dropped(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.machine.respond_to_offer(offer.id, True, "p1")

        self.kernel.orchestrator.expire(offer.id)
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.ACCEPTED
        assert self.kernel.machine.get_order(order_id).state == OrderState.ASSIGNED

    def test_rearm_after_restart(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]

        # A restart loses every in-memory timer
        self.kernel.timers.cancel(offer.id)
        assert self.kernel.orchestrator.rearm() == 1
        assert self.kernel.timers.fire_at_of(offer.id) == offer.expires_at

        self.kernel.timers.advance(30)
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.TIMEOUT

    def test_rearm_fires_overdue_offers(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)
        self.kernel.clock.advance(120)

        self.kernel.orchestrator.rearm()
        self.kernel.timers.fire_due()
        assert self.kernel.store.get_offer(offer.id).status == OfferStatus.TIMEOUT

    def test_rearm_retries_failing_schedule(self):
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.timers.cancel(offer.id)

        real_schedule = self.kernel.timers.schedule
        calls = []

        def flaky(key, fire_at, callback):
            calls.append(key)
            if len(calls) < 3:
                raise RuntimeError("timer backend unavailable")
            real_schedule(key, fire_at, callback)

        self.kernel.timers.schedule = flaky
        self.kernel.orchestrator.rearm()
        assert len(calls) == 3
        assert self.kernel.timers.is_scheduled(offer.id)


class TestMinScore:
    def setup_method(self):
        self.kernel = manual_kernel(KernelConfig(
            scoring=ScoringConfig(min_score=90),
            assignment=AssignmentConfig(offer_timeout_seconds=30),
        ))
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_candidates_below_min_score_are_dropped(self):
        order_id = self.flow.new()
        ranked, ineligible = self.kernel.orchestrator.rank(self.kernel.store.get_order(order_id))
        assert [r.provider_id for r in ranked] == ["p1"]
        assert {i.provider_id for i in ineligible} == {"p2", "p3"}
        assert all("below minimum" in i.reason for i in ineligible)


class TestConcurrentOrders:
    """Commands on different orders run in parallel, one thread per order."""

    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def _run(self, target, args_list):
        errors = []
        barrier = threading.Barrier(len(args_list))

        def worker(*args):
            barrier.wait()
            try:
                target(*args)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=args) for args in args_list]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return errors

    def test_dispatch_accept_and_cancel_across_orders(self):
        order_ids = [self.flow.new() for _ in range(20)]

        def lifecycle(index, order_id):
            machine = self.kernel.machine
            offers = machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST).offers
            assert len(offers) == 3
            if index % 3 == 0:
                machine.cancel(order_id, "Customer withdrew", "dispatcher").raise_for_error()
                return
            winner = offers[index % len(offers)]
            machine.respond_to_offer(winner.id, True, winner.provider_id).raise_for_error()
            for other in offers:
                if other.id != winner.id:
                    assert machine.respond_to_offer(other.id, True, other.provider_id).error == ErrorKind.CONFLICT

        errors = self._run(lifecycle, list(enumerate(order_ids)))

        assert errors == []
        for index, order_id in enumerate(order_ids):
            order = self.kernel.machine.get_order(order_id)
            accepted = self.kernel.store.accepted_offers(order_id)
            if index % 3 == 0:
                assert order.state == OrderState.CANCELLED
                assert accepted == []
            else:
                assert order.state == OrderState.ASSIGNED
                assert len(accepted) == 1
                assert order.assigned_provider_id == accepted[0].provider_id
            assert self.kernel.store.pending_offers(order_id) == []
        assert self.kernel.timers.pending() == []
        assert self.kernel.audit_log.verify_chain_integrity()

    def test_broadcast_accept_while_other_orders_dispatch(self):
        contested = self.flow.new()
        offers = self.kernel.machine.request_assignment(
            contested, "dispatcher", mode=AssignmentMode.BROADCAST,
        ).offers
        busy = [self.flow.new() for _ in range(30)]

        def dispatch(order_id):
            self.kernel.machine.request_assignment(order_id, "dispatcher", mode=AssignmentMode.BROADCAST)

        def accept(offer):
            self.kernel.machine.respond_to_offer(offer.id, True, offer.provider_id)

        errors = self._run(
            lambda kind, arg: dispatch(arg) if kind == "dispatch" else accept(arg),
            [("dispatch", order_id) for order_id in busy] + [("accept", offer) for offer in offers],
        )

        assert errors == []
        assert len(self.kernel.store.accepted_offers(contested)) == 1
        assert self.kernel.store.pending_offers(contested) == []
        assert self.kernel.machine.get_order(contested).state == OrderState.ASSIGNED
        for order_id in busy:
            assert len(self.kernel.store.pending_offers(order_id)) == 3


class TestAuditAndEvents:
    def setup_method(self):
        self.kernel = manual_kernel()
        self.flow = OrderFlow(self.kernel)

    def teardown_method(self):
        self.kernel.close()

    def test_offer_decisions_are_audited_with_scores(self):
        order_id = self.flow.new()
        self.kernel.machine.request_assignment(order_id, "dispatcher")

        entries = self.kernel.audit_log.query_by_kind(AuditKind.ASSIGNMENT_DECISION, order_id)
        commands = [e.command for e in entries]
        assert commands[:2] == ["round_started", "offer_created"]
        created = entries[1]
        assert created.payload["scoring_result"]["provider_id"] == "p1"
        assert len(created.payload["scoring_result"]["factors"]) == 4
        started = entries[0]
        assert [r["provider_id"] for r in started.payload["ranking"]] == ["p1", "p2", "p3"]

    def test_offer_events_published(self):
        recorder = RecordingSubscriber()
        self.kernel.event_bus.subscribe(OfferCreated, recorder)
        self.kernel.event_bus.subscribe(OfferResolved, recorder)
        order_id = self.flow.new()
        offer = self.kernel.machine.request_assignment(order_id, "dispatcher").offers[0]
        self.kernel.machine.respond_to_offer(offer.id, True, "p1")

        created = recorder.of_type(OfferCreated)
        resolved = recorder.of_type(OfferResolved)
        assert [e.offer_id for e in created] == [offer.id]
        assert [(e.offer_id, e.status) for e in resolved] == [(offer.id, OfferStatus.ACCEPTED)]

    def test_unknown_offer(self):
        result = self.kernel.machine.respond_to_offer("ofr_missing", True, "p1")
        assert result.error == ErrorKind.NOT_FOUND
