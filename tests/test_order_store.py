"""Tests for the in-memory order store."""

import sys
import threading
from datetime import timedelta

import pytest

from factories import START, make_order
from order_kernel.errors import NotFoundError
from order_kernel.models.assignment import AssignmentMode, AssignmentOffer, AssignmentRound, OfferStatus
from order_kernel.models.scoring import ScoringResult
from order_kernel.order_store.store import OrderStore


def _offer(offer_id, order_id, status=OfferStatus.PENDING):
    return AssignmentOffer(
        id=offer_id,
        order_id=order_id,
        round_id=f"rnd_{order_id}",
        provider_id="p1",
        mode=AssignmentMode.BROADCAST,
        scoring_result=ScoringResult(provider_id="p1", total_score=50.0, factors=[]),
        offered_at=START,
        expires_at=START + timedelta(seconds=30),
        status=status,
    )


class TestOrderStore:
    def setup_method(self):
        self.store = OrderStore()

    def test_listings_are_per_order_in_insertion_order(self):
        self.store.add_offer(_offer("ofr_b", "so_1"))
        self.store.add_offer(_offer("ofr_x", "so_2"))
        self.store.add_offer(_offer("ofr_a", "so_1", status=OfferStatus.REFUSED))

        assert [o.id for o in self.store.offers_for("so_1")] == ["ofr_b", "ofr_a"]
        assert [o.id for o in self.store.pending_offers("so_1")] == ["ofr_b"]
        assert {o.id for o in self.store.pending_offers()} == {"ofr_b", "ofr_x"}
        assert self.store.offers_for("so_missing") == []

    def test_unknown_records(self):
        with pytest.raises(NotFoundError):
            self.store.get_order("so_missing")
        with pytest.raises(NotFoundError):
            self.store.get_offer("ofr_missing")
        assert self.store.find_order("so_missing") is None

    def test_restore_drops_records_added_after_checkpoint(self):
        order = make_order(id="so_1")
        self.store.add_order(order)
        self.store.add_offer(_offer("ofr_1", "so_1"))
        checkpoint = self.store.checkpoint("so_1")

        order.version = 7
        self.store.get_offer("ofr_1").status = OfferStatus.ACCEPTED
        self.store.add_offer(_offer("ofr_2", "so_1"))
        self.store.add_round(AssignmentRound(
            id="rnd_2", order_id="so_1", mode=AssignmentMode.OFFER, ranked=[],
            started_by="dispatcher", started_at=START,
        ))

        dropped = self.store.restore(checkpoint)

        assert dropped == ["ofr_2"]
        assert self.store.get_order("so_1").version == 0
        assert [o.status for o in self.store.offers_for("so_1")] == [OfferStatus.PENDING]
        assert self.store.rounds_for("so_1") == []
        with pytest.raises(NotFoundError):
            self.store.get_offer("ofr_2")

    def test_restore_of_new_order_removes_it(self):
        checkpoint = self.store.checkpoint("so_new")
        self.store.add_order(make_order(id="so_new"))
        self.store.restore(checkpoint)
        assert self.store.find_order("so_new") is None

    def test_scans_while_other_orders_add_offers(self):
        self.store.add_offer(_offer("ofr_target", "so_1"))
        errors = []
        done = threading.Event()

        def writer():
            n = 0
            while not done.is_set():
                self.store.add_offer(_offer(f"ofr_{n}", f"so_other_{n % 50}"))
                n += 1

        def reader():
            try:
                for _ in range(300):
                    assert [o.id for o in self.store.pending_offers("so_1")] == ["ofr_target"]
                    self.store.pending_offers()
                    self.store.open_round("so_1")
            except Exception as exc:
                errors.append(exc)
            finally:
                done.set()

        interval = sys.getswitchinterval()
        sys.setswitchinterval(1e-6)
        try:
            threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)
        finally:
            sys.setswitchinterval(interval)

        assert errors == []
