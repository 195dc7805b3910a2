"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from factories import START, manual_kernel
from order_kernel.api.app import create_app
from order_kernel.kernel import build_kernel
from order_kernel.timing.clock import ManualClock


@pytest.fixture
def kernel():
    """A fresh kernel on manual time with the Paris provider pool."""
    k = manual_kernel()
    yield k
    k.close()


@pytest.fixture
def client(kernel):
    return TestClient(create_app(kernel=kernel))


def _create(client, **overrides) -> str:
    body = {
        "actor": "dispatcher",
        "service_type": "hvac_install",
        "customer": {"customer_id": "cust_1", "name": "Claire Dubois"},
        "location": {"latitude": 48.8566, "longitude": 2.3522},
        "required_skills": ["hvac"],
        "payment_status": "PAID",
    }
    body.update(overrides)
    response = client.post("/orders", json=body)
    assert response.status_code == 200, response.text
    return response.json()["order"]["id"]


def _scheduled(client) -> str:
    order_id = _create(client)
    client.post(f"/orders/{order_id}/submit", json={"actor": "dispatcher"})
    client.post(f"/orders/{order_id}/assignment", json={"actor": "dispatcher", "mode": "DIRECT"})
    response = client.post(
        f"/orders/{order_id}/schedule/confirm", json={"actor": "dispatcher", "scheduled_date": "2025-01-08"},
    )
    assert response.json()["order"]["state"] == "SCHEDULED"
    return order_id


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "orders": 0}


class TestOrderEndpoints:
    def test_create_and_get(self, client):
        order_id = _create(client)
        response = client.get(f"/orders/{order_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "DRAFT"
        assert data["go_exec_status"] == "OK"

    def test_list_filtered_by_state(self, client):
        first = _create(client)
        _create(client)
        client.post(f"/orders/{first}/submit", json={"actor": "dispatcher"})

        assert len(client.get("/orders").json()) == 2
        new_orders = client.get("/orders", params={"state": "NEW"}).json()
        assert [o["id"] for o in new_orders] == [first]

    def test_unknown_order_is_404(self, client):
        assert client.get("/orders/so_missing").status_code == 404
        response = client.post("/orders/so_missing/submit", json={"actor": "dispatcher"})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_missing_actor_is_422(self, client):
        order_id = _create(client)
        assert client.post(f"/orders/{order_id}/submit", json={}).status_code == 422

    def test_history_and_allowed_events(self, client):
        order_id = _scheduled(client)
        history = client.get(f"/orders/{order_id}/history").json()
        assert [h["event"] for h in history] == [
            "submit", "request_assignment", "offer_dispatched", "offer_accepted", "confirm_schedule",
        ]
        events = client.get(f"/orders/{order_id}/allowed-events").json()
        assert "begin_transit" in events
        assert "submit" not in events


class TestCommandRejections:
    def test_guard_violation_is_409_with_snapshot(self, client):
        order_id = _create(client)
        response = client.post(f"/orders/{order_id}/check-in", json={"actor": "tech_p1"})
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "guard_violation"
        assert data["command"] == "check_in"
        assert data["order"]["state"] == "DRAFT"

    def test_validation_is_422(self, client):
        order_id = _create(client)
        response = client.post(f"/orders/{order_id}/cancel", json={"actor": "dispatcher", "reason": ""})
        assert response.status_code == 422
        assert response.json()["error"] == "validation"

    def test_operator_block_stops_transit_over_http(self, client):
        order_id = _scheduled(client)
        client.post(f"/orders/{order_id}/go-exec", json={"actor": "ops", "block_reason": "payment not verified"})

        response = client.post(f"/orders/{order_id}/transit", json={"actor": "tech_p1"})
        assert response.status_code == 409
        assert "payment not verified" in response.json()["reason"]

        gate = client.get(f"/orders/{order_id}/go-exec").json()
        assert gate["status"] == "NOK"
        assert gate["block_reason"] == "payment not verified"
        assert gate["decisions"][-1]["status"] == "NOK"

    def test_derogation_over_http(self, client):
        order_id = _scheduled(client)
        client.post(f"/orders/{order_id}/go-exec", json={"actor": "ops", "block_reason": "payment not verified"})
        response = client.post(f"/orders/{order_id}/go-exec/derogation", json={
            "actor": "ops",
            "reason": "Customer confirmed cash payment on site, risk accepted by manager.",
            "approved_by": "J. Martin",
        })
        assert response.status_code == 200
        assert response.json()["order"]["go_exec_status"] == "DEROGATION"

        response = client.post(f"/orders/{order_id}/transit", json={"actor": "tech_p1"})
        assert response.status_code == 200
        assert response.json()["order"]["state"] == "IN_TRANSIT"


class TestOfferEndpoints:
    def test_offer_accept_and_late_conflict(self, client):
        order_id = _create(client)
        client.post(f"/orders/{order_id}/submit", json={"actor": "dispatcher"})
        response = client.post(
            f"/orders/{order_id}/assignment", json={"actor": "dispatcher", "mode": "BROADCAST", "top_n": 2},
        )
        offers = response.json()["offers"]
        assert [o["provider_id"] for o in offers] == ["p1", "p2"]

        accepted = client.post(f"/offers/{offers[1]['id']}/respond", json={"actor": "p2", "accept": True})
        assert accepted.status_code == 200
        assert accepted.json()["order"]["assigned_provider_id"] == "p2"

        late = client.post(f"/offers/{offers[0]['id']}/respond", json={"actor": "p1", "accept": True})
        assert late.status_code == 409
        assert late.json()["error"] == "conflict"

        listed = client.get(f"/orders/{order_id}/offers").json()
        assert {o["status"] for o in listed} == {"ACCEPTED", "CANCELLED"}

    def test_unknown_offer(self, client):
        response = client.post("/offers/ofr_missing/respond", json={"actor": "p1", "accept": True})
        assert response.status_code == 404

    def test_candidate_preview(self, client):
        order_id = _create(client)
        data = client.get(f"/orders/{order_id}/candidates").json()
        assert [r["provider_id"] for r in data["ranked"]] == ["p1", "p2", "p3"]
        assert data["ineligible"] == []

    def test_direct_assignment_endpoint(self, client):
        order_id = _create(client)
        client.post(f"/orders/{order_id}/submit", json={"actor": "dispatcher"})
        response = client.post(
            f"/orders/{order_id}/assignment/direct", json={"actor": "dispatcher", "provider_id": "p3"},
        )
        assert response.status_code == 200
        assert response.json()["order"]["assigned_technician_id"] == "tech_p3"


class TestProviderEndpoints:
    def test_upsert_list_remove(self, client):
        response = client.put("/providers/p9", json={
            "name": "Nine",
            "location": {"latitude": 48.85, "longitude": 2.35},
            "skills": ["hvac"],
            "rating": 4.1,
            "capacity": 2,
        })
        assert response.status_code == 200
        assert "p9" in [p["provider_id"] for p in client.get("/providers").json()]

        assert client.delete("/providers/p9").status_code == 200
        assert client.delete("/providers/p9").status_code == 404

    def test_invalid_rating(self, client):
        response = client.put("/providers/p9", json={
            "name": "Nine", "location": {"latitude": 48.85, "longitude": 2.35}, "rating": 7,
        })
        assert response.status_code == 422


class _DirectoryPool:
    """A provider pool implementing only the ProviderPool methods."""

    def __init__(self):
        self._providers = {}

    def candidates(self, order):
        return list(self._providers.values())

    def get(self, provider_id):
        return self._providers.get(provider_id)

    def all(self):
        return list(self._providers.values())

    def upsert(self, provider):
        self._providers[provider.provider_id] = provider

    def remove(self, provider_id):
        return self._providers.pop(provider_id, None) is not None


class TestCustomProviderPool:
    def setup_method(self):
        self.kernel = build_kernel(clock=ManualClock(START), providers=_DirectoryPool())
        self.client = TestClient(create_app(kernel=self.kernel))

    def teardown_method(self):
        self.kernel.close()

    def test_provider_routes(self):
        response = self.client.put("/providers/p9", json={
            "name": "Nine", "location": {"latitude": 48.85, "longitude": 2.35}, "skills": ["hvac"], "rating": 4.1,
        })
        assert response.status_code == 200
        assert [p["provider_id"] for p in self.client.get("/providers").json()] == ["p9"]

        order_id = _create(self.client)
        ranked = self.client.get(f"/orders/{order_id}/candidates").json()["ranked"]
        assert [r["provider_id"] for r in ranked] == ["p9"]

        assert self.client.delete("/providers/p9").status_code == 200
        assert self.client.get("/providers").json() == []


class TestAuditEndpoints:
    def test_order_audit_and_verify(self, client):
        order_id = _scheduled(client)
        entries = client.get(f"/orders/{order_id}/audit").json()
        assert {e["kind"] for e in entries} >= {"transition", "gate_decision", "assignment_decision"}

        transitions = client.get("/audit", params={"kind": "transition", "limit": 2}).json()
        assert [t["command"] for t in transitions] == ["offer_accepted", "confirm_schedule"]

        verify = client.get("/audit/verify").json()
        assert verify["integrity_valid"] is True
        assert verify["total_records"] == len(entries)


class TestReconcilerEndpoints:
    def test_status_and_trigger(self, client, kernel):
        status = client.get("/reconciler/status").json()
        assert status["status"] == "stopped"
        assert status["last_report"] is None

        order_id = _create(client)
        client.post(f"/orders/{order_id}/submit", json={"actor": "dispatcher"})
        offer = client.post(f"/orders/{order_id}/assignment", json={"actor": "dispatcher"}).json()["offers"][0]
        kernel.timers.cancel(offer["id"])
        kernel.clock.advance(31)

        report = client.post("/reconciler/trigger").json()
        assert report["expired_offers"] == 1
        assert client.get("/reconciler/status").json()["pending_offers"] == 1
