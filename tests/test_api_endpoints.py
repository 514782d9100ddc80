"""
Tests for the HTTP API.

Covers:
- Health and metrics endpoints
- Request intake, processing and refunds over HTTP
- Oracle callback delivery and the local oracle controls
- Administrative endpoints
- Error mapping (401/400/403/404/409/503)
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import ALICE, BOB, OPERATOR, OWNER, PAUSER, TREASURY

DAY = 24 * 60 * 60


def as_(principal):
    return {"X-Principal": principal}


@pytest.fixture
def handle(client):
    """Encrypt a value through the API and return its handle id."""

    def _handle(value, bits=None):
        body = {"value": value}
        if bits:
            body["bits"] = bits
        response = client.post("/ciphertexts", json=body)
        assert response.status_code == 201
        return response.get_json()["handle_id"]

    return _handle


@pytest.fixture
def create(client, handle):
    """Create a request over HTTP and return its id."""

    def _create(owner=ALICE, item_count=3, deposit=50):
        response = client.post(
            "/requests",
            json={
                "item_count": item_count,
                "max_distance": handle(1000),
                "capacity_limit": handle(500),
                "deposit": deposit,
            },
            headers=as_(owner),
        )
        assert response.status_code == 201
        return response.get_json()["request_id"]

    return _create


# ============================================================
# Health & Metrics
# ============================================================

class TestHealthEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        data = response.get_json()

        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["checks"]["lifecycle"]["status"] == "ok"
        assert data["checks"]["sweeper"]["running"] is False

    def test_probes(self, client):
        assert client.get("/health/live").get_json() == {"status": "alive"}
        assert client.get("/health/ready").status_code == 200

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"

    def test_prometheus_metrics(self, client, create):
        create()
        body = client.get("/metrics").get_data(as_text=True)

        assert 'shieldroute_events_total{kind="RequestCreated"} 1' in body
        assert "shieldroute_requests_total 1" in body
        assert "shieldroute_http_requests_total" in body

    def test_json_metrics(self, client, create):
        create()
        data = client.get("/metrics/json").get_json()

        assert data["gauges"]["fee_accumulator"] == 1
        assert data["gauges"]["held_balance"] == 50

    def test_unknown_endpoint(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.get_json()["error"] == "Endpoint not found"


# ============================================================
# Request Intake
# ============================================================

class TestRequestIntake:
    def test_create(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 5, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 50},
            headers=as_(ALICE),
        )
        data = response.get_json()

        assert response.status_code == 201
        assert data["request_id"] == 1
        assert data["request"]["stake"] == 49
        assert data["request"]["status"] == "pending"
        assert data["request"]["owner"] == ALICE

    def test_missing_principal(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 5, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 50},
        )
        assert response.status_code == 401

    def test_missing_field(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 5, "max_distance": handle(1), "capacity_limit": handle(1)},
            headers=as_(ALICE),
        )
        assert response.status_code == 400
        assert "deposit" in response.get_json()["error"]

    def test_boolean_is_not_an_integer(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": True, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 50},
            headers=as_(ALICE),
        )
        assert response.status_code == 400

    def test_unknown_handle(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 5, "max_distance": "ct_bogus", "capacity_limit": handle(1), "deposit": 50},
            headers=as_(ALICE),
        )
        assert response.status_code == 400
        assert "max_distance" in response.get_json()["error"]

    def test_insufficient_stake(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 5, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 9},
            headers=as_(ALICE),
        )
        data = response.get_json()

        assert response.status_code == 400
        assert data["error"] == "InsufficientStake"
        assert data["category"] == "validation"
        assert data["operation"] == "create_request"

    def test_too_many_items(self, client, handle):
        response = client.post(
            "/requests",
            json={"item_count": 51, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 50},
            headers=as_(ALICE),
        )
        assert response.get_json()["error"] == "InvalidItemCount"

    def test_bad_ciphertext(self, client):
        assert client.post("/ciphertexts", json={"value": -1}).status_code == 400
        assert client.post("/ciphertexts", json={"value": 1, "bits": 7}).status_code == 400

    def test_add_item(self, client, create, handle):
        request_id = create()
        item = {"index": 0, "x": handle(1), "y": handle(2), "weight": handle(3), "price": handle(4)}

        response = client.post(f"/requests/{request_id}/items", json=item, headers=as_(ALICE))
        assert response.status_code == 201
        assert response.get_json() == {"request_id": request_id, "index": 0, "active": True}

        response = client.post(f"/requests/{request_id}/items", json=item, headers=as_(BOB))
        assert response.status_code == 403
        assert response.get_json()["error"] == "NotRequestOwner"

    def test_get_request(self, client, create):
        request_id = create()
        data = client.get(f"/requests/{request_id}").get_json()

        assert data["request_id"] == request_id
        assert "multiplier" not in data

    def test_get_unknown_request(self, client):
        response = client.get("/requests/99")
        assert response.status_code == 404
        assert response.get_json()["error"] == "RequestNotFound"

    def test_requests_of_owner(self, client, create):
        create(owner=ALICE)
        create(owner=BOB)
        create(owner=ALICE)

        data = client.get(f"/owners/{ALICE}/requests").get_json()
        assert data["request_ids"] == [1, 3]


# ============================================================
# Processing & Oracle
# ============================================================

class TestProcessingFlow:
    def test_full_route(self, client, create, handle):
        request_id = create()
        for index, (x, y, price) in enumerate([(0, 0, 10), (3, 4, 20), (1, 1, 30)]):
            client.post(
                f"/requests/{request_id}/items",
                json={"index": index, "x": handle(x), "y": handle(y), "weight": handle(1), "price": handle(price)},
                headers=as_(ALICE),
            )

        response = client.post(f"/requests/{request_id}/process", headers=as_(OPERATOR))
        assert response.status_code == 200
        correlation_id = response.get_json()["correlation_id"]

        assert client.get("/oracle/pending").get_json()["correlation_ids"] == [correlation_id]
        assert client.get(f"/requests/{request_id}/result").get_json()["distance"] is None

        response = client.post(f"/oracle/fulfill/{correlation_id}")
        assert response.get_json() == {"correlation_id": correlation_id, "completed": True}

        result = client.get(f"/requests/{request_id}/result").get_json()
        assert result["finalized"] is True
        assert result["distance"] == 12
        assert result["item_order"] == [0, 1, 2]

        response = client.post(f"/requests/{request_id}/items/1/delivered", headers=as_(ALICE))
        assert response.get_json()["delivered"] is True

    def test_result_before_processing(self, client, create):
        assert client.get(f"/requests/{create()}/result").status_code == 404

    def test_process_requires_operator(self, client, create):
        response = client.post(f"/requests/{create()}/process", headers=as_(ALICE))
        assert response.status_code == 403
        assert response.get_json()["error"] == "NotOperator"

    def test_process_twice(self, client, create):
        request_id = create()
        client.post(f"/requests/{request_id}/process", headers=as_(OPERATOR))

        response = client.post(f"/requests/{request_id}/process", headers=as_(OPERATOR))
        assert response.status_code == 409
        assert response.get_json()["error"] == "AlreadyProcessed"

    def test_callback_with_bad_proof(self, client, create):
        request_id = create()
        correlation_id = client.post(
            f"/requests/{request_id}/process", headers=as_(OPERATOR)
        ).get_json()["correlation_id"]

        response = client.post(
            "/oracle/callback",
            json={"correlation_id": correlation_id, "cleartexts": [1, 2], "proof": "AAAA"},
        )
        assert response.status_code == 202
        assert response.get_json()["completed"] is False
        assert client.get(f"/requests/{request_id}").get_json()["status"] == "processing"

    def test_callback_with_valid_proof(self, client, create, service):
        request_id = create()
        correlation_id = client.post(
            f"/requests/{request_id}/process", headers=as_(OPERATOR)
        ).get_json()["correlation_id"]
        multiplier = service.ledger.get_request(request_id).multiplier
        cleartexts = [7 * multiplier, 300]

        response = client.post(
            "/oracle/callback",
            json={
                "correlation_id": correlation_id,
                "cleartexts": cleartexts,
                "proof": service.oracle.sign(correlation_id, cleartexts),
            },
        )
        assert response.status_code == 200

        result = client.get(f"/requests/{request_id}/result").get_json()
        assert (result["distance"], result["cost"]) == (7, 300)

    def test_callback_rejects_negative_values(self, client):
        response = client.post(
            "/oracle/callback", json={"correlation_id": 1, "cleartexts": [-1, 2], "proof": "AAAA"}
        )
        assert response.status_code == 400

    def test_fulfill_unknown(self, client):
        assert client.post("/oracle/fulfill/5").status_code == 404

    def test_public_key(self, client, service):
        data = client.get("/oracle/public-key").get_json()
        assert data == {"algorithm": "Ed25519", "public_key": service.oracle.public_key_b64}


# ============================================================
# Refunds
# ============================================================

class TestRefundEndpoints:
    def test_too_early(self, client, create):
        response = client.post(f"/requests/{create()}/refund", headers=as_(ALICE))
        assert response.status_code == 409
        assert response.get_json()["error"] == "TimeoutNotReached"

    def test_timeout_refund(self, client, create, clock):
        request_id = create()
        clock.advance(DAY + 1)

        eligibility = client.get(f"/requests/{request_id}/eligibility").get_json()
        assert eligibility == {"request_id": request_id, "eligible": True, "reason": "request timeout"}

        response = client.post(f"/requests/{request_id}/refund", headers=as_(ALICE))
        assert response.get_json() == {"request_id": request_id, "amount": 49, "status": "timed_out"}

        response = client.post(f"/requests/{request_id}/refund", headers=as_(ALICE))
        assert response.status_code == 409
        assert response.get_json()["error"] == "RefundAlreadyIssued"

    def test_failed_refund(self, client, create):
        request_id = create()
        client.post(f"/requests/{request_id}/process", headers=as_(OPERATOR))
        client.post(f"/requests/{request_id}/fail", json={"reason": "oracle down"}, headers=as_(OPERATOR))

        response = client.post(f"/requests/{request_id}/refund", headers=as_(ALICE))
        assert response.get_json()["status"] == "refunded"

    def test_rejected_transfer(self, client, create, clock, service):
        request_id = create()
        clock.advance(DAY + 1)
        service.transfer.rejecting.add(ALICE)

        response = client.post(f"/requests/{request_id}/refund", headers=as_(ALICE))
        assert response.status_code == 502
        assert response.get_json()["error"] == "TransferFailed"

    def test_events(self, client, create, clock):
        request_id = create()
        clock.advance(DAY + 1)
        client.post(f"/requests/{request_id}/refund", headers=as_(ALICE))

        data = client.get("/events?kind=RefundIssued").get_json()
        assert data["count"] == 1
        assert data["events"][0]["data"]["amount"] == 49

        assert client.get("/events?kind=Nope").status_code == 400


# ============================================================
# Administration
# ============================================================

class TestAdminEndpoints:
    def test_operator_management(self, client):
        response = client.post("/admin/operators", json={"principal": ALICE}, headers=as_(OWNER))
        assert response.get_json()["changed"] is True
        assert ALICE in client.get("/admin/operators").get_json()["members"]

        response = client.delete(f"/admin/operators/{ALICE}", headers=as_(OWNER))
        assert response.get_json()["changed"] is True

    def test_only_owner(self, client):
        response = client.post("/admin/pausers", json={"principal": ALICE}, headers=as_(OPERATOR))
        assert response.status_code == 403
        assert response.get_json()["error"] == "NotAuthorized"

    def test_pause_blocks_intake(self, client, handle):
        assert client.post("/admin/pause", headers=as_(PAUSER)).get_json() == {"paused": True}

        response = client.post(
            "/requests",
            json={"item_count": 1, "max_distance": handle(1), "capacity_limit": handle(1), "deposit": 50},
            headers=as_(ALICE),
        )
        assert response.status_code == 503
        assert client.get("/health").get_json()["checks"]["lifecycle"]["status"] == "paused"

    def test_fee_withdrawal(self, client, create, service):
        create(deposit=1000)

        response = client.post("/admin/fees/withdraw", json={"to": TREASURY}, headers=as_(OWNER))
        assert response.get_json() == {"to": TREASURY, "amount": 20}
        assert service.transfer.balance_of(TREASURY) == 20

    def test_emergency_withdraw_requires_pause(self, client, create):
        create()
        response = client.post(
            "/admin/emergency-withdraw", json={"to": TREASURY, "amount": 10}, headers=as_(OWNER)
        )
        assert response.status_code == 409
        assert response.get_json()["error"] == "ContractNotPaused"

    def test_ownership(self, client):
        response = client.post("/admin/ownership", json={"new_owner": BOB}, headers=as_(OWNER))
        assert response.get_json() == {"previous_owner": OWNER, "owner": BOB}
        assert client.get("/admin/stats").get_json()["owner"] == BOB

    def test_claimable(self, client, create, clock):
        request_id = create()
        clock.advance(DAY + 1)

        data = client.get("/admin/claimable").get_json()
        assert data["count"] == 1
        assert data["claimable"][0]["request_id"] == request_id
