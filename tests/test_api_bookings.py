"""HTTP tests for the booking endpoints."""

from datetime import timedelta
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_booking_engine
from app.config import settings
from app.core.security import create_access_token
from app.gateways.base import GatewayResult
from app.main import app

API = "/api/v1/bookings"


def auth(actor, request_id: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {create_access_token(actor.user_id)}"}
    if request_id:
        headers["Idempotency-Key"] = request_id
    return headers


@pytest.fixture
async def client(machine, admin, monkeypatch):
    monkeypatch.setattr(settings, "admin_user_ids", [admin.user_id])
    app.dependency_overrides[get_booking_engine] = lambda: machine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def booking_payload(sitter, clock) -> dict:
    start = clock.now + timedelta(days=2)
    return {
        "sitter_id": str(sitter.user_id),
        "service_type": "boarding",
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(days=2)).isoformat(),
        "total_price": 12000,
        "sitter_payout_account": "acct_sitter",
    }


async def create(client, owner, payload, request_id=None) -> dict:
    response = await client.post(f"{API}/", json=payload, headers=auth(owner, request_id))
    assert response.status_code == 201, response.text
    return response.json()


class TestAuthentication:
    async def test_missing_token(self, client, booking_payload):
        response = await client.post(f"{API}/", json=booking_payload)
        assert response.status_code == 401
        assert response.json()["code"] == "authentication_failed"

    async def test_bad_token(self, client, booking_payload):
        response = await client.post(
            f"{API}/", json=booking_payload, headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


class TestBookingLifecycleApi:
    async def test_create_and_get(self, client, owner, booking_payload):
        body = await create(client, owner, booking_payload)
        assert body["status"] == "requested"
        assert body["payment_status"] == "none"
        assert body["owner_id"] == str(owner.user_id)

        response = await client.get(f"{API}/{body['id']}", headers=auth(owner))
        assert response.status_code == 200
        assert response.json()["total_price"] == 12000

    async def test_stranger_cannot_read(self, client, owner, stranger, booking_payload):
        body = await create(client, owner, booking_payload)
        response = await client.get(f"{API}/{body['id']}", headers=auth(stranger))
        assert response.status_code == 403
        assert response.json()["code"] == "unauthorized"

    async def test_unknown_booking(self, client, owner):
        response = await client.get(f"{API}/{uuid4()}", headers=auth(owner))
        assert response.status_code == 404

    async def test_invalid_time_range(self, client, owner, booking_payload):
        booking_payload["end_time"] = booking_payload["start_time"]
        response = await client.post(f"{API}/", json=booking_payload, headers=auth(owner))
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    async def test_idempotent_create(self, client, owner, booking_payload):
        first = await create(client, owner, booking_payload, request_id="create-abc")
        again = await create(client, owner, booking_payload, request_id="create-abc")
        assert again["id"] == first["id"]

    async def test_overlong_idempotency_key(self, client, owner, booking_payload):
        response = await client.post(f"{API}/", json=booking_payload, headers=auth(owner, "x" * 200))
        assert response.status_code == 422

    async def test_full_flow(self, client, owner, sitter, booking_payload):
        booking_id = (await create(client, owner, booking_payload))["id"]

        response = await client.post(
            f"{API}/{booking_id}/status",
            json={"new_status": "confirmed", "expected_status": "requested"},
            headers=auth(sitter),
        )
        assert response.status_code == 200
        assert response.json()["commission_fee"] == 2400
        assert response.json()["payout_amount"] == 9600

        response = await client.post(
            f"{API}/{booking_id}/authorize",
            json={"payment_method_id": "pm_card_visa"},
            headers=auth(owner),
        )
        assert response.json()["payment_status"] == "held"

        response = await client.post(f"{API}/{booking_id}/complete", headers=auth(sitter))
        assert response.json()["status"] == "completed"

        response = await client.post(f"{API}/{booking_id}/confirm-completion", headers=auth(owner))
        assert response.json()["eligible_for_release_at"] is not None

        response = await client.post(f"{API}/{booking_id}/release", headers=auth(sitter))
        assert response.status_code == 409
        assert response.json()["code"] == "not_eligible_for_release"

        response = await client.post(f"{API}/{booking_id}/release", json={"force": True}, headers=auth(owner))
        assert response.status_code == 200
        assert response.json()["payment_status"] == "released"

        response = await client.get(f"{API}/{booking_id}/history", headers=auth(sitter))
        actions = {t["action"] for t in response.json()}
        assert {"create", "accept", "capture_succeeded", "confirm_completion", "release"} <= actions

    async def test_invalid_transition_is_conflict(self, client, owner, sitter, booking_payload):
        booking_id = (await create(client, owner, booking_payload))["id"]
        response = await client.post(
            f"{API}/{booking_id}/status", json={"new_status": "completed"}, headers=auth(sitter)
        )
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    async def test_stale_expected_status(self, client, owner, sitter, booking_payload):
        booking_id = (await create(client, owner, booking_payload))["id"]
        await client.post(f"{API}/{booking_id}/status", json={"new_status": "confirmed"}, headers=auth(sitter))
        response = await client.post(
            f"{API}/{booking_id}/status",
            json={"new_status": "cancelled", "expected_status": "requested"},
            headers=auth(owner),
        )
        assert response.status_code == 409
        assert response.json()["code"] == "stale_transition"

    async def test_declined_capture_is_bad_gateway(self, client, owner, sitter, booking_payload, fake_gateway):
        booking_id = (await create(client, owner, booking_payload))["id"]
        await client.post(f"{API}/{booking_id}/status", json={"new_status": "confirmed"}, headers=auth(sitter))
        fake_gateway.queue("capture", GatewayResult.failed("Your card was declined."))
        response = await client.post(f"{API}/{booking_id}/authorize", headers=auth(owner))
        assert response.status_code == 502
        assert response.json()["code"] == "gateway_error"

    async def test_refund_endpoint(self, client, owner, sitter, booking_payload):
        booking_id = (await create(client, owner, booking_payload))["id"]
        await client.post(f"{API}/{booking_id}/status", json={"new_status": "confirmed"}, headers=auth(sitter))
        await client.post(f"{API}/{booking_id}/authorize", headers=auth(owner))
        response = await client.post(
            f"{API}/{booking_id}/refund", json={"reason": "Dog got sick"}, headers=auth(owner)
        )
        assert response.status_code == 200
        assert (response.json()["status"], response.json()["payment_status"]) == ("cancelled", "refunded")


class TestDisputesApi:
    async def test_dispute_and_admin_resolution(self, client, owner, sitter, admin, booking_payload):
        booking_id = (await create(client, owner, booking_payload))["id"]
        await client.post(f"{API}/{booking_id}/status", json={"new_status": "confirmed"}, headers=auth(sitter))
        await client.post(f"{API}/{booking_id}/authorize", headers=auth(owner))
        await client.post(f"{API}/{booking_id}/complete", headers=auth(sitter))

        response = await client.post(
            f"{API}/{booking_id}/dispute", json={"reason": "Dog came back muddy"}, headers=auth(owner)
        )
        assert response.status_code == 200
        assert response.json()["disputed_at"] is not None

        response = await client.get(f"{API}/review-queue", headers=auth(admin))
        assert response.status_code == 200
        assert response.json()["total"] == 1

        response = await client.post(
            f"{API}/{booking_id}/dispute/resolve", json={"resolution": "refund"}, headers=auth(owner)
        )
        assert response.status_code == 403

        response = await client.post(
            f"{API}/{booking_id}/dispute/resolve",
            json={"resolution": "release", "note": "Mud is normal"},
            headers=auth(admin),
        )
        assert response.status_code == 200
        assert response.json()["payment_status"] == "released"
        assert response.json()["dispute_resolution"] == "release"

    async def test_review_queue_is_admin_only(self, client, owner):
        response = await client.get(f"{API}/review-queue", headers=auth(owner))
        assert response.status_code == 403


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_readiness(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["database"] == "ok"
