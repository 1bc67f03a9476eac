"""
HTTP API tests: FastAPI app over an ASGI transport, with the
orchestrator dependency pointed at the test database.
"""

import hashlib
import hmac
import json
import uuid
from decimal import Decimal

import httpx
import pytest

from app.api.deps import get_orchestrator
from app.config import settings
from app.core.exceptions import CourierGatewayError
from app.main import app

from tests.conftest import CUSTOMER_ID, STORE_ID

CUSTOMER_HEADERS = {"X-Customer-Id": str(CUSTOMER_ID)}
STORE_HEADERS = {"X-Store-Id": str(STORE_ID)}


@pytest.fixture
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def return_payload(**overrides):
    payload = {
        "store_order_id": str(uuid.uuid4()),
        "order_item_id": str(uuid.uuid4()),
        "store_id": str(STORE_ID),
        "product_name": "Tai nghe Sony WH-1000XM5",
        "reason_type": "CUSTOMER_FAULT",
        "reason": "Không vừa ý",
        "item_price": "500000",
        "customer_image_urls": ["https://cdn.example.vn/returns/1.jpg"],
    }
    payload.update(overrides)
    return payload


PACKAGE = {
    "weight": "1.2",
    "length": "20",
    "width": "15",
    "height": "10",
    "shipping_fee": "25000",
    "customer_address_id": "addr-customer-1",
    "store_address_id": "addr-store-1",
}


async def submit(client, **overrides):
    response = await client.post("/api/v1/customers/me/returns", json=return_payload(**overrides),
                                 headers=CUSTOMER_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


class TestCustomerReturns:

    async def test_submit(self, client):
        body = await submit(client)

        assert body["status"] == "PENDING"
        assert body["status_label"] == "New request - awaiting shop"
        assert body["customer_id"] == str(CUSTOMER_ID)
        assert Decimal(str(body["item_price"])) == Decimal("500000")
        assert body["deadline_kind"] == "SHOP_ACTION"
        assert body["customer_image_urls"] == ["https://cdn.example.vn/returns/1.jpg"]

    async def test_duplicate_submit_conflicts(self, client):
        payload = return_payload()
        await client.post("/api/v1/customers/me/returns", json=payload, headers=CUSTOMER_HEADERS)

        response = await client.post("/api/v1/customers/me/returns", json=payload, headers=CUSTOMER_HEADERS)

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_ACTIVE_RETURN"

    async def test_validation(self, client):
        response = await client.post(
            "/api/v1/customers/me/returns",
            json=return_payload(reason="   ", item_price="0"),
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 422

    async def test_customer_header_required(self, client):
        response = await client.post("/api/v1/customers/me/returns", json=return_payload())
        assert response.status_code == 401

        response = await client.get("/api/v1/customers/me/returns", headers={"X-Customer-Id": "not-a-uuid"})
        assert response.status_code == 400

    async def test_list_and_track(self, client):
        created = await submit(client)

        listing = (await client.get("/api/v1/customers/me/returns", headers=CUSTOMER_HEADERS)).json()
        assert listing["total_elements"] == 1
        assert listing["total_pages"] == 1
        assert listing["content"][0]["id"] == created["id"]

        detail = await client.get(f"/api/v1/customers/me/returns/{created['id']}", headers=CUSTOMER_HEADERS)
        assert detail.status_code == 200
        assert [entry["event"] for entry in detail.json()["timeline"]] == ["SUBMIT"]

    async def test_other_customer_gets_404(self, client):
        created = await submit(client)

        response = await client.get(
            f"/api/v1/customers/me/returns/{created['id']}",
            headers={"X-Customer-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404
        assert response.json()["error"] == "RETURN_NOT_FOUND"


class TestStoreReturns:

    async def test_full_return_flow(self, client, courier, settlement_notifier):
        courier.next_codes = ["GHN123"]
        created = await submit(client)
        return_id = created["id"]

        approved = await client.post(f"/api/v1/store/returns/{return_id}/approve", headers=STORE_HEADERS)
        assert approved.status_code == 200
        assert approved.json()["status"] == "APPROVED"

        shipping = await client.post(
            f"/api/v1/store/returns/{return_id}/package-info", json=PACKAGE, headers=STORE_HEADERS
        )
        assert shipping.status_code == 200, shipping.text
        assert shipping.json()["status"] == "SHIPPING"
        assert shipping.json()["ghn_order_code"] == "GHN123"
        assert shipping.json()["status_label"] == "Returning"

        webhook = await client.post("/api/v1/ghn/webhook", json={"OrderCode": "GHN123", "Status": "delivered"})
        assert webhook.status_code == 200
        assert webhook.json()["tracking_status"] == "delivered"

        refunded = await client.post(f"/api/v1/store/returns/{return_id}/confirm-receipt", headers=STORE_HEADERS)
        assert refunded.status_code == 200
        assert refunded.json()["status"] == "REFUNDED"
        assert len(settlement_notifier.calls) == 1

        detail = (await client.get(f"/api/v1/store/returns/{return_id}", headers=STORE_HEADERS)).json()
        assert detail["timeline"][-1]["to_status"] == "REFUNDED"

    async def test_invalid_transition_is_409(self, client):
        created = await submit(client)

        response = await client.post(
            f"/api/v1/store/returns/{created['id']}/confirm-receipt", headers=STORE_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_TRANSITION"

    async def test_reject_needs_a_reason(self, client):
        created = await submit(client)

        missing = await client.post(
            f"/api/v1/store/returns/{created['id']}/reject", json={"reason": ""}, headers=STORE_HEADERS
        )
        assert missing.status_code == 422

        rejected = await client.post(
            f"/api/v1/store/returns/{created['id']}/reject", json={"reason": "Sản phẩm đã qua sử dụng"},
            headers=STORE_HEADERS,
        )
        assert rejected.status_code == 200
        assert rejected.json()["shop_reject_reason"] == "Sản phẩm đã qua sử dụng"

    async def test_invalid_package_is_422(self, client):
        created = await submit(client)
        await client.post(f"/api/v1/store/returns/{created['id']}/approve", headers=STORE_HEADERS)

        response = await client.post(
            f"/api/v1/store/returns/{created['id']}/package-info",
            json={**PACKAGE, "weight": "0"},
            headers=STORE_HEADERS,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_PACKAGE_INFO"

    async def test_courier_failure_is_502_and_retryable(self, client, courier):
        created = await submit(client)
        await client.post(f"/api/v1/store/returns/{created['id']}/approve", headers=STORE_HEADERS)
        courier.create_error = CourierGatewayError("GHN create order failed: timeout", 504)

        failed = await client.post(
            f"/api/v1/store/returns/{created['id']}/package-info", json=PACKAGE, headers=STORE_HEADERS
        )
        assert failed.status_code == 502
        assert failed.json()["error"] == "COURIER_GATEWAY_ERROR"

        courier.create_error = None
        retried = await client.post(
            f"/api/v1/store/returns/{created['id']}/create-ghn-order", json={"pick_shift_id": 3},
            headers=STORE_HEADERS,
        )
        assert retried.status_code == 200
        assert retried.json()["pick_shift_id"] == 3

    async def test_listing_is_scoped_to_store(self, client):
        await submit(client)
        await submit(client, store_id=str(uuid.uuid4()))

        listing = await client.get("/api/v1/store/returns?status=pending&size=10", headers=STORE_HEADERS)

        assert listing.status_code == 200
        assert listing.json()["total_elements"] == 1
        assert listing.json()["size"] == 10

    async def test_other_store_gets_404(self, client):
        created = await submit(client)

        response = await client.post(
            f"/api/v1/store/returns/{created['id']}/approve",
            headers={"X-Store-Id": str(uuid.uuid4())},
        )
        assert response.status_code == 404

    async def test_store_header_required(self, client):
        response = await client.get("/api/v1/store/returns")
        assert response.status_code == 401


class TestGhnEndpoints:

    async def test_pick_shifts(self, client):
        response = await client.get("/api/v1/ghn/pick-shifts")

        assert response.status_code == 200
        assert [s["id"] for s in response.json()] == [2, 3]

    async def test_unknown_order_is_acknowledged(self, client):
        response = await client.post("/api/v1/ghn/webhook", json={"OrderCode": "GHN404", "Status": "picked"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "ignored" in response.json()["message"]

    async def test_invalid_payload(self, client):
        response = await client.post("/api/v1/ghn/webhook", json={"Status": "picked"})
        assert response.status_code == 400

    async def test_signature_checked_when_secret_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "GHN_WEBHOOK_SECRET", "s3cret")
        body = json.dumps({"OrderCode": "GHN404", "Status": "picked"}).encode()

        unsigned = await client.post("/api/v1/ghn/webhook", content=body)
        assert unsigned.status_code == 401

        forged = await client.post("/api/v1/ghn/webhook", content=body, headers={"X-GHN-Signature": "forged"})
        assert forged.status_code == 401

        signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        signed = await client.post("/api/v1/ghn/webhook", content=body, headers={"X-GHN-Signature": signature})
        assert signed.status_code == 200
