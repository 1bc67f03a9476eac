"""
GHN client and courier gateway tests against a mocked HTTP transport.
"""

import hashlib
import hmac
import json
import uuid
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import CourierGatewayError
from app.models.return_request import ReturnRequest
from app.services.ghn_service import (
    FAILURE_STATUSES,
    GhnAddress,
    GhnCourierGateway,
    GhnPaymentType,
    GhnService,
    LOST_STATUSES,
    PICKED_UP_STATUSES,
    PRE_PICKUP_STATUSES,
    verify_webhook_signature,
)


def ghn_ok(data):
    return httpx.Response(200, json={"code": 200, "message": "Success", "data": data})


def make_gateway(handler, max_retries=2, address_resolver=None):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    service = GhnService(
        base_url="https://ghn.test/shiip/public-api",
        token="ghn-token",
        shop_id="885",
        transport=httpx.MockTransport(handler),
    )
    gateway = GhnCourierGateway(
        service,
        max_retries=max_retries,
        backoff_seconds=0.5,
        address_resolver=address_resolver,
        sleep=fake_sleep,
    )
    return gateway, delays


@pytest.fixture
def shipped_item():
    return ReturnRequest(
        id=uuid.UUID("44444444-4444-4444-4444-444444444444"),
        store_order_id=uuid.uuid4(),
        order_item_id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        store_id=uuid.uuid4(),
        product_name="Tai nghe Sony WH-1000XM5",
        reason_type="CUSTOMER_FAULT",
        reason="Không vừa ý",
        item_price=Decimal("500000"),
        status="APPROVED",
        package_weight=Decimal("1.2"),
        package_length=Decimal("20"),
        package_width=Decimal("15"),
        package_height=Decimal("10"),
        shipping_fee=Decimal("25000"),
        customer_address_id="addr-customer-1",
        store_address_id="addr-store-1",
    )


class TestCreateShipment:

    async def test_builds_reverse_shipment(self, shipped_item):
        captured = []

        def handler(request):
            captured.append(request)
            return ghn_ok({"order_code": "GHN123", "total_fee": 25000,
                           "expected_delivery_time": "2025-01-03T16:59:59Z"})

        gateway, _ = make_gateway(handler)

        result = await gateway.create_shipment(shipped_item, pick_shift_id=2)

        assert result.order_code == "GHN123"
        assert result.total_fee == Decimal("25000")
        assert result.expected_delivery_time.year == 2025

        request = captured[0]
        assert request.url.path == "/shiip/public-api/v2/shipping-order/create"
        assert request.headers["Token"] == "ghn-token"
        assert request.headers["ShopId"] == "885"
        payload = json.loads(request.content)
        assert payload["client_order_code"] == str(shipped_item.id)
        assert payload["from_address"] == "addr-customer-1"
        assert payload["to_address"] == "addr-store-1"
        assert payload["weight"] == 1200
        assert (payload["length"], payload["width"], payload["height"]) == (20, 15, 10)
        assert payload["payment_type_id"] == GhnPaymentType.BUYER_PAYS.value
        assert payload["pick_shift"] == [2]
        assert payload["items"][0]["price"] == 500000

    async def test_shop_fault_is_paid_by_shop(self, shipped_item):
        captured = []

        def handler(request):
            captured.append(json.loads(request.content))
            return ghn_ok({"order_code": "GHN124"})

        gateway, _ = make_gateway(handler)
        shipped_item.reason_type = "SHOP_FAULT"

        await gateway.create_shipment(shipped_item)

        assert captured[0]["payment_type_id"] == GhnPaymentType.SHOP_PAYS.value
        assert "pick_shift" not in captured[0]

    async def test_address_resolver(self, shipped_item):
        captured = []

        async def resolve(address_id):
            return GhnAddress(name="Nguyễn Văn A", phone="0901234567", address=f"resolved {address_id}",
                              ward_code="20308", district_id=1444)

        def handler(request):
            captured.append(json.loads(request.content))
            return ghn_ok({"order_code": "GHN125"})

        gateway, _ = make_gateway(handler, address_resolver=resolve)

        await gateway.create_shipment(shipped_item)

        assert captured[0]["from_address"] == "resolved addr-customer-1"
        assert captured[0]["from_district_id"] == 1444
        assert captured[0]["to_ward_code"] == "20308"

    async def test_server_errors_are_retried_with_backoff(self, shipped_item):
        responses = [httpx.Response(502, text="bad gateway"), httpx.Response(500, json={"code": 500}),
                     ghn_ok({"order_code": "GHN126"})]

        gateway, delays = make_gateway(lambda request: responses.pop(0))

        result = await gateway.create_shipment(shipped_item)

        assert result.order_code == "GHN126"
        assert delays == [0.5, 1.0]

    async def test_business_error_is_not_retried(self, shipped_item):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"code": 400, "message": "Số điện thoại không hợp lệ",
                                             "code_message": "PHONE_INVALID"})

        gateway, delays = make_gateway(handler)

        with pytest.raises(CourierGatewayError) as exc_info:
            await gateway.create_shipment(shipped_item)

        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False
        assert len(calls) == 1
        assert delays == []

    async def test_error_code_in_ok_response(self, shipped_item):
        gateway, _ = make_gateway(
            lambda request: httpx.Response(200, json={"code": 400, "message": "Invalid pick shift"})
        )

        with pytest.raises(CourierGatewayError) as exc_info:
            await gateway.create_shipment(shipped_item)
        assert "Invalid pick shift" in exc_info.value.message

    async def test_network_failure_exhausts_retries(self, shipped_item):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        gateway, delays = make_gateway(handler, max_retries=2)

        with pytest.raises(CourierGatewayError) as exc_info:
            await gateway.create_shipment(shipped_item)

        assert exc_info.value.retryable is True
        assert len(calls) == 3
        assert delays == [0.5, 1.0]

    async def test_missing_order_code(self, shipped_item):
        gateway, _ = make_gateway(lambda request: ghn_ok({}))

        with pytest.raises(CourierGatewayError):
            await gateway.create_shipment(shipped_item)


class TestOrderOperations:

    async def test_cancel_shipment(self):
        captured = []

        def handler(request):
            captured.append(request)
            return ghn_ok([{"order_code": "GHN123", "result": True}])

        gateway, _ = make_gateway(handler)

        await gateway.cancel_shipment("GHN123")

        assert captured[0].url.path.endswith("/v2/switch-status/cancel")
        assert json.loads(captured[0].content) == {"order_codes": ["GHN123"]}

    async def test_query_tracking(self):
        def handler(request):
            assert json.loads(request.content) == {"order_code": "GHN123"}
            return ghn_ok({"order_code": "GHN123", "status": "picking"})

        gateway, _ = make_gateway(handler)

        assert await gateway.query_tracking("GHN123") == "picking"

    async def test_query_tracking_without_status(self):
        gateway, _ = make_gateway(lambda request: ghn_ok({"order_code": "GHN123"}))

        with pytest.raises(CourierGatewayError):
            await gateway.query_tracking("GHN123")

    async def test_pick_shifts(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path.endswith("/v2/shift/date")
            return ghn_ok([
                {"id": 2, "title": "Ca lấy 12-03-2025 (12h00 - 18h00)", "from_time": 43200, "to_time": 64800},
                {"id": 3, "title": "Ca lấy 13-03-2025 (7h00 - 12h00)", "from_time": 25200, "to_time": 43200},
            ])

        gateway, _ = make_gateway(handler)

        shifts = await gateway.get_pick_shifts()

        assert [s.id for s in shifts] == [2, 3]
        assert shifts[0].from_time == 43200


class TestStatusSets:

    def test_status_sets_are_disjoint(self):
        assert not PRE_PICKUP_STATUSES & PICKED_UP_STATUSES
        assert "delivered" in PICKED_UP_STATUSES
        assert "cancel" not in PICKED_UP_STATUSES
        assert "ready_to_pick" in PRE_PICKUP_STATUSES

    def test_failure_statuses(self):
        assert not FAILURE_STATUSES & PICKED_UP_STATUSES
        assert not FAILURE_STATUSES & PRE_PICKUP_STATUSES
        assert "returned" in FAILURE_STATUSES
        assert LOST_STATUSES == {"lost", "damage"}
        assert LOST_STATUSES <= FAILURE_STATUSES


class TestWebhookSignature:

    def test_valid_signature(self):
        body = b'{"OrderCode": "GHN123", "Status": "delivered"}'
        signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(body, signature, "s3cret")

    def test_invalid_or_missing_signature(self):
        body = b'{"OrderCode": "GHN123", "Status": "delivered"}'

        assert not verify_webhook_signature(body, "deadbeef", "s3cret")
        assert not verify_webhook_signature(body, None, "s3cret")
