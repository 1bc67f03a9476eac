"""
Shared fixtures: a temporary SQLite database per test, a virtual clock,
and in-memory fakes for the courier, the settlement service and the
customer notifier.
"""

import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from app.core.clock import FrozenClock
from app.core.context import RequestContext
from app.core.exceptions import CourierGatewayError, SettlementDeliveryError
from app.database import build_engine, build_session_factory, init_db
from app.schemas.return_request import PackageInfo, ReturnRequestCreate
from app.services.deadline_service import DeadlineService
from app.services.ghn_service import CourierGateway, PickShift, ShipmentResult
from app.services.notification_service import NotificationService
from app.services.return_orchestrator import ReturnOrchestrator
from app.services.return_store import ReturnRequestStore
from app.services.settlement_service import SettlementNotifier, SettlementOutboxService


STORE_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_STORE_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
CUSTOMER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


class FakeCourierGateway(CourierGateway):
    """Records calls; codes come from ``next_codes`` or GHN001, GHN002, ..."""

    def __init__(self):
        self.created: List[tuple] = []
        self.cancelled: List[str] = []
        self.next_codes: List[str] = []
        self.tracking: Dict[str, str] = {}
        self.create_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.on_create = None
        self.on_cancel = None

    async def create_shipment(self, return_request, pick_shift_id=None) -> ShipmentResult:
        if self.create_error is not None:
            raise self.create_error
        if self.on_create is not None:
            await self.on_create(return_request)
        code = self.next_codes.pop(0) if self.next_codes else f"GHN{len(self.created) + 1:03d}"
        self.created.append((return_request.id, pick_shift_id, code))
        self.tracking[code] = "ready_to_pick"
        return ShipmentResult(order_code=code, total_fee=Decimal("25000"))

    async def cancel_shipment(self, order_code: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        if self.on_cancel is not None:
            await self.on_cancel(order_code)
        self.cancelled.append(order_code)
        self.tracking[order_code] = "cancel"

    async def query_tracking(self, order_code: str) -> str:
        if order_code not in self.tracking:
            raise CourierGatewayError(f"unknown order {order_code}", 400, retryable=False)
        return self.tracking[order_code]

    async def get_pick_shifts(self) -> List[PickShift]:
        return [
            PickShift(id=2, title="Ca lấy 12-03-2025 (12h00 - 18h00)", from_time=43200, to_time=64800),
            PickShift(id=3, title="Ca lấy 13-03-2025 (7h00 - 12h00)", from_time=25200, to_time=43200),
        ]


class RecordingSettlementNotifier(SettlementNotifier):
    """Counts refund calls; fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0):
        self.calls: List[tuple] = []
        self.fail_times = fail_times
        self.attempts = 0

    async def request_refund(self, return_request_id, amount, reason_code) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise SettlementDeliveryError("settlement service unavailable", status_code=503)
        self.calls.append((return_request_id, amount, reason_code))

    def refunds_for(self, return_request_id) -> List[tuple]:
        return [c for c in self.calls if c[0] == return_request_id]


class RecordingNotificationService(NotificationService):
    def __init__(self):
        super().__init__()
        self.sent: List[tuple] = []

    async def _deliver(self, customer_id, notification_type, message) -> bool:
        self.sent.append((customer_id, notification_type, message))
        return True


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'returns.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def courier():
    return FakeCourierGateway()


@pytest.fixture
def settlement_notifier():
    return RecordingSettlementNotifier()


@pytest.fixture
def notifications():
    return RecordingNotificationService()


@pytest.fixture
def store(session_factory):
    return ReturnRequestStore(session_factory)


@pytest.fixture
def deadlines(session_factory, clock):
    return DeadlineService(session_factory, clock, sla_hours=48, transit_sla_hours=168)


@pytest.fixture
def settlement(settlement_notifier, session_factory, clock):
    return SettlementOutboxService(settlement_notifier, session_factory, clock, backoff_seconds=60)


@pytest.fixture
def make_orchestrator(store, courier, settlement, notifications, deadlines, clock):
    def _make(**overrides) -> ReturnOrchestrator:
        options = dict(
            store=store,
            courier=courier,
            settlement=settlement,
            notifications=notifications,
            deadlines=deadlines,
            clock=clock,
            pending_timeout_action="AUTO_REFUND",
            max_cas_retries=5,
            deadline_retry_delay_minutes=15,
        )
        options.update(overrides)
        return ReturnOrchestrator(**options)
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def customer_ctx():
    return RequestContext.for_customer(CUSTOMER_ID)


@pytest.fixture
def shop_ctx():
    return RequestContext.for_shop(STORE_ID)


@pytest.fixture
def other_shop_ctx():
    return RequestContext.for_shop(OTHER_STORE_ID)


@pytest.fixture
def return_data():
    def _data(**overrides) -> ReturnRequestCreate:
        values = dict(
            store_order_id=uuid.uuid4(),
            order_item_id=uuid.uuid4(),
            store_id=STORE_ID,
            product_name="Tai nghe Sony WH-1000XM5",
            reason_type="CUSTOMER_FAULT",
            reason="Không vừa ý",
            item_price=Decimal("500000"),
        )
        values.update(overrides)
        return ReturnRequestCreate(**values)
    return _data


@pytest.fixture
def package():
    def _package(**overrides) -> PackageInfo:
        values = dict(
            weight=Decimal("1.2"),
            length=Decimal("20"),
            width=Decimal("15"),
            height=Decimal("10"),
            shipping_fee=Decimal("25000"),
            customer_address_id="addr-customer-1",
            store_address_id="addr-store-1",
        )
        values.update(overrides)
        return PackageInfo(**values)
    return _package


@pytest.fixture
def submit(orchestrator, customer_ctx, return_data):
    async def _submit(**overrides):
        return await orchestrator.submit_return_request(customer_ctx, return_data(**overrides))
    return _submit


@pytest.fixture
def shipping_return(orchestrator, submit, shop_ctx, package):
    """Return request driven to SHIPPING with a courier order."""
    async def _shipping(**overrides):
        return_request = await submit(**overrides)
        await orchestrator.shop_approve(shop_ctx, return_request.id)
        return await orchestrator.shop_submit_package_info(shop_ctx, return_request.id, package())
    return _shipping


@pytest.fixture
def delivered_return(orchestrator, shipping_return):
    """Return request in SHIPPING whose package the courier delivered."""
    async def _delivered(**overrides):
        return_request = await shipping_return(**overrides)
        await orchestrator.on_tracking_update(return_request.ghn_order_code, "picked")
        return await orchestrator.on_tracking_update(return_request.ghn_order_code, "delivered")
    return _delivered
