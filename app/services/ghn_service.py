"""
GHN (Giao Hang Nhanh) Integration Service.

Handles all GHN API interactions used by return shipments:
- Shipping order creation and cancellation
- Order detail (tracking status)
- Pick shifts
- Webhook signature verification

``GhnService`` is a thin HTTP wrapper; ``GhnCourierGateway`` adds retry
and maps failures to ``CourierGatewayError``. Neither knows anything
about return statuses.

API Docs: https://api.ghn.vn/home/docs/detail
"""
import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.config import settings
from app.core.exceptions import CourierGatewayError

logger = logging.getLogger(__name__)


class GhnOrderStatus(str, Enum):
    """GHN shipping order status codes."""
    READY_TO_PICK = "ready_to_pick"
    PICKING = "picking"
    PICKED = "picked"
    STORING = "storing"
    TRANSPORTING = "transporting"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    DELIVERY_FAIL = "delivery_fail"
    WAITING_TO_RETURN = "waiting_to_return"
    RETURN = "return"
    RETURNED = "returned"
    CANCEL = "cancel"
    EXCEPTION = "exception"
    LOST = "lost"
    DAMAGE = "damage"


# Courier has not collected the package yet
PRE_PICKUP_STATUSES = frozenset({
    GhnOrderStatus.READY_TO_PICK.value,
    GhnOrderStatus.PICKING.value,
})

# Shipment attempt ended without reaching the store
FAILURE_STATUSES = frozenset({
    GhnOrderStatus.CANCEL.value,
    GhnOrderStatus.LOST.value,
    GhnOrderStatus.DAMAGE.value,
    GhnOrderStatus.EXCEPTION.value,
    GhnOrderStatus.RETURNED.value,
})

# Package gone while in the courier's hands
LOST_STATUSES = frozenset({
    GhnOrderStatus.LOST.value,
    GhnOrderStatus.DAMAGE.value,
})

# Package is physically with the courier (or beyond)
PICKED_UP_STATUSES = frozenset(
    s.value for s in GhnOrderStatus
) - PRE_PICKUP_STATUSES - FAILURE_STATUSES


class GhnPaymentType(int, Enum):
    SHOP_PAYS = 1
    BUYER_PAYS = 2


@dataclass
class GhnAddress:
    """Address structure for GHN API."""
    name: str = ""
    phone: str = ""
    address: str = ""
    ward_code: str = ""
    district_id: Optional[int] = None


@dataclass
class GhnOrderItem:
    name: str
    quantity: int = 1
    price: int = 0
    weight: int = 0  # grams


@dataclass
class GhnOrderRequest:
    """Shipping order creation request for GHN."""
    client_order_code: str
    from_address: GhnAddress
    to_address: GhnAddress
    weight: int  # grams
    length: int  # cm
    width: int  # cm
    height: int  # cm
    payment_type_id: int = GhnPaymentType.SHOP_PAYS.value
    items: List[GhnOrderItem] = field(default_factory=list)
    pick_shift: Optional[int] = None
    note: str = ""
    insurance_value: int = 0


@dataclass
class ShipmentResult:
    """Result of a successful shipment creation."""
    order_code: str
    total_fee: Optional[Decimal] = None
    expected_delivery_time: Optional[datetime] = None


@dataclass
class PickShift:
    """Courier time window for collecting a package."""
    id: int
    title: str
    from_time: Optional[int] = None
    to_time: Optional[int] = None


class GhnAPIError(Exception):
    """GHN API error."""

    def __init__(self, status_code: int, message: str, code_message: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.code_message = code_message
        super().__init__(f"GHN API Error ({status_code}): {message}")


class GhnService:
    """
    Service for GHN API integration.

    Usage:
        service = GhnService()
        data = await service.create_order(order_request)
        await service.cancel_order([data["order_code"]])
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        shop_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.GHN_API_URL).rstrip("/")
        self.token = token if token is not None else settings.GHN_TOKEN
        self.shop_id = shop_id if shop_id is not None else settings.GHN_SHOP_ID
        self.timeout = timeout or settings.GHN_REQUEST_TIMEOUT
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Any:
        """Make authenticated request to GHN API and return its ``data`` field."""
        headers = {
            "Token": self.token,
            "ShopId": str(self.shop_id),
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.request(method.upper(), url, headers=headers, json=data, params=params)

        try:
            body = response.json() if response.text else {}
        except ValueError:
            body = {"message": response.text}

        # GHN reports business errors in the body code as well as the HTTP status
        code = body.get("code", response.status_code) if isinstance(body, dict) else response.status_code
        if response.status_code >= 400 or (isinstance(code, int) and code >= 400):
            status_code = response.status_code if response.status_code >= 400 else code
            logger.error(f"GHN API error: {status_code} - {response.text}")
            raise GhnAPIError(
                status_code=status_code,
                message=body.get("message", response.text) if isinstance(body, dict) else response.text,
                code_message=body.get("code_message") if isinstance(body, dict) else None,
            )

        return body.get("data") if isinstance(body, dict) else body

    # ==================== ORDER MANAGEMENT ====================

    async def create_order(self, order: GhnOrderRequest) -> Dict:
        """
        Create a shipping order.

        Returns:
            Dict with order_code, total_fee, expected_delivery_time
        """
        payload = {
            "payment_type_id": order.payment_type_id,
            "required_note": settings.GHN_REQUIRED_NOTE,
            "client_order_code": order.client_order_code,
            "note": order.note,
            "from_name": order.from_address.name,
            "from_phone": order.from_address.phone,
            "from_address": order.from_address.address,
            "from_ward_code": order.from_address.ward_code,
            "from_district_id": order.from_address.district_id,
            "to_name": order.to_address.name,
            "to_phone": order.to_address.phone,
            "to_address": order.to_address.address,
            "to_ward_code": order.to_address.ward_code,
            "to_district_id": order.to_address.district_id,
            "weight": order.weight,
            "length": order.length,
            "width": order.width,
            "height": order.height,
            "insurance_value": order.insurance_value,
            "service_type_id": settings.GHN_SERVICE_TYPE_ID,
            "items": [
                {
                    "name": item.name,
                    "quantity": item.quantity,
                    "price": item.price,
                    "weight": item.weight,
                }
                for item in order.items
            ],
        }
        if order.pick_shift is not None:
            payload["pick_shift"] = [order.pick_shift]

        logger.info(f"Creating GHN order for {order.client_order_code}")
        return await self._request("POST", "/v2/shipping-order/create", data=payload)

    async def cancel_order(self, order_codes: List[str]) -> List[Dict]:
        """Cancel one or more shipping orders."""
        logger.info(f"Cancelling GHN orders {order_codes}")
        return await self._request("POST", "/v2/switch-status/cancel", data={"order_codes": order_codes}) or []

    async def get_order_detail(self, order_code: str) -> Dict:
        """Shipping order detail, including the current ``status``."""
        return await self._request("POST", "/v2/shipping-order/detail", data={"order_code": order_code}) or {}

    async def get_pick_shifts(self) -> List[Dict]:
        """Available pick shifts for today and the next days."""
        return await self._request("GET", "/v2/shift/date") or []


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded."""
    if not signature:
        return False
    expected_signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature)


# ==================== COURIER GATEWAY ====================

class CourierGateway(ABC):
    """What the return orchestrator needs from a courier."""

    @abstractmethod
    async def create_shipment(self, return_request, pick_shift_id: Optional[int] = None) -> ShipmentResult:
        pass

    @abstractmethod
    async def cancel_shipment(self, order_code: str) -> None:
        pass

    @abstractmethod
    async def query_tracking(self, order_code: str) -> str:
        pass

    @abstractmethod
    async def get_pick_shifts(self) -> List[PickShift]:
        pass


AddressResolver = Callable[[Optional[str]], Awaitable[GhnAddress]]


class GhnCourierGateway(CourierGateway):
    """
    Courier gateway backed by GHN.

    Transport errors, 5xx and 429 responses are retried with exponential
    backoff; other 4xx responses are business errors and fail at once.
    """

    def __init__(
        self,
        service: Optional[GhnService] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        address_resolver: Optional[AddressResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service or GhnService()
        self.max_retries = settings.GHN_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.GHN_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.address_resolver = address_resolver
        self._sleep = sleep

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await func()
            except httpx.TransportError as e:
                status_code, message, retryable = None, f"{type(e).__name__}: {e}", True
            except GhnAPIError as e:
                status_code, message = e.status_code, e.message
                retryable = status_code >= 500 or status_code == 429

            if not retryable or attempt >= self.max_retries:
                logger.error(f"GHN {operation} failed after {attempt + 1} attempt(s): {message}")
                raise CourierGatewayError(f"GHN {operation} failed: {message}", status_code, retryable)

            delay = self.backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(f"GHN {operation} failed ({message}), retry {attempt}/{self.max_retries} in {delay}s")
            await self._sleep(delay)

    async def _resolve_address(self, address_id: Optional[str]) -> GhnAddress:
        if self.address_resolver is not None:
            return await self.address_resolver(address_id)
        return GhnAddress(address=address_id or "")

    async def create_shipment(self, return_request, pick_shift_id: Optional[int] = None) -> ShipmentResult:
        # Reverse shipment: the customer sends the package back to the store
        order = GhnOrderRequest(
            client_order_code=str(return_request.id),
            from_address=await self._resolve_address(return_request.customer_address_id),
            to_address=await self._resolve_address(return_request.store_address_id),
            weight=int((return_request.package_weight * 1000).to_integral_value()),
            length=int(return_request.package_length.to_integral_value()),
            width=int(return_request.package_width.to_integral_value()),
            height=int(return_request.package_height.to_integral_value()),
            payment_type_id=(
                GhnPaymentType.BUYER_PAYS.value
                if return_request.reason_type == "CUSTOMER_FAULT"
                else GhnPaymentType.SHOP_PAYS.value
            ),
            items=[
                GhnOrderItem(
                    name=return_request.product_name or "Return item",
                    quantity=1,
                    price=int(return_request.item_price),
                    weight=int((return_request.package_weight * 1000).to_integral_value()),
                )
            ],
            pick_shift=pick_shift_id,
            note=f"Return {return_request.id}",
        )

        data = await self._call("create order", lambda: self.service.create_order(order))
        if not data or not data.get("order_code"):
            raise CourierGatewayError("GHN create order returned no order code", retryable=True)

        expected = data.get("expected_delivery_time")
        return ShipmentResult(
            order_code=data["order_code"],
            total_fee=Decimal(str(data["total_fee"])) if data.get("total_fee") is not None else None,
            expected_delivery_time=datetime.fromisoformat(expected.replace("Z", "+00:00")) if expected else None,
        )

    async def cancel_shipment(self, order_code: str) -> None:
        await self._call("cancel order", lambda: self.service.cancel_order([order_code]))

    async def query_tracking(self, order_code: str) -> str:
        data = await self._call("order detail", lambda: self.service.get_order_detail(order_code))
        status = data.get("status")
        if not status:
            raise CourierGatewayError(f"GHN order detail for {order_code} has no status", retryable=True)
        return status

    async def get_pick_shifts(self) -> List[PickShift]:
        data = await self._call("pick shifts", self.service.get_pick_shifts)
        return [
            PickShift(
                id=shift["id"],
                title=shift.get("title", ""),
                from_time=shift.get("from_time"),
                to_time=shift.get("to_time"),
            )
            for shift in data
        ]
