"""
Pydantic schemas for Return Requests.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from app.schemas.base import BaseCreateSchema, BaseResponseSchema
from app.services.return_state_machine import get_status_label


# ==================== Enums ====================

class ReasonType(str, Enum):
    CUSTOMER_FAULT = "CUSTOMER_FAULT"   # customer pays the return shipping
    SHOP_FAULT = "SHOP_FAULT"           # shop pays the return shipping


# ==================== Customer Schemas ====================

class ReturnRequestCreate(BaseCreateSchema):
    """Schema for submitting a return request (customer-facing)."""
    store_order_id: UUID
    order_item_id: UUID
    store_id: UUID
    product_id: Optional[UUID] = None
    product_name: Optional[str] = Field(None, max_length=500)
    reason_type: ReasonType
    reason: str = Field(..., min_length=1)
    item_price: Decimal = Field(..., gt=0)
    customer_image_urls: Optional[List[str]] = None
    customer_video_url: Optional[str] = Field(None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


# ==================== Shop Action Schemas ====================

class PackageInfo(BaseCreateSchema):
    """
    Package measurements entered by the shop after approval.

    The optional ``product_*`` fields carry the catalogue reference
    measurements; when given, the package must stay within tolerance.
    """
    weight: Decimal = Field(..., description="kg")
    length: Decimal = Field(..., description="cm")
    width: Decimal = Field(..., description="cm")
    height: Decimal = Field(..., description="cm")
    shipping_fee: Decimal
    customer_address_id: Optional[str] = None
    store_address_id: Optional[str] = None
    pick_shift_id: Optional[int] = None

    product_weight: Optional[Decimal] = None
    product_length: Optional[Decimal] = None
    product_width: Optional[Decimal] = None
    product_height: Optional[Decimal] = None


class RejectRequest(BaseCreateSchema):
    """Reason given by the shop on reject or dispute."""
    reason: str = Field(..., min_length=1)


class CreateShipmentRequest(BaseCreateSchema):
    pick_shift_id: Optional[int] = None


class ReturnListFilter(BaseModel):
    status: Optional[str] = None
    reason_type: Optional[ReasonType] = None


# ==================== Response Schemas ====================

class ReturnStatusHistoryResponse(BaseResponseSchema):
    """Timeline entry."""
    id: UUID
    from_status: Optional[str] = None
    to_status: str
    event: str
    actor_type: str
    actor_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime


class ReturnRequestResponse(BaseResponseSchema):
    """Full return request as seen by the shop or the customer."""
    id: UUID
    store_order_id: UUID
    order_item_id: UUID
    product_id: Optional[UUID] = None
    product_name: Optional[str] = None
    customer_id: UUID
    store_id: UUID
    reason_type: str
    reason: str
    item_price: Decimal
    status: str

    auto_approved: bool
    auto_approved_at: Optional[datetime] = None
    auto_refunded: bool
    auto_refunded_at: Optional[datetime] = None
    auto_cancelled: bool
    auto_cancelled_at: Optional[datetime] = None
    refund_without_return: bool

    package_weight: Optional[Decimal] = None
    package_length: Optional[Decimal] = None
    package_width: Optional[Decimal] = None
    package_height: Optional[Decimal] = None
    shipping_fee: Optional[Decimal] = None
    customer_address_id: Optional[str] = None
    store_address_id: Optional[str] = None

    pick_shift_id: Optional[int] = None
    ghn_order_code: Optional[str] = None
    tracking_status: Optional[str] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    shipment_ever_created: bool
    needs_shipment_recreate: bool

    deadline_kind: Optional[str] = None
    deadline_at: Optional[datetime] = None

    customer_image_urls: Optional[List[str]] = None
    customer_video_url: Optional[str] = None
    shop_reject_reason: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def status_label(self) -> str:
        return get_status_label(self.status)


class ReturnRequestDetailResponse(ReturnRequestResponse):
    timeline: List[ReturnStatusHistoryResponse] = []


# ==================== Courier Schemas ====================

class PickShiftResponse(BaseModel):
    id: int
    title: str
    from_time: Optional[int] = None
    to_time: Optional[int] = None


class GhnWebhookPayload(BaseModel):
    """Status callback pushed by GHN."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_code: str = Field(..., alias="OrderCode")
    status: str = Field(..., alias="Status")
    time: Optional[datetime] = Field(None, alias="Time")
