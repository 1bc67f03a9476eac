"""
Return Request Models

Handles customer return requests for a single purchased line item, their
audit timeline, the armed workflow deadlines and the refund outbox.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import JSONType, UUIDType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReturnRequest(Base):
    """
    Return request aggregate.
    One row per customer request to return one purchased line item.
    """
    __tablename__ = "return_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Purchased line item being returned
    store_order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    # Equals the order item key while the request is open, NULL once terminal
    active_item_key: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Enforces one open return per line item"
    )

    # Product Info (snapshot)
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True
    )
    product_name: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True
    )

    # Parties
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        nullable=False,
        index=True
    )

    # Reason
    reason_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="CUSTOMER_FAULT, SHOP_FAULT"
    )
    reason: Mapped[str] = mapped_column(
        Text,
        nullable=False
    )

    # Amount refunded if the return succeeds (never includes shipping)
    item_price: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        index=True,
        comment="PENDING, APPROVED, SHIPPING, REJECTED, CANCELLED, AUTO_REFUNDED, REFUNDED"
    )

    # System-driven transitions (set once, never cleared)
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_without_return: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Package (from APPROVED onward)
    package_weight: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 3),
        nullable=True,
        comment="kg"
    )
    package_length: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True, comment="cm")
    package_width: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True, comment="cm")
    package_height: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True, comment="cm")
    shipping_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    customer_address_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    store_address_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Courier shipment
    pick_shift_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ghn_order_code: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True
    )
    tracking_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tracking_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipment_ever_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    shipment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_shipment_recreate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Settlement marker, written in the same CAS as the refund transition
    refund_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # The single armed deadline of the current waiting state
    active_deadline_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    deadline_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Evidence
    customer_image_urls: Mapped[Optional[list]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Images uploaded by customer"
    )
    customer_video_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # Rejection / dispute
    shop_reject_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    status_history: Mapped[List["ReturnStatusHistory"]] = relationship(
        "ReturnStatusHistory",
        back_populates="return_request",
        order_by="ReturnStatusHistory.sequence",
        lazy="raise",
    )

    @property
    def order_item_key(self) -> str:
        return f"{self.store_order_id}:{self.order_item_id}"

    @property
    def has_package_info(self) -> bool:
        return all(
            value is not None
            for value in (
                self.package_weight,
                self.package_length,
                self.package_width,
                self.package_height,
                self.shipping_fee,
            )
        )

    @property
    def is_delivered(self) -> bool:
        return self.tracking_status == "delivered"

    def __repr__(self) -> str:
        return f"<ReturnRequest(id='{self.id}', status='{self.status}')>"


class ReturnStatusHistory(Base):
    """
    Tracks every accepted event for a return request.
    """
    __tablename__ = "return_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_requests.id"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Position in the timeline"
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="User who made the change"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )

    # Relationships
    return_request: Mapped["ReturnRequest"] = relationship(
        "ReturnRequest",
        back_populates="status_history"
    )

    def __repr__(self) -> str:
        return f"<ReturnStatusHistory(from='{self.from_status}', to='{self.to_status}')>"


class ReturnDeadline(Base):
    """
    A persisted workflow deadline. Survives restarts; the sweep job fires
    overdue rows that the in-process scheduler never got to.
    """
    __tablename__ = "return_deadlines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_requests.id"),
        nullable=False,
        index=True
    )
    kind: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="SHOP_ACTION, SHIPMENT, PICKUP, TRANSIT, DISPOSITION"
    )
    expected_status: Mapped[str] = mapped_column(String(50), nullable=False)
    fire_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="APPLIED, STALE, RESCHEDULED"
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )

    @property
    def is_pending(self) -> bool:
        return self.fired_at is None

    def __repr__(self) -> str:
        return f"<ReturnDeadline(kind='{self.kind}', fire_at='{self.fire_at}')>"


class RefundOutbox(Base):
    """
    Refund requests waiting to be delivered to the settlement service.
    The unique return_request_id makes a second refund for the same
    return impossible at the database level.
    """
    __tablename__ = "refund_outbox"
    __table_args__ = (
        UniqueConstraint("return_request_id", name="uq_refund_outbox_return_request"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    return_request_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("return_requests.id"),
        nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        comment="Item price only, shipping fee is never refunded"
    )
    reason_code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="SHOP_CONFIRMED_RECEIPT, REFUND_WITHOUT_RETURN, AUTO_REFUND_NO_SHOP_ACTION, AUTO_REFUND_NO_DISPOSITION, AUTO_REFUND_COURIER_FAILURE"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        index=True,
        comment="PENDING, DELIVERED"
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alert_after_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=10,
        comment="Failures past this are logged as errors; delivery is retried until acknowledged"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    @property
    def is_delivered(self) -> bool:
        return self.status == "DELIVERED"

    def __repr__(self) -> str:
        return f"<RefundOutbox(return='{self.return_request_id}', amount={self.amount}, status='{self.status}')>"
