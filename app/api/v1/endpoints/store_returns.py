"""
Store Return API Endpoints

Seller console actions on return requests: listing, approve/reject,
refund without return, package info and courier shipment, and the final
disposition after delivery.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Body, Query

from app.api.deps import Orchestrator, StoreContext
from app.schemas.base import PageResponse
from app.schemas.return_request import (
    CreateShipmentRequest,
    PackageInfo,
    ReasonType,
    RejectRequest,
    ReturnRequestDetailResponse,
    ReturnRequestResponse,
    ReturnStatusHistoryResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/store/returns", tags=["Store Returns"])


@router.get("", response_model=PageResponse[ReturnRequestResponse])
async def list_store_returns(
    ctx: StoreContext,
    orchestrator: Orchestrator,
    status: Optional[str] = Query(None, description="Filter by status"),
    reason_type: Optional[ReasonType] = Query(None),
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
):
    """List the store's return requests, newest first (0-based paging)."""
    items, total = await orchestrator.list_return_requests(
        ctx,
        ctx.store_id,
        status=status.upper() if status else None,
        reason_type=reason_type.value if reason_type else None,
        page=page,
        size=size,
    )
    return PageResponse.build(
        [ReturnRequestResponse.model_validate(item) for item in items], total, page, size
    )


@router.get("/{return_id}", response_model=ReturnRequestDetailResponse)
async def get_store_return(return_id: uuid.UUID, ctx: StoreContext, orchestrator: Orchestrator):
    """Return request with its timeline."""
    return_request = await orchestrator.get_return_request(ctx, return_id)
    timeline = await orchestrator.get_timeline(ctx, return_id)
    response = ReturnRequestDetailResponse.model_validate(return_request)
    response.timeline = [ReturnStatusHistoryResponse.model_validate(h) for h in timeline]
    return response


@router.post("/{return_id}/approve", response_model=ReturnRequestResponse)
async def approve_return(return_id: uuid.UUID, ctx: StoreContext, orchestrator: Orchestrator):
    return_request = await orchestrator.shop_approve(ctx, return_id)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/reject", response_model=ReturnRequestResponse)
async def reject_return(
    return_id: uuid.UUID,
    data: RejectRequest,
    ctx: StoreContext,
    orchestrator: Orchestrator,
):
    return_request = await orchestrator.shop_reject(ctx, return_id, data.reason)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/refund-without-return", response_model=ReturnRequestResponse)
async def refund_without_return(return_id: uuid.UUID, ctx: StoreContext, orchestrator: Orchestrator):
    """Refund the item price and let the customer keep the item."""
    return_request = await orchestrator.shop_refund_without_return(ctx, return_id)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/package-info", response_model=ReturnRequestResponse)
async def submit_package_info(
    return_id: uuid.UUID,
    data: PackageInfo,
    ctx: StoreContext,
    orchestrator: Orchestrator,
):
    """
    Save package weight/dimensions/fee and create the GHN order.

    A courier failure answers 502; the package info is kept and the shop
    can retry with create-ghn-order.
    """
    return_request = await orchestrator.shop_submit_package_info(ctx, return_id, data)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/create-ghn-order", response_model=ReturnRequestResponse)
async def create_ghn_order(
    return_id: uuid.UUID,
    ctx: StoreContext,
    orchestrator: Orchestrator,
    data: Optional[CreateShipmentRequest] = Body(None),
):
    """Create (or re-create after a missed pickup) the courier shipment."""
    pick_shift_id = data.pick_shift_id if data else None
    return_request = await orchestrator.create_shipment(ctx, return_id, pick_shift_id)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/confirm-receipt", response_model=ReturnRequestResponse)
async def confirm_receipt(return_id: uuid.UUID, ctx: StoreContext, orchestrator: Orchestrator):
    return_request = await orchestrator.shop_confirm_receipt(ctx, return_id)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/dispute", response_model=ReturnRequestResponse)
async def dispute_return(
    return_id: uuid.UUID,
    data: RejectRequest,
    ctx: StoreContext,
    orchestrator: Orchestrator,
):
    return_request = await orchestrator.shop_dispute(ctx, return_id, data.reason)
    return ReturnRequestResponse.model_validate(return_request)


@router.post("/{return_id}/sync-tracking", response_model=ReturnRequestResponse)
async def sync_tracking(return_id: uuid.UUID, ctx: StoreContext, orchestrator: Orchestrator):
    """Pull the latest GHN status for the active shipment."""
    return_request = await orchestrator.poll_tracking(ctx, return_id)
    return ReturnRequestResponse.model_validate(return_request)
