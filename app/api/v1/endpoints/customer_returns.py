"""
Customer Return API Endpoints

Storefront side: submit a return request for a purchased item and
follow its progress.
"""

import logging
import uuid

from fastapi import APIRouter, Query, status

from app.api.deps import CustomerContext, Orchestrator
from app.schemas.base import PageResponse
from app.schemas.return_request import (
    ReturnRequestCreate,
    ReturnRequestDetailResponse,
    ReturnRequestResponse,
    ReturnStatusHistoryResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/customers/me/returns", tags=["Customer Returns"])


@router.post("", response_model=ReturnRequestResponse, status_code=status.HTTP_201_CREATED)
async def submit_return(data: ReturnRequestCreate, ctx: CustomerContext, orchestrator: Orchestrator):
    """
    Customer initiates a return request.
    Only one open request is allowed per purchased item.
    """
    return_request = await orchestrator.submit_return_request(ctx, data)
    return ReturnRequestResponse.model_validate(return_request)


@router.get("", response_model=PageResponse[ReturnRequestResponse])
async def list_my_returns(
    ctx: CustomerContext,
    orchestrator: Orchestrator,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
):
    items, total = await orchestrator.list_customer_returns(ctx, ctx.customer_id, page, size)
    return PageResponse.build(
        [ReturnRequestResponse.model_validate(item) for item in items], total, page, size
    )


@router.get("/{return_id}", response_model=ReturnRequestDetailResponse)
async def track_my_return(return_id: uuid.UUID, ctx: CustomerContext, orchestrator: Orchestrator):
    return_request = await orchestrator.get_return_request(ctx, return_id)
    timeline = await orchestrator.get_timeline(ctx, return_id)
    response = ReturnRequestDetailResponse.model_validate(return_request)
    response.timeline = [ReturnStatusHistoryResponse.model_validate(h) for h in timeline]
    return response
