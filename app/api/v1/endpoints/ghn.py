"""
GHN API Endpoints

- Pick shifts for the seller's shipment form
- Webhook for shipping order status updates
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError

from app.api.deps import Orchestrator
from app.config import settings
from app.schemas.return_request import GhnWebhookPayload, PickShiftResponse
from app.services.ghn_service import verify_webhook_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ghn", tags=["GHN"])


@router.get("/pick-shifts", response_model=List[PickShiftResponse])
async def list_pick_shifts(orchestrator: Orchestrator):
    """Courier time windows for collecting a package."""
    shifts = await orchestrator.courier.get_pick_shifts()
    return [
        PickShiftResponse(id=s.id, title=s.title, from_time=s.from_time, to_time=s.to_time)
        for s in shifts
    ]


@router.post(
    "/webhook",
    summary="GHN webhook handler",
    description="Receives shipping order status updates from GHN.",
    include_in_schema=False,
)
async def ghn_webhook(
    request: Request,
    orchestrator: Orchestrator,
    x_ghn_signature: Optional[str] = Header(None),
):
    """
    Handle GHN status callbacks.

    Unknown order codes and late updates are acknowledged so GHN stops
    retrying them.
    """
    body = await request.body()

    # Verify webhook signature if secret is configured
    if settings.GHN_WEBHOOK_SECRET:
        if not x_ghn_signature:
            logger.warning("GHN webhook missing signature")
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        if not verify_webhook_signature(body, x_ghn_signature, settings.GHN_WEBHOOK_SECRET):
            logger.warning("GHN webhook signature mismatch")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = GhnWebhookPayload.model_validate_json(body)
    except ValidationError:
        logger.error("Invalid GHN webhook payload")
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    logger.info(f"GHN webhook: OrderCode={payload.order_code}, Status={payload.status}")

    return_request = await orchestrator.on_tracking_update(payload.order_code, payload.status, payload.time)
    if return_request is None:
        return {"success": True, "message": "Update ignored, webhook acknowledged"}

    return {
        "success": True,
        "return_request_id": str(return_request.id),
        "status": return_request.status,
        "tracking_status": return_request.tracking_status,
    }
