"""
Return Workflow Jobs

Background jobs driving the return workflow:
- Firing a single armed deadline
- Sweeping overdue deadlines
- Delivering pending refund requests
- Re-arming deadlines at startup
"""

import logging
import uuid
from datetime import datetime, timezone

from app.services.return_orchestrator import get_return_orchestrator

logger = logging.getLogger(__name__)


async def fire_deadline(return_request_id: uuid.UUID, expected_status: str, deadline_id: uuid.UUID):
    """Scheduled one-shot job for a return deadline."""
    try:
        outcome = await get_return_orchestrator().on_deadline(return_request_id, expected_status, deadline_id)
        logger.info(f"Deadline {deadline_id} for return {return_request_id}: {outcome}")
    except Exception as e:
        # The sweep picks the deadline up again
        logger.error(f"Deadline {deadline_id} for return {return_request_id} failed: {e}")


async def sweep_return_deadlines():
    """
    Fire every deadline whose time has passed but was never fired
    (process restarts, scheduler misfires, failed one-shot jobs).
    """
    start_time = datetime.now(timezone.utc)
    try:
        applied = await get_return_orchestrator().fire_due_deadlines()
        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        if applied:
            logger.info(f"Deadline sweep applied {applied} timeout(s) in {elapsed:.2f}s")
    except Exception as e:
        logger.error(f"Deadline sweep failed: {e}")


async def deliver_pending_refunds():
    """Reconciliation sweep for the refund outbox."""
    try:
        await get_return_orchestrator().settlement.deliver_pending()
    except Exception as e:
        logger.error(f"Refund outbox sweep failed: {e}")


async def rehydrate_deadlines() -> int:
    """Re-arm future deadlines in the in-memory job store."""
    return await get_return_orchestrator().deadlines.rehydrate()
