"""
Background Jobs Module

Handles scheduled tasks for:
- Return deadlines (shop action, shipment, pickup, disposition)
- Refund outbox delivery
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, schedule_deadline_job
from app.jobs.return_jobs import (
    deliver_pending_refunds,
    fire_deadline,
    rehydrate_deadlines,
    sweep_return_deadlines,
)

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "schedule_deadline_job",
    "fire_deadline",
    "sweep_return_deadlines",
    "deliver_pending_refunds",
    "rehydrate_deadlines",
]
