"""
APScheduler Configuration

Background job scheduler for the return workflow:
- One ``date`` job per armed return deadline
- Interval sweep firing overdue deadlines (covers restarts and misfires)
- Interval sweep delivering pending refund outbox rows

Deadlines are persisted, so losing the in-memory job store only delays
them until the next sweep.
"""

import logging
from datetime import datetime, timezone

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.config import settings
from app.core.clock import as_utc

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


def deadline_job_id(deadline_id) -> str:
    return f"return_deadline:{deadline_id}"


def schedule_deadline_job(deadline) -> None:
    """Arm a persisted ReturnDeadline as a one-shot job."""
    from app.jobs.return_jobs import fire_deadline

    scheduler.add_job(
        fire_deadline,
        'date',
        run_date=as_utc(deadline.fire_at),
        args=[deadline.return_request_id, deadline.expected_status, deadline.id],
        id=deadline_job_id(deadline.id),
        name=f"Return deadline {deadline.kind} ({deadline.return_request_id})",
        replace_existing=True,
        misfire_grace_time=None,  # Late is fine; the handler rechecks state
    )


def start_scheduler():
    """Start the background job scheduler with the return workflow jobs."""
    if not scheduler.running:
        from app.jobs.return_jobs import deliver_pending_refunds, sweep_return_deadlines

        now = datetime.now(timezone.utc)

        # Fire overdue deadlines (runs once at startup, then periodically)
        scheduler.add_job(
            sweep_return_deadlines,
            'interval',
            minutes=settings.DEADLINE_SWEEP_INTERVAL_MINUTES,
            id='sweep_return_deadlines',
            name='Sweep Overdue Return Deadlines',
            next_run_time=now,
            replace_existing=True,
        )

        # Retry refund requests the settlement service has not acknowledged
        scheduler.add_job(
            deliver_pending_refunds,
            'interval',
            minutes=settings.SETTLEMENT_SWEEP_INTERVAL_MINUTES,
            id='deliver_pending_refunds',
            name='Deliver Pending Refund Requests',
            next_run_time=now,
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
