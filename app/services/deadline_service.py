"""
Deadline Service

Persisted workflow deadlines. Each waiting state of a return request
holds exactly one armed deadline (``active_deadline_id`` on the request).
A deadline row is written in the same transaction as the transition that
arms it; after the commit it is handed to the in-process scheduler.

Firing never cancels anything: a deadline whose id is no longer the
request's active one, or whose expected status no longer matches, is a
no-op. The sweep (``fire_due``) picks up rows the scheduler never fired,
e.g. after a restart.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.clock import Clock, as_utc
from app.database import async_session_factory
from app.models.return_request import ReturnDeadline, ReturnRequest
from app.services.return_state_machine import DEADLINE_EXPECTED_STATUS, DeadlineKind

logger = logging.getLogger(__name__)


class DeadlineOutcome:
    APPLIED = "APPLIED"            # timeout transition committed
    STALE = "STALE"                # request moved on; no-op
    RESCHEDULED = "RESCHEDULED"    # side effect failed; a new deadline was armed


# (return_request_id, expected_status, deadline_id) -> outcome
DeadlineHandler = Callable[[uuid.UUID, str, uuid.UUID], Awaitable[str]]

# Registers a persisted deadline with the in-process scheduler
ArmCallback = Callable[[ReturnDeadline], None]


class DeadlineService:
    """Creates, arms and sweeps return deadlines."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = None,
        clock: Optional[Clock] = None,
        arm_callback: Optional[ArmCallback] = None,
        sla_hours: Optional[int] = None,
        transit_sla_hours: Optional[int] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.clock = clock or Clock()
        self.arm_callback = arm_callback
        self.sla_hours = settings.RETURN_SLA_HOURS if sla_hours is None else sla_hours
        self.transit_sla_hours = (
            settings.RETURN_TRANSIT_SLA_HOURS if transit_sla_hours is None else transit_sla_hours
        )

    def sla_from(self, start: datetime, kind: Optional[str] = None) -> datetime:
        if kind == DeadlineKind.TRANSIT:
            return start + timedelta(hours=self.transit_sla_hours)
        return start + timedelta(hours=self.sla_hours)

    def build(self, return_request: ReturnRequest, kind: str, fire_at: datetime) -> ReturnDeadline:
        """
        New deadline row for ``return_request``, made the request's active
        one. Must be committed together with the request.
        """
        deadline = ReturnDeadline(
            id=uuid.uuid4(),
            return_request_id=return_request.id,
            kind=kind,
            expected_status=DEADLINE_EXPECTED_STATUS[kind],
            fire_at=fire_at,
            attempts=0,
            created_at=self.clock.now(),
        )
        return_request.active_deadline_id = deadline.id
        return_request.deadline_kind = kind
        return_request.deadline_at = fire_at
        return deadline

    @staticmethod
    def disarm(return_request: ReturnRequest) -> None:
        """Leave the armed deadline to fire as a no-op."""
        return_request.active_deadline_id = None
        return_request.deadline_kind = None
        return_request.deadline_at = None

    def arm(self, deadline: Optional[ReturnDeadline]) -> None:
        """Hand a committed deadline to the scheduler, if one is attached."""
        if deadline is None:
            return
        logger.debug(f"Deadline {deadline.kind} for return {deadline.return_request_id} at {deadline.fire_at}")
        if self.arm_callback is not None:
            self.arm_callback(deadline)

    async def schedule_at(
        self,
        return_request_id: uuid.UUID,
        expected_status: str,
        kind: str,
        fire_at: datetime,
    ) -> uuid.UUID:
        """
        Persist and arm a standalone deadline.

        Returns:
            The deadline id passed back to the handler on firing
        """
        deadline = ReturnDeadline(
            id=uuid.uuid4(),
            return_request_id=return_request_id,
            kind=kind,
            expected_status=expected_status,
            fire_at=fire_at,
            attempts=0,
            created_at=self.clock.now(),
        )
        async with self.session_factory() as session:
            session.add(deadline)
            await session.commit()
        self.arm(deadline)
        return deadline.id

    async def get(self, deadline_id: uuid.UUID) -> Optional[ReturnDeadline]:
        async with self.session_factory() as session:
            return await session.get(ReturnDeadline, deadline_id)

    async def mark_fired(self, deadline_id: uuid.UUID, outcome: str) -> None:
        async with self.session_factory() as session:
            deadline = await session.get(ReturnDeadline, deadline_id)
            if deadline is None:
                return
            deadline.attempts += 1
            if deadline.fired_at is None:
                deadline.fired_at = self.clock.now()
                deadline.outcome = outcome
            await session.commit()

    async def list_due(self, limit: int = 100) -> List[ReturnDeadline]:
        now = self.clock.now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReturnDeadline)
                .where(ReturnDeadline.fired_at.is_(None), ReturnDeadline.fire_at <= now)
                .order_by(ReturnDeadline.fire_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_pending(self) -> List[ReturnDeadline]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReturnDeadline)
                .where(ReturnDeadline.fired_at.is_(None))
                .order_by(ReturnDeadline.fire_at)
            )
            return list(result.scalars().all())

    async def fire_due(self, handler: DeadlineHandler, limit: int = 100) -> int:
        """
        Fire every unfired deadline whose time has come.

        Returns:
            Number of deadlines that applied a transition
        """
        applied = 0
        for deadline in await self.list_due(limit):
            outcome = await handler(deadline.return_request_id, deadline.expected_status, deadline.id)
            if outcome == DeadlineOutcome.APPLIED:
                applied += 1
        return applied

    async def rehydrate(self) -> int:
        """Re-arm future deadlines after a restart. Overdue ones are left to the sweep."""
        now = self.clock.now()
        armed = 0
        for deadline in await self.list_pending():
            if as_utc(deadline.fire_at) > now:
                self.arm(deadline)
                armed += 1
        logger.info(f"Re-armed {armed} pending return deadline(s)")
        return armed
