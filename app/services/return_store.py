"""
Return Request Store

Persistent record of return requests and the single source of truth for
their status. Every state change goes through ``compare_and_swap_status``:
the row is reloaded, its status checked, the mutation applied and the
write guarded by the ``version`` column.
"""

import logging
import uuid
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import DuplicateActiveReturn, ReturnRequestNotFound, StaleStateError
from app.database import Base, async_session_factory
from app.models.return_request import ReturnRequest, ReturnStatusHistory


logger = logging.getLogger(__name__)

# Receives the freshly loaded row, mutates it in place and may return
# extra rows (history, deadlines, outbox) to commit in the same transaction.
Mutation = Callable[[ReturnRequest], Optional[Iterable[Base]]]


class ReturnRequestStore:
    """Data access for return requests."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = None):
        self.session_factory = session_factory or async_session_factory

    async def create(self, return_request: ReturnRequest, extra: Iterable[Base] = ()) -> ReturnRequest:
        """
        Insert a new return request together with its first history row
        and deadline.

        Raises:
            DuplicateActiveReturn: If the line item already has an open return
        """
        key = return_request.active_item_key
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(ReturnRequest.id).where(ReturnRequest.active_item_key == key)
            )
            if existing is not None:
                raise DuplicateActiveReturn(key)

            session.add(return_request)
            try:
                await session.flush()
                session.add_all(list(extra))
                await session.commit()
            except IntegrityError as exc:
                # Lost the race against a concurrent submission
                await session.rollback()
                raise DuplicateActiveReturn(key) from exc

        return return_request

    async def get(self, return_request_id: uuid.UUID) -> ReturnRequest:
        async with self.session_factory() as session:
            return_request = await session.get(ReturnRequest, return_request_id)
        if return_request is None:
            raise ReturnRequestNotFound(return_request_id)
        return return_request

    async def get_by_ghn_order_code(self, order_code: str) -> Optional[ReturnRequest]:
        """Most recent return request carrying this courier order code."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReturnRequest)
                .where(ReturnRequest.ghn_order_code == order_code)
                .order_by(ReturnRequest.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def compare_and_swap_status(
        self,
        return_request_id: uuid.UUID,
        expected_status: str,
        mutation: Mutation,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """
        Apply ``mutation`` only if the stored status (and version, when
        given) still matches, and commit it atomically.

        Raises:
            ReturnRequestNotFound: If the row does not exist
            StaleStateError: If the status/version moved or a concurrent
                writer committed first
        """
        async with self.session_factory() as session:
            return_request = await session.get(ReturnRequest, return_request_id)
            if return_request is None:
                raise ReturnRequestNotFound(return_request_id)

            if return_request.status != expected_status:
                raise StaleStateError(return_request_id, expected_status, return_request.status)
            if expected_version is not None and return_request.version != expected_version:
                raise StaleStateError(return_request_id, expected_status)

            new_rows = mutation(return_request)
            if new_rows:
                session.add_all(list(new_rows))

            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                logger.warning(f"CAS lost on return {return_request_id} (expected {expected_status})")
                raise StaleStateError(return_request_id, expected_status) from exc
            except IntegrityError as exc:
                # Unique outbox row already written by a concurrent refund
                await session.rollback()
                logger.warning(f"CAS integrity conflict on return {return_request_id}: {exc.orig}")
                raise StaleStateError(return_request_id, expected_status) from exc

        return return_request

    async def list_by_store(
        self,
        store_id: uuid.UUID,
        status: Optional[str] = None,
        reason_type: Optional[str] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[ReturnRequest], int]:
        """List a store's return requests, newest first."""
        query = select(ReturnRequest).where(ReturnRequest.store_id == store_id)
        if status:
            query = query.where(ReturnRequest.status == status)
        if reason_type:
            query = query.where(ReturnRequest.reason_type == reason_type)
        return await self._page(query, page, size)

    async def list_by_customer(
        self,
        customer_id: uuid.UUID,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[ReturnRequest], int]:
        query = select(ReturnRequest).where(ReturnRequest.customer_id == customer_id)
        return await self._page(query, page, size)

    async def list_history(self, return_request_id: uuid.UUID) -> List[ReturnStatusHistory]:
        """Audit timeline, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReturnStatusHistory)
                .where(ReturnStatusHistory.return_request_id == return_request_id)
                .order_by(ReturnStatusHistory.sequence)
            )
            return list(result.scalars().all())

    async def _page(self, query, page: int, size: int) -> Tuple[List[ReturnRequest], int]:
        async with self.session_factory() as session:
            count_query = select(func.count()).select_from(query.subquery())
            total = await session.scalar(count_query) or 0

            query = (
                query.order_by(ReturnRequest.created_at.desc(), ReturnRequest.id)
                .offset(page * size)
                .limit(size)
            )
            result = await session.execute(query)
            return list(result.scalars().all()), total
