"""
Settlement Service

Refund requests leave the return workflow through a durable outbox:

1. The orchestrator writes a ``refund_outbox`` row in the same
   transaction as the refund-triggering transition.
2. ``SettlementOutboxService.deliver`` sends it to the settlement
   service right after the commit.
3. ``deliver_pending`` (scheduled sweep) re-sends rows whose delivery
   failed or was interrupted, with exponential backoff capped at
   ``SETTLEMENT_MAX_BACKOFF_SECONDS``. A row stays in the sweep until
   the settlement service acknowledges it.

Delivery is at-least-once; the ``Idempotency-Key`` header lets the
settlement service drop repeats, so each return is refunded once.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.clock import Clock
from app.core.exceptions import SettlementDeliveryError
from app.database import async_session_factory
from app.models.return_request import RefundOutbox

logger = logging.getLogger(__name__)


class RefundReasonCode:
    SHOP_CONFIRMED_RECEIPT = "SHOP_CONFIRMED_RECEIPT"
    REFUND_WITHOUT_RETURN = "REFUND_WITHOUT_RETURN"
    AUTO_REFUND_NO_SHOP_ACTION = "AUTO_REFUND_NO_SHOP_ACTION"
    AUTO_REFUND_NO_DISPOSITION = "AUTO_REFUND_NO_DISPOSITION"
    AUTO_REFUND_COURIER_FAILURE = "AUTO_REFUND_COURIER_FAILURE"


class OutboxStatus:
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"


class SettlementNotifier(ABC):
    """Refund sink. Implementations must be safe to call twice for one return."""

    @abstractmethod
    async def request_refund(self, return_request_id: uuid.UUID, amount: Decimal, reason_code: str) -> None:
        pass


class HttpSettlementNotifier(SettlementNotifier):
    """Posts refund requests to the settlement service."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.SETTLEMENT_API_URL
        self.api_key = api_key if api_key is not None else settings.SETTLEMENT_API_KEY
        self.timeout = timeout or settings.SETTLEMENT_REQUEST_TIMEOUT
        self._transport = transport

    async def request_refund(self, return_request_id: uuid.UUID, amount: Decimal, reason_code: str) -> None:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": str(return_request_id),
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "return_request_id": str(return_request_id),
            "amount": str(amount),
            "reason_code": reason_code,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.url, headers=headers, json=payload)
        except httpx.TransportError as e:
            raise SettlementDeliveryError(f"Settlement service unreachable: {e}") from e

        # 409: already accepted under this idempotency key
        if response.status_code == 409 or 200 <= response.status_code < 300:
            return

        raise SettlementDeliveryError(
            f"Settlement service returned {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )


class SettlementOutboxService:
    """Delivers refund outbox rows to the settlement notifier."""

    def __init__(
        self,
        notifier: SettlementNotifier,
        session_factory: async_sessionmaker[AsyncSession] = None,
        clock: Optional[Clock] = None,
        backoff_seconds: Optional[int] = None,
        max_backoff_seconds: Optional[int] = None,
    ):
        self.notifier = notifier
        self.session_factory = session_factory or async_session_factory
        self.clock = clock or Clock()
        self.backoff_seconds = (
            settings.SETTLEMENT_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.max_backoff_seconds = (
            settings.SETTLEMENT_MAX_BACKOFF_SECONDS if max_backoff_seconds is None else max_backoff_seconds
        )

    @staticmethod
    def build_entry(return_request, reason_code: str, now) -> RefundOutbox:
        """Outbox row for a return; always the item price, never the shipping fee."""
        return RefundOutbox(
            return_request_id=return_request.id,
            amount=return_request.item_price,
            reason_code=reason_code,
            status=OutboxStatus.PENDING,
            retry_count=0,
            alert_after_retries=settings.SETTLEMENT_ALERT_AFTER_RETRIES,
            created_at=now,
            updated_at=now,
        )

    async def deliver_for_return(self, return_request_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            outbox_id = await session.scalar(
                select(RefundOutbox.id).where(RefundOutbox.return_request_id == return_request_id)
            )
        if outbox_id is None:
            return False
        return await self.deliver(outbox_id)

    async def deliver(self, outbox_id: uuid.UUID) -> bool:
        """
        Send one outbox row.

        Returns:
            True if the settlement service acknowledged the refund
        """
        async with self.session_factory() as session:
            entry = await session.get(RefundOutbox, outbox_id)
        if entry is None or entry.status != OutboxStatus.PENDING:
            return entry is not None and entry.is_delivered

        # Network call happens outside any transaction
        try:
            await self.notifier.request_refund(entry.return_request_id, entry.amount, entry.reason_code)
        except SettlementDeliveryError as e:
            await self._record_failure(outbox_id, e)
            return False

        async with self.session_factory() as session:
            entry = await session.get(RefundOutbox, outbox_id)
            now = self.clock.now()
            entry.status = OutboxStatus.DELIVERED
            entry.delivered_at = now
            entry.updated_at = now
            entry.last_error = None
            await session.commit()

        logger.info(
            f"Refund requested for return {entry.return_request_id}: "
            f"{entry.amount} ({entry.reason_code})"
        )
        return True

    async def _record_failure(self, outbox_id: uuid.UUID, e: SettlementDeliveryError) -> None:
        async with self.session_factory() as session:
            entry = await session.get(RefundOutbox, outbox_id)
            if entry.status != OutboxStatus.PENDING:
                return
            now = self.clock.now()
            entry.retry_count += 1
            entry.last_error = e.message
            entry.updated_at = now
            delay = self.retry_delay(entry.retry_count)
            entry.next_attempt_at = now + timedelta(seconds=delay)
            await session.commit()

        if entry.retry_count >= entry.alert_after_retries:
            logger.error(
                f"Refund for return {entry.return_request_id} still unacknowledged after "
                f"{entry.retry_count} attempts, next try in {delay}s: {e.message}"
            )
        else:
            logger.warning(
                f"Refund delivery for return {entry.return_request_id} failed "
                f"(attempt {entry.retry_count}), next try in {delay}s: {e.message}"
            )

    def retry_delay(self, retry_count: int) -> int:
        """Exponential backoff after the n-th failure, capped."""
        return min(self.backoff_seconds * (2 ** (retry_count - 1)), self.max_backoff_seconds)

    async def deliver_pending(self, limit: int = 100) -> int:
        """
        Reconciliation sweep: send every pending row that is due.

        Returns:
            Number of rows delivered
        """
        now = self.clock.now()
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundOutbox.id)
                .where(
                    RefundOutbox.status == OutboxStatus.PENDING,
                    or_(RefundOutbox.next_attempt_at.is_(None), RefundOutbox.next_attempt_at <= now),
                )
                .order_by(RefundOutbox.created_at)
                .limit(limit)
            )
            outbox_ids = list(result.scalars().all())

        delivered = 0
        for outbox_id in outbox_ids:
            if await self.deliver(outbox_id):
                delivered += 1

        if outbox_ids:
            logger.info(f"Refund outbox sweep: {delivered}/{len(outbox_ids)} delivered")
        return delivered
