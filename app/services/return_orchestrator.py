"""
Return Orchestrator

Drives a return request through its lifecycle:

    PENDING --approve--> APPROVED --package/shipment--> SHIPPING --delivered--> confirm/dispute
       |                    |                               |
       +- reject/refund     +- 48h not shipped: CANCELLED   +- 48h no pickup: back to APPROVED
       +- 48h: AUTO_REFUNDED                                +- courier failure: back to APPROVED
                                                            +- lost or 168h in transit: AUTO_REFUNDED
                                                            +- 48h after delivery: AUTO_REFUNDED

Every transition is read -> decide -> side effect -> compare-and-swap.
Courier calls happen before the write and outside any transaction; a
failed call leaves the request untouched. Refunds go through the outbox
row written in the same CAS as the refund-triggering transition.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from app.config import settings
from app.core.clock import Clock, as_utc
from app.core.context import RequestContext
from app.core.exceptions import (
    CourierGatewayError,
    InvalidPackageInfo,
    InvalidTransition,
    RetryLater,
    ReturnRequestNotFound,
    StaleStateError,
)
from app.models.return_request import ReturnDeadline, ReturnRequest, ReturnStatusHistory
from app.schemas.return_request import PackageInfo, ReturnRequestCreate
from app.services.deadline_service import DeadlineOutcome, DeadlineService
from app.services.ghn_service import (
    CourierGateway,
    FAILURE_STATUSES,
    GhnCourierGateway,
    GhnOrderStatus,
    LOST_STATUSES,
    PICKED_UP_STATUSES,
    PRE_PICKUP_STATUSES,
)
from app.services.notification_service import NotificationService, NotificationType
from app.services.return_state_machine import (
    DeadlineKind,
    ReturnEvent,
    ReturnStatus,
    get_event_action,
    is_terminal,
    resolve_transition,
    triggers_refund,
)
from app.services.return_store import ReturnRequestStore
from app.services.settlement_service import (
    HttpSettlementNotifier,
    RefundReasonCode,
    SettlementOutboxService,
)

logger = logging.getLogger(__name__)


# Package tolerance against the catalogue reference measurements
LIGHT_PRODUCT_MAX_KG = Decimal("5")
LIGHT_PRODUCT_WEIGHT_TOLERANCE_KG = Decimal("0.3")
HEAVY_PRODUCT_WEIGHT_TOLERANCE_RATIO = Decimal("0.15")
DIMENSION_TOLERANCE_CM = Decimal("2")


def validate_package_info(package: PackageInfo) -> None:
    """
    Check package metrics entered by the shop.

    Raises:
        InvalidPackageInfo: If a value is missing, not positive, or out of tolerance
    """
    measurements = {
        "weight": package.weight,
        "length": package.length,
        "width": package.width,
        "height": package.height,
    }
    for name, value in measurements.items():
        if value is None:
            raise InvalidPackageInfo(f"Package {name} is required")
        if value <= 0:
            raise InvalidPackageInfo(f"Package {name} must be greater than 0")

    if package.shipping_fee is None:
        raise InvalidPackageInfo("Shipping fee is required")
    if package.shipping_fee < 0:
        raise InvalidPackageInfo("Shipping fee must not be negative")

    if package.product_weight is not None and package.product_weight > 0:
        if package.product_weight <= LIGHT_PRODUCT_MAX_KG:
            max_weight = package.product_weight + LIGHT_PRODUCT_WEIGHT_TOLERANCE_KG
        else:
            max_weight = package.product_weight * (1 + HEAVY_PRODUCT_WEIGHT_TOLERANCE_RATIO)
        if package.weight > max_weight:
            raise InvalidPackageInfo(
                f"Package weight {package.weight} kg exceeds the allowed {max_weight} kg "
                f"for a {package.product_weight} kg product"
            )

    references = {
        "length": package.product_length,
        "width": package.product_width,
        "height": package.product_height,
    }
    for name, reference in references.items():
        if reference is None or reference <= 0:
            continue
        max_value = reference + DIMENSION_TOLERANCE_CM
        if measurements[name] > max_value:
            raise InvalidPackageInfo(
                f"Package {name} {measurements[name]} cm exceeds the allowed {max_value} cm"
            )


# Mutates the fresh row at ``now`` and may return rows to commit with it
Mutate = Callable[[ReturnRequest, datetime], Optional[Iterable]]
# Raises InvalidTransition if the fresh row does not satisfy the event's guard
Guard = Callable[[ReturnRequest], None]


class ReturnOrchestrator:
    """
    Service for the return request workflow.

    Usage:
        orchestrator = ReturnOrchestrator()
        ctx = RequestContext.for_shop(store_id)
        await orchestrator.shop_approve(ctx, return_request_id)
    """

    def __init__(
        self,
        store: Optional[ReturnRequestStore] = None,
        courier: Optional[CourierGateway] = None,
        settlement: Optional[SettlementOutboxService] = None,
        notifications: Optional[NotificationService] = None,
        deadlines: Optional[DeadlineService] = None,
        clock: Optional[Clock] = None,
        pending_timeout_action: Optional[str] = None,
        max_cas_retries: Optional[int] = None,
        deadline_retry_delay_minutes: Optional[int] = None,
    ):
        self.clock = clock or Clock()
        self.store = store or ReturnRequestStore()
        self.courier = courier or GhnCourierGateway()
        self.settlement = settlement or SettlementOutboxService(
            HttpSettlementNotifier(), self.store.session_factory, self.clock
        )
        self.notifications = notifications or NotificationService()
        self.deadlines = deadlines or DeadlineService(self.store.session_factory, self.clock)
        self.pending_timeout_action = pending_timeout_action or settings.RETURN_PENDING_TIMEOUT_ACTION
        self.max_cas_retries = (
            settings.STALE_STATE_MAX_RETRIES if max_cas_retries is None else max_cas_retries
        )
        self.deadline_retry_delay_minutes = (
            settings.DEADLINE_RETRY_DELAY_MINUTES
            if deadline_retry_delay_minutes is None
            else deadline_retry_delay_minutes
        )

    # ==================== Core transition helper ====================

    async def _load(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        return_request = await self.store.get(return_request_id)
        if not ctx.can_view(return_request):
            raise ReturnRequestNotFound(return_request_id)
        return return_request

    async def _apply(
        self,
        ctx: RequestContext,
        return_request_id: uuid.UUID,
        event: str,
        mutate: Optional[Mutate] = None,
        guard: Optional[Guard] = None,
        notes: Optional[str] = None,
    ) -> ReturnRequest:
        """
        Resolve ``event`` against the current status and commit it with CAS.
        Conflicts are retried on a fresh read.

        Raises:
            ReturnRequestNotFound, InvalidTransition, RetryLater
        """
        for attempt in range(self.max_cas_retries + 1):
            current = await self._load(ctx, return_request_id)
            from_status = current.status
            to_status = resolve_transition(from_status, event)
            if guard:
                guard(current)

            armed: List[ReturnDeadline] = []

            def mutation(row: ReturnRequest):
                if guard:
                    guard(row)
                now = self.clock.now()
                sequence = row.version
                row.status = to_status
                row.updated_at = now

                new_rows = list(mutate(row, now) or []) if mutate else []
                armed.clear()
                armed.extend(r for r in new_rows if isinstance(r, ReturnDeadline))

                if is_terminal(to_status):
                    row.active_item_key = None
                    row.closed_at = now
                    row.ghn_order_code = None
                    DeadlineService.disarm(row)

                new_rows.append(
                    ReturnStatusHistory(
                        id=uuid.uuid4(),
                        return_request_id=row.id,
                        sequence=sequence,
                        from_status=from_status,
                        to_status=to_status,
                        event=event,
                        actor_type=ctx.actor_type.value,
                        actor_id=ctx.actor_id,
                        notes=notes,
                        created_at=now,
                    )
                )
                return new_rows

            try:
                updated = await self.store.compare_and_swap_status(return_request_id, from_status, mutation)
            except StaleStateError as e:
                logger.warning(f"{event} on return {return_request_id}: {e.message}, retry {attempt + 1}")
                continue

            for deadline in armed:
                self.deadlines.arm(deadline)

            if from_status != to_status:
                logger.info(
                    f"Return {return_request_id}: {from_status} -> {to_status} "
                    f"({event} by {ctx.actor_type.value})"
                )
            else:
                logger.info(f"Return {return_request_id}: {event} in {to_status} by {ctx.actor_type.value}")

            if from_status != to_status and triggers_refund(to_status):
                await self._deliver_refund(return_request_id)
            return updated

        raise RetryLater(
            f"Return request {return_request_id} is being modified concurrently, try again later"
        )

    def _arm(self, row: ReturnRequest, kind: str, start: datetime) -> ReturnDeadline:
        return self.deadlines.build(row, kind, self.deadlines.sla_from(start, kind))

    def _request_refund(self, row: ReturnRequest, reason_code: str, now: datetime) -> list:
        if row.refund_requested:
            return []
        row.refund_requested = True
        return [SettlementOutboxService.build_entry(row, reason_code, now)]

    async def _deliver_refund(self, return_request_id: uuid.UUID) -> None:
        # The outbox row is committed; the sweep retries whatever fails here
        try:
            await self.settlement.deliver_for_return(return_request_id)
        except Exception:
            logger.exception(f"Immediate refund delivery for return {return_request_id} failed")

    async def _notify(self, return_request: ReturnRequest, notification_type: NotificationType, **data) -> None:
        template_data = {
            "product_name": return_request.product_name or "your item",
            "sla_hours": self.deadlines.sla_hours,
            **data,
        }
        try:
            await self.notifications.notify_customer(
                return_request.customer_id, return_request.id, notification_type, template_data
            )
        except Exception:
            logger.exception(f"Customer notification for return {return_request.id} failed")

    @staticmethod
    def _require_reason(status: str, event: str, reason: Optional[str]) -> str:
        if reason is None or not reason.strip():
            raise InvalidTransition(status, get_event_action(event), "a reason is required")
        return reason.strip()

    @staticmethod
    def _require_delivered(event: str) -> Guard:
        def guard(row: ReturnRequest) -> None:
            if not row.is_delivered:
                raise InvalidTransition(
                    row.status, get_event_action(event), "the courier has not delivered the package yet"
                )
        return guard

    # ==================== Customer ====================

    async def submit_return_request(self, ctx: RequestContext, data: ReturnRequestCreate) -> ReturnRequest:
        """
        Open a return request in PENDING and arm the shop-action deadline.

        Raises:
            DuplicateActiveReturn: If the line item already has an open return
        """
        if ctx.customer_id is None:
            raise ValueError("A customer context is required to submit a return request")

        now = self.clock.now()
        return_request = ReturnRequest(
            id=uuid.uuid4(),
            store_order_id=data.store_order_id,
            order_item_id=data.order_item_id,
            product_id=data.product_id,
            product_name=data.product_name,
            customer_id=ctx.customer_id,
            store_id=data.store_id,
            reason_type=data.reason_type.value,
            reason=data.reason,
            item_price=data.item_price,
            status=ReturnStatus.PENDING,
            auto_approved=False,
            auto_refunded=False,
            auto_cancelled=False,
            refund_without_return=False,
            shipment_ever_created=False,
            shipment_attempts=0,
            needs_shipment_recreate=False,
            refund_requested=False,
            customer_image_urls=data.customer_image_urls,
            customer_video_url=data.customer_video_url,
            created_at=now,
            updated_at=now,
        )
        return_request.active_item_key = return_request.order_item_key

        deadline = self._arm(return_request, DeadlineKind.SHOP_ACTION, now)
        history = ReturnStatusHistory(
            id=uuid.uuid4(),
            return_request_id=return_request.id,
            sequence=0,
            from_status=None,
            to_status=ReturnStatus.PENDING,
            event="SUBMIT",
            actor_type=ctx.actor_type.value,
            actor_id=ctx.actor_id,
            notes=data.reason,
            created_at=now,
        )

        return_request = await self.store.create(return_request, [deadline, history])
        self.deadlines.arm(deadline)

        logger.info(
            f"Return {return_request.id} submitted for item {return_request.order_item_key} "
            f"({return_request.reason_type}, {return_request.item_price})"
        )
        return return_request

    # ==================== Shop decisions ====================

    async def shop_approve(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        def mutate(row: ReturnRequest, now: datetime):
            return [self._arm(row, DeadlineKind.SHIPMENT, now)]

        return await self._apply(ctx, return_request_id, ReturnEvent.SHOP_APPROVE, mutate)

    async def shop_reject(self, ctx: RequestContext, return_request_id: uuid.UUID, reason: str) -> ReturnRequest:
        current = await self._load(ctx, return_request_id)
        resolve_transition(current.status, ReturnEvent.SHOP_REJECT)
        reason = self._require_reason(current.status, ReturnEvent.SHOP_REJECT, reason)

        def mutate(row: ReturnRequest, now: datetime):
            row.shop_reject_reason = reason

        updated = await self._apply(ctx, return_request_id, ReturnEvent.SHOP_REJECT, mutate, notes=reason)
        await self._notify(updated, NotificationType.RETURN_REJECTED, reason=reason)
        return updated

    async def shop_refund_without_return(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        """Refund the item price without asking for the package back."""
        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code is not None or row.shipment_ever_created:
                raise InvalidTransition(
                    row.status,
                    get_event_action(ReturnEvent.SHOP_REFUND_WITHOUT_RETURN),
                    "a courier shipment was already created",
                )

        def mutate(row: ReturnRequest, now: datetime):
            row.refund_without_return = True
            return self._request_refund(row, RefundReasonCode.REFUND_WITHOUT_RETURN, now)

        return await self._apply(ctx, return_request_id, ReturnEvent.SHOP_REFUND_WITHOUT_RETURN, mutate, guard)

    # ==================== Package and shipment ====================

    async def shop_submit_package_info(
        self,
        ctx: RequestContext,
        return_request_id: uuid.UUID,
        package: PackageInfo,
        pick_shift_id: Optional[int] = None,
    ) -> ReturnRequest:
        """
        Store package metrics, then try to create the courier shipment.

        The package info stays saved when the courier call fails; the
        error is re-raised so the caller can retry ``create_shipment``.
        """
        validate_package_info(package)
        pick_shift_id = pick_shift_id if pick_shift_id is not None else package.pick_shift_id

        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code is not None:
                raise InvalidTransition(
                    row.status,
                    get_event_action(ReturnEvent.SUBMIT_PACKAGE_INFO),
                    "a courier shipment is already active",
                )

        def mutate(row: ReturnRequest, now: datetime):
            row.package_weight = package.weight
            row.package_length = package.length
            row.package_width = package.width
            row.package_height = package.height
            row.shipping_fee = package.shipping_fee
            if package.customer_address_id is not None:
                row.customer_address_id = package.customer_address_id
            if package.store_address_id is not None:
                row.store_address_id = package.store_address_id
            if pick_shift_id is not None:
                row.pick_shift_id = pick_shift_id

        await self._apply(ctx, return_request_id, ReturnEvent.SUBMIT_PACKAGE_INFO, mutate, guard)
        return await self.create_shipment(ctx, return_request_id, pick_shift_id)

    async def create_shipment(
        self,
        ctx: RequestContext,
        return_request_id: uuid.UUID,
        pick_shift_id: Optional[int] = None,
    ) -> ReturnRequest:
        """
        Create the courier shipment for an APPROVED request with package
        info and move it to SHIPPING.

        Raises:
            CourierGatewayError: If the courier call fails (request unchanged)
            InvalidTransition: If the request is not APPROVED
            InvalidPackageInfo: If no package info was submitted
        """
        current = await self._load(ctx, return_request_id)
        resolve_transition(current.status, ReturnEvent.SHIPMENT_CREATED)
        if not current.has_package_info:
            raise InvalidPackageInfo("Package info must be submitted before creating a shipment")
        if current.ghn_order_code is not None:
            raise InvalidTransition(
                current.status,
                get_event_action(ReturnEvent.SHIPMENT_CREATED),
                "a courier shipment is already active",
            )

        pick_shift_id = pick_shift_id if pick_shift_id is not None else current.pick_shift_id
        try:
            result = await self.courier.create_shipment(current, pick_shift_id)
        except CourierGatewayError as e:
            logger.warning(f"Shipment creation for return {return_request_id} failed: {e.message}")
            raise

        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code is not None:
                raise InvalidTransition(
                    row.status,
                    get_event_action(ReturnEvent.SHIPMENT_CREATED),
                    "another courier shipment was stored first",
                )

        def mutate(row: ReturnRequest, now: datetime):
            row.ghn_order_code = result.order_code
            row.tracking_status = GhnOrderStatus.READY_TO_PICK.value
            row.tracking_updated_at = now
            row.delivered_at = None
            row.picked_up_at = None
            row.shipment_ever_created = True
            row.shipment_attempts = (row.shipment_attempts or 0) + 1
            row.needs_shipment_recreate = False
            row.pick_shift_id = pick_shift_id
            return [self._arm(row, DeadlineKind.PICKUP, now)]

        try:
            return await self._apply(
                ctx,
                return_request_id,
                ReturnEvent.SHIPMENT_CREATED,
                mutate,
                guard,
                notes=f"GHN order {result.order_code}",
            )
        except (InvalidTransition, RetryLater, ReturnRequestNotFound):
            # The request moved on while the courier call was in flight
            await self._cancel_orphaned_shipment(return_request_id, result.order_code)
            raise

    async def _cancel_orphaned_shipment(self, return_request_id: uuid.UUID, order_code: str) -> None:
        logger.warning(f"Cancelling orphaned GHN order {order_code} for return {return_request_id}")
        try:
            await self.courier.cancel_shipment(order_code)
        except CourierGatewayError as e:
            logger.error(f"Could not cancel orphaned GHN order {order_code}: {e.message}")

    # ==================== Courier tracking ====================

    async def on_tracking_update(
        self,
        order_code: str,
        status: str,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[ReturnRequest]:
        """
        Apply a courier status for ``order_code``.

        Late, duplicate and unknown updates are ignored (returns None or
        the unchanged request); courier callbacks never fail on them.
        """
        ctx = RequestContext.courier()
        return_request = await self.store.get_by_ghn_order_code(order_code)
        if return_request is None:
            logger.warning(f"Tracking update for unknown GHN order {order_code} ignored")
            return None

        if return_request.status != ReturnStatus.SHIPPING:
            logger.warning(
                f"Tracking update {status} for return {return_request.id} in {return_request.status} ignored"
            )
            return return_request
        if return_request.tracking_status == status:
            return return_request
        if return_request.is_delivered:
            logger.warning(f"Tracking update {status} after delivery for return {return_request.id} ignored")
            return return_request
        if status in PRE_PICKUP_STATUSES and return_request.picked_up_at is not None:
            logger.warning(f"Late pre-pickup update {status} for return {return_request.id} ignored")
            return return_request

        if status in FAILURE_STATUSES:
            return await self._on_courier_failure(return_request, order_code, status, occurred_at)

        action = get_event_action(ReturnEvent.TRACKING_UPDATE)

        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code != order_code:
                raise InvalidTransition(row.status, action, "order code is no longer active")
            if row.is_delivered:
                raise InvalidTransition(row.status, action, "package already delivered")
            if status in PRE_PICKUP_STATUSES and row.picked_up_at is not None:
                raise InvalidTransition(row.status, action, "package already picked up")

        def mutate(row: ReturnRequest, now: datetime):
            when = as_utc(occurred_at) if occurred_at else now
            row.tracking_status = status
            row.tracking_updated_at = when
            if status == GhnOrderStatus.DELIVERED.value:
                row.delivered_at = when
                if row.picked_up_at is None:
                    row.picked_up_at = when
                return [self._arm(row, DeadlineKind.DISPOSITION, when)]
            if status in PICKED_UP_STATUSES and row.picked_up_at is None:
                # Replaces the pickup deadline
                row.picked_up_at = when
                return [self._arm(row, DeadlineKind.TRANSIT, when)]
            return None

        try:
            return await self._apply(
                ctx, return_request.id, ReturnEvent.TRACKING_UPDATE, mutate, guard, notes=f"{order_code}: {status}"
            )
        except InvalidTransition as e:
            logger.warning(f"Tracking update {status} for GHN order {order_code} ignored: {e.message}")
            return None

    async def _on_courier_failure(
        self,
        current: ReturnRequest,
        order_code: str,
        status: str,
        occurred_at: Optional[datetime],
    ) -> Optional[ReturnRequest]:
        """
        The courier ended the shipment without delivering it.

        A package lost or damaged after pickup is refunded; any other
        failure sends the request back to APPROVED for a new shipment.
        """
        ctx = RequestContext.courier()
        lost = status in LOST_STATUSES and current.picked_up_at is not None
        event = ReturnEvent.COURIER_LOST_PACKAGE if lost else ReturnEvent.COURIER_SHIPMENT_FAILED

        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code != order_code:
                raise InvalidTransition(row.status, get_event_action(event), "order code is no longer active")
            if row.is_delivered:
                raise InvalidTransition(row.status, get_event_action(event), "package already delivered")
            if (row.picked_up_at is not None) != (current.picked_up_at is not None):
                raise InvalidTransition(row.status, get_event_action(event), "pickup state changed")

        def mutate(row: ReturnRequest, now: datetime):
            if lost:
                row.tracking_status = status
                row.tracking_updated_at = as_utc(occurred_at) if occurred_at else now
                row.auto_refunded = True
                row.auto_refunded_at = now
                return self._request_refund(row, RefundReasonCode.AUTO_REFUND_COURIER_FAILURE, now)
            row.ghn_order_code = None
            row.tracking_status = None
            row.tracking_updated_at = None
            row.picked_up_at = None
            row.needs_shipment_recreate = True
            return [self._arm(row, DeadlineKind.SHIPMENT, now)]

        try:
            return await self._apply(ctx, current.id, event, mutate, guard, notes=f"{order_code}: {status}")
        except InvalidTransition as e:
            logger.warning(f"Courier status {status} for GHN order {order_code} ignored: {e.message}")
            return None

    async def poll_tracking(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        """Pull the current courier status instead of waiting for the webhook."""
        current = await self._load(ctx, return_request_id)
        if current.status != ReturnStatus.SHIPPING or not current.ghn_order_code:
            raise InvalidTransition(
                current.status, get_event_action(ReturnEvent.TRACKING_UPDATE), "no active courier shipment"
            )

        status = await self.courier.query_tracking(current.ghn_order_code)
        await self.on_tracking_update(current.ghn_order_code, status)
        return await self._load(ctx, return_request_id)

    # ==================== Shop disposition ====================

    async def shop_confirm_receipt(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        def mutate(row: ReturnRequest, now: datetime):
            return self._request_refund(row, RefundReasonCode.SHOP_CONFIRMED_RECEIPT, now)

        return await self._apply(
            ctx,
            return_request_id,
            ReturnEvent.SHOP_CONFIRM_RECEIPT,
            mutate,
            self._require_delivered(ReturnEvent.SHOP_CONFIRM_RECEIPT),
        )

    async def shop_dispute(self, ctx: RequestContext, return_request_id: uuid.UUID, reason: str) -> ReturnRequest:
        current = await self._load(ctx, return_request_id)
        resolve_transition(current.status, ReturnEvent.SHOP_DISPUTE)
        reason = self._require_reason(current.status, ReturnEvent.SHOP_DISPUTE, reason)

        def mutate(row: ReturnRequest, now: datetime):
            row.shop_reject_reason = reason

        updated = await self._apply(
            ctx,
            return_request_id,
            ReturnEvent.SHOP_DISPUTE,
            mutate,
            self._require_delivered(ReturnEvent.SHOP_DISPUTE),
            notes=reason,
        )
        await self._notify(updated, NotificationType.RETURN_DISPUTED, reason=reason)
        return updated

    # ==================== Deadlines ====================

    async def on_deadline(
        self,
        return_request_id: uuid.UUID,
        expected_status: str,
        deadline_id: uuid.UUID,
    ) -> str:
        """
        Fire a deadline. A superseded deadline (different active id or
        status) is a no-op.

        Returns:
            DeadlineOutcome value
        """
        outcome = await self._fire_deadline(return_request_id, expected_status, deadline_id)
        if outcome != DeadlineOutcome.RESCHEDULED:
            await self.deadlines.mark_fired(deadline_id, outcome)
        return outcome

    async def _fire_deadline(self, return_request_id: uuid.UUID, expected_status: str, deadline_id: uuid.UUID) -> str:
        ctx = RequestContext.system()
        try:
            current = await self.store.get(return_request_id)
        except ReturnRequestNotFound:
            logger.warning(f"Deadline {deadline_id} for missing return {return_request_id} ignored")
            return DeadlineOutcome.STALE

        if current.active_deadline_id != deadline_id or current.status != expected_status:
            logger.info(
                f"Deadline {deadline_id} for return {return_request_id} superseded "
                f"(status {current.status}), no-op"
            )
            return DeadlineOutcome.STALE

        kind = current.deadline_kind

        def still_armed(row: ReturnRequest) -> None:
            if row.active_deadline_id != deadline_id:
                raise InvalidTransition(row.status, "deadline", "deadline superseded")

        try:
            if kind == DeadlineKind.SHOP_ACTION:
                await self._shop_action_timeout(ctx, current, still_armed)
            elif kind == DeadlineKind.SHIPMENT:
                await self._shipment_timeout(ctx, current, still_armed)
            elif kind == DeadlineKind.PICKUP:
                return await self._pickup_timeout(ctx, current, deadline_id)
            elif kind == DeadlineKind.TRANSIT:
                await self._transit_timeout(ctx, current, still_armed)
            elif kind == DeadlineKind.DISPOSITION:
                await self._disposition_timeout(ctx, current, still_armed)
            else:
                logger.error(f"Unknown deadline kind {kind} on return {return_request_id}")
                return DeadlineOutcome.STALE
        except InvalidTransition as e:
            logger.info(f"Deadline {kind} for return {return_request_id} is a no-op: {e.message}")
            return DeadlineOutcome.STALE
        except RetryLater:
            # Left unfired; the sweep tries again
            logger.warning(f"Deadline {kind} for return {return_request_id} deferred by concurrent writes")
            return DeadlineOutcome.RESCHEDULED

        return DeadlineOutcome.APPLIED

    async def _shop_action_timeout(self, ctx: RequestContext, current: ReturnRequest, still_armed: Guard) -> None:
        if self.pending_timeout_action == "AUTO_APPROVE":
            def mutate(row: ReturnRequest, now: datetime):
                row.auto_approved = True
                row.auto_approved_at = now
                return [self._arm(row, DeadlineKind.SHIPMENT, now)]

            await self._apply(ctx, current.id, ReturnEvent.SHOP_ACTION_TIMEOUT_APPROVE, mutate, still_armed)
            return

        def mutate(row: ReturnRequest, now: datetime):
            row.auto_refunded = True
            row.auto_refunded_at = now
            return self._request_refund(row, RefundReasonCode.AUTO_REFUND_NO_SHOP_ACTION, now)

        await self._apply(ctx, current.id, ReturnEvent.SHOP_ACTION_TIMEOUT, mutate, still_armed)

    async def _shipment_timeout(self, ctx: RequestContext, current: ReturnRequest, still_armed: Guard) -> None:
        def guard(row: ReturnRequest) -> None:
            still_armed(row)
            if row.ghn_order_code is not None:
                raise InvalidTransition(row.status, "deadline", "a courier shipment is active")

        def mutate(row: ReturnRequest, now: datetime):
            row.auto_cancelled = True
            row.auto_cancelled_at = now

        updated = await self._apply(ctx, current.id, ReturnEvent.SHIPMENT_TIMEOUT, mutate, guard)
        await self._notify(updated, NotificationType.RETURN_CANCELLED)

    async def _pickup_timeout(
        self,
        ctx: RequestContext,
        current: ReturnRequest,
        deadline_id: uuid.UUID,
    ) -> str:
        order_code = current.ghn_order_code
        if current.picked_up_at is not None or current.tracking_status in PICKED_UP_STATUSES:
            return DeadlineOutcome.STALE

        # Abandon the attempt at the courier before touching the request
        if order_code:
            try:
                await self.courier.cancel_shipment(order_code)
            except CourierGatewayError as e:
                logger.warning(
                    f"Pickup timeout for return {current.id}: cancelling GHN order {order_code} "
                    f"failed ({e.message}), retrying in {self.deadline_retry_delay_minutes} min"
                )
                await self._reschedule_deadline(current, deadline_id)
                return DeadlineOutcome.RESCHEDULED

        # A pickup reported after the cancel does not stop the timeout
        def guard(row: ReturnRequest) -> None:
            if row.ghn_order_code != order_code:
                raise InvalidTransition(row.status, "deadline", "a newer courier shipment is active")
            if row.is_delivered:
                raise InvalidTransition(row.status, "deadline", "the package was delivered")

        def mutate(row: ReturnRequest, now: datetime):
            row.ghn_order_code = None
            row.tracking_status = None
            row.tracking_updated_at = None
            row.picked_up_at = None
            row.needs_shipment_recreate = True
            return [self._arm(row, DeadlineKind.SHIPMENT, now)]

        await self._apply(
            ctx, current.id, ReturnEvent.PICKUP_TIMEOUT, mutate, guard, notes=f"GHN order {order_code} cancelled"
        )
        return DeadlineOutcome.APPLIED

    async def _reschedule_deadline(self, current: ReturnRequest, deadline_id: uuid.UUID) -> None:
        armed: List[ReturnDeadline] = []

        def mutation(row: ReturnRequest):
            if row.active_deadline_id != deadline_id:
                raise InvalidTransition(row.status, "deadline", "deadline superseded")
            deadline = self.deadlines.build(
                row,
                row.deadline_kind,
                self.clock.now() + timedelta(minutes=self.deadline_retry_delay_minutes),
            )
            armed.append(deadline)
            return [deadline]

        try:
            await self.store.compare_and_swap_status(current.id, current.status, mutation)
        except (StaleStateError, InvalidTransition) as e:
            logger.info(f"Deadline {deadline_id} for return {current.id} not rescheduled: {e.message}")
            await self.deadlines.mark_fired(deadline_id, DeadlineOutcome.STALE)
            return

        await self.deadlines.mark_fired(deadline_id, DeadlineOutcome.RESCHEDULED)
        for deadline in armed:
            self.deadlines.arm(deadline)

    async def _disposition_timeout(self, ctx: RequestContext, current: ReturnRequest, still_armed: Guard) -> None:
        delivered = self._require_delivered(ReturnEvent.DISPOSITION_TIMEOUT)

        def guard(row: ReturnRequest) -> None:
            still_armed(row)
            delivered(row)

        def mutate(row: ReturnRequest, now: datetime):
            row.auto_refunded = True
            row.auto_refunded_at = now
            return self._request_refund(row, RefundReasonCode.AUTO_REFUND_NO_DISPOSITION, now)

        await self._apply(ctx, current.id, ReturnEvent.DISPOSITION_TIMEOUT, mutate, guard)

    async def _transit_timeout(self, ctx: RequestContext, current: ReturnRequest, still_armed: Guard) -> None:
        def guard(row: ReturnRequest) -> None:
            still_armed(row)
            if row.is_delivered:
                raise InvalidTransition(row.status, "deadline", "the package was delivered")

        def mutate(row: ReturnRequest, now: datetime):
            row.auto_refunded = True
            row.auto_refunded_at = now
            return self._request_refund(row, RefundReasonCode.AUTO_REFUND_COURIER_FAILURE, now)

        await self._apply(
            ctx,
            current.id,
            ReturnEvent.TRANSIT_TIMEOUT,
            mutate,
            guard,
            notes=f"GHN order {current.ghn_order_code} not delivered",
        )

    async def fire_due_deadlines(self) -> int:
        """Sweep: fire every overdue deadline."""
        return await self.deadlines.fire_due(self.on_deadline)

    # ==================== Queries ====================

    async def get_return_request(self, ctx: RequestContext, return_request_id: uuid.UUID) -> ReturnRequest:
        return await self._load(ctx, return_request_id)

    async def get_timeline(self, ctx: RequestContext, return_request_id: uuid.UUID) -> List[ReturnStatusHistory]:
        await self._load(ctx, return_request_id)
        return await self.store.list_history(return_request_id)

    async def list_return_requests(
        self,
        ctx: RequestContext,
        store_id: uuid.UUID,
        status: Optional[str] = None,
        reason_type: Optional[str] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[ReturnRequest], int]:
        if ctx.store_id is not None and ctx.store_id != store_id:
            return [], 0
        return await self.store.list_by_store(store_id, status, reason_type, page, size)

    async def list_customer_returns(
        self,
        ctx: RequestContext,
        customer_id: uuid.UUID,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[ReturnRequest], int]:
        if ctx.customer_id is not None and ctx.customer_id != customer_id:
            return [], 0
        return await self.store.list_by_customer(customer_id, page, size)


_orchestrator: Optional[ReturnOrchestrator] = None


def get_return_orchestrator() -> ReturnOrchestrator:
    """Process-wide orchestrator whose deadlines are armed in the job scheduler."""
    global _orchestrator
    if _orchestrator is None:
        from app.jobs.scheduler import schedule_deadline_job

        store = ReturnRequestStore()
        clock = Clock()
        _orchestrator = ReturnOrchestrator(
            store=store,
            deadlines=DeadlineService(store.session_factory, clock, arm_callback=schedule_deadline_job),
            clock=clock,
        )
    return _orchestrator
