"""
Customer Notification Service

Tells customers what happened to their return request. Only the
outcomes the customer cannot infer from a refund arriving are sent:
rejection, dispute after delivery and cancellation for not shipping.

This is a placeholder implementation that logs notifications.
In production, integrate with the storefront push/email provider.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    """Notification delivery channels."""
    PUSH = "push"
    EMAIL = "email"


class NotificationType(str, Enum):
    """Types of return notifications."""
    RETURN_REJECTED = "return_rejected"
    RETURN_DISPUTED = "return_disputed"
    RETURN_CANCELLED = "return_cancelled"


TEMPLATES = {
    NotificationType.RETURN_REJECTED: (
        "Your return request for {product_name} was rejected by the shop. Reason: {reason}"
    ),
    NotificationType.RETURN_DISPUTED: (
        "The shop disputed the returned {product_name} after receiving it. "
        "No refund will be issued. Reason: {reason}"
    ),
    NotificationType.RETURN_CANCELLED: (
        "Your return request for {product_name} was cancelled because the package "
        "was not handed to the courier within {sla_hours} hours."
    ),
}


class NotificationService:
    """
    Service for sending return notifications to customers.

    Subclass and override ``_deliver`` to plug in a real provider.
    """

    def __init__(self, channel: NotificationChannel = NotificationChannel.PUSH):
        self.channel = channel

    async def notify_customer(
        self,
        customer_id: uuid.UUID,
        return_request_id: uuid.UUID,
        notification_type: NotificationType,
        template_data: Dict[str, Any],
        custom_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a notification to a customer.

        Returns:
            Dict with send status and message ID
        """
        notification_id = str(uuid4())

        if custom_message:
            message = custom_message
        else:
            template = TEMPLATES.get(notification_type, "")
            try:
                message = template.format(**template_data)
            except KeyError as e:
                logger.warning(f"Missing template variable: {e}")
                message = template

        logger.info(
            f"[NOTIFICATION] {self.channel.value.upper()} to customer {customer_id} "
            f"(return {return_request_id}, {notification_type.value}): {message[:100]}"
        )
        await self._deliver(customer_id, notification_type, message)

        return {
            "success": True,
            "notification_id": notification_id,
            "channel": self.channel.value,
            "type": notification_type.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ==================== Provider Integration Stub ====================

    async def _deliver(self, customer_id: uuid.UUID, notification_type: NotificationType, message: str) -> bool:
        """
        Hand the message to the provider.

        TODO: wire the storefront FCM topic once the customer device registry is exposed.
        """
        logger.debug(f"[PUSH STUB] customer={customer_id} type={notification_type.value}")
        return True
