"""
Return Request State Machine

This module is the SINGLE SOURCE OF TRUTH for all return status transitions.
The orchestrator resolves every event through ``resolve_transition`` before
it writes anything.

Benefits:
- Clear visualization of the return lifecycle
- Centralized validation
- Prevents invalid state transitions
"""

from typing import Dict, List, Optional

from app.core.exceptions import InvalidTransition


# =============================================================================
# STATUS DEFINITIONS (Single Source of Truth)
# =============================================================================

class ReturnStatus:
    """Return status constants - use these instead of strings."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    AUTO_REFUNDED = "AUTO_REFUNDED"
    SHIPPING = "SHIPPING"
    REFUNDED = "REFUNDED"

    @classmethod
    def all(cls) -> List[str]:
        return [
            cls.PENDING, cls.APPROVED, cls.SHIPPING,
            cls.REJECTED, cls.CANCELLED, cls.AUTO_REFUNDED, cls.REFUNDED,
        ]


TERMINAL_STATUSES = frozenset({
    ReturnStatus.REJECTED,
    ReturnStatus.CANCELLED,
    ReturnStatus.AUTO_REFUNDED,
    ReturnStatus.REFUNDED,
})

# Terminal states that must produce exactly one settlement request
REFUND_STATUSES = frozenset({ReturnStatus.AUTO_REFUNDED, ReturnStatus.REFUNDED})


class ReturnEvent:
    """Events the orchestrator accepts."""
    SHOP_APPROVE = "SHOP_APPROVE"
    SHOP_REJECT = "SHOP_REJECT"
    SHOP_REFUND_WITHOUT_RETURN = "SHOP_REFUND_WITHOUT_RETURN"
    SHOP_ACTION_TIMEOUT = "SHOP_ACTION_TIMEOUT"
    SHOP_ACTION_TIMEOUT_APPROVE = "SHOP_ACTION_TIMEOUT_APPROVE"
    SUBMIT_PACKAGE_INFO = "SUBMIT_PACKAGE_INFO"
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    PICKUP_TIMEOUT = "PICKUP_TIMEOUT"
    COURIER_SHIPMENT_FAILED = "COURIER_SHIPMENT_FAILED"
    COURIER_LOST_PACKAGE = "COURIER_LOST_PACKAGE"
    TRANSIT_TIMEOUT = "TRANSIT_TIMEOUT"
    TRACKING_UPDATE = "TRACKING_UPDATE"
    SHOP_CONFIRM_RECEIPT = "SHOP_CONFIRM_RECEIPT"
    SHOP_DISPUTE = "SHOP_DISPUTE"
    DISPOSITION_TIMEOUT = "DISPOSITION_TIMEOUT"
    SHIPMENT_TIMEOUT = "SHIPMENT_TIMEOUT"


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: event -> {current_status: next_status}
EVENT_TRANSITIONS: Dict[str, Dict[str, str]] = {
    ReturnEvent.SHOP_APPROVE: {
        ReturnStatus.PENDING: ReturnStatus.APPROVED,
    },
    ReturnEvent.SHOP_REJECT: {
        ReturnStatus.PENDING: ReturnStatus.REJECTED,
    },
    ReturnEvent.SHOP_REFUND_WITHOUT_RETURN: {
        ReturnStatus.PENDING: ReturnStatus.REFUNDED,
    },
    ReturnEvent.SHOP_ACTION_TIMEOUT: {
        ReturnStatus.PENDING: ReturnStatus.AUTO_REFUNDED,
    },
    ReturnEvent.SHOP_ACTION_TIMEOUT_APPROVE: {
        ReturnStatus.PENDING: ReturnStatus.APPROVED,
    },
    ReturnEvent.SUBMIT_PACKAGE_INFO: {
        ReturnStatus.APPROVED: ReturnStatus.APPROVED,
    },
    ReturnEvent.SHIPMENT_CREATED: {
        ReturnStatus.APPROVED: ReturnStatus.SHIPPING,
    },
    ReturnEvent.PICKUP_TIMEOUT: {
        ReturnStatus.SHIPPING: ReturnStatus.APPROVED,
    },
    ReturnEvent.COURIER_SHIPMENT_FAILED: {
        ReturnStatus.SHIPPING: ReturnStatus.APPROVED,
    },
    ReturnEvent.COURIER_LOST_PACKAGE: {
        ReturnStatus.SHIPPING: ReturnStatus.AUTO_REFUNDED,
    },
    ReturnEvent.TRANSIT_TIMEOUT: {
        ReturnStatus.SHIPPING: ReturnStatus.AUTO_REFUNDED,
    },
    ReturnEvent.TRACKING_UPDATE: {
        ReturnStatus.SHIPPING: ReturnStatus.SHIPPING,
    },
    ReturnEvent.SHOP_CONFIRM_RECEIPT: {
        ReturnStatus.SHIPPING: ReturnStatus.REFUNDED,
    },
    ReturnEvent.SHOP_DISPUTE: {
        ReturnStatus.SHIPPING: ReturnStatus.REJECTED,
    },
    ReturnEvent.DISPOSITION_TIMEOUT: {
        ReturnStatus.SHIPPING: ReturnStatus.AUTO_REFUNDED,
    },
    # From APPROVED only: a PENDING request is resolved by the shop-action timeout first
    ReturnEvent.SHIPMENT_TIMEOUT: {
        ReturnStatus.APPROVED: ReturnStatus.CANCELLED,
    },
}

# Human-readable action names for each event
EVENT_ACTIONS: Dict[str, str] = {
    ReturnEvent.SHOP_APPROVE: "Approve",
    ReturnEvent.SHOP_REJECT: "Reject",
    ReturnEvent.SHOP_REFUND_WITHOUT_RETURN: "Refund Without Return",
    ReturnEvent.SHOP_ACTION_TIMEOUT: "Auto Refund (shop did not respond)",
    ReturnEvent.SHOP_ACTION_TIMEOUT_APPROVE: "Auto Approve (shop did not respond)",
    ReturnEvent.SUBMIT_PACKAGE_INFO: "Submit Package Info",
    ReturnEvent.SHIPMENT_CREATED: "Create Courier Shipment",
    ReturnEvent.PICKUP_TIMEOUT: "Courier Did Not Pick Up",
    ReturnEvent.COURIER_SHIPMENT_FAILED: "Courier Shipment Failed",
    ReturnEvent.COURIER_LOST_PACKAGE: "Auto Refund (courier lost the package)",
    ReturnEvent.TRANSIT_TIMEOUT: "Auto Refund (package never delivered)",
    ReturnEvent.TRACKING_UPDATE: "Courier Tracking Update",
    ReturnEvent.SHOP_CONFIRM_RECEIPT: "Confirm Receipt",
    ReturnEvent.SHOP_DISPUTE: "Dispute",
    ReturnEvent.DISPOSITION_TIMEOUT: "Auto Refund (shop did not handle delivered return)",
    ReturnEvent.SHIPMENT_TIMEOUT: "Auto Cancel (item not shipped)",
}

STATUS_LABELS: Dict[str, str] = {
    ReturnStatus.PENDING: "New request - awaiting shop",
    ReturnStatus.APPROVED: "Approved",
    ReturnStatus.REJECTED: "Rejected",
    ReturnStatus.CANCELLED: "Cancelled (item not shipped)",
    ReturnStatus.AUTO_REFUNDED: "Auto refunded by system",
    ReturnStatus.SHIPPING: "Returning",
    ReturnStatus.REFUNDED: "Refunded",
}


# =============================================================================
# DEADLINES (one armed deadline per waiting state)
# =============================================================================

class DeadlineKind:
    SHOP_ACTION = "SHOP_ACTION"    # PENDING: shop must approve/reject
    SHIPMENT = "SHIPMENT"          # APPROVED: package must be handed to the courier
    PICKUP = "PICKUP"              # SHIPPING: courier must pick the package up
    TRANSIT = "TRANSIT"            # SHIPPING + picked up: courier must deliver
    DISPOSITION = "DISPOSITION"    # SHIPPING + delivered: shop must confirm or dispute

    @classmethod
    def all(cls) -> List[str]:
        return [cls.SHOP_ACTION, cls.SHIPMENT, cls.PICKUP, cls.TRANSIT, cls.DISPOSITION]


DEADLINE_EXPECTED_STATUS: Dict[str, str] = {
    DeadlineKind.SHOP_ACTION: ReturnStatus.PENDING,
    DeadlineKind.SHIPMENT: ReturnStatus.APPROVED,
    DeadlineKind.PICKUP: ReturnStatus.SHIPPING,
    DeadlineKind.TRANSIT: ReturnStatus.SHIPPING,
    DeadlineKind.DISPOSITION: ReturnStatus.SHIPPING,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_allowed_events(current_status: str) -> List[str]:
    """Events accepted in the given status."""
    return [event for event, edges in EVENT_TRANSITIONS.items() if current_status in edges]


def get_event_action(event: str) -> str:
    """Get human-readable action name for an event."""
    return EVENT_ACTIONS.get(event, event)


def resolve_transition(current_status: str, event: str, reason: Optional[str] = None) -> str:
    """
    Return the status reached by applying ``event`` in ``current_status``.

    Raises:
        InvalidTransition: If the event is not accepted in the current status
    """
    edges = EVENT_TRANSITIONS.get(event)
    if edges is None:
        raise ValueError(f"Unknown return event: {event}")
    if current_status not in edges:
        if is_terminal(current_status):
            reason = reason or "this is a terminal state"
        raise InvalidTransition(current_status, get_event_action(event), reason)
    return edges[current_status]


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return status in TERMINAL_STATUSES


def triggers_refund(status: str) -> bool:
    return status in REFUND_STATUSES


def get_status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


# =============================================================================
# VISUALIZATION (for debugging/documentation)
# =============================================================================

def print_state_diagram():
    """Print a text representation of the state machine."""
    print("\n=== Return State Machine ===\n")
    for status in ReturnStatus.all():
        events = get_allowed_events(status)
        if events:
            print(f"{status}:")
            for event in events:
                print(f"  -> {EVENT_TRANSITIONS[event][status]} ({get_event_action(event)})")
        else:
            print(f"{status}: [TERMINAL STATE]")
        print()


if __name__ == "__main__":
    # Run this file directly to see the state diagram
    print_state_diagram()
