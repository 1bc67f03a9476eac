"""
Return workflow errors.

Every error carries a machine-readable ``code`` so the API layer can
surface a rejected request with a stable reason.
"""

import uuid
from typing import Optional


class ReturnWorkflowError(Exception):
    """Base class for all return workflow errors."""
    code = "RETURN_WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ReturnRequestNotFound(ReturnWorkflowError):
    """Raised when a return request does not exist or is not visible to the caller."""
    code = "RETURN_NOT_FOUND"
    http_status = 404

    def __init__(self, return_request_id):
        self.return_request_id = return_request_id
        super().__init__(f"Return request {return_request_id} not found")


class InvalidTransition(ReturnWorkflowError):
    """Raised when the current status does not permit the requested event."""
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current_status: str, event: str, reason: Optional[str] = None):
        self.current_status = current_status
        self.event = event
        message = f"Cannot apply '{event}' to a return in '{current_status}' status"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DuplicateActiveReturn(ReturnWorkflowError):
    """Raised when a line item already has a non-terminal return request."""
    code = "DUPLICATE_ACTIVE_RETURN"
    http_status = 409

    def __init__(self, order_item_key: str):
        self.order_item_key = order_item_key
        super().__init__(f"An active return request already exists for item {order_item_key}")


class InvalidPackageInfo(ReturnWorkflowError):
    """Raised when package weight/dimensions/fee are missing or out of tolerance."""
    code = "INVALID_PACKAGE_INFO"
    http_status = 422


class StaleStateError(ReturnWorkflowError):
    """Internal compare-and-swap conflict. Retried by the orchestrator."""
    code = "STALE_STATE"
    http_status = 409

    def __init__(self, return_request_id: uuid.UUID, expected_status: str, actual_status: Optional[str] = None):
        self.return_request_id = return_request_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        if actual_status is None:
            message = f"Return request {return_request_id} was modified concurrently"
        else:
            message = (
                f"Return request {return_request_id} is '{actual_status}', "
                f"expected '{expected_status}'"
            )
        super().__init__(message)


class RetryLater(ReturnWorkflowError):
    """Raised when CAS retries are exhausted. Transient."""
    code = "RETRY_LATER"
    http_status = 503


class CourierGatewayError(ReturnWorkflowError):
    """Courier provider or network failure. Never mutates the return request."""
    code = "COURIER_GATEWAY_ERROR"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class SettlementDeliveryError(ReturnWorkflowError):
    """Refund request could not be delivered. Left in the outbox for the sweep."""
    code = "SETTLEMENT_DELIVERY_ERROR"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
