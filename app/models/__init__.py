# Models module
from app.models.return_request import (
    RefundOutbox,
    ReturnDeadline,
    ReturnRequest,
    ReturnStatusHistory,
)

__all__ = [
    "ReturnRequest",
    "ReturnStatusHistory",
    "ReturnDeadline",
    "RefundOutbox",
]
