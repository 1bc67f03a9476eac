# Services module
# The orchestrator is imported from app.services.return_orchestrator directly:
# it depends on app.schemas, which imports the state machine from this package.
from app.services.return_store import ReturnRequestStore
from app.services.deadline_service import DeadlineService
from app.services.ghn_service import CourierGateway, GhnCourierGateway, GhnService
from app.services.settlement_service import (
    HttpSettlementNotifier,
    SettlementNotifier,
    SettlementOutboxService,
)
from app.services.notification_service import NotificationService

__all__ = [
    "ReturnRequestStore",
    "DeadlineService",
    "CourierGateway",
    "GhnCourierGateway",
    "GhnService",
    "SettlementNotifier",
    "HttpSettlementNotifier",
    "SettlementOutboxService",
    "NotificationService",
]
