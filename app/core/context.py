"""
Request Context for Return Workflow Calls

Every orchestrator call receives an explicit ``RequestContext`` describing
who is acting. There is no ambient session or cached store id; the API
layer (or a background job) builds the context and passes it down.

Usage Examples:

    # From a seller endpoint:
    ctx = RequestContext.for_shop(store_id, user_id)
    await orchestrator.shop_approve(ctx, return_id)

    # From a background job:
    await orchestrator.on_deadline(return_id, "PENDING", deadline_id)  # uses RequestContext.system()
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ActorType(str, Enum):
    """Who triggered an event."""
    CUSTOMER = "CUSTOMER"
    SHOP = "SHOP"
    COURIER = "COURIER"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class RequestContext:
    actor_type: ActorType
    actor_id: Optional[uuid.UUID] = None
    store_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None

    @classmethod
    def for_shop(cls, store_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> "RequestContext":
        return cls(actor_type=ActorType.SHOP, actor_id=user_id, store_id=store_id)

    @classmethod
    def for_customer(cls, customer_id: uuid.UUID) -> "RequestContext":
        return cls(actor_type=ActorType.CUSTOMER, actor_id=customer_id, customer_id=customer_id)

    @classmethod
    def courier(cls) -> "RequestContext":
        return cls(actor_type=ActorType.COURIER)

    @classmethod
    def system(cls) -> "RequestContext":
        return cls(actor_type=ActorType.SYSTEM)

    def can_view(self, return_request) -> bool:
        """Shops see their store's returns, customers their own, system/courier everything."""
        if self.actor_type == ActorType.SHOP:
            return self.store_id == return_request.store_id
        if self.actor_type == ActorType.CUSTOMER:
            return self.customer_id == return_request.customer_id
        return True
