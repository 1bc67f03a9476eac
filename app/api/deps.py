from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status

from app.core.context import RequestContext
from app.services.return_orchestrator import ReturnOrchestrator, get_return_orchestrator


logger = logging.getLogger(__name__)


def _parse_uuid(value: str, header: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning(f"Invalid {header} header: {value}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} must be a UUID",
        )


def get_orchestrator() -> ReturnOrchestrator:
    """Dependency to get the return orchestrator."""
    return get_return_orchestrator()


async def get_store_context(
    x_store_id: Annotated[Optional[str], Header()] = None,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> RequestContext:
    """
    Seller console caller. Authentication happens upstream; the gateway
    forwards the resolved store in ``X-Store-Id``.
    """
    if not x_store_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Store-Id header is required",
        )
    store_id = _parse_uuid(x_store_id, "X-Store-Id")
    user_id = _parse_uuid(x_user_id, "X-User-Id") if x_user_id else None
    return RequestContext.for_shop(store_id, user_id)


async def get_customer_context(
    x_customer_id: Annotated[Optional[str], Header()] = None,
) -> RequestContext:
    """Storefront caller, identified by ``X-Customer-Id``."""
    if not x_customer_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Customer-Id header is required",
        )
    return RequestContext.for_customer(_parse_uuid(x_customer_id, "X-Customer-Id"))


# Type aliases for cleaner endpoint signatures
Orchestrator = Annotated[ReturnOrchestrator, Depends(get_orchestrator)]
StoreContext = Annotated[RequestContext, Depends(get_store_context)]
CustomerContext = Annotated[RequestContext, Depends(get_customer_context)]
