from fastapi import APIRouter

from app.api.v1.endpoints import customer_returns, ghn, store_returns


api_router = APIRouter(prefix="/api/v1")

# ==================== Returns (storefront) ====================
api_router.include_router(customer_returns.router)

# ==================== Returns (seller console) ====================
api_router.include_router(store_returns.router)

# ==================== Courier (GHN) ====================
api_router.include_router(ghn.router)
