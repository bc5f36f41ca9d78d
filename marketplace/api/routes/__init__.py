"""
API Routes
"""
from fastapi import APIRouter

from marketplace.api.routes.orders import router as orders_router
from marketplace.api.routes.deliveries import router as deliveries_router
from marketplace.api.routes.settlements import router as settlements_router
from marketplace.api.routes.cash import router as cash_router
from marketplace.api.routes.wallet import router as wallet_router
from marketplace.api.routes.codes import router as codes_router
from marketplace.api.routes.rewards import router as rewards_router
from marketplace.api.routes.admin import router as admin_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["orders"])
router.include_router(deliveries_router, prefix="/deliveries", tags=["deliveries"])
router.include_router(settlements_router, prefix="/settlements", tags=["settlements"])
router.include_router(cash_router, prefix="/cash", tags=["cash"])
router.include_router(wallet_router, prefix="/wallet", tags=["wallet"])
router.include_router(codes_router, prefix="/codes", tags=["codes"])
router.include_router(rewards_router, prefix="/rewards", tags=["rewards"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])

__all__ = ["router"]
