from fastapi import APIRouter

from .endpoints import (
    health,
    members,
    merchant,
    observability,
    payouts,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(members.router)
router.include_router(merchant.router)
router.include_router(payouts.router)
router.include_router(observability.router)
