"""Public plan list"""
from fastapi import APIRouter, Depends

from accessedu.core.config import settings
from accessedu.routers.deps import get_reconciler
from accessedu.schemas.subscription import plan_to_dict
from accessedu.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("")
async def list_plans(engine: ReconciliationEngine = Depends(get_reconciler)):
    """Active plans, in display order, plus the public key the checkout widget needs"""
    return {
        "success": True,
        "publicKey": settings.PAYSTACK_PUBLIC_KEY or None,
        "currency": settings.DEFAULT_CURRENCY,
        "plans": [plan_to_dict(p) for p in engine.catalog.list_active()],
    }
