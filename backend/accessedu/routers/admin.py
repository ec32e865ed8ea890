"""Admin: plan creation, subscription analytics, expiring subscriptions"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from accessedu.core.config import settings
from accessedu.routers.deps import get_reconciler, require_admin
from accessedu.schemas.subscription import PlanCreateRequest, plan_to_dict, subscription_to_dict
from accessedu.services.reconciliation import ReconciliationEngine
from accessedu.core.logging import get_logger

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = get_logger(__name__)


@router.post("/plans", status_code=201)
async def create_plan(
    req: PlanCreateRequest,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Create the plan on the gateway, then save it in the catalog"""
    gateway_plan_code = engine.gateway.create_plan(
        name=req.name,
        amount=req.amount,
        interval=req.interval,
        description=req.description,
        currency=req.currency or settings.DEFAULT_CURRENCY,
    )
    plan = engine.catalog.save(
        plan_code=req.plan_code,
        name=req.name,
        amount=req.amount,
        interval=req.interval,
        currency=req.currency or settings.DEFAULT_CURRENCY,
        description=req.description,
        gateway_plan_code=gateway_plan_code,
        sort_order=req.sort_order,
    )
    logger.info(f"Plan created: {plan.plan_code} -> {gateway_plan_code}")
    return {"success": True, "plan": plan_to_dict(plan)}


@router.get("/subscriptions/analytics")
async def subscription_analytics(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    plan_code: Optional[str] = Query(default=None, alias="planCode"),
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    stats = engine.store.analytics(start=start_date, end=end_date, plan_code=plan_code)
    return {
        "success": True,
        "total": stats["total"],
        "byStatus": stats["by_status"],
        "byPlan": stats["by_plan"],
        "activeRevenue": stats["active_revenue"],
        "collected": stats["collected"],
    }


@router.get("/subscriptions/expiring")
async def expiring_subscriptions(
    days: int = Query(default=7, ge=1, le=90),
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Active subscriptions whose paid-through date falls within ``days``"""
    subs = engine.store.list_expiring(days=days, now=engine.clock())
    return {"success": True, "count": len(subs), "subscriptions": [subscription_to_dict(s) for s in subs]}
