"""Subscription router: initialize, verify, lookup, cancel/reactivate"""
from fastapi import APIRouter, Depends, Request

from accessedu.core.rate_limit import limiter, INITIALIZE_RATE_LIMIT, VERIFY_RATE_LIMIT
from accessedu.routers.deps import get_reconciler
from accessedu.schemas.subscription import (
    InitializeRequest, VerifyRequest, TokenRequest,
    subscription_to_dict, transaction_to_dict, plan_to_dict,
)
from accessedu.services.reconciliation import ReconciliationEngine
from accessedu.core.logging import get_logger

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = get_logger(__name__)


@router.post("/initialize", status_code=201)
@limiter.limit(INITIALIZE_RATE_LIMIT)
async def initialize_subscription(
    request: Request,
    req: InitializeRequest,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Start a subscription payment and return the gateway checkout URL"""
    outcome = engine.initialize_subscription(
        email=str(req.email),
        plan_code=req.plan_code,
        user_id=req.user_id,
        metadata=req.metadata,
        reference=req.reference,
    )
    return {
        "success": True,
        "authorizationUrl": outcome.payment.authorization_url,
        "accessCode": outcome.payment.access_code,
        "reference": outcome.payment.reference,
        "plan": plan_to_dict(outcome.plan),
    }


@router.post("/verify")
@limiter.limit(VERIFY_RATE_LIMIT)
async def verify_transaction(
    request: Request,
    req: VerifyRequest,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Verify a payment with the gateway and reconcile the subscription"""
    outcome = engine.verify_transaction(req.reference)
    result = outcome.result
    return {
        "success": True,
        "status": result.status,
        "reference": result.reference,
        "amount": result.amount,
        "currency": result.currency,
        "subscription": subscription_to_dict(outcome.subscription) if outcome.subscription else None,
        "customer": {
            "email": result.customer.get("email"),
            "customerCode": result.customer.get("customer_code"),
        },
        "paidAt": result.paid_at.isoformat() if result.paid_at else None,
    }


# declared before /{subscription_code} so "user" is not taken as a code
@router.get("/user/{user_id}")
async def list_user_subscriptions(
    user_id: str,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    return [subscription_to_dict(s) for s in engine.store.list_by_user(user_id)]


@router.get("/{subscription_code}")
async def get_subscription(
    subscription_code: str,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    return subscription_to_dict(engine.store.get(subscription_code))


@router.get("/{subscription_code}/transactions")
async def list_subscription_transactions(
    subscription_code: str,
    limit: int = 50,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Payment history, newest first"""
    engine.store.get(subscription_code)
    limit = max(1, min(limit, 200))
    return [transaction_to_dict(t) for t in engine.store.list_transactions(subscription_code, limit=limit)]


@router.post("/{subscription_code}/cancel")
async def cancel_subscription(
    subscription_code: str,
    req: TokenRequest,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    sub = engine.cancel_subscription(subscription_code, req.token)
    logger.info(f"Subscription cancel requested: {subscription_code}")
    return {"success": True, "subscription": subscription_to_dict(sub)}


@router.post("/{subscription_code}/reactivate")
async def reactivate_subscription(
    subscription_code: str,
    req: TokenRequest,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    sub = engine.reactivate_subscription(subscription_code, req.token)
    logger.info(f"Subscription reactivate requested: {subscription_code}")
    return {"success": True, "subscription": subscription_to_dict(sub)}
