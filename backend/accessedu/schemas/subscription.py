from pydantic import BaseModel, EmailStr, Field
from typing import Any, Optional

from accessedu.services.paystack_gateway import IDENTIFIER_PATTERN

REFERENCE_PATTERN = IDENTIFIER_PATTERN.pattern


class InitializeRequest(BaseModel):
    email: EmailStr
    plan_code: str = Field(alias="planCode", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    metadata: Optional[dict[str, Any]] = None
    # client-generated reference; the server generates one when omitted
    reference: Optional[str] = Field(default=None, max_length=100, pattern=REFERENCE_PATTERN)

    model_config = {"populate_by_name": True}


class VerifyRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=100, pattern=REFERENCE_PATTERN)


class TokenRequest(BaseModel):
    token: Optional[str] = None


class PlanCreateRequest(BaseModel):
    plan_code: str = Field(alias="planCode", min_length=1, max_length=50)
    name: str = Field(min_length=1)
    amount: int = Field(gt=0)
    interval: str = Field(pattern="^(monthly|yearly)$")
    currency: str = "NGN"
    description: Optional[str] = None
    sort_order: int = Field(default=0, alias="sortOrder")

    model_config = {"populate_by_name": True}


def _iso(value):
    return value.isoformat() if value else None


def subscription_to_dict(sub) -> dict:
    """Wire shape of a Subscription (camelCase)."""
    return {
        "subscriptionCode": sub.subscription_code,
        "userId": sub.user_id,
        "email": sub.email,
        "customerCode": sub.customer_code,
        "planCode": sub.plan_code,
        "planName": sub.plan_name,
        "amount": sub.amount,
        "currency": sub.currency,
        "interval": sub.interval,
        "status": sub.status,
        "startDate": _iso(sub.start_date),
        "nextPaymentDate": _iso(sub.next_payment_date),
        "endDate": _iso(sub.end_date),
        "cancelledAt": _iso(sub.cancelled_at),
        "lastPaymentDate": _iso(sub.last_payment_date),
        "metadata": sub.metadata_ or {},
        "createdAt": _iso(sub.created_at),
        "updatedAt": _iso(sub.updated_at),
    }


def transaction_to_dict(tx) -> dict:
    return {
        "reference": tx.reference,
        "subscriptionCode": tx.subscription_code,
        "amount": tx.amount,
        "currency": tx.currency,
        "status": tx.status,
        "channel": tx.channel,
        "gatewayResponse": tx.gateway_response,
        "paidAt": _iso(tx.paid_at),
        "createdAt": _iso(tx.created_at),
    }


def plan_to_dict(plan) -> dict:
    return {
        "planCode": plan.plan_code,
        "gatewayPlanCode": plan.gateway_plan_code,
        "name": plan.name,
        "description": plan.description,
        "amount": plan.amount,
        "currency": plan.currency,
        "interval": plan.interval,
    }
