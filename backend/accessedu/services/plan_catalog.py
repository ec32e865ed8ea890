"""Plan catalog: the plans a customer may subscribe to."""
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from accessedu.core.errors import NotFoundError, ValidationError
from accessedu.models.plan import Plan

INTERVAL_DAYS = {
    "monthly": 30,
    "yearly": 365,
}

DEFAULT_PLANS = [
    {"plan_code": "monthly", "name": "Monthly Plan", "amount": 5000, "interval": "monthly", "sort_order": 1},
    {"plan_code": "yearly", "name": "Yearly Plan", "amount": 50000, "interval": "yearly", "sort_order": 2},
    {"plan_code": "premium", "name": "Premium Plan", "amount": 10000, "interval": "monthly", "sort_order": 3},
]


def interval_length(interval: str) -> timedelta:
    """One billing period. Unknown intervals are billed monthly."""
    return timedelta(days=INTERVAL_DAYS.get(interval, INTERVAL_DAYS["monthly"]))


class PlanCatalog:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def find(self, code: str) -> Optional[Plan]:
        """Match a local plan code or a gateway plan code."""
        if not code:
            return None
        with self._session_factory() as db:
            return db.query(Plan).filter(
                or_(Plan.plan_code == code, Plan.gateway_plan_code == code)
            ).first()

    def resolve(self, code: str) -> Plan:
        plan = self.find(code)
        if plan is None or not plan.is_active:
            raise NotFoundError(f"Plan not found: {code}")
        return plan

    def list_active(self) -> list[Plan]:
        with self._session_factory() as db:
            return db.query(Plan).filter(Plan.is_active == True).order_by(
                Plan.sort_order.asc(), Plan.id.asc()
            ).all()

    def save(
        self,
        plan_code: str,
        name: str,
        amount: int,
        interval: str,
        currency: str = "NGN",
        description: str = None,
        gateway_plan_code: str = None,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> Plan:
        """Create or update a plan by its local code."""
        if interval not in INTERVAL_DAYS:
            raise ValidationError(f"interval must be one of: {', '.join(INTERVAL_DAYS)}")
        with self._session_factory() as db:
            plan = db.query(Plan).filter(Plan.plan_code == plan_code).first()
            if plan is None:
                plan = Plan(plan_code=plan_code)
                db.add(plan)
            plan.name = name
            plan.amount = amount
            plan.interval = interval
            plan.currency = currency
            plan.description = description
            if gateway_plan_code:
                plan.gateway_plan_code = gateway_plan_code
            plan.is_active = is_active
            plan.sort_order = sort_order
            db.commit()
            db.refresh(plan)
            return plan
