#!/usr/bin/env python3
"""Seed the plan catalog (monthly / yearly / premium).

Usage: python seed_plans.py [--sync-gateway]

With --sync-gateway, plans that have no Paystack plan code yet are created on
Paystack first so that initialization can attach the recurring plan.
"""
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "backend"))

from accessedu.core.config import settings
from accessedu.core.database import SessionLocal, init_db
from accessedu.core.errors import GatewayError
from accessedu.core.logging import setup_logging, get_logger
from accessedu.services.paystack_gateway import PaystackGateway
from accessedu.services.plan_catalog import DEFAULT_PLANS, PlanCatalog

logger = get_logger("seed_plans")


def seed(sync_gateway: bool = False):
    init_db()
    catalog = PlanCatalog(SessionLocal)
    gateway = None
    if sync_gateway:
        gateway = PaystackGateway(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    try:
        for plan_def in DEFAULT_PLANS:
            existing = catalog.find(plan_def["plan_code"])
            gateway_plan_code = existing.gateway_plan_code if existing else None
            if gateway is not None and not gateway_plan_code:
                try:
                    gateway_plan_code = gateway.create_plan(
                        name=plan_def["name"],
                        amount=plan_def["amount"],
                        interval=plan_def["interval"],
                        currency=settings.DEFAULT_CURRENCY,
                    )
                except GatewayError as e:
                    logger.error(f"Paystack plan creation failed: {plan_def['plan_code']} - {e.message}")

            plan = catalog.save(
                plan_code=plan_def["plan_code"],
                name=plan_def["name"],
                amount=plan_def["amount"],
                interval=plan_def["interval"],
                currency=settings.DEFAULT_CURRENCY,
                gateway_plan_code=gateway_plan_code,
                sort_order=plan_def["sort_order"],
            )
            print(f"  {plan.plan_code}: {plan.name} {plan.amount} {plan.currency}/{plan.interval} "
                  f"(gateway={plan.gateway_plan_code or '-'})")
    finally:
        if gateway is not None:
            gateway.close()


if __name__ == "__main__":
    setup_logging(process_name="seed")
    seed(sync_gateway="--sync-gateway" in sys.argv[1:])
    print("done")
