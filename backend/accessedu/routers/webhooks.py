"""Payment gateway webhook router"""
import json

from fastapi import APIRouter, Depends, Request

from accessedu.core.config import settings
from accessedu.core.errors import SignatureError
from accessedu.routers.deps import get_reconciler
from accessedu.services.paystack_gateway import verify_webhook_signature
from accessedu.services.reconciliation import ReconciliationEngine
from accessedu.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciler),
):
    """Paystack webhook (signature verified over the raw body before parsing)"""
    payload = await request.body()
    signature = request.headers.get("x-paystack-signature", "")

    if not verify_webhook_signature(payload, signature, settings.webhook_secret):
        client = request.client.host if request.client else "unknown"
        logger.warning(
            f"Webhook signature mismatch from {client}",
            extra={"extra_data": {"client": client, "has_signature": bool(signature)}},
        )
        raise SignatureError("Invalid signature")

    # from here on the gateway always gets a 200; failures stay in our logs
    try:
        envelope = json.loads(payload)
        event_type = envelope.get("event")
        data = envelope.get("data") or {}
        outcome = engine.handle_webhook(event_type, data)
    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        return {"received": True}

    return {"received": True, "outcome": outcome}
