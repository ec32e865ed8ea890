"""Paystack API client.

Every call is unwrapped from Paystack's ``{status, message, data}`` envelope.
Anything that is not a successful envelope leaves this module as a
``GatewayError``; raw httpx exceptions never escape.
"""
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from accessedu.core.clock import parse_gateway_datetime
from accessedu.core.errors import GatewayError, ValidationError
from accessedu.core.logging import get_logger

logger = get_logger(__name__)

# local interval -> Paystack interval
GATEWAY_INTERVALS = {
    "monthly": "monthly",
    "yearly": "annually",
}
LOCAL_INTERVALS = {v: k for k, v in GATEWAY_INTERVALS.items()}

# Paystack transaction status -> normalized status
TRANSACTION_STATUSES = {
    "success": "success",
    "failed": "failed",
    "reversed": "failed",
    "abandoned": "pending",
    "ongoing": "pending",
    "pending": "pending",
    "processing": "pending",
    "queued": "pending",
}

# Paystack references and codes; a leading dot would allow "." / ".." path segments
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._=-]*$")


@dataclass
class InitializeResult:
    authorization_url: str
    access_code: str
    reference: str


@dataclass
class TransactionResult:
    status: str
    reference: str
    amount: int = 0
    currency: Optional[str] = None
    channel: Optional[str] = None
    gateway_response: Optional[str] = None
    paid_at: Optional[datetime] = None
    customer: dict = field(default_factory=dict)
    plan_code: Optional[str] = None
    subscription_code: Optional[str] = None
    email_token: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Ack:
    message: str


def to_local_interval(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return LOCAL_INTERVALS.get(value, value if value in GATEWAY_INTERVALS else None)


def parse_metadata(value) -> dict:
    """Paystack echoes metadata back either as an object or as a JSON string."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def parse_transaction(data: dict) -> TransactionResult:
    """Normalize a Paystack transaction object (verify response or charge webhook)."""
    plan = data.get("plan")
    plan_code = None
    if isinstance(plan, dict):
        plan_code = plan.get("plan_code")
    elif isinstance(plan, str) and plan:
        plan_code = plan

    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    raw_status = str(data.get("status") or "").lower()

    return TransactionResult(
        status=TRANSACTION_STATUSES.get(raw_status, "pending"),
        reference=data.get("reference") or "",
        amount=int(data.get("amount") or 0),
        currency=data.get("currency"),
        channel=data.get("channel"),
        gateway_response=data.get("gateway_response"),
        paid_at=parse_gateway_datetime(data.get("paid_at") or data.get("paidAt")),
        customer={
            "email": customer.get("email"),
            "customer_code": customer.get("customer_code"),
        },
        plan_code=plan_code,
        subscription_code=subscription.get("subscription_code"),
        email_token=subscription.get("email_token"),
        metadata=parse_metadata(data.get("metadata")),
    )


def path_segment(value: Optional[str], name: str) -> str:
    """Validate a caller-supplied identifier and encode it as a single URL path segment."""
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{name} is required")
    if len(value) > 100 or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(f"{name} contains invalid characters")
    return quote(value, safe="")


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA512 of the raw request body, compared in constant time."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class PaystackGateway:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        retry_backoff: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.retry_backoff = retry_backoff
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def close(self):
        self._client.close()

    # =========================================================
    # transport
    # =========================================================

    def _request(self, method: str, path: str, payload: dict = None):
        try:
            resp = self._client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise GatewayError("unavailable", f"Paystack timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise GatewayError("unavailable", f"Paystack unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 500:
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayError("upstream", message or f"Paystack returned HTTP {resp.status_code}")

        if not isinstance(body, dict):
            raise GatewayError("malformed", f"Paystack returned an unreadable response for {method} {path}")

        if resp.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Paystack rejected {method} {path}"
            # 401/403 mean our own credentials are wrong, not the caller's input
            status_code = 502 if resp.status_code in (401, 403) else 400
            raise GatewayError("rejected", message, status_code=status_code)

        return body.get("data")

    def _with_retry(self, operation: str, call):
        """Run ``call`` and retry it once after a backoff if the gateway was unreachable."""
        try:
            return call()
        except GatewayError as e:
            if e.code != "unavailable":
                raise
            logger.warning(f"Paystack {operation} unavailable, retrying once: {e.message}")
            time.sleep(self.retry_backoff)
            return call()

    # =========================================================
    # operations
    # =========================================================

    def initialize_payment(
        self,
        email: str,
        plan_code: Optional[str],
        amount: int,
        metadata: dict = None,
        reference: str = None,
        callback_url: str = None,
        currency: str = None,
    ) -> InitializeResult:
        """POST /transaction/initialize. Never retried."""
        if not email or not email.strip():
            raise ValidationError("email is required")
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer in the smallest currency unit")

        payload = {"email": email.strip(), "amount": amount, "metadata": metadata or {}}
        if plan_code:
            payload["plan"] = plan_code
        if reference:
            # it comes back as a path segment on verify
            path_segment(reference, "reference")
            payload["reference"] = reference.strip()
        if callback_url:
            payload["callback_url"] = callback_url
        if currency:
            payload["currency"] = currency

        data = self._request("POST", "/transaction/initialize", payload)
        if not isinstance(data, dict) or not data.get("authorization_url"):
            raise GatewayError("malformed", "Paystack initialize response is missing authorization_url")

        logger.info(f"Paystack transaction initialized: reference={data.get('reference') or reference}")
        return InitializeResult(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code") or "",
            reference=data.get("reference") or reference or "",
        )

    def verify_transaction(self, reference: str) -> TransactionResult:
        """GET /transaction/verify/{reference}. Never retried; the caller re-verifies."""
        segment = path_segment(reference, "reference")
        data = self._request("GET", f"/transaction/verify/{segment}")
        if not isinstance(data, dict):
            raise GatewayError("malformed", "Paystack verify response has no transaction data")
        try:
            result = parse_transaction(data)
        except (TypeError, ValueError) as e:
            raise GatewayError("malformed", f"Paystack verify response is unreadable: {e}") from e
        if not result.reference:
            result.reference = reference.strip()
        return result

    def create_plan(self, name: str, amount: int, interval: str, description: str = None, currency: str = None) -> str:
        """POST /plan. Returns the gateway plan code. Never retried."""
        if not name:
            raise ValidationError("name is required")
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer in the smallest currency unit")
        if interval not in GATEWAY_INTERVALS:
            raise ValidationError(f"interval must be one of: {', '.join(GATEWAY_INTERVALS)}")

        payload = {"name": name, "amount": amount, "interval": GATEWAY_INTERVALS[interval]}
        if description:
            payload["description"] = description
        if currency:
            payload["currency"] = currency

        data = self._request("POST", "/plan", payload)
        if not isinstance(data, dict) or not data.get("plan_code"):
            raise GatewayError("malformed", "Paystack plan response is missing plan_code")
        logger.info(f"Paystack plan created: {data['plan_code']} ({name})")
        return data["plan_code"]

    def disable_subscription(self, subscription_code: str, token: str) -> Ack:
        return self._toggle_subscription("disable", subscription_code, token)

    def enable_subscription(self, subscription_code: str, token: str) -> Ack:
        return self._toggle_subscription("enable", subscription_code, token)

    def _toggle_subscription(self, action: str, subscription_code: str, token: str) -> Ack:
        if not subscription_code:
            raise ValidationError("subscription code is required")
        if not token:
            raise ValidationError("token is required")
        payload = {"code": subscription_code, "token": token}
        self._with_retry(action, lambda: self._request("POST", f"/subscription/{action}", payload))
        logger.info(f"Paystack subscription {action}d: {subscription_code}")
        return Ack(message=f"Subscription {action}d")

    def fetch_subscription(self, subscription_code: str) -> dict:
        """GET /subscription/{code}"""
        segment = path_segment(subscription_code, "subscription code")
        data = self._with_retry(
            "fetch subscription",
            lambda: self._request("GET", f"/subscription/{segment}"),
        )
        if not isinstance(data, dict):
            raise GatewayError("malformed", "Paystack subscription response has no data")
        return data
