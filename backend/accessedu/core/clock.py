from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC now. Every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_gateway_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as sent by the gateway into naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
