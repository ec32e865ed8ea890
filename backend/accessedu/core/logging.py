import logging
import sys
import json
from datetime import datetime, timezone

# Promoted to top-level keys so payment logs can be filtered by reference
PAYMENT_FIELDS = ("reference", "subscription_code", "event_type", "event_key")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the emitting process"""

    def __init__(self, process_name: str = "api"):
        super().__init__()
        self.process_name = process_name

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "process": self.process_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        data = getattr(record, "extra_data", None)
        if isinstance(data, dict):
            for key in PAYMENT_FIELDS:
                if data.get(key):
                    log_entry[key] = data[key]
            rest = {k: v for k, v in data.items() if k not in PAYMENT_FIELDS}
            if rest:
                log_entry["data"] = rest
        elif data is not None:
            log_entry["data"] = data
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, process_name: str = "api"):
    """Route every logger through a single stdout JSON handler"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(process_name))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # request lines from the gateway client would repeat every Paystack URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO if debug else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
