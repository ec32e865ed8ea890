"""Scheduler entry point: python -m accessedu.scheduler"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from accessedu.core.config import settings
from accessedu.core.database import init_db
from accessedu.core.logging import setup_logging, get_logger
from accessedu.scheduler.pending_sweeper import sweep_pending
from accessedu.services.wiring import build_reconciler

setup_logging(debug=settings.DEBUG, process_name="scheduler")
logger = get_logger("scheduler")

TIMEZONE = "Africa/Lagos"

scheduler = BlockingScheduler(timezone=TIMEZONE)


def signal_handler(sig, frame):
    logger.info("Scheduler stop signal received")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Scheduler starting")
    init_db()
    engine = build_reconciler()

    # every 5 minutes: re-verify stale pending subscriptions, expire unpaid ones
    scheduler.add_job(
        sweep_pending,
        CronTrigger(minute="*/5", timezone=TIMEZONE),
        args=[engine],
        id="pending_sweeper",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    finally:
        engine.gateway.close()


if __name__ == "__main__":
    main()
