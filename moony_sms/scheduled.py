"""EventBridge entry points for the daily target job and the analytics fallback job."""

from moony_sms.services import get_services
from moony_sms.utils.logger import get_logger

logger = get_logger("scheduled")


def daily_handler(event, context):
    """Fires every 15 minutes; sends only once the local send time has passed."""
    services = get_services()
    services.metrics.start()
    try:
        result = services.daily_job.run_if_due()
    finally:
        services.metrics.shutdown()

    if result is None:
        return {"status": "skipped"}
    return {"status": "completed", **result.to_dict()}


def fallback_handler(event, context):
    services = get_services()
    result = services.fallback_job.run()
    if result is None:
        return {"status": "skipped"}
    return {"status": "completed", **result.to_dict()}
