import json

from moony_sms import __version__
from moony_sms.utils.logger import get_logger

log = get_logger("health")

SERVICE_NAME = "moony-sms"


def lambda_handler(event, context):
    method = (event or {}).get("requestContext", {}).get("http", {}).get("method", "GET")
    log.info("health.check", extra={"path": "/health", "method": method})
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"status": "ok", "service": SERVICE_NAME, "version": __version__}),
    }
