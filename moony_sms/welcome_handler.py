"""
Entry point for the welcome text.

The account system invokes it once a user's phone number is verified, either
directly with ``{"user_id": ..., "is_reconnection": ...}`` or through an SQS
queue whose message bodies carry the same JSON object.
"""

import json

from botocore.exceptions import BotoCoreError, ClientError

from moony_sms.services import get_services
from moony_sms.utils.logger import get_logger

logger = get_logger("welcome_handler")


def _parse_request(payload):
    if not isinstance(payload, dict):
        raise ValueError("welcome request must be a JSON object")
    user_id = payload.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("user_id is required")
    return user_id, bool(payload.get("is_reconnection", False))


def _send(services, user_id, is_reconnection):
    result = services.welcome.send_welcome(user_id, is_reconnection=is_reconnection)
    return {
        "user_id": user_id,
        "success": result.success,
        "scenario": result.scenario,
        "message_id": result.message_id,
        "error": result.error,
        "sandbox_skipped": result.sandbox_skipped,
    }


def _handle_records(services, records):
    failures = []
    for rec in records:
        sqs_message_id = rec.get("messageId", "<no-id>")
        try:
            user_id, is_reconnection = _parse_request(json.loads(rec.get("body") or ""))
        except ValueError as e:
            logger.warning("welcome.payload_invalid", extra={"sqs_message_id": sqs_message_id, "error": str(e)})
            continue

        try:
            _send(services, user_id, is_reconnection)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "welcome.store_failed",
                extra={"sqs_message_id": sqs_message_id, "user_id": user_id, "error": str(e)},
            )
            failures.append({"itemIdentifier": sqs_message_id})
    return {"batchItemFailures": failures}


def lambda_handler(event, context):
    services = get_services()
    services.metrics.start()
    try:
        if "Records" in event:
            return _handle_records(services, event["Records"])

        try:
            user_id, is_reconnection = _parse_request(event)
        except ValueError as e:
            logger.warning("welcome.request_invalid", extra={"error": str(e)})
            return {"success": False, "error": str(e)}
        return _send(services, user_id, is_reconnection)
    finally:
        services.metrics.shutdown()
