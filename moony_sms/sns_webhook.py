import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from moony_sms.models import InboundMessage
from moony_sms.services import get_services
from moony_sms.signatures import WebhookRequest
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

logger = get_logger("sns_webhook")

SUBSCRIBE_TIMEOUT_SECONDS = 10


def _response(status: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


def _parse_timestamp(raw: Optional[str]) -> datetime:
    if raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def to_inbound_message(payload: Dict[str, Any]) -> Optional[InboundMessage]:
    """
    Unwrap an SNS Notification carrying an AWS End User Messaging inbound SMS.

    Returns None when the inner message is not an inbound SMS.
    """
    try:
        sms = json.loads(payload.get("Message") or "")
    except ValueError:
        logger.warning("sns_webhook.message_not_json", extra={"sns_message_id": payload.get("MessageId")})
        return None

    if not isinstance(sms, dict) or not sms.get("originationNumber"):
        logger.warning("sns_webhook.not_inbound_sms", extra={"sns_message_id": payload.get("MessageId")})
        return None

    return InboundMessage(
        from_number=sms["originationNumber"],
        to_number=sms.get("destinationNumber") or "",
        body=sms.get("messageBody") or "",
        provider_message_id=sms.get("inboundMessageId") or payload.get("MessageId"),
        received_at=_parse_timestamp(payload.get("Timestamp")),
        provider="aws",
    )


def confirm_subscription(payload: Dict[str, Any]) -> bool:
    url = payload.get("SubscribeURL")
    if not url:
        logger.error("sns_webhook.subscribe_url_missing", extra={"topic_arn": payload.get("TopicArn")})
        return False
    resp = requests.get(url, timeout=SUBSCRIBE_TIMEOUT_SECONDS)
    resp.raise_for_status()
    logger.info("sns_webhook.subscription_confirmed", extra={"topic_arn": payload.get("TopicArn")})
    return True


def lambda_handler(event, context):
    logger.info(
        "sns_webhook.lambda_start",
        extra={"request_id": getattr(context, "aws_request_id", None)},
    )

    services = get_services()
    request = WebhookRequest.from_api_gateway(event)

    # 1) Signature first; nothing below runs for an unverified payload
    if not services.sns_verifier.verify(request):
        return _response(401, {"error": "invalid_signature"})

    # 2) Everything after verification is acknowledged with 200
    try:
        payload = request.json()
        message_type = payload.get("Type")

        if message_type == "SubscriptionConfirmation":
            confirm_subscription(payload)
            return _response(200, {"status": "subscription_confirmed"})

        if message_type == "UnsubscribeConfirmation":
            logger.info("sns_webhook.unsubscribed", extra={"topic_arn": payload.get("TopicArn")})
            return _response(200, {"status": "acknowledged"})

        if message_type != "Notification":
            logger.warning("sns_webhook.unknown_type", extra={"type": message_type})
            return _response(200, {"status": "ignored"})

        msg = to_inbound_message(payload)
        if msg is None:
            return _response(200, {"status": "ignored"})

        logger.info(
            "sns_webhook.inbound_sms",
            extra={
                "from": mask_phone(msg.from_number),
                "provider_message_id": msg.provider_message_id,
                "body_length": len(msg.body),
            },
        )
        services.inbound_queue.enqueue(msg)
        return _response(200, {"status": "queued"})

    except Exception as e:
        logger.exception("sns_webhook.processing_error", extra={"error": str(e)})
        return _response(200, {"status": "error_acknowledged"})
