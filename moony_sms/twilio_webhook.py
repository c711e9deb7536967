from datetime import datetime, timezone

from moony_sms.models import InboundMessage
from moony_sms.services import get_services
from moony_sms.signatures import WebhookRequest
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

logger = get_logger("twilio_webhook")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _twiml(status: int = 200):
    return {
        "statusCode": status,
        "headers": {"Content-Type": "text/xml"},
        "body": EMPTY_TWIML,
    }


def lambda_handler(event, context):
    logger.info(
        "twilio_webhook.lambda_start",
        extra={"request_id": getattr(context, "aws_request_id", None)},
    )

    services = get_services()
    request = WebhookRequest.from_api_gateway(event)

    if not services.twilio_verifier.verify(request):
        return _twiml(403)

    # Twilio retries anything but a 200, so processing errors are swallowed here.
    try:
        form = request.form()

        num_media = int(form.get("NumMedia") or 0)
        if num_media > 0:
            logger.info(
                "twilio_webhook.media_skipped",
                extra={"message_sid": form.get("MessageSid"), "num_media": num_media},
            )
            return _twiml()

        from_number = form.get("From")
        message_sid = form.get("MessageSid")
        if not from_number or not message_sid:
            logger.warning(
                "twilio_webhook.missing_fields",
                extra={"has_from": bool(from_number), "has_message_sid": bool(message_sid)},
            )
            return _twiml()

        msg = InboundMessage(
            from_number=from_number,
            to_number=form.get("To") or "",
            body=form.get("Body") or "",
            provider_message_id=message_sid,
            received_at=datetime.now(timezone.utc),
            provider="twilio",
        )
        logger.info(
            "twilio_webhook.inbound_sms",
            extra={
                "from": mask_phone(msg.from_number),
                "message_sid": message_sid,
                "num_segments": form.get("NumSegments"),
                "body_length": len(msg.body),
            },
        )
        services.inbound_queue.enqueue(msg)

    except Exception as e:
        logger.exception("twilio_webhook.processing_error", extra={"error": str(e)})

    return _twiml()
