import json

from moony_sms.models import OptOutStatus
from moony_sms.outbound import TWILIO_OPT_OUT_CODE
from moony_sms.services import get_services
from moony_sms.signatures import WebhookRequest
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

log = get_logger("twilio-status")

DELIVERED = frozenset({"delivered"})
UNDELIVERED = frozenset({"undelivered", "failed"})


def _ok():
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"ok": True}),
    }


def lambda_handler(event, context):
    services = get_services()
    request = WebhookRequest.from_api_gateway(event)

    if not services.twilio_verifier.verify(request):
        return {
            "statusCode": 403,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({"error": "invalid_signature"}),
        }

    services.metrics.start()
    try:
        data = request.form()

        message_sid = data.get("MessageSid")
        message_status = (data.get("MessageStatus") or data.get("SmsStatus") or "").lower()
        error_code = data.get("ErrorCode")
        to = data.get("To") or ""

        log.info(
            "twilio.status",
            extra={
                "message_sid": message_sid,
                "message_status": message_status,
                "error_code": error_code,
                "to": mask_phone(to),
            },
        )

        if message_status in DELIVERED:
            services.metrics.record("SmsDelivered", dimensions={"Provider": "twilio"})
        elif message_status in UNDELIVERED:
            services.metrics.record("SmsUndelivered", dimensions={"Provider": "twilio"})

        # Carrier-level opt-out reported after the send was accepted.
        if error_code == str(TWILIO_OPT_OUT_CODE) and to:
            user = services.directory.find_by_phone(to)
            if user is not None and user.is_opted_in:
                services.directory.set_opt_out_status(user.id, OptOutStatus.OPTED_OUT)

    except Exception as e:
        # We don't block Twilio on internal errors; just acknowledge receipt.
        log.exception("twilio.status_error", extra={"error": str(e)})
    finally:
        services.metrics.shutdown()

    return _ok()
