"""
Outbound SMS.

Two interchangeable backends satisfy the ``Messenger`` contract:

- ``AwsSmsMessenger``: AWS End User Messaging (pinpoint-sms-voice-v2)
  ``SendTextMessage``, with a destination policy for sandbox/simulator traffic.
- ``TwilioSmsMessenger``: Twilio Messages API, preferring a messaging
  service (pooled sender) over a raw origination number.

Neither raises on a failed send; callers get an ``OutboundResult`` with
``retryable`` set from the provider's error code. ``RetryingMessenger`` wraps
either one and retries retryable failures a bounded number of times.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol, Sequence

import requests
from botocore.exceptions import BotoCoreError, ClientError
from twilio.base.exceptions import TwilioRestException

from moony_sms.destinations import DestinationPolicy, IdentityPolicy, is_simulator_number
from moony_sms.metrics import NullMetrics
from moony_sms.models import MessageType, OptOutStatus, OutboundMessage, OutboundResult
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import is_valid_e164, mask_phone

logger = get_logger("outbound")

SANDBOX_SPACING_SECONDS = 0.1
PRODUCTION_SPACING_SECONDS = 0.05

RETRYABLE_AWS_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalServiceError",
        "InternalServerException",
    }
)

TWILIO_OPT_OUT_CODE = 21610
RETRYABLE_TWILIO_CODES = frozenset(
    {
        20003,  # permission denied (temporary)
        20429,  # too many requests
        30001,  # queue overflow
        30002,  # account suspended (temporary)
        30003,  # unreachable destination
        30004,  # message blocked (temporary)
        30005,  # unknown destination
        30006,  # landline or unreachable carrier
        30007,  # carrier violation (temporary)
        30008,  # unknown error
        30009,  # missing segment
        30010,  # price exceeds max price
    }
)

INVALID_NUMBER = "Invalid phone number format"


class Messenger(Protocol):
    spacing: float

    def send(
        self,
        to: str,
        body: str,
        message_type: MessageType = MessageType.TRANSACTIONAL,
        user_id: Optional[str] = None,
    ) -> OutboundResult:
        ...

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> List[OutboundResult]:
        ...


def send_sequentially(
    send: Callable[..., OutboundResult],
    messages: Sequence[OutboundMessage],
    spacing: float,
    sleep: Callable[[float], None] = time.sleep,
) -> List[OutboundResult]:
    """Send one after another with a fixed gap to stay under provider throughput limits."""
    results: List[OutboundResult] = []
    for index, msg in enumerate(messages):
        results.append(send(msg.to, msg.body, msg.message_type, msg.user_id))
        if index < len(messages) - 1:
            sleep(spacing)
    return results


def _record_last_message(directory: Any, user_id: Optional[str], message_id: Optional[str], provider: str) -> None:
    if directory is None or not user_id or not message_id:
        return
    try:
        directory.record_last_message(user_id, message_id, datetime.now(timezone.utc))
    except Exception as e:
        # The message already left; bookkeeping must not turn it into a failure.
        logger.error(
            "outbound.tracking_update_failed",
            extra={"provider": provider, "user_id": user_id, "error": str(e)},
        )


class AwsSmsMessenger:
    provider = "aws"

    def __init__(
        self,
        client: Any,
        origination_number: str,
        destination_policy: Optional[DestinationPolicy] = None,
        directory: Any = None,
        metrics: Any = None,
        sandbox: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.origination_number = origination_number
        self.destination_policy = destination_policy or IdentityPolicy()
        self.directory = directory
        self.metrics = metrics or NullMetrics()
        self.sandbox = sandbox
        self.spacing = SANDBOX_SPACING_SECONDS if sandbox else PRODUCTION_SPACING_SECONDS
        self.sleep = sleep

    def send(
        self,
        to: str,
        body: str,
        message_type: MessageType = MessageType.TRANSACTIONAL,
        user_id: Optional[str] = None,
    ) -> OutboundResult:
        if not is_valid_e164(to):
            return OutboundResult(success=False, error=INVALID_NUMBER, retryable=False)

        destination = self.destination_policy.resolve(to)
        if destination.rejected:
            logger.warning(
                "outbound.sandbox_rejected",
                extra={"provider": self.provider, "to": mask_phone(to), "user_id": user_id},
            )
            return OutboundResult(success=False, error=destination.rejected, retryable=False, sandbox_skipped=True)

        if self.sandbox and not (
            is_simulator_number(self.origination_number) and is_simulator_number(destination.number)
        ):
            # Still attempt the send; AWS decides whether the sandbox allows it.
            logger.warning(
                "outbound.sandbox_non_simulator",
                extra={
                    "origination": mask_phone(self.origination_number),
                    "destination": mask_phone(destination.number),
                },
            )

        started = time.monotonic()
        logger.info(
            "outbound.sending",
            extra={
                "provider": self.provider,
                "to": mask_phone(destination.number),
                "body_length": len(body),
                "message_type": message_type.value,
                "sandbox": self.sandbox,
                "redirected": destination.redirected_from is not None,
                "user_id": user_id,
            },
        )

        try:
            resp = self.client.send_text_message(
                DestinationPhoneNumber=destination.number,
                OriginationIdentity=self.origination_number,
                MessageBody=body,
                MessageType=message_type.value,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            retryable = code in RETRYABLE_AWS_CODES
            logger.error(
                "outbound.failed",
                extra={
                    "provider": self.provider,
                    "to": mask_phone(destination.number),
                    "error_code": code,
                    "error": str(e),
                    "retryable": retryable,
                    "user_id": user_id,
                },
            )
            self.metrics.record("SmsDeliveryFailure", dimensions={"Provider": self.provider})
            return OutboundResult(success=False, error=str(e), retryable=retryable, error_code=code)
        except BotoCoreError as e:
            # Timeouts and connection errors: the request may never have arrived.
            logger.error(
                "outbound.transport_error",
                extra={"provider": self.provider, "to": mask_phone(destination.number), "error": str(e)},
            )
            self.metrics.record("SmsDeliveryFailure", dimensions={"Provider": self.provider})
            return OutboundResult(success=False, error=str(e), retryable=True)

        message_id = resp.get("MessageId")
        logger.info(
            "outbound.sent",
            extra={
                "provider": self.provider,
                "message_id": message_id,
                "to": mask_phone(destination.number),
                "duration_ms": int((time.monotonic() - started) * 1000),
                "user_id": user_id,
            },
        )
        self.metrics.record("SmsDeliverySuccess", dimensions={"Provider": self.provider})
        _record_last_message(self.directory, user_id, message_id, self.provider)

        return OutboundResult(success=True, message_id=message_id, retryable=False)

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> List[OutboundResult]:
        return send_sequentially(self.send, messages, self.spacing, self.sleep)


class TwilioSmsMessenger:
    provider = "twilio"

    def __init__(
        self,
        client: Any,
        from_number: Optional[str] = None,
        messaging_service_sid: Optional[str] = None,
        status_callback: Optional[str] = None,
        destination_policy: Optional[DestinationPolicy] = None,
        directory: Any = None,
        metrics: Any = None,
        sandbox: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not from_number and not messaging_service_sid:
            raise ValueError("TwilioSmsMessenger needs a from_number or a messaging_service_sid")
        self.client = client
        self.from_number = from_number
        self.messaging_service_sid = messaging_service_sid
        self.status_callback = status_callback
        self.destination_policy = destination_policy or IdentityPolicy()
        self.directory = directory
        self.metrics = metrics or NullMetrics()
        self.sandbox = sandbox
        self.spacing = SANDBOX_SPACING_SECONDS if sandbox else PRODUCTION_SPACING_SECONDS
        self.sleep = sleep

    def _mark_opted_out(self, user_id: Optional[str]) -> None:
        if self.directory is None or not user_id:
            return
        try:
            self.directory.set_opt_out_status(user_id, OptOutStatus.OPTED_OUT)
        except Exception as e:
            logger.error("outbound.opt_out_update_failed", extra={"user_id": user_id, "error": str(e)})

    def send(
        self,
        to: str,
        body: str,
        message_type: MessageType = MessageType.TRANSACTIONAL,
        user_id: Optional[str] = None,
    ) -> OutboundResult:
        if not is_valid_e164(to):
            return OutboundResult(success=False, error=INVALID_NUMBER, retryable=False)

        destination = self.destination_policy.resolve(to)
        if destination.rejected:
            return OutboundResult(success=False, error=destination.rejected, retryable=False, sandbox_skipped=True)

        params = {"to": destination.number, "body": body}
        if self.messaging_service_sid:
            params["messaging_service_sid"] = self.messaging_service_sid
        else:
            params["from_"] = self.from_number
        if self.status_callback:
            params["status_callback"] = self.status_callback

        logger.info(
            "outbound.sending",
            extra={
                "provider": self.provider,
                "to": mask_phone(destination.number),
                "body_length": len(body),
                "message_type": message_type.value,
                "pooled_sender": bool(self.messaging_service_sid),
                "user_id": user_id,
            },
        )

        try:
            message = self.client.messages.create(**params)
        except TwilioRestException as e:
            self.metrics.record("SmsDeliveryFailure", dimensions={"Provider": self.provider})
            if e.code == TWILIO_OPT_OUT_CODE:
                logger.warning("outbound.recipient_opted_out", extra={"to": mask_phone(to), "user_id": user_id})
                self._mark_opted_out(user_id)
                return OutboundResult(
                    success=False,
                    error="User has opted out of SMS messages",
                    retryable=False,
                    opted_out=True,
                    error_code=str(e.code),
                )

            retryable = e.code in RETRYABLE_TWILIO_CODES
            logger.error(
                "outbound.failed",
                extra={
                    "provider": self.provider,
                    "to": mask_phone(destination.number),
                    "error_code": e.code,
                    "error": e.msg,
                    "retryable": retryable,
                    "user_id": user_id,
                },
            )
            return OutboundResult(
                success=False,
                error=str(e.msg),
                retryable=retryable,
                error_code=str(e.code) if e.code is not None else None,
            )
        except requests.RequestException as e:
            logger.error(
                "outbound.transport_error",
                extra={"provider": self.provider, "to": mask_phone(destination.number), "error": str(e)},
            )
            self.metrics.record("SmsDeliveryFailure", dimensions={"Provider": self.provider})
            return OutboundResult(success=False, error=str(e), retryable=True)

        message_id = getattr(message, "sid", None)
        opted_out = getattr(message, "error_code", None) == TWILIO_OPT_OUT_CODE

        logger.info(
            "outbound.sent",
            extra={
                "provider": self.provider,
                "message_id": message_id,
                "to": mask_phone(destination.number),
                "status": getattr(message, "status", None),
                "opted_out": opted_out,
                "user_id": user_id,
            },
        )
        self.metrics.record("SmsDeliverySuccess", dimensions={"Provider": self.provider})
        _record_last_message(self.directory, user_id, message_id, self.provider)
        if opted_out:
            self._mark_opted_out(user_id)

        return OutboundResult(success=True, message_id=message_id, retryable=False, opted_out=opted_out)

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> List[OutboundResult]:
        return send_sequentially(self.send, messages, self.spacing, self.sleep)


class RetryingMessenger:
    """Retries retryable failures with exponential backoff; terminal failures return at once."""

    def __init__(
        self,
        inner: Messenger,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.sleep = sleep
        self.spacing = inner.spacing

    def send(
        self,
        to: str,
        body: str,
        message_type: MessageType = MessageType.TRANSACTIONAL,
        user_id: Optional[str] = None,
    ) -> OutboundResult:
        result = OutboundResult(success=False, error="not attempted")
        for attempt in range(1, self.max_attempts + 1):
            result = self.inner.send(to, body, message_type, user_id)
            if result.success or not result.retryable:
                return result
            if attempt < self.max_attempts:
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.info(
                    "outbound.retrying",
                    extra={"attempt": attempt, "delay_seconds": delay, "to": mask_phone(to), "user_id": user_id},
                )
                self.sleep(delay)

        logger.error("outbound.retries_exhausted", extra={"attempts": self.max_attempts, "to": mask_phone(to)})
        return result

    def send_bulk(self, messages: Sequence[OutboundMessage]) -> List[OutboundResult]:
        return send_sequentially(self.send, messages, self.spacing, self.sleep)
