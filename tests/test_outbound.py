import pytest
import requests
from botocore.exceptions import EndpointConnectionError
from twilio.base.exceptions import TwilioRestException

from moony_sms.destinations import (
    IdentityPolicy,
    RedirectToSimulatorPolicy,
    RejectNonSimulatorPolicy,
    build_destination_policy,
)
from moony_sms.exceptions import ConfigurationError
from moony_sms.metrics import CloudWatchMetrics
from moony_sms.models import MessageType, OutboundMessage, OutboundResult
from moony_sms.outbound import (
    AwsSmsMessenger,
    RetryingMessenger,
    TwilioSmsMessenger,
    send_sequentially,
)
from tests.conftest import (
    USERS,
    RecordingMessenger,
    StubCloudWatch,
    StubPinpoint,
    StubTwilioClient,
    client_error,
    put_user,
    user_item,
)

REAL = "+14155550123"
SIMULATOR_FROM = "+12065559457"
SIMULATOR_TO = "+14254147755"


def _aws(client, policy=None, directory=None, sandbox=False, metrics=None):
    return AwsSmsMessenger(
        client,
        origination_number=SIMULATOR_FROM,
        destination_policy=policy or IdentityPolicy(),
        directory=directory,
        metrics=metrics,
        sandbox=sandbox,
        sleep=lambda s: None,
    )


def _twilio_error(code, status=400):
    return TwilioRestException(status, "https://api.twilio.com/2010-04-01/Messages.json", msg=f"error {code}", code=code)


# -- destination policies ----------------------------------------------------


def test_identity_policy():
    assert IdentityPolicy().resolve(REAL).number == REAL


def test_redirect_policy_rewrites_real_numbers_only():
    policy = RedirectToSimulatorPolicy(SIMULATOR_TO)
    redirected = policy.resolve(REAL)
    assert redirected.number == SIMULATOR_TO
    assert redirected.redirected_from == REAL
    assert policy.resolve("+14254147156").number == "+14254147156"


def test_redirect_policy_requires_a_simulator_number():
    with pytest.raises(ConfigurationError):
        RedirectToSimulatorPolicy(REAL)


def test_reject_policy():
    assert RejectNonSimulatorPolicy().resolve(REAL).rejected
    assert RejectNonSimulatorPolicy().resolve(SIMULATOR_TO).rejected is None


def test_build_destination_policy():
    assert isinstance(build_destination_policy("identity", SIMULATOR_TO), IdentityPolicy)
    assert isinstance(build_destination_policy("redirect", SIMULATOR_TO), RedirectToSimulatorPolicy)
    assert isinstance(build_destination_policy("reject", SIMULATOR_TO), RejectNonSimulatorPolicy)
    with pytest.raises(ConfigurationError):
        build_destination_policy("shrug", SIMULATOR_TO)


# -- AWS backend -------------------------------------------------------------


def test_aws_send_success_records_last_message(dynamodb, directory):
    put_user(dynamodb, "u1", REAL)
    pinpoint = StubPinpoint()

    result = _aws(pinpoint, directory=directory).send(REAL, "hello", MessageType.TRANSACTIONAL, "u1")

    assert result == OutboundResult(success=True, message_id="aws-msg-1")
    assert pinpoint.sent == [
        {
            "DestinationPhoneNumber": REAL,
            "OriginationIdentity": SIMULATOR_FROM,
            "MessageBody": "hello",
            "MessageType": "TRANSACTIONAL",
        }
    ]
    assert user_item(dynamodb, "u1")["last_message_id"] == {"S": "aws-msg-1"}
    assert "last_message_sent_at" in user_item(dynamodb, "u1")


@pytest.mark.parametrize("number", ["4155550123", "+0123", "", "+1415555012345678"])
def test_aws_rejects_non_e164(number):
    pinpoint = StubPinpoint()
    result = _aws(pinpoint).send(number, "hello")

    assert result.success is False
    assert result.retryable is False
    assert pinpoint.sent == []


def test_aws_sandbox_redirects_real_numbers():
    pinpoint = StubPinpoint()
    messenger = _aws(pinpoint, policy=RedirectToSimulatorPolicy(SIMULATOR_TO), sandbox=True)

    assert messenger.send(REAL, "hello").success
    assert pinpoint.sent[0]["DestinationPhoneNumber"] == SIMULATOR_TO


def test_aws_sandbox_reject_policy_skips_without_calling_provider():
    pinpoint = StubPinpoint()
    result = _aws(pinpoint, policy=RejectNonSimulatorPolicy(), sandbox=True).send(REAL, "hello")

    assert result.success is False
    assert result.sandbox_skipped is True
    assert pinpoint.sent == []


@pytest.mark.parametrize("code", ["ThrottlingException", "Throttling", "ServiceUnavailable", "InternalServiceError"])
def test_aws_retryable_codes(code):
    result = _aws(StubPinpoint(errors=[client_error(code, "SendTextMessage")])).send(REAL, "hello")
    assert result.success is False
    assert result.retryable is True
    assert result.error_code == code


@pytest.mark.parametrize("code", ["ValidationException", "AccessDeniedException", "ConflictException"])
def test_aws_terminal_codes(code):
    result = _aws(StubPinpoint(errors=[client_error(code, "SendTextMessage")])).send(REAL, "hello")
    assert result.success is False
    assert result.retryable is False


def test_aws_transport_error_is_retryable():
    error = EndpointConnectionError(endpoint_url="https://sms-voice.us-east-1.amazonaws.com")
    result = _aws(StubPinpoint(errors=[error])).send(REAL, "hello")
    assert result.success is False
    assert result.retryable is True


def test_aws_tracking_failure_does_not_fail_send():
    class BrokenDirectory:
        def record_last_message(self, *args):
            raise RuntimeError("dynamo down")

    result = _aws(StubPinpoint(), directory=BrokenDirectory()).send(REAL, "hello", user_id="u1")
    assert result.success is True


def test_aws_records_delivery_metrics():
    cloudwatch = StubCloudWatch()
    metrics = CloudWatchMetrics(cloudwatch, "Moony/SMS")
    metrics.start()

    _aws(StubPinpoint(), metrics=metrics).send(REAL, "hello")
    _aws(StubPinpoint(errors=[client_error("ValidationException")]), metrics=metrics).send(REAL, "hello")
    metrics.flush()

    names = [point["MetricName"] for batch in cloudwatch.batches for point in batch["MetricData"]]
    assert names == ["SmsDeliverySuccess", "SmsDeliveryFailure"]


# -- Twilio backend ----------------------------------------------------------


def test_twilio_prefers_messaging_service():
    client = StubTwilioClient()
    messenger = TwilioSmsMessenger(
        client,
        from_number="+12065550100",
        messaging_service_sid="MG123",
        status_callback="https://api.example.com/twilio/status",
    )

    result = messenger.send(REAL, "hello")

    assert result.success is True
    assert result.message_id.startswith("SM")
    assert client.messages.created == [
        {
            "to": REAL,
            "body": "hello",
            "messaging_service_sid": "MG123",
            "status_callback": "https://api.example.com/twilio/status",
        }
    ]


def test_twilio_falls_back_to_from_number():
    client = StubTwilioClient()
    TwilioSmsMessenger(client, from_number="+12065550100").send(REAL, "hello")
    assert client.messages.created[0]["from_"] == "+12065550100"


def test_twilio_needs_a_sender():
    with pytest.raises(ValueError):
        TwilioSmsMessenger(StubTwilioClient())


def test_twilio_opt_out_error_flips_user(dynamodb, directory):
    put_user(dynamodb, "u1", REAL)
    client = StubTwilioClient(errors=[_twilio_error(21610)])

    result = TwilioSmsMessenger(client, messaging_service_sid="MG1", directory=directory).send(REAL, "hello", user_id="u1")

    assert result.success is False
    assert result.opted_out is True
    assert result.retryable is False
    assert dynamodb.tables[USERS][("u1",)]["opt_out_status"] == {"S": "opted_out"}


def test_twilio_opt_out_code_on_accepted_message_flips_user(dynamodb, directory):
    put_user(dynamodb, "u1", REAL)
    client = StubTwilioClient(error_code=21610)

    result = TwilioSmsMessenger(client, messaging_service_sid="MG1", directory=directory).send(REAL, "hello", user_id="u1")

    assert result.success is True
    assert result.opted_out is True
    assert user_item(dynamodb, "u1")["opt_out_status"] == {"S": "opted_out"}


@pytest.mark.parametrize("code, retryable", [(20429, True), (30001, True), (30008, True), (21211, False), (21408, False)])
def test_twilio_error_classification(code, retryable):
    client = StubTwilioClient(errors=[_twilio_error(code)])
    result = TwilioSmsMessenger(client, messaging_service_sid="MG1").send(REAL, "hello")

    assert result.success is False
    assert result.retryable is retryable
    assert result.error_code == str(code)


def test_twilio_connection_error_is_retryable():
    client = StubTwilioClient(errors=[requests.ConnectionError("reset")])
    result = TwilioSmsMessenger(client, messaging_service_sid="MG1").send(REAL, "hello")
    assert result.retryable is True


def test_twilio_reject_policy_skips():
    client = StubTwilioClient()
    result = TwilioSmsMessenger(client, messaging_service_sid="MG1", destination_policy=RejectNonSimulatorPolicy()).send(
        REAL, "hello"
    )
    assert result.sandbox_skipped is True
    assert client.messages.created == []


# -- bulk and retry ----------------------------------------------------------


def test_send_sequentially_spaces_messages():
    sleeps = []
    inner = RecordingMessenger()
    messages = [OutboundMessage(to=REAL, body=str(i), user_id=f"u{i}") for i in range(3)]

    results = send_sequentially(inner.send, messages, 0.05, sleep=sleeps.append)

    assert [r.success for r in results] == [True, True, True]
    assert [m["body"] for m in inner.sent] == ["0", "1", "2"]
    assert sleeps == [0.05, 0.05]


def test_bulk_spacing_depends_on_sandbox():
    assert _aws(StubPinpoint(), sandbox=True).spacing == 0.1
    assert _aws(StubPinpoint(), sandbox=False).spacing == 0.05


def test_retrying_messenger_retries_retryable_then_succeeds():
    sleeps = []
    inner = RecordingMessenger(
        results=[
            OutboundResult(success=False, error="throttled", retryable=True),
            OutboundResult(success=False, error="throttled", retryable=True),
        ]
    )
    result = RetryingMessenger(inner, max_attempts=3, base_delay=1.0, sleep=sleeps.append).send(REAL, "hello")

    assert result.success is True
    assert len(inner.sent) == 3
    assert sleeps == [1.0, 2.0]


def test_retrying_messenger_stops_on_terminal_failure():
    inner = RecordingMessenger(results=[OutboundResult(success=False, error="bad number", retryable=False)])
    result = RetryingMessenger(inner, max_attempts=3, sleep=lambda s: None).send(REAL, "hello")

    assert result.success is False
    assert len(inner.sent) == 1


def test_retrying_messenger_is_bounded():
    failing = [OutboundResult(success=False, error="down", retryable=True) for _ in range(10)]
    inner = RecordingMessenger(results=failing)
    result = RetryingMessenger(inner, max_attempts=3, sleep=lambda s: None).send(REAL, "hello")

    assert result.success is False
    assert result.retryable is True
    assert len(inner.sent) == 3


def test_retrying_messenger_bulk_uses_inner_spacing():
    sleeps = []
    inner = _aws(StubPinpoint(), sandbox=True)
    retrying = RetryingMessenger(inner, sleep=sleeps.append)

    results = retrying.send_bulk([OutboundMessage(to=REAL, body="a"), OutboundMessage(to=REAL, body="b")])

    assert [r.success for r in results] == [True, True]
    assert sleeps == [0.1]
