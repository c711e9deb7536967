import base64
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from twilio.request_validator import RequestValidator

from moony_sms.signatures import (
    SnsSignatureVerifier,
    TwilioSignatureVerifier,
    WebhookRequest,
    build_string_to_sign,
)

CERT_URL = "https://sns.us-east-1.amazonaws.com/SimpleNotificationService-abc.pem"
AUTH_TOKEN = "twilio-auth-token"


@pytest.fixture(scope="module")
def signing_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "sns.amazonaws.com")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return key, cert.public_bytes(serialization.Encoding.PEM)


def _notification(**overrides):
    payload = {
        "Type": "Notification",
        "MessageId": "22b80b92-fdea-4c2c-8f9d-bdfb0c7bf324",
        "TopicArn": "arn:aws:sns:us-east-1:123456789012:moony-inbound-sms",
        "Message": json.dumps({"originationNumber": "+14155550123", "messageBody": "3000"}),
        "Timestamp": "2024-03-15T12:00:00.000Z",
        "SignatureVersion": "1",
        "SigningCertURL": CERT_URL,
    }
    payload.update(overrides)
    return payload


def _sign(payload, key, algorithm=None):
    algorithm = algorithm or hashes.SHA1()
    signature = key.sign(build_string_to_sign(payload).encode("utf-8"), padding.PKCS1v15(), algorithm)
    payload["Signature"] = base64.b64encode(signature).decode("ascii")
    return payload


def _sns_verifier(pem, fetched=None):
    def fetcher(url):
        if fetched is not None:
            fetched.append(url)
        return pem

    return SnsSignatureVerifier(".amazonaws.com", fetcher=fetcher)


def _json_request(payload):
    return WebhookRequest(url="https://api.example.com/webhooks/sns", body=json.dumps(payload))


def test_string_to_sign_uses_notification_fields_in_order():
    payload = _notification(Subject="hi")
    assert build_string_to_sign(payload) == (
        f"Message\n{payload['Message']}\n"
        f"MessageId\n{payload['MessageId']}\n"
        "Subject\nhi\n"
        f"Timestamp\n{payload['Timestamp']}\n"
        f"TopicArn\n{payload['TopicArn']}\n"
        "Type\nNotification\n"
    )


def test_string_to_sign_for_subscription_includes_token_and_url():
    payload = {
        "Type": "SubscriptionConfirmation",
        "Message": "confirm",
        "MessageId": "m1",
        "SubscribeURL": "https://sns.us-east-1.amazonaws.com/?Action=ConfirmSubscription",
        "Timestamp": "t",
        "Token": "tok",
        "TopicArn": "arn",
    }
    assert "SubscribeURL\n" in build_string_to_sign(payload)
    assert "Token\ntok\n" in build_string_to_sign(payload)


def test_sns_valid_signature(signing_pair):
    key, pem = signing_pair
    fetched = []
    payload = _sign(_notification(), key)

    assert _sns_verifier(pem, fetched).verify(_json_request(payload)) is True
    assert fetched == [CERT_URL]


def test_sns_signature_version_2_uses_sha256(signing_pair):
    key, pem = signing_pair
    payload = _sign(_notification(SignatureVersion="2"), key, hashes.SHA256())
    assert _sns_verifier(pem).verify(_json_request(payload)) is True


def test_sns_tampered_message_rejected(signing_pair):
    key, pem = signing_pair
    payload = _sign(_notification(), key)
    payload["Message"] = json.dumps({"originationNumber": "+14155550123", "messageBody": "99999"})

    assert _sns_verifier(pem).verify(_json_request(payload)) is False


@pytest.mark.parametrize(
    "cert_url",
    [
        "https://evil.example.com/cert.pem",
        "http://sns.us-east-1.amazonaws.com/cert.pem",
        "https://sns.us-east-1.amazonaws.com.evil.com/cert.pem",
        "https://s3.amazonaws.com/cert.pem",
    ],
)
def test_sns_cert_url_must_be_allow_listed(signing_pair, cert_url):
    key, pem = signing_pair
    fetched = []
    payload = _sign(_notification(SigningCertURL=cert_url), key)

    assert _sns_verifier(pem, fetched).verify(_json_request(payload)) is False
    assert fetched == []


def test_sns_missing_signature_rejected(signing_pair):
    _, pem = signing_pair
    assert _sns_verifier(pem).verify(_json_request(_notification())) is False


def test_sns_garbage_body_rejected(signing_pair):
    _, pem = signing_pair
    request = WebhookRequest(url="https://api.example.com/webhooks/sns", body="not json")
    assert _sns_verifier(pem).verify(request) is False


def test_sns_bypass_skips_checks():
    verifier = SnsSignatureVerifier(fetcher=lambda url: b"", bypass=True)
    assert verifier.verify(WebhookRequest(url="https://x", body="{}")) is True


def _twilio_event(params, signature, host="api.example.com", path="/webhooks/twilio"):
    return {
        "rawPath": path,
        "rawQueryString": "",
        "headers": {
            "Host": host,
            "X-Forwarded-Proto": "https",
            "X-Twilio-Signature": signature,
            "Content-Type": "application/x-www-form-urlencoded",
        },
        "body": urlencode(params),
        "isBase64Encoded": False,
    }


TWILIO_PARAMS = {
    "From": "+14155550123",
    "To": "+12065550100",
    "Body": "3000",
    "MessageSid": "SM0123456789abcdef0123456789abcdef",
    "AccountSid": "AC0123456789abcdef0123456789abcdef",
    "NumSegments": "1",
    "NumMedia": "0",
}


def test_twilio_valid_signature():
    url = "https://api.example.com/webhooks/twilio"
    signature = RequestValidator(AUTH_TOKEN).compute_signature(url, TWILIO_PARAMS)
    request = WebhookRequest.from_api_gateway(_twilio_event(TWILIO_PARAMS, signature))

    assert request.url == url
    assert TwilioSignatureVerifier(AUTH_TOKEN).verify(request) is True


def test_twilio_tampered_body_rejected():
    url = "https://api.example.com/webhooks/twilio"
    signature = RequestValidator(AUTH_TOKEN).compute_signature(url, TWILIO_PARAMS)
    tampered = dict(TWILIO_PARAMS, Body="100000")
    request = WebhookRequest.from_api_gateway(_twilio_event(tampered, signature))

    assert TwilioSignatureVerifier(AUTH_TOKEN).verify(request) is False


def test_twilio_wrong_token_rejected():
    url = "https://api.example.com/webhooks/twilio"
    signature = RequestValidator("someone-else").compute_signature(url, TWILIO_PARAMS)
    request = WebhookRequest.from_api_gateway(_twilio_event(TWILIO_PARAMS, signature))

    assert TwilioSignatureVerifier(AUTH_TOKEN).verify(request) is False


def test_twilio_missing_header_or_token_rejected():
    request = WebhookRequest(url="https://api.example.com/webhooks/twilio", body=urlencode(TWILIO_PARAMS))
    assert TwilioSignatureVerifier(AUTH_TOKEN).verify(request) is False

    request.headers["x-twilio-signature"] = "abc"
    assert TwilioSignatureVerifier(None).verify(request) is False


def test_twilio_bypass():
    request = WebhookRequest(url="https://x", body="")
    assert TwilioSignatureVerifier(None, bypass=True).verify(request) is True


def test_webhook_request_decodes_base64_body():
    body = urlencode({"From": "+14155550123", "Body": "hi there"})
    event = {
        "rawPath": "/webhooks/twilio",
        "rawQueryString": "a=1",
        "headers": {"host": "api.example.com"},
        "body": base64.b64encode(body.encode()).decode(),
        "isBase64Encoded": True,
    }
    request = WebhookRequest.from_api_gateway(event)

    assert request.url == "https://api.example.com/webhooks/twilio?a=1"
    assert request.form() == {"From": "+14155550123", "Body": "hi there"}
