"""
Inbound webhook signature verification.

Both verifiers expose the same ``verify(request) -> bool`` capability and
share nothing else:

- ``SnsSignatureVerifier``: AWS SNS push messages, RSA signature over a
  canonical field string, certificate fetched from an allow-listed host.
- ``TwilioSignatureVerifier``: HMAC-SHA1 of URL + sorted form params,
  checked with Twilio's ``RequestValidator`` (constant-time compare).
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from twilio.request_validator import RequestValidator

from moony_sms.utils.logger import get_logger

logger = get_logger("signatures")

CERT_TIMEOUT_SECONDS = 5

NOTIFICATION_FIELDS = ("Message", "MessageId", "Subject", "Timestamp", "TopicArn", "Type")
SUBSCRIPTION_FIELDS = ("Message", "MessageId", "SubscribeURL", "Timestamp", "Token", "TopicArn", "Type")


@dataclass
class WebhookRequest:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @classmethod
    def from_api_gateway(cls, event: Dict[str, Any]) -> "WebhookRequest":
        """Rebuild the public URL and raw body from an HTTP API (v2) event."""
        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}

        body = event.get("body") or ""
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode("utf-8")

        proto = headers.get("x-forwarded-proto", "https")
        host = headers.get("x-forwarded-host") or headers.get("host", "")
        path = event.get("rawPath") or event.get("path") or "/"
        query = event.get("rawQueryString")
        url = f"{proto}://{host}{path}" + (f"?{query}" if query else "")

        return cls(url=url, headers=headers, body=body)

    def form(self) -> Dict[str, str]:
        # Flatten: {'From': ['+1...']} → {'From': '+1...'}
        parsed = parse_qs(self.body, keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items() if v}

    def json(self) -> Dict[str, Any]:
        return json.loads(self.body)


class SignatureVerifier(Protocol):
    def verify(self, request: WebhookRequest) -> bool:
        ...


_cert_cache: Dict[str, bytes] = {}


def fetch_certificate(url: str) -> bytes:
    """Download a signing certificate; cached per container since SNS rotates rarely."""
    cached = _cert_cache.get(url)
    if cached is not None:
        return cached
    resp = requests.get(url, timeout=CERT_TIMEOUT_SECONDS)
    resp.raise_for_status()
    _cert_cache[url] = resp.content
    return resp.content


def build_string_to_sign(payload: Dict[str, Any]) -> str:
    msg_type = payload.get("Type")
    fields = SUBSCRIPTION_FIELDS if msg_type in ("SubscriptionConfirmation", "UnsubscribeConfirmation") else NOTIFICATION_FIELDS
    parts = []
    for name in fields:
        value = payload.get(name)
        if value is not None:
            parts.append(f"{name}\n{value}\n")
    return "".join(parts)


class SnsSignatureVerifier:
    def __init__(
        self,
        cert_host_suffix: str = ".amazonaws.com",
        fetcher: Callable[[str], bytes] = fetch_certificate,
        bypass: bool = False,
    ):
        self.cert_host_suffix = cert_host_suffix
        self.fetcher = fetcher
        self.bypass = bypass

    def is_allowed_cert_url(self, cert_url: str) -> bool:
        parsed = urlparse(cert_url)
        host = parsed.hostname or ""
        return parsed.scheme == "https" and host.startswith("sns.") and host.endswith(self.cert_host_suffix)

    def verify(self, request: WebhookRequest) -> bool:
        if self.bypass:
            logger.warning("signatures.sns_bypassed")
            return True
        try:
            payload = request.json()
        except (ValueError, TypeError):
            logger.error("signatures.sns_invalid_json")
            return False
        if not isinstance(payload, dict):
            return False
        return self.verify_payload(payload)

    def verify_payload(self, payload: Dict[str, Any]) -> bool:
        signature = payload.get("Signature")
        cert_url = payload.get("SigningCertURL")
        if not signature or not cert_url:
            logger.error("signatures.sns_missing_fields")
            return False

        if not self.is_allowed_cert_url(cert_url):
            logger.error("signatures.sns_cert_url_rejected", extra={"cert_url": cert_url})
            return False

        algorithm = hashes.SHA256() if str(payload.get("SignatureVersion", "1")) == "2" else hashes.SHA1()
        string_to_sign = build_string_to_sign(payload).encode("utf-8")

        try:
            signature_bytes = base64.b64decode(signature, validate=True)
            cert = x509.load_pem_x509_certificate(self.fetcher(cert_url))
            cert.public_key().verify(signature_bytes, string_to_sign, padding.PKCS1v15(), algorithm)
        except InvalidSignature:
            logger.error(
                "signatures.sns_mismatch",
                extra={"message_id": payload.get("MessageId"), "type": payload.get("Type")},
            )
            return False
        except (requests.RequestException, ValueError, binascii.Error) as e:
            logger.error("signatures.sns_error", extra={"error": str(e)})
            return False

        return True


class TwilioSignatureVerifier:
    def __init__(self, auth_token: Optional[str], bypass: bool = False):
        self.validator = RequestValidator(auth_token) if auth_token else None
        self.bypass = bypass

    def verify(self, request: WebhookRequest) -> bool:
        if self.bypass:
            logger.warning("signatures.twilio_bypassed")
            return True

        signature = request.headers.get("x-twilio-signature")
        if not signature or self.validator is None:
            logger.error(
                "signatures.twilio_missing",
                extra={"has_signature": bool(signature), "has_auth_token": self.validator is not None},
            )
            return False

        valid = self.validator.validate(request.url, request.form(), signature)
        if not valid:
            logger.error("signatures.twilio_mismatch", extra={"url": request.url})
        return valid
