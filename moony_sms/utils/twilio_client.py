# utils/twilio_client.py

from typing import Any, Dict, Optional, Tuple

from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from moony_sms.exceptions import ConfigurationError
from moony_sms.utils.logger import get_logger
from moony_sms.utils.secrets import get_secret_json

logger = get_logger("twilio_client")

TWILIO_TIMEOUT_SECONDS = 10


def load_twilio_conf(secret_name: Optional[str], region_name: str, secrets_client: Any = None) -> Dict[str, Any]:
    """
    Read Twilio credentials from Secrets Manager and normalise key names.

    Returns a dict with ``account_sid``, ``auth_token`` and an optional
    ``messaging_service_sid`` (the pooled sender, preferred over a raw number).
    """
    secrets = get_secret_json(secret_name, region_name, client=secrets_client)

    account_sid = secrets.get("account_sid")
    auth_token = secrets.get("auth_token")
    # Support both "messaging_service_sid" and legacy "msid"
    messaging_service_sid = secrets.get("messaging_service_sid") or secrets.get("msid")

    missing = [
        name
        for name, value in [
            ("account_sid", account_sid),
            ("auth_token", auth_token),
        ]
        if not value
    ]

    if missing:
        logger.error("twilio.secrets_missing", extra={"missing": missing})
        raise ConfigurationError(f"Missing Twilio secrets: {', '.join(missing)}")

    return {
        "account_sid": account_sid,
        "auth_token": auth_token,
        "messaging_service_sid": messaging_service_sid,
    }


def build_client(conf: Dict[str, Any]) -> Tuple[TwilioClient, Dict[str, Any]]:
    """
    Build a Twilio REST client whose HTTP calls time out instead of hanging.

    Returns:
        (client, conf) where conf is passed through unchanged.
    """
    http_client = TwilioHttpClient(timeout=TWILIO_TIMEOUT_SECONDS)
    client = TwilioClient(conf["account_sid"], conf["auth_token"], http_client=http_client)
    logger.info(
        "twilio.client_initialized",
        extra={"has_messaging_service_sid": bool(conf.get("messaging_service_sid"))},
    )
    return client, conf
