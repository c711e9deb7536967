import json
from typing import Any, Dict, Optional

import boto3

from moony_sms.exceptions import ConfigurationError
from moony_sms.utils.logger import get_logger

logger = get_logger("secrets")


def get_secret_json(secret_name: Optional[str], region_name: str, client: Any = None) -> Dict[str, Any]:
    """
    Fetch a JSON secret from AWS Secrets Manager.

    The Twilio secret is expected to look like:

        {
          "account_sid": "...",
          "auth_token": "...",
          "messaging_service_sid": "MG..."   # or legacy "msid"
        }
    """
    if not secret_name:
        msg = "Missing required environment variables: TWILIO_SECRET_NAME"
        logger.error(msg)
        raise ConfigurationError(msg)

    logger.info(
        "secrets.fetch",
        extra={"secret_name": secret_name, "region": region_name},
    )

    client = client or boto3.client("secretsmanager", region_name=region_name)

    resp = client.get_secret_value(SecretId=secret_name)
    secret_str = resp.get("SecretString")

    if not secret_str:
        msg = f"Secret '{secret_name}' has no SecretString payload"
        logger.error(msg)
        raise ConfigurationError(msg)

    try:
        data = json.loads(secret_str)
    except json.JSONDecodeError as e:
        logger.error(
            "secrets.invalid_json",
            extra={"secret_name": secret_name, "error": str(e)},
        )
        raise ConfigurationError(f"Secret '{secret_name}' is not valid JSON") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Secret '{secret_name}' must be a JSON object")

    return data
