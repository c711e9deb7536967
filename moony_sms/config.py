import os
import re
from dataclasses import dataclass
from datetime import time
from typing import Mapping, Optional

from moony_sms.exceptions import ConfigurationError
from moony_sms.utils.logger import get_logger

logger = get_logger("config")

NON_PRODUCTION_ENVS = frozenset({"local", "development", "test"})
KNOWN_ENVS = NON_PRODUCTION_ENVS | {"staging", "production"}

DEFAULT_DAILY_TIME = time(8, 0)
_HH_MM = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class Settings:
    app_env: str
    aws_region: str
    sms_provider: str

    users_table: str
    goals_table: str
    analytics_table: str
    idempotency_table: str
    inbound_queue_url: str
    analytics_queue_url: str

    aws_phone_number: str
    aws_sandbox_mode: bool
    aws_use_simulator_override: bool
    aws_simulator_destination: str
    destination_policy: str

    twilio_secret_name: Optional[str]
    twilio_phone_number: Optional[str]
    twilio_status_webhook_url: Optional[str]
    twilio_sandbox_mode: bool

    skip_signature_verification: bool
    sns_cert_host_suffix: str

    daily_sms_time: time
    scheduler_timezone: str
    month_start_day: int
    send_max_attempts: int

    metrics_enabled: bool
    metrics_namespace: str
    support_email: str

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def signature_bypass_enabled(self) -> bool:
        # The flag alone is not enough; the environment must say it is not production.
        return self.skip_signature_verification and self.app_env in NON_PRODUCTION_ENVS


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int(env: Mapping[str, str], name: str, default: int, low: int, high: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"Invalid {name}='{raw}'. Must be an integer."
        logger.error(msg)
        raise ConfigurationError(msg)
    if not low <= value <= high:
        msg = f"Invalid {name}='{raw}'. Must be between {low} and {high}."
        logger.error(msg)
        raise ConfigurationError(msg)
    return value


def parse_daily_time(raw: Optional[str]) -> time:
    """Parse ``HH:mm``; anything unparseable falls back to 08:00 with a warning."""
    if not raw:
        return DEFAULT_DAILY_TIME
    match = _HH_MM.match(raw.strip())
    if not match:
        logger.warning("config.invalid_daily_time", extra={"value": raw, "fallback": "08:00"})
        return DEFAULT_DAILY_TIME
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        logger.warning("config.out_of_range_daily_time", extra={"value": raw, "fallback": "08:00"})
        return DEFAULT_DAILY_TIME
    return time(hours, minutes)


def _default_destination_policy(sandbox: bool, override: bool) -> str:
    if sandbox and override:
        return "redirect"
    if sandbox:
        return "reject"
    return "identity"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Raises ConfigurationError naming every missing required variable.
    """
    env = os.environ if environ is None else environ

    required = [
        "USERS_TABLE",
        "GOALS_TABLE",
        "ANALYTICS_TABLE",
        "IDEMPOTENCY_TABLE",
        "INBOUND_QUEUE_URL",
        "ANALYTICS_QUEUE_URL",
    ]
    missing = [name for name in required if not env.get(name)]

    sms_provider = (env.get("SMS_PROVIDER") or "aws").strip().lower()
    if sms_provider not in ("aws", "twilio"):
        msg = f"Invalid SMS_PROVIDER='{sms_provider}'. Must be 'aws' or 'twilio'."
        logger.error(msg)
        raise ConfigurationError(msg)
    if sms_provider == "twilio" and not env.get("TWILIO_SECRET_NAME"):
        missing.append("TWILIO_SECRET_NAME")

    if missing:
        msg = f"Missing required environment variables: {', '.join(missing)}"
        logger.error(msg)
        raise ConfigurationError(msg)

    app_env = (env.get("APP_ENV") or "production").strip().lower()
    if app_env not in KNOWN_ENVS:
        msg = f"Invalid APP_ENV='{app_env}'. Must be one of {', '.join(sorted(KNOWN_ENVS))}."
        logger.error(msg)
        raise ConfigurationError(msg)

    sandbox = _flag(env, "AWS_SANDBOX_MODE", True)
    override = _flag(env, "AWS_USE_SIMULATOR_OVERRIDE", False)
    destination_policy = (
        env.get("DESTINATION_POLICY") or _default_destination_policy(sandbox, override)
    ).strip().lower()
    if destination_policy not in ("identity", "redirect", "reject"):
        msg = f"Invalid DESTINATION_POLICY='{destination_policy}'."
        logger.error(msg)
        raise ConfigurationError(msg)

    settings = Settings(
        app_env=app_env,
        aws_region=env.get("AWS_REGION") or "us-east-1",
        sms_provider=sms_provider,
        users_table=env["USERS_TABLE"],
        goals_table=env["GOALS_TABLE"],
        analytics_table=env["ANALYTICS_TABLE"],
        idempotency_table=env["IDEMPOTENCY_TABLE"],
        inbound_queue_url=env["INBOUND_QUEUE_URL"],
        analytics_queue_url=env["ANALYTICS_QUEUE_URL"],
        aws_phone_number=env.get("AWS_PHONE_NUMBER") or "+12065559457",
        aws_sandbox_mode=sandbox,
        aws_use_simulator_override=override,
        aws_simulator_destination=env.get("AWS_SIMULATOR_DESTINATION") or "+14254147755",
        destination_policy=destination_policy,
        twilio_secret_name=env.get("TWILIO_SECRET_NAME") or None,
        twilio_phone_number=env.get("TWILIO_PHONE_NUMBER") or None,
        twilio_status_webhook_url=env.get("TWILIO_STATUS_WEBHOOK_URL") or None,
        twilio_sandbox_mode=_flag(env, "TWILIO_SANDBOX_MODE", False),
        skip_signature_verification=_flag(env, "SKIP_SIGNATURE_VERIFICATION", False),
        sns_cert_host_suffix=env.get("SNS_CERT_HOST_SUFFIX") or ".amazonaws.com",
        daily_sms_time=parse_daily_time(env.get("DAILY_SMS_TIME")),
        scheduler_timezone=env.get("SCHEDULER_TIMEZONE") or "UTC",
        month_start_day=_int(env, "MONTH_START_DAY", 1, 1, 28),
        send_max_attempts=_int(env, "SEND_MAX_ATTEMPTS", 3, 1, 10),
        metrics_enabled=_flag(env, "METRICS_ENABLED", True),
        metrics_namespace=env.get("METRICS_NAMESPACE") or "Moony/SMS",
        support_email=env.get("SUPPORT_EMAIL") or "support@moony.app",
    )

    if settings.aws_sandbox_mode and settings.sms_provider == "aws":
        logger.warning(
            "config.sandbox_mode",
            extra={"app_env": settings.app_env, "destination_policy": settings.destination_policy},
        )
    if settings.skip_signature_verification and not settings.signature_bypass_enabled:
        logger.warning("config.signature_bypass_ignored", extra={"app_env": settings.app_env})

    return settings
