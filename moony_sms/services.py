"""
Wiring.

Lambda containers are reused across invocations, so clients and stores are
built once per container by ``get_services()`` and shared by every handler.
"""

from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.config import Config

from moony_sms.config import Settings, load_settings
from moony_sms.destinations import build_destination_policy
from moony_sms.directory import AnalyticsSnapshots, UserDirectory
from moony_sms.goals import GoalStore
from moony_sms.jobs import AnalyticsFallbackJob, DailyTargetJob
from moony_sms.metrics import CloudWatchMetrics, NullMetrics
from moony_sms.orchestrator import InboundOrchestrator
from moony_sms.outbound import AwsSmsMessenger, RetryingMessenger, TwilioSmsMessenger
from moony_sms.queues import AnalyticsTrigger, InboundQueue
from moony_sms.signatures import SnsSignatureVerifier, TwilioSignatureVerifier
from moony_sms.utils.idempotency import IdempotencyGuard
from moony_sms.utils.logger import get_logger
from moony_sms.utils.twilio_client import build_client, load_twilio_conf
from moony_sms.welcome import WelcomeMessenger

logger = get_logger("services")

AWS_CLIENT_CONFIG = Config(connect_timeout=5, read_timeout=10, retries={"max_attempts": 2})


@dataclass
class Services:
    settings: Settings
    directory: UserDirectory
    goals: GoalStore
    analytics: AnalyticsSnapshots
    idempotency: IdempotencyGuard
    metrics: Any
    messenger: RetryingMessenger
    inbound_queue: InboundQueue
    analytics_trigger: AnalyticsTrigger
    orchestrator: InboundOrchestrator
    welcome: WelcomeMessenger
    daily_job: DailyTargetJob
    fallback_job: AnalyticsFallbackJob
    sns_verifier: SnsSignatureVerifier
    twilio_verifier: TwilioSignatureVerifier


def build_services(settings: Settings) -> Services:
    def aws(name: str) -> Any:
        return boto3.client(name, region_name=settings.aws_region, config=AWS_CLIENT_CONFIG)

    dynamodb = aws("dynamodb")
    sqs = aws("sqs")

    directory = UserDirectory(settings.users_table, client=dynamodb)
    goals = GoalStore(settings.goals_table, client=dynamodb, month_start_day=settings.month_start_day)
    analytics = AnalyticsSnapshots(settings.analytics_table, client=dynamodb)
    idempotency = IdempotencyGuard(settings.idempotency_table, client=dynamodb)

    metrics = CloudWatchMetrics(aws("cloudwatch"), settings.metrics_namespace) if settings.metrics_enabled else NullMetrics()

    twilio_conf = None
    if settings.twilio_secret_name:
        twilio_conf = load_twilio_conf(
            settings.twilio_secret_name,
            settings.aws_region,
            secrets_client=aws("secretsmanager"),
        )

    policy = build_destination_policy(settings.destination_policy, settings.aws_simulator_destination)

    if settings.sms_provider == "twilio":
        twilio_client, conf = build_client(twilio_conf)
        backend = TwilioSmsMessenger(
            twilio_client,
            from_number=settings.twilio_phone_number,
            messaging_service_sid=conf.get("messaging_service_sid"),
            status_callback=settings.twilio_status_webhook_url,
            destination_policy=policy,
            directory=directory,
            metrics=metrics,
            sandbox=settings.twilio_sandbox_mode,
        )
    else:
        backend = AwsSmsMessenger(
            aws("pinpoint-sms-voice-v2"),
            origination_number=settings.aws_phone_number,
            destination_policy=policy,
            directory=directory,
            metrics=metrics,
            sandbox=settings.aws_sandbox_mode,
        )
    messenger = RetryingMessenger(backend, max_attempts=settings.send_max_attempts)
    trigger = AnalyticsTrigger(settings.analytics_queue_url, client=sqs)

    bypass = settings.signature_bypass_enabled
    if bypass:
        logger.warning("services.signature_bypass_enabled", extra={"app_env": settings.app_env})

    logger.info(
        "services.initialized",
        extra={
            "app_env": settings.app_env,
            "sms_provider": settings.sms_provider,
            "destination_policy": settings.destination_policy,
            "metrics_enabled": settings.metrics_enabled,
        },
    )

    return Services(
        settings=settings,
        directory=directory,
        goals=goals,
        analytics=analytics,
        idempotency=idempotency,
        metrics=metrics,
        messenger=messenger,
        inbound_queue=InboundQueue(settings.inbound_queue_url, client=sqs),
        analytics_trigger=trigger,
        orchestrator=InboundOrchestrator(
            directory,
            goals,
            analytics,
            messenger,
            idempotency,
            support_email=settings.support_email,
            timezone_name=settings.scheduler_timezone,
        ),
        welcome=WelcomeMessenger(directory, analytics, messenger, timezone_name=settings.scheduler_timezone),
        daily_job=DailyTargetJob(
            directory,
            goals,
            analytics,
            messenger,
            idempotency,
            send_time=settings.daily_sms_time,
            timezone_name=settings.scheduler_timezone,
        ),
        fallback_job=AnalyticsFallbackJob(directory, analytics, trigger, idempotency),
        sns_verifier=SnsSignatureVerifier(settings.sns_cert_host_suffix, bypass=bypass),
        twilio_verifier=TwilioSignatureVerifier(twilio_conf["auth_token"] if twilio_conf else None, bypass=bypass),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Build once per container; later invocations reuse the same clients."""
    global _services
    if _services is None:
        _services = build_services(load_settings())
    return _services
