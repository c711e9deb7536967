"""
Scheduled jobs.

Both jobs are driven by EventBridge and must tolerate missed, repeated and
overlapping ticks. State that survives restarts lives in the idempotency
table:

- ``job-lock:<job>``: single-flight lock while a run is in progress.
- ``daily-complete:<date>``: the daily run for that local date is done.
- ``daily-sent:<user>:<date>``: the daily text went out to that user.
- ``analytics-retrigger:<user>``: cooldown between analytics re-requests.
"""

import calendar
import time as _time
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Iterator, List, Optional
from zoneinfo import ZoneInfo

from moony_sms.models import JobResult, MessageType, OutboundMessage, OutboundResult, User
from moony_sms.targets import calculate_period_aware_daily_target
from moony_sms.templates import DAILY_UPDATE, format_currency, render
from moony_sms.utils.logger import get_logger

logger = get_logger("jobs")

DAILY_JOB = "daily-target"
FALLBACK_JOB = "analytics-fallback"

DAILY_LOCK_TTL_SECONDS = 15 * 60
FALLBACK_LOCK_TTL_SECONDS = 2 * 60
DAILY_MARKER_TTL_SECONDS = 36 * 60 * 60

ANALYTICS_GRACE = timedelta(minutes=5)
RETRIGGER_COOLDOWN_SECONDS = 15 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def single_flight(guard: Any, job_name: str, ttl_secs: int) -> Iterator[bool]:
    """
    Yield True if this caller holds the job lock, False if another run does.

    The lock carries a TTL so a crashed run cannot block the job forever.
    """
    key = f"job-lock:{job_name}"
    acquired = guard.claim(key, ttl_secs)
    if not acquired:
        logger.info("jobs.already_running", extra={"job": job_name})
    try:
        yield acquired
    finally:
        if acquired:
            guard.release(key)


class DailyTargetJob:
    def __init__(
        self,
        directory: Any,
        goals: Any,
        analytics: Any,
        messenger: Any,
        idempotency: Any,
        send_time: time = time(8, 0),
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = _time.sleep,
    ):
        self.directory = directory
        self.goals = goals
        self.analytics = analytics
        self.messenger = messenger
        self.idempotency = idempotency
        self.send_time = send_time
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self.sleep = sleep

    def _local(self, now: Optional[datetime]) -> datetime:
        return (now or self.clock()).astimezone(self.tz)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        local = self._local(now)
        if local.time() < self.send_time:
            return False
        return not self.idempotency.is_claimed(f"daily-complete:{local.date().isoformat()}")

    def run_if_due(self, now: Optional[datetime] = None) -> Optional[JobResult]:
        """Run only once the local send time has passed and today's run is not done yet."""
        if not self.is_due(now):
            logger.debug("jobs.daily.not_due")
            return None
        return self.run(now)

    def run(self, now: Optional[datetime] = None) -> Optional[JobResult]:
        """
        Text every messageable user their daily target.

        Returns None without sending when another run holds the lock.
        """
        local = self._local(now)
        with single_flight(self.idempotency, DAILY_JOB, DAILY_LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                return None
            result = self._run(local)

        self.idempotency.claim(f"daily-complete:{local.date().isoformat()}", DAILY_MARKER_TTL_SECONDS)
        logger.info("jobs.daily.completed", extra=result.to_dict())
        return result

    def _build_message(self, user: User, local: datetime) -> Optional[OutboundMessage]:
        goal = self.goals.get_active_goal(user.id)
        if goal is None:
            logger.debug("jobs.daily.no_goal", extra={"user_id": user.id})
            return None

        snapshot = self.analytics.get(user.id)
        if snapshot is None:
            logger.info("jobs.daily.no_analytics", extra={"user_id": user.id})
            return None

        target = calculate_period_aware_daily_target(
            goal.monthly_limit,
            snapshot.current_month_spending,
            goal.period_start,
            goal.period_end,
            local.date(),
        )
        body = render(
            DAILY_UPDATE,
            {
                "first_name": user.first_name or "there",
                "daily_target": format_currency(target),
                "current_month_name": calendar.month_name[local.month],
                "current_spending": format_currency(snapshot.current_month_spending),
                "monthly_budget": format_currency(goal.monthly_limit),
            },
        )
        return OutboundMessage(to=user.phone_number, body=body, message_type=MessageType.TRANSACTIONAL, user_id=user.id)

    def _run(self, local: datetime) -> JobResult:
        today = local.date().isoformat()
        result = JobResult()
        pending: List[OutboundMessage] = []

        for user in self.directory.iter_messageable_users():
            result.total_users += 1
            try:
                message = self._build_message(user, local)
            except Exception as e:
                logger.exception("jobs.daily.user_failed", extra={"user_id": user.id})
                result.failure_count += 1
                result.errors.append({"user_id": user.id, "error": str(e)})
                continue
            if message is None:
                result.skipped_count += 1
                continue
            pending.append(message)

        # Markers are claimed one user at a time, right before that user's send,
        # so a run cut short leaves nobody marked as texted who was not.
        spacing = getattr(self.messenger, "spacing", 0)
        for index, message in enumerate(pending):
            if index:
                self.sleep(spacing)
            self._send_one(message, f"daily-sent:{message.user_id}:{today}", result)

        return result

    def _send_one(self, message: OutboundMessage, sent_key: str, result: JobResult) -> None:
        if not self.idempotency.claim(sent_key, DAILY_MARKER_TTL_SECONDS):
            # Already texted today by an earlier, interrupted run.
            result.skipped_count += 1
            return

        outcome: Optional[OutboundResult] = None
        try:
            outcome = self.messenger.send(message.to, message.body, message.message_type, message.user_id)
        except Exception as e:
            logger.exception("jobs.daily.send_failed", extra={"user_id": message.user_id})
            result.failure_count += 1
            result.errors.append({"user_id": message.user_id or "", "error": str(e)})
            return
        finally:
            if outcome is None or not outcome.success:
                # Let a later tick try this user again.
                self.idempotency.release(sent_key)

        if outcome.success:
            result.success_count += 1
        elif outcome.sandbox_skipped or outcome.opted_out:
            result.skipped_count += 1
        else:
            result.failure_count += 1
            result.errors.append({"user_id": message.user_id or "", "error": outcome.error or "send failed"})


class AnalyticsFallbackJob:
    """
    Re-requests analytics for users whose bank link never produced a snapshot.

    The analytics pipeline is normally triggered by its own webhook; this job
    covers deliveries that were missed.
    """

    def __init__(
        self,
        directory: Any,
        analytics: Any,
        trigger: Any,
        idempotency: Any,
        grace: timedelta = ANALYTICS_GRACE,
        cooldown_secs: int = RETRIGGER_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.directory = directory
        self.analytics = analytics
        self.trigger = trigger
        self.idempotency = idempotency
        self.grace = grace
        self.cooldown_secs = cooldown_secs
        self.clock = clock

    def needs_analytics(self, user: User, now: datetime) -> bool:
        linked = user.bank_linked_at
        if linked is None:
            return False
        if linked.tzinfo is None:
            linked = linked.replace(tzinfo=timezone.utc)
        if linked > now - self.grace:
            return False
        return self.analytics.get(user.id) is None

    def run(self, now: Optional[datetime] = None) -> Optional[JobResult]:
        now = now or self.clock()
        with single_flight(self.idempotency, FALLBACK_JOB, FALLBACK_LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                return None

            result = JobResult()
            for user in self.directory.iter_users():
                try:
                    if not self.needs_analytics(user, now):
                        continue
                    result.total_users += 1

                    cooldown_key = f"analytics-retrigger:{user.id}"
                    if not self.idempotency.claim(cooldown_key, self.cooldown_secs):
                        result.skipped_count += 1
                        continue

                    try:
                        self.trigger.request(user.id, reason="fallback")
                    except Exception:
                        self.idempotency.release(cooldown_key)
                        raise
                    result.success_count += 1
                except Exception as e:
                    logger.exception("jobs.fallback.user_failed", extra={"user_id": user.id})
                    result.failure_count += 1
                    result.errors.append({"user_id": user.id, "error": str(e)})

        if result.total_users:
            logger.info("jobs.fallback.completed", extra=result.to_dict())
        else:
            logger.debug("jobs.fallback.nothing_to_do")
        return result
