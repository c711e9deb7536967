"""Welcome SMS sent by the account system once a phone number is verified."""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Tuple
from zoneinfo import ZoneInfo

from moony_sms.models import MessageType, SpendingAnalytics, User
from moony_sms.templates import (
    RECONNECTED,
    WELCOME_FULL_DATA,
    WELCOME_NO_DATA,
    WELCOME_PARTIAL_DATA,
    MessageTemplate,
    format_currency,
    render,
)
from moony_sms.utils.logger import get_logger

logger = get_logger("welcome")

FULL_HISTORY = "full_history"
CURRENT_MONTH_ONLY = "current_month_only"
NO_DATA = "no_data"
RECONNECTION = "reconnection"


@dataclass
class WelcomeResult:
    success: bool
    scenario: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    sandbox_skipped: bool = False


def _months_back(today: date, count: int) -> int:
    return (today.month - 1 - count) % 12 + 1


def choose_scenario(snapshot: Optional[SpendingAnalytics]) -> str:
    if snapshot is None:
        return NO_DATA
    if snapshot.average_monthly_spending > 0 and snapshot.two_months_ago_spending > 0:
        return FULL_HISTORY
    if snapshot.current_month_spending > 0:
        return CURRENT_MONTH_ONLY
    return NO_DATA


class WelcomeMessenger:
    def __init__(
        self,
        directory: Any,
        analytics: Any,
        messenger: Any,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.directory = directory
        self.analytics = analytics
        self.messenger = messenger
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock

    def build_message(self, user: User, snapshot: Optional[SpendingAnalytics], scenario: str) -> Tuple[MessageTemplate, str]:
        today = self.clock().astimezone(self.tz).date()
        variables = {
            "first_name": user.first_name or "there",
            "current_month_name": calendar.month_name[today.month],
        }
        current = snapshot.current_month_spending if snapshot else Decimal("0")

        if scenario == RECONNECTION:
            template = RECONNECTED
            variables["current_month_amount"] = format_currency(current)
        elif scenario == FULL_HISTORY:
            template = WELCOME_FULL_DATA
            variables.update(
                two_months_ago_name=calendar.month_name[_months_back(today, 2)],
                two_months_ago_amount=format_currency(snapshot.two_months_ago_spending),
                last_month_name=calendar.month_name[_months_back(today, 1)],
                last_month_amount=format_currency(snapshot.last_month_spending),
                current_month_amount=format_currency(current),
            )
        elif scenario == CURRENT_MONTH_ONLY:
            template = WELCOME_PARTIAL_DATA
            variables["current_month_amount"] = format_currency(current)
        else:
            template = WELCOME_NO_DATA

        return template, render(template, variables)

    def send_welcome(self, user_id: str, is_reconnection: bool = False) -> WelcomeResult:
        user = self.directory.get(user_id)
        if user is None or not user.phone_number:
            logger.error("welcome.user_not_found", extra={"user_id": user_id})
            return WelcomeResult(success=False, scenario=NO_DATA, error="User not found")

        snapshot = self.analytics.get(user_id)
        scenario = RECONNECTION if is_reconnection else choose_scenario(snapshot)
        template, body = self.build_message(user, snapshot, scenario)

        result = self.messenger.send(user.phone_number, body, MessageType.TRANSACTIONAL, user_id)
        if result.success:
            logger.info(
                "welcome.sent",
                extra={"user_id": user_id, "scenario": scenario, "template_id": template.id, "message_id": result.message_id},
            )
        else:
            logger.error(
                "welcome.failed",
                extra={"user_id": user_id, "scenario": scenario, "error": result.error},
            )

        return WelcomeResult(
            success=result.success,
            scenario=scenario,
            message_id=result.message_id,
            error=result.error,
            sandbox_skipped=result.sandbox_skipped,
        )
