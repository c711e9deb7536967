"""
Inbound message orchestration.

One pass per inbound SMS: de-duplicate on the provider message id, look up
the sender, parse the text and run exactly one branch. Signature checks
happen before a message ever reaches this module.
"""

import calendar
from datetime import datetime, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from botocore.exceptions import BotoCoreError, ClientError

from moony_sms.models import (
    Command,
    CommandKind,
    InboundMessage,
    Invalid,
    MessageType,
    OptOutStatus,
    SetBudget,
    User,
)
from moony_sms.parser import parse
from moony_sms.targets import calculate_period_aware_daily_target
from moony_sms.templates import (
    BUDGET_CONFIRMATION,
    BUDGET_UPDATE_CONFIRMATION,
    HELP,
    INVALID_BUDGET,
    OPT_IN_CONFIRMATION,
    OPT_IN_NO_GOAL,
    OPT_OUT_CONFIRMATION,
    MessageTemplate,
    format_currency,
    render,
)
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

logger = get_logger("inbound")

INBOUND_CLAIM_TTL_SECONDS = 86400

# Outcomes returned by process_inbound_message.
DUPLICATE = "duplicate"
UNKNOWN_USER = "unknown_user"
OPTED_OUT = "opted_out"
OPTED_IN = "opted_in"
HELP_SENT = "help"
BUDGET_SET = "budget_set"
BUDGET_UPDATED = "budget_updated"
INVALID = "invalid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InboundOrchestrator:
    def __init__(
        self,
        directory: Any,
        goals: Any,
        analytics: Any,
        messenger: Any,
        idempotency: Any,
        support_email: str = "support@moony.app",
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.directory = directory
        self.goals = goals
        self.analytics = analytics
        self.messenger = messenger
        self.idempotency = idempotency
        self.support_email = support_email
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock

    def process_inbound_message(self, msg: InboundMessage) -> str:
        """
        Handle one inbound SMS and return the outcome name.

        Any exception propagates after the de-duplication claim is released,
        so a redelivery of the same message can try again.
        """
        claim_key = f"inbound:{msg.provider_message_id}"
        if not self.idempotency.claim(claim_key, INBOUND_CLAIM_TTL_SECONDS):
            logger.info(
                "inbound.duplicate",
                extra={"provider_message_id": msg.provider_message_id, "provider": msg.provider},
            )
            return DUPLICATE

        try:
            return self._process(msg)
        except Exception:
            self.idempotency.release(claim_key)
            raise

    def _process(self, msg: InboundMessage) -> str:
        logger.info(
            "inbound.received",
            extra={
                "from": mask_phone(msg.from_number),
                "to": mask_phone(msg.to_number),
                "provider_message_id": msg.provider_message_id,
                "provider": msg.provider,
                "body_length": len(msg.body),
            },
        )

        user = self.directory.find_by_phone(msg.from_number)
        if user is None:
            # Unknown numbers never get a reply.
            logger.warning("inbound.unknown_user", extra={"from": mask_phone(msg.from_number)})
            return UNKNOWN_USER

        intent = parse(msg.body)

        if isinstance(intent, Command):
            action = self._handle_command(user, intent.kind)
        elif isinstance(intent, SetBudget):
            action = self._handle_budget(user, intent.amount)
        else:
            action = self._handle_invalid(user, intent)

        logger.info(
            "inbound.processed",
            extra={"user_id": user.id, "action": action, "provider_message_id": msg.provider_message_id},
        )
        return action

    def _now_local(self) -> datetime:
        return self.clock().astimezone(self.tz)

    def _reply(self, user: User, template: MessageTemplate, **variables: Any) -> None:
        body = render(template, variables)
        result = self.messenger.send(user.phone_number, body, MessageType.TRANSACTIONAL, user.id)
        if not result.success:
            logger.error(
                "inbound.reply_failed",
                extra={
                    "user_id": user.id,
                    "template_id": template.id,
                    "error": result.error,
                    "retryable": result.retryable,
                },
            )

    def _current_spending(self, user_id: str) -> Any:
        # Read after the opt-in or goal write has committed; a redelivery must not repeat that write.
        try:
            snapshot = self.analytics.get(user_id)
        except (ClientError, BotoCoreError) as e:
            logger.warning("inbound.analytics_unavailable", extra={"user_id": user_id, "error": str(e)})
            return 0
        return snapshot.current_month_spending if snapshot else 0

    def _handle_command(self, user: User, kind: CommandKind) -> str:
        if kind == CommandKind.STOP:
            self.directory.set_opt_out_status(user.id, OptOutStatus.OPTED_OUT)
            self._reply(user, OPT_OUT_CONFIRMATION)
            return OPTED_OUT

        if kind == CommandKind.START:
            self.directory.set_opt_out_status(user.id, OptOutStatus.OPTED_IN)
            goal = self.goals.get_active_goal(user.id)
            if goal is None:
                self._reply(user, OPT_IN_NO_GOAL)
            else:
                spending = self._current_spending(user.id)
                self._reply(
                    user,
                    OPT_IN_CONFIRMATION,
                    current_month_name=calendar.month_name[self._now_local().month],
                    current_spending=format_currency(spending),
                    monthly_budget=format_currency(goal.monthly_limit),
                )
            return OPTED_IN

        self._reply(user, HELP, support_email=self.support_email)
        return HELP_SENT

    def _handle_budget(self, user: User, amount: int) -> str:
        now = self._now_local()
        previous = self.goals.get_active_goal(user.id)

        # Committed before any reply; a failed send below leaves the goal in place.
        goal = self.goals.set_goal(user.id, amount, now=now)

        spending = self._current_spending(user.id)
        daily_target = calculate_period_aware_daily_target(
            goal.monthly_limit, spending, goal.period_start, goal.period_end, now.date()
        )

        template = BUDGET_UPDATE_CONFIRMATION if previous is not None else BUDGET_CONFIRMATION
        self._reply(
            user,
            template,
            monthly_budget=format_currency(amount),
            daily_target=format_currency(daily_target),
            current_spending=format_currency(spending),
            current_month_name=calendar.month_name[now.month],
        )

        logger.info(
            "inbound.budget_saved",
            extra={
                "user_id": user.id,
                "monthly_limit": amount,
                "daily_target": daily_target,
                "previous_limit": str(previous.monthly_limit) if previous else None,
            },
        )
        return BUDGET_UPDATED if previous is not None else BUDGET_SET

    def _handle_invalid(self, user: User, intent: Invalid) -> str:
        logger.info("inbound.unparsed", extra={"user_id": user.id, "text_length": len(intent.raw_text)})
        self._reply(user, INVALID_BUDGET)
        return INVALID
