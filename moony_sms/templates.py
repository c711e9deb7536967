"""
SMS copy.

Templates use ``str.format`` placeholders. A literal dollar sign sits in
front of currency placeholders, so values are passed through
``format_currency`` first (``"$" + "3,000"``).
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Tuple

from moony_sms.utils.logger import get_logger

logger = get_logger("templates")


@dataclass(frozen=True)
class MessageTemplate:
    id: str
    name: str
    template: str
    variables: Tuple[str, ...] = ()


BUDGET_CONFIRMATION = MessageTemplate(
    id="budget_confirmation",
    name="Budget Set Confirmation",
    template=(
        "moony\n\n"
        "✅ Perfect! Your ${monthly_budget} monthly budget is all set.\n\n"
        "\U0001F3AF Today's spending target: ${daily_target}\n"
        "Progress: ${current_spending} spent of ${monthly_budget}\n\n"
        "You'll get a daily text like this each morning to help you stay on track. "
        "Your budget resets on the 1st of every month.\n\n"
        "Reply STOP to opt out anytime."
    ),
    variables=("monthly_budget", "daily_target", "current_spending"),
)

BUDGET_UPDATE_CONFIRMATION = MessageTemplate(
    id="budget_update",
    name="Budget Updated",
    template=(
        "moony\n\n"
        "✅ Budget updated to ${monthly_budget} for {current_month_name}.\n\n"
        "\U0001F3AF New daily target: ${daily_target}\n"
        "Progress: ${current_spending} spent of ${monthly_budget}"
    ),
    variables=("monthly_budget", "current_month_name", "daily_target", "current_spending"),
)

INVALID_BUDGET = MessageTemplate(
    id="invalid_budget",
    name="Invalid Budget Entry",
    template=(
        "moony\n\n"
        "I didn't understand that amount. Please reply with just a number (like 2000 or 3500)."
    ),
)

HELP = MessageTemplate(
    id="help",
    name="Help",
    template=(
        "moony Help:\n\n"
        "Reply with a number to set your monthly budget (ex: 2000)\n"
        "Reply STOP to unsubscribe\n"
        "Reply START to resubscribe\n\n"
        "For support: {support_email}"
    ),
    variables=("support_email",),
)

OPT_OUT_CONFIRMATION = MessageTemplate(
    id="opt_out_confirmation",
    name="Opt Out Confirmation",
    template=(
        "moony\n\n"
        "You've been unsubscribed from daily spending updates.\n\n"
        'To restart, text "START" anytime.'
    ),
)

OPT_IN_CONFIRMATION = MessageTemplate(
    id="opt_in_confirmation",
    name="Opt In Confirmation",
    template=(
        "moony\n\n"
        "Welcome back! Your daily spending updates will resume tomorrow morning.\n\n"
        "\U0001F4B0 {current_month_name} so far: ${current_spending} of ${monthly_budget}"
    ),
    variables=("current_month_name", "current_spending", "monthly_budget"),
)

OPT_IN_NO_GOAL = MessageTemplate(
    id="opt_in_no_goal",
    name="Opt In Confirmation Without Goal",
    template=(
        "moony\n\n"
        "Welcome back! Reply with a number to set your monthly budget (ex: 2000)."
    ),
)

DAILY_UPDATE = MessageTemplate(
    id="daily_update",
    name="Daily Target",
    template=(
        "moony\n\n"
        "☀️ Good Morning {first_name}!\n\n"
        "\U0001F3AF Today's spending target: ${daily_target}\n"
        "Progress {current_month_name}: ${current_spending} spent of ${monthly_budget}\n\n"
        "Recent purchases may take a day to show\n\n"
        "Reply STOP to opt out"
    ),
    variables=("first_name", "daily_target", "current_month_name", "current_spending", "monthly_budget"),
)

WELCOME_FULL_DATA = MessageTemplate(
    id="welcome_full_data",
    name="Welcome with Full Analytics",
    template=(
        "moony\n\n"
        "\U0001F44B Welcome {first_name}!\n\n"
        "I'll help you stay on track with daily spending guidance. "
        "First, let's see your spending pattern:\n\n"
        "\U0001F4C5 {two_months_ago_name}: ${two_months_ago_amount}\n"
        "\U0001F4C5 {last_month_name}: ${last_month_amount}\n"
        "\U0001F4B0 {current_month_name} so far: ${current_month_amount}\n\n"
        "What's your spending goal for this month? Just reply with a number (ex: 2000)."
    ),
    variables=(
        "first_name",
        "two_months_ago_name",
        "two_months_ago_amount",
        "last_month_name",
        "last_month_amount",
        "current_month_name",
        "current_month_amount",
    ),
)

WELCOME_PARTIAL_DATA = MessageTemplate(
    id="welcome_partial_data",
    name="Welcome with Current Month Only",
    template=(
        "moony\n\n"
        "\U0001F44B Welcome {first_name}!\n\n"
        "I'll help you stay on track with daily spending guidance.\n\n"
        "\U0001F4B0 So far in {current_month_name}: ${current_month_amount}\n\n"
        "What's your spending goal for this month? Just reply with a number (ex: 2000)."
    ),
    variables=("first_name", "current_month_name", "current_month_amount"),
)

WELCOME_NO_DATA = MessageTemplate(
    id="welcome_no_data",
    name="Welcome with No Analytics",
    template=(
        "moony\n\n"
        "\U0001F44B Welcome {first_name}!\n\n"
        "I'll help you stay on track with daily spending guidance.\n\n"
        "What's your spending goal for {current_month_name}? Just reply with a number (ex: 2000)."
    ),
    variables=("first_name", "current_month_name"),
)

RECONNECTED = MessageTemplate(
    id="reconnected",
    name="Account Reconnected",
    template=(
        "moony\n\n"
        "✅ Your accounts are reconnected!\n\n"
        "\U0001F4B0 {current_month_name} so far: ${current_month_amount}\n\n"
        "Your daily spending guidance will resume tomorrow morning."
    ),
    variables=("current_month_name", "current_month_amount"),
)


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def format_currency(amount: Any) -> str:
    """Whole dollars with thousands separators, sign dropped: 2999.5 -> '3,000'."""
    try:
        number = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        return "0"
    if not number.is_finite():
        return "0"
    whole = abs(number).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{int(whole):,}"


def render(template: MessageTemplate, variables: Dict[str, Any]) -> str:
    missing = [name for name in template.variables if variables.get(name) is None]
    if missing:
        logger.warning("templates.missing_variables", extra={"template_id": template.id, "missing": missing})

    values = _KeepMissing({k: v for k, v in variables.items() if v is not None})
    return template.template.format_map(values)
