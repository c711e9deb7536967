"""
Budget command parser.

Turns the free text of an inbound SMS into one of three intents:
``SetBudget(amount)``, ``Command(STOP|START|HELP)`` or ``Invalid(text)``.
Pure and side-effect free.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from moony_sms.models import Command, CommandKind, Invalid, ParsedIntent, SetBudget

MIN_BUDGET = 100
MAX_BUDGET = 100000

STOP_WORDS = frozenset({"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
START_WORDS = frozenset({"START", "YES", "UNSTOP"})
HELP_WORDS = frozenset({"HELP", "INFO"})

_LEADING_PHRASE = re.compile(r"^(budget|goal|limit|set|my budget is|i want|make it)", re.IGNORECASE)
_STRIP_CHARS = re.compile(r"[,$]")

# Tried in order; the first match inside the accepted range wins.
AMOUNT_PATTERNS = (
    re.compile(r"^(\d+)$"),
    re.compile(r"^(\d{1,3}(?:,?\d{3})*)$"),
    re.compile(r"^(\d+(?:\.\d{2})?)$"),
    # Permissive: any 3-6 digit run anywhere, so "set 2500 please" works. It will
    # also pick digits out of unrelated text such as dates; kept pending product review.
    re.compile(r"(\d{3,6})"),
)

WRITTEN_AMOUNTS = (
    ("one thousand", 1000),
    ("two thousand", 2000),
    ("three thousand", 3000),
    ("four thousand", 4000),
    ("five thousand", 5000),
    ("fifteen hundred", 1500),
    ("twenty five hundred", 2500),
)


def _command(text: str) -> Optional[CommandKind]:
    word = text.strip().upper()
    if word in STOP_WORDS:
        return CommandKind.STOP
    if word in START_WORDS:
        return CommandKind.START
    if word in HELP_WORDS:
        return CommandKind.HELP
    return None


def _clean(text: str) -> str:
    cleaned = _LEADING_PHRASE.sub("", text.strip().lower())
    return _STRIP_CHARS.sub("", cleaned).strip()


def _whole_dollars(raw: str) -> Optional[int]:
    try:
        amount = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    if not MIN_BUDGET <= amount <= MAX_BUDGET:
        return None
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse(text: Optional[str]) -> ParsedIntent:
    raw = text or ""

    kind = _command(raw)
    if kind is not None:
        return Command(kind)

    cleaned = _clean(raw)

    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(cleaned)
        if not match:
            continue
        amount = _whole_dollars(match.group(1))
        if amount is not None:
            return SetBudget(amount)

    for phrase, value in WRITTEN_AMOUNTS:
        if phrase in cleaned:
            return SetBudget(value)

    return Invalid(raw)
