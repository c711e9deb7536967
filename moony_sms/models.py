"""Domain types shared by the SMS core."""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class OptOutStatus(str, Enum):
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"


class MessageType(str, Enum):
    TRANSACTIONAL = "TRANSACTIONAL"
    PROMOTIONAL = "PROMOTIONAL"


class CommandKind(str, Enum):
    STOP = "STOP"
    START = "START"
    HELP = "HELP"


@dataclass
class User:
    id: str
    phone_number: str
    phone_verified: bool = False
    is_active: bool = True
    opt_out_status: OptOutStatus = OptOutStatus.OPTED_IN
    first_name: Optional[str] = None
    currency: str = "USD"
    last_message_id: Optional[str] = None
    last_message_sent_at: Optional[datetime] = None
    bank_linked_at: Optional[datetime] = None

    @property
    def is_opted_in(self) -> bool:
        return self.opt_out_status == OptOutStatus.OPTED_IN


@dataclass
class SpendingGoal:
    id: str
    user_id: str
    monthly_limit: Decimal
    period_start: date
    period_end: date
    is_active: bool
    created_at: datetime
    month_start_day: int = 1


@dataclass
class SpendingAnalytics:
    user_id: str
    current_month_spending: Decimal = Decimal("0")
    average_monthly_spending: Decimal = Decimal("0")
    last_month_spending: Decimal = Decimal("0")
    two_months_ago_spending: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


@dataclass
class InboundMessage:
    from_number: str
    to_number: str
    body: str
    provider_message_id: str
    received_at: datetime
    provider: str = "aws"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["received_at"] = self.received_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundMessage":
        return cls(
            from_number=data["from_number"],
            to_number=data.get("to_number") or "",
            body=data.get("body") or "",
            provider_message_id=data["provider_message_id"],
            received_at=datetime.fromisoformat(data["received_at"]),
            provider=data.get("provider", "aws"),
        )


# Parsed intents: a tagged union of three small value types.

@dataclass(frozen=True)
class SetBudget:
    amount: int


@dataclass(frozen=True)
class Command:
    kind: CommandKind


@dataclass(frozen=True)
class Invalid:
    raw_text: str


ParsedIntent = Union[SetBudget, Command, Invalid]


@dataclass
class OutboundMessage:
    to: str
    body: str
    message_type: MessageType = MessageType.TRANSACTIONAL
    user_id: Optional[str] = None


@dataclass
class OutboundResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    sandbox_skipped: bool = False
    opted_out: bool = False
    error_code: Optional[str] = None


@dataclass
class JobResult:
    total_users: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
