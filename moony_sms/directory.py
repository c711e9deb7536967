"""
DynamoDB-backed collaborators owned by the account and analytics systems.

The SMS core only reads users and snapshots and writes the handful of
messaging fields it is responsible for (opt-out status, last message).
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer

from moony_sms.models import OptOutStatus, SpendingAnalytics, User
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

logger = get_logger("directory")

PHONE_INDEX = "phone_number-index"

_deserializer = TypeDeserializer()


def _plain(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _user_from_item(item: Dict[str, Any]) -> User:
    data = _plain(item)
    return User(
        id=data["user_id"],
        phone_number=data.get("phone_number", ""),
        phone_verified=bool(data.get("phone_verified", False)),
        is_active=bool(data.get("is_active", True)),
        opt_out_status=OptOutStatus(data.get("opt_out_status", OptOutStatus.OPTED_IN.value)),
        first_name=data.get("first_name"),
        currency=data.get("currency", "USD"),
        last_message_id=data.get("last_message_id"),
        last_message_sent_at=_timestamp(data.get("last_message_sent_at")),
        bank_linked_at=_timestamp(data.get("bank_linked_at")),
    )


class UserDirectory:
    def __init__(self, table_name: str, client: Any = None):
        self.table_name = table_name
        self.client = client or boto3.client("dynamodb")

    def get(self, user_id: str) -> Optional[User]:
        resp = self.client.get_item(TableName=self.table_name, Key={"user_id": {"S": user_id}})
        item = resp.get("Item")
        return _user_from_item(item) if item else None

    def find_by_phone(self, phone_number: str) -> Optional[User]:
        """Only verified, active users are addressable by phone."""
        resp = self.client.query(
            TableName=self.table_name,
            IndexName=PHONE_INDEX,
            KeyConditionExpression="phone_number = :phone",
            ExpressionAttributeValues={":phone": {"S": phone_number}},
        )
        for item in resp.get("Items", []):
            user = _user_from_item(item)
            if user.phone_verified and user.is_active:
                return user

        logger.debug("directory.phone_not_found", extra={"phone": mask_phone(phone_number)})
        return None

    def iter_users(self) -> Iterator[User]:
        kwargs: Dict[str, Any] = {"TableName": self.table_name}
        while True:
            resp = self.client.scan(**kwargs)
            for item in resp.get("Items", []):
                yield _user_from_item(item)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    def iter_messageable_users(self) -> Iterator[User]:
        for user in self.iter_users():
            if user.phone_verified and user.is_active and user.is_opted_in:
                yield user

    def set_opt_out_status(self, user_id: str, status: OptOutStatus) -> None:
        self.client.update_item(
            TableName=self.table_name,
            Key={"user_id": {"S": user_id}},
            UpdateExpression="SET opt_out_status = :status, opt_out_updated_at = :now",
            ExpressionAttributeValues={
                ":status": {"S": status.value},
                ":now": {"S": datetime.now(timezone.utc).isoformat()},
            },
        )
        logger.info("directory.opt_out_status", extra={"user_id": user_id, "status": status.value})

    def record_last_message(self, user_id: str, message_id: str, sent_at: Optional[datetime] = None) -> None:
        sent_at = sent_at or datetime.now(timezone.utc)
        self.client.update_item(
            TableName=self.table_name,
            Key={"user_id": {"S": user_id}},
            UpdateExpression="SET last_message_id = :mid, last_message_sent_at = :sent",
            ExpressionAttributeValues={
                ":mid": {"S": message_id},
                ":sent": {"S": sent_at.isoformat()},
            },
        )


class AnalyticsSnapshots:
    """Read-only view of the spending snapshots computed by the analytics pipeline."""

    def __init__(self, table_name: str, client: Any = None):
        self.table_name = table_name
        self.client = client or boto3.client("dynamodb")

    def get(self, user_id: str) -> Optional[SpendingAnalytics]:
        resp = self.client.get_item(TableName=self.table_name, Key={"user_id": {"S": user_id}})
        item = resp.get("Item")
        if not item:
            return None

        data = _plain(item)
        return SpendingAnalytics(
            user_id=user_id,
            current_month_spending=Decimal(data.get("current_month_spending", 0)),
            average_monthly_spending=Decimal(data.get("average_monthly_spending", 0)),
            last_month_spending=Decimal(data.get("last_month_spending", 0)),
            two_months_ago_spending=Decimal(data.get("two_months_ago_spending", 0)),
            updated_at=_timestamp(data.get("updated_at")),
        )
