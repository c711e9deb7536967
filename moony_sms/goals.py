"""
Spending goal store.

One ``SpendingGoal`` item per goal plus a per-user head item whose
``version`` counter is checked and bumped inside the same transaction that
deactivates the old goals and inserts the new one. Two writers racing for the
same user cannot both commit: the loser's transaction is cancelled, it
re-reads and tries again, so the last committed write is the sole active goal.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from moony_sms.exceptions import GoalMutationError
from moony_sms.models import SpendingGoal
from moony_sms.targets import goal_period
from moony_sms.utils.logger import get_logger

logger = get_logger("goals")

HEAD_KEY = "#head"
CONFLICT_CODES = ("TransactionCanceledException", "ConditionalCheckFailedException")

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _goal_to_item(goal: SpendingGoal) -> Dict[str, Any]:
    plain = {
        "user_id": goal.user_id,
        "goal_id": goal.id,
        "monthly_limit": goal.monthly_limit,
        "period_start": goal.period_start.isoformat(),
        "period_end": goal.period_end.isoformat(),
        "is_active": goal.is_active,
        "created_at": goal.created_at.isoformat(),
        "month_start_day": goal.month_start_day,
    }
    return {k: _serializer.serialize(v) for k, v in plain.items()}


def _goal_from_item(item: Dict[str, Any]) -> SpendingGoal:
    data = {k: _deserializer.deserialize(v) for k, v in item.items()}
    return SpendingGoal(
        id=data["goal_id"],
        user_id=data["user_id"],
        monthly_limit=Decimal(data["monthly_limit"]),
        period_start=date.fromisoformat(data["period_start"]),
        period_end=date.fromisoformat(data["period_end"]),
        is_active=bool(data["is_active"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        month_start_day=int(data.get("month_start_day", 1)),
    )


class GoalStore:
    def __init__(self, table_name: str, client: Any = None, month_start_day: int = 1, max_attempts: int = 5):
        self.table_name = table_name
        self.client = client or boto3.client("dynamodb")
        self.month_start_day = month_start_day
        self.max_attempts = max_attempts

    def _key(self, user_id: str, goal_id: str) -> Dict[str, Any]:
        return {"user_id": {"S": user_id}, "goal_id": {"S": goal_id}}

    def _read_head_version(self, user_id: str) -> Optional[int]:
        resp = self.client.get_item(
            TableName=self.table_name,
            Key=self._key(user_id, HEAD_KEY),
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None
        return int(item["version"]["N"])

    def _query_goal_items(self, user_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {
            "TableName": self.table_name,
            "KeyConditionExpression": "user_id = :uid",
            "ExpressionAttributeValues": {":uid": {"S": user_id}},
            "ConsistentRead": True,
        }
        while True:
            resp = self.client.query(**kwargs)
            items.extend(i for i in resp.get("Items", []) if i["goal_id"]["S"] != HEAD_KEY)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def list_goals(self, user_id: str) -> List[SpendingGoal]:
        """Full history, newest first. Goals are never deleted."""
        goals = [_goal_from_item(i) for i in self._query_goal_items(user_id)]
        return sorted(goals, key=lambda g: g.created_at, reverse=True)

    def get_active_goal(self, user_id: str) -> Optional[SpendingGoal]:
        active = [g for g in self.list_goals(user_id) if g.is_active]
        return active[0] if active else None

    def _head_write(self, user_id: str, version: Optional[int], goal_id: str) -> Dict[str, Any]:
        if version is None:
            return {
                "Put": {
                    "TableName": self.table_name,
                    "Item": {
                        **self._key(user_id, HEAD_KEY),
                        "version": {"N": "1"},
                        "active_goal_id": {"S": goal_id},
                    },
                    "ConditionExpression": "attribute_not_exists(goal_id)",
                }
            }
        return {
            "Update": {
                "TableName": self.table_name,
                "Key": self._key(user_id, HEAD_KEY),
                "UpdateExpression": "SET #version = :next, active_goal_id = :goal",
                "ConditionExpression": "#version = :expected",
                "ExpressionAttributeNames": {"#version": "version"},
                "ExpressionAttributeValues": {
                    ":next": {"N": str(version + 1)},
                    ":expected": {"N": str(version)},
                    ":goal": {"S": goal_id},
                },
            }
        }

    def _deactivate(self, user_id: str, goal_id: str, now: datetime) -> Dict[str, Any]:
        return {
            "Update": {
                "TableName": self.table_name,
                "Key": self._key(user_id, goal_id),
                "UpdateExpression": "SET is_active = :false, deactivated_at = :now",
                "ConditionExpression": "is_active = :true",
                "ExpressionAttributeValues": {
                    ":false": {"BOOL": False},
                    ":true": {"BOOL": True},
                    ":now": {"S": now.isoformat()},
                },
            }
        }

    def set_goal(
        self,
        user_id: str,
        amount_dollars: int,
        now: Optional[datetime] = None,
        month_start_day: Optional[int] = None,
    ) -> SpendingGoal:
        """
        Deactivate every active goal for the user and insert a new active one,
        atomically. Raises GoalMutationError if it cannot commit.
        """
        now = now or datetime.now(timezone.utc)
        anchor = month_start_day or self.month_start_day
        period_start, period_end = goal_period(now.date(), anchor)

        for attempt in range(1, self.max_attempts + 1):
            try:
                version = self._read_head_version(user_id)
                active_ids = [
                    i["goal_id"]["S"] for i in self._query_goal_items(user_id) if i.get("is_active", {}).get("BOOL")
                ]

                goal = SpendingGoal(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    monthly_limit=Decimal(amount_dollars),
                    period_start=period_start,
                    period_end=period_end,
                    is_active=True,
                    created_at=now,
                    month_start_day=anchor,
                )

                items = [self._head_write(user_id, version, goal.id)]
                items.extend(self._deactivate(user_id, goal_id, now) for goal_id in active_ids)
                items.append(
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": _goal_to_item(goal),
                            "ConditionExpression": "attribute_not_exists(goal_id)",
                        }
                    }
                )

                # Same token on botocore retries: a commit whose response was lost is not applied twice.
                self.client.transact_write_items(TransactItems=items, ClientRequestToken=goal.id)

            except ClientError as e:
                code = e.response["Error"]["Code"]
                if code in CONFLICT_CODES:
                    logger.info(
                        "goals.write_conflict",
                        extra={"user_id": user_id, "attempt": attempt, "code": code},
                    )
                    continue
                logger.error("goals.write_failed", extra={"user_id": user_id, "code": code, "error": str(e)})
                raise GoalMutationError(f"Could not save spending goal: {code}", user_id=user_id) from e
            except BotoCoreError as e:
                logger.error("goals.write_failed", extra={"user_id": user_id, "error": str(e)})
                raise GoalMutationError("Could not save spending goal", user_id=user_id) from e

            logger.info(
                "goals.goal_set",
                extra={
                    "user_id": user_id,
                    "goal_id": goal.id,
                    "monthly_limit": amount_dollars,
                    "superseded": len(active_ids),
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )
            return goal

        logger.error("goals.write_conflict_exhausted", extra={"user_id": user_id, "attempts": self.max_attempts})
        raise GoalMutationError(
            f"Could not save spending goal after {self.max_attempts} attempts",
            user_id=user_id,
        )
