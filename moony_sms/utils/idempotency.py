import time
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

from moony_sms.utils.logger import get_logger

logger = get_logger("idempotency")

DEFAULT_TTL_SECONDS = 86400


class IdempotencyGuard:
    """
    Short-lived seen-set on a DynamoDB table (hash key ``pk``, TTL on ``exp``).

    ``claim`` is a conditional put: it succeeds for the first caller and for
    any caller after the previous claim expired. DynamoDB deletes expired
    items lazily, so expiry is also checked in the condition itself.
    """

    def __init__(self, table_name: str, client: Any = None, clock=time.time):
        self.table_name = table_name
        self.client = client or boto3.client("dynamodb")
        self.clock = clock

    def claim(self, key: str, ttl_secs: int = DEFAULT_TTL_SECONDS) -> bool:
        """Return True if this caller now owns ``key``; False if it was already claimed."""
        now = int(self.clock())
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item={"pk": {"S": key}, "exp": {"N": str(now + ttl_secs)}},
                ConditionExpression="attribute_not_exists(pk) OR #exp < :now",
                ExpressionAttributeNames={"#exp": "exp"},
                ExpressionAttributeValues={":now": {"N": str(now)}},
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def release(self, key: str) -> None:
        self.client.delete_item(TableName=self.table_name, Key={"pk": {"S": key}})

    def is_claimed(self, key: str) -> bool:
        resp = self.client.get_item(
            TableName=self.table_name,
            Key={"pk": {"S": key}},
            ConsistentRead=True,
        )
        item: Optional[dict] = resp.get("Item")
        if not item:
            return False
        return int(item["exp"]["N"]) >= int(self.clock())
