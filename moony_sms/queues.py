import json
from datetime import datetime, timezone
from typing import Any

import boto3

from moony_sms.models import InboundMessage
from moony_sms.utils.logger import get_logger

logger = get_logger("queues")


class InboundQueue:
    """Hands verified inbound messages from the webhooks to the worker."""

    def __init__(self, queue_url: str, client: Any = None):
        self.queue_url = queue_url
        self.client = client or boto3.client("sqs")

    def enqueue(self, msg: InboundMessage) -> str:
        resp = self.client.send_message(
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(msg.to_dict()),
        )
        logger.info(
            "queues.inbound_enqueued",
            extra={
                "queue_message_id": resp["MessageId"],
                "provider_message_id": msg.provider_message_id,
                "provider": msg.provider,
            },
        )
        return resp["MessageId"]


class AnalyticsTrigger:
    """Asks the external analytics pipeline to (re)compute a user's snapshot."""

    def __init__(self, queue_url: str, client: Any = None):
        self.queue_url = queue_url
        self.client = client or boto3.client("sqs")

    def request(self, user_id: str, reason: str) -> str:
        payload = {
            "event": "analytics_requested",
            "user_id": user_id,
            "reason": reason,
            "requested_at": datetime.now(timezone.utc).isoformat(),
        }
        resp = self.client.send_message(QueueUrl=self.queue_url, MessageBody=json.dumps(payload))
        logger.info(
            "queues.analytics_requested",
            extra={"user_id": user_id, "reason": reason, "queue_message_id": resp["MessageId"]},
        )
        return resp["MessageId"]
