import json

from botocore.exceptions import BotoCoreError, ClientError

from moony_sms.exceptions import GoalMutationError
from moony_sms.models import InboundMessage
from moony_sms.services import get_services
from moony_sms.utils.logger import get_logger

logger = get_logger("worker")


def lambda_handler(event, context):
    """
    Process queued inbound messages.

    Goal-mutation and store failures are reported back as batch item failures
    so SQS redelivers them; every other problem is logged and dropped, since
    a retry would not change the outcome.
    """
    records = event.get("Records", [])
    logger.info("worker.lambda_start", extra={"records": len(records)})

    services = get_services()
    services.metrics.start()
    failures = []

    try:
        for rec in records:
            sqs_message_id = rec.get("messageId", "<no-id>")
            raw_body = rec.get("body") or ""

            # 1) Parse JSON from SQS
            try:
                msg = InboundMessage.from_dict(json.loads(raw_body))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "worker.payload_invalid",
                    extra={"sqs_message_id": sqs_message_id, "error": str(e), "preview": raw_body[:200]},
                )
                continue

            # 2) Run the conversation step
            try:
                action = services.orchestrator.process_inbound_message(msg)
                logger.info(
                    "worker.processed",
                    extra={"sqs_message_id": sqs_message_id, "action": action, "provider": msg.provider},
                )
            except GoalMutationError as e:
                logger.error(
                    "worker.goal_mutation_failed",
                    extra={"sqs_message_id": sqs_message_id, "user_id": e.user_id, "error": str(e)},
                )
                failures.append({"itemIdentifier": sqs_message_id})
            except (ClientError, BotoCoreError) as e:
                # The inbound claim was released, so a redelivery is processed again.
                logger.error(
                    "worker.store_failed",
                    extra={"sqs_message_id": sqs_message_id, "error": str(e)},
                )
                failures.append({"itemIdentifier": sqs_message_id})
            except Exception as e:
                logger.exception(
                    "worker.processing_error",
                    extra={"sqs_message_id": sqs_message_id, "error": str(e)},
                )
    finally:
        services.metrics.shutdown()

    return {"batchItemFailures": failures}
