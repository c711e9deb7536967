import re
from decimal import Decimal
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError

from moony_sms.directory import AnalyticsSnapshots, UserDirectory
from moony_sms.goals import GoalStore
from moony_sms.models import OutboundResult
from moony_sms.utils.idempotency import IdempotencyGuard

USERS = "moony-users"
GOALS = "moony-goals"
ANALYTICS = "moony-analytics"
IDEMPOTENCY = "moony-idempotency"

KEY_SCHEMA = {
    USERS: ("user_id",),
    GOALS: ("user_id", "goal_id"),
    ANALYTICS: ("user_id",),
    IDEMPOTENCY: ("pk",),
}


def client_error(code, operation="Operation", message="stubbed"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def _scalar(value):
    # {"S": "x"} -> "x", {"N": "3"} -> Decimal(3), {"BOOL": True} -> True
    (kind, raw), = value.items()
    if kind == "N":
        return Decimal(raw)
    return raw


class FakeDynamoDB:
    """
    In-memory stand-in for the low-level DynamoDB client.

    Understands only the expression shapes the stores issue: SET updates,
    single-attribute equality key conditions, and conditions built from
    attribute_(not_)exists, = and < joined with AND / OR.
    """

    def __init__(self, key_schema=None, page_size=None):
        self.key_schema = key_schema or KEY_SCHEMA
        self.tables = {name: {} for name in self.key_schema}
        self.page_size = page_size
        self.before_transact = None
        self.transactions = []
        self.tokens = set()

    # -- helpers -----------------------------------------------------------

    def _key(self, table, item_or_key):
        return tuple(_scalar(item_or_key[attr]) for attr in self.key_schema[table])

    def _resolve(self, token, names):
        return names.get(token, token) if token.startswith("#") else token

    def _check(self, expression, item, names, values):
        if not expression:
            return True
        return any(
            all(self._term(term.strip(), item, names, values) for term in clause.split(" AND "))
            for clause in expression.split(" OR ")
        )

    def _term(self, term, item, names, values):
        match = re.match(r"attribute_(not_)?exists\((\S+)\)", term)
        if match:
            present = self._resolve(match.group(2), names) in (item or {})
            return not present if match.group(1) else present

        left, op, right = term.split()
        current = (item or {}).get(self._resolve(left, names))
        if current is None:
            return False
        lhs, rhs = _scalar(current), _scalar(values[right])
        if op == "=":
            return lhs == rhs
        if op == "<":
            return lhs < rhs
        raise AssertionError(f"unsupported operator {op}")

    def _apply_update(self, item, expression, names, values):
        assert expression.startswith("SET "), expression
        for assignment in expression[4:].split(", "):
            name, value = [part.strip() for part in assignment.split("=")]
            item[self._resolve(name, names)] = values[value]

    def _page(self, items, kwargs):
        start = kwargs.get("ExclusiveStartKey")
        if start is not None:
            index = next(i for i, item in enumerate(items) if item is start) + 1
            items = items[index:]
        if self.page_size and len(items) > self.page_size:
            page = items[: self.page_size]
            return {"Items": page, "Count": len(page), "LastEvaluatedKey": page[-1]}
        return {"Items": items, "Count": len(items)}

    # -- client surface ----------------------------------------------------

    def put_item(self, TableName, Item, ConditionExpression=None, ExpressionAttributeNames=None, ExpressionAttributeValues=None):
        key = self._key(TableName, Item)
        existing = self.tables[TableName].get(key)
        if not self._check(ConditionExpression, existing, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
            raise client_error("ConditionalCheckFailedException", "PutItem")
        self.tables[TableName][key] = dict(Item)
        return {}

    def get_item(self, TableName, Key, ConsistentRead=False):
        item = self.tables[TableName].get(self._key(TableName, Key))
        return {"Item": dict(item)} if item is not None else {}

    def update_item(
        self,
        TableName,
        Key,
        UpdateExpression,
        ExpressionAttributeValues=None,
        ExpressionAttributeNames=None,
        ConditionExpression=None,
    ):
        key = self._key(TableName, Key)
        existing = self.tables[TableName].get(key)
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        if not self._check(ConditionExpression, existing, names, values):
            raise client_error("ConditionalCheckFailedException", "UpdateItem")
        item = dict(existing) if existing else dict(Key)
        self._apply_update(item, UpdateExpression, names, values)
        self.tables[TableName][key] = item
        return {}

    def delete_item(self, TableName, Key):
        self.tables[TableName].pop(self._key(TableName, Key), None)
        return {}

    def query(self, TableName, KeyConditionExpression, ExpressionAttributeValues, IndexName=None, ConsistentRead=False, **kwargs):
        attr, placeholder = [part.strip() for part in KeyConditionExpression.split("=")]
        wanted = ExpressionAttributeValues[placeholder]
        items = [item for item in self.tables[TableName].values() if item.get(attr) == wanted]
        return self._page(items, kwargs)

    def scan(self, TableName, **kwargs):
        return self._page(list(self.tables[TableName].values()), kwargs)

    def transact_write_items(self, TransactItems, ClientRequestToken=None):
        if ClientRequestToken is not None and ClientRequestToken in self.tokens:
            return {}
        if self.before_transact is not None:
            hook, self.before_transact = self.before_transact, None
            hook()

        for entry in TransactItems:
            (op, params), = entry.items()
            table = params["TableName"]
            key = self._key(table, params["Item"] if op == "Put" else params["Key"])
            existing = self.tables[table].get(key)
            if not self._check(
                params.get("ConditionExpression"),
                existing,
                params.get("ExpressionAttributeNames", {}),
                params.get("ExpressionAttributeValues", {}),
            ):
                raise client_error("TransactionCanceledException", "TransactWriteItems")

        for entry in TransactItems:
            (op, params), = entry.items()
            if op == "Put":
                self.put_item(params["TableName"], params["Item"])
            elif op == "Update":
                self.update_item(
                    params["TableName"],
                    params["Key"],
                    params["UpdateExpression"],
                    params.get("ExpressionAttributeValues"),
                    params.get("ExpressionAttributeNames"),
                )
            else:
                raise AssertionError(f"unsupported transact op {op}")
        self.transactions.append(TransactItems)
        if ClientRequestToken is not None:
            self.tokens.add(ClientRequestToken)
        return {}


# -- provider stubs ----------------------------------------------------------


class StubPinpoint:
    """pinpoint-sms-voice-v2 client. Queue exceptions in ``errors`` to fail the next sends."""

    def __init__(self, errors=None):
        self.sent = []
        self.errors = list(errors or [])

    def send_text_message(self, **kwargs):
        self.sent.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        return {"MessageId": f"aws-msg-{len(self.sent)}"}


class StubTwilioMessages:
    def __init__(self, errors=None, error_code=None):
        self.created = []
        self.errors = list(errors or [])
        self.error_code = error_code

    def create(self, **kwargs):
        self.created.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        return SimpleNamespace(sid=f"SM{len(self.created):032d}", status="queued", error_code=self.error_code)


class StubTwilioClient:
    def __init__(self, errors=None, error_code=None):
        self.messages = StubTwilioMessages(errors, error_code)


class StubSQS:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send_message(self, QueueUrl, MessageBody, **kwargs):
        if self.fail:
            raise client_error("AWS.SimpleQueueService.NonExistentQueue", "SendMessage")
        self.sent.append({"QueueUrl": QueueUrl, "MessageBody": MessageBody, **kwargs})
        return {"MessageId": f"sqs-{len(self.sent)}"}


class StubCloudWatch:
    def __init__(self, fail=False):
        self.batches = []
        self.fail = fail

    def put_metric_data(self, Namespace, MetricData):
        if self.fail:
            raise client_error("Throttling", "PutMetricData")
        self.batches.append({"Namespace": Namespace, "MetricData": list(MetricData)})
        return {}


class RecordingMessenger:
    """Messenger double: records sends and answers from a queue of results."""

    spacing = 0

    def __init__(self, results=None):
        self.sent = []
        self.results = list(results or [])

    def send(self, to, body, message_type=None, user_id=None):
        self.sent.append({"to": to, "body": body, "message_type": message_type, "user_id": user_id})
        if self.results:
            return self.results.pop(0)
        return OutboundResult(success=True, message_id=f"msg-{len(self.sent)}")


# -- seed helpers ------------------------------------------------------------


def put_user(
    db,
    user_id,
    phone,
    verified=True,
    active=True,
    opt_out_status="opted_in",
    first_name="Ada",
    bank_linked_at=None,
):
    item = {
        "user_id": {"S": user_id},
        "phone_number": {"S": phone},
        "phone_verified": {"BOOL": verified},
        "is_active": {"BOOL": active},
        "opt_out_status": {"S": opt_out_status},
        "currency": {"S": "USD"},
    }
    if first_name:
        item["first_name"] = {"S": first_name}
    if bank_linked_at is not None:
        item["bank_linked_at"] = {"S": bank_linked_at.isoformat()}
    db.put_item(TableName=USERS, Item=item)


def put_snapshot(db, user_id, current="0", average="0", last="0", two_ago="0"):
    db.put_item(
        TableName=ANALYTICS,
        Item={
            "user_id": {"S": user_id},
            "current_month_spending": {"N": str(current)},
            "average_monthly_spending": {"N": str(average)},
            "last_month_spending": {"N": str(last)},
            "two_months_ago_spending": {"N": str(two_ago)},
        },
    )


def user_item(db, user_id):
    return db.tables[USERS][(user_id,)]


# -- fixtures ----------------------------------------------------------------


@pytest.fixture
def dynamodb():
    return FakeDynamoDB()


@pytest.fixture
def directory(dynamodb):
    return UserDirectory(USERS, client=dynamodb)


@pytest.fixture
def goals(dynamodb):
    return GoalStore(GOALS, client=dynamodb)


@pytest.fixture
def analytics(dynamodb):
    return AnalyticsSnapshots(ANALYTICS, client=dynamodb)


@pytest.fixture
def idempotency(dynamodb):
    return IdempotencyGuard(IDEMPOTENCY, client=dynamodb)


@pytest.fixture
def messenger():
    return RecordingMessenger()
