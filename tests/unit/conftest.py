"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import copy
import json
import os
import types
import uuid
from concurrent.futures import Executor, Future

import pytest
from aws_lambda_powertools.utilities.idempotency.exceptions import (
    IdempotencyItemAlreadyExistsError,
    IdempotencyItemNotFoundError,
)
from aws_lambda_powertools.utilities.idempotency.persistence.base import (
    BasePersistenceLayer,
)
from aws_lambda_powertools.utilities.idempotency.persistence.datarecord import DataRecord
from botocore.exceptions import ClientError

# The Lambda module reads its configuration at import time.
os.environ.setdefault("SERVICE_NAME", "pricat-pipeline-test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("EVENTS_TABLE_NAME", "storage-events-test")
os.environ.setdefault(
    "NORMALIZED_EVENTS_QUEUE_URL",
    "https://sqs.eu-west-1.amazonaws.com/000000000000/normalized-events",
)
os.environ.setdefault(
    "ITEM_QUEUE_URL", "https://sqs.eu-west-1.amazonaws.com/000000000000/price-items"
)
os.environ.setdefault("SEARCH_ENDPOINT", "http://search.local:9200")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "PricatPipeline")

from pricat_pipeline.config import AppConfig  # noqa: E402


@pytest.fixture
def app_config() -> AppConfig:
    """A config built from the test environment above."""
    return AppConfig.load_from_env()


def make_client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ---------- In-test fakes ---------- #
class FakeDynamoDBClient:
    """
    Just enough of the DynamoDB low-level client for the conditional writes
    and filtered scans the repositories issue.
    """

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.fail_with: Exception | None = None
        self.scan_page_size = 100

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_item(self, TableName, Key, ConsistentRead=False):
        self._maybe_fail()
        item = self.items.get(Key["dedup_key"]["S"])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, TableName, Item, ConditionExpression=None):
        self._maybe_fail()
        key = Item["dedup_key"]["S"]
        existing = self.items.get(key)
        if existing is not None and ConditionExpression:
            raise make_client_error("ConditionalCheckFailedException")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def update_item(
        self,
        TableName,
        Key,
        UpdateExpression,
        ConditionExpression,
        ExpressionAttributeNames,
        ExpressionAttributeValues,
    ):
        self._maybe_fail()
        names, values = ExpressionAttributeNames, ExpressionAttributeValues
        item = self.items.get(Key["dedup_key"]["S"])
        if item is None:
            raise make_client_error("ConditionalCheckFailedException", "UpdateItem")

        for clause in ConditionExpression.split(" AND "):
            left, right = (part.strip() for part in clause.split("="))
            if item.get(names[left]) != values[right]:
                raise make_client_error("ConditionalCheckFailedException", "UpdateItem")

        for assignment in UpdateExpression.removeprefix("SET ").split(", "):
            left, right = (part.strip() for part in assignment.split("=", 1))
            if "+" in right:
                current = int(item[names[left]]["N"])
                item[names[left]] = {"N": str(current + 1)}
            else:
                item[names[left]] = values[right]
        return {}

    def describe_table(self, TableName):
        self._maybe_fail()
        return {"Table": {"TableName": TableName}}

    def scan(
        self,
        TableName,
        FilterExpression,
        ExpressionAttributeNames,
        ExpressionAttributeValues,
        ExclusiveStartKey=None,
    ):
        """Supports `#a = :v` and `#a IN (:v1, :v2)` clauses joined by AND."""
        self._maybe_fail()
        names, values = ExpressionAttributeNames, ExpressionAttributeValues

        def matches(item):
            for clause in FilterExpression.split(" AND "):
                if " IN " in clause:
                    left, right = clause.split(" IN ")
                    wanted = [values[v.strip()] for v in right.strip("() ").split(",")]
                else:
                    left, right = clause.split("=")
                    wanted = [values[right.strip()]]
                if item.get(names[left.strip()]) not in wanted:
                    return False
            return True

        keys = list(self.items)
        start = 0
        if ExclusiveStartKey is not None:
            start = keys.index(ExclusiveStartKey["dedup_key"]["S"]) + 1
        page = keys[start : start + self.scan_page_size]
        response = {
            "Items": [copy.deepcopy(self.items[k]) for k in page if matches(self.items[k])]
        }
        if start + self.scan_page_size < len(keys):
            response["LastEvaluatedKey"] = {"dedup_key": {"S": page[-1]}}
        return response


class InMemoryPersistenceLayer(BasePersistenceLayer):
    """Idempotency records held in a dict, with DynamoDB's put semantics."""

    def __init__(self):
        super().__init__()
        self.records: dict[str, DataRecord] = {}
        self.fail_with: Exception | None = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def _get_record(self, idempotency_key) -> DataRecord:
        self._maybe_fail()
        try:
            return self.records[idempotency_key]
        except KeyError:
            raise IdempotencyItemNotFoundError from None

    def _put_record(self, data_record: DataRecord) -> None:
        self._maybe_fail()
        existing = self.records.get(data_record.idempotency_key)
        if existing is not None and not existing.is_expired:
            raise IdempotencyItemAlreadyExistsError(old_data_record=existing)
        self.records[data_record.idempotency_key] = data_record

    def _update_record(self, data_record: DataRecord) -> None:
        self._maybe_fail()
        self.records[data_record.idempotency_key] = data_record

    def _delete_record(self, data_record: DataRecord) -> None:
        self.records.pop(data_record.idempotency_key, None)


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs):
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class ManualClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_dynamodb() -> FakeDynamoDBClient:
    return FakeDynamoDBClient()


@pytest.fixture
def persistence_layer() -> InMemoryPersistenceLayer:
    return InMemoryPersistenceLayer()


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


# ---------- Minimal, realistic payloads ---------- #
def make_s3_notification(
    key: str = "uploads/acme/price-list.csv",
    event_name: str = "s3:ObjectCreated:Put",
    bucket: str = "pricat-uploads",
    etag: str = "d41d8cd98f00b204e9800998ecf8427e",
    event_time: str = "2024-05-01T12:00:00.000Z",
    size: int = 2048,
) -> str:
    """A MinIO-style notification: event name at the top level and in the record."""
    return json.dumps(
        {
            "EventName": event_name,
            "Key": f"{bucket}/{key}",
            "Records": [
                {
                    "eventVersion": "2.0",
                    "eventSource": "minio:s3",
                    "eventTime": event_time,
                    "eventName": event_name,
                    "s3": {
                        "bucket": {"name": bucket},
                        "object": {
                            "key": key,
                            "size": size,
                            "eTag": etag,
                            "contentType": "text/csv",
                            "sequencer": "17C1D5D2A6B9F1E0",
                        },
                    },
                }
            ],
        }
    )


def make_price_item_message(
    item_id: str,
    batch_id: str = "B1",
    company: str = "Acme",
    total: int = 3,
    product_id: str | None = None,
    price: str = "10.50",
) -> dict:
    return {
        "messageId": str(uuid.uuid4()),
        "batchId": batch_id,
        "totalItemsInBatch": total,
        "itemId": item_id,
        "company": company,
        "fileProcessedAt": "2024-05-01T12:00:05Z",
        "priceItem": {
            "itemId": item_id,
            "productId": product_id or f"P-{item_id}",
            "productName": f"Product {item_id}",
            "price": price,
            "currency": "RUB",
            "stockQuantity": 7,
        },
    }


@pytest.fixture
def s3_notification() -> str:
    return make_s3_notification()


@pytest.fixture
def sqs_event(s3_notification: str) -> dict:
    """One SQS record that wraps a single storage notification."""
    return {
        "Records": [
            {
                "messageId": str(uuid.uuid4()),
                "receiptHandle": "ignore",
                "body": s3_notification,
                "attributes": {"ApproximateReceiveCount": "1"},
                "messageAttributes": {},
                "md5OfBody": "dummy",
                "eventSource": "aws:sqs",
                "eventSourceARN": "arn:aws:sqs:eu-west-1:000000000000:raw-events",
                "awsRegion": "eu-west-1",
            }
        ]
    }


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="pricat-intake",
        memory_limit_in_mb=256,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:dummy",
        get_remaining_time_in_millis=lambda: 30000,
    )

