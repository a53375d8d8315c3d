# src/pricat_pipeline/repository.py

"""
Durable, exactly-once storage of StorageEvent records in DynamoDB.

The table is keyed by the event's business dedup key, so the uniqueness check
and the insert are a single conditional write: concurrent duplicate
deliveries race on `attribute_not_exists(dedup_key)` and exactly one wins.
Fan-out bookkeeping is updated with a compare-and-swap on `version`.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .clients import THROTTLING_ERROR_CODES, TRANSIENT_CONNECTION_ERRORS
from .exceptions import EventStoreUnavailableError, EventStoreWriteError
from .schemas import (
    BatchProcessingHistory,
    FanOutStatus,
    StorageEvent,
    StorageEventType,
    utc_now,
)

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.client import DynamoDBClient

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()

# Errors that no amount of redelivery will fix.
_REJECTED_REQUEST_CODES = {"ValidationException", "SerializationException"}


@dataclass(frozen=True)
class RecordResult:
    """Outcome of record_if_new: either the inserted record or the existing one."""

    inserted: bool
    record: StorageEvent


def _to_item(event: StorageEvent) -> dict[str, Any]:
    data = event.model_dump(mode="json", exclude_none=True)
    data["dedup_key"] = event.dedup_key
    return {name: _serializer.serialize(value) for name, value in data.items()}


def _from_item(item: dict[str, Any]) -> StorageEvent:
    data = {name: _deserializer.deserialize(value) for name, value in item.items()}
    data.pop("dedup_key", None)
    # DynamoDB numbers come back as Decimal.
    for name in ("object_size", "version"):
        if name in data:
            data[name] = int(data[name])
    return StorageEvent.model_validate(data)


def _translate(error: Exception, operation: str, dedup_key: str | None) -> Exception:
    if isinstance(error, ClientError):
        error_code = error.response["Error"]["Code"]
        context = {
            "dedup_key": dedup_key,
            "aws_error_code": error_code,
            "aws_error_message": error.response["Error"].get("Message"),
        }
        if error_code in _REJECTED_REQUEST_CODES:
            return EventStoreWriteError(operation, error_code, context=context)
        context["throttled"] = error_code in THROTTLING_ERROR_CODES
        return EventStoreUnavailableError(operation, context=context)
    return EventStoreUnavailableError(
        operation, context={"dedup_key": dedup_key, "connection_error": str(error)}
    )


class StorageEventRepository:
    """Repository for StorageEvent rows; duplicates are outcomes, not errors."""

    def __init__(self, dynamodb_client: "DynamoDBClient", table_name: str):
        self._client = dynamodb_client
        self._table_name = table_name

    # --- Reads ---

    def get_by_key(self, dedup_key: str) -> StorageEvent | None:
        try:
            response = self._client.get_item(
                TableName=self._table_name,
                Key={"dedup_key": {"S": dedup_key}},
                ConsistentRead=True,
            )
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            raise _translate(e, "GetItem", dedup_key) from e
        item = response.get("Item")
        return _from_item(item) if item else None

    def exists_by_key(self, dedup_key: str) -> bool:
        return self.get_by_key(dedup_key) is not None

    def find_by_event_type(self, event_type: StorageEventType) -> list[StorageEvent]:
        return self.find_by_event_types([event_type])

    def find_by_event_types(
        self, event_types: Iterable[StorageEventType]
    ) -> list[StorageEvent]:
        values = {
            f":t{index}": {"S": event_type.value}
            for index, event_type in enumerate(event_types)
        }
        if not values:
            return []
        return self._scan(
            f"#event_type IN ({', '.join(values)})",
            {"#event_type": "event_type"},
            values,
        )

    def find_object_created_events(self) -> list[StorageEvent]:
        return self.find_by_event_types(t for t in StorageEventType if t.is_object_created)

    def find_object_removed_events(self) -> list[StorageEvent]:
        return self.find_by_event_types(t for t in StorageEventType if t.is_object_removed)

    def find_by_bucket_name(self, bucket_name: str) -> list[StorageEvent]:
        return self._scan(
            "#bucket = :bucket",
            {"#bucket": "bucket_name"},
            {":bucket": {"S": bucket_name}},
        )

    def find_by_bucket_and_event_type(
        self, bucket_name: str, event_type: StorageEventType
    ) -> list[StorageEvent]:
        return self._scan(
            "#bucket = :bucket AND #event_type = :type",
            {"#bucket": "bucket_name", "#event_type": "event_type"},
            {":bucket": {"S": bucket_name}, ":type": {"S": event_type.value}},
        )

    def _scan(
        self,
        filter_expression: str,
        names: dict[str, str],
        values: dict[str, Any],
    ) -> list[StorageEvent]:
        """
        Full-table scan for operator queries; never on the intake path.

        Rows without an `event_type` (batch history, idempotency records)
        never match a filter on event fields.
        """
        request: dict[str, Any] = {
            "TableName": self._table_name,
            "FilterExpression": filter_expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        events = []
        while True:
            try:
                response = self._client.scan(**request)
            except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
                raise _translate(e, "Scan", None) from e
            events.extend(_from_item(item) for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return events
            request["ExclusiveStartKey"] = last_key

    # --- Writes ---

    def save(self, event: StorageEvent) -> StorageEvent | None:
        """
        Inserts *event* if its dedup key is new.

        Returns the persisted record (with id, timestamps and version
        assigned), or None when a record with the same key already exists.
        """
        now = utc_now()
        record = event.model_copy(
            update={
                "id": event.id or uuid.uuid4().hex,
                "created_at": now,
                "updated_at": now,
                "version": 1,
            }
        )
        try:
            self._client.put_item(
                TableName=self._table_name,
                Item=_to_item(record),
                ConditionExpression="attribute_not_exists(dedup_key)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            raise _translate(e, "PutItem", record.dedup_key) from e
        except TRANSIENT_CONNECTION_ERRORS as e:
            raise _translate(e, "PutItem", record.dedup_key) from e

        logger.info(
            "Storage event persisted.",
            extra={
                "id": record.id,
                "correlation_id": record.correlation_id,
                "event_type": record.event_type.value,
                "bucket": record.bucket_name,
                "key": record.object_key,
            },
        )
        return record

    def record_if_new(self, event: StorageEvent) -> RecordResult:
        saved = self.save(event)
        if saved is not None:
            return RecordResult(inserted=True, record=saved)

        existing = self.get_by_key(event.dedup_key)
        if existing is None:
            # Only possible if the row was removed between the two calls.
            raise EventStoreUnavailableError(
                "GetItem", context={"dedup_key": event.dedup_key, "reason": "vanished"}
            )
        logger.info(
            "Duplicate storage event delivery.",
            extra={
                "dedup_key": event.dedup_key,
                "existing_id": existing.id,
                "correlation_id": event.correlation_id,
            },
        )
        return RecordResult(inserted=False, record=existing)

    def claim_fan_out(self, event: StorageEvent, now: datetime) -> StorageEvent | None:
        """Takes over a pending fan-out. Returns None if another writer got there first."""
        return self._compare_and_swap(
            event,
            "ClaimFanOut",
            {"fan_out_claimed_at": now, "updated_at": now},
            require_pending=True,
        )

    def release_fan_out(self, event: StorageEvent) -> StorageEvent | None:
        """Drops the claim so the next delivery can publish without waiting."""
        return self._compare_and_swap(
            event,
            "ReleaseFanOut",
            {"fan_out_claimed_at": None, "updated_at": utc_now()},
            require_pending=True,
        )

    def mark_published(self, event: StorageEvent) -> StorageEvent | None:
        now = utc_now()
        return self._compare_and_swap(
            event,
            "MarkPublished",
            {"fan_out_status": FanOutStatus.PUBLISHED, "updated_at": now},
            require_pending=True,
        )

    def _compare_and_swap(
        self,
        event: StorageEvent,
        operation: str,
        changes: dict[str, Any],
        require_pending: bool,
    ) -> StorageEvent | None:
        assignments = ["#version = #version + :one"]
        names = {"#version": "version"}
        values: dict[str, Any] = {
            ":one": {"N": "1"},
            ":expected": {"N": str(event.version)},
        }
        for index, (field_name, value) in enumerate(changes.items()):
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, FanOutStatus):
                value = value.value
            names[f"#f{index}"] = field_name
            values[f":v{index}"] = _serializer.serialize(value)
            assignments.append(f"#f{index} = :v{index}")

        condition = "#version = :expected"
        if require_pending:
            names["#status"] = "fan_out_status"
            values[":pending"] = {"S": FanOutStatus.PENDING.value}
            condition += " AND #status = :pending"

        try:
            self._client.update_item(
                TableName=self._table_name,
                Key={"dedup_key": {"S": event.dedup_key}},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(
                    "Optimistic update lost the race.",
                    extra={"operation": operation, "dedup_key": event.dedup_key},
                )
                return None
            raise _translate(e, "UpdateItem", event.dedup_key) from e
        except TRANSIENT_CONNECTION_ERRORS as e:
            raise _translate(e, "UpdateItem", event.dedup_key) from e

        return event.model_copy(update={**changes, "version": event.version + 1})

    def ping(self) -> bool:
        try:
            self._client.describe_table(TableName=self._table_name)
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS):
            logger.warning(
                "Event store health check failed.", extra={"table": self._table_name}
            )
            return False
        return True


HISTORY_KEY_PREFIX = "batch-history#"


class BatchHistoryRepository:
    """
    Batch processing history rows, kept in the events table under
    `batch-history#<batch id>` keys. Each write replaces the whole row.
    """

    def __init__(self, dynamodb_client: "DynamoDBClient", table_name: str):
        self._client = dynamodb_client
        self._table_name = table_name

    @staticmethod
    def _key(batch_id: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{batch_id}"

    def save(self, history: BatchProcessingHistory) -> BatchProcessingHistory:
        data = history.model_dump(mode="json", exclude_none=True)
        data["dedup_key"] = self._key(history.batch_id)
        try:
            self._client.put_item(
                TableName=self._table_name,
                Item={name: _serializer.serialize(value) for name, value in data.items()},
            )
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            raise _translate(e, "PutItem", data["dedup_key"]) from e

        logger.debug(
            "Batch history recorded.",
            extra={"batch_id": history.batch_id, "status": history.status.value},
        )
        return history

    def get(self, batch_id: str) -> BatchProcessingHistory | None:
        try:
            response = self._client.get_item(
                TableName=self._table_name,
                Key={"dedup_key": {"S": self._key(batch_id)}},
                ConsistentRead=True,
            )
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            raise _translate(e, "GetItem", self._key(batch_id)) from e
        item = response.get("Item")
        if not item:
            return None

        data = {name: _deserializer.deserialize(value) for name, value in item.items()}
        data.pop("dedup_key", None)
        for name in ("total_items", "processed_items", "attempt"):
            if name in data:
                data[name] = int(data[name])
        return BatchProcessingHistory.model_validate(data)
