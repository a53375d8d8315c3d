# src/pricat_pipeline/schemas.py

"""
Data contracts for the ingestion and aggregation pipeline.

Inbound payloads (storage notifications, price-item messages) are parsed and
validated with Pydantic at the consumer boundary; everything downstream of
that boundary works with the trusted models defined here.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import MessageValidationError


def new_correlation_id() -> str:
    return f"CID{uuid.uuid4()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Storage notifications ---


class StorageEventType(str, Enum):
    """Storage (S3 / MinIO) notification names."""

    OBJECT_ACCESSED_GET = "s3:ObjectAccessed:Get"
    OBJECT_ACCESSED_GET_LEGAL_HOLD = "s3:ObjectAccessed:GetLegalHold"
    OBJECT_ACCESSED_GET_RETENTION = "s3:ObjectAccessed:GetRetention"
    OBJECT_ACCESSED_HEAD = "s3:ObjectAccessed:Head"

    OBJECT_CREATED_COMPLETE_MULTIPART_UPLOAD = "s3:ObjectCreated:CompleteMultipartUpload"
    OBJECT_CREATED_COPY = "s3:ObjectCreated:Copy"
    OBJECT_CREATED_DELETE_TAGGING = "s3:ObjectCreated:DeleteTagging"
    OBJECT_CREATED_POST = "s3:ObjectCreated:Post"
    OBJECT_CREATED_PUT = "s3:ObjectCreated:Put"
    OBJECT_CREATED_PUT_LEGAL_HOLD = "s3:ObjectCreated:PutLegalHold"
    OBJECT_CREATED_PUT_RETENTION = "s3:ObjectCreated:PutRetention"
    OBJECT_CREATED_PUT_TAGGING = "s3:ObjectCreated:PutTagging"

    OBJECT_REMOVED_DELETE = "s3:ObjectRemoved:Delete"
    OBJECT_REMOVED_DELETE_MARKER_CREATED = "s3:ObjectRemoved:DeleteMarkerCreated"

    REPLICATION_COMPLETED = "s3:Replication:OperationCompletedReplication"
    REPLICATION_FAILED = "s3:Replication:OperationFailedReplication"
    REPLICATION_MISSED_THRESHOLD = "s3:Replication:OperationMissedThreshold"
    REPLICATION_NOT_TRACKED = "s3:Replication:OperationNotTracked"
    REPLICATION_REPLICATED_AFTER_THRESHOLD = (
        "s3:Replication:OperationReplicatedAfterThreshold"
    )

    OBJECT_RESTORE_POST = "s3:ObjectRestore:Post"
    OBJECT_RESTORE_COMPLETED = "s3:ObjectRestore:Completed"
    OBJECT_TRANSITION_FAILED = "s3:ObjectTransition:Failed"
    OBJECT_TRANSITION_COMPLETE = "s3:ObjectTransition:Complete"

    SCANNER_MANY_VERSIONS = "s3:Scanner:ManyVersions"
    SCANNER_BIG_PREFIX = "s3:Scanner:BigPrefix"

    BUCKET_CREATED = "s3:BucketCreated"
    BUCKET_REMOVED = "s3:BucketRemoved"

    HEALTH_CHECK = "s3:TestEvent"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_name(cls, name: str | None) -> "StorageEventType":
        """Case-insensitive lookup; anything unrecognized maps to UNKNOWN."""
        if not name:
            return cls.UNKNOWN
        wanted = name.strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        return cls.UNKNOWN

    @property
    def is_object_created(self) -> bool:
        return self.value.startswith("s3:ObjectCreated:")

    @property
    def is_object_removed(self) -> bool:
        return self.value.startswith("s3:ObjectRemoved:")

    @property
    def is_object_accessed(self) -> bool:
        return self.value.startswith("s3:ObjectAccessed:")


class FanOutStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"
    NOT_REQUIRED = "NOT_REQUIRED"


class StorageEvent(BaseModel):
    """
    Canonical record of one storage notification.

    Event data is immutable once persisted; only the fan-out bookkeeping
    fields change afterwards, always through a version compare-and-swap.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    correlation_id: str = Field(default_factory=new_correlation_id)
    event_type: StorageEventType
    bucket_name: str | None = None
    object_key: str | None = None
    object_size: int | None = None
    object_etag: str | None = Field(None, alias="objectETag")
    object_content_type: str | None = None
    event_time: datetime | None = None
    full_raw_payload: str

    # --- Assigned on persistence ---
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    fan_out_status: FanOutStatus = FanOutStatus.PENDING
    fan_out_claimed_at: datetime | None = None

    @property
    def dedup_key(self) -> str:
        """
        Business key of the notification: event type, bucket, key, eTag and
        event time. Two deliveries of the same notification share this key.
        """
        raw = json.dumps(
            [
                self.event_type.value,
                self.bucket_name,
                self.object_key,
                self.object_etag,
                self.event_time.isoformat() if self.event_time else None,
            ],
            separators=(",", ":"),
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def is_housekeeping(self, key_marker: str) -> bool:
        if self.event_type is StorageEventType.HEALTH_CHECK:
            return True
        return bool(self.object_key) and key_marker in self.object_key

    def to_outbound_message(self) -> dict:
        """Serializable form sent downstream; the raw payload stays in the store."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"full_raw_payload", "fan_out_status", "fan_out_claimed_at"},
        )


# --- Raw S3 / MinIO notification shape (runtime validation) ---


class S3BucketModel(BaseModel):
    name: str | None = None


class S3ObjectModel(BaseModel):
    key: str | None = None
    size: int | None = None
    e_tag: str | None = Field(None, alias="eTag")
    content_type: str | None = Field(None, alias="contentType")
    version_id: str | None = Field(None, alias="versionId")
    sequencer: str | None = None


class S3EntityModel(BaseModel):
    bucket: S3BucketModel = Field(default_factory=S3BucketModel)
    object: S3ObjectModel = Field(default_factory=S3ObjectModel)


class S3EventRecordModel(BaseModel):
    event_name: str | None = Field(None, alias="eventName")
    event_time: datetime | None = Field(None, alias="eventTime")
    s3: S3EntityModel


class S3NotificationModel(BaseModel):
    """MinIO puts the event name at the top level; AWS only inside the record."""

    event_name: str | None = Field(None, alias="EventName")
    records: list[S3EventRecordModel] = Field(..., alias="Records", min_length=1)


class S3TestEventModel(BaseModel):
    """AWS sends this when a bucket notification is first configured."""

    event: str = Field(..., alias="Event")
    bucket: str | None = Field(None, alias="Bucket")
    time: datetime | None = Field(None, alias="Time")


# --- Price items ---


class PriceItem(BaseModel):
    """One product's price and stock record extracted from a price file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    item_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    product_id: str
    product_name: str
    price: Decimal = Field(..., ge=0)
    currency: str = "RUB"
    stock_quantity: int = Field(..., ge=0)
    category: str | None = None
    description: str | None = None
    manufacturer: str | None = None
    supplier_code: str | None = None

    @field_validator("product_id", "product_name", "currency")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class PriceItemMessage(BaseModel):
    """Transport envelope carrying one PriceItem of a batch."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    batch_id: str | None = None
    total_items_in_batch: int | None = None
    item_id: str | None = None
    company: str | None = None
    file_processed_at: datetime | None = None
    message_sent_at: datetime = Field(default_factory=utc_now)
    price_item: PriceItem | None = None

    def is_valid(self) -> bool:
        return bool(self.company) and self.price_item is not None and bool(self.batch_id)

    @property
    def effective_item_id(self) -> str | None:
        """
        The key an item is counted under within its batch.

        Must be stable across redeliveries of the same body, so a generated
        `PriceItem.item_id` never qualifies; without a wire item id the
        product id identifies the item.
        """
        if self.item_id:
            return self.item_id
        if self.price_item is None:
            return None
        if "item_id" in self.price_item.model_fields_set:
            return self.price_item.item_id
        return self.price_item.product_id

    @property
    def idempotency_key(self) -> str | None:
        if not self.is_valid():
            return None
        return f"{self.company}:{self.price_item.product_id}:{self.batch_id}"


def parse_price_item_message(body: str | bytes) -> PriceItemMessage:
    """Parses a queue body into a PriceItemMessage or raises MessageValidationError."""
    try:
        return PriceItemMessage.model_validate_json(body)
    except pydantic.ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise MessageValidationError(
            "Price item message failed validation",
            context={"validation_errors": errors},
        ) from e


# --- Batch processing history ---


class BatchProcessingStatus(str, Enum):
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class BatchProcessingHistory(BaseModel):
    """
    Audit record of one batch on its way into the search index.

    Written as PROCESSING when a flush starts, then SUCCESS with the indexed
    count or FAILED with the error. A retried flush rewrites the record, so
    it always reflects the latest attempt.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    batch_id: str
    company: str
    status: BatchProcessingStatus = BatchProcessingStatus.PROCESSING
    file_processed_at: datetime | None = None
    received_at: datetime | None = None
    indexed_at: datetime | None = None
    total_items: int = 0
    processed_items: int = 0
    attempt: int = 1
    error_message: str | None = None
