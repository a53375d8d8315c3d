# src/pricat_pipeline/normalizer.py

"""
Turns a raw storage notification into a canonical StorageEvent.

Only the first record of a notification is considered, matching how MinIO
and S3 deliver one object change per message. The original payload text is
kept verbatim on the event for audit and replay.
"""

import json
import logging
from urllib.parse import unquote_plus

import pydantic

from .exceptions import NormalizationError
from .schemas import (
    S3NotificationModel,
    S3TestEventModel,
    StorageEvent,
    StorageEventType,
    new_correlation_id,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 500


def decode_body(body: bytes | str) -> str:
    """Decodes a queue message body to text; undecodable bytes are malformed input."""
    if isinstance(body, str):
        return body
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise NormalizationError(
            "Message body is not valid UTF-8",
            context={"body_length": len(body)},
        ) from e


def normalize_storage_event(
    raw_payload: str, correlation_id: str | None = None
) -> StorageEvent:
    """
    Parses *raw_payload* into an unpersisted StorageEvent.

    Raises:
        NormalizationError: the payload is not JSON, not an object, or does not
            have the expected notification structure.
    """
    correlation_id = correlation_id or new_correlation_id()

    try:
        document = json.loads(raw_payload)
    except json.JSONDecodeError as e:
        raise NormalizationError(
            f"Storage notification is not valid JSON: {e.msg}",
            context={"preview": raw_payload[:_PREVIEW_CHARS]},
            correlation_id=correlation_id,
        ) from e

    if not isinstance(document, dict):
        raise NormalizationError(
            "Storage notification must be a JSON object",
            context={"json_type": type(document).__name__},
            correlation_id=correlation_id,
        )

    if "Records" not in document and "Event" in document:
        return _normalize_test_event(document, raw_payload, correlation_id)

    try:
        notification = S3NotificationModel.model_validate(document)
    except pydantic.ValidationError as e:
        raise NormalizationError(
            "Storage notification failed validation",
            context={
                "validation_errors": e.errors(
                    include_url=False, include_context=False, include_input=False
                )
            },
            correlation_id=correlation_id,
        ) from e

    record = notification.records[0]
    event_name = notification.event_name or record.event_name
    s3_object = record.s3.object

    event = StorageEvent(
        correlation_id=correlation_id,
        event_type=StorageEventType.from_name(event_name),
        bucket_name=record.s3.bucket.name,
        object_key=unquote_plus(s3_object.key) if s3_object.key is not None else None,
        object_size=s3_object.size,
        object_etag=s3_object.e_tag,
        object_content_type=s3_object.content_type,
        event_time=record.event_time,
        full_raw_payload=raw_payload,
    )
    if event.event_type is StorageEventType.UNKNOWN:
        logger.warning(
            "Unrecognized storage event name.",
            extra={"event_name": event_name, "correlation_id": correlation_id},
        )
    return event


def _normalize_test_event(
    document: dict, raw_payload: str, correlation_id: str
) -> StorageEvent:
    try:
        test_event = S3TestEventModel.model_validate(document)
    except pydantic.ValidationError as e:
        raise NormalizationError(
            "Storage test event failed validation",
            context={
                "validation_errors": e.errors(
                    include_url=False, include_context=False, include_input=False
                )
            },
            correlation_id=correlation_id,
        ) from e

    return StorageEvent(
        correlation_id=correlation_id,
        event_type=StorageEventType.from_name(test_event.event),
        bucket_name=test_event.bucket,
        event_time=test_event.time,
        full_raw_payload=raw_payload,
    )
