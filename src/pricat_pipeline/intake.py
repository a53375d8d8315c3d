# src/pricat_pipeline/intake.py

"""
Event intake: decode -> normalize -> persist once -> fan out.

A delivery is acknowledged only once its event is durably recorded and, for
non-housekeeping events, published downstream. Redeliveries of an already
published event are acknowledged without side effects. If an earlier
delivery recorded the event but failed to publish it, the fan-out claim on
the record lets exactly one later delivery finish the job.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from .clients import SqsClient
from .config import AppConfig
from .exceptions import EventStoreUnavailableError, FanOutInProgressError, RetryableError
from .normalizer import decode_body, normalize_storage_event
from .repository import StorageEventRepository
from .schemas import FanOutStatus, StorageEvent, utc_now

logger = logging.getLogger(__name__)


class IntakeOutcome(str, Enum):
    PUBLISHED = "PUBLISHED"
    DUPLICATE = "DUPLICATE"
    HOUSEKEEPING = "HOUSEKEEPING"


class EventIntakeController:
    def __init__(
        self,
        repository: StorageEventRepository,
        sqs_client: SqsClient,
        config: AppConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._repository = repository
        self._sqs = sqs_client
        self._config = config
        self._clock = clock
        self._claim_window = timedelta(seconds=config.fan_out_claim_seconds)

    def process(
        self, body: bytes | str, correlation_id: str | None = None
    ) -> IntakeOutcome:
        """
        Handles one raw storage notification.

        Raises:
            NormalizationError: the payload is malformed (fatal).
            RetryableError: the store or the broker failed; redelivery is safe.
        """
        text = decode_body(body)
        event = normalize_storage_event(text, correlation_id)
        now = self._clock()

        housekeeping = event.is_housekeeping(self._config.housekeeping_key_marker)
        if housekeeping:
            event = event.model_copy(
                update={"fan_out_status": FanOutStatus.NOT_REQUIRED}
            )
        else:
            event = event.model_copy(update={"fan_out_claimed_at": now})

        result = self._repository.record_if_new(event)
        record = result.record

        if not result.inserted:
            record = self._reclaim_pending(record, now)
            if record is None:
                return IntakeOutcome.DUPLICATE

        if record.fan_out_status is FanOutStatus.NOT_REQUIRED:
            logger.info(
                "Housekeeping event acknowledged without fan-out.",
                extra={
                    "correlation_id": record.correlation_id,
                    "event_type": record.event_type.value,
                    "key": record.object_key,
                },
            )
            return IntakeOutcome.HOUSEKEEPING

        self._publish(record)
        return IntakeOutcome.PUBLISHED

    def _reclaim_pending(self, existing: StorageEvent, now: datetime) -> StorageEvent | None:
        """
        Decides what to do with a redelivery of an already-recorded event.

        Returns the re-claimed record when this delivery must publish it, or
        None when there is nothing left to do.
        """
        if existing.fan_out_status is not FanOutStatus.PENDING:
            logger.info(
                "Duplicate delivery of a settled event; acknowledging.",
                extra={
                    "correlation_id": existing.correlation_id,
                    "fan_out_status": existing.fan_out_status.value,
                },
            )
            return None

        claimed_at = existing.fan_out_claimed_at
        if claimed_at is not None and now - claimed_at < self._claim_window:
            raise FanOutInProgressError(
                existing.dedup_key,
                context={"claimed_at": claimed_at.isoformat()},
                correlation_id=existing.correlation_id,
            )

        claimed = self._repository.claim_fan_out(existing, now)
        if claimed is None:
            # Someone else re-claimed or published it between our read and write.
            raise FanOutInProgressError(
                existing.dedup_key, correlation_id=existing.correlation_id
            )

        logger.warning(
            "Re-claimed an unpublished event from an earlier delivery.",
            extra={
                "correlation_id": claimed.correlation_id,
                "previous_claim": claimed_at.isoformat() if claimed_at else None,
            },
        )
        return claimed

    def _publish(self, record: StorageEvent) -> None:
        try:
            message_id = self._sqs.send_json(
                self._config.normalized_events_queue_url,
                record.to_outbound_message(),
                attributes={"correlationId": record.correlation_id},
            )
        except RetryableError:
            self._release_claim(record)
            raise

        try:
            if self._repository.mark_published(record) is None:
                logger.warning(
                    "Event was published but its record changed concurrently.",
                    extra={"correlation_id": record.correlation_id},
                )
        except EventStoreUnavailableError as e:
            # The message is out; failing the delivery now would publish it twice.
            logger.warning(
                "Event published but the record could not be marked.",
                extra={"correlation_id": record.correlation_id, "error": e.to_dict()},
            )

        logger.info(
            "Storage event published downstream.",
            extra={
                "correlation_id": record.correlation_id,
                "message_id": message_id,
                "event_type": record.event_type.value,
                "bucket": record.bucket_name,
                "key": record.object_key,
            },
        )

    def _release_claim(self, record: StorageEvent) -> None:
        try:
            self._repository.release_fan_out(record)
        except EventStoreUnavailableError as e:
            # The claim then simply expires after the claim window.
            logger.warning(
                "Could not release fan-out claim after a failed publish.",
                extra={"correlation_id": record.correlation_id, "error": e.to_dict()},
            )
