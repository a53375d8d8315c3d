# src/pricat_pipeline/aggregator.py

"""
In-memory aggregation of streamed price-item messages into complete batches.

Each batch moves ACCUMULATING -> COMPLETE -> FLUSHED, or ACCUMULATING ->
ABANDONED when it stops receiving items. State for one batch id is only
touched under that id's stripe lock; the sink call itself runs on the flush
executor with no lock held, so a slow index never stalls other batches.

A batch that fails to flush stays COMPLETE and is retried by `sweep()` with
exponential backoff. Finished batch ids (flushed or abandoned) are
remembered so that late redeliveries are recognized instead of opening a
fresh batch: in process memory under the stripe lock, and in the optional
durable store only once the lock is released. Every flush attempt and every
abandonment is written to the optional batch history.
"""

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from .config import AppConfig
from .exceptions import MessageValidationError, PipelineError, is_retryable_error
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore
from .locks import KeyedLocks
from .repository import BatchHistoryRepository
from .schemas import (
    BatchProcessingHistory,
    BatchProcessingStatus,
    PriceItem,
    PriceItemMessage,
    utc_now,
)
from .search_sink import SearchSink, SinkResult

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    ACCUMULATING = "ACCUMULATING"
    COMPLETE = "COMPLETE"
    FLUSHED = "FLUSHED"
    ABANDONED = "ABANDONED"


class AddOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    UPDATED = "UPDATED"
    COMPLETED = "COMPLETED"
    LATE = "LATE"
    IGNORED = "IGNORED"


@dataclass
class Batch:
    batch_id: str
    company: str
    expected_count: int
    first_seen_at: float
    last_updated_at: float
    file_processed_at: datetime | None = None
    received_at: datetime = field(default_factory=utc_now)
    received_items: dict[str, PriceItem] = field(default_factory=dict)
    state: BatchState = BatchState.ACCUMULATING
    flush_attempts: int = 0
    flush_in_progress: bool = False
    next_flush_at: float | None = None

    @property
    def received_count(self) -> int:
        return len(self.received_items)


@dataclass(frozen=True)
class _FlushJob:
    batch_id: str
    company: str
    items: list[PriceItem]
    file_processed_at: datetime | None
    received_at: datetime
    attempt: int


@dataclass
class SweepResult:
    abandoned: list[Batch] = field(default_factory=list)
    resubmitted: list[str] = field(default_factory=list)


FlushAlertCallback = Callable[[str, str, int, Exception], None]
FlushedCallback = Callable[[str, SinkResult], None]


class BatchAggregator:
    def __init__(
        self,
        sink: SearchSink,
        config: AppConfig,
        executor: Executor | None = None,
        finished_batches: IdempotencyStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_flush_alert: FlushAlertCallback | None = None,
        on_flushed: FlushedCallback | None = None,
        history: BatchHistoryRepository | None = None,
    ):
        self._sink = sink
        self._inactivity_seconds = config.batch_inactivity_seconds
        self._alert_threshold = config.flush_alert_threshold
        self._retry_base_seconds = config.requeue_base_delay_seconds
        self._retry_max_seconds = config.requeue_max_delay_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.flush_workers, thread_name_prefix="batch-flush"
        )
        self._recently_finished = InMemoryIdempotencyStore(
            ttl_seconds=config.finished_batch_ttl_seconds, clock=clock
        )
        self._finished = finished_batches
        self._history = history
        self._clock = clock
        self._on_flush_alert = on_flush_alert
        self._on_flushed = on_flushed
        self._locks = KeyedLocks()
        self._batches: dict[str, Batch] = {}

    # --- Intake ---

    def add_message(self, message: PriceItemMessage) -> AddOutcome:
        """
        Adds one item to its batch.

        Raises:
            MessageValidationError: the envelope is incomplete, disagrees with
                the batch it names, or adds a new item to a complete batch.
        """
        self._validate(message)
        batch_id = message.batch_id
        item_id = message.effective_item_id
        job = None

        # The durable lookup does I/O, so it runs before the stripe is taken.
        if (
            batch_id not in self._batches
            and self._finished is not None
            and self._finished.has_seen(batch_id)
        ):
            return self._late(message, item_id)

        with self._locks.lock_for(batch_id):
            now = self._clock()
            batch = self._batches.get(batch_id)
            if batch is None:
                if self._recently_finished.has_seen(batch_id):
                    return self._late(message, item_id)
                batch = Batch(
                    batch_id=batch_id,
                    company=message.company,
                    expected_count=message.total_items_in_batch,
                    first_seen_at=now,
                    last_updated_at=now,
                    file_processed_at=message.file_processed_at,
                )
                self._batches[batch_id] = batch
                logger.info(
                    "Opened batch.",
                    extra={
                        "batch_id": batch_id,
                        "company": batch.company,
                        "expected_count": batch.expected_count,
                    },
                )

            self._check_consistency(batch, message)

            if batch.state is BatchState.COMPLETE:
                if item_id not in batch.received_items:
                    raise MessageValidationError(
                        "New item for a batch that is already complete",
                        context={"batch_id": batch_id, "item_id": item_id},
                    )
                logger.info(
                    "Redelivered item for a complete batch; ignoring.",
                    extra={"batch_id": batch_id, "item_id": item_id},
                )
                return AddOutcome.IGNORED

            replaced = item_id in batch.received_items
            batch.received_items[item_id] = message.price_item
            batch.last_updated_at = now
            if batch.file_processed_at is None:
                batch.file_processed_at = message.file_processed_at

            if batch.received_count == batch.expected_count:
                batch.state = BatchState.COMPLETE
                job = self._begin_flush(batch)
                outcome = AddOutcome.COMPLETED
            else:
                outcome = AddOutcome.UPDATED if replaced else AddOutcome.ACCEPTED

        if job is not None:
            logger.info(
                "Batch complete; scheduling flush.",
                extra={
                    "batch_id": batch_id,
                    "company": job.company,
                    "item_count": len(job.items),
                },
            )
            self._submit(job)
        return outcome

    def _late(self, message: PriceItemMessage, item_id: str | None) -> AddOutcome:
        logger.info(
            "Late message for a finished batch; ignoring.",
            extra={
                "batch_id": message.batch_id,
                "item_id": item_id,
                "company": message.company,
            },
        )
        return AddOutcome.LATE

    def _validate(self, message: PriceItemMessage) -> None:
        if not message.is_valid():
            raise MessageValidationError(
                "Price item message requires company, batchId and priceItem",
                context={"message_id": message.message_id, "batch_id": message.batch_id},
            )
        if message.total_items_in_batch is None or message.total_items_in_batch <= 0:
            raise MessageValidationError(
                "totalItemsInBatch must be a positive integer",
                context={
                    "message_id": message.message_id,
                    "batch_id": message.batch_id,
                    "total_items_in_batch": message.total_items_in_batch,
                },
            )

    def _check_consistency(self, batch: Batch, message: PriceItemMessage) -> None:
        if message.company != batch.company:
            raise MessageValidationError(
                "Message company does not match its batch",
                context={
                    "batch_id": batch.batch_id,
                    "batch_company": batch.company,
                    "message_company": message.company,
                },
            )
        if message.total_items_in_batch != batch.expected_count:
            # The first message fixes the size; later disagreement is only noted.
            logger.warning(
                "Message disagrees with the batch size; keeping the original.",
                extra={
                    "batch_id": batch.batch_id,
                    "expected_count": batch.expected_count,
                    "message_total": message.total_items_in_batch,
                },
            )

    # --- Flushing ---

    def _begin_flush(self, batch: Batch) -> _FlushJob:
        """Must be called with the batch's lock held."""
        batch.flush_in_progress = True
        batch.flush_attempts += 1
        batch.next_flush_at = None
        return _FlushJob(
            batch_id=batch.batch_id,
            company=batch.company,
            items=list(batch.received_items.values()),
            file_processed_at=batch.file_processed_at,
            received_at=batch.received_at,
            attempt=batch.flush_attempts,
        )

    def _submit(self, job: _FlushJob) -> None:
        self._executor.submit(self._run_flush, job)

    def _run_flush(self, job: _FlushJob) -> None:
        history = BatchProcessingHistory(
            batch_id=job.batch_id,
            company=job.company,
            file_processed_at=job.file_processed_at,
            received_at=job.received_at,
            total_items=len(job.items),
            attempt=job.attempt,
        )
        self._record_history(history)
        try:
            result = self._sink.replace_company_data(
                job.company,
                job.items,
                generation=job.batch_id,
                file_processed_at=job.file_processed_at,
            )
        except Exception as e:
            self._record_history(
                history.model_copy(
                    update={"status": BatchProcessingStatus.FAILED, "error_message": str(e)}
                )
            )
            self._flush_failed(job, e)
            return

        with self._locks.lock_for(job.batch_id):
            batch = self._batches.pop(job.batch_id, None)
            if batch is not None:
                batch.state = BatchState.FLUSHED
                batch.flush_in_progress = False
            self._recently_finished.mark_seen(job.batch_id)
        self._remember_finished(job.batch_id)
        self._record_history(
            history.model_copy(
                update={
                    "status": BatchProcessingStatus.SUCCESS,
                    "processed_items": result.indexed_count,
                    "indexed_at": utc_now(),
                }
            )
        )

        logger.info(
            "Batch flushed to the search index.",
            extra={
                "batch_id": job.batch_id,
                "company": job.company,
                "item_count": len(job.items),
                "attempt": job.attempt,
                "index": result.index_name,
            },
        )
        if self._on_flushed is not None:
            self._on_flushed(job.batch_id, result)

    def _flush_failed(self, job: _FlushJob, error: Exception) -> None:
        delay = min(
            self._retry_max_seconds,
            self._retry_base_seconds * 2 ** (job.attempt - 1),
        )
        with self._locks.lock_for(job.batch_id):
            batch = self._batches.get(job.batch_id)
            if batch is not None:
                batch.flush_in_progress = False
                batch.next_flush_at = self._clock() + delay

        retryable = is_retryable_error(error)
        context = {
            "batch_id": job.batch_id,
            "company": job.company,
            "attempt": job.attempt,
            "retry_in_seconds": delay,
            "retryable": retryable,
            "error": str(error),
        }
        if job.attempt >= self._alert_threshold or not retryable:
            logger.critical("Batch flush keeps failing.", extra=context)
            if self._on_flush_alert is not None:
                self._on_flush_alert(job.batch_id, job.company, job.attempt, error)
        else:
            logger.warning("Batch flush failed; will retry.", extra=context)

    def _remember_finished(self, batch_id: str) -> None:
        """Writes the durable marker. Must be called without the batch's lock."""
        if self._finished is None:
            return
        try:
            self._finished.mark_seen(batch_id)
        except Exception:
            logger.exception(
                "Could not record finished batch; late messages may reopen it.",
                extra={"batch_id": batch_id},
            )

    def _record_history(self, history: BatchProcessingHistory) -> None:
        if self._history is None:
            return
        try:
            self._history.save(history)
        except PipelineError as e:
            logger.warning(
                "Could not record batch history.",
                extra={
                    "batch_id": history.batch_id,
                    "status": history.status.value,
                    "error": e.to_dict(),
                },
            )

    # --- Housekeeping ---

    def sweep(self, now: float | None = None) -> SweepResult:
        """Abandons idle partial batches and resubmits due flush retries."""
        now = self._clock() if now is None else now
        result = SweepResult()
        jobs = []

        for batch_id in list(self._batches):
            with self._locks.lock_for(batch_id):
                batch = self._batches.get(batch_id)
                if batch is None:
                    continue
                if (
                    batch.state is BatchState.ACCUMULATING
                    and now - batch.last_updated_at >= self._inactivity_seconds
                ):
                    batch.state = BatchState.ABANDONED
                    del self._batches[batch_id]
                    self._recently_finished.mark_seen(batch_id)
                    result.abandoned.append(batch)
                    logger.warning(
                        "Abandoned incomplete batch.",
                        extra={
                            "batch_id": batch_id,
                            "company": batch.company,
                            "received_count": batch.received_count,
                            "expected_count": batch.expected_count,
                            "idle_seconds": round(now - batch.last_updated_at, 1),
                        },
                    )
                elif (
                    batch.state is BatchState.COMPLETE
                    and not batch.flush_in_progress
                    and batch.next_flush_at is not None
                    and now >= batch.next_flush_at
                ):
                    jobs.append(self._begin_flush(batch))
                    result.resubmitted.append(batch_id)

        for batch in result.abandoned:
            self._remember_finished(batch.batch_id)
            self._record_history(
                BatchProcessingHistory(
                    batch_id=batch.batch_id,
                    company=batch.company,
                    status=BatchProcessingStatus.FAILED,
                    file_processed_at=batch.file_processed_at,
                    received_at=batch.received_at,
                    total_items=batch.expected_count,
                    attempt=batch.flush_attempts,
                    error_message=(
                        f"Abandoned after {batch.received_count} of "
                        f"{batch.expected_count} items"
                    ),
                )
            )

        for job in jobs:
            logger.info(
                "Retrying batch flush.",
                extra={"batch_id": job.batch_id, "attempt": job.attempt},
            )
            self._submit(job)
        return result

    def snapshot(self) -> list[dict]:
        now = self._clock()
        return [
            {
                "batch_id": batch.batch_id,
                "company": batch.company,
                "state": batch.state.value,
                "received_count": batch.received_count,
                "expected_count": batch.expected_count,
                "flush_attempts": batch.flush_attempts,
                "idle_seconds": round(now - batch.last_updated_at, 1),
            }
            for batch in list(self._batches.values())
        ]

    def get_batch(self, batch_id: str) -> Batch | None:
        return self._batches.get(batch_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
