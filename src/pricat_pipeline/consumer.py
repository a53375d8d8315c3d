# src/pricat_pipeline/consumer.py

"""
Long-running SQS consumer that applies the error policy to every message.

Acknowledgement semantics:
* success or DISCARD -> delete the message;
* REQUEUE -> extend its visibility by the policy's backoff delay so the
  broker redelivers it later;
* DEAD_LETTER -> copy it to the dead-letter queue, then delete it;
* SHUTDOWN -> leave it on the queue and stop polling.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from .clients import SqsClient
from .exceptions import PipelineError, QueueUnavailableError, get_error_context
from .policy import Disposition, ErrorPolicy

logger = logging.getLogger(__name__)

# Max visibility delay when no DLQ exists; the queue's own redrive policy takes over.
_PARK_SECONDS = 43_200


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    body: str
    receipt_handle: str
    receive_count: int = 1
    attributes: dict[str, str] = field(default_factory=dict)

    @property
    def correlation_id(self) -> str | None:
        return self.attributes.get("correlationId")

    @classmethod
    def from_sqs(cls, message: dict[str, Any]) -> "QueueMessage":
        """Builds from a boto3 `receive_message` entry."""
        return cls(
            message_id=message["MessageId"],
            body=message["Body"],
            receipt_handle=message["ReceiptHandle"],
            receive_count=int(
                message.get("Attributes", {}).get("ApproximateReceiveCount", "1")
            ),
            attributes={
                name: value["StringValue"]
                for name, value in message.get("MessageAttributes", {}).items()
                if "StringValue" in value
            },
        )

    @classmethod
    def from_lambda_record(cls, record: dict[str, Any]) -> "QueueMessage":
        """Builds from one record of an SQS-triggered Lambda event."""
        return cls(
            message_id=record["messageId"],
            body=record["body"],
            receipt_handle=record.get("receiptHandle", ""),
            receive_count=int(
                record.get("attributes", {}).get("ApproximateReceiveCount", "1")
            ),
            attributes={
                name: value["stringValue"]
                for name, value in record.get("messageAttributes", {}).items()
                if value.get("stringValue") is not None
            },
        )


def send_to_dead_letter(
    sqs_client: SqsClient,
    dead_letter_queue_url: str,
    message: QueueMessage,
    error: Exception,
    source_queue_url: str,
) -> None:
    """Copies *message* unchanged to the DLQ, annotated with why it failed."""
    error_context = get_error_context(error)
    attributes = {
        **message.attributes,
        "sourceQueue": source_queue_url,
        "errorType": error_context["error_type"],
        "receiveCount": str(message.receive_count),
    }
    if isinstance(error, PipelineError):
        attributes["errorCode"] = error.error_code
    sqs_client.send_raw(dead_letter_queue_url, message.body, attributes=attributes)
    logger.warning(
        "Message moved to the dead-letter queue.",
        extra={"message_id": message.message_id, "source_queue": source_queue_url},
    )


OutcomeCallback = Callable[[str], None]


class SqsQueueConsumer:
    def __init__(
        self,
        sqs_client: SqsClient,
        queue_url: str,
        handler: Callable[[QueueMessage], Any],
        policy: ErrorPolicy,
        dead_letter_queue_url: str | None = None,
        workers: int = 4,
        wait_seconds: int = 20,
        on_outcome: OutcomeCallback | None = None,
    ):
        self._sqs = sqs_client
        self._queue_url = queue_url
        self._handler = handler
        self._policy = policy
        self._dead_letter_queue_url = dead_letter_queue_url
        self._workers = workers
        self._wait_seconds = wait_seconds
        self._on_outcome = on_outcome
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def wait(self, timeout: float) -> bool:
        """Sleeps up to *timeout* seconds. Returns True once the consumer is stopped."""
        return self._stop.wait(timeout)

    # --- Polling ---

    def run(self) -> None:
        """Starts the worker threads and blocks until `stop()` is called."""
        threads = [
            threading.Thread(
                target=self._work_loop, name=f"sqs-consumer-{index}", daemon=True
            )
            for index in range(self._workers)
        ]
        logger.info(
            "Starting queue consumer.",
            extra={"queue_url": self._queue_url, "workers": self._workers},
        )
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        logger.info("Queue consumer stopped.", extra={"queue_url": self._queue_url})

    def _work_loop(self) -> None:
        while not self._stop.is_set():
            self.poll_once()

    def poll_once(self) -> int:
        """Receives one batch and processes it. Returns the number of messages seen."""
        try:
            raw_messages = self._sqs.receive(
                self._queue_url, wait_seconds=self._wait_seconds
            )
        except QueueUnavailableError as e:
            logger.warning(
                "Receive failed; backing off.",
                extra={"queue_url": self._queue_url, "error": e.to_dict()},
            )
            self._stop.wait(self._policy.base_delay_seconds)
            return 0

        for raw in raw_messages:
            if self._stop.is_set():
                # Unprocessed messages become visible again after their timeout.
                break
            self.process_message(QueueMessage.from_sqs(raw))
        return len(raw_messages)

    # --- Per-message handling ---

    def process_message(self, message: QueueMessage) -> Disposition | None:
        """Runs the handler and settles the message. Returns None on success."""
        try:
            self._handler(message)
        except Exception as e:
            disposition = self._policy.decide(e, message.receive_count)
            self._settle_failure(message, disposition, e)
            return disposition

        self._acknowledge(message)
        self._record("Processed")
        return None

    def _settle_failure(
        self, message: QueueMessage, disposition: Disposition, error: Exception
    ) -> None:
        try:
            if disposition is Disposition.REQUEUE:
                delay = self._policy.requeue_delay(message.receive_count)
                self._sqs.change_visibility(
                    self._queue_url, message.receipt_handle, delay
                )
                self._record("Requeued")
            elif disposition is Disposition.DEAD_LETTER:
                if self._dead_letter_queue_url:
                    send_to_dead_letter(
                        self._sqs,
                        self._dead_letter_queue_url,
                        message,
                        error,
                        self._queue_url,
                    )
                    self._acknowledge(message)
                else:
                    logger.error(
                        "No dead-letter queue configured; parking message.",
                        extra={"message_id": message.message_id},
                    )
                    self._sqs.change_visibility(
                        self._queue_url, message.receipt_handle, _PARK_SECONDS
                    )
                self._record("DeadLettered")
            elif disposition is Disposition.DISCARD:
                self._acknowledge(message)
                self._record("Discarded")
            elif disposition is Disposition.SHUTDOWN:
                self.stop()
        except QueueUnavailableError as e:
            # The message reappears after its visibility timeout and is retried.
            logger.error(
                "Could not settle failed message.",
                extra={
                    "message_id": message.message_id,
                    "disposition": disposition.value,
                    "error": e.to_dict(),
                },
            )

    def _acknowledge(self, message: QueueMessage) -> None:
        try:
            self._sqs.delete(self._queue_url, message.receipt_handle)
        except QueueUnavailableError as e:
            logger.warning(
                "Could not delete message; it will be redelivered.",
                extra={"message_id": message.message_id, "error": e.to_dict()},
            )

    def _record(self, outcome: str) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
