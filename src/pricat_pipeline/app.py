"""
The Lambda Adapter for the storage-event intake stage.

This module is the entry point for the SQS-triggered AWS Lambda function
that receives raw storage notifications. It is responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer and
    Metrics).
2.  Running every SQS record through the EventIntakeController, which
    normalizes, records and fans out each storage event exactly once.
3.  Applying the consumer error policy to failed records: retryable failures
    are reported back to SQS for redelivery, malformed ones are
    dead-lettered or dropped.
4.  Returning a partial batch failure response so that only failed records
    are redelivered.
"""

from typing import cast

from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch.types import (
    PartialItemFailures,
    PartialItemFailureResponse,
)
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import SqsClient, build_boto_client
from .config import get_config
from .consumer import QueueMessage, send_to_dead_letter
from .exceptions import QueueUnavailableError, get_error_context
from .health import check_health
from .intake import EventIntakeController, IntakeOutcome
from .policy import Disposition, ErrorPolicy
from .repository import StorageEventRepository

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="PricatPipeline",
    service=CONFIG.service_name,
)
copy_config_to_registered_loggers(source_logger=logger, include={"pricat_pipeline"})

sqs_client = SqsClient(
    build_boto_client("sqs", CONFIG.external_call_timeout_seconds)
)
event_repository = StorageEventRepository(
    build_boto_client("dynamodb", CONFIG.external_call_timeout_seconds),
    CONFIG.events_table_name,
)
intake_controller = EventIntakeController(event_repository, sqs_client, CONFIG)
error_policy = ErrorPolicy.from_config(CONFIG)

_OUTCOME_METRICS = {
    IntakeOutcome.PUBLISHED: "PublishedEvents",
    IntakeOutcome.DUPLICATE: "DuplicateEvents",
    IntakeOutcome.HOUSEKEEPING: "HousekeepingEvents",
}


def build_partial_failure_response(
    failed_message_ids: set[str],
) -> PartialItemFailureResponse:
    """
    Given a set of SQS message IDs, return the structure that the
    Lambda partial batch response API expects.
    """
    failures = [
        cast(PartialItemFailures, {"itemIdentifier": mid}) for mid in failed_message_ids
    ]
    response = cast(PartialItemFailureResponse, {"batchItemFailures": failures})
    return response


def _handle_failure(message: QueueMessage, error: Exception) -> bool:
    """Applies the error policy. Returns True if SQS should redeliver the record."""
    disposition = error_policy.decide(error, message.receive_count)

    if disposition is Disposition.SHUTDOWN:
        raise error

    if disposition is Disposition.REQUEUE:
        metrics.add_metric(name="RequeuedMessages", unit=MetricUnit.Count, value=1)
        return True

    if disposition is Disposition.DISCARD:
        metrics.add_metric(name="DiscardedMessages", unit=MetricUnit.Count, value=1)
        logger.warning(
            "Dropping unprocessable message.",
            extra={"messageId": message.message_id, "error": get_error_context(error)},
        )
        return False

    # DEAD_LETTER
    metrics.add_metric(name="DeadLetteredMessages", unit=MetricUnit.Count, value=1)
    if not CONFIG.has_dead_letter_queue:
        # Leave it to the event source's redrive policy.
        return True
    try:
        send_to_dead_letter(
            sqs_client,
            CONFIG.dead_letter_queue_url,
            message,
            error,
            CONFIG.raw_events_queue_url or "lambda-event-source",
        )
    except QueueUnavailableError as e:
        logger.error(
            "Dead-lettering failed; leaving the message for redelivery.",
            extra={"messageId": message.message_id, "error": e.to_dict()},
        )
        return True
    return False


@tracer.capture_method
def _process_record(message: QueueMessage) -> bool:
    """Processes one record. Returns True if it must be reported as failed."""
    try:
        outcome = intake_controller.process(message.body, message.correlation_id)
    except Exception as e:
        return _handle_failure(message, e)

    metrics.add_metric(
        name=_OUTCOME_METRICS[outcome], unit=MetricUnit.Count, value=1
    )
    return False


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> PartialItemFailureResponse | dict:
    """Main Lambda handler for SQS events and direct health-check invocations."""
    metrics.add_dimension("environment", CONFIG.environment)

    if event.get("health_check"):
        queue_urls = {"normalized_events": CONFIG.normalized_events_queue_url}
        if CONFIG.dead_letter_queue_url:
            queue_urls["dead_letter"] = CONFIG.dead_letter_queue_url
        return check_health(sqs_client, queue_urls, repository=event_repository)

    sqs_records: list[dict] = event.get("Records", [])
    if not sqs_records:
        logger.warning("Event did not contain any SQS records. Exiting gracefully.")
        return {"batchItemFailures": []}

    logger.info(
        "Starting SQS batch processing",
        extra={
            "sqs_messages": len(sqs_records),
            "request_id": context.aws_request_id,
        },
    )

    failed_message_ids: set[str] = set()
    for record in sqs_records:
        message = QueueMessage.from_lambda_record(record)
        if _process_record(message):
            failed_message_ids.add(message.message_id)

    logger.info(
        "SQS batch processing completed",
        extra={
            "sqs_messages": len(sqs_records),
            "failed_messages": len(failed_message_ids),
        },
    )
    if failed_message_ids:
        return build_partial_failure_response(failed_message_ids)
    return {"batchItemFailures": []}
