"""
Long-running worker entry point.

    python -m pricat_pipeline.worker intake     # raw storage events -> normalized events
    python -m pricat_pipeline.worker aggregate  # price items -> search index
    python -m pricat_pipeline.worker health     # check dependencies and exit

The aggregate stage keeps batch state in memory, so it runs here rather than
in Lambda. A sweeper thread abandons idle batches, retries failed flushes
and flushes the metrics buffer.
"""

import argparse
import json
import signal
import sys
import threading

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.idempotency.persistence.dynamodb import (
    DynamoDBPersistenceLayer,
)

from .aggregator import AddOutcome, BatchAggregator
from .clients import SqsClient, build_boto_client
from .config import AppConfig, get_config
from .consumer import QueueMessage, SqsQueueConsumer
from .exceptions import ConfigurationError
from .health import check_health
from .idempotency import DynamoDBIdempotencyStore
from .intake import EventIntakeController
from .policy import ErrorPolicy
from .repository import BatchHistoryRepository, StorageEventRepository
from .schemas import parse_price_item_message
from .search_sink import ElasticsearchSearchSink

FINISHED_BATCH_NAMESPACE = "finished-batch"

logger = Logger()
metrics = Metrics(namespace="PricatPipeline")
_metrics_lock = threading.Lock()


def add_count(name: str, value: int = 1) -> None:
    with _metrics_lock:
        metrics.add_metric(name=name, unit=MetricUnit.Count, value=value)


def flush_metrics() -> None:
    with _metrics_lock:
        metrics.flush_metrics()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pricat-worker", description="pricat ingestion and aggregation workers"
    )
    parser.add_argument(
        "command",
        choices=["intake", "aggregate", "health"],
        help="which stage to run",
    )
    parser.add_argument(
        "--wait-seconds",
        type=int,
        default=20,
        help="SQS long-poll wait time (default: 20)",
    )
    return parser


def _install_signal_handlers(consumer: SqsQueueConsumer) -> None:
    def _stop(signum, _frame):
        logger.info("Stop signal received.", extra={"signal": signum})
        consumer.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def _on_outcome(outcome: str) -> None:
    add_count(f"{outcome}Messages")


def run_intake(config: AppConfig, wait_seconds: int) -> int:
    if not config.raw_events_queue_url:
        raise ConfigurationError("RAW_EVENTS_QUEUE_URL is required for the intake worker")

    sqs_client = SqsClient(build_boto_client("sqs", config.external_call_timeout_seconds))
    repository = StorageEventRepository(
        build_boto_client("dynamodb", config.external_call_timeout_seconds),
        config.events_table_name,
    )
    controller = EventIntakeController(repository, sqs_client, config)

    def handle(message: QueueMessage) -> None:
        outcome = controller.process(message.body, message.correlation_id)
        add_count(f"{outcome.value.title()}Events")

    consumer = SqsQueueConsumer(
        sqs_client,
        config.raw_events_queue_url,
        handle,
        ErrorPolicy.from_config(config),
        dead_letter_queue_url=config.dead_letter_queue_url,
        workers=config.consumer_workers,
        wait_seconds=wait_seconds,
        on_outcome=_on_outcome,
    )
    _install_signal_handlers(consumer)

    flusher = threading.Thread(
        target=_flush_loop, args=(consumer, config.sweep_interval_seconds), daemon=True
    )
    flusher.start()
    consumer.run()
    flush_metrics()
    return 0


def _flush_loop(consumer: SqsQueueConsumer, interval: int) -> None:
    while not consumer.wait(interval):
        flush_metrics()


def build_aggregator(config: AppConfig, dynamodb_client) -> BatchAggregator:
    sink = ElasticsearchSearchSink(
        config.search_endpoint,
        config.search_index_prefix,
        timeout=config.external_call_timeout_seconds,
    )
    persistence_layer = DynamoDBPersistenceLayer(
        table_name=config.events_table_name,
        key_attr="dedup_key",
        expiry_attr="expires_at",
        boto3_client=dynamodb_client,
    )
    finished_batches = DynamoDBIdempotencyStore(
        persistence_layer,
        namespace=FINISHED_BATCH_NAMESPACE,
        ttl_seconds=config.finished_batch_ttl_seconds,
    )
    history = BatchHistoryRepository(dynamodb_client, config.events_table_name)

    def on_flush_alert(batch_id: str, company: str, attempts: int, error: Exception) -> None:
        add_count("BatchFlushAlerts")

    def on_flushed(batch_id: str, result) -> None:
        add_count("BatchesFlushed")
        add_count("ItemsIndexed", result.indexed_count)

    return BatchAggregator(
        sink,
        config,
        finished_batches=finished_batches,
        on_flush_alert=on_flush_alert,
        on_flushed=on_flushed,
        history=history,
    )


def run_aggregate(config: AppConfig, wait_seconds: int) -> int:
    sqs_client = SqsClient(build_boto_client("sqs", config.external_call_timeout_seconds))
    dynamodb_client = build_boto_client("dynamodb", config.external_call_timeout_seconds)
    aggregator = build_aggregator(config, dynamodb_client)

    def handle(message: QueueMessage) -> AddOutcome:
        outcome = aggregator.add_message(parse_price_item_message(message.body))
        if outcome is AddOutcome.COMPLETED:
            add_count("BatchesCompleted")
        elif outcome is AddOutcome.LATE:
            add_count("LateItems")
        return outcome

    consumer = SqsQueueConsumer(
        sqs_client,
        config.item_queue_url,
        handle,
        ErrorPolicy.from_config(config),
        dead_letter_queue_url=config.dead_letter_queue_url,
        workers=config.consumer_workers,
        wait_seconds=wait_seconds,
        on_outcome=_on_outcome,
    )
    _install_signal_handlers(consumer)

    sweeper = threading.Thread(
        target=_sweep_loop,
        args=(aggregator, consumer, config.sweep_interval_seconds),
        name="batch-sweeper",
        daemon=True,
    )
    sweeper.start()
    consumer.run()

    logger.info("Draining in-flight flushes.", extra={"batches": aggregator.snapshot()})
    aggregator.shutdown(wait=True)
    flush_metrics()
    return 0


def _sweep_loop(aggregator: BatchAggregator, consumer: SqsQueueConsumer, interval: int) -> None:
    while not consumer.wait(interval):
        try:
            result = aggregator.sweep()
        except Exception:
            logger.exception("Batch sweep failed.")
            continue
        if result.abandoned:
            add_count("BatchesAbandoned", len(result.abandoned))
        if result.resubmitted:
            add_count("BatchFlushRetries", len(result.resubmitted))
        flush_metrics()


def run_health(config: AppConfig) -> int:
    sqs_client = SqsClient(build_boto_client("sqs", config.external_call_timeout_seconds))
    repository = StorageEventRepository(
        build_boto_client("dynamodb", config.external_call_timeout_seconds),
        config.events_table_name,
    )
    sink = ElasticsearchSearchSink(
        config.search_endpoint,
        config.search_index_prefix,
        timeout=config.external_call_timeout_seconds,
    )
    queue_urls = {
        "normalized_events": config.normalized_events_queue_url,
        "items": config.item_queue_url,
    }
    if config.raw_events_queue_url:
        queue_urls["raw_events"] = config.raw_events_queue_url
    if config.dead_letter_queue_url:
        queue_urls["dead_letter"] = config.dead_letter_queue_url

    report = check_health(sqs_client, queue_urls, repository=repository, sink=sink)
    print(json.dumps(report, indent=2))
    return 0 if report["healthy"] else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger.setLevel(config.log_level)
    logger.append_keys(service=config.service_name, stage=args.command)
    copy_config_to_registered_loggers(source_logger=logger, include={"pricat_pipeline"})
    metrics.set_default_dimensions(environment=config.environment)

    try:
        if args.command == "intake":
            return run_intake(config, args.wait_seconds)
        if args.command == "aggregate":
            return run_aggregate(config, args.wait_seconds)
        return run_health(config)
    except ConfigurationError as e:
        logger.error("Worker cannot start.", extra={"error": e.to_dict()})
        return 2


if __name__ == "__main__":
    sys.exit(main())
