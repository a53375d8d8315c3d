# tests/unit/test_worker.py

"""
Unit tests for the long-running worker entry point.
"""

import json
import threading
from unittest.mock import MagicMock

import pytest

from pricat_pipeline import worker
from pricat_pipeline.aggregator import SweepResult
from pricat_pipeline.clients import SqsClient
from pricat_pipeline.consumer import SqsQueueConsumer
from pricat_pipeline.idempotency import DynamoDBIdempotencyStore
from pricat_pipeline.policy import ErrorPolicy
from pricat_pipeline.repository import BatchHistoryRepository


def test_parser_accepts_known_commands():
    args = worker.build_parser().parse_args(["aggregate", "--wait-seconds", "5"])

    assert args.command == "aggregate"
    assert args.wait_seconds == 5


def test_parser_rejects_unknown_command():
    with pytest.raises(SystemExit):
        worker.build_parser().parse_args(["bundle"])


def test_intake_without_raw_queue_is_a_configuration_error(app_config):
    # The unit test environment does not define RAW_EVENTS_QUEUE_URL.
    assert app_config.raw_events_queue_url is None

    assert worker.main(["intake"]) == 2


@pytest.mark.parametrize("healthy, exit_code", [(True, 0), (False, 1)])
def test_health_command_prints_report(monkeypatch, capsys, app_config, healthy, exit_code):
    monkeypatch.setattr(worker, "build_boto_client", MagicMock())
    report = {"healthy": healthy, "checks": {"event_store": healthy}}
    check_health = MagicMock(return_value=report)
    monkeypatch.setattr(worker, "check_health", check_health)

    assert worker.run_health(app_config) == exit_code

    assert json.loads(capsys.readouterr().out) == report
    queue_urls = check_health.call_args.args[1]
    assert queue_urls["items"] == app_config.item_queue_url
    assert "raw_events" not in queue_urls


def _idle_consumer() -> SqsQueueConsumer:
    return SqsQueueConsumer(
        MagicMock(spec=SqsClient),
        "https://sqs/items",
        MagicMock(),
        ErrorPolicy(max_delivery_attempts=3, has_dead_letter_queue=False),
    )


def test_sweep_loop_exits_promptly_when_the_consumer_stops(monkeypatch):
    monkeypatch.setattr(worker, "flush_metrics", MagicMock())
    aggregator = MagicMock()
    consumer = _idle_consumer()
    sweeper = threading.Thread(
        target=worker._sweep_loop, args=(aggregator, consumer, 3600), daemon=True
    )
    sweeper.start()

    consumer.stop()
    sweeper.join(timeout=5)

    assert not sweeper.is_alive()
    aggregator.sweep.assert_not_called()


def test_flush_loop_exits_promptly_when_the_consumer_stops(monkeypatch):
    flush = MagicMock()
    monkeypatch.setattr(worker, "flush_metrics", flush)
    consumer = _idle_consumer()
    flusher = threading.Thread(
        target=worker._flush_loop, args=(consumer, 3600), daemon=True
    )
    flusher.start()

    consumer.stop()
    flusher.join(timeout=5)

    assert not flusher.is_alive()
    flush.assert_not_called()


def test_sweep_loop_keeps_sweeping_until_stopped(monkeypatch):
    monkeypatch.setattr(worker, "flush_metrics", MagicMock())
    consumer = _idle_consumer()
    aggregator = MagicMock()
    results = iter([SweepResult(), RuntimeError("boom"), SweepResult()])

    def third_sweep_stops(*args, **kwargs):
        result = next(results)
        if aggregator.sweep.call_count == 3:
            consumer.stop()
        if isinstance(result, Exception):
            raise result
        return result

    aggregator.sweep.side_effect = third_sweep_stops

    worker._sweep_loop(aggregator, consumer, 0)

    assert aggregator.sweep.call_count == 3


def test_build_aggregator_wires_durable_markers_and_history(app_config):
    aggregator = worker.build_aggregator(app_config, MagicMock())

    try:
        assert isinstance(aggregator._finished, DynamoDBIdempotencyStore)
        assert isinstance(aggregator._history, BatchHistoryRepository)
    finally:
        aggregator.shutdown(wait=False)
