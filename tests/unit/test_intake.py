# tests/unit/test_intake.py

"""
Unit tests for the EventIntakeController: persist-once, fan-out-once, and
recovery of events whose earlier delivery failed to publish.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import make_client_error, make_s3_notification
from pricat_pipeline.clients import SqsClient
from pricat_pipeline.exceptions import (
    EventStoreUnavailableError,
    FanOutInProgressError,
    NormalizationError,
    QueuePublishError,
)
from pricat_pipeline.intake import EventIntakeController, IntakeOutcome
from pricat_pipeline.repository import StorageEventRepository
from pricat_pipeline.schemas import FanOutStatus


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def mock_sqs() -> MagicMock:
    sqs = MagicMock(spec=SqsClient)
    sqs.send_json.return_value = "outbound-message-id"
    return sqs


@pytest.fixture
def repository(fake_dynamodb) -> StorageEventRepository:
    return StorageEventRepository(fake_dynamodb, "storage-events-test")


@pytest.fixture
def controller(repository, mock_sqs, app_config, clock) -> EventIntakeController:
    return EventIntakeController(repository, mock_sqs, app_config, clock=clock)


def _stored(fake_dynamodb, repository):
    (item,) = fake_dynamodb.items.values()
    return repository.get_by_key(item["dedup_key"]["S"])


class TestHappyPath:
    def test_new_event_is_persisted_and_published_once(
        self, controller, mock_sqs, fake_dynamodb, repository, app_config
    ):
        # Act
        outcome = controller.process(make_s3_notification())

        # Assert
        assert outcome is IntakeOutcome.PUBLISHED
        mock_sqs.send_json.assert_called_once()
        queue_url, payload = mock_sqs.send_json.call_args.args
        assert queue_url == app_config.normalized_events_queue_url
        assert payload["objectKey"] == "uploads/acme/price-list.csv"
        assert "fullRawPayload" not in payload
        attributes = mock_sqs.send_json.call_args.kwargs["attributes"]
        assert attributes["correlationId"] == payload["correlationId"]
        assert _stored(fake_dynamodb, repository).fan_out_status is FanOutStatus.PUBLISHED

    def test_bytes_body_is_accepted(self, controller):
        assert controller.process(make_s3_notification().encode("utf-8")) is IntakeOutcome.PUBLISHED

    def test_same_event_delivered_twice_fans_out_once(
        self, controller, mock_sqs, fake_dynamodb, clock
    ):
        controller.process(make_s3_notification())
        clock.now += timedelta(seconds=5)

        outcome = controller.process(make_s3_notification())

        assert outcome is IntakeOutcome.DUPLICATE
        assert len(fake_dynamodb.items) == 1
        mock_sqs.send_json.assert_called_once()

    def test_different_etag_is_a_different_event(self, controller, mock_sqs, fake_dynamodb):
        controller.process(make_s3_notification(etag="v1"))
        controller.process(make_s3_notification(etag="v2"))

        assert len(fake_dynamodb.items) == 2
        assert mock_sqs.send_json.call_count == 2


class TestHousekeeping:
    def test_sentinel_key_is_recorded_but_not_published(
        self, controller, mock_sqs, fake_dynamodb, repository
    ):
        outcome = controller.process(make_s3_notification(key="monitoring/health-check-1.txt"))

        assert outcome is IntakeOutcome.HOUSEKEEPING
        mock_sqs.send_json.assert_not_called()
        assert _stored(fake_dynamodb, repository).fan_out_status is FanOutStatus.NOT_REQUIRED

    def test_redelivered_housekeeping_event_is_a_duplicate(self, controller, mock_sqs):
        raw = make_s3_notification(key="monitoring/health-check-1.txt")
        controller.process(raw)

        assert controller.process(raw) is IntakeOutcome.DUPLICATE
        mock_sqs.send_json.assert_not_called()


class TestFailures:
    def test_malformed_payload_persists_and_publishes_nothing(
        self, controller, mock_sqs, fake_dynamodb
    ):
        with pytest.raises(NormalizationError):
            controller.process("{not json")

        assert fake_dynamodb.items == {}
        mock_sqs.send_json.assert_not_called()

    def test_store_outage_is_retryable_and_publishes_nothing(
        self, controller, mock_sqs, fake_dynamodb
    ):
        fake_dynamodb.fail_with = make_client_error("InternalServerError")

        with pytest.raises(EventStoreUnavailableError):
            controller.process(make_s3_notification())

        mock_sqs.send_json.assert_not_called()

    def test_publish_failure_releases_claim_and_redelivery_publishes(
        self, controller, mock_sqs, fake_dynamodb, repository, clock
    ):
        # Arrange: the first enqueue fails after the event was recorded.
        mock_sqs.send_json.side_effect = [
            QueuePublishError("https://sqs/normalized"),
            "outbound-message-id",
        ]
        with pytest.raises(QueuePublishError):
            controller.process(make_s3_notification())
        assert _stored(fake_dynamodb, repository).fan_out_claimed_at is None

        # Act: the broker redelivers the same notification.
        clock.now += timedelta(seconds=5)
        outcome = controller.process(make_s3_notification())

        # Assert: still one row, now published.
        assert outcome is IntakeOutcome.PUBLISHED
        assert len(fake_dynamodb.items) == 1
        assert mock_sqs.send_json.call_count == 2
        assert _stored(fake_dynamodb, repository).fan_out_status is FanOutStatus.PUBLISHED

    def test_live_claim_of_another_delivery_is_retried_later(
        self, controller, repository, mock_sqs, clock, app_config
    ):
        # Another worker recorded the event and is publishing it right now.
        other = EventIntakeController(
            repository, MagicMock(spec=SqsClient), app_config, clock=clock
        )
        other._publish = MagicMock()
        other.process(make_s3_notification())

        with pytest.raises(FanOutInProgressError):
            controller.process(make_s3_notification())
        mock_sqs.send_json.assert_not_called()

    def test_expired_claim_is_taken_over(self, controller, repository, mock_sqs, clock, app_config):
        # A previous worker recorded the event, then died before publishing.
        crashed = EventIntakeController(
            repository, MagicMock(spec=SqsClient), app_config, clock=clock
        )
        crashed._publish = MagicMock()
        crashed.process(make_s3_notification())

        clock.now += timedelta(seconds=app_config.fan_out_claim_seconds + 1)
        outcome = controller.process(make_s3_notification())

        assert outcome is IntakeOutcome.PUBLISHED
        mock_sqs.send_json.assert_called_once()

    def test_failure_to_mark_published_still_acknowledges(
        self, controller, mock_sqs, repository
    ):
        repository.mark_published = MagicMock(
            side_effect=EventStoreUnavailableError("UpdateItem")
        )

        assert controller.process(make_s3_notification()) is IntakeOutcome.PUBLISHED
        mock_sqs.send_json.assert_called_once()
