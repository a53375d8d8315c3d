# tests/unit/test_policy.py

import pytest

from pricat_pipeline.exceptions import (
    ConfigurationError,
    EventStoreUnavailableError,
    MessageValidationError,
    NormalizationError,
    SinkDocumentError,
    SinkUnavailableError,
)
from pricat_pipeline.policy import Disposition, ErrorPolicy


@pytest.fixture
def policy() -> ErrorPolicy:
    return ErrorPolicy(max_delivery_attempts=5, has_dead_letter_queue=True)


@pytest.mark.parametrize(
    "error",
    [
        NormalizationError("bad json"),
        MessageValidationError("no company"),
        SinkDocumentError("Bulk", "mapping conflict"),
    ],
)
def test_fatal_errors_are_dead_lettered_on_first_delivery(policy, error):
    assert policy.decide(error, receive_count=1) is Disposition.DEAD_LETTER


def test_fatal_errors_are_discarded_without_a_dead_letter_queue():
    policy = ErrorPolicy(max_delivery_attempts=5, has_dead_letter_queue=False)

    assert policy.decide(NormalizationError("bad"), receive_count=1) is Disposition.DISCARD


@pytest.mark.parametrize(
    "error", [EventStoreUnavailableError("PutItem"), SinkUnavailableError("Bulk"), RuntimeError("?")]
)
def test_transient_and_unknown_errors_are_requeued_until_the_cap(policy, error):
    for receive_count in range(1, 5):
        assert policy.decide(error, receive_count) is Disposition.REQUEUE

    assert policy.decide(error, receive_count=5) is Disposition.DEAD_LETTER


def test_configuration_error_shuts_down(policy):
    assert policy.decide(ConfigurationError("missing"), receive_count=1) is Disposition.SHUTDOWN


def test_requeue_delay_grows_exponentially_and_is_capped():
    policy = ErrorPolicy(
        max_delivery_attempts=10,
        has_dead_letter_queue=True,
        base_delay_seconds=5,
        max_delay_seconds=60,
    )

    assert [policy.requeue_delay(n) for n in range(1, 6)] == [5, 10, 20, 40, 60]
    assert policy.requeue_delay(0) == 5


def test_from_config(app_config):
    policy = ErrorPolicy.from_config(app_config)

    assert policy.max_delivery_attempts == app_config.max_delivery_attempts
    assert policy.has_dead_letter_queue == app_config.has_dead_letter_queue
    assert policy.base_delay_seconds == app_config.requeue_base_delay_seconds
