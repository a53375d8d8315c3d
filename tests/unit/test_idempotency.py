# tests/unit/test_idempotency.py

import time

import pytest
from aws_lambda_powertools.utilities.idempotency.persistence.datarecord import DataRecord

from conftest import make_client_error
from pricat_pipeline.exceptions import EventStoreUnavailableError
from pricat_pipeline.idempotency import DynamoDBIdempotencyStore, InMemoryIdempotencyStore


class TestInMemoryIdempotencyStore:
    def test_mark_then_has_seen(self, manual_clock):
        store = InMemoryIdempotencyStore(ttl_seconds=60, clock=manual_clock)

        assert store.has_seen("B1") is False
        assert store.mark_seen("B1") is True
        assert store.has_seen("B1") is True
        assert store.mark_seen("B1") is False

    def test_entries_expire_after_ttl(self, manual_clock):
        store = InMemoryIdempotencyStore(ttl_seconds=60, clock=manual_clock)
        store.mark_seen("B1")

        manual_clock.advance(61)

        assert store.has_seen("B1") is False

    def test_oldest_entry_is_evicted_when_full(self, manual_clock):
        store = InMemoryIdempotencyStore(ttl_seconds=60, max_entries=2, clock=manual_clock)
        for key in ("a", "b", "c"):
            store.mark_seen(key)

        assert store.has_seen("a") is False
        assert store.has_seen("b") is True
        assert store.has_seen("c") is True

    @pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"ttl_seconds": 1, "max_entries": 0}])
    def test_rejects_non_positive_limits(self, kwargs):
        with pytest.raises(ValueError):
            InMemoryIdempotencyStore(**kwargs)


class TestDynamoDBIdempotencyStore:
    @pytest.fixture
    def store(self, persistence_layer):
        return DynamoDBIdempotencyStore(
            persistence_layer, namespace="finished-batch", ttl_seconds=60
        )

    def test_mark_is_atomic_and_namespaced(self, store, persistence_layer):
        assert store.has_seen("B1") is False

        assert store.mark_seen("B1") is True
        assert store.mark_seen("B1") is False
        assert store.has_seen("B1") is True
        (key,) = persistence_layer.records
        assert key.startswith("finished-batch#")
        assert persistence_layer.records[key].status == "COMPLETED"

    def test_keys_are_independent(self, store):
        store.mark_seen("B1")

        assert store.has_seen("B2") is False
        assert store.mark_seen("B2") is True

    def test_marker_expires_after_the_ttl(self, store, persistence_layer):
        store.mark_seen("B1")
        (record,) = persistence_layer.records.values()
        assert record.expiry_timestamp - time.time() <= 60

        record.expiry_timestamp = int(time.time()) - 1

        assert store.has_seen("B1") is False
        assert store.mark_seen("B1") is True

    def test_mark_racing_an_in_progress_write_is_not_a_new_mark(
        self, store, persistence_layer
    ):
        store.mark_seen("B1")
        (key,) = persistence_layer.records
        persistence_layer.records[key] = DataRecord(
            idempotency_key=key,
            status="INPROGRESS",
            expiry_timestamp=int(time.time()) + 60,
        )

        assert store.mark_seen("B1") is False
        assert store.has_seen("B1") is True

    def test_store_failure_is_retryable(self, store, persistence_layer):
        persistence_layer.fail_with = make_client_error("InternalServerError")

        with pytest.raises(EventStoreUnavailableError):
            store.mark_seen("B1")
        with pytest.raises(EventStoreUnavailableError):
            store.has_seen("B1")
