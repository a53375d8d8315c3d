# src/pricat_pipeline/idempotency.py

"""
Seen-key stores used to recognize repeat deliveries.

Two implementations share the `IdempotencyStore` contract:

* `InMemoryIdempotencyStore` - a sliding-window TTL cache local to one
  process. Used where losing the memory on restart is acceptable.
* `DynamoDBIdempotencyStore` - idempotency records written through the
  Powertools `DynamoDBPersistenceLayer`, so concurrent `mark_seen` calls for
  the same key cannot both win. Expired records are ignored on read.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Protocol

from aws_lambda_powertools.utilities.idempotency import (
    IdempotencyConfig,
    idempotent_function,
)
from aws_lambda_powertools.utilities.idempotency.exceptions import (
    IdempotencyAlreadyInProgressError,
    IdempotencyItemNotFoundError,
    IdempotencyPersistenceLayerError,
)
from aws_lambda_powertools.utilities.idempotency.persistence.base import (
    BasePersistenceLayer,
)
from aws_lambda_powertools.utilities.idempotency.persistence.datarecord import (
    STATUS_CONSTANTS,
)
from botocore.exceptions import ClientError

from .clients import TRANSIENT_CONNECTION_ERRORS
from .exceptions import EventStoreUnavailableError

logger = logging.getLogger(__name__)


class IdempotencyStore(Protocol):
    def has_seen(self, key: str) -> bool: ...

    def mark_seen(self, key: str) -> bool:
        """Records *key*. Returns True if it was not already marked."""
        ...


class InMemoryIdempotencyStore:
    """Thread-safe sliding-window cache with TTL semantics."""

    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def has_seen(self, key: str) -> bool:
        with self._lock:
            self._evict_expired(self._clock())
            return key in self._entries

    def mark_seen(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            if key in self._entries:
                return False

            self._entries[key] = now
            if len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return True

    def _evict_expired(self, current_time: float) -> None:
        expiry = current_time - self._ttl_seconds
        while self._entries:
            _, timestamp = next(iter(self._entries.items()))
            if timestamp >= expiry:
                break
            self._entries.popitem(last=False)


class DynamoDBIdempotencyStore:
    """
    Durable seen-key markers kept by the Powertools idempotency utility.

    `mark_seen` runs a marker function through `idempotent_function`: the
    persistence layer's conditional write lets exactly one caller record a
    key, and every later caller finds the stored record and skips the
    function. `has_seen` reads the record back with `get_record`. Records
    expire after *ttl_seconds* and are reaped by the table TTL.
    """

    def __init__(
        self,
        persistence_layer: BasePersistenceLayer,
        namespace: str,
        ttl_seconds: int,
    ):
        self._persistence_layer = persistence_layer
        self._namespace = namespace
        self._config = IdempotencyConfig(
            event_key_jmespath="key",
            expires_after_seconds=ttl_seconds,
            raise_on_no_idempotency_key=True,
        )
        # Keys are stored as "<namespace>#<hash of key>".
        persistence_layer.configure(config=self._config, key_prefix=namespace)
        self._recorded = threading.local()
        self._mark = idempotent_function(
            self._record_marker,
            data_keyword_argument="data",
            persistence_store=persistence_layer,
            config=self._config,
            key_prefix=namespace,
        )

    def _record_marker(self, *, data: dict) -> bool:
        # Only runs for the caller whose conditional write created the record.
        self._recorded.value = True
        return True

    def has_seen(self, key: str) -> bool:
        try:
            record = self._persistence_layer.get_record(data={"key": key})
        except IdempotencyItemNotFoundError:
            return False
        except (ClientError, *TRANSIENT_CONNECTION_ERRORS) as e:
            raise EventStoreUnavailableError(
                "GetItem", context={"namespace": self._namespace, "key": key}
            ) from e
        # TTL deletion is lazy; an expired record may still be readable.
        return record is not None and record.status != STATUS_CONSTANTS["EXPIRED"]

    def mark_seen(self, key: str) -> bool:
        self._recorded.value = False
        try:
            self._mark(data={"key": key})
        except IdempotencyAlreadyInProgressError:
            return False
        except IdempotencyPersistenceLayerError as e:
            raise EventStoreUnavailableError(
                "PutItem", context={"namespace": self._namespace, "key": key}
            ) from e

        recorded = self._recorded.value
        if recorded:
            logger.debug(
                "Idempotency marker written.",
                extra={"namespace": self._namespace, "key": key},
            )
        return recorded
