# src/pricat_pipeline/policy.py

"""
Maps a processing failure to what the consumer does with the message.

* Malformed input and other non-retryable errors are never redelivered:
  they go to the dead-letter queue when one is configured, otherwise they
  are dropped after logging.
* Retryable and unexpected errors are redelivered with a growing delay until
  the delivery count reaches the configured cap, then dead-lettered.
* A configuration error stops the consumer; no message can succeed.
"""

import logging
from enum import Enum

from .config import AppConfig
from .exceptions import (
    ConfigurationError,
    NonRetryableError,
    RetryableError,
    get_error_context,
)

logger = logging.getLogger(__name__)


class Disposition(str, Enum):
    REQUEUE = "REQUEUE"
    DEAD_LETTER = "DEAD_LETTER"
    DISCARD = "DISCARD"
    SHUTDOWN = "SHUTDOWN"


class ErrorPolicy:
    def __init__(
        self,
        max_delivery_attempts: int,
        has_dead_letter_queue: bool,
        base_delay_seconds: int = 5,
        max_delay_seconds: int = 300,
    ):
        self.max_delivery_attempts = max_delivery_attempts
        self.has_dead_letter_queue = has_dead_letter_queue
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    @classmethod
    def from_config(cls, config: AppConfig) -> "ErrorPolicy":
        return cls(
            max_delivery_attempts=config.max_delivery_attempts,
            has_dead_letter_queue=config.has_dead_letter_queue,
            base_delay_seconds=config.requeue_base_delay_seconds,
            max_delay_seconds=config.requeue_max_delay_seconds,
        )

    def decide(self, error: Exception, receive_count: int) -> Disposition:
        context = {"receive_count": receive_count, "error": get_error_context(error)}

        if isinstance(error, ConfigurationError):
            logger.critical("Configuration error; stopping consumer.", extra=context)
            return Disposition.SHUTDOWN

        if isinstance(error, NonRetryableError):
            disposition = (
                Disposition.DEAD_LETTER if self.has_dead_letter_queue else Disposition.DISCARD
            )
            logger.error(
                "Non-retryable processing error.",
                extra={**context, "disposition": disposition.value},
            )
            return disposition

        if receive_count >= self.max_delivery_attempts:
            logger.error(
                "Delivery attempts exhausted; dead-lettering.",
                extra={**context, "max_delivery_attempts": self.max_delivery_attempts},
            )
            return Disposition.DEAD_LETTER

        if isinstance(error, RetryableError):
            logger.warning("Transient processing error; requeueing.", extra=context)
        else:
            logger.error(
                "Unexpected processing error; requeueing.", extra=context, exc_info=error
            )
        return Disposition.REQUEUE

    def requeue_delay(self, receive_count: int) -> int:
        """Visibility delay before the next attempt: base * 2^(n-1), capped."""
        exponent = max(receive_count - 1, 0)
        return min(self.max_delay_seconds, self.base_delay_seconds * 2**exponent)
