import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_ALLOWED_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    service_name: str
    environment: str
    events_table_name: str
    normalized_events_queue_url: str
    item_queue_url: str
    search_endpoint: str

    # --- Optional Variables with Defaults ---
    raw_events_queue_url: str | None
    dead_letter_queue_url: str | None
    log_level: str
    search_index_prefix: str
    housekeeping_key_marker: str

    # --- Aggregation ---
    batch_inactivity_seconds: int
    flush_workers: int
    sweep_interval_seconds: int
    flush_alert_threshold: int
    finished_batch_ttl_seconds: int

    # --- Delivery & Error Handling ---
    max_delivery_attempts: int
    external_call_timeout_seconds: int
    fan_out_claim_seconds: int
    consumer_workers: int
    requeue_base_delay_seconds: int
    requeue_max_delay_seconds: int

    # --- Derived Properties ---
    @property
    def has_dead_letter_queue(self) -> bool:
        return bool(self.dead_letter_queue_url)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]
            events_table_name = os.environ["EVENTS_TABLE_NAME"]
            normalized_events_queue_url = os.environ["NORMALIZED_EVENTS_QUEUE_URL"]
            item_queue_url = os.environ["ITEM_QUEUE_URL"]
            search_endpoint = os.environ["SEARCH_ENDPOINT"].rstrip("/")

            raw_events_queue_url = os.getenv("RAW_EVENTS_QUEUE_URL") or None
            dead_letter_queue_url = os.getenv("DEAD_LETTER_QUEUE_URL") or None

            search_index_prefix = os.getenv("SEARCH_INDEX_PREFIX", "price-items").lower()
            if not search_index_prefix:
                raise ValueError("SEARCH_INDEX_PREFIX must not be empty.")

            housekeeping_key_marker = os.getenv("HOUSEKEEPING_KEY_MARKER", "health-check")
            if not housekeeping_key_marker:
                raise ValueError("HOUSEKEEPING_KEY_MARKER must not be empty.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            if log_level not in _ALLOWED_LOG_LEVELS:
                raise ValueError(
                    f"LOG_LEVEL must be one of {_ALLOWED_LOG_LEVELS}, not '{log_level}'"
                )

            # --- Numeric settings ---
            batch_inactivity_seconds = _positive_int("BATCH_INACTIVITY_SECONDS", "300")
            flush_workers = _positive_int("FLUSH_WORKERS", "4")
            sweep_interval_seconds = _positive_int("SWEEP_INTERVAL_SECONDS", "15")
            flush_alert_threshold = _positive_int("FLUSH_ALERT_THRESHOLD", "3")
            finished_batch_ttl_seconds = _positive_int(
                "FINISHED_BATCH_TTL_SECONDS", "86400"
            )
            max_delivery_attempts = _positive_int("MAX_DELIVERY_ATTEMPTS", "5")
            external_call_timeout_seconds = _positive_int(
                "EXTERNAL_CALL_TIMEOUT_SECONDS", "10"
            )
            fan_out_claim_seconds = _positive_int("FAN_OUT_CLAIM_SECONDS", "60")
            consumer_workers = _positive_int("CONSUMER_WORKERS", "4")
            requeue_base_delay_seconds = _positive_int("REQUEUE_BASE_DELAY_SECONDS", "5")
            requeue_max_delay_seconds = _positive_int("REQUEUE_MAX_DELAY_SECONDS", "300")
            if requeue_max_delay_seconds > 43_200:
                # SQS caps a visibility timeout at 12 hours.
                raise ValueError("REQUEUE_MAX_DELAY_SECONDS must not exceed 43200.")
            if requeue_base_delay_seconds > requeue_max_delay_seconds:
                raise ValueError(
                    "REQUEUE_BASE_DELAY_SECONDS must not exceed REQUEUE_MAX_DELAY_SECONDS."
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            service_name=service_name,
            environment=environment,
            events_table_name=events_table_name,
            normalized_events_queue_url=normalized_events_queue_url,
            item_queue_url=item_queue_url,
            search_endpoint=search_endpoint,
            raw_events_queue_url=raw_events_queue_url,
            dead_letter_queue_url=dead_letter_queue_url,
            log_level=log_level,
            search_index_prefix=search_index_prefix,
            housekeeping_key_marker=housekeeping_key_marker,
            batch_inactivity_seconds=batch_inactivity_seconds,
            flush_workers=flush_workers,
            sweep_interval_seconds=sweep_interval_seconds,
            flush_alert_threshold=flush_alert_threshold,
            finished_batch_ttl_seconds=finished_batch_ttl_seconds,
            max_delivery_attempts=max_delivery_attempts,
            external_call_timeout_seconds=external_call_timeout_seconds,
            fan_out_claim_seconds=fan_out_claim_seconds,
            consumer_workers=consumer_workers,
            requeue_base_delay_seconds=requeue_base_delay_seconds,
            requeue_max_delay_seconds=requeue_max_delay_seconds,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached, so the environment is only read once on the first
    call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
