# src/pricat_pipeline/health.py

import logging

from .clients import SqsClient
from .repository import StorageEventRepository
from .search_sink import SearchSink

logger = logging.getLogger(__name__)


def check_health(
    sqs_client: SqsClient,
    queue_urls: dict[str, str],
    repository: StorageEventRepository | None = None,
    sink: SearchSink | None = None,
) -> dict:
    """Checks each dependency once. `healthy` is False if any check fails."""
    checks: dict[str, bool] = {}
    for label, url in queue_urls.items():
        checks[f"queue:{label}"] = sqs_client.ping(url)
    if repository is not None:
        checks["event_store"] = repository.ping()
    if sink is not None:
        checks["search_index"] = sink.ping()

    healthy = all(checks.values())
    if not healthy:
        logger.warning(
            "Dependency health check failed.",
            extra={"failed": sorted(name for name, ok in checks.items() if not ok)},
        )
    return {"healthy": healthy, "checks": checks}
