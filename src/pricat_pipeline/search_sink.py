# src/pricat_pipeline/search_sink.py

"""
Search index adapter for completed batches.

Each company's documents live in a generation index that is only reachable
through aliases. A replacement writes the full new set into a fresh
generation index and then, in one `_aliases` request, points the company
alias and the shared read alias at it while removing the previous
generation. Readers therefore see either the old set or the new one, never
a mix. If anything fails before the swap, the new index is dropped and the
old generation is left untouched.
"""

import abc
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

import requests

from .exceptions import PipelineError, SinkDocumentError, SinkUnavailableError
from .locks import KeyedLocks
from .schemas import PriceItem

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_MAX_REPORTED_FAILURES = 5

INDEX_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "productName": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
        "description": {"type": "text"},
        "companyId": {"type": "keyword"},
        "price": {"type": "scaled_float", "scaling_factor": 100},
        "currency": {"type": "keyword"},
        "stockQuantity": {"type": "integer"},
        "category": {"type": "keyword"},
        "manufacturer": {"type": "keyword"},
        "supplierCode": {"type": "keyword"},
        "fileProcessedAt": {"type": "date"},
    }
}


@dataclass(frozen=True)
class SinkResult:
    company: str
    index_name: str
    indexed_count: int
    removed_indices: list[str] = field(default_factory=list)


class SearchSink(abc.ABC):
    """Abstract base class for search index implementations."""

    @abc.abstractmethod
    def replace_company_data(
        self,
        company: str,
        items: Sequence[PriceItem],
        generation: str | None = None,
        file_processed_at: datetime | None = None,
    ) -> SinkResult:
        """
        Makes *items* the company's complete searchable data set.

        Either the whole new set becomes visible or the prior set stays as it
        was.

        Raises:
            SinkUnavailableError: the index is unreachable or overloaded.
            SinkDocumentError: the index rejected the request or a document.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def delete_all_for_company(self, company: str) -> int:
        """Removes every document of *company*. Returns the number of indices dropped."""
        raise NotImplementedError

    @abc.abstractmethod
    def ping(self) -> bool:
        raise NotImplementedError


def to_document(
    company: str, item: PriceItem, file_processed_at: datetime | None = None
) -> dict[str, Any]:
    return {
        "id": item.product_id,
        "productName": item.product_name,
        "description": item.description,
        "companyId": company,
        "price": str(item.price),
        "currency": item.currency,
        "stockQuantity": item.stock_quantity,
        "category": item.category,
        "manufacturer": item.manufacturer,
        "supplierCode": item.supplier_code,
        "fileProcessedAt": file_processed_at.isoformat() if file_processed_at else None,
    }


class ElasticsearchSearchSink(SearchSink):
    """Elasticsearch / OpenSearch implementation over the REST API."""

    def __init__(
        self,
        endpoint: str,
        index_prefix: str,
        timeout: int,
        session: requests.Session | None = None,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._prefix = index_prefix
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("Content-Type", "application/json")
        self._locks = KeyedLocks()

    # --- Naming ---

    @property
    def read_alias(self) -> str:
        return self._prefix

    def _company_slug(self, company: str) -> str:
        # The digest keeps "Acme Co" and "acme-co" apart.
        slug = _SLUG_PATTERN.sub("-", company.lower()).strip("-")[:40]
        digest = hashlib.sha1(company.encode("utf-8")).hexdigest()[:8]
        return f"{slug}-{digest}" if slug else digest

    def company_alias(self, company: str) -> str:
        return f"{self._prefix}-company-{self._company_slug(company)}"

    def _generation_index(self, company: str, generation: str | None) -> str:
        stamp = str(int(time.time() * 1000))
        label = _SLUG_PATTERN.sub("-", (generation or "").lower()).strip("-")[:40]
        suffix = f"{label}-{stamp}" if label else stamp
        return f"{self._prefix}-{self._company_slug(company)}-{suffix}"

    # --- Public operations ---

    def replace_company_data(
        self,
        company: str,
        items: Sequence[PriceItem],
        generation: str | None = None,
        file_processed_at: datetime | None = None,
    ) -> SinkResult:
        with self._locks.lock_for(company):
            new_index = self._generation_index(company, generation)
            alias = self.company_alias(company)
            self._request(
                "PUT", f"/{new_index}", "CreateIndex", json={"mappings": INDEX_MAPPINGS}
            )
            try:
                indexed = self.index_all(
                    company, items, index_name=new_index, file_processed_at=file_processed_at
                )
                self._request("POST", f"/{new_index}/_refresh", "Refresh")
                previous = [
                    name for name in self._indices_behind(alias) if name != new_index
                ]
                actions = [
                    {"add": {"index": new_index, "alias": alias}},
                    {"add": {"index": new_index, "alias": self.read_alias}},
                ]
                actions.extend({"remove_index": {"index": name}} for name in previous)
                self._request("POST", "/_aliases", "SwapAliases", json={"actions": actions})
            except Exception:
                self._discard_index(new_index)
                raise

        logger.info(
            "Company data replaced.",
            extra={
                "company": company,
                "index": new_index,
                "indexed_count": indexed,
                "removed_indices": previous,
            },
        )
        return SinkResult(
            company=company,
            index_name=new_index,
            indexed_count=indexed,
            removed_indices=previous,
        )

    def index_all(
        self,
        company: str,
        items: Iterable[PriceItem],
        index_name: str | None = None,
        file_processed_at: datetime | None = None,
    ) -> int:
        """
        Bulk-indexes *items*, keyed by product id. Without *index_name* the
        documents go to the company's current generation through its alias.
        """
        target = index_name or self.company_alias(company)
        lines = []
        for item in items:
            lines.append(json.dumps({"index": {"_index": target, "_id": item.product_id}}))
            lines.append(json.dumps(to_document(company, item, file_processed_at)))
        if not lines:
            return 0

        response = self._request(
            "POST",
            "/_bulk",
            "Bulk",
            data="\n".join(lines) + "\n",
            headers={"Content-Type": "application/x-ndjson"},
        )
        body = response.json()
        if body.get("errors"):
            self._raise_for_bulk_failures(target, body.get("items", []))
        return len(lines) // 2

    def delete_all_for_company(self, company: str) -> int:
        with self._locks.lock_for(company):
            indices = self._indices_behind(self.company_alias(company))
            if not indices:
                return 0
            self._request("DELETE", f"/{','.join(indices)}", "DeleteIndices")

        logger.info(
            "Company data deleted.", extra={"company": company, "indices": indices}
        )
        return len(indices)

    def ping(self) -> bool:
        try:
            self._request("GET", "/_cluster/health", "ClusterHealth")
        except PipelineError:
            logger.warning(
                "Search index health check failed.", extra={"endpoint": self._endpoint}
            )
            return False
        return True

    # --- Helpers ---

    def _indices_behind(self, alias: str) -> list[str]:
        response = self._request(
            "GET", f"/_alias/{alias}", "GetAlias", allowed_statuses={404}
        )
        if response.status_code == 404:
            return []
        return sorted(response.json().keys())

    def _discard_index(self, index_name: str) -> None:
        try:
            self._request(
                "DELETE", f"/{index_name}", "DeleteIndex", allowed_statuses={404}
            )
        except PipelineError as e:
            logger.warning(
                "Could not remove unfinished generation index.",
                extra={"index": index_name, "error": e.to_dict()},
            )

    def _raise_for_bulk_failures(self, target: str, items: list[dict]) -> None:
        failures = []
        throttled = False
        for entry in items:
            result = entry.get("index", {})
            if "error" not in result:
                continue
            throttled = throttled or result.get("status") == 429
            failures.append(
                {"id": result.get("_id"), "status": result.get("status"), "error": result["error"]}
            )

        context = {
            "index": target,
            "failed_count": len(failures),
            "failures": failures[:_MAX_REPORTED_FAILURES],
        }
        if throttled:
            raise SinkUnavailableError("Bulk", context=context)
        raise SinkDocumentError("Bulk", f"{len(failures)} document(s) rejected", context=context)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        allowed_statuses: set[int] | None = None,
        **kwargs,
    ) -> requests.Response:
        url = f"{self._endpoint}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise SinkUnavailableError(
                operation, context={"url": url, "connection_error": str(e)}
            ) from e

        status = response.status_code
        if allowed_statuses and status in allowed_statuses:
            return response
        if status == 429 or status >= 500:
            raise SinkUnavailableError(
                operation, context={"url": url, "status_code": status}
            )
        if status >= 400:
            raise SinkDocumentError(
                operation,
                f"HTTP {status}",
                context={"url": url, "status_code": status, "body": response.text[:500]},
            )
        return response
