"""
Search index adapters.

``IndexAdapter`` is the boundary to the external search engine: bulk upserts
and bulk deletes with a per-item result. ``ElasticsearchAdapter`` implements
it against the Elasticsearch/OpenSearch ``_bulk`` API with ``httpx``.

Classes
-------
IndexAdapter
    Abstract bulk ingest contract.
ElasticsearchAdapter
    ``_bulk`` API client, one index per entity type.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx

from tagsync import __version__
from tagsync.exceptions import AdapterPartialFailure, AdapterUnavailable
from tagsync.models.enums import IndexAction
from tagsync.models.index_document import IndexItem, ItemResult

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 30.0
_NDJSON = "application/x-ndjson"


class IndexAdapter(ABC):
    """
    Bulk ingest contract of the search engine.

    Both calls return one ``ItemResult`` per submitted item when every item
    succeeded. They raise ``AdapterPartialFailure`` (carrying all results)
    when only some items succeeded, and ``AdapterUnavailable`` when the
    engine could not be reached at all.
    """

    @abstractmethod
    async def bulk_upsert(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        """Index or replace the documents of *items*."""

    @abstractmethod
    async def bulk_delete(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        """Remove the documents of *items*; already-missing documents succeed."""

    async def close(self) -> None:
        """Release network resources."""


class ElasticsearchAdapter(IndexAdapter):
    """
    Adapter for the Elasticsearch ``_bulk`` API.

    Each entity type lives in its own index named
    ``{index_prefix}{entity_type.lower()}``; document ids are entity ids.

    Parameters
    ----------
    base_url : str
        Cluster URL, e.g. ``http://localhost:9200``.
    index_prefix : str
        Prefix of every index name.
    timeout : float
        Request timeout in seconds.
    client : httpx.AsyncClient | None
        Client to use instead of creating one (tests pass one with a
        ``httpx.MockTransport``).

    Examples
    --------
    >>> adapter = ElasticsearchAdapter("http://localhost:9200")
    >>> await adapter.bulk_upsert([IndexItem(entity_type="Work", entity_id=1)])
    """

    def __init__(
        self,
        base_url: str,
        *,
        index_prefix: str = "tagsync_",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.index_prefix = index_prefix
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": f"tagsync/{__version__}"},
        )

    def index_name(self, entity_type: str) -> str:
        return f"{self.index_prefix}{entity_type.lower()}"

    async def bulk_upsert(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        return await self._bulk(items, IndexAction.UPSERT)

    async def bulk_delete(self, items: Sequence[IndexItem]) -> list[ItemResult]:
        return await self._bulk(items, IndexAction.DELETE)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _build_body(self, items: Sequence[IndexItem], action: IndexAction) -> str:
        lines: list[str] = []
        for item in items:
            meta = {"_index": self.index_name(item.entity_type), "_id": str(item.entity_id)}
            if action is IndexAction.UPSERT:
                lines.append(json.dumps({"index": meta}))
                lines.append(json.dumps(item.document, default=str))
            else:
                lines.append(json.dumps({"delete": meta}))
        return "\n".join(lines) + "\n"

    async def _bulk(
        self, items: Sequence[IndexItem], action: IndexAction
    ) -> list[ItemResult]:
        if not items:
            return []
        body = self._build_body(items, action)
        try:
            response = await self._client.post(
                f"{self.base_url}/_bulk",
                content=body,
                headers={"Content-Type": _NDJSON},
            )
        except httpx.TransportError as e:
            # Connection refused, DNS failure, timeouts
            raise AdapterUnavailable(
                f"Search engine unreachable at {self.base_url}: {e}", original_error=e
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise AdapterUnavailable(
                f"Search engine returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            # The whole request was rejected; report every item as failed
            logger.error(
                "Bulk %s rejected with HTTP %d: %s",
                action.value,
                response.status_code,
                response.text[:500],
            )
            raise AdapterPartialFailure(
                [
                    ItemResult(
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                        ok=False,
                        error=f"HTTP {response.status_code}",
                    )
                    for item in items
                ]
            )

        results = self._parse_response(items, action, response.json())
        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning(
                "Bulk %s: %d of %d items failed", action.value, failed, len(results)
            )
            raise AdapterPartialFailure(results)
        return results

    def _parse_response(
        self,
        items: Sequence[IndexItem],
        action: IndexAction,
        payload: dict[str, Any],
    ) -> list[ItemResult]:
        """
        Map ``_bulk`` response items back to entity keys.

        Response items are matched by ``(_index, _id)``; submitted items the
        engine did not answer for are reported as failed.
        """
        by_key: dict[tuple[str, str], dict[str, Any]] = {}
        for entry in payload.get("items", []):
            outcome = next(iter(entry.values()), {})
            by_key[(outcome.get("_index", ""), str(outcome.get("_id", "")))] = outcome

        results: list[ItemResult] = []
        for item in items:
            outcome = by_key.get((self.index_name(item.entity_type), str(item.entity_id)))
            if outcome is None:
                results.append(
                    ItemResult(
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                        ok=False,
                        error="missing from bulk response",
                    )
                )
                continue
            status = int(outcome.get("status", 500))
            ok = 200 <= status < 300 or (action is IndexAction.DELETE and status == 404)
            error = None
            if not ok:
                reason = outcome.get("error")
                if isinstance(reason, dict):
                    error = f"{reason.get('type', 'error')}: {reason.get('reason', '')}"
                else:
                    error = str(reason or f"status {status}")
            results.append(
                ItemResult(
                    entity_type=item.entity_type,
                    entity_id=item.entity_id,
                    ok=ok,
                    error=error,
                )
            )
        return results
