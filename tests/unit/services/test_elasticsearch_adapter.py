"""
Tests for ElasticsearchAdapter against an httpx.MockTransport.
"""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from tagsync.exceptions import AdapterPartialFailure, AdapterUnavailable
from tagsync.models.enums import IndexAction
from tagsync.models.index_document import IndexItem
from tagsync.services.indexing.adapter import ElasticsearchAdapter

BASE_URL = "http://search.test:9200"


def make_adapter(handler: Callable[[httpx.Request], httpx.Response]) -> ElasticsearchAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ElasticsearchAdapter(BASE_URL, index_prefix="test_", client=client)


def bulk_items(action: str, statuses: dict[int, int], index: str = "test_work") -> dict[str, Any]:
    items = []
    for entity_id, status in statuses.items():
        outcome: dict[str, Any] = {"_index": index, "_id": str(entity_id), "status": status}
        if status >= 400 and status != 404:
            outcome["error"] = {"type": "mapper_parsing_exception", "reason": "bad field"}
        items.append({action: outcome})
    return {"errors": any(s >= 400 for s in statuses.values()), "items": items}


def upserts(*ids: int) -> list[IndexItem]:
    return [
        IndexItem(entity_type="Work", entity_id=i, document={"title": f"Work {i}"})
        for i in ids
    ]


def deletes(*ids: int) -> list[IndexItem]:
    return [IndexItem(entity_type="Work", entity_id=i, action=IndexAction.DELETE) for i in ids]


class TestRequestBody:
    async def test_upsert_sends_ndjson_pairs(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json=bulk_items("index", {1: 201, 2: 200}))

        adapter = make_adapter(handler)
        results = await adapter.bulk_upsert(upserts(1, 2))

        assert all(r.ok for r in results)
        request = captured[0]
        assert str(request.url) == f"{BASE_URL}/_bulk"
        assert request.headers["Content-Type"] == "application/x-ndjson"
        lines = request.content.decode().strip().split("\n")
        assert [json.loads(line) for line in lines] == [
            {"index": {"_index": "test_work", "_id": "1"}},
            {"title": "Work 1"},
            {"index": {"_index": "test_work", "_id": "2"}},
            {"title": "Work 2"},
        ]

    async def test_delete_sends_action_lines_only(self) -> None:
        captured: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request.content)
            return httpx.Response(200, json=bulk_items("delete", {3: 200}))

        await make_adapter(handler).bulk_delete(deletes(3))

        assert captured[0].decode() == '{"delete": {"_index": "test_work", "_id": "3"}}\n'

    async def test_empty_batch_makes_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await make_adapter(handler).bulk_upsert([]) == []

    def test_index_name_is_lowercased(self) -> None:
        adapter = ElasticsearchAdapter(BASE_URL + "/", index_prefix="p_")
        assert adapter.index_name("ExternalWork") == "p_externalwork"
        assert adapter.base_url == BASE_URL


class TestResults:
    async def test_delete_of_missing_document_succeeds(self) -> None:
        adapter = make_adapter(
            lambda request: httpx.Response(200, json=bulk_items("delete", {1: 404}))
        )
        results = await adapter.bulk_delete(deletes(1))
        assert results[0].ok

    async def test_item_errors_raise_partial_failure(self) -> None:
        adapter = make_adapter(
            lambda request: httpx.Response(
                200, json=bulk_items("index", {1: 201, 2: 400, 3: 201})
            )
        )

        with pytest.raises(AdapterPartialFailure) as exc_info:
            await adapter.bulk_upsert(upserts(1, 2, 3))

        failed = exc_info.value.failed
        assert [r.entity_id for r in failed] == [2]
        assert failed[0].error == "mapper_parsing_exception: bad field"
        assert len(exc_info.value.results) == 3

    async def test_missing_response_item_is_failure(self) -> None:
        adapter = make_adapter(
            lambda request: httpx.Response(200, json=bulk_items("index", {1: 201}))
        )

        with pytest.raises(AdapterPartialFailure) as exc_info:
            await adapter.bulk_upsert(upserts(1, 2))

        assert [r.entity_id for r in exc_info.value.failed] == [2]
        assert exc_info.value.failed[0].error == "missing from bulk response"

    async def test_rejected_request_fails_every_item(self) -> None:
        adapter = make_adapter(
            lambda request: httpx.Response(400, json={"error": "illegal_argument_exception"})
        )

        with pytest.raises(AdapterPartialFailure) as exc_info:
            await adapter.bulk_upsert(upserts(1, 2))

        assert [r.error for r in exc_info.value.failed] == ["HTTP 400", "HTTP 400"]


class TestUnavailable:
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_overload_and_server_errors(self, status: int) -> None:
        adapter = make_adapter(lambda request: httpx.Response(status))

        with pytest.raises(AdapterUnavailable, match=str(status)):
            await adapter.bulk_upsert(upserts(1))

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AdapterUnavailable) as exc_info:
            await make_adapter(handler).bulk_delete(deletes(1))

        assert isinstance(exc_info.value.original_error, httpx.ConnectError)


async def test_close_leaves_injected_client_open() -> None:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200))
    )
    adapter = ElasticsearchAdapter(BASE_URL, client=client)

    await adapter.close()

    assert not client.is_closed
    await client.aclose()
