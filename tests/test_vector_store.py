"""Tests for the Qdrant vector store client."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import List

import httpx
import numpy as np
import pytest

from kbcore.errors import (
    PartialDeletionError,
    SchemaMismatch,
    StoreUnreachable,
    VectorStoreError,
)
from kbcore.index.vector_store import QdrantVectorStore
from kbcore.models import DocumentType, KnowledgeItem, KnowledgeMetadata

from conftest import COLLECTION, DIMENSION


def _vector(seed: int) -> List[float]:
    rng = np.random.default_rng(seed)
    vec = rng.normal(size=DIMENSION).astype("float32")
    return (vec / np.linalg.norm(vec)).tolist()


def _items(source: str, count: int, seed: int = 0) -> List[KnowledgeItem]:
    return [
        KnowledgeItem(
            id=str(uuid.uuid4()),
            content=f"{source} chunk {i}",
            metadata=KnowledgeMetadata(
                source=source,
                filename=source.rsplit("/", 1)[-1],
                type=DocumentType.MARKDOWN,
                chunk_index=i,
                total_chunks=count,
                date_added="2024-05-01T10:00:00+00:00",
            ),
            vector=_vector(seed + i),
        )
        for i in range(count)
    ]


class TestCollections:
    async def test_creates_missing_collection(self, vector_store, qdrant) -> None:
        created = await vector_store.ensure_collection(COLLECTION)

        assert created is True
        assert qdrant.collections[COLLECTION]["size"] == DIMENSION

    async def test_ensure_collection_is_idempotent(self, vector_store, qdrant) -> None:
        await vector_store.ensure_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 2))

        assert await vector_store.ensure_collection(COLLECTION) is False
        assert len(qdrant.points(COLLECTION)) == 2

    async def test_size_mismatch_raises(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION, size=DIMENSION * 2)

        with pytest.raises(SchemaMismatch):
            await vector_store.ensure_collection(COLLECTION)

    async def test_ping(self, vector_store) -> None:
        assert await vector_store.ping() is True

    async def test_api_key_header(self, qdrant, store_config) -> None:
        store_config.api_key = "secret"
        async with QdrantVectorStore(
            store_config, transport=httpx.MockTransport(qdrant.handler)
        ) as store:
            await store.ping()

        assert qdrant.requests[-1].headers["api-key"] == "secret"


class TestUpsertAndSearch:
    async def test_upsert_then_search_finds_exact_vector(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        items = _items("/docs/a.md", 5)

        written = await vector_store.upsert(COLLECTION, items)
        results = await vector_store.search(COLLECTION, items[3].vector, limit=3)

        assert written == 5
        assert len(results) == 3
        assert results[0].id == items[3].id
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[0].content == "/docs/a.md chunk 3"
        assert results[0].metadata.chunk_index == 3
        assert results[0].metadata.type is DocumentType.MARKDOWN
        assert results[0].source == "/docs/a.md"
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    async def test_payload_uses_wire_keys(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        item = _items("/docs/a.md", 1)[0]
        await vector_store.upsert(COLLECTION, [item])

        payload = qdrant.points(COLLECTION)[item.id]["payload"]
        assert payload == {
            "content": "/docs/a.md chunk 0",
            "source": "/docs/a.md",
            "filename": "a.md",
            "type": "md",
            "chunkIndex": 0,
            "totalChunks": 1,
            "dateAdded": "2024-05-01T10:00:00+00:00",
        }

    async def test_upsert_same_id_replaces(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        item = _items("/docs/a.md", 1)[0]
        await vector_store.upsert(COLLECTION, [item])
        item.content = "rewritten"
        await vector_store.upsert(COLLECTION, [item])

        assert len(qdrant.points(COLLECTION)) == 1
        assert qdrant.points(COLLECTION)[item.id]["payload"]["content"] == "rewritten"

    async def test_upsert_batches(self, qdrant, store_config) -> None:
        store_config.upsert_batch_size = 40
        qdrant.add_collection(COLLECTION)
        async with QdrantVectorStore(
            store_config, transport=httpx.MockTransport(qdrant.handler)
        ) as store:
            await store.upsert(COLLECTION, _items("/docs/a.md", 100))

        puts = [r for r in qdrant.requests if r.method == "PUT"]
        assert len(puts) == 3
        assert all(r.url.params["wait"] == "true" for r in puts)
        assert len(qdrant.points(COLLECTION)) == 100

    async def test_wrong_dimension_rejected_before_write(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        item = _items("/docs/a.md", 1)[0]
        item.vector = item.vector[:10]

        with pytest.raises(SchemaMismatch):
            await vector_store.upsert(COLLECTION, [item])
        assert qdrant.requests == []

    async def test_wrong_query_dimension(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        with pytest.raises(SchemaMismatch):
            await vector_store.search(COLLECTION, [0.1] * (DIMENSION + 1))

    async def test_empty_upsert_and_delete_are_noops(self, vector_store, qdrant) -> None:
        assert await vector_store.upsert(COLLECTION, []) == 0
        assert await vector_store.delete_vectors(COLLECTION, []) == 0
        assert qdrant.requests == []

    async def test_legacy_payload_gets_defaults(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        qdrant.points(COLLECTION)["legacy-1"] = {
            "id": "legacy-1",
            "vector": _vector(1),
            "payload": {"content": "old text", "type": "docx", "chunkIndex": "7"},
        }

        [result] = await vector_store.search(COLLECTION, _vector(1), limit=1)

        assert result.content == "old text"
        assert result.metadata.source == ""
        assert result.metadata.filename == ""
        assert result.metadata.type is DocumentType.TEXT
        assert result.metadata.chunk_index == 0
        assert result.metadata.total_chunks == 1
        assert result.metadata.date_added == ""

    async def test_delete_vectors_by_id(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        items = _items("/docs/a.md", 3)
        await vector_store.upsert(COLLECTION, items)

        deleted = await vector_store.delete_vectors(COLLECTION, [items[0].id, items[2].id])

        assert deleted == 2
        assert list(qdrant.points(COLLECTION)) == [items[1].id]


class TestScan:
    async def test_list_items_visits_every_point_once(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        items = _items("/docs/a.md", 150) + _items("/docs/b.md", 100, seed=1000)
        await vector_store.upsert(COLLECTION, items)

        listed = await vector_store.list_items(COLLECTION)

        assert sorted(item.id for item in listed) == sorted(item.id for item in items)
        assert all(item.vector is None for item in listed)
        assert len(qdrant.scroll_requests()) == 3

    async def test_cursor_sent_verbatim(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 120))

        await vector_store.list_items(COLLECTION)

        first, second = qdrant.scroll_requests()
        ids = sorted(qdrant.points(COLLECTION))
        assert "offset" not in json.loads(first.content)
        assert json.loads(second.content)["offset"] == ids[100]

    async def test_empty_page_with_cursor_is_not_the_end(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 30))
        qdrant.empty_pages_before = 1

        listed = await vector_store.list_items(COLLECTION)

        assert len(listed) == 30
        assert len(qdrant.scroll_requests()) == 2

    async def test_empty_collection(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        assert await vector_store.list_items(COLLECTION) == []

    async def test_scan_timeout(self, qdrant, store_config) -> None:
        qdrant.add_collection(COLLECTION)
        store_config.scan_timeout = 0.05

        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.5)
            return qdrant.handler(request)

        async with QdrantVectorStore(store_config, transport=httpx.MockTransport(slow)) as store:
            with pytest.raises(StoreUnreachable):
                await store.list_items(COLLECTION)


class TestDeleteBySource:
    async def test_removes_only_that_source(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 130))
        await vector_store.upsert(COLLECTION, _items("/docs/b.md", 140, seed=500))

        deleted = await vector_store.delete_by_source(COLLECTION, "/docs/a.md")

        assert deleted == 130
        assert qdrant.sources(COLLECTION) == {"/docs/b.md": 140}

    async def test_unknown_source_deletes_nothing(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 3))

        assert await vector_store.delete_by_source(COLLECTION, "/docs/missing.md") == 0
        assert not any(r.url.path.endswith("/points/delete") for r in qdrant.requests)

    async def test_failed_batch_is_retried(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        await vector_store.upsert(COLLECTION, _items("/docs/a.md", 10))
        qdrant.fail("POST /points/delete", 503)

        assert await vector_store.delete_by_source(COLLECTION, "/docs/a.md") == 10
        assert qdrant.sources(COLLECTION) == {}

    async def test_partial_deletion_reports_progress(self, qdrant, store_config) -> None:
        qdrant.add_collection(COLLECTION)
        store_config.delete_batch_size = 100
        delete_calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal delete_calls
            if request.url.path.endswith("/points/delete"):
                delete_calls += 1
                if delete_calls > 1:
                    return httpx.Response(503, json={"status": {"error": "overloaded"}})
            return qdrant.handler(request)

        async with QdrantVectorStore(store_config, transport=httpx.MockTransport(handler)) as store:
            await store.upsert(COLLECTION, _items("/docs/a.md", 250))
            with pytest.raises(PartialDeletionError) as excinfo:
                await store.delete_by_source(COLLECTION, "/docs/a.md")

        error = excinfo.value
        assert error.deleted == 100
        assert error.requested == 250
        assert error.remaining == 150
        assert error.category == "partial_deletion"
        assert qdrant.sources(COLLECTION) == {"/docs/a.md": 150}
        # one successful batch, then three attempts at the second
        assert delete_calls == 4


class TestErrors:
    async def test_transient_status_exhausts_retries(self, vector_store, qdrant) -> None:
        qdrant.fail("GET /collections", 503, 503, 503)

        with pytest.raises(StoreUnreachable):
            await vector_store.ping()
        assert len(qdrant.requests) == 3

    async def test_transient_status_recovers(self, vector_store, qdrant) -> None:
        qdrant.fail("GET /collections", 429, 502)

        assert await vector_store.ping() is True
        assert len(qdrant.requests) == 3

    async def test_connection_error_is_unreachable(self, store_config) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with QdrantVectorStore(store_config, transport=httpx.MockTransport(refuse)) as store:
            with pytest.raises(StoreUnreachable) as excinfo:
                await store.ping()

        assert excinfo.value.category == "store_unreachable"

    async def test_non_json_success_body(self, store_config) -> None:
        def proxy(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway login</html>")

        async with QdrantVectorStore(store_config, transport=httpx.MockTransport(proxy)) as store:
            with pytest.raises(VectorStoreError, match="non-JSON"):
                await store.ping()

    async def test_client_error_not_retried(self, vector_store, qdrant) -> None:
        qdrant.add_collection(COLLECTION)
        qdrant.fail("POST /points/search", 400)

        with pytest.raises(VectorStoreError) as excinfo:
            await vector_store.search(COLLECTION, _vector(0))

        assert not isinstance(excinfo.value, StoreUnreachable)
        assert "injected" in str(excinfo.value)
        assert len(qdrant.requests) == 1
