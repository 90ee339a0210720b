"""Shared pytest fixtures: an in-memory Qdrant and a deterministic embedder."""

from __future__ import annotations

import json
import re
import zlib
from typing import Any, Dict, List, Optional

import httpx
import numpy as np
import pytest

from kbcore.embedding.encoder import EmbeddingConfig, EmbeddingModel
from kbcore.index.registry import SQLiteRegistry
from kbcore.index.vector_store import QdrantVectorStore, VectorStoreConfig

DIMENSION = 64
COLLECTION = "test-knowledge"

_WORD = re.compile(r"[a-z0-9]+")


class HashingModel:
    """Bag-of-words embedding: each word increments one hashed dimension."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.encode_calls = 0

    def get_sentence_embedding_dimension(self) -> int:
        return self.dimension

    def encode(self, sentences, **kwargs) -> np.ndarray:
        self.encode_calls += 1
        out = np.zeros((len(sentences), self.dimension), dtype="float32")
        for row, sentence in enumerate(sentences):
            for word in _WORD.findall(sentence.lower()):
                out[row, zlib.crc32(word.encode()) % self.dimension] += 1.0
        return out


class FakeQdrant:
    """Just enough of the Qdrant REST API for the vector store."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        # Maps "METHOD path-suffix" to a list of status codes to answer first
        self.failures: Dict[str, List[int]] = {}
        self.empty_pages_before: int = 0

    def add_collection(self, name: str, size: int = DIMENSION) -> None:
        self.collections[name] = {"size": size, "points": {}}

    def points(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections[name]["points"]

    def sources(self, name: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for point in self.points(name).values():
            source = point["payload"].get("source", "")
            counts[source] = counts.get(source, 0) + 1
        return counts

    def fail(self, key: str, *statuses: int) -> None:
        self.failures.setdefault(key, []).extend(statuses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        for key, statuses in self.failures.items():
            method, suffix = key.split(" ", 1)
            if request.method == method and path.endswith(suffix) and statuses:
                return httpx.Response(statuses.pop(0), json={"status": {"error": "injected"}})

        if path == "/collections" and request.method == "GET":
            names = [{"name": name} for name in self.collections]
            return _ok({"collections": names})

        match = re.fullmatch(r"/collections/([^/]+)(/points(?:/(\w+))?)?", path)
        if not match:
            return httpx.Response(404, json={"status": {"error": "not found"}})
        name, points_part, action = match.group(1), match.group(2), match.group(3)

        if points_part is None:
            if request.method == "PUT":
                self.add_collection(name, body["vectors"]["size"])
                return _ok(True)
            if name not in self.collections:
                return httpx.Response(404, json={"status": {"error": "no collection"}})
            size = self.collections[name]["size"]
            return _ok({"config": {"params": {"vectors": {"size": size, "distance": "Cosine"}}}})

        if name not in self.collections:
            return httpx.Response(404, json={"status": {"error": "no collection"}})
        store = self.points(name)

        if action is None and request.method == "PUT":
            for point in body["points"]:
                if len(point["vector"]) != self.collections[name]["size"]:
                    return httpx.Response(400, json={"status": {"error": "Wrong input: vector dim"}})
                store[str(point["id"])] = point
            return _ok({"status": "completed"})

        if action == "search":
            query = np.asarray(body["vector"], dtype="float32")
            hits = []
            for point in store.values():
                vector = np.asarray(point["vector"], dtype="float32")
                denom = float(np.linalg.norm(query) * np.linalg.norm(vector)) or 1.0
                hits.append((float(query @ vector) / denom, point))
            hits.sort(key=lambda pair: pair[0], reverse=True)
            return _ok(
                [
                    {"id": point["id"], "score": score, "payload": point["payload"], "version": 0}
                    for score, point in hits[: body["limit"]]
                ]
            )

        if action == "delete":
            for point_id in body["points"]:
                store.pop(str(point_id), None)
            return _ok({"status": "completed"})

        if action == "scroll":
            return _ok(self._scroll(store, body))

        return httpx.Response(404, json={"status": {"error": "unknown action"}})

    def _scroll(self, store: Dict[str, Dict[str, Any]], body: Dict[str, Any]) -> Dict[str, Any]:
        ids = sorted(store)
        offset: Optional[str] = body.get("offset")
        if isinstance(offset, str) and offset.startswith("empty:"):
            offset = offset[len("empty:"):] or None
        elif self.empty_pages_before:
            self.empty_pages_before -= 1
            return {"points": [], "next_page_offset": f"empty:{offset or ''}"}

        start = 0 if offset is None else ids.index(offset)
        page_ids = ids[start : start + body["limit"]]
        next_offset = ids[start + body["limit"]] if start + body["limit"] < len(ids) else None
        points = [
            {"id": point_id, "payload": store[point_id]["payload"], "vector": None}
            for point_id in page_ids
        ]
        return {"points": points, "next_page_offset": next_offset}

    def scroll_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/points/scroll")]


def _ok(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"result": result, "status": "ok", "time": 0.001})


@pytest.fixture
def qdrant() -> FakeQdrant:
    return FakeQdrant()


@pytest.fixture
def store_config() -> VectorStoreConfig:
    return VectorStoreConfig(
        url="http://qdrant.test",
        vector_size=DIMENSION,
        page_size=100,
        backoff=0.0,
        max_backoff=0.0,
        scan_timeout=5.0,
    )


@pytest.fixture
async def vector_store(qdrant: FakeQdrant, store_config: VectorStoreConfig):
    store = QdrantVectorStore(store_config, transport=httpx.MockTransport(qdrant.handler))
    yield store
    await store.close()


@pytest.fixture
def hashing_model() -> HashingModel:
    return HashingModel()


@pytest.fixture
def embedder(hashing_model: HashingModel) -> EmbeddingModel:
    config = EmbeddingConfig(model_name="hashing", dimension=DIMENSION, retry_delay=0.0)
    return EmbeddingModel(config, loader=lambda _config: hashing_model)


@pytest.fixture
def registry(tmp_path):
    reg = SQLiteRegistry(tmp_path / "registry.db")
    yield reg
    reg.close()
