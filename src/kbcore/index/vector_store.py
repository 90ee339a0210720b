"""Qdrant vector store, spoken to over its REST API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import numpy as np

from kbcore.errors import (
    PartialDeletionError,
    SchemaMismatch,
    StoreUnreachable,
    VectorStoreError,
)
from kbcore.models import KnowledgeItem, SearchResult
from kbcore.utils.retry import retry_async

LOGGER = logging.getLogger(__name__)

_RETRY_STATUS = frozenset({429, 500, 502, 503, 504})


class _TransientError(Exception):
    """Retryable failure; converted to StoreUnreachable once retries run out."""


@dataclass(slots=True)
class VectorStoreConfig:
    url: str = "http://localhost:6333"
    api_key: str | None = None
    vector_size: int = 384
    page_size: int = 100
    upsert_batch_size: int = 100
    delete_batch_size: int = 100
    timeout: float = 30.0
    scan_timeout: float | None = 300.0
    max_attempts: int = 3
    backoff: float = 0.5
    max_backoff: float = 4.0


class QdrantVectorStore:
    """Collection lifecycle, upsert, search, deletion and full enumeration.

    Configuration is fixed at construction; build a new instance to point at
    a different server. Use as an async context manager or call ``close()``.
    """

    def __init__(
        self,
        config: VectorStoreConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or VectorStoreConfig()
        headers = {"api-key": self.config.api_key} if self.config.api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.config.url.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout,
            transport=transport,
        )
        LOGGER.info("Qdrant client initialized for %s", self.config.url)

    @property
    def vector_size(self) -> int:
        return self.config.vector_size

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "QdrantVectorStore":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Dict[str, Any] | None = None,
        description: str | None = None,
    ) -> Any:
        """Send one request with bounded retries and return its ``result``."""
        description = description or f"{method} {path}"

        async def send() -> Any:
            try:
                response = await self._client.request(method, path, json=json, params=params)
            except httpx.TransportError as exc:
                raise _TransientError(f"{description}: {exc}") from exc
            if response.status_code in _RETRY_STATUS:
                raise _TransientError(f"{description}: HTTP {response.status_code}")
            if response.is_error:
                raise VectorStoreError(
                    f"{description} failed with HTTP {response.status_code}: {_error_text(response)}"
                )
            try:
                body = response.json()
            except ValueError as exc:
                raise VectorStoreError(
                    f"{description} returned a non-JSON body: {response.text[:200]!r}"
                ) from exc
            if not isinstance(body, dict):
                raise VectorStoreError(f"{description} returned an unexpected body: {body!r:.200}")
            return body.get("result")

        try:
            return await retry_async(
                send,
                retry_on=(_TransientError,),
                attempts=self.config.max_attempts,
                backoff=self.config.backoff,
                max_backoff=self.config.max_backoff,
                description=description,
            )
        except _TransientError as exc:
            raise StoreUnreachable(str(exc)) from exc

    async def ping(self) -> bool:
        await self._request("GET", "/collections", description="ping")
        return True

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def ensure_collection(self, name: str) -> bool:
        """Create ``name`` if missing. Returns True when it was created.

        An existing collection whose vector size differs from the configured
        one raises SchemaMismatch.
        """
        result = await self._request("GET", "/collections", description="list collections")
        names = {c.get("name") for c in (result or {}).get("collections", [])}

        if name in names:
            size = await self._collection_vector_size(name)
            if size is not None and size != self.config.vector_size:
                raise SchemaMismatch(
                    f"Collection {name!r} holds {size}-dim vectors, "
                    f"configured size is {self.config.vector_size}"
                )
            return False

        LOGGER.info("Creating collection %s (size=%s, cosine)", name, self.config.vector_size)
        await self._request(
            "PUT",
            f"/collections/{name}",
            json={"vectors": {"size": self.config.vector_size, "distance": "Cosine"}},
            description=f"create collection {name}",
        )
        return True

    async def _collection_vector_size(self, name: str) -> Optional[int]:
        info = await self._request("GET", f"/collections/{name}", description=f"describe {name}")
        try:
            vectors = info["config"]["params"]["vectors"]
        except (KeyError, TypeError):
            return None
        size = vectors.get("size") if isinstance(vectors, dict) else None
        return int(size) if size is not None else None

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    async def upsert(self, collection: str, items: Sequence[KnowledgeItem]) -> int:
        """Insert or replace points by id. Returns the number written."""
        if not items:
            return 0

        for item in items:
            size = 0 if item.vector is None else len(item.vector)
            if size != self.config.vector_size:
                raise SchemaMismatch(
                    f"Item {item.id} has a {size}-dim vector, "
                    f"collection expects {self.config.vector_size}"
                )

        batch_size = max(1, self.config.upsert_batch_size)
        total_batches = (len(items) + batch_size - 1) // batch_size
        for number, offset in enumerate(range(0, len(items), batch_size), start=1):
            batch = items[offset : offset + batch_size]
            await self._request(
                "PUT",
                f"/collections/{collection}/points",
                params={"wait": "true"},
                json={"points": [item.to_point() for item in batch]},
                description=f"upsert batch {number}/{total_batches}",
            )
            LOGGER.debug("Upserted batch %s/%s to %s", number, total_batches, collection)

        LOGGER.info("Upserted %s vectors to %s", len(items), collection)
        return len(items)

    async def search(
        self, collection: str, vector: Sequence[float] | np.ndarray, *, limit: int = 5
    ) -> List[SearchResult]:
        query = [float(x) for x in np.asarray(vector, dtype="float32").ravel()]
        if len(query) != self.config.vector_size:
            raise SchemaMismatch(
                f"Query vector has {len(query)} dimensions, expected {self.config.vector_size}"
            )
        hits = await self._request(
            "POST",
            f"/collections/{collection}/points/search",
            json={"vector": query, "limit": limit, "with_payload": True},
            description="search",
        )
        results: List[SearchResult] = []
        for hit in hits or []:
            item = KnowledgeItem.from_point(hit)
            results.append(
                SearchResult(
                    id=item.id,
                    content=item.content,
                    metadata=item.metadata,
                    score=float(hit.get("score") or 0.0),
                )
            )
        return results

    async def delete_vectors(self, collection: str, ids: Sequence[str]) -> int:
        """Delete points by explicit id."""
        if not ids:
            return 0
        await self._request(
            "POST",
            f"/collections/{collection}/points/delete",
            params={"wait": "true"},
            json={"points": list(ids)},
            description=f"delete {len(ids)} points",
        )
        LOGGER.info("Deleted %s vectors from %s", len(ids), collection)
        return len(ids)

    # ------------------------------------------------------------------
    # Full scans
    # ------------------------------------------------------------------

    async def iter_pages(self, collection: str) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield every page of points (payload only) until the cursor runs out.

        The cursor returned by one page is sent verbatim as the next offset.
        An empty page that still carries a cursor is not the end.
        """
        offset: Any = None
        while True:
            body: Dict[str, Any] = {
                "limit": self.config.page_size,
                "with_payload": True,
                "with_vector": False,
            }
            if offset is not None:
                body["offset"] = offset

            result = await self._request(
                "POST",
                f"/collections/{collection}/points/scroll",
                json=body,
                description=f"scroll {collection}",
            )
            result = result or {}
            points = result.get("points") or []
            LOGGER.debug("Scroll returned %s points", len(points))
            yield points

            offset = result.get("next_page_offset")
            if offset is None:
                return

    async def _scan(self, collection: str, visit) -> None:
        async def run() -> None:
            async for page in self.iter_pages(collection):
                for point in page:
                    visit(point)

        if self.config.scan_timeout is None:
            await run()
            return
        try:
            await asyncio.wait_for(run(), timeout=self.config.scan_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnreachable(
                f"Scanning {collection} exceeded {self.config.scan_timeout}s"
            ) from exc

    async def list_items(self, collection: str) -> List[KnowledgeItem]:
        """Return every stored item, without vectors.

        Pages through the whole collection; meant for registry rebuilds and
        audits, not interactive queries.
        """
        items: List[KnowledgeItem] = []
        await self._scan(collection, lambda point: items.append(KnowledgeItem.from_point(point)))

        sources = {item.metadata.source for item in items}
        LOGGER.info("listItems: %s chunks from %s sources", len(items), len(sources))
        return items

    async def source_point_ids(self, collection: str, source: str) -> List[Any]:
        """Ids of every point whose payload ``source`` equals ``source``.

        Scans the ENTIRE collection (O(points)) and filters locally.
        """
        point_ids: List[Any] = []

        def visit(point: Dict[str, Any]) -> None:
            if (point.get("payload") or {}).get("source") == source:
                point_ids.append(point.get("id"))

        await self._scan(collection, visit)
        return point_ids

    async def delete_source_points(
        self, collection: str, source: str, point_ids: Sequence[Any]
    ) -> int:
        """Delete ``point_ids`` of ``source`` in batches of ``delete_batch_size``.

        Each batch is retried on its own; if one still fails,
        PartialDeletionError reports how many points were removed.
        """
        deleted = 0
        batch_size = max(1, self.config.delete_batch_size)
        for offset in range(0, len(point_ids), batch_size):
            batch = list(point_ids[offset : offset + batch_size])
            try:
                await self._request(
                    "POST",
                    f"/collections/{collection}/points/delete",
                    params={"wait": "true"},
                    json={"points": batch},
                    description=f"delete batch {offset // batch_size + 1}",
                )
            except (StoreUnreachable, VectorStoreError) as exc:
                LOGGER.error(
                    "Deleting %s stopped after %s/%s points: %s",
                    source,
                    deleted,
                    len(point_ids),
                    exc,
                )
                raise PartialDeletionError(source, deleted, len(point_ids)) from exc
            deleted += len(batch)
        return deleted

    async def delete_by_source(self, collection: str, source: str) -> int:
        """Delete every point whose payload ``source`` equals ``source``.

        A full collection scan followed by batched deletion; run it as a
        background operation.
        """
        LOGGER.info("deleteBySource: looking for source=%r", source)
        point_ids = await self.source_point_ids(collection, source)
        if not point_ids:
            LOGGER.info("No vectors found with source: %s", source)
            return 0

        deleted = await self.delete_source_points(collection, source, point_ids)
        LOGGER.info("Deleted %s vectors with source: %s", deleted, source)
        return deleted


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    status = body.get("status") if isinstance(body, dict) else None
    if isinstance(status, dict) and status.get("error"):
        return str(status["error"])
    return response.text[:200]
