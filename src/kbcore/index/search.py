"""Semantic search interface."""

from __future__ import annotations

import logging
from typing import List

from kbcore.embedding.encoder import EmbeddingModel
from kbcore.index.vector_store import QdrantVectorStore
from kbcore.models import SearchResult

LOGGER = logging.getLogger(__name__)


class RetrievalService:
    """High-level API to query the vector store.

    The embedder must be the one used at ingestion time; vectors from a
    different model live in a different space.
    """

    def __init__(self, embedder: EmbeddingModel, store: QdrantVectorStore, *, collection: str) -> None:
        self.embedder = embedder
        self.store = store
        self.collection = collection

    async def query(self, text: str, *, limit: int = 5) -> List[SearchResult]:
        """Nearest chunks for ``text``, in the store's similarity order."""
        query = text.strip()
        if not query:
            raise ValueError("Empty query")
        if limit < 1:
            raise ValueError("limit must be >= 1")

        embedding = await self.embedder.embed_query(query)
        results = await self.store.search(self.collection, embedding, limit=limit)
        LOGGER.info("Found %s results for %r", len(results), query[:80])
        return results
