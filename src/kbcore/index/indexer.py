"""Document ingestion pipeline and cross-store consistency."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from kbcore.embedding.encoder import EmbeddingModel
from kbcore.errors import KnowledgeError, PartialDeletionError, RegistryDrift, StoreUnreachable
from kbcore.index.registry import SQLiteRegistry, utc_now
from kbcore.index.vector_store import QdrantVectorStore
from kbcore.models import (
    DocumentState,
    DocumentType,
    DriftEntry,
    IngestionResult,
    IngestStats,
    KnowledgeDocument,
    KnowledgeItem,
    KnowledgeMetadata,
    ParsedDocument,
    ReconcileReport,
)
from kbcore.utils.text import CHUNK_OVERLAP, CHUNK_SIZE, MIN_CHUNK_SIZE, chunk_text

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _SourceSummary:
    title: str
    type: DocumentType
    count: int
    date_added: str


class IngestionCoordinator:
    """Keeps the vector store and the document registry in agreement.

    The vector store is the source of truth for what exists; the registry
    is a listing cache that ``reconcile()`` can always rebuild. Operations
    on one source are serialized; different sources proceed concurrently.
    """

    def __init__(
        self,
        embedder: EmbeddingModel,
        store: QdrantVectorStore,
        registry: SQLiteRegistry | None = None,
        *,
        collection: str,
        chunk_size: int = CHUNK_SIZE,
        overlap: int = CHUNK_OVERLAP,
        min_chunk_size: int = MIN_CHUNK_SIZE,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.registry = registry
        self.collection = collection
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_size = min_chunk_size
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._states: Dict[str, DocumentState] = {}

    async def ensure_ready(self) -> None:
        await self.store.ensure_collection(self.collection)

    def state_of(self, source: str) -> DocumentState:
        return self._states.get(source, DocumentState.NOT_INGESTED)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, document: ParsedDocument, *, replace: bool = True) -> IngestionResult:
        """Chunk, embed and store ``document``, then register it.

        With ``replace`` the previous chunks of the same source are removed
        once the new ones are stored, so re-ingesting never leaves orphans and
        a failed re-ingest keeps the previous version. Failures are reported
        in the result rather than raised.
        """
        source = document.source
        async with self._locks[source]:
            previous = self.state_of(source)
            self._states[source] = DocumentState.INGESTING
            try:
                count = await self._ingest_locked(document, replace=replace)
            except KnowledgeError as exc:
                LOGGER.error("Document not added: %s (%s: %s)", source, exc.category, exc)
                self._states[source] = previous
                return IngestionResult(
                    source=source,
                    success=False,
                    error=f"document not added: {exc}",
                    category=exc.category,
                )
            except BaseException:
                self._states[source] = previous
                raise

            if count == 0:
                self._states[source] = previous
                return IngestionResult(
                    source=source,
                    success=False,
                    error="document not added: no text to index",
                    category="empty_document",
                )

            self._states[source] = DocumentState.INGESTED
            LOGGER.info("Ingested %s chunks from %s", count, source)
            return IngestionResult(source=source, success=True, chunks_ingested=count)

    async def _ingest_locked(self, document: ParsedDocument, *, replace: bool) -> int:
        chunks = chunk_text(
            document.content,
            chunk_size=self.chunk_size,
            overlap=self.overlap,
            min_chunk_size=self.min_chunk_size,
        )
        if not chunks:
            LOGGER.warning("No text extracted from %s", document.source)
            return 0

        vectors = await self.embedder.embed_many([chunk.text for chunk in chunks])
        date_added = utc_now()
        items = [
            KnowledgeItem(
                id=str(uuid.uuid4()),
                content=chunk.text,
                metadata=KnowledgeMetadata(
                    source=document.source,
                    filename=document.filename,
                    type=document.type,
                    chunk_index=chunk.index,
                    total_chunks=len(chunks),
                    date_added=date_added,
                    extra=dict(document.extra),
                ),
                vector=vector.tolist(),
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        await self.store.ensure_collection(self.collection)
        previous_ids = []
        if replace:
            previous_ids = await self.store.source_point_ids(self.collection, document.source)

        # The previous version stays in place until the new one is fully stored
        try:
            await self.store.upsert(self.collection, items)
        except KnowledgeError:
            await self._discard(items)
            raise

        if previous_ids:
            LOGGER.info("Replacing %s existing chunks of %s", len(previous_ids), document.source)
            try:
                await self.store.delete_source_points(
                    self.collection, document.source, previous_ids
                )
            except PartialDeletionError as exc:
                await self._register(document, len(items) + exc.remaining)
                raise

        await self._register(document, len(items))
        return len(items)

    async def _discard(self, items: List[KnowledgeItem]) -> None:
        """Remove whatever part of a failed upsert reached the store."""
        try:
            await self.store.delete_vectors(self.collection, [item.id for item in items])
        except KnowledgeError as exc:
            LOGGER.warning(
                "Could not remove %s chunks of a failed upsert (%s); run reconcile",
                len(items),
                exc,
            )

    async def _register(self, document: ParsedDocument, chunk_count: int) -> None:
        if self.registry is None or not document.type.registrable:
            return
        try:
            await self.registry.register(
                document.source, document.filename, document.type, chunk_count
            )
        except StoreUnreachable as exc:
            # Vectors are stored; reconcile() restores the missing row
            LOGGER.warning(
                "Stored %s but could not register it (%s); run reconcile", document.source, exc
            )

    async def ingest_many(
        self, documents: Iterable[ParsedDocument], *, concurrency: int = 4
    ) -> IngestStats:
        """Ingest several documents; one failure does not stop the others."""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(document: ParsedDocument) -> IngestionResult:
            async with semaphore:
                LOGGER.info("Processing: %s", document.source)
                return await self.ingest(document)

        stats = IngestStats()
        for result in await asyncio.gather(*(run(doc) for doc in documents)):
            stats.record(result)
        return stats

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(self, source: str) -> int:
        """Remove every chunk of ``source``, then its registry row.

        The row is only removed once the vectors are gone. On a partial
        deletion the row keeps the number of chunks still stored and the
        PartialDeletionError is re-raised.
        """
        async with self._locks[source]:
            try:
                deleted = await self.store.delete_by_source(self.collection, source)
            except PartialDeletionError as exc:
                if self.registry is not None:
                    try:
                        await self.registry.update_chunk_count(source, exc.remaining)
                    except StoreUnreachable as registry_exc:
                        LOGGER.warning("Could not record remaining chunks of %s: %s", source, registry_exc)
                raise

            if self.registry is not None:
                await self.registry.unregister(source)
            self._states.pop(source, None)
            LOGGER.info("Deleted %s items with source: %s", deleted, source)
            return deleted

    async def delete_items(self, ids: List[str]) -> int:
        """Delete chunks by id. Registry counts are left to ``reconcile()``."""
        return await self.store.delete_vectors(self.collection, ids)

    # ------------------------------------------------------------------
    # Listing and consistency
    # ------------------------------------------------------------------

    async def list_documents(self) -> List[KnowledgeDocument]:
        """Registry listing, or one derived from the vector store when the
        registry is missing or unreachable."""
        if self.registry is not None:
            try:
                return await self.registry.list()
            except StoreUnreachable as exc:
                LOGGER.warning("Registry unavailable (%s); listing from vector store", exc)
        return await self._documents_from_store()

    async def _documents_from_store(self) -> List[KnowledgeDocument]:
        summaries = await self._summarize_store()
        documents = [
            KnowledgeDocument(
                id="",
                source=source,
                title=summary.title,
                type=summary.type,
                chunk_count=summary.count,
                date_added=summary.date_added,
            )
            for source, summary in summaries.items()
        ]
        documents.sort(key=lambda doc: doc.source)
        documents.sort(key=lambda doc: doc.date_added, reverse=True)
        return documents

    async def _summarize_store(self) -> Dict[str, _SourceSummary]:
        summaries: Dict[str, _SourceSummary] = {}
        for item in await self.store.list_items(self.collection):
            meta = item.metadata
            source = meta.source or "Unknown"
            summary = summaries.get(source)
            if summary is None:
                summaries[source] = _SourceSummary(
                    title=meta.filename or "Unknown",
                    type=meta.type,
                    count=1,
                    date_added=meta.date_added or utc_now(),
                )
                continue
            summary.count += 1
            if meta.date_added and meta.date_added < summary.date_added:
                summary.date_added = meta.date_added
        return summaries

    async def reconcile(self) -> ReconcileReport:
        """Rebuild the registry from the vector store.

        Registers every stored source with its real chunk count and removes
        rows whose source has no vectors left.
        """
        if self.registry is None:
            raise StoreUnreachable("No registry configured")

        summaries = {
            source: summary
            for source, summary in (await self._summarize_store()).items()
            if summary.type.registrable
        }
        report = ReconcileReport(documents_total=len(summaries))
        LOGGER.info("Migrating %s documents...", len(summaries))

        for source, summary in summaries.items():
            try:
                await self.registry.register(
                    source, summary.title, summary.type, summary.count, date_added=summary.date_added
                )
            except StoreUnreachable as exc:
                LOGGER.error("Could not register %s: %s", source, exc)
                report.failed_sources.append(source)
                continue
            report.documents_migrated += 1

        for document in await self.registry.list():
            if document.source not in summaries:
                LOGGER.warning("Removing registry row without vectors: %s", document.source)
                await self.registry.unregister(document.source)
                report.documents_removed += 1

        LOGGER.info(
            "Migration complete: %s/%s documents", report.documents_migrated, report.documents_total
        )
        return report

    async def audit(self, *, strict: bool = False) -> List[DriftEntry]:
        """Compare registry chunk counts with the vector store.

        Every disagreement is logged; with ``strict`` a RegistryDrift is
        raised instead of returning them.
        """
        if self.registry is None:
            raise StoreUnreachable("No registry configured")

        store_counts = await self._registrable_counts()
        registry_counts = {doc.source: doc.chunk_count for doc in await self.registry.list()}

        drift: List[DriftEntry] = []
        for source in sorted(set(store_counts) | set(registry_counts)):
            registered: Optional[int] = registry_counts.get(source)
            stored = store_counts.get(source, 0)
            if registered != stored:
                LOGGER.warning(
                    "Registry drift for %s: registry=%s store=%s", source, registered, stored
                )
                drift.append(DriftEntry(source=source, registry_count=registered, store_count=stored))

        if drift and strict:
            raise RegistryDrift(drift)
        return drift

    async def _registrable_counts(self) -> Dict[str, int]:
        summaries = await self._summarize_store()
        return {
            source: summary.count
            for source, summary in summaries.items()
            if summary.type.registrable
        }
