"""Knowledge ingestion and semantic retrieval over Qdrant."""

from kbcore.embedding.encoder import EmbeddingConfig, EmbeddingModel
from kbcore.errors import (
    KnowledgeError,
    ModelUnavailable,
    PartialDeletionError,
    RegistryDrift,
    SchemaMismatch,
    StoreUnreachable,
    VectorStoreError,
)
from kbcore.index.indexer import IngestionCoordinator
from kbcore.index.registry import SQLiteRegistry
from kbcore.index.search import RetrievalService
from kbcore.index.vector_store import QdrantVectorStore, VectorStoreConfig
from kbcore.models import (
    DocumentType,
    KnowledgeDocument,
    KnowledgeItem,
    KnowledgeMetadata,
    ParsedDocument,
    SearchResult,
)
from kbcore.utils.text import chunk_text

__all__ = [
    "DocumentType",
    "EmbeddingConfig",
    "EmbeddingModel",
    "IngestionCoordinator",
    "KnowledgeDocument",
    "KnowledgeError",
    "KnowledgeItem",
    "KnowledgeMetadata",
    "ModelUnavailable",
    "ParsedDocument",
    "PartialDeletionError",
    "QdrantVectorStore",
    "RegistryDrift",
    "RetrievalService",
    "SQLiteRegistry",
    "SchemaMismatch",
    "SearchResult",
    "StoreUnreachable",
    "VectorStoreConfig",
    "VectorStoreError",
    "chunk_text",
]

__version__ = "0.1.0"
