"""Core kbcore data models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class DocumentType(str, Enum):
    """Kind of content a source holds."""

    TEXT = "txt"
    MARKDOWN = "md"
    PDF = "pdf"
    URL = "url"
    NOTION = "notion"
    MEMORY = "memory"

    @classmethod
    def parse(cls, value: Any) -> "DocumentType":
        """Return the matching member, falling back to TEXT for unknown values.

        Accepts the long spellings ``"text"`` and ``"markdown"`` as well.
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower() if value is not None else ""
        key = _TYPE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            if key:
                LOGGER.warning("Unknown document type %r, storing as %s", value, cls.TEXT.value)
            return cls.TEXT

    @property
    def registrable(self) -> bool:
        """Memory entries live in the vector store only."""
        return self is not DocumentType.MEMORY


_TYPE_ALIASES = {
    "text": "txt",
    "plain": "txt",
    "markdown": "md",
    "web": "url",
}


class DocumentState(str, Enum):
    NOT_INGESTED = "not_ingested"
    INGESTING = "ingesting"
    INGESTED = "ingested"


# Payload keys written alongside every point.
_PAYLOAD_KEYS = ("content", "source", "filename", "type", "chunkIndex", "totalChunks", "dateAdded")


@dataclass(slots=True)
class Chunk:
    """Contiguous slice of a document's normalized text."""

    text: str
    index: int


@dataclass(slots=True)
class KnowledgeMetadata:
    """Per-chunk attributes stored as point payload."""

    source: str
    filename: str
    type: DocumentType = DocumentType.TEXT
    chunk_index: int = 0
    total_chunks: int = 1
    date_added: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = DocumentType.parse(self.type)
        if self.chunk_index < 0 or self.chunk_index >= max(self.total_chunks, 1):
            raise ValueError(
                f"chunk_index {self.chunk_index} out of range for {self.total_chunks} chunks"
            )

    def to_payload(self, content: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "content": content,
                "source": self.source,
                "filename": self.filename,
                "type": self.type.value,
                "chunkIndex": self.chunk_index,
                "totalChunks": self.total_chunks,
                "dateAdded": self.date_added,
            }
        )
        return payload

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "KnowledgeMetadata":
        """Rebuild metadata from a stored payload.

        Legacy points may lack any of the fields; each one falls back to an
        empty value instead of raising.
        """
        payload = payload or {}
        total = _as_int(payload.get("totalChunks"), 1) or 1
        index = _as_int(payload.get("chunkIndex"), 0)
        if index < 0 or index >= total:
            index = 0
        return cls(
            source=str(payload.get("source") or ""),
            filename=str(payload.get("filename") or ""),
            type=DocumentType.parse(payload.get("type")),
            chunk_index=index,
            total_chunks=total,
            date_added=str(payload.get("dateAdded") or ""),
            extra={k: v for k, v in payload.items() if k not in _PAYLOAD_KEYS},
        )


@dataclass(slots=True)
class KnowledgeItem:
    """Unit persisted to the vector store."""

    id: str
    content: str
    metadata: KnowledgeMetadata
    vector: Optional[List[float]] = None

    def to_point(self) -> Dict[str, Any]:
        if self.vector is None:
            raise ValueError(f"Item {self.id} has no embedding")
        return {
            "id": self.id,
            "vector": [float(x) for x in self.vector],
            "payload": self.metadata.to_payload(self.content),
        }

    @classmethod
    def from_point(cls, point: Dict[str, Any]) -> "KnowledgeItem":
        payload = point.get("payload") or {}
        return cls(
            id=str(point.get("id", "")),
            content=str(payload.get("content") or ""),
            metadata=KnowledgeMetadata.from_payload(payload),
        )


@dataclass(slots=True)
class KnowledgeDocument:
    """One registry row per source."""

    id: str
    source: str
    title: str
    type: DocumentType
    chunk_count: int
    date_added: str
    updated_at: str = ""


@dataclass(slots=True, frozen=True)
class SearchResult:
    id: str
    content: str
    metadata: KnowledgeMetadata
    score: float

    @property
    def source(self) -> str:
        return self.metadata.source


@dataclass(slots=True)
class ParsedDocument:
    """Output of an external parser: plain text plus where it came from."""

    content: str
    source: str
    filename: str
    type: DocumentType = DocumentType.TEXT
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.type = DocumentType.parse(self.type)


@dataclass(slots=True)
class IngestionResult:
    source: str
    success: bool
    chunks_ingested: int = 0
    error: Optional[str] = None
    category: Optional[str] = None


@dataclass(slots=True)
class IngestStats:
    ingested: int = 0
    failed: int = 0
    chunks: int = 0
    results: List[IngestionResult] = field(default_factory=list)

    def record(self, result: IngestionResult) -> None:
        if result.success:
            self.ingested += 1
            self.chunks += result.chunks_ingested
        else:
            self.failed += 1
        self.results.append(result)


@dataclass(slots=True, frozen=True)
class DriftEntry:
    """Registry and vector store disagree on a source's chunk count."""

    source: str
    registry_count: Optional[int]
    store_count: int


@dataclass(slots=True)
class ReconcileReport:
    documents_total: int = 0
    documents_migrated: int = 0
    documents_removed: int = 0
    failed_sources: List[str] = field(default_factory=list)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
