"""Error taxonomy shared by the ingestion and retrieval pipeline."""

from __future__ import annotations

from typing import Sequence

from kbcore.models import DriftEntry


class KnowledgeError(Exception):
    """Base class; ``category`` is what callers report to end users."""

    category = "knowledge_error"


class ModelUnavailable(KnowledgeError):
    """The embedding model could not be loaded after all retries."""

    category = "model_unavailable"


class StoreUnreachable(KnowledgeError):
    """The vector store or the registry could not be reached."""

    category = "store_unreachable"


class SchemaMismatch(KnowledgeError):
    """Vector dimensionality disagrees with the collection configuration."""

    category = "schema_mismatch"


class VectorStoreError(KnowledgeError):
    """The vector store rejected a request."""

    category = "store_error"


class PartialDeletionError(VectorStoreError):
    category = "partial_deletion"

    def __init__(self, source: str, deleted: int, requested: int) -> None:
        super().__init__(
            f"Deleted {deleted} of {requested} points for source {source!r}"
        )
        self.source = source
        self.deleted = deleted
        self.requested = requested

    @property
    def remaining(self) -> int:
        return self.requested - self.deleted


class RegistryDrift(KnowledgeError):
    category = "registry_drift"

    def __init__(self, entries: Sequence[DriftEntry]) -> None:
        super().__init__(
            f"{len(entries)} source(s) disagree between registry and vector store"
        )
        self.entries = list(entries)
