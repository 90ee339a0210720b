"""Application configuration defaults."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from kbcore.embedding.encoder import DEFAULT_DIMENSION, DEFAULT_MODEL, EmbeddingConfig
from kbcore.index.vector_store import VectorStoreConfig

DEFAULT_QDRANT_URL = "http://localhost:6333"
DEFAULT_COLLECTION = "open-claude-knowledge"

_ENV_PREFIX = "KBCORE_"


def _get_default_registry_path() -> Path:
    """Get the default registry path based on platform and execution context."""
    user_db = Path.home() / "Documents" / "kbcore" / "registry.db"

    if getattr(sys, "frozen", False):
        return user_db

    # Running from a checkout that already has a local data/ registry
    local_db = Path("data/registry.db")
    if local_db.exists():
        return local_db

    return user_db


@dataclass(slots=True)
class AppConfig:
    qdrant_url: str = DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    collection_name: str = DEFAULT_COLLECTION
    registry_path: Path | None = None
    model_name: str = DEFAULT_MODEL
    vector_size: int = DEFAULT_DIMENSION
    chunk_size: int = 2000
    overlap: int = 200
    page_size: int = 100

    def __post_init__(self) -> None:
        if self.registry_path is None:
            self.registry_path = _get_default_registry_path()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from ``KBCORE_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(_ENV_PREFIX + name)
            return value if value else None

        config = cls()
        config.qdrant_url = get("QDRANT_URL") or config.qdrant_url
        config.qdrant_api_key = get("QDRANT_API_KEY")
        config.collection_name = get("COLLECTION") or config.collection_name
        if get("REGISTRY_PATH"):
            config.registry_path = Path(get("REGISTRY_PATH"))  # type: ignore[arg-type]
        config.model_name = get("MODEL") or config.model_name
        for attr, name in (
            ("vector_size", "VECTOR_SIZE"),
            ("chunk_size", "CHUNK_SIZE"),
            ("overlap", "OVERLAP"),
            ("page_size", "PAGE_SIZE"),
        ):
            raw = get(name)
            if raw is not None:
                try:
                    setattr(config, attr, int(raw))
                except ValueError as exc:
                    raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
        return config

    def resolve_registry_path(self, base_dir: Path | None = None) -> Path:
        if self.registry_path is None:
            self.registry_path = _get_default_registry_path()
        if Path(self.registry_path).is_absolute() or base_dir is None:
            return Path(self.registry_path)
        return base_dir / self.registry_path

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(model_name=self.model_name, dimension=self.vector_size)

    def vector_store_config(self) -> VectorStoreConfig:
        return VectorStoreConfig(
            url=self.qdrant_url,
            api_key=self.qdrant_api_key,
            vector_size=self.vector_size,
            page_size=self.page_size,
        )
