"""Command line interface for kbcore."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from kbcore.config import AppConfig
from kbcore.embedding.encoder import EmbeddingModel
from kbcore.errors import KnowledgeError, PartialDeletionError, RegistryDrift, StoreUnreachable
from kbcore.index.indexer import IngestionCoordinator
from kbcore.index.registry import SQLiteRegistry
from kbcore.index.search import RetrievalService
from kbcore.index.vector_store import QdrantVectorStore
from kbcore.ingestion.loader import load_document
from kbcore.models import IngestionResult, IngestStats
from kbcore.utils.files import iter_text_paths


LOGGER = logging.getLogger(__name__)

console = Console()
app = typer.Typer(help="kbcore - knowledge base ingestion and semantic retrieval")

URL_OPTION = typer.Option(None, "--url", help="Qdrant URL")
COLLECTION_OPTION = typer.Option(None, "--collection", help="Qdrant collection name")
REGISTRY_OPTION = typer.Option(None, "--registry", help="SQLite registry path")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _load_config(url: Optional[str], collection: Optional[str], registry: Optional[Path]) -> AppConfig:
    config = AppConfig.from_env()
    if url:
        config.qdrant_url = url
    if collection:
        config.collection_name = collection
    if registry is not None:
        config.registry_path = registry
    return config


def _open_registry(registry_path: Path) -> Optional[SQLiteRegistry]:
    """Open the registry, or return None when it cannot be used."""
    try:
        _ensure_db_parent(registry_path)
        return SQLiteRegistry(registry_path)
    except (StoreUnreachable, OSError) as exc:
        LOGGER.warning("Registry unavailable (%s); continuing without it", exc)
        return None


class _Services:
    def __init__(self, config: AppConfig) -> None:
        self.registry = _open_registry(config.resolve_registry_path(Path.cwd()))
        self.embedder = EmbeddingModel(config.embedding_config())
        self.store = QdrantVectorStore(config.vector_store_config())
        self.coordinator = IngestionCoordinator(
            self.embedder,
            self.store,
            self.registry,
            collection=config.collection_name,
            chunk_size=config.chunk_size,
            overlap=config.overlap,
        )
        self.retrieval = RetrievalService(
            self.embedder, self.store, collection=config.collection_name
        )

    async def close(self) -> None:
        await self.store.close()
        if self.registry is not None:
            self.registry.close()


@asynccontextmanager
async def _services(config: AppConfig) -> AsyncIterator[_Services]:
    services = _Services(config)
    try:
        yield services
    finally:
        await services.close()


def _fail(exc: KnowledgeError) -> None:
    console.print(f"[red]{exc.category}: {exc}[/red]")
    raise typer.Exit(code=1)


@app.command()
def ingest(
    inputs: List[Path] = typer.Argument(
        ..., help="Text or markdown files, or directories holding them.", resolve_path=True
    ),
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Add documents to the knowledge base, replacing earlier versions."""
    _setup_logging(verbose)
    paths = list(iter_text_paths(inputs))
    if not paths:
        console.print("[yellow]No text or markdown files found.[/yellow]")
        return

    documents = []
    unreadable: List[IngestionResult] = []
    for path in paths:
        try:
            documents.append(load_document(path))
        except (ValueError, OSError) as exc:
            LOGGER.error("Could not read %s: %s", path, exc)
            unreadable.append(
                IngestionResult(
                    source=str(path),
                    success=False,
                    error=f"document not added: {exc}",
                    category="invalid_text",
                )
            )

    config = _load_config(url, collection, registry)

    async def run():
        if not documents:
            return IngestStats()
        async with _services(config) as services:
            await services.coordinator.ensure_ready()
            return await services.coordinator.ingest_many(documents)

    try:
        stats = asyncio.run(run())
    except KnowledgeError as exc:
        _fail(exc)

    for result in unreadable:
        stats.record(result)
    for result in stats.results:
        if not result.success:
            console.print(f"[red]{result.source}[/red]: {result.error} ({result.category})")
    console.print(
        f"Ingested: {stats.ingested} documents ({stats.chunks} chunks), failed: {stats.failed}"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    limit: int = typer.Option(5, help="Number of results to display"),
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Execute a semantic search."""
    _setup_logging(verbose)
    config = _load_config(url, collection, registry)

    async def run():
        async with _services(config) as services:
            return await services.retrieval.query(query, limit=limit)

    try:
        results = asyncio.run(run())
    except KnowledgeError as exc:
        _fail(exc)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Source")
    table.add_column("Chunk")
    table.add_column("Snippet")

    for result in results:
        snippet = result.content.replace("\n", " ")
        chunk = f"{result.metadata.chunk_index + 1}/{result.metadata.total_chunks}"
        table.add_row(f"{result.score:.4f}", result.source, chunk, snippet[:180])

    console.print(table)


@app.command("list")
def list_documents(
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """List ingested documents, newest first."""
    _setup_logging(verbose)
    config = _load_config(url, collection, registry)

    async def run():
        async with _services(config) as services:
            return await services.coordinator.list_documents()

    try:
        documents = asyncio.run(run())
    except KnowledgeError as exc:
        _fail(exc)

    if not documents:
        console.print("[yellow]Knowledge base is empty.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Chunks")
    table.add_column("Added")
    table.add_column("Source")
    for doc in documents:
        table.add_row(doc.title, doc.type.value, str(doc.chunk_count), doc.date_added, doc.source)
    console.print(table)


@app.command()
def delete(
    source: str = typer.Argument(..., help="Source (file path or URL) to remove"),
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Remove every chunk of a source. Scans the whole collection."""
    _setup_logging(verbose)
    config = _load_config(url, collection, registry)

    async def run():
        async with _services(config) as services:
            return await services.coordinator.delete(source)

    try:
        deleted = asyncio.run(run())
    except PartialDeletionError as exc:
        console.print(
            f"[red]Removed {exc.deleted} of {exc.requested} chunks of {source}; retry to finish.[/red]"
        )
        raise typer.Exit(code=1)
    except KnowledgeError as exc:
        _fail(exc)

    console.print(f"Removed {deleted} chunks of {source}.")


@app.command()
def reconcile(
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Rebuild the document registry from the vector store."""
    _setup_logging(verbose)
    config = _load_config(url, collection, registry)

    async def run():
        async with _services(config) as services:
            return await services.coordinator.reconcile()

    try:
        report = asyncio.run(run())
    except KnowledgeError as exc:
        _fail(exc)

    console.print(
        f"Registered {report.documents_migrated}/{report.documents_total} documents, "
        f"removed {report.documents_removed} stale rows."
    )
    if report.failed_sources:
        console.print(f"[yellow]Failed: {', '.join(report.failed_sources)}[/yellow]")
        raise typer.Exit(code=1)


@app.command()
def audit(
    strict: bool = typer.Option(False, "--strict", help="Exit non-zero when drift is found"),
    url: Optional[str] = URL_OPTION,
    collection: Optional[str] = COLLECTION_OPTION,
    registry: Optional[Path] = REGISTRY_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Compare registry chunk counts with the vector store."""
    _setup_logging(verbose)
    config = _load_config(url, collection, registry)

    async def run():
        async with _services(config) as services:
            return await services.coordinator.audit(strict=strict)

    try:
        drift = asyncio.run(run())
    except RegistryDrift as exc:
        drift = exc.entries
        _print_drift(drift)
        raise typer.Exit(code=1)
    except KnowledgeError as exc:
        _fail(exc)

    if not drift:
        console.print("Registry and vector store agree.")
        return
    _print_drift(drift)
    console.print("Run [bold]kbcore reconcile[/bold] to repair.")


def _print_drift(drift) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Source")
    table.add_column("Registry")
    table.add_column("Vector store")
    for entry in drift:
        registered = "-" if entry.registry_count is None else str(entry.registry_count)
        table.add_row(entry.source, registered, str(entry.store_count))
    console.print(table)
