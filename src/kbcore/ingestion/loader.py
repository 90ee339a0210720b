"""Plain-text and markdown loading.

Other formats (PDF, web pages, Notion) are parsed outside this package and
handed over as ParsedDocument instances.
"""

from __future__ import annotations

import logging
from pathlib import Path

from kbcore.models import DocumentType, ParsedDocument

LOGGER = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt": DocumentType.TEXT, ".md": DocumentType.MARKDOWN, ".markdown": DocumentType.MARKDOWN}


def document_type_for(path: Path) -> DocumentType:
    return TEXT_SUFFIXES.get(path.suffix.lower(), DocumentType.TEXT)


def load_document(path: Path) -> ParsedDocument:
    """Read a UTF-8 text file into a ParsedDocument keyed by its path."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{path} is not valid UTF-8 text") from exc

    LOGGER.debug("Loaded %s (%s chars)", path, len(content))
    return ParsedDocument(
        content=content.strip(),
        source=str(path),
        filename=path.name,
        type=document_type_for(path),
    )
