"""Document sources: the read-only boundary to wherever the corpus lives.

A DocumentSource lists the documents of one (project, document_type). It may
be synchronous or return an awaitable; the build awaits it as a single unit.

DirectoryDocumentSource layout::

    <root>/<project>/<document_type>/*.md|*.txt
    <root>/<project>/<document_type>/documents.yaml   (optional metadata)

documents.yaml maps file names to metadata::

    rfp.md:
      agency_match: true
      technologies: [kubernetes, postgres]
      recency: 2024-05-01
      keywords: [security, migration]
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Awaitable, Iterable
from pathlib import Path
from typing import Any, Protocol

import yaml

from contextcache.models import Document, DocumentMetadata

_METADATA_FILE = "documents.yaml"
_TEXT_SUFFIXES: frozenset[str] = frozenset([".md", ".markdown", ".txt", ".text"])


class DocumentSource(Protocol):
    def list(
        self, project: str, document_type: str
    ) -> list[Document] | Awaitable[list[Document]]: ...


class StaticDocumentSource:
    """In-memory source; handy for tests and embedding callers."""

    def __init__(self, documents: Iterable[Document] = ()) -> None:
        self.documents = list(documents)

    def list(self, project: str, document_type: str) -> list[Document]:
        return [
            d
            for d in self.documents
            if d.project == project and d.document_type == document_type
        ]


def parse_metadata(raw: dict[str, Any] | None) -> DocumentMetadata:
    """Build DocumentMetadata from a YAML mapping (unknown keys ignored)."""
    raw = raw or {}
    recency = raw.get("recency")
    if isinstance(recency, str):
        recency = dt.date.fromisoformat(recency)
    elif isinstance(recency, dt.datetime):
        recency = recency.date()
    return DocumentMetadata(
        agency_match=bool(raw.get("agency_match", False)),
        technologies=frozenset(str(t).lower() for t in raw.get("technologies") or []),
        recency=recency,
        keywords=frozenset(str(k).lower() for k in raw.get("keywords") or []),
    )


class DirectoryDocumentSource:
    """Reads text documents from ``<root>/<project>/<document_type>/``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def list(self, project: str, document_type: str) -> list[Document]:
        folder = self.root / project / document_type
        if not folder.is_dir():
            return []

        meta_path = folder / _METADATA_FILE
        meta: dict[str, Any] = {}
        if meta_path.exists():
            meta = yaml.safe_load(meta_path.read_text(encoding="utf-8")) or {}

        documents: list[Document] = []
        for path in sorted(folder.iterdir()):
            if not path.is_file() or path.suffix.lower() not in _TEXT_SUFFIXES:
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            documents.append(
                Document(
                    id=f"{project}/{document_type}/{path.name}",
                    project=project,
                    document_type=document_type,
                    text=text,
                    size=path.stat().st_size,
                    metadata=parse_metadata(meta.get(path.name)),
                )
            )
        return documents
