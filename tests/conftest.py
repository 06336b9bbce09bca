"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from contextcache.db.cache import BuildCache
from contextcache.db.connection import Database
from contextcache.db.schema import initialize
from contextcache.models import Document, DocumentMetadata


class FakeClock:
    """Mutable UTC clock for age- and TTL-sensitive tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".contextcache.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_db, clock):
    return BuildCache(tmp_db, clock=clock)


def _make_doc(
    id: str,
    text: str = "text",
    *,
    project: str = "acme",
    document_type: str = "proposals",
    agency_match: bool = False,
    technologies: tuple[str, ...] = (),
    recency: date | None = None,
    keywords: tuple[str, ...] = (),
) -> Document:
    return Document(
        id=id,
        project=project,
        document_type=document_type,
        text=text,
        size=len(text),
        metadata=DocumentMetadata(
            agency_match=agency_match,
            technologies=frozenset(technologies),
            recency=recency,
            keywords=frozenset(keywords),
        ),
    )


@pytest.fixture
def make_doc():
    """Factory for Document instances in project 'acme', type 'proposals'."""
    return _make_doc
