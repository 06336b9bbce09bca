"""Domain models for context bundles and their cache entries."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class DocumentMetadata:
    agency_match: bool = False
    technologies: frozenset[str] = frozenset()
    recency: date | None = None
    keywords: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Document:
    """A corpus document as handed over by a DocumentSource. Read-only here."""

    id: str
    project: str
    document_type: str
    text: str
    size: int = 0
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)


@dataclass(frozen=True)
class ContextChunk:
    document_id: str
    text: str
    tokens: int
    score: float = 0.0


@dataclass
class ContextBundle:
    """Token-bounded set of whole documents prepared for prompt injection."""

    project: str
    document_type: str
    chunks: list[ContextChunk] = field(default_factory=list)
    total_tokens: int = 0
    included_ids: list[str] = field(default_factory=list)
    excluded_ids: list[str] = field(default_factory=list)
    built_at: str | None = None
    checksum: str | None = None
    is_override: bool = False
    original_document_count: int | None = None
    original_token_count: int | None = None

    @property
    def text(self) -> str:
        return "\n\n".join(c.text for c in self.chunks)

    @property
    def word_count(self) -> int:
        return sum(len(c.text.split()) for c in self.chunks)

    @property
    def character_count(self) -> int:
        return sum(len(c.text) for c in self.chunks)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> ContextBundle:
        data: dict[str, Any] = json.loads(raw)
        data["chunks"] = [ContextChunk(**c) for c in data.get("chunks", [])]
        return cls(**data)


@dataclass(frozen=True)
class ModelCategory:
    name: str
    max_tokens: int
    models: tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenAllocation:
    context_percent: float = 70
    generation_percent: float = 20
    buffer_percent: float = 10

    def context_budget(self, category: ModelCategory) -> int:
        """floor(max_tokens × context_percent / 100)."""
        return int(category.max_tokens * self.context_percent // 100)


@dataclass(frozen=True)
class MetadataWeights:
    agency_match: float = 5
    technology_match: float = 4
    recency: float = 3
    keyword_relevance: float = 6


@dataclass(frozen=True)
class ScoringProfile:
    """Project-level targets the scorer compares document metadata against.

    Attributes:
        technologies: Technology tags the project cares about.
        keywords: Keyword set used for term-frequency relevance.
        reference_date: Date recency is measured from. Fixed per build so
            scores stay a pure function of their inputs.
    """

    technologies: frozenset[str] = frozenset()
    keywords: frozenset[str] = frozenset()
    reference_date: date | None = None


class CacheStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"
    INVALIDATED = "invalidated"


# States a build may be acquired from.
BUILDABLE_STATES: frozenset[CacheStatus] = frozenset(
    [CacheStatus.NONE, CacheStatus.PENDING, CacheStatus.FAILED, CacheStatus.INVALIDATED]
)


@dataclass(frozen=True)
class CacheKey:
    project: str
    document_type: str

    def __str__(self) -> str:
        return f"{self.project}/{self.document_type}"


@dataclass
class CacheEntry:
    key: CacheKey
    status: CacheStatus = CacheStatus.NONE
    bundle: ContextBundle | None = None
    failure_reason: str | None = None
    built_at: datetime | None = None
    created_at: datetime | None = None
    build_id: str | None = None


@dataclass
class BuildStatus:
    status: CacheStatus
    age_seconds: float | None = None
    failure_reason: str | None = None
    total_tokens: int | None = None
    document_count: int | None = None
    built_at: datetime | None = None


@dataclass
class ContextResult:
    """What getContext hands back to a caller."""

    status: CacheStatus
    bundle: ContextBundle | None = None
    failure_reason: str | None = None


@dataclass
class DocumentBreakdown:
    id: str
    document_type: str
    score: float
    tokens: int
    rank: int
    recommended: bool = False
    fits_alone: bool = True
    reason: str | None = None


@dataclass
class OverflowReport:
    will_overflow: bool
    current_tokens: int
    max_context_tokens: int
    token_limit: int
    model_category: str
    context_percent: float
    documents: list[DocumentBreakdown] = field(default_factory=list)
    included_ids: list[str] = field(default_factory=list)
    excluded_ids: list[str] = field(default_factory=list)
    recommended_tokens: int = 0
    warning: bool = False
    message: str = ""

    @property
    def overflow_amount(self) -> int:
        return max(0, self.current_tokens - self.max_context_tokens)

    @property
    def tokens_saved(self) -> int:
        return self.current_tokens - self.recommended_tokens


@dataclass
class OverflowStatistics:
    total_events: int = 0
    average_overflow: float = 0.0
    most_common_document_types: list[tuple[str, int]] = field(default_factory=list)
    days: int = 30
    project: str | None = None
