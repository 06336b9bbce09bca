"""Priority scoring: deterministic weighted sum of document metadata factors.

score = Σ weight[f] × factor_f(document, profile) over four factors:

  agency_match       1.0 if the document is flagged as matching the agency
  technology_match   number of document tags that overlap the project tags
  recency            1 / (1 + age in days), measured from profile.reference_date
  keyword_relevance  Σ log(1 + tf) over the configured keywords

Scores are a pure function of (document, weights, profile). Ranking breaks
ties on document id so ordering is stable across runs.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Callable, Iterable

from contextcache.models import Document, MetadataWeights, ScoringProfile

_TERM_RE = re.compile(r"[a-z0-9]+")


def _agency_match(doc: Document, profile: ScoringProfile) -> float:
    return 1.0 if doc.metadata.agency_match else 0.0


def _technology_match(doc: Document, profile: ScoringProfile) -> float:
    tags = {t.lower() for t in doc.metadata.technologies}
    return float(len(tags & {t.lower() for t in profile.technologies}))


def _recency(doc: Document, profile: ScoringProfile) -> float:
    if doc.metadata.recency is None or profile.reference_date is None:
        return 0.0
    age_days = max(0, (profile.reference_date - doc.metadata.recency).days)
    return 1.0 / (1.0 + age_days)


def _keyword_relevance(doc: Document, profile: ScoringProfile) -> float:
    if not profile.keywords:
        return 0.0
    lowered = doc.text.lower()
    terms = Counter(_TERM_RE.findall(lowered))
    tagged = {k.lower() for k in doc.metadata.keywords}
    total = 0.0
    for keyword in sorted({k.lower() for k in profile.keywords}):
        tf = lowered.count(keyword) if " " in keyword else terms[keyword]
        if keyword in tagged:
            tf += 1
        total += math.log1p(tf)
    return total


# Weight field name → factor. Adding a factor means adding a weight field.
FACTORS: dict[str, Callable[[Document, ScoringProfile], float]] = {
    "agency_match": _agency_match,
    "technology_match": _technology_match,
    "recency": _recency,
    "keyword_relevance": _keyword_relevance,
}


class PriorityScorer:
    """Scores and ranks documents against a project's ScoringProfile."""

    def __init__(self, profile: ScoringProfile | None = None) -> None:
        self.profile = profile if profile is not None else ScoringProfile()

    def factors(self, document: Document) -> dict[str, float]:
        """Unweighted factor values, keyed like MetadataWeights fields."""
        return {name: fn(document, self.profile) for name, fn in FACTORS.items()}

    def score(self, document: Document, weights: MetadataWeights) -> float:
        return sum(
            getattr(weights, name) * value
            for name, value in self.factors(document).items()
        )

    def rank(
        self, documents: Iterable[Document], weights: MetadataWeights
    ) -> list[tuple[Document, float]]:
        """Return (document, score) pairs, highest score first, id ascending on ties."""
        scored = [(doc, self.score(doc, weights)) for doc in documents]
        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored
