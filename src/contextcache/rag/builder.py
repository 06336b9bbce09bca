"""Context builder: greedy-by-priority assembly under a token budget.

Pipeline:
  1. Rank documents by priority score (highest first, id ascending on ties).
  2. Walk the ranked list keeping a running token sum. A document is included
     whole when it fits in the remaining budget, otherwise skipped; the walk
     always continues to the next-ranked document.
  3. Return the bundle plus the ids of every skipped document.

Documents are never fragmented, and a smaller low-priority document is only
included when it fits after every higher-priority one has been considered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from contextcache.models import ContextBundle, ContextChunk, Document, MetadataWeights
from contextcache.rag.scorer import PriorityScorer
from contextcache.rag.tokens import CharRatioEstimator, TokenEstimator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedDocument:
    document: Document
    score: float
    tokens: int


class ContextBuilder:
    def __init__(
        self,
        scorer: PriorityScorer | None = None,
        estimator: TokenEstimator | None = None,
        weights: MetadataWeights | None = None,
    ) -> None:
        self.scorer = scorer if scorer is not None else PriorityScorer()
        self.estimator = estimator if estimator is not None else CharRatioEstimator()
        self.weights = weights if weights is not None else MetadataWeights()

    def rank(self, documents: Iterable[Document]) -> list[RankedDocument]:
        """Rank and size *documents*. Shared with the overflow analyzer."""
        return [
            RankedDocument(document=doc, score=score, tokens=self.estimator.estimate(doc.text))
            for doc, score in self.scorer.rank(documents, self.weights)
        ]

    def build(
        self,
        documents: Iterable[Document],
        token_budget: int,
        *,
        project: str = "",
        document_type: str = "",
    ) -> tuple[ContextBundle, list[str]]:
        """Assemble a bundle whose total_tokens never exceeds *token_budget*.

        Args:
            documents: Candidate documents (any order).
            token_budget: Maximum tokens the bundle may occupy.
            project: Project recorded on the bundle.
            document_type: Document type recorded on the bundle.

        Returns:
            (bundle, excluded_ids). An empty input yields an empty bundle.
        """
        if token_budget < 0:
            raise ValueError(f"token_budget must be >= 0, got {token_budget}")

        bundle = ContextBundle(project=project, document_type=document_type)
        excluded: list[str] = []

        for ranked in self.rank(documents):
            doc = ranked.document
            if bundle.total_tokens + ranked.tokens > token_budget:
                excluded.append(doc.id)
                continue
            bundle.chunks.append(
                ContextChunk(
                    document_id=doc.id,
                    text=doc.text,
                    tokens=ranked.tokens,
                    score=ranked.score,
                )
            )
            bundle.included_ids.append(doc.id)
            bundle.total_tokens += ranked.tokens

        bundle.excluded_ids = list(excluded)
        if excluded:
            logger.debug(
                "Budget %d: included %d, excluded %d documents",
                token_budget,
                len(bundle.included_ids),
                len(excluded),
            )
        return bundle, excluded
