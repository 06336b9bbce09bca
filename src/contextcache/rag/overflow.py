"""Overflow analysis: does a corpus fit a model's context budget, and what to cut.

maxContextTokens = floor(model.max_tokens × context_percent / 100)

Documents are ranked exactly as the ContextBuilder ranks them. The recommended
split is the longest ranked prefix whose cumulative tokens stay within the
budget; everything after the cut line is excluded. When the builder would
fit more by skipping past the cut line, the message says so. The report is
produced for every corpus, overflowing or not, so a caller can always offer
manual selection.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from contextcache.errors import ContextOverflowError, NotFoundError
from contextcache.models import (
    ContextBundle,
    ContextChunk,
    Document,
    DocumentBreakdown,
    ModelCategory,
    OverflowReport,
    TokenAllocation,
)
from contextcache.rag.builder import ContextBuilder

logger = logging.getLogger(__name__)

REASON_TOO_LARGE = "exceeds token limit"
REASON_BELOW_CUT = "below cut line"


class OverflowAnalyzer:
    def __init__(
        self,
        builder: ContextBuilder | None = None,
        warning_threshold_percent: int = 85,
    ) -> None:
        self.builder = builder if builder is not None else ContextBuilder()
        self.warning_threshold_percent = warning_threshold_percent

    def check_overflow(
        self,
        documents: Iterable[Document],
        category: ModelCategory,
        allocation: TokenAllocation,
    ) -> OverflowReport:
        """Analyse *documents* against *category*'s context budget.

        Returns:
            OverflowReport with totals, the ranked per-document breakdown and the
            recommended included/excluded split at the cut line.
        """
        max_context = allocation.context_budget(category)
        ranked = self.builder.rank(documents)

        breakdown: list[DocumentBreakdown] = []
        included: list[str] = []
        excluded: list[str] = []
        running = 0
        cut = False
        greedy_running = 0
        greedy_count = 0

        for position, item in enumerate(ranked, start=1):
            fits_alone = item.tokens <= max_context
            if greedy_running + item.tokens <= max_context:
                greedy_running += item.tokens
                greedy_count += 1
            entry = DocumentBreakdown(
                id=item.document.id,
                document_type=item.document.document_type,
                score=item.score,
                tokens=item.tokens,
                rank=position,
                fits_alone=fits_alone,
            )
            if not cut and running + item.tokens <= max_context:
                running += item.tokens
                entry.recommended = True
                included.append(item.document.id)
            else:
                cut = True
                entry.reason = REASON_BELOW_CUT if fits_alone else REASON_TOO_LARGE
                excluded.append(item.document.id)
            breakdown.append(entry)

        current = sum(item.tokens for item in ranked)
        will_overflow = current > max_context
        warning = max_context > 0 and current * 100 >= max_context * self.warning_threshold_percent

        if not ranked:
            message = "No documents found"
        elif will_overflow:
            message = (
                f"Recommended {len(included)}/{len(ranked)} documents to stay within "
                f"{max_context} token limit"
            )
            if greedy_count > len(included):
                message += (
                    f"; the automatic build fits {greedy_count} by skipping documents "
                    "that do not fit"
                )
        else:
            message = "All documents fit within token limits"

        report = OverflowReport(
            will_overflow=will_overflow,
            current_tokens=current,
            max_context_tokens=max_context,
            token_limit=category.max_tokens,
            model_category=category.name,
            context_percent=allocation.context_percent,
            documents=breakdown,
            included_ids=included,
            excluded_ids=excluded,
            recommended_tokens=running,
            warning=warning or will_overflow,
            message=message,
        )
        if will_overflow:
            logger.warning(
                "Context overflow detected: %d/%d tokens (%d over limit)",
                current,
                max_context,
                report.overflow_amount,
            )
        return report

    def apply_selection(
        self,
        selected_ids: Iterable[str],
        documents: Iterable[Document],
        *,
        max_context_tokens: int | None = None,
        project: str = "",
        document_type: str = "",
    ) -> ContextBundle:
        """Keep only the selected documents, in rank order, with recomputed totals.

        Content is never reordered within a document nor truncated.

        Raises:
            NotFoundError: A selected id is not part of *documents*.
            ContextOverflowError: With *max_context_tokens* given, a selected
                document alone exceeds it.
        """
        docs = list(documents)
        wanted = set(selected_ids)
        missing = wanted - {d.id for d in docs}
        if missing:
            raise NotFoundError(f"Unknown document ids: {', '.join(sorted(missing))}")

        ranked = self.builder.rank(docs)
        bundle = ContextBundle(
            project=project,
            document_type=document_type,
            is_override=True,
            original_document_count=len(ranked),
            original_token_count=sum(r.tokens for r in ranked),
        )
        for item in ranked:
            doc_id = item.document.id
            if doc_id not in wanted:
                bundle.excluded_ids.append(doc_id)
                continue
            if max_context_tokens is not None and item.tokens > max_context_tokens:
                raise ContextOverflowError(
                    f"Document '{doc_id}' needs {item.tokens} tokens on its own; "
                    f"the context budget is {max_context_tokens}."
                )
            bundle.chunks.append(
                ContextChunk(
                    document_id=doc_id, text=item.document.text, tokens=item.tokens, score=item.score
                )
            )
            bundle.included_ids.append(doc_id)
            bundle.total_tokens += item.tokens
        return bundle
