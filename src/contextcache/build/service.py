"""ContextService: the operations callers use to obtain and manage context bundles.

Wires an injected DocumentSource, ConfigProvider and BuildCache to the
scorer, builder, overflow analyzer and scheduler. Nothing here is
module-level state; construct one service per cache database.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from contextcache.build.scheduler import BuildScheduler
from contextcache.config import ContextCacheConfig, YamlConfigProvider
from contextcache.db.cache import BuildCache
from contextcache.errors import (
    BuildInProgressError,
    ContextCacheError,
    UpstreamError,
    ValidationError,
)
from contextcache.models import (
    BuildStatus,
    CacheKey,
    CacheStatus,
    ContextBundle,
    ContextResult,
    Document,
    MetadataWeights,
    ModelCategory,
    OverflowReport,
    OverflowStatistics,
    ScoringProfile,
    TokenAllocation,
)
from contextcache.rag.builder import ContextBuilder
from contextcache.rag.overflow import OverflowAnalyzer
from contextcache.rag.scorer import PriorityScorer
from contextcache.rag.tokens import CharRatioEstimator, TokenEstimator
from contextcache.sources import DocumentSource

logger = logging.getLogger(__name__)

CLEARED_REASON = "Cache cleared"


class ConfigProvider(Protocol):
    def get_model_categories(self) -> dict[str, ModelCategory]: ...

    def get_token_allocation(self) -> TokenAllocation: ...

    def get_metadata_weights(self) -> MetadataWeights: ...


@dataclass
class ServiceSettings:
    debounce_seconds: float = 10.0
    build_timeout_seconds: float | None = 300.0
    cleanup_max_age_hours: float = 24.0
    cleanup_interval_seconds: float = 3_600.0
    verify_checksum: bool = True
    default_model_category: str = "medium"
    warning_threshold_percent: int = 85

    @classmethod
    def from_config(cls, cfg: ContextCacheConfig) -> ServiceSettings:
        return cls(
            debounce_seconds=cfg.scheduler.debounce_seconds,
            build_timeout_seconds=cfg.scheduler.build_timeout_seconds,
            cleanup_max_age_hours=cfg.scheduler.cleanup_max_age_hours,
            cleanup_interval_seconds=cfg.scheduler.cleanup_interval_seconds,
            verify_checksum=cfg.scheduler.verify_checksum,
            default_model_category=cfg.overflow.default_model_category,
            warning_threshold_percent=cfg.overflow.warning_threshold_percent,
        )


@dataclass
class ContextSummary:
    status: CacheStatus
    total_tokens: int = 0
    word_count: int = 0
    character_count: int = 0
    document_count: int = 0
    last_built: datetime | None = None
    failure_reason: str | None = None


def corpus_checksum(documents: Iterable[Document]) -> str:
    """MD5 over (id, size, recency, text hash) of every document, id-sorted."""
    rows = [
        {
            "id": d.id,
            "size": d.size,
            "recency": d.metadata.recency.isoformat() if d.metadata.recency else None,
            "text": hashlib.md5(d.text.encode("utf-8")).hexdigest(),
        }
        for d in sorted(documents, key=lambda d: d.id)
    ]
    return hashlib.md5(json.dumps(rows, sort_keys=True).encode("utf-8")).hexdigest()


def make_key(project: str, document_type: str) -> CacheKey:
    for label, value in (("project", project), ("document type", document_type)):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"A non-empty {label} is required")
    return CacheKey(project=project.strip(), document_type=document_type.strip())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextService:
    def __init__(
        self,
        source: DocumentSource,
        config: ConfigProvider,
        cache: BuildCache,
        *,
        settings: ServiceSettings | None = None,
        estimator: TokenEstimator | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.config = config
        self.cache = cache
        self.settings = settings if settings is not None else ServiceSettings()
        self.estimator = estimator if estimator is not None else CharRatioEstimator()
        self._clock = clock
        self.scheduler = BuildScheduler(
            cache, self._build, build_timeout=self.settings.build_timeout_seconds
        )
        self._cleanup_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        cfg: ContextCacheConfig,
        source: DocumentSource,
        conn: sqlite3.Connection,
        **kwargs: Any,
    ) -> ContextService:
        cache = BuildCache(conn, staleness_ttl_hours=cfg.scheduler.staleness_ttl_hours)
        return cls(
            source,
            YamlConfigProvider(cfg),
            cache,
            settings=ServiceSettings.from_config(cfg),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Upstream access
    # ------------------------------------------------------------------

    async def _list_documents(self, key: CacheKey) -> list[Document]:
        try:
            result = self.source.list(key.project, key.document_type)
            if inspect.isawaitable(result):
                result = await result
            return list(result)
        except ContextCacheError:
            raise
        except Exception as exc:
            raise UpstreamError(f"Document source failed for {key}: {exc}") from exc

    def _upstream(self, getter: Callable[[], Any], what: str) -> Any:
        try:
            return getter()
        except ContextCacheError:
            raise
        except Exception as exc:
            raise UpstreamError(f"Config provider failed to supply {what}: {exc}") from exc

    def _resolve_category(self, name: str | None) -> ModelCategory:
        name = name or self.settings.default_model_category
        categories = self._upstream(self.config.get_model_categories, "model categories")
        if name in categories:
            return categories[name]
        lookup = getattr(self.config, "category_for_model", None)
        category = self._upstream(lambda: lookup(name), "model category") if lookup else None
        if category is None:
            known = ", ".join(sorted(categories))
            raise ValidationError(f"Unknown model category '{name}' (known: {known})")
        return category

    def _context_builder(self) -> ContextBuilder:
        weights = self._upstream(self.config.get_metadata_weights, "metadata weights")
        profile_getter = getattr(self.config, "get_scoring_profile", None)
        profile = (
            self._upstream(profile_getter, "scoring profile") if profile_getter else ScoringProfile()
        )
        profile = replace(profile, reference_date=self._clock().date())
        return ContextBuilder(PriorityScorer(profile), self.estimator, weights)

    def _budget(self, category: ModelCategory) -> int:
        allocation = self._upstream(self.config.get_token_allocation, "token allocation")
        return allocation.context_budget(category)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def _build(self, key: CacheKey) -> ContextBundle:
        documents = await self._list_documents(key)
        builder = self._context_builder()
        budget = self._budget(self._resolve_category(None))

        bundle, excluded = builder.build(
            documents, budget, project=key.project, document_type=key.document_type
        )
        bundle.checksum = corpus_checksum(documents)
        logger.info(
            "Context built for %s: %d tokens from %d documents (%d excluded)",
            key,
            bundle.total_tokens,
            len(bundle.included_ids),
            len(excluded),
        )
        return bundle

    async def _corpus_changed(self, key: CacheKey, bundle: ContextBundle) -> bool:
        if not self.settings.verify_checksum or bundle.is_override or bundle.checksum is None:
            return False
        try:
            documents = await self._list_documents(key)
        except ContextCacheError as exc:
            logger.warning("Serving cached context for %s; change check failed: %s", key, exc)
            return False
        changed = corpus_checksum(documents) != bundle.checksum
        if changed:
            logger.info("Context for %s is outdated; documents changed", key)
        return changed

    def _reject_while_building(self, key: CacheKey) -> None:
        entry = self.cache.get_entry(key)
        if self.scheduler.is_running(key) or (
            entry is not None and entry.status is CacheStatus.BUILDING
        ):
            raise BuildInProgressError(key)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_context(
        self, project: str, document_type: str, *, force_rebuild: bool = False
    ) -> ContextResult:
        """Return the cached bundle when fresh, otherwise schedule a build.

        Never raises for build or upstream failures: a FAILED entry is returned
        with its reason and is not retried until triggered again.
        """
        key = make_key(project, document_type)
        delay = self.settings.debounce_seconds

        if force_rebuild:
            self.scheduler.trigger(key, delay)
            return ContextResult(status=self.cache.get_status(key).status)

        entry = self.cache.get_entry(key)
        status = entry.status if entry is not None else CacheStatus.NONE

        if status is CacheStatus.READY:
            bundle = self.cache.get(key)
            if bundle is not None and not await self._corpus_changed(key, bundle):
                return ContextResult(status=CacheStatus.READY, bundle=bundle)
            self.scheduler.trigger(key, delay)
            return ContextResult(status=CacheStatus.PENDING)

        if status is CacheStatus.FAILED:
            return ContextResult(status=status, failure_reason=entry.failure_reason)

        if status is CacheStatus.BUILDING:
            return ContextResult(status=status)

        if status is CacheStatus.PENDING and self.scheduler.is_scheduled(key):
            return ContextResult(status=status)

        # NONE, INVALIDATED, or PENDING left without a timer
        self.scheduler.trigger(key, delay)
        return ContextResult(status=CacheStatus.PENDING)

    async def trigger_build(
        self, project: str, document_type: str, *, immediate: bool = False
    ) -> bool:
        """Request a rebuild of the key.

        Debounced triggers are no-ops while a build is running. Immediate
        triggers start the build before returning and never queue a second one.

        Raises:
            BuildInProgressError: *immediate* while the key is BUILDING.
        """
        key = make_key(project, document_type)
        if not immediate:
            return self.scheduler.trigger(key, self.settings.debounce_seconds)
        self.cache.mark_pending(key)
        return self.scheduler.run_now(key) is not None

    async def cancel_build(self, project: str, document_type: str) -> bool:
        return self.scheduler.cancel(make_key(project, document_type))

    async def wait_for_build(self, project: str, document_type: str) -> BuildStatus:
        return await self.scheduler.wait(make_key(project, document_type))

    async def check_overflow(
        self, project: str, document_type: str, model_category: str | None = None
    ) -> OverflowReport:
        key = make_key(project, document_type)
        category = self._resolve_category(model_category)
        allocation = self._upstream(self.config.get_token_allocation, "token allocation")
        documents = await self._list_documents(key)

        analyzer = OverflowAnalyzer(
            self._context_builder(), self.settings.warning_threshold_percent
        )
        report = analyzer.check_overflow(documents, category, allocation)
        if report.will_overflow:
            self.cache.record_overflow(key, report)
        return report

    async def apply_selection(
        self,
        project: str,
        document_type: str,
        selected_document_ids: Iterable[str],
        model_category: str | None = None,
    ) -> ContextBundle:
        """Persist a manual selection as an override of the automatic build.

        Raises:
            BuildInProgressError: The key is BUILDING; the running build is
                never overwritten.
        """
        key = make_key(project, document_type)
        self._reject_while_building(key)
        selected = list(selected_document_ids)
        category = self._resolve_category(model_category)
        budget = self._budget(category)
        documents = await self._list_documents(key)

        analyzer = OverflowAnalyzer(
            self._context_builder(), self.settings.warning_threshold_percent
        )
        bundle = analyzer.apply_selection(
            selected,
            documents,
            max_context_tokens=budget,
            project=key.project,
            document_type=key.document_type,
        )
        bundle.checksum = corpus_checksum(documents)
        self.scheduler.cancel(key)
        if not self.cache.save(key, bundle):
            raise BuildInProgressError(key)
        if bundle.total_tokens > budget:
            logger.warning(
                "Selection for %s uses %d tokens, above the %d token budget",
                key,
                bundle.total_tokens,
                budget,
            )
        return bundle

    async def clear_cache(self, project: str, document_type: str) -> None:
        """Invalidate the key's bundle and cancel any pending build.

        Raises:
            BuildInProgressError: The key is BUILDING.
        """
        key = make_key(project, document_type)
        self._reject_while_building(key)
        self.scheduler.cancel(key)
        if not self.cache.mark_unavailable(key, CLEARED_REASON, invalidated=True):
            raise BuildInProgressError(key)

    def cleanup(self, max_age_hours: float | None = None) -> int:
        hours = self.settings.cleanup_max_age_hours if max_age_hours is None else max_age_hours
        if hours < 0:
            raise ValidationError(f"max_age_hours must be >= 0, got {hours}")
        return self.cache.cleanup(hours)

    async def get_build_status(self, project: str, document_type: str) -> BuildStatus:
        return self.cache.get_status(make_key(project, document_type))

    async def get_context_summary(self, project: str, document_type: str) -> ContextSummary:
        key = make_key(project, document_type)
        status = self.cache.get_status(key)
        bundle = self.cache.get(key)
        if status.status is CacheStatus.READY and bundle is not None:
            return ContextSummary(
                status=status.status,
                total_tokens=bundle.total_tokens,
                word_count=bundle.word_count,
                character_count=bundle.character_count,
                document_count=len(bundle.included_ids),
                last_built=status.built_at,
            )
        return ContextSummary(
            status=status.status,
            last_built=status.built_at,
            failure_reason=status.failure_reason,
        )

    def get_overflow_statistics(
        self, project: str | None = None, days: int = 30
    ) -> OverflowStatistics:
        if days < 1:
            raise ValidationError(f"days must be >= 1, got {days}")
        return self.cache.overflow_statistics(project, days)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_cleanup_loop(self) -> asyncio.Task[None]:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        return self._cleanup_task

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            try:
                self.cleanup()
            except sqlite3.Error:
                logger.exception("Context cleanup failed")

    async def aclose(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.scheduler.aclose()
