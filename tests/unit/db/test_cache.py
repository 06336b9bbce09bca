"""Tests for BuildCache status transitions and persistence."""

from __future__ import annotations

import pytest

from contextcache.db.cache import BuildCache
from contextcache.models import (
    CacheKey,
    CacheStatus,
    ContextBundle,
    ContextChunk,
    OverflowReport,
)

KEY = CacheKey(project="acme", document_type="proposals")


def _bundle(tokens: int = 10, ids=("a",)) -> ContextBundle:
    chunks = [ContextChunk(document_id=i, text=f"text of {i}", tokens=tokens) for i in ids]
    return ContextBundle(
        project=KEY.project,
        document_type=KEY.document_type,
        chunks=chunks,
        total_tokens=tokens * len(chunks),
        included_ids=list(ids),
        checksum="abc",
    )


def _report(current: int, maximum: int = 100, category: str = "small") -> OverflowReport:
    return OverflowReport(
        will_overflow=current > maximum,
        current_tokens=current,
        max_context_tokens=maximum,
        token_limit=maximum * 2,
        model_category=category,
        context_percent=50,
    )


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------

def test_unknown_key_is_none(cache):
    assert cache.get_entry(KEY) is None
    assert cache.get(KEY) is None
    assert cache.get_status(KEY).status is CacheStatus.NONE


def test_ensure_creates_none_entry_once(cache):
    first = cache.ensure(KEY)
    second = cache.ensure(KEY)
    assert first.status is CacheStatus.NONE
    assert second.created_at == first.created_at


def test_keys_are_independent(cache):
    other = CacheKey(project="acme", document_type="resumes")
    cache.save(KEY, _bundle())
    assert cache.get(other) is None
    assert cache.get_status(other).status is CacheStatus.NONE


# ------------------------------------------------------------------
# Save / get
# ------------------------------------------------------------------

def test_save_unconditional_sets_ready(cache, clock):
    assert cache.save(KEY, _bundle(ids=("a", "b")))
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.READY
    assert entry.built_at == clock.now
    assert entry.bundle.included_ids == ["a", "b"]
    assert entry.bundle.built_at == clock.now.isoformat()


def test_bundle_round_trips_through_storage(cache):
    bundle = _bundle(tokens=7, ids=("x", "y"))
    bundle.is_override = True
    bundle.original_document_count = 5
    cache.save(KEY, bundle)
    stored = cache.get(KEY)
    assert stored.chunks == bundle.chunks
    assert stored.is_override
    assert stored.original_document_count == 5
    assert stored.checksum == "abc"


def test_get_status_reports_age_and_counts(cache, clock):
    cache.save(KEY, _bundle(tokens=12, ids=("a", "b", "c")))
    clock.advance(seconds=90)
    status = cache.get_status(KEY)
    assert status.status is CacheStatus.READY
    assert status.age_seconds == pytest.approx(90)
    assert status.total_tokens == 36
    assert status.document_count == 3


def test_staleness_ttl_hides_old_bundle(tmp_db, clock):
    cache = BuildCache(tmp_db, staleness_ttl_hours=1, clock=clock)
    cache.save(KEY, _bundle())
    clock.advance(minutes=59)
    assert cache.get(KEY) is not None
    clock.advance(minutes=2)
    assert cache.get(KEY) is None
    assert cache.get_status(KEY).status is CacheStatus.READY


# ------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------

def test_try_acquire_is_single_winner(cache):
    first = cache.try_acquire(KEY)
    second = cache.try_acquire(KEY)
    assert first is not None
    assert second is None
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.BUILDING
    assert entry.build_id == first


def test_try_acquire_rejects_ready(cache):
    cache.save(KEY, _bundle())
    assert cache.try_acquire(KEY) is None


@pytest.mark.parametrize("setup", ["none", "pending", "failed", "invalidated"])
def test_try_acquire_from_buildable_states(cache, setup):
    cache.ensure(KEY)
    if setup == "pending":
        cache.mark_pending(KEY)
    elif setup == "failed":
        cache.mark_unavailable(KEY, "boom")
    elif setup == "invalidated":
        cache.mark_unavailable(KEY, "cleared", invalidated=True)
    assert cache.try_acquire(KEY) is not None


def test_mark_pending_refused_while_building(cache):
    cache.try_acquire(KEY)
    assert not cache.mark_pending(KEY)
    assert cache.get_entry(KEY).status is CacheStatus.BUILDING


def test_mark_pending_keeps_bundle(cache):
    cache.save(KEY, _bundle())
    assert cache.mark_pending(KEY)
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.PENDING
    assert entry.bundle is not None
    assert cache.get(KEY) is None


def test_save_with_matching_build_id(cache):
    build_id = cache.try_acquire(KEY)
    assert cache.save(KEY, _bundle(), build_id=build_id)
    assert cache.get_entry(KEY).status is CacheStatus.READY


def test_save_with_stale_build_id_is_discarded(cache):
    cache.try_acquire(KEY)
    assert not cache.save(KEY, _bundle(), build_id="someone-else")
    assert cache.get_entry(KEY).status is CacheStatus.BUILDING


def test_save_after_purge_is_discarded(cache, clock):
    build_id = cache.try_acquire(KEY)
    clock.advance(hours=2)
    cache.cleanup(1)
    assert not cache.save(KEY, _bundle(), build_id=build_id)
    assert cache.get_entry(KEY) is None


def test_clear_leaves_building_entry_alone(cache):
    build_id = cache.try_acquire(KEY)
    assert not cache.mark_unavailable(KEY, "Cache cleared", invalidated=True)
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.BUILDING
    assert entry.build_id == build_id
    assert cache.save(KEY, _bundle(), build_id=build_id)


def test_override_save_leaves_building_entry_alone(cache):
    build_id = cache.try_acquire(KEY)
    assert not cache.save(KEY, _bundle(ids=("x",)))
    assert cache.get_entry(KEY).status is CacheStatus.BUILDING
    assert cache.save(KEY, _bundle(ids=("a", "b")), build_id=build_id)
    assert cache.get(KEY).included_ids == ["a", "b"]


def test_mark_unavailable_failed_keeps_reason(cache, clock):
    build_id = cache.try_acquire(KEY)
    assert cache.mark_unavailable(KEY, "source exploded", build_id=build_id)
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.FAILED
    assert entry.failure_reason == "source exploded"
    assert entry.built_at == clock.now


def test_mark_unavailable_with_stale_build_id(cache):
    cache.try_acquire(KEY)
    assert not cache.mark_unavailable(KEY, "late", build_id="old")
    assert cache.get_entry(KEY).status is CacheStatus.BUILDING


def test_invalidate_drops_bundle(cache):
    cache.save(KEY, _bundle())
    cache.mark_unavailable(KEY, "Cache cleared", invalidated=True)
    entry = cache.get_entry(KEY)
    assert entry.status is CacheStatus.INVALIDATED
    assert entry.bundle is None
    assert entry.failure_reason == "Cache cleared"


def test_acquire_clears_previous_failure_reason(cache):
    cache.mark_unavailable(KEY, "boom")
    cache.try_acquire(KEY)
    assert cache.get_entry(KEY).failure_reason is None


def test_revert_pending_without_bundle(cache):
    cache.mark_pending(KEY)
    assert cache.revert_pending(KEY) is CacheStatus.NONE


def test_revert_pending_with_bundle(cache):
    cache.save(KEY, _bundle())
    cache.mark_pending(KEY)
    assert cache.revert_pending(KEY) is CacheStatus.READY


def test_revert_pending_ignores_other_states(cache):
    cache.try_acquire(KEY)
    assert cache.revert_pending(KEY) is None


# ------------------------------------------------------------------
# Cleanup
# ------------------------------------------------------------------

def test_cleanup_purges_old_entries(cache, clock):
    old = CacheKey(project="acme", document_type="old")
    cache.save(old, _bundle())
    clock.advance(hours=25)
    cache.save(KEY, _bundle())

    assert cache.cleanup(24) == 1
    assert cache.get_entry(old) is None
    assert cache.get_entry(KEY) is not None


def test_cleanup_uses_created_at_for_unbuilt_entries(cache, clock):
    cache.mark_pending(KEY)
    clock.advance(hours=2)
    assert cache.cleanup(1) == 1


def test_cleanup_zero_purges_everything_older_than_now(cache, clock):
    cache.save(KEY, _bundle())
    clock.advance(seconds=1)
    assert cache.cleanup(0) == 1


def test_cleanup_rejects_negative_age(cache):
    with pytest.raises(ValueError, match="max_age_hours"):
        cache.cleanup(-1)


# ------------------------------------------------------------------
# Overflow events
# ------------------------------------------------------------------

def test_overflow_statistics_empty(cache):
    stats = cache.overflow_statistics()
    assert stats.total_events == 0
    assert stats.average_overflow == 0.0
    assert stats.most_common_document_types == []


def test_overflow_statistics_aggregates(cache):
    cache.record_overflow(KEY, _report(150))
    cache.record_overflow(KEY, _report(130))
    cache.record_overflow(CacheKey("acme", "resumes"), _report(110))
    cache.record_overflow(CacheKey("other", "proposals"), _report(200))

    stats = cache.overflow_statistics(project="acme")
    assert stats.total_events == 3
    assert stats.average_overflow == pytest.approx((50 + 30 + 10) / 3)
    assert stats.most_common_document_types == [("proposals", 2), ("resumes", 1)]
    assert stats.project == "acme"

    assert cache.overflow_statistics().total_events == 4


def test_overflow_statistics_window(cache, clock):
    cache.record_overflow(KEY, _report(150))
    clock.advance(days=10)
    cache.record_overflow(KEY, _report(120))
    stats = cache.overflow_statistics(days=7)
    assert stats.total_events == 1
    assert stats.average_overflow == 20
    assert stats.days == 7
