"""BuildCache: one persisted entry per (project, document_type) with a status machine.

  NONE ──trigger──▶ PENDING ──acquire──▶ BUILDING ──success──▶ READY
                                            └──exception/timeout──▶ FAILED
  READY ──rebuild──▶ PENDING        READY ──clear──▶ INVALIDATED
  FAILED / INVALIDATED ──trigger──▶ PENDING

The status column is the per-key mutex. Every transition is a conditional
UPDATE (compare-and-set on the source status, and on build_id when a build
finishes), so at most one build can hold BUILDING for a key. A finishing build
whose build_id no longer matches (timed out, cleared, purged) is discarded.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from contextcache.models import (
    BUILDABLE_STATES,
    BuildStatus,
    CacheEntry,
    CacheKey,
    CacheStatus,
    ContextBundle,
    OverflowReport,
    OverflowStatistics,
)

logger = logging.getLogger(__name__)

_SELECT_ENTRY = """
SELECT project, document_type, status, bundle, failure_reason, build_id,
       built_at, created_at
FROM context_cache WHERE project = ? AND document_type = ?
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _placeholders(states: frozenset[CacheStatus]) -> tuple[str, list[str]]:
    values = sorted(s.value for s in states)
    return ",".join("?" * len(values)), values


class BuildCache:
    """Data access layer for cache entries and overflow events.

    Wraps an open sqlite3.Connection. All access goes through one lock so the
    connection can be shared between the event loop and worker threads.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        staleness_ttl_hours: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialise with an open, schema-initialised connection.

        Args:
            conn: Connection prepared by contextcache.db.schema.initialize.
            staleness_ttl_hours: READY bundles older than this are not served.
            clock: Returns the current UTC time (injectable for tests).
        """
        self._conn = conn
        self._lock = threading.RLock()
        self.staleness_ttl_hours = staleness_ttl_hours
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, key: CacheKey) -> CacheEntry | None:
        with self._lock:
            row = self._conn.execute(_SELECT_ENTRY, (key.project, key.document_type)).fetchone()
        return _row_to_entry(row) if row else None

    def get(self, key: CacheKey) -> ContextBundle | None:
        """Return the bundle when READY and not older than the staleness TTL."""
        entry = self.get_entry(key)
        if entry is None or entry.status is not CacheStatus.READY or entry.bundle is None:
            return None
        if self.staleness_ttl_hours is not None and entry.built_at is not None:
            if self._clock() - entry.built_at > timedelta(hours=self.staleness_ttl_hours):
                return None
        return entry.bundle

    def get_status(self, key: CacheKey) -> BuildStatus:
        entry = self.get_entry(key)
        if entry is None:
            return BuildStatus(status=CacheStatus.NONE)

        age = None
        if entry.built_at is not None:
            age = (self._clock() - entry.built_at).total_seconds()
        bundle = entry.bundle
        return BuildStatus(
            status=entry.status,
            age_seconds=age,
            failure_reason=entry.failure_reason,
            total_tokens=bundle.total_tokens if bundle else None,
            document_count=len(bundle.included_ids) if bundle else None,
            built_at=entry.built_at,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def ensure(self, key: CacheKey) -> CacheEntry:
        """Create the entry with status NONE on first reference."""
        now = self._now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO context_cache (project, document_type, status, created_at, updated_at)
                VALUES (?, ?, 'none', ?, ?)
                ON CONFLICT(project, document_type) DO NOTHING
                """,
                (key.project, key.document_type, now, now),
            )
            self._conn.commit()
            row = self._conn.execute(_SELECT_ENTRY, (key.project, key.document_type)).fetchone()
        return _row_to_entry(row)

    def mark_pending(self, key: CacheKey) -> bool:
        """Move any non-BUILDING entry to PENDING. Returns False while BUILDING."""
        self.ensure(key)
        return self._transition(
            key,
            to=CacheStatus.PENDING,
            sources=frozenset(CacheStatus) - {CacheStatus.BUILDING},
        )

    def try_acquire(self, key: CacheKey) -> str | None:
        """Compare-and-set NONE/PENDING/FAILED/INVALIDATED → BUILDING.

        Returns:
            A fresh build id on success, None if the entry was not buildable.
        """
        self.ensure(key)
        build_id = uuid.uuid4().hex
        marks, values = _placeholders(BUILDABLE_STATES)
        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE context_cache
                SET status = 'building', build_id = ?, failure_reason = NULL, updated_at = ?
                WHERE project = ? AND document_type = ? AND status IN ({marks})
                """,  # noqa: S608
                (build_id, self._now(), key.project, key.document_type, *values),
            )
            self._conn.commit()
        return build_id if cur.rowcount == 1 else None

    def revert_pending(self, key: CacheKey) -> CacheStatus | None:
        """Undo a PENDING trigger: READY if a bundle is kept, else NONE."""
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE context_cache
                SET status = CASE WHEN bundle IS NULL THEN 'none' ELSE 'ready' END,
                    updated_at = ?
                WHERE project = ? AND document_type = ? AND status = 'pending'
                """,
                (self._now(), key.project, key.document_type),
            )
            self._conn.commit()
        if cur.rowcount != 1:
            return None
        entry = self.get_entry(key)
        return entry.status if entry else None

    def save(
        self,
        key: CacheKey,
        bundle: ContextBundle,
        *,
        build_id: str | None = None,
    ) -> bool:
        """Upsert *bundle*, set READY and stamp the build time.

        With *build_id*, the write only lands if that build still holds
        BUILDING. Without one it is a manual override, which never replaces
        a running build.
        """
        now = self._now()
        bundle.built_at = now
        payload = bundle.to_json()
        with self._lock:
            if build_id is None:
                cur = self._conn.execute(
                    """
                    INSERT INTO context_cache (project, document_type, status, bundle,
                                               built_at, created_at, updated_at)
                    VALUES (?, ?, 'ready', ?, ?, ?, ?)
                    ON CONFLICT(project, document_type) DO UPDATE SET
                        status = 'ready',
                        bundle = excluded.bundle,
                        failure_reason = NULL,
                        build_id = NULL,
                        built_at = excluded.built_at,
                        updated_at = excluded.updated_at
                    WHERE context_cache.status != 'building'
                    """,
                    (key.project, key.document_type, payload, now, now, now),
                )
            else:
                cur = self._conn.execute(
                    """
                    UPDATE context_cache
                    SET status = 'ready', bundle = ?, failure_reason = NULL,
                        built_at = ?, updated_at = ?
                    WHERE project = ? AND document_type = ?
                      AND status = 'building' AND build_id = ?
                    """,
                    (payload, now, now, key.project, key.document_type, build_id),
                )
            self._conn.commit()

        if cur.rowcount != 1:
            if build_id is None:
                logger.info("Override for %s not saved; a build is running", key)
            else:
                logger.info("Discarded stale build result for %s", key)
            return False
        logger.info(
            "Saved context for %s: %d tokens, %d documents",
            key,
            bundle.total_tokens,
            len(bundle.included_ids),
        )
        return True

    def mark_unavailable(
        self,
        key: CacheKey,
        reason: str,
        *,
        invalidated: bool = False,
        build_id: str | None = None,
    ) -> bool:
        """Set FAILED (or INVALIDATED for an explicit clear) with *reason*.

        An explicit clear also drops the stored bundle. With *build_id*, only
        the build still holding BUILDING can fail the entry; without one a
        BUILDING entry is left alone and False is returned.
        """
        self.ensure(key)
        status = CacheStatus.INVALIDATED if invalidated else CacheStatus.FAILED
        now = self._now()
        sql = """
            UPDATE context_cache
            SET status = ?, failure_reason = ?, built_at = ?, updated_at = ?
        """
        if invalidated:
            sql += ", bundle = NULL"
        sql += " WHERE project = ? AND document_type = ?"
        params: list[object] = [status.value, reason, now, now, key.project, key.document_type]
        if build_id is not None:
            sql += " AND status = 'building' AND build_id = ?"
            params.append(build_id)
        else:
            sql += " AND status != 'building'"

        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()

        if cur.rowcount != 1:
            return False
        if invalidated:
            logger.info("Invalidated context for %s: %s", key, reason)
        else:
            logger.error("Context build failed for %s: %s", key, reason)
        return True

    def _transition(
        self, key: CacheKey, *, to: CacheStatus, sources: frozenset[CacheStatus]
    ) -> bool:
        marks, values = _placeholders(sources)
        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE context_cache SET status = ?, updated_at = ?
                WHERE project = ? AND document_type = ? AND status IN ({marks})
                """,  # noqa: S608
                (to.value, self._now(), key.project, key.document_type, *values),
            )
            self._conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, max_age_hours: float) -> int:
        """Purge entries (any status) whose build time, or creation time if
        never built, is older than *max_age_hours*. Returns the purge count."""
        if max_age_hours < 0:
            raise ValueError(f"max_age_hours must be >= 0, got {max_age_hours}")
        cutoff = (self._clock() - timedelta(hours=max_age_hours)).isoformat()
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM context_cache WHERE COALESCE(built_at, created_at) < ?",
                (cutoff,),
            )
            self._conn.commit()
        if cur.rowcount:
            logger.info("Cleaned up %d old context entries", cur.rowcount)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Overflow events
    # ------------------------------------------------------------------

    def record_overflow(self, key: CacheKey, report: OverflowReport) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO overflow_events (project, document_type, model_category,
                    current_tokens, max_context_tokens, overflow_amount,
                    document_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    key.project,
                    key.document_type,
                    report.model_category,
                    report.current_tokens,
                    report.max_context_tokens,
                    report.overflow_amount,
                    len(report.documents),
                    self._now(),
                ),
            )
            self._conn.commit()

    def overflow_statistics(self, project: str | None = None, days: int = 30) -> OverflowStatistics:
        since = (self._clock() - timedelta(days=days)).isoformat()
        where = "WHERE created_at >= ?"
        params: list[object] = [since]
        if project is not None:
            where += " AND project = ?"
            params.append(project)

        with self._lock:
            total, average = self._conn.execute(
                f"SELECT COUNT(*), AVG(overflow_amount) FROM overflow_events {where}",  # noqa: S608
                params,
            ).fetchone()
            rows = self._conn.execute(
                f"""
                SELECT document_type, COUNT(*) AS n FROM overflow_events {where}
                GROUP BY document_type ORDER BY n DESC, document_type LIMIT 5
                """,  # noqa: S608
                params,
            ).fetchall()

        return OverflowStatistics(
            total_events=total,
            average_overflow=float(average or 0.0),
            most_common_document_types=[(r["document_type"], r["n"]) for r in rows],
            days=days,
            project=project,
        )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        key=CacheKey(project=row["project"], document_type=row["document_type"]),
        status=CacheStatus(row["status"]),
        bundle=ContextBundle.from_json(row["bundle"]) if row["bundle"] else None,
        failure_reason=row["failure_reason"],
        built_at=_parse_ts(row["built_at"]),
        created_at=_parse_ts(row["created_at"]),
        build_id=row["build_id"],
    )
