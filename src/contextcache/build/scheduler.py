"""BuildScheduler: debounced, single-flight context builds on asyncio.

Each key owns at most one pending timer task and at most one running build
task. ``trigger`` replaces any pending timer for its key (last trigger wins and
the delay restarts). ``run_now`` skips the debounce and acquires the key
through the cache's compare-and-set. Running builds are never cancelled; the
optional timeout only force-fails the entry, and the build's late result is
discarded because its build id no longer holds the key.

All methods must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from contextcache.db.cache import BuildCache
from contextcache.errors import BuildInProgressError, BuildTimeoutError
from contextcache.models import BuildStatus, CacheKey, CacheStatus, ContextBundle

logger = logging.getLogger(__name__)

BuildFn = Callable[[CacheKey], Awaitable[ContextBundle]]


def failure_reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BuildScheduler:
    def __init__(
        self,
        cache: BuildCache,
        build_fn: BuildFn,
        *,
        build_timeout: float | None = None,
    ) -> None:
        """
        Args:
            cache: Shared cache whose status column arbitrates builds.
            build_fn: Coroutine function producing the bundle for a key.
            build_timeout: Wall-clock ceiling in seconds; None disables it.
        """
        self.cache = cache
        self._build_fn = build_fn
        self.build_timeout = build_timeout
        self._timers: dict[CacheKey, asyncio.Task[None]] = {}
        self._builds: dict[CacheKey, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def trigger(self, key: CacheKey, delay: float) -> bool:
        """(Re)schedule a build of *key* after *delay* seconds.

        Returns:
            False without scheduling when the key is currently BUILDING.
        """
        if not self.cache.mark_pending(key):
            logger.info("Build already running for %s; trigger ignored", key)
            return False

        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
            logger.debug("Superseded pending build for %s", key)

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.create_task(self._fire_after(key, delay))
        logger.info("Scheduled context build for %s in %gs", key, delay)
        return True

    async def _fire_after(self, key: CacheKey, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            self.run_now(key)
        except BuildInProgressError:
            logger.info("Debounced build for %s skipped; a build is already running", key)

    def cancel(self, key: CacheKey) -> bool:
        """Cancel a pending timer. No effect once the build is BUILDING."""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        restored = self.cache.revert_pending(key)
        logger.info("Cancelled context build for %s (now %s)", key, restored and restored.value)
        return True

    def is_scheduled(self, key: CacheKey) -> bool:
        return key in self._timers

    def is_running(self, key: CacheKey) -> bool:
        return key in self._builds

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def run_now(self, key: CacheKey) -> asyncio.Task[None] | None:
        """Start a build of *key* immediately.

        Returns:
            The build task, or None when the entry is not in a buildable state
            (READY needs an explicit transition to PENDING first).

        Raises:
            BuildInProgressError: The key is already BUILDING.
        """
        build_id = self.cache.try_acquire(key)
        if build_id is None:
            entry = self.cache.get_entry(key)
            if entry is not None and entry.status is CacheStatus.BUILDING:
                raise BuildInProgressError(key)
            logger.info("Build for %s not started; entry is %s", key, entry and entry.status.value)
            return None

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        task = asyncio.get_running_loop().create_task(self._execute(key, build_id))
        self._builds[key] = task
        logger.info("Building context for %s", key)
        return task

    async def _execute(self, key: CacheKey, build_id: str) -> None:
        work = asyncio.ensure_future(self._build_fn(key))
        try:
            if self.build_timeout is None:
                bundle = await work
            else:
                bundle = await asyncio.wait_for(asyncio.shield(work), self.build_timeout)
        except asyncio.TimeoutError:
            reason = failure_reason(BuildTimeoutError(key, self.build_timeout or 0))
            self.cache.mark_unavailable(key, reason, build_id=build_id)
            work.add_done_callback(lambda done: self._discard_late(key, done))
        except Exception as exc:
            self.cache.mark_unavailable(key, failure_reason(exc), build_id=build_id)
        else:
            self.cache.save(key, bundle, build_id=build_id)
        finally:
            if self._builds.get(key) is asyncio.current_task():
                del self._builds[key]

    @staticmethod
    def _discard_late(key: CacheKey, done: asyncio.Future[ContextBundle]) -> None:
        if done.cancelled():
            return
        exc = done.exception()
        if exc is not None:
            logger.info("Timed-out build for %s later failed: %s", key, failure_reason(exc))
        else:
            logger.info("Discarded result of timed-out build for %s", key)

    async def wait(self, key: CacheKey) -> BuildStatus:
        """Wait for the in-flight build of *key* (if any) and return its status."""
        task = self._builds.get(key)
        if task is not None:
            await asyncio.shield(task)
        return self.cache.get_status(key)

    async def aclose(self) -> None:
        """Cancel pending timers and let running builds finish."""
        for key in list(self._timers):
            self.cancel(key)
        running = list(self._builds.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)
