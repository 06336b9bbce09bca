"""Exception taxonomy for context building and caching."""

from __future__ import annotations


class ContextCacheError(Exception):
    """Base class for all contextcache errors."""


class ValidationError(ContextCacheError):
    """Malformed or missing key, unknown model category, bad argument."""


class NotFoundError(ContextCacheError):
    """Referenced documents do not exist in the corpus."""


class BuildInProgressError(ContextCacheError):
    """The key is BUILDING and the request would collide with that build."""

    def __init__(self, key: object) -> None:
        super().__init__(f"Context build already in progress for {key}")
        self.key = key


class ContextOverflowError(ContextCacheError):
    """A document alone exceeds the context budget and can never be included."""


class BuildTimeoutError(ContextCacheError):
    """A build exceeded the configured wall-clock ceiling."""

    def __init__(self, key: object, seconds: float) -> None:
        super().__init__(f"Context build for {key} timed out after {seconds:g}s")
        self.key = key
        self.seconds = seconds


class UpstreamError(ContextCacheError):
    """DocumentSource or ConfigProvider failure."""
