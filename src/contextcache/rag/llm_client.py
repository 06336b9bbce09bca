"""LiteLLM wrapper for provider-aware token counting and model capacity lookup.

The inference call itself happens outside this package; only the sizing
helpers are needed to budget a context bundle.
"""

from __future__ import annotations

import logging

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

# Fallback lookup table for common models
_FALLBACK_WINDOWS: dict[str, int] = {
    "openai/gpt-4o": 128_000,
    "openai/gpt-4o-mini": 128_000,
    "openai/gpt-4-turbo": 128_000,
    "openai/gpt-3.5-turbo": 16_384,
    "anthropic/claude-3-5-sonnet-20241022": 200_000,
    "anthropic/claude-3-5-haiku-20241022": 200_000,
    "anthropic/claude-3-opus-20240229": 200_000,
}


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    if not text:
        return 0
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        logger.debug("token_counter unavailable for %s; using char heuristic", model)
        return max(1, len(text) // 4)


def get_context_window(model: str) -> int:
    """Return the context window size for *model* in tokens.

    Uses litellm.get_model_info() with a hardcoded fallback table for common models.
    Returns 8192 if the model is unknown.
    """
    try:
        info = litellm.get_model_info(model)
        window = info.get("max_input_tokens") or info.get("max_tokens")
        if window:
            return int(window)
    except Exception:
        logger.debug("get_model_info failed for %s; using fallback table", model)

    return _FALLBACK_WINDOWS.get(model, 8_192)
