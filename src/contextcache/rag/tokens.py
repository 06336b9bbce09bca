"""Token estimators used to size documents against a context budget.

Every estimator here is an approximation, not an exact tokenizer count. The
builder and the overflow analyzer only depend on the TokenEstimator protocol,
so a precise tokenizer can be dropped in without touching them.
"""

from __future__ import annotations

import math
from typing import Protocol

from contextcache.rag.llm_client import count_tokens

DEFAULT_CHARS_PER_TOKEN = 4.0


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class CharRatioEstimator:
    """ceil(len(text) / chars_per_token).

    Monotonic: removing characters never raises the estimate, so per-document
    estimates can be summed in any order.
    """

    def __init__(self, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> None:
        if chars_per_token <= 0:
            raise ValueError(f"chars_per_token must be > 0, got {chars_per_token}")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


class LiteLLMTokenEstimator:
    """Provider-aware estimate via LiteLLM for a specific *model*.

    BPE counts are closer to what the provider bills but are not guaranteed
    monotonic under arbitrary character removal.
    """

    def __init__(self, model: str) -> None:
        self.model = model

    def estimate(self, text: str) -> int:
        return count_tokens(self.model, text)
