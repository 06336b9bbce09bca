"""contextcache configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site, not in this module)
  2. Environment variables  (CONTEXTCACHE_DB, CONTEXTCACHE_DEBOUNCE_SECONDS)
  3. Per-project contextcache.yaml
  4. Global ~/.contextcache/config.yaml
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from contextcache.models import (
    MetadataWeights,
    ModelCategory,
    ScoringProfile,
    TokenAllocation,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".contextcache"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "contextcache.yaml"

# Matches api_key, api-secret, *_token, token, *_secret, secret, password,
# credential(s). Does NOT match max_tokens or token_allocation.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "model_categories",
        "token_allocation",
        "metadata_weights",
        "scoring",
        "scheduler",
        "overflow",
        "cache",
    ]
)

_DEFAULT_CATEGORIES: dict[str, int] = {"small": 4_000, "medium": 16_000, "large": 32_000}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ScoringCfg:
    """Project targets for priority scoring (contextcache.yaml: scoring:)."""

    technologies: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


@dataclass
class SchedulerCfg:
    """Build scheduling (contextcache.yaml: scheduler:).

    Attributes:
        debounce_seconds: Quiet period after the last trigger before a build runs.
        build_timeout_seconds: Wall-clock ceiling for a build; None disables it.
        staleness_ttl_hours: READY bundles older than this are not served.
        cleanup_max_age_hours: Entries older than this are purged by cleanup.
        cleanup_interval_seconds: Period of the background cleanup loop.
        verify_checksum: Re-list documents on read and rebuild if they changed.
    """

    debounce_seconds: float = 10.0
    build_timeout_seconds: float | None = 300.0
    staleness_ttl_hours: float | None = None
    cleanup_max_age_hours: float = 24.0
    cleanup_interval_seconds: float = 3_600.0
    verify_checksum: bool = True


@dataclass
class OverflowCfg:
    """Overflow reporting (contextcache.yaml: overflow:)."""

    warning_threshold_percent: int = 85
    default_model_category: str = "medium"


@dataclass
class CacheCfg:
    """Cache persistence (contextcache.yaml: cache:)."""

    db_path: str = ".contextcache.db"


@dataclass
class ContextCacheConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    model_categories: dict[str, ModelCategory] = field(
        default_factory=lambda: {
            name: ModelCategory(name=name, max_tokens=tokens)
            for name, tokens in _DEFAULT_CATEGORIES.items()
        }
    )
    token_allocation: TokenAllocation = field(default_factory=TokenAllocation)
    metadata_weights: MetadataWeights = field(default_factory=MetadataWeights)
    scoring: ScoringCfg = field(default_factory=ScoringCfg)
    scheduler: SchedulerCfg = field(default_factory=SchedulerCfg)
    overflow: OverflowCfg = field(default_factory=OverflowCfg)
    cache: CacheCfg = field(default_factory=CacheCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate_allocation(alloc: TokenAllocation) -> None:
    parts = {
        "context_percent": alloc.context_percent,
        "generation_percent": alloc.generation_percent,
        "buffer_percent": alloc.buffer_percent,
    }
    for name, value in parts.items():
        if not 0 <= value <= 100:
            raise ConfigError(f"token_allocation.{name} must be within 0..100, got {value}")
    total = sum(parts.values())
    if total > 100:
        raise ConfigError(
            f"token_allocation percentages add up to {total:g}; they must not exceed 100."
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _parse_categories(raw: dict[str, Any]) -> dict[str, ModelCategory]:
    categories: dict[str, ModelCategory] = {}
    for name, entry in raw.items():
        if isinstance(entry, dict):
            max_tokens = entry.get("max_tokens")
            models = tuple(str(m) for m in entry.get("models") or [])
        else:
            max_tokens, models = entry, ()
        if max_tokens is None or int(max_tokens) < 1:
            raise ConfigError(f"model_categories.{name}.max_tokens must be a positive integer")
        categories[str(name)] = ModelCategory(
            name=str(name), max_tokens=int(max_tokens), models=models
        )
    if not categories:
        raise ConfigError("model_categories must define at least one category")
    return categories


def _cfg_from_dict(data: dict[str, Any]) -> ContextCacheConfig:
    """Build a *ContextCacheConfig* from a merged raw YAML dict."""
    cfg = ContextCacheConfig()

    if "model_categories" in data:
        cfg.model_categories = _parse_categories(data["model_categories"] or {})

    if "token_allocation" in data:
        a = data["token_allocation"] or {}
        d = cfg.token_allocation
        cfg.token_allocation = TokenAllocation(
            context_percent=float(a.get("context_percent", d.context_percent)),
            generation_percent=float(a.get("generation_percent", d.generation_percent)),
            buffer_percent=float(a.get("buffer_percent", d.buffer_percent)),
        )

    if "metadata_weights" in data:
        w = data["metadata_weights"] or {}
        d = cfg.metadata_weights
        cfg.metadata_weights = MetadataWeights(
            agency_match=float(w.get("agency_match", d.agency_match)),
            technology_match=float(w.get("technology_match", d.technology_match)),
            recency=float(w.get("recency", d.recency)),
            keyword_relevance=float(w.get("keyword_relevance", d.keyword_relevance)),
        )

    if "scoring" in data:
        s = data["scoring"] or {}
        cfg.scoring = ScoringCfg(
            technologies=[str(t) for t in s.get("technologies") or []],
            keywords=[str(k) for k in s.get("keywords") or []],
        )

    if "scheduler" in data:
        sc = data["scheduler"] or {}
        d = cfg.scheduler
        cfg.scheduler = SchedulerCfg(
            debounce_seconds=float(sc.get("debounce_seconds", d.debounce_seconds)),
            build_timeout_seconds=_optional_float(
                sc.get("build_timeout_seconds", d.build_timeout_seconds)
            ),
            staleness_ttl_hours=_optional_float(
                sc.get("staleness_ttl_hours", d.staleness_ttl_hours)
            ),
            cleanup_max_age_hours=float(
                sc.get("cleanup_max_age_hours", d.cleanup_max_age_hours)
            ),
            cleanup_interval_seconds=float(
                sc.get("cleanup_interval_seconds", d.cleanup_interval_seconds)
            ),
            verify_checksum=bool(sc.get("verify_checksum", d.verify_checksum)),
        )

    if "overflow" in data:
        o = data["overflow"] or {}
        cfg.overflow = OverflowCfg(
            warning_threshold_percent=int(
                o.get("warning_threshold_percent", cfg.overflow.warning_threshold_percent)
            ),
            default_model_category=str(
                o.get("default_model_category", cfg.overflow.default_model_category)
            ),
        )

    if "cache" in data:
        c = data["cache"] or {}
        cfg.cache = CacheCfg(db_path=str(c.get("db_path", cfg.cache.db_path)))

    return cfg


def _apply_env_overrides(cfg: ContextCacheConfig) -> ContextCacheConfig:
    """Apply CONTEXTCACHE_* environment variable overrides."""
    if db_path := os.environ.get("CONTEXTCACHE_DB"):
        cfg.cache.db_path = db_path
    if debounce := os.environ.get("CONTEXTCACHE_DEBOUNCE_SECONDS"):
        try:
            cfg.scheduler.debounce_seconds = float(debounce)
        except ValueError as exc:
            raise ConfigError(
                f"CONTEXTCACHE_DEBOUNCE_SECONDS must be a number, got '{debounce}'"
            ) from exc
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ContextCacheConfig:
    """Load and return a merged *ContextCacheConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *contextcache.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or a value
            is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    _validate_allocation(cfg.token_allocation)

    return _apply_env_overrides(cfg)


class YamlConfigProvider:
    """ConfigProvider backed by a loaded *ContextCacheConfig*."""

    def __init__(self, config: ContextCacheConfig | None = None) -> None:
        self.config = config if config is not None else ContextCacheConfig()

    def get_model_categories(self) -> dict[str, ModelCategory]:
        return dict(self.config.model_categories)

    def get_token_allocation(self) -> TokenAllocation:
        return self.config.token_allocation

    def get_metadata_weights(self) -> MetadataWeights:
        return self.config.metadata_weights

    def get_scoring_profile(self) -> ScoringProfile:
        return ScoringProfile(
            technologies=frozenset(t.lower() for t in self.config.scoring.technologies),
            keywords=frozenset(k.lower() for k in self.config.scoring.keywords),
        )

    def category_for_model(self, model: str) -> ModelCategory | None:
        """Map a LiteLLM model name onto a configured category.

        Explicit ``models`` lists win. Otherwise the largest category that fits
        inside the model's context window is chosen, falling back to the
        smallest category.
        """
        from contextcache.rag.llm_client import get_context_window

        categories = sorted(self.config.model_categories.values(), key=lambda c: c.max_tokens)
        for category in categories:
            if model in category.models:
                return category
        if "/" not in model:
            return None

        window = get_context_window(model)
        fitting = [c for c in categories if c.max_tokens <= window]
        return fitting[-1] if fitting else categories[0]
