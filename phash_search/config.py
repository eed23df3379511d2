"""
Search and cache settings.

All tunables come from environment variables so deployments can retune
thresholds, limits and hash weights without code changes. SearchSettings
is built once by the composition root and passed to the engine and cache.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .codec import HASH_TYPES
from .scoring import DEFAULT_HASH_WEIGHTS

logger = logging.getLogger(__name__)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "")
    if raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_optional_float(env: Mapping[str, str], name: str,
                        default: Optional[float]) -> Optional[float]:
    if name not in env:
        return default
    if env[name] == "":
        return None
    return _env_float(env, name, 0.0)


def _env_optional_int(env: Mapping[str, str], name: str,
                      default: Optional[int]) -> Optional[int]:
    if name not in env:
        return default
    if env[name] == "":
        return None
    return _env_int(env, name, 0)


@dataclass
class SearchSettings:
    default_threshold: float = 0.85
    default_limit: int = 10
    max_limit: int = 100
    max_linear_candidates: int = 1000
    batch_default_threshold: float = 0.9
    batch_default_limit: int = 5
    max_batch_queries: int = 50
    cache_ttl: float = 600.0
    build_timeout: float = 30.0
    fetch_timeout: Optional[float] = None
    # None selects the first point of every partition
    vantage_seed: Optional[int] = 0
    hash_weights: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_HASH_WEIGHTS))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SearchSettings":
        """
        Load settings from environment variables.

        Hash weights are read from HASH_WEIGHT_<TYPE>, for example
        HASH_WEIGHT_PERCEPTUAL_HASH=0.9.

        Raises:
            ValueError: If a variable is set to an unparseable value.
        """
        env = os.environ if env is None else env
        defaults = cls()

        weights = dict(defaults.hash_weights)
        for hash_type in HASH_TYPES:
            weights[hash_type] = _env_float(
                env, f"HASH_WEIGHT_{hash_type.upper()}", weights.get(hash_type, 0.0))

        settings = cls(
            default_threshold=_env_float(env, "SIMILARITY_DEFAULT_THRESHOLD",
                                         defaults.default_threshold),
            default_limit=_env_int(env, "SIMILARITY_DEFAULT_LIMIT", defaults.default_limit),
            max_limit=_env_int(env, "SIMILARITY_MAX_LIMIT", defaults.max_limit),
            max_linear_candidates=_env_int(env, "SIMILARITY_MAX_CANDIDATES",
                                           defaults.max_linear_candidates),
            batch_default_threshold=_env_float(env, "SIMILARITY_BATCH_THRESHOLD",
                                               defaults.batch_default_threshold),
            batch_default_limit=_env_int(env, "SIMILARITY_BATCH_LIMIT",
                                         defaults.batch_default_limit),
            max_batch_queries=_env_int(env, "SIMILARITY_MAX_BATCH_QUERIES",
                                       defaults.max_batch_queries),
            cache_ttl=_env_float(env, "VPTREE_CACHE_TTL", defaults.cache_ttl),
            build_timeout=_env_float(env, "VPTREE_BUILD_TIMEOUT", defaults.build_timeout),
            fetch_timeout=_env_optional_float(env, "VPTREE_FETCH_TIMEOUT",
                                              defaults.fetch_timeout),
            vantage_seed=_env_optional_int(env, "VPTREE_SEED", defaults.vantage_seed),
            hash_weights=weights,
        )
        logger.debug(f"Loaded search settings: {settings}")
        return settings
