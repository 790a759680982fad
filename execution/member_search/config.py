"""
Configuration for Member Search

Dataclass configs with sensible defaults, plus env-var loading so a
deployment can tune thresholds, TTLs and rate limits without code changes.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid float for {name}={raw!r}, using {default}")
        return default


@dataclass
class ExtractorConfig:
    """Configuration for the fast/slow extraction chain."""
    confidence_threshold: float = 0.5  # Below this the slow path is consulted
    slow_path_timeout_seconds: float = 2.0
    degraded_confidence_factor: float = 0.8  # Applied when the slow path fails
    default_turnover_unit: str = "crore"
    history_context_turns: int = 3


@dataclass
class EmbeddingConfig:
    """Configuration for query embeddings."""
    providers: list[str] = field(default_factory=lambda: ["voyage", "cohere"])
    model_version: str = "voyage-3"
    dimensions: int = 1024
    timeout_seconds: float = 3.0
    max_attempts: int = 2
    cache_ttl_seconds: int = 86400  # 24 hours
    cache_max_size: int = 1000


@dataclass
class RankerConfig:
    """Configuration for hybrid ranking."""
    default_max_results: int = 10
    max_results_ceiling: int = 50
    candidate_pool_size: int = 200
    recency_half_life_days: float = 180.0
    datastore_timeout_seconds: float = 2.0


@dataclass
class CacheConfig:
    """Configuration for the result cache."""
    result_ttl_seconds: int = 3600  # 1 hour
    enabled: bool = True


@dataclass
class SessionConfig:
    """Configuration for sessions and rate limits."""
    session_ttl_seconds: int = 1800  # 30 minutes sliding inactivity window
    max_history: int = 10
    messages_per_window: int = 50
    searches_per_window: int = 30
    rate_window_seconds: int = 3600  # 1 hour
    kv_backend: str = "memory"  # "memory" or "postgres"


@dataclass
class OrchestratorConfig:
    """Configuration for request sequencing."""
    request_deadline_seconds: float = 5.0
    max_query_length: int = 500
    min_embedding_budget_seconds: float = 0.25  # Skip embedding below this remaining budget
    min_datastore_budget_seconds: float = 0.5  # Data store gets at least this even past the deadline


@dataclass
class MemberStoreConfig:
    """Configuration for the tenant member store."""
    connection_string: Optional[str] = None
    members_table: str = "members"
    embeddings_table: str = "member_embeddings"
    fts_language: str = "english"
    pool_min_connections: int = 2
    pool_max_connections: int = 20


@dataclass
class MemberSearchConfig:
    """Aggregate configuration for the whole search pipeline."""
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    ranker: RankerConfig = field(default_factory=RankerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    store: MemberStoreConfig = field(default_factory=MemberStoreConfig)

    @classmethod
    def from_env(cls) -> "MemberSearchConfig":
        """Build a config from environment variables, falling back to defaults."""
        providers = os.getenv("EMBEDDING_PROVIDERS")
        provider_list = (
            [p.strip() for p in providers.split(",") if p.strip()]
            if providers else EmbeddingConfig().providers
        )

        return cls(
            extractor=ExtractorConfig(
                confidence_threshold=_env_float("EXTRACTION_CONFIDENCE_THRESHOLD", 0.5),
                slow_path_timeout_seconds=_env_float("EXTRACTION_TIMEOUT_SECONDS", 2.0),
                default_turnover_unit=os.getenv("DEFAULT_TURNOVER_UNIT", "crore"),
            ),
            embedding=EmbeddingConfig(
                providers=provider_list,
                model_version=os.getenv("EMBEDDING_MODEL_VERSION", "voyage-3"),
                dimensions=_env_int("EMBEDDING_DIMENSIONS", 1024),
                timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 3.0),
                cache_ttl_seconds=_env_int("EMBEDDING_CACHE_TTL_SECONDS", 86400),
            ),
            ranker=RankerConfig(
                datastore_timeout_seconds=_env_float("DATASTORE_TIMEOUT_SECONDS", 2.0),
            ),
            cache=CacheConfig(
                result_ttl_seconds=_env_int("RESULT_CACHE_TTL_SECONDS", 3600),
            ),
            session=SessionConfig(
                session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 1800),
                max_history=_env_int("SESSION_MAX_HISTORY", 10),
                messages_per_window=_env_int("RATE_LIMIT_MESSAGES_PER_HOUR", 50),
                searches_per_window=_env_int("RATE_LIMIT_SEARCHES_PER_HOUR", 30),
                kv_backend=os.getenv("KV_BACKEND", "memory"),
            ),
            orchestrator=OrchestratorConfig(
                request_deadline_seconds=_env_float("REQUEST_DEADLINE_SECONDS", 5.0),
            ),
            store=MemberStoreConfig(
                connection_string=os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL"),
            ),
        )
